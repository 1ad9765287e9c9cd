"""
Pain Protocol Agent - Rule Applier Tests

Covers each of the eleven appliers plus the shared contract: NA cells are
no-ops, cleared slots stay cleared, and missing patient values for a
populated rule are fatal.

Run with: pytest tests/test_rules.py -v
"""

import pytest

from agents.pain_protocol.model import (
    DrugRole,
    MissingClinicalValueError,
    OutcomeKind,
    PatientSnapshot,
    ProtocolConfigError,
)
from agents.pain_protocol.rules import (
    AgeRule,
    ContraindicationRule,
    HepaticRule,
    PainTrendRule,
    PlateletRule,
    RenalRule,
    SaturationRule,
    SensitivityRule,
    SodiumRule,
    WeightRule,
    WhiteCellRule,
    default_rule_chain,
)


# =============================================================================
# SHARED CONTRACT
# =============================================================================

class TestSharedContract:
    """Behaviour every applier must honour."""

    @pytest.mark.parametrize("applier", default_rule_chain(), ids=lambda a: a.name)
    @pytest.mark.parametrize("role", [DrugRole.PRIMARY, DrugRole.ALTERNATIVE])
    def test_na_cells_leave_slot_unchanged(self, applier, role, make_row, apply_rule):
        """With every rule cell NA, no applier touches the slot, even without patient data."""
        row = make_row()
        bare_patient = PatientSnapshot(patient_id="P-NA")

        recommendation, _, outcome = apply_rule(applier, row, bare_patient, role=role)
        slot = recommendation.slot(role)

        assert outcome.kind == OutcomeKind.NO_OP
        assert slot.is_active
        assert slot.dose == (1000.0 if role == DrugRole.PRIMARY else 400.0)
        assert slot.interval == (6.0 if role == DrugRole.PRIMARY else 8.0)
        assert recommendation.rejection_reasons == []

    def test_default_chain_order(self):
        names = [a.name for a in default_rule_chain()]
        assert names == [
            "PainTrendRule", "AgeRule", "ContraindicationRule", "SensitivityRule",
            "PlateletRule", "WhiteCellRule", "SaturationRule", "SodiumRule",
            "HepaticRule", "WeightRule", "RenalRule",
        ]

    def test_cleared_slot_is_never_repopulated(self, make_row, make_patient, apply_rule):
        """After the age rule withholds the primary drug, later rules skip it."""
        row = make_row(
            primary_age_rule=">75 - avoid",
            primary_hepatic_rule="B - 500 mg 12h",
            primary_weight_rule="<50 kg - 250 mg",
            renal_rule="Class C - reduce by 50%",
        )
        patient = make_patient(age=80, weight_kg=45.0, hepatic_class="B", renal_class="C")

        recommendation, context, _ = apply_rule(AgeRule(), row, patient)
        primary = recommendation.primary
        assert primary.cleared

        for applier in default_rule_chain()[2:]:
            outcome = applier.apply(primary, recommendation, row, context, recommendation.rejection_reasons)
            assert outcome.kind == OutcomeKind.NO_OP
            assert primary.active_ingredient == ""
            assert primary.dose is None
            assert primary.interval is None


# =============================================================================
# 1. PAIN TREND
# =============================================================================

class TestPainTrendRule:
    """Pain history analysis."""

    def test_worsening_by_three_stops_generation(self, make_row, make_patient, apply_rule):
        recommendation, _, outcome = apply_rule(PainTrendRule(), make_row(), make_patient(), history=[4, 7])

        assert outcome.kind == OutcomeKind.STOP_GENERATION
        assert "worsened by 3" in outcome.reason
        assert not recommendation.is_viable
        assert recommendation.rejection_reasons

    def test_worsening_by_one_is_advisory(self, make_row, make_patient, apply_rule):
        recommendation, _, outcome = apply_rule(PainTrendRule(), make_row(), make_patient(), history=[5, 6])

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.is_viable
        assert any("slightly worsened" in c for c in recommendation.comments)

    def test_large_inversion_stops_generation(self, make_row, make_patient, apply_rule):
        """[7, 4, 5]: last step is only +1 but the dip has amplitude 3."""
        _, _, outcome = apply_rule(PainTrendRule(), make_row(), make_patient(), history=[7, 4, 5])

        assert outcome.kind == OutcomeKind.STOP_GENERATION
        assert "inversion" in outcome.reason

    def test_mild_inversion_is_advisory(self, make_row, make_patient, apply_rule):
        recommendation, _, outcome = apply_rule(PainTrendRule(), make_row(), make_patient(), history=[5, 6, 5])

        assert outcome.kind == OutcomeKind.NO_OP
        assert any("mild inversion" in c for c in recommendation.comments)

    def test_only_last_three_scores_count(self, make_row, make_patient, apply_rule):
        """An old inversion is ignored once the last three readings are monotonic."""
        recommendation, _, outcome = apply_rule(
            PainTrendRule(), make_row(), make_patient(), history=[2, 8, 6, 5, 4]
        )
        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.comments == []

    def test_insufficient_history(self, make_row, make_patient, apply_rule):
        _, _, outcome = apply_rule(PainTrendRule(), make_row(), make_patient(), history=[9])
        assert outcome.kind == OutcomeKind.NO_OP

    def test_evaluated_once_per_recommendation(self, make_row, make_patient, apply_rule):
        """The alternative slot does not re-run the trend analysis."""
        recommendation, _, outcome = apply_rule(
            PainTrendRule(), make_row(), make_patient(), history=[4, 7], role=DrugRole.ALTERNATIVE
        )
        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.is_viable

    def test_evaluated_without_primary_drug(self, make_row, make_patient, apply_rule):
        """A row with an empty first drug still stops on worsening pain."""
        row = make_row(primary_drug="", primary_ingredient="")
        recommendation, _, outcome = apply_rule(PainTrendRule(), row, make_patient(), history=[4, 7])

        assert outcome.kind == OutcomeKind.STOP_GENERATION
        assert not recommendation.is_viable

    @pytest.mark.parametrize("scores,expected", [
        ([7, 6, 7], 1),
        ([5, 6, 5], 1),
        ([5, 8, 6], 3),
        ([3, 4, 5], 0),
        ([5, 5, 5], 0),
        ([4, 5], 0),
    ])
    def test_inversion_amplitude(self, scores, expected):
        assert PainTrendRule.inversion_amplitude(scores) == expected


# =============================================================================
# 2. AGE
# =============================================================================

class TestAgeRule:
    """Age thresholds."""

    def test_elderly_patient_primary_avoided(self, make_row, make_patient, apply_rule):
        row = make_row(primary_age_rule=">75 - avoid")
        recommendation, _, outcome = apply_rule(AgeRule(), row, make_patient(age=80))

        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.primary.cleared
        assert recommendation.alternative.is_active
        assert any("80" in c and "75" in c for c in recommendation.comments)

    def test_younger_patient_primary_kept(self, make_row, make_patient, apply_rule):
        row = make_row(primary_age_rule=">75 - avoid")
        recommendation, _, outcome = apply_rule(AgeRule(), row, make_patient(age=70))

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.primary.is_active

    def test_alternative_avoided_below_limit(self, make_row, make_patient, apply_rule):
        row = make_row(alternative_age_rule="18")
        recommendation, _, outcome = apply_rule(
            AgeRule(), row, make_patient(age=16), role=DrugRole.ALTERNATIVE
        )

        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.alternative.cleared
        assert recommendation.primary.is_active

    def test_missing_threshold_is_noop(self, make_row, make_patient, apply_rule):
        row = make_row(primary_age_rule="avoid in elderly")
        _, _, outcome = apply_rule(AgeRule(), row, make_patient(age=90))
        assert outcome.kind == OutcomeKind.NO_OP

    def test_missing_age_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(primary_age_rule=">75 - avoid")
        with pytest.raises(MissingClinicalValueError):
            apply_rule(AgeRule(), row, make_patient(age=None))


# =============================================================================
# 3-4. CONTRAINDICATIONS / SENSITIVITY
# =============================================================================

class TestContraindicationRule:

    def test_matching_diagnosis_clears_all(self, make_row, make_patient, apply_rule):
        row = make_row(contraindications="K70.3, N18.5")
        recommendation, _, outcome = apply_rule(
            ContraindicationRule(), row, make_patient(diagnoses=["K70.31"])
        )

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable
        assert "K70.31" in recommendation.rejection_reasons[0]

    def test_unrelated_diagnosis(self, make_row, make_patient, apply_rule):
        row = make_row(contraindications="K70.3, N18.5")
        recommendation, _, outcome = apply_rule(
            ContraindicationRule(), row, make_patient(diagnoses=["K71.0", "I10"])
        )

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.is_viable


class TestSensitivityRule:

    def test_listed_allergy_clears_all(self, make_row, make_patient, apply_rule):
        row = make_row(sensitivity_rule="NSAIDs OR Aspirin")
        recommendation, _, outcome = apply_rule(
            SensitivityRule(), row, make_patient(allergies=["aspirin"])
        )

        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.primary.cleared
        assert recommendation.alternative.cleared
        assert "ASPIRIN" in recommendation.rejection_reasons[0]

    def test_partial_token_does_not_match(self, make_row, make_patient, apply_rule):
        row = make_row(sensitivity_rule="NSAIDs OR Aspirin")
        _, _, outcome = apply_rule(
            SensitivityRule(), row, make_patient(allergies=["aspirin lysinate"])
        )
        assert outcome.kind == OutcomeKind.NO_OP


# =============================================================================
# 5-8. LAB GATES
# =============================================================================

class TestPlateletRule:

    def test_low_platelets_clear_both_drugs(self, make_row, make_patient, apply_rule):
        row = make_row(platelet_rule="<100K/µL - avoid")
        recommendation, _, outcome = apply_rule(PlateletRule(), row, make_patient(platelet_count=45))

        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.primary.cleared
        assert recommendation.alternative.cleared

        reason = recommendation.rejection_reasons[0]
        assert "Paracetamol" in reason
        assert "Ibuprofen" in reason
        assert "100" in reason

    def test_normal_platelets(self, make_row, make_patient, apply_rule):
        row = make_row(platelet_rule="<100K/µL - avoid")
        _, _, outcome = apply_rule(PlateletRule(), row, make_patient(platelet_count=150))
        assert outcome.kind == OutcomeKind.NO_OP

    def test_threshold_without_avoid(self, make_row, make_patient, apply_rule):
        row = make_row(platelet_rule="<100K/µL - monitor")
        recommendation, _, outcome = apply_rule(PlateletRule(), row, make_patient(platelet_count=45))

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.is_viable

    def test_missing_platelets_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(platelet_rule="<100K/µL - avoid")
        with pytest.raises(MissingClinicalValueError) as exc_info:
            apply_rule(PlateletRule(), row, make_patient(platelet_count=None))
        assert exc_info.value.dimension == "platelet count"


class TestWhiteCellRule:

    def test_high_white_cells(self, make_row, make_patient, apply_rule):
        row = make_row(white_cell_rule=">12 - avoid")
        recommendation, _, outcome = apply_rule(WhiteCellRule(), row, make_patient(white_cell_count=15.2))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_in_range(self, make_row, make_patient, apply_rule):
        row = make_row(white_cell_rule="<3 - avoid")
        _, _, outcome = apply_rule(WhiteCellRule(), row, make_patient(white_cell_count=7))
        assert outcome.kind == OutcomeKind.NO_OP


class TestSaturationRule:

    def test_below_lower_bound(self, make_row, make_patient, apply_rule):
        row = make_row(saturation_rule="90")
        recommendation, _, outcome = apply_rule(SaturationRule(), row, make_patient(oxygen_saturation=85))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_at_lower_bound(self, make_row, make_patient, apply_rule):
        row = make_row(saturation_rule="90")
        _, _, outcome = apply_rule(SaturationRule(), row, make_patient(oxygen_saturation=90))
        assert outcome.kind == OutcomeKind.NO_OP


class TestSodiumRule:

    def test_hyponatraemia(self, make_row, make_patient, apply_rule):
        row = make_row(sodium_rule="130")
        recommendation, _, outcome = apply_rule(SodiumRule(), row, make_patient(sodium=125))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_missing_sodium_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(sodium_rule="130")
        with pytest.raises(MissingClinicalValueError):
            apply_rule(SodiumRule(), row, make_patient(sodium=None))


# =============================================================================
# 9. HEPATIC
# =============================================================================

class TestHepaticRule:

    RULE = "A - NA B - 500 mg 12h C - avoid"

    def test_class_b_adjusts_dose_and_interval(self, make_row, make_patient, apply_rule):
        row = make_row(primary_hepatic_rule=self.RULE)
        recommendation, context, outcome = apply_rule(HepaticRule(), row, make_patient(hepatic_class="B"))

        primary = recommendation.primary
        assert outcome.kind == OutcomeKind.ADJUST_DOSE
        assert outcome.interval == 12.0
        assert primary.dose == 500.0
        assert primary.interval == 12.0
        assert context.aggregator.final_dose("Paracetamol") == 500.0
        assert context.aggregator.final_interval("Paracetamol") == 12.0
        assert recommendation.alternative.dose == 400.0

    def test_class_c_avoids_only_this_drug(self, make_row, make_patient, apply_rule):
        row = make_row(primary_hepatic_rule=self.RULE)
        recommendation, _, outcome = apply_rule(HepaticRule(), row, make_patient(hepatic_class="C"))

        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.primary.cleared
        assert recommendation.alternative.is_active

    def test_class_a_na_clause(self, make_row, make_patient, apply_rule):
        row = make_row(primary_hepatic_rule=self.RULE)
        recommendation, _, outcome = apply_rule(HepaticRule(), row, make_patient(hepatic_class="A"))

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.primary.dose == 1000.0

    def test_lowercase_rule_text(self, make_row, make_patient, apply_rule):
        row = make_row(primary_hepatic_rule="a - na b - 12h c - avoid")

        recommendation, _, outcome = apply_rule(HepaticRule(), row, make_patient(hepatic_class="C"))
        assert outcome.kind == OutcomeKind.AVOID
        assert recommendation.primary.cleared

        recommendation, _, outcome = apply_rule(HepaticRule(), row, make_patient(hepatic_class="B"))
        assert outcome.kind == OutcomeKind.ADJUST_INTERVAL
        assert recommendation.primary.interval == 12.0

    def test_missing_child_pugh_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(primary_hepatic_rule=self.RULE)
        with pytest.raises(MissingClinicalValueError):
            apply_rule(HepaticRule(), row, make_patient(hepatic_class=None))


# =============================================================================
# 10. WEIGHT
# =============================================================================

class TestWeightRule:

    def test_low_weight_dose(self, make_row, make_patient, apply_rule):
        row = make_row(primary_weight_rule="<50 kg - 500 mg")
        recommendation, context, outcome = apply_rule(WeightRule(), row, make_patient(weight_kg=45))

        assert outcome.kind == OutcomeKind.ADJUST_DOSE
        assert recommendation.primary.dose == 500.0
        assert context.aggregator.final_dose("Paracetamol") == 500.0

    def test_low_weight_interval(self, make_row, make_patient, apply_rule):
        row = make_row(alternative_weight_rule="<50 kg - 12h")
        recommendation, _, outcome = apply_rule(
            WeightRule(), row, make_patient(weight_kg=45), role=DrugRole.ALTERNATIVE
        )

        assert outcome.kind == OutcomeKind.ADJUST_INTERVAL
        assert recommendation.alternative.interval == 12.0

    def test_decimal_dose(self, make_row, make_patient, apply_rule):
        row = make_row(primary_weight_rule="<50 kg - 7.5 mg")
        recommendation, _, _ = apply_rule(WeightRule(), row, make_patient(weight_kg=40))
        assert recommendation.primary.dose == 7.5

    def test_normal_weight_not_evaluated(self, make_row, make_patient, apply_rule):
        row = make_row(primary_weight_rule="<50 kg - 500 mg")
        recommendation, _, outcome = apply_rule(WeightRule(), row, make_patient(weight_kg=70))

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.primary.dose == 1000.0

    def test_unknown_unit_is_configuration_error(self, make_row, make_patient, apply_rule):
        row = make_row(primary_weight_rule="<50 kg - 2 tabs")
        with pytest.raises(ProtocolConfigError):
            apply_rule(WeightRule(), row, make_patient(weight_kg=45))

    def test_missing_weight_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(primary_weight_rule="<50 kg - 500 mg")
        with pytest.raises(MissingClinicalValueError):
            apply_rule(WeightRule(), row, make_patient(weight_kg=None))


# =============================================================================
# 11. RENAL
# =============================================================================

class TestRenalRule:

    def test_class_clause_avoid_from_numeric_value(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="Class B - 12h  Class C - avoid")
        recommendation, _, outcome = apply_rule(RenalRule(), row, make_patient(renal_class=52))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_class_clause_interval(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="Class B - 12h  Class C - avoid")
        recommendation, context, outcome = apply_rule(RenalRule(), row, make_patient(renal_class="B"))

        assert outcome.kind == OutcomeKind.ADJUST_INTERVAL
        assert recommendation.primary.interval == 12.0
        assert context.aggregator.final_interval("Paracetamol") == 12.0

    def test_numeric_clause_reduces_current_dose(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="<30 mL/min - reduce by 50%")
        recommendation, context, outcome = apply_rule(RenalRule(), row, make_patient(renal_class=25))

        assert outcome.kind == OutcomeKind.ADJUST_DOSE
        assert recommendation.primary.dose == 500.0
        assert context.aggregator.final_dose("Paracetamol") == 500.0
        assert any("50%" in c for c in recommendation.comments)

    def test_numeric_clause_with_letter_value(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="<30 mL/min - avoid")
        recommendation, _, outcome = apply_rule(RenalRule(), row, make_patient(renal_class="E"))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_unmatched_clause_is_noop(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="<30 mL/min - avoid")
        recommendation, _, outcome = apply_rule(RenalRule(), row, make_patient(renal_class=95))

        assert outcome.kind == OutcomeKind.NO_OP
        assert recommendation.is_viable

    def test_first_drug_interval_scope(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="Class C - 12h first drug only")
        patient = make_patient(renal_class="C")

        recommendation, _, _ = apply_rule(RenalRule(), row, patient, role=DrugRole.ALTERNATIVE)
        assert recommendation.alternative.interval == 8.0

        recommendation, _, _ = apply_rule(RenalRule(), row, patient, role=DrugRole.PRIMARY)
        assert recommendation.primary.interval == 12.0

    @pytest.mark.parametrize("value", ["C", "c", 52])
    def test_lowercase_class_clause(self, make_row, make_patient, apply_rule, value):
        row = make_row(renal_rule="class c - avoid")
        recommendation, _, outcome = apply_rule(RenalRule(), row, make_patient(renal_class=value))

        assert outcome.kind == OutcomeKind.AVOID
        assert not recommendation.is_viable

    def test_missing_renal_value_is_fatal(self, make_row, make_patient, apply_rule):
        row = make_row(renal_rule="<30 mL/min - avoid")
        with pytest.raises(MissingClinicalValueError):
            apply_rule(RenalRule(), row, make_patient(renal_class=None))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
