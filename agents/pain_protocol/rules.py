"""
Pain Protocol Agent - Rule Appliers

This module implements the eleven clinical rules that vet each candidate
drug of a protocol row against the patient snapshot.

================================================================================
EVALUATION ORDER
================================================================================

Rules run in a fixed order because later rules must see the clearing
decisions of earlier ones:

     #  RULE                 READS                     EFFECT
    ──  ───────────────────  ────────────────────────  ──────────────────────────
     1  PainTrendRule        pain history              advisory / STOP generation
     2  AgeRule              age, per-drug age cell    avoid this drug
     3  ContraindicationRule diagnosis codes           avoid every drug
     4  SensitivityRule      allergies                 avoid every drug
     5  PlateletRule         platelet count            avoid every drug
     6  WhiteCellRule        white-cell count          avoid every drug
     7  SaturationRule       SpO2                      avoid every drug
     8  SodiumRule           sodium                    avoid every drug
     9  HepaticRule          Child-Pugh class          avoid this drug / dose / interval
    10  WeightRule           weight (< 50 kg)          dose / interval
    11  RenalRule            GFR (number or class)     avoid every drug / reduce / interval

Every applier:
  - skips a slot that is already cleared (a cleared drug never comes back);
    the pain-trend rule is the exception and runs once per recommendation
  - leaves the slot untouched when its protocol cell is empty or "NA"
  - raises MissingClinicalValueError when its cell is populated but the
    patient value it needs is missing
  - records every dose/interval it sets with the CorrectionAggregator
  - leaves a "System: ..." comment on the recommendation for each decision
  - returns exactly one RuleOutcome

================================================================================
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .aggregator import CorrectionAggregator
from .config import HepaticClass, RenalClass, settings
from .model import (
    DrugRole,
    DrugSlot,
    MissingClinicalValueError,
    PainHistory,
    PatientSnapshot,
    ProtocolConfigError,
    ProtocolRow,
    Recommendation,
    RuleOutcome,
)
from .normalizer import get_normalizer
from .text_parser import Directive, DirectiveKind, RuleClause, get_parser

logger = logging.getLogger(__name__)


@dataclass
class RuleContext:
    """Per-row evaluation context shared by all appliers."""
    patient: PatientSnapshot
    pain_history: PainHistory
    aggregator: CorrectionAggregator


# =============================================================================
# BASE APPLIER
# =============================================================================

class RuleApplier:
    """
    Base class for the clinical rule appliers.

    Subclasses implement ``_evaluate``; ``apply`` enforces the shared
    precondition that cleared slots are never touched again.
    """

    name = "RuleApplier"
    dimension = ""

    def __init__(self):
        self.settings = settings
        self.parser = get_parser()
        self.normalizer = get_normalizer()

    def apply(
        self,
        slot: DrugSlot,
        recommendation: Recommendation,
        row: ProtocolRow,
        context: RuleContext,
        rejection_reasons: List[str],
    ) -> RuleOutcome:
        if not slot.is_active:
            logger.debug(f"[{self.name}] skipped {slot.role.value}: slot already cleared")
            return RuleOutcome.no_op("slot already cleared")
        return self._evaluate(slot, recommendation, row, context, rejection_reasons)

    def _evaluate(
        self,
        slot: DrugSlot,
        recommendation: Recommendation,
        row: ProtocolRow,
        context: RuleContext,
        rejection_reasons: List[str],
    ) -> RuleOutcome:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Helpers shared by the concrete rules
    # -------------------------------------------------------------------------

    def _require(self, value, context: RuleContext):
        if value is None:
            raise MissingClinicalValueError(self.dimension, context.patient.patient_id)
        return value

    def _avoid_slot(
        self,
        slot: DrugSlot,
        recommendation: Recommendation,
        rejection_reasons: List[str],
        comment: str,
        reason: str,
    ) -> RuleOutcome:
        """Withhold a single drug."""
        message = f"[{self.name}] {reason}"
        recommendation.add_comment(f"System: {comment}")
        rejection_reasons.append(message)
        slot.clear(message)
        logger.warning(f"[{self.name}] avoid {slot.role.value}: {reason}")
        return RuleOutcome.avoid(message)

    def _avoid_all(
        self,
        recommendation: Recommendation,
        rejection_reasons: List[str],
        comment: str,
        reason: str,
    ) -> RuleOutcome:
        """Withhold every drug of the recommendation."""
        message = f"[{self.name}] {reason}"
        recommendation.add_comment(f"System: {comment}")
        rejection_reasons.append(message)
        recommendation.clear_all(message)
        logger.warning(f"[{self.name}] avoid all drugs: {reason}")
        return RuleOutcome.avoid(message)

    def _apply_directives(
        self,
        slot: DrugSlot,
        recommendation: Recommendation,
        context: RuleContext,
        directives: Sequence[Directive],
        rule_text: str,
        primary_only_interval: bool = False,
    ) -> RuleOutcome:
        """Apply dose/interval directives directly and register them for aggregation."""
        dose: Optional[float] = None
        interval: Optional[float] = None

        for directive in directives:
            if directive.kind == DirectiveKind.REDUCE_BY_PERCENT:
                if slot.dose is None:
                    logger.warning(
                        f"[{self.name}] cannot reduce {slot.label} by {directive.value:g}%: no current dose"
                    )
                    recommendation.add_comment(
                        f"System: reduce dose of {slot.label} by {directive.value:g}% "
                        f"(no base dose available) due to {self.dimension} rule: {rule_text}"
                    )
                    continue
                old = slot.dose
                dose = round(old * (1 - directive.value / 100.0), 2)
                slot.set_dose(dose, f"{self.name}: reduced by {directive.value:g}% ({old:g} -> {dose:g} mg)")
                context.aggregator.record_dose(slot.active_ingredient, dose)
                recommendation.add_comment(
                    f"System: reduced dose of {slot.label} by {directive.value:g}% "
                    f"({old:g} -> {dose:g} mg) due to {self.dimension} rule: {rule_text}"
                )

            elif directive.kind == DirectiveKind.SET_DOSE:
                old = slot.dose
                dose = directive.value
                slot.set_dose(dose, f"{self.name}: dose set to {dose:g} mg")
                context.aggregator.record_dose(slot.active_ingredient, dose)
                recommendation.add_comment(
                    f"System: corrected dosing of {slot.label} from {_fmt(old, 'mg')} "
                    f"to {dose:g} mg due to {self.dimension} rule: {rule_text}"
                )

            elif directive.kind == DirectiveKind.SET_INTERVAL:
                if primary_only_interval and slot.role != DrugRole.PRIMARY:
                    logger.debug(f"[{self.name}] interval directive limited to first drug; skipping {slot.label}")
                    continue
                old = slot.interval
                interval = directive.value
                slot.set_interval(interval, f"{self.name}: interval set to {interval:g}h")
                context.aggregator.record_interval(slot.active_ingredient, interval)
                recommendation.add_comment(
                    f"System: corrected interval of {slot.label} from {_fmt(old, 'h')} "
                    f"to {interval:g}h due to {self.dimension} rule: {rule_text}"
                )

        if dose is not None or interval is not None:
            logger.info(
                f"[{self.name}] adjusted {slot.label}: dose={slot.dose}, interval={slot.interval}"
            )
        return RuleOutcome.adjust(f"[{self.name}] {rule_text}", dose, interval)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


def _fmt(value: Optional[float], unit: str) -> str:
    if value is None:
        return "unset"
    return f"{value:g} mg" if unit == "mg" else f"{value:g}h"


# =============================================================================
# 1. PAIN TREND
# =============================================================================

class PainTrendRule(RuleApplier):
    """
    Stops generation when pain is getting clearly worse.

    Looks at the most recent scores only:
      - last two readings worsened by >= 2 points     → STOP
      - inversion in the last three with amplitude >= 2 → STOP
      - worsened by exactly 1 / inversion amplitude 1 → advisory comment

    The trend belongs to the patient, not to a drug, so it is evaluated
    once per recommendation, on its first slot, even when that slot has
    no active drug.
    """

    name = "PainTrendRule"
    dimension = "pain trend"

    def apply(self, slot, recommendation, row, context, rejection_reasons):
        if not recommendation.slots or slot is not recommendation.slots[0]:
            return RuleOutcome.no_op()
        return self._evaluate(slot, recommendation, row, context, rejection_reasons)

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        history = context.pain_history
        if len(history) < self.settings.pain_trend_min_history:
            logger.info(f"Not enough pain history ({len(history)} entries); trend not evaluated")
            return RuleOutcome.no_op("insufficient history")

        scores = list(history.scores)
        diff = scores[-1] - scores[-2]
        amplitude = self.inversion_amplitude(scores[-3:])

        if diff >= self.settings.pain_trend_stop_delta:
            return self._stop(
                recommendation, rejection_reasons, scores,
                f"Pain worsened by {diff} points. Recommendation generation stopped",
            )
        if amplitude >= self.settings.pain_trend_stop_amplitude:
            return self._stop(
                recommendation, rejection_reasons, scores,
                f"Pain trend inversion detected with amplitude {amplitude}. Recommendation generation stopped",
            )

        if diff > 0:
            recommendation.add_comment(
                f"System: pain slightly worsened by {diff} point(s). Continue treatment "
                f"but monitor closely. Pain history: {scores}"
            )
        elif amplitude > 0:
            recommendation.add_comment(
                f"System: pain trend shows mild inversion (amplitude {amplitude}). "
                f"Monitor patient dynamics. Pain history: {scores}"
            )
        else:
            logger.info(f"No regression or inversion detected (pain history={scores})")
        return RuleOutcome.no_op()

    @staticmethod
    def inversion_amplitude(scores: Sequence[int]) -> int:
        """
        Amplitude of a direction change in a run of three scores.

        [7, 6, 7] and [5, 6, 5] are inversions of amplitude 1; a monotonic
        run has amplitude 0.
        """
        if len(scores) < 3:
            return 0
        a, b, c = scores[-3], scores[-2], scores[-1]
        if (a > b < c) or (a < b > c):
            return max(abs(a - b), abs(c - b))
        return 0

    def _stop(self, recommendation, rejection_reasons, scores, message) -> RuleOutcome:
        reason = f"[{self.name}] {message} (pain history={scores})"
        recommendation.add_comment(f"System: {message}. Pain history: {scores}")
        rejection_reasons.append(reason)
        recommendation.clear_all(reason)
        logger.warning(reason)
        return RuleOutcome.stop(reason)


# =============================================================================
# 2. AGE
# =============================================================================

class AgeRule(RuleApplier):
    """
    Age threshold per drug.

    The first integer of the drug's age cell is the limit: the primary drug
    is avoided when the patient is older than the limit, the alternative
    when the patient is younger.
    """

    name = "AgeRule"
    dimension = "age"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = row.age_rule_for(slot.role)
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        limit = self.parser.extract_first_int(rule)
        if limit is None:
            logger.warning(f"[{self.name}] no age threshold in rule '{rule}' (protocol row {row.row_id})")
            return RuleOutcome.no_op("missing threshold")

        age = self._require(context.patient.age, context)
        label = slot.label

        if slot.role == DrugRole.PRIMARY and age > limit:
            return self._avoid_slot(
                slot, recommendation, rejection_reasons,
                comment=f"first drug {label} avoided: patient age ({age}) > {limit}",
                reason=f"Avoid {label}: patient age {age} exceeds limit {limit} (rule='{rule}')",
            )
        if slot.role == DrugRole.ALTERNATIVE and age < limit:
            return self._avoid_slot(
                slot, recommendation, rejection_reasons,
                comment=f"second drug {label} avoided: patient age ({age}) < {limit}",
                reason=f"Avoid {label}: patient age {age} below limit {limit} (rule='{rule}')",
            )
        return RuleOutcome.no_op()


# =============================================================================
# 3. CONTRAINDICATIONS
# =============================================================================

class ContraindicationRule(RuleApplier):
    """Clears every drug when a patient diagnosis is listed as a contraindication."""

    name = "ContraindicationRule"
    dimension = "contraindications"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        if self.parser.is_not_applicable(row.contraindications):
            return RuleOutcome.no_op()

        protocol_codes = {self.parser.icd_base_code(c) for c in self.parser.extract_icd_codes(row.contraindications)}
        if not protocol_codes:
            logger.warning(
                f"[{self.name}] no diagnosis codes found in '{row.contraindications}' "
                f"(protocol row {row.row_id})"
            )
            return RuleOutcome.no_op("no codes")

        matched = sorted(
            code for code in context.patient.diagnoses
            if self.parser.icd_base_code(code) in protocol_codes
        )
        if not matched:
            return RuleOutcome.no_op()

        labels = recommendation.drug_labels()
        codes = ", ".join(matched)
        return self._avoid_all(
            recommendation, rejection_reasons,
            comment=f"avoid {labels}: patient diagnosis {codes} is a contraindication",
            reason=f"Avoid triggered by contraindicated diagnosis {codes} for {labels}",
        )


# =============================================================================
# 4. SENSITIVITY / ALLERGY
# =============================================================================

class SensitivityRule(RuleApplier):
    """Clears every drug when the patient is sensitive to a listed substance."""

    name = "SensitivityRule"
    dimension = "sensitivity"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        substances = self.parser.split_substances(row.sensitivity_rule)
        if not substances:
            return RuleOutcome.no_op()

        allergies = {a.strip().upper() for a in context.patient.allergies if a and a.strip()}
        hits = [s for s in substances if s in allergies]
        if not hits:
            return RuleOutcome.no_op()

        labels = recommendation.drug_labels()
        found = ", ".join(hits)
        return self._avoid_all(
            recommendation, rejection_reasons,
            comment=f"avoid {labels}: patient sensitivity to {found}",
            reason=f"Avoid triggered by patient sensitivity to {found} for {labels}",
        )


# =============================================================================
# 5-6. PLATELETS / WHITE CELLS
# =============================================================================

class ComparisonGateRule(RuleApplier):
    """
    Lab gate of the form "<100K/µL - avoid".

    When the patient value satisfies the comparison and the cell carries
    an avoid directive, every drug is withheld.
    """

    unit = ""

    def _cell(self, row: ProtocolRow) -> str:
        raise NotImplementedError

    def _value(self, patient: PatientSnapshot) -> Optional[float]:
        raise NotImplementedError

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = self._cell(row)
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        comparison = self.parser.extract_comparison(rule)
        if comparison is None:
            logger.warning(f"[{self.name}] no threshold in rule '{rule}' (protocol row {row.row_id})")
            return RuleOutcome.no_op("missing threshold")

        value = self._require(self._value(context.patient), context)
        if not comparison.holds(value):
            return RuleOutcome.no_op()

        directives = self.parser.parse_directives(rule)
        if not any(d.kind == DirectiveKind.AVOID for d in directives):
            logger.debug(f"[{self.name}] threshold {comparison} met but rule '{rule}' has no avoid directive")
            return RuleOutcome.no_op()

        labels = recommendation.drug_labels()
        return self._avoid_all(
            recommendation, rejection_reasons,
            comment=f"avoid {labels}: {self.dimension} {value:g}{self.unit} {comparison.operator} "
                    f"{comparison.threshold:g}{self.unit}",
            reason=f"Avoid triggered by {self.dimension} {value:g}{self.unit} "
                   f"(threshold {comparison}{self.unit}) for {labels} (rule='{rule}')",
        )


class PlateletRule(ComparisonGateRule):
    name = "PlateletRule"
    dimension = "platelet count"
    unit = "K/µL"

    def _cell(self, row):
        return row.platelet_rule

    def _value(self, patient):
        return patient.labs.platelet_count


class WhiteCellRule(ComparisonGateRule):
    name = "WhiteCellRule"
    dimension = "white cell count"

    def _cell(self, row):
        return row.white_cell_rule

    def _value(self, patient):
        return patient.labs.white_cell_count


# =============================================================================
# 7-8. SATURATION / SODIUM
# =============================================================================

class LowerBoundGateRule(RuleApplier):
    """Lab gate whose first integer is a lower bound; below it every drug is withheld."""

    unit = ""

    def _cell(self, row: ProtocolRow) -> str:
        raise NotImplementedError

    def _value(self, patient: PatientSnapshot) -> Optional[float]:
        raise NotImplementedError

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = self._cell(row)
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        limit = self.parser.extract_first_int(rule)
        if limit is None:
            logger.warning(f"[{self.name}] no threshold in rule '{rule}' (protocol row {row.row_id})")
            return RuleOutcome.no_op("missing threshold")

        value = self._require(self._value(context.patient), context)
        if value >= limit:
            return RuleOutcome.no_op()

        labels = recommendation.drug_labels()
        return self._avoid_all(
            recommendation, rejection_reasons,
            comment=f"avoid {labels}: {self.dimension} {value:g}{self.unit} < {limit}{self.unit}",
            reason=f"Avoid triggered by {self.dimension} {value:g}{self.unit} "
                   f"below {limit}{self.unit} for {labels} (rule='{rule}')",
        )


class SaturationRule(LowerBoundGateRule):
    name = "SaturationRule"
    dimension = "oxygen saturation"
    unit = "%"

    def _cell(self, row):
        return row.saturation_rule

    def _value(self, patient):
        return patient.labs.oxygen_saturation


class SodiumRule(LowerBoundGateRule):
    name = "SodiumRule"
    dimension = "sodium"
    unit = " mmol/L"

    def _cell(self, row):
        return row.sodium_rule

    def _value(self, patient):
        return patient.labs.sodium


# =============================================================================
# 9. HEPATIC (CHILD-PUGH)
# =============================================================================

class HepaticRule(RuleApplier):
    """
    Child-Pugh rule per drug, e.g. "A - NA  B - 500 mg 12h  C - avoid".

    "avoid" withholds only this drug. Doses and intervals are applied
    directly and registered with the aggregator.
    """

    name = "HepaticRule"
    dimension = "Child-Pugh"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = row.hepatic_rule_for(slot.role)
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        raw = self._require(context.patient.labs.hepatic_class, context)
        category = self._require(self.normalizer.hepatic_to_category(raw), context)

        clause = _first_clause(
            self.parser.parse_clauses(rule, HepaticClass.LETTERS),
            lambda c: c.category == category,
        )
        if clause is None:
            logger.debug(f"[{self.name}] no clause for Child-Pugh {category} in '{rule}'")
            return RuleOutcome.no_op()

        directives = self.parser.parse_directives(clause.directive_text)
        if any(d.kind == DirectiveKind.AVOID for d in directives):
            label = slot.label
            return self._avoid_slot(
                slot, recommendation, rejection_reasons,
                comment=f"avoid {label} for patient with {HepaticClass.get_label(category)}",
                reason=f"Avoid recommendation with drug {label} for Child-Pugh category {category} "
                       f"(rule='{clause.directive_text}')",
            )
        return self._apply_directives(slot, recommendation, context, directives, rule)


# =============================================================================
# 10. WEIGHT
# =============================================================================

_TRAILING_AMOUNT = re.compile(r"(\d+(?:[.,]\d+)?)\s*([^\d\s.]*)\s*\.?\s*$")
_DOSE_UNITS = {"mg"}
_INTERVAL_UNITS = {"h", "hr", "hrs", "hour", "hours"}


class WeightRule(RuleApplier):
    """
    Low-weight adjustment per drug, e.g. "<50 kg - 7.5 mg" or "<50 kg - 12h".

    Only evaluated for patients below the configured weight threshold.
    The trailing amount's unit decides between dose (mg) and interval (h);
    any other unit is a protocol configuration error.
    """

    name = "WeightRule"
    dimension = "weight"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = row.weight_rule_for(slot.role)
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        weight = self._require(context.patient.weight_kg, context)
        if weight >= self.settings.low_weight_threshold_kg:
            return RuleOutcome.no_op()

        cleaned = self.parser.sanitize(rule)
        m = _TRAILING_AMOUNT.search(cleaned)
        if not m:
            logger.warning(f"[{self.name}] no amount in rule '{rule}' (protocol row {row.row_id})")
            return RuleOutcome.no_op("missing amount")

        amount = float(m.group(1).replace(",", "."))
        unit = m.group(2).lower()
        if unit in _DOSE_UNITS:
            directive = Directive(DirectiveKind.SET_DOSE, amount)
        elif unit in _INTERVAL_UNITS:
            directive = Directive(DirectiveKind.SET_INTERVAL, amount)
        else:
            raise ProtocolConfigError(
                f"Unrecognised unit '{m.group(2)}' in weight rule '{rule}' "
                f"(protocol row {row.row_id}); expected mg or h"
            )

        recommendation.add_comment(
            f"System: weight {weight:g} kg below {self.settings.low_weight_threshold_kg:g} kg "
            f"for {slot.label}"
        )
        return self._apply_directives(slot, recommendation, context, [directive], rule)


# =============================================================================
# 11. RENAL (GFR)
# =============================================================================

class RenalRule(RuleApplier):
    """
    GFR rule shared by both drugs.

    Supports class clauses ("Class C - 12h") and numeric clauses
    ("<30 mL/min - reduce by 50%") in the same cell. A class clause for the
    patient's class wins; otherwise the first numeric clause the patient
    value satisfies applies. Letters and numbers are cross-matched through
    the normalizer.
    """

    name = "RenalRule"
    dimension = "GFR"

    def _evaluate(self, slot, recommendation, row, context, rejection_reasons):
        rule = row.renal_rule
        if self.parser.is_not_applicable(rule):
            return RuleOutcome.no_op()

        value = self._require(context.patient.labs.renal_class, context)
        clause = self.match_clause(self.parser.parse_clauses(rule, RenalClass.LETTERS), value)
        if clause is None:
            logger.info(f"[{self.name}] no GFR clause matched (value={value}, rule='{rule}')")
            return RuleOutcome.no_op()

        directives = self.parser.parse_directives(clause.directive_text)
        if any(d.kind == DirectiveKind.AVOID for d in directives):
            labels = recommendation.drug_labels()
            return self._avoid_all(
                recommendation, rejection_reasons,
                comment=f"avoid {labels}: GFR {value} matches '{clause.match_key} - {clause.directive_text}'",
                reason=f"Avoid all drugs for patient (GFR={value}, rule='{rule}')",
            )

        return self._apply_directives(
            slot, recommendation, context, directives, rule,
            primary_only_interval=self.parser.mentions_first_drug(clause.directive_text),
        )

    def match_clause(self, clauses: Iterable[RuleClause], value) -> Optional[RuleClause]:
        clauses = list(clauses)
        category = _first_clause(
            (c for c in clauses if c.is_category),
            lambda c: self.normalizer.renal_matches(c, value),
        )
        if category is not None:
            return category
        return _first_clause(
            (c for c in clauses if not c.is_category),
            lambda c: self.normalizer.renal_matches(c, value),
        )


def _first_clause(clauses, predicate) -> Optional[RuleClause]:
    for clause in clauses:
        if predicate(clause):
            return clause
    return None


# =============================================================================
# RULE CHAIN
# =============================================================================

def default_rule_chain() -> List[RuleApplier]:
    """The eleven appliers in evaluation order."""
    return [
        PainTrendRule(),
        AgeRule(),
        ContraindicationRule(),
        SensitivityRule(),
        PlateletRule(),
        WhiteCellRule(),
        SaturationRule(),
        SodiumRule(),
        HepaticRule(),
        WeightRule(),
        RenalRule(),
    ]
