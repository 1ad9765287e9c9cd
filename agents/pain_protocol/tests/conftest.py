"""
Pain Protocol Agent - Shared Test Fixtures

Factories for patients and protocol rows. Every rule cell defaults to "NA"
so a test only spells out the rule it exercises.
"""

from datetime import date

import pytest

from agents.pain_protocol.aggregator import CorrectionAggregator
from agents.pain_protocol.engine import RecommendationAssembler
from agents.pain_protocol.model import (
    DrugRole,
    LabPanel,
    PainHistory,
    PatientSnapshot,
    ProtocolRow,
)
from agents.pain_protocol.rules import RuleContext


REFERENCE_DATE = date(2025, 6, 1)

HEALTHY_LABS = {
    "renal_class": 95.0,
    "platelet_count": 250.0,
    "white_cell_count": 7.0,
    "sodium": 140.0,
    "oxygen_saturation": 98.0,
    "hepatic_class": "A",
}

RULE_CELLS = [
    "primary_age_rule", "primary_weight_rule", "primary_hepatic_rule",
    "alternative_age_rule", "alternative_weight_rule", "alternative_hepatic_rule",
    "renal_rule", "platelet_rule", "white_cell_rule", "saturation_rule",
    "sodium_rule", "sensitivity_rule", "contraindications",
]


def build_patient(
    patient_id="P001",
    age=45,
    weight_kg=70.0,
    allergies=(),
    diagnoses=(),
    **labs,
):
    values = dict(HEALTHY_LABS)
    values.update(labs)
    birth_date = date(REFERENCE_DATE.year - age, 1, 1) if age is not None else None
    return PatientSnapshot(
        patient_id=patient_id,
        birth_date=birth_date,
        weight_kg=weight_kg,
        labs=LabPanel(**values),
        allergies=frozenset(allergies),
        diagnoses=frozenset(diagnoses),
        reference_date=REFERENCE_DATE,
    )


def build_row(row_id=1, **overrides):
    values = dict(
        pain_level="4-6",
        regimen_hierarchy="1",
        route="PO",
        primary_drug="Paracetamol",
        primary_ingredient="Paracetamol",
        primary_dose="1000",
        primary_interval="6",
        alternative_drug="Ibuprofen",
        alternative_ingredient="Ibuprofen",
        alternative_dose="400",
        alternative_interval="8",
    )
    values.update({cell: "NA" for cell in RULE_CELLS})
    values.update(overrides)
    return ProtocolRow(row_id=row_id, **values)


def run_applier(applier, row, patient, history=(), role=DrugRole.PRIMARY):
    """Apply one rule to one slot of a fresh candidate."""
    recommendation = RecommendationAssembler().build_candidate(row)
    context = RuleContext(
        patient=patient,
        pain_history=PainHistory(tuple(history)),
        aggregator=CorrectionAggregator(),
    )
    outcome = applier.apply(
        recommendation.slot(role), recommendation, row, context, recommendation.rejection_reasons
    )
    return recommendation, context, outcome


@pytest.fixture
def make_patient():
    """Factory for patient snapshots with healthy defaults."""
    return build_patient


@pytest.fixture
def make_row():
    """Factory for protocol rows with every rule cell set to NA."""
    return build_row


@pytest.fixture
def apply_rule():
    """Run a single applier against a fresh candidate recommendation."""
    return run_applier


@pytest.fixture
def assembler():
    return RecommendationAssembler()
