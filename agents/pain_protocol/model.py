"""
Pain Protocol Agent - Data Model

This module defines the data structures that flow through the treatment
protocol rule engine.

================================================================================
OBJECT LIFECYCLE
================================================================================

    ┌──────────────────────┐     ┌──────────────────────┐
    │   PatientSnapshot    │     │     ProtocolRow      │
    │   PainHistory        │     │  (reference data,    │
    │ (supplied per call,  │     │   loaded once)       │
    │  never mutated)      │     │                      │
    └──────────┬───────────┘     └──────────┬───────────┘
               │                            │
               └─────────────┬──────────────┘
                             ▼
               ┌───────────────────────────┐
               │      Recommendation       │
               │  ┌─────────┐ ┌─────────┐  │
               │  │ PRIMARY │ │  ALT.   │  │  created fresh per protocol row,
               │  │DrugSlot │ │DrugSlot │  │  mutated by the rule pipeline,
               │  └─────────┘ └─────────┘  │  handed back to the caller
               │  comments[]               │
               │  rejection_reasons[]      │
               └───────────────────────────┘

A DrugSlot moves from ACTIVE to CLEARED exactly once and never reverts.
Every rule applier invocation is summarised as one RuleOutcome, and the
pipeline as a whole as one PipelineOutcome (proceed or abort).

================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ProtocolConfigError(ValueError):
    """A protocol cell cannot be interpreted safely (e.g. an unknown unit)."""


class MissingClinicalValueError(ValueError):
    """
    A non-empty protocol rule needs a patient value that is absent.

    Proceeding without the value could produce an unsafe recommendation,
    so the whole generation call fails instead of skipping the rule.
    """

    def __init__(self, dimension: str, patient_id: Optional[str] = None):
        self.dimension = dimension
        self.patient_id = patient_id
        super().__init__(
            f"Patient {patient_id or 'unknown'} has no {dimension} value "
            f"but the protocol defines a {dimension} rule"
        )


# =============================================================================
# ENUMERATIONS
# =============================================================================

class DrugRole(str, Enum):
    """Position of a drug inside a recommendation."""
    PRIMARY = "PRIMARY"
    ALTERNATIVE = "ALTERNATIVE"


class DrugRoute(str, Enum):
    """Route of administration."""
    PO = "PO"   # oral
    IV = "IV"   # intravenous
    IM = "IM"   # intramuscular
    SC = "SC"   # subcutaneous
    SL = "SL"   # sublingual

    @classmethod
    def parse(cls, text: Optional[str]) -> Optional["DrugRoute"]:
        """Parse a route cell; unknown values are logged and yield None."""
        if not text or not text.strip():
            return None
        token = text.strip().upper()
        try:
            return cls(token)
        except ValueError:
            logger.warning(f"Unknown route of administration '{text}'")
            return None


class RecommendationStatus(str, Enum):
    """Lifecycle status of a recommendation handed back to the caller."""
    PENDING = "PENDING"
    FAILED = "FAILED"


class OutcomeKind(str, Enum):
    """Effect of one rule applier invocation."""
    NO_OP = "NO_OP"
    ADJUST_DOSE = "ADJUST_DOSE"
    ADJUST_INTERVAL = "ADJUST_INTERVAL"
    AVOID = "AVOID"
    STOP_GENERATION = "STOP_GENERATION"


# =============================================================================
# PATIENT INPUTS
# =============================================================================

@dataclass(frozen=True)
class LabPanel:
    """
    Most recent laboratory panel of a patient.

    Attributes:
        renal_class: GFR as a number (mL/min) or a class letter A-F
        platelet_count: Platelets in K/µL
        white_cell_count: White blood cells in x10^9/L
        sodium: Serum sodium in mmol/L
        oxygen_saturation: SpO2 in percent
        hepatic_class: Child-Pugh class A, B or C
    """
    renal_class: Optional[Union[float, str]] = None
    platelet_count: Optional[float] = None
    white_cell_count: Optional[float] = None
    sodium: Optional[float] = None
    oxygen_saturation: Optional[float] = None
    hepatic_class: Optional[str] = None


@dataclass(frozen=True)
class PatientSnapshot:
    """
    Read-only clinical snapshot used for one recommendation generation.

    Age is derived from the birth date, measured on ``reference_date``
    (today when not given).
    """
    patient_id: str
    birth_date: Optional[date] = None
    weight_kg: Optional[float] = None
    labs: LabPanel = field(default_factory=LabPanel)
    allergies: FrozenSet[str] = frozenset()
    diagnoses: FrozenSet[str] = frozenset()
    reference_date: Optional[date] = None

    @property
    def age(self) -> Optional[int]:
        """Age in full years, or None when the birth date is unknown."""
        if self.birth_date is None:
            return None
        today = self.reference_date or date.today()
        years = today.year - self.birth_date.year
        if (today.month, today.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years


@dataclass(frozen=True)
class PainHistory:
    """Pain scores of one patient, oldest first."""
    scores: Tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.scores)


# =============================================================================
# PROTOCOL REFERENCE DATA
# =============================================================================

@dataclass(frozen=True)
class PainRange:
    """Inclusive pain-score range of a protocol row; empty ranges match nothing."""
    low: Optional[int] = None
    high: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.low is None or self.high is None or self.low > self.high

    def contains(self, score: int) -> bool:
        if self.is_empty:
            return False
        return self.low <= score <= self.high

    def __str__(self) -> str:
        return "empty" if self.is_empty else f"{self.low}-{self.high}"


@dataclass(frozen=True)
class ProtocolRow:
    """
    One row of the treatment protocol table.

    Rule cells keep their sanitized free text; they are interpreted by the
    rule appliers at evaluation time. Empty or "NA" cells mean the rule
    does not apply.
    """
    row_id: int
    pain_level: str
    regimen_hierarchy: str = ""
    route: str = ""

    primary_drug: str = ""
    primary_ingredient: str = ""
    primary_dose: str = ""
    primary_age_rule: str = ""
    primary_interval: str = ""
    primary_weight_rule: str = ""
    primary_hepatic_rule: str = ""

    alternative_drug: str = ""
    alternative_ingredient: str = ""
    alternative_dose: str = ""
    alternative_age_rule: str = ""
    alternative_interval: str = ""
    alternative_weight_rule: str = ""
    alternative_hepatic_rule: str = ""

    renal_rule: str = ""
    platelet_rule: str = ""
    white_cell_rule: str = ""
    saturation_rule: str = ""
    sodium_rule: str = ""
    sensitivity_rule: str = ""
    contraindications: str = ""

    def age_rule_for(self, role: DrugRole) -> str:
        return self.primary_age_rule if role == DrugRole.PRIMARY else self.alternative_age_rule

    def weight_rule_for(self, role: DrugRole) -> str:
        return self.primary_weight_rule if role == DrugRole.PRIMARY else self.alternative_weight_rule

    def hepatic_rule_for(self, role: DrugRole) -> str:
        return self.primary_hepatic_rule if role == DrugRole.PRIMARY else self.alternative_hepatic_rule

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


# =============================================================================
# DRUG SLOT AND RECOMMENDATION
# =============================================================================

@dataclass
class DrugSlot:
    """
    One candidate prescription inside a recommendation.

    Attributes:
        role: PRIMARY or ALTERNATIVE
        drug_name: Prescribable drug name
        active_ingredient: Substance corrections are aggregated on
        dose: Dose in mg
        interval: Dosing interval in hours
        route: Route of administration
        adjustments: Annotations for every dose/interval change
        cleared: True once a rule withheld this drug
        cleared_reason: Why the drug was withheld
        withheld_drug: Label of the drug at the moment it was withheld
    """
    role: DrugRole
    drug_name: str = ""
    active_ingredient: str = ""
    dose: Optional[float] = None
    interval: Optional[float] = None
    route: Optional[DrugRoute] = None
    adjustments: List[str] = field(default_factory=list)
    cleared: bool = False
    cleared_reason: Optional[str] = None
    withheld_drug: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """A slot is active while it still names an active ingredient."""
        return not self.cleared and bool(self.active_ingredient.strip())

    @property
    def ingredient_key(self) -> str:
        return self.active_ingredient.strip().upper()

    @property
    def label(self) -> str:
        """Best available name for audit messages."""
        return self.drug_name or self.active_ingredient or self.withheld_drug or "N/A"

    def clear(self, reason: str) -> None:
        """Withhold this drug. Clearing an already cleared slot is a no-op."""
        if self.cleared:
            return
        self.withheld_drug = self.drug_name or self.active_ingredient or None
        self.drug_name = ""
        self.active_ingredient = ""
        self.dose = None
        self.interval = None
        self.cleared = True
        self.cleared_reason = reason

    def set_dose(self, value: float, note: str) -> None:
        if self.cleared:
            raise RuntimeError(f"Cannot adjust dose of withheld drug {self.label}")
        self.dose = value
        self.adjustments.append(note)

    def set_interval(self, value: float, note: str) -> None:
        if self.cleared:
            raise RuntimeError(f"Cannot adjust interval of withheld drug {self.label}")
        self.interval = value
        self.adjustments.append(note)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "role": self.role.value,
            "drug_name": self.drug_name or None,
            "active_ingredient": self.active_ingredient or None,
            "dose_mg": self.dose,
            "interval_hours": self.interval,
            "route": self.route.value if self.route else None,
            "adjustments": list(self.adjustments),
            "cleared": self.cleared,
            "cleared_reason": self.cleared_reason,
            "withheld_drug": self.withheld_drug,
        }


@dataclass
class Recommendation:
    """
    A candidate (or final) drug recommendation for one patient.

    ``comments`` is the human-readable audit trail; ``rejection_reasons``
    is the system-facing list of why drugs were withheld.
    """
    regimen_hierarchy: str = ""
    protocol_row_id: Optional[int] = None
    status: RecommendationStatus = RecommendationStatus.PENDING
    slots: List[DrugSlot] = field(default_factory=list)
    comments: List[str] = field(default_factory=list)
    rejection_reasons: List[str] = field(default_factory=list)
    contraindications: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def failed(cls, reasons: List[str], comment: Optional[str] = None) -> "Recommendation":
        """Build the failure result returned when nothing is viable."""
        return cls(
            status=RecommendationStatus.FAILED,
            comments=[comment] if comment else [],
            rejection_reasons=list(reasons),
        )

    def slot(self, role: DrugRole) -> Optional[DrugSlot]:
        for candidate in self.slots:
            if candidate.role == role:
                return candidate
        return None

    @property
    def primary(self) -> Optional[DrugSlot]:
        return self.slot(DrugRole.PRIMARY)

    @property
    def alternative(self) -> Optional[DrugSlot]:
        return self.slot(DrugRole.ALTERNATIVE)

    @property
    def is_viable(self) -> bool:
        """At least one slot still carries an active ingredient."""
        return any(s.is_active for s in self.slots)

    def add_comment(self, text: str) -> None:
        self.comments.append(text)

    def clear_all(self, reason: str) -> None:
        """Withhold every drug of this recommendation."""
        for s in self.slots:
            s.clear(reason)

    def drug_labels(self) -> str:
        """Names of all drugs, joined for audit messages."""
        return " and ".join(s.label for s in self.slots) or "N/A"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "regimen_hierarchy": self.regimen_hierarchy or None,
            "protocol_row_id": self.protocol_row_id,
            "status": self.status.value,
            "drugs": [s.to_dict() for s in self.slots],
            "comments": list(self.comments),
            "rejection_reasons": list(self.rejection_reasons),
            "contraindications": list(self.contraindications),
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class RuleOutcome:
    """
    Effect of a single rule applier invocation.

    A dose adjustment may also carry an interval when the same clause
    sets both (e.g. Child-Pugh "B - 500 mg 12h").
    """
    kind: OutcomeKind
    reason: str = ""
    dose: Optional[float] = None
    interval: Optional[float] = None

    @classmethod
    def no_op(cls, reason: str = "") -> "RuleOutcome":
        return cls(OutcomeKind.NO_OP, reason)

    @classmethod
    def adjust(
        cls,
        reason: str,
        dose: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> "RuleOutcome":
        if dose is None and interval is None:
            return cls.no_op(reason)
        kind = OutcomeKind.ADJUST_DOSE if dose is not None else OutcomeKind.ADJUST_INTERVAL
        return cls(kind, reason, dose, interval)

    @classmethod
    def avoid(cls, reason: str) -> "RuleOutcome":
        return cls(OutcomeKind.AVOID, reason)

    @classmethod
    def stop(cls, reason: str) -> "RuleOutcome":
        return cls(OutcomeKind.STOP_GENERATION, reason)


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of running the rule pipeline over one protocol row."""
    aborted: bool = False
    reason: str = ""

    @classmethod
    def proceed(cls) -> "PipelineOutcome":
        return cls(False, "")

    @classmethod
    def abort(cls, reason: str) -> "PipelineOutcome":
        return cls(True, reason)
