"""
Pain Protocol Agent - Recommendation Engine

This module orchestrates one recommendation-generation call:

    patient snapshot + pain score
              │
              ▼
    ┌───────────────────┐   rows whose pain range contains the score
    │ ProtocolSelector  │──────────────────────────────────────────┐
    └───────────────────┘                                          │
                                                                   ▼
    ┌──────────────────────────────────────────────────────────────────────┐
    │ RecommendationAssembler (per row)                                   │
    │                                                                      │
    │   BUILDING ──► EVALUATING ──► VIABLE   (≥1 drug still active)        │
    │                    │     └──► REJECTED (reasons kept in shared pool) │
    │                    │                                                 │
    │                    └── pain-trend abort ──► FAILED (stop all rows)   │
    └──────────────────────────────────────────────────────────────────────┘
                                     │
                                     ▼
       first viable candidate (source order)  or  FAILED with all reasons

Each row is evaluated by a RulePipeline with its own CorrectionAggregator,
so corrections never leak between rows or patients.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence

from .aggregator import CorrectionAggregator
from .model import (
    DrugRole,
    DrugRoute,
    DrugSlot,
    OutcomeKind,
    PainHistory,
    PainRange,
    PatientSnapshot,
    PipelineOutcome,
    ProtocolRow,
    Recommendation,
    RecommendationStatus,
)
from .rules import RuleApplier, RuleContext, default_rule_chain
from .text_parser import get_parser

logger = logging.getLogger(__name__)

_RANGE = re.compile(r"^(\d+)\s*(?:-|to)\s*(\d+)$", re.IGNORECASE)
_SINGLE = re.compile(r"^(\d+)$")


# =============================================================================
# PROTOCOL SELECTOR
# =============================================================================

class ProtocolSelector:
    """Filters protocol rows by the pain-level range they cover."""

    def __init__(self):
        self.parser = get_parser()

    def parse_range(self, text: str) -> PainRange:
        """
        Parse a pain-level cell such as "4-6".

        A single number covers exactly that score. Anything else parses to
        an empty range and is reported as a data-quality issue.
        """
        cleaned = self.parser.sanitize(text)
        m = _RANGE.match(cleaned)
        if m:
            pain_range = PainRange(int(m.group(1)), int(m.group(2)))
            if pain_range.is_empty:
                logger.warning(f"Inverted pain level range '{text}'; row will never match")
            return pain_range
        m = _SINGLE.match(cleaned)
        if m:
            return PainRange(int(m.group(1)), int(m.group(1)))
        logger.warning(f"Malformed pain level range '{text}'; row will never match")
        return PainRange()

    def select(self, rows: Iterable[ProtocolRow], pain_score: int) -> List[ProtocolRow]:
        selected = [r for r in rows if self.parse_range(r.pain_level).contains(pain_score)]
        logger.info(f"Selected {len(selected)} protocol row(s) for pain score {pain_score}")
        return selected


# =============================================================================
# RULE PIPELINE
# =============================================================================

class RulePipeline:
    """Runs the appliers in order over both slots of one candidate."""

    def __init__(self, appliers: Optional[Sequence[RuleApplier]] = None):
        self.appliers = list(appliers) if appliers is not None else default_rule_chain()

    def run(
        self,
        recommendation: Recommendation,
        row: ProtocolRow,
        patient: PatientSnapshot,
        pain_history: PainHistory,
    ) -> PipelineOutcome:
        aggregator = CorrectionAggregator()
        context = RuleContext(patient=patient, pain_history=pain_history, aggregator=aggregator)

        logger.info(
            f"Evaluating protocol row {row.row_id} for patient {patient.patient_id}",
            extra={"row_id": row.row_id, "patient_id": patient.patient_id},
        )

        for applier in self.appliers:
            for slot in recommendation.slots:
                outcome = applier.apply(slot, recommendation, row, context, recommendation.rejection_reasons)
                if outcome.kind == OutcomeKind.STOP_GENERATION:
                    return PipelineOutcome.abort(outcome.reason)

        for slot in recommendation.slots:
            aggregator.finalize(slot)

        logger.info(
            f"Protocol row {row.row_id} evaluated: viable={recommendation.is_viable}",
            extra={"row_id": row.row_id, "corrections": len(aggregator)},
        )
        return PipelineOutcome.proceed()


# =============================================================================
# RECOMMENDATION ASSEMBLER
# =============================================================================

class RecommendationAssembler:
    """
    Produces exactly one Recommendation per generation call.

    Example:
        >>> assembler = RecommendationAssembler()
        >>> rec = assembler.generate(patient, 5, PainHistory((4, 5)), rows)
        >>> rec.status
        <RecommendationStatus.PENDING: 'PENDING'>
    """

    def __init__(
        self,
        pipeline: Optional[RulePipeline] = None,
        selector: Optional[ProtocolSelector] = None,
    ):
        self.pipeline = pipeline or RulePipeline()
        self.selector = selector or ProtocolSelector()
        self.parser = get_parser()

    def build_candidate(self, row: ProtocolRow) -> Recommendation:
        """Create a fresh recommendation with PRIMARY and ALTERNATIVE slots."""
        route = DrugRoute.parse(row.route)
        primary = DrugSlot(
            role=DrugRole.PRIMARY,
            drug_name=row.primary_drug or row.primary_ingredient,
            active_ingredient=row.primary_ingredient or row.primary_drug,
            dose=self.parser.extract_first_number(row.primary_dose),
            interval=self.parser.extract_first_number(row.primary_interval),
            route=route,
        )
        alternative = DrugSlot(
            role=DrugRole.ALTERNATIVE,
            drug_name=row.alternative_drug or row.alternative_ingredient,
            active_ingredient=row.alternative_ingredient or row.alternative_drug,
            dose=self.parser.extract_first_number(row.alternative_dose),
            interval=self.parser.extract_first_number(row.alternative_interval),
            route=route,
        )
        return Recommendation(
            regimen_hierarchy=row.regimen_hierarchy,
            protocol_row_id=row.row_id,
            slots=[primary, alternative],
        )

    def generate(
        self,
        patient: PatientSnapshot,
        pain_score: int,
        pain_history: PainHistory,
        protocols: Sequence[ProtocolRow],
    ) -> Recommendation:
        """
        Generate the recommendation for one patient and pain score.

        Returns:
            The first viable candidate in protocol order (status PENDING),
            or a FAILED recommendation carrying every rejection reason.

        Raises:
            MissingClinicalValueError: a populated rule needs an absent value
            ProtocolConfigError: a protocol cell cannot be interpreted
        """
        rows = self.selector.select(protocols, pain_score)
        if not rows:
            reason = f"No treatment protocol covers pain score {pain_score}"
            logger.warning(reason, extra={"patient_id": patient.patient_id})
            return Recommendation.failed([reason], comment=f"System: {reason}")

        candidates: List[Recommendation] = []
        rejection_pool: List[str] = []

        for row in rows:
            recommendation = self.build_candidate(row)
            outcome = self.pipeline.run(recommendation, row, patient, pain_history)

            if outcome.aborted:
                rejection_pool.extend(recommendation.rejection_reasons)
                logger.warning(
                    f"Recommendation generation stopped for patient {patient.patient_id}: {outcome.reason}"
                )
                return Recommendation.failed(rejection_pool, comment=f"System: {outcome.reason}")

            if recommendation.is_viable:
                if not self.parser.is_not_applicable(row.contraindications):
                    recommendation.contraindications.append(row.contraindications)
                candidates.append(recommendation)
            else:
                if not recommendation.rejection_reasons:
                    recommendation.rejection_reasons.append(
                        f"Protocol row {row.row_id} defines no drug with an active ingredient"
                    )
                rejection_pool.extend(recommendation.rejection_reasons)
                logger.info(f"Protocol row {row.row_id} rejected: all drugs withheld")

        if not candidates:
            logger.warning(
                f"No viable recommendation for patient {patient.patient_id} "
                f"({len(rejection_pool)} rejection reason(s))"
            )
            return Recommendation.failed(
                rejection_pool,
                comment=f"System: no viable recommendation for pain score {pain_score}",
            )

        chosen = candidates[0]
        chosen.status = RecommendationStatus.PENDING
        logger.info(
            f"Recommendation selected for patient {patient.patient_id}: protocol row "
            f"{chosen.protocol_row_id} ({len(candidates)} viable candidate(s))"
        )
        return chosen
