"""
Pain Protocol Agent - Correction Aggregator

Several rules may each propose a dose or an interval for the same active
ingredient (e.g. the Child-Pugh rule sets 500 mg and the renal rule then
reduces by 50%). The aggregator collects every proposal during one rule
pipeline run and resolves them conservatively once the run completes:

    dose      → minimum of all proposals
    interval  → maximum of all proposals

An aggregator instance belongs to exactly one protocol row of one
generation call; the pipeline creates a fresh one per row.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .model import DrugSlot

logger = logging.getLogger(__name__)


class CorrectionAggregator:
    """Collects dose/interval proposals keyed by active ingredient."""

    def __init__(self):
        self._doses: Dict[str, List[float]] = {}
        self._intervals: Dict[str, List[float]] = {}

    @staticmethod
    def _key(ingredient: str) -> str:
        return (ingredient or "").strip().upper()

    def record_dose(self, ingredient: str, value: float) -> None:
        key = self._key(ingredient)
        if not key:
            return
        self._doses.setdefault(key, []).append(float(value))
        logger.debug(f"Dose proposal for {key}: {value}")

    def record_interval(self, ingredient: str, value: float) -> None:
        key = self._key(ingredient)
        if not key:
            return
        self._intervals.setdefault(key, []).append(float(value))
        logger.debug(f"Interval proposal for {key}: {value}")

    def final_dose(self, ingredient: str) -> Optional[float]:
        values = self._doses.get(self._key(ingredient))
        return min(values) if values else None

    def final_interval(self, ingredient: str) -> Optional[float]:
        values = self._intervals.get(self._key(ingredient))
        return max(values) if values else None

    def finalize(self, slot: DrugSlot) -> bool:
        """
        Write the aggregated dose and interval onto an active slot.

        Returns:
            True if the slot was changed. Cleared slots are skipped.
        """
        if not slot.is_active:
            return False

        changed = False
        dose = self.final_dose(slot.active_ingredient)
        if dose is not None and dose != slot.dose:
            slot.set_dose(dose, f"Final dose {dose:g} mg (minimum of all corrections)")
            changed = True
        interval = self.final_interval(slot.active_ingredient)
        if interval is not None and interval != slot.interval:
            slot.set_interval(interval, f"Final interval {interval:g}h (maximum of all corrections)")
            changed = True

        if dose is not None or interval is not None:
            logger.info(
                f"Aggregated corrections for {slot.ingredient_key}: "
                f"dose={dose}, interval={interval}"
            )
        return changed

    def reset(self) -> None:
        self._doses.clear()
        self._intervals.clear()

    def __len__(self) -> int:
        return sum(len(v) for v in self._doses.values()) + sum(len(v) for v in self._intervals.values())
