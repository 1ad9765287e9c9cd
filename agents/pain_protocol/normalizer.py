"""
Pain Protocol Agent - Clinical Value Normalizer

Protocol cells and patient records do not always agree on representation:
a renal rule may say "Class C - 12h" while the lab panel reports a GFR of
52 mL/min, or the rule may say "<30 mL/min - avoid" while the record only
carries the class letter "E". This module converts between both forms so
either representation matches.

    numeric → category   the band whose range contains the value
                         (boundary-inclusive at the lower, more severe end)
    category → numeric   the band's representative midpoint
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Union

from .config import HepaticClass, RenalClass
from .text_parser import RuleClause

logger = logging.getLogger(__name__)

_LETTER_VALUE = re.compile(r"^(?:class\s*|child[\s-]*pugh\s*)?([A-F])$", re.IGNORECASE)
_NUMERIC_VALUE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*(?:ml\s*/\s*min)?\s*$", re.IGNORECASE)

RawValue = Optional[Union[int, float, str]]


class ClinicalValueNormalizer:
    """Bidirectional conversion for renal (GFR) and hepatic (Child-Pugh) values."""

    # -------------------------------------------------------------------------
    # Raw value inspection
    # -------------------------------------------------------------------------

    @staticmethod
    def _as_letter(value: RawValue) -> Optional[str]:
        if value is None or isinstance(value, (int, float)):
            return None
        m = _LETTER_VALUE.match(str(value).strip())
        return m.group(1).upper() if m else None

    @staticmethod
    def _as_number(value: RawValue) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        m = _NUMERIC_VALUE.match(str(value))
        return float(m.group(1).replace(",", ".")) if m else None

    # -------------------------------------------------------------------------
    # Renal
    # -------------------------------------------------------------------------

    def renal_to_category(self, value: RawValue) -> Optional[str]:
        """GFR class letter for a lettered or numeric patient value."""
        letter = self._as_letter(value)
        if letter is not None:
            return letter
        number = self._as_number(value)
        if number is None:
            if value is not None:
                logger.warning(f"Unrecognised renal value '{value}'")
            return None
        for band_letter, low, _, _ in RenalClass.BANDS:
            if number >= low:
                return band_letter
        return RenalClass.BANDS[-1][0]

    def renal_to_number(self, value: RawValue) -> Optional[float]:
        """mL/min for a numeric value, or the class midpoint for a letter."""
        number = self._as_number(value)
        if number is not None:
            return number
        letter = self._as_letter(value)
        if letter is None:
            if value is not None:
                logger.warning(f"Unrecognised renal value '{value}'")
            return None
        return RenalClass.midpoint(letter)

    def renal_matches(self, clause: RuleClause, value: RawValue) -> bool:
        """
        Whether a renal clause applies to the patient value.

        Category clauses compare class letters (converting a numeric value
        to its band); numeric clauses compare mL/min (converting a letter
        to its band midpoint).
        """
        if clause.is_category:
            return self.renal_to_category(value) == clause.category
        number = self.renal_to_number(value)
        if number is None or clause.comparison is None:
            return False
        return clause.comparison.holds(number)

    # -------------------------------------------------------------------------
    # Hepatic
    # -------------------------------------------------------------------------

    def hepatic_to_category(self, value: RawValue) -> Optional[str]:
        """Child-Pugh class letter (A, B or C)."""
        letter = self._as_letter(value)
        if letter is None or letter not in HepaticClass.LETTERS:
            if value is not None:
                logger.warning(f"Unrecognised Child-Pugh value '{value}'")
            return None
        return letter


_normalizer_instance: Optional[ClinicalValueNormalizer] = None


def get_normalizer() -> ClinicalValueNormalizer:
    """Get the singleton normalizer."""
    global _normalizer_instance
    if _normalizer_instance is None:
        _normalizer_instance = ClinicalValueNormalizer()
    return _normalizer_instance
