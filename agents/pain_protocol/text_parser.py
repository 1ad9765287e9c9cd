"""
Pain Protocol Agent - Text Parser (Rule-Text Micro-Language)

This module turns the free-text cells of the treatment protocol table into
typed clauses and directives that every rule applier consumes uniformly.

================================================================================
THE PROTOCOL CELL LANGUAGE
================================================================================

Protocol tables are edited by clinicians in spreadsheets, so cells are noisy:
long dashes, non-breaking spaces, inconsistent casing and missing
punctuation are all common. A cell is a sequence of CLAUSES:

    ┌──────────────────────────────────────────────────────────────────────┐
    │  CELL TEXT                                 │  CLAUSES               │
    ├──────────────────────────────────────────────────────────────────────┤
    │  "Class B - 12h  Class C - avoid"          │  B → "12h"             │
    │                                            │  C → "avoid"           │
    ├──────────────────────────────────────────────────────────────────────┤
    │  "<30 mL/min - reduce by 50%"              │  <30 → "reduce by 50%" │
    ├──────────────────────────────────────────────────────────────────────┤
    │  ">75 years - avoid"                       │  >75 → "avoid"         │
    ├──────────────────────────────────────────────────────────────────────┤
    │  "A - NA  B - 500 mg 12h  C - avoid"       │  A → "NA"              │
    │                                            │  B → "500 mg 12h"      │
    │                                            │  C → "avoid"           │
    └──────────────────────────────────────────────────────────────────────┘

Each clause has a MATCH KEY (a class letter, or a comparison such as "<30")
and DIRECTIVE text, which parses into zero or more directives:

    avoid            → AVOID
    reduce by 50%    → REDUCE_BY_PERCENT(50)
    500 mg           → SET_DOSE(500)
    12h / q12h       → SET_INTERVAL(12)
    NA / anything    → NO_OP

An empty cell or the literal "NA" means the rule does not apply at all.

================================================================================
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


NOT_APPLICABLE_TOKENS = {"NA", "N/A", "N.A.", "N.A"}


# =============================================================================
# TYPES
# =============================================================================

class DirectiveKind(str, Enum):
    """Directive vocabulary of the protocol cells."""
    AVOID = "AVOID"
    REDUCE_BY_PERCENT = "REDUCE_BY_PERCENT"
    SET_DOSE = "SET_DOSE"
    SET_INTERVAL = "SET_INTERVAL"
    NO_OP = "NO_OP"


@dataclass(frozen=True)
class Directive:
    """A single typed instruction parsed from clause text."""
    kind: DirectiveKind
    value: Optional[float] = None


@dataclass(frozen=True)
class Comparison:
    """
    A numeric threshold such as "<100" or ">=75".

    ``holds(value)`` is True when the patient value satisfies the
    comparison, i.e. when the clause applies to the patient.
    """
    operator: str
    threshold: float

    def holds(self, value: float) -> bool:
        if self.operator == "<":
            return value < self.threshold
        if self.operator == "<=":
            return value <= self.threshold
        if self.operator == ">":
            return value > self.threshold
        if self.operator == ">=":
            return value >= self.threshold
        raise ValueError(f"Unsupported comparison operator '{self.operator}'")

    def __str__(self) -> str:
        return f"{self.operator}{self.threshold:g}"


@dataclass(frozen=True)
class RuleClause:
    """
    One (match key, directive text) pair of a protocol cell.

    Attributes:
        match_key: Class letter ("B") or comparison token ("<30")
        directive_text: Remaining clause text ("reduce by 50%")
        category: Class letter for categorical clauses
        comparison: Parsed threshold for numeric clauses
    """
    match_key: str
    directive_text: str
    category: Optional[str] = None
    comparison: Optional[Comparison] = None

    @property
    def is_category(self) -> bool:
        return self.category is not None


# =============================================================================
# PATTERNS
# =============================================================================

_DASHES = re.compile(r"[\u2010-\u2015\u2212]")
_SPACES = re.compile(r"[\u00a0\u2007\u202f\t\r\n]")
_MULTISPACE = re.compile(r" {2,}")

# Units that may follow a numeric threshold in a clause key.
_UNIT = (
    r"(?i:ml\s*/\s*min|years?|yrs?|y\.?o\.?"
    r"|k\s*/\s*[\u00b5\u03bcu]l|/\s*[\u00b5\u03bcu]l|[\u00b5\u03bcu]l|x\s*10\^?9\s*/\s*l|g\s*/\s*l"
    r"|mmol\s*/\s*l|meq\s*/\s*l|kg|%)"
)

_CLAUSE_START = re.compile(
    r"(?:(?<![A-Za-z])(?:(?i:class)\s*)?(?P<letter>(?i:[a-f]))(?![A-Za-z])"
    r"(?:\s*(?i:action))?\s*[:\-]"
    r"|(?P<op><=|>=|<|>)\s*(?P<num>\d+(?:[.,]\d+)?)\s*(?:" + _UNIT + r")?\s*[:\-]?)"
)

_AVOID = re.compile(r"\bavoid", re.IGNORECASE)
_REDUCE = re.compile(
    r"\breduc\w*(?:\s+(?:the\s+)?dose)?(?:\s+by)?\s*(\d+(?:\.\d+)?)\s*%",
    re.IGNORECASE,
)
_DOSE = re.compile(r"(\d+(?:\.\d+)?)\s*mg\b", re.IGNORECASE)
_INTERVAL = re.compile(r"(?<![\d.])(?:q\s*)?(\d+(?:\.\d+)?)\s*(?:h|hr|hrs|hours?)\b", re.IGNORECASE)
_FIRST_DRUG = re.compile(r"\bfirst\b", re.IGNORECASE)

_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_INTEGER = re.compile(r"\d+")
_COMPARISON = re.compile(r"(<=|>=|<|>)\s*(\d+(?:\.\d+)?)")
_ICD_CODE = re.compile(r"\b[A-Z]?\d{2,3}(?:\.[0-9A-Z]+)?\b")
_SUBSTANCE_SEPARATOR = re.compile(r"\s+OR\s+")


def _upper(letter: Optional[str]) -> Optional[str]:
    return letter.upper() if letter is not None else None


# =============================================================================
# PARSER
# =============================================================================

class RuleTextParser:
    """
    Shared tokenizer/parser for protocol rule cells.

    The parser is stateless; use ``get_parser()`` for the module-level
    instance.

    Example:
        >>> parser = get_parser()
        >>> parser.parse_clauses("Class B - 12h  Class C - avoid")
        [RuleClause(match_key='B', directive_text='12h', ...),
         RuleClause(match_key='C', directive_text='avoid', ...)]
        >>> parser.parse_directives("reduce by 50%")
        (Directive(kind=<DirectiveKind.REDUCE_BY_PERCENT>, value=50.0),)
    """

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def sanitize(self, text: Optional[str]) -> str:
        """Normalize dashes, exotic spaces and comparison glyphs, then trim."""
        if text is None:
            return ""
        cleaned = _DASHES.sub("-", str(text))
        cleaned = _SPACES.sub(" ", cleaned)
        cleaned = cleaned.replace("\u2264", "<=").replace("\u2265", ">=")
        cleaned = _MULTISPACE.sub(" ", cleaned)
        return cleaned.strip()

    def is_not_applicable(self, text: Optional[str]) -> bool:
        """True for an empty cell or the literal NA token."""
        cleaned = self.sanitize(text)
        return not cleaned or cleaned.upper() in NOT_APPLICABLE_TOKENS

    # -------------------------------------------------------------------------
    # Clauses and directives
    # -------------------------------------------------------------------------

    def parse_clauses(self, text: Optional[str], categories: str = "ABCDEF") -> List[RuleClause]:
        """
        Split a rule cell into (match key, directive text) clauses.

        Args:
            text: Raw cell text
            categories: Class letters valid for this dimension; other
                letters are treated as part of the directive text

        Returns:
            Clauses in cell order. An empty list means nothing matched,
            which callers treat as "no directive for this patient".
        """
        if self.is_not_applicable(text):
            return []
        cleaned = self.sanitize(text)

        starts = []
        for m in _CLAUSE_START.finditer(cleaned):
            letter = _upper(m.group("letter"))
            if letter is not None and letter not in categories:
                continue
            starts.append(m)

        clauses: List[RuleClause] = []
        for i, m in enumerate(starts):
            end = starts[i + 1].start() if i + 1 < len(starts) else len(cleaned)
            directive = cleaned[m.end():end].strip(" -:;,")
            letter = _upper(m.group("letter"))
            if letter is not None:
                clauses.append(RuleClause(letter, directive, category=letter))
            else:
                comparison = Comparison(m.group("op"), float(m.group("num").replace(",", ".")))
                clauses.append(RuleClause(str(comparison), directive, comparison=comparison))

        if not clauses:
            logger.debug(f"No clause recognised in rule text '{cleaned}'")
        return clauses

    def parse_directives(self, text: Optional[str]) -> Tuple[Directive, ...]:
        """
        Parse clause text into typed directives.

        AVOID dominates: when present it is the only directive returned.
        Text with no recognised instruction yields a single NO_OP.
        """
        if self.is_not_applicable(text):
            return (Directive(DirectiveKind.NO_OP),)
        cleaned = self.sanitize(text)

        if _AVOID.search(cleaned):
            return (Directive(DirectiveKind.AVOID),)

        directives: List[Directive] = []
        reduce = _REDUCE.search(cleaned)
        if reduce:
            directives.append(Directive(DirectiveKind.REDUCE_BY_PERCENT, float(reduce.group(1))))
        dose = _DOSE.search(cleaned)
        if dose:
            directives.append(Directive(DirectiveKind.SET_DOSE, float(dose.group(1))))
        interval = _INTERVAL.search(cleaned)
        if interval:
            directives.append(Directive(DirectiveKind.SET_INTERVAL, float(interval.group(1))))

        if not directives:
            logger.debug(f"No directive recognised in '{cleaned}'")
            return (Directive(DirectiveKind.NO_OP),)
        return tuple(directives)

    def mentions_first_drug(self, text: Optional[str]) -> bool:
        """True when a directive is scoped to the first (primary) drug."""
        return bool(_FIRST_DRUG.search(self.sanitize(text)))

    # -------------------------------------------------------------------------
    # Value extraction helpers
    # -------------------------------------------------------------------------

    def extract_first_int(self, text: Optional[str]) -> Optional[int]:
        m = _INTEGER.search(self.sanitize(text))
        return int(m.group()) if m else None

    def extract_first_number(self, text: Optional[str]) -> Optional[float]:
        m = _NUMBER.search(self.sanitize(text).replace(",", "."))
        return float(m.group()) if m else None

    def extract_comparison(self, text: Optional[str]) -> Optional[Comparison]:
        """First "<n" / ">=n" style threshold in the text."""
        m = _COMPARISON.search(self.sanitize(text))
        if not m:
            return None
        return Comparison(m.group(1), float(m.group(2)))

    def extract_icd_codes(self, text: Optional[str]) -> List[str]:
        """Diagnosis codes mentioned in a free-text contraindication list."""
        return _ICD_CODE.findall(self.sanitize(text).upper())

    def icd_base_code(self, code: str) -> str:
        """
        Truncate a diagnosis code to its comparable base form.

        The base keeps everything up to and including one character after
        the decimal point: "K70.31" → "K70.3", "K70" → "K70".
        """
        code = code.strip().upper()
        dot = code.find(".")
        if dot == -1:
            return code
        return code[:dot + 2]

    def split_substances(self, text: Optional[str]) -> List[str]:
        """Split an "X OR Y OR Z" sensitivity list into uppercase tokens."""
        if self.is_not_applicable(text):
            return []
        parts = _SUBSTANCE_SEPARATOR.split(self.sanitize(text))
        return [p.strip().upper() for p in parts if p.strip()]


# =============================================================================
# MODULE-LEVEL PARSER INSTANCE
# =============================================================================

_parser_instance: Optional[RuleTextParser] = None


def get_parser() -> RuleTextParser:
    """Get the singleton rule-text parser."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = RuleTextParser()
    return _parser_instance
