"""
Pain Protocol Agent - Protocol Table Loader

Reads the treatment protocol table maintained by the clinical team (Excel
workbook or CSV export) into immutable ProtocolRow records.

Columns are matched by header name when the header is recognisable and
by position otherwise. Positional order:

     1 pain level              9 first weight rule      17 GFR
     2 regimen hierarchy      10 first Child-Pugh       18 PLT
     3 route                  11 second active ingr.    19 WBC
     4 first drug             12 second dose (mg)       20 SAT
     5 first active ingr.     13 second age rule        21 sodium
     6 first dose (mg)        14 second interval (h)    22 avoid if sensitivity
     7 first age rule         15 second weight rule     23 contraindications
     8 first interval (h)     16 second Child-Pugh

Every cell is sanitized (dashes, non-breaking spaces, trimming); the
literal "NA" is kept as text so rules can recognise it.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from .config import settings
from .model import ProtocolConfigError, ProtocolRow
from .text_parser import get_parser

logger = logging.getLogger(__name__)


# (field, header aliases) in positional order
PROTOCOL_COLUMNS = [
    ("pain_level", ["painlevel", "pain", "vas", "painrange"]),
    ("regimen_hierarchy", ["regimenhierarchy", "hierarchy", "regimen"]),
    ("route", ["route", "routeofadministration"]),
    ("primary_drug", ["firstdrug", "primarydrug", "drug"]),
    ("primary_ingredient", ["firstdrugactivemoiety", "firstactivemoiety", "firstactiveingredient", "primaryingredient"]),
    ("primary_dose", ["firstdosingmg", "firstdosing", "firstdose", "primarydose"]),
    ("primary_age_rule", ["firstageadjustments", "firstage", "primaryagerule"]),
    ("primary_interval", ["firstintervalhrs", "firstinterval", "primaryinterval"]),
    ("primary_weight_rule", ["weightkg", "firstweightkg", "firstweight", "primaryweightrule"]),
    ("primary_hepatic_rule", ["firstchildpugh", "primaryhepaticrule"]),
    ("alternative_ingredient", ["seconddrugactivemoiety", "secondactivemoiety", "secondactiveingredient", "alternativeingredient"]),
    ("alternative_dose", ["seconddosingmg", "seconddosing", "seconddose", "alternativedose"]),
    ("alternative_age_rule", ["secondageadjustments", "secondage", "alternativeagerule"]),
    ("alternative_interval", ["secondintervalhrs", "secondinterval", "alternativeinterval"]),
    ("alternative_weight_rule", ["secondweightkg", "secondweight", "alternativeweightrule"]),
    ("alternative_hepatic_rule", ["secondchildpugh", "alternativehepaticrule"]),
    ("renal_rule", ["gfr", "renal", "renalrule"]),
    ("platelet_rule", ["plt", "platelets", "plateletrule"]),
    ("white_cell_rule", ["wbc", "whitecells", "whitecellrule"]),
    ("saturation_rule", ["sat", "spo2", "saturation", "saturationrule"]),
    ("sodium_rule", ["sodium", "na+", "sodiumrule"]),
    ("sensitivity_rule", ["avoidifsensitivity", "sensitivity", "allergy", "sensitivityrule"]),
    ("contraindications", ["contraindications", "contraindication"]),
]

# Recognised only by header; there is no positional slot for it.
OPTIONAL_COLUMNS = [
    ("alternative_drug", ["seconddrug", "alternativedrug"]),
]

_HEADER_NOISE = re.compile(r"[^a-z0-9+]")


def _normalize_header(header) -> str:
    return _HEADER_NOISE.sub("", str(header).lower())


class ProtocolTableLoader:
    """
    Loads ProtocolRow records from a spreadsheet.

    Example:
        >>> loader = ProtocolTableLoader()
        >>> rows = loader.load("data/treatment_protocol.xlsx")
        >>> rows[0].pain_level
        '1-3'
    """

    def __init__(self, max_rows: Optional[int] = None, sheet: Optional[int] = None):
        self.max_rows = max_rows if max_rows is not None else settings.protocol_max_rows
        self.sheet = sheet if sheet is not None else settings.protocol_sheet
        self.parser = get_parser()

    def load(self, path: Union[str, Path]) -> List[ProtocolRow]:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Protocol table not found: {path}")

        frame = self._read(path)
        rows = self.from_frame(frame)
        logger.info(f"Loaded {len(rows)} protocol rows from {path}")
        return rows

    def _read(self, path: Path) -> pd.DataFrame:
        suffix = path.suffix.lower()
        if suffix == ".csv":
            return pd.read_csv(path, dtype=str, keep_default_na=False)
        if suffix in (".xlsx", ".xlsm"):
            return pd.read_excel(
                path, sheet_name=self.sheet, engine="openpyxl", dtype=str, keep_default_na=False
            )
        raise ProtocolConfigError(f"Unsupported protocol table format '{suffix}' ({path})")

    def _resolve_columns(self, frame: pd.DataFrame) -> Dict[str, object]:
        """Map ProtocolRow field names to frame columns."""
        by_header = {_normalize_header(c): c for c in frame.columns}

        mapping: Dict[str, object] = {}
        for field_name, aliases in PROTOCOL_COLUMNS + OPTIONAL_COLUMNS:
            for alias in aliases:
                if alias in by_header:
                    mapping[field_name] = by_header[alias]
                    break

        if "pain_level" in mapping:
            missing = [f for f, _ in PROTOCOL_COLUMNS if f not in mapping]
            if missing:
                logger.warning(f"Protocol table has no column for: {', '.join(missing)}")
            return mapping

        if len(frame.columns) < len(PROTOCOL_COLUMNS):
            raise ProtocolConfigError(
                f"Protocol table has {len(frame.columns)} unrecognised columns; "
                f"expected {len(PROTOCOL_COLUMNS)} in positional order"
            )
        logger.info("Protocol table headers not recognised; mapping columns by position")
        return {field_name: frame.columns[i] for i, (field_name, _) in enumerate(PROTOCOL_COLUMNS)}

    def from_frame(self, frame: pd.DataFrame) -> List[ProtocolRow]:
        """Convert a DataFrame (header row already consumed) to ProtocolRows."""
        if self.max_rows is not None:
            frame = frame.head(self.max_rows)
        mapping = self._resolve_columns(frame)

        rows: List[ProtocolRow] = []
        for index, record in enumerate(frame.to_dict(orient="records"), start=1):
            values = {
                field_name: self._cell(record.get(column))
                for field_name, column in mapping.items()
            }
            if not values.get("pain_level"):
                logger.warning(f"Skipping protocol row {index}: empty pain level")
                continue
            rows.append(ProtocolRow(row_id=index, **values))
        return rows

    def _cell(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, float) and pd.isna(value):
            return ""
        return self.parser.sanitize(str(value))


def load_protocols(path: Optional[Union[str, Path]] = None) -> List[ProtocolRow]:
    """Load the protocol table configured in settings (or at ``path``)."""
    return ProtocolTableLoader().load(path or settings.protocol_table_path)
