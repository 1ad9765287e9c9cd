"""
Pain Protocol Agent - Configuration Module

This module centralizes all environment-based configuration for the pain
protocol microservice. Tunables are externalized through environment
variables (or a local .env file); clinical classification bands that are
part of the medical vocabulary of the protocol table are fixed constants.

================================================================================
RENAL FUNCTION (GFR) CLASSES
================================================================================

Protocol cells may express renal rules either by class letter or by a
numeric mL/min threshold. The engine converts between both forms using
these bands:

    Class   Range (mL/min)   Representative value
    ─────   ──────────────   ────────────────────
      A         >= 90               105
      B        60 - 89               75
      C        45 - 59               52
      D        30 - 44               37
      E        15 - 29               22
      F         < 15                  7

A value sitting exactly on a boundary belongs to the band that starts at
that boundary, so 59 is class C and 60 is class B.

================================================================================
HEPATIC FUNCTION (CHILD-PUGH) CLASSES
================================================================================

    A - well-compensated disease
    B - significant functional compromise
    C - decompensated disease

================================================================================
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict, List, Optional, Tuple
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="pain-protocol-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # PROTOCOL TABLE
    # ==========================================================================
    protocol_table_path: str = Field(
        default="data/treatment_protocol.csv",
        description="Path to the treatment protocol table (.xlsx or .csv)"
    )
    protocol_sheet: int = Field(
        default=0,
        ge=0,
        description="Sheet index to read when the table is an Excel workbook"
    )
    protocol_max_rows: Optional[int] = Field(
        default=None,
        ge=1,
        description="Optional cap on the number of data rows read from the table"
    )

    # ==========================================================================
    # PAIN TREND RULE
    # ==========================================================================
    pain_trend_min_history: int = Field(
        default=2,
        ge=2,
        le=10,
        description="Minimum number of pain scores before the trend rule evaluates"
    )
    pain_trend_stop_delta: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Score increase between the last two readings that aborts generation"
    )
    pain_trend_stop_amplitude: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Inversion amplitude in the last three readings that aborts generation"
    )

    # ==========================================================================
    # WEIGHT RULE
    # ==========================================================================
    low_weight_threshold_kg: float = Field(
        default=50.0,
        gt=0.0,
        le=200.0,
        description="Body weight (kg) below which the weight rule is evaluated"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8006,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: str = Field(
        default="text",
        description="Log format (json, text)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    keeping configuration consistent across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# CLINICAL CLASS CONSTANTS
# ==========================================================================
class RenalClass:
    """
    GFR class bands in mL/min.

    Ordered from best to worst function. Each band is (letter, lower bound
    inclusive, upper bound inclusive, representative midpoint).
    """
    BANDS: List[Tuple[str, float, float, float]] = [
        ("A", 90.0, 120.0, 105.0),
        ("B", 60.0, 89.0, 75.0),
        ("C", 45.0, 59.0, 52.0),
        ("D", 30.0, 44.0, 37.0),
        ("E", 15.0, 29.0, 22.0),
        ("F", 0.0, 14.0, 7.0),
    ]

    LETTERS = "ABCDEF"

    @classmethod
    def midpoint(cls, letter: str) -> Optional[float]:
        """Representative mL/min value for a class letter."""
        for band_letter, _, _, mid in cls.BANDS:
            if band_letter == letter.upper():
                return mid
        return None

    @classmethod
    def bounds(cls, letter: str) -> Optional[Tuple[float, float]]:
        """Inclusive (low, high) mL/min bounds of a class letter."""
        for band_letter, low, high, _ in cls.BANDS:
            if band_letter == letter.upper():
                return low, high
        return None


class HepaticClass:
    """Child-Pugh classes."""
    LETTERS = "ABC"

    LABELS: Dict[str, str] = {
        "A": "Child-Pugh A (well-compensated)",
        "B": "Child-Pugh B (significant compromise)",
        "C": "Child-Pugh C (decompensated)",
    }

    @classmethod
    def get_label(cls, letter: str) -> str:
        """Get human-readable label for a Child-Pugh class."""
        return cls.LABELS.get(letter.upper(), f"Unknown ({letter})")
