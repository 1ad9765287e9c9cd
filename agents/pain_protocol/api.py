"""
Pain Protocol Agent - FastAPI Application

This module provides the REST API for the pain protocol service. It wraps
the recommendation engine for EMR integrations, the nursing dashboard and
protocol validation runs.

================================================================================
API DESIGN FOR CLINICAL DECISION SUPPORT
================================================================================

Key Design Principles:
─────────────────────
1. NO AUTONOMOUS ACTION: the API returns a PENDING recommendation for
   clinician approval; it never persists or orders anything
2. AUDIT TRAIL: every recommendation carries the comment log and the
   rejection reasons produced by the rule pipeline
3. SAFE FAILURE: missing clinical values and unreadable protocol cells are
   reported as 422 errors instead of producing a possibly unsafe regimen
4. BATCH SUPPORT: validate a protocol table against many patients at once

================================================================================
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .config import settings
from .engine import RecommendationAssembler
from .model import (
    LabPanel,
    MissingClinicalValueError,
    PainHistory,
    PatientSnapshot,
    ProtocolConfigError,
    ProtocolRow,
    Recommendation,
)
from .protocol_loader import ProtocolTableLoader

# Configure logging
LOG_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "json": '{"time": "%(asctime)s", "logger": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}',
}
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format=LOG_FORMATS.get(settings.log_format, LOG_FORMATS["text"]),
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class LabPanelRequest(BaseModel):
    """Most recent laboratory values for a patient."""

    renal_class: Optional[Union[float, str]] = Field(
        default=None,
        description="GFR in mL/min or class letter A-F"
    )
    platelet_count: Optional[float] = Field(
        default=None,
        ge=0,
        description="Platelet count in K/µL"
    )
    white_cell_count: Optional[float] = Field(
        default=None,
        ge=0,
        description="White blood cell count in x10^9/L"
    )
    sodium: Optional[float] = Field(
        default=None,
        ge=0,
        description="Serum sodium in mmol/L"
    )
    oxygen_saturation: Optional[float] = Field(
        default=None,
        ge=0,
        le=100,
        description="SpO2 in percent"
    )
    hepatic_class: Optional[str] = Field(
        default=None,
        description="Child-Pugh class A, B or C"
    )


class PatientRequest(BaseModel):
    """Clinical snapshot of one patient."""

    patient_id: str = Field(..., description="Patient identifier")
    birth_date: Optional[date] = Field(default=None, description="Date of birth")
    weight_kg: Optional[float] = Field(default=None, gt=0, le=500, description="Body weight in kg")
    labs: LabPanelRequest = Field(default_factory=LabPanelRequest)
    allergies: List[str] = Field(default_factory=list, description="Known sensitivities")
    diagnoses: List[str] = Field(default_factory=list, description="ICD diagnosis codes")
    pain_history: List[int] = Field(
        default_factory=list,
        description="Pain scores oldest first, including the current reading"
    )

    @field_validator("pain_history")
    @classmethod
    def validate_pain_history(cls, v: List[int]) -> List[int]:
        if any(score < 0 or score > 10 for score in v):
            raise ValueError("pain scores must be between 0 and 10")
        return v

    def to_snapshot(self) -> PatientSnapshot:
        return PatientSnapshot(
            patient_id=self.patient_id,
            birth_date=self.birth_date,
            weight_kg=self.weight_kg,
            labs=LabPanel(**self.labs.model_dump()),
            allergies=frozenset(self.allergies),
            diagnoses=frozenset(self.diagnoses),
        )

    def to_history(self) -> PainHistory:
        return PainHistory(tuple(self.pain_history))


class RecommendRequest(BaseModel):
    """Request a recommendation for one patient."""

    patient: PatientRequest
    pain_score: int = Field(..., ge=0, le=10, description="Current pain score (0-10)")


class BatchRecommendRequest(BaseModel):
    """Request recommendations for many patients at one pain score."""

    patients: List[PatientRequest] = Field(..., min_length=1, max_length=500)
    pain_score: int = Field(..., ge=0, le=10, description="Pain score applied to every patient")


class RecommendationResponse(BaseModel):
    """Recommendation for a single patient."""

    request_id: str
    patient_id: str
    generated_at: datetime
    status: str
    recommendation: Dict[str, Any]
    patient_info: Dict[str, Any]


class BatchRecommendationResponse(BaseModel):
    """Batch recommendation results."""

    request_id: str
    pain_score: int
    total_patients: int
    summary: Dict[str, int]
    results: List[Dict[str, Any]]


class ProtocolListResponse(BaseModel):
    """Currently loaded protocol table."""

    source: Optional[str]
    loaded_at: Optional[datetime]
    total: int
    protocols: List[Dict[str, Any]]


class HealthResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the loaded protocol table and the recommendation assembler.
    """

    def __init__(self):
        self.protocols: List[ProtocolRow] = []
        self.source: Optional[str] = None
        self.loaded_at: Optional[datetime] = None
        self.recommendations_generated: int = 0
        self.assembler = RecommendationAssembler()

    def load_protocols(self, path: Optional[str] = None) -> int:
        """(Re)load the protocol table; returns the number of rows."""
        source = path or settings.protocol_table_path
        self.protocols = ProtocolTableLoader().load(source)
        self.source = str(source)
        self.loaded_at = datetime.utcnow()
        return len(self.protocols)


# Global application state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting {settings.service_name} v{settings.service_version} ({settings.environment})")

    try:
        count = app_state.load_protocols()
        logger.info(f"Protocol table loaded at startup ({count} rows)")
    except (FileNotFoundError, ProtocolConfigError) as e:
        logger.warning(f"Could not load protocol table at startup: {e}")

    yield

    logger.info("Shutting down pain protocol agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Pain Protocol Agent",
    description="""
    Analgesic regimen recommendation service driven by the treatment protocol table.

    ## Overview
    For a reported pain score the agent selects the matching protocol rows and
    vets each candidate regimen against the patient's clinical snapshot
    (age, weight, renal/hepatic function, blood counts, electrolytes,
    allergies, diagnoses and pain trend).

    ## API Endpoints
    - `POST /recommend`: Recommendation for one patient
    - `POST /recommend/batch`: Recommendations for many patients at one pain score
    - `GET /protocols`: Inspect the loaded protocol table
    - `POST /protocols/reload`: Reload the protocol table
    - `GET /health`: Service health check

    ## Clinical Integration
    Recommendations are returned as PENDING for clinician approval.
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _require_protocols() -> List[ProtocolRow]:
    if not app_state.protocols:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "protocols_not_loaded",
                "message": "No treatment protocol table is loaded. "
                           "Use POST /protocols/reload to load one."
            }
        )
    return app_state.protocols


def _error_detail(exc: Exception) -> Dict[str, str]:
    if isinstance(exc, MissingClinicalValueError):
        return {"error": "missing_clinical_value", "message": str(exc)}
    return {"error": "protocol_config_error", "message": str(exc)}


def _patient_info(snapshot: PatientSnapshot) -> Dict[str, Any]:
    """Clinical values the recommendation was based on."""
    labs = snapshot.labs
    return {
        "age": snapshot.age,
        "weight_kg": snapshot.weight_kg,
        "renal_class": labs.renal_class,
        "hepatic_class": labs.hepatic_class,
        "platelet_count": labs.platelet_count,
        "white_cell_count": labs.white_cell_count,
        "sodium": labs.sodium,
        "oxygen_saturation": labs.oxygen_saturation,
    }


def _generate(patient: PatientRequest, pain_score: int) -> Recommendation:
    recommendation = app_state.assembler.generate(
        patient.to_snapshot(),
        pain_score,
        patient.to_history(),
        app_state.protocols,
    )
    app_state.recommendations_generated += 1
    return recommendation


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Reports whether a protocol table is loaded.
    """
    checks = {}
    overall_status = "healthy"

    protocol_check: Dict[str, Any] = {"status": "ok"}
    if app_state.protocols:
        protocol_check["rows"] = len(app_state.protocols)
        protocol_check["source"] = app_state.source
        protocol_check["loaded_at"] = app_state.loaded_at.isoformat() if app_state.loaded_at else None
    else:
        protocol_check["status"] = "not_loaded"
        overall_status = "degraded"
    protocol_check["recommendations_generated"] = app_state.recommendations_generated
    checks["protocols"] = protocol_check

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@app.get(
    "/protocols",
    response_model=ProtocolListResponse,
    tags=["Protocols"],
    summary="List the loaded treatment protocol rows"
)
async def list_protocols() -> ProtocolListResponse:
    return ProtocolListResponse(
        source=app_state.source,
        loaded_at=app_state.loaded_at,
        total=len(app_state.protocols),
        protocols=[row.to_dict() for row in app_state.protocols],
    )


@app.post(
    "/protocols/reload",
    response_model=ProtocolListResponse,
    tags=["Protocols"],
    summary="Reload the treatment protocol table"
)
async def reload_protocols(
    path: Optional[str] = Query(default=None, description="Table path; defaults to settings")
) -> ProtocolListResponse:
    try:
        count = app_state.load_protocols(path)
    except FileNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "protocol_table_not_found", "message": str(e)}
        )
    except ProtocolConfigError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=_error_detail(e)
        )

    logger.info(f"Protocol table reloaded from {app_state.source} ({count} rows)")
    return await list_protocols()


@app.post(
    "/recommend",
    response_model=RecommendationResponse,
    tags=["Recommendation"],
    summary="Generate an analgesic recommendation for one patient"
)
async def recommend(request: RecommendRequest) -> RecommendationResponse:
    """
    Generate a recommendation for one patient at the reported pain score.

    **Returns:**
    - `PENDING` with the vetted regimen, adjustments and audit comments, or
    - `FAILED` with every rejection reason when no regimen is safe
    """
    request_id = str(uuid.uuid4())
    _require_protocols()

    logger.info(
        f"Recommendation request: {request_id}",
        extra={"patient_id": request.patient.patient_id, "pain_score": request.pain_score}
    )

    try:
        recommendation = _generate(request.patient, request.pain_score)
    except (MissingClinicalValueError, ProtocolConfigError) as e:
        logger.warning(f"Recommendation {request_id} rejected: {e}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=_error_detail(e)
        )

    logger.info(
        f"Recommendation complete for {request.patient.patient_id}: {recommendation.status.value}",
        extra={"request_id": request_id, "comments": len(recommendation.comments)}
    )

    return RecommendationResponse(
        request_id=request_id,
        patient_id=request.patient.patient_id,
        generated_at=datetime.utcnow(),
        status=recommendation.status.value,
        recommendation=recommendation.to_dict(),
        patient_info=_patient_info(request.patient.to_snapshot()),
    )


@app.post(
    "/recommend/batch",
    response_model=BatchRecommendationResponse,
    tags=["Recommendation"],
    summary="Generate recommendations for many patients at one pain score"
)
async def recommend_batch(request: BatchRecommendRequest) -> BatchRecommendationResponse:
    """
    Run the protocol against a list of patients.

    A patient whose data cannot be evaluated is reported with an ``error``
    entry; the rest of the batch still runs.
    """
    request_id = str(uuid.uuid4())
    _require_protocols()

    logger.info(
        f"Batch recommendation request: {request_id}",
        extra={"n_patients": len(request.patients), "pain_score": request.pain_score}
    )

    summary = {"PENDING": 0, "FAILED": 0, "ERROR": 0}
    results: List[Dict[str, Any]] = []

    for patient in request.patients:
        entry: Dict[str, Any] = {"patient_id": patient.patient_id}
        try:
            recommendation = _generate(patient, request.pain_score)
        except (MissingClinicalValueError, ProtocolConfigError) as e:
            entry["status"] = "ERROR"
            entry["error"] = _error_detail(e)
            summary["ERROR"] += 1
        else:
            entry["status"] = recommendation.status.value
            entry["recommendation"] = recommendation.to_dict()
            entry["patient_info"] = _patient_info(patient.to_snapshot())
            summary[recommendation.status.value] += 1
        results.append(entry)

    logger.info(
        f"Batch recommendation complete: {request_id}",
        extra={"total": len(results), **{k.lower(): v for k, v in summary.items()}}
    )

    return BatchRecommendationResponse(
        request_id=request_id,
        pain_score=request.pain_score,
        total_patients=len(results),
        summary=summary,
        results=results,
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if settings.debug else None,
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agents.pain_protocol.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
