"""
Incident Admission Service - FastAPI Application

REST adapter over the AdmissionPipeline. It adds no business rules: every
endpoint validates input, calls one pipeline operation and serializes the
result.

================================================================================
ENDPOINTS
================================================================================

    GET  /health                        service + component checks
    POST /submissions                   classify, route and queue a submission
    POST /submissions/{id}/retract      cancel a submission
    GET  /queues/{facility_id}          ordered queue snapshot (may be stale);
                                        ?include_history=true adds closed entries
    GET  /queue-statistics              wait / priority aggregates per facility
    POST /cases/{id}/start              Queued → InTreatment
    POST /cases/{id}/complete           close a case (completed, transferred, ...)
    POST /cases/{id}/move               single-step staff reposition
    POST /cases/{id}/override           staff triage override (new version)
    GET  /cases/{id}/triage             triage version history
    GET  /facilities                    facility directory snapshot
    GET  /facilities/nearby             facilities within a radius, nearest first
    GET  /stats                         pipeline counters

ERROR MAPPING:
──────────────
    ValidationError                                  422
    FacilityNotFound, EntryNotFound                  404
    MoveRejected, DuplicateAdmission, Retracted      409
    NoFacilityAvailable                              503
    AdmissionFailed                                  500 (submission kept Pending)

The queue owner must be a single process: run with one uvicorn worker.

================================================================================
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .errors import (
    AdmissionError,
    AdmissionFailed,
    DuplicateAdmission,
    EntryNotFound,
    FacilityNotFound,
    MoveRejected,
    NoFacilityAvailable,
    SubmissionRetracted,
    ValidationError,
)
from .models import GeoPoint, Submission, utc_now
from .pipeline import AdmissionPipeline


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class LocationInput(BaseModel):
    """Incident geo-coordinate."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")


class SubmissionRequest(BaseModel):
    """Request schema for a new incident submission."""

    submission_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=100,
        description="Intake identifier; generated when omitted",
    )
    description: str = Field(
        default="",
        max_length=5000,
        description="Free-text incident description (may be empty)",
    )
    patient_status: str = Field(default="", max_length=100, description="e.g. unconscious, conscious")
    incident_type: str = Field(default="", max_length=100, description="e.g. shooting, fall, heart-attack")
    age_range: str = Field(default="", max_length=20, description="e.g. 0-10, 11-30, 31-50, 51+")
    transport_mode: str = Field(default="", max_length=50, description="e.g. ambulance, self-carry, taxi")
    location: Optional[LocationInput] = Field(default=None, description="Incident location")
    submitted_at: Optional[datetime] = Field(default=None, description="Arrival time; defaults to now")
    facility_id: Optional[str] = Field(
        default=None,
        description="Staff-forced facility; skips ranking",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "description": "Patient unconscious after cardiac arrest at home",
                "patient_status": "unconscious",
                "incident_type": "heart-attack",
                "age_range": "51+",
                "transport_mode": "ambulance",
                "location": {"latitude": 18.0179, "longitude": -76.8099},
            }
        }

    def to_submission(self) -> Submission:
        return Submission(
            submission_id=self.submission_id or str(uuid.uuid4()),
            description=self.description,
            patient_status=self.patient_status,
            incident_type=self.incident_type,
            age_range=self.age_range,
            transport_mode=self.transport_mode,
            location=GeoPoint(self.location.latitude, self.location.longitude) if self.location else None,
            submitted_at=self.submitted_at or utc_now(),
        )


class TriageResultResponse(BaseModel):
    submission_id: str
    tier: str
    confidence: float
    method: str
    explanation: List[str]
    max_wait_minutes: int
    version: int
    rule_name: Optional[str] = None
    score: Optional[float] = None
    features: Dict[str, float] = {}
    actor: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime


class RankedFacilityResponse(BaseModel):
    facility_id: str
    name: str
    score: float
    rank: int
    location_status: str
    distance_km: Optional[float] = None
    travel_minutes: Optional[float] = None
    breakdown: Dict[str, float] = {}
    reason: str = ""


class QueueEntryResponse(BaseModel):
    submission_id: str
    facility_id: str
    tier: str
    priority_score: float
    position: int
    estimated_wait_minutes: int
    inserted_at: datetime
    status: str
    removal_reason: Optional[str] = None
    treatment_started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class SubmissionResponse(BaseModel):
    """Committed admission: triage, facility and queue position."""

    triage_result: TriageResultResponse
    assigned_facility: RankedFacilityResponse
    queue_position: int
    estimated_wait_minutes: int
    needs_manual_review: bool
    review_reasons: List[str]


class QueueResponse(BaseModel):
    facility_id: str
    facility_name: str
    count: int
    entries: List[QueueEntryResponse]
    generated_at: datetime


class QueueStatisticsResponse(BaseModel):
    facility_id: str
    facility_name: str
    waiting: int
    in_treatment: int
    average_wait_minutes: Optional[float] = None
    min_wait_minutes: Optional[int] = None
    max_wait_minutes: Optional[int] = None
    average_priority_score: Optional[float] = None


class QueueStatisticsListResponse(BaseModel):
    count: int
    statistics: List[QueueStatisticsResponse]
    generated_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "count": 1,
                "statistics": [
                    {
                        "facility_id": "HOSP003",
                        "facility_name": "University Hospital of the West Indies",
                        "waiting": 4,
                        "in_treatment": 1,
                        "average_wait_minutes": 41.5,
                        "min_wait_minutes": 15,
                        "max_wait_minutes": 75,
                        "average_priority_score": 7.2125,
                    }
                ],
                "generated_at": "2024-06-12T12:00:00Z",
            }
        }


class CompleteRequest(BaseModel):
    outcome: str = Field(
        default="completed",
        description="completed, transferred, error or staff-override",
    )
    actor: Optional[str] = Field(default=None, description="Staff member closing the case")


class MoveRequest(BaseModel):
    direction: str = Field(..., pattern="^(up|down)$", description="'up' or 'down'")
    actor: Optional[str] = Field(default=None, description="Staff member moving the case")


class OverrideRequest(BaseModel):
    """Staff triage override; creates a new triage version."""

    tier: str = Field(..., description="Critical, High, Moderate or Low")
    actor: str = Field(..., min_length=1, description="Overriding staff member")
    reason: str = Field(..., min_length=3, max_length=1000, description="Clinical reasoning")
    recompute: bool = Field(
        default=False,
        description="Also re-tier the active queue entry",
    )


class OverrideResponse(BaseModel):
    triage_result: TriageResultResponse
    queue_entry: Optional[QueueEntryResponse] = None
    recomputed: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """Holds the pipeline instance for the lifetime of the process."""

    def __init__(self):
        self.pipeline: Optional[AdmissionPipeline] = None
        self.started_at: Optional[datetime] = None

    def initialize(self) -> None:
        try:
            self.pipeline = AdmissionPipeline.from_settings(settings)
            self.pipeline.start()
            self.started_at = utc_now()
            logger.info("Application state initialized")
        except Exception as e:
            logger.error(f"Failed to initialize pipeline: {e}", exc_info=True)
            self.pipeline = None

    def shutdown(self) -> None:
        if self.pipeline is not None:
            self.pipeline.shutdown()
            self.pipeline = None


# Global state
app_state = AppState()


def get_pipeline() -> AdmissionPipeline:
    if app_state.pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "service_not_ready", "message": "Admission pipeline is not initialized"},
        )
    return app_state.pipeline


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    if settings.api_workers > 1:
        logger.warning("Queue state is per process; api_workers > 1 splits the queues")
    app_state.initialize()

    yield

    logger.info("Shutting down admission service")
    app_state.shutdown()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Incident Admission Service",
    description="""
    Emergency incident admission pipeline.

    ## Features
    - **Triage**: deterministic rules, keyword scan and a weighted score fallback
    - **Facility routing**: distance, travel time, capacity and specialty fit
    - **Live queues**: tier-first, FIFO within tier, race-free under concurrency
    - **Staff controls**: overrides, moves, treatment start, completion, retraction
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """Health check endpoint for Kubernetes liveness and readiness checks."""
    pipeline = app_state.pipeline
    checks: Dict[str, Dict[str, Any]] = {}
    overall_status = "healthy"

    if pipeline is None:
        checks["pipeline"] = {"status": "error"}
        overall_status = "unhealthy"
    else:
        checks["pipeline"] = {"status": "ok"}
        active = len(pipeline.directory.active())
        checks["facilities"] = {
            "status": "ok" if active else "degraded",
            "active": active,
            "last_refreshed_at": (
                pipeline.directory.last_refreshed_at.isoformat()
                if pipeline.directory.last_refreshed_at
                else None
            ),
        }
        if not active:
            overall_status = "degraded"
        rules = pipeline.classifier.stats()
        checks["rules"] = {
            "status": "ok",
            "version": rules["rule_table_version"],
            "active_rules": rules["active_rules"],
        }

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=utc_now(),
        checks=checks,
    )


@app.post(
    "/submissions",
    response_model=SubmissionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Admission"],
)
def submit(request: SubmissionRequest) -> SubmissionResponse:
    """
    Classify, route and queue an incident submission.

    Returns either a committed queue position or an explicit error.
    Submissions whose triage or routing degraded are flagged
    ``needs_manual_review``.
    """
    pipeline = get_pipeline()
    outcome = pipeline.submit(request.to_submission(), forced_facility_id=request.facility_id)
    return SubmissionResponse(**outcome.to_dict())


@app.post("/submissions/{submission_id}/retract", tags=["Admission"])
def retract_submission(submission_id: str) -> Dict[str, Any]:
    pipeline = get_pipeline()
    entry = pipeline.retract(submission_id)
    return {
        "submission_id": submission_id,
        "retracted": True,
        "queue_entry": entry.to_dict() if entry else None,
    }


@app.get("/queue-statistics", response_model=QueueStatisticsListResponse, tags=["Queues"])
def queue_statistics(
    facility_id: Optional[str] = Query(default=None, description="Restrict to one facility"),
) -> QueueStatisticsListResponse:
    """Wait time and priority aggregates over waiting entries, busiest facility first."""
    rows = get_pipeline().queue_statistics(facility_id)
    return QueueStatisticsListResponse(
        count=len(rows),
        statistics=[QueueStatisticsResponse(**row.to_dict()) for row in rows],
        generated_at=utc_now(),
    )


@app.get("/queues/{facility_id}", response_model=QueueResponse, tags=["Queues"])
def get_queue(
    facility_id: str,
    include_history: bool = Query(default=False, description="Append completed and removed entries"),
) -> QueueResponse:
    """Ordered queue for a facility; a lock-free snapshot that may be slightly stale."""
    pipeline = get_pipeline()
    entries = pipeline.get_queue(facility_id, include_history=include_history)
    facility = pipeline.directory.get(facility_id)
    return QueueResponse(
        facility_id=facility_id,
        facility_name=facility.name,
        count=len(entries),
        entries=[QueueEntryResponse(**e.to_dict()) for e in entries],
        generated_at=utc_now(),
    )


@app.post("/cases/{submission_id}/start", response_model=QueueEntryResponse, tags=["Queues"])
def start_treatment(submission_id: str) -> QueueEntryResponse:
    entry = get_pipeline().start_treatment(submission_id)
    return QueueEntryResponse(**entry.to_dict())


@app.post("/cases/{submission_id}/complete", response_model=QueueEntryResponse, tags=["Queues"])
def complete_case(submission_id: str, request: Optional[CompleteRequest] = None) -> QueueEntryResponse:
    request = request or CompleteRequest()
    entry = get_pipeline().complete_case(submission_id, request.outcome, actor=request.actor)
    return QueueEntryResponse(**entry.to_dict())


@app.post("/cases/{submission_id}/move", response_model=QueueEntryResponse, tags=["Queues"])
def move_case(submission_id: str, request: MoveRequest) -> QueueEntryResponse:
    entry = get_pipeline().move_in_queue(submission_id, request.direction, actor=request.actor)
    return QueueEntryResponse(**entry.to_dict())


@app.post("/cases/{submission_id}/override", response_model=OverrideResponse, tags=["Triage"])
def override_triage(submission_id: str, request: OverrideRequest) -> OverrideResponse:
    """
    Record a staff override as a new triage version.

    Queue priority changes only when ``recompute`` is true.
    """
    pipeline = get_pipeline()
    result = pipeline.override_triage(
        submission_id,
        request.tier,
        actor=request.actor,
        reason=request.reason,
        recompute=request.recompute,
    )
    entry = pipeline.coordinator.active_entry(submission_id)
    return OverrideResponse(
        triage_result=TriageResultResponse(**result.to_dict()),
        queue_entry=QueueEntryResponse(**entry.to_dict()) if entry else None,
        recomputed=request.recompute and entry is not None,
    )


@app.get("/cases/{submission_id}/triage", response_model=List[TriageResultResponse], tags=["Triage"])
def triage_history(submission_id: str) -> List[TriageResultResponse]:
    history = get_pipeline().triage_history(submission_id)
    return [TriageResultResponse(**r.to_dict()) for r in history]


@app.get("/facilities", tags=["Facilities"])
def list_facilities() -> Dict[str, Any]:
    pipeline = get_pipeline()
    facilities = pipeline.directory.all()
    return {
        "count": len(facilities),
        "facilities": [f.to_dict() for f in facilities],
    }


@app.get("/facilities/nearby", tags=["Facilities"])
def nearby_facilities(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(default=50.0, gt=0, description="Search radius in kilometres"),
    include_inactive: bool = Query(default=False),
) -> Dict[str, Any]:
    """Facilities within a radius of a point, nearest first."""
    nearby = get_pipeline().facilities_within(
        GeoPoint(latitude, longitude), radius_km, include_inactive=include_inactive
    )
    return {
        "count": len(nearby),
        "radius_km": radius_km,
        "facilities": [dict(f.to_dict(), distance_km=distance) for f, distance in nearby],
    }


@app.get("/stats", tags=["Operations"])
def get_stats() -> Dict[str, Any]:
    """Admission service statistics."""
    return get_pipeline().stats()


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

ERROR_STATUS = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error"),
    (FacilityNotFound, status.HTTP_404_NOT_FOUND, "facility_not_found"),
    (EntryNotFound, status.HTTP_404_NOT_FOUND, "entry_not_found"),
    (MoveRejected, status.HTTP_409_CONFLICT, "move_rejected"),
    (DuplicateAdmission, status.HTTP_409_CONFLICT, "duplicate_admission"),
    (SubmissionRetracted, status.HTTP_409_CONFLICT, "submission_retracted"),
    (NoFacilityAvailable, status.HTTP_503_SERVICE_UNAVAILABLE, "no_facility_available"),
    (AdmissionFailed, status.HTTP_500_INTERNAL_SERVER_ERROR, "admission_failed"),
)


@app.exception_handler(AdmissionError)
async def admission_error_handler(request: Request, exc: AdmissionError):
    """Translate domain errors into actionable HTTP responses."""
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "admission_error"

    detail: Dict[str, Any] = {"error": code, "message": str(exc)}
    submission_id = getattr(exc, "submission_id", None)
    if submission_id:
        detail["submission_id"] = submission_id

    log = logger.error if status_code >= 500 else logger.info
    log(f"{code}: {exc}", extra={"path": request.url.path, "status_code": status_code})
    return JSONResponse(status_code=status_code, content={"detail": detail})


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
        "admission.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
