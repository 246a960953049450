"""
Incident Admission Service - Data Model

Dataclasses shared by the classifier, scorer, coordinator and pipeline.

Ownership:
    Submission      immutable, owned by the pipeline while processing
    TriageResult    immutable, superseded only by a new override version
    FacilityRecord  owned by FacilityDirectory (load counter is approximate)
    RankedFacility  ephemeral, produced per ranking request
    QueueEntry      owned exclusively by QueueCoordinator
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .config import UrgencyTier
from .errors import ValidationError


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class TriageMethod(str, Enum):
    RULE_MATCH = "rule-match"
    SCORED_FALLBACK = "scored-fallback"
    DEGRADED_FALLBACK = "degraded-fallback"
    STAFF_OVERRIDE = "staff-override"


class LocationStatus(str, Enum):
    KNOWN = "known"
    UNKNOWN = "unknown"


class EntryStatus(str, Enum):
    """Queue entry lifecycle: Pending → Queued → InTreatment → Completed, or Removed."""

    PENDING = "Pending"
    QUEUED = "Queued"
    IN_TREATMENT = "InTreatment"
    COMPLETED = "Completed"
    REMOVED = "Removed"

    @property
    def is_active(self) -> bool:
        return self in (EntryStatus.QUEUED, EntryStatus.IN_TREATMENT)

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.COMPLETED, EntryStatus.REMOVED)


class RemovalReason(str, Enum):
    COMPLETED = "completed"
    TRANSFERRED = "transferred"
    ERROR = "error"
    STAFF_OVERRIDE = "staff-override"
    RETRACTED = "retracted"

    @classmethod
    def parse(cls, value: str) -> "RemovalReason":
        key = (value or "").strip().lower().replace("_", "-")
        for reason in cls:
            if reason.value == key:
                return reason
        raise ValidationError(f"Unknown removal reason: {value!r}")


class EventKind(str, Enum):
    FACILITY_ASSIGNED = "FacilityAssigned"
    QUEUE_POSITION_CHANGED = "QueuePositionChanged"
    MANUAL_REVIEW_REQUIRED = "ManualReviewRequired"
    TRIAGE_OVERRIDDEN = "TriageOverridden"
    CASE_CLOSED = "CaseClosed"


# =============================================================================
# SUBMISSION
# =============================================================================

@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class Submission:
    """
    An emergency-incident submission.

    Attributes:
        submission_id: Unique identifier assigned by the intake layer
        description: Free-text incident description (may be empty)
        patient_status: Status keyword, e.g. "unconscious", "conscious"
        incident_type: Incident category, e.g. "shooting", "fall"
        age_range: Age bracket, e.g. "0-10", "51+"
        transport_mode: "ambulance", "self-carry", "taxi", "bus", ...
        location: Optional geo-coordinate of the incident
        submitted_at: Arrival timestamp
    """
    submission_id: str
    description: str = ""
    patient_status: str = ""
    incident_type: str = ""
    age_range: str = ""
    transport_mode: str = ""
    location: Optional[GeoPoint] = None
    submitted_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "description": self.description,
            "patient_status": self.patient_status,
            "incident_type": self.incident_type,
            "age_range": self.age_range,
            "transport_mode": self.transport_mode,
            "location": self.location.to_dict() if self.location else None,
            "submitted_at": self.submitted_at.isoformat(),
        }


def validate_submission(submission: Submission) -> None:
    """Reject malformed submissions before they enter the pipeline."""
    if not isinstance(submission, Submission):
        raise ValidationError("Expected a Submission instance")
    if not isinstance(submission.submission_id, str) or not submission.submission_id.strip():
        raise ValidationError("'submission_id' is required")

    for name in ("description", "patient_status", "incident_type", "age_range", "transport_mode"):
        if not isinstance(getattr(submission, name), str):
            raise ValidationError(f"'{name}' must be a string")

    if not isinstance(submission.submitted_at, datetime):
        raise ValidationError("'submitted_at' must be a datetime instance")

    location = submission.location
    if location is not None:
        lat, lng = location.latitude, location.longitude
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (lat, lng)):
            raise ValidationError("Location coordinates must be finite numbers")
        if not -90.0 <= lat <= 90.0:
            raise ValidationError(f"Latitude out of range: {lat}")
        if not -180.0 <= lng <= 180.0:
            raise ValidationError(f"Longitude out of range: {lng}")


# =============================================================================
# TRIAGE
# =============================================================================

@dataclass(frozen=True)
class TriageResult:
    """
    Result of classifying a submission.

    Attributes:
        submission_id: The classified submission
        tier: Assigned urgency tier
        confidence: Confidence in [0, 1]
        method: How the tier was reached
        explanation: Human-readable reasons, most important first
        max_wait_minutes: Max tolerable wait bound for the tier
        version: 1 for the original classification, +1 per override
        rule_name: Matched rule, for rule-match results
        score: Weighted risk score, for scored-fallback results
        features: Feature values behind the score
        actor: Who created an override version
        reason: Why an override version was created
        created_at: Wall-clock creation time (excluded from determinism)
    """
    submission_id: str
    tier: UrgencyTier
    confidence: float
    method: TriageMethod
    explanation: Tuple[str, ...] = ()
    max_wait_minutes: int = 30
    version: int = 1
    rule_name: Optional[str] = None
    score: Optional[float] = None
    features: Dict[str, float] = field(default_factory=dict, compare=False, hash=False)
    actor: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now, compare=False)

    @property
    def is_degraded(self) -> bool:
        return self.method == TriageMethod.DEGRADED_FALLBACK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "tier": self.tier.value,
            "confidence": self.confidence,
            "method": self.method.value,
            "explanation": list(self.explanation),
            "max_wait_minutes": self.max_wait_minutes,
            "version": self.version,
            "rule_name": self.rule_name,
            "score": self.score,
            "features": dict(self.features),
            "actor": self.actor,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# FACILITIES
# =============================================================================

@dataclass
class FacilityRecord:
    facility_id: str
    name: str
    location: GeoPoint
    capacity: int
    current_load: int = 0
    specialties: FrozenSet[str] = frozenset()
    active: bool = True
    average_treatment_minutes: Optional[int] = None
    available_clinicians: Optional[int] = None

    @property
    def utilization(self) -> float:
        """Load over capacity; a facility without capacity counts as full."""
        if self.capacity <= 0:
            return 1.0
        return max(0, self.current_load) / self.capacity

    def has_specialty(self, needed: str) -> bool:
        """Case-insensitive containment match, e.g. 'ICU' matches 'Neonatal ICU'."""
        needle = needed.lower()
        return any(needle in spec.lower() for spec in self.specialties)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FacilityRecord":
        return cls(
            facility_id=str(data["facility_id"]),
            name=str(data.get("name", data["facility_id"])),
            location=GeoPoint(float(data["latitude"]), float(data["longitude"])),
            capacity=int(data.get("capacity", 0)),
            current_load=int(data.get("current_load", 0)),
            specialties=frozenset(data.get("specialties", [])),
            active=bool(data.get("active", True)),
            average_treatment_minutes=data.get("average_treatment_minutes"),
            available_clinicians=data.get("available_clinicians"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "name": self.name,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "capacity": self.capacity,
            "current_load": self.current_load,
            "specialties": sorted(self.specialties),
            "active": self.active,
            "average_treatment_minutes": self.average_treatment_minutes,
            "available_clinicians": self.available_clinicians,
        }


@dataclass(frozen=True)
class RankedFacility:
    facility: FacilityRecord
    score: float
    rank: int
    location_status: LocationStatus
    distance_km: Optional[float] = None
    travel_minutes: Optional[float] = None
    breakdown: Dict[str, float] = field(default_factory=dict, compare=False, hash=False)
    reason: str = ""

    @property
    def facility_id(self) -> str:
        return self.facility.facility_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility.facility_id,
            "name": self.facility.name,
            "score": self.score,
            "rank": self.rank,
            "location_status": self.location_status.value,
            "distance_km": self.distance_km,
            "travel_minutes": self.travel_minutes,
            "breakdown": dict(self.breakdown),
            "reason": self.reason,
        }


# =============================================================================
# QUEUE
# =============================================================================

@dataclass
class QueueEntry:
    submission_id: str
    facility_id: str
    tier: UrgencyTier
    priority_score: float
    inserted_at: datetime
    sequence: int
    position: int = 0
    estimated_wait_minutes: int = 0
    status: EntryStatus = EntryStatus.PENDING
    removal_reason: Optional[RemovalReason] = None
    treatment_started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    # Ordering key within a tier; starts as (inserted_at, sequence) and is
    # only ever swapped between neighbours by a staff move.
    order_key: Tuple[datetime, int] = field(default=None, repr=False)  # type: ignore[assignment]

    def __post_init__(self):
        if self.order_key is None:
            self.order_key = (self.inserted_at, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "facility_id": self.facility_id,
            "tier": self.tier.value,
            "priority_score": self.priority_score,
            "position": self.position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "inserted_at": self.inserted_at.isoformat(),
            "status": self.status.value,
            "removal_reason": self.removal_reason.value if self.removal_reason else None,
            "treatment_started_at": (
                self.treatment_started_at.isoformat() if self.treatment_started_at else None
            ),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass(frozen=True)
class PositionChange:
    submission_id: str
    facility_id: str
    old_position: Optional[int]
    new_position: int
    estimated_wait_minutes: int


@dataclass(frozen=True)
class QueueStatistics:
    """Aggregates over a facility's waiting entries; wait fields are None when nobody waits."""
    facility_id: str
    facility_name: str
    waiting: int
    in_treatment: int
    average_wait_minutes: Optional[float] = None
    min_wait_minutes: Optional[int] = None
    max_wait_minutes: Optional[int] = None
    average_priority_score: Optional[float] = None

    @classmethod
    def from_entries(cls, facility_id: str, facility_name: str, entries) -> "QueueStatistics":
        waiting = [e for e in entries if e.status == EntryStatus.QUEUED]
        in_treatment = sum(1 for e in entries if e.status == EntryStatus.IN_TREATMENT)
        if not waiting:
            return cls(facility_id, facility_name, 0, in_treatment)
        waits = [e.estimated_wait_minutes for e in waiting]
        return cls(
            facility_id=facility_id,
            facility_name=facility_name,
            waiting=len(waiting),
            in_treatment=in_treatment,
            average_wait_minutes=round(sum(waits) / len(waits), 2),
            min_wait_minutes=min(waits),
            max_wait_minutes=max(waits),
            average_priority_score=round(sum(e.priority_score for e in waiting) / len(waiting), 4),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "facility_name": self.facility_name,
            "waiting": self.waiting,
            "in_treatment": self.in_treatment,
            "average_wait_minutes": self.average_wait_minutes,
            "min_wait_minutes": self.min_wait_minutes,
            "max_wait_minutes": self.max_wait_minutes,
            "average_priority_score": self.average_priority_score,
        }


# =============================================================================
# PIPELINE OUTPUT
# =============================================================================

@dataclass(frozen=True)
class PipelineEvent:
    kind: EventKind
    submission_id: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "submission_id": self.submission_id,
            "payload": dict(self.payload),
        }


@dataclass
class AdmissionOutcome:
    triage: TriageResult
    facility: RankedFacility
    entry: QueueEntry
    needs_manual_review: bool = False
    review_reasons: List[str] = field(default_factory=list)
    events: List[PipelineEvent] = field(default_factory=list)

    @property
    def queue_position(self) -> int:
        return self.entry.position

    @property
    def estimated_wait_minutes(self) -> int:
        return self.entry.estimated_wait_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triage_result": self.triage.to_dict(),
            "assigned_facility": self.facility.to_dict(),
            "queue_position": self.queue_position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "needs_manual_review": self.needs_manual_review,
            "review_reasons": list(self.review_reasons),
        }
