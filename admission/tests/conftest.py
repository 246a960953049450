"""
Shared fixtures for the admission test suite.

Run with: pytest admission/tests -v
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest

from admission.classifier import TriageClassifier
from admission.coordinator import QueueCoordinator
from admission.facilities import FacilityDirectory
from admission.models import FacilityRecord, GeoPoint, Submission
from admission.notifications import NotificationDispatcher, NotificationGateway
from admission.pipeline import AdmissionPipeline
from admission.repository import BoundedCaller, InMemoryRepository
from admission.rules import load_rule_book, load_scoring_tables
from admission.scorer import FacilityScorer

# Wednesday 12 June 2024, 12:00: weekday daytime, neutral time-of-day factors
FIXED_NOW = datetime(2024, 6, 12, 12, 0, 0, tzinfo=timezone.utc)

KINGSTON = GeoPoint(18.0179, -76.8099)
SPANISH_TOWN = GeoPoint(17.9700, -76.9500)
MANDEVILLE = GeoPoint(18.0400, -77.5000)


class TickingClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += timedelta(seconds=1)
            return self.now


class RecordingGateway(NotificationGateway):

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def notify(self, submission_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((submission_id, event_kind, payload))

    def kinds_for(self, submission_id: str) -> List[str]:
        with self._lock:
            return [kind for sid, kind, _ in self.sent if sid == submission_id]


def ward(facility_id: str, capacity: int = 100, **kwargs) -> FacilityRecord:
    """Small facility near Kingston for queue tests."""
    return FacilityRecord(
        facility_id=facility_id,
        name=kwargs.pop("name", f"Ward {facility_id}"),
        location=kwargs.pop("location", GeoPoint(18.0, -76.8)),
        capacity=capacity,
        specialties=frozenset(kwargs.pop("specialties", ["Emergency"])),
        average_treatment_minutes=kwargs.pop("average_treatment_minutes", 20),
        available_clinicians=kwargs.pop("available_clinicians", 2),
        **kwargs,
    )


@pytest.fixture
def make_submission():
    """Factory for submissions with sensible defaults."""
    counter = iter(range(1, 100000))

    def _make(**overrides) -> Submission:
        fields = {
            "submission_id": f"sub-{next(counter):04d}",
            "description": "",
            "patient_status": "conscious",
            "incident_type": "fall",
            "age_range": "31-50",
            "transport_mode": "self-carry",
            "location": KINGSTON,
            "submitted_at": FIXED_NOW,
        }
        fields.update(overrides)
        return Submission(**fields)

    return _make


@pytest.fixture
def caller():
    caller = BoundedCaller(timeout_seconds=2.0, max_workers=4, name="test-repository")
    yield caller
    caller.shutdown()


@pytest.fixture
def repository():
    """In-memory repository seeded with the bundled Jamaica facility list."""
    return InMemoryRepository()


@pytest.fixture
def directory(repository, caller):
    directory = FacilityDirectory(repository, caller, refresh_interval_seconds=60)
    assert directory.refresh()
    return directory


@pytest.fixture
def small_directory(caller):
    repository = InMemoryRepository(facilities=[ward("F1"), ward("F2")])
    directory = FacilityDirectory(repository, caller)
    assert directory.refresh()
    return directory


@pytest.fixture
def rule_book():
    return load_rule_book()


@pytest.fixture
def classifier(rule_book):
    return TriageClassifier(rule_book)


@pytest.fixture
def scoring_tables():
    return load_scoring_tables()


@pytest.fixture
def scorer(directory, scoring_tables):
    return FacilityScorer(directory, scoring_tables)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def coordinator(small_directory, clock):
    return QueueCoordinator(small_directory, clock=clock)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def pipeline(repository, caller, directory, rule_book, scoring_tables, clock, gateway):
    dispatcher = NotificationDispatcher(gateway, max_workers=2, drain_timeout_seconds=2.0)
    pipeline = AdmissionPipeline(
        classifier=TriageClassifier(rule_book, repository=repository, caller=caller),
        scorer=FacilityScorer(directory, scoring_tables),
        coordinator=QueueCoordinator(directory, clock=clock),
        directory=directory,
        repository=repository,
        caller=caller,
        dispatcher=dispatcher,
    )
    yield pipeline
    dispatcher.drain()
    dispatcher.shutdown()
