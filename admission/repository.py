"""
Incident Admission Service - Repository Contract

The storage engine is an external collaborator. The pipeline only depends on
the ``Repository`` contract below; every call may fail or hang, so callers go
through ``BoundedCaller``, which enforces a timeout and returns an explicit
fallback value instead of propagating the failure.

Logical persisted state:
    submissions       keyed by submission id
    triage_results    append-only, versioned per submission
    queue_entries     one row per submission (latest state)
    facilities        load counter is approximate
    events            audit trail (overrides, removals, failures)
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from .models import FacilityRecord, QueueEntry, Submission, TriageResult, utc_now
from .rules import TriageRule, load_facility_seed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository(ABC):
    """Storage contract consumed by the pipeline."""

    @abstractmethod
    def load_facilities(self) -> List[FacilityRecord]:
        ...

    @abstractmethod
    def load_rules(self) -> List[TriageRule]:
        """Rule overrides; an empty list means "use the bundled table"."""

    @abstractmethod
    def persist_queue_entry(self, entry: QueueEntry) -> None:
        ...

    @abstractmethod
    def persist_triage_result(self, result: TriageResult) -> None:
        ...

    @abstractmethod
    def log_event(
        self,
        kind: str,
        subject_id: str,
        actor: Optional[str],
        payload: Dict[str, Any],
    ) -> None:
        ...

    def persist_submission(self, submission: Submission) -> None:
        """Optional; repositories that do not store raw submissions ignore it."""


class InMemoryRepository(Repository):
    """
    Thread-safe in-process repository for tests and local runs.

    Seeded from the bundled facility list unless facilities are passed in.
    """

    def __init__(
        self,
        facilities: Optional[Iterable[FacilityRecord]] = None,
        rules: Optional[Iterable[TriageRule]] = None,
        seed_path: Optional[str] = None,
    ):
        if facilities is None:
            facilities = load_facility_seed(seed_path)
        self._lock = threading.Lock()
        self._facilities: Dict[str, FacilityRecord] = {f.facility_id: f for f in facilities}
        self._rules: List[TriageRule] = list(rules or [])
        self._submissions: Dict[str, Dict[str, Any]] = {}
        self._triage_results: Dict[str, List[TriageResult]] = {}
        self._queue_entries: Dict[str, Dict[str, Any]] = {}
        self._events: List[Dict[str, Any]] = []

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def load_facilities(self) -> List[FacilityRecord]:
        with self._lock:
            return [copy.deepcopy(f) for f in sorted(self._facilities.values(), key=lambda f: f.facility_id)]

    def load_rules(self) -> List[TriageRule]:
        with self._lock:
            return list(self._rules)

    def persist_queue_entry(self, entry: QueueEntry) -> None:
        with self._lock:
            self._queue_entries[entry.submission_id] = entry.to_dict()

    def persist_triage_result(self, result: TriageResult) -> None:
        with self._lock:
            self._triage_results.setdefault(result.submission_id, []).append(result)

    def log_event(
        self,
        kind: str,
        subject_id: str,
        actor: Optional[str],
        payload: Dict[str, Any],
    ) -> None:
        with self._lock:
            self._events.append({
                "kind": kind,
                "subject_id": subject_id,
                "actor": actor,
                "payload": dict(payload),
                "logged_at": utc_now().isoformat(),
            })

    def persist_submission(self, submission: Submission) -> None:
        with self._lock:
            self._submissions[submission.submission_id] = submission.to_dict()

    # -------------------------------------------------------------------------
    # Administration / inspection
    # -------------------------------------------------------------------------

    def upsert_facility(self, facility: FacilityRecord) -> None:
        with self._lock:
            self._facilities[facility.facility_id] = facility

    def set_rules(self, rules: Iterable[TriageRule]) -> None:
        with self._lock:
            self._rules = list(rules)

    def triage_results(self, submission_id: str) -> List[TriageResult]:
        with self._lock:
            return list(self._triage_results.get(submission_id, []))

    def queue_entry(self, submission_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._queue_entries.get(submission_id)
            return dict(row) if row else None

    def events(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self._events if kind is None or e["kind"] == kind]


class BoundedCaller:
    """
    Runs repository calls on a worker pool with a hard timeout.

    A call that raises or does not finish in time is logged and answered with
    the caller-supplied fallback; it never blocks the pipeline.
    """

    def __init__(self, timeout_seconds: float, max_workers: int = 4, name: str = "repository"):
        self.timeout_seconds = timeout_seconds
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._stats_lock = threading.Lock()
        self.calls = 0
        self.failures = 0
        self.timeouts = 0

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        fallback: Optional[T] = None,
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> Optional[T]:
        operation = operation or getattr(fn, "__name__", "call")
        with self._stats_lock:
            self.calls += 1

        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            with self._stats_lock:
                self.timeouts += 1
            logger.warning(
                f"{self.name}.{operation} timed out after {self.timeout_seconds}s; using fallback",
                extra={"operation": operation, "timeout_seconds": self.timeout_seconds},
            )
            return fallback
        except Exception as e:
            with self._stats_lock:
                self.failures += 1
            logger.warning(
                f"{self.name}.{operation} failed: {e}; using fallback",
                extra={"operation": operation, "error": str(e)},
            )
            return fallback

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {"calls": self.calls, "failures": self.failures, "timeouts": self.timeouts}

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
