"""
Incident Admission Service - Queue Coordinator

Owns one ordered waiting queue per facility.

================================================================================
ORDERING
================================================================================

Every mutation (admit, remove, move, start_treatment, retier) and the reorder
it triggers run in ONE critical section under the facility's lock:

    lock(facility)
      ├── apply mutation
      ├── compute full new order
      ├── validate order            (QueueInvariantViolation → clean recompute)
      └── commit positions + swap immutable snapshot
    unlock

Sort key:
    1. entries already InTreatment first
    2. urgency tier, Critical > High > Moderate > Low
    3. order key, initially (inserted_at, sequence), i.e. FIFO within a tier;
       a staff move swaps the keys of two same-tier neighbours

The priority score is informational (displayed, persisted). Because ordering
is tier-first, no score term can move a lower tier ahead of a higher one.

Entry lifecycle:

    Pending ──► Queued ──► InTreatment ──► Completed
                  │             │
                  └─────────────┴──────────► Removed (reason required)

================================================================================
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
import zlib
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from .config import (
    AMBULANCE_BOOST,
    INCIDENT_BOOSTS,
    STATUS_BOOSTS,
    TRAVEL_URGENCY_CEILING,
    TRAVEL_URGENCY_FLOOR,
    VULNERABLE_AGE_BOOST,
    UrgencyTier,
)
from .errors import (
    AdmissionFailed,
    DuplicateAdmission,
    EntryNotFound,
    MoveRejected,
    QueueInvariantViolation,
    SubmissionRetracted,
    ValidationError,
)
from .facilities import FacilityDirectory
from .models import (
    EntryStatus,
    PositionChange,
    QueueEntry,
    QueueStatistics,
    RemovalReason,
    Submission,
    utc_now,
)

logger = logging.getLogger(__name__)

VULNERABLE_AGE_RANGES = frozenset({"0-10", "51+"})

PositionListener = Callable[[List[PositionChange]], None]


def time_of_day_factor(hour: int) -> float:
    """Staffing/demand factor applied to wait estimates."""
    if 8 <= hour <= 10:
        return 1.3
    if 14 <= hour <= 16:
        return 1.2
    if 18 <= hour <= 20:
        return 1.4
    if hour >= 22 or hour <= 6:
        return 0.8
    return 1.0


def estimate_wait_minutes(
    ahead: int,
    clinicians: int,
    average_treatment_minutes: float,
    load: int,
    capacity: int,
    hour: int,
) -> int:
    """
    Estimated wait for a patient with ``ahead`` entries in front of them.

    base = ceil(ahead / clinicians) * avg + 0.5 * avg, scaled by the
    facility load factor (capped at 2x) and the time-of-day factor.
    """
    clinicians = max(1, clinicians)
    base = math.ceil(ahead / clinicians) * average_treatment_minutes + 0.5 * average_treatment_minutes
    load_factor = min(2.0, 1.0 + load / capacity) if capacity > 0 else 2.0
    return int(round(base * load_factor * time_of_day_factor(hour)))


class _FacilityQueue:
    """Mutable queue state; only touched while holding ``lock``."""

    def __init__(self, facility_id: str):
        self.facility_id = facility_id
        self.lock = threading.RLock()
        self.entries: Dict[str, QueueEntry] = {}
        # Immutable views replaced on every commit; read without the lock.
        self.snapshot: Tuple[QueueEntry, ...] = ()
        self.history: Tuple[QueueEntry, ...] = ()
        self.version = 0


class QueueCoordinator:
    """
    Facility-scoped priority queues.

    Different facilities are fully independent. The submission index (which
    facility holds a submission's active entry) has its own small lock, which
    is only ever acquired after a facility lock, never before.
    """

    def __init__(
        self,
        directory: FacilityDirectory,
        average_treatment_minutes: int = 25,
        default_clinicians: int = 2,
        fairness_bonus: float = 0.25,
        tie_break_span: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
        retry_attempts: int = 1,
        history_limit: int = 500,
    ):
        self.directory = directory
        self.average_treatment_minutes = average_treatment_minutes
        self.default_clinicians = default_clinicians
        self.fairness_bonus = fairness_bonus
        self.tie_break_span = tie_break_span
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.history_limit = max(1, history_limit)

        self._queues: Dict[str, _FacilityQueue] = {}
        self._queues_lock = threading.Lock()
        self._index_lock = threading.Lock()
        self._active: Dict[str, str] = {}
        self._inputs: Dict[str, Tuple[Submission, float]] = {}
        self._pending: Dict[str, QueueEntry] = {}
        self._retracted: Set[str] = set()
        self._sequence = itertools.count(1)
        self._listeners: List[PositionListener] = []

    def subscribe(self, listener: PositionListener) -> None:
        """Register a callback for position changes, invoked after each commit."""
        self._listeners.append(listener)

    # =========================================================================
    # PRIORITY SCORE
    # =========================================================================

    def tie_break(self, submission_id: str) -> float:
        """Deterministic value in [0, tie_break_span) derived from the id."""
        return zlib.crc32(submission_id.encode("utf-8")) / 2 ** 32 * self.tie_break_span

    def priority_score(
        self,
        submission: Submission,
        tier: UrgencyTier,
        travel_minutes: float,
    ) -> float:
        status_key = "_".join((submission.patient_status or "").lower().split())
        incident_key = (submission.incident_type or "").strip().lower()
        travel_urgency = min(
            TRAVEL_URGENCY_CEILING,
            max(TRAVEL_URGENCY_FLOOR, 6.0 - max(0.0, travel_minutes) / 10.0),
        )

        score = (
            tier.base_priority
            + STATUS_BOOSTS.get(status_key, 0.0)
            + INCIDENT_BOOSTS.get(incident_key, 0.0)
            + (VULNERABLE_AGE_BOOST if (submission.age_range or "").strip() in VULNERABLE_AGE_RANGES else 0.0)
            + (AMBULANCE_BOOST if (submission.transport_mode or "").strip().lower() == "ambulance" else 0.0)
            + travel_urgency
            + self.fairness_bonus
            + self.tie_break(submission.submission_id)
        )
        return round(score, 4)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def admit(
        self,
        submission: Submission,
        facility_id: str,
        tier: UrgencyTier,
        travel_minutes: float,
    ) -> QueueEntry:
        """Insert a submission into a facility queue. See ``admit_or_get``."""
        return self.admit_or_get(submission, facility_id, tier, travel_minutes)[0]

    def admit_or_get(
        self,
        submission: Submission,
        facility_id: str,
        tier: UrgencyTier,
        travel_minutes: float,
    ) -> Tuple[QueueEntry, bool]:
        """
        Insert a submission into a facility queue.

        Idempotent for a submission already active at the same facility: the
        existing entry is returned unchanged with ``created`` False.

        Raises:
            FacilityNotFound: unknown facility
            DuplicateAdmission: already active at another facility
            SubmissionRetracted: retracted before the commit
            AdmissionFailed: the mutation failed twice; the entry is kept Pending
        """
        self.directory.get(facility_id)
        submission_id = submission.submission_id
        score = self.priority_score(submission, tier, travel_minutes)
        queue = self._queue_for(facility_id)

        with queue.lock:
            with self._index_lock:
                if submission_id in self._retracted:
                    raise SubmissionRetracted(submission_id)
                holder = self._active.get(submission_id)
                if holder is None:
                    # Reserve the submission for this facility
                    self._active[submission_id] = facility_id
            if holder == facility_id and submission_id in queue.entries:
                logger.info(
                    f"Submission {submission_id} already queued at {facility_id}",
                    extra={"submission_id": submission_id, "facility_id": facility_id},
                )
                return replace(queue.entries[submission_id]), False
            if holder is not None and holder != facility_id:
                raise DuplicateAdmission(submission_id, holder)

            now = self.clock()
            entry = QueueEntry(
                submission_id=submission_id,
                facility_id=facility_id,
                tier=tier,
                priority_score=score,
                inserted_at=now,
                sequence=next(self._sequence),
                status=EntryStatus.QUEUED,
            )

            def apply():
                entry.status = EntryStatus.QUEUED
                queue.entries[submission_id] = entry

            def rollback():
                queue.entries.pop(submission_id, None)

            try:
                changes = self._mutate(queue, "admit", submission_id, apply, rollback)
            except Exception as e:
                entry.status = EntryStatus.PENDING
                with self._index_lock:
                    self._active.pop(submission_id, None)
                    self._pending[submission_id] = entry
                logger.error(
                    f"Admission of {submission_id} to {facility_id} failed; preserved as Pending",
                    extra={"submission_id": submission_id, "facility_id": facility_id, "error": str(e)},
                )
                raise AdmissionFailed(submission_id, e) from e

            with self._index_lock:
                self._pending.pop(submission_id, None)
                self._inputs[submission_id] = (submission, travel_minutes)
            self.directory.adjust_load(facility_id, 1)
            admitted = replace(entry)

        logger.info(
            f"Admitted {submission_id} to {facility_id} at position {admitted.position} ({tier.value})",
            extra={
                "submission_id": submission_id,
                "facility_id": facility_id,
                "tier": tier.value,
                "priority_score": score,
                "position": admitted.position,
            },
        )
        self._notify(changes)
        return admitted, True

    def remove(self, submission_id: str, reason: Union[RemovalReason, str]) -> QueueEntry:
        """Close an active entry (Completed for reason ``completed``, else Removed)."""
        if not isinstance(reason, RemovalReason):
            reason = RemovalReason.parse(reason)
        queue, entry = self._locate(submission_id)

        with queue.lock:
            entry = self._entry_in(queue, submission_id)
            previous_status = entry.status
            closed_at = self.clock()

            def apply():
                queue.entries.pop(submission_id, None)
                entry.status = (
                    EntryStatus.COMPLETED if reason == RemovalReason.COMPLETED else EntryStatus.REMOVED
                )
                entry.removal_reason = reason
                entry.closed_at = closed_at

            def rollback():
                entry.status = previous_status
                entry.removal_reason = None
                entry.closed_at = None
                queue.entries[submission_id] = entry

            changes = self._mutate(queue, "remove", submission_id, apply, rollback)
            with self._index_lock:
                self._active.pop(submission_id, None)
                self._inputs.pop(submission_id, None)
            self.directory.adjust_load(queue.facility_id, -1)
            freed = replace(entry)
            queue.history = (queue.history + (freed,))[-self.history_limit:]

        logger.info(
            f"Removed {submission_id} from {queue.facility_id} ({reason.value})",
            extra={"submission_id": submission_id, "facility_id": queue.facility_id, "reason": reason.value},
        )
        self._notify(changes)
        return freed

    def move(self, submission_id: str, direction: str) -> QueueEntry:
        """
        Move a waiting entry one step up or down.

        Only swaps with a waiting neighbour of the same tier; anything else
        would break tier ordering, jump an in-treatment entry or leave the
        queue, and is rejected.
        """
        step = {"up": -1, "down": 1}.get((direction or "").strip().lower())
        if step is None:
            raise ValidationError(f"Direction must be 'up' or 'down', got {direction!r}")
        queue, _ = self._locate(submission_id)

        with queue.lock:
            entry = self._entry_in(queue, submission_id)
            ordered = self._sorted(queue.entries.values())
            index = next(i for i, e in enumerate(ordered) if e is entry)
            target = index + step

            if entry.status == EntryStatus.IN_TREATMENT:
                raise MoveRejected(f"{submission_id} is already in treatment")
            if not 0 <= target < len(ordered):
                raise MoveRejected(f"{submission_id} is already at the {'top' if step < 0 else 'bottom'}")
            neighbour = ordered[target]
            if neighbour.status == EntryStatus.IN_TREATMENT:
                raise MoveRejected(f"Cannot move {submission_id} past an entry in treatment")
            if neighbour.tier != entry.tier:
                raise MoveRejected(
                    f"Cannot move {entry.tier.value} entry {submission_id} past "
                    f"{neighbour.tier.value} entry {neighbour.submission_id}"
                )

            def swap():
                entry.order_key, neighbour.order_key = neighbour.order_key, entry.order_key

            changes = self._mutate(queue, "move", submission_id, swap, swap)
            moved = replace(entry)

        logger.info(
            f"Moved {submission_id} {direction} to position {moved.position}",
            extra={"submission_id": submission_id, "facility_id": queue.facility_id, "position": moved.position},
        )
        self._notify(changes)
        return moved

    def start_treatment(self, submission_id: str) -> QueueEntry:
        queue, _ = self._locate(submission_id)
        with queue.lock:
            entry = self._entry_in(queue, submission_id)
            if entry.status == EntryStatus.IN_TREATMENT:
                return replace(entry)
            started_at = self.clock()

            def apply():
                entry.status = EntryStatus.IN_TREATMENT
                entry.treatment_started_at = started_at

            def rollback():
                entry.status = EntryStatus.QUEUED
                entry.treatment_started_at = None

            changes = self._mutate(queue, "start_treatment", submission_id, apply, rollback)
            started = replace(entry)

        logger.info(
            f"Treatment started for {submission_id} at {queue.facility_id}",
            extra={"submission_id": submission_id, "facility_id": queue.facility_id},
        )
        self._notify(changes)
        return started

    def retier(self, submission_id: str, tier: UrgencyTier) -> QueueEntry:
        """Apply an overridden tier to an active entry and recompute its priority."""
        queue, _ = self._locate(submission_id)
        with queue.lock:
            entry = self._entry_in(queue, submission_id)
            with self._index_lock:
                inputs = self._inputs.get(submission_id)
            previous = (entry.tier, entry.priority_score)
            score = (
                self.priority_score(inputs[0], tier, inputs[1])
                if inputs is not None
                else round(entry.priority_score - entry.tier.base_priority + tier.base_priority, 4)
            )

            def apply():
                entry.tier = tier
                entry.priority_score = score

            def rollback():
                entry.tier, entry.priority_score = previous

            changes = self._mutate(queue, "retier", submission_id, apply, rollback)
            updated = replace(entry)

        logger.info(
            f"Re-tiered {submission_id}: {previous[0].value} -> {tier.value}",
            extra={"submission_id": submission_id, "facility_id": queue.facility_id, "tier": tier.value},
        )
        self._notify(changes)
        return updated

    def retract(self, submission_id: str) -> Optional[QueueEntry]:
        """
        Cancel a submission.

        Blocks any later admit of the id and removes an already committed
        entry with reason ``retracted``.
        """
        with self._index_lock:
            self._retracted.add(submission_id)
            self._pending.pop(submission_id, None)
            holder = self._active.get(submission_id)
        logger.info(f"Submission {submission_id} retracted", extra={"submission_id": submission_id})
        if holder is None:
            return None
        try:
            return self.remove(submission_id, RemovalReason.RETRACTED)
        except EntryNotFound:
            # The in-flight admission failed and released its reservation
            return None

    def reorder(self, facility_id: str) -> List[PositionChange]:
        """Recompute and commit positions for a facility."""
        self.directory.get(facility_id)
        queue = self._queue_for(facility_id)
        with queue.lock:
            changes = self._reorder_locked(queue)
        self._notify(changes)
        return changes

    # =========================================================================
    # READS (lock-free, possibly stale)
    # =========================================================================

    def get_queue(self, facility_id: str, include_history: bool = False) -> List[QueueEntry]:
        """
        Active entries in position order.

        With ``include_history`` the facility's closed entries (Completed or
        Removed) follow, oldest closure first.
        """
        queue = self._queues.get(facility_id)
        if queue is None:
            self.directory.get(facility_id)
            return []
        entries = list(queue.snapshot)
        if include_history:
            entries.extend(queue.history)
        return [replace(e) for e in entries]

    def queue_statistics(self, facility_id: Optional[str] = None) -> List[QueueStatistics]:
        """
        Wait and priority aggregates over waiting (Queued) entries.

        For one facility a row is always returned, empty or not. Without a
        facility, only facilities with waiting entries are reported, busiest
        first.
        """
        if facility_id is not None:
            facility = self.directory.get(facility_id)
            queue = self._queues.get(facility_id)
            snapshot = queue.snapshot if queue is not None else ()
            return [QueueStatistics.from_entries(facility_id, facility.name, snapshot)]

        rows = []
        for queue_id, queue in list(self._queues.items()):
            snapshot = queue.snapshot
            if not any(e.status == EntryStatus.QUEUED for e in snapshot):
                continue
            facility = self.directory.find(queue_id)
            rows.append(QueueStatistics.from_entries(queue_id, facility.name if facility else queue_id, snapshot))
        rows.sort(key=lambda row: (-row.waiting, row.facility_id))
        return rows

    def active_entry(self, submission_id: str) -> Optional[QueueEntry]:
        facility_id = self._active.get(submission_id)
        queue = self._queues.get(facility_id) if facility_id else None
        if queue is None:
            return None
        for entry in queue.snapshot:
            if entry.submission_id == submission_id:
                return replace(entry)
        return None

    def pending_entries(self) -> List[QueueEntry]:
        with self._index_lock:
            return [replace(e) for e in self._pending.values()]

    def is_retracted(self, submission_id: str) -> bool:
        return submission_id in self._retracted

    def stats(self) -> Dict[str, object]:
        facilities = {}
        for facility_id, queue in sorted(self._queues.items()):
            snapshot = queue.snapshot
            facilities[facility_id] = {
                "queued": sum(1 for e in snapshot if e.status == EntryStatus.QUEUED),
                "in_treatment": sum(1 for e in snapshot if e.status == EntryStatus.IN_TREATMENT),
                "version": queue.version,
            }
        return {
            "facilities": facilities,
            "active_entries": len(self._active),
            "pending_entries": len(self._pending),
            "retracted": len(self._retracted),
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _queue_for(self, facility_id: str) -> _FacilityQueue:
        with self._queues_lock:
            queue = self._queues.get(facility_id)
            if queue is None:
                queue = self._queues[facility_id] = _FacilityQueue(facility_id)
            return queue

    def _locate(self, submission_id: str) -> Tuple[_FacilityQueue, str]:
        with self._index_lock:
            facility_id = self._active.get(submission_id)
        if facility_id is None:
            raise EntryNotFound(submission_id)
        return self._queue_for(facility_id), facility_id

    @staticmethod
    def _entry_in(queue: _FacilityQueue, submission_id: str) -> QueueEntry:
        entry = queue.entries.get(submission_id)
        if entry is None:
            raise EntryNotFound(submission_id)
        return entry

    def _mutate(
        self,
        queue: _FacilityQueue,
        operation: str,
        submission_id: str,
        apply: Callable[[], None],
        rollback: Callable[[], None],
    ) -> List[PositionChange]:
        """Apply + reorder as one step, retrying once after a rollback."""
        attempts = 1 + self.retry_attempts
        attempt = 0
        while True:
            attempt += 1
            apply()
            try:
                return self._reorder_locked(queue)
            except Exception as e:
                rollback()
                logger.warning(
                    f"{operation} of {submission_id} failed on attempt {attempt}/{attempts}: {e}",
                    extra={"submission_id": submission_id, "facility_id": queue.facility_id, "operation": operation},
                )
                if attempt >= attempts:
                    raise

    @staticmethod
    def _sort_key(entry: QueueEntry):
        return (
            0 if entry.status == EntryStatus.IN_TREATMENT else 1,
            -entry.tier.rank,
            entry.order_key,
        )

    def _sorted(self, entries) -> List[QueueEntry]:
        return sorted(entries, key=self._sort_key)

    def _validate_order(self, queue: _FacilityQueue, ordered: List[QueueEntry]) -> None:
        if len(ordered) != len(queue.entries):
            raise QueueInvariantViolation(
                f"{queue.facility_id}: ordered {len(ordered)} entries, queue holds {len(queue.entries)}"
            )
        seen: Set[str] = set()
        last_waiting: Optional[QueueEntry] = None
        for entry in ordered:
            if entry.submission_id in seen:
                raise QueueInvariantViolation(f"{queue.facility_id}: duplicate entry {entry.submission_id}")
            seen.add(entry.submission_id)
            if entry.facility_id != queue.facility_id:
                raise QueueInvariantViolation(
                    f"{queue.facility_id}: entry {entry.submission_id} belongs to {entry.facility_id}"
                )
            if not entry.status.is_active:
                raise QueueInvariantViolation(
                    f"{queue.facility_id}: entry {entry.submission_id} is {entry.status.value}"
                )
            if entry.status == EntryStatus.IN_TREATMENT:
                if last_waiting is not None:
                    raise QueueInvariantViolation(
                        f"{queue.facility_id}: in-treatment entry {entry.submission_id} behind waiting entries"
                    )
                continue
            if last_waiting is not None and entry.tier.rank > last_waiting.tier.rank:
                raise QueueInvariantViolation(
                    f"{queue.facility_id}: {entry.tier.value} entry {entry.submission_id} "
                    f"behind {last_waiting.tier.value} entry {last_waiting.submission_id}"
                )
            last_waiting = entry

    def _clean_entries(self, queue: _FacilityQueue) -> None:
        """Drop corrupt rows and restore canonical FIFO keys."""
        for submission_id, entry in list(queue.entries.items()):
            if (
                entry.submission_id != submission_id
                or entry.facility_id != queue.facility_id
                or not entry.status.is_active
            ):
                logger.error(
                    f"Dropping corrupt queue row {submission_id} from {queue.facility_id}",
                    extra={"submission_id": submission_id, "status": entry.status.value},
                )
                del queue.entries[submission_id]
                with self._index_lock:
                    if self._active.get(submission_id) == queue.facility_id:
                        del self._active[submission_id]
                continue
            entry.order_key = (entry.inserted_at, entry.sequence)

    def _reorder_locked(self, queue: _FacilityQueue) -> List[PositionChange]:
        ordered = self._sorted(queue.entries.values())
        try:
            self._validate_order(queue, ordered)
        except QueueInvariantViolation as e:
            logger.error(
                f"Queue invariant violated at {queue.facility_id}: {e}; recomputing from scratch",
                extra={"facility_id": queue.facility_id},
            )
            self._clean_entries(queue)
            ordered = self._sorted(queue.entries.values())
            self._validate_order(queue, ordered)
        return self._commit(queue, ordered)

    def _commit(self, queue: _FacilityQueue, ordered: List[QueueEntry]) -> List[PositionChange]:
        facility = self.directory.find(queue.facility_id)
        clinicians = (facility and facility.available_clinicians) or self.default_clinicians
        average = (facility and facility.average_treatment_minutes) or self.average_treatment_minutes
        load = facility.current_load if facility else 0
        capacity = facility.capacity if facility else 0
        hour = self.clock().hour
        previous = {e.submission_id: e.position for e in queue.snapshot}

        changes: List[PositionChange] = []
        for position, entry in enumerate(ordered, 1):
            entry.position = position
            entry.estimated_wait_minutes = (
                0
                if entry.status == EntryStatus.IN_TREATMENT
                else estimate_wait_minutes(
                    position - 1, clinicians, average, load, capacity, hour
                )
            )
            old = previous.get(entry.submission_id)
            if old != position:
                changes.append(PositionChange(
                    submission_id=entry.submission_id,
                    facility_id=queue.facility_id,
                    old_position=old,
                    new_position=position,
                    estimated_wait_minutes=entry.estimated_wait_minutes,
                ))

        queue.snapshot = tuple(replace(e) for e in ordered)
        queue.version += 1
        return changes

    def _notify(self, changes: List[PositionChange]) -> None:
        if not changes:
            return
        for listener in self._listeners:
            try:
                listener(changes)
            except Exception as e:
                logger.error(f"Position listener failed: {e}")
