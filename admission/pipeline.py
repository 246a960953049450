"""
Incident Admission Service - Admission Pipeline

Sequences classify → rank → admit for each submission and turns the result
into side-effect requests (persistence, audit events, notifications).

================================================================================
DEGRADATION POLICY
================================================================================

A submission is never dropped silently. The caller of ``submit`` receives
either a committed queue position or an explicit error:

    classification fails   → degraded-fallback tier, flagged for manual review
    ranking fails          → default (or first active) facility, flagged
    no facility available  → configured default facility, else surfaced
    queue mutation fails   → retried once, then AdmissionFailed (kept Pending)
    repository fails       → logged, fallback value, admission unaffected
    notification fails     → logged, admission unaffected

Persistence and notification happen after the facility lock is released.

================================================================================
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from .classifier import TriageClassifier
from .config import Settings, UrgencyTier, get_settings
from .coordinator import QueueCoordinator
from .errors import (
    AdmissionFailed,
    DuplicateAdmission,
    EntryNotFound,
    NoFacilityAvailable,
    SubmissionRetracted,
)
from .facilities import FacilityDirectory
from .models import (
    AdmissionOutcome,
    EventKind,
    FacilityRecord,
    GeoPoint,
    LocationStatus,
    PipelineEvent,
    PositionChange,
    QueueEntry,
    QueueStatistics,
    RankedFacility,
    RemovalReason,
    Submission,
    TriageResult,
    utc_now,
    validate_submission,
)
from .notifications import LoggingNotificationGateway, NotificationDispatcher, NotificationGateway
from .repository import BoundedCaller, InMemoryRepository, Repository
from .rules import load_rule_book, load_scoring_tables
from .scorer import FacilityScorer

logger = logging.getLogger(__name__)


class AdmissionPipeline:
    """
    Orchestrates the admission of incident submissions.

    Usage:
        pipeline = AdmissionPipeline.from_settings()
        outcome = pipeline.submit(submission)
        print(outcome.facility.facility_id, outcome.queue_position)
    """

    def __init__(
        self,
        classifier: TriageClassifier,
        scorer: FacilityScorer,
        coordinator: QueueCoordinator,
        directory: FacilityDirectory,
        repository: Repository,
        caller: BoundedCaller,
        dispatcher: NotificationDispatcher,
        default_facility_id: Optional[str] = None,
        default_travel_minutes: float = 15.0,
    ):
        self.classifier = classifier
        self.scorer = scorer
        self.coordinator = coordinator
        self.directory = directory
        self.repository = repository
        self.caller = caller
        self.dispatcher = dispatcher
        self.default_facility_id = default_facility_id
        self.default_travel_minutes = default_travel_minutes

        self._lock = threading.Lock()
        self._history: Dict[str, List[TriageResult]] = {}
        self._submitted = 0
        self._resubmissions = 0
        self._manual_reviews = 0
        self._failed = 0

        coordinator.subscribe(self._on_positions_changed)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        repository: Optional[Repository] = None,
        gateway: Optional[NotificationGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "AdmissionPipeline":
        """Wire every component from settings; the facility snapshot is loaded once here."""
        settings = settings or get_settings()
        repository = repository or InMemoryRepository(seed_path=settings.facility_seed_path)
        caller = BoundedCaller(
            timeout_seconds=settings.repository_timeout_seconds,
            max_workers=settings.external_call_workers,
        )

        directory = FacilityDirectory(
            repository, caller, refresh_interval_seconds=settings.facility_refresh_interval_seconds
        )
        directory.refresh()

        classifier = TriageClassifier(
            load_rule_book(settings.triage_rules_path),
            repository=repository,
            caller=caller,
            rules_path=settings.triage_rules_path,
        )
        classifier.refresh_rules()

        coordinator = QueueCoordinator(
            directory,
            average_treatment_minutes=settings.average_treatment_minutes,
            default_clinicians=settings.default_available_clinicians,
            fairness_bonus=settings.fairness_bonus,
            tie_break_span=settings.tie_break_span,
            clock=clock or utc_now,
        )
        dispatcher = NotificationDispatcher(
            gateway or LoggingNotificationGateway(),
            max_workers=2,
            drain_timeout_seconds=settings.notification_timeout_seconds,
        )

        return cls(
            classifier=classifier,
            scorer=FacilityScorer(directory, load_scoring_tables(settings.facility_scoring_path)),
            coordinator=coordinator,
            directory=directory,
            repository=repository,
            caller=caller,
            dispatcher=dispatcher,
            default_facility_id=settings.default_facility_id,
            default_travel_minutes=settings.default_travel_minutes,
        )

    # =========================================================================
    # SUBMIT
    # =========================================================================

    def submit(
        self,
        submission: Submission,
        forced_facility_id: Optional[str] = None,
    ) -> AdmissionOutcome:
        """
        Admit one submission.

        Resubmitting a submission that is still queued returns its current
        state (latest triage version, existing entry) without reclassifying
        and without emitting events.

        Raises:
            ValidationError: malformed submission
            FacilityNotFound: unknown staff-forced facility
            NoFacilityAvailable: nothing to rank and no default facility
            DuplicateAdmission / SubmissionRetracted: see QueueCoordinator.admit
            AdmissionFailed: queue mutation failed; entry preserved as Pending
        """
        validate_submission(submission)
        submission_id = submission.submission_id
        if self.coordinator.is_retracted(submission_id):
            raise SubmissionRetracted(submission_id)

        existing = self.coordinator.active_entry(submission_id)
        if existing is not None:
            return self._resubmitted(submission, existing, forced_facility_id)

        with self._lock:
            self._submitted += 1
        self._persist(self.repository.persist_submission, submission)

        review_reasons: List[str] = []

        triage = self.classifier.classify(submission)
        if triage.is_degraded:
            review_reasons.append("Triage classification degraded")

        facility = self._choose_facility(submission, triage.tier, forced_facility_id, review_reasons)
        travel = (
            facility.travel_minutes
            if facility.travel_minutes is not None
            else self.default_travel_minutes
        )

        try:
            entry, created = self.coordinator.admit_or_get(submission, facility.facility_id, triage.tier, travel)
        except AdmissionFailed as e:
            self._record_triage(triage)
            with self._lock:
                self._failed += 1
            for pending in self.coordinator.pending_entries():
                if pending.submission_id == submission_id:
                    self._persist(self.repository.persist_queue_entry, pending)
            self._log_event("AdmissionFailed", submission_id, None, {
                "facility_id": facility.facility_id,
                "error": str(e.cause) if e.cause else str(e),
            })
            raise

        if not created:
            # A concurrent submit of the same id committed first
            return self._resubmitted(submission, entry, forced_facility_id, triage)

        triage = self._record_triage(triage)
        self._persist(self.repository.persist_queue_entry, entry)

        events = [
            PipelineEvent(EventKind.FACILITY_ASSIGNED, submission_id, {
                "facility_id": facility.facility_id,
                "facility_name": facility.facility.name,
                "tier": triage.tier.value,
                "reason": facility.reason,
            }),
            PipelineEvent(EventKind.QUEUE_POSITION_CHANGED, submission_id, {
                "facility_id": entry.facility_id,
                "old_position": None,
                "new_position": entry.position,
                "estimated_wait_minutes": entry.estimated_wait_minutes,
            }),
        ]
        if review_reasons:
            with self._lock:
                self._manual_reviews += 1
            events.append(PipelineEvent(EventKind.MANUAL_REVIEW_REQUIRED, submission_id, {
                "facility_id": entry.facility_id,
                "reasons": list(review_reasons),
            }))
            logger.warning(
                f"Submission {submission_id} flagged for manual review: {'; '.join(review_reasons)}",
                extra={"submission_id": submission_id, "reasons": review_reasons},
            )

        for event in events:
            self._log_event(event.kind.value, submission_id, None, event.payload)
        self.dispatcher.dispatch_all(events)

        logger.info(
            f"Submission {submission_id}: {triage.tier.value} via {triage.method.value}, "
            f"{facility.facility_id} position {entry.position}, ~{entry.estimated_wait_minutes} min",
            extra={
                "submission_id": submission_id,
                "tier": triage.tier.value,
                "facility_id": facility.facility_id,
                "position": entry.position,
            },
        )

        return AdmissionOutcome(
            triage=triage,
            facility=facility,
            entry=entry,
            needs_manual_review=bool(review_reasons),
            review_reasons=review_reasons,
            events=events,
        )

    def _resubmitted(
        self,
        submission: Submission,
        entry: QueueEntry,
        forced_facility_id: Optional[str],
        classified: Optional[TriageResult] = None,
    ) -> AdmissionOutcome:
        """Current state of an already queued submission; no triage version is recorded."""
        submission_id = submission.submission_id
        if forced_facility_id and forced_facility_id != entry.facility_id:
            raise DuplicateAdmission(submission_id, entry.facility_id)

        try:
            triage = self.current_triage(submission_id)
        except EntryNotFound:
            # The committing submit has not recorded its triage yet
            triage = classified or self.classifier.classify(submission)
        facility = self.scorer.score_facility(submission, triage.tier, entry.facility_id)

        with self._lock:
            self._resubmissions += 1
        logger.info(
            f"Submission {submission_id} already queued at {entry.facility_id}; "
            f"returning current state (triage v{triage.version})",
            extra={"submission_id": submission_id, "facility_id": entry.facility_id, "version": triage.version},
        )
        return AdmissionOutcome(triage=triage, facility=facility, entry=entry)

    def _choose_facility(
        self,
        submission: Submission,
        tier: UrgencyTier,
        forced_facility_id: Optional[str],
        review_reasons: List[str],
    ) -> RankedFacility:
        if forced_facility_id:
            return self.scorer.score_facility(submission, tier, forced_facility_id)

        try:
            chosen = self.scorer.rank(submission, tier)[0]
        except NoFacilityAvailable as e:
            fallback = self._fallback_facility(allow_first_active=False)
            if fallback is None:
                raise
            review_reasons.append(f"{e}; routed to default facility {fallback.facility_id}")
            return fallback
        except Exception as e:
            logger.error(
                f"Facility ranking failed for {submission.submission_id}: {e}",
                extra={"submission_id": submission.submission_id},
            )
            fallback = self._fallback_facility(allow_first_active=True)
            if fallback is None:
                raise NoFacilityAvailable(f"Ranking failed and no fallback facility: {e}") from e
            review_reasons.append(f"Facility ranking failed; routed to {fallback.facility_id}")
            return fallback

        if chosen.location_status == LocationStatus.UNKNOWN:
            review_reasons.append("Incident location unknown; facility chosen by default order")
        return chosen

    def _fallback_facility(self, allow_first_active: bool) -> Optional[RankedFacility]:
        facility = self.directory.find(self.default_facility_id) if self.default_facility_id else None
        if facility is None and allow_first_active:
            active = self.directory.active()
            facility = active[0] if active else None
        if facility is None:
            return None
        return RankedFacility(
            facility=facility,
            score=0.0,
            rank=1,
            location_status=LocationStatus.UNKNOWN,
            reason=f"{facility.name}: fallback facility",
        )

    # =========================================================================
    # CASE OPERATIONS
    # =========================================================================

    def get_queue(self, facility_id: str, include_history: bool = False) -> List[QueueEntry]:
        return self.coordinator.get_queue(facility_id, include_history=include_history)

    def queue_statistics(self, facility_id: Optional[str] = None) -> List[QueueStatistics]:
        return self.coordinator.queue_statistics(facility_id)

    def facilities_within(
        self,
        location: GeoPoint,
        radius_km: float = 50.0,
        include_inactive: bool = False,
    ) -> List[Tuple[FacilityRecord, float]]:
        return self.scorer.facilities_within(location, radius_km, include_inactive=include_inactive)

    def complete_case(
        self,
        submission_id: str,
        outcome: Union[RemovalReason, str] = RemovalReason.COMPLETED,
        actor: Optional[str] = None,
    ) -> QueueEntry:
        reason = outcome if isinstance(outcome, RemovalReason) else RemovalReason.parse(outcome)
        entry = self.coordinator.remove(submission_id, reason)
        self._persist(self.repository.persist_queue_entry, entry)
        self._close_event(entry, actor)
        return entry

    def move_in_queue(self, submission_id: str, direction: str, actor: Optional[str] = None) -> QueueEntry:
        entry = self.coordinator.move(submission_id, direction)
        self._persist(self.repository.persist_queue_entry, entry)
        self._log_event("QueueMove", submission_id, actor, {
            "direction": direction,
            "facility_id": entry.facility_id,
            "position": entry.position,
        })
        return entry

    def start_treatment(self, submission_id: str, actor: Optional[str] = None) -> QueueEntry:
        entry = self.coordinator.start_treatment(submission_id)
        self._persist(self.repository.persist_queue_entry, entry)
        self._log_event("TreatmentStarted", submission_id, actor, {"facility_id": entry.facility_id})
        return entry

    def override_triage(
        self,
        submission_id: str,
        tier: Union[UrgencyTier, str],
        actor: str,
        reason: str,
        recompute: bool = False,
    ) -> TriageResult:
        """
        Record a staff override as a new triage version.

        Queue priority only changes when ``recompute`` is requested.
        """
        current = self.current_triage(submission_id)
        result = self.classifier.override(current, tier, actor, reason)
        result = self._record_triage(result)

        payload = {
            "previous_tier": current.tier.value,
            "new_tier": result.tier.value,
            "version": result.version,
            "reason": reason,
            "recompute": recompute,
        }
        self._log_event(EventKind.TRIAGE_OVERRIDDEN.value, submission_id, actor, payload)
        self.dispatcher.dispatch(PipelineEvent(EventKind.TRIAGE_OVERRIDDEN, submission_id, payload))

        if recompute:
            if self.coordinator.active_entry(submission_id) is None:
                logger.info(
                    f"Override of {submission_id} not applied to queue: no active entry",
                    extra={"submission_id": submission_id},
                )
            else:
                entry = self.coordinator.retier(submission_id, result.tier)
                self._persist(self.repository.persist_queue_entry, entry)
        return result

    def retract(self, submission_id: str, actor: Optional[str] = None) -> Optional[QueueEntry]:
        entry = self.coordinator.retract(submission_id)
        self._log_event("SubmissionRetracted", submission_id, actor, {"was_queued": entry is not None})
        if entry is not None:
            self._persist(self.repository.persist_queue_entry, entry)
            self._close_event(entry, actor)
        return entry

    def current_triage(self, submission_id: str) -> TriageResult:
        return self.triage_history(submission_id)[-1]

    def triage_history(self, submission_id: str) -> List[TriageResult]:
        with self._lock:
            history = list(self._history.get(submission_id, []))
        if not history:
            raise EntryNotFound(submission_id)
        return history

    def stats(self) -> Dict[str, object]:
        with self._lock:
            pipeline = {
                "submitted": self._submitted,
                "resubmissions": self._resubmissions,
                "manual_reviews": self._manual_reviews,
                "admission_failures": self._failed,
            }
        return {
            "pipeline": pipeline,
            "classifier": self.classifier.stats(),
            "queues": self.coordinator.stats(),
            "facilities": {
                "known": len(self.directory.all()),
                "active": len(self.directory.active()),
                "last_refreshed_at": (
                    self.directory.last_refreshed_at.isoformat()
                    if self.directory.last_refreshed_at
                    else None
                ),
            },
            "repository": self.caller.stats(),
            "notifications": self.dispatcher.stats(),
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        self.directory.start_auto_refresh()

    def shutdown(self) -> None:
        self.directory.stop()
        self.dispatcher.drain()
        self.dispatcher.shutdown()
        self.caller.shutdown()

    # =========================================================================
    # SIDE EFFECTS
    # =========================================================================

    def _record_triage(self, result: TriageResult) -> TriageResult:
        """Append ``result`` to the submission's history, numbered after the latest version."""
        with self._lock:
            history = self._history.setdefault(result.submission_id, [])
            if history and result.version <= history[-1].version:
                result = replace(result, version=history[-1].version + 1)
            history.append(result)
        self._persist(self.repository.persist_triage_result, result)
        return result

    def _persist(self, fn, *args) -> None:
        self.caller.call(fn, *args, fallback=None)

    def _log_event(self, kind: str, subject_id: str, actor: Optional[str], payload: Dict) -> None:
        self.caller.call(self.repository.log_event, kind, subject_id, actor, payload, fallback=None)

    def _close_event(self, entry: QueueEntry, actor: Optional[str]) -> None:
        payload = {
            "facility_id": entry.facility_id,
            "status": entry.status.value,
            "reason": entry.removal_reason.value if entry.removal_reason else None,
        }
        self._log_event(EventKind.CASE_CLOSED.value, entry.submission_id, actor, payload)
        self.dispatcher.dispatch(PipelineEvent(EventKind.CASE_CLOSED, entry.submission_id, payload))

    def _on_positions_changed(self, changes: List[PositionChange]) -> None:
        # New entries are announced by submit() together with FacilityAssigned
        for change in changes:
            if change.old_position is None:
                continue
            self.dispatcher.dispatch(PipelineEvent(EventKind.QUEUE_POSITION_CHANGED, change.submission_id, {
                "facility_id": change.facility_id,
                "old_position": change.old_position,
                "new_position": change.new_position,
                "estimated_wait_minutes": change.estimated_wait_minutes,
            }))
