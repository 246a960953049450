"""
Notification side effects.

Delivery mechanics (email/SMS/push) live outside this service. The pipeline
only hands events to a ``NotificationGateway``; the dispatcher runs each
delivery on a background executor so a slow or failing gateway never blocks
admission. Failures are logged and counted.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import PipelineEvent

logger = logging.getLogger(__name__)


class NotificationGateway(ABC):

    @abstractmethod
    def notify(self, submission_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        """Best-effort delivery; may raise."""


class LoggingNotificationGateway(NotificationGateway):
    """Default gateway: writes each notification to the service log."""

    def notify(self, submission_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Notify {event_kind} for submission {submission_id}",
            extra={"submission_id": submission_id, "event_kind": event_kind, "payload": payload},
        )


class NotificationDispatcher:
    """Fire-and-forget fan-out of pipeline events to a gateway."""

    def __init__(
        self,
        gateway: NotificationGateway,
        max_workers: int = 2,
        drain_timeout_seconds: float = 3.0,
    ):
        self.gateway = gateway
        self.drain_timeout_seconds = drain_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: Set[Future] = set()
        self.delivered = 0
        self.failed = 0

    def dispatch(self, event: PipelineEvent) -> Future:
        future = self._executor.submit(
            self.gateway.notify, event.submission_id, event.kind.value, dict(event.payload)
        )
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f, e=event: self._on_done(f, e))
        return future

    def dispatch_all(self, events: Iterable[PipelineEvent]) -> List[Future]:
        return [self.dispatch(event) for event in events]

    def _on_done(self, future: Future, event: PipelineEvent) -> None:
        with self._lock:
            self._pending.discard(future)
            error = future.exception() if not future.cancelled() else None
            if error is None:
                self.delivered += 1
            else:
                self.failed += 1
            self._idle.notify_all()
        if error is not None:
            logger.error(
                f"Notification {event.kind.value} for {event.submission_id} failed: {error}",
                extra={"submission_id": event.submission_id, "event_kind": event.kind.value},
            )

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight deliveries; True when none remain."""
        timeout = timeout if timeout is not None else self.drain_timeout_seconds
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"delivered": self.delivered, "failed": self.failed, "pending": len(self._pending)}

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
