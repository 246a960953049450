"""
Facility directory: an injected, periodically refreshed snapshot of known
facilities.

Reads are lock-free: a refresh builds a new mapping and swaps it in. The load
counter is the only field mutated between refreshes. It is the repository's
figure plus the queue load this service has admitted, and is approximate.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from .errors import FacilityNotFound
from .models import FacilityRecord, utc_now
from .repository import BoundedCaller, Repository

logger = logging.getLogger(__name__)


class FacilityDirectory:

    def __init__(
        self,
        repository: Repository,
        caller: BoundedCaller,
        refresh_interval_seconds: float = 300,
    ):
        self.repository = repository
        self.caller = caller
        self.refresh_interval_seconds = refresh_interval_seconds
        self._snapshot: Dict[str, FacilityRecord] = {}
        self._load_lock = threading.Lock()
        self._local_load: Dict[str, int] = {}
        self._timer: Optional[threading.Timer] = None
        self._stopped = threading.Event()
        self.last_refreshed_at: Optional[datetime] = None
        self.refresh_count = 0

    def refresh(self) -> bool:
        """
        Reload facilities from the repository.

        Returns False (and keeps the previous snapshot) when the repository
        call fails or times out.
        """
        records = self.caller.call(
            self.repository.load_facilities, fallback=None, operation="load_facilities"
        )
        if records is None:
            logger.warning(
                "Facility refresh failed; keeping previous snapshot",
                extra={"facilities": len(self._snapshot)},
            )
            return False

        with self._load_lock:
            snapshot = {
                record.facility_id: replace(
                    record,
                    current_load=max(0, record.current_load) + self._local_load.get(record.facility_id, 0),
                )
                for record in records
            }
            self._snapshot = snapshot

        self.last_refreshed_at = utc_now()
        self.refresh_count += 1
        logger.info(
            f"Facility directory refreshed: {len(snapshot)} facilities",
            extra={"facilities": len(snapshot), "active": sum(1 for f in snapshot.values() if f.active)},
        )
        return True

    def get(self, facility_id: str) -> FacilityRecord:
        try:
            return self._snapshot[facility_id]
        except KeyError:
            raise FacilityNotFound(facility_id) from None

    def find(self, facility_id: str) -> Optional[FacilityRecord]:
        return self._snapshot.get(facility_id)

    def __contains__(self, facility_id: str) -> bool:
        return facility_id in self._snapshot

    def all(self) -> List[FacilityRecord]:
        return sorted(self._snapshot.values(), key=lambda f: f.facility_id)

    def active(self) -> List[FacilityRecord]:
        return [f for f in self.all() if f.active]

    def adjust_load(self, facility_id: str, delta: int) -> None:
        """Approximate load bookkeeping from queue admissions and releases."""
        with self._load_lock:
            local = max(0, self._local_load.get(facility_id, 0) + delta)
            self._local_load[facility_id] = local
            record = self._snapshot.get(facility_id)
            if record is not None:
                record.current_load = max(0, record.current_load + delta)

    # -------------------------------------------------------------------------
    # Scheduled refresh
    # -------------------------------------------------------------------------

    def start_auto_refresh(self) -> None:
        self._stopped.clear()
        self._schedule()
        logger.info(
            f"Facility auto-refresh every {self.refresh_interval_seconds}s",
            extra={"interval_seconds": self.refresh_interval_seconds},
        )

    def _schedule(self) -> None:
        if self._stopped.is_set():
            return
        self._timer = threading.Timer(self.refresh_interval_seconds, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        try:
            self.refresh()
        finally:
            self._schedule()

    def stop(self) -> None:
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
