"""Idempotency ledger guarding against duplicate webhook deliveries."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Protocol

from .models import AdmissionResult, IdempotencyRecord, IdempotencyStatus

logger = logging.getLogger(__name__)

DEFAULT_RECLAIM_AFTER = timedelta(minutes=5)


class IdempotencyLedger(Protocol):
    """Admission control for provider event ids.

    ``try_begin`` is the only mutual-exclusion point per event id: when several
    deliveries race, exactly one observes :attr:`AdmissionResult.ADMITTED`.
    """

    def try_begin(self, event_id: str) -> AdmissionResult:
        ...

    def mark_applied(self, event_id: str) -> None:
        ...

    def mark_failed(self, event_id: str) -> None:
        ...

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        ...


class InMemoryIdempotencyLedger:
    """Thread-safe ledger suitable for tests and local development.

    Failed records and in-progress records untouched for ``reclaim_after`` are
    re-admitted, so a crash or transient failure never locks an event out.
    """

    def __init__(
        self,
        *,
        reclaim_after: timedelta = DEFAULT_RECLAIM_AFTER,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = Lock()
        self._reclaim_after = reclaim_after
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def try_begin(self, event_id: str) -> AdmissionResult:
        with self._lock:
            now = self._clock()
            record = self._records.get(event_id)
            if record is None:
                self._records[event_id] = IdempotencyRecord(
                    event_id=event_id,
                    status=IdempotencyStatus.IN_PROGRESS,
                    first_seen_at=now,
                    updated_at=now,
                )
                return AdmissionResult.ADMITTED

            if record.status == IdempotencyStatus.APPLIED:
                return AdmissionResult.ALREADY_APPLIED

            if record.status == IdempotencyStatus.IN_PROGRESS and now - record.updated_at < self._reclaim_after:
                return AdmissionResult.IN_PROGRESS

            if record.status == IdempotencyStatus.IN_PROGRESS:
                logger.warning("Reclaiming stale in-progress event %s", event_id)
            self._records[event_id] = record.model_copy(
                update={
                    "status": IdempotencyStatus.IN_PROGRESS,
                    "updated_at": now,
                    "attempts": record.attempts + 1,
                }
            )
            return AdmissionResult.ADMITTED

    def mark_applied(self, event_id: str) -> None:
        with self._lock:
            record = self._records.get(event_id)
            if record is None or record.status != IdempotencyStatus.IN_PROGRESS:
                logger.warning("Cannot mark event %s applied; it is not in progress", event_id)
                return
            now = self._clock()
            self._records[event_id] = record.model_copy(
                update={"status": IdempotencyStatus.APPLIED, "applied_at": now, "updated_at": now}
            )

    def mark_failed(self, event_id: str) -> None:
        with self._lock:
            record = self._records.get(event_id)
            if record is None or record.status != IdempotencyStatus.IN_PROGRESS:
                logger.warning("Cannot mark event %s failed; it is not in progress", event_id)
                return
            self._records[event_id] = record.model_copy(
                update={"status": IdempotencyStatus.FAILED, "updated_at": self._clock()}
            )

    def get_record(self, event_id: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get(event_id)


__all__ = ["DEFAULT_RECLAIM_AFTER", "IdempotencyLedger", "InMemoryIdempotencyLedger"]
