from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List

from backend.app.billing import AdmissionResult, IdempotencyStatus, InMemoryIdempotencyLedger


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def test_first_delivery_is_admitted_and_recorded() -> None:
    ledger = InMemoryIdempotencyLedger()

    assert ledger.try_begin("evt_1") == AdmissionResult.ADMITTED

    record = ledger.get_record("evt_1")
    assert record is not None
    assert record.status == IdempotencyStatus.IN_PROGRESS
    assert record.attempts == 1


def test_applied_event_is_reported_as_duplicate() -> None:
    ledger = InMemoryIdempotencyLedger()
    ledger.try_begin("evt_1")
    ledger.mark_applied("evt_1")

    assert ledger.try_begin("evt_1") == AdmissionResult.ALREADY_APPLIED
    record = ledger.get_record("evt_1")
    assert record.status == IdempotencyStatus.APPLIED
    assert record.applied_at is not None


def test_concurrent_delivery_sees_in_progress() -> None:
    ledger = InMemoryIdempotencyLedger()
    ledger.try_begin("evt_1")

    assert ledger.try_begin("evt_1") == AdmissionResult.IN_PROGRESS


def test_failed_event_is_readmitted() -> None:
    ledger = InMemoryIdempotencyLedger()
    ledger.try_begin("evt_1")
    ledger.mark_failed("evt_1")

    assert ledger.get_record("evt_1").status == IdempotencyStatus.FAILED
    assert ledger.try_begin("evt_1") == AdmissionResult.ADMITTED
    assert ledger.get_record("evt_1").attempts == 2


def test_stale_in_progress_record_is_reclaimed() -> None:
    clock = FakeClock()
    ledger = InMemoryIdempotencyLedger(reclaim_after=timedelta(seconds=60), clock=clock)
    ledger.try_begin("evt_1")

    clock.advance(seconds=59)
    assert ledger.try_begin("evt_1") == AdmissionResult.IN_PROGRESS

    clock.advance(seconds=1)
    assert ledger.try_begin("evt_1") == AdmissionResult.ADMITTED
    record = ledger.get_record("evt_1")
    assert record.attempts == 2
    assert record.updated_at == clock.now
    assert record.first_seen_at == clock.now - timedelta(seconds=60)


def test_mark_applied_ignores_unknown_events() -> None:
    ledger = InMemoryIdempotencyLedger()

    ledger.mark_applied("evt_missing")
    ledger.mark_failed("evt_missing")

    assert ledger.get_record("evt_missing") is None


def test_mark_failed_does_not_downgrade_applied_event() -> None:
    ledger = InMemoryIdempotencyLedger()
    ledger.try_begin("evt_1")
    ledger.mark_applied("evt_1")

    ledger.mark_failed("evt_1")

    assert ledger.get_record("evt_1").status == IdempotencyStatus.APPLIED


def test_exactly_one_racing_delivery_is_admitted() -> None:
    ledger = InMemoryIdempotencyLedger()
    barrier = threading.Barrier(16)
    results: List[AdmissionResult] = []
    results_lock = threading.Lock()

    def deliver() -> None:
        barrier.wait()
        outcome = ledger.try_begin("evt_race")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=deliver) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(AdmissionResult.ADMITTED) == 1
    assert results.count(AdmissionResult.IN_PROGRESS) == 15
