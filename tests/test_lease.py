from __future__ import annotations

import asyncio
import itertools
import time
from typing import Optional

import pytest

from adapters.sqlite_storage import SQLiteLeaseStore
from core.config import DEFAULT_LEASE_DURATION_MS
from core.errors import LeaseLostError
from core.lease import DistributedLease, safe_lease_duration_ms


class FakeLeaseStore:
    """In-memory lease store with a hand-driven clock."""

    def __init__(self) -> None:
        self.now_ms = 0
        self.rows: dict[str, tuple[str, int]] = {}
        self.renew_calls = 0
        self.released: list[str] = []
        self.renew_result: Optional[bool] = None

    async def try_acquire(self, job_name: str, worker_id: str, lease_duration_ms: int) -> None:
        row = self.rows.get(job_name)
        if row is None or row[1] < self.now_ms:
            self.rows[job_name] = (worker_id, self.now_ms + lease_duration_ms)

    async def read_holder(self, job_name: str) -> Optional[str]:
        row = self.rows.get(job_name)
        return row[0] if row else None

    async def renew(self, job_name: str, worker_id: str, lease_duration_ms: int) -> bool:
        self.renew_calls += 1
        if self.renew_result is not None:
            return self.renew_result
        row = self.rows.get(job_name)
        if not row or row[0] != worker_id or row[1] < self.now_ms:
            return False
        self.rows[job_name] = (worker_id, self.now_ms + lease_duration_ms)
        return True

    async def release(self, job_name: str, worker_id: str) -> bool:
        row = self.rows.get(job_name)
        if not row or row[0] != worker_id:
            return False
        self.rows[job_name] = (worker_id, -1)
        self.released.append(worker_id)
        return True


def _ids(prefix: str):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def _lease(store, prefix: str = "w", **kwargs) -> DistributedLease:
    return DistributedLease(store, worker_id_factory=_ids(prefix), **kwargs)


@pytest.mark.parametrize("raw", [0, -5, float("nan"), float("inf"), None, "abc"])
def test_invalid_lease_duration_falls_back_to_default(raw) -> None:
    assert safe_lease_duration_ms(raw) == DEFAULT_LEASE_DURATION_MS


def test_valid_lease_duration_is_floored() -> None:
    assert safe_lease_duration_ms(1500.9) == 1500


def test_second_acquire_fails_while_lease_is_live() -> None:
    store = FakeLeaseStore()
    first = asyncio.run(_lease(store, "a").acquire("job", 60000))
    second = asyncio.run(_lease(store, "b").acquire("job", 60000))
    assert first is not None and first.locked_by == "a-1"
    assert second is None


def test_expired_lease_can_be_reclaimed_and_old_holder_cannot_renew() -> None:
    store = FakeLeaseStore()
    first = asyncio.run(_lease(store, "a").acquire("job", 1000))
    store.now_ms = 1001
    second = asyncio.run(_lease(store, "b").acquire("job", 1000))

    assert second is not None
    assert asyncio.run(_lease(store, "a").renew(first)) is False
    assert asyncio.run(_lease(store, "a").release(first)) is False
    assert asyncio.run(_lease(store, "b").renew(second)) is True


def test_release_lets_another_worker_acquire_immediately() -> None:
    store = FakeLeaseStore()
    lease_a = _lease(store, "a")
    handle = asyncio.run(lease_a.acquire("job", 60000))
    assert asyncio.run(lease_a.release(handle)) is True
    assert asyncio.run(_lease(store, "b").acquire("job", 60000)) is not None


def test_store_errors_mean_not_acquired_and_release_never_raises() -> None:
    class BrokenStore(FakeLeaseStore):
        async def try_acquire(self, job_name, worker_id, lease_duration_ms):
            raise RuntimeError("db down")

        async def release(self, job_name, worker_id):
            raise RuntimeError("db down")

    store = BrokenStore()
    lease = _lease(store)
    assert asyncio.run(lease.acquire("job", 1000)) is None

    handle = asyncio.run(_lease(FakeLeaseStore()).acquire("job", 1000))
    assert asyncio.run(lease.release(handle)) is False


def test_with_lock_skips_when_lease_is_held() -> None:
    store = FakeLeaseStore()
    asyncio.run(_lease(store, "a").acquire("job", 60000))
    calls = []

    async def job():
        calls.append(1)

    run = asyncio.run(_lease(store, "b").with_lock("job", job, 60000))
    assert run.executed is False
    assert run.error is None
    assert calls == []


def test_with_lock_returns_result_and_releases() -> None:
    store = FakeLeaseStore()

    async def job():
        return 42

    run = asyncio.run(_lease(store, "a").with_lock("job", job, 60000))
    assert run.executed and run.result == 42 and run.error is None
    assert store.released == ["a-1"]


def test_with_lock_captures_errors_and_still_releases() -> None:
    store = FakeLeaseStore()

    async def job():
        raise ValueError("boom")

    run = asyncio.run(_lease(store, "a").with_lock("job", job, 60000))
    assert run.executed
    assert isinstance(run.error, ValueError)
    assert store.released == ["a-1"]


def test_with_lock_releases_when_job_fails_before_awaiting() -> None:
    store = FakeLeaseStore()

    def job():
        raise ValueError("bad job factory")

    run = asyncio.run(_lease(store, "a").with_lock("job", job, 60000))
    assert run.executed
    assert isinstance(run.error, ValueError)
    assert store.released == ["a-1"]


def test_with_lock_releases_when_job_is_not_awaitable() -> None:
    store = FakeLeaseStore()

    run = asyncio.run(_lease(store, "a").with_lock("job", lambda: 42, 60000))
    assert run.executed
    assert isinstance(run.error, TypeError)
    assert store.released == ["a-1"]


def test_heartbeat_renews_while_running_and_stops_afterwards() -> None:
    store = FakeLeaseStore()
    lease = _lease(store, "a", min_heartbeat_ms=10)

    async def job():
        await asyncio.sleep(0.1)
        return "done"

    async def scenario():
        run = await lease.with_lock("job", job, 30)
        calls_after_run = store.renew_calls
        await asyncio.sleep(0.1)
        return run, calls_after_run

    run, calls_after_run = asyncio.run(scenario())
    assert run.result == "done"
    assert calls_after_run >= 2
    assert store.renew_calls == calls_after_run
    assert store.released == ["a-1"]


def test_lost_lease_keeps_running_by_default() -> None:
    store = FakeLeaseStore()
    store.renew_result = False
    lease = _lease(store, "a", min_heartbeat_ms=10)

    async def job():
        await asyncio.sleep(0.08)
        return "finished"

    run = asyncio.run(lease.with_lock("job", job, 30))
    assert run.result == "finished"
    assert run.error is None
    assert store.renew_calls >= 1


def test_lost_lease_cancels_job_when_configured() -> None:
    store = FakeLeaseStore()
    store.renew_result = False
    lease = _lease(store, "a", on_lease_lost="cancel", min_heartbeat_ms=10)

    async def job():
        await asyncio.sleep(5)
        return "never"

    started = time.monotonic()
    run = asyncio.run(lease.with_lock("job", job, 30))
    assert time.monotonic() - started < 2
    assert run.executed
    assert isinstance(run.error, LeaseLostError)
    assert store.released == ["a-1"]


def test_caller_cancellation_propagates_after_cleanup() -> None:
    store = FakeLeaseStore()
    lease = _lease(store, "a", min_heartbeat_ms=10)

    async def job():
        await asyncio.sleep(5)

    async def scenario():
        task = asyncio.ensure_future(lease.with_lock("job", job, 30))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        calls = store.renew_calls
        await asyncio.sleep(0.05)
        return calls

    calls = asyncio.run(scenario())
    assert store.released == ["a-1"]
    assert store.renew_calls == calls


def test_unknown_lease_lost_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        DistributedLease(FakeLeaseStore(), on_lease_lost="explode")


def _sqlite_store(tmp_path) -> SQLiteLeaseStore:
    store = SQLiteLeaseStore(str(tmp_path / "leases.db"))
    store.init_db()
    return store


def test_sqlite_concurrent_acquires_have_exactly_one_winner(tmp_path) -> None:
    store = _sqlite_store(tmp_path)

    async def scenario():
        return await asyncio.gather(
            DistributedLease(store).acquire("job", 60000),
            DistributedLease(store).acquire("job", 60000),
        )

    handles = asyncio.run(scenario())
    winners = [handle for handle in handles if handle is not None]
    assert len(winners) == 1
    assert asyncio.run(store.read_holder("job")) == winners[0].locked_by


def test_sqlite_lease_reclaimed_after_expiry(tmp_path) -> None:
    store = _sqlite_store(tmp_path)
    first_lease = DistributedLease(store)
    first = asyncio.run(first_lease.acquire("job", 300))
    assert first is not None
    assert asyncio.run(DistributedLease(store).acquire("job", 60000)) is None

    time.sleep(0.5)

    second = asyncio.run(DistributedLease(store).acquire("job", 60000))
    assert second is not None
    assert second.locked_by != first.locked_by
    assert asyncio.run(first_lease.renew(first)) is False
    assert asyncio.run(first_lease.release(first)) is False
    assert store.lease_info("job")["active"] == 1


def test_sqlite_renew_and_release(tmp_path) -> None:
    store = _sqlite_store(tmp_path)
    lease = DistributedLease(store)
    handle = asyncio.run(lease.acquire("job", 60000))

    assert asyncio.run(lease.renew(handle)) is True
    assert asyncio.run(lease.release(handle)) is True
    assert store.lease_info("job")["active"] == 0
    # A released lease has lapsed, so it cannot be renewed back to life.
    assert asyncio.run(lease.renew(handle)) is False
    assert asyncio.run(DistributedLease(store).acquire("job", 60000)) is not None
