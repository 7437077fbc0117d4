"""Lease-based distributed lock (core domain).

Workers do not share memory, so the only coordination primitive is a row in
a shared lease store. The protocol is:

1) acquire: one conditional write (insert, or take over an expired lease)
   carrying a fresh worker id, then read the row back. The worker holds the
   lease iff the stored holder is its own id.
2) renew: a heartbeat task extends the lease every lease/3 while the job runs.
3) release: expire the lease immediately, but only if we still hold it.

Expiry is always judged by the store's clock so drift between worker clocks
cannot hand the same lease to two workers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import time
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

from core.config import DEFAULT_LEASE_DURATION_MS, LEASE_LOST_CANCEL, LEASE_LOST_CONTINUE
from core.errors import LeaseLostError
from core.models import LeaseHandle, LockedRun
from core.ports import LeaseStorePort

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MIN_HEARTBEAT_MS = 1000


def new_worker_id() -> str:
    """Return a worker identity unique to this process and attempt."""

    return f"worker-{os.getpid()}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def safe_lease_duration_ms(lease_duration_ms) -> int:
    """Clamp a lease duration to a positive integer, falling back to the default."""

    try:
        value = float(lease_duration_ms)
    except (TypeError, ValueError):
        return DEFAULT_LEASE_DURATION_MS
    if not math.isfinite(value) or value <= 0:
        return DEFAULT_LEASE_DURATION_MS
    return max(1, int(value))


class DistributedLease:
    """Acquire, renew and release named leases against a shared store."""

    def __init__(
        self,
        store: LeaseStorePort,
        on_lease_lost: str = LEASE_LOST_CONTINUE,
        min_heartbeat_ms: int = MIN_HEARTBEAT_MS,
        worker_id_factory: Callable[[], str] = new_worker_id,
    ) -> None:
        if on_lease_lost not in {LEASE_LOST_CONTINUE, LEASE_LOST_CANCEL}:
            raise ValueError(f"Unsupported on_lease_lost policy: {on_lease_lost}")
        self._store = store
        self._on_lease_lost = on_lease_lost
        self._min_heartbeat_ms = min_heartbeat_ms
        self._new_worker_id = worker_id_factory

    def heartbeat_interval_ms(self, lease_duration_ms: int) -> int:
        return max(self._min_heartbeat_ms, lease_duration_ms // 3)

    async def acquire(
        self, job_name: str, lease_duration_ms: int = DEFAULT_LEASE_DURATION_MS
    ) -> Optional[LeaseHandle]:
        """Try to take the lease for ``job_name``; None if someone else holds it."""

        duration_ms = safe_lease_duration_ms(lease_duration_ms)
        worker_id = self._new_worker_id()
        try:
            await self._store.try_acquire(job_name, worker_id, duration_ms)
            # Two workers may both run the conditional write; the read-back tells
            # us which one the store actually kept.
            holder = await self._store.read_holder(job_name)
        except Exception:
            LOGGER.exception("Failed to acquire lock for %s", job_name)
            return None

        if holder != worker_id:
            return None
        return LeaseHandle(job_name=job_name, locked_by=worker_id, lease_duration_ms=duration_ms)

    async def renew(self, handle: LeaseHandle) -> bool:
        """Extend the lease; False means ownership was lost or it already lapsed."""

        try:
            return await self._store.renew(handle.job_name, handle.locked_by, handle.lease_duration_ms)
        except Exception:
            LOGGER.exception("Could not renew lock for %s by %s", handle.job_name, handle.locked_by)
            return False

    async def release(self, handle: LeaseHandle) -> bool:
        """Expire the lease now. Best effort: never raises."""

        try:
            return await self._store.release(handle.job_name, handle.locked_by)
        except Exception:
            LOGGER.warning(
                "Could not release lock for %s by %s", handle.job_name, handle.locked_by, exc_info=True
            )
            return False

    async def _heartbeat(
        self,
        handle: LeaseHandle,
        interval_ms: int,
        job: "asyncio.Task",
        lost: asyncio.Event,
    ) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            if await self.renew(handle):
                LOGGER.debug("Renewed lock for %s by %s", handle.job_name, handle.locked_by)
                continue

            LOGGER.error("Failed to renew lock for %s by %s", handle.job_name, handle.locked_by)
            if self._on_lease_lost == LEASE_LOST_CANCEL:
                lost.set()
                job.cancel()
                return

    async def with_lock(
        self,
        job_name: str,
        fn: Callable[[], Awaitable[T]],
        lease_duration_ms: int = DEFAULT_LEASE_DURATION_MS,
    ) -> LockedRun[T]:
        """Run ``fn`` while holding the lease for ``job_name``.

        Errors raised by ``fn`` are returned, not raised, so cleanup always
        happens. Cancellation of the caller still propagates after cleanup.
        """

        duration_ms = safe_lease_duration_ms(lease_duration_ms)
        handle = await self.acquire(job_name, duration_ms)
        if handle is None:
            LOGGER.info("Could not acquire lock for %s, skipping execution", job_name)
            return LockedRun(executed=False)

        interval_ms = self.heartbeat_interval_ms(duration_ms)
        LOGGER.info(
            "Acquired lock for %s as %s (lease=%sms, heartbeat=%sms)",
            job_name,
            handle.locked_by,
            duration_ms,
            interval_ms,
        )

        lost = asyncio.Event()
        job: Optional[asyncio.Future] = None
        heartbeat: Optional[asyncio.Future] = None
        try:
            # fn may raise or return a non-awaitable before any task exists.
            job = asyncio.ensure_future(fn())
            heartbeat = asyncio.ensure_future(self._heartbeat(handle, interval_ms, job, lost))
            result = await job
            return LockedRun(executed=True, result=result)
        except asyncio.CancelledError:
            if not lost.is_set():
                raise
            error = LeaseLostError(handle.job_name, handle.locked_by)
            LOGGER.error("Job %s cancelled after losing its lease", job_name)
            return LockedRun(executed=True, error=error)
        except Exception as exc:
            LOGGER.exception("Error executing %s", job_name)
            return LockedRun(executed=True, error=exc)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            if job is not None and not job.done():
                job.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await job
            released = await self.release(handle)
            if released:
                LOGGER.info("Released lock for %s by %s", job_name, handle.locked_by)
            else:
                LOGGER.warning(
                    "Lock for %s was not released because ownership changed or lock expired",
                    job_name,
                )
