"""Daily job scheduler and manual trigger surface.

The scheduler is an explicit value created at startup and torn down on
shutdown; it owns one asyncio task per registered job. It only supports a
fixed daily UTC time per job. Anything fancier belongs to an external cron.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from core.clock import utc_now
from core.models import AlertJobResult, LockedRun

LOGGER = logging.getLogger(__name__)

JobRunner = Callable[[], Awaitable[LockedRun]]


def parse_run_at(value: str) -> time:
    """Parse 'HH:MM' (UTC) into a time."""

    try:
        hour_raw, minute_raw = value.split(":")
        return time(int(hour_raw), int(minute_raw), tzinfo=timezone.utc)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"run_at must be HH:MM, got {value!r}") from exc


def next_run_after(now: datetime, run_at: time) -> datetime:
    """Return the first daily fire time strictly after ``now``."""

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    candidate = datetime.combine(now.date(), run_at.replace(tzinfo=None), tzinfo=timezone.utc)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass(frozen=True)
class TriggerOutcome:
    """HTTP-style outcome of a manual run."""

    status_code: int
    message: str
    summary: Optional[dict] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def outcome_from_run(run: LockedRun) -> TriggerOutcome:
    if not run.executed:
        return TriggerOutcome(409, "Job is already running on another instance")
    summary = run.result.as_dict() if isinstance(run.result, AlertJobResult) else None
    if run.error is not None:
        return TriggerOutcome(500, "Job completed with error", summary=summary, error=str(run.error))
    return TriggerOutcome(200, "Job completed", summary=summary)


@dataclass
class ScheduledJob:
    name: str
    run_at: time
    runner: JobRunner
    last_started_at: Optional[datetime] = None
    last_outcome: Optional[TriggerOutcome] = None
    task: Optional["asyncio.Task"] = field(default=None, repr=False)

    @property
    def run_at_label(self) -> str:
        return self.run_at.strftime("%H:%M UTC")

    def describe(self) -> dict:
        return {
            "name": self.name,
            "run_at": self.run_at_label,
            "running": self.task is not None and not self.task.done(),
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_status": self.last_outcome.status_code if self.last_outcome else None,
        }


class Scheduler:
    """Registry of daily jobs with explicit start/stop lifecycle."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}

    def register(self, name: str, run_at: str, runner: JobRunner) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = ScheduledJob(name=name, run_at=parse_run_at(run_at), runner=runner)
        self._jobs[name] = job
        return job

    def list_jobs(self) -> List[dict]:
        return [job.describe() for job in self._jobs.values()]

    async def trigger(self, name: str) -> TriggerOutcome:
        """Run a registered job now, under the same lease as scheduled runs."""

        job = self._jobs.get(name)
        if job is None:
            return TriggerOutcome(404, f"Unknown job: {name}")
        LOGGER.info("Manually triggering %s", name)
        return await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> TriggerOutcome:
        job.last_started_at = self._clock()
        run = await job.runner()
        outcome = outcome_from_run(run)
        job.last_outcome = outcome

        if outcome.status_code == 409:
            LOGGER.info("%s skipped - another instance is running", job.name)
        elif outcome.error:
            LOGGER.error("%s failed with error: %s", job.name, outcome.error)
        else:
            LOGGER.info("%s completed: %s", job.name, outcome.summary)
        return outcome

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            now = self._clock()
            fire_at = next_run_after(now, job.run_at)
            await asyncio.sleep(max(0.0, (fire_at - now).total_seconds()))
            LOGGER.info("Running %s at %s", job.name, self._clock().isoformat())
            try:
                await self._execute(job)
            except Exception:
                LOGGER.exception("Scheduled run of %s raised", job.name)

    def start(self) -> None:
        """Start one timer task per registered job. Requires a running loop."""

        LOGGER.info("Starting job scheduler")
        for job in self._jobs.values():
            if job.task is None or job.task.done():
                job.task = asyncio.get_running_loop().create_task(self._loop(job), name=job.name)
            LOGGER.info("  - %s: %s", job.name, job.run_at_label)

    async def stop(self) -> None:
        """Cancel every timer task and clear the registry."""

        LOGGER.info("Stopping job scheduler")
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for name in self._jobs:
            LOGGER.info("  - Stopped: %s", name)
        self._jobs.clear()
