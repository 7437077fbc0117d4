"""Core alert job pipeline.

This module is integration-agnostic. It only relies on ports for storage,
leases and notifications. One run walks a fixed sequence of states:

LOADING_DATA -> EVALUATING -> PROCESSING_CANDIDATES -> COMPLETED

A failure while loading or evaluating ends the run in FAILED with no
candidate processed. Failures inside one candidate are recorded and the run
moves on to the next candidate.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from core.clock import today, utc_now
from core.config import ERROR_MESSAGE_CHARS, JobConfig
from core.dedup import dedup_lookup
from core.lease import DistributedLease
from core.models import AlertCandidate, AlertJobResult, AlertLog, AlertStatus, LockedRun
from core.notification_formatting import format_alert
from core.ports import NotifierPort, StoragePort
from core.rules_engine import evaluate

LOGGER = logging.getLogger(__name__)

NO_RECIPIENTS_ADDRESS = "no-recipients"
NO_RECIPIENTS_REASON = "No active recipients for branch"


class JobState(str, Enum):
    IDLE = "IDLE"
    LOADING_DATA = "LOADING_DATA"
    EVALUATING = "EVALUATING"
    PROCESSING_CANDIDATES = "PROCESSING_CANDIDATES"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class AlertJobProcessor:
    """Orchestrates loading, evaluation, dedup, dispatch and logging."""

    def __init__(
        self,
        storage: StoragePort,
        notifier: NotifierPort,
        lease: DistributedLease,
        job_config: JobConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._notifier = notifier
        self._lease = lease
        self._config = job_config
        self._clock = clock
        self.state = JobState.IDLE

    def _enter(self, state: JobState) -> None:
        self.state = state
        LOGGER.debug("Alert job state: %s", state.value)

    async def run_once(self, now: Optional[datetime] = None) -> AlertJobResult:
        """Evaluate and dispatch today's alerts without taking a lease."""

        evaluation_day = today(self._config.utc_offset_minutes, now or self._clock())
        result = AlertJobResult(evaluation_date=evaluation_day.isoformat())
        LOGGER.info("Starting alert evaluation for %s", result.evaluation_date)

        try:
            self._enter(JobState.LOADING_DATA)
            rules, expenses = await asyncio.gather(
                self._storage.load_active_rules(),
                self._storage.load_eligible_expenses(evaluation_day, self._config.expense_window_days),
            )
            LOGGER.info("Loaded %s active rules, %s eligible expenses", len(rules), len(expenses))

            self._enter(JobState.EVALUATING)
            evaluation = evaluate(evaluation_day, expenses, rules, self._config.utc_offset_minutes)
        except Exception as exc:
            self._enter(JobState.FAILED)
            result.errors.append(f"Job error: {_error_text(exc)}")
            LOGGER.exception("Alert job failed while loading data")
            return result

        result.total_candidates = len(evaluation.candidates)
        LOGGER.info("Found %s alert candidates", result.total_candidates)

        self._enter(JobState.PROCESSING_CANDIDATES)
        for candidate in evaluation.candidates:
            try:
                await self._process_candidate(candidate, result)
            except Exception as exc:
                result.errors.append(f"Error processing {candidate.alert_key}: {_error_text(exc)}")
                LOGGER.exception("Error processing %s", candidate.alert_key)

        self._enter(JobState.COMPLETED)
        LOGGER.info(
            "Alert job completed: sent=%s, failed=%s, skipped=%s",
            result.sent_count,
            result.failed_count,
            result.skipped_count,
        )
        return result

    async def _process_candidate(self, candidate: AlertCandidate, result: AlertJobResult) -> None:
        expense_id, rule_id, trigger_day = dedup_lookup(candidate)
        # Only SENT rows block a key, so a FAILED attempt is retried by the
        # next day's run rather than within this one.
        if await self._storage.count_sent_log(expense_id, rule_id, trigger_day) > 0:
            result.skipped_already_sent += 1
            LOGGER.info("Skipping %s - already sent", candidate.alert_key)
            return

        recipients = await self._storage.get_active_recipients(candidate.branch_id)
        if not recipients:
            result.skipped_no_recipients += 1
            LOGGER.info("Skipping %s - no recipients", candidate.alert_key)
            await self._record(candidate, NO_RECIPIENTS_ADDRESS, AlertStatus.SKIPPED, NO_RECIPIENTS_REASON)
            return

        branch_name = await self._storage.get_branch_display_name(candidate.branch_id)
        message = format_alert(candidate, branch_name or f"Branch {candidate.branch_id}")

        for email in recipients:
            try:
                message_id = await self._notifier.send(email, message.subject, message.text, message.html)
            except Exception as exc:
                result.failed_count += 1
                await self._record(candidate, email, AlertStatus.FAILED, _error_text(exc))
                LOGGER.error("Failed %s to %s: %s", candidate.alert_key, email, exc)
                continue

            result.sent_count += 1
            await self._record(candidate, email, AlertStatus.SENT)
            LOGGER.info("Sent %s to %s (message %s)", candidate.alert_key, email, message_id)

    async def _record(
        self,
        candidate: AlertCandidate,
        sent_to: str,
        status: AlertStatus,
        error_message: Optional[str] = None,
    ) -> None:
        _, _, trigger_day = dedup_lookup(candidate)
        await self._storage.insert_log(
            AlertLog(
                expense_id=candidate.expense_id,
                rule_id=candidate.rule_id,
                rule_type=candidate.rule_type,
                day_offset=candidate.day_offset,
                trigger_local_date=trigger_day,
                sent_to=sent_to,
                status=status,
                error_message=error_message[:ERROR_MESSAGE_CHARS] if error_message else None,
            )
        )

    async def run_with_lock(
        self,
        job_name: Optional[str] = None,
        lease_duration_ms: Optional[int] = None,
    ) -> LockedRun[AlertJobResult]:
        """Production entry point: run once under the job's distributed lease."""

        return await self._lease.with_lock(
            job_name or self._config.job_name,
            self.run_once,
            lease_duration_ms or self._config.lease_duration_ms,
        )
