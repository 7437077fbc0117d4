"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.clock import DEFAULT_UTC_OFFSET_MINUTES

DEFAULT_JOB_NAME = "daily-alert-evaluator"
DEFAULT_LEASE_DURATION_MS = 5 * 60 * 1000
JOB_LEASE_DURATION_MS = 15 * 60 * 1000
DEFAULT_EXPENSE_WINDOW_DAYS = 60
ERROR_MESSAGE_CHARS = 500

LEASE_LOST_CONTINUE = "continue"
LEASE_LOST_CANCEL = "cancel"


@dataclass(frozen=True)
class JobConfig:
    """Settings for the daily alert job."""

    job_name: str = DEFAULT_JOB_NAME
    lease_duration_ms: int = JOB_LEASE_DURATION_MS
    expense_window_days: int = DEFAULT_EXPENSE_WINDOW_DAYS
    utc_offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES
    run_at: str = "06:00"
    on_lease_lost: str = LEASE_LOST_CONTINUE


@dataclass(frozen=True)
class NotificationConfig:
    """Email delivery settings consumed by notifier adapters."""

    method: str
    from_address: str
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    use_tls: bool = True
    timeout_seconds: float = 10.0
