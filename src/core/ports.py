"""Ports (interfaces) used by the alert job.

Ports define the minimal contracts for persistence, lease and notification
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Protocol

from core.models import AlertLog, AlertRule, EligibleExpense


class StoragePort(Protocol):
    """Persistence operations required by the alert job."""

    async def load_active_rules(self) -> List[AlertRule]:
        ...

    async def load_eligible_expenses(self, today: date, window_days: int) -> List[EligibleExpense]:
        ...

    async def count_sent_log(self, expense_id: int, rule_id: int, trigger_local_date: date) -> int:
        ...

    async def insert_log(self, entry: AlertLog) -> None:
        ...

    async def get_active_recipients(self, branch_id: int) -> List[str]:
        ...

    async def get_branch_display_name(self, branch_id: int) -> Optional[str]:
        ...


class LeaseStorePort(Protocol):
    """Shared lease table. Every time comparison uses the store's own clock."""

    async def try_acquire(self, job_name: str, worker_id: str, lease_duration_ms: int) -> None:
        """Insert the lease, or take it over only if the current one expired."""
        ...

    async def read_holder(self, job_name: str) -> Optional[str]:
        ...

    async def renew(self, job_name: str, worker_id: str, lease_duration_ms: int) -> bool:
        ...

    async def release(self, job_name: str, worker_id: str) -> bool:
        ...


class NotifierPort(Protocol):
    """Email delivery. Returns a message id or raises on failure."""

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> str:
        ...
