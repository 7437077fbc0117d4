"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage or email-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class RuleType(str, Enum):
    DUE_REMINDER = "DUE_REMINDER"
    OVERDUE_ESCALATION = "OVERDUE_ESCALATION"


class ExpenseStatus(str, Enum):
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"


class AlertStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class AlertRule:
    """Alert rule as configured by an admin. Read-only to the core."""

    id: int
    rule_type: RuleType
    day_offset: int
    is_active: bool = True


@dataclass(frozen=True)
class EligibleExpense:
    """Projection of an expense with its remaining balance already computed."""

    id: int
    branch_id: int
    expense_type: str
    period: str
    due_date: date
    amount: Decimal
    status: ExpenseStatus
    balance_remaining: Decimal


@dataclass(frozen=True)
class AlertCandidate:
    """One rule firing for one expense on one evaluation day."""

    alert_key: str
    expense_id: int
    branch_id: int
    expense_type: str
    period: str
    due_date: date
    balance_remaining: Decimal
    rule_id: int
    rule_type: RuleType
    day_offset: int
    trigger_date: str
    days_to_due: int


@dataclass(frozen=True)
class AlertLog:
    """Persisted record of a single (candidate, recipient) attempt."""

    expense_id: int
    rule_id: int
    rule_type: RuleType
    day_offset: int
    trigger_local_date: date
    sent_to: str
    status: AlertStatus
    error_message: Optional[str] = None
    id: Optional[int] = None
    sent_at: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    evaluation_date: str
    utc_offset_minutes: int
    candidates: List[AlertCandidate]
    total_evaluated: int
    eligible_count: int


@dataclass
class AlertJobResult:
    """Mutable run summary, filled in as candidates are processed."""

    evaluation_date: str
    total_candidates: int = 0
    skipped_already_sent: int = 0
    skipped_no_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return self.skipped_already_sent + self.skipped_no_recipients

    def as_dict(self) -> dict:
        return {
            "evaluation_date": self.evaluation_date,
            "total_candidates": self.total_candidates,
            "skipped_already_sent": self.skipped_already_sent,
            "skipped_no_recipients": self.skipped_no_recipients,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class LeaseHandle:
    """Proof of a held lease, passed back to renew/release."""

    job_name: str
    locked_by: str
    lease_duration_ms: int


@dataclass(frozen=True)
class LockedRun(Generic[T]):
    """Outcome of running a function under a lease.

    executed=False means another worker holds the lease. That is the expected
    multi-instance case, not a failure.
    """

    executed: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None
