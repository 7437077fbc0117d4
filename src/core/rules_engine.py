"""Rule matching and alert evaluation logic (core domain).

Everything in this module is pure: the evaluation day is passed in, nothing
reads the wall clock, and identical inputs always produce identical output.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Union

from core.clock import DEFAULT_UTC_OFFSET_MINUTES, days_between, format_day
from core.dedup import build_alert_key
from core.models import (
    AlertCandidate,
    AlertRule,
    EligibleExpense,
    EvaluationResult,
    ExpenseStatus,
    RuleType,
)


@dataclass(frozen=True)
class RuleSpec:
    """Rule definition from config, before the store assigns it an id."""

    rule_type: RuleType
    day_offset: int
    is_active: bool


def build_rules(rules_config: Iterable[dict]) -> List[RuleSpec]:
    """Normalize rule configs into rule specs.

    Unknown rule types are rejected here rather than silently never matching,
    since a typo in config would otherwise disable an alert without notice.
    """

    specs: List[RuleSpec] = []
    for rule in rules_config:
        raw_type = str(rule["rule_type"]).upper()
        try:
            rule_type = RuleType(raw_type)
        except ValueError as exc:
            raise ValueError(f"Unsupported rule_type: {rule['rule_type']}") from exc
        specs.append(
            RuleSpec(
                rule_type=rule_type,
                day_offset=int(rule["day_offset"]),
                is_active=bool(rule.get("enabled", True)),
            )
        )
    return specs


def describe_rule(rule_type: Union[RuleType, str], day_offset: int) -> str:
    """Return a short human description such as '7 days before due'."""

    if rule_type == RuleType.DUE_REMINDER:
        days = abs(day_offset)
        return f"{days} day{'s' if days != 1 else ''} before due"
    if rule_type == RuleType.OVERDUE_ESCALATION:
        return f"{day_offset} day{'s' if day_offset != 1 else ''} overdue"
    return f"{getattr(rule_type, 'value', rule_type)} (offset: {day_offset})"


def matches(rule: AlertRule, days_to_due: int) -> bool:
    """Return True when ``rule`` fires for an expense due in ``days_to_due`` days.

    - DUE_REMINDER fires once, |day_offset| days before the due date.
    - OVERDUE_ESCALATION fires once, day_offset days after the due date.
    - Inactive rules and unknown rule types never fire.
    """

    if not rule.is_active:
        return False

    if rule.rule_type == RuleType.DUE_REMINDER:
        return days_to_due == abs(rule.day_offset)
    if rule.rule_type == RuleType.OVERDUE_ESCALATION:
        return days_to_due < 0 and abs(days_to_due) == rule.day_offset
    return False


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)


def is_eligible(expense: EligibleExpense) -> bool:
    """An expense is eligible when unpaid, with a balance, and a real due date."""

    if expense.status == ExpenseStatus.PAID:
        return False
    if _to_decimal(expense.balance_remaining) <= 0:
        return False
    due = expense.due_date
    return isinstance(due, date)


def evaluate(
    today: Union[date, datetime],
    expenses: Iterable[EligibleExpense],
    rules: Iterable[AlertRule],
    utc_offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES,
) -> EvaluationResult:
    """Return the alert candidates for ``today``.

    Candidates are ordered expense-major, rule-minor, both following the input
    order. One (expense, rule) pair yields at most one candidate per call, so
    alert keys never repeat within a result.
    """

    trigger_date = format_day(today)
    active_rules = [rule for rule in rules if rule.is_active]
    expense_list = list(expenses)

    candidates: List[AlertCandidate] = []
    eligible_count = 0
    for expense in expense_list:
        if not is_eligible(expense):
            continue
        eligible_count += 1

        days_to_due = days_between(today, expense.due_date)
        for rule in active_rules:
            if not matches(rule, days_to_due):
                continue
            candidates.append(
                AlertCandidate(
                    alert_key=build_alert_key(expense.id, rule.id, trigger_date),
                    expense_id=expense.id,
                    branch_id=expense.branch_id,
                    expense_type=expense.expense_type,
                    period=expense.period,
                    due_date=expense.due_date,
                    balance_remaining=_to_decimal(expense.balance_remaining),
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    day_offset=rule.day_offset,
                    trigger_date=trigger_date,
                    days_to_due=days_to_due,
                )
            )

    return EvaluationResult(
        evaluation_date=trigger_date,
        utc_offset_minutes=utc_offset_minutes,
        candidates=candidates,
        total_evaluated=len(expense_list),
        eligible_count=eligible_count,
    )
