"""Shared alert email formatting.

Keeping formatting here prevents drift between notifier adapters and keeps
messages consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.clock import format_day
from core.models import AlertCandidate, RuleType

SIGNATURE = "Branch Expense Alerts - Automated Alert"


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    text: str
    html: Optional[str]


def format_amount(amount: Decimal) -> str:
    return f"${Decimal(amount).quantize(Decimal('0.01')):,}"


def _plural_days(days: int) -> str:
    return f"{days} day{'s' if days != 1 else ''}"


def format_subject(candidate: AlertCandidate, branch_name: str) -> str:
    if candidate.rule_type == RuleType.DUE_REMINDER:
        days = abs(candidate.day_offset)
        return (
            f"[Reminder] {branch_name}: {candidate.expense_type} for {candidate.period} "
            f"due in {_plural_days(days)}"
        )
    return (
        f"[OVERDUE] {branch_name}: {candidate.expense_type} for {candidate.period} "
        f"is {_plural_days(candidate.day_offset)} overdue"
    )


def _detail_rows(candidate: AlertCandidate, branch_name: str) -> list[tuple[str, str]]:
    return [
        ("Branch", branch_name),
        ("Expense Type", candidate.expense_type),
        ("Period", candidate.period),
        ("Due Date", format_day(candidate.due_date)),
        ("Balance Remaining", format_amount(candidate.balance_remaining)),
    ]


def _header(candidate: AlertCandidate, branch_name: str) -> str:
    if candidate.rule_type == RuleType.DUE_REMINDER:
        return f"This is a reminder that {candidate.expense_type} for {branch_name} is due soon."
    return f"ATTENTION: {candidate.expense_type} for {branch_name} is now overdue."


def _call_to_action(candidate: AlertCandidate) -> str:
    if candidate.rule_type == RuleType.DUE_REMINDER:
        return "Please ensure payment is made before the due date."
    return f"This expense is {_plural_days(candidate.day_offset)} overdue. Please take immediate action."


def format_text(candidate: AlertCandidate, branch_name: str) -> str:
    lines = [_header(candidate, branch_name), ""]
    lines.extend(f"{label}: {value}" for label, value in _detail_rows(candidate, branch_name))
    lines.extend(["", _call_to_action(candidate), "", "---", SIGNATURE])
    return "\n".join(lines)


def format_html(candidate: AlertCandidate, branch_name: str) -> str:
    rows = "".join(
        f"<tr><th align=\"left\">{html.escape(label)}</th><td>{html.escape(value)}</td></tr>"
        for label, value in _detail_rows(candidate, branch_name)
    )
    return (
        f"<p>{html.escape(_header(candidate, branch_name))}</p>"
        f"<table>{rows}</table>"
        f"<p><b>{html.escape(_call_to_action(candidate))}</b></p>"
        f"<hr><p><small>{html.escape(SIGNATURE)}</small></p>"
    )


def format_alert(candidate: AlertCandidate, branch_name: str) -> AlertMessage:
    """Build subject, plain text and HTML bodies for one alert."""

    return AlertMessage(
        subject=format_subject(candidate, branch_name),
        text=format_text(candidate, branch_name),
        html=format_html(candidate, branch_name),
    )
