"""Deduplication keys (core domain)."""

from __future__ import annotations

from datetime import date
from typing import Tuple

from core.clock import parse_day
from core.models import AlertCandidate


def build_alert_key(expense_id: int, rule_id: int, trigger_date: str) -> str:
    """Return the system-wide identity of one logical alert.

    Same expense + same rule + same local day always yields the same key, so a
    re-run on the same day can be recognised as a repeat.
    """

    return f"{expense_id}:{rule_id}:{trigger_date}"


def split_alert_key(alert_key: str) -> Tuple[int, int, str]:
    """Split an alert key into (expense_id, rule_id, trigger_date)."""

    parts = alert_key.split(":")
    if len(parts) != 3:
        raise ValueError(f"Unsupported alert key: {alert_key}")
    expense_raw, rule_raw, trigger_date = parts
    try:
        return int(expense_raw), int(rule_raw), trigger_date
    except ValueError as exc:
        raise ValueError(f"Unsupported alert key: {alert_key}") from exc


def dedup_lookup(candidate: AlertCandidate) -> Tuple[int, int, date]:
    """Return the (expense_id, rule_id, trigger_local_date) history lookup.

    The alert key is the identity of the alert, so the lookup is read back out
    of it rather than from the candidate's other fields.
    """

    expense_id, rule_id, trigger_date = split_alert_key(candidate.alert_key)
    return expense_id, rule_id, parse_day(trigger_date)
