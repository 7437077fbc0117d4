from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest

from core.dedup import build_alert_key, dedup_lookup, split_alert_key
from core.models import AlertRule, EligibleExpense, ExpenseStatus, RuleType
from core.rules_engine import build_rules, describe_rule, evaluate, is_eligible, matches

TODAY = date(2026, 2, 20)


def _expense(expense_id: int = 1, *, due_in: int = 7, **overrides) -> EligibleExpense:
    values = dict(
        id=expense_id,
        branch_id=10,
        expense_type="RENT",
        period="2026-02",
        due_date=TODAY + timedelta(days=due_in),
        amount=Decimal("1000"),
        status=ExpenseStatus.PENDING,
        balance_remaining=Decimal("1000"),
    )
    values.update(overrides)
    return EligibleExpense(**values)


def _rule(rule_id: int = 1, rule_type: RuleType = RuleType.DUE_REMINDER, day_offset: int = -7, is_active: bool = True) -> AlertRule:
    return AlertRule(id=rule_id, rule_type=rule_type, day_offset=day_offset, is_active=is_active)


def test_due_reminder_fires_exactly_on_offset_day() -> None:
    rule = _rule(day_offset=-7)
    assert matches(rule, 7)
    assert not matches(rule, 6)
    assert not matches(rule, 8)
    assert not matches(rule, -7)


def test_overdue_escalation_fires_only_after_due_date() -> None:
    rule = _rule(rule_type=RuleType.OVERDUE_ESCALATION, day_offset=3)
    assert matches(rule, -3)
    assert not matches(rule, -2)
    assert not matches(rule, -4)
    assert not matches(rule, 3)


def test_inactive_rules_never_match() -> None:
    assert not matches(_rule(day_offset=-7, is_active=False), 7)


def test_unknown_rule_type_never_matches() -> None:
    rule = AlertRule(id=9, rule_type="SOMETHING_NEW", day_offset=0)  # type: ignore[arg-type]
    assert not matches(rule, 0)


def test_eligibility_boundaries() -> None:
    assert is_eligible(_expense())
    assert not is_eligible(_expense(balance_remaining=Decimal("0")))
    assert not is_eligible(_expense(balance_remaining=Decimal("-5")))
    assert not is_eligible(_expense(status=ExpenseStatus.PAID))
    assert not is_eligible(_expense(due_date=None))
    assert is_eligible(_expense(status=ExpenseStatus.OVERDUE, due_in=-3))


def test_reminder_candidate_for_expense_due_in_seven_days() -> None:
    rules = [_rule(day_offset=-7)]
    for due_in, expected in [(7, 1), (6, 0), (8, 0)]:
        result = evaluate(TODAY, [_expense(due_in=due_in)], rules)
        assert len(result.candidates) == expected

    candidate = evaluate(TODAY, [_expense(due_in=7)], rules).candidates[0]
    assert candidate.alert_key == "1:1:2026-02-20"
    assert candidate.trigger_date == "2026-02-20"
    assert candidate.days_to_due == 7
    assert candidate.rule_type == RuleType.DUE_REMINDER


def test_overdue_candidate_for_expense_three_days_late() -> None:
    rules = [_rule(rule_type=RuleType.OVERDUE_ESCALATION, day_offset=3)]
    for due_in, expected in [(-3, 1), (-2, 0), (-4, 0)]:
        result = evaluate(TODAY, [_expense(due_in=due_in, status=ExpenseStatus.OVERDUE)], rules)
        assert len(result.candidates) == expected


def test_ineligible_expenses_never_produce_candidates() -> None:
    rules = [_rule(day_offset=-7)]
    expenses = [
        _expense(1, balance_remaining=Decimal("0")),
        _expense(2, status=ExpenseStatus.PAID),
    ]
    result = evaluate(TODAY, expenses, rules)
    assert result.candidates == []
    assert result.total_evaluated == 2
    assert result.eligible_count == 0


def test_evaluate_is_deterministic_and_ordered_expense_major() -> None:
    rules = [
        _rule(1, day_offset=-7),
        _rule(2, rule_type=RuleType.DUE_REMINDER, day_offset=7),
        _rule(3, rule_type=RuleType.OVERDUE_ESCALATION, day_offset=1),
    ]
    expenses = [_expense(5, due_in=-1), _expense(3, due_in=7), _expense(4, due_in=2)]

    first = evaluate(TODAY, expenses, rules)
    second = evaluate(TODAY, expenses, rules)

    assert first == second
    assert [c.alert_key for c in first.candidates] == [
        "5:3:2026-02-20",
        "3:1:2026-02-20",
        "3:2:2026-02-20",
    ]
    assert first.eligible_count == 3


def test_alert_keys_are_unique_within_one_evaluation() -> None:
    rules = [_rule(i, day_offset=-offset) for i, offset in enumerate(range(0, 10), start=1)]
    expenses = [_expense(i, due_in=i % 10) for i in range(1, 40)]
    keys = [c.alert_key for c in evaluate(TODAY, expenses, rules).candidates]
    assert keys
    assert len(keys) == len(set(keys))


def test_inactive_rules_are_filtered_before_matching() -> None:
    rules = [_rule(1, day_offset=-7, is_active=False)]
    assert evaluate(TODAY, [_expense(due_in=7)], rules).candidates == []


def test_alert_key_split() -> None:
    key = build_alert_key(12, 4, "2026-02-20")
    assert split_alert_key(key) == (12, 4, "2026-02-20")
    with pytest.raises(ValueError):
        split_alert_key("12:4")


def test_build_rules_from_config() -> None:
    specs = build_rules(
        [
            {"rule_type": "due_reminder", "day_offset": -3},
            {"rule_type": "OVERDUE_ESCALATION", "day_offset": 7, "enabled": False},
        ]
    )
    assert specs[0].rule_type == RuleType.DUE_REMINDER
    assert specs[0].is_active
    assert specs[1].day_offset == 7
    assert not specs[1].is_active

    with pytest.raises(ValueError):
        build_rules([{"rule_type": "WEEKLY", "day_offset": 1}])


def test_describe_rule() -> None:
    assert describe_rule(RuleType.DUE_REMINDER, -7) == "7 days before due"
    assert describe_rule(RuleType.DUE_REMINDER, -1) == "1 day before due"
    assert describe_rule(RuleType.OVERDUE_ESCALATION, 3) == "3 days overdue"


def test_dedup_lookup_reads_identity_from_alert_key() -> None:
    candidate = evaluate(TODAY, [_expense(12, due_in=7)], [_rule(4, day_offset=-7)]).candidates[0]
    assert dedup_lookup(candidate) == (12, 4, TODAY)

    with pytest.raises(ValueError):
        dedup_lookup(replace(candidate, alert_key="12:4"))
    with pytest.raises(ValueError):
        dedup_lookup(replace(candidate, alert_key="12:4:2026-02-30"))
