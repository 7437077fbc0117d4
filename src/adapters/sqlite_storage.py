"""SQLite storage adapters.

Implements the core StoragePort and LeaseStorePort using a simple SQLite
database. Every port method is async and runs its blocking sqlite call in a
worker thread, so a slow disk never stalls the heartbeat task.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional

from core.clock import parse_day
from core.models import (
    AlertLog,
    AlertRule,
    AlertStatus,
    EligibleExpense,
    ExpenseStatus,
    RuleType,
)
from core.rules_engine import RuleSpec

# Milliseconds since the epoch according to SQLite's own clock. 'now' is fixed
# for the duration of one statement, so every use below agrees.
_STORE_NOW_MS = "CAST(ROUND((julianday('now') - 2440587.5) * 86400000) AS INTEGER)"
_STORE_NOW_ISO = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


class _SQLiteBase:
    def __init__(self, db_path: str, timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _create_job_locks(self, conn: sqlite3.Connection) -> None:
        # job_locks holds one lease row per job name.
        # - locked_by: worker id of the current (or last) holder
        # - locked_until_ms: lease expiry in store-clock epoch milliseconds
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_locks (
                job_name TEXT PRIMARY KEY,
                locked_by TEXT NOT NULL,
                locked_until_ms INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )


class SQLiteLeaseStore(_SQLiteBase):
    """Lease table with atomic conditional upsert keyed by job name."""

    def init_db(self) -> None:
        with self._connect() as conn:
            self._create_job_locks(conn)

    def _try_acquire(self, job_name: str, worker_id: str, lease_duration_ms: int) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO job_locks (job_name, locked_by, locked_until_ms, created_at, updated_at)
                VALUES (?, ?, {_STORE_NOW_MS} + ?, {_STORE_NOW_ISO}, {_STORE_NOW_ISO})
                ON CONFLICT(job_name) DO UPDATE SET
                    locked_by = excluded.locked_by,
                    locked_until_ms = excluded.locked_until_ms,
                    updated_at = excluded.updated_at
                WHERE job_locks.locked_until_ms < {_STORE_NOW_MS}
                """,
                (job_name, worker_id, lease_duration_ms),
            )

    def _read_holder(self, job_name: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT locked_by FROM job_locks WHERE job_name = ?",
                (job_name,),
            ).fetchone()
        return row["locked_by"] if row else None

    def _renew(self, job_name: str, worker_id: str, lease_duration_ms: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE job_locks
                SET locked_until_ms = {_STORE_NOW_MS} + ?,
                    updated_at = {_STORE_NOW_ISO}
                WHERE job_name = ?
                  AND locked_by = ?
                  AND locked_until_ms >= {_STORE_NOW_MS}
                """,
                (lease_duration_ms, job_name, worker_id),
            )
            return cur.rowcount > 0

    def _release(self, job_name: str, worker_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE job_locks
                SET locked_until_ms = 0,
                    updated_at = {_STORE_NOW_ISO}
                WHERE job_name = ?
                  AND locked_by = ?
                """,
                (job_name, worker_id),
            )
            return cur.rowcount > 0

    def lease_info(self, job_name: str) -> Optional[dict]:
        """Return the raw lease row plus whether it is live by the store's clock."""

        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT job_name, locked_by, locked_until_ms, updated_at,
                       locked_until_ms >= {_STORE_NOW_MS} AS active
                FROM job_locks WHERE job_name = ?
                """,
                (job_name,),
            ).fetchone()
        return dict(row) if row else None

    async def try_acquire(self, job_name: str, worker_id: str, lease_duration_ms: int) -> None:
        await asyncio.to_thread(self._try_acquire, job_name, worker_id, lease_duration_ms)

    async def read_holder(self, job_name: str) -> Optional[str]:
        return await asyncio.to_thread(self._read_holder, job_name)

    async def renew(self, job_name: str, worker_id: str, lease_duration_ms: int) -> bool:
        return await asyncio.to_thread(self._renew, job_name, worker_id, lease_duration_ms)

    async def release(self, job_name: str, worker_id: str) -> bool:
        return await asyncio.to_thread(self._release, job_name, worker_id)


def _row_to_log(row: sqlite3.Row) -> AlertLog:
    return AlertLog(
        id=int(row["id"]),
        expense_id=int(row["expense_id"]),
        rule_id=int(row["rule_id"]),
        rule_type=RuleType(row["rule_type"]),
        day_offset=int(row["day_offset"]),
        trigger_local_date=parse_day(row["trigger_local_date"]),
        sent_to=row["sent_to"],
        status=AlertStatus(row["status"]),
        error_message=row["error_message"],
        sent_at=row["sent_at"],
    )


class SQLiteStorage(_SQLiteBase):
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - branches / branch_recipients: who gets emailed for a branch
        - expenses / payments: obligations and what has been paid against them
        - alert_rules: reminder and escalation offsets
        - alert_logs: append-only log of every alert attempt
        - job_locks: distributed leases
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS branches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    city TEXT NOT NULL,
                    label TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS branch_recipients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    branch_id INTEGER NOT NULL REFERENCES branches(id),
                    email TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (branch_id, email)
                )
                """
            )
            # Amounts are stored as TEXT so Decimal values round-trip exactly.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS expenses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    branch_id INTEGER NOT NULL REFERENCES branches(id),
                    expense_type TEXT NOT NULL,
                    period TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    UNIQUE (branch_id, expense_type, period)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    expense_id INTEGER NOT NULL REFERENCES expenses(id),
                    amount_paid TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_type TEXT NOT NULL,
                    day_offset INTEGER NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (rule_type, day_offset)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    expense_id INTEGER NOT NULL,
                    rule_id INTEGER NOT NULL,
                    rule_type TEXT NOT NULL,
                    day_offset INTEGER NOT NULL,
                    trigger_local_date TEXT NOT NULL,
                    sent_to TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_message TEXT
                )
                """
            )
            # Keeps the per-candidate "already sent?" check an index lookup.
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_alert_dedupe_lookup
                ON alert_logs (expense_id, rule_id, trigger_local_date, status)
                """
            )
            self._create_job_locks(conn)

    # Admin helpers. These back the CLI and tests; the job only uses the port.

    def add_branch(self, city: str, label: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO branches (city, label) VALUES (?, ?)",
                (city, label),
            )
            return int(cur.lastrowid)

    def add_recipient(self, branch_id: int, email: str, is_active: bool = True) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO branch_recipients (branch_id, email, is_active)
                VALUES (?, ?, ?)
                ON CONFLICT(branch_id, email) DO UPDATE SET is_active = excluded.is_active
                """,
                (branch_id, email.strip().lower(), int(is_active)),
            )

    def add_expense(
        self,
        branch_id: int,
        expense_type: str,
        period: str,
        due_date: date,
        amount: Decimal,
        status: ExpenseStatus = ExpenseStatus.PENDING,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO expenses (branch_id, expense_type, period, due_date, amount, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (branch_id, expense_type, period, due_date.isoformat(), str(amount), status.value),
            )
            return int(cur.lastrowid)

    def add_payment(self, expense_id: int, amount_paid: Decimal) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO payments (expense_id, amount_paid) VALUES (?, ?)",
                (expense_id, str(amount_paid)),
            )
            return int(cur.lastrowid)

    def upsert_rule(self, spec: RuleSpec) -> int:
        """Insert a rule, or update is_active for an existing (type, offset)."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO alert_rules (rule_type, day_offset, is_active)
                VALUES (?, ?, ?)
                ON CONFLICT(rule_type, day_offset) DO UPDATE SET is_active = excluded.is_active
                """,
                (spec.rule_type.value, spec.day_offset, int(spec.is_active)),
            )
            row = conn.execute(
                "SELECT id FROM alert_rules WHERE rule_type = ? AND day_offset = ?",
                (spec.rule_type.value, spec.day_offset),
            ).fetchone()
        return int(row["id"])

    def list_alert_logs(
        self,
        status: Optional[AlertStatus] = None,
        expense_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
    ) -> List[AlertLog]:
        """Return alert log rows, newest first, for reporting."""

        clauses: List[str] = []
        params: list = []
        if status is not None:
            clauses.append("l.status = ?")
            params.append(status.value)
        if expense_id is not None:
            clauses.append("l.expense_id = ?")
            params.append(expense_id)
        if branch_id is not None:
            clauses.append("e.branch_id = ?")
            params.append(branch_id)
        if date_from is not None:
            clauses.append("l.trigger_local_date >= ?")
            params.append(date_from.isoformat())
        if date_to is not None:
            clauses.append("l.trigger_local_date <= ?")
            params.append(date_to.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT l.* FROM alert_logs AS l
                LEFT JOIN expenses AS e ON e.id = l.expense_id
                {where}
                ORDER BY l.sent_at DESC, l.id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_log(row) for row in rows]

    # StoragePort (blocking halves)

    def _load_active_rules(self) -> List[AlertRule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, rule_type, day_offset, is_active FROM alert_rules WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        return [
            AlertRule(
                id=int(row["id"]),
                rule_type=RuleType(row["rule_type"]),
                day_offset=int(row["day_offset"]),
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    def _load_eligible_expenses(self, today: date, window_days: int) -> List[EligibleExpense]:
        range_start = (today - timedelta(days=window_days)).isoformat()
        range_end = (today + timedelta(days=window_days)).isoformat()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, branch_id, expense_type, period, due_date, amount, status
                FROM expenses
                WHERE status != ? AND due_date BETWEEN ? AND ?
                ORDER BY due_date, id
                """,
                (ExpenseStatus.PAID.value, range_start, range_end),
            ).fetchall()
            paid: dict[int, Decimal] = {}
            for payment in conn.execute(
                """
                SELECT p.expense_id, p.amount_paid FROM payments AS p
                JOIN expenses AS e ON e.id = p.expense_id
                WHERE e.status != ? AND e.due_date BETWEEN ? AND ?
                """,
                (ExpenseStatus.PAID.value, range_start, range_end),
            ):
                expense_id = int(payment["expense_id"])
                paid[expense_id] = paid.get(expense_id, Decimal(0)) + Decimal(payment["amount_paid"])

        expenses: List[EligibleExpense] = []
        for row in rows:
            amount = Decimal(row["amount"])
            balance = amount - paid.get(int(row["id"]), Decimal(0))
            if balance <= 0:
                continue
            expenses.append(
                EligibleExpense(
                    id=int(row["id"]),
                    branch_id=int(row["branch_id"]),
                    expense_type=row["expense_type"],
                    period=row["period"],
                    due_date=parse_day(row["due_date"]),
                    amount=amount,
                    status=ExpenseStatus(row["status"]),
                    balance_remaining=balance,
                )
            )
        return expenses

    def _count_sent_log(self, expense_id: int, rule_id: int, trigger_local_date: date) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM alert_logs
                WHERE expense_id = ? AND rule_id = ? AND trigger_local_date = ? AND status = ?
                """,
                (expense_id, rule_id, trigger_local_date.isoformat(), AlertStatus.SENT.value),
            ).fetchone()
        return int(row["n"])

    def _insert_log(self, entry: AlertLog) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO alert_logs (
                    expense_id,
                    rule_id,
                    rule_type,
                    day_offset,
                    trigger_local_date,
                    sent_to,
                    sent_at,
                    status,
                    error_message
                ) VALUES (?, ?, ?, ?, ?, ?, {_STORE_NOW_ISO}, ?, ?)
                """,
                (
                    entry.expense_id,
                    entry.rule_id,
                    entry.rule_type.value,
                    entry.day_offset,
                    entry.trigger_local_date.isoformat(),
                    entry.sent_to,
                    entry.status.value,
                    entry.error_message,
                ),
            )

    def _get_active_recipients(self, branch_id: int) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT email FROM branch_recipients WHERE branch_id = ? AND is_active = 1 ORDER BY id",
                (branch_id,),
            ).fetchall()
        return [row["email"] for row in rows]

    def _get_branch_display_name(self, branch_id: int) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT city, label FROM branches WHERE id = ?",
                (branch_id,),
            ).fetchone()
        return f"{row['city']} - {row['label']}" if row else None

    # StoragePort

    async def load_active_rules(self) -> List[AlertRule]:
        return await asyncio.to_thread(self._load_active_rules)

    async def load_eligible_expenses(self, today: date, window_days: int) -> List[EligibleExpense]:
        return await asyncio.to_thread(self._load_eligible_expenses, today, window_days)

    async def count_sent_log(self, expense_id: int, rule_id: int, trigger_local_date: date) -> int:
        return await asyncio.to_thread(self._count_sent_log, expense_id, rule_id, trigger_local_date)

    async def insert_log(self, entry: AlertLog) -> None:
        await asyncio.to_thread(self._insert_log, entry)

    async def get_active_recipients(self, branch_id: int) -> List[str]:
        return await asyncio.to_thread(self._get_active_recipients, branch_id)

    async def get_branch_display_name(self, branch_id: int) -> Optional[str]:
        return await asyncio.to_thread(self._get_branch_display_name, branch_id)
