"""
Expenseflow Database

Single source of truth for sites, expenses, their approval history, and the
running budget totals. Implements the persistence contract the approval core
relies on:

- ``load_expense(id)``
- ``compare_and_swap_status(id, expected_status, updated_record)``
- ``get_budget_config(site_id)``
- ``apply_spend(event_id, ...)`` (idempotent per event id)
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from expenseflow.core.budget import BudgetConfig, Totals
from expenseflow.core.config import get_settings
from expenseflow.core.models import (
    ApprovalAction,
    ApprovalEvent,
    ExpenseRecord,
    ExpenseStatus,
    to_money,
)
from expenseflow.services.errors import NotFoundError

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

logger = logging.getLogger(__name__)

# Seconds a writer waits on a locked SQLite database before failing.
LOCK_TIMEOUT = 5.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def _from_cents(cents: int) -> Decimal:
    return to_money(Decimal(int(cents or 0)) / 100)


def _dec(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_money(Decimal(str(value)))


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class ExpenseDB:
    def __init__(self, db_path: str = "expenseflow.db"):
        settings = get_settings()
        self.dsn = settings.database_url
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.allow_sqlite_fallback = settings.allow_sqlite_fallback
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=LOCK_TIMEOUT)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set EXPENSEFLOW_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS sites (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    code TEXT,
                    monthly_limit TEXT DEFAULT '0',
                    yearly_limit TEXT DEFAULT '0',
                    category_limits TEXT,
                    alert_threshold INTEGER DEFAULT 80,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS expenses (
                    id TEXT PRIMARY KEY,
                    expense_number TEXT UNIQUE,
                    title TEXT,
                    status TEXT NOT NULL,
                    original_amount TEXT NOT NULL,
                    current_amount TEXT NOT NULL,
                    currency TEXT DEFAULT 'INR',
                    site_id TEXT NOT NULL,
                    category TEXT,
                    submitter_id TEXT NOT NULL,
                    payment_amount TEXT,
                    payment_date TEXT,
                    payment_processed_by TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_events (
                    event_id TEXT PRIMARY KEY,
                    expense_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    level INTEGER NOT NULL,
                    approver_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    comment TEXT,
                    amount_modified INTEGER DEFAULT 0,
                    original_amount TEXT,
                    modified_amount TEXT,
                    modification_reason TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(expense_id, sequence)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS budget_totals (
                    site_id TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    period_key TEXT NOT NULL,
                    total_cents INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT,
                    PRIMARY KEY (site_id, bucket, period_key)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS budget_applied_events (
                    event_id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL,
                    applied_at TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_expenses_status ON expenses(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_expenses_site ON expenses(site_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_events_expense ON approval_events(expense_id)")
            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        site_id = payload.get("id") or f"SITE-{uuid.uuid4().hex[:12]}"
        threshold = payload.get("alert_threshold")
        if threshold is None:
            threshold = get_settings().default_alert_threshold
        category_limits = {
            str(k): str(to_money(Decimal(str(v or 0))))
            for k, v in (payload.get("category_limits") or {}).items()
        }
        sql = self._prepare_sql("""
            INSERT INTO sites
            (id, name, code, monthly_limit, yearly_limit, category_limits, alert_threshold,
             is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        values = (
            site_id,
            payload.get("name") or site_id,
            payload.get("code"),
            str(to_money(Decimal(str(payload.get("monthly_limit") or 0)))),
            str(to_money(Decimal(str(payload.get("yearly_limit") or 0)))),
            json.dumps(category_limits),
            int(threshold),
            1 if payload.get("is_active", True) else 0,
            now,
            now,
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, values)
            conn.commit()
        return self.get_site(site_id)

    def get_site(self, site_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM sites WHERE id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (site_id,))
            row = cur.fetchone()
        if not row:
            return None
        site = dict(row)
        site["category_limits"] = json.loads(site.get("category_limits") or "{}")
        return site

    def list_sites(self) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM sites WHERE is_active = 1 ORDER BY name")
            ids = [dict(row)["id"] for row in cur.fetchall()]
        return [self.get_site(site_id) for site_id in ids]

    def get_budget_config(self, site_id: str) -> BudgetConfig:
        site = self.get_site(site_id)
        if not site:
            raise NotFoundError("site", site_id)
        return BudgetConfig(
            site_id=site_id,
            monthly_limit=Decimal(site["monthly_limit"] or "0"),
            yearly_limit=Decimal(site["yearly_limit"] or "0"),
            category_limits={k: Decimal(v) for k, v in site["category_limits"].items()},
            alert_threshold_percent=int(site["alert_threshold"]),
            site_name=site["name"],
        )

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def create_expense(self, payload: Dict[str, Any]) -> ExpenseRecord:
        """Insert a new expense in ``submitted``."""
        self.initialize()
        site_id = payload["site_id"]
        if not self.get_site(site_id):
            raise NotFoundError("site", site_id)
        expense_id = payload.get("id") or f"EXP-{uuid.uuid4().hex}"
        record = ExpenseRecord(
            id=expense_id,
            status=ExpenseStatus.SUBMITTED,
            original_amount=Decimal(str(payload["amount"])),
            site_id=site_id,
            category=payload.get("category") or "Miscellaneous",
            submitter_id=payload["submitter_id"],
            expense_number=payload.get("expense_number") or f"EXP-{uuid.uuid4().hex[:6].upper()}",
            title=payload.get("title") or "",
            currency=payload.get("currency") or get_settings().default_currency,
        )
        now = record.created_at.isoformat()
        sql = self._prepare_sql("""
            INSERT INTO expenses
            (id, expense_number, title, status, original_amount, current_amount, currency,
             site_id, category, submitter_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        values = (
            record.id,
            record.expense_number,
            record.title,
            record.status.value,
            str(record.original_amount),
            str(record.current_amount),
            record.currency,
            record.site_id,
            record.category,
            record.submitter_id,
            now,
            now,
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, values)
            conn.commit()
        logger.info("Created expense %s (%s) for site %s", record.id, record.expense_number, site_id)
        return self.load_expense(record.id)

    def _row_to_event(self, row: Dict[str, Any]) -> ApprovalEvent:
        return ApprovalEvent(
            level=int(row["level"]),
            approver_id=row["approver_id"],
            action=ApprovalAction(row["action"]),
            comment=row.get("comment") or "",
            amount_modified=bool(row.get("amount_modified")),
            original_amount=_dec(row.get("original_amount")),
            modified_amount=_dec(row.get("modified_amount")),
            modification_reason=row.get("modification_reason"),
            event_id=row["event_id"],
            timestamp=_parse_ts(row["created_at"]),
        )

    def _row_to_record(self, row: Dict[str, Any], events: List[ApprovalEvent]) -> ExpenseRecord:
        return ExpenseRecord(
            id=row["id"],
            status=ExpenseStatus(row["status"]),
            original_amount=Decimal(row["original_amount"]),
            current_amount=Decimal(row["current_amount"]),
            site_id=row["site_id"],
            category=row.get("category") or "",
            submitter_id=row["submitter_id"],
            approval_history=tuple(events),
            site_name=row.get("site_name") or "",
            expense_number=row.get("expense_number") or "",
            title=row.get("title") or "",
            currency=row.get("currency") or "INR",
            created_at=_parse_ts(row.get("created_at")),
            updated_at=_parse_ts(row.get("updated_at")),
        )

    def _fetch_events(self, cur, expense_id: str) -> List[ApprovalEvent]:
        sql = self._prepare_sql(
            "SELECT * FROM approval_events WHERE expense_id = ? ORDER BY sequence ASC"
        )
        cur.execute(sql, (expense_id,))
        return [self._row_to_event(dict(r)) for r in cur.fetchall()]

    def load_expense(self, expense_id: str) -> ExpenseRecord:
        self.initialize()
        sql = self._prepare_sql("""
            SELECT e.*, s.name AS site_name
            FROM expenses e LEFT JOIN sites s ON s.id = e.site_id
            WHERE e.id = ?
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (expense_id,))
            row = cur.fetchone()
            if not row:
                raise NotFoundError("expense", expense_id)
            events = self._fetch_events(cur, expense_id)
        return self._row_to_record(dict(row), events)

    def list_expenses(
        self,
        status: Optional[str] = None,
        site_id: Optional[str] = None,
        submitter_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[ExpenseRecord]:
        self.initialize()
        clauses = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if site_id:
            clauses.append("site_id = ?")
            params.append(site_id)
        if submitter_id:
            clauses.append("submitter_id = ?")
            params.append(submitter_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = self._prepare_sql(f"SELECT id FROM expenses {where} ORDER BY created_at DESC LIMIT ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*params, limit))
            ids = [dict(r)["id"] for r in cur.fetchall()]
        return [self.load_expense(expense_id) for expense_id in ids]

    def compare_and_swap_status(
        self,
        expense_id: str,
        expected_status: ExpenseStatus,
        updated: ExpenseRecord,
    ) -> bool:
        """
        Commit ``updated`` only if the stored status is still ``expected_status``.

        Status, amount and the new history entries are written in one
        transaction. Returns False (and writes nothing) when another action got
        there first.
        """
        self.initialize()
        now = _now()
        paid = updated.status == ExpenseStatus.PAID
        last = updated.approval_history[-1] if updated.approval_history else None
        update_sql = self._prepare_sql("""
            UPDATE expenses
            SET status = ?, current_amount = ?, updated_at = ?,
                payment_amount = COALESCE(?, payment_amount),
                payment_date = COALESCE(?, payment_date),
                payment_processed_by = COALESCE(?, payment_processed_by)
            WHERE id = ? AND status = ?
        """)
        update_values = (
            updated.status.value,
            str(updated.current_amount),
            now,
            str(updated.current_amount) if paid else None,
            last.timestamp.isoformat() if paid and last else None,
            last.approver_id if paid and last else None,
            expense_id,
            ExpenseStatus(expected_status).value,
        )
        insert_sql = self._prepare_sql("""
            INSERT INTO approval_events
            (event_id, expense_id, sequence, level, approver_id, action, comment, amount_modified,
             original_amount, modified_amount, modification_reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute(update_sql, update_values)
                if cur.rowcount != 1:
                    conn.rollback()
                    return False
                count_sql = self._prepare_sql(
                    "SELECT COUNT(*) AS n FROM approval_events WHERE expense_id = ?"
                )
                cur.execute(count_sql, (expense_id,))
                stored = int(dict(cur.fetchone())["n"])
                for sequence, event in enumerate(updated.approval_history[stored:], start=stored):
                    cur.execute(insert_sql, (
                        event.event_id,
                        expense_id,
                        sequence,
                        event.level,
                        event.approver_id,
                        event.action.value,
                        event.comment,
                        1 if event.amount_modified else 0,
                        str(event.original_amount) if event.original_amount is not None else None,
                        str(event.modified_amount) if event.modified_amount is not None else None,
                        event.modification_reason,
                        event.timestamp.isoformat(),
                    ))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return True

    # ------------------------------------------------------------------
    # Budget ledger
    # ------------------------------------------------------------------

    def _select_totals(self, cur, site_id: str, buckets: Sequence[Tuple[str, str]]) -> Totals:
        sql = self._prepare_sql(
            "SELECT total_cents FROM budget_totals WHERE site_id = ? AND bucket = ? AND period_key = ?"
        )
        totals: Totals = {}
        for bucket, period in buckets:
            cur.execute(sql, (site_id, bucket, period))
            row = cur.fetchone()
            totals[(bucket, period)] = _from_cents(dict(row)["total_cents"] if row else 0)
        return totals

    def apply_spend(
        self,
        event_id: str,
        site_id: str,
        amount: Decimal,
        buckets: Sequence[Tuple[str, str]],
    ) -> Optional[Totals]:
        """Add ``amount`` to each bucket once per ``event_id``; None if already applied."""
        self.initialize()
        now = _now()
        cents = _cents(amount)
        claim_sql = self._prepare_sql("""
            INSERT INTO budget_applied_events (event_id, site_id, amount_cents, applied_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING
        """)
        upsert_sql = self._prepare_sql("""
            INSERT INTO budget_totals (site_id, bucket, period_key, total_cents, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(site_id, bucket, period_key) DO UPDATE SET
                total_cents = budget_totals.total_cents + excluded.total_cents,
                updated_at = excluded.updated_at
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute(claim_sql, (event_id, site_id, cents, now))
                if cur.rowcount != 1:
                    conn.rollback()
                    return None
                for bucket, period in buckets:
                    cur.execute(upsert_sql, (site_id, bucket, period, cents, now))
                totals = self._select_totals(cur, site_id, buckets)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return totals

    def get_totals(self, site_id: str, buckets: Sequence[Tuple[str, str]]) -> Totals:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            return self._select_totals(cur, site_id, buckets)

    def unapplied_payments(self, expense_id: Optional[str] = None, limit: int = 500) -> List[ExpenseRecord]:
        """
        Paid expenses whose payment event never reached the budget totals.

        A crash or ledger error between the payment commit and ``apply_spend``
        leaves such rows behind; replaying them is safe because ``apply_spend``
        is keyed on the event id.
        """
        self.initialize()
        clauses = ["e.status = ?", "ae.level = 4", "ae.action = ?", "b.event_id IS NULL"]
        params: List[Any] = [ExpenseStatus.PAID.value, ApprovalAction.APPROVED.value]
        if expense_id:
            clauses.append("e.id = ?")
            params.append(expense_id)
        sql = self._prepare_sql(f"""
            SELECT e.id
            FROM expenses e
            JOIN approval_events ae ON ae.expense_id = e.id
            LEFT JOIN budget_applied_events b ON b.event_id = ae.event_id
            WHERE {' AND '.join(clauses)}
            ORDER BY e.updated_at ASC
            LIMIT ?
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*params, limit))
            ids = [dict(r)["id"] for r in cur.fetchall()]
        return [self.load_expense(pending_id) for pending_id in ids]

    def is_spend_applied(self, event_id: str) -> bool:
        self.initialize()
        sql = self._prepare_sql("SELECT event_id FROM budget_applied_events WHERE event_id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (event_id,))
            return cur.fetchone() is not None


_DB_INSTANCE: Optional[ExpenseDB] = None


def get_db() -> ExpenseDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = ExpenseDB(db_path=os.getenv("EXPENSEFLOW_DB_PATH", get_settings().db_path))
    return _DB_INSTANCE
