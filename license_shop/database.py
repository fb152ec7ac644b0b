"""SQLite database module for license-shop.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Balance changes only ever go through ``_apply_coin_delta``: a single
conditional ``UPDATE ... SET coin_balance = coin_balance + ?`` plus a journal
row, executed inside the caller's transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from .models import LicenseStatus, OrderStatus, Stage
from .utils import now_utc, to_db_timestamp


class TransitionResult(Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class ShopDatabase:
    """SQLite-backed persistence for the shop."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id INTEGER PRIMARY KEY,
                    first_name TEXT NOT NULL DEFAULT '',
                    username TEXT,
                    stage TEXT NOT NULL DEFAULT 'idle',
                    draft TEXT NOT NULL DEFAULT '{}',
                    coin_balance INTEGER NOT NULL DEFAULT 0 CHECK (coin_balance >= 0),
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    order_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    plan_name TEXT NOT NULL,
                    days INTEGER NOT NULL,
                    coins INTEGER NOT NULL,
                    price INTEGER,
                    payment_method TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    proof_chat_id INTEGER,
                    proof_message_id INTEGER,
                    created_at TIMESTAMP NOT NULL,
                    resolved_at TIMESTAMP,
                    resolved_by INTEGER
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS licenses (
                    license_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    email TEXT NOT NULL,
                    plan_name TEXT NOT NULL,
                    coins_spent INTEGER NOT NULL,
                    days INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    expires_at TIMESTAMP NOT NULL,
                    reminded BOOLEAN NOT NULL DEFAULT 0,
                    staff_chat_id INTEGER,
                    staff_message_id INTEGER,
                    created_at TIMESTAMP NOT NULL,
                    resolved_at TIMESTAMP,
                    resolved_by INTEGER
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS coin_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    related_id INTEGER,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_licenses_status_expires "
                "ON licenses(status, expires_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_coin_transactions_user "
                "ON coin_transactions(user_id)"
            )
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Users & Sessions
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _user_row(row: sqlite3.Row | None) -> dict | None:
        if row is None:
            return None
        user = dict(row)
        try:
            user["draft"] = json.loads(user.get("draft") or "{}")
        except (ValueError, TypeError):
            user["draft"] = {}
        user["stage"] = Stage.parse(user.get("stage"))
        return user

    async def get_or_create_user(
        self, user_id: int, first_name: str, username: str | None,
    ) -> tuple[dict, bool]:
        """Return (user, created). New users start idle with an empty draft."""
        loop = asyncio.get_running_loop()
        now = to_db_timestamp(now_utc())

        def _sync() -> tuple[dict, bool]:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO users (user_id, first_name, username, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, first_name or "", username, now, now),
                )
                created = cursor.rowcount == 1
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return self._user_row(row), created
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_user(self, user_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return self._user_row(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def save_session(self, user_id: int, stage: Stage, draft: dict[str, Any]) -> None:
        """Write (stage, draft) together in a single statement."""
        loop = asyncio.get_running_loop()
        draft_str = json.dumps(draft or {})
        now = to_db_timestamp(now_utc())

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE users SET stage = ?, draft = ?, updated_at = ? WHERE user_id = ?",
                    (Stage(stage).value, draft_str, now, user_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def update_profile(self, user_id: int, first_name: str, username: str | None) -> bool:
        loop = asyncio.get_running_loop()
        now = to_db_timestamp(now_utc())

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE users SET first_name = ?, username = ?, updated_at = ? WHERE user_id = ?",
                    (first_name or "", username, now, user_id),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_users(self) -> list[dict]:
        """All known users, oldest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT user_id, first_name, username, coin_balance, created_at "
                    "FROM users ORDER BY created_at, user_id",
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_user_ids(self) -> list[int]:
        return [u["user_id"] for u in await self.list_users()]

    async def list_balances(self) -> list[dict]:
        """Users holding coins, richest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT user_id, first_name, username, coin_balance FROM users "
                    "WHERE coin_balance > 0 ORDER BY coin_balance DESC, user_id",
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_balance(self, user_id: int) -> int | None:
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT coin_balance FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return row["coin_balance"] if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Ledger Primitive
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _apply_coin_delta(
        conn: sqlite3.Connection,
        user_id: int,
        delta: int,
        tx_type: str,
        reason: str | None = None,
        related_id: int | None = None,
    ) -> bool:
        """Atomically add ``delta`` to a balance and journal it.

        Negative deltas only apply while the committed balance covers them.
        Returns False (nothing written) for an unknown user or insufficient
        funds. Runs inside the caller's transaction."""
        cursor = conn.execute(
            "UPDATE users SET coin_balance = coin_balance + ? "
            "WHERE user_id = ? AND coin_balance + ? >= 0",
            (delta, user_id, delta),
        )
        if cursor.rowcount == 0:
            return False
        conn.execute(
            "INSERT INTO coin_transactions (user_id, amount, type, reason, related_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, delta, tx_type, reason, related_id, to_db_timestamp(now_utc())),
        )
        return True

    async def credit_coins(
        self,
        user_id: int,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_id: int | None = None,
    ) -> int | None:
        """Atomically credit coins. Returns new balance, None for unknown user."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                if not self._apply_coin_delta(conn, user_id, amount, tx_type, reason, related_id):
                    conn.rollback()
                    return None
                conn.commit()
                row = conn.execute(
                    "SELECT coin_balance FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return row["coin_balance"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def debit_coins(
        self,
        user_id: int,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        related_id: int | None = None,
    ) -> int | None:
        """Atomically debit coins.
        Returns new balance on success, None on insufficient funds or unknown user."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                if not self._apply_coin_delta(conn, user_id, -amount, tx_type, reason, related_id):
                    conn.rollback()
                    return None
                conn.commit()
                row = conn.execute(
                    "SELECT coin_balance FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return row["coin_balance"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_transactions(self, user_id: int, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM coin_transactions WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Guarded Transitions
    # ══════════════════════════════════════════════════════════

    def _transition_sync(
        self,
        table: str,
        key: str,
        record_id: int,
        from_status: str,
        to_status: str,
        resolved_by: int | None,
        delta: Callable[[dict], int] | None = None,
        tx_type: str = "",
    ) -> tuple[TransitionResult, dict | None]:
        """Claim-then-act in one IMMEDIATE transaction.

        Order: read status → reject unless ``from_status`` → ledger delta →
        status update → commit. Any failure rolls everything back, so a
        ledger change without its status change is never visible."""
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE {key} = ?", (record_id,),
                ).fetchone()
                if row is None:
                    conn.execute("ROLLBACK")
                    return TransitionResult.NOT_FOUND, None
                record = dict(row)
                if record["status"] != from_status:
                    conn.execute("ROLLBACK")
                    return TransitionResult.ALREADY_PROCESSED, record

                if delta is not None:
                    amount = delta(record)
                    applied = self._apply_coin_delta(
                        conn, record["user_id"], amount, tx_type,
                        reason=f"{table[:-1]} {record_id} {to_status}",
                        related_id=record_id,
                    )
                    if not applied:
                        exists = conn.execute(
                            "SELECT 1 FROM users WHERE user_id = ?", (record["user_id"],),
                        ).fetchone()
                        conn.execute("ROLLBACK")
                        if exists is None:
                            return TransitionResult.NOT_FOUND, record
                        return TransitionResult.INSUFFICIENT_FUNDS, record

                conn.execute(
                    f"UPDATE {table} SET status = ?, "
                    "resolved_at = COALESCE(resolved_at, ?), "
                    "resolved_by = COALESCE(?, resolved_by) "
                    f"WHERE {key} = ? AND status = ?",
                    (to_status, to_db_timestamp(now_utc()), resolved_by, record_id, from_status),
                )
                updated = conn.execute(
                    f"SELECT * FROM {table} WHERE {key} = ?", (record_id,),
                ).fetchone()
                conn.execute("COMMIT")
                return TransitionResult.APPLIED, dict(updated)
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    async def _transition(self, *args: Any, **kwargs: Any) -> tuple[TransitionResult, dict | None]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._transition_sync(*args, **kwargs))

    # ══════════════════════════════════════════════════════════
    #  Orders
    # ══════════════════════════════════════════════════════════

    async def create_order(
        self,
        user_id: int,
        plan_name: str,
        days: int,
        coins: int,
        price: int | None,
        payment_method: str | None,
    ) -> int:
        """Insert a pending order. Returns the order ID."""
        loop = asyncio.get_running_loop()
        now = to_db_timestamp(now_utc())

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT INTO orders (user_id, plan_name, days, coins, price, payment_method, "
                    "status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (user_id, plan_name, days, coins, price, payment_method,
                     OrderStatus.PENDING.value, now),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_order(self, order_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM orders WHERE order_id = ?", (order_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_orders(self, user_id: int | None = None, status: str | None = None) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                query = "SELECT * FROM orders WHERE 1 = 1"
                params: list[Any] = []
                if user_id is not None:
                    query += " AND user_id = ?"
                    params.append(user_id)
                if status is not None:
                    query += " AND status = ?"
                    params.append(status)
                rows = conn.execute(query + " ORDER BY order_id", params).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_order_proof_message(self, order_id: int, chat_id: int, message_id: int) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE orders SET proof_chat_id = ?, proof_message_id = ? WHERE order_id = ?",
                    (chat_id, message_id, order_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def delete_pending_order(self, order_id: int) -> bool:
        """Remove an order that never reached staff. Only pending rows are removed."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM orders WHERE order_id = ? AND status = ?",
                    (order_id, OrderStatus.PENDING.value),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def accept_order(self, order_id: int, resolved_by: int | None) -> tuple[TransitionResult, dict | None]:
        """pending → accepted, crediting the order's coins in the same transaction."""
        return await self._transition(
            "orders", "order_id", order_id,
            OrderStatus.PENDING.value, OrderStatus.ACCEPTED.value, resolved_by,
            delta=lambda r: r["coins"], tx_type="order_accepted",
        )

    async def decline_order(self, order_id: int, resolved_by: int | None) -> tuple[TransitionResult, dict | None]:
        return await self._transition(
            "orders", "order_id", order_id,
            OrderStatus.PENDING.value, OrderStatus.DECLINED.value, resolved_by,
        )

    # ══════════════════════════════════════════════════════════
    #  Licenses
    # ══════════════════════════════════════════════════════════

    async def create_license(
        self,
        user_id: int,
        email: str,
        plan_name: str,
        coins: int,
        days: int,
        created_at: datetime | None = None,
    ) -> int:
        """Insert a pending license. ``expires_at`` is fixed here and never updated."""
        loop = asyncio.get_running_loop()
        created = created_at or now_utc()
        expires_at = to_db_timestamp(created + timedelta(days=days))

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT INTO licenses (user_id, email, plan_name, coins_spent, days, status, "
                    "expires_at, reminded, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)",
                    (user_id, email, plan_name, coins, days, LicenseStatus.PENDING.value,
                     expires_at, to_db_timestamp(created)),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_license(self, license_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM licenses WHERE license_id = ?", (license_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_license_staff_message(self, license_id: int, chat_id: int, message_id: int) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE licenses SET staff_chat_id = ?, staff_message_id = ? WHERE license_id = ?",
                    (chat_id, message_id, license_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def delete_pending_license(self, license_id: int) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM licenses WHERE license_id = ? AND status = ?",
                    (license_id, LicenseStatus.PENDING.value),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def activate_license(self, license_id: int, resolved_by: int | None) -> tuple[TransitionResult, dict | None]:
        """pending → active, debiting the license's coins in the same transaction."""
        return await self._transition(
            "licenses", "license_id", license_id,
            LicenseStatus.PENDING.value, LicenseStatus.ACTIVE.value, resolved_by,
            delta=lambda r: -r["coins_spent"], tx_type="license_redeemed",
        )

    async def decline_license(self, license_id: int, resolved_by: int | None) -> tuple[TransitionResult, dict | None]:
        return await self._transition(
            "licenses", "license_id", license_id,
            LicenseStatus.PENDING.value, LicenseStatus.DECLINED.value, resolved_by,
        )

    async def expire_license(self, license_id: int) -> tuple[TransitionResult, dict | None]:
        """active → expired. The single edge owned by the expiration sweep."""
        return await self._transition(
            "licenses", "license_id", license_id,
            LicenseStatus.ACTIVE.value, LicenseStatus.EXPIRED.value, None,
        )

    async def get_licenses_due_reminder(self, now: datetime, window: timedelta) -> list[dict]:
        """Active, not yet reminded, expiring within (now, now + window]."""
        loop = asyncio.get_running_loop()
        lower = to_db_timestamp(now)
        upper = to_db_timestamp(now + window)

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT l.*, u.first_name, u.username FROM licenses l "
                    "LEFT JOIN users u ON u.user_id = l.user_id "
                    "WHERE l.status = ? AND l.reminded = 0 "
                    "AND l.expires_at > ? AND l.expires_at <= ? "
                    "ORDER BY l.expires_at",
                    (LicenseStatus.ACTIVE.value, lower, upper),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def claim_license_reminder(self, license_id: int) -> bool:
        """Flip ``reminded`` false → true. Returns True only for the first caller."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE licenses SET reminded = 1 "
                    "WHERE license_id = ? AND reminded = 0 AND status = ?",
                    (license_id, LicenseStatus.ACTIVE.value),
                )
                conn.commit()
                return cursor.rowcount == 1
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_licenses_due_expiry(self, now: datetime) -> list[dict]:
        """Active licenses whose ``expires_at`` is at or before ``now``."""
        loop = asyncio.get_running_loop()
        cutoff = to_db_timestamp(now)

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT l.*, u.first_name, u.username FROM licenses l "
                    "LEFT JOIN users u ON u.user_id = l.user_id "
                    "WHERE l.status = ? AND l.expires_at <= ? "
                    "ORDER BY l.expires_at",
                    (LicenseStatus.ACTIVE.value, cutoff),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Settings
    # ══════════════════════════════════════════════════════════

    async def get_setting(self, key: str) -> str | None:
        loop = asyncio.get_running_loop()

        def _sync() -> str | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT value FROM settings WHERE key = ?", (key,),
                ).fetchone()
                return row["value"] if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_setting(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, str(value)),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Aggregates (metrics)
    # ══════════════════════════════════════════════════════════

    async def get_user_count(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT COUNT(*) AS cnt FROM users").fetchone()["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_total_coins(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(coin_balance), 0) AS total FROM users",
                ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_status_counts(self, table: str) -> dict[str, int]:
        """Row counts per status for ``orders`` or ``licenses``."""
        if table not in ("orders", "licenses"):
            raise ValueError(f"Unknown table: {table}")
        loop = asyncio.get_running_loop()

        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    f"SELECT status, COUNT(*) AS cnt FROM {table} GROUP BY status",
                ).fetchall()
                return {r["status"]: r["cnt"] for r in rows}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
