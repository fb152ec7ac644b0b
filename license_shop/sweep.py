"""Expiration sweep — periodic reminder and expiry passes over active licenses.

Runs once at start-up, then every ``sweep.interval_seconds``. Each pass
isolates per-license failures so one bad record never blocks the batch.
Both edges are claimed in the store before any message goes out, so each
fires at most once per license.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from . import keyboards, routing
from .database import TransitionResult
from .errors import ExternalServiceError
from .utils import escape, now_utc

if TYPE_CHECKING:
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .licenses import LicenseWorkflow
    from .routing import StaffRouting


class ExpirationSweep:
    """Sends expiry reminders and moves due licenses from active to expired."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        licenses: LicenseWorkflow,
        staff_routing: StaffRouting,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._messages = config.messages
        self._db = database
        self._gateway = gateway
        self._licenses = licenses
        self._routing = staff_routing
        self._logger = logger or logging.getLogger("shop.sweep")
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.reminders_sent = 0
        self.licenses_expired = 0

    async def start(self) -> None:
        self._task = asyncio.create_task(self._sweep_loop())
        self._logger.info("Expiration sweep started (interval: %ss)", self._config.sweep.interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _sweep_loop(self) -> None:
        if self._config.sweep.run_on_start:
            await self._safe_run()
        while True:
            await asyncio.sleep(self._config.sweep.interval_seconds)
            await self._safe_run()

    async def _safe_run(self) -> None:
        try:
            await self.run_once()
        except Exception:
            self._logger.exception("Expiration sweep error")

    async def run_once(self, now: datetime | None = None) -> tuple[int, int]:
        """One reminder pass then one expiry pass. Returns (reminded, expired)."""
        now = now or now_utc()
        reminded = await self._reminder_pass(now)
        expired = await self._expiry_pass(now)
        self.runs += 1
        if reminded or expired:
            self._logger.info("Sweep: %d reminder(s), %d expired", reminded, expired)
        return reminded, expired

    # ══════════════════════════════════════════════════════════
    #  Reminder Pass
    # ══════════════════════════════════════════════════════════

    async def _reminder_pass(self, now: datetime) -> int:
        window = timedelta(hours=self._config.sweep.reminder_window_hours)
        due = await self._db.get_licenses_due_reminder(now, window)
        sent = 0
        for license_row in due:
            try:
                if not await self._db.claim_license_reminder(license_row["license_id"]):
                    continue
                sent += 1
                self.reminders_sent += 1
                await self._gateway.send_text(
                    license_row["user_id"],
                    self._messages.license_reminder.format(
                        plan=escape(license_row["plan_name"]),
                        email=escape(license_row["email"]),
                        expiry=self._licenses.format_date(license_row["expires_at"]),
                    ),
                    rich=True,
                )
            except ExternalServiceError as e:
                self._logger.warning("Reminder for license %s not delivered: %s", license_row["license_id"], e)
            except Exception:
                self._logger.exception("Reminder pass failed for license %s", license_row["license_id"])
        return sent

    # ══════════════════════════════════════════════════════════
    #  Expiry Pass
    # ══════════════════════════════════════════════════════════

    async def _expiry_pass(self, now: datetime) -> int:
        due = await self._db.get_licenses_due_expiry(now)
        expired = 0
        for license_row in due:
            try:
                result, updated = await self._db.expire_license(license_row["license_id"])
                if result is not TransitionResult.APPLIED:
                    continue
                expired += 1
                self.licenses_expired += 1
                self._logger.info(
                    "License %d expired (user=%s plan=%s)",
                    updated["license_id"], updated["user_id"], updated["plan_name"],
                )
                await self._notify_expired(updated)
                await self._log_expired(updated, license_row)
            except Exception:
                self._logger.exception("Expiry pass failed for license %s", license_row["license_id"])
        return expired

    async def _notify_expired(self, license_row: dict) -> None:
        text = self._messages.license_expired.format(
            plan=escape(license_row["plan_name"]), email=escape(license_row["email"]),
        )
        try:
            await self._gateway.send_text(
                license_row["user_id"], text, keyboard=keyboards.redeem_keyboard("Renew"), rich=True,
            )
        except ExternalServiceError as e:
            self._logger.warning("Expiry notice for license %s not delivered: %s", license_row["license_id"], e)

    async def _log_expired(self, license_row: dict, user: dict) -> None:
        target = await self._routing.optional_target(routing.LICENSE_EXPIRED_TOPIC)
        if target is None:
            return
        chat_id, thread_id = target
        text = self._licenses.render_record(license_row, user, self._messages.status_expired)
        try:
            await self._gateway.send_text(chat_id, text, thread_id=thread_id, rich=True)
        except ExternalServiceError as e:
            self._logger.warning("Expiry log for license %s not posted: %s", license_row["license_id"], e)
