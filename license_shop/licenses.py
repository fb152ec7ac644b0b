"""License workflow — redeeming coins for a time-boxed license.

Confirmation only checks the balance; it creates a ``pending`` license with
its final ``expires_at`` and posts a staff record with Finish/Decline
buttons. Coins are debited when staff finish the license (approval
protocol), and ``active → expired`` belongs to the expiration sweep.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from . import keyboards, routing
from .errors import ExternalServiceError, NotFoundError
from .utils import display_handle, escape, format_local, now_utc

if TYPE_CHECKING:
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .ledger import CreditLedger
    from .routing import StaffRouting


class LicenseWorkflow:
    """Creates pending licenses and renders their staff records."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        ledger: CreditLedger,
        staff_routing: StaffRouting,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._gateway = gateway
        self._ledger = ledger
        self._routing = staff_routing
        self._logger = logger or logging.getLogger("shop.licenses")
        self.licenses_created = 0

    def format_date(self, value: Any) -> str:
        return format_local(value, self._config.display.timezone, self._config.display.date_format)

    def preview_expiry(self, days: int) -> str:
        return self.format_date(now_utc() + timedelta(days=days))

    def render_record(self, license_row: dict, user: dict | None, status_label: str) -> str:
        user = user or {}
        return self._config.messages.license_record.format(
            status=status_label,
            name=escape(user.get("first_name") or "N/A"),
            handle=escape(display_handle(user.get("username"))),
            user_id=license_row["user_id"],
            email=escape(license_row["email"]),
            plan=escape(license_row["plan_name"]),
            coins=license_row["coins_spent"],
            plural=self._config.currency.plural,
            days=license_row["days"],
            expiry=self.format_date(license_row["expires_at"]),
        )

    def render_customer_summary(self, license_row: dict) -> str:
        return self._config.messages.license_activated.format(
            email=escape(license_row["email"]),
            plan=escape(license_row["plan_name"]),
            coins=license_row["coins_spent"],
            plural=self._config.currency.plural,
            days=license_row["days"],
            expiry=self.format_date(license_row["expires_at"]),
        )

    async def submit_redemption(self, user: dict, draft: dict[str, Any]) -> dict:
        """Create a pending license for the drafted email and plan.

        Raises InsufficientBalance (nothing created) when the committed
        balance does not cover the plan."""
        if not draft.get("email") or any(draft.get(f) is None for f in ("plan", "days", "coins")):
            raise NotFoundError()
        await self._ledger.ensure_covers(user["user_id"], draft["coins"])
        chat_id, thread_id = await self._routing.target(routing.LICENSE_TOPIC)

        license_id = await self._db.create_license(
            user_id=user["user_id"],
            email=draft["email"],
            plan_name=draft["plan"],
            coins=draft["coins"],
            days=draft["days"],
        )
        license_row = await self._db.get_license(license_id)
        text = self.render_record(license_row, user, self._config.messages.status_pending)

        try:
            ref = await self._gateway.send_text(
                chat_id,
                text,
                thread_id=thread_id,
                keyboard=keyboards.staff_license_keyboard(license_id),
                rich=True,
            )
        except ExternalServiceError:
            await self._db.delete_pending_license(license_id)
            self._logger.warning("License %d withdrawn: record could not reach staff", license_id)
            raise

        await self._db.set_license_staff_message(license_id, ref.chat_id, ref.message_id)
        self.licenses_created += 1
        self._logger.info(
            "License %d created: user=%s plan=%s coins=%s expires=%s",
            license_id, user["user_id"], draft["plan"], draft["coins"], license_row["expires_at"],
        )
        return license_row
