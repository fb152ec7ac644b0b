"""Order workflow — coin purchases awaiting payment-proof review.

A customer's screenshot becomes a ``pending`` order plus a staff record (the
screenshot with an Accept/Decline keyboard) in the order topic. Leaving
``pending`` is the approval protocol's job.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any

from . import keyboards, routing
from .errors import ExternalServiceError, NotFoundError
from .utils import display_handle, escape, format_local, now_utc

if TYPE_CHECKING:
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .routing import StaffRouting


class OrderWorkflow:
    """Creates orders from payment proofs and renders their staff records."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        staff_routing: StaffRouting,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._gateway = gateway
        self._routing = staff_routing
        self._logger = logger or logging.getLogger("shop.orders")
        self.orders_created = 0

    def render_record(self, order: dict, user: dict | None, status_label: str) -> str:
        user = user or {}
        return self._config.messages.order_record.format(
            status=status_label,
            name=escape(user.get("first_name") or "N/A"),
            handle=escape(display_handle(user.get("username"))),
            user_id=order["user_id"],
            plan=escape(order["plan_name"]),
            days=order["days"],
            coins=order["coins"],
            plural=self._config.currency.plural,
            price=order["price"] if order.get("price") is not None else "-",
            price_unit=self._config.currency.price_unit,
            method=escape(order.get("payment_method") or "Other"),
            created=format_local(
                order.get("created_at"),
                self._config.display.timezone,
                self._config.display.datetime_format,
            ),
        )

    async def submit_proof(self, user: dict, draft: dict[str, Any], image_ref: str) -> int:
        """Create a pending order for the drafted plan and post the proof to staff.

        If staff cannot be reached the order is removed again and
        ``ExternalServiceError`` propagates, so the customer can resend."""
        if any(draft.get(f) is None for f in ("plan", "days", "coins")):
            raise NotFoundError()
        chat_id, thread_id = await self._routing.target(routing.ORDER_TOPIC)

        order_id = await self._db.create_order(
            user_id=user["user_id"],
            plan_name=draft["plan"],
            days=draft["days"],
            coins=draft["coins"],
            price=draft.get("price"),
            payment_method=draft.get("method"),
        )
        order = await self._db.get_order(order_id)
        caption = self.render_record(order, user, self._config.messages.status_pending)

        try:
            ref = await self._gateway.send_image(
                chat_id,
                image_ref,
                caption,
                thread_id=thread_id,
                keyboard=keyboards.staff_order_keyboard(order_id),
                rich=True,
            )
        except ExternalServiceError:
            await self._db.delete_pending_order(order_id)
            self._logger.warning("Order %d withdrawn: proof could not reach staff", order_id)
            raise ExternalServiceError(self._config.messages.proof_failed)

        try:
            await self._db.set_order_proof_message(order_id, ref.chat_id, ref.message_id)
        except sqlite3.Error:
            # Approval falls back to the pressed message
            self._logger.exception("Order %d: could not store staff record reference", order_id)
        self.orders_created += 1
        self._logger.info(
            "Order %d created: user=%s plan=%s coins=%s method=%s",
            order_id, user["user_id"], draft["plan"], draft["coins"], draft.get("method"),
        )
        return order_id

    async def announce_new_customer(self, user: dict) -> None:
        """Staff alert for a first contact. Never raises."""
        try:
            target = await self._routing.optional_target(routing.NEW_CUSTOMER_TOPIC)
        except sqlite3.Error:
            self._logger.exception("Error reading new customer topic for %s", user["user_id"])
            return
        if target is None:
            return
        chat_id, thread_id = target
        text = self._config.messages.new_customer.format(
            name=escape(user.get("first_name") or "N/A"),
            handle=escape(display_handle(user.get("username"))),
            user_id=user["user_id"],
            time=format_local(now_utc(), self._config.display.timezone, self._config.display.datetime_format),
        )
        try:
            await self._gateway.send_text(chat_id, text, thread_id=thread_id, rich=True)
        except ExternalServiceError:
            self._logger.exception("Error sending new customer alert for %s", user["user_id"])
