"""Admin approval protocol — staff Accept/Decline/Finish presses.

Every press goes through the same steps:

1. the press must come from the staff chat, from an administrator of it
   (``AdminRoleCache``), else ``Unauthorized``;
2. the guarded store transition claims the record (``pending`` only), applies
   the ledger delta and persists the new status in one transaction;
3. only after that commits: the staff record is edited, relocated to its
   finished view and the customer is notified.

Post-commit effects are best-effort; a failure there is logged and never
rolls back the committed transition.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from . import keyboards, routing
from .database import TransitionResult
from .errors import (
    AlreadyProcessed,
    ExternalServiceError,
    InsufficientBalance,
    NotFoundError,
    ShopError,
    Unauthorized,
    ValidationError,
)
from .models import InboundEvent, Keyboard, MessageRef
from .utils import escape

if TYPE_CHECKING:
    from .admin_cache import AdminRoleCache
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .licenses import LicenseWorkflow
    from .orders import OrderWorkflow
    from .routing import StaffRouting


class AdminApprovalProtocol:
    """Authorises staff presses and runs the guarded order/license transitions."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        admin_cache: AdminRoleCache,
        staff_routing: StaffRouting,
        orders: OrderWorkflow,
        licenses: LicenseWorkflow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._messages = config.messages
        self._db = database
        self._gateway = gateway
        self._admins = admin_cache
        self._routing = staff_routing
        self._orders = orders
        self._licenses = licenses
        self._logger = logger or logging.getLogger("shop.approvals")

        self._actions: dict[tuple[str, str], Callable[[int, int, MessageRef | None], Awaitable[str]]] = {
            ("order", "accept"): self.accept_order,
            ("order", "decline"): self.decline_order,
            ("license", "accept"): self.activate_license,
            ("license", "decline"): self.decline_license,
        }
        self.resolved: dict[str, int] = {"accepted": 0, "declined": 0, "activated": 0, "rejected": 0}

    # ══════════════════════════════════════════════════════════
    #  Entry Points
    # ══════════════════════════════════════════════════════════

    async def handle_press(self, event: InboundEvent) -> None:
        """Top-level handler for a staff button. Acknowledges exactly once."""
        ack_text: str | None = None
        alert = False
        try:
            ack_text = await self.resolve(event.user_id, event.chat_id, event.payload or "", event.message)
        except (Unauthorized, AlreadyProcessed, InsufficientBalance, NotFoundError) as e:
            self.resolved["rejected"] += 1
            self._logger.info("Staff press %r by %s rejected: %s", event.payload, event.user_id, e)
            ack_text, alert = e.message, True
        except ExternalServiceError as e:
            self._logger.warning("Staff press %r by %s failed: %s", event.payload, event.user_id, e)
            ack_text, alert = self._messages.retry, True
        except ShopError as e:
            ack_text, alert = e.message, True
        except Exception:
            self._logger.exception("Error resolving staff press %r", event.payload)
            ack_text, alert = self._messages.retry, True
        finally:
            if event.interaction_id:
                try:
                    await self._gateway.acknowledge(event.interaction_id, text=ack_text, alert=alert)
                except ExternalServiceError as e:
                    self._logger.debug("Acknowledge failed: %s", e)

    async def resolve(
        self, admin_id: int, chat_id: int, payload: str, message: MessageRef | None = None,
    ) -> str:
        """Authorise ``admin_id`` in ``chat_id`` and apply the action in ``payload``.

        Returns the acknowledgement text; raises a ``ShopError`` on rejection."""
        staff_chat = await self._routing.staff_chat()
        if staff_chat is None or chat_id != staff_chat:
            raise Unauthorized()
        if not await self._admins.is_admin(chat_id, admin_id):
            raise Unauthorized()
        parsed = keyboards.parse_staff_payload(payload)
        if parsed is None:
            raise ValidationError("Unknown action.")
        kind, action, record_id = parsed
        return await self._actions[(kind, action)](record_id, admin_id, message)

    @staticmethod
    def _check(result: TransitionResult, what: str) -> None:
        if result is TransitionResult.NOT_FOUND:
            raise NotFoundError(f"{what} not found.")
        if result is TransitionResult.ALREADY_PROCESSED:
            raise AlreadyProcessed(f"This {what.lower()} has already been processed.")

    # ══════════════════════════════════════════════════════════
    #  Orders
    # ══════════════════════════════════════════════════════════

    async def accept_order(self, order_id: int, admin_id: int, message: MessageRef | None = None) -> str:
        result, order = await self._db.accept_order(order_id, admin_id)
        self._check(result, "Order")
        self.resolved["accepted"] += 1
        self._logger.info(
            "Order %d accepted by %s: +%d coins to %s",
            order_id, admin_id, order["coins"], order["user_id"],
        )
        user = await self._db.get_user(order["user_id"])
        await self._update_order_record(order, user, self._messages.status_accepted, message)
        await self._relocate(self._order_ref(order, message), routing.ORDER_FINISHED_TOPIC)

        plural = self._config.currency.plural
        await self._notify(order["user_id"], self._messages.order_accepted.format(
            coins=order["coins"], plural=plural,
        ))
        await self._notify(
            order["user_id"], self._messages.order_followup, keyboards.redeem_keyboard(),
        )
        return "✅ Order accepted."

    async def decline_order(self, order_id: int, admin_id: int, message: MessageRef | None = None) -> str:
        result, order = await self._db.decline_order(order_id, admin_id)
        self._check(result, "Order")
        self.resolved["declined"] += 1
        self._logger.info("Order %d declined by %s", order_id, admin_id)
        user = await self._db.get_user(order["user_id"])
        await self._update_order_record(order, user, self._messages.status_declined, message)
        await self._notify(order["user_id"], self._messages.order_declined)
        return "❌ Order declined."

    def _order_ref(self, order: dict, message: MessageRef | None) -> MessageRef | None:
        if message is not None:
            return message
        if order.get("proof_chat_id") and order.get("proof_message_id"):
            return MessageRef(order["proof_chat_id"], order["proof_message_id"])
        return None

    async def _update_order_record(
        self, order: dict, user: dict | None, status_label: str, message: MessageRef | None,
    ) -> None:
        ref = self._order_ref(order, message)
        if ref is None:
            return
        caption = self._orders.render_record(order, user, status_label)
        try:
            await self._gateway.edit_caption(ref, caption, keyboard=None, rich=True)
        except ExternalServiceError as e:
            self._logger.warning("Failed to update order %s record: %s", order["order_id"], e)

    # ══════════════════════════════════════════════════════════
    #  Licenses
    # ══════════════════════════════════════════════════════════

    async def activate_license(self, license_id: int, admin_id: int, message: MessageRef | None = None) -> str:
        result, license_row = await self._db.activate_license(license_id, admin_id)
        if result is TransitionResult.INSUFFICIENT_FUNDS:
            available = await self._db.get_balance(license_row["user_id"]) or 0
            raise InsufficientBalance(required=license_row["coins_spent"], available=available)
        self._check(result, "License")
        self.resolved["activated"] += 1
        self._logger.info(
            "License %d activated by %s: -%d coins from %s, expires %s",
            license_id, admin_id, license_row["coins_spent"], license_row["user_id"],
            license_row["expires_at"],
        )
        user = await self._db.get_user(license_row["user_id"])
        await self._update_license_record(license_row, user, self._messages.status_finished, message)
        await self._relocate(self._license_ref(license_row, message), routing.LICENSE_FINISHED_TOPIC)

        await self._notify(license_row["user_id"], self._licenses.render_customer_summary(license_row))
        await self._notify(license_row["user_id"], self._messages.license_followup.format(
            plural=self._config.currency.plural,
        ))
        return "✅ License finished."

    async def decline_license(self, license_id: int, admin_id: int, message: MessageRef | None = None) -> str:
        result, license_row = await self._db.decline_license(license_id, admin_id)
        self._check(result, "License")
        self.resolved["declined"] += 1
        self._logger.info("License %d declined by %s", license_id, admin_id)
        user = await self._db.get_user(license_row["user_id"])
        await self._update_license_record(license_row, user, self._messages.status_declined, message)
        await self._notify(license_row["user_id"], self._messages.license_declined.format(
            email=escape(license_row["email"]), plural=self._config.currency.plural,
        ))
        return "❌ License declined."

    def _license_ref(self, license_row: dict, message: MessageRef | None) -> MessageRef | None:
        if message is not None:
            return message
        if license_row.get("staff_chat_id") and license_row.get("staff_message_id"):
            return MessageRef(license_row["staff_chat_id"], license_row["staff_message_id"])
        return None

    async def _update_license_record(
        self, license_row: dict, user: dict | None, status_label: str, message: MessageRef | None,
    ) -> None:
        ref = self._license_ref(license_row, message)
        if ref is None:
            return
        text = self._licenses.render_record(license_row, user, status_label)
        try:
            await self._gateway.edit_text(ref, text, keyboard=None, rich=True)
        except ExternalServiceError as e:
            self._logger.warning("Failed to update license %s record: %s", license_row["license_id"], e)

    # ══════════════════════════════════════════════════════════
    #  Post-commit Effects
    # ══════════════════════════════════════════════════════════

    async def _relocate(self, ref: MessageRef | None, topic_key: str) -> None:
        """Forward a resolved staff record into its finished-view topic."""
        if ref is None:
            return
        target = await self._routing.optional_target(topic_key)
        if target is None:
            return
        chat_id, thread_id = target
        try:
            await self._gateway.forward_message(ref, chat_id, thread_id=thread_id)
        except ExternalServiceError as e:
            self._logger.warning("Failed to relocate record to %s: %s", topic_key, e)

    async def _notify(self, user_id: int, text: str, keyboard: Keyboard | None = None) -> None:
        try:
            await self._gateway.send_text(user_id, text, keyboard=keyboard, rich=True)
        except ExternalServiceError as e:
            self._logger.warning("Failed to notify customer %s: %s", user_id, e)
