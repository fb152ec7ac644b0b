"""Inbound event routing.

Every transport event lands in ``UpdateRouter.dispatch``:

- staff buttons (order/license actions) → ``AdminApprovalProtocol``
- broadcast Send/Cancel buttons → ``BroadcastController``
- slash commands → ``CommandHandler`` or, for conversation commands, the
  session engine
- other private messages and buttons → ``SessionEngine``
- other group messages → broadcast collection
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from . import keyboards
from .errors import ExternalServiceError
from .models import EventKind, InboundEvent
from .session_engine import ENGINE_COMMANDS

if TYPE_CHECKING:
    from .approvals import AdminApprovalProtocol
    from .broadcast import BroadcastController
    from .commands import CommandHandler
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .orders import OrderWorkflow
    from .session_engine import SessionEngine

_CLEANUP_EVERY = 500


class RateLimiter:
    """Sliding-window rate limiter for inbound events per user."""

    def __init__(self, max_per_minute: int = 30) -> None:
        self._max = max_per_minute
        self._counters: dict[int, list[float]] = {}

    def check(self, user_id: int) -> bool:
        """Return True if the event should be allowed."""
        if self._max <= 0:
            return True
        now = datetime.now(timezone.utc).timestamp()
        window = self._counters.get(user_id, [])

        # Prune old entries
        cutoff = now - 60
        window = [t for t in window if t > cutoff]

        if len(window) >= self._max:
            self._counters[user_id] = window
            return False

        window.append(now)
        self._counters[user_id] = window
        return True

    def cleanup(self) -> None:
        """Remove stale entries (call periodically)."""
        now = datetime.now(timezone.utc).timestamp()
        cutoff = now - 120
        stale = [k for k, v in self._counters.items() if all(t < cutoff for t in v)]
        for k in stale:
            del self._counters[k]


class UpdateRouter:
    """Routes transport-neutral events to the component that owns them."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        engine: SessionEngine,
        commands: CommandHandler,
        approvals: AdminApprovalProtocol,
        broadcast: BroadcastController,
        orders: OrderWorkflow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._gateway = gateway
        self._engine = engine
        self._commands = commands
        self._approvals = approvals
        self._broadcast = broadcast
        self._orders = orders
        self._logger = logger or logging.getLogger("shop.router")
        self._rate_limiter = RateLimiter(max_per_minute=config.commands.rate_limit_per_minute)
        self.events_received = 0
        self.events_throttled = 0

    async def dispatch(self, event: InboundEvent) -> None:
        self.events_received += 1
        if self.events_received % _CLEANUP_EVERY == 0:
            self._rate_limiter.cleanup()

        # Staff-chat messages only feed broadcast collection and are never throttled
        if event.kind not in (EventKind.BUTTON, EventKind.COMMAND) and not event.private:
            self._broadcast.collect(event)
            return

        if not self._rate_limiter.check(event.user_id):
            self.events_throttled += 1
            await self._throttled(event)
            return

        if event.kind is EventKind.BUTTON:
            await self._dispatch_button(event)
        elif event.kind is EventKind.COMMAND:
            await self._dispatch_command(event)
        else:
            await self._to_engine(event)

    async def _dispatch_button(self, event: InboundEvent) -> None:
        payload = event.payload or ""
        if payload in (keyboards.BROADCAST_SEND, keyboards.BROADCAST_CANCEL):
            await self._broadcast.handle_control(event)
        elif keyboards.parse_staff_payload(payload) is not None:
            await self._approvals.handle_press(event)
        elif event.private:
            await self._to_engine(event)
        else:
            await self._acknowledge(event)

    async def _dispatch_command(self, event: InboundEvent) -> None:
        command = event.command
        if self._commands.handles(command):
            await self._commands.handle(event)
        elif command in ENGINE_COMMANDS and event.private:
            await self._to_engine(event)
        else:
            self._logger.debug("Ignoring /%s from %s", command, event.user_id)

    async def _to_engine(self, event: InboundEvent) -> None:
        user = None
        try:
            user, created = await self._db.get_or_create_user(
                event.user_id, event.first_name, event.username,
            )
            if created:
                self._logger.info("New customer %s (%s)", event.user_id, event.first_name)
                await self._orders.announce_new_customer(user)
        except Exception:
            self._logger.exception("Error registering user %s", event.user_id)
        await self._engine.process(event, user)

    async def _throttled(self, event: InboundEvent) -> None:
        text = self._config.messages.rate_limited
        try:
            if event.kind is EventKind.BUTTON:
                await self._acknowledge(event, text)
            elif event.private:
                await self._gateway.send_text(event.chat_id, text)
        except ExternalServiceError as e:
            self._logger.debug("Rate-limit notice to %s failed: %s", event.user_id, e)

    async def _acknowledge(self, event: InboundEvent, text: str | None = None) -> None:
        if not event.interaction_id:
            return
        try:
            await self._gateway.acknowledge(event.interaction_id, text=text)
        except ExternalServiceError as e:
            self._logger.debug("Acknowledge failed: %s", e)
