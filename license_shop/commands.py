"""Command surface outside the conversation engine.

Customer: ``/balance``. Staff (administrators of the staff group, or the
owner): ledger adjustments, user directory, direct messages, profile
refresh and broadcasts. Owner only: routing-id assignment. ``/start``,
``/redeem`` and ``/setphoto`` belong to the session engine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Union

from . import routing
from .errors import ExternalServiceError, InsufficientBalance, ShopError, Unauthorized, ValidationError
from .gateway import Profile
from .models import BroadcastMode, InboundEvent
from .pacing import PacedRunner
from .utils import display_handle, escape

if TYPE_CHECKING:
    from .admin_cache import AdminRoleCache
    from .broadcast import BroadcastController
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .ledger import CreditLedger

Reply = Union[str, list[str], None]
CommandFn = Callable[[InboundEvent, list[str]], Awaitable[Reply]]

# Telegram caps a message at 4096 characters
_MAX_REPLY = 3900


def _chunk_lines(lines: list[str], limit: int = _MAX_REPLY) -> list[str]:
    chunks: list[str] = []
    current = ""
    for line in lines:
        if current and len(current) + len(line) + 1 > limit:
            chunks.append(current)
            current = ""
        current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"'{value}' is not a number.") from None


class CommandHandler:
    """Dispatches slash commands that do not move the conversation stage."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        ledger: CreditLedger,
        admin_cache: AdminRoleCache,
        staff_routing: routing.StaffRouting,
        broadcast: BroadcastController,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._messages = config.messages
        self._db = database
        self._gateway = gateway
        self._ledger = ledger
        self._admins = admin_cache
        self._routing = staff_routing
        self._broadcast = broadcast
        self._logger = logger or logging.getLogger("shop.commands")
        self._plural = config.currency.plural
        self._tasks: set[asyncio.Task] = set()
        self._refresh_runner: PacedRunner | None = None

        self._command_map: dict[str, CommandFn] = {
            "balance": self._cmd_balance,
            "bal": self._cmd_balance,
        }
        self._staff_command_map: dict[str, CommandFn] = {
            "grant": self._cmd_grant,
            "deduct": self._cmd_deduct,
            "users": self._cmd_users,
            "balances": self._cmd_balances,
            "dm": self._cmd_dm,
            "refreshprofiles": self._cmd_refresh_profiles,
            "broadcast": self._cmd_broadcast,
            "forwardbroadcast": self._cmd_forward_broadcast,
        }
        self._owner_command_map: dict[str, CommandFn] = {
            name: self._cmd_set_routing for name in routing.ROUTING_COMMANDS
        }

    def handles(self, command: str | None) -> bool:
        return bool(command) and (
            command in self._command_map
            or command in self._staff_command_map
            or command in self._owner_command_map
        )

    async def handle(self, event: InboundEvent) -> None:
        """Run a command and reply in the chat (and topic) it came from."""
        command = event.command
        try:
            if command in self._owner_command_map:
                if event.user_id != self._config.telegram.owner_id:
                    return
                reply = await self._owner_command_map[command](event, event.args)
            elif command in self._staff_command_map:
                await self._require_staff(event.user_id)
                reply = await self._staff_command_map[command](event, event.args)
            elif command in self._command_map:
                reply = await self._command_map[command](event, event.args)
            else:
                return
        except ShopError as e:
            if isinstance(e, ExternalServiceError):
                self._logger.warning("Command /%s from %s failed: %s", command, event.user_id, e)
            reply = e.message
        except Exception:
            self._logger.exception("Command handler error for %s/%s", event.user_id, command)
            reply = "❌ Something went wrong processing your command. Please try again."

        await self._reply(event, reply)

    async def _reply(self, event: InboundEvent, reply: Reply) -> None:
        if not reply:
            return
        for text in [reply] if isinstance(reply, str) else reply:
            try:
                await self._gateway.send_text(event.chat_id, text, thread_id=event.thread_id, rich=True)
            except ExternalServiceError as e:
                self._logger.warning("Failed to reply to %s: %s", event.user_id, e)
                return

    async def _require_staff(self, user_id: int) -> None:
        """Owner, or an administrator of the connected staff group."""
        if user_id == self._config.telegram.owner_id:
            return
        staff_chat = await self._routing.staff_chat()
        if staff_chat is None or not await self._admins.is_admin(staff_chat, user_id):
            raise Unauthorized("⛔ This command requires admin privileges.")

    async def stop(self) -> None:
        if self._refresh_runner is not None:
            self._refresh_runner.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ══════════════════════════════════════════════════════════
    #  Customer Commands
    # ══════════════════════════════════════════════════════════

    async def _cmd_balance(self, event: InboundEvent, args: list[str]) -> str:
        await self._db.get_or_create_user(event.user_id, event.first_name, event.username)
        balance = await self._ledger.balance(event.user_id)
        return self._messages.balance.format(plural=self._plural, balance=balance)

    # ══════════════════════════════════════════════════════════
    #  Owner: Routing
    # ══════════════════════════════════════════════════════════

    async def _cmd_set_routing(self, event: InboundEvent, args: list[str]) -> str:
        command = event.command
        key, label = routing.ROUTING_COMMANDS[command]
        if not args:
            return self._messages.setting_usage.format(command=command)
        value = _parse_int(args[0])
        await self._db.set_setting(key, str(value))
        if key == routing.GROUP_ID:
            self._admins.invalidate()
        self._logger.info("Setting %s = %s (by %s)", key, value, event.user_id)
        return self._messages.setting_saved.format(label=label, value=value)

    # ══════════════════════════════════════════════════════════
    #  Staff: Ledger Adjustments
    # ══════════════════════════════════════════════════════════

    async def _cmd_grant(self, event: InboundEvent, args: list[str]) -> str:
        """Staff: credit coins to a user."""
        if len(args) < 2:
            return "Usage: /grant <user_id> <coins>"
        target, amount = _parse_int(args[0]), _parse_int(args[1])
        balance = await self._ledger.credit(
            target, amount, tx_type="admin_grant", reason=f"Admin grant by {event.user_id}",
        )
        await self._notify(target, f"🪙 {amount} {self._plural} have been added to your balance by an admin.")
        return f"Granted {amount} {self._plural} to {target}. New balance: {balance} {self._plural}"

    async def _cmd_deduct(self, event: InboundEvent, args: list[str]) -> str:
        """Staff: debit coins from a user."""
        if len(args) < 2:
            return "Usage: /deduct <user_id> <coins>"
        target, amount = _parse_int(args[0]), _parse_int(args[1])
        try:
            balance = await self._ledger.debit(
                target, amount, tx_type="admin_deduct", reason=f"Admin deduction by {event.user_id}",
            )
        except InsufficientBalance as e:
            return f"Failed: {target} has insufficient balance ({e.available} {self._plural})."
        await self._notify(target, f"🪙 {amount} {self._plural} were deducted from your balance by an admin.")
        return f"Deducted {amount} {self._plural} from {target}. New balance: {balance} {self._plural}"

    async def _notify(self, user_id: int, text: str) -> None:
        try:
            await self._gateway.send_text(user_id, text)
        except ExternalServiceError as e:
            self._logger.warning("Failed to notify %s: %s", user_id, e)

    # ══════════════════════════════════════════════════════════
    #  Staff: User Directory
    # ══════════════════════════════════════════════════════════

    async def _cmd_users(self, event: InboundEvent, args: list[str]) -> list[str]:
        users = await self._db.list_users()
        if not users:
            return ["No users yet."]
        lines = [f"👥 Users ({len(users)})"]
        for u in users:
            lines.append(
                f"{u['user_id']} · {escape(u.get('first_name') or 'N/A')} · "
                f"{escape(display_handle(u.get('username')))} · {u['coin_balance']} {self._plural}"
            )
        return _chunk_lines(lines)

    async def _cmd_balances(self, event: InboundEvent, args: list[str]) -> list[str]:
        rows = await self._db.list_balances()
        if not rows:
            return [f"No user holds any {self._plural}."]
        total = sum(r["coin_balance"] for r in rows)
        lines = [f"🪙 Balances ({len(rows)} users, {total} {self._plural})"]
        for r in rows:
            lines.append(
                f"{r['user_id']} · {escape(r.get('first_name') or 'N/A')} · {r['coin_balance']} {self._plural}"
            )
        return _chunk_lines(lines)

    async def _cmd_dm(self, event: InboundEvent, args: list[str]) -> str:
        parts = (event.text or "").split(None, 2)
        if len(parts) < 3:
            return "Usage: /dm <user_id> <text>"
        target = _parse_int(parts[1])
        await self._gateway.send_text(target, parts[2])
        self._logger.info("Direct message to %s sent by %s", target, event.user_id)
        return f"✅ Message sent to {target}."

    async def _cmd_refresh_profiles(self, event: InboundEvent, args: list[str]) -> str:
        if self._refresh_runner is not None and not self._refresh_runner.stopped:
            return "A profile refresh is already running."
        user_ids = await self._db.list_user_ids()
        runner = PacedRunner(self._config.profiles.refresh_delay_seconds, logger=self._logger)
        self._refresh_runner = runner
        task = asyncio.create_task(self._refresh_profiles(event, runner, user_ids))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return f"🔄 Refreshing {len(user_ids)} profile(s)..."

    async def _refresh_profiles(self, event: InboundEvent, runner: PacedRunner, user_ids: list[int]) -> None:
        async def refresh(user_id: int) -> None:
            profile: Profile = await self._gateway.get_profile(user_id)
            await self._db.update_profile(user_id, profile.first_name, profile.username)

        try:
            result = await runner.run(user_ids, refresh)
            self._logger.info("Profile refresh: %d updated, %d failed", result.success, result.failed)
            await self._reply(event, f"✅ Profiles refreshed.\nUpdated: {result.success}\nFailed: {result.failed}")
        except Exception:
            self._logger.exception("Profile refresh crashed")
        finally:
            runner.stop()

    # ══════════════════════════════════════════════════════════
    #  Staff: Broadcast
    # ══════════════════════════════════════════════════════════

    async def _start_broadcast(self, event: InboundEvent, mode: BroadcastMode) -> None:
        staff_chat = await self._routing.staff_chat()
        if staff_chat is None or event.chat_id != staff_chat:
            raise ValidationError("Run this command in the staff group.")
        await self._broadcast.start(event.user_id, event.chat_id, event.thread_id, mode)

    async def _cmd_broadcast(self, event: InboundEvent, args: list[str]) -> None:
        await self._start_broadcast(event, BroadcastMode.COPY)

    async def _cmd_forward_broadcast(self, event: InboundEvent, args: list[str]) -> None:
        await self._start_broadcast(event, BroadcastMode.FORWARD)
