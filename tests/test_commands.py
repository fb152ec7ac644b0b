"""Tests for the slash-command surface."""

from __future__ import annotations

import asyncio

from license_shop import routing
from license_shop.broadcast import BroadcastController
from license_shop.commands import CommandHandler, _chunk_lines
from license_shop.database import ShopDatabase
from license_shop.gateway import Profile
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    OWNER_ID,
    STAFF_CHAT,
    FakeGateway,
    command,
    seed_user,
)


def staff_command(text: str, user_id: int = ADMIN_ID, **kwargs):
    return command(text, user_id=user_id, chat_id=STAFF_CHAT, **kwargs)


def last_reply(gateway: FakeGateway, chat_id: int) -> str:
    return gateway.texts_to(chat_id)[-1]


class TestCustomerCommands:
    async def test_balance(self, commands: CommandHandler, database: ShopDatabase, gateway: FakeGateway):
        await seed_user(database, balance=4)
        await commands.handle(command("/balance"))
        assert "4 Coins" in last_reply(gateway, CUSTOMER_ID)

    async def test_balance_creates_user(self, commands: CommandHandler, database: ShopDatabase, gateway: FakeGateway):
        await commands.handle(command("/bal"))
        assert "0 Coins" in last_reply(gateway, CUSTOMER_ID)
        assert await database.get_user(CUSTOMER_ID) is not None

    def test_handles(self, commands: CommandHandler):
        assert commands.handles("balance")
        assert commands.handles("connectgp")
        assert not commands.handles("start")
        assert not commands.handles(None)


class TestOwnerRouting:
    async def test_set_routing(self, commands: CommandHandler, database: ShopDatabase, gateway: FakeGateway):
        await commands.handle(command("/connectgp -100777", user_id=OWNER_ID))
        assert await database.get_setting(routing.GROUP_ID) == "-100777"
        assert "Connected Group ID" in last_reply(gateway, OWNER_ID)

    async def test_topic_command(self, commands: CommandHandler, database: ShopDatabase):
        await commands.handle(command("/licenseexpired 42", user_id=OWNER_ID))
        assert await database.get_setting(routing.LICENSE_EXPIRED_TOPIC) == "42"

    async def test_usage_and_bad_number(self, commands: CommandHandler, gateway: FakeGateway):
        await commands.handle(command("/order", user_id=OWNER_ID))
        assert last_reply(gateway, OWNER_ID) == "Usage: /order <id>"
        await commands.handle(command("/order abc", user_id=OWNER_ID))
        assert "not a number" in last_reply(gateway, OWNER_ID)

    async def test_non_owner_ignored(self, commands: CommandHandler, database: ShopDatabase, gateway: FakeGateway):
        await commands.handle(command("/connectgp -1"))
        assert await database.get_setting(routing.GROUP_ID) is None
        assert gateway.calls == []

    async def test_group_change_invalidates_admins(
        self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await commands.handle(staff_command("/users"))
        await commands.handle(command(f"/connectgp {STAFF_CHAT}", user_id=OWNER_ID))
        await commands.handle(staff_command("/users"))
        assert gateway.admin_lookups == 2


class TestLedgerCommands:
    async def test_grant(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured)
        await commands.handle(staff_command(f"/grant {CUSTOMER_ID} 5"))
        assert await configured.get_balance(CUSTOMER_ID) == 5
        assert "New balance: 5" in last_reply(gateway, STAFF_CHAT)
        assert "5 Coins" in last_reply(gateway, CUSTOMER_ID)

    async def test_grant_requires_admin(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured)
        await commands.handle(staff_command(f"/grant {CUSTOMER_ID} 5", user_id=999))
        assert await configured.get_balance(CUSTOMER_ID) == 0
        assert last_reply(gateway, STAFF_CHAT).startswith("⛔")

    async def test_owner_needs_no_staff_chat(self, commands: CommandHandler, database: ShopDatabase):
        await seed_user(database)
        await commands.handle(command(f"/grant {CUSTOMER_ID} 3", user_id=OWNER_ID))
        assert await database.get_balance(CUSTOMER_ID) == 3

    async def test_grant_invalid_amount(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured)
        await commands.handle(staff_command(f"/grant {CUSTOMER_ID} -5"))
        assert await configured.get_balance(CUSTOMER_ID) == 0
        assert "positive" in last_reply(gateway, STAFF_CHAT)

    async def test_grant_unknown_user(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await commands.handle(staff_command("/grant 404 5"))
        assert "Unknown user" in last_reply(gateway, STAFF_CHAT)

    async def test_deduct(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, balance=5)
        await commands.handle(staff_command(f"/deduct {CUSTOMER_ID} 2"))
        assert await configured.get_balance(CUSTOMER_ID) == 3

    async def test_deduct_insufficient(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, balance=1)
        await commands.handle(staff_command(f"/deduct {CUSTOMER_ID} 2"))
        assert await configured.get_balance(CUSTOMER_ID) == 1
        assert last_reply(gateway, STAFF_CHAT).startswith("Failed")


class TestDirectory:
    async def test_users(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, 100, balance=2)
        await seed_user(configured, 101, first_name="<Bob>")
        await commands.handle(staff_command("/users"))
        reply = last_reply(gateway, STAFF_CHAT)
        assert "Users (2)" in reply
        assert "&lt;Bob&gt;" in reply

    async def test_balances(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, 100, balance=2)
        await seed_user(configured, 101, balance=0)
        await commands.handle(staff_command("/balances"))
        assert "1 users, 2 Coins" in last_reply(gateway, STAFF_CHAT)

    def test_chunk_lines(self):
        lines = ["x" * 50] * 10
        chunks = _chunk_lines(lines, limit=120)
        assert all(len(c) <= 120 for c in chunks)
        assert sum(c.count("x" * 50) for c in chunks) == 10

    async def test_dm(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await commands.handle(staff_command(f"/dm {CUSTOMER_ID} Hello there, friend"))
        assert gateway.texts_to(CUSTOMER_ID) == ["Hello there, friend"]
        assert "sent" in last_reply(gateway, STAFF_CHAT)

    async def test_dm_failure_reported(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        gateway.fail_chats.add(CUSTOMER_ID)
        await commands.handle(staff_command(f"/dm {CUSTOMER_ID} hi"))
        assert last_reply(gateway, STAFF_CHAT) == commands._messages.retry

    async def test_refresh_profiles(self, commands: CommandHandler, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, 100)
        await seed_user(configured, 101)
        gateway.profiles[100] = Profile(100, "Alicia", "alicia2")
        await commands.handle(staff_command("/refreshprofiles"))
        await asyncio.gather(*list(commands._tasks))
        assert (await configured.get_user(100))["username"] == "alicia2"
        summary = last_reply(gateway, STAFF_CHAT)
        assert "Updated: 1" in summary and "Failed: 1" in summary


class TestBroadcastCommands:
    async def test_broadcast_in_staff_chat(
        self, commands: CommandHandler, broadcast: BroadcastController, configured: ShopDatabase,
    ):
        await commands.handle(staff_command("/broadcast", thread_id=7))
        job = broadcast.get_job(ADMIN_ID)
        assert job is not None and job.thread_id == 7

    async def test_broadcast_elsewhere_rejected(
        self, commands: CommandHandler, broadcast: BroadcastController, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await commands.handle(command("/forwardbroadcast", user_id=OWNER_ID))
        assert broadcast.get_job(OWNER_ID) is None
        assert "staff group" in last_reply(gateway, OWNER_ID)
