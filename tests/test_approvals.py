"""Tests for the admin approval protocol.

Covers:
- Accept credits exactly once; repeats are rejected with no second credit
- Concurrent presses on one record apply once
- Finish debits; insufficient balance leaves the license pending
- Declines move no coins
- Authorisation: staff chat + administrator only
- Post-commit effects never undo a committed transition
"""

from __future__ import annotations

import asyncio

import pytest

from license_shop.approvals import AdminApprovalProtocol
from license_shop.database import ShopDatabase
from license_shop.errors import (
    AlreadyProcessed,
    InsufficientBalance,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from license_shop.models import MessageRef
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    LICENSE_FINISHED_TOPIC,
    ORDER_FINISHED_TOPIC,
    STAFF_CHAT,
    FakeGateway,
    keyboard_payloads,
    press,
    seed_user,
)

RECORD = MessageRef(STAFF_CHAT, 777)


async def new_order(db: ShopDatabase, coins: int = 2) -> int:
    return await db.create_order(CUSTOMER_ID, "1Month", 28, coins, 17000, "WavePay")


async def new_license(db: ShopDatabase, coins: int = 2) -> int:
    return await db.create_license(CUSTOMER_ID, "a@b.co", "1Month", coins, 28)


def staff_press(payload: str, user_id: int = ADMIN_ID):
    return press(payload, user_id=user_id, chat_id=STAFF_CHAT, private=False, message=RECORD)


class TestOrderApproval:
    async def test_accept_credits_and_notifies(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await seed_user(configured)
        order_id = await new_order(configured)
        ack = await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}", RECORD)
        assert ack == "✅ Order accepted."
        assert await configured.get_balance(CUSTOMER_ID) == 2

        edit = gateway.sent("edit_caption")[0]
        assert edit["ref"] == RECORD and edit["keyboard"] is None
        assert "Accepted" in edit["caption"]
        forward = gateway.sent("forward_message")[0]
        assert forward["thread_id"] == ORDER_FINISHED_TOPIC
        customer = [kw for kw in gateway.sent("send_text") if kw["chat_id"] == CUSTOMER_ID]
        assert "2 Coins" in customer[0]["text"]
        assert keyboard_payloads(customer[1]["keyboard"]) == ["redeem"]

    async def test_double_accept_rejected(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        await seed_user(configured)
        order_id = await new_order(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}")
        with pytest.raises(AlreadyProcessed):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}")
        assert await configured.get_balance(CUSTOMER_ID) == 2

    async def test_n_orders_credit_n_times(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        await seed_user(configured)
        for _ in range(4):
            order_id = await new_order(configured, coins=3)
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}")
        assert await configured.get_balance(CUSTOMER_ID) == 12

    async def test_concurrent_presses_apply_once(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        await seed_user(configured)
        order_id = await new_order(configured)
        results = await asyncio.gather(
            *(approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}") for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, str) for r in results) == 1
        assert sum(isinstance(r, AlreadyProcessed) for r in results) == 4
        assert await configured.get_balance(CUSTOMER_ID) == 2

    async def test_decline_moves_no_coins(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await seed_user(configured)
        order_id = await new_order(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:decline:{order_id}", RECORD)
        assert await configured.get_balance(CUSTOMER_ID) == 0
        assert (await configured.get_order(order_id))["status"] == "declined"
        assert gateway.texts_to(CUSTOMER_ID) == [approvals._messages.order_declined]
        with pytest.raises(AlreadyProcessed):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}")

    async def test_unknown_order(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        with pytest.raises(NotFoundError):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, "order:accept:999")

    async def test_notification_failure_keeps_credit(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await seed_user(configured)
        order_id = await new_order(configured)
        gateway.fail_chats.add(CUSTOMER_ID)
        gateway.fail_methods.add("edit_caption")
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"order:accept:{order_id}", RECORD)
        assert await configured.get_balance(CUSTOMER_ID) == 2
        assert (await configured.get_order(order_id))["status"] == "accepted"


class TestLicenseApproval:
    async def test_finish_debits(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        """Balance 5, license of 2 → 3."""
        await seed_user(configured, balance=5)
        license_id = await new_license(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:accept:{license_id}", RECORD)
        assert await configured.get_balance(CUSTOMER_ID) == 3
        assert (await configured.get_license(license_id))["status"] == "active"
        assert "Finished" in gateway.sent("edit_text")[0]["text"]
        assert gateway.sent("forward_message")[0]["thread_id"] == LICENSE_FINISHED_TOPIC
        assert "a@b.co" in gateway.texts_to(CUSTOMER_ID)[0]

    async def test_finish_with_exact_balance(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        """Balance 2, license of 2 → 0."""
        await seed_user(configured, balance=2)
        license_id = await new_license(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:accept:{license_id}")
        assert await configured.get_balance(CUSTOMER_ID) == 0
        assert (await configured.get_license(license_id))["status"] == "active"

    async def test_finish_insufficient(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        """Balance 1, license of 2 → rejected, balance still 1, license still pending."""
        await seed_user(configured, balance=1)
        license_id = await new_license(configured)
        with pytest.raises(InsufficientBalance) as exc:
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:accept:{license_id}")
        assert (exc.value.required, exc.value.available) == (2, 1)
        assert await configured.get_balance(CUSTOMER_ID) == 1
        assert (await configured.get_license(license_id))["status"] == "pending"

    async def test_double_finish(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        await seed_user(configured, balance=10)
        license_id = await new_license(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:accept:{license_id}")
        with pytest.raises(AlreadyProcessed):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:accept:{license_id}")
        assert await configured.get_balance(CUSTOMER_ID) == 8

    async def test_decline(self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway):
        await seed_user(configured, balance=5)
        license_id = await new_license(configured)
        await approvals.resolve(ADMIN_ID, STAFF_CHAT, f"license:decline:{license_id}")
        assert await configured.get_balance(CUSTOMER_ID) == 5
        assert (await configured.get_license(license_id))["status"] == "declined"
        assert "a@b.co" in gateway.texts_to(CUSTOMER_ID)[0]


class TestAuthorisation:
    async def test_non_admin_rejected(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        await seed_user(configured)
        order_id = await new_order(configured)
        with pytest.raises(Unauthorized):
            await approvals.resolve(999, STAFF_CHAT, f"order:accept:{order_id}")
        assert (await configured.get_order(order_id))["status"] == "pending"

    async def test_wrong_chat_rejected(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        with pytest.raises(Unauthorized):
            await approvals.resolve(ADMIN_ID, -5555, "order:accept:1")

    async def test_no_staff_chat_configured(self, approvals: AdminApprovalProtocol, database: ShopDatabase):
        with pytest.raises(Unauthorized):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, "order:accept:1")

    async def test_malformed_payload(self, approvals: AdminApprovalProtocol, configured: ShopDatabase):
        with pytest.raises(ValidationError):
            await approvals.resolve(ADMIN_ID, STAFF_CHAT, "order:refund:1")


class TestHandlePress:
    async def test_acknowledges_once(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await seed_user(configured)
        order_id = await new_order(configured)
        event = staff_press(f"order:accept:{order_id}")
        await approvals.handle_press(event)
        assert gateway.acks == [{"id": event.interaction_id, "text": "✅ Order accepted.", "alert": False}]
        assert approvals.resolved["accepted"] == 1

    async def test_rejection_alerts(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        await seed_user(configured)
        order_id = await new_order(configured)
        await approvals.handle_press(staff_press(f"order:accept:{order_id}"))
        await approvals.handle_press(staff_press(f"order:accept:{order_id}"))
        await approvals.handle_press(staff_press(f"order:accept:{order_id}", user_id=999))
        assert [a["alert"] for a in gateway.acks] == [False, True, True]
        assert "already" in gateway.acks[1]["text"]
        assert approvals.resolved["rejected"] == 2
        assert await configured.get_balance(CUSTOMER_ID) == 2

    async def test_admin_lookup_failure_asks_retry(
        self, approvals: AdminApprovalProtocol, configured: ShopDatabase, gateway: FakeGateway,
    ):
        gateway.fail_methods.add("list_administrators")
        await approvals.handle_press(staff_press("order:accept:1"))
        assert gateway.acks[0]["text"] == approvals._messages.retry
