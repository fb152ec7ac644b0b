"""Shared test fixtures for license-shop."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from license_shop import routing
from license_shop.admin_cache import AdminRoleCache
from license_shop.approvals import AdminApprovalProtocol
from license_shop.broadcast import BroadcastController
from license_shop.commands import CommandHandler
from license_shop.config import ShopConfig
from license_shop.database import ShopDatabase
from license_shop.errors import ExternalServiceError
from license_shop.gateway import MessagingGateway, Profile
from license_shop.ledger import CreditLedger
from license_shop.licenses import LicenseWorkflow
from license_shop.models import EventKind, InboundEvent, Keyboard, MessageRef
from license_shop.orders import OrderWorkflow
from license_shop.router import UpdateRouter
from license_shop.session_engine import SessionEngine
from license_shop.sweep import ExpirationSweep

OWNER_ID = 1
ADMIN_ID = 2
CUSTOMER_ID = 100
STAFF_CHAT = -1001234
NEW_CUSTOMER_TOPIC = 10
ORDER_TOPIC = 11
ORDER_FINISHED_TOPIC = 12
LICENSE_TOPIC = 13
LICENSE_FINISHED_TOPIC = 14
LICENSE_EXPIRED_TOPIC = 15


# ── Minimal config dict matching ShopConfig schema ───────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "telegram": {"token": "123:test", "owner_id": OWNER_ID},
        "database": {"path": ":memory:"},
        "currency": {"name": "Coin", "plural": "Coins", "price_unit": "ks"},
        "display": {"timezone": "UTC"},
        "catalog": {
            "plans": [
                {"name": "1Month", "days": 28, "coins": 2, "price": 17000},
                {"name": "3Months", "days": 84, "coins": 6, "price": 45000},
                {"name": "Trial", "days": 7, "coins": 1},
            ],
        },
        "payments": {
            "methods": {"WavePay": "Phone: 0911", "KBZPay": "Phone: 0922"},
            "allow_other": True,
            "contact_handle": "@support",
        },
        "broadcast": {"delay_seconds": 0},
        "profiles": {"refresh_delay_seconds": 0},
        "commands": {"rate_limit_per_minute": 0},
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> ShopConfig:
    """Return a parsed ShopConfig."""
    return ShopConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_shop.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[ShopDatabase, None]:
    """Provide an initialized database with temp file."""
    db = ShopDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Recording gateway ────────────────────────────────────────

class FakeGateway(MessagingGateway):
    """In-memory gateway that records every outbound call.

    ``fail_methods`` makes the named methods raise ``ExternalServiceError``;
    ``fail_chats`` does the same for calls targeting those chat ids.
    Failed calls are not recorded."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.acks: list[dict[str, Any]] = []
        self.admins: dict[int, list[int]] = {STAFF_CHAT: [ADMIN_ID]}
        self.profiles: dict[int, Profile] = {}
        self.fail_methods: set[str] = set()
        self.fail_chats: set[int] = set()
        self.admin_lookups = 0
        self._next_id = 5000

    def _record(self, method: str, chat_id: int | None = None, **kwargs: Any) -> MessageRef:
        if method in self.fail_methods or (chat_id is not None and chat_id in self.fail_chats):
            raise ExternalServiceError()
        self._next_id += 1
        self.calls.append((method, {"chat_id": chat_id, **kwargs}))
        return MessageRef(chat_id=chat_id or 0, message_id=self._next_id)

    # ── inspection helpers ──
    def sent(self, method: str | None = None) -> list[dict[str, Any]]:
        return [kw for m, kw in self.calls if method is None or m == method]

    def texts_to(self, chat_id: int) -> list[str]:
        return [
            kw.get("text") or kw.get("caption") or ""
            for m, kw in self.calls
            if kw.get("chat_id") == chat_id and m in ("send_text", "send_image")
        ]

    def clear(self) -> None:
        self.calls.clear()
        self.acks.clear()

    # ── gateway contract ──
    async def send_text(self, chat_id, text, *, thread_id=None, keyboard=None, rich=False):
        return self._record("send_text", chat_id, text=text, thread_id=thread_id, keyboard=keyboard, rich=rich)

    async def send_image(self, chat_id, image, caption, *, thread_id=None, keyboard=None, rich=False):
        return self._record(
            "send_image", chat_id, image=image, caption=caption, thread_id=thread_id, keyboard=keyboard, rich=rich,
        )

    async def edit_text(self, ref, text, *, keyboard=None, rich=False):
        self._record("edit_text", ref.chat_id, ref=ref, text=text, keyboard=keyboard, rich=rich)

    async def edit_caption(self, ref, caption, *, keyboard=None, rich=False):
        self._record("edit_caption", ref.chat_id, ref=ref, caption=caption, keyboard=keyboard, rich=rich)

    async def edit_media(self, ref, image, caption, *, keyboard=None, rich=False):
        self._record("edit_media", ref.chat_id, ref=ref, image=image, caption=caption, keyboard=keyboard, rich=rich)

    async def delete_message(self, ref):
        self._record("delete_message", ref.chat_id, ref=ref)

    async def forward_message(self, ref, chat_id, *, thread_id=None):
        return self._record("forward_message", chat_id, ref=ref, thread_id=thread_id)

    async def copy_message(self, ref, chat_id, *, thread_id=None):
        return self._record("copy_message", chat_id, ref=ref, thread_id=thread_id)

    async def list_administrators(self, chat_id):
        if "list_administrators" in self.fail_methods:
            raise ExternalServiceError()
        self.admin_lookups += 1
        return list(self.admins.get(chat_id, []))

    async def acknowledge(self, interaction_id, *, text=None, alert=False):
        if "acknowledge" in self.fail_methods:
            raise ExternalServiceError()
        self.acks.append({"id": interaction_id, "text": text, "alert": alert})

    async def get_profile(self, user_id):
        if user_id not in self.profiles:
            raise ExternalServiceError()
        return self.profiles[user_id]


def keyboard_payloads(keyboard: Keyboard | None) -> list[str]:
    return [b.payload for row in keyboard or [] for b in row]


# ── Event factories ──────────────────────────────────────────

_message_ids = iter(range(1, 1_000_000))


def make_event(kind: EventKind, user_id: int = CUSTOMER_ID, chat_id: int | None = None, **kwargs) -> InboundEvent:
    chat_id = user_id if chat_id is None else chat_id
    kwargs.setdefault("first_name", "Alice")
    kwargs.setdefault("username", "alice")
    kwargs.setdefault("private", chat_id == user_id)
    if kind is not EventKind.BUTTON:
        kwargs.setdefault("message", MessageRef(chat_id, next(_message_ids)))
    return InboundEvent(kind=kind, user_id=user_id, chat_id=chat_id, **kwargs)


def command(text: str, user_id: int = CUSTOMER_ID, **kwargs) -> InboundEvent:
    return make_event(EventKind.COMMAND, user_id, text=text, **kwargs)


def text(body: str, user_id: int = CUSTOMER_ID, **kwargs) -> InboundEvent:
    return make_event(EventKind.TEXT, user_id, text=body, **kwargs)


def image(ref: str = "photo-file-id", user_id: int = CUSTOMER_ID, **kwargs) -> InboundEvent:
    return make_event(EventKind.IMAGE, user_id, image_ref=ref, message_is_image=True, **kwargs)


def press(payload: str, user_id: int = CUSTOMER_ID, **kwargs) -> InboundEvent:
    chat_id = kwargs.get("chat_id", user_id)
    kwargs.setdefault("message", MessageRef(chat_id, next(_message_ids)))
    kwargs.setdefault("interaction_id", f"cb-{next(_message_ids)}")
    return make_event(EventKind.BUTTON, user_id, payload=payload, **kwargs)


# ── Component fixtures ───────────────────────────────────────

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def staff_routing(database: ShopDatabase) -> routing.StaffRouting:
    return routing.StaffRouting(database)


@pytest_asyncio.fixture
async def configured(database: ShopDatabase) -> ShopDatabase:
    """Database with the staff group and every topic configured."""
    for key, value in {
        routing.GROUP_ID: STAFF_CHAT,
        routing.NEW_CUSTOMER_TOPIC: NEW_CUSTOMER_TOPIC,
        routing.ORDER_TOPIC: ORDER_TOPIC,
        routing.ORDER_FINISHED_TOPIC: ORDER_FINISHED_TOPIC,
        routing.LICENSE_TOPIC: LICENSE_TOPIC,
        routing.LICENSE_FINISHED_TOPIC: LICENSE_FINISHED_TOPIC,
        routing.LICENSE_EXPIRED_TOPIC: LICENSE_EXPIRED_TOPIC,
    }.items():
        await database.set_setting(key, str(value))
    return database


@pytest.fixture
def ledger(database: ShopDatabase) -> CreditLedger:
    return CreditLedger(database, logging.getLogger("test"))


@pytest.fixture
def admin_cache(gateway: FakeGateway) -> AdminRoleCache:
    return AdminRoleCache(gateway, ttl_seconds=300, logger=logging.getLogger("test"))


@pytest.fixture
def orders(sample_config, database, gateway, staff_routing) -> OrderWorkflow:
    return OrderWorkflow(sample_config, database, gateway, staff_routing, logging.getLogger("test"))


@pytest.fixture
def licenses(sample_config, database, gateway, ledger, staff_routing) -> LicenseWorkflow:
    return LicenseWorkflow(sample_config, database, gateway, ledger, staff_routing, logging.getLogger("test"))


@pytest.fixture
def engine(sample_config, database, gateway, orders, licenses, staff_routing) -> SessionEngine:
    return SessionEngine(
        sample_config, database, gateway, orders, licenses, staff_routing, logging.getLogger("test"),
    )


@pytest.fixture
def approvals(sample_config, database, gateway, admin_cache, staff_routing, orders, licenses) -> AdminApprovalProtocol:
    return AdminApprovalProtocol(
        sample_config, database, gateway, admin_cache, staff_routing, orders, licenses,
        logging.getLogger("test"),
    )


@pytest.fixture
def broadcast(sample_config, database, gateway) -> BroadcastController:
    return BroadcastController(sample_config, database, gateway, logging.getLogger("test"))


@pytest.fixture
def commands(sample_config, database, gateway, ledger, admin_cache, staff_routing, broadcast) -> CommandHandler:
    return CommandHandler(
        sample_config, database, gateway, ledger, admin_cache, staff_routing, broadcast,
        logging.getLogger("test"),
    )


@pytest.fixture
def router(sample_config, database, gateway, engine, commands, approvals, broadcast, orders) -> UpdateRouter:
    return UpdateRouter(
        sample_config, database, gateway, engine, commands, approvals, broadcast, orders,
        logging.getLogger("test"),
    )


@pytest.fixture
def sweep(sample_config, database, gateway, licenses, staff_routing) -> ExpirationSweep:
    return ExpirationSweep(sample_config, database, gateway, licenses, staff_routing, logging.getLogger("test"))


async def seed_user(db: ShopDatabase, user_id: int = CUSTOMER_ID, balance: int = 0, **kwargs) -> dict:
    """Create a user and credit ``balance`` coins."""
    await db.get_or_create_user(user_id, kwargs.get("first_name", "Alice"), kwargs.get("username", "alice"))
    if balance:
        await db.credit_coins(user_id, balance, "seed")
    return await db.get_user(user_id)
