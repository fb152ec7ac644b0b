"""Domain types: stages, statuses, catalog plans and transport-neutral events."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Stage(str, Enum):
    """Position of a user in the conversation state machine.

    Draft schema per stage (fields in brackets are optional):

    ============================  ==========================================
    idle, menu_shown              {}
    plan_catalog                  [plan, days, coins, price]  (previous pick)
    payment_method                plan, days, coins, price
    awaiting_proof                plan, days, coins, price, method
    awaiting_email                {}
    plan_select                   email, [plan, days, coins]  (previous pick)
    confirm_redeem                email, plan, days, coins
    awaiting_promo_image          {}
    ============================  ==========================================
    """

    IDLE = "idle"
    MENU_SHOWN = "menu_shown"
    PLAN_CATALOG = "plan_catalog"
    PAYMENT_METHOD = "payment_method"
    AWAITING_PROOF = "awaiting_proof"
    AWAITING_EMAIL = "awaiting_email"
    PLAN_SELECT = "plan_select"
    CONFIRM_REDEEM = "confirm_redeem"
    AWAITING_PROMO_IMAGE = "awaiting_promo_image"

    @classmethod
    def parse(cls, value: str | None) -> Stage:
        """Decode a stored stage; unknown or missing values fall back to idle."""
        try:
            return cls(value)
        except ValueError:
            return cls.IDLE


class EventKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    IMAGE = "image"
    BUTTON = "button"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class LicenseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DECLINED = "declined"
    EXPIRED = "expired"


class BroadcastMode(str, Enum):
    COPY = "copy"
    FORWARD = "forward"


@dataclass(frozen=True)
class Plan:
    """Immutable catalog entry. ``price`` is None for redemption-only plans."""

    name: str
    days: int
    coins: int
    price: int | None = None

    @property
    def purchasable(self) -> bool:
        return self.price is not None

    def purchase_fields(self) -> dict[str, Any]:
        return {"plan": self.name, "days": self.days, "coins": self.coins, "price": self.price}

    def redeem_fields(self) -> dict[str, Any]:
        return {"plan": self.name, "days": self.days, "coins": self.coins}


@dataclass(frozen=True)
class MessageRef:
    chat_id: int
    message_id: int


@dataclass(frozen=True)
class Button:
    text: str
    payload: str


Keyboard = list[list[Button]]


@dataclass(frozen=True)
class InboundEvent:
    """Transport-neutral inbound event (new message or button press)."""

    kind: EventKind
    user_id: int
    chat_id: int
    first_name: str = ""
    username: str | None = None
    private: bool = True
    text: str | None = None
    image_ref: str | None = None
    payload: str | None = None
    message: MessageRef | None = None
    message_is_image: bool = False
    reply_to: MessageRef | None = None
    thread_id: int | None = None
    interaction_id: str | None = None

    @property
    def command(self) -> str | None:
        """Command name without the slash or bot suffix (``/start@bot`` → ``start``)."""
        if self.kind is not EventKind.COMMAND or not self.text:
            return None
        head = self.text.split(None, 1)[0]
        return head.lstrip("/").split("@", 1)[0].lower()

    @property
    def args(self) -> list[str]:
        if not self.text:
            return []
        parts = self.text.split(None, 1)
        return parts[1].split() if len(parts) > 1 else []


@dataclass(frozen=True)
class Prompt:
    """One outbound message produced by a stage handler.

    ``edit`` asks the gateway to rewrite the message the button was pressed
    on rather than sending a new one; ``image`` sends (or swaps to) a photo
    with ``text`` as its caption."""

    text: str
    keyboard: Keyboard | None = None
    image: str | None = None
    edit: bool = False
    rich: bool = False


@dataclass
class Transition:
    """Result of a stage handler: outbound prompts plus the next (stage, draft)."""

    stage: Stage
    draft: dict[str, Any] = field(default_factory=dict)
    prompts: list[Prompt] = field(default_factory=list)
    ack_text: str | None = None
    ack_alert: bool = False
