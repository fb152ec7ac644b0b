"""Configuration system for license-shop.

All Pydantic models are defined here with sensible defaults, so a config
file only needs the Telegram token and the owner id to validate.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import Plan


# ═══════════════════════════════════════════════════════════════
#  Core
# ═══════════════════════════════════════════════════════════════

class TelegramConfig(BaseModel):
    token: str = ""
    owner_id: int = 0
    parse_mode: str = "HTML"


class DatabaseConfig(BaseModel):
    path: str = "shop.db"


class CurrencyConfig(BaseModel):
    name: str = "Coin"
    plural: str = "Coins"
    price_unit: str = "ks"


class DisplayConfig(BaseModel):
    timezone: str = "Asia/Yangon"
    datetime_format: str = "%H:%M:%S %d/%m/%y"
    date_format: str = "%d/%m/%Y"


# ═══════════════════════════════════════════════════════════════
#  Catalog & Payments
# ═══════════════════════════════════════════════════════════════

class PlanConfig(BaseModel):
    name: str
    days: int = Field(gt=0)
    coins: int = Field(gt=0)
    price: int | None = Field(default=None, description="None → redemption-only plan")

    def to_plan(self) -> Plan:
        return Plan(name=self.name, days=self.days, coins=self.coins, price=self.price)


def _default_plans() -> list[PlanConfig]:
    return [
        PlanConfig(name="1Month", days=28, coins=2, price=17000),
        PlanConfig(name="3Months", days=84, coins=6, price=45000),
        PlanConfig(name="6Months", days=168, coins=13, price=81000),
        PlanConfig(name="12Months", days=336, coins=26, price=149000),
    ]


class CatalogConfig(BaseModel):
    plans: list[PlanConfig] = Field(default_factory=_default_plans)

    @field_validator("plans")
    @classmethod
    def _unique_names(cls, plans: list[PlanConfig]) -> list[PlanConfig]:
        names = [p.name for p in plans]
        if len(names) != len(set(names)):
            raise ValueError("plan names must be unique")
        # Names travel inside button payloads
        for name in names:
            if ":" in name:
                raise ValueError(f"plan name may not contain ':' ({name})")
        return plans

    def get_plan(self, name: str) -> Plan | None:
        for p in self.plans:
            if p.name == name:
                return p.to_plan()
        return None

    def purchase_plans(self) -> list[Plan]:
        return [p.to_plan() for p in self.plans if p.price is not None]

    def redeem_plans(self) -> list[Plan]:
        return [p.to_plan() for p in self.plans]


class PaymentsConfig(BaseModel):
    methods: dict[str, str] = Field(
        default={
            "WavePay": "Name: Shop Owner\nPhone: 09000000000",
            "KBZPay": "Name: Shop Owner\nPhone: 09000000001",
        },
        description="Method name → payee details shown to the customer",
    )
    allow_other: bool = True
    contact_handle: str = "@shop_support"


class RedemptionConfig(BaseModel):
    fixed_plan: str | None = Field(
        default=None,
        description="When set, a valid email skips plan selection and confirms this plan",
    )


# ═══════════════════════════════════════════════════════════════
#  Staff, Background Tasks & Ops
# ═══════════════════════════════════════════════════════════════

class AdminConfig(BaseModel):
    cache_ttl_seconds: float = 300.0


class SweepConfig(BaseModel):
    interval_seconds: float = 3600.0
    reminder_window_hours: int = 24
    run_on_start: bool = True


class BroadcastConfig(BaseModel):
    delay_seconds: float = 0.05


class ProfilesConfig(BaseModel):
    refresh_delay_seconds: float = 0.1


class CommandsConfig(BaseModel):
    rate_limit_per_minute: int = 30


class MetricsConfig(BaseModel):
    enabled: bool = True
    port: int = 28290


# ═══════════════════════════════════════════════════════════════
#  Message Templates
# ═══════════════════════════════════════════════════════════════

class MessagesConfig(BaseModel):
    """Every customer- and staff-facing text, as ``str.format`` templates."""

    # ── Customer: menu & purchase ────────────────────────────
    welcome: str = (
        "Hello, {name}.\n"
        "Welcome to the license shop.\n\n"
        "Tap (Buy Coins) to purchase {plural}."
    )
    catalog: str = (
        "We offer the best service for your license purchase.\n\n"
        "<b>[How does it work?]</b>\n\n"
        "First buy {plural}. When you want to use a license, send /redeem "
        "and spend your {plural} on a plan.\n\n"
        "Check your balance any time with /balance.\n\n"
        "Pricing and Plans"
    )
    plan_summary: str = (
        "{currency}\n"
        "🛍️: {plan}\n"
        "🗓️: {days} Days\n"
        "🪙: {coins} {plural}\n"
        "💰: {price} {price_unit}\n\n"
        "Choose a payment method.\n"
        "For other payment methods contact {contact}."
    )
    payment_instructions: str = (
        "🛍️: {plan}\n"
        "🗓️: {days} Days\n"
        "🪙: {coins} {plural}\n"
        "💰: {price} {price_unit}\n\n"
        "Transfer exactly {price} {price_unit} to:\n\n"
        "<b>{method}</b>\n"
        "{details}\n\n"
        "Note: write your account name in the transfer note.\n\n"
        "Then send the payment screenshot here."
    )
    payment_other: str = (
        "🛍️: {plan}\n"
        "💰: {price} {price_unit}\n\n"
        "Contact {contact} for payment details, "
        "then send the payment screenshot here."
    )
    proof_received: str = "We are checking your receipt. Please wait a moment."
    proof_failed: str = "Submitting your order failed. Please send the screenshot again."
    proof_expected: str = "Please send the payment screenshot as a photo."

    # ── Customer: redemption ─────────────────────────────────
    email_prompt: str = "Please send your email address."
    email_invalid: str = "That email format is not valid. Please send a correct email."
    plan_select: str = "✉️: {email}\nChoose the plan you want."
    confirm_redeem: str = (
        "License\n"
        "✉️: {email}\n"
        "🛍️: {plan}\n"
        "🪙: {coins} {plural}\n"
        "🗓️: {days} Days\n\n"
        "If you buy now it expires on - {expiry}\n\n"
        "Press Confirm to proceed."
    )
    redeem_submitted: str = "Your license order has been placed. Please wait a moment."

    # ── Customer: notifications ──────────────────────────────
    balance: str = (
        "{plural}\n"
        "🪙: {balance} {plural}\n\n"
        "To buy {plural} press /start."
    )
    order_accepted: str = (
        "{coins} {plural} have been added to your balance.\n\n"
        "Thank you for your purchase!"
    )
    order_followup: str = "To get a license now, press (Redeem)."
    order_declined: str = "Your order has been declined. Please contact admin."
    license_activated: str = (
        "License\n"
        "✉️: {email}\n"
        "🛍️: {plan}\n"
        "🪙: {coins} {plural}\n"
        "🗓️: {days} Days\n"
        "Expire Date - {expiry}"
    )
    license_followup: str = (
        "Thank you for your purchase!\n\n"
        "/balance shows your {plural} balance.\n"
        "/start buys more {plural}.\n"
        "/redeem gets a license."
    )
    license_declined: str = (
        "Your license request for {email} was declined. "
        "No {plural} were deducted. Please contact admin."
    )
    license_reminder: str = (
        "⏰ Reminder: your {plan} license for {email} expires on {expiry}."
    )
    license_expired: str = (
        "⌛ Your {plan} license for {email} has expired.\n"
        "Press (Renew) to get a new one."
    )

    # ── Customer: errors ─────────────────────────────────────
    start_over: str = "An error occurred. Please start over with /start."
    retry: str = "A temporary error occurred. Please try again."
    rate_limited: str = "⏳ Slow down! Try again in a moment."

    # ── Owner ────────────────────────────────────────────────
    promo_prompt: str = "Send the promotional image for the plan catalog."
    promo_saved: str = "✅ Promotional image updated."
    setting_saved: str = "✅ {label} set to {value}."
    setting_usage: str = "Usage: /{command} <id>"

    # ── Staff records ────────────────────────────────────────
    new_customer: str = (
        "New Customer Alert\n"
        "🚹: {name}\n"
        "👤: {handle}\n"
        "🔗: <a href=\"tg://user?id={user_id}\">Link to Profile</a>\n"
        "🆔: {user_id}\n"
        "🗓️: {time}"
    )
    order_record: str = (
        "Order ({status})\n"
        "🚹: {name}\n"
        "🔗: <a href=\"tg://user?id={user_id}\">Link to Profile</a>\n"
        "👤: {handle}\n"
        "🆔: {user_id}\n\n"
        "Order Info\n"
        "🛍️: {plan}\n"
        "🗓️: {days} Days\n"
        "🪙: {coins} {plural}\n"
        "💰: {price} {price_unit}\n"
        "💳: {method}\n"
        "🗓️: {created} (Order Start)"
    )
    license_record: str = (
        "License ({status})\n"
        "🚹: {name}\n"
        "🔗: <a href=\"tg://user?id={user_id}\">Link to Profile</a>\n"
        "👤: {handle}\n"
        "🆔: {user_id}\n\n"
        "✉️: {email}\n"
        "🛍️: {plan}\n"
        "🪙: {coins} {plural}\n"
        "🗓️: {days} Days\n"
        "⌛: {expiry} (Expire Date)"
    )
    status_pending: str = "Pending"
    status_accepted: str = "✅ Accepted"
    status_declined: str = "❌ Declined"
    status_finished: str = "✅ Finished"
    status_expired: str = "⌛ Expired"

    # ── Broadcast ────────────────────────────────────────────
    broadcast_started: str = (
        "📣 Broadcast ({mode}) started.\n"
        "Send the messages to broadcast here, then press Send."
    )
    broadcast_collected: str = "Collected {count} message(s)."
    broadcast_sending: str = "📤 Sending {count} message(s) to {users} user(s)..."
    broadcast_summary: str = "📣 Broadcast finished.\n✅ Success: {success}\n❌ Failed: {failed}"
    broadcast_cancelled: str = "Broadcast cancelled."


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class ShopConfig(BaseModel):
    """Full shop config."""

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    redemption: RedemptionConfig = Field(default_factory=RedemptionConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    profiles: ProfilesConfig = Field(default_factory=ProfilesConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> ShopConfig:
    """Load and validate YAML config file into ShopConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return ShopConfig(**raw)
