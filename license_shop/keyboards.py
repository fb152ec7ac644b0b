"""Inline keyboard layouts and the button payload grammar.

Customer payloads::

    buy                 open the plan catalog from the menu
    plan:<name>         pick a plan in the purchase catalog
    pay:<method>        pick a payment method
    pay_other           pay by another method (no method stored)
    back                step back along the current stage's back edge
    redeem              start (or renew) a redemption
    pick:<name>         pick a plan to redeem
    confirm             confirm the redemption

Staff payloads::

    order:accept:<id>   order:decline:<id>
    license:accept:<id> license:decline:<id>
    broadcast:send      broadcast:cancel
"""

from __future__ import annotations

from .models import Button, Keyboard, Plan

BUY = "buy"
BACK = "back"
REDEEM = "redeem"
CONFIRM = "confirm"
PAY_OTHER = "pay_other"
PLAN_PREFIX = "plan:"
PAY_PREFIX = "pay:"
PICK_PREFIX = "pick:"
BROADCAST_SEND = "broadcast:send"
BROADCAST_CANCEL = "broadcast:cancel"

BACK_LABEL = "⬅️ Back"
SELECTED_MARK = "✔️ "


def _rows(buttons: list[Button], width: int = 2) -> Keyboard:
    return [buttons[i:i + width] for i in range(0, len(buttons), width)]


def menu_keyboard() -> Keyboard:
    return [[Button("Buy Coins", BUY)]]


def catalog_keyboard(plans: list[Plan], selected: str | None = None) -> Keyboard:
    buttons = [
        Button((SELECTED_MARK if p.name == selected else "") + p.name, PLAN_PREFIX + p.name)
        for p in plans
    ]
    return _rows(buttons) + [[Button(BACK_LABEL, BACK)]]


def payment_keyboard(methods: list[str], allow_other: bool) -> Keyboard:
    buttons = [Button(m, PAY_PREFIX + m) for m in methods]
    rows = _rows(buttons)
    if allow_other:
        rows.append([Button("Other method", PAY_OTHER)])
    rows.append([Button(BACK_LABEL, BACK)])
    return rows


def back_keyboard() -> Keyboard:
    return [[Button(BACK_LABEL, BACK)]]


def plan_select_keyboard(plans: list[Plan], selected: str | None = None) -> Keyboard:
    buttons = [
        Button((SELECTED_MARK if p.name == selected else "") + p.name, PICK_PREFIX + p.name)
        for p in plans
    ]
    return _rows(buttons) + [[Button(BACK_LABEL, BACK)]]


def confirm_keyboard() -> Keyboard:
    return [[Button("✅ Confirm", CONFIRM)], [Button(BACK_LABEL, BACK)]]


def redeem_keyboard(label: str = "Redeem") -> Keyboard:
    return [[Button(label, REDEEM)]]


def staff_order_keyboard(order_id: int) -> Keyboard:
    return [[
        Button("✅ Accept", f"order:accept:{order_id}"),
        Button("❌ Decline", f"order:decline:{order_id}"),
    ]]


def staff_license_keyboard(license_id: int) -> Keyboard:
    return [[
        Button("✅ Finish", f"license:accept:{license_id}"),
        Button("❌ Decline", f"license:decline:{license_id}"),
    ]]


def broadcast_controls() -> Keyboard:
    return [[
        Button("📤 Send", BROADCAST_SEND),
        Button("🗑 Cancel", BROADCAST_CANCEL),
    ]]


def parse_staff_payload(payload: str) -> tuple[str, str, int] | None:
    """``order:accept:12`` → ("order", "accept", 12); None when malformed."""
    parts = payload.split(":")
    if len(parts) != 3 or parts[0] not in ("order", "license"):
        return None
    if parts[1] not in ("accept", "decline"):
        return None
    try:
        return parts[0], parts[1], int(parts[2])
    except ValueError:
        return None
