"""Stage/session engine — the per-user conversation state machine.

Every inbound private event is routed through one table keyed by
``(stage, event kind)``. The table is exhaustive: combinations that do
nothing are listed explicitly against ``_ignore``, and construction fails if
a pair is missing. A handler returns a ``Transition`` (prompts plus the next
``(stage, draft)``); ``process`` writes that pair back once, at the end.

Back navigation is a static table of reverse edges; each names the target
stage and the draft fields that survive the step back.
"""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from . import keyboards, routing
from .errors import (
    AlreadyProcessed,
    ExternalServiceError,
    InsufficientBalance,
    NotConfigured,
    NotFoundError,
    ShopError,
    Unauthorized,
    ValidationError,
)
from .models import EventKind, InboundEvent, Prompt, Stage, Transition
from .utils import escape, is_valid_email

if TYPE_CHECKING:
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway
    from .licenses import LicenseWorkflow
    from .orders import OrderWorkflow

Handler = Callable[[dict, InboundEvent], Awaitable[Transition]]

_PURCHASE_FIELDS = ("plan", "days", "coins", "price")
_REDEEM_FIELDS = ("plan", "days", "coins")

# stage → (predecessor, draft fields kept on the way back)
BACK_EDGES: dict[Stage, tuple[Stage, tuple[str, ...]]] = {
    Stage.PLAN_CATALOG: (Stage.MENU_SHOWN, ()),
    Stage.PAYMENT_METHOD: (Stage.PLAN_CATALOG, _PURCHASE_FIELDS),
    Stage.AWAITING_PROOF: (Stage.PAYMENT_METHOD, _PURCHASE_FIELDS),
    Stage.AWAITING_EMAIL: (Stage.MENU_SHOWN, ()),
    Stage.PLAN_SELECT: (Stage.AWAITING_EMAIL, ()),
    Stage.CONFIRM_REDEEM: (Stage.PLAN_SELECT, ("email",) + _REDEEM_FIELDS),
}

REDEEM_COMMANDS = ("redeem", "zoom")
ENGINE_COMMANDS = ("start", "setphoto") + REDEEM_COMMANDS

# Draft fields a stage cannot be rendered without
_REQUIRED_FIELDS: dict[Stage, tuple[str, ...]] = {
    Stage.PAYMENT_METHOD: _PURCHASE_FIELDS,
    Stage.AWAITING_PROOF: _PURCHASE_FIELDS,
    Stage.PLAN_SELECT: ("email",),
    Stage.CONFIRM_REDEEM: ("email",) + _REDEEM_FIELDS,
}


def _keep(draft: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    return {k: draft[k] for k in fields if k in draft}


class SessionEngine:
    """Routes private events to stage handlers and persists the outcome."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        orders: OrderWorkflow,
        licenses: LicenseWorkflow,
        staff_routing: routing.StaffRouting,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._messages = config.messages
        self._db = database
        self._gateway = gateway
        self._orders = orders
        self._licenses = licenses
        self._routing = staff_routing
        self._logger = logger or logging.getLogger("shop.session")
        self.events_processed = 0

        self._handlers: dict[tuple[Stage, EventKind], Handler] = {
            (stage, EventKind.COMMAND): self._on_command for stage in Stage
        }
        self._handlers.update({
            (Stage.IDLE, EventKind.TEXT): self._ignore,
            (Stage.IDLE, EventKind.IMAGE): self._ignore,
            (Stage.IDLE, EventKind.BUTTON): self._common_button,
            (Stage.MENU_SHOWN, EventKind.TEXT): self._ignore,
            (Stage.MENU_SHOWN, EventKind.IMAGE): self._ignore,
            (Stage.MENU_SHOWN, EventKind.BUTTON): self._on_menu_button,
            (Stage.PLAN_CATALOG, EventKind.TEXT): self._ignore,
            (Stage.PLAN_CATALOG, EventKind.IMAGE): self._ignore,
            (Stage.PLAN_CATALOG, EventKind.BUTTON): self._on_catalog_button,
            (Stage.PAYMENT_METHOD, EventKind.TEXT): self._ignore,
            (Stage.PAYMENT_METHOD, EventKind.IMAGE): self._ignore,
            (Stage.PAYMENT_METHOD, EventKind.BUTTON): self._on_payment_button,
            (Stage.AWAITING_PROOF, EventKind.TEXT): self._on_proof_text,
            (Stage.AWAITING_PROOF, EventKind.IMAGE): self._on_proof_image,
            (Stage.AWAITING_PROOF, EventKind.BUTTON): self._common_button,
            (Stage.AWAITING_EMAIL, EventKind.TEXT): self._on_email_text,
            (Stage.AWAITING_EMAIL, EventKind.IMAGE): self._ignore,
            (Stage.AWAITING_EMAIL, EventKind.BUTTON): self._common_button,
            (Stage.PLAN_SELECT, EventKind.TEXT): self._ignore,
            (Stage.PLAN_SELECT, EventKind.IMAGE): self._ignore,
            (Stage.PLAN_SELECT, EventKind.BUTTON): self._on_plan_select_button,
            (Stage.CONFIRM_REDEEM, EventKind.TEXT): self._ignore,
            (Stage.CONFIRM_REDEEM, EventKind.IMAGE): self._ignore,
            (Stage.CONFIRM_REDEEM, EventKind.BUTTON): self._on_confirm_button,
            (Stage.AWAITING_PROMO_IMAGE, EventKind.TEXT): self._ignore,
            (Stage.AWAITING_PROMO_IMAGE, EventKind.IMAGE): self._on_promo_image,
            (Stage.AWAITING_PROMO_IMAGE, EventKind.BUTTON): self._common_button,
        })
        missing = [p for p in itertools.product(Stage, EventKind) if p not in self._handlers]
        if missing:
            raise RuntimeError(f"Unhandled (stage, event) pairs: {missing}")

    # ══════════════════════════════════════════════════════════
    #  Entry Points
    # ══════════════════════════════════════════════════════════

    def handler_for(self, stage: Stage, kind: EventKind) -> Handler:
        return self._handlers[(stage, kind)]

    async def handle(self, user: dict, event: InboundEvent) -> Transition:
        """Run the handler for the user's current stage and map errors to outcomes.

        Never raises for ``ShopError``; unexpected exceptions propagate."""
        stage: Stage = user["stage"]
        draft: dict[str, Any] = dict(user.get("draft") or {})
        unchanged = Transition(stage=stage, draft=draft)
        try:
            return await self._handlers[(stage, event.kind)](user, event)
        except ValidationError as e:
            unchanged.prompts.append(Prompt(e.message, rich=True))
            return unchanged
        except InsufficientBalance as e:
            if event.kind is EventKind.BUTTON:
                unchanged.ack_text, unchanged.ack_alert = e.message, True
            else:
                unchanged.prompts.append(Prompt(e.message))
            return unchanged
        except NotFoundError:
            self._logger.info("User %s: stale draft at %s, resetting", user["user_id"], stage.value)
            return Transition(Stage.IDLE, {}, [Prompt(self._messages.start_over)])
        except Unauthorized as e:
            unchanged.prompts.append(Prompt(e.message))
            return unchanged
        except AlreadyProcessed as e:
            unchanged.ack_text = e.message
            return unchanged
        except NotConfigured as e:
            self._logger.warning("User %s blocked at %s: %s", user["user_id"], stage.value, e)
            unchanged.prompts.append(Prompt(self._messages.retry))
            return unchanged
        except ExternalServiceError as e:
            self._logger.warning("User %s at %s: %s", user["user_id"], stage.value, e)
            unchanged.prompts.append(Prompt(e.message))
            return unchanged
        except ShopError as e:
            unchanged.prompts.append(Prompt(e.message))
            return unchanged

    async def process(self, event: InboundEvent, user: dict | None = None) -> Transition | None:
        """Load the session, handle the event, write back once, deliver, acknowledge."""
        transition: Transition | None = None
        try:
            if user is None:
                user, _ = await self._db.get_or_create_user(
                    event.user_id, event.first_name, event.username,
                )
            try:
                transition = await self.handle(user, event)
            except Exception:
                self._logger.exception("Error handling %s from %s", event.kind.value, event.user_id)
                transition = Transition(
                    stage=user["stage"],
                    draft=dict(user.get("draft") or {}),
                    prompts=[Prompt(self._messages.retry)],
                )

            if transition.stage != user["stage"] or transition.draft != (user.get("draft") or {}):
                await self._db.save_session(event.user_id, transition.stage, transition.draft)
            self.events_processed += 1

            try:
                await self.deliver(event, transition.prompts)
            except ExternalServiceError as e:
                self._logger.warning("Failed to deliver prompt to %s: %s", event.user_id, e)
            return transition
        except Exception:
            self._logger.exception("Error processing event from %s", event.user_id)
            return transition
        finally:
            if event.kind is EventKind.BUTTON and event.interaction_id:
                await self.acknowledge(
                    event.interaction_id,
                    transition.ack_text if transition else None,
                    transition.ack_alert if transition else False,
                )

    async def acknowledge(self, interaction_id: str, text: str | None, alert: bool) -> None:
        try:
            await self._gateway.acknowledge(interaction_id, text=text, alert=alert)
        except ExternalServiceError as e:
            self._logger.debug("Acknowledge failed for %s: %s", interaction_id, e)

    # ══════════════════════════════════════════════════════════
    #  Delivery
    # ══════════════════════════════════════════════════════════

    async def deliver(self, event: InboundEvent, prompts: list[Prompt]) -> None:
        """Send prompts in order. The first ``edit`` prompt rewrites the pressed
        message; if that fails the message is replaced by a fresh one."""
        edited = False
        for prompt in prompts:
            if prompt.edit and not edited and event.message is not None:
                edited = True
                try:
                    await self._edit(event, prompt)
                    continue
                except ExternalServiceError as e:
                    self._logger.debug("Edit failed (%s), replacing message", e)
                    try:
                        await self._gateway.delete_message(event.message)
                    except ExternalServiceError:
                        self._logger.debug("Could not delete message %s", event.message)
            await self._send(event.chat_id, prompt)

    async def _edit(self, event: InboundEvent, prompt: Prompt) -> None:
        ref = event.message
        if prompt.image:
            await self._gateway.edit_media(
                ref, prompt.image, prompt.text, keyboard=prompt.keyboard, rich=prompt.rich,
            )
        elif event.message_is_image:
            await self._gateway.edit_caption(ref, prompt.text, keyboard=prompt.keyboard, rich=prompt.rich)
        else:
            await self._gateway.edit_text(ref, prompt.text, keyboard=prompt.keyboard, rich=prompt.rich)

    async def _send(self, chat_id: int, prompt: Prompt) -> None:
        if prompt.image:
            await self._gateway.send_image(
                chat_id, prompt.image, prompt.text, keyboard=prompt.keyboard, rich=prompt.rich,
            )
        else:
            await self._gateway.send_text(chat_id, prompt.text, keyboard=prompt.keyboard, rich=prompt.rich)

    # ══════════════════════════════════════════════════════════
    #  Rendering
    # ══════════════════════════════════════════════════════════

    async def render(self, stage: Stage, draft: dict[str, Any], user: dict, edit: bool = False) -> list[Prompt]:
        """The prompt shown on entering ``stage`` with ``draft``.

        Raises NotFoundError when the draft lacks a field the stage needs."""
        if any(draft.get(f) is None for f in _REQUIRED_FIELDS.get(stage, ())):
            raise NotFoundError()
        msgs = self._messages
        plural = self._config.currency.plural

        if stage is Stage.MENU_SHOWN:
            text = msgs.welcome.format(name=escape(user.get("first_name") or ""), plural=plural)
            return [Prompt(text, keyboards.menu_keyboard(), edit=edit, rich=True)]

        if stage is Stage.PLAN_CATALOG:
            kb = keyboards.catalog_keyboard(
                self._config.catalog.purchase_plans(), selected=draft.get("plan"),
            )
            image = await self._routing.promo_image()
            return [Prompt(msgs.catalog.format(plural=plural), kb, image=image, edit=edit, rich=True)]

        if stage is Stage.PAYMENT_METHOD:
            text = msgs.plan_summary.format(
                currency=self._config.currency.name,
                plan=escape(draft["plan"]),
                days=draft["days"],
                coins=draft["coins"],
                plural=plural,
                price=draft["price"],
                price_unit=self._config.currency.price_unit,
                contact=escape(self._config.payments.contact_handle),
            )
            kb = keyboards.payment_keyboard(
                list(self._config.payments.methods), self._config.payments.allow_other,
            )
            return [Prompt(text, kb, edit=edit, rich=True)]

        if stage is Stage.AWAITING_PROOF:
            method = draft.get("method")
            if method:
                text = msgs.payment_instructions.format(
                    plan=escape(draft["plan"]),
                    days=draft["days"],
                    coins=draft["coins"],
                    plural=plural,
                    price=draft["price"],
                    price_unit=self._config.currency.price_unit,
                    method=escape(method),
                    details=escape(self._config.payments.methods.get(method, "")),
                )
            else:
                text = msgs.payment_other.format(
                    plan=escape(draft["plan"]),
                    price=draft["price"],
                    price_unit=self._config.currency.price_unit,
                    contact=escape(self._config.payments.contact_handle),
                )
            return [Prompt(text, keyboards.back_keyboard(), edit=edit, rich=True)]

        if stage is Stage.AWAITING_EMAIL:
            return [Prompt(msgs.email_prompt, keyboards.back_keyboard(), edit=edit, rich=True)]

        if stage is Stage.PLAN_SELECT:
            kb = keyboards.plan_select_keyboard(
                self._config.catalog.redeem_plans(), selected=draft.get("plan"),
            )
            text = msgs.plan_select.format(email=escape(draft["email"]))
            return [Prompt(text, kb, edit=edit, rich=True)]

        if stage is Stage.CONFIRM_REDEEM:
            text = msgs.confirm_redeem.format(
                email=escape(draft["email"]),
                plan=escape(draft["plan"]),
                coins=draft["coins"],
                plural=plural,
                days=draft["days"],
                expiry=self._licenses.preview_expiry(draft["days"]),
            )
            return [Prompt(text, keyboards.confirm_keyboard(), edit=edit, rich=True)]

        if stage is Stage.AWAITING_PROMO_IMAGE:
            return [Prompt(msgs.promo_prompt)]

        return []

    async def _enter(self, stage: Stage, draft: dict[str, Any], user: dict, edit: bool = True) -> Transition:
        return Transition(stage, draft, await self.render(stage, draft, user, edit=edit))

    # ══════════════════════════════════════════════════════════
    #  Commands
    # ══════════════════════════════════════════════════════════

    async def _on_command(self, user: dict, event: InboundEvent) -> Transition:
        command = event.command
        if command == "start":
            return await self._enter(Stage.MENU_SHOWN, {}, user, edit=False)
        if command in REDEEM_COMMANDS:
            return await self._enter(Stage.AWAITING_EMAIL, {}, user, edit=False)
        if command == "setphoto":
            if event.user_id != self._config.telegram.owner_id:
                raise Unauthorized("This command is only available to the bot owner.")
            return await self._enter(Stage.AWAITING_PROMO_IMAGE, {}, user, edit=False)
        return await self._ignore(user, event)

    # ══════════════════════════════════════════════════════════
    #  Stage Handlers
    # ══════════════════════════════════════════════════════════

    async def _ignore(self, user: dict, event: InboundEvent) -> Transition:
        return Transition(user["stage"], dict(user.get("draft") or {}))

    async def _go_back(self, user: dict, event: InboundEvent) -> Transition:
        stage: Stage = user["stage"]
        draft = user.get("draft") or {}
        target, kept = BACK_EDGES[stage]
        if stage is Stage.CONFIRM_REDEEM and self._config.redemption.fixed_plan:
            target, kept = Stage.AWAITING_EMAIL, ()
        return await self._enter(target, _keep(draft, kept), user)

    async def _common_button(self, user: dict, event: InboundEvent) -> Transition:
        """Buttons accepted at every stage: redemption (from notifications) and back."""
        if event.payload == keyboards.REDEEM:
            return await self._enter(Stage.AWAITING_EMAIL, {}, user, edit=False)
        if event.payload == keyboards.BACK and user["stage"] in BACK_EDGES:
            return await self._go_back(user, event)
        return await self._ignore(user, event)

    async def _on_menu_button(self, user: dict, event: InboundEvent) -> Transition:
        if event.payload == keyboards.BUY:
            return await self._enter(Stage.PLAN_CATALOG, {}, user)
        return await self._common_button(user, event)

    async def _on_catalog_button(self, user: dict, event: InboundEvent) -> Transition:
        payload = event.payload or ""
        if payload.startswith(keyboards.PLAN_PREFIX):
            plan = self._config.catalog.get_plan(payload[len(keyboards.PLAN_PREFIX):])
            if plan is None or not plan.purchasable:
                raise NotFoundError()
            return await self._enter(Stage.PAYMENT_METHOD, plan.purchase_fields(), user)
        return await self._common_button(user, event)

    async def _on_payment_button(self, user: dict, event: InboundEvent) -> Transition:
        payload = event.payload or ""
        draft = _keep(user.get("draft") or {}, _PURCHASE_FIELDS)
        if payload.startswith(keyboards.PAY_PREFIX):
            method = payload[len(keyboards.PAY_PREFIX):]
            if method not in self._config.payments.methods:
                raise NotFoundError()
            return await self._enter(Stage.AWAITING_PROOF, {**draft, "method": method}, user)
        if payload == keyboards.PAY_OTHER and self._config.payments.allow_other:
            return await self._enter(Stage.AWAITING_PROOF, draft, user)
        return await self._common_button(user, event)

    async def _on_proof_text(self, user: dict, event: InboundEvent) -> Transition:
        raise ValidationError(self._messages.proof_expected)

    async def _on_proof_image(self, user: dict, event: InboundEvent) -> Transition:
        await self._orders.submit_proof(user, user.get("draft") or {}, event.image_ref)
        return Transition(Stage.IDLE, {}, [Prompt(self._messages.proof_received)])

    async def _on_email_text(self, user: dict, event: InboundEvent) -> Transition:
        email = (event.text or "").strip()
        if not is_valid_email(email):
            raise ValidationError(self._messages.email_invalid)
        fixed = self._config.redemption.fixed_plan
        if fixed:
            plan = self._config.catalog.get_plan(fixed)
            if plan is None:
                raise NotFoundError()
            return await self._enter(Stage.CONFIRM_REDEEM, {"email": email, **plan.redeem_fields()}, user, edit=False)
        return await self._enter(Stage.PLAN_SELECT, {"email": email}, user, edit=False)

    async def _on_plan_select_button(self, user: dict, event: InboundEvent) -> Transition:
        payload = event.payload or ""
        if payload.startswith(keyboards.PICK_PREFIX):
            plan = self._config.catalog.get_plan(payload[len(keyboards.PICK_PREFIX):])
            email = (user.get("draft") or {}).get("email")
            if plan is None or not email:
                raise NotFoundError()
            return await self._enter(Stage.CONFIRM_REDEEM, {"email": email, **plan.redeem_fields()}, user)
        return await self._common_button(user, event)

    async def _on_confirm_button(self, user: dict, event: InboundEvent) -> Transition:
        if event.payload == keyboards.CONFIRM:
            await self._licenses.submit_redemption(user, user.get("draft") or {})
            return Transition(Stage.IDLE, {}, [Prompt(self._messages.redeem_submitted, edit=True)])
        return await self._common_button(user, event)

    async def _on_promo_image(self, user: dict, event: InboundEvent) -> Transition:
        await self._db.set_setting(routing.PROMO_IMAGE, event.image_ref)
        self._logger.info("Promo image updated by %s", event.user_id)
        return Transition(Stage.IDLE, {}, [Prompt(self._messages.promo_saved)])
