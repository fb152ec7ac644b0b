"""aiogram implementation of the messaging gateway.

Also converts aiogram ``Message`` / ``CallbackQuery`` objects into the
transport-neutral ``InboundEvent`` the core consumes. Every Bot API or
network failure surfaces as ``ExternalServiceError`` with the original
exception chained.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

import aiohttp
from aiogram import Bot
from aiogram.enums import ChatType
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    InputMediaPhoto,
    Message,
)

from .errors import ExternalServiceError
from .gateway import MessagingGateway, Profile
from .models import EventKind, InboundEvent, Keyboard, MessageRef


def to_markup(keyboard: Keyboard | None) -> InlineKeyboardMarkup | None:
    if not keyboard:
        return None
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=b.text, callback_data=b.payload) for b in row]
        for row in keyboard
    ])


def _ref(message: Any) -> MessageRef:
    return MessageRef(chat_id=message.chat.id, message_id=message.message_id)


# ══════════════════════════════════════════════════════════
#  Inbound Conversion
# ══════════════════════════════════════════════════════════

def event_from_message(message: Message) -> InboundEvent | None:
    """None for messages without a human sender (channel posts, service messages)."""
    user = message.from_user
    if user is None or user.is_bot:
        return None
    image_ref = message.photo[-1].file_id if message.photo else None
    text = message.text or message.caption
    if message.text and message.text.startswith("/"):
        kind = EventKind.COMMAND
    elif image_ref:
        kind = EventKind.IMAGE
    else:
        kind = EventKind.TEXT
    reply = message.reply_to_message
    return InboundEvent(
        kind=kind,
        user_id=user.id,
        chat_id=message.chat.id,
        first_name=user.first_name or "",
        username=user.username,
        private=message.chat.type == ChatType.PRIVATE,
        text=text,
        image_ref=image_ref,
        message=_ref(message),
        message_is_image=bool(message.photo),
        reply_to=_ref(reply) if reply is not None else None,
        thread_id=message.message_thread_id if message.is_topic_message else None,
    )


def event_from_callback(callback: CallbackQuery) -> InboundEvent:
    message = callback.message
    user = callback.from_user
    chat = getattr(message, "chat", None)
    return InboundEvent(
        kind=EventKind.BUTTON,
        user_id=user.id,
        chat_id=chat.id if chat is not None else user.id,
        first_name=user.first_name or "",
        username=user.username,
        private=chat is None or chat.type == ChatType.PRIVATE,
        payload=callback.data,
        message=_ref(message) if chat is not None else None,
        message_is_image=bool(getattr(message, "photo", None)),
        thread_id=getattr(message, "message_thread_id", None) if getattr(message, "is_topic_message", False) else None,
        interaction_id=callback.id,
    )


# ══════════════════════════════════════════════════════════
#  Gateway
# ══════════════════════════════════════════════════════════

class TelegramGateway(MessagingGateway):
    """Outbound Bot API calls behind the ``MessagingGateway`` contract."""

    def __init__(self, bot: Bot, parse_mode: str = "HTML", logger: logging.Logger | None = None) -> None:
        self._bot = bot
        self._parse_mode = parse_mode
        self._logger = logger or logging.getLogger("shop.telegram")

    def _mode(self, rich: bool) -> str | None:
        return self._parse_mode if rich else None

    async def _call(self, what: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except (TelegramAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning("Telegram %s failed: %s", what, e)
            raise ExternalServiceError() from e

    async def _edit(self, what: str, call: Awaitable[Any]) -> None:
        try:
            await call
        except TelegramBadRequest as e:
            # Re-rendering an unchanged prompt is not a failure
            if "message is not modified" in str(e).lower():
                return
            self._logger.debug("Telegram %s rejected: %s", what, e)
            raise ExternalServiceError() from e
        except (TelegramAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning("Telegram %s failed: %s", what, e)
            raise ExternalServiceError() from e

    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> MessageRef:
        message = await self._call("send_message", self._bot.send_message(
            chat_id=chat_id,
            text=text,
            message_thread_id=thread_id,
            reply_markup=to_markup(keyboard),
            parse_mode=self._mode(rich),
        ))
        return _ref(message)

    async def send_image(
        self,
        chat_id: int,
        image: str,
        caption: str,
        *,
        thread_id: int | None = None,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> MessageRef:
        message = await self._call("send_photo", self._bot.send_photo(
            chat_id=chat_id,
            photo=image,
            caption=caption,
            message_thread_id=thread_id,
            reply_markup=to_markup(keyboard),
            parse_mode=self._mode(rich),
        ))
        return _ref(message)

    async def edit_text(
        self, ref: MessageRef, text: str, *, keyboard: Keyboard | None = None, rich: bool = False,
    ) -> None:
        await self._edit("edit_message_text", self._bot.edit_message_text(
            text=text,
            chat_id=ref.chat_id,
            message_id=ref.message_id,
            reply_markup=to_markup(keyboard),
            parse_mode=self._mode(rich),
        ))

    async def edit_caption(
        self, ref: MessageRef, caption: str, *, keyboard: Keyboard | None = None, rich: bool = False,
    ) -> None:
        await self._edit("edit_message_caption", self._bot.edit_message_caption(
            chat_id=ref.chat_id,
            message_id=ref.message_id,
            caption=caption,
            reply_markup=to_markup(keyboard),
            parse_mode=self._mode(rich),
        ))

    async def edit_media(
        self,
        ref: MessageRef,
        image: str,
        caption: str,
        *,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> None:
        media = InputMediaPhoto(media=image, caption=caption, parse_mode=self._mode(rich))
        await self._edit("edit_message_media", self._bot.edit_message_media(
            media=media,
            chat_id=ref.chat_id,
            message_id=ref.message_id,
            reply_markup=to_markup(keyboard),
        ))

    async def delete_message(self, ref: MessageRef) -> None:
        await self._call("delete_message", self._bot.delete_message(
            chat_id=ref.chat_id, message_id=ref.message_id,
        ))

    async def forward_message(
        self, ref: MessageRef, chat_id: int, *, thread_id: int | None = None,
    ) -> MessageRef:
        message = await self._call("forward_message", self._bot.forward_message(
            chat_id=chat_id,
            from_chat_id=ref.chat_id,
            message_id=ref.message_id,
            message_thread_id=thread_id,
        ))
        return _ref(message)

    async def copy_message(
        self, ref: MessageRef, chat_id: int, *, thread_id: int | None = None,
    ) -> MessageRef:
        copied = await self._call("copy_message", self._bot.copy_message(
            chat_id=chat_id,
            from_chat_id=ref.chat_id,
            message_id=ref.message_id,
            message_thread_id=thread_id,
        ))
        return MessageRef(chat_id=chat_id, message_id=copied.message_id)

    async def list_administrators(self, chat_id: int) -> list[int]:
        members = await self._call(
            "get_chat_administrators", self._bot.get_chat_administrators(chat_id=chat_id),
        )
        return [m.user.id for m in members]

    async def acknowledge(
        self, interaction_id: str, *, text: str | None = None, alert: bool = False,
    ) -> None:
        await self._call("answer_callback_query", self._bot.answer_callback_query(
            callback_query_id=interaction_id, text=text, show_alert=alert,
        ))

    async def get_profile(self, user_id: int) -> Profile:
        chat = await self._call("get_chat", self._bot.get_chat(chat_id=user_id))
        return Profile(user_id=user_id, first_name=chat.first_name or "", username=chat.username)
