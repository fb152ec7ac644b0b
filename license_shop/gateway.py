"""Messaging gateway contract consumed by the core.

The core never talks to a transport directly: stage handlers, the approval
protocol, the broadcast controller and the sweep all depend on this
interface. Implementations raise ``ExternalServiceError`` for any transport
failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from .models import Keyboard, MessageRef


@dataclass(frozen=True)
class Profile:
    user_id: int
    first_name: str
    username: str | None


class MessagingGateway(ABC):
    """Outbound operations on the chat transport."""

    @abstractmethod
    async def send_text(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> MessageRef: ...

    @abstractmethod
    async def send_image(
        self,
        chat_id: int,
        image: str,
        caption: str,
        *,
        thread_id: int | None = None,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> MessageRef: ...

    @abstractmethod
    async def edit_text(
        self, ref: MessageRef, text: str, *, keyboard: Keyboard | None = None, rich: bool = False,
    ) -> None: ...

    @abstractmethod
    async def edit_caption(
        self, ref: MessageRef, caption: str, *, keyboard: Keyboard | None = None, rich: bool = False,
    ) -> None: ...

    @abstractmethod
    async def edit_media(
        self,
        ref: MessageRef,
        image: str,
        caption: str,
        *,
        keyboard: Keyboard | None = None,
        rich: bool = False,
    ) -> None: ...

    @abstractmethod
    async def delete_message(self, ref: MessageRef) -> None: ...

    @abstractmethod
    async def forward_message(
        self, ref: MessageRef, chat_id: int, *, thread_id: int | None = None,
    ) -> MessageRef: ...

    @abstractmethod
    async def copy_message(
        self, ref: MessageRef, chat_id: int, *, thread_id: int | None = None,
    ) -> MessageRef: ...

    @abstractmethod
    async def list_administrators(self, chat_id: int) -> list[int]: ...

    @abstractmethod
    async def acknowledge(
        self, interaction_id: str, *, text: str | None = None, alert: bool = False,
    ) -> None: ...

    @abstractmethod
    async def get_profile(self, user_id: int) -> Profile: ...
