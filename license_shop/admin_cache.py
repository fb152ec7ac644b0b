"""Administrator membership cache for the staff chat.

Process-scoped state with a single owner (the app). One entry, keyed by
chat id: reloaded from the gateway when it is older than the TTL or when a
different chat is asked about.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from .errors import ExternalServiceError

if TYPE_CHECKING:
    from .gateway import MessagingGateway


@dataclass
class AdminCacheEntry:
    chat_id: int
    admins: set[int] = field(default_factory=set)
    refreshed_at: float = 0.0


class AdminRoleCache:
    """Time-boxed "is this identity an administrator of this chat" check."""

    def __init__(
        self,
        gateway: MessagingGateway,
        ttl_seconds: float = 300.0,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._ttl = ttl_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("shop.admin_cache")
        self._entry: AdminCacheEntry | None = None

    def _is_stale(self, chat_id: int) -> bool:
        entry = self._entry
        if entry is None or entry.chat_id != chat_id:
            return True
        return self._clock() - entry.refreshed_at > self._ttl

    async def is_admin(self, chat_id: int, user_id: int) -> bool:
        if self._is_stale(chat_id):
            try:
                admins = await self._gateway.list_administrators(chat_id)
            except ExternalServiceError:
                self._logger.warning("Failed to load administrators for chat %s", chat_id)
                raise
            self._entry = AdminCacheEntry(
                chat_id=chat_id, admins=set(admins), refreshed_at=self._clock(),
            )
            self._logger.debug("Admin cache refreshed for %s: %d admins", chat_id, len(admins))
        return user_id in self._entry.admins

    def invalidate(self) -> None:
        self._entry = None
