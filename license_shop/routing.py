"""Staff routing settings: which chat and topics staff records go to."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import NotConfigured

if TYPE_CHECKING:
    from .database import ShopDatabase

GROUP_ID = "group_id"
NEW_CUSTOMER_TOPIC = "new_customer_topic_id"
ORDER_TOPIC = "order_topic_id"
ORDER_FINISHED_TOPIC = "order_finished_topic_id"
LICENSE_TOPIC = "license_topic_id"
LICENSE_FINISHED_TOPIC = "license_finished_topic_id"
LICENSE_EXPIRED_TOPIC = "license_expired_topic_id"
PROMO_IMAGE = "promo_photo_file_id"

# Owner command → (settings key, human name)
ROUTING_COMMANDS: dict[str, tuple[str, str]] = {
    "connectgp": (GROUP_ID, "Connected Group ID"),
    "newcus": (NEW_CUSTOMER_TOPIC, "New Customer Topic ID"),
    "order": (ORDER_TOPIC, "Order Topic ID"),
    "orderfinished": (ORDER_FINISHED_TOPIC, "Order Finished Topic ID"),
    "license": (LICENSE_TOPIC, "License Topic ID"),
    "licensefinished": (LICENSE_FINISHED_TOPIC, "License Finished Topic ID"),
    "licenseexpired": (LICENSE_EXPIRED_TOPIC, "Expired License Topic ID"),
}


def _as_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class StaffRouting:
    """Resolves routing settings to (chat_id, thread_id) targets."""

    def __init__(self, database: ShopDatabase) -> None:
        self._db = database

    async def staff_chat(self) -> int | None:
        return _as_int(await self._db.get_setting(GROUP_ID))

    async def target(self, topic_key: str) -> tuple[int, int]:
        """Staff chat plus the topic for ``topic_key``; NotConfigured if either is unset."""
        chat_id = await self.staff_chat()
        if chat_id is None:
            raise NotConfigured(GROUP_ID)
        thread_id = _as_int(await self._db.get_setting(topic_key))
        if thread_id is None:
            raise NotConfigured(topic_key)
        return chat_id, thread_id

    async def optional_target(self, topic_key: str) -> tuple[int, int] | None:
        try:
            return await self.target(topic_key)
        except NotConfigured:
            return None

    async def promo_image(self) -> str | None:
        return await self._db.get_setting(PROMO_IMAGE)
