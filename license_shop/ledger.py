"""Credit ledger — the only application-level entry point for coin balances.

Both operations resolve to one conditional increment at the store boundary
(``ShopDatabase._apply_coin_delta``); no balance is ever computed in memory
and written back. The ledger has no notion of "already applied": callers that
need idempotency go through the approval protocol's status guard.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import InsufficientBalance, NotFoundError, ValidationError

if TYPE_CHECKING:
    from .database import ShopDatabase


class CreditLedger:
    """Atomic, non-negative coin balance mutations."""

    def __init__(self, database: ShopDatabase, logger: logging.Logger | None = None) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("shop.ledger")

    @staticmethod
    def _check_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Amount must be a positive whole number.")

    async def balance(self, user_id: int) -> int:
        balance = await self._db.get_balance(user_id)
        if balance is None:
            raise NotFoundError(f"Unknown user {user_id}.")
        return balance

    async def credit(
        self, user_id: int, amount: int, tx_type: str = "credit", reason: str | None = None,
    ) -> int:
        """Add coins. Returns the new balance."""
        self._check_amount(amount)
        new_balance = await self._db.credit_coins(user_id, amount, tx_type, reason)
        if new_balance is None:
            raise NotFoundError(f"Unknown user {user_id}.")
        self._logger.info("Credited %d coins to %s (%s) → %d", amount, user_id, tx_type, new_balance)
        return new_balance

    async def debit(
        self, user_id: int, amount: int, tx_type: str = "debit", reason: str | None = None,
    ) -> int:
        """Remove coins. Raises InsufficientBalance with the balance left untouched."""
        self._check_amount(amount)
        new_balance = await self._db.debit_coins(user_id, amount, tx_type, reason)
        if new_balance is None:
            available = await self._db.get_balance(user_id)
            if available is None:
                raise NotFoundError(f"Unknown user {user_id}.")
            raise InsufficientBalance(required=amount, available=available)
        self._logger.info("Debited %d coins from %s (%s) → %d", amount, user_id, tx_type, new_balance)
        return new_balance

    async def ensure_covers(self, user_id: int, amount: int) -> int:
        """Non-mutating check that the committed balance covers ``amount``."""
        available = await self.balance(user_id)
        if available < amount:
            raise InsufficientBalance(required=amount, available=available)
        return available
