"""Error taxonomy shared by every interactive and batch component.

Handlers map each class to a fixed reaction:

- ``ValidationError``     re-prompt in place, no state change
- ``NotFoundError``       abort to idle with a generic message
- ``Unauthorized``        reject, optionally with an explicit notice
- ``AlreadyProcessed``    reject, no side effect
- ``ExternalServiceError`` log, abort, leave the session unchanged, ask to retry
- ``InsufficientBalance`` alert with required vs. available, no mutation
"""

from __future__ import annotations


class ShopError(Exception):
    """Base class for all expected, user-presentable failures."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ShopError):
    default_message = "That input doesn't look right. Please try again."


class NotFoundError(ShopError):
    default_message = "That item no longer exists. Please start over with /start."


class Unauthorized(ShopError):
    default_message = "You are not an admin."


class AlreadyProcessed(ShopError):
    default_message = "This request has already been processed."


class ExternalServiceError(ShopError):
    default_message = "A temporary error occurred. Please try again."


class NotConfigured(ExternalServiceError):
    """A routing setting required for the action has not been set."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Setting '{setting}' is not configured.")


class InsufficientBalance(ShopError):
    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance. You need {required} coins, "
            f"but you only have {available}."
        )
