"""Paced sequential execution for loops that issue many outbound calls.

One call, then a fixed pause, then the next. ``stop()`` interrupts the run
between iterations, including in the middle of a pause.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from .errors import ShopError

T = TypeVar("T")


@dataclass
class PacedResult:
    success: int = 0
    failed: int = 0
    interrupted: bool = False

    @property
    def total(self) -> int:
        return self.success + self.failed


class PacedRunner:
    """Runs ``action`` over ``items`` one at a time with a pause between calls.

    Per-item failures are counted and logged; they never abort the run."""

    def __init__(self, delay_seconds: float, logger: logging.Logger | None = None) -> None:
        self._delay = max(0.0, delay_seconds)
        self._logger = logger or logging.getLogger("shop.pacing")
        self._stop = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def _pause(self) -> bool:
        """Sleep for the delay; True if stopped meanwhile."""
        if self._delay <= 0:
            return self._stop.is_set()
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self, items: Iterable[T], action: Callable[[T], Awaitable[Any]]) -> PacedResult:
        result = PacedResult()
        for index, item in enumerate(items):
            if self._stop.is_set() or (index and await self._pause()):
                result.interrupted = True
                break
            try:
                await action(item)
                result.success += 1
            except ShopError as e:
                result.failed += 1
                self._logger.debug("Paced call for %r failed: %s", item, e)
            except Exception:
                result.failed += 1
                self._logger.exception("Unexpected error in paced call for %r", item)
        return result
