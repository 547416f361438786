"""Cancellation token threaded through every awaited engine operation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from gosling.errors import SessionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal for a session's current reply."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "user") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info("Cancellation requested (%s)", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelled(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless cancellation fires first.

        On cancellation the awaitable's task is cancelled and
        SessionCancelled is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            logger.debug("Cancelled operation finished during teardown", exc_info=True)
        raise SessionCancelled(self._reason or "cancelled")
