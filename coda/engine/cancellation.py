"""Cooperative cancellation signal shared by one turn."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from coda.engine.errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag.

    The provider call, the stream reader and the tool coordinator all hold
    the same token.  Nothing is interrupted by force except awaits wrapped
    in race(); tools check the flag between executions.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable unless cancellation fires first.

        On cancellation the awaitable's task is cancelled and
        CancellationError is raised.
        """
        if self.cancelled:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise CancellationError(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise CancellationError(self.reason)
