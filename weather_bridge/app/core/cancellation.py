"""
Explicit cancellation context shared by every suspension point.

A CancellationContext is handed to network calls and timed waits instead of
relying on task cancellation propagating implicitly:

    ctx = CancellationContext()
    if await ctx.wait(600):      # True → cancelled while waiting
        return
    body = await ctx.guard(client.get(url))   # OperationCancelledError if cancelled first
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelledError(Exception):
    """An awaited operation was abandoned because its context was cancelled."""


class CancellationContext:
    """Cancellation flag with awaitable helpers."""

    def __init__(self, reason: str = "") -> None:
        self._event = asyncio.Event()
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if reason:
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason or "cancelled")

    async def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile. Never raises."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it as soon as the context is cancelled."""
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise OperationCancelledError(self.reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise OperationCancelledError(self.reason or "cancelled")


def never_cancelled() -> CancellationContext:
    """A fresh context nobody holds a handle to cancel."""
    return CancellationContext()


def ensure_context(ctx: Optional[CancellationContext]) -> CancellationContext:
    return ctx if ctx is not None else never_cancelled()
