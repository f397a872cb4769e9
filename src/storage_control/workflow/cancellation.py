"""Cooperative cancellation for workflow phases.

A ``CancellationToken`` is handed to a workflow by its caller. Every
suspension point (ledger calls, backend polls, backoff sleeps) is raced
against the token so a cancel request aborts promptly and the in-flight
call is cancelled on a best-effort basis.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import Cancelled

T = TypeVar('T')


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled by caller') -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or 'cancelled')

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the underlying task is cancelled and ``Cancelled`` is
    raised once it has unwound.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception:
        # The call was abandoned; its late failure is irrelevant.
        pass
    raise Cancelled(token.reason or 'cancelled')
