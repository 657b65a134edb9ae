"""
Cancellation signal shared by endpoint resolution, health probing and
streaming.

A CancellationToken is an asyncio.Event with a reason. run_cancellable()
races an awaitable against the token; when the token fires first the
underlying task is cancelled, which unwinds any open httpx response and
closes its connection.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCancelled(Exception):
    """Raised by run_cancellable() when the token fires before the work completes."""


class CancellationToken:
    """
    One-shot cancellation signal.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(client.stream_chat(..., cancel=token))
        token.cancel("user pressed stop")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.debug(f"Cancellation requested: {reason}")
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """
    Await `awaitable` unless `token` fires first.

    Raises:
        RequestCancelled: token fired (before or during the await)
    """
    if token is None:
        return await awaitable
    if token.is_cancelled:
        # Never started, so close the coroutine instead of leaking it
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelled(token.reason)

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
    raise RequestCancelled(token.reason)
