"""
Module: delivery/cancellation.py
Description: Cooperative cancellation for dispatches.

A CancellationToken is handed to every dispatch. Backoff waits and
in-flight transport calls race against it, so cancelling aborts the
active wait or call immediately without touching other requests.
"""

import asyncio
import contextlib
from typing import Awaitable, Optional, TypeVar

from eventrelay.errors import DispatchCancelled

T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation signal.

    Example:
        >>> token = CancellationToken()
        >>> await token.sleep(2.0)       # raises DispatchCancelled if cancelled
        >>> await token.run(send())      # cancels send() if the token fires
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Fire the token.

        Returns:
            False if the token had already been cancelled
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DispatchCancelled(self._reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless cancelled first.

        Raises:
            DispatchCancelled: If the token fires before the delay elapses
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise DispatchCancelled(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When the token wins, the awaitable's task is cancelled and awaited
        so it releases its resources before DispatchCancelled is raised.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise DispatchCancelled(self._reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise DispatchCancelled(self._reason)
