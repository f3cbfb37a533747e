"""
Cooperative cancellation tokens.

A run owns a root token; each job gets a child token. Cancelling a
parent cancels every child. Work checks `cancelled` at step boundaries
and uses `race()` to abandon an in-flight awaitable.
"""

import asyncio
from typing import Awaitable, List, Optional, TypeVar

from controller.src.errors import OperationCancelled

T = TypeVar("T")

class CancellationToken:

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._children: List["CancellationToken"] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel this token and its children. Returns False if already cancelled."""
        if self.cancelled:
            return False
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)
        return True

    def raise_if_cancelled(self):
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self):
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await `awaitable` unless the token is cancelled or `timeout` elapses first.

        The losing work is cancelled and awaited, so resources it holds
        (processes, pool slots) are released before this returns. If the
        work completes anyway while being cancelled, its result wins.

        Raises OperationCancelled or asyncio.TimeoutError.
        """
        self.raise_if_cancelled()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        waiter.cancel()
        if work in done:
            return work.result()

        work.cancel()
        await asyncio.wait({work})
        if not work.cancelled():
            # Finished (or failed) while being torn down
            return work.result()

        if waiter in done:
            raise OperationCancelled(self.reason or "cancelled")
        raise asyncio.TimeoutError()
