"""Cooperative cancellation for a run.

One CancellationToken is created per run and passed down through the
planner, adapters and sessions. Every suspension point waits on the same
token, so a single cancel() unwinds the whole call chain.
"""

import asyncio
import contextlib
from typing import Awaitable, TypeVar

from algaib.errors import RunCancelled

T = TypeVar("T")


class CancellationToken:
    """Single-use cancellation flag backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        """Trip the token. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``awaitable`` unless the token trips first.

        Args:
            awaitable: Operation to wait for
            timeout: Optional deadline in seconds

        Returns:
            The operation's result

        Raises:
            RunCancelled: If the token trips before the operation finishes
            asyncio.TimeoutError: If the deadline passes first
        """
        self.raise_if_cancelled()
        operation = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {operation, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            operation.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if operation in done:
            return operation.result()

        operation.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await operation
        if cancel_wait in done:
            raise RunCancelled(self.reason or "Cancelled")
        raise asyncio.TimeoutError()
