"""
Cancellation token for agent execution.

The same AbortSignal is threaded to the model call and to every tool's
``execute``; aborting never rolls back entries already in the log.
"""

import asyncio
from typing import Awaitable, TypeVar

from keel.errors import CancellationError

T = TypeVar("T")


class AbortSignal:
    """
    One-shot cancellation flag shared by a run, its model call and its tools.

    Tools poll ``is_aborted()`` between steps or ``await wait()`` alongside
    their own work; ``raise_if_aborted()`` turns the flag into a
    CancellationError. Once set, the first reason sticks.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    def abort(self, reason: str = "Operation cancelled"):
        """Set the flag; later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_aborted(self) -> bool:
        """True once abort() was called."""
        return self._event.is_set()

    async def wait(self):
        """Block until abort() is called."""
        await self._event.wait()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_aborted(self) -> None:
        """Raise CancellationError when abort has been triggered."""
        if self.is_aborted():
            raise CancellationError(self._reason)

    def reset(self):
        """Clear the flag so the signal can serve another run."""
        self._event.clear()
        self._reason = None


async def race_abort(awaitable: Awaitable[T], abort_signal: AbortSignal | None) -> T:
    """
    Await ``awaitable`` unless the abort signal fires first.

    The awaited task is cancelled when the signal wins and
    CancellationError is raised.
    """
    if abort_signal is None:
        return await awaitable

    if abort_signal.is_aborted():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        abort_signal.raise_if_aborted()
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort_signal.wait())
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
    raise CancellationError(abort_signal.reason)


__all__ = ["AbortSignal", "race_abort"]
