"""Cooperative cancellation for streaming requests.

A ``CancellationToken`` is owned by whoever starts a request and handed
down to every await point that may block on the network. Waits race the
I/O future against the token, so cancelling interrupts a read that is
still waiting for its next chunk instead of taking effect one token late.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from infill.exceptions import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal, linkable into child tokens."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._callbacks: list[Callable[[], None]] = []
        self._unlink: Callable[[], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Operation cancelled by signal") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def child(self) -> CancellationToken:
        """Create a token that is cancelled whenever this one is.

        Call ``detach()`` on the child once it is no longer needed so the
        parent stops holding a reference to it.
        """
        token = CancellationToken()
        token._unlink = self.add_callback(lambda: token.cancel(self._reason))
        return token

    def detach(self) -> None:
        """Stop following the parent token, if this is a child."""
        unlink, self._unlink = self._unlink, None
        if unlink is not None:
            unlink()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T], cancel: CancellationToken | None,
) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    On cancellation the pending work is cancelled and awaited, then
    ``OperationCancelledError`` is raised.
    """
    if cancel is None:
        return await awaitable
    if cancel.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(cancel.reason)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
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
        # The work was abandoned; its failure is superseded by the cancellation.
        pass
    raise OperationCancelledError(cancel.reason)


async def sleep_cancellable(seconds: float, cancel: CancellationToken | None) -> None:
    """``asyncio.sleep`` that ends early with ``OperationCancelledError``."""
    if seconds <= 0:
        if cancel is not None:
            cancel.raise_if_cancelled()
        return
    await run_cancellable(asyncio.sleep(seconds), cancel)
