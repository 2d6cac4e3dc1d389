#!/usr/bin/env python3
"""
Imgur Archive Cancellation Token

Cooperative cancellation shared by one run: the resolver, the downloader
and the batch scheduler all receive the same token and check it before
every network call, before and during every cooldown, and before every
batch item.
"""

import asyncio
import contextlib
import signal
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised at a checkpoint once cancellation has been requested."""

    def __init__(self, message: str = "Operation cancelled."):
        super().__init__(message)


class CancelToken:
    """
    One-way cancellation flag for a single run.

    The flag moves from not-requested to requested exactly once; later calls
    to cancel() are no-ops.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            True if this call performed the transition, False if it was
            already requested.
        """
        if self._event.is_set():
            return False
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    async def sleep(self, seconds: float) -> None:
        """
        Cooldown that wakes up early when cancellation is requested.

        Raises:
            OperationCancelled: if cancellation is requested before or
                during the sleep.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise OperationCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, aborting it as soon as cancellation is requested.

        The wrapped work runs as a task; on cancellation the task itself is
        cancelled, so an in-flight aiohttp request is torn down at the
        transport level instead of being left to finish in the background.

        Raises:
            OperationCancelled: if cancellation is requested before the
                awaitable completes (or completes at the same time).
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if self._event.is_set():
            # Let the task unwind (closes files and connections) and swallow
            # whatever it ended with; cancellation wins.
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelled()

        return task.result()


@contextlib.contextmanager
def cancel_on_signals(token: CancelToken,
                      on_cancel: Optional[Callable[[], None]] = None):
    """
    Route SIGINT/SIGTERM to `token` for graceful shutdown.

    Must be entered from inside the running event loop; the handler hops back
    onto the loop before touching the token. The previous handlers are put
    back on exit.
    """
    loop = asyncio.get_running_loop()

    def _request() -> None:
        if token.cancel() and on_cancel is not None:
            on_cancel()

    def _signal_handler(sig, frame):
        loop.call_soon_threadsafe(_request)

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _signal_handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            if handler is None:
                continue
            signal.signal(sig, handler)


@contextlib.contextmanager
def default_interrupts():
    """
    Let Ctrl-C raise KeyboardInterrupt again, e.g. around a blocking input()
    where the event loop cannot run the token handler.
    """
    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, signal.default_int_handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
