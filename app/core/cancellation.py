"""Cooperative cancellation tokens shared between a run and its node attempts."""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from .exceptions import ExecutionCancelledError
from .logging import get_logger


logger = get_logger(__name__)


class CancellationToken:
    """
    A one-way cancellation signal.

    Tokens form a tree: cancelling a token cancels every child created from it,
    while cancelling a child leaves the parent untouched. The workflow executor
    owns one token per run and hands each node attempt a child token, so a
    per-attempt timeout only affects that attempt while ``stop()`` reaches
    whatever node is in flight.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], Any]] = []
        self._children: List["CancellationToken"] = []
        self._parent = parent

        if parent is not None:
            parent._children.append(self)
            # Born cancelled if the parent already is
            if parent.is_cancelled:
                self.cancel(parent.reason)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)

    def cancel(self, reason: str = "Cancelled") -> None:
        """Signal cancellation. Calling it again has no effect."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason

        # Drained first so callbacks may call remove_callback safely
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}", exc_info=True)

        for child in list(self._children):
            child.cancel(reason)

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Register a callback run on cancellation, or immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def close(self) -> None:
        """Detach this token from its parent once the owning attempt is finished."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self._parent = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ExecutionCancelledError(self._reason or "Workflow execution was cancelled")

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()

        def _wake():
            if not waiter.done():
                waiter.set_result(None)

        self.add_callback(_wake)
        try:
            await waiter
        finally:
            self.remove_callback(_wake)

    async def sleep(self, delay: float) -> None:
        """
        Sleep for ``delay`` seconds unless cancelled first.

        Raises:
            ExecutionCancelledError: If the token is or becomes cancelled
        """
        self.raise_if_cancelled()
        if delay <= 0:
            return

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def _finish(completed: bool):
            if not waiter.done():
                waiter.set_result(completed)

        # True when the timer fires, False when cancellation wins
        handle = loop.call_later(delay, _finish, True)
        on_cancel = lambda: _finish(False)
        self.add_callback(on_cancel)
        try:
            completed = await waiter
        finally:
            handle.cancel()
            self.remove_callback(on_cancel)

        if not completed:
            self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await ``awaitable`` but abandon it as soon as the token is cancelled.

        Raises:
            ExecutionCancelledError: If cancellation wins the race
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        self.raise_if_cancelled()
