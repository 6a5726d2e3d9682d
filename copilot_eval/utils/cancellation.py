"""
Cooperative cancellation
Threads host shutdown and processing deadlines into long-running work
"""
import asyncio
import time
from typing import Optional

from copilot_eval.utils.errors import CancellationRequested


class CancellationSignal:
    """
    Cancellation flag checked at row and phase boundaries

    A signal is cancelled when cancel() was called on it, when its parent is
    cancelled, or when its deadline has passed.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional["CancellationSignal"] = None):
        self._event = asyncio.Event()
        self._deadline = deadline
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.is_cancelled

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancellationRequested("Operation was cancelled")

    def linked(self, timeout_seconds: Optional[float] = None) -> "CancellationSignal":
        """Child signal cancelled by this one or after timeout_seconds"""
        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        return CancellationSignal(deadline=deadline, parent=self)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Sleep until cancelled or timeout elapses

        Returns:
            True if the signal is cancelled when the wait ends
        """
        if self.is_cancelled:
            return True
        # Parent and deadline are polled, so wake up at least once a second
        remaining = timeout
        while not self.is_cancelled:
            step = 1.0 if remaining is None else min(1.0, remaining)
            if step <= 0:
                break
            try:
                await asyncio.wait_for(self._event.wait(), timeout=step)
            except asyncio.TimeoutError:
                pass
            if remaining is not None:
                remaining -= step
        return self.is_cancelled
