"""
Retry policy shared by notification delivery
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from lonelycare.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation flag that also wakes a pending retry delay.

    cancel() may be called from any thread. Off the owning loop the wake-up
    is scheduled with call_soon_threadsafe.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._requested = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def cancel(self) -> None:
        self._requested = True
        loop = self._loop
        if loop is None or loop.is_closed():
            self._event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._event.set()
        else:
            loop.call_soon_threadsafe(self._event.set)

    @property
    def cancelled(self) -> bool:
        return self._requested

    async def wait(self, timeout: float) -> bool:
        """Sleep for timeout seconds. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class RetryPolicy:
    """
    Fixed-delay retry with a bounded number of retries.

    run() calls the operation once per retry, waits `delay` before each call
    and stops on the first result accepted by `is_success`.
    """

    def __init__(self, max_retries: int = 3, delay: timedelta = timedelta(seconds=30)):
        self.max_retries = max_retries
        self.delay = delay

    async def run(self, operation: Callable[[int], Awaitable[T]],
                  is_success: Callable[[T], bool],
                  token: Optional[CancellationToken] = None,
                  should_continue: Optional[Callable[[], bool]] = None) -> Optional[T]:
        """
        Retry `operation(retry_number)` until it succeeds or retries run out.

        Returns the last result, or None if cancelled before any retry ran.
        """
        token = token or CancellationToken()
        result: Optional[T] = None

        for retry_number in range(1, self.max_retries + 1):
            if await token.wait(self.delay.total_seconds()):
                logger.info("Retry cancelled")
                return result
            if should_continue is not None and not should_continue():
                logger.info("Retry stopped, target no longer active")
                return result

            result = await operation(retry_number)
            if is_success(result):
                return result

        return result
