"""
Resilience Primitives
---------------------
Retry backoff and the non-cancelling timeout race used by the executor.

A timed-out attempt is abandoned, not killed: the handler keeps running
and whatever it eventually produces is dropped.
"""

from threading import Lock
from typing import Any, Optional, Set
import asyncio
import logging

from .errors import ToolTimeoutError


class RetryPolicy:
    """
    Exponential backoff between attempts.

    delay(attempt) = min(base_delay * 2 ** attempt, max_delay)
    """

    def __init__(self, base_delay: float = 0.1, max_delay: float = 2.0):
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        self.base_delay = base_delay
        self.max_delay = max_delay

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds after the given zero-based failed attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def wait(self, attempt: int) -> None:
        delay = self.get_delay(attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    def __repr__(self) -> str:
        return f"RetryPolicy(base={self.base_delay}s, max={self.max_delay}s)"


class AbandonedAttempts:
    """
    Holds references to timed-out attempts until they settle.

    Results and exceptions of abandoned attempts are consumed and logged
    at debug level; nothing else ever sees them.
    """

    def __init__(self):
        self._pending: Set[asyncio.Future] = set()
        self._lock = Lock()
        self._discarded = 0
        self._logger = logging.getLogger("toolgate.core.resilience")

    def abandon(self, future: asyncio.Future, label: str = "") -> None:
        with self._lock:
            self._pending.add(future)

        def _settle(fut: asyncio.Future) -> None:
            with self._lock:
                self._pending.discard(fut)
                self._discarded += 1
            if fut.cancelled():
                self._logger.debug(f"Abandoned attempt cancelled: {label}")
                return
            exc = fut.exception()
            if exc is not None:
                self._logger.debug(f"Discarded late failure from {label}: {exc!r}")
            else:
                self._logger.debug(f"Discarded late result from {label}")

        future.add_done_callback(_settle)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def discarded(self) -> int:
        with self._lock:
            return self._discarded


async def run_with_timeout(
    future: asyncio.Future,
    timeout: Optional[float],
    abandoned: AbandonedAttempts,
    label: str = ""
) -> Any:
    """
    Wait for an already-started attempt, at most `timeout` seconds.

    Raises ToolTimeoutError when the deadline fires first. The attempt
    is handed to `abandoned` instead of being cancelled.
    """
    if timeout is None:
        return await future

    done, _ = await asyncio.wait({future}, timeout=timeout)
    if future in done:
        return future.result()

    abandoned.abandon(future, label)
    raise ToolTimeoutError(label, timeout)
