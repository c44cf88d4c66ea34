import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

class RollingWindowLimiter:
    """Request counter over a rolling window, used per upstream provider."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 3600,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the limiter.

        Args:
            limit: Maximum requests allowed inside the window
            window_seconds: Length of the rolling window (default one hour)
            clock: Time source returning epoch seconds
        """
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    def can_request(self) -> bool:
        """Check whether another request fits in the current window."""
        self._prune(self._clock())
        return len(self._requests) < self.limit

    def record(self) -> None:
        """Record a request issued now."""
        now = self._clock()
        self._prune(now)
        self._requests.append(now)

    @property
    def remaining(self) -> int:
        self._prune(self._clock())
        return max(0, self.limit - len(self._requests))

    @property
    def reset_time(self) -> Optional[float]:
        """Epoch seconds when the oldest counted request leaves the window."""
        self._prune(self._clock())
        if not self._requests:
            return None
        return self._requests[0] + self.window_seconds

class ConcurrencyGate:
    """Bounds the number of upstream requests in flight; excess callers wait."""

    def __init__(self, max_in_flight: int = 5):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def __aenter__(self) -> "ConcurrencyGate":
        await self._semaphore.acquire()
        self._in_flight += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def run(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Run a request coroutine factory inside the gate."""
        async with self:
            return await request_fn()
