"""Fixed-window rate limiters keyed by name."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from datasync.errors import RateLimitedError
from datasync.retry.circuit_breaker import Work, run_work

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_MS = 60_000


@dataclass
class RateWindow:
    max_requests: int
    window_ms: int
    window_start: float
    count: int = 0
    allowed: int = 0
    rejected: int = 0


class RateLimiterRegistry:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def init(
        self,
        name: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> None:
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self._windows[name] = RateWindow(
            max_requests=max_requests,
            window_ms=window_ms,
            window_start=self._clock(),
        )
        self._locks.setdefault(name, asyncio.Lock())

    def ensure(
        self,
        name: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> None:
        """Like init, but an existing window keeps its limits and current count."""
        if name not in self._windows:
            self.init(name, max_requests, window_ms)

    async def call(self, name: str, work: Work) -> Any:
        """Run work if the current window still has capacity.

        Unconfigured names are not limited.

        Raises:
            RateLimitedError: window is full; work was not invoked.
        """
        window = self._windows.get(name)
        if window is None:
            return await run_work(work)

        async with self._locks[name]:
            now = self._clock()
            elapsed_ms = (now - window.window_start) * 1000
            if elapsed_ms >= window.window_ms:
                window.window_start = now
                window.count = 0
                elapsed_ms = 0
            if window.count >= window.max_requests:
                window.rejected += 1
                retry_after = int(round(window.window_ms - elapsed_ms))
                logger.debug("Rate limiter %s full, retry after %dms", name, retry_after)
                raise RateLimitedError(name, retry_after_ms=retry_after)
            window.count += 1
            window.allowed += 1

        return await run_work(work)

    def metrics(self, name: str) -> Dict[str, Any]:
        window = self._windows.get(name)
        if window is None:
            return {"name": name, "configured": False}
        return {
            "name": name,
            "configured": True,
            "max_requests": window.max_requests,
            "window_ms": window.window_ms,
            "current_count": window.count,
            "allowed": window.allowed,
            "rejected": window.rejected,
        }

    def cleanup(self, name: str) -> None:
        self._windows.pop(name, None)
        self._locks.pop(name, None)
