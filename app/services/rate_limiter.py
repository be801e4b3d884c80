"""Fixed-window HTTP rate limiter with a periodic expiry sweep."""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog


logger = structlog.get_logger(__name__)


@dataclass
class RateLimitDecision:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the window resets


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Counts requests per key in fixed windows.

    Usage:
        limiter = RateLimiter(max_requests=60, window_s=60)
        await limiter.start()
        decision = limiter.check(client_ip)
        ...
        await limiter.stop()
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_s: float = 60.0,
        sweep_interval_s: float = 300.0,
        time_fn: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize rate limiter.

        Args:
            max_requests: Requests allowed per key per window
            window_s: Window length in seconds
            sweep_interval_s: How often expired windows are dropped
            time_fn: Clock in seconds
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_s <= 0:
            raise ValueError("window_s must be positive")

        self._max_requests = max_requests
        self._window_s = window_s
        self._sweep_interval_s = sweep_interval_s
        self._time_fn = time_fn

        self._windows: Dict[str, _Window] = {}
        self._sweep_task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def __len__(self) -> int:
        return len(self._windows)

    async def start(self) -> None:
        """Start the background sweep."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limiter-sweep")
        logger.info(
            "Rate limiter started",
            max_requests=self._max_requests,
            window_s=self._window_s
        )

    async def stop(self) -> None:
        """Stop the background sweep and forget all windows."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                logger.debug("Rate limiter sweep cancelled")
            self._sweep_task = None
        self._windows.clear()
        logger.info("Rate limiter stopped")

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for key.

        Args:
            key: Client identity, typically its IP address

        Returns:
            Whether the request is allowed, with header values
        """
        now = self._time_fn()
        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = _Window(count=0, reset_at=now + self._window_s)
            self._windows[key] = window

        window.count += 1
        retry_after = max(1, math.ceil(window.reset_at - now))

        if window.count > self._max_requests:
            logger.warning(
                "Rate limit exceeded",
                key=key,
                count=window.count,
                limit=self._max_requests,
                retry_after=retry_after
            )
            return RateLimitDecision(
                allowed=False,
                limit=self._max_requests,
                remaining=0,
                retry_after=retry_after
            )

        return RateLimitDecision(
            allowed=True,
            limit=self._max_requests,
            remaining=self._max_requests - window.count,
            retry_after=retry_after
        )

    def sweep(self) -> int:
        """Drop expired windows.

        Returns:
            Number of windows removed
        """
        now = self._time_fn()
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            removed = self.sweep()
            if removed:
                logger.debug("Rate limiter sweep", removed=removed, remaining=len(self._windows))
