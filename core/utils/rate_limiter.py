"""
Token bucket rate limiter for outbound broker calls.
"""

import asyncio
import threading
import time
from typing import Awaitable, Callable, Optional

from core.config.settings import RateLimiterSettings
from core.logging import get_api_logger_safe
from core.utils.exceptions import AdmissionTimeoutError, ConfigurationError

logger = get_api_logger_safe("core.utils.rate_limiter")


class TokenBucketRateLimiter:
    """
    Token bucket admission control shared by all calls of one traffic class.

    Tokens accrue continuously at ``max_requests / period_seconds`` per second
    up to ``burst_size``. The bucket starts full. State is guarded by a
    threading lock, so one instance may be shared across threads as well as
    asyncio tasks.
    """

    def __init__(
        self,
        max_requests: int,
        period_seconds: float,
        burst_size: int,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests <= 0:
            raise ConfigurationError("max_requests must be positive", "max_requests", max_requests)
        if period_seconds <= 0:
            raise ConfigurationError("period_seconds must be positive", "period_seconds", period_seconds)
        if burst_size <= 0:
            raise ConfigurationError("burst_size must be positive", "burst_size", burst_size)

        self.max_requests = max_requests
        self.period_seconds = period_seconds
        self.burst_size = burst_size
        self.name = name

        self._clock = clock
        self._sleep = sleep
        self._rate = max_requests / period_seconds  # tokens per second
        self._tokens = float(burst_size)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RateLimiterSettings, name: str = "default", **kwargs) -> "TokenBucketRateLimiter":
        return cls(
            max_requests=settings.max_requests,
            period_seconds=settings.period_seconds,
            burst_size=settings.burst_size,
            name=name,
            **kwargs,
        )

    @property
    def rate(self) -> float:
        """Refill rate in tokens per second."""
        return self._rate

    def _refill(self) -> None:
        """Refill tokens based on elapsed time. Caller holds the lock."""
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        self._tokens = min(float(self.burst_size), self._tokens + elapsed * self._rate)

    def try_acquire(self) -> bool:
        """
        Try to consume one token without waiting.
        Returns True if a token was consumed, False otherwise.
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def time_until_available(self) -> float:
        """Seconds until at least one token will be available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._rate

    async def acquire(self, timeout: Optional[float] = None) -> float:
        """
        Wait until a token is available and consume it.

        Waiters are not queued: whichever waiter wakes first after a token
        accrues takes it. Tokens only leave the bucket inside ``try_acquire``,
        so a waiter cancelled while sleeping never consumes one.

        Args:
            timeout: Maximum seconds to wait for admission; None waits forever.

        Returns:
            Total seconds spent waiting.

        Raises:
            AdmissionTimeoutError: If the token would not arrive within ``timeout``.
        """
        started = self._clock()
        while True:
            waited = max(0.0, self._clock() - started)
            if self.try_acquire():
                if waited > 0:
                    logger.debug("Rate limiter admitted after wait",
                                 limiter=self.name, waited_seconds=round(waited, 4))
                return waited

            wait_time = self.time_until_available()
            if timeout is not None and waited + wait_time > timeout:
                logger.warning("Rate limiter admission timed out",
                               limiter=self.name, timeout_seconds=timeout,
                               waited_seconds=round(waited, 4))
                raise AdmissionTimeoutError(
                    f"No rate limit token for '{self.name}' within {timeout}s",
                    timeout_seconds=timeout,
                    wait_seconds=waited + wait_time,
                )

            logger.debug("Rate limit reached, waiting",
                         limiter=self.name, wait_seconds=round(wait_time, 4))
            # Never sleep zero: another waiter may have taken the token we computed
            await self._sleep(max(wait_time, 0.001))

    @property
    def available_tokens(self) -> float:
        """Current available tokens."""
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        """Refill the bucket to burst capacity."""
        with self._lock:
            self._tokens = float(self.burst_size)
            self._last_refill = self._clock()

    def __repr__(self) -> str:
        return (f"TokenBucketRateLimiter(name={self.name!r}, max_requests={self.max_requests}, "
                f"period_seconds={self.period_seconds}, burst_size={self.burst_size})")
