"""Sliding-window rate limiting per provider."""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Optional, Sequence, Tuple

from ..errors import RateLimitExceeded

logger = logging.getLogger(__name__)

WINDOW_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}
WINDOWS = tuple(WINDOW_SECONDS)

# Requests per minute when nothing is configured.
DEFAULT_LIMITS = {
    "openai": 60,
    "anthropic": 50,
    "google": 60,
}
FALLBACK_LIMIT = 60


def window_seconds(window: str) -> int:
    try:
        return WINDOW_SECONDS[window]
    except KeyError:
        raise ValueError(f"Unknown rate limit window: {window}") from None


class RateLimiter(ABC):
    """Interface for provider rate limiting.

    Implementations never block: callers ask for the delay and reschedule.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.detected_limits: Dict[str, int] = {}

    def get_limit(self, provider: str, window: str = "minute") -> int:
        """Resolve the request limit for a provider and window.

        Precedence: ``providers.<name>.<window>``, then the global
        ``<window>`` key, then the per-minute limit detected from the
        provider's account tier, then the provider's per-minute default.
        Longer windows without their own setting scale the minute limit.
        """
        provider_limits = self.config.get("providers", {}).get(provider, {})
        if window in provider_limits:
            return int(provider_limits[window])
        if window in self.config:
            return int(self.config[window])
        if window != "minute":
            return self.get_limit(provider, "minute") * (window_seconds(window) // 60)

        return self.detected_limits.get(provider) or DEFAULT_LIMITS.get(provider, FALLBACK_LIMIT)

    def set_detected_limit(self, provider: str, rpm: int):
        """Use a vendor-reported requests-per-minute figure instead of the default."""
        if rpm <= 0:
            raise ValueError(f"Detected limit for {provider} must be positive, got {rpm}")
        self.detected_limits[provider] = int(rpm)
        logger.info(f"Using detected limit of {rpm} requests/minute for {provider}")

    @abstractmethod
    def current_count(self, provider: str, window: str = "minute") -> int:
        pass

    @abstractmethod
    def record(self, provider: str, window: str = "minute") -> int:
        """Record one request now. Returns the count in the window afterwards."""
        pass

    @abstractmethod
    def delay_seconds(self, provider: str, window: str = "minute") -> int:
        """Seconds until a slot frees up, 0 when allowed."""
        pass

    @abstractmethod
    def acquire(self, provider: str, windows: Sequence[str] = WINDOWS) -> int:
        """Take a slot in every window, or none of them.

        Returns 0 when the request was recorded, otherwise the longest delay
        among the full windows. Check and record happen as one step so that
        concurrent workers cannot overrun a window between them.
        """
        pass

    @abstractmethod
    def reset(self, provider: Optional[str] = None):
        pass

    def allowed(self, provider: str, window: str = "minute") -> bool:
        return self.current_count(provider, window) < self.get_limit(provider, window)

    def remaining(self, provider: str, window: str = "minute") -> int:
        return max(0, self.get_limit(provider, window) - self.current_count(provider, window))

    def is_approaching_limit(
        self, provider: str, window: str = "minute", threshold: float = 0.8
    ) -> bool:
        limit = self.get_limit(provider, window)
        if limit <= 0:
            return True
        return self.current_count(provider, window) / limit >= threshold

    def wait_seconds(self, provider: str, windows: Sequence[str] = WINDOWS) -> int:
        """Longest delay across the given windows, 0 when every one has room."""
        return max((self.delay_seconds(provider, window) for window in windows), default=0)

    def check(self, provider: str, windows: Sequence[str] = WINDOWS):
        """Acquire a slot or raise RateLimitExceeded with the wait in seconds."""
        delay = self.acquire(provider, windows)
        if delay > 0:
            raise RateLimitExceeded(provider, delay)

    def status(self, providers=None) -> Dict[str, Dict[str, Any]]:
        """Snapshot of minute and hour usage for each provider."""
        providers = providers or list(DEFAULT_LIMITS)
        result = {}
        for provider in providers:
            result[provider] = {
                "minute": {
                    "limit": self.get_limit(provider, "minute"),
                    "current": self.current_count(provider, "minute"),
                    "remaining": self.remaining(provider, "minute"),
                    "delay": self.delay_seconds(provider, "minute"),
                },
                "hour": {
                    "limit": self.get_limit(provider, "hour"),
                    "current": self.current_count(provider, "hour"),
                    "remaining": self.remaining(provider, "hour"),
                },
            }
        return result


class InMemoryRateLimiter(RateLimiter):
    """Process-local limiter keeping request timestamps in deques.

    Counts are not shared between processes; deployments running several
    workers against one API key need a shared implementation of RateLimiter.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(config)
        self.clock = clock
        self.lock = threading.Lock()
        self.windows: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        logger.debug("Using in-memory rate limiter; limits are per process")

    def _purge(self, key: Tuple[str, str], now: float) -> Deque[float]:
        timestamps = self.windows[key]
        cutoff = now - window_seconds(key[1])
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    def _delay(self, key: Tuple[str, str], limit: int, now: float) -> int:
        """Seconds until the window has a free slot; caller holds the lock."""
        timestamps = self._purge(key, now)
        if len(timestamps) < limit:
            return 0
        if not timestamps:
            return window_seconds(key[1])
        return max(0, math.ceil(timestamps[0] + window_seconds(key[1]) - now) + 1)

    def current_count(self, provider: str, window: str = "minute") -> int:
        with self.lock:
            return len(self._purge((provider, window), self.clock()))

    def record(self, provider: str, window: str = "minute") -> int:
        with self.lock:
            now = self.clock()
            timestamps = self._purge((provider, window), now)
            timestamps.append(now)
            count = len(timestamps)

        logger.debug(f"Recorded {provider} request ({count} in {window})")
        return count

    def delay_seconds(self, provider: str, window: str = "minute") -> int:
        limit = self.get_limit(provider, window)
        with self.lock:
            return self._delay((provider, window), limit, self.clock())

    def acquire(self, provider: str, windows: Sequence[str] = WINDOWS) -> int:
        limits = {window: self.get_limit(provider, window) for window in windows}
        with self.lock:
            now = self.clock()
            delay = max(
                (self._delay((provider, window), limit, now) for window, limit in limits.items()),
                default=0,
            )
            if delay == 0:
                for window in windows:
                    self.windows[(provider, window)].append(now)

        if delay:
            logger.debug(f"{provider} is rate limited for {delay}s")
        return delay

    def reset(self, provider: Optional[str] = None):
        with self.lock:
            if provider is None:
                self.windows.clear()
                return
            for key in [k for k in self.windows if k[0] == provider]:
                del self.windows[key]
        logger.info(f"Rate limit counters reset for {provider or 'all providers'}")
