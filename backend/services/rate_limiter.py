"""In-memory fixed-window rate limiting for the bank-link endpoints."""

import logging
import math
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0  # Seconds until the window resets (denials only)


RATE_LIMITS: dict[str, RateLimitConfig] = {
    "consent": RateLimitConfig(limit=10, window_seconds=60),
    "sync": RateLimitConfig(limit=6, window_seconds=60),
    "api": RateLimitConfig(limit=60, window_seconds=60),
}


class RateLimiter:
    """Counts requests per (limit type, key) in fixed windows.

    Single-process only.  Fails open: an unknown limit type or an internal
    error allows the request.
    """

    def __init__(self, limits: dict[str, RateLimitConfig] | None = None, clock=time.monotonic):
        self._limits = limits or RATE_LIMITS
        self._clock = clock
        self._lock = threading.Lock()
        # (limit_type, key) -> (window_start, count)
        self._windows: dict[tuple[str, str], tuple[float, int]] = {}

    def check(self, limit_type: str, key: str) -> RateLimitDecision:
        config = self._limits.get(limit_type)
        if config is None:
            logger.warning("Unknown rate limit type %r; allowing request", limit_type)
            return RateLimitDecision(allowed=True, limit=0, remaining=0)

        try:
            now = self._clock()
            with self._lock:
                self._prune(now)
                start, count = self._windows.get((limit_type, key), (now, 0))
                if now - start >= config.window_seconds:
                    start, count = now, 0

                if count >= config.limit:
                    retry_after = max(1, math.ceil(start + config.window_seconds - now))
                    return RateLimitDecision(
                        allowed=False,
                        limit=config.limit,
                        remaining=0,
                        retry_after=retry_after,
                    )

                count += 1
                self._windows[(limit_type, key)] = (start, count)
                return RateLimitDecision(
                    allowed=True,
                    limit=config.limit,
                    remaining=config.limit - count,
                )
        except Exception:
            logger.warning("Rate limiter failed; allowing request", exc_info=True)
            return RateLimitDecision(allowed=True, limit=config.limit, remaining=config.limit)

    def _prune(self, now: float) -> None:
        """Drop windows that have already reset.  Caller holds the lock."""
        for window_key, (start, _) in list(self._windows.items()):
            config = self._limits.get(window_key[0])
            if config is None or now - start >= config.window_seconds:
                del self._windows[window_key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    """Dependency returning the process-wide limiter (overridable in tests)."""
    return _limiter
