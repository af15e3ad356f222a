"""
Local per-user request limiter (sliding window, in process).
Exceeding the window raises RateLimitExceeded, which classifies as RATE_LIMIT
with a retry-after of the full window.
"""

import logging
import math
import time
from collections import deque
from typing import Callable, Optional

from fastapi import Depends

from adsync.auth import get_current_user_id
from adsync.config import get_settings
from adsync.errors import RateLimitExceeded, classify_exception

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: float,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._hits: dict[str, deque] = {}
        self._last_sweep = self._clock()

    def _sweep(self, now: float) -> None:
        """Drop users whose every hit has left the window."""
        idle = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]
        for key in idle:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> None:
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_requests:
            logger.warning(f"Rate limit '{self.name}' exceeded for {key}")
            raise RateLimitExceeded(retry_after=math.ceil(self.window_seconds), endpoint=self.name)
        hits.append(now)

    def reset(self) -> None:
        self._hits.clear()
        self._last_sweep = self._clock()

    def tracked_keys(self) -> int:
        return len(self._hits)


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter for the platform routes, sized from settings."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = RateLimiter(
            name="platform",
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_minutes * 60,
        )
    return _limiter


async def enforce_rate_limit(
    user_id: str = Depends(get_current_user_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> str:
    try:
        limiter.hit(user_id)
    except RateLimitExceeded as exc:
        raise classify_exception(exc) from exc
    return user_id
