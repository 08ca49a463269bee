"""Per-key sliding window admission control."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from .config import RateLimitConfig
from .models import RateLimitDecision

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    hits: Deque[float] = field(default_factory=deque)
    last_access: float = 0.0


class RateLimiter:
    """Sliding window log keyed by admission key.

    All counter mutation happens under one lock so concurrent requests for the
    same key cannot both claim the last slot. Idle windows are swept at most
    once per ``window_seconds``.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep: Optional[float] = None

    def check(self, key: str) -> RateLimitDecision:
        if not key:
            raise ValueError("rate limit key must not be empty")

        limit = self.config.limit
        window_seconds = self.config.window_seconds
        with self._lock:
            now = self._clock()
            if self._next_sweep is None or now >= self._next_sweep:
                self._evict_idle(now)
                self._next_sweep = now + window_seconds
            window = self._windows.get(key)
            if window is None:
                window = _Window()
                self._windows[key] = window
            window.last_access = now

            while window.hits and now - window.hits[0] >= window_seconds:
                window.hits.popleft()

            if len(window.hits) >= limit:
                reset_after = window_seconds - (now - window.hits[0]) if window.hits else window_seconds
                logger.info("Rate limit hit for %s (%d in %.0fs)", key, len(window.hits), window_seconds)
                return RateLimitDecision(success=False, limit=limit, remaining=0, reset_after=reset_after)

            window.hits.append(now)
            return RateLimitDecision(
                success=True,
                limit=limit,
                remaining=limit - len(window.hits),
                reset_after=window_seconds - (now - window.hits[0]),
            )

    def _evict_idle(self, now: float) -> None:
        ttl = max(self.config.idle_ttl_seconds, self.config.window_seconds)
        expired = [key for key, window in self._windows.items() if now - window.last_access > ttl]
        for key in expired:
            logger.debug("Evicting idle rate limit window for %s", key)
            self._windows.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)
