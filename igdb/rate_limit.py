"""Request spacing for the IGDB API quota."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable

IGDB_REQUESTS_PER_SECOND = 4


class RateLimiter:
    """Enforce a minimum interval between consecutive requests.

    ``wait`` blocks until ``min_interval`` seconds have passed since the
    previous ``wait`` returned. The first call never blocks. Callers are
    serialized by a lock, so concurrent waiters are released one at a time.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._min_interval = max(float(min_interval), 0.0)
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = Lock()
        self._last_release: float | None = None

    @classmethod
    def per_second(cls, requests: float = IGDB_REQUESTS_PER_SECOND, **kwargs) -> "RateLimiter":
        if not requests or requests <= 0:
            return cls(0.0, **kwargs)
        return cls(1.0 / float(requests), **kwargs)

    @property
    def min_interval(self) -> float:
        return self._min_interval

    def wait(self) -> None:
        with self._lock:
            if self._last_release is not None:
                remaining = self._last_release + self._min_interval - self._clock()
                if remaining > 0:
                    self._sleep(remaining)
            self._last_release = self._clock()


__all__ = ["IGDB_REQUESTS_PER_SECOND", "RateLimiter"]
