"""Minimum-spacing throttle for API clients."""

import threading
import time
from typing import Callable


class RateLimiter:
    """Spaces successive calls at least 1/per_second apart."""

    def __init__(
        self,
        per_second: float = 7.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if per_second <= 0:
            raise ValueError("per_second must be positive")
        self.per_second = per_second
        self.min_interval = 1.0 / per_second
        self._clock = clock
        self._sleep = sleep
        self._last = None
        self._lock = threading.Lock()

    def throttle(self) -> None:
        """Block until the next call is allowed."""
        with self._lock:
            now = self._clock()
            if self._last is not None:
                elapsed = now - self._last
                if elapsed < self.min_interval:
                    self._sleep(self.min_interval - elapsed)
            self._last = self._clock()
