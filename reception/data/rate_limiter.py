"""
Sliding-window rate limiter for outbound review source requests.

Enforces two ceilings at once: a short burst cap (requests per second) and
a sustained cap (requests per minute). One instance is shared by every fetch
in the process, so the ceilings hold no matter how many subjects are queued.

Usage:
    limiter = RateLimiter(max_per_second=3, max_per_minute=60)
    limiter.admit()   # blocks until a request may be issued
"""

import time
import logging
from collections import deque
from typing import Callable, Deque, Dict, Any

logger = logging.getLogger(__name__)

SECOND_WINDOW = 1.0
MINUTE_WINDOW = 60.0


class RequestInterrupted(Exception):
    """A limiter or backoff wait was cut short by a stop request."""
    pass


class RateLimiter:
    """
    Dual sliding-window limiter.

    Timestamps of admitted requests are kept for one minute. On each
    admission the minute window is checked first, then the one-second
    window; if either is full the caller sleeps until the oldest entry
    leaves that window (plus a small margin) and the whole check repeats.

    `sleep` may be a threading.Event.wait: a True return means a stop was
    requested and admit() raises RequestInterrupted without recording.
    """

    def __init__(
        self,
        max_per_second: int = 3,
        max_per_minute: int = 60,
        margin: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if max_per_second <= 0 or max_per_minute <= 0:
            raise ValueError("rate limits must be positive")
        self.max_per_second = max_per_second
        self.max_per_minute = max_per_minute
        self.margin = margin
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()

        self._stats = {
            "admitted": 0,
            "waits": 0,
            "seconds_waited": 0.0,
        }

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= MINUTE_WINDOW:
            self._timestamps.popleft()

    def _oldest_in_second(self, now: float):
        """Return (count, oldest) for the one-second window."""
        count = 0
        oldest = None
        for ts in reversed(self._timestamps):
            if now - ts >= SECOND_WINDOW:
                break
            count += 1
            oldest = ts
        return count, oldest

    def wait_time(self) -> float:
        """Seconds the next caller would have to wait (0 if it may go now)."""
        now = self._clock()
        self._prune(now)

        if len(self._timestamps) >= self.max_per_minute:
            return MINUTE_WINDOW - (now - self._timestamps[0]) + self.margin

        count, oldest = self._oldest_in_second(now)
        if count >= self.max_per_second:
            return SECOND_WINDOW - (now - oldest) + self.margin

        return 0.0

    def admit(self) -> None:
        """Block until one more request is allowed, then record it."""
        while True:
            wait = self.wait_time()
            if wait <= 0:
                break

            if wait >= 1.0:
                logger.info(f"Minute rate limit reached, waiting {wait:.1f}s")
            elif wait > 0.2:
                logger.debug(f"Second rate limit reached, waiting {wait * 1000:.0f}ms")

            self._stats["waits"] += 1
            self._stats["seconds_waited"] += wait
            if self._sleep(wait):
                raise RequestInterrupted(f"Rate limiter wait of {wait:.1f}s interrupted")

        self._timestamps.append(self._clock())
        self._stats["admitted"] += 1

    @property
    def timestamps(self):
        """Admission times still inside the minute window (oldest first)."""
        return list(self._timestamps)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
