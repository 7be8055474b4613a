from __future__ import annotations

import time
from typing import Callable, Optional

from pyrate_limiter import BucketFullException, Duration, Limiter, LimiterDelayException, Rate


class DeadlineExceeded(RuntimeError):
    pass


class Deadline:
    """Wall-clock budget for a run, measured on a monotonic clock.

    A Deadline with no budget never expires.
    """

    def __init__(self, budget_s: Optional[float] = None, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._start = clock()
        self.budget_s = budget_s

    def elapsed(self) -> float:
        return self._clock() - self._start

    def remaining(self) -> Optional[float]:
        if self.budget_s is None:
            return None
        return max(0.0, self.budget_s - self.elapsed())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound(self, timeout_s: float) -> float:
        """Clamp a per-operation timeout to the time left in the run."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_s
        return min(timeout_s, remaining)


class TokenBucket:
    """Blocking limiter shared by every outbound request, backed by pyrate-limiter.

    Allows `burst` requests per `burst / rate` seconds, so the default is one
    request per second. `wait()` blocks until a request may go out. When a
    deadline is given and the limiter would only admit the request after it,
    `DeadlineExceeded` is raised without sleeping.
    """

    def __init__(self, rate: float = 1.0, burst: int = 1, *, name: str = "agenda-watch"):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self.name = name
        self.interval_ms = max(1, int(round(self.burst / self.rate * Duration.SECOND)))
        # the longest a single acquire can ever need; the extra second covers the library's delay buffer
        self._max_delay_ms = self.interval_ms + int(Duration.SECOND)
        self._limiter = Limiter(
            Rate(self.burst, self.interval_ms),
            raise_when_fail=True,
            max_delay=self._max_delay_ms,
        )

    def wait(self, deadline: Optional[Deadline] = None) -> None:
        remaining = deadline.remaining() if deadline is not None else None
        max_delay = self._max_delay_ms
        if remaining is not None:
            max_delay = min(max_delay, int(remaining * 1000))
        self._limiter.max_delay = max_delay
        try:
            self._limiter.try_acquire(self.name)
        except (BucketFullException, LimiterDelayException) as e:
            raise DeadlineExceeded(f"rate limiter wait exceeds remaining run time: {e}") from e
