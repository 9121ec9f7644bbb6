from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import math
import time
from typing import Callable, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


class SlidingWindowLimiter:
    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def allow(self, key: str, max_events: int, period_seconds: int) -> bool:
        now = time.time()
        window_start = now - period_seconds
        events = self._events[key]
        while events and events[0] < window_start:
            events.popleft()

        if len(events) >= max_events:
            return False

        events.append(now)
        return True

    def clear(self) -> None:
        self._events.clear()


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int


@dataclass
class _Window:
    count: int
    reset_at: int


class FixedWindowLimiter:
    """Per-key attempt counter that resets fully once its window has elapsed.

    This is an abuse-prevention layer for the game surface, not a security
    boundary; counters live in process memory.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._clock = clock or _now_ms
        self._windows: dict[str, _Window] = {}

    def check(self, key: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = _Window(count=0, reset_at=now + window_ms)
            self._windows[key] = window

        reset_in = math.ceil((window.reset_at - now) / 1000)
        if window.count >= max_attempts:
            return RateLimitResult(allowed=False, remaining=0, reset_in=reset_in)

        window.count += 1
        return RateLimitResult(allowed=True, remaining=max_attempts - window.count, reset_in=reset_in)

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def clear_all(self) -> None:
        self._windows.clear()
