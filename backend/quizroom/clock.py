from __future__ import annotations

import math
import time
from typing import Any, Callable, Mapping, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def convert_server_time(value: Any) -> int:
    """Normalise a server timestamp to epoch milliseconds.

    Accepts epoch-ms numbers and ``{"seconds", "nanoseconds"}`` mappings as
    produced by document stores with server-assigned timestamps. Falsy values
    map to 0.
    """
    if not value:
        return 0
    if isinstance(value, Mapping):
        seconds = int(value.get("seconds") or 0)
        nanos = int(value.get("nanoseconds") or 0)
        return seconds * 1000 + nanos // 1_000_000
    return int(value)


class ClockSync:
    """Shared notion of "now" anchored on the last authoritative timestamp."""

    def __init__(self, local_clock: Optional[Callable[[], int]] = None) -> None:
        self._local_clock = local_clock or now_ms
        self.offset = 0

    def sync_clock_offset(self, server_timestamp: Any) -> None:
        server_ms = convert_server_time(server_timestamp)
        if not server_ms:
            return
        self.offset = server_ms - self._local_clock()

    def get_server_time(self) -> int:
        return self._local_clock() + self.offset

    def get_elapsed_seconds(self, anchor: Any) -> float:
        start_ms = convert_server_time(anchor)
        if not start_ms:
            return 0.0
        return (self.get_server_time() - start_ms) / 1000

    def get_countdown_remaining(self, start: Any, duration_seconds: int) -> int:
        start_ms = convert_server_time(start)
        if not start_ms:
            return duration_seconds
        elapsed = self.get_server_time() - start_ms
        remaining = max(0, duration_seconds * 1000 - elapsed)
        return math.ceil(remaining / 1000)

    def get_remaining_until(self, deadline: Any) -> int:
        deadline_ms = convert_server_time(deadline)
        if not deadline_ms:
            return 0
        return max(0, math.ceil((deadline_ms - self.get_server_time()) / 1000))
