"""Fixed-window rate limiting for ban-sensitive WhatsApp operations.

Counters live in memory only; restarting the process resets them.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from kaswa.defaults.config import CONNECTION_POLICY, DEFAULT_IDENTIFIER, QR_GENERATION_POLICY


def _now_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


class RateLimiter:
    """Per-key fixed-window counters.

    Denial is reported as ``False``, never raised.
    """

    QR_GENERATION_LIMIT, QR_GENERATION_WINDOW = QR_GENERATION_POLICY
    CONNECTION_LIMIT, CONNECTION_WINDOW = CONNECTION_POLICY

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or _now_ms
        self._limits: dict[str, RateLimitEntry] = {}

    def check_limit(self, key: str, max_count: int, window_ms: float) -> bool:
        now = self._clock()
        entry = self._limits.get(key)

        if entry is None or now > entry.reset_time:
            self._limits[key] = RateLimitEntry(count=1, reset_time=now + window_ms)
            return True

        if entry.count >= max_count:
            return False

        entry.count += 1
        return True

    def is_limited(self, key: str, max_count: int) -> bool:
        """Whether ``check_limit`` would deny ``key`` right now, without counting."""
        entry = self._limits.get(key)
        if entry is None or self._clock() > entry.reset_time:
            return False
        return entry.count >= max_count

    def remaining_time(self, key: str) -> int:
        entry = self._limits.get(key)
        if entry is None:
            return 0
        return max(0, int(entry.reset_time - self._clock()))

    def check_qr_generation_limit(self, identifier: str = DEFAULT_IDENTIFIER) -> bool:
        return self.check_limit(f"qr_{identifier}", self.QR_GENERATION_LIMIT, self.QR_GENERATION_WINDOW)

    def check_connection_limit(self, identifier: str = DEFAULT_IDENTIFIER) -> bool:
        return self.check_limit(f"conn_{identifier}", self.CONNECTION_LIMIT, self.CONNECTION_WINDOW)

    def qr_generation_limited(self, identifier: str = DEFAULT_IDENTIFIER) -> bool:
        return self.is_limited(f"qr_{identifier}", self.QR_GENERATION_LIMIT)

    def connection_limited(self, identifier: str = DEFAULT_IDENTIFIER) -> bool:
        return self.is_limited(f"conn_{identifier}", self.CONNECTION_LIMIT)

    def get_qr_remaining_time(self, identifier: str = DEFAULT_IDENTIFIER) -> int:
        return self.remaining_time(f"qr_{identifier}")

    def get_connection_remaining_time(self, identifier: str = DEFAULT_IDENTIFIER) -> int:
        return self.remaining_time(f"conn_{identifier}")

    def reset(self, identifier: str | None = None) -> None:
        if identifier:
            self._limits.pop(f"qr_{identifier}", None)
            self._limits.pop(f"conn_{identifier}", None)
        else:
            self._limits.clear()
