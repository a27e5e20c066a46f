"""
Per-provider sliding-window rate limiting with cooldown.

Admission is non-blocking: try_acquire() answers immediately and callers
decide whether to skip or take one bounded wait via wait_for_slot().
"""
from __future__ import annotations

import asyncio
import threading
from collections import deque
from typing import Awaitable, Callable, Optional

from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.logging import get_logger
from shared.utils.metrics import RATE_LIMIT_AVAILABLE, RATE_LIMIT_DENIALS

logger = get_logger(__name__)

MINUTE_S = 60.0
HOUR_S = 3600.0


class SlidingWindowRateLimiter:
    """
    Two-window limiter (per minute, per hour) over a deque of admission
    timestamps, plus a cooldown started when the provider reports throttling.

    Args:
        name: Provider name, used for logs and metrics.
        per_minute: Ceiling for any rolling 60 s window (0 = unlimited).
        per_hour: Ceiling for any rolling 3600 s window (0 = unlimited).
        cooldown_s: How long every acquisition fails after a 429.
        clock: Time source; only clock.monotonic() is used.
    """

    def __init__(
        self,
        name: str,
        per_minute: int,
        per_hour: int = 0,
        cooldown_s: float = 300.0,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.per_minute = max(0, per_minute)
        self.per_hour = max(0, per_hour)
        self.cooldown_s = cooldown_s
        self._clock = clock or SYSTEM_CLOCK
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._cooldown_until = 0.0
        self._consecutive_throttles = 0
        self._lock = threading.Lock()

    # ── Internals (caller holds the lock) ───────────────────────────────
    def _prune(self, now: float) -> None:
        horizon = HOUR_S if self.per_hour else MINUTE_S
        while self._timestamps and now - self._timestamps[0] >= horizon:
            self._timestamps.popleft()

    def _minute_count(self, now: float) -> int:
        # Deque is sorted; count from the right until outside the minute.
        count = 0
        for ts in reversed(self._timestamps):
            if now - ts >= MINUTE_S:
                break
            count += 1
        return count

    def _remaining(self, now: float) -> int:
        if now < self._cooldown_until:
            return 0
        self._prune(now)
        limits: list[int] = []
        if self.per_minute:
            limits.append(self.per_minute - self._minute_count(now))
        if self.per_hour:
            limits.append(self.per_hour - len(self._timestamps))
        if not limits:
            return 1_000_000
        return max(0, min(limits))

    # ── Public API ──────────────────────────────────────────────────────
    @property
    def in_cooldown(self) -> bool:
        return self._clock.monotonic() < self._cooldown_until

    def try_acquire(self) -> bool:
        """Admit one request now, or return False without waiting."""
        with self._lock:
            now = self._clock.monotonic()
            if now < self._cooldown_until:
                RATE_LIMIT_DENIALS.labels(provider=self.name, source="cooldown").inc()
                return False
            if self._remaining(now) <= 0:
                RATE_LIMIT_DENIALS.labels(provider=self.name, source="window").inc()
                return False
            self._timestamps.append(now)
            RATE_LIMIT_AVAILABLE.labels(provider=self.name).set(self._remaining(now))
            return True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_throttles = 0

    def record_too_many_requests(self) -> None:
        """Provider said 429: refuse everything until the cooldown passes."""
        with self._lock:
            self._consecutive_throttles += 1
            self._cooldown_until = self._clock.monotonic() + self.cooldown_s
            RATE_LIMIT_AVAILABLE.labels(provider=self.name).set(0)
        logger.warning(
            "rate_limit_cooldown_started",
            provider=self.name,
            cooldown_s=self.cooldown_s,
            consecutive=self._consecutive_throttles,
        )

    def available_slots(self) -> int:
        with self._lock:
            return self._remaining(self._clock.monotonic())

    def seconds_until_available(self) -> float:
        """0 when a slot is free now; otherwise when the oldest blocking timestamp ages out."""
        with self._lock:
            now = self._clock.monotonic()
            if now < self._cooldown_until:
                return self._cooldown_until - now
            self._prune(now)
            waits = [0.0]
            if self.per_minute and self._minute_count(now) >= self.per_minute:
                in_minute = [ts for ts in self._timestamps if now - ts < MINUTE_S]
                waits.append(in_minute[-self.per_minute] + MINUTE_S - now)
            if self.per_hour and len(self._timestamps) >= self.per_hour:
                waits.append(self._timestamps[-self.per_hour] + HOUR_S - now)
            return max(waits)

    async def wait_for_slot(self, max_wait_s: float) -> bool:
        """
        One bounded wait, then a single retry. Never loops: if the slot is
        still unavailable the caller gives up for this cycle.
        """
        if self.try_acquire():
            return True
        wait = self.seconds_until_available()
        if wait <= 0 or wait > max_wait_s:
            return False
        await self._sleep(wait)
        return self.try_acquire()

    def snapshot(self) -> dict[str, float | int | bool]:
        with self._lock:
            now = self._clock.monotonic()
            return {
                "available": self._remaining(now),
                "in_cooldown": now < self._cooldown_until,
                "cooldown_remaining_s": round(max(0.0, self._cooldown_until - now), 1),
                "requests_last_minute": self._minute_count(now),
                "requests_last_hour": len(self._timestamps),
            }
