"""
Injectable time source.
Engines, caches and limiters take a Clock so tests can drive time explicitly.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone


class Clock:
    """Wall clock (UTC datetimes) plus a monotonic counter for intervals."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


SYSTEM_CLOCK = Clock()
