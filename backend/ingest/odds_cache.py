"""Short-TTL cache of normalized odds per provider event."""
from __future__ import annotations

import threading
from typing import Optional

from shared.models.domain import NormalizedMarket
from shared.utils.clock import SYSTEM_CLOCK, Clock


class OddsCache:
    def __init__(self, ttl_s: float = 5.0, clock: Optional[Clock] = None) -> None:
        self.ttl_s = ttl_s
        self._clock = clock or SYSTEM_CLOCK
        self._entries: dict[str, tuple[float, list[NormalizedMarket]]] = {}
        self._lock = threading.Lock()

    def get(self, provider_event_id: str) -> Optional[list[NormalizedMarket]]:
        """Cached markets, or None when missing or older than the TTL."""
        with self._lock:
            hit = self._entries.get(provider_event_id)
            if hit is None:
                return None
            stored_at, markets = hit
            if self._clock.monotonic() - stored_at >= self.ttl_s:
                del self._entries[provider_event_id]
                return None
            return markets

    def put(self, provider_event_id: str, markets: list[NormalizedMarket]) -> None:
        with self._lock:
            self._entries[provider_event_id] = (self._clock.monotonic(), markets)

    def purge(self) -> int:
        now = self._clock.monotonic()
        with self._lock:
            stale = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl_s]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
