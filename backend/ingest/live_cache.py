"""
In-memory cache of events a provider currently reports as in-play.

Debounces provider gaps: an event is only considered finished after it
has been missing from the in-play list for `miss_threshold` consecutive
polls of its sport. Finished entries linger for a grace window so late
corrective updates still resolve to the same canonical event.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from shared.utils.clock import SYSTEM_CLOCK, Clock


def cache_key(sport_slug: str, provider_event_id: str) -> str:
    return f"{sport_slug}:{provider_event_id}"


@dataclass
class CachedLiveEvent:
    sport_slug: str
    provider_event_id: str
    event_id: uuid.UUID
    score: str = ""
    timer: Optional[str] = None
    miss_count: int = 0
    last_updated: float = 0.0
    ended_at: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    @property
    def key(self) -> str:
        return cache_key(self.sport_slug, self.provider_event_id)

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None


class LiveEventCache:
    def __init__(
        self,
        miss_threshold: int = 3,
        ended_grace_s: float = 300.0,
        ttl_s: float = 7200.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.miss_threshold = miss_threshold
        self.ended_grace_s = ended_grace_s
        self.ttl_s = ttl_s
        self._clock = clock or SYSTEM_CLOCK
        self._entries: dict[str, CachedLiveEvent] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, sport_slug: str, provider_event_id: str) -> Optional[CachedLiveEvent]:
        return self._entries.get(cache_key(sport_slug, provider_event_id))

    def observe(
        self,
        sport_slug: str,
        provider_event_id: str,
        event_id: uuid.UUID,
        score: str,
        timer: Optional[str] = None,
    ) -> bool:
        """
        Record a sighting and return True when the score changed.

        A first sighting is never a change, and neither is an empty score
        (the cached score is kept rather than blanked).
        """
        now = self._clock.monotonic()
        key = cache_key(sport_slug, provider_event_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = CachedLiveEvent(
                    sport_slug=sport_slug,
                    provider_event_id=provider_event_id,
                    event_id=event_id,
                    score=score,
                    timer=timer,
                    last_updated=now,
                )
                return False
            changed = bool(score) and score != entry.score
            if score:
                entry.score = score
            entry.event_id = event_id
            entry.timer = timer
            entry.miss_count = 0
            entry.last_updated = now
            entry.ended_at = None
            return changed

    def record_poll(self, sport_slug: str, seen_ids: Iterable[str]) -> list[CachedLiveEvent]:
        """
        Apply one successful in-play poll for a sport.

        Returns the entries whose miss count reached the threshold on this
        poll; each entry is returned once.
        """
        seen = set(seen_ids)
        now = self._clock.monotonic()
        newly_ended: list[CachedLiveEvent] = []
        with self._lock:
            for entry in self._entries.values():
                if entry.sport_slug != sport_slug or entry.is_ended:
                    continue
                if entry.provider_event_id in seen:
                    entry.miss_count = 0
                    continue
                entry.miss_count += 1
                if entry.miss_count >= self.miss_threshold:
                    entry.ended_at = now
                    newly_ended.append(entry)
        return newly_ended

    def evict_expired(self) -> int:
        now = self._clock.monotonic()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if (entry.ended_at is not None and now - entry.ended_at >= self.ended_grace_s)
                or now - entry.last_updated >= self.ttl_s
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def live_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for entry in self._entries.values():
                if not entry.is_ended:
                    counts[entry.sport_slug] = counts.get(entry.sport_slug, 0) + 1
        return counts

    def live_entries(self, sport_slug: Optional[str] = None) -> list[CachedLiveEvent]:
        with self._lock:
            return [
                e for e in self._entries.values()
                if not e.is_ended and (sport_slug is None or e.sport_slug == sport_slug)
            ]
