"""
Unit tests for the live event cache and the odds cache.

Run: pytest backend/tests/test_caches.py -v
"""
from __future__ import annotations

import uuid

from shared.models.enums import MarketType
from shared.models.domain import NormalizedMarket

from ingest.live_cache import LiveEventCache, cache_key
from ingest.odds_cache import OddsCache

EVENT_ID = uuid.uuid4()


def _cache(clock) -> LiveEventCache:
    return LiveEventCache(miss_threshold=3, ended_grace_s=300, ttl_s=7200, clock=clock)


class TestScoreChangeDetection:
    def test_first_sighting_is_not_a_change(self, clock) -> None:
        cache = _cache(clock)
        assert cache.observe("football", "e1", EVENT_ID, "1-0") is False

    def test_new_score_is_a_change(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        assert cache.observe("football", "e1", EVENT_ID, "1-0") is True
        assert cache.observe("football", "e1", EVENT_ID, "1-0") is False

    def test_empty_score_keeps_cached_one(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "2-1")
        assert cache.observe("football", "e1", EVENT_ID, "") is False
        assert cache.get("football", "e1").score == "2-1"

    def test_keys_are_scoped_by_sport(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "7", EVENT_ID, "0-0")
        cache.observe("basketball", "7", uuid.uuid4(), "10-8")
        assert len(cache) == 2
        assert cache_key("football", "7") == "football:7"


class TestMissCounting:
    def test_two_misses_then_present_keeps_event_live(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        assert cache.record_poll("football", []) == []
        assert cache.record_poll("football", []) == []
        cache.observe("football", "e1", EVENT_ID, "0-0")
        assert cache.record_poll("football", ["e1"]) == []
        assert cache.get("football", "e1").miss_count == 0
        # The counter restarted: two more misses still do not end it.
        assert cache.record_poll("football", []) == []
        assert cache.record_poll("football", []) == []
        assert not cache.get("football", "e1").is_ended

    def test_third_consecutive_miss_ends_exactly_once(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "1-1")
        cache.record_poll("football", [])
        cache.record_poll("football", [])
        ended = cache.record_poll("football", [])
        assert [e.provider_event_id for e in ended] == ["e1"]
        assert cache.record_poll("football", []) == []
        assert cache.record_poll("football", []) == []
        assert cache.live_counts() == {}

    def test_poll_of_another_sport_does_not_count(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        for _ in range(5):
            cache.record_poll("tennis", [])
        assert cache.get("football", "e1").miss_count == 0

    def test_late_update_revives_within_grace(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        for _ in range(3):
            cache.record_poll("football", [])
        clock.advance(60)
        cache.observe("football", "e1", EVENT_ID, "0-1")
        assert not cache.get("football", "e1").is_ended


class TestEviction:
    def test_ended_entries_dropped_after_grace(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        for _ in range(3):
            cache.record_poll("football", [])
        clock.advance(299)
        assert cache.evict_expired() == 0
        clock.advance(1)
        assert cache.evict_expired() == 1
        assert cache.get("football", "e1") is None

    def test_untouched_entries_expire_after_ttl(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "e1", EVENT_ID, "0-0")
        clock.advance(7200)
        assert cache.evict_expired() == 1

    def test_live_counts_per_sport(self, clock) -> None:
        cache = _cache(clock)
        cache.observe("football", "a", uuid.uuid4(), "0-0")
        cache.observe("football", "b", uuid.uuid4(), "0-0")
        cache.observe("tennis", "c", uuid.uuid4(), "1-0")
        assert cache.live_counts() == {"football": 2, "tennis": 1}
        assert len(cache.live_entries("football")) == 2


class TestOddsCache:
    def _markets(self) -> list[NormalizedMarket]:
        return [NormalizedMarket(market_key="ML", name="Match Winner", type=MarketType.MONEYLINE)]

    def test_hit_within_ttl(self, clock) -> None:
        cache = OddsCache(ttl_s=5, clock=clock)
        cache.put("e1", self._markets())
        clock.advance(4.9)
        assert cache.get("e1") is not None

    def test_miss_after_ttl(self, clock) -> None:
        cache = OddsCache(ttl_s=5, clock=clock)
        cache.put("e1", self._markets())
        clock.advance(5)
        assert cache.get("e1") is None
        assert len(cache) == 0

    def test_purge(self, clock) -> None:
        cache = OddsCache(ttl_s=5, clock=clock)
        cache.put("e1", self._markets())
        clock.advance(2)
        cache.put("e2", [])
        clock.advance(3)
        assert cache.purge() == 1
        assert cache.get("e2") == []
