"""
Per-provider sync engine.

One asyncio task per provider. Each tick:
  1. live polls for the sports the PollScheduler says are due (or one
     discovery poll), stopping at the first limiter denial;
  2. a full/upcoming sync when its interval has elapsed, keeping a request
     reserve for live polling;
  3. cache housekeeping.

Every normalized event goes through reconciliation (status state machine
included), market sync (real, cached or synthetic odds), live score change
detection and, on a transition into ENDED, settlement.
"""
from __future__ import annotations

import asyncio
import random
import time
from datetime import timedelta
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.errors import NetworkError, OddsFeedError, ParseError, RateLimitedError, StoreError
from shared.models.domain import EventRecord, NormalizedEvent, NormalizedMarket
from shared.models.enums import EventStatus, SettlementSource
from shared.publishers import (
    LIVE_CHANNEL,
    BroadcastPublisher,
    NullBroadcastPublisher,
    event_channel,
    sport_channel,
)
from shared.store.base import Store
from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.logging import bind_log_context, get_logger
from shared.utils.metrics import LIVE_EVENTS, RECORDS_SKIPPED, SYNC_DURATION

from ingest.live_cache import CachedLiveEvent, LiveEventCache
from ingest.live_odds import LiveOddsEngine
from ingest.markets import MarketSynchronizer
from ingest.odds_cache import OddsCache
from ingest.providers.base import BaseProvider
from ingest.reconciliation import Reconciler, ReconcileOutcome
from ingest.state_machine import force_transition
from ingest.synthetic_odds import generate_markets
from scheduler.engine.polling import PollScheduler
from settlement.engine import SettlementEngine

logger = get_logger(__name__)


def event_payload(event: EventRecord) -> dict[str, Any]:
    return {
        "eventId": str(event.id),
        "externalId": event.external_id,
        "sport": event.sport_slug,
        "name": event.name,
        "status": event.status.value,
        "isLive": event.is_live,
        "scores": event.scores.model_dump() if event.scores else None,
        "timer": event.metadata.get("timer"),
        "statusShort": event.metadata.get("status_short"),
    }


class ProviderEngine:
    """Owns one provider's polling loop, caches and sync bookkeeping."""

    def __init__(
        self,
        provider: BaseProvider,
        store: Store,
        reconciler: Reconciler,
        settlement: SettlementEngine,
        broadcaster: Optional[BroadcastPublisher] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        s = settings or get_settings()
        self._provider = provider
        self._store = store
        self._reconciler = reconciler
        self._settlement = settlement
        self._broadcaster = broadcaster or NullBroadcastPublisher()
        self._clock = clock or SYSTEM_CLOCK
        self._rng = rng or random.Random()
        self._tick_interval = s.engine_tick_interval_s
        self._full_sync_interval = s.full_sync_interval_s
        self._reserve = s.upcoming_request_reserve

        self.live_cache = LiveEventCache(
            miss_threshold=s.live_miss_threshold,
            ended_grace_s=s.live_ended_grace_s,
            ttl_s=s.live_cache_ttl_s,
            clock=self._clock,
        )
        self.odds_cache = OddsCache(ttl_s=s.odds_cache_ttl_s, clock=self._clock)
        always = set(s.always_poll_sports)
        self.scheduler = PollScheduler(
            provider.sport_keys(),
            always_poll=[k for k in provider.sport_keys() if provider.map_sport(k) in always],
            interval_s=s.live_poll_interval_s,
            discovery_interval_s=s.discovery_min_interval_s,
            stagger_immediate=s.stagger_immediate_count,
            stagger_step_s=s.stagger_step_s,
        )
        self.markets = MarketSynchronizer(
            store, self._broadcaster, provider.name.value, s.odds_change_threshold
        )
        self._live_odds = LiveOddsEngine(store, self.markets)

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_full_sync_mono: Optional[float] = None
        self._status: dict[str, Any] = {
            "last_live_sync": None,
            "last_full_sync": None,
            "last_full_sync_result": None,
            "live_polls": 0,
            "errors": 0,
        }

    @property
    def name(self) -> str:
        return self._provider.name.value

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ───────────────────────────────────────────────────────
    async def start(self) -> None:
        if self.running:
            return
        await self._provider.start()
        self._stop.clear()
        self.scheduler.stagger(self._clock.monotonic())
        self._task = asyncio.create_task(self._run(), name=f"engine-{self.name}")
        logger.info("provider_engine_started", provider=self.name, sports=len(self.scheduler.sports))

    async def stop(self, timeout_s: float = 30.0) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout_s)
            except asyncio.TimeoutError:
                self._task.cancel()
                logger.warning("provider_engine_stop_timeout", provider=self.name)
            self._task = None
        await self._provider.close()
        logger.info("provider_engine_stopped", provider=self.name)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _run(self) -> None:
        bind_log_context(provider=self.name)
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as exc:
                self._status["errors"] += 1
                logger.error("engine_tick_failed", provider=self.name, error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._tick_interval)
            except asyncio.TimeoutError:
                continue

    # ── Tick ────────────────────────────────────────────────────────────
    async def tick(self) -> None:
        now = self._clock.monotonic()
        due = self.scheduler.due_sports(now, self._live_counts_by_key())
        if not due:
            discovery = self.scheduler.discovery_sport(now, self._provider.limiter.available_slots())
            due = [discovery] if discovery else []

        for sport_key in due:
            if self.stopping:
                break
            try:
                await self.sync_live(sport_key)
            except RateLimitedError as exc:
                logger.info(
                    "live_poll_rate_limited",
                    provider=self.name,
                    sport=sport_key,
                    from_provider=exc.from_provider,
                )
                break
            except (NetworkError, ParseError) as exc:
                self._status["errors"] += 1
                self.scheduler.mark_polled(sport_key, self._clock.monotonic())
                logger.warning("live_poll_failed", provider=self.name, sport=sport_key, error=str(exc))

        if not self.stopping and self._full_sync_due():
            await self.full_sync()

        self.live_cache.evict_expired()
        self.odds_cache.purge()

    def _full_sync_due(self) -> bool:
        if self._last_full_sync_mono is None:
            return True
        return self._clock.monotonic() - self._last_full_sync_mono >= self._full_sync_interval

    def _live_counts_by_key(self) -> dict[str, int]:
        counts = self.live_cache.live_counts()
        return {key: counts.get(self._provider.map_sport(key), 0) for key in self.scheduler.sports}

    def _budget_low(self) -> bool:
        return self._provider.limiter.available_slots() <= self._reserve

    # ── Live sync ───────────────────────────────────────────────────────
    async def sync_live(self, sport_key: str) -> int:
        """
        One in-play poll of one sport. Returns events processed.

        Raises:
            RateLimitedError, NetworkError, ParseError: the poll itself failed;
                nothing was recorded and no miss counts moved.
        """
        started = time.perf_counter()
        events, placeholders = await self._provider.poll_in_play(sport_key)
        self.scheduler.mark_polled(sport_key, self._clock.monotonic())
        self._status["live_polls"] += 1
        slug = self._provider.map_sport(sport_key)

        await self._remove_placeholders(placeholders)
        seen: list[str] = []
        processed = 0
        for normalized in events:
            if self.stopping:
                break
            seen.append(normalized.provider_event_id)
            if await self._process_isolated(normalized, sport_key, live=True):
                processed += 1

        ended: list[CachedLiveEvent] = []
        if not self.stopping:
            ended = self.live_cache.record_poll(slug, seen)
            for entry in ended:
                await self._end_missing(entry)

        LIVE_EVENTS.labels(provider=self.name, sport=slug).set(len(self.live_cache.live_entries(slug)))
        SYNC_DURATION.labels(provider=self.name, kind="live").observe(time.perf_counter() - started)
        self._status["last_live_sync"] = self._clock.now().isoformat()
        logger.info(
            "live_sync_complete",
            provider=self.name,
            sport=slug,
            events=processed,
            ended=len(ended),
        )
        return processed

    # ── Full sync ───────────────────────────────────────────────────────
    async def full_sync(self) -> dict[str, int]:
        """
        Upcoming events for every sport over its look-ahead window.
        Stops early when the limiter denies or the request reserve is reached.
        """
        started = time.perf_counter()
        self._last_full_sync_mono = self._clock.monotonic()
        today = self._clock.now().date()
        result = {"sports": 0, "events": 0, "failed": 0}

        def should_stop() -> bool:
            return self.stopping or self._budget_low()

        for sport_key in self._provider.sport_keys():
            if should_stop():
                break
            result["sports"] += 1
            for offset in range(self._provider.upcoming_days(sport_key)):
                if should_stop():
                    break
                try:
                    events, placeholders = await self._provider.poll_upcoming(
                        sport_key, today + timedelta(days=offset), should_stop=should_stop
                    )
                except RateLimitedError as exc:
                    logger.info("full_sync_rate_limited", provider=self.name, sport=sport_key, from_provider=exc.from_provider)
                    return self._finish_full_sync(result, started, complete=False)
                except (NetworkError, ParseError) as exc:
                    result["failed"] += 1
                    logger.warning("upcoming_fetch_failed", provider=self.name, sport=sport_key, error=str(exc))
                    continue
                await self._remove_placeholders(placeholders)
                for normalized in events:
                    if self.stopping:
                        break
                    if await self._process_isolated(normalized, sport_key, live=False):
                        result["events"] += 1
                    else:
                        result["failed"] += 1

        await self._refresh_sport_counts()
        return self._finish_full_sync(result, started, complete=not self.stopping)

    def _finish_full_sync(self, result: dict[str, int], started: float, complete: bool) -> dict[str, int]:
        SYNC_DURATION.labels(provider=self.name, kind="full").observe(time.perf_counter() - started)
        self._status["last_full_sync"] = self._clock.now().isoformat()
        self._status["last_full_sync_result"] = {**result, "complete": complete}
        logger.info("full_sync_complete", provider=self.name, complete=complete, **result)
        return result

    async def _refresh_sport_counts(self) -> None:
        try:
            counts = await self._store.count_events_by_sport([EventStatus.UPCOMING, EventStatus.LIVE])
            await self._store.update_sport_event_counts(counts)
        except StoreError as exc:
            logger.warning("sport_counts_update_failed", provider=self.name, error=str(exc))

    # ── Per-event pipeline ──────────────────────────────────────────────
    async def _process_isolated(self, normalized: NormalizedEvent, sport_key: str, live: bool) -> bool:
        try:
            await self.process_event(normalized, sport_key, live)
            return True
        except OddsFeedError as exc:
            RECORDS_SKIPPED.labels(provider=self.name, reason=type(exc).__name__).inc()
            logger.warning(
                "event_processing_failed",
                provider=self.name,
                external_id=normalized.external_id,
                error=str(exc),
            )
            return False

    async def process_event(self, normalized: NormalizedEvent, sport_key: str, live: bool) -> ReconcileOutcome:
        outcome = await self._reconciler.reconcile(normalized)
        event = outcome.event

        if outcome.is_owner and not event.status.is_terminal:
            await self._sync_markets(normalized, event, sport_key, live)

        if live and event.status == EventStatus.LIVE:
            cached = self.live_cache.get(normalized.sport_slug, normalized.provider_event_id)
            previous_score = cached.score if cached else ""
            changed = self.live_cache.observe(
                normalized.sport_slug,
                normalized.provider_event_id,
                event.id,
                normalized.score_string,
                normalized.metadata.get("timer"),
            )
            if changed:
                await self._on_score_change(event, previous_score, sport_key)

        if outcome.transition.changed or outcome.action == "created":
            await self._publish_status(event)

        if outcome.transition.became_ended:
            await self._settle(event, SettlementSource.PROVIDER_RESULT)
        return outcome

    async def _sync_markets(
        self, normalized: NormalizedEvent, event: EventRecord, sport_key: str, live: bool
    ) -> None:
        markets = normalized.markets or await self._fetch_odds(normalized, sport_key, live)
        if markets:
            await self.markets.sync_markets(event, markets)
            return
        if await self._store.count_markets(event.id) == 0:
            await self.markets.sync_markets(event, generate_markets(event.sport_slug, self._rng))

    async def _fetch_odds(self, normalized: NormalizedEvent, sport_key: str, live: bool) -> list[NormalizedMarket]:
        if not self._provider.has_odds_for(sport_key):
            return []
        cached = self.odds_cache.get(normalized.provider_event_id)
        if cached is not None:
            return cached
        if not live and self._budget_low():
            return []
        try:
            markets = await self._provider.fetch_odds(normalized.provider_event_id, sport_key, is_live=live)
        except (RateLimitedError, NetworkError, ParseError) as exc:
            logger.debug("odds_fetch_skipped", provider=self.name, event=normalized.external_id, error=str(exc))
            return []
        self.odds_cache.put(normalized.provider_event_id, markets)
        return markets

    async def _on_score_change(self, event: EventRecord, previous: str, sport_key: str) -> None:
        payload = {**event_payload(event), "previousScore": previous}
        await self._broadcaster.publish(event_channel(event.id), "score:update", payload)
        await self._broadcaster.publish(LIVE_CHANNEL, "live:goal", payload)
        await self._broadcaster.publish(sport_channel(event.sport_slug), "live:update", payload)
        if not self._provider.has_odds_for(sport_key):
            await self._live_odds.reprice(event)

    async def _publish_status(self, event: EventRecord) -> None:
        payload = event_payload(event)
        await self._broadcaster.publish(event_channel(event.id), "event:update", payload)
        await self._broadcaster.publish(sport_channel(event.sport_slug), "sport:update", payload)
        if event.is_live:
            await self._broadcaster.publish(LIVE_CHANNEL, "live:update", payload)

    async def _end_missing(self, entry: CachedLiveEvent) -> None:
        """An event absent from enough consecutive in-play polls is over."""
        try:
            event = await self._store.get_event(entry.event_id)
            if event is None:
                return
            transition = force_transition(event.status, EventStatus.ENDED)
            if not transition.became_ended:
                return
            updated = await self._store.update_event(event.id, {"status": EventStatus.ENDED, "is_live": False})
        except StoreError as exc:
            logger.warning("missing_event_end_failed", provider=self.name, event_id=str(entry.event_id), error=str(exc))
            return
        if updated is None or updated.status != EventStatus.ENDED:
            return
        logger.info(
            "live_event_missing_ended",
            provider=self.name,
            event_id=str(updated.id),
            misses=entry.miss_count,
            last_score=entry.score,
        )
        await self._publish_status(updated)
        await self._settle(updated, SettlementSource.LIVE_SYNC)

    async def _settle(self, event: EventRecord, source: SettlementSource) -> None:
        try:
            await self._settlement.settle_event(event, source=source)
        except OddsFeedError as exc:
            logger.error("settlement_failed", provider=self.name, event_id=str(event.id), error=str(exc))

    async def _remove_placeholders(self, external_ids: list[str]) -> None:
        for external_id in external_ids:
            try:
                await self._reconciler.remove_placeholder(external_id)
            except StoreError as exc:
                logger.warning("placeholder_delete_failed", external_id=external_id, error=str(exc))

    # ── Status ──────────────────────────────────────────────────────────
    def status(self) -> dict[str, Any]:
        return {
            "provider": self.name,
            "running": self.running,
            **self._status,
            "live_events": self.live_cache.live_counts(),
            "odds_cached": len(self.odds_cache),
            "rate_limit": self._provider.limiter.snapshot(),
        }
