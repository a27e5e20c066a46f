"""
Unit tests for market vocabulary, the odds synchronizer, synthetic odds and
in-play re-pricing.

Run: pytest backend/tests/test_markets.py -v
"""
from __future__ import annotations

import random

import pytest

from shared.models.domain import Score
from shared.models.enums import EventStatus, MarketStatus, MarketType, SelectionStatus

from ingest.live_odds import MAX_LIVE_ODDS, MIN_LIVE_ODDS, LiveOddsEngine, price_moneyline
from ingest.markets import (
    MarketSynchronizer,
    derive_market_type,
    extract_param_value,
    normalize_params,
    odds_changed,
    selection_display_name,
)
from ingest.synthetic_odds import MAX_ODDS, MIN_ODDS, generate_markets
from conftest import moneyline, total


async def _stored_event(reconciler, make_event, **kwargs):
    return (await reconciler.reconcile(make_event(**kwargs))).event


async def _selection(store, outcome: str):
    return next(s for s in store.selections.values() if s.outcome == outcome)


# ── Vocabulary ──────────────────────────────────────────────────────────

class TestVocabulary:
    @pytest.mark.parametrize(
        "key,expected",
        [
            ("soccer.match_odds", MarketType.MONEYLINE),
            ("tennis.winner", MarketType.MONEYLINE),
            ("basketball.moneyline", MarketType.MONEYLINE),
            ("soccer.asian_handicap", MarketType.SPREAD),
            ("american_football.spread", MarketType.SPREAD),
            ("basketball.totals", MarketType.TOTAL),
            ("soccer.total_goals", MarketType.TOTAL),
            ("soccer.team_total_goals", MarketType.PROP),
            ("basketball.team_totals", MarketType.PROP),
            ("soccer.outright", MarketType.OUTRIGHT),
            ("soccer.both_teams_to_score", MarketType.PROP),
        ],
    )
    def test_market_type_from_keywords(self, key: str, expected: MarketType) -> None:
        assert derive_market_type(key) == expected

    def test_param_value_extraction(self) -> None:
        assert extract_param_value("innings=2&team=home&total=239.5") == "239.5"
        assert extract_param_value("2.5") == "2.5"
        assert extract_param_value("") == ""

    def test_params_normalized_for_lookup(self) -> None:
        assert normalize_params(" Total=2.5&Period=FT ") == "period=ft&total=2.5"

    def test_display_names(self) -> None:
        assert selection_display_name("home") == "1"
        assert selection_display_name("draw") == "X"
        assert selection_display_name("over", "total=2.5") == "Over 2.5"
        assert selection_display_name("s-arsenal-fc", is_outright=True) == "Arsenal FC"


# ── Change threshold ────────────────────────────────────────────────────

class TestOddsChangeThreshold:
    @pytest.mark.parametrize(
        "old,new,changed",
        [(2.0, 2.0, False), (1.5, 1.501, False), (2.0, 1.999, False), (2.0, 2.0015, True), (2.0, 1.95, True)],
    )
    def test_strictly_greater_than_threshold(self, old: float, new: float, changed: bool) -> None:
        assert odds_changed(old, new) is changed

    @pytest.mark.asyncio
    async def test_publishes_only_real_moves(self, store, reconciler, broadcaster, make_event) -> None:
        event = await _stored_event(reconciler, make_event)
        sync = MarketSynchronizer(store, broadcaster, "betsapi")

        first = await sync.sync_markets(event, [moneyline(2.0, 3.5, 3.2)])
        assert first.created == 3
        assert broadcaster.named("odds:update") == []

        small = await sync.sync_markets(event, [moneyline(2.001, 3.5, 3.2)])
        assert small.changed == 0
        assert broadcaster.named("odds:update") == []

        moved = await sync.sync_markets(event, [moneyline(2.05, 3.5, 3.2)])
        assert moved.changed == 1
        updates = broadcaster.named("odds:update")
        assert len(updates) == 1
        channel, _, payload = updates[0]
        assert channel == f"event:{event.id}"
        assert payload["outcome"] == "HOME"
        assert payload["direction"] == "up"
        assert (await _selection(store, "HOME")).odds == 2.05


# ── Settled immutability ────────────────────────────────────────────────

class TestSettledSelectionsAreImmutable:
    @pytest.mark.asyncio
    async def test_settled_selection_skipped(self, store, reconciler, broadcaster, make_event) -> None:
        event = await _stored_event(reconciler, make_event)
        sync = MarketSynchronizer(store, broadcaster)
        await sync.sync_markets(event, [moneyline(2.0, 3.5, 3.2)])
        home = await _selection(store, "HOME")
        store.selections[home.id] = home.model_copy(update={"status": SelectionStatus.WON})

        result = await sync.sync_markets(event, [moneyline(9.0, 3.5, 3.2)])
        assert result.skipped_settled == 1
        after = store.selections[home.id]
        assert after.status == SelectionStatus.WON
        assert after.odds == 2.0
        assert broadcaster.named("odds:update") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [11, 12, 13])
    async def test_no_later_update_touches_a_settled_market(
        self, store, reconciler, make_event, settlement, seed: int
    ) -> None:
        rng = random.Random(seed)
        event = await _stored_event(reconciler, make_event, status=EventStatus.LIVE)
        sync = MarketSynchronizer(store)
        await sync.sync_markets(event, [moneyline(), total()])
        await store.update_event(event.id, {"status": EventStatus.ENDED, "scores": Score(home=2, away=1)})
        await settlement.settle_event(await store.get_event(event.id))
        frozen = {s.id: (s.status, s.odds) for s in store.selections.values()}

        for _ in range(20):
            await sync.sync_markets(
                event,
                [
                    moneyline(rng.uniform(1.1, 9), rng.uniform(1.1, 9), rng.uniform(1.1, 9)),
                    total(2.5, rng.uniform(1.1, 3), rng.uniform(1.1, 3)),
                ],
            )
        assert {s.id: (s.status, s.odds) for s in store.selections.values()} == frozen
        assert all(m.status == MarketStatus.SETTLED for m in store.markets.values())


# ── Synthetic odds ──────────────────────────────────────────────────────

class TestSyntheticOdds:
    @pytest.mark.parametrize("seed", range(5))
    def test_football_has_three_way_and_total(self, seed: int) -> None:
        markets = generate_markets("football", random.Random(seed))
        keys = [m.market_key for m in markets]
        assert keys == ["1X2", "OU2.5"]
        for market in markets:
            for sel in market.selections:
                assert MIN_ODDS <= sel.odds <= MAX_ODDS

    def test_tennis_two_way_without_total(self) -> None:
        markets = generate_markets("tennis", random.Random(1))
        assert [m.market_key for m in markets] == ["ML"]
        assert [s.outcome for s in markets[0].selections] == ["HOME", "AWAY"]

    def test_margin_applied(self) -> None:
        market = generate_markets("basketball", random.Random(3))[0]
        implied = sum(1 / s.odds for s in market.selections)
        assert implied > 1.0


# ── Live odds ───────────────────────────────────────────────────────────

class TestLiveOdds:
    def test_leading_team_shortens(self) -> None:
        prices = price_moneyline("football", 2, 0, {"elapsed": 70})
        assert prices["HOME"] < prices["AWAY"]
        assert all(MIN_LIVE_ODDS <= p <= MAX_LIVE_ODDS for p in prices.values())

    def test_unknown_sport_not_priced(self) -> None:
        assert price_moneyline("curling", 1, 0, {}) is None

    @pytest.mark.asyncio
    async def test_reprice_moves_active_moneyline(self, store, reconciler, broadcaster, make_event) -> None:
        event = await _stored_event(reconciler, make_event, status=EventStatus.LIVE)
        sync = MarketSynchronizer(store, broadcaster)
        await sync.sync_markets(event, [moneyline(2.5, 2.9, 3.1)])
        event = await store.update_event(
            event.id, {"scores": Score(home=2, away=0), "metadata": {"elapsed": 75}}
        )
        moved = await LiveOddsEngine(store, sync).reprice(event)
        assert moved >= 2
        assert (await _selection(store, "HOME")).odds < 2.5

    @pytest.mark.asyncio
    async def test_reprice_never_touches_settled_market(self, store, reconciler, make_event, settlement) -> None:
        event = await _stored_event(reconciler, make_event, status=EventStatus.LIVE)
        sync = MarketSynchronizer(store)
        await sync.sync_markets(event, [moneyline(2.5, 2.9, 3.1)])
        event = await store.update_event(event.id, {"status": EventStatus.ENDED, "scores": Score(home=0, away=0)})
        await settlement.settle_event(event)
        assert await LiveOddsEngine(store, sync).reprice(event) == 0
