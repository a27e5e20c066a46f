"""
Unit tests for reconciliation: team-name matching, fuzzy claims across
providers, idempotent create-or-find and status handling.

Run: pytest backend/tests/test_reconciliation.py -v
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from shared.models.domain import Score
from shared.models.enums import EventStatus, ProviderName

from ingest.markets import MarketSynchronizer
from ingest.reconciliation import (
    LINKED_IDS_KEY,
    PRE_MATCH_ODDS_KEY,
    NameMatch,
    compare_team_names,
    normalize_team_name,
)
from conftest import T0, moneyline


class TestTeamNames:
    def test_noise_tokens_and_accents_removed(self) -> None:
        assert normalize_team_name("FC Bayern München") == "bayern munchen"

    def test_exact_after_normalization(self) -> None:
        assert compare_team_names("Barcelona", "FC Barcelona") == NameMatch.EXACT

    def test_substring_is_partial(self) -> None:
        assert compare_team_names("Manchester United", "Manchester Utd") == NameMatch.PARTIAL

    def test_unrelated_names(self) -> None:
        assert compare_team_names("Arsenal", "Chelsea") == NameMatch.NONE

    @pytest.mark.parametrize("name", ["TBD", "tba", "Home", ""])
    def test_placeholders_never_match(self, name: str) -> None:
        assert compare_team_names(name, name) == NameMatch.NONE


class TestCrossProviderReconciliation:
    @pytest.mark.asyncio
    async def test_same_fixture_from_two_providers_yields_one_event(self, reconciler, store, make_event) -> None:
        first = await reconciler.reconcile(make_event("b-1", ProviderName.BETSAPI, "Arsenal", "Chelsea"))
        second = await reconciler.reconcile(
            make_event(
                "cb-9",
                ProviderName.CLOUDBET,
                "Arsenal FC",
                "Chelsea FC",
                start_time=T0 + timedelta(hours=3, minutes=30),
            )
        )
        assert len(store.events) == 1
        assert first.action == "created"
        assert second.action == "claimed"
        assert second.event.id == first.event.id
        assert second.event.metadata[LINKED_IDS_KEY] == ["cloudbet:cb-9"]
        # The first provider keeps ownership of the identity fields.
        assert second.event.external_id == "betsapi:b-1"
        assert second.event.home_team == "Arsenal"

    @pytest.mark.asyncio
    async def test_linked_provider_resolves_to_same_event_again(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1", ProviderName.BETSAPI))
        await reconciler.reconcile(make_event("cb-9", ProviderName.CLOUDBET))
        again = await reconciler.reconcile(
            make_event("cb-9", ProviderName.CLOUDBET, status=EventStatus.LIVE, scores=Score(home=1, away=0))
        )
        assert len(store.events) == 1
        assert again.event.metadata[LINKED_IDS_KEY] == ["cloudbet:cb-9"]
        assert again.event.status == EventStatus.LIVE
        assert again.event.scores == Score(home=1, away=0)
        assert not again.is_owner

    @pytest.mark.asyncio
    async def test_outside_window_creates_second_event(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1", ProviderName.BETSAPI))
        await reconciler.reconcile(
            make_event("cb-9", ProviderName.CLOUDBET, start_time=T0 + timedelta(hours=4, minutes=1))
        )
        assert len(store.events) == 2

    @pytest.mark.asyncio
    async def test_provider_never_claims_event_it_already_owns_under_another_id(
        self, reconciler, store, make_event
    ) -> None:
        await reconciler.reconcile(make_event("b-1", ProviderName.BETSAPI))
        await reconciler.reconcile(make_event("b-2", ProviderName.BETSAPI))
        assert len(store.events) == 2

    @pytest.mark.asyncio
    async def test_tbd_fixtures_are_not_merged(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1", ProviderName.BETSAPI, "TBD", "TBD"))
        await reconciler.reconcile(make_event("fd-1", ProviderName.FOOTBALL_DATA, "TBD", "TBD"))
        assert len(store.events) == 2


class TestCreateOrFind:
    @pytest.mark.asyncio
    async def test_exact_external_id_updates_in_place(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1"))
        outcome = await reconciler.reconcile(make_event("b-1", home="Arsenal London"))
        assert outcome.action == "updated"
        assert outcome.event.home_team == "Arsenal London"
        assert len(store.events) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_never_duplicate(self, reconciler, store, make_event) -> None:
        results = await asyncio.gather(*(reconciler.reconcile(make_event("b-1")) for _ in range(5)))
        assert len(store.events) == 1
        assert len({r.event.id for r in results}) == 1

    @pytest.mark.asyncio
    async def test_status_never_regresses(self, reconciler, make_event) -> None:
        await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE))
        outcome = await reconciler.reconcile(make_event("b-1", status=EventStatus.UPCOMING))
        assert outcome.event.status == EventStatus.LIVE
        assert outcome.event.is_live

    @pytest.mark.asyncio
    async def test_sweep_ending_event_mid_reconcile_is_not_undone(self, reconciler, store, make_event) -> None:
        event = (await reconciler.reconcile(make_event("b-1"))).event
        assert event.status == EventStatus.UPCOMING
        write = store.update_event

        async def sweep_ends_it_first(event_id, changes):
            # Lands after the reconciler read UPCOMING and before its own LIVE write.
            await write(event_id, {"status": EventStatus.ENDED, "is_live": False})
            return await write(event_id, changes)

        store.update_event = sweep_ends_it_first
        outcome = await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE, scores=Score(home=1, away=0)))
        store.update_event = write

        stored = await store.get_event(event.id)
        assert stored.status == EventStatus.ENDED
        assert stored.is_live is False
        assert stored.scores == Score(home=1, away=0)
        assert outcome.event.status == EventStatus.ENDED
        assert not outcome.transition.changed
        assert not outcome.transition.became_live
        assert not outcome.transition.became_ended

    @pytest.mark.asyncio
    async def test_store_refuses_backward_status_writes(self, reconciler, store, make_event) -> None:
        event = (await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE))).event
        stored = await store.update_event(event.id, {"status": EventStatus.UPCOMING, "is_live": False})
        assert stored.status == EventStatus.LIVE
        await store.update_event(event.id, {"status": EventStatus.CANCELLED, "is_live": False})
        for status in (EventStatus.LIVE, EventStatus.ENDED):
            stored = await store.update_event(event.id, {"status": status, "is_live": status == EventStatus.LIVE})
            assert stored.status == EventStatus.CANCELLED
            assert stored.is_live is False

    @pytest.mark.asyncio
    async def test_updated_at_marks_every_touch(self, reconciler, clock, make_event) -> None:
        first = await reconciler.reconcile(make_event("b-1"))
        clock.advance(120)
        second = await reconciler.reconcile(make_event("b-1"))
        assert second.event.updated_at > first.event.updated_at

    @pytest.mark.asyncio
    async def test_sport_and_competition_created_lazily_once(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1"))
        await reconciler.reconcile(make_event("b-2", home="Spurs", away="Everton"))
        assert len(store.sports) == 1
        assert len(store.competitions) == 1

    @pytest.mark.asyncio
    async def test_remove_placeholder(self, reconciler, store, make_event) -> None:
        await reconciler.reconcile(make_event("b-1"))
        assert await reconciler.remove_placeholder("betsapi:b-1") is True
        assert await reconciler.remove_placeholder("betsapi:b-1") is False
        assert store.events == {}


class TestPreMatchSnapshot:
    @pytest.mark.asyncio
    async def test_moneyline_captured_on_first_live_transition(self, reconciler, store, make_event) -> None:
        created = await reconciler.reconcile(make_event("b-1"))
        await MarketSynchronizer(store).sync_markets(created.event, [moneyline(2.0, 3.5, 3.1)])
        live = await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE))
        assert live.transition.became_live
        assert live.event.metadata[PRE_MATCH_ODDS_KEY] == {"home": 2.0, "draw": 3.1, "away": 3.5}

    @pytest.mark.asyncio
    async def test_snapshot_not_overwritten(self, reconciler, store, make_event) -> None:
        created = await reconciler.reconcile(make_event("b-1"))
        sync = MarketSynchronizer(store)
        await sync.sync_markets(created.event, [moneyline(2.0, 3.5, 3.1)])
        await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE))
        await sync.sync_markets(created.event, [moneyline(1.5, 6.0, 4.0)])
        again = await reconciler.reconcile(make_event("b-1", status=EventStatus.LIVE))
        assert again.event.metadata[PRE_MATCH_ODDS_KEY]["home"] == 2.0
