"""
Shared fixtures: a controllable clock, the in-memory store, recording
publishers and factories for normalized provider events.
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from shared.models.domain import (
    NormalizedCompetition,
    NormalizedEvent,
    NormalizedMarket,
    NormalizedSelection,
    Score,
)
from shared.models.enums import EventStatus, MarketType, ProviderName
from shared.publishers import BroadcastPublisher, InMemoryJobQueue
from shared.store.memory import MemoryStore
from shared.utils.clock import Clock

from ingest.reconciliation import Reconciler
from settlement.engine import SettlementEngine

T0 = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Wall and monotonic time that only move when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._mono = 10_000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


class RecordingBroadcaster(BroadcastPublisher):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> None:
        self.messages.append((channel, event_name, payload))

    def named(self, event_name: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [m for m in self.messages if m[1] == event_name]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def jobs(clock: FakeClock) -> InMemoryJobQueue:
    return InMemoryJobQueue(dedup_window_s=3600, clock=clock)


@pytest.fixture
def reconciler(store: MemoryStore, clock: FakeClock) -> Reconciler:
    return Reconciler(store, clock=clock, fuzzy_window_s=7200)


@pytest.fixture
def settlement(store: MemoryStore, jobs: InMemoryJobQueue) -> SettlementEngine:
    return SettlementEngine(store, jobs, rng=random.Random(7))


def moneyline(home: float = 2.1, away: float = 3.4, draw: Optional[float] = 3.2) -> NormalizedMarket:
    selections = [NormalizedSelection(outcome="HOME", name="1", odds=home)]
    if draw is not None:
        selections.append(NormalizedSelection(outcome="DRAW", name="X", odds=draw))
    selections.append(NormalizedSelection(outcome="AWAY", name="2", odds=away))
    return NormalizedMarket(
        market_key="1X2" if draw is not None else "ML",
        name="Match Winner",
        type=MarketType.MONEYLINE,
        sort_order=1,
        selections=selections,
    )


def total(line: float = 2.5, over: float = 1.9, under: float = 1.9) -> NormalizedMarket:
    return NormalizedMarket(
        market_key=f"OU{line:g}",
        name=f"Over/Under {line:g}",
        type=MarketType.TOTAL,
        sort_order=3,
        selections=[
            NormalizedSelection(outcome="OVER", name=f"Over {line:g}", odds=over, handicap=line),
            NormalizedSelection(outcome="UNDER", name=f"Under {line:g}", odds=under, handicap=line),
        ],
    )


@pytest.fixture
def make_event() -> Callable[..., NormalizedEvent]:
    def _make(
        provider_event_id: str = "1001",
        provider: ProviderName = ProviderName.BETSAPI,
        home: str = "Arsenal",
        away: str = "Chelsea",
        status: EventStatus = EventStatus.UPCOMING,
        start_time: datetime = T0 + timedelta(hours=2),
        scores: Optional[Score] = None,
        sport: str = "football",
        markets: Optional[list[NormalizedMarket]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> NormalizedEvent:
        return NormalizedEvent(
            provider=provider,
            provider_event_id=provider_event_id,
            sport_slug=sport,
            competition=NormalizedCompetition(
                external_id=f"{provider.value}-{sport}-league-1",
                slug="premier-league",
                name="Premier League",
                country="England",
            ),
            home_team=home,
            away_team=away,
            start_time=start_time,
            status=status,
            scores=scores,
            metadata=metadata or {},
            markets=markets or [],
        )

    return _make

