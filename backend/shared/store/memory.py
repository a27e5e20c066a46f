"""
In-process Store implementation.
Backs the test suite and local dry runs; every method completes without
suspending, so each call is atomic with respect to other asyncio tasks.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from shared.errors import DuplicateExternalIdError, StoreError
from shared.models.domain import (
    CompetitionRecord,
    CompetitionUpsert,
    EventCreate,
    EventRecord,
    MarketRecord,
    MarketUpsert,
    SelectionRecord,
    SelectionUpsert,
    SportRecord,
    SportUpsert,
    StalenessCriteria,
)
from shared.models.enums import EventStatus, MarketStatus, MarketType, SelectionStatus
from shared.store.base import EVENT_MUTABLE_FIELDS, Store, drop_stale_status
from shared.utils.clock import SYSTEM_CLOCK, Clock


class MemoryStore(Store):
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SYSTEM_CLOCK
        self.sports: dict[uuid.UUID, SportRecord] = {}
        self.competitions: dict[uuid.UUID, CompetitionRecord] = {}
        self.events: dict[uuid.UUID, EventRecord] = {}
        self.markets: dict[uuid.UUID, MarketRecord] = {}
        self.selections: dict[uuid.UUID, SelectionRecord] = {}

    # ── Sports & competitions ───────────────────────────────────────────
    async def upsert_sport(self, sport: SportUpsert) -> SportRecord:
        for existing in self.sports.values():
            if existing.slug == sport.slug:
                updated = existing.model_copy(update=sport.model_dump())
                self.sports[existing.id] = updated
                return updated
        record = SportRecord(id=uuid.uuid4(), **sport.model_dump())
        self.sports[record.id] = record
        return record

    async def upsert_competition(self, competition: CompetitionUpsert) -> CompetitionRecord:
        if competition.sport_id not in self.sports:
            raise StoreError(f"unknown sport {competition.sport_id}")
        match: Optional[CompetitionRecord] = None
        if competition.external_id:
            match = next(
                (c for c in self.competitions.values() if c.external_id == competition.external_id),
                None,
            )
        if match is None:
            match = next(
                (
                    c for c in self.competitions.values()
                    if c.sport_id == competition.sport_id and c.slug == competition.slug
                ),
                None,
            )
        if match is not None:
            changes = competition.model_dump(exclude={"slug", "sport_id"})
            if not changes.get("external_id"):
                changes.pop("external_id", None)
            updated = match.model_copy(update=changes)
            self.competitions[match.id] = updated
            return updated
        record = CompetitionRecord(id=uuid.uuid4(), **competition.model_dump())
        self.competitions[record.id] = record
        return record

    async def count_events_by_sport(self, statuses: list[EventStatus]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for event in self.events.values():
            if event.status in statuses:
                counts[event.sport_slug] = counts.get(event.sport_slug, 0) + 1
        return counts

    async def update_sport_event_counts(self, counts: dict[str, int]) -> None:
        for sport_id, sport in list(self.sports.items()):
            self.sports[sport_id] = sport.model_copy(update={"event_count": counts.get(sport.slug, 0)})

    # ── Events ──────────────────────────────────────────────────────────
    def _sport_slug_for(self, competition_id: uuid.UUID) -> str:
        competition = self.competitions.get(competition_id)
        if competition is None:
            raise StoreError(f"unknown competition {competition_id}")
        sport = self.sports.get(competition.sport_id)
        return sport.slug if sport else ""

    async def get_event(self, event_id: uuid.UUID) -> Optional[EventRecord]:
        return self.events.get(event_id)

    async def find_by_external_id(self, external_id: str) -> Optional[EventRecord]:
        return next((e for e in self.events.values() if e.external_id == external_id), None)

    async def find_fuzzy(
        self, home_team: str, away_team: str, start_time: datetime, window: timedelta
    ) -> list[EventRecord]:
        return sorted(
            (e for e in self.events.values() if abs(e.start_time - start_time) <= window),
            key=lambda e: abs(e.start_time - start_time),
        )

    async def create_event(self, event: EventCreate) -> EventRecord:
        if await self.find_by_external_id(event.external_id) is not None:
            raise DuplicateExternalIdError(event.external_id)
        now = self._clock.now()
        record = EventRecord(
            id=uuid.uuid4(),
            sport_slug=self._sport_slug_for(event.competition_id),
            created_at=now,
            updated_at=now,
            **event.model_dump(),
        )
        self.events[record.id] = record
        return record

    async def update_event(self, event_id: uuid.UUID, changes: dict[str, Any]) -> Optional[EventRecord]:
        existing = self.events.get(event_id)
        if existing is None:
            return None
        unknown = set(changes) - EVENT_MUTABLE_FIELDS
        if unknown:
            raise StoreError(f"cannot update event fields {sorted(unknown)}")
        changes = drop_stale_status(existing.status, changes)
        if "external_id" in changes and changes["external_id"] != existing.external_id:
            other = await self.find_by_external_id(changes["external_id"])
            if other is not None:
                raise DuplicateExternalIdError(changes["external_id"])
        update = dict(changes)
        update["updated_at"] = self._clock.now()
        if "competition_id" in changes:
            update["sport_slug"] = self._sport_slug_for(changes["competition_id"])
        # Round-trip through validation so nested models (scores) are coerced.
        record = EventRecord.model_validate({**existing.model_dump(), **update})
        self.events[event_id] = record
        return record

    async def delete_event(self, event_id: uuid.UUID) -> bool:
        if self.events.pop(event_id, None) is None:
            return False
        market_ids = [m.id for m in self.markets.values() if m.event_id == event_id]
        for market_id in market_ids:
            del self.markets[market_id]
        for sel_id in [s.id for s in self.selections.values() if s.market_id in market_ids]:
            del self.selections[sel_id]
        return True

    def _has_open_markets(self, event_id: uuid.UUID) -> bool:
        return any(
            m.event_id == event_id and m.status != MarketStatus.SETTLED for m in self.markets.values()
        )

    async def list_events(
        self,
        statuses: Optional[list[EventStatus]] = None,
        started_before: Optional[datetime] = None,
        with_open_markets: bool = False,
        limit: Optional[int] = None,
    ) -> list[EventRecord]:
        rows = [
            e for e in self.events.values()
            if (statuses is None or e.status in statuses)
            and (started_before is None or e.start_time < started_before)
            and (not with_open_markets or self._has_open_markets(e.id))
        ]
        rows.sort(key=lambda e: e.start_time)
        return rows[:limit] if limit is not None else rows

    async def bulk_mark_ended_by_staleness(self, criteria: StalenessCriteria) -> list[EventRecord]:
        candidates = [
            e for e in self.events.values()
            if e.status in criteria.statuses
            and (criteria.started_before is None or e.start_time < criteria.started_before)
            and (
                criteria.updated_before is None
                or (e.updated_at is not None and e.updated_at < criteria.updated_before)
            )
        ]
        candidates.sort(key=lambda e: e.start_time)
        if criteria.limit is not None:
            candidates = candidates[: criteria.limit]
        transitioned: list[EventRecord] = []
        for event in candidates:
            updated = await self.update_event(event.id, {"status": EventStatus.ENDED, "is_live": False})
            if updated is not None:
                transitioned.append(updated)
        return transitioned

    async def bulk_mark_live_by_start_time(self, now: datetime) -> int:
        due = [
            e for e in self.events.values()
            if e.status == EventStatus.UPCOMING and e.start_time <= now
        ]
        for event in due:
            await self.update_event(event.id, {"status": EventStatus.LIVE, "is_live": True})
        return len(due)

    # ── Markets ─────────────────────────────────────────────────────────
    async def upsert_market(self, market: MarketUpsert) -> MarketRecord:
        if market.event_id not in self.events:
            raise StoreError(f"unknown event {market.event_id}")
        for existing in self.markets.values():
            if existing.event_id == market.event_id and existing.market_key == market.market_key:
                if existing.status == MarketStatus.SETTLED:
                    return existing
                updated = existing.model_copy(update=market.model_dump(exclude={"event_id", "market_key"}))
                self.markets[existing.id] = updated
                return updated
        record = MarketRecord(id=uuid.uuid4(), **market.model_dump())
        self.markets[record.id] = record
        return record

    async def list_markets(
        self,
        event_id: uuid.UUID,
        statuses: Optional[list[MarketStatus]] = None,
        market_type: Optional[MarketType] = None,
    ) -> list[MarketRecord]:
        rows = [
            m for m in self.markets.values()
            if m.event_id == event_id
            and (statuses is None or m.status in statuses)
            and (market_type is None or m.type == market_type)
        ]
        rows.sort(key=lambda m: (m.sort_order, m.market_key))
        return rows

    async def count_markets(self, event_id: uuid.UUID) -> int:
        return sum(1 for m in self.markets.values() if m.event_id == event_id)

    async def settle_market(
        self, market_id: uuid.UUID, outcomes: dict[uuid.UUID, SelectionStatus]
    ) -> bool:
        market = self.markets.get(market_id)
        if market is None:
            raise StoreError(f"unknown market {market_id}")
        if market.status == MarketStatus.SETTLED:
            return False
        for sel_id, status in outcomes.items():
            selection = self.selections.get(sel_id)
            if selection is None or selection.market_id != market_id:
                raise StoreError(f"selection {sel_id} does not belong to market {market_id}")
        for sel_id, status in outcomes.items():
            selection = self.selections[sel_id]
            if not selection.status.is_settled:
                self.selections[sel_id] = selection.model_copy(update={"status": status})
        self.markets[market_id] = market.model_copy(update={"status": MarketStatus.SETTLED})
        return True

    # ── Selections ──────────────────────────────────────────────────────
    async def find_selection(
        self, market_id: uuid.UUID, outcome: str, params: str = ""
    ) -> Optional[SelectionRecord]:
        return next(
            (
                s for s in self.selections.values()
                if s.market_id == market_id and s.outcome == outcome and s.params == params
            ),
            None,
        )

    async def list_selections(self, market_id: uuid.UUID) -> list[SelectionRecord]:
        return [s for s in self.selections.values() if s.market_id == market_id]

    async def upsert_selection(self, selection: SelectionUpsert) -> SelectionRecord:
        market = self.markets.get(selection.market_id)
        if market is None:
            raise StoreError(f"unknown market {selection.market_id}")
        existing = await self.find_selection(selection.market_id, selection.outcome, selection.params)
        if existing is not None:
            if existing.status.is_settled or market.status == MarketStatus.SETTLED:
                return existing
            updated = existing.model_copy(
                update=selection.model_dump(exclude={"market_id", "outcome", "params"})
            )
            self.selections[existing.id] = updated
            return updated
        if market.status == MarketStatus.SETTLED:
            raise StoreError(f"market {market.id} is settled")
        record = SelectionRecord(id=uuid.uuid4(), **selection.model_dump())
        self.selections[record.id] = record
        return record
