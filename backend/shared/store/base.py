"""
Abstract persistence contract for the canonical Sport/Competition/Event/
Market/Selection hierarchy.

Implementations must uphold these guarantees the pipeline relies on:
  * create_event never produces two events for one external_id; a conflict
    raises DuplicateExternalIdError so the caller can re-query.
  * a Selection in WON/LOST/VOID is never rewritten, and a SETTLED Market
    is never reopened or re-settled.
  * update_event never moves an event's status backwards or out of a
    terminal status, even when the caller read it before a concurrent write.
"""
from __future__ import annotations

import abc
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

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

# Fields update_event accepts.
EVENT_MUTABLE_FIELDS = frozenset({
    "external_id",
    "name",
    "home_team",
    "away_team",
    "home_team_logo",
    "away_team_logo",
    "status",
    "is_live",
    "start_time",
    "scores",
    "metadata",
    "competition_id",
})


def status_write_allowed(current: EventStatus, new: EventStatus) -> bool:
    """A status write only moves forward and never leaves a terminal status."""
    if new == current:
        return True
    return not current.is_terminal and new.rank >= current.rank


def drop_stale_status(current: EventStatus, changes: dict[str, Any]) -> dict[str, Any]:
    """
    Strip status/is_live from `changes` when they would move `current` backwards.

    The rest of the write still applies. Callers compare the returned
    record's status with what they asked for.
    """
    if "status" not in changes or status_write_allowed(current, EventStatus(changes["status"])):
        return changes
    return {k: v for k, v in changes.items() if k not in ("status", "is_live")}


class Store(abc.ABC):
    """Persistence port. All methods may raise StoreError."""

    # ── Sports & competitions ───────────────────────────────────────────
    @abc.abstractmethod
    async def upsert_sport(self, sport: SportUpsert) -> SportRecord:
        """Create by slug or update display fields."""
        ...

    @abc.abstractmethod
    async def upsert_competition(self, competition: CompetitionUpsert) -> CompetitionRecord:
        """
        Find by external_id, else by (sport_id, slug), else create.
        A slug match adopts the incoming external_id.
        """
        ...

    @abc.abstractmethod
    async def count_events_by_sport(self, statuses: list[EventStatus]) -> dict[str, int]:
        ...

    @abc.abstractmethod
    async def update_sport_event_counts(self, counts: dict[str, int]) -> None:
        ...

    # ── Events ──────────────────────────────────────────────────────────
    @abc.abstractmethod
    async def get_event(self, event_id: uuid.UUID) -> Optional[EventRecord]:
        ...

    @abc.abstractmethod
    async def find_by_external_id(self, external_id: str) -> Optional[EventRecord]:
        ...

    @abc.abstractmethod
    async def find_fuzzy(
        self, home_team: str, away_team: str, start_time: datetime, window: timedelta
    ) -> list[EventRecord]:
        """Candidate events starting within start_time +- window. Name matching is the caller's."""
        ...

    @abc.abstractmethod
    async def create_event(self, event: EventCreate) -> EventRecord:
        """Raises DuplicateExternalIdError if external_id is taken."""
        ...

    @abc.abstractmethod
    async def update_event(self, event_id: uuid.UUID, changes: dict[str, Any]) -> Optional[EventRecord]:
        """Apply changes (keys from EVENT_MUTABLE_FIELDS) and bump updated_at."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: uuid.UUID) -> bool:
        """Remove an event and its markets/selections."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        statuses: Optional[list[EventStatus]] = None,
        started_before: Optional[datetime] = None,
        with_open_markets: bool = False,
        limit: Optional[int] = None,
    ) -> list[EventRecord]:
        """Events ordered by start_time ascending."""
        ...

    @abc.abstractmethod
    async def bulk_mark_ended_by_staleness(
        self, criteria: StalenessCriteria
    ) -> list[EventRecord]:
        """
        Move matching events to ENDED (is_live False), oldest start first.
        Returns only the events this call transitioned.
        """
        ...

    @abc.abstractmethod
    async def bulk_mark_live_by_start_time(self, now: datetime) -> int:
        """UPCOMING events whose start_time <= now become LIVE. Returns the count."""
        ...

    # ── Markets ─────────────────────────────────────────────────────────
    @abc.abstractmethod
    async def upsert_market(self, market: MarketUpsert) -> MarketRecord:
        """Create by (event_id, market_key) or update; a SETTLED market is returned untouched."""
        ...

    @abc.abstractmethod
    async def list_markets(
        self,
        event_id: uuid.UUID,
        statuses: Optional[list[MarketStatus]] = None,
        market_type: Optional[MarketType] = None,
    ) -> list[MarketRecord]:
        ...

    @abc.abstractmethod
    async def count_markets(self, event_id: uuid.UUID) -> int:
        ...

    @abc.abstractmethod
    async def settle_market(
        self, market_id: uuid.UUID, outcomes: dict[uuid.UUID, SelectionStatus]
    ) -> bool:
        """
        Atomically write selection results and mark the market SETTLED.
        Returns False (and writes nothing) if the market is already SETTLED.
        """
        ...

    # ── Selections ──────────────────────────────────────────────────────
    @abc.abstractmethod
    async def find_selection(
        self, market_id: uuid.UUID, outcome: str, params: str = ""
    ) -> Optional[SelectionRecord]:
        ...

    @abc.abstractmethod
    async def list_selections(self, market_id: uuid.UUID) -> list[SelectionRecord]:
        ...

    @abc.abstractmethod
    async def upsert_selection(self, selection: SelectionUpsert) -> SelectionRecord:
        """Create or update odds/status; a settled selection is returned untouched."""
        ...
