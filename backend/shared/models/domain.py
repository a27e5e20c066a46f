"""
Pydantic v2 domain models shared across all oddsfeed services.
These are the canonical wire/internal representations, not ORM models.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import (
    EventStatus,
    MarketStatus,
    MarketType,
    ProviderName,
    SelectionStatus,
)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Score ───────────────────────────────────────────────────────────────
class Score(DomainModel):
    home: int = 0
    away: int = 0

    @property
    def total(self) -> int:
        return self.home + self.away

    def as_string(self) -> str:
        return f"{self.home}-{self.away}"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Score"]:
        """Parse a provider score string like "2-1". Returns None when unusable."""
        if not raw:
            return None
        parts = raw.strip().split("-")
        if len(parts) != 2:
            return None
        try:
            return cls(home=int(parts[0].strip()), away=int(parts[1].strip()))
        except ValueError:
            return None


# ── Normalized provider output ──────────────────────────────────────────
class NormalizedSelection(DomainModel):
    outcome: str
    name: str
    odds: float
    params: str = ""
    handicap: Optional[float] = None
    probability: Optional[float] = None
    status: SelectionStatus = SelectionStatus.ACTIVE


class NormalizedMarket(DomainModel):
    market_key: str
    name: str
    type: MarketType
    sort_order: int = 10
    status: MarketStatus = MarketStatus.OPEN
    selections: list[NormalizedSelection] = Field(default_factory=list)


class NormalizedCompetition(DomainModel):
    external_id: str
    slug: str
    name: str
    country: Optional[str] = None
    logo: Optional[str] = None


class NormalizedEvent(DomainModel):
    """One provider event mapped into the canonical shape."""
    provider: ProviderName
    provider_event_id: str
    sport_slug: str
    competition: NormalizedCompetition
    home_team: str
    away_team: str
    home_team_logo: Optional[str] = None
    away_team_logo: Optional[str] = None
    start_time: datetime
    status: EventStatus
    scores: Optional[Score] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    markets: list[NormalizedMarket] = Field(default_factory=list)
    # Outrights have no home/away pairing; the provider's event name is kept here.
    title: Optional[str] = None

    @property
    def external_id(self) -> str:
        return f"{self.provider.value}:{self.provider_event_id}"

    @property
    def name(self) -> str:
        if self.title:
            return self.title
        return f"{self.home_team} vs {self.away_team}"

    @property
    def score_string(self) -> str:
        return self.scores.as_string() if self.scores else ""


# ── Store records ───────────────────────────────────────────────────────
class SportUpsert(DomainModel):
    slug: str
    name: str
    icon: Optional[str] = None
    sort_order: int = 100


class SportRecord(SportUpsert):
    id: uuid.UUID
    event_count: int = 0


class CompetitionUpsert(DomainModel):
    sport_id: uuid.UUID
    slug: str
    name: str
    country: Optional[str] = None
    logo: Optional[str] = None
    external_id: Optional[str] = None


class CompetitionRecord(CompetitionUpsert):
    id: uuid.UUID


class EventCreate(DomainModel):
    competition_id: uuid.UUID
    external_id: str
    name: str
    home_team: str
    away_team: str
    home_team_logo: Optional[str] = None
    away_team_logo: Optional[str] = None
    status: EventStatus = EventStatus.UPCOMING
    is_live: bool = False
    start_time: datetime
    scores: Optional[Score] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventRecord(EventCreate):
    id: uuid.UUID
    sport_slug: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MarketUpsert(DomainModel):
    event_id: uuid.UUID
    market_key: str
    name: str
    type: MarketType
    status: MarketStatus = MarketStatus.OPEN
    sort_order: int = 10


class MarketRecord(MarketUpsert):
    id: uuid.UUID


class SelectionUpsert(DomainModel):
    market_id: uuid.UUID
    outcome: str
    name: str
    odds: float
    params: str = ""
    handicap: Optional[float] = None
    probability: Optional[float] = None
    status: SelectionStatus = SelectionStatus.ACTIVE


class SelectionRecord(SelectionUpsert):
    id: uuid.UUID


class StalenessCriteria(DomainModel):
    """Filter for bulk_mark_ended_by_staleness. All given bounds must hold."""
    statuses: list[EventStatus]
    started_before: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    limit: Optional[int] = None
