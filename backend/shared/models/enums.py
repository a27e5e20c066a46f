"""Domain enumerations for the oddsfeed platform."""
from __future__ import annotations

from enum import Enum


class EventStatus(str, Enum):
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    ENDED = "ENDED"
    CANCELLED = "CANCELLED"
    POSTPONED = "POSTPONED"

    @property
    def rank(self) -> int:
        """Lifecycle order: UPCOMING < LIVE < {ENDED, CANCELLED, POSTPONED}."""
        if self == EventStatus.UPCOMING:
            return 0
        if self == EventStatus.LIVE:
            return 1
        return 2

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


class MarketType(str, Enum):
    MONEYLINE = "MONEYLINE"
    SPREAD = "SPREAD"
    TOTAL = "TOTAL"
    OUTRIGHT = "OUTRIGHT"
    PROP = "PROP"


class MarketStatus(str, Enum):
    OPEN = "OPEN"
    SUSPENDED = "SUSPENDED"
    SETTLED = "SETTLED"


class SelectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    WON = "WON"
    LOST = "LOST"
    VOID = "VOID"

    @property
    def is_settled(self) -> bool:
        return self in (SelectionStatus.WON, SelectionStatus.LOST, SelectionStatus.VOID)


class Outcome(str, Enum):
    HOME = "HOME"
    AWAY = "AWAY"
    DRAW = "DRAW"
    OVER = "OVER"
    UNDER = "UNDER"


class ProviderName(str, Enum):
    BETSAPI = "betsapi"
    CLOUDBET = "cloudbet"
    API_SPORTS = "api_sports"
    FOOTBALL_DATA = "football_data"


class SettlementSource(str, Enum):
    LIVE_SYNC = "live-sync"
    PROVIDER_RESULT = "provider-result"
    STALE_EVENT_CRON = "stale-event-cron"
    STALE_LIVE_CLEANUP = "stale-live-cleanup"
    ADMIN_MANUAL_RUN = "admin-manual-run"
    ADMIN_FORCE_END = "admin-force-end"


SETTLEMENT_JOB = "auto-settle-event"
