"""
Market/odds synchronization.

Provider market keys vary wildly ("soccer.match_odds", "tennis.winner",
"basketball.totals", "ou2.5"), so types are derived from keyword rules
over the key with its sport prefix stripped rather than from per-provider
lists. The synchronizer upserts Market/Selection rows, never touches a
settled selection and broadcasts an odds:update only for real moves.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from shared.errors import StoreError
from shared.models.domain import (
    EventRecord,
    MarketUpsert,
    NormalizedMarket,
    NormalizedSelection,
    SelectionUpsert,
)
from shared.models.enums import MarketStatus, MarketType
from shared.publishers import BroadcastPublisher, NullBroadcastPublisher, event_channel
from shared.store.base import Store
from shared.utils.logging import get_logger
from shared.utils.metrics import ODDS_CHANGES, RECORDS_SKIPPED

logger = get_logger(__name__)

ODDS_CHANGE_THRESHOLD = 0.001

_SORT_ORDER = {
    MarketType.MONEYLINE: 1,
    MarketType.SPREAD: 2,
    MarketType.TOTAL: 3,
    MarketType.OUTRIGHT: 4,
    MarketType.PROP: 10,
}
_OU_KEY = re.compile(r"^ou\d")
_PARAM_VALUE = re.compile(r"(?:total|handicap|line|spread|points)=(-?\d+(?:\.\d+)?)")
_ANY_NUMBER = re.compile(r"(-?\d+(?:\.\d+)?)")
_PLAIN_NUMBER = re.compile(r"^-?\d+(?:\.\d+)?$")
_PERIOD = re.compile(r"period=(\w+)")


# ── Vocabulary ──────────────────────────────────────────────────────────
def strip_sport_prefix(market_key: str) -> str:
    """'soccer.match_odds' -> 'match_odds'."""
    key = market_key.lower()
    return key.split(".", 1)[1] if "." in key else key


def derive_market_type(market_key: str) -> MarketType:
    key = market_key.lower()
    stripped = strip_sport_prefix(market_key)
    if (
        "match_odds" in key
        or "moneyline" in key
        or stripped in ("winner", "win", "1x2")
        or stripped.startswith(("winner:", "win:"))
    ):
        return MarketType.MONEYLINE
    if "asian_handicap" in key or "handicap" in key or "spread" in key:
        return MarketType.SPREAD
    if "team_total" in key:
        # Graded on one side's score only.
        return MarketType.PROP
    if (
        "total_goals" in key
        or "totals" in key
        or "over_under" in key
        or stripped.startswith("total")
        or _OU_KEY.match(stripped)
    ):
        return MarketType.TOTAL
    if "outright" in key:
        return MarketType.OUTRIGHT
    return MarketType.PROP


def derive_market_name(market_key: str) -> str:
    """'soccer.asian_handicap' -> 'Asian Handicap'."""
    raw = market_key.split(".", 1)[1] if "." in market_key else market_key
    return " ".join(word[:1].upper() + word[1:].lower() for word in raw.split("_") if word)


def derive_period(submarket_key: str) -> str:
    """'period=ft' -> 'FT', 'period=h1&...' -> 'H1'."""
    match = _PERIOD.search(submarket_key or "")
    return match.group(1).upper() if match else "FT"


def period_market_key(market_key: str, period: str) -> str:
    return market_key if period == "FT" else f"{market_key}:{period}"


def market_sort_order(market_type: MarketType) -> int:
    return _SORT_ORDER.get(market_type, 10)


def extract_param_value(params: str) -> str:
    """'innings=2&team=home&total=239.5' -> '239.5'; '2.5' -> '2.5'."""
    if not params:
        return ""
    text = params.strip()
    if _PLAIN_NUMBER.match(text):
        return text
    match = _PARAM_VALUE.search(text) or _ANY_NUMBER.search(text)
    return match.group(1) if match else text


def clean_outcome_slug(slug: str) -> str:
    """Outright outcome slug to display name: 's-arsenal-fc' -> 'Arsenal FC'."""
    cleaned = slug[2:] if slug.startswith("s-") else slug
    words = []
    for word in cleaned.split("-"):
        if re.match(r"^\d+\.\d+$", word):
            words.append(word)
        elif word.lower() in ("fc", "afc", "cf", "sc", "us"):
            words.append(word.upper())
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return " ".join(words).strip()


def selection_display_name(outcome: str, params: str = "", is_outright: bool = False) -> str:
    if is_outright:
        return clean_outcome_slug(outcome)
    value = extract_param_value(params) if params else ""
    lowered = outcome.lower()
    if lowered == "home":
        return "1"
    if lowered == "draw":
        return "X"
    if lowered == "away":
        return "2"
    if lowered in ("over", "under"):
        label = lowered.capitalize()
        return f"{label} {value}" if value else label
    if lowered in ("yes", "no"):
        return lowered.capitalize()
    return f"{outcome} {value}" if value else outcome


def normalize_params(params: Optional[str]) -> str:
    """Canonical params string: trimmed, lowercased, '&' parts sorted."""
    if not params:
        return ""
    parts = [p.strip().lower() for p in params.split("&") if p.strip()]
    return "&".join(sorted(parts))


def odds_changed(old: float, new: float, threshold: float = ODDS_CHANGE_THRESHOLD) -> bool:
    return abs(new - old) > threshold


# ── Synchronizer ────────────────────────────────────────────────────────
@dataclass
class MarketSyncResult:
    markets: int = 0
    created: int = 0
    changed: int = 0
    unchanged: int = 0
    skipped_settled: int = 0
    failed: int = 0
    updates: list[dict[str, Any]] = field(default_factory=list)


class MarketSynchronizer:
    def __init__(
        self,
        store: Store,
        broadcaster: Optional[BroadcastPublisher] = None,
        provider: str = "",
        change_threshold: float = ODDS_CHANGE_THRESHOLD,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster or NullBroadcastPublisher()
        self._provider = provider
        self._threshold = change_threshold

    async def sync_markets(self, event: EventRecord, markets: list[NormalizedMarket]) -> MarketSyncResult:
        result = MarketSyncResult()
        for market in markets:
            try:
                await self._sync_market(event, market, result)
            except StoreError as exc:
                result.failed += 1
                RECORDS_SKIPPED.labels(provider=self._provider, reason="market_store_error").inc()
                logger.warning(
                    "market_sync_failed",
                    provider=self._provider,
                    event_id=str(event.id),
                    market_key=market.market_key,
                    error=str(exc),
                )
        if result.changed:
            ODDS_CHANGES.labels(provider=self._provider).inc(result.changed)
        return result

    async def _sync_market(self, event: EventRecord, market: NormalizedMarket, result: MarketSyncResult) -> None:
        record = await self._store.upsert_market(
            MarketUpsert(
                event_id=event.id,
                market_key=market.market_key,
                name=market.name,
                type=market.type,
                status=MarketStatus.SUSPENDED if market.status == MarketStatus.SUSPENDED else MarketStatus.OPEN,
                sort_order=market.sort_order,
            )
        )
        result.markets += 1
        if record.status == MarketStatus.SETTLED:
            result.skipped_settled += len(market.selections)
            return

        for selection in market.selections:
            await self._sync_selection(event, record.id, market.market_key, selection, result)

    async def _sync_selection(
        self,
        event: EventRecord,
        market_id: Any,
        market_key: str,
        selection: NormalizedSelection,
        result: MarketSyncResult,
    ) -> None:
        params = normalize_params(selection.params)
        existing = await self._store.find_selection(market_id, selection.outcome, params)
        if existing is not None and existing.status.is_settled:
            result.skipped_settled += 1
            return

        upsert = SelectionUpsert(
            market_id=market_id,
            outcome=selection.outcome,
            name=selection.name,
            odds=selection.odds,
            params=params,
            handicap=selection.handicap,
            probability=selection.probability,
            status=selection.status,
        )
        if existing is None:
            await self._store.upsert_selection(upsert)
            result.created += 1
            return

        moved = odds_changed(existing.odds, selection.odds, self._threshold)
        if not moved and existing.status == selection.status and existing.name == selection.name:
            result.unchanged += 1
            return
        await self._store.upsert_selection(upsert)
        if not moved:
            result.unchanged += 1
            return

        result.changed += 1
        update = {
            "eventId": str(event.id),
            "marketKey": market_key,
            "selectionId": str(existing.id),
            "outcome": selection.outcome,
            "oldOdds": existing.odds,
            "newOdds": selection.odds,
            "direction": "up" if selection.odds > existing.odds else "down",
        }
        result.updates.append(update)
        await self._broadcaster.publish(event_channel(event.id), "odds:update", update)
