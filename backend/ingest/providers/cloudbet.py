"""
Cloudbet Sports Feed API provider connector.

The one provider with full tree retrieval: sports -> competitions (top N
by event count) -> events, with markets inline on every event. Market types
are derived from the key by keyword rules; only BACK-side prices above 1.0
are kept.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Optional

import httpx

from shared.errors import NetworkError, ParseError, RateLimitedError
from shared.models.domain import (
    NormalizedCompetition,
    NormalizedEvent,
    NormalizedMarket,
    NormalizedSelection,
)
from shared.models.enums import EventStatus, MarketType, Outcome, ProviderName, SelectionStatus
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.markets import (
    derive_market_name,
    derive_period,
    extract_param_value,
    market_sort_order,
    period_market_key,
    selection_display_name,
)
from ingest.providers.base import BaseProvider, StopCheck, parse_iso_time, slugify, to_int
from ingest.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)

CLOUDBET_BASE = "https://sports-api.cloudbet.com/pub"
OUTRIGHT_EVENT_TYPE = "EVENT_TYPE_OUTRIGHT"

PRIORITY_SPORT_KEYS = [
    "soccer",
    "basketball",
    "tennis",
    "ice-hockey",
    "baseball",
    "american-football",
    "cricket",
    "mma",
    "boxing",
    "volleyball",
    "table-tennis",
    "handball",
]

SPORT_KEY_MAP: dict[str, str] = {
    "soccer": "football",
    "rugby-union": "rugby",
}

EVENT_STATUS: dict[str, EventStatus] = {
    "PRE_TRADING": EventStatus.UPCOMING,
    "TRADING": EventStatus.UPCOMING,
    "TRADING_LIVE": EventStatus.LIVE,
    "RESULTED": EventStatus.ENDED,
    "CANCELLED": EventStatus.CANCELLED,
    "POSTPONED": EventStatus.POSTPONED,
}

_KNOWN_OUTCOMES = {o.value.lower(): o.value for o in Outcome}


def map_sport_key(key: str) -> str:
    if key.startswith(("esports", "e-")):
        return "esports"
    return SPORT_KEY_MAP.get(key, key)


def map_selection_status(raw: Any) -> SelectionStatus:
    return SelectionStatus.ACTIVE if raw == "SELECTION_ENABLED" else SelectionStatus.SUSPENDED


def _line(params: str) -> Optional[float]:
    value = extract_param_value(params)
    try:
        return float(value) if value else None
    except ValueError:
        return None


def parse_markets(raw_markets: Any, is_outright: bool, map_type: Any) -> list[NormalizedMarket]:
    """
    Flatten Cloudbet's market -> submarket -> selections tree.

    Submarkets of the same period collapse into one market keyed
    `<marketKey>` (full time) or `<marketKey>:<PERIOD>`.
    """
    if not isinstance(raw_markets, dict):
        return []
    by_key: dict[str, NormalizedMarket] = {}
    for market_key, market in raw_markets.items():
        submarkets = (market or {}).get("submarkets") or {}
        market_type = MarketType.OUTRIGHT if is_outright else map_type(market_key)
        for submarket_key, submarket in submarkets.items():
            selections = (submarket or {}).get("selections") or []
            if not selections:
                continue
            period = derive_period(submarket_key)
            key = period_market_key(market_key, period)
            target = by_key.get(key)
            if target is None:
                name = derive_market_name(market_key)
                target = NormalizedMarket(
                    market_key=key,
                    name=name if period == "FT" else f"{name} ({period})",
                    type=market_type,
                    sort_order=market_sort_order(market_type),
                )
                by_key[key] = target
            for raw in selections:
                if raw.get("side") and raw.get("side") != "BACK":
                    continue
                try:
                    price = float(raw.get("price") or 0)
                except (TypeError, ValueError):
                    continue
                if price <= 1:
                    continue
                raw_outcome = str(raw.get("outcome") or "")
                if not raw_outcome:
                    continue
                params = str(raw.get("params") or "")
                outcome = raw_outcome if is_outright else _KNOWN_OUTCOMES.get(raw_outcome.lower(), raw_outcome)
                probability = raw.get("probability")
                target.selections.append(
                    NormalizedSelection(
                        outcome=outcome,
                        name=selection_display_name(raw_outcome, params, is_outright),
                        odds=price,
                        params=params,
                        handicap=_line(params),
                        probability=float(probability) if isinstance(probability, (int, float)) else None,
                        status=map_selection_status(raw.get("status")),
                    )
                )
    return [m for m in by_key.values() if m.selections]


class CloudbetProvider(BaseProvider):
    """Cloudbet v2 odds feed."""

    supports_odds = True

    def __init__(
        self,
        api_key: str,
        limiter: SlidingWindowRateLimiter,
        base_url: str = CLOUDBET_BASE,
        timeout_s: float = 20.0,
        max_competitions: int = 20,
        max_wait_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        http_client = ProviderHTTPClient(
            provider_name=ProviderName.CLOUDBET.value,
            base_url=base_url,
            headers={"X-API-Key": api_key, "Accept": "application/json"},
            timeout_s=timeout_s,
            max_retries=1,
            transport=transport,
        )
        super().__init__(ProviderName.CLOUDBET, http_client, limiter, max_wait_s=max_wait_s)
        self._max_competitions = max_competitions

    def check_body(self, data: Any, path: str) -> None:
        if not isinstance(data, dict):
            raise ParseError(f"cloudbet returned a non-object body for {path}")

    # ── Vocabulary ──────────────────────────────────────────────────────
    def sport_keys(self) -> list[str]:
        return list(PRIORITY_SPORT_KEYS)

    def map_sport(self, sport_key: str) -> str:
        return map_sport_key(sport_key)

    def map_status(self, raw_status: Any) -> EventStatus:
        return EVENT_STATUS.get(str(raw_status), EventStatus.UPCOMING)

    # ── Fetch ───────────────────────────────────────────────────────────
    async def fetch_sports(self) -> list[dict[str, Any]]:
        """All sports with events, busiest first."""
        data = await self._request("/v2/odds/sports")
        sports = [s for s in data.get("sports") or [] if to_int(s.get("eventCount")) > 0]
        return sorted(sports, key=lambda s: to_int(s.get("eventCount")), reverse=True)

    async def fetch_competition_keys(self, sport_key: str) -> list[str]:
        """Competition keys of one sport, by event count, capped."""
        data = await self._request(f"/v2/odds/sports/{sport_key}", wait=True)
        entries: list[dict[str, Any]] = list(data.get("competitions") or [])
        for category in data.get("categories") or []:
            entries.extend(category.get("competitions") or [])
        entries.sort(key=lambda c: to_int(c.get("eventCount")), reverse=True)
        return [c["key"] for c in entries if c.get("key")][: self._max_competitions]

    async def fetch_in_play(self, sport_key: str) -> list[dict[str, Any]]:
        data = await self._request("/v2/odds/events", {"sport": sport_key, "live": "true", "limit": "50"})
        if "competitions" in data:
            return [
                {**event, "_competition": _competition_stub(comp)}
                for comp in data.get("competitions") or []
                for event in comp.get("events") or []
            ]
        competition = data.get("competition")
        return [
            {**event, "_competition": competition} if competition else event
            for event in data.get("events") or []
        ]

    async def fetch_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> list[dict[str, Any]]:
        """
        Competition pages are not day-scoped: the whole tree for the sport
        is returned and `day` is ignored. Each competition counts as a page.
        """
        competition_keys = await self.fetch_competition_keys(sport_key)
        collected: list[dict[str, Any]] = []
        for page, comp_key in enumerate(competition_keys, start=1):
            if self._should_stop_paging(should_stop):
                break
            try:
                data = await self._request(f"/v2/odds/competitions/{comp_key}", wait=True)
            except RateLimitedError as exc:
                self._log_paging_stopped(sport_key, page, len(collected), exc)
                break
            except (NetworkError, ParseError) as exc:
                logger.warning("cloudbet_competition_failed", competition=comp_key, error=str(exc))
                continue
            stub = _competition_stub(data, fallback_key=comp_key)
            collected.extend({**event, "_competition": stub} for event in data.get("events") or [])
        return collected

    async def fetch_odds(
        self, provider_event_id: str, sport_key: str, is_live: bool = False
    ) -> list[NormalizedMarket]:
        data = await self._request(f"/v2/odds/events/{provider_event_id}")
        return parse_markets(
            data.get("markets"), data.get("type") == OUTRIGHT_EVENT_TYPE, self.map_market_type
        )

    # ── Normalization ───────────────────────────────────────────────────
    def normalize_event(self, raw: dict[str, Any], sport_key: str) -> NormalizedEvent:
        event_id = str(raw.get("id") or "")
        if not event_id:
            raise ParseError("cloudbet event without id")
        slug = self.map_sport(sport_key)
        is_outright = raw.get("type") == OUTRIGHT_EVENT_TYPE
        home = raw.get("home") or {}
        away = raw.get("away") or {}

        title: Optional[str] = None
        if is_outright:
            title = raw.get("name") or f"Outright #{event_id}"
            home_team, away_team = title, ""
        elif home.get("name") and away.get("name"):
            home_team, away_team = home["name"], away["name"]
        else:
            raise ParseError(f"cloudbet event {event_id} has no teams")

        comp = raw.get("_competition") or {}
        comp_key = comp.get("key") or f"{sport_key}-other"
        category = comp.get("category") or {}

        metadata: dict[str, Any] = {"source": self._name.value, "cloudbet_id": event_id}
        if is_outright:
            metadata["outright"] = True
        for side, team in (("home", home), ("away", away)):
            if team.get("nationality"):
                metadata[f"{side}_country"] = team["nationality"]
            if team.get("abbreviation"):
                metadata[f"{side}_abbr"] = team["abbreviation"]

        return NormalizedEvent(
            provider=self._name,
            provider_event_id=event_id,
            sport_slug=slug,
            competition=NormalizedCompetition(
                external_id=f"cloudbet-{comp_key}",
                slug=slugify(comp_key),
                name=comp.get("name") or comp_key,
                country=category.get("name"),
            ),
            home_team=home_team,
            away_team=away_team,
            start_time=parse_iso_time(raw.get("cutoffTime")),
            status=self.map_status(raw.get("status")),
            metadata=metadata,
            markets=parse_markets(raw.get("markets"), is_outright, self.map_market_type),
            title=title,
        )


def _competition_stub(data: dict[str, Any], fallback_key: str = "") -> dict[str, Any]:
    return {
        "key": data.get("key") or fallback_key,
        "name": data.get("name") or fallback_key,
        "category": data.get("category") or {},
    }
