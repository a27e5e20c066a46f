"""
Football-Data.org (football-data.org) provider connector.
Soccer only, free-tier competitions. Uses v4 API with X-Auth-Token.
Free tier: 10 requests/min. No odds feed.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Optional

import httpx

from shared.errors import NetworkError, ParseError, RateLimitedError
from shared.models.domain import NormalizedCompetition, NormalizedEvent, Score
from shared.models.enums import EventStatus, ProviderName
from shared.utils.http_client import ProviderHTTPClient

from ingest.providers.base import BaseProvider, StopCheck, parse_iso_time, slugify, to_int
from ingest.rate_limiter import SlidingWindowRateLimiter

FOOTBALL_DATA_BASE = "https://api.football-data.org/v4"

# Competition codes available on the free tier.
FREE_TIER_COMPETITIONS = [
    "PL",   # Premier League
    "BL1",  # Bundesliga
    "PD",   # La Liga
    "SA",   # Serie A
    "FL1",  # Ligue 1
    "ELC",  # Championship
    "DED",  # Eredivisie
    "CL",   # Champions League
    "WC",   # World Cup
    "EC",   # European Championship
    "CLI",  # Copa Libertadores
    "BSA",  # Brazilian Serie A
]
LIVE_STATUSES = "IN_PLAY,PAUSED,LIVE"
LOOKAHEAD_DAYS = 3
TBD = "TBD"

STATUS_MAP: dict[str, EventStatus] = {
    "SCHEDULED": EventStatus.UPCOMING,
    "TIMED": EventStatus.UPCOMING,
    "IN_PLAY": EventStatus.LIVE,
    "PAUSED": EventStatus.LIVE,
    "LIVE": EventStatus.LIVE,
    "FINISHED": EventStatus.ENDED,
    "AWARDED": EventStatus.ENDED,
    "POSTPONED": EventStatus.POSTPONED,
    "SUSPENDED": EventStatus.CANCELLED,
    "CANCELLED": EventStatus.CANCELLED,
}


def _status_short(status: str, minute: Optional[int]) -> str:
    if status == "PAUSED":
        return "HT"
    if status in ("IN_PLAY", "LIVE"):
        if minute is None:
            return "LIVE"
        if minute <= 45:
            return "1H"
        return "2H" if minute <= 90 else "ET"
    if status in ("FINISHED", "AWARDED"):
        return "FT"
    return "NS"


def _pair(raw: Any) -> Optional[tuple[int, int]]:
    if not isinstance(raw, dict):
        return None
    home, away = raw.get("home"), raw.get("away")
    if isinstance(home, int) and isinstance(away, int):
        return home, away
    return None


class FootballDataProvider(BaseProvider):
    """Football-Data.org v4 API (soccer only)."""

    def __init__(
        self,
        api_key: str,
        limiter: SlidingWindowRateLimiter,
        base_url: str = FOOTBALL_DATA_BASE,
        timeout_s: float = 15.0,
        competitions: Optional[list[str]] = None,
        max_wait_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-Auth-Token"] = api_key
        http_client = ProviderHTTPClient(
            provider_name=ProviderName.FOOTBALL_DATA.value,
            base_url=base_url,
            headers=headers,
            timeout_s=timeout_s,
            max_retries=1,
            transport=transport,
        )
        super().__init__(ProviderName.FOOTBALL_DATA, http_client, limiter, max_wait_s=max_wait_s)
        self._competitions = list(competitions or FREE_TIER_COMPETITIONS)

    def check_body(self, data: Any, path: str) -> None:
        if not isinstance(data, dict):
            raise ParseError(f"football_data returned a non-object body for {path}")
        code = data.get("errorCode")
        if code is None:
            return
        message = str(data.get("message") or code)
        if to_int(code) == 429:
            raise RateLimitedError(f"football_data throttled: {message}", provider="football_data", from_provider=True)
        raise NetworkError(f"football_data error for {path}: {message}", provider="football_data", status_code=to_int(code))

    # ── Vocabulary ──────────────────────────────────────────────────────
    def sport_keys(self) -> list[str]:
        return ["football"]

    def map_sport(self, sport_key: str) -> str:
        return "football"

    def map_status(self, raw_status: Any) -> EventStatus:
        return STATUS_MAP.get(str(raw_status or "").upper(), EventStatus.UPCOMING)

    # ── Fetch ───────────────────────────────────────────────────────────
    async def fetch_in_play(self, sport_key: str) -> list[dict[str, Any]]:
        data = await self._request("/matches", {"status": LIVE_STATUSES})
        return list(data.get("matches") or [])

    async def fetch_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> list[dict[str, Any]]:
        """One request per free-tier competition, each covering a few days."""
        params = {
            "dateFrom": day.isoformat(),
            "dateTo": (day + timedelta(days=LOOKAHEAD_DAYS - 1)).isoformat(),
        }
        collected: list[dict[str, Any]] = []
        for page, code in enumerate(self._competitions, start=1):
            if self._should_stop_paging(should_stop):
                break
            try:
                data = await self._request(f"/competitions/{code}/matches", params, wait=True)
            except RateLimitedError as exc:
                self._log_paging_stopped(sport_key, page, len(collected), exc)
                break
            except (NetworkError, ParseError) as exc:
                if page == 1:
                    raise
                self._log_paging_stopped(sport_key, page, len(collected), exc)
                continue
            collected.extend(data.get("matches") or [])
        return collected

    # ── Normalization ───────────────────────────────────────────────────
    def is_placeholder(self, raw: dict[str, Any]) -> bool:
        home = (raw.get("homeTeam") or {}).get("name")
        away = (raw.get("awayTeam") or {}).get("name")
        return not home and not away

    def normalize_event(self, raw: dict[str, Any], sport_key: str) -> NormalizedEvent:
        match_id = str(raw.get("id") or "")
        if not match_id:
            raise ParseError("football_data match without id")
        competition = raw.get("competition") or {}
        code = competition.get("code")
        if not code:
            raise ParseError(f"football_data match {match_id} has no competition code")
        home = raw.get("homeTeam") or {}
        away = raw.get("awayTeam") or {}
        status = str(raw.get("status") or "SCHEDULED").upper()
        minute = raw.get("minute")
        minute = to_int(minute) if minute is not None else None

        score = raw.get("score") or {}
        full_time = _pair(score.get("fullTime"))
        half_time = _pair(score.get("halfTime"))
        area = raw.get("area") or {}

        metadata: dict[str, Any] = {
            "source": self._name.value,
            "football_data_id": match_id,
            "status_short": _status_short(status, minute),
            "matchday": raw.get("matchday"),
            "stage": raw.get("stage"),
            "group": raw.get("group"),
            "area": area.get("name"),
            "competition_code": code,
            "home_team_id": home.get("id"),
            "away_team_id": away.get("id"),
        }
        if minute is not None:
            metadata["elapsed"] = minute
        if half_time is not None:
            metadata["half_time"] = {"home": half_time[0], "away": half_time[1]}

        return NormalizedEvent(
            provider=self._name,
            provider_event_id=match_id,
            sport_slug="football",
            competition=NormalizedCompetition(
                external_id=f"football_data-{code}",
                slug=slugify(competition.get("name") or code),
                name=competition.get("name") or code,
                country=area.get("name"),
                logo=competition.get("emblem"),
            ),
            home_team=home.get("name") or TBD,
            away_team=away.get("name") or TBD,
            home_team_logo=home.get("crest"),
            away_team_logo=away.get("crest"),
            start_time=parse_iso_time(raw.get("utcDate")),
            status=self.map_status(status),
            scores=Score(home=full_time[0], away=full_time[1]) if full_time else None,
            metadata=metadata,
        )
