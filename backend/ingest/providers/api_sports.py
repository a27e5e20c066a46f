"""
API-Sports (api-sports.io) provider connector.
One API host per sport; football uses the v3 /fixtures shape, every other
sport the /games shape. A non-empty `errors` field is a failure. No odds.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

import httpx

from shared.errors import NetworkError, ParseError, RateLimitedError
from shared.models.domain import NormalizedCompetition, NormalizedEvent, Score
from shared.models.enums import EventStatus, ProviderName
from shared.utils.http_client import ProviderHTTPClient

from ingest.providers.base import BaseProvider, StopCheck, parse_iso_time, parse_unix_time, slugify, to_int
from ingest.rate_limiter import SlidingWindowRateLimiter


@dataclass(frozen=True)
class ApiSportsSport:
    slug: str
    host: str
    fixtures_shape: bool = False


SPORTS: list[ApiSportsSport] = [
    ApiSportsSport("football", "v3.football.api-sports.io", fixtures_shape=True),
    ApiSportsSport("basketball", "v1.basketball.api-sports.io"),
    ApiSportsSport("ice-hockey", "v1.hockey.api-sports.io"),
    ApiSportsSport("american-football", "v1.american-football.api-sports.io"),
    ApiSportsSport("handball", "v1.handball.api-sports.io"),
    ApiSportsSport("baseball", "v1.baseball.api-sports.io"),
    ApiSportsSport("rugby", "v1.rugby.api-sports.io"),
    ApiSportsSport("volleyball", "v1.volleyball.api-sports.io"),
    ApiSportsSport("afl", "v1.afl.api-sports.io"),
]
SPORTS_BY_SLUG: dict[str, ApiSportsSport] = {s.slug: s for s in SPORTS}

_UPCOMING = ("NS", "TBD")
_LIVE = (
    "Q1", "Q2", "Q3", "Q4", "OT", "BT", "HT", "P1", "P2", "P3", "INT", "LIVE",
    "1H", "2H", "S1", "S2", "S3", "S4", "S5", "ET", "P",
    "IN1", "IN2", "IN3", "IN4", "IN5", "IN6", "IN7", "IN8", "IN9",
)
_ENDED = ("FT", "AOT", "AP", "AWD", "WO", "AET", "PEN", "Completed")
_POSTPONED = ("PST", "POST")
_CANCELLED = ("CANC", "ABD", "SUSP", "Cancelled")

STATUS_MAP: dict[str, EventStatus] = {
    **{s: EventStatus.UPCOMING for s in _UPCOMING},
    **{s: EventStatus.LIVE for s in _LIVE},
    **{s: EventStatus.ENDED for s in _ENDED},
    **{s: EventStatus.POSTPONED for s in _POSTPONED},
    **{s: EventStatus.CANCELLED for s in _CANCELLED},
}

_THROTTLE_WORDING = re.compile(r"rate|limit|too many requests", re.IGNORECASE)


def _score_value(raw: Any) -> Optional[int]:
    """Scores are plain ints on some sports and {"total": n} on others."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("total"), int):
        return raw["total"]
    return None


def _scores(home: Any, away: Any) -> Optional[Score]:
    h, a = _score_value(home), _score_value(away)
    if h is None or a is None:
        return None
    return Score(home=h, away=a)


class ApiSportsProvider(BaseProvider):
    """api-sports.io v1/v3 hosts."""

    def __init__(
        self,
        api_key: str,
        limiter: SlidingWindowRateLimiter,
        timeout_s: float = 30.0,
        max_wait_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        http_client = ProviderHTTPClient(
            provider_name=ProviderName.API_SPORTS.value,
            base_url=f"https://{SPORTS[0].host}",
            headers={"x-apisports-key": api_key, "Accept": "application/json"},
            timeout_s=timeout_s,
            max_retries=1,
            transport=transport,
        )
        super().__init__(ProviderName.API_SPORTS, http_client, limiter, max_wait_s=max_wait_s)

    def check_body(self, data: Any, path: str) -> None:
        if not isinstance(data, dict):
            raise ParseError(f"api_sports returned a non-object body for {path}")
        errors = data.get("errors")
        if isinstance(errors, dict):
            message = ", ".join(str(v) for v in errors.values())
        elif isinstance(errors, list):
            message = ", ".join(str(v) for v in errors)
        else:
            message = ""
        if not message:
            return
        if _THROTTLE_WORDING.search(message) or (isinstance(errors, dict) and "rateLimit" in errors):
            raise RateLimitedError(f"api_sports throttled: {message}", provider="api_sports", from_provider=True)
        raise NetworkError(f"api_sports error for {path}: {message}", provider="api_sports")

    # ── Vocabulary ──────────────────────────────────────────────────────
    def sport_keys(self) -> list[str]:
        return [s.slug for s in SPORTS]

    def map_sport(self, sport_key: str) -> str:
        return sport_key

    def map_status(self, raw_status: Any) -> EventStatus:
        return STATUS_MAP.get(str(raw_status), EventStatus.UPCOMING)

    def upcoming_days(self, sport_key: str) -> int:
        return 2 if sport_key == "football" else 1

    # ── Fetch ───────────────────────────────────────────────────────────
    def _url(self, sport_key: str, resource: str) -> str:
        sport = SPORTS_BY_SLUG.get(sport_key)
        if sport is None:
            raise ParseError(f"api_sports has no host for sport {sport_key!r}")
        return f"https://{sport.host}/{resource}"

    def _resource(self, sport_key: str) -> str:
        sport = SPORTS_BY_SLUG.get(sport_key)
        return "fixtures" if sport and sport.fixtures_shape else "games"

    async def fetch_in_play(self, sport_key: str) -> list[dict[str, Any]]:
        data = await self._request(self._url(sport_key, self._resource(sport_key)), {"live": "all"})
        return list(data.get("response") or [])

    async def fetch_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> list[dict[str, Any]]:
        if self._should_stop_paging(should_stop):
            return []
        data = await self._request(
            self._url(sport_key, self._resource(sport_key)), {"date": day.isoformat()}, wait=True
        )
        return list(data.get("response") or [])

    # ── Normalization ───────────────────────────────────────────────────
    def raw_event_id(self, raw: dict[str, Any]) -> str:
        fixture = raw.get("fixture")
        if isinstance(fixture, dict):
            return str(fixture.get("id") or "")
        return str(raw.get("id") or "")

    def normalize_event(self, raw: dict[str, Any], sport_key: str) -> NormalizedEvent:
        event_id = self.raw_event_id(raw)
        if not event_id:
            raise ParseError("api_sports record without id")
        teams = raw.get("teams") or {}
        home = teams.get("home") or {}
        away = teams.get("away") or {}
        if not home.get("name") or not away.get("name"):
            raise ParseError(f"api_sports record {event_id} is missing a team")
        league = raw.get("league") or {}
        if not league.get("id") or not league.get("name"):
            raise ParseError(f"api_sports record {event_id} has no league")

        if "fixture" in raw:
            fixture = raw["fixture"] or {}
            status = fixture.get("status") or {}
            start_time = parse_unix_time(fixture.get("timestamp"))
            scores = _scores((raw.get("goals") or {}).get("home"), (raw.get("goals") or {}).get("away"))
            elapsed = status.get("elapsed")
        else:
            status = raw.get("status") or {}
            start_time = (
                parse_unix_time(raw["timestamp"]) if raw.get("timestamp") else parse_iso_time(raw.get("date"))
            )
            raw_scores = raw.get("scores") or {}
            scores = _scores(raw_scores.get("home"), raw_scores.get("away"))
            elapsed = status.get("timer")

        short = str(status.get("short") or "NS")
        country = league.get("country")
        if isinstance(country, dict):
            country = country.get("name")
        if not country and isinstance(raw.get("country"), dict):
            country = raw["country"].get("name")

        metadata: dict[str, Any] = {
            "source": self._name.value,
            "api_sports_id": event_id,
            "status_short": short,
            "status_long": status.get("long"),
            "round": league.get("round"),
            "league_season": league.get("season"),
        }
        if elapsed is not None and to_int(elapsed, -1) >= 0:
            metadata["elapsed"] = to_int(elapsed)

        return NormalizedEvent(
            provider=self._name,
            provider_event_id=event_id,
            sport_slug=self.map_sport(sport_key),
            competition=NormalizedCompetition(
                external_id=f"api_sports-{sport_key}-{league['id']}",
                slug=slugify(f"{league['name']}-{country or 'intl'}"),
                name=league["name"],
                country=country,
                logo=league.get("logo"),
            ),
            home_team=home["name"],
            away_team=away["name"],
            home_team_logo=home.get("logo"),
            away_team_logo=away.get("logo"),
            start_time=start_time,
            status=self.map_status(short),
            scores=scores,
            metadata=metadata,
        )
