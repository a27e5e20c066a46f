"""
BetsAPI (betsapi.com) provider connector.
Multi-sport in-play and upcoming events, real odds for football and
basketball. Token auth via query string; success != 1 is a failure and a
TOO_MANY_REQUESTS body means we are being throttled.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

import httpx

from shared.errors import NetworkError, ParseError, RateLimitedError
from shared.models.domain import (
    NormalizedCompetition,
    NormalizedEvent,
    NormalizedMarket,
    NormalizedSelection,
    Score,
)
from shared.models.enums import EventStatus, MarketType, Outcome, ProviderName
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger

from ingest.providers.base import BaseProvider, StopCheck, parse_unix_time, slugify, to_int
from ingest.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)

BETSAPI_BASE = "https://api.betsapi.com/v1"
BETSAPI_ODDS_URL = "https://api.betsapi.com/v2/event/odds"
TEAM_IMAGE_BASE = "https://assets.b365api.com/images/team/b"

MIN_ODDS = 1.02
MAX_ODDS = 31.0


@dataclass(frozen=True)
class BetsAPISport:
    betsapi_id: int
    slug: str
    priority: int
    real_odds: bool = False


SPORTS: list[BetsAPISport] = [
    BetsAPISport(1, "football", 1, real_odds=True),
    BetsAPISport(18, "basketball", 2, real_odds=True),
    BetsAPISport(13, "tennis", 3),
    BetsAPISport(17, "ice-hockey", 4),
    BetsAPISport(16, "baseball", 5),
    BetsAPISport(3, "cricket", 6),
    BetsAPISport(8, "rugby", 7),
    BetsAPISport(19, "rugby-league", 8),
    BetsAPISport(78, "handball", 9),
    BetsAPISport(91, "volleyball", 10),
    BetsAPISport(9, "boxing", 11),
    BetsAPISport(151, "esports", 12),
    BetsAPISport(92, "table-tennis", 13),
    BetsAPISport(94, "badminton", 14),
    BetsAPISport(83, "futsal", 15),
    BetsAPISport(84, "field-hockey", 16),
    BetsAPISport(107, "golf", 17),
    BetsAPISport(110, "water-polo", 18),
    BetsAPISport(90, "floorball", 19),
    BetsAPISport(89, "bandy", 20),
    BetsAPISport(98, "curling", 21),
    BetsAPISport(75, "lacrosse", 22),
    BetsAPISport(2, "horse-racing", 23),
    BetsAPISport(4, "greyhounds", 24),
]
SPORTS_BY_ID: dict[str, BetsAPISport] = {str(s.betsapi_id): s for s in SPORTS}

# Look-ahead days for the full sync, by betsapi sport id.
UPCOMING_DAYS: dict[str, int] = {
    **{sid: 3 for sid in ("1", "18", "13", "17")},
    **{sid: 2 for sid in ("16", "3", "8", "19", "78", "91", "151")},
}

TIME_STATUS: dict[str, EventStatus] = {
    "0": EventStatus.UPCOMING,
    "1": EventStatus.LIVE,
    "2": EventStatus.CANCELLED,
    "3": EventStatus.ENDED,
    "4": EventStatus.POSTPONED,
    "5": EventStatus.CANCELLED,
    "6": EventStatus.CANCELLED,
    "7": EventStatus.CANCELLED,
    "8": EventStatus.CANCELLED,
    "9": EventStatus.CANCELLED,
    "10": EventStatus.CANCELLED,
}

STATUS_SHORT: dict[str, str] = {
    "0": "NS", "2": "TBF", "3": "FT", "4": "PST", "5": "CANC",
    "6": "WO", "7": "INT", "8": "ABD", "9": "RET", "10": "SUSP",
}

SPORTS_WITHOUT_TEAM_IMAGES = frozenset({"table-tennis", "horse-racing", "greyhounds", "badminton", "lacrosse"})


# ── Timer vocabulary ────────────────────────────────────────────────────
def _half(minutes: int, half_length: int) -> str:
    return "1H" if minutes <= half_length else "2H"


def derive_status_short(timer: Optional[dict[str, Any]], sport: str, time_status: str) -> str:
    if time_status != "1":
        return STATUS_SHORT.get(time_status, "NS")
    if not timer:
        return "LIVE"
    tm = to_int(timer.get("tm"))
    q = to_int(timer.get("q"), 1) or 1
    if sport == "football":
        if tm <= 45:
            return "1H"
        return "2H" if tm <= 90 else "ET"
    if sport == "basketball":
        return f"Q{q}" if q <= 4 else "OT"
    if sport == "ice-hockey":
        return f"P{q}" if q <= 3 else "OT"
    if sport in ("tennis", "table-tennis", "badminton", "volleyball"):
        return f"S{q}"
    if sport == "baseball":
        return f"IN{q}"
    if sport in ("rugby", "rugby-league"):
        return _half(tm, 40)
    if sport in ("handball", "futsal"):
        return _half(tm, 30)
    if sport == "field-hockey":
        return _half(tm, 35)
    if sport == "boxing":
        return f"R{q}"
    if sport == "water-polo":
        return f"Q{q}"
    return "LIVE"


def elapsed_minutes(timer: Optional[dict[str, Any]], sport: str) -> int:
    if not timer:
        return 0
    tm = to_int(timer.get("tm"))
    q = to_int(timer.get("q"), 1) or 1
    if sport == "football":
        return tm + to_int(timer.get("ts")) // 60 + to_int(timer.get("ta"))
    if sport == "basketball":
        return (q - 1) * 12 + max(0, 12 - tm)
    if sport == "ice-hockey":
        return (q - 1) * 20 + max(0, 20 - tm)
    if sport == "tennis":
        return 0
    if sport == "baseball":
        return q * 6
    if sport in ("volleyball", "badminton"):
        return q * 20
    if sport == "table-tennis":
        return q * 5
    if sport == "cricket":
        return tm * 4
    if sport == "boxing":
        return q * 3
    if sport == "water-polo":
        return (q - 1) * 8 + max(0, 8 - tm)
    return tm


def team_image_url(team: dict[str, Any], sport: str) -> Optional[str]:
    if sport in SPORTS_WITHOUT_TEAM_IMAGES:
        return None
    image_id = str(team.get("image_id") or "")
    if image_id and image_id != "0":
        return f"{TEAM_IMAGE_BASE}/{image_id}.png"
    team_id = str(team.get("id") or "")
    if team_id and team_id != "0":
        return f"{TEAM_IMAGE_BASE}/{team_id}.png"
    return None


# ── Odds vocabulary ─────────────────────────────────────────────────────
def parse_price(raw: Any) -> Optional[float]:
    """'-' or missing -> None; prices <= 1.0 dropped; others clamped."""
    if raw is None or raw == "-" or raw == "":
        return None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    if price <= 1.0 or price != price:
        return None
    return max(MIN_ODDS, min(MAX_ODDS, price))


def _latest(odds: dict[str, Any], key: str) -> Optional[dict[str, Any]]:
    entries = odds.get(key) or []
    # Newest entry first.
    return entries[0] if isinstance(entries, list) and entries and isinstance(entries[0], dict) else None


def _selections(*specs: tuple[str, str, Any, Optional[float]]) -> list[NormalizedSelection]:
    out = []
    for outcome, name, raw_price, handicap in specs:
        price = parse_price(raw_price)
        if price is not None:
            out.append(NormalizedSelection(outcome=outcome, name=name, odds=price, handicap=handicap))
    return out


def _to_float(raw: Any) -> Optional[float]:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _winner_market(entry: dict[str, Any], key: str, name: str, sort_order: int, draws: bool) -> Optional[NormalizedMarket]:
    specs = [(Outcome.HOME.value, "1", entry.get("home_od"), None)]
    if draws:
        specs.append((Outcome.DRAW.value, "X", entry.get("draw_od"), None))
    specs.append((Outcome.AWAY.value, "2", entry.get("away_od"), None))
    selections = _selections(*specs)
    if not selections:
        return None
    return NormalizedMarket(market_key=key, name=name, type=MarketType.MONEYLINE, sort_order=sort_order, selections=selections)


def _handicap_market(entry: dict[str, Any], key_fmt: str, name_fmt: str, sort_order: int) -> Optional[NormalizedMarket]:
    hcap = entry.get("handicap")
    if not hcap:
        return None
    line = _to_float(hcap)
    selections = _selections(
        (Outcome.HOME.value, f"Home {hcap}", entry.get("home_od"), line),
        (Outcome.AWAY.value, f"Away {hcap}", entry.get("away_od"), line),
    )
    if not selections:
        return None
    return NormalizedMarket(
        market_key=key_fmt.format(h=hcap), name=name_fmt.format(h=hcap),
        type=MarketType.SPREAD, sort_order=sort_order, selections=selections,
    )


def _total_market(entry: dict[str, Any], key_fmt: str, name_fmt: str, sort_order: int) -> Optional[NormalizedMarket]:
    line_raw = entry.get("handicap")
    if not line_raw:
        return None
    line = _to_float(line_raw)
    selections = _selections(
        (Outcome.OVER.value, f"Over {line_raw}", entry.get("over_od"), line),
        (Outcome.UNDER.value, f"Under {line_raw}", entry.get("under_od"), line),
    )
    if not selections:
        return None
    return NormalizedMarket(
        market_key=key_fmt.format(h=line_raw), name=name_fmt.format(h=line_raw),
        type=MarketType.TOTAL, sort_order=sort_order, selections=selections,
    )


def parse_football_odds(odds: dict[str, Any]) -> list[NormalizedMarket]:
    markets: list[Optional[NormalizedMarket]] = []
    if (entry := _latest(odds, "1_1")) is not None:
        markets.append(_winner_market(entry, "1X2", "Match Winner", 1, draws=True))
    if (entry := _latest(odds, "1_2")) is not None:
        markets.append(_handicap_market(entry, "AH{h}", "Asian Handicap {h}", 2))
    if (entry := _latest(odds, "1_3")) is not None:
        markets.append(_total_market(entry, "OU{h}", "Over/Under {h} Goals", 3))
    if (entry := _latest(odds, "1_8")) is not None:
        markets.append(_winner_market(entry, "1X2:H1", "1st Half Result", 4, draws=True))
    if (entry := _latest(odds, "1_5")) is not None:
        markets.append(_handicap_market(entry, "AH{h}:H1", "1st Half Asian Handicap {h}", 5))
    if (entry := _latest(odds, "1_6")) is not None:
        markets.append(_total_market(entry, "OU{h}:H1", "1st Half Over/Under {h}", 6))
    return [m for m in markets if m is not None]


def parse_basketball_odds(odds: dict[str, Any], is_live: bool) -> list[NormalizedMarket]:
    markets: list[Optional[NormalizedMarket]] = []
    if (entry := _latest(odds, "18_1")) is not None:
        markets.append(_winner_market(entry, "ML", "Match Winner", 1, draws=False))
    if (entry := _latest(odds, "18_2")) is not None:
        markets.append(_handicap_market(entry, "AH{h}", "Spread {h}", 2))
    if (entry := _latest(odds, "18_3")) is not None:
        markets.append(_total_market(entry, "OU{h}", "Over/Under {h} Points", 3))
    if is_live:
        if (entry := _latest(odds, "18_7")) is not None:
            q = f"Q{entry['q']}" if entry.get("q") else "Q"
            markets.append(_winner_market(entry, f"ML:{q}", f"{q} Winner", 7, draws=False))
        if (entry := _latest(odds, "18_8")) is not None:
            q = f"Q{entry['q']}" if entry.get("q") else "Q"
            markets.append(_handicap_market(entry, "AH{h}:" + q, q + " Spread {h}", 8))
        if (entry := _latest(odds, "18_9")) is not None:
            q = f"Q{entry['q']}" if entry.get("q") else "Q"
            markets.append(_total_market(entry, "OU{h}:" + q, q + " Over/Under {h}", 9))
    return [m for m in markets if m is not None]


class BetsAPIProvider(BaseProvider):
    """BetsAPI v1 events + v2 odds."""

    supports_odds = True

    def __init__(
        self,
        api_token: str,
        limiter: SlidingWindowRateLimiter,
        base_url: str = BETSAPI_BASE,
        timeout_s: float = 15.0,
        max_pages: int = 50,
        max_wait_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        http_client = ProviderHTTPClient(
            provider_name=ProviderName.BETSAPI.value,
            base_url=base_url,
            headers={"Accept": "application/json"},
            default_params={"token": api_token},
            timeout_s=timeout_s,
            max_retries=1,
            transport=transport,
        )
        super().__init__(ProviderName.BETSAPI, http_client, limiter, max_wait_s=max_wait_s)
        self._max_pages = max_pages

    def check_body(self, data: Any, path: str) -> None:
        if not isinstance(data, dict):
            raise ParseError(f"betsapi returned a non-object body for {path}")
        if data.get("success") == 1:
            return
        if "TOO_MANY_REQUESTS" in str(data):
            raise RateLimitedError(f"betsapi TOO_MANY_REQUESTS for {path}", provider="betsapi", from_provider=True)
        raise NetworkError(f"betsapi error for {path}: {str(data)[:300]}", provider="betsapi")

    # ── Vocabulary ──────────────────────────────────────────────────────
    def sport_keys(self) -> list[str]:
        return [str(s.betsapi_id) for s in sorted(SPORTS, key=lambda s: s.priority)]

    def map_sport(self, sport_key: str) -> str:
        sport = SPORTS_BY_ID.get(str(sport_key))
        return sport.slug if sport else str(sport_key)

    def map_status(self, raw_status: Any) -> EventStatus:
        return TIME_STATUS.get(str(raw_status), EventStatus.UPCOMING)

    def upcoming_days(self, sport_key: str) -> int:
        return UPCOMING_DAYS.get(str(sport_key), 1)

    def has_odds_for(self, sport_key: str) -> bool:
        sport = SPORTS_BY_ID.get(str(sport_key))
        return bool(sport and sport.real_odds)

    # ── Fetch ───────────────────────────────────────────────────────────
    async def fetch_in_play(self, sport_key: str) -> list[dict[str, Any]]:
        data = await self._request("/events/inplay", {"sport_id": sport_key})
        return list(data.get("results") or [])

    async def fetch_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        for page in range(1, self._max_pages + 1):
            if self._should_stop_paging(should_stop):
                break
            try:
                data = await self._request(
                    "/events/upcoming",
                    {"sport_id": sport_key, "day": day.strftime("%Y%m%d"), "page": str(page)},
                    wait=page > 1,
                )
            except (RateLimitedError, NetworkError, ParseError) as exc:
                if page == 1:
                    raise
                self._log_paging_stopped(sport_key, page, len(collected), exc)
                break
            collected.extend(data.get("results") or [])
            pager = data.get("pager") or {}
            per_page = to_int(pager.get("per_page"))
            total = to_int(pager.get("total"))
            if not pager or per_page <= 0 or page * per_page >= total:
                break
        return collected

    async def fetch_odds(
        self, provider_event_id: str, sport_key: str, is_live: bool = False
    ) -> list[NormalizedMarket]:
        sport = SPORTS_BY_ID.get(str(sport_key))
        if sport is None or not sport.real_odds:
            return []
        data = await self._request(BETSAPI_ODDS_URL, {"event_id": provider_event_id})
        results = data.get("results") or {}
        odds = results.get("odds") if isinstance(results, dict) else None
        if not isinstance(odds, dict):
            return []
        if sport.slug == "football":
            return parse_football_odds(odds)
        return parse_basketball_odds(odds, is_live)

    # ── Normalization ───────────────────────────────────────────────────
    def normalize_event(self, raw: dict[str, Any], sport_key: str) -> NormalizedEvent:
        event_id = str(raw.get("id") or "")
        if not event_id:
            raise ParseError("betsapi event without id")
        sport_id = str(raw.get("sport_id") or sport_key)
        slug = self.map_sport(sport_id)
        time_status = str(raw.get("time_status", "0"))
        timer = raw.get("timer") if isinstance(raw.get("timer"), dict) else None
        league = raw.get("league") or {}
        home = raw.get("home") or {}
        away = raw.get("away") or {}
        country = league.get("cc")

        metadata: dict[str, Any] = {
            "source": self._name.value,
            "betsapi_id": event_id,
            "bet365_id": raw.get("bet365_id"),
            "league_id": league.get("id"),
            "status_short": derive_status_short(timer, slug, time_status),
            "elapsed": elapsed_minutes(timer, slug),
            "home_country": home.get("cc"),
            "away_country": away.get("cc"),
        }
        if timer:
            metadata["timer"] = f"{to_int(timer.get('tm'))}:{to_int(timer.get('ts')):02d}"
        period_scores = {
            str(period): {"home": to_int(score.get("home")), "away": to_int(score.get("away"))}
            for period, score in (raw.get("scores") or {}).items()
            if isinstance(score, dict)
        }
        if period_scores:
            metadata["period_scores"] = period_scores

        league_name = league.get("name") or "Unknown League"
        return NormalizedEvent(
            provider=self._name,
            provider_event_id=event_id,
            sport_slug=slug,
            competition=NormalizedCompetition(
                external_id=f"betsapi-{slug}-league-{league.get('id') or '0'}",
                slug=slugify(f"{slug}-{league_name}-{country or 'intl'}"),
                name=league_name,
                country=country.upper() if country else None,
            ),
            home_team=home.get("name") or "Home",
            away_team=away.get("name") or "Away",
            home_team_logo=team_image_url(home, slug),
            away_team_logo=team_image_url(away, slug),
            start_time=parse_unix_time(raw.get("time")),
            status=self.map_status(time_status),
            scores=Score.parse(raw.get("ss")),
            metadata=metadata,
        )
