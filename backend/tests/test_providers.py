"""
Unit tests for the provider adapters against canned HTTP responses.

Every adapter is built with an httpx.MockTransport so requests never leave
the process; the handler records what was asked for and returns the
provider's documented payload shapes.

Run: pytest backend/tests/test_providers.py -v
"""
from __future__ import annotations

import contextlib
from datetime import date, timedelta
from typing import Any, Callable

import httpx
import pytest

from shared.config import Settings
from shared.errors import NetworkError, RateLimitedError
from shared.models.domain import Score
from shared.models.enums import EventStatus, MarketType, ProviderName

from ingest.providers.api_sports import ApiSportsProvider
from ingest.providers.betsapi import BetsAPIProvider
from ingest.providers.cloudbet import CloudbetProvider
from ingest.providers.football_data import FootballDataProvider
from ingest.providers.registry import build_providers
from ingest.rate_limiter import SlidingWindowRateLimiter

KICKOFF = 1772377200  # 2026-03-01 15:00 UTC


class Recorder:
    """MockTransport handler that logs requests and replies via a callback."""

    def __init__(self, reply: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._reply = reply

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._reply(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _json(body: Any, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status, json=body)


def _limiter(clock, per_minute: int = 0) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter("test", per_minute=per_minute, cooldown_s=300, clock=clock)


@contextlib.asynccontextmanager
async def started(provider):
    await provider.start()
    try:
        yield provider
    finally:
        await provider.close()


# ── BetsAPI ─────────────────────────────────────────────────────────────

def _betsapi_event(**overrides) -> dict[str, Any]:
    raw = {
        "id": "101",
        "sport_id": "1",
        "time": str(KICKOFF),
        "time_status": "1",
        "league": {"id": "94", "name": "Premier League", "cc": "gb"},
        "home": {"id": "7", "name": "Arsenal", "image_id": "42"},
        "away": {"id": "8", "name": "Chelsea"},
        "ss": "2-1",
        "timer": {"tm": 67, "ts": 12},
    }
    raw.update(overrides)
    return raw


class TestBetsAPI:
    @pytest.mark.asyncio
    async def test_in_play_normalized_and_bad_records_skipped(self, clock) -> None:
        broken = _betsapi_event(id="102", time=None)
        rec = Recorder(_json({"success": 1, "results": [_betsapi_event(), broken]}))
        provider = BetsAPIProvider("tok", _limiter(clock), transport=rec.transport)

        async with started(provider):
            events, placeholders = await provider.poll_in_play("1")

        assert placeholders == []
        (event,) = events
        assert event.external_id == "betsapi:101"
        assert event.sport_slug == "football"
        assert event.status == EventStatus.LIVE
        assert event.scores == Score(home=2, away=1)
        assert event.metadata["status_short"] == "2H"
        assert event.metadata["timer"] == "67:12"
        assert event.home_team_logo.endswith("/42.png")
        assert event.competition.country == "GB"
        request = rec.requests[0]
        assert request.url.path == "/v1/events/inplay"
        assert request.url.params["token"] == "tok"
        assert request.url.params["sport_id"] == "1"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("0", EventStatus.UPCOMING),
            ("1", EventStatus.LIVE),
            ("3", EventStatus.ENDED),
            ("4", EventStatus.POSTPONED),
            ("5", EventStatus.CANCELLED),
            ("99", EventStatus.UPCOMING),
        ],
    )
    def test_time_status_vocabulary(self, clock, raw: str, expected: EventStatus) -> None:
        assert BetsAPIProvider("tok", _limiter(clock)).map_status(raw) == expected

    @pytest.mark.asyncio
    async def test_http_429_starts_cooldown(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({}, status=429))
        provider = BetsAPIProvider("tok", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(RateLimitedError) as info:
                await provider.fetch_in_play("1")
        assert info.value.from_provider is True
        assert limiter.in_cooldown
        assert limiter.try_acquire() is False

    @pytest.mark.asyncio
    async def test_too_many_requests_body_is_throttling(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({"success": 0, "error": "TOO_MANY_REQUESTS"}))
        provider = BetsAPIProvider("tok", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(RateLimitedError):
                await provider.fetch_in_play("1")
        assert limiter.in_cooldown

    @pytest.mark.asyncio
    async def test_other_error_body_is_network_error(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({"success": 0, "error": "PERMISSION_DENIED"}))
        provider = BetsAPIProvider("tok", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(NetworkError):
                await provider.fetch_in_play("1")
        assert not limiter.in_cooldown

    @pytest.mark.asyncio
    async def test_local_denial_makes_no_request(self, clock) -> None:
        limiter = _limiter(clock, per_minute=1)
        rec = Recorder(_json({"success": 1, "results": []}))
        provider = BetsAPIProvider("tok", limiter, transport=rec.transport)
        async with started(provider):
            await provider.fetch_in_play("1")
            with pytest.raises(RateLimitedError) as info:
                await provider.fetch_in_play("1")
        assert info.value.from_provider is False
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_pagination_stops_on_limiter_denial(self, clock) -> None:
        def reply(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            results = [_betsapi_event(id=f"{page}-{i}", time_status="0") for i in range(2)]
            return httpx.Response(200, json={"success": 1, "results": results, "pager": {"per_page": 2, "total": 6}})

        rec = Recorder(reply)
        provider = BetsAPIProvider("tok", _limiter(clock, per_minute=2), max_wait_s=1.0, transport=rec.transport)
        async with started(provider):
            raws = await provider.fetch_upcoming("1", date(2026, 3, 1))

        assert len(raws) == 4
        assert [r.url.params["page"] for r in rec.requests] == ["1", "2"]
        assert rec.requests[0].url.params["day"] == "20260301"

    @pytest.mark.asyncio
    async def test_pagination_follows_pager_to_the_end(self, clock) -> None:
        def reply(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            results = [_betsapi_event(id=f"{page}-{i}", time_status="0") for i in range(2)]
            return httpx.Response(200, json={"success": 1, "results": results, "pager": {"per_page": 2, "total": 5}})

        rec = Recorder(reply)
        provider = BetsAPIProvider("tok", _limiter(clock), transport=rec.transport)
        async with started(provider):
            raws = await provider.fetch_upcoming("1", date(2026, 3, 1))
        assert len(raws) == 6
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_should_stop_checked_before_each_page(self, clock) -> None:
        rec = Recorder(_json({"success": 1, "results": [_betsapi_event()], "pager": {"per_page": 1, "total": 9}}))
        provider = BetsAPIProvider("tok", _limiter(clock), transport=rec.transport)
        calls = iter([False, True])
        async with started(provider):
            raws = await provider.fetch_upcoming("1", date(2026, 3, 1), should_stop=lambda: next(calls))
        assert len(raws) == 1

    @pytest.mark.asyncio
    async def test_football_odds_parsed(self, clock) -> None:
        odds = {
            "1_1": [{"home_od": "2.10", "draw_od": "3.30", "away_od": "-"}],
            "1_3": [{"handicap": "2.5", "over_od": "1.90", "under_od": "1.95"}],
        }
        rec = Recorder(_json({"success": 1, "results": {"odds": odds}}))
        provider = BetsAPIProvider("tok", _limiter(clock), transport=rec.transport)
        async with started(provider):
            markets = await provider.fetch_odds("101", "1")

        by_key = {m.market_key: m for m in markets}
        assert set(by_key) == {"1X2", "OU2.5"}
        assert [s.outcome for s in by_key["1X2"].selections] == ["HOME", "DRAW"]
        assert by_key["OU2.5"].type == MarketType.TOTAL
        assert all(s.handicap == 2.5 for s in by_key["OU2.5"].selections)
        assert rec.requests[0].url.path == "/v2/event/odds"

    @pytest.mark.asyncio
    async def test_no_odds_request_for_sports_without_real_odds(self, clock) -> None:
        rec = Recorder(_json({"success": 1, "results": {}}))
        provider = BetsAPIProvider("tok", _limiter(clock), transport=rec.transport)
        async with started(provider):
            assert await provider.fetch_odds("101", "13") == []
        assert rec.requests == []
        assert provider.has_odds_for("1") and not provider.has_odds_for("13")


# ── Cloudbet ────────────────────────────────────────────────────────────

def _cloudbet_event(event_id: int = 55, **overrides) -> dict[str, Any]:
    raw = {
        "id": event_id,
        "home": {"name": "Arsenal", "abbreviation": "ARS"},
        "away": {"name": "Chelsea"},
        "status": "TRADING_LIVE",
        "cutoffTime": "2026-03-01T15:00:00Z",
        "markets": {
            "soccer.match_odds": {
                "submarkets": {
                    "period=ft": {
                        "selections": [
                            {"outcome": "home", "price": 2.1, "params": "", "status": "SELECTION_ENABLED", "side": "BACK"},
                            {"outcome": "draw", "price": 3.3, "params": "", "status": "SELECTION_ENABLED", "side": "BACK"},
                            {"outcome": "away", "price": 3.6, "params": "", "status": "SELECTION_DISABLED", "side": "BACK"},
                            {"outcome": "away", "price": 3.7, "params": "", "side": "LAY"},
                        ]
                    }
                }
            }
        },
    }
    raw.update(overrides)
    return raw


class TestCloudbet:
    @pytest.mark.asyncio
    async def test_live_events_with_inline_markets(self, clock) -> None:
        body = {
            "competitions": [
                {
                    "key": "soccer-england-premier-league",
                    "name": "Premier League",
                    "category": {"name": "England"},
                    "events": [_cloudbet_event(), _cloudbet_event(56, home={}, away={})],
                }
            ]
        }
        rec = Recorder(_json(body))
        provider = CloudbetProvider("key", _limiter(clock), transport=rec.transport)
        async with started(provider):
            events, _ = await provider.poll_in_play("soccer")

        (event,) = events
        assert event.external_id == "cloudbet:55"
        assert event.sport_slug == "football"
        assert event.status == EventStatus.LIVE
        assert event.competition.external_id == "cloudbet-soccer-england-premier-league"
        assert event.metadata["home_abbr"] == "ARS"
        (market,) = event.markets
        assert market.market_key == "soccer.match_odds"
        assert market.type == MarketType.MONEYLINE
        assert [s.outcome for s in market.selections] == ["HOME", "DRAW", "AWAY"]
        assert market.selections[2].status.value == "SUSPENDED"
        assert rec.requests[0].headers["X-API-Key"] == "key"
        assert rec.requests[0].url.params["live"] == "true"

    @pytest.mark.asyncio
    async def test_upcoming_walks_competitions_and_ignores_day(self, clock) -> None:
        def reply(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/v2/odds/sports/soccer"):
                return httpx.Response(
                    200,
                    json={
                        "categories": [
                            {"competitions": [{"key": "c-small", "eventCount": 1}, {"key": "c-big", "eventCount": 9}]}
                        ]
                    },
                )
            if path.endswith("/c-small"):
                return httpx.Response(503, json={})
            return httpx.Response(200, json={"key": "c-big", "name": "Big", "events": [_cloudbet_event(status="TRADING")]})

        rec = Recorder(reply)
        provider = CloudbetProvider("key", _limiter(clock), transport=rec.transport)
        async with started(provider):
            events, _ = await provider.poll_upcoming("soccer", date(2030, 1, 1))

        assert [e.status for e in events] == [EventStatus.UPCOMING]
        assert events[0].competition.external_id == "cloudbet-c-big"
        paths = [r.url.path for r in rec.requests]
        assert paths == ["/pub/v2/odds/sports/soccer", "/pub/v2/odds/competitions/c-big", "/pub/v2/odds/competitions/c-small"]
        assert all("date" not in r.url.params for r in rec.requests)

    def test_sport_keys_mapped_to_canonical_slugs(self, clock) -> None:
        provider = CloudbetProvider("key", _limiter(clock))
        assert provider.map_sport("soccer") == "football"
        assert provider.map_sport("rugby-union") == "rugby"
        assert provider.map_sport("esports-dota-2") == "esports"
        assert provider.map_status("RESULTED") == EventStatus.ENDED


# ── API-Sports ──────────────────────────────────────────────────────────

class TestApiSports:
    @pytest.mark.asyncio
    async def test_football_fixture_shape(self, clock) -> None:
        fixture = {
            "fixture": {"id": 9, "timestamp": KICKOFF, "status": {"short": "2H", "long": "Second Half", "elapsed": 63}},
            "league": {"id": 39, "name": "Premier League", "country": "England"},
            "teams": {"home": {"name": "Arsenal"}, "away": {"name": "Chelsea"}},
            "goals": {"home": 1, "away": 0},
        }
        rec = Recorder(_json({"errors": [], "response": [fixture]}))
        provider = ApiSportsProvider("key", _limiter(clock), transport=rec.transport)
        async with started(provider):
            (event,), _ = await provider.poll_in_play("football")

        assert event.external_id == "api_sports:9"
        assert event.status == EventStatus.LIVE
        assert event.scores == Score(home=1, away=0)
        assert event.metadata["elapsed"] == 63
        assert str(rec.requests[0].url).startswith("https://v3.football.api-sports.io/fixtures")
        assert rec.requests[0].url.params["live"] == "all"

    @pytest.mark.asyncio
    async def test_games_shape_with_total_scores(self, clock) -> None:
        game = {
            "id": 31,
            "timestamp": KICKOFF,
            "status": {"short": "Q4", "timer": "7"},
            "league": {"id": 12, "name": "NBA"},
            "country": {"name": "USA"},
            "teams": {"home": {"name": "Lakers"}, "away": {"name": "Celtics"}},
            "scores": {"home": {"total": 88}, "away": {"total": 80}},
        }
        rec = Recorder(_json({"errors": {}, "response": [game]}))
        provider = ApiSportsProvider("key", _limiter(clock), transport=rec.transport)
        async with started(provider):
            (event,), _ = await provider.poll_in_play("basketball")

        assert event.sport_slug == "basketball"
        assert event.scores == Score(home=88, away=80)
        assert event.competition.country == "USA"
        assert rec.requests[0].url.host == "v1.basketball.api-sports.io"
        assert rec.requests[0].url.path == "/games"

    @pytest.mark.asyncio
    async def test_rate_limit_in_errors_envelope(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({"errors": {"rateLimit": "Too many requests. Your rate limit is 10 per minute."}}))
        provider = ApiSportsProvider("key", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(RateLimitedError):
                await provider.fetch_in_play("football")
        assert limiter.in_cooldown

    @pytest.mark.asyncio
    async def test_other_errors_envelope(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({"errors": {"token": "Error/Missing application key."}}))
        provider = ApiSportsProvider("key", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(NetworkError):
                await provider.fetch_in_play("football")
        assert not limiter.in_cooldown

    @pytest.mark.parametrize(
        "short,expected",
        [("NS", EventStatus.UPCOMING), ("HT", EventStatus.LIVE), ("AET", EventStatus.ENDED),
         ("PST", EventStatus.POSTPONED), ("ABD", EventStatus.CANCELLED)],
    )
    def test_status_vocabulary(self, clock, short: str, expected: EventStatus) -> None:
        assert ApiSportsProvider("key", _limiter(clock)).map_status(short) == expected


# ── football-data.org ───────────────────────────────────────────────────

def _match(match_id: int, home: Any = "Arsenal FC", away: Any = "Chelsea FC", **overrides) -> dict[str, Any]:
    raw = {
        "id": match_id,
        "utcDate": "2026-03-01T15:00:00Z",
        "status": "TIMED",
        "competition": {"code": "PL", "name": "Premier League"},
        "area": {"name": "England"},
        "homeTeam": {"name": home},
        "awayTeam": {"name": away},
        "score": {"fullTime": {"home": None, "away": None}},
    }
    raw.update(overrides)
    return raw


class TestFootballData:
    @pytest.mark.asyncio
    async def test_upcoming_window_and_placeholders(self, clock) -> None:
        rec = Recorder(_json({"matches": [_match(1), _match(2, away=None), _match(3, home=None, away=None)]}))
        provider = FootballDataProvider("key", _limiter(clock), competitions=["PL"], transport=rec.transport)
        day = date(2026, 3, 1)
        async with started(provider):
            events, placeholders = await provider.poll_upcoming("football", day)

        assert [e.provider_event_id for e in events] == ["1", "2"]
        assert events[1].away_team == "TBD"
        assert placeholders == ["football_data:3"]
        params = rec.requests[0].url.params
        assert params["dateFrom"] == "2026-03-01"
        assert params["dateTo"] == (day + timedelta(days=2)).isoformat()
        assert rec.requests[0].headers["X-Auth-Token"] == "key"

    @pytest.mark.asyncio
    async def test_live_match_scores(self, clock) -> None:
        live = _match(5, status="IN_PLAY", minute=52, score={"fullTime": {"home": 0, "away": 1}, "halfTime": {"home": 0, "away": 0}})
        rec = Recorder(_json({"matches": [live]}))
        provider = FootballDataProvider("key", _limiter(clock), transport=rec.transport)
        async with started(provider):
            (event,), _ = await provider.poll_in_play("football")
        assert event.status == EventStatus.LIVE
        assert event.scores == Score(home=0, away=1)
        assert event.metadata["status_short"] == "2H"
        assert event.metadata["half_time"] == {"home": 0, "away": 0}

    @pytest.mark.asyncio
    async def test_error_code_429_body(self, clock) -> None:
        limiter = _limiter(clock)
        rec = Recorder(_json({"errorCode": 429, "message": "You reached your request limit."}))
        provider = FootballDataProvider("key", limiter, transport=rec.transport)
        async with started(provider):
            with pytest.raises(RateLimitedError):
                await provider.fetch_in_play("football")
        assert limiter.in_cooldown

    @pytest.mark.asyncio
    async def test_competition_walk_stops_when_throttled(self, clock) -> None:
        replies = iter([
            httpx.Response(200, json={"matches": [_match(1)]}),
            httpx.Response(429, json={}),
        ])
        rec = Recorder(lambda request: next(replies))
        provider = FootballDataProvider("key", _limiter(clock), competitions=["PL", "CL", "BL1"], transport=rec.transport)
        async with started(provider):
            raws = await provider.fetch_upcoming("football", date(2026, 3, 1))
        assert [r["id"] for r in raws] == [1]
        assert len(rec.requests) == 2


# ── Registry ────────────────────────────────────────────────────────────

class TestRegistry:
    def _settings(self, **overrides) -> Settings:
        values = dict(
            enabled_providers=["betsapi", "cloudbet", "api_sports", "football_data", "unknown"],
            betsapi_api_token="t",
            cloudbet_api_key="",
            api_sports_api_key="k",
            football_data_api_key="",
        )
        values.update(overrides)
        return Settings(**values)

    def test_providers_without_credentials_skipped(self) -> None:
        providers = build_providers(self._settings())
        assert [p.name for p in providers] == [ProviderName.BETSAPI, ProviderName.API_SPORTS]

    def test_all_known_providers_built_when_credentials_not_required(self) -> None:
        providers = build_providers(self._settings(), require_credentials=False)
        assert [p.name.value for p in providers] == ["betsapi", "cloudbet", "api_sports", "football_data"]

    def test_limiters_follow_settings(self) -> None:
        (betsapi,) = build_providers(self._settings(enabled_providers=["betsapi"], betsapi_rpm_limit=12))
        assert betsapi.limiter.per_minute == 12
