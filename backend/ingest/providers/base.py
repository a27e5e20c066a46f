"""
Abstract base class for all sports data providers.
Defines the contract every provider connector implements and the shared
request path: limiter admission, HTTP with timeout, throttle detection
and typed failures.
"""
from __future__ import annotations

import abc
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from shared.errors import ParseError, RateLimitedError
from shared.models.domain import NormalizedEvent, NormalizedMarket
from shared.models.enums import EventStatus, MarketType, ProviderName
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger
from shared.utils.metrics import RECORDS_SKIPPED

from ingest.markets import derive_market_type, selection_display_name
from ingest.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)

StopCheck = Callable[[], bool]


def parse_unix_time(value: Any) -> datetime:
    """Unix seconds (int or numeric string) to an aware UTC datetime."""
    try:
        seconds = int(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid unix time {value!r}") from exc
    if seconds <= 0:
        raise ParseError(f"invalid unix time {value!r}")
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_iso_time(value: Any) -> datetime:
    if not value or not isinstance(value, str):
        raise ParseError(f"invalid timestamp {value!r}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ParseError(f"invalid timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def slugify(text: str, max_len: int = 80) -> str:
    out = []
    prev_dash = False
    for ch in (text or "").lower():
        if ch.isascii() and ch.isalnum():
            out.append(ch)
            prev_dash = False
        elif not prev_dash:
            out.append("-")
            prev_dash = True
    return "".join(out).strip("-")[:max_len]


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class BaseProvider(abc.ABC):
    """
    Abstract base class for sports data providers.

    Each provider owns its HTTP client, its rate limiter and its vocabulary
    tables. Fetch methods return raw provider dicts; normalize_event maps
    one of them onto the canonical shape or raises ParseError.
    """

    supports_odds: bool = False

    def __init__(
        self,
        name: ProviderName,
        http_client: ProviderHTTPClient,
        limiter: SlidingWindowRateLimiter,
        max_wait_s: float = 10.0,
    ) -> None:
        self._name = name
        self._http = http_client
        self._limiter = limiter
        self._max_wait_s = max_wait_s

    @property
    def name(self) -> ProviderName:
        return self._name

    @property
    def limiter(self) -> SlidingWindowRateLimiter:
        return self._limiter

    async def start(self) -> None:
        """Initialize the provider HTTP client."""
        await self._http.start()

    async def close(self) -> None:
        """Shutdown the provider HTTP client."""
        await self._http.close()

    # ── Request path ────────────────────────────────────────────────────
    async def _request(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        wait: bool = False,
    ) -> Any:
        """
        One admitted provider call.

        Raises:
            RateLimitedError: from_provider=False when the limiter refused the
                slot (after at most one bounded wait when `wait`), True when
                the provider throttled us; a cooldown is started in that case.
            NetworkError, ParseError: from the HTTP layer or check_body.
        """
        admitted = self._limiter.try_acquire()
        if not admitted and wait:
            admitted = await self._limiter.wait_for_slot(self._max_wait_s)
        if not admitted:
            raise RateLimitedError(
                f"{self._name.value} local rate limit reached", provider=self._name.value
            )
        try:
            data = await self._http.get_json(path, params=params)
            self.check_body(data, path)
        except RateLimitedError:
            self._limiter.record_too_many_requests()
            raise
        self._limiter.record_success()
        return data

    def check_body(self, data: Any, path: str) -> None:
        """Provider-specific error envelope check. Raise RateLimitedError or NetworkError."""
        return None

    # ── Vocabulary ──────────────────────────────────────────────────────
    @abc.abstractmethod
    def sport_keys(self) -> list[str]:
        """Provider sport keys this adapter polls, highest priority first."""
        ...

    @abc.abstractmethod
    def map_sport(self, sport_key: str) -> str:
        """Provider sport key -> canonical sport slug."""
        ...

    @abc.abstractmethod
    def map_status(self, raw_status: Any) -> EventStatus:
        ...

    def map_market_type(self, raw_key: str) -> MarketType:
        return derive_market_type(raw_key)

    def map_selection_name(self, outcome: str, params: str = "") -> str:
        return selection_display_name(outcome, params)

    def has_odds_for(self, sport_key: str) -> bool:
        """Whether fetch_odds can return real prices for this sport."""
        return self.supports_odds

    def upcoming_days(self, sport_key: str) -> int:
        """How many days ahead the full sync looks for this sport."""
        return 1

    # ── Fetch ───────────────────────────────────────────────────────────
    @abc.abstractmethod
    async def fetch_in_play(self, sport_key: str) -> list[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def fetch_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> list[dict[str, Any]]:
        """Paginated where the provider paginates; stops early on limiter denial."""
        ...

    async def fetch_odds(
        self, provider_event_id: str, sport_key: str, is_live: bool = False
    ) -> list[NormalizedMarket]:
        """Normalized markets for one event. Empty where the provider has no odds feed."""
        return []

    @abc.abstractmethod
    def normalize_event(self, raw: dict[str, Any], sport_key: str) -> NormalizedEvent:
        """Raises ParseError when the record lacks required fields."""
        ...

    def is_placeholder(self, raw: dict[str, Any]) -> bool:
        """A fixture with neither team known yet."""
        return False

    def raw_event_id(self, raw: dict[str, Any]) -> str:
        return str(raw.get("id", ""))

    # ── Helpers ─────────────────────────────────────────────────────────
    def external_id_for(self, raw: dict[str, Any]) -> str:
        return f"{self._name.value}:{self.raw_event_id(raw)}"

    def normalize_batch(
        self, raws: list[dict[str, Any]], sport_key: str
    ) -> tuple[list[NormalizedEvent], list[str]]:
        """
        Normalize a batch. Returns (events, placeholder external ids);
        unparsable records are logged and skipped.
        """
        events: list[NormalizedEvent] = []
        placeholders: list[str] = []
        for raw in raws:
            if not isinstance(raw, dict):
                RECORDS_SKIPPED.labels(provider=self._name.value, reason="parse_error").inc()
                continue
            if self.is_placeholder(raw):
                placeholders.append(self.external_id_for(raw))
                continue
            try:
                events.append(self.normalize_event(raw, sport_key))
            except ParseError as exc:
                RECORDS_SKIPPED.labels(provider=self._name.value, reason="parse_error").inc()
                logger.warning(
                    "provider_record_skipped",
                    provider=self._name.value,
                    sport=sport_key,
                    raw_id=self.raw_event_id(raw),
                    error=str(exc),
                )
        return events, placeholders

    async def poll_in_play(self, sport_key: str) -> tuple[list[NormalizedEvent], list[str]]:
        return self.normalize_batch(await self.fetch_in_play(sport_key), sport_key)

    async def poll_upcoming(
        self, sport_key: str, day: date, should_stop: Optional[StopCheck] = None
    ) -> tuple[list[NormalizedEvent], list[str]]:
        return self.normalize_batch(await self.fetch_upcoming(sport_key, day, should_stop), sport_key)

    def _should_stop_paging(self, should_stop: Optional[StopCheck]) -> bool:
        return bool(should_stop and should_stop())

    def _log_paging_stopped(self, sport_key: str, page: int, collected: int, exc: Exception) -> None:
        logger.warning(
            "provider_pagination_stopped",
            provider=self._name.value,
            sport=sport_key,
            page=page,
            collected=collected,
            error=str(exc),
        )
