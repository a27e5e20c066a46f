"""
Error taxonomy for the ingestion and settlement pipeline.

Every failure is scoped to the smallest unit of work (one provider call,
one event, one market); callers log and move on.
"""
from __future__ import annotations

from typing import Optional


class OddsFeedError(Exception):
    """Base class for all pipeline errors."""


class NetworkError(OddsFeedError):
    """Timeout, connection failure or non-2xx response from a provider."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RateLimitedError(OddsFeedError):
    """
    A request was not made, or was refused, because of rate limiting.

    from_provider is True when the provider itself signalled throttling (a
    cooldown has been started); False when the local limiter denied the slot.
    """

    def __init__(self, message: str, provider: str = "", from_provider: bool = False) -> None:
        super().__init__(message)
        self.provider = provider
        self.from_provider = from_provider


class ParseError(OddsFeedError):
    """Malformed payload or a record missing required fields."""


class StoreError(OddsFeedError):
    """A single entity write or read failed."""


class DuplicateExternalIdError(StoreError):
    """An event with the same external_id already exists."""

    def __init__(self, external_id: str) -> None:
        super().__init__(f"event with external_id {external_id!r} already exists")
        self.external_id = external_id


class UnknownMarketTypeError(OddsFeedError):
    """Settlement cannot resolve this market; it stays OPEN."""

    def __init__(self, market_key: str, market_type: str = "") -> None:
        super().__init__(f"cannot settle market {market_key!r} (type={market_type or 'unknown'})")
        self.market_key = market_key
        self.market_type = market_type


class SettlementError(OddsFeedError):
    """Score resolution or selection update failed; event stays ENDED but unsettled."""
