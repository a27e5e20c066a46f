"""
Provider registry.
Builds one configured connector (HTTP client + rate limiter) per enabled
provider from Settings.
"""
from __future__ import annotations

from typing import Optional

import httpx

from shared.config import Settings, get_settings
from shared.models.enums import ProviderName
from shared.utils.clock import Clock
from shared.utils.logging import get_logger

from ingest.providers.api_sports import ApiSportsProvider
from ingest.providers.base import BaseProvider
from ingest.providers.betsapi import BetsAPIProvider
from ingest.providers.cloudbet import CloudbetProvider
from ingest.providers.football_data import FootballDataProvider
from ingest.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)


def build_limiter(
    settings: Settings, provider: ProviderName, clock: Optional[Clock] = None
) -> SlidingWindowRateLimiter:
    key = provider.value
    return SlidingWindowRateLimiter(
        name=key,
        per_minute=getattr(settings, f"{key}_rpm_limit"),
        per_hour=getattr(settings, f"{key}_rph_limit"),
        cooldown_s=settings.rate_limit_cooldown_s,
        clock=clock,
    )


def credential_for(settings: Settings, provider: ProviderName) -> str:
    if provider == ProviderName.BETSAPI:
        return settings.betsapi_api_token
    return getattr(settings, f"{provider.value}_api_key", "")


def build_provider(
    provider: ProviderName,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseProvider:
    s = settings or get_settings()
    limiter = build_limiter(s, provider, clock)
    if provider == ProviderName.BETSAPI:
        return BetsAPIProvider(
            s.betsapi_api_token,
            limiter,
            base_url=s.betsapi_base_url,
            timeout_s=s.betsapi_timeout_s,
            max_pages=s.upcoming_max_pages,
            max_wait_s=s.rate_limit_max_wait_s,
            transport=transport,
        )
    if provider == ProviderName.CLOUDBET:
        return CloudbetProvider(
            s.cloudbet_api_key,
            limiter,
            base_url=s.cloudbet_base_url,
            timeout_s=s.cloudbet_timeout_s,
            max_competitions=s.cloudbet_max_competitions_per_sport,
            max_wait_s=s.rate_limit_max_wait_s,
            transport=transport,
        )
    if provider == ProviderName.API_SPORTS:
        return ApiSportsProvider(
            s.api_sports_api_key,
            limiter,
            timeout_s=s.api_sports_timeout_s,
            max_wait_s=s.rate_limit_max_wait_s,
            transport=transport,
        )
    if provider == ProviderName.FOOTBALL_DATA:
        return FootballDataProvider(
            s.football_data_api_key,
            limiter,
            base_url=s.football_data_base_url,
            timeout_s=s.football_data_timeout_s,
            max_wait_s=s.rate_limit_max_wait_s,
            transport=transport,
        )
    raise ValueError(f"unknown provider {provider!r}")


def build_providers(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    require_credentials: bool = True,
) -> list[BaseProvider]:
    """Connectors for every enabled provider, in configuration order."""
    s = settings or get_settings()
    providers: list[BaseProvider] = []
    for name in s.enabled_providers:
        try:
            provider = ProviderName(name)
        except ValueError:
            logger.warning("unknown_provider_skipped", provider=name)
            continue
        if require_credentials and not credential_for(s, provider):
            logger.warning("provider_credentials_missing", provider=provider.value)
            continue
        providers.append(build_provider(provider, s, clock, transport))
    logger.info("providers_built", providers=[p.name.value for p in providers])
    return providers
