"""
In-play moneyline re-pricing for events without a live odds feed.

Two models with fixed per-sport averages (no feedback from posted odds):
  * Poisson over the remaining time for low/medium scoring sports with draws;
  * normal approximation of the final score margin for the rest.
Only ACTIVE selections of a non-settled full-time MONEYLINE market are
re-priced; settled markets are never reopened.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from shared.models.domain import EventRecord, NormalizedMarket, NormalizedSelection
from shared.models.enums import MarketStatus, MarketType, Outcome, SelectionStatus
from shared.store.base import Store
from shared.utils.logging import get_logger

from ingest.markets import MarketSynchronizer

logger = get_logger(__name__)

MIN_LIVE_ODDS = 1.02
MAX_LIVE_ODDS = 31.0


@dataclass(frozen=True)
class LiveOddsConfig:
    total_time: float
    has_draws: bool
    avg_home: float
    avg_away: float
    model: str
    live_margin: float = 1.06
    score_std_per_min: float = 0.0


LIVE_ODDS_CONFIGS: dict[str, LiveOddsConfig] = {
    "football": LiveOddsConfig(95, True, 1.37, 1.13, "poisson"),
    "ice-hockey": LiveOddsConfig(60, True, 2.9, 2.6, "poisson"),
    "handball": LiveOddsConfig(60, True, 27, 25, "poisson"),
    "rugby": LiveOddsConfig(80, True, 22, 20, "poisson"),
    "basketball": LiveOddsConfig(48, False, 110, 105, "margin", score_std_per_min=1.8),
    "american-football": LiveOddsConfig(60, False, 24, 21, "margin", score_std_per_min=0.7),
    "volleyball": LiveOddsConfig(100, False, 2.6, 2.4, "margin", score_std_per_min=0.08),
    "baseball": LiveOddsConfig(54, False, 4.5, 4.0, "margin", score_std_per_min=0.4),
}

# Midpoint minute of each reported period, used when no elapsed clock is known.
_PERIOD_MINUTES: dict[str, dict[str, float]] = {
    "basketball": {"Q1": 6, "Q2": 18, "HT": 24, "BT": 24, "Q3": 30, "Q4": 42, "OT": 48},
    "ice-hockey": {"P1": 10, "BT": 20, "P2": 30, "P3": 50, "OT": 60},
    "handball": {"1H": 15, "HT": 30, "2H": 45},
    "football": {"1H": 25, "HT": 45, "2H": 70, "ET": 95},
    "rugby": {"1H": 20, "HT": 40, "2H": 60},
    "volleyball": {"S1": 15, "S2": 35, "S3": 55, "S4": 75, "S5": 90},
}


# ── Math ────────────────────────────────────────────────────────────────
def poisson_pmf(k: int, lam: float) -> float:
    if lam <= 0:
        return 1.0 if k == 0 else 0.0
    if k > 15:
        return 0.0
    return (lam ** k) * math.exp(-lam) / math.factorial(k)


def normal_cdf(z: float) -> float:
    return 0.5 * (1 + math.erf(z / math.sqrt(2)))


def elapsed_minutes(metadata: Optional[dict[str, Any]], sport: str, config: LiveOddsConfig) -> Optional[float]:
    if not metadata:
        return None
    elapsed = metadata.get("elapsed")
    if isinstance(elapsed, (int, float)) and not isinstance(elapsed, bool) and elapsed > 0:
        return min(float(elapsed), config.total_time - 1)
    status_short = str(metadata.get("status_short") or "")
    return _PERIOD_MINUTES.get(sport, {}).get(status_short)


def poisson_probabilities(home: int, away: int, elapsed: float, config: LiveOddsConfig) -> tuple[float, float, float]:
    remaining = max(1.0, config.total_time - elapsed)
    ratio = remaining / config.total_time
    lam_home = config.avg_home * ratio
    lam_away = config.avg_away * ratio
    max_add = 15 if config.avg_home > 10 else 8

    p_home = p_draw = p_away = 0.0
    for add_h in range(max_add + 1):
        ph = poisson_pmf(add_h, lam_home)
        if ph < 1e-8:
            break
        for add_a in range(max_add + 1):
            pa = poisson_pmf(add_a, lam_away)
            if pa < 1e-8:
                break
            final_h, final_a = home + add_h, away + add_a
            if final_h > final_a:
                p_home += ph * pa
            elif final_h == final_a:
                p_draw += ph * pa
            else:
                p_away += ph * pa

    total = p_home + p_draw + p_away
    if total <= 0:
        return 0.4, 0.2, 0.4
    return p_home / total, p_draw / total, p_away / total


def margin_probabilities(home: int, away: int, elapsed: float, config: LiveOddsConfig) -> tuple[float, float, float]:
    remaining = max(0.5, config.total_time - elapsed)
    margin = home - away
    rate_diff = (config.avg_home - config.avg_away) / config.total_time
    expected_final = margin + rate_diff * remaining
    std = config.score_std_per_min * math.sqrt(remaining)
    if std <= 0.01:
        if margin > 0:
            return 0.99, 0.0, 0.01
        if margin < 0:
            return 0.01, 0.0, 0.99
        return 0.5, 0.0, 0.5
    p_home = max(0.005, min(0.995, normal_cdf(expected_final / std)))
    return p_home, 0.0, 1 - p_home


def prob_to_odds(prob: float, margin: float) -> float:
    if prob <= 0.01:
        return MAX_LIVE_ODDS
    if prob >= 0.98:
        return MIN_LIVE_ODDS
    return round(max(MIN_LIVE_ODDS, min(MAX_LIVE_ODDS, margin / prob)), 2)


def price_moneyline(
    sport: str, home: int, away: int, metadata: Optional[dict[str, Any]]
) -> Optional[dict[str, float]]:
    """Outcome -> live decimal odds, or None when the sport/clock is unknown."""
    config = LIVE_ODDS_CONFIGS.get(sport)
    if config is None:
        return None
    elapsed = elapsed_minutes(metadata, sport, config)
    if elapsed is None:
        return None
    if config.model == "poisson":
        p_home, p_draw, p_away = poisson_probabilities(home, away, elapsed, config)
    else:
        p_home, p_draw, p_away = margin_probabilities(home, away, elapsed, config)
    prices = {
        Outcome.HOME.value: prob_to_odds(p_home, config.live_margin),
        Outcome.AWAY.value: prob_to_odds(p_away, config.live_margin),
    }
    if config.has_draws:
        prices[Outcome.DRAW.value] = prob_to_odds(p_draw, config.live_margin)
    return prices


class LiveOddsEngine:
    def __init__(self, store: Store, synchronizer: MarketSynchronizer) -> None:
        self._store = store
        self._sync = synchronizer

    async def reprice(self, event: EventRecord) -> int:
        """Re-price the event's moneyline from its score; returns selections moved."""
        if event.scores is None:
            return 0
        prices = price_moneyline(event.sport_slug, event.scores.home, event.scores.away, event.metadata)
        if prices is None:
            return 0
        markets = await self._store.list_markets(
            event.id,
            statuses=[MarketStatus.OPEN, MarketStatus.SUSPENDED],
            market_type=MarketType.MONEYLINE,
        )
        markets = [m for m in markets if ":" not in m.market_key]
        if not markets:
            return 0
        market = markets[0]
        selections = [
            NormalizedSelection(
                outcome=sel.outcome,
                name=sel.name,
                odds=prices[sel.outcome],
                params=sel.params,
                handicap=sel.handicap,
                status=sel.status,
            )
            for sel in await self._store.list_selections(market.id)
            if sel.status == SelectionStatus.ACTIVE and sel.outcome in prices
        ]
        if not selections:
            return 0
        result = await self._sync.sync_markets(
            event,
            [
                NormalizedMarket(
                    market_key=market.market_key,
                    name=market.name,
                    type=market.type,
                    sort_order=market.sort_order,
                    status=market.status,
                    selections=selections,
                )
            ],
        )
        if result.changed:
            logger.debug(
                "live_odds_repriced",
                event_id=str(event.id),
                sport=event.sport_slug,
                score=event.scores.as_string(),
                moved=result.changed,
            )
        return result.changed
