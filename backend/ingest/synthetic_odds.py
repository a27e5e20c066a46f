"""
Synthetic pre-match odds for events no provider prices.

Win probabilities are drawn from bounded random ranges and turned into
decimal odds with a fixed bookmaker margin, so every event stays bettable
even without a real feed.
"""
from __future__ import annotations

import random
from typing import Optional

from shared.models.domain import NormalizedMarket, NormalizedSelection
from shared.models.enums import MarketType, Outcome
from shared.models.sports import SportInfo, get_sport

MARGIN = 0.95
MIN_ODDS = 1.10
MAX_ODDS = 15.0


def format_line(line: float) -> str:
    """2.5 -> '2.5', 3.0 -> '3'."""
    return f"{line:g}"


def probabilities_to_odds(probabilities: list[float], margin: float = MARGIN) -> list[float]:
    odds = []
    for p in probabilities:
        price = round(margin / p, 2)
        odds.append(max(MIN_ODDS, min(MAX_ODDS, price)))
    return odds


def generate_markets(sport: str | SportInfo, rng: Optional[random.Random] = None) -> list[NormalizedMarket]:
    info = sport if isinstance(sport, SportInfo) else get_sport(sport)
    rng = rng or random.Random()
    markets: list[NormalizedMarket] = []

    if info.has_draws:
        home = 0.30 + rng.random() * 0.20
        draw = 0.15 + rng.random() * 0.15
        away = max(0.10, 1 - home - draw)
        home_odds, draw_odds, away_odds = probabilities_to_odds([home, draw, away])
        markets.append(
            NormalizedMarket(
                market_key="1X2",
                name="Match Winner",
                type=MarketType.MONEYLINE,
                sort_order=1,
                selections=[
                    NormalizedSelection(outcome=Outcome.HOME.value, name="1", odds=home_odds),
                    NormalizedSelection(outcome=Outcome.DRAW.value, name="X", odds=draw_odds),
                    NormalizedSelection(outcome=Outcome.AWAY.value, name="2", odds=away_odds),
                ],
            )
        )
    else:
        home = 0.35 + rng.random() * 0.30
        home_odds, away_odds = probabilities_to_odds([home, 1 - home])
        markets.append(
            NormalizedMarket(
                market_key="ML",
                name="Match Winner",
                type=MarketType.MONEYLINE,
                sort_order=1,
                selections=[
                    NormalizedSelection(outcome=Outcome.HOME.value, name="1", odds=home_odds),
                    NormalizedSelection(outcome=Outcome.AWAY.value, name="2", odds=away_odds),
                ],
            )
        )

    if info.total_line > 0:
        line = format_line(info.total_line)
        over = 0.45 + rng.random() * 0.15
        over_odds, under_odds = probabilities_to_odds([over, 1 - over])
        markets.append(
            NormalizedMarket(
                market_key=f"OU{line}",
                name=f"Over/Under {line} {info.total_label}".rstrip(),
                type=MarketType.TOTAL,
                sort_order=2,
                selections=[
                    NormalizedSelection(
                        outcome=Outcome.OVER.value, name=f"Over {line}", odds=over_odds,
                        handicap=info.total_line,
                    ),
                    NormalizedSelection(
                        outcome=Outcome.UNDER.value, name=f"Under {line}", odds=under_odds,
                        handicap=info.total_line,
                    ),
                ],
            )
        )
    return markets
