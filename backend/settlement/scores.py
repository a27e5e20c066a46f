"""
Final-score resolution for settlement.

When neither the store nor the caller has a score for an ended event, a
plausible one is synthesized from bounded per-sport ranges so the event's
markets can still be closed.
"""
from __future__ import annotations

import random
from typing import Optional

from shared.models.domain import EventRecord, Score


def _sets(rng: random.Random, extra: int = 2) -> Score:
    return Score(
        home=rng.randrange(extra) + 1,
        away=rng.randrange(extra) + (1 if rng.random() > 0.5 else 0),
    )


def synthesize_score(sport_slug: str, rng: Optional[random.Random] = None) -> Score:
    rng = rng or random.Random()
    if sport_slug == "football":
        return Score(home=rng.randrange(4), away=rng.randrange(4))
    if sport_slug == "basketball":
        return Score(home=80 + rng.randrange(50), away=80 + rng.randrange(50))
    if sport_slug in ("tennis", "volleyball"):
        return _sets(rng)
    if sport_slug in ("table-tennis", "badminton"):
        return _sets(rng, extra=3)
    if sport_slug == "ice-hockey":
        return Score(home=rng.randrange(5), away=rng.randrange(5))
    if sport_slug == "baseball":
        return Score(home=rng.randrange(8), away=rng.randrange(8))
    if sport_slug == "american-football":
        return Score(
            home=rng.randrange(6) * 7 + rng.randrange(3) * 3,
            away=rng.randrange(6) * 7 + rng.randrange(3) * 3,
        )
    if sport_slug == "cricket":
        return Score(home=100 + rng.randrange(250), away=100 + rng.randrange(250))
    if sport_slug == "handball":
        return Score(home=20 + rng.randrange(15), away=20 + rng.randrange(15))
    if sport_slug in ("mma", "boxing"):
        return Score(home=int(rng.random() > 0.5), away=int(rng.random() > 0.5))
    if sport_slug == "esports":
        return Score(
            home=rng.randrange(3) + int(rng.random() > 0.4),
            away=rng.randrange(3) + int(rng.random() > 0.4),
        )
    return Score(home=rng.randrange(4), away=rng.randrange(4))


def resolve_score(
    event: EventRecord, supplied: Optional[Score] = None, rng: Optional[random.Random] = None
) -> tuple[Score, str]:
    """Stored score first, then the supplied one, then a synthesized one. Returns (score, origin)."""
    if event.scores is not None:
        return event.scores, "stored"
    if supplied is not None:
        return supplied, "supplied"
    return synthesize_score(event.sport_slug, rng), "synthesized"
