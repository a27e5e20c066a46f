"""
Canonical sport catalogue.

Provider adapters map their own sport codes onto these slugs; the
reconciler uses the display fields when it creates a Sport lazily, and
synthetic odds read the draw flag and the default total line.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SportInfo:
    slug: str
    name: str
    icon: str
    sort_order: int
    has_draws: bool = False
    total_line: float = 0.0
    total_label: str = ""


_CATALOGUE = [
    SportInfo("football", "Football", "football", 1, True, 2.5, "Goals"),
    SportInfo("basketball", "Basketball", "basketball", 2, False, 210.5, "Points"),
    SportInfo("tennis", "Tennis", "tennis", 3),
    SportInfo("ice-hockey", "Ice Hockey", "hockey", 4, True, 5.5, "Goals"),
    SportInfo("baseball", "Baseball", "baseball", 5, False, 8.5, "Runs"),
    SportInfo("cricket", "Cricket", "cricket", 6, True),
    SportInfo("rugby", "Rugby Union", "rugby", 7, True, 45.5, "Points"),
    SportInfo("rugby-league", "Rugby League", "rugby", 8, True, 42.5, "Points"),
    SportInfo("handball", "Handball", "handball", 9, True, 50.5, "Goals"),
    SportInfo("volleyball", "Volleyball", "volleyball", 10, False, 3.5, "Sets"),
    SportInfo("boxing", "Boxing", "boxing", 11, True),
    SportInfo("esports", "Esports", "esports", 12),
    SportInfo("table-tennis", "Table Tennis", "table-tennis", 13),
    SportInfo("badminton", "Badminton", "badminton", 14),
    SportInfo("futsal", "Futsal", "futsal", 15, True, 5.5, "Goals"),
    SportInfo("field-hockey", "Field Hockey", "field-hockey", 16, True, 4.5, "Goals"),
    SportInfo("golf", "Golf", "golf", 17),
    SportInfo("water-polo", "Water Polo", "water-polo", 18, True, 17.5, "Goals"),
    SportInfo("floorball", "Floorball", "floorball", 19, True, 9.5, "Goals"),
    SportInfo("bandy", "Bandy", "bandy", 20, True, 8.5, "Goals"),
    SportInfo("curling", "Curling", "curling", 21),
    SportInfo("lacrosse", "Lacrosse", "lacrosse", 22, False, 20.5, "Goals"),
    SportInfo("horse-racing", "Horse Racing", "horse-racing", 23),
    SportInfo("greyhounds", "Greyhounds", "greyhounds", 24),
    SportInfo("american-football", "American Football", "american-football", 25, False, 45.5, "Points"),
    SportInfo("afl", "Aussie Rules", "afl", 26, True, 160.5, "Points"),
    SportInfo("mma", "MMA", "mma", 27),
    SportInfo("darts", "Darts", "darts", 28),
    SportInfo("snooker", "Snooker", "snooker", 29),
]

SPORTS: dict[str, SportInfo] = {s.slug: s for s in _CATALOGUE}


def get_sport(slug: str) -> SportInfo:
    """Catalogue entry, or a generic one for slugs no table knows yet."""
    info: Optional[SportInfo] = SPORTS.get(slug)
    if info is not None:
        return info
    return SportInfo(
        slug=slug,
        name=slug.replace("-", " ").replace("_", " ").title(),
        icon=slug,
        sort_order=100,
    )
