"""
Poll scheduling for one provider engine.

Decides, on every engine tick, which sports are due for a live poll:
  * sports with cached live events, or in the always-poll set, once their
    interval has elapsed, in priority order;
  * when nothing is due and the limiter has spare budget, one discovery
    poll of the least-recently-checked sport;
  * at startup, polls are staggered so a cold engine does not burst.

Pure bookkeeping over monotonic seconds; no I/O.
"""
from __future__ import annotations

from typing import Iterable, Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)

NEVER = float("-inf")


class PollScheduler:
    """
    Args:
        sports: Provider sport keys, highest priority first.
        always_poll: Keys polled every interval even with no cached live events.
        interval_s: Minimum seconds between two live polls of one sport.
        discovery_interval_s: Minimum seconds since the last check before a
            sport is eligible for a discovery poll.
        stagger_immediate: How many sports are due right away after stagger().
        stagger_step_s: Offset per priority index for the remaining sports.
    """

    def __init__(
        self,
        sports: Iterable[str],
        always_poll: Iterable[str] = (),
        interval_s: float = 5.0,
        discovery_interval_s: float = 60.0,
        stagger_immediate: int = 4,
        stagger_step_s: float = 5.0,
    ) -> None:
        self._sports = list(dict.fromkeys(sports))
        self._always = set(always_poll)
        self._interval = interval_s
        self._discovery_interval = discovery_interval_s
        self._stagger_immediate = stagger_immediate
        self._stagger_step = stagger_step_s
        self._last_polled: dict[str, float] = {}
        self._not_before: dict[str, float] = {}

    @property
    def sports(self) -> list[str]:
        return list(self._sports)

    def last_polled(self, sport: str) -> Optional[float]:
        return self._last_polled.get(sport)

    def stagger(self, now: float) -> None:
        """First N sports due immediately, the rest offset by idx * step."""
        for idx, sport in enumerate(self._sports):
            offset = 0.0 if idx < self._stagger_immediate else idx * self._stagger_step
            self._not_before[sport] = now + offset
        logger.debug("poll_schedule_staggered", sports=len(self._sports), step_s=self._stagger_step)

    def _ready(self, sport: str, now: float) -> bool:
        return now >= self._not_before.get(sport, NEVER)

    def due_sports(self, now: float, live_counts: dict[str, int]) -> list[str]:
        due = []
        for sport in self._sports:
            if not self._ready(sport, now):
                continue
            if live_counts.get(sport, 0) <= 0 and sport not in self._always:
                continue
            if now - self._last_polled.get(sport, NEVER) >= self._interval:
                due.append(sport)
        return due

    def discovery_sport(self, now: float, available_slots: int) -> Optional[str]:
        """
        One sport to probe for new live events, or None.

        Only when the spare budget exceeds the number of sports, so discovery
        never starves the regular live polls.
        """
        if available_slots <= len(self._sports):
            return None
        best: Optional[str] = None
        best_ts = 0.0
        for sport in self._sports:
            if not self._ready(sport, now):
                continue
            last = self._last_polled.get(sport, NEVER)
            if now - last < self._discovery_interval:
                continue
            if best is None or last < best_ts:
                best, best_ts = sport, last
        return best

    def mark_polled(self, sport: str, now: float) -> None:
        self._last_polled[sport] = now
