"""
Event lifecycle transitions.

Order: UPCOMING < LIVE < {ENDED, CANCELLED, POSTPONED}. Terminal statuses
absorb every later report and a lower-ranked report never downgrades, so
the status history of any event is non-decreasing. Side effects
(settlement, pre-match snapshot) key off the flags computed here from the
previous and new status only.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.models.enums import EventStatus


@dataclass(frozen=True)
class Transition:
    previous: Optional[EventStatus]
    status: EventStatus

    @property
    def changed(self) -> bool:
        return self.previous != self.status

    @property
    def became_live(self) -> bool:
        return self.status == EventStatus.LIVE and self.previous != EventStatus.LIVE

    @property
    def became_ended(self) -> bool:
        return self.status == EventStatus.ENDED and self.previous != EventStatus.ENDED

    @property
    def became_terminal(self) -> bool:
        return self.status.is_terminal and (self.previous is None or not self.previous.is_terminal)

    @property
    def is_live(self) -> bool:
        return self.status == EventStatus.LIVE


def resolve_transition(
    current: Optional[EventStatus],
    reported: EventStatus,
    start_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Decide the status an event moves to given a provider report.

    `current` is None for an event seen for the first time. The time
    fallback promotes UPCOMING to LIVE once start_time has passed, since
    some providers lag in flipping their status.
    """
    target = reported
    if target == EventStatus.UPCOMING and start_time is not None and now is not None and start_time <= now:
        target = EventStatus.LIVE

    if current is None:
        return Transition(previous=None, status=target)
    if current.is_terminal:
        return Transition(previous=current, status=current)
    if target.rank < current.rank:
        return Transition(previous=current, status=current)
    return Transition(previous=current, status=target)


def force_transition(current: Optional[EventStatus], target: EventStatus) -> Transition:
    """Administrative/sweep transition; still refuses to leave a terminal status."""
    if current is not None and current.is_terminal:
        return Transition(previous=current, status=current)
    return Transition(previous=current, status=target)
