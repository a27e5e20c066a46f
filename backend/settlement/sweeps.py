"""
Stale-event recovery sweeps and admin settlement operations.

The sweeps catch what the live pipeline missed (a provider stopped
reporting, a worker died mid-poll). They move events to ENDED through
bulk_mark_ended_by_staleness, which returns only rows it actually
transitioned, so every event is handed to settlement once.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from shared.errors import OddsFeedError, SettlementError
from shared.models.domain import EventRecord, Score, StalenessCriteria
from shared.models.enums import EventStatus, SettlementSource
from shared.store.base import Store
from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.logging import get_logger
from shared.utils.metrics import SWEEP_TRANSITIONS

from ingest.state_machine import force_transition
from settlement.engine import SettlementEngine, SettlementReport, primary_job_key

logger = get_logger(__name__)


@dataclass
class SweepResult:
    transitioned: int = 0
    settled: int = 0
    failed: int = 0


class RecoverySweeps:
    def __init__(
        self,
        store: Store,
        settlement: SettlementEngine,
        clock: Optional[Clock] = None,
        stale_event_threshold_s: float = 3 * 3600.0,
        stale_event_batch_size: int = 100,
        live_idle_timeout_s: float = 600.0,
        live_max_duration_s: float = 6 * 3600.0,
    ) -> None:
        self._store = store
        self._settlement = settlement
        self._clock = clock or SYSTEM_CLOCK
        self._stale_after = timedelta(seconds=stale_event_threshold_s)
        self._batch = stale_event_batch_size
        self._idle_after = timedelta(seconds=live_idle_timeout_s)
        self._max_live = timedelta(seconds=live_max_duration_s)

    async def settle_stale_events(self) -> SweepResult:
        """UPCOMING/LIVE events that started over the threshold ago, oldest first, one batch."""
        now = self._clock.now()
        ended = await self._store.bulk_mark_ended_by_staleness(
            StalenessCriteria(
                statuses=[EventStatus.UPCOMING, EventStatus.LIVE],
                started_before=now - self._stale_after,
                limit=self._batch,
            )
        )
        stamp = int(now.timestamp())
        result = await self._settle_all(
            ended,
            SettlementSource.STALE_EVENT_CRON,
            lambda event: f"stale-settle-{event.id}-{stamp}",
        )
        SWEEP_TRANSITIONS.labels(sweep="stale_events").inc(result.transitioned)
        if result.transitioned:
            logger.info("stale_events_settled", **result.__dict__)
        return result

    async def cleanup_stale_live_events(self) -> SweepResult:
        """LIVE events no poller touched recently, or live for implausibly long."""
        now = self._clock.now()
        idle = await self._store.bulk_mark_ended_by_staleness(
            StalenessCriteria(statuses=[EventStatus.LIVE], updated_before=now - self._idle_after)
        )
        too_long = await self._store.bulk_mark_ended_by_staleness(
            StalenessCriteria(statuses=[EventStatus.LIVE], started_before=now - self._max_live)
        )
        result = await self._settle_all(
            [*idle, *too_long], SettlementSource.STALE_LIVE_CLEANUP, lambda event: primary_job_key(event.id)
        )
        SWEEP_TRANSITIONS.labels(sweep="stale_live").inc(result.transitioned)
        if result.transitioned:
            logger.info("stale_live_events_cleaned", idle=len(idle), too_long=len(too_long), **result.__dict__)
        return result

    async def transition_started_events(self) -> int:
        """UPCOMING events whose start has passed become LIVE."""
        count = await self._store.bulk_mark_live_by_start_time(self._clock.now())
        if count:
            SWEEP_TRANSITIONS.labels(sweep="started").inc(count)
            logger.info("started_events_marked_live", count=count)
        return count

    # ── Admin ───────────────────────────────────────────────────────────
    async def settle_all_ended_events(self) -> SweepResult:
        """Re-run settlement for ENDED events that still have open markets."""
        events = await self._store.list_events(statuses=[EventStatus.ENDED], with_open_markets=True)
        stamp = int(self._clock.now().timestamp())
        result = await self._settle_all(
            events, SettlementSource.ADMIN_MANUAL_RUN, lambda event: f"admin-settle-{event.id}-{stamp}"
        )
        result.transitioned = 0
        logger.info("ended_events_resettled", events=len(events), settled=result.settled, failed=result.failed)
        return result

    async def force_end_event(
        self, event_id: uuid.UUID, scores: Optional[Score] = None
    ) -> Optional[SettlementReport]:
        """
        End one event now and settle it.

        Returns None when the event does not exist.

        Raises:
            SettlementError: the event is CANCELLED or POSTPONED.
        """
        event = await self._store.get_event(event_id)
        if event is None:
            return None
        transition = force_transition(event.status, EventStatus.ENDED)
        if transition.status != EventStatus.ENDED:
            raise SettlementError(f"event {event_id} is {event.status.value} and cannot be ended")
        previous = event.status
        if transition.became_ended or scores is not None:
            changes: dict = {"status": EventStatus.ENDED, "is_live": False}
            if scores is not None:
                changes["scores"] = scores
            updated = await self._store.update_event(event.id, changes)
            event = updated or event
            if event.status != EventStatus.ENDED:
                raise SettlementError(f"event {event_id} became {event.status.value} and cannot be ended")
        logger.info("event_force_ended", event_id=str(event.id), previous=previous.value)
        return await self._settlement.settle_event(
            event, scores, SettlementSource.ADMIN_FORCE_END, job_key=primary_job_key(event.id)
        )

    # ── Internals ───────────────────────────────────────────────────────
    async def _settle_all(self, events: list[EventRecord], source: SettlementSource, key_for) -> SweepResult:
        result = SweepResult(transitioned=len(events))
        for event in events:
            try:
                await self._settlement.settle_event(event, source=source, job_key=key_for(event))
                result.settled += 1
            except OddsFeedError as exc:
                result.failed += 1
                logger.error("sweep_settlement_failed", event_id=str(event.id), source=source.value, error=str(exc))
        return result
