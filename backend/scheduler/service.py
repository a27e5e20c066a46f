"""
Scheduler service for oddsfeed.
Runs the store-wide recovery jobs on fixed intervals:
  * UPCOMING -> LIVE for events whose start time passed;
  * stale-event settlement;
  * stale LIVE cleanup.
Each job runs independently; a failing run is logged and retried on the
next interval.
"""
from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from shared.config import Settings, get_settings
from shared.publishers import RedisJobQueue
from shared.store.sql import SqlStore
from shared.utils.database import DatabaseManager
from shared.utils.health_server import start_health_server
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from ingest.service import connect_with_retry
from settlement.engine import SettlementEngine
from settlement.sweeps import RecoverySweeps

logger = get_logger(__name__)


@dataclass
class PeriodicJob:
    name: str
    interval_s: float
    run: Callable[[], Awaitable[Any]]
    next_run_at: float = 0.0
    last_result: Any = None
    failures: int = 0


class SchedulerService:
    def __init__(
        self,
        sweeps: RecoverySweeps,
        settings: Settings | None = None,
        tick_s: float = 1.0,
    ) -> None:
        s = settings or get_settings()
        self._sweeps = sweeps
        self._tick_s = tick_s
        self._shutdown = asyncio.Event()
        self.jobs = [
            PeriodicJob("transition_started_events", s.status_transition_interval_s, sweeps.transition_started_events),
            PeriodicJob("settle_stale_events", s.stale_settlement_interval_s, sweeps.settle_stale_events),
            PeriodicJob("cleanup_stale_live_events", s.stale_live_cleanup_interval_s, sweeps.cleanup_stale_live_events),
        ]

    async def run_due(self, now: Optional[float] = None) -> list[str]:
        """Run every job whose interval elapsed. Returns the names that ran."""
        now = time.monotonic() if now is None else now
        ran = []
        for job in self.jobs:
            if now < job.next_run_at:
                continue
            job.next_run_at = now + job.interval_s
            ran.append(job.name)
            try:
                job.last_result = await job.run()
            except Exception as exc:
                job.failures += 1
                logger.error("scheduled_job_failed", job=job.name, error=str(exc), exc_info=True)
        return ran

    async def run(self) -> None:
        logger.info("scheduler_running", jobs=[job.name for job in self.jobs])
        while not self._shutdown.is_set():
            await self.run_due()
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._tick_s)
            except asyncio.TimeoutError:
                continue

    def status(self) -> dict[str, Any]:
        return {
            "jobs": [
                {"name": job.name, "interval_s": job.interval_s, "failures": job.failures, "last_result": job.last_result}
                for job in self.jobs
            ]
        }

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server(settings.metrics_port + 1)

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await connect_with_retry(redis.connect, "Redis")
    await connect_with_retry(db.connect, "Database")

    store = SqlStore(db)
    settlement = SettlementEngine(store, RedisJobQueue(redis, dedup_window_s=settings.settlement_job_dedup_s))
    sweeps = RecoverySweeps(
        store,
        settlement,
        stale_event_threshold_s=settings.stale_event_threshold_s,
        stale_event_batch_size=settings.stale_event_batch_size,
        live_idle_timeout_s=settings.live_idle_timeout_s,
        live_max_duration_s=settings.live_max_duration_s,
    )
    service = SchedulerService(sweeps, settings)
    start_health_server("scheduler", service.status)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_shutdown)
        except (ValueError, OSError, RuntimeError) as exc:
            logger.warning("signal_handler_unavailable", signal=sig, error=str(exc))

    try:
        await service.run()
    finally:
        await db.disconnect()
        await redis.disconnect()
        logger.info("scheduler_service_stopped")


if __name__ == "__main__":
    asyncio.run(main())
