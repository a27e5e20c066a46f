"""
Ingest service entrypoint.
Runs one ProviderEngine per enabled provider against the shared store,
broadcasts changes over Redis pub/sub and enqueues settlement jobs.
"""
from __future__ import annotations

import asyncio
import signal
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.publishers import BroadcastPublisher, JobQueuePublisher, RedisBroadcastPublisher, RedisJobQueue
from shared.store.base import Store
from shared.store.sql import SqlStore
from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.database import DatabaseManager
from shared.utils.health_server import start_health_server
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from ingest.engine import ProviderEngine
from ingest.providers.base import BaseProvider
from ingest.providers.registry import build_providers
from ingest.reconciliation import Reconciler
from settlement.engine import SettlementEngine

logger = get_logger(__name__)

STATUS_PUBLISH_INTERVAL_S = 30.0

# Retry connection on startup (e.g. Redis/DB not ready yet in Docker)
CONNECT_RETRY_ATTEMPTS = 10
CONNECT_RETRY_BASE_DELAY_S = 2.0


async def connect_with_retry(connect_fn, name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == CONNECT_RETRY_ATTEMPTS:
                raise
            delay = CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


def build_engines(
    providers: list[BaseProvider],
    store: Store,
    broadcaster: BroadcastPublisher,
    jobs: JobQueuePublisher,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> list[ProviderEngine]:
    """One engine per provider; reconciliation and settlement are shared."""
    s = settings or get_settings()
    clock = clock or SYSTEM_CLOCK
    reconciler = Reconciler(store, clock=clock, fuzzy_window_s=s.fuzzy_match_window_s)
    settlement = SettlementEngine(store, jobs)
    return [
        ProviderEngine(provider, store, reconciler, settlement, broadcaster, settings=s, clock=clock)
        for provider in providers
    ]


class IngestService:
    """Owns the provider engines and reports their status."""

    def __init__(
        self,
        engines: list[ProviderEngine],
        redis: Optional[RedisManager] = None,
    ) -> None:
        self._engines = engines
        self._redis = redis
        self._shutdown = asyncio.Event()

    @property
    def engines(self) -> list[ProviderEngine]:
        return list(self._engines)

    def status(self) -> dict[str, Any]:
        return {"engines": [engine.status() for engine in self._engines]}

    async def run(self) -> None:
        for engine in self._engines:
            await engine.start()
        logger.info("ingest_engines_started", engines=[e.name for e in self._engines])
        try:
            while not self._shutdown.is_set():
                await self._publish_status()
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=STATUS_PUBLISH_INTERVAL_S)
                except asyncio.TimeoutError:
                    continue
        finally:
            await asyncio.gather(*(engine.stop() for engine in self._engines), return_exceptions=True)

    async def _publish_status(self) -> None:
        if self._redis is None:
            return
        for engine in self._engines:
            try:
                await self._redis.set_sync_status(engine.name, engine.status())
            except Exception as exc:
                logger.warning("sync_status_publish_failed", provider=engine.name, error=str(exc))

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def main() -> None:
    """Ingest service entrypoint."""
    settings = get_settings()
    setup_logging("ingest")
    start_metrics_server(settings.metrics_port)

    redis = RedisManager(settings)
    db = DatabaseManager(settings)

    await connect_with_retry(redis.connect, "Redis")
    await connect_with_retry(db.connect, "Database")
    await db.create_schema()

    providers = build_providers(settings)

    store = SqlStore(db)
    engines = build_engines(
        providers,
        store,
        RedisBroadcastPublisher(redis),
        RedisJobQueue(redis, dedup_window_s=settings.settlement_job_dedup_s),
        settings,
    )
    service = IngestService(engines, redis)
    start_health_server("ingest", service.status)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.request_shutdown)
        except (ValueError, OSError, RuntimeError) as exc:
            logger.warning("signal_handler_unavailable", signal=sig, error=str(exc))

    logger.info("ingest_service_started", providers=[p.name.value for p in providers])

    try:
        await service.run()
    finally:
        await db.disconnect()
        await redis.disconnect()
        logger.info("ingest_service_stopped")


if __name__ == "__main__":
    asyncio.run(main())
