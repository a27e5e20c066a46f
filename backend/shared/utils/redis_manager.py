"""
Redis connection manager for oddsfeed.
Provides the async connection pool plus the small set of primitives the
broadcast publisher, job queue and sync-status reporting rely on.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
JOB_QUEUE_KEY = "jobs:{job_type}"
JOB_DEDUP_KEY = "jobs:dedup:{idempotency_key}"
SYNC_STATUS_KEY = "sync-status:{provider}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await pool.ping()
        self._pool = pool
        logger.info("redis_connected", max_connections=self._settings.redis_max_connections)

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        await self._pool.aclose()
        self._pool = None
        logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager.connect() has not been awaited")
        return self._pool

    # ── Pub/Sub publish ─────────────────────────────────────────────────
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message; returns the number of subscribers that received it."""
        return await self.client.publish(channel, message)

    # ── Job queue ───────────────────────────────────────────────────────
    async def claim_idempotency_key(self, idempotency_key: str, ttl_s: int) -> bool:
        """Atomically claim a key for ttl_s. False when it is already held."""
        key = _fmt(JOB_DEDUP_KEY, idempotency_key=idempotency_key)
        return bool(await self.client.set(key, "1", nx=True, ex=ttl_s))

    async def release_idempotency_key(self, idempotency_key: str) -> None:
        await self.client.delete(_fmt(JOB_DEDUP_KEY, idempotency_key=idempotency_key))

    async def push_job(self, job_type: str, body: str) -> int:
        """Append a serialized job to its queue list. Returns the queue length."""
        return await self.client.lpush(_fmt(JOB_QUEUE_KEY, job_type=job_type), body)

    # ── Sync status ─────────────────────────────────────────────────────
    async def set_sync_status(self, provider: str, status: dict[str, Any], ttl_s: int = 3600) -> None:
        await self.client.set(
            _fmt(SYNC_STATUS_KEY, provider=provider), json.dumps(status, default=str), ex=ttl_s
        )

    async def get_sync_status(self, provider: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(_fmt(SYNC_STATUS_KEY, provider=provider))
        return json.loads(raw) if raw else None
