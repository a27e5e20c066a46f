"""
Fan-out ports used by the pipeline.

BroadcastPublisher: best-effort live score/odds/status fan-out. publish()
never raises; a missing transport or subscriber must not fail a poll.

JobQueuePublisher: hands settlement work to the external job runner. The
idempotency key suppresses duplicates within the dedup window.
"""
from __future__ import annotations

import abc
import json
from datetime import datetime, timedelta
from typing import Any, Optional

from redis.exceptions import RedisError

from shared.errors import SettlementError
from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

# ── Channels ────────────────────────────────────────────────────────────
LIVE_CHANNEL = "live"


def event_channel(event_id: Any) -> str:
    return f"event:{event_id}"


def sport_channel(sport_slug: str) -> str:
    return f"sport:{sport_slug}"


# ── Broadcast ───────────────────────────────────────────────────────────
class BroadcastPublisher(abc.ABC):
    @abc.abstractmethod
    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget publish."""
        ...


class NullBroadcastPublisher(BroadcastPublisher):
    """Used when no transport is configured (tests, dry runs, transport not ready)."""

    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> None:
        return None


class RedisBroadcastPublisher(BroadcastPublisher):
    """Publishes a JSON envelope {event, data} on a Redis pub/sub channel."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event_name, "data": payload}, default=str)
        try:
            await self._redis.publish(channel, message)
        except (RedisError, RuntimeError) as exc:
            logger.warning("broadcast_failed", channel=channel, event=event_name, error=str(exc))


# ── Job queue ───────────────────────────────────────────────────────────
class JobQueuePublisher(abc.ABC):
    @abc.abstractmethod
    async def enqueue(self, job_type: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        """
        Enqueue a job. Returns False when the key was already used within the window.
        Raises SettlementError when the transport fails.
        """
        ...


class RedisJobQueue(JobQueuePublisher):
    """SET NX EX claims the idempotency key, then LPUSH onto jobs:<type>."""

    def __init__(self, redis: RedisManager, dedup_window_s: int = 3600) -> None:
        self._redis = redis
        self._dedup_window_s = dedup_window_s

    async def enqueue(self, job_type: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        body = json.dumps(
            {"type": job_type, "id": idempotency_key, "payload": payload}, default=str
        )
        try:
            claimed = await self._redis.claim_idempotency_key(idempotency_key, self._dedup_window_s)
        except (RedisError, RuntimeError) as exc:
            raise SettlementError(f"could not enqueue {job_type} {idempotency_key}: {exc}") from exc
        if not claimed:
            logger.info("job_duplicate_suppressed", job_type=job_type, key=idempotency_key)
            return False

        try:
            await self._redis.push_job(job_type, body)
        except (RedisError, RuntimeError) as exc:
            # An unpushed job must not hold its key, or every retry is suppressed.
            await self._release(idempotency_key)
            raise SettlementError(f"could not enqueue {job_type} {idempotency_key}: {exc}") from exc
        logger.info("job_enqueued", job_type=job_type, key=idempotency_key)
        return True

    async def _release(self, idempotency_key: str) -> None:
        try:
            await self._redis.release_idempotency_key(idempotency_key)
        except (RedisError, RuntimeError) as exc:
            # The claim expires with the dedup window.
            logger.error("job_key_release_failed", key=idempotency_key, error=str(exc))


class InMemoryJobQueue(JobQueuePublisher):
    """Process-local queue with the same dedup semantics as RedisJobQueue."""

    def __init__(self, dedup_window_s: int = 3600, clock: Optional[Clock] = None) -> None:
        self._window = timedelta(seconds=dedup_window_s)
        self._clock = clock or SYSTEM_CLOCK
        self._claimed: dict[str, datetime] = {}
        self.jobs: list[dict[str, Any]] = []

    async def enqueue(self, job_type: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        now = self._clock.now()
        claimed_at = self._claimed.get(idempotency_key)
        if claimed_at is not None and now - claimed_at < self._window:
            return False
        self._claimed[idempotency_key] = now
        self.jobs.append({"type": job_type, "id": idempotency_key, "payload": payload})
        return True
