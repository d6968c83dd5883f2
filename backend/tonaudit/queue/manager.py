"""QueueManager: one Redis sorted set per queue, deduplicated by job id."""

import json
from datetime import UTC, datetime

from redis.asyncio import Redis

from tonaudit.queue.schemas import QueuedJob


class QueueManager:
    """Durable at-least-once queue over Redis.

    Layout per queue name:
    - queue:{name}:pending  sorted set, member = job_id, score = available-at (epoch seconds)
    - queue:{name}:job:{id} hash holding the payload and attempt count

    The job hash is created with HSETNX, so a second enqueue of a pending job id
    is a no-op. The hash is deleted on ack, which releases the id.
    """

    def __init__(self, redis: Redis, queue: str):
        self.redis = redis
        self.queue = queue
        self.pending_key = f"queue:{queue}:pending"

    def job_key(self, job_id: str) -> str:
        return f"queue:{self.queue}:job:{job_id}"

    async def enqueue(self, job_id: str, payload: dict, now: datetime | None = None) -> bool:
        """Add a job unless one with the same id is already pending.

        Returns True if the job was added, False if it was deduplicated.
        """
        now = now or datetime.now(UTC)
        key = self.job_key(job_id)

        created = await self.redis.hsetnx(key, "payload", json.dumps(payload))
        if not created:
            return False

        await self.redis.hset(
            key,
            mapping={
                "attempts": "0",
                "enqueued_at": now.isoformat(),
            },
        )
        await self.redis.zadd(self.pending_key, {job_id: now.timestamp()})
        return True

    async def dequeue(self, now: datetime | None = None) -> QueuedJob | None:
        """Claim the oldest job whose available-at time has passed.

        ZREM decides the winner when several workers see the same candidate.
        Returns None if nothing is due.
        """
        now = now or datetime.now(UTC)
        candidates = await self.redis.zrangebyscore(self.pending_key, "-inf", now.timestamp(), start=0, num=5)

        for job_id in candidates:
            removed = await self.redis.zrem(self.pending_key, job_id)
            if not removed:
                continue  # claimed by another worker

            key = self.job_key(job_id)
            data = await self.redis.hgetall(key)
            if not data:
                continue  # acked between ZRANGE and ZREM

            attempts = await self.redis.hincrby(key, "attempts", 1)
            return QueuedJob(
                job_id=job_id,
                queue=self.queue,
                payload=json.loads(data["payload"]),
                attempts=attempts,
                enqueued_at=data.get("enqueued_at", ""),
            )

        return None

    async def retry_later(self, job_id: str, delay_seconds: float, now: datetime | None = None) -> None:
        """Make a claimed job available again after delay_seconds."""
        now = now or datetime.now(UTC)
        await self.redis.zadd(self.pending_key, {job_id: now.timestamp() + delay_seconds})

    async def ack(self, job_id: str) -> None:
        """Drop a finished job. Its id may be enqueued again afterwards."""
        await self.redis.zrem(self.pending_key, job_id)
        await self.redis.delete(self.job_key(job_id))

    async def get_job(self, job_id: str) -> dict | None:
        data = await self.redis.hgetall(self.job_key(job_id))
        return data or None

    async def is_pending(self, job_id: str) -> bool:
        return await self.redis.zscore(self.pending_key, job_id) is not None

    async def get_length(self) -> int:
        """Return the number of jobs waiting (due or delayed)."""
        return await self.redis.zcard(self.pending_key)
