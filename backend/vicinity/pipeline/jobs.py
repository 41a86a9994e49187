"""
At-least-once job queue for review extraction.

Consumers ``dequeue`` a lease, then ``ack`` (done) or ``nack`` (retry later or
dead-letter). A lease that is neither acked nor nacked within the visibility
timeout expires and the job is delivered again. A review id that is queued or
leased is not enqueued a second time, so one review is never held by two
workers at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Protocol

from redis.asyncio import Redis

from ..metrics import dead_letter_size
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass
class Job:
    review_id: str
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    deliveries: int = 0
    enqueued_at: float = field(default_factory=time.time)
    last_error: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, payload: str | bytes) -> Job:
        data: dict[str, Any] = json.loads(payload)
        return cls(**data)


@dataclass
class Lease:
    job: Job
    token: str
    expires_at: float

    @property
    def review_id(self) -> str:
        return self.job.review_id


class JobQueue(Protocol):
    async def enqueue(self, review_id: str) -> bool: ...

    async def dequeue(self, timeout: float = 0.0) -> Lease | None: ...

    async def ack(self, lease: Lease) -> None: ...

    async def nack(self, lease: Lease, *, error: str | None = None, dead_letter: bool = False) -> None: ...

    async def dead_letters(self) -> list[Job]: ...

    async def requeue_dead_letters(self, limit: int | None = None) -> int: ...

    async def pending_count(self) -> int: ...


class InMemoryJobQueue:
    """Single-process queue. Leases expire against ``clock``."""

    def __init__(
        self,
        visibility_timeout: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.05,
    ) -> None:
        self.visibility_timeout = visibility_timeout or settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        self._clock = clock
        self._poll_interval = poll_interval
        self._ready: deque[Job] = deque()
        self._leases: dict[str, Lease] = {}
        self._dead: list[Job] = []
        self._lock = Lock()

    def _tracked(self, review_id: str) -> bool:
        return any(job.review_id == review_id for job in self._ready) or any(
            lease.review_id == review_id for lease in self._leases.values()
        )

    async def enqueue(self, review_id: str) -> bool:
        with self._lock:
            if self._tracked(review_id):
                return False
            self._ready.append(Job(review_id=review_id))
            return True

    def _reclaim_expired(self) -> None:
        now = self._clock()
        expired = [token for token, lease in self._leases.items() if lease.expires_at <= now]
        for token in expired:
            lease = self._leases.pop(token)
            logger.info("Lease on review %s expired; redelivering", lease.review_id)
            self._ready.appendleft(lease.job)

    def _try_lease(self) -> Lease | None:
        with self._lock:
            self._reclaim_expired()
            if not self._ready:
                return None
            job = self._ready.popleft()
            job.deliveries += 1
            lease = Lease(job=job, token=uuid.uuid4().hex, expires_at=self._clock() + self.visibility_timeout)
            self._leases[lease.token] = lease
            return lease

    async def dequeue(self, timeout: float = 0.0) -> Lease | None:
        deadline = time.monotonic() + timeout
        while True:
            lease = self._try_lease()
            if lease is not None or time.monotonic() >= deadline:
                return lease
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - time.monotonic())))

    async def ack(self, lease: Lease) -> None:
        with self._lock:
            if self._leases.pop(lease.token, None) is None:
                logger.warning("Ack for unknown or expired lease on review %s", lease.review_id)

    async def nack(self, lease: Lease, *, error: str | None = None, dead_letter: bool = False) -> None:
        with self._lock:
            if self._leases.pop(lease.token, None) is None:
                logger.warning("Nack for unknown or expired lease on review %s", lease.review_id)
                return
            lease.job.last_error = error
            if dead_letter:
                self._dead.append(lease.job)
                dead_letter_size.set(len(self._dead))
            else:
                self._ready.append(lease.job)

    async def dead_letters(self) -> list[Job]:
        with self._lock:
            return list(self._dead)

    async def requeue_dead_letters(self, limit: int | None = None) -> int:
        with self._lock:
            count = len(self._dead) if limit is None else min(limit, len(self._dead))
            moved, self._dead = self._dead[:count], self._dead[count:]
            for job in moved:
                self._ready.append(Job(review_id=job.review_id))
            dead_letter_size.set(len(self._dead))
        if moved:
            logger.info("Requeued %d dead-lettered jobs", len(moved))
        return len(moved)

    async def pending_count(self) -> int:
        with self._lock:
            return len(self._ready) + len(self._leases)


# KEYS: ready, queued-set. ARGV: review_id, job json
_ENQUEUE_LUA = """
if redis.call('SADD', KEYS[2], ARGV[1]) == 1 then
  redis.call('LPUSH', KEYS[1], ARGV[2])
  return 1
end
return 0
"""

# KEYS: ready, leases. ARGV: now, expires_at
_LEASE_LUA = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, payload in ipairs(expired) do
  redis.call('ZREM', KEYS[2], payload)
  redis.call('RPUSH', KEYS[1], payload)
end
local payload = redis.call('RPOP', KEYS[1])
if not payload then
  return nil
end
local job = cjson.decode(payload)
job['deliveries'] = (job['deliveries'] or 0) + 1
payload = cjson.encode(job)
redis.call('ZADD', KEYS[2], ARGV[2], payload)
return payload
"""

# KEYS: leases, queued-set, target list (ready or dead). ARGV: lease payload, review_id, new payload, finished flag
_RELEASE_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
if ARGV[3] ~= '' then
  redis.call('LPUSH', KEYS[3], ARGV[3])
end
if ARGV[4] == "1" then
  redis.call('SREM', KEYS[2], ARGV[2])
end
return 1
"""


class RedisJobQueue:
    """Reliable queue on redis: a ready list plus a lease sorted set scored by expiry.

    Leasing, reclaiming expired leases and releasing are single Lua scripts,
    so a job is always in exactly one of ready, leased or dead.
    """

    def __init__(
        self,
        client: Redis,
        name: str | None = None,
        *,
        visibility_timeout: float | None = None,
        poll_interval: float = 0.2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        base = f"{settings.CACHE_KEY_PREFIX}:jobs:{name or settings.JOB_QUEUE_NAME}"
        self.ready_key = f"{base}:ready"
        self.lease_key = f"{base}:leases"
        self.queued_key = f"{base}:queued"
        self.dead_key = f"{base}:dead"
        self.visibility_timeout = visibility_timeout or settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        self._poll_interval = poll_interval
        self._clock = clock
        self._enqueue = client.register_script(_ENQUEUE_LUA)
        self._lease = client.register_script(_LEASE_LUA)
        self._release = client.register_script(_RELEASE_LUA)

    async def enqueue(self, review_id: str) -> bool:
        job = Job(review_id=review_id)
        added = await self._enqueue(keys=[self.ready_key, self.queued_key], args=[review_id, job.to_json()])
        return bool(added)

    async def dequeue(self, timeout: float = 0.0) -> Lease | None:
        deadline = time.monotonic() + timeout
        while True:
            now = self._clock()
            payload = await self._lease(
                keys=[self.ready_key, self.lease_key],
                args=[now, now + self.visibility_timeout],
            )
            if payload is not None:
                job = Job.from_json(payload)
                return Lease(job=job, token=payload, expires_at=now + self.visibility_timeout)
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - time.monotonic())))

    async def _release_lease(self, lease: Lease, target: str, new_payload: str, finished: bool) -> bool:
        # A finished job releases its review id from the queued set
        released = await self._release(
            keys=[self.lease_key, self.queued_key, target],
            args=[lease.token, lease.review_id, new_payload, "1" if finished else "0"],
        )
        if not released:
            logger.warning("Release of unknown or expired lease on review %s", lease.review_id)
        return bool(released)

    async def ack(self, lease: Lease) -> None:
        await self._release_lease(lease, self.ready_key, "", finished=True)

    async def nack(self, lease: Lease, *, error: str | None = None, dead_letter: bool = False) -> None:
        lease.job.last_error = error
        if dead_letter:
            if await self._release_lease(lease, self.dead_key, lease.job.to_json(), finished=True):
                dead_letter_size.set(await self._redis.llen(self.dead_key))
        else:
            await self._release_lease(lease, self.ready_key, lease.job.to_json(), finished=False)

    async def dead_letters(self) -> list[Job]:
        return [Job.from_json(item) for item in await self._redis.lrange(self.dead_key, 0, -1)]

    async def requeue_dead_letters(self, limit: int | None = None) -> int:
        moved = 0
        while limit is None or moved < limit:
            payload = await self._redis.rpop(self.dead_key)
            if payload is None:
                break
            await self.enqueue(Job.from_json(payload).review_id)
            moved += 1
        dead_letter_size.set(await self._redis.llen(self.dead_key))
        if moved:
            logger.info("Requeued %d dead-lettered jobs", moved)
        return moved

    async def pending_count(self) -> int:
        ready = await self._redis.llen(self.ready_key)
        leased = await self._redis.zcard(self.lease_key)
        return int(ready) + int(leased)


_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Redis-backed when redis is configured, otherwise in-process."""
    global _queue
    if _queue is None:
        from ..redis_client import get_async_redis

        client = get_async_redis()
        _queue = RedisJobQueue(client) if client is not None else InMemoryJobQueue()
    return _queue


def set_job_queue(queue: JobQueue | None) -> None:
    global _queue
    _queue = queue


__all__ = [
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "Lease",
    "RedisJobQueue",
    "get_job_queue",
    "set_job_queue",
]
