"""Redis job queue: the Lua enqueue, lease and release scripts against an in-process redis."""

import asyncio

from backend.vicinity.pipeline.extraction import ReviewExtractor
from backend.vicinity.pipeline.jobs import RedisJobQueue
from backend.vicinity.pipeline.worker import WorkerPool
from backend.vicinity.storage import InMemoryVenueStore
from backend.vicinity.types import ExtractionStatus
from conftest import FakeCompletion, make_review, make_venue
from fakeredis import FakeAsyncRedis, FakeServer


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def no_sleep(delay: float) -> None:
    return None


def run_with_queue(scenario, clock=None):
    async def wrapper():
        client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
        queue = RedisJobQueue(client, "test", visibility_timeout=30, clock=clock or FakeClock())
        try:
            return await scenario(queue)
        finally:
            await client.aclose()

    return asyncio.run(wrapper())


def test_enqueue_dedupes_until_acked():
    async def scenario(queue):
        results = [await queue.enqueue("r1"), await queue.enqueue("r1")]
        lease = await queue.dequeue()
        results.append(await queue.enqueue("r1"))
        await queue.ack(lease)
        results.append(await queue.enqueue("r1"))
        return results, await queue.pending_count()

    results, pending = run_with_queue(scenario)
    assert results == [True, False, False, True]
    assert pending == 1


def test_empty_queue_returns_no_lease():
    async def scenario(queue):
        return await queue.dequeue()

    assert run_with_queue(scenario) is None


def test_expired_lease_is_redelivered_and_stale_ack_is_ignored():
    clock = FakeClock()

    async def scenario(queue):
        await queue.enqueue("r1")
        first = await queue.dequeue()
        held = await queue.dequeue()
        clock.now += 31
        second = await queue.dequeue()
        await queue.ack(first)
        pending_after_stale_ack = await queue.pending_count()
        await queue.ack(second)
        return first, held, second, pending_after_stale_ack, await queue.pending_count()

    first, held, second, pending_after_stale_ack, pending = run_with_queue(scenario, clock)
    assert first.job.deliveries == 1
    assert held is None
    assert second.review_id == "r1"
    assert second.job.deliveries == 2
    assert second.token != first.token
    assert pending_after_stale_ack == 1
    assert pending == 0


def test_nack_redelivers_with_last_error():
    async def scenario(queue):
        await queue.enqueue("r1")
        lease = await queue.dequeue()
        await queue.nack(lease, error="timeout")
        return await queue.dequeue()

    retry = run_with_queue(scenario)
    assert retry.review_id == "r1"
    assert retry.job.deliveries == 2
    assert retry.job.last_error == "timeout"


def test_dead_letter_then_requeue():
    async def scenario(queue):
        await queue.enqueue("r1")
        await queue.enqueue("r2")
        for _ in range(2):
            lease = await queue.dequeue()
            await queue.nack(lease, error="boom", dead_letter=True)
        dead = await queue.dead_letters()
        pending_while_dead = await queue.pending_count()
        moved = await queue.requeue_dead_letters(limit=1)
        lease = await queue.dequeue()
        return dead, pending_while_dead, moved, lease, await queue.dead_letters()

    dead, pending_while_dead, moved, lease, dead_after = run_with_queue(scenario)
    assert {job.review_id for job in dead} == {"r1", "r2"}
    assert all(job.last_error == "boom" for job in dead)
    assert pending_while_dead == 0
    assert moved == 1
    assert lease.review_id == "r1"
    assert lease.job.deliveries == 1
    assert [job.review_id for job in dead_after] == ["r2"]


def test_worker_pool_drains_a_redis_queue():
    store = InMemoryVenueStore([make_venue("v-sakura", embed=False)], [make_review("r1"), make_review("r2")])
    reply = {"noise_level": 2, "vibe": "casual", "food_quality": "good", "service_quality": "good"}

    async def scenario(queue):
        pool = WorkerPool(queue, ReviewExtractor(FakeCompletion(reply), store, sleep=no_sleep), concurrency=2)
        await queue.enqueue("r1")
        await queue.enqueue("r2")
        processed = await pool.drain()
        return processed, await queue.pending_count(), await store.list_reviews("v-sakura")

    processed, pending, reviews = run_with_queue(scenario)
    assert processed == 2
    assert pending == 0
    assert all(review.status is ExtractionStatus.EXTRACTED for review in reviews)
