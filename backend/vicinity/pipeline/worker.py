from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from ..errors import ReviewNotFound, VicinityError
from ..logging_config import get_logger
from ..metrics import extraction_jobs_total, pipeline_last_completion_timestamp
from ..settings import settings
from ..types import ExtractionStatus
from ..utils import request_id_ctx
from .extraction import ReviewExtractor
from .jobs import JobQueue, Lease

logger = get_logger(__name__)

# Deliveries after which an infrastructure failure dead-letters the job
MAX_DELIVERIES = 5


class PipelineMonitor:
    """Tracks job completions so /health can report a stalled pipeline."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.started_at = clock()
        self.last_completion_at: float | None = None
        self.completed = 0
        self.failed = 0

    def record_completion(self) -> None:
        self.last_completion_at = self._clock()
        self.completed += 1
        pipeline_last_completion_timestamp.set(self.last_completion_at)

    def record_failure(self) -> None:
        self.failed += 1

    def is_stalled(self, pending: int, window: float | None = None) -> bool:
        """True when work is waiting but nothing completed within ``window`` seconds."""
        if pending <= 0:
            return False
        window = window or settings.PIPELINE_LIVENESS_WINDOW_SECONDS
        reference = self.last_completion_at or self.started_at
        return self._clock() - reference > window

    def snapshot(self, pending: int) -> dict[str, Any]:
        return {
            "pending": pending,
            "completed": self.completed,
            "failed": self.failed,
            "last_completion_at": self.last_completion_at,
            "stalled": self.is_stalled(pending),
        }


class WorkerPool:
    """``concurrency`` asyncio tasks consuming the extraction queue."""

    def __init__(
        self,
        queue: JobQueue,
        extractor: ReviewExtractor,
        *,
        concurrency: int | None = None,
        monitor: PipelineMonitor | None = None,
        dequeue_timeout: float = 1.0,
    ) -> None:
        self.queue = queue
        self.extractor = extractor
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.monitor = monitor or PipelineMonitor()
        self.dequeue_timeout = dequeue_timeout

    async def handle(self, lease: Lease) -> None:
        token = request_id_ctx.set(f"job-{lease.job.job_id[:12]}")
        try:
            outcome = await self.extractor.process(lease.review_id)
        except ReviewNotFound:
            logger.warning("extraction_review_missing", review_id=lease.review_id)
            extraction_jobs_total.labels(outcome="missing").inc()
            await self.queue.ack(lease)
            return
        except VicinityError as exc:
            # Storage or other infrastructure trouble: retry the whole job later
            self.monitor.record_failure()
            dead = lease.job.deliveries >= MAX_DELIVERIES
            logger.error(
                "extraction_job_error",
                review_id=lease.review_id,
                deliveries=lease.job.deliveries,
                dead_letter=dead,
                error=str(exc),
            )
            await self.queue.nack(lease, error=str(exc), dead_letter=dead)
            return
        finally:
            request_id_ctx.reset(token)

        if outcome.status is ExtractionStatus.FAILED_PERMANENT and not outcome.skipped:
            self.monitor.record_failure()
            await self.queue.nack(lease, error=outcome.error, dead_letter=True)
        else:
            await self.queue.ack(lease)
        self.monitor.record_completion()
        logger.info(
            "extraction_job_done",
            review_id=outcome.review_id,
            status=outcome.status.value,
            attempts=outcome.attempts,
            skipped=outcome.skipped,
        )

    async def run_once(self, timeout: float = 0.0) -> bool:
        """Process a single job if one is available. Returns False when the queue was empty."""
        lease = await self.queue.dequeue(timeout=timeout)
        if lease is None:
            return False
        await self.handle(lease)
        return True

    async def drain(self) -> int:
        """Process until the queue is empty; used by scripts and tests."""
        processed = 0
        while await self.run_once():
            processed += 1
        return processed

    async def _consume(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.run_once(timeout=self.dequeue_timeout)
            except Exception:
                # The lease expires and the job is redelivered
                logger.exception("worker_loop_error")
                await asyncio.sleep(self.dequeue_timeout)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("worker_pool_started", concurrency=self.concurrency)
        tasks = [asyncio.create_task(self._consume(stop)) for _ in range(self.concurrency)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("worker_pool_stopped", completed=self.monitor.completed)


__all__ = ["MAX_DELIVERIES", "PipelineMonitor", "WorkerPool"]
