"""Run review attribute extraction workers outside the API process.

Usage:
    python backend/scripts/run_workers.py                 # consume until Ctrl+C
    python backend/scripts/run_workers.py --drain         # process what is queued, then exit
    python backend/scripts/run_workers.py --requeue-dead  # move dead letters back to the queue first
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.vicinity.completion import OpenAICompletionClient  # noqa: E402
from backend.vicinity.db.core import init_db  # noqa: E402
from backend.vicinity.logging_config import configure_structlog, get_logger  # noqa: E402
from backend.vicinity.openai_async import close_async_client  # noqa: E402
from backend.vicinity.pipeline.extraction import ReviewExtractor  # noqa: E402
from backend.vicinity.pipeline.jobs import get_job_queue  # noqa: E402
from backend.vicinity.pipeline.worker import WorkerPool  # noqa: E402
from backend.vicinity.redis_client import close_async_redis  # noqa: E402
from backend.vicinity.settings import settings  # noqa: E402
from backend.vicinity.storage import SqlVenueStore  # noqa: E402

logger = get_logger("run_workers")


async def run(args: argparse.Namespace) -> int:
    if not settings.OPENAI_API_KEY:
        logger.error("workers_not_started", reason="OPENAI_API_KEY is not set")
        return 2
    if not (settings.REDIS_ENABLED and settings.REDIS_URL) and not args.drain:
        logger.warning("in_memory_queue", hint="without redis this process only sees its own jobs")

    await init_db()
    queue = get_job_queue()
    if args.requeue_dead:
        moved = await queue.requeue_dead_letters(limit=args.limit)
        logger.info("dead_letters_requeued", count=moved)

    pool = WorkerPool(
        queue,
        ReviewExtractor(OpenAICompletionClient(), SqlVenueStore()),
        concurrency=args.concurrency,
    )
    try:
        if args.drain:
            processed = await pool.drain()
            logger.info("queue_drained", processed=processed)
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await pool.run(stop)
    finally:
        await close_async_client()
        await close_async_redis()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Review attribute extraction workers.")
    parser.add_argument("-c", "--concurrency", type=int, default=settings.WORKER_CONCURRENCY)
    parser.add_argument("--drain", action="store_true", help="Exit once the queue is empty")
    parser.add_argument("--requeue-dead", action="store_true", help="Requeue dead-lettered jobs first")
    parser.add_argument("--limit", type=int, default=None, help="Max dead letters to requeue")
    args = parser.parse_args()

    configure_structlog()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
