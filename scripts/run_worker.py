#!/usr/bin/env python3
"""
Run the job worker as a standalone process.

Set RUN_WORKER_IN_APP=false on the API processes when workers run here, and
LOCK_BACKEND=redis whenever more than one process dispatches jobs.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --once
"""

import argparse
import asyncio
import signal

import dotenv
import structlog

dotenv.load_dotenv()

from clinic_queue.config import settings  # noqa: E402
from clinic_queue.core.redis_client import close_redis_connection  # noqa: E402
from clinic_queue.database import engine  # noqa: E402
from clinic_queue.middleware.logging import configure_logging  # noqa: E402
from clinic_queue.services.change_feed import ChangeFeedListener, PostgresChangeFeed  # noqa: E402
from clinic_queue.services.worker import JobWorker, get_job_queue  # noqa: E402

logger = structlog.get_logger("clinic_queue.worker")


async def run(once: bool) -> None:
    """Run dispatch cycles until interrupted, or a single cycle with ``once``."""
    job_queue = get_job_queue()

    if once:
        await job_queue.requeue_stale_jobs()
        result = await job_queue.dispatch_cycle()
        logger.info("single_dispatch_finished", **result.model_dump())
        return

    worker = JobWorker(job_queue)
    change_feed = None
    if settings.change_feed_enabled:
        change_feed = PostgresChangeFeed(ChangeFeedListener(job_queue))
        await change_feed.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))

    try:
        await worker.start()
    finally:
        if change_feed is not None:
            await change_feed.stop()


async def main() -> None:
    parser = argparse.ArgumentParser(description="Run the clinic queue job worker")
    parser.add_argument("--once", action="store_true", help="Run one dispatch cycle and exit")
    args = parser.parse_args()

    configure_logging()
    try:
        await run(args.once)
    finally:
        await engine.dispose()
        await close_redis_connection()


if __name__ == "__main__":
    asyncio.run(main())
