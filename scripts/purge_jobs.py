#!/usr/bin/env python3
"""
Delete finished jobs older than the retention window.

Jobs are never purged automatically. Completed and cancelled jobs older than
JOB_RETENTION_DAYS (or --days) are removed; failed jobs are kept.

Usage:
    python scripts/purge_jobs.py
    python scripts/purge_jobs.py --days 7
"""

import argparse
import asyncio

import dotenv

dotenv.load_dotenv()

from clinic_queue.config import settings  # noqa: E402
from clinic_queue.database import engine  # noqa: E402
from clinic_queue.services.worker import get_job_queue  # noqa: E402


async def purge(days: int) -> None:
    deleted = await get_job_queue().purge_finished_jobs(older_than_days=days)
    await engine.dispose()
    print(f"✓ Deleted {deleted} finished job(s) older than {days} day(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge finished jobs")
    parser.add_argument(
        "--days",
        type=int,
        default=settings.job_retention_days,
        help=f"Retention in days (default: {settings.job_retention_days})",
    )
    args = parser.parse_args()
    if args.days < 1:
        parser.error("--days must be at least 1")
    asyncio.run(purge(args.days))


if __name__ == "__main__":
    main()
