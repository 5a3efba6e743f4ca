#!/usr/bin/env python3
"""
Mark overdue appointments as no-shows.

Scheduled appointments whose patient has not checked in NO_SHOW_GRACE_MINUTES
(or --grace) after the scheduled time become no-shows, and their queues are
recalculated. Run it from cron, e.g. every 10 minutes.

Usage:
    python scripts/mark_no_shows.py
    python scripts/mark_no_shows.py --grace 30
"""

import argparse
import asyncio

import dotenv

dotenv.load_dotenv()

from clinic_queue.config import settings  # noqa: E402
from clinic_queue.database import AsyncSessionLocal, engine  # noqa: E402
from clinic_queue.services.appointment_service import AppointmentService  # noqa: E402
from clinic_queue.services.worker import get_job_queue  # noqa: E402


async def sweep(grace: int) -> None:
    async with AsyncSessionLocal() as session:
        result = await AppointmentService(session, get_job_queue()).mark_overdue_no_shows(
            grace_minutes=grace
        )
    await engine.dispose()
    print(f"✓ Marked {result.marked_count} appointment(s) as no-show (cutoff {result.cutoff})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Mark overdue appointments as no-shows")
    parser.add_argument(
        "--grace",
        type=int,
        default=settings.no_show_grace_minutes,
        help=f"Minutes past the scheduled time (default: {settings.no_show_grace_minutes})",
    )
    args = parser.parse_args()
    if args.grace < 1:
        parser.error("--grace must be at least 1")
    asyncio.run(sweep(args.grace))


if __name__ == "__main__":
    main()
