"""APScheduler setup for the periodic position poll."""

import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(poller) -> AsyncIOScheduler:
    """Create the scheduler with the poll job; the first run fires immediately."""
    scheduler = AsyncIOScheduler()

    # A slow upstream must not stack polls: extra ticks are dropped, not queued.
    scheduler.add_job(
        poller.poll,
        "interval",
        seconds=poller.interval_seconds,
        id="poll_vehicles",
        name="Poll vehicle position feed",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.datetime.now(datetime.timezone.utc),
    )

    return scheduler
