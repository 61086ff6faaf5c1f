"""Periodic scheduler feeding the scrape queue.

Two independent timers:

- the due check (every minute, and once immediately on start) enqueues every
  enabled target whose interval has elapsed as a ``scheduled`` job;
- the tier refresh (every few hours) enqueues a refresh job per watched tier.

Both are pure triggers. Overlapping or repeated fires are harmless because
the queue deduplicates scheduled jobs per target.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from ..models import JobSource, SchedulerState
from ..services.storage import SQLiteStorage
from .queue import ScrapeQueue

logger = logging.getLogger(__name__)


class Scheduler:
    """Owns the two timer tasks and their observability state."""

    def __init__(
        self,
        storage: SQLiteStorage,
        queue: ScrapeQueue,
        due_check_seconds: float = 60.0,
        tier_refresh_hours: float = 6.0,
    ):
        self.storage = storage
        self.queue = queue
        self.due_check_seconds = due_check_seconds
        self.tier_refresh_hours = tier_refresh_hours
        self.state = SchedulerState()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        """Start both timers. The due check fires immediately."""
        if self._tasks:
            logger.info("Scheduler already running")
            return

        self.state.is_running = True
        self.state.started_at = datetime.now(UTC)
        self._tasks.append(
            asyncio.create_task(
                self._every(self.due_check_seconds, self.run_due_check, immediately=True),
                name="scheduler-due-check",
            )
        )
        if self.queue.tier_refresher is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._every(self.tier_refresh_hours * 3600, self.run_tier_refresh, immediately=False),
                    name="scheduler-tier-refresh",
                )
            )
            logger.info(f"Tier refresh scheduled every {self.tier_refresh_hours}h")
        logger.info(f"Scheduler started, checking for due scrapers every {self.due_check_seconds}s")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self.state.is_running = False
        logger.info("Scheduler stopped")

    async def _every(self, seconds: float, tick: Callable[[], Awaitable[int]], immediately: bool) -> None:
        if not immediately:
            await asyncio.sleep(seconds)
        while True:
            await tick()
            await asyncio.sleep(seconds)

    async def run_due_check(self) -> int:
        """Enqueue every due target as a scheduled job.

        Failures are recorded in the scheduler state, never raised.

        Returns:
            Number of jobs created.
        """
        self.state.last_check_at = datetime.now(UTC)
        try:
            due = self.storage.get_scrapers_needing_run()
            if not due:
                return 0
            created = self.queue.enqueue_batch(due, JobSource.SCHEDULED)
        except Exception as e:
            self._record_error(e)
            return 0

        if created:
            self.state.last_enqueue_at = datetime.now(UTC)
            self.state.jobs_enqueued += len(created)
        logger.info(f"Found {len(due)} due scraper(s), queued {len(created)}")
        return len(created)

    async def run_tier_refresh(self) -> int:
        """Enqueue a refresh job for every watched tier."""
        self.state.last_tier_refresh_at = datetime.now(UTC)
        try:
            created = [
                job
                for job in (self.queue.enqueue_tier_refresh(tier) for tier in self.storage.get_watched_tiers())
                if job is not None
            ]
        except Exception as e:
            self._record_error(e)
            return 0

        if created:
            self.state.last_enqueue_at = datetime.now(UTC)
            self.state.jobs_enqueued += len(created)
            logger.info(f"Queued {len(created)} tier refresh job(s)")
        return len(created)

    def _record_error(self, error: Exception) -> None:
        logger.error(f"Scheduler error: {error}")
        self.state.error_count += 1
        self.state.last_error = str(error) or type(error).__name__

    def get_status(self) -> SchedulerState:
        return self.state.model_copy()
