"""Application-facing operations over the scrape pipeline.

``TrackerService`` is what an API layer calls: manual and group triggers,
direct runs, queue control and observability, run history and the issues
view.
"""

import logging
from collections.abc import Callable

from ..exceptions import PriceTrackerError
from ..models import (
    JobSource,
    LogCallback,
    QueueJob,
    QueueState,
    RunOutcome,
    SchedulerState,
    TrackedTarget,
)
from ..services.storage import SQLiteStorage
from .executor import RunExecutor
from .queue import QueueListener, ScrapeQueue
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class TargetNotFound(PriceTrackerError):
    def __init__(self, kind: str, identifier: int):
        super().__init__(f"{kind} {identifier} not found")


class TrackerService:
    """Facade over storage, executor, queue and scheduler."""

    def __init__(
        self,
        storage: SQLiteStorage,
        executor: RunExecutor,
        queue: ScrapeQueue,
        scheduler: Scheduler,
    ):
        self.storage = storage
        self.executor = executor
        self.queue = queue
        self.scheduler = scheduler

    def _get_target(self, product_scraper_id: int) -> TrackedTarget:
        target = self.storage.get_product_scraper_by_id(product_scraper_id)
        if target is None:
            raise TargetNotFound("Scraper", product_scraper_id)
        return target

    # Triggers

    def enqueue_target(self, product_scraper_id: int) -> QueueJob:
        """Queue a manual run of one target; always creates a job."""
        job = self.queue.enqueue(self._get_target(product_scraper_id), JobSource.MANUAL)
        if job is None:
            raise PriceTrackerError(f"Manual run of scraper {product_scraper_id} was not queued")
        return job

    def force_run(self, product_scraper_id: int) -> QueueJob:
        """Queue a run that bypasses the cache window.

        Manual jobs already bypass the cache, so this is a manual enqueue.
        """
        return self.enqueue_target(product_scraper_id)

    def enqueue_group(self, group_id: int) -> list[QueueJob]:
        """Queue every enabled target of a group with the group as context."""
        group = self.storage.get_group_by_id(group_id)
        if group is None:
            raise TargetNotFound("Group", group_id)
        targets = self.storage.get_product_scrapers_for_group(group_id)
        jobs = self.queue.enqueue_batch(targets, JobSource.GROUP, group)
        logger.info(f"Queued {len(jobs)} of {len(targets)} target(s) for group '{group.name}'")
        return jobs

    async def run_target_now(self, product_scraper_id: int, on_log: LogCallback | None = None) -> RunOutcome:
        """Run a target immediately, outside the queue, bypassing the cache.

        Used for one-off runs where the caller wants the outcome and a live
        log stream.
        """
        target = self._get_target(product_scraper_id)
        outcome = await self.executor.execute(target, force=True, on_log=on_log)
        self.storage.mark_scraper_as_run(target.id, outcome.status.scrape_status, outcome.error_message)
        return outcome

    # Queue

    def get_queue_state(self) -> QueueState:
        return self.queue.get_state()

    def subscribe(self, listener_id: str, listener: QueueListener) -> Callable[[], None]:
        return self.queue.subscribe(listener_id, listener)

    def pause_queue(self) -> None:
        self.queue.pause()

    def resume_queue(self) -> None:
        self.queue.resume()

    def clear_queue(self) -> int:
        return self.queue.clear()

    def set_queue_interval(self, interval_ms: int) -> None:
        """Change the queue interval and persist it.

        Raises:
            QueueBusyError: If the queue is not idle; nothing is persisted.
        """
        self.queue.set_interval(interval_ms)
        self.storage.update_setting("queue_interval_ms", interval_ms)

    def get_group_jobs(self, group_id: int) -> list[QueueJob]:
        return self.queue.get_jobs_by_group(group_id)

    # History and issues

    def get_run_history(self, product_scraper_id: int, limit: int = 20) -> list[RunOutcome]:
        return self.storage.get_runs_for_product_scraper(product_scraper_id, limit=limit)

    def get_run_logs(self, run_id: int) -> list[str]:
        run = self.storage.get_run_by_id(run_id)
        if run is None:
            raise TargetNotFound("Run", run_id)
        return run.logs

    def get_issues(self) -> list[TrackedTarget]:
        return self.storage.get_scrapers_with_issues()

    def dismiss_issue(self, product_scraper_id: int) -> None:
        self._get_target(product_scraper_id)
        self.storage.dismiss_issue(product_scraper_id)

    def get_scheduler_status(self) -> SchedulerState:
        return self.scheduler.get_status()
