"""Rate-limited scrape job queue.

A single asyncio worker pulls jobs in FIFO order and starts at most one job
per configured interval (two minutes by default), so at most one outbound
scrape is ever in flight. Job state lives in memory only; after a restart
the scheduler rediscovers due work from the persisted last-scrape times.

Enqueue operations are synchronous. On a single event loop they cannot be
interleaved with the worker, which makes the duplicate scan and the job map
update atomic without a lock.
"""

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from ..config import config
from ..exceptions import PriceTrackerError, QueueBusyError
from ..models import (
    JobKind,
    JobSource,
    JobStatus,
    ProductGroup,
    QueueJob,
    QueueState,
    ScrapeStatus,
    TierRefreshResult,
    TrackedTarget,
    WatchedTier,
)
from ..services.storage import StorageProtocol
from .executor import RunExecutor

logger = logging.getLogger(__name__)

QueueListener = Callable[[QueueState], None]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class TierRefresher(Protocol):
    """Performs the secondary job kind for one watched tier."""

    async def refresh(self, tier: int, force: bool) -> TierRefreshResult: ...


def _now() -> datetime:
    return datetime.now(UTC)


class ScrapeQueue:
    """Single-worker FIFO queue throttled to one job start per interval.

    Attributes:
        executor: Runs scrape jobs.
        storage: Used to re-fetch targets and record mark-as-run.
        tier_refresher: Runs tier refresh jobs, optional.
        interval_ms: Minimum milliseconds between two job starts.
        history_limit: Terminal jobs kept for observability.
    """

    def __init__(
        self,
        executor: RunExecutor,
        storage: StorageProtocol,
        interval_ms: int = 120000,
        history_limit: int = 100,
        tier_refresher: TierRefresher | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.executor = executor
        self.storage = storage
        self.tier_refresher = tier_refresher
        self.interval_ms = interval_ms
        self.history_limit = history_limit
        self._clock = clock
        self._sleep = sleep

        self._jobs: dict[str, QueueJob] = {}
        self._pending: deque[str] = deque()
        self._running: QueueJob | None = None
        self._listeners: dict[str, QueueListener] = {}
        self._id_counter = 0
        self._processed_count = 0
        self._last_processed_at: datetime | None = None
        self._last_start: float | None = None
        self._paused = False

        self._wakeup = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        executor: RunExecutor,
        storage: StorageProtocol,
        tier_refresher: TierRefresher | None = None,
    ) -> "ScrapeQueue":
        """Build a queue using the interval and history limit from the settings table."""
        interval_ms = int(storage.get_setting_number("queue_interval_ms", config.queue.interval_ms))
        history_limit = int(storage.get_setting_number("queue_history_limit", config.queue.history_limit))
        return cls(
            executor,
            storage,
            interval_ms=interval_ms,
            history_limit=history_limit,
            tier_refresher=tier_refresher,
        )

    # Lifecycle

    def start(self) -> None:
        """Start the worker task on the running event loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name="scrape-queue-worker")
            logger.info(f"Scrape queue started (interval {self.interval_ms}ms)")

    async def stop(self) -> None:
        """Cancel the worker. A job in flight ends as an error, pending jobs are kept."""
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Scrape queue stopped")

    # Enqueue

    def _next_id(self) -> str:
        self._id_counter += 1
        return f"q_{int(time.time() * 1000)}_{self._id_counter}"

    def _has_active_job(self, kind: JobKind, target_id: int) -> bool:
        return any(
            job.kind is kind and job.target_id == target_id and job.is_active
            for job in self._jobs.values()
        )

    def _add(self, job: QueueJob) -> None:
        self._jobs[job.id] = job
        self._pending.append(job.id)
        self._idle.clear()
        self._wakeup.set()

    def _build_scrape_job(
        self, target: TrackedTarget, source: JobSource, group: ProductGroup | None
    ) -> QueueJob | None:
        if source is not JobSource.MANUAL and self._has_active_job(JobKind.SCRAPE, target.id):
            logger.debug(f"Target {target.id} already queued, skipping {source.value} enqueue")
            return None
        return QueueJob(
            id=self._next_id(),
            kind=JobKind.SCRAPE,
            target_id=target.id,
            product_id=target.product_id,
            product_name=target.product_name,
            scraper_name=target.scraper_name,
            source=source,
            group_id=group.id if group else None,
            group_name=group.name if group else None,
            added_at=_now(),
        )

    def enqueue(
        self, target: TrackedTarget, source: JobSource, group: ProductGroup | None = None
    ) -> QueueJob | None:
        """Queue a scrape of one target.

        Manual jobs are always added. Other sources are skipped when the
        target already has a pending or running job.

        Args:
            target: Target to scrape. Only its id is used at run time.
            source: Who asked for the job.
            group: Group context for group-triggered jobs.

        Returns:
            The new job, or None if it was deduplicated.
        """
        job = self._build_scrape_job(target, JobSource(source), group)
        if job is None:
            return None
        self._add(job)
        self._notify()
        return job

    def enqueue_batch(
        self, targets: Iterable[TrackedTarget], source: JobSource, group: ProductGroup | None = None
    ) -> list[QueueJob]:
        """Queue scrapes for several targets, applying the same dedup rule per target.

        Returns:
            Only the jobs actually created.
        """
        source = JobSource(source)
        created = []
        for target in targets:
            job = self._build_scrape_job(target, source, group)
            if job is not None:
                self._add(job)
                created.append(job)
        if created:
            logger.info(f"Queued {len(created)} {source.value} job(s)")
            self._notify()
        return created

    def enqueue_tier_refresh(
        self, tier: WatchedTier, source: JobSource = JobSource.SCHEDULED
    ) -> QueueJob | None:
        """Queue a refresh of one watched tier, deduplicated like scrape jobs."""
        source = JobSource(source)
        if source is not JobSource.MANUAL and self._has_active_job(JobKind.TIER_REFRESH, tier.tier):
            return None
        job = QueueJob(
            id=self._next_id(),
            kind=JobKind.TIER_REFRESH,
            target_id=tier.tier,
            product_name=tier.label,
            scraper_name="tier_refresh",
            source=source,
            added_at=_now(),
        )
        self._add(job)
        self._notify()
        return job

    # Worker

    async def _work(self) -> None:
        while True:
            await self._resumed.wait()

            if not self._pending:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            if self._last_start is not None:
                delay = self._last_start + self.interval_ms / 1000 - self._clock()
                if delay > 0:
                    await self._sleep(delay)
                    # pause or clear may have happened while waiting
                    continue

            job = self._jobs.get(self._pending.popleft())
            if job is None:
                continue
            await self._process(job)

    async def _process(self, job: QueueJob) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = _now()
        self._running = job
        self._last_start = self._clock()
        self._notify()

        try:
            if job.kind is JobKind.TIER_REFRESH:
                await self._process_tier_refresh(job)
            else:
                await self._process_scrape(job)
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} for {job.scraper_name} '{job.product_name}' was cancelled")
            job.status = JobStatus.ERROR
            job.error = "Cancelled"
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Job {job.id} for {job.scraper_name} '{job.product_name}' failed: {error}")
            job.status = JobStatus.ERROR
            job.error = error
            if job.kind is JobKind.SCRAPE:
                try:
                    self.storage.mark_scraper_as_run(job.target_id, ScrapeStatus.ERROR, error)
                except Exception as mark_error:
                    logger.error(f"Failed to mark target {job.target_id} as run: {mark_error}")
        finally:
            job.completed_at = _now()
            self._running = None
            self._processed_count += 1
            self._last_processed_at = job.completed_at
            self._evict_history()
            if not self._pending:
                self._idle.set()
            self._notify()

    async def _process_scrape(self, job: QueueJob) -> None:
        target = self.storage.get_product_scraper_by_id(job.target_id)
        if target is None:
            raise PriceTrackerError("Scraper not found")

        job.product_name = target.product_name
        job.scraper_name = target.scraper_name
        force = job.source in (JobSource.MANUAL, JobSource.GROUP)
        logger.info(f"Running: {target.scraper_name} for {target.product_name} ({job.source.value})")

        outcome = await self.executor.execute(target, force=force)
        status = outcome.status.scrape_status
        self.storage.mark_scraper_as_run(target.id, status, outcome.error_message)

        job.status = JobStatus(status.value)
        job.prices_saved = outcome.prices_saved
        job.error = outcome.error_message
        logger.info(f"Completed: {target.scraper_name} - {outcome.prices_saved} prices ({outcome.status.value})")

    async def _process_tier_refresh(self, job: QueueJob) -> None:
        if self.tier_refresher is None:
            raise PriceTrackerError("No tier refresher configured")
        result = await self.tier_refresher.refresh(job.target_id, force=job.source is JobSource.MANUAL)
        job.status = JobStatus(result.status.scrape_status.value)
        job.error = result.message if job.status is JobStatus.ERROR else None

    def _evict_history(self) -> None:
        terminal = [job for job in self._jobs.values() if not job.is_active]
        excess = len(terminal) - self.history_limit
        if excess <= 0:
            return
        terminal.sort(key=lambda job: job.completed_at or job.added_at)
        for job in terminal[:excess]:
            del self._jobs[job.id]

    # Observability

    def get_state(self) -> QueueState:
        """Point-in-time snapshot of the queue."""
        pending_count = len(self._pending)
        running_count = 1 if self._running is not None else 0
        estimated_next_run_at = None
        if pending_count and not running_count and self._last_processed_at is not None:
            estimated_next_run_at = self._last_processed_at + timedelta(milliseconds=self.interval_ms)

        return QueueState(
            items=[job.model_copy() for job in self._jobs.values()],
            pending_count=pending_count,
            running_count=running_count,
            is_processing=running_count > 0 or pending_count > 0,
            is_paused=self._paused,
            processed_count=self._processed_count,
            last_processed_at=self._last_processed_at,
            configured_interval_ms=self.interval_ms,
            estimated_next_run_at=estimated_next_run_at,
        )

    def subscribe(self, listener_id: str, listener: QueueListener) -> Callable[[], None]:
        """Register a state listener and send it the current state.

        Returns:
            Callable that removes the listener.
        """
        self._listeners[listener_id] = listener
        self._call_listener(listener_id, listener, self.get_state())

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def _call_listener(self, listener_id: str, listener: QueueListener, state: QueueState) -> None:
        try:
            listener(state)
        except Exception as e:
            logger.error(f"Queue listener {listener_id} failed: {e}")

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.get_state()
        for listener_id, listener in list(self._listeners.items()):
            self._call_listener(listener_id, listener, state)

    def get_running_job(self) -> QueueJob | None:
        return self._running

    def get_recent_jobs(self, limit: int = 20) -> list[QueueJob]:
        return sorted(self._jobs.values(), key=lambda job: job.added_at, reverse=True)[:limit]

    def get_jobs_by_group(self, group_id: int) -> list[QueueJob]:
        jobs = [job for job in self._jobs.values() if job.group_id == group_id]
        return sorted(jobs, key=lambda job: job.added_at)

    # Control

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop pulling new jobs. The running job, if any, finishes."""
        self._paused = True
        self._resumed.clear()
        logger.info("Scrape queue paused")
        self._notify()

    def resume(self) -> None:
        self._paused = False
        self._resumed.set()
        logger.info("Scrape queue resumed")
        self._notify()

    def clear(self) -> int:
        """Drop every job that has not started yet.

        Returns:
            Number of jobs removed.
        """
        removed = 0
        while self._pending:
            job_id = self._pending.popleft()
            if self._jobs.pop(job_id, None) is not None:
                removed += 1
        if self._running is None:
            self._idle.set()
        logger.info(f"Cleared {removed} pending job(s)")
        self._notify()
        return removed

    def set_interval(self, interval_ms: int) -> None:
        """Change the throttle interval.

        Raises:
            QueueBusyError: If jobs are pending or running.
            ValueError: If the interval is negative.
        """
        if interval_ms < 0:
            raise ValueError("Queue interval must not be negative")
        if self._pending or self._running is not None:
            raise QueueBusyError(
                f"Cannot change interval while {len(self._pending)} job(s) are pending "
                f"and {1 if self._running else 0} running"
            )
        self.interval_ms = interval_ms
        logger.info(f"Queue interval set to {interval_ms}ms")
        self._notify()

    async def on_idle(self) -> None:
        """Wait until no job is pending or running."""
        await self._idle.wait()
