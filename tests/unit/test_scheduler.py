"""Tests for the periodic scheduler."""

import asyncio

import pytest

from price_tracker.models import JobKind, JobSource, StrategyType
from price_tracker.pipeline.queue import ScrapeQueue
from price_tracker.pipeline.scheduler import Scheduler
from tests.fakes import RecordingExecutor


@pytest.fixture
def queue(storage, clock) -> ScrapeQueue:
    return ScrapeQueue(RecordingExecutor(clock), storage, clock=clock, sleep=clock.sleep)


@pytest.fixture
def scheduler(storage, queue) -> Scheduler:
    return Scheduler(storage, queue)


@pytest.mark.asyncio
async def test_due_check_enqueues_due_targets(scheduler, queue, storage, product, target):
    """Only enabled, due targets are queued, as scheduled jobs."""
    ran = storage.create_product_scraper(product.id, StrategyType.RETAIL, "https://www.coles.com.au/p/1")
    storage.mark_scraper_as_run(ran.id)
    storage.create_product_scraper(product.id, StrategyType.RETAIL, "https://www.coles.com.au/p/2", enabled=False)

    created = await scheduler.run_due_check()

    assert created == 1
    jobs = queue.get_state().items
    assert [(job.target_id, job.source) for job in jobs] == [(target.id, JobSource.SCHEDULED)]

    status = scheduler.get_status()
    assert status.jobs_enqueued == 1
    assert status.last_check_at is not None
    assert status.last_enqueue_at is not None


@pytest.mark.asyncio
async def test_repeated_due_checks_are_harmless(scheduler, queue, target):
    await scheduler.run_due_check()
    assert await scheduler.run_due_check() == 0
    assert queue.get_state().pending_count == 1


@pytest.mark.asyncio
async def test_due_check_records_storage_errors(scheduler, storage, monkeypatch):
    def broken(now=None):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(storage, "get_scrapers_needing_run", broken)

    assert await scheduler.run_due_check() == 0

    status = scheduler.get_status()
    assert status.error_count == 1
    assert status.last_error == "database is locked"


@pytest.mark.asyncio
async def test_tier_refresh_enqueues_each_watched_tier(scheduler, queue, storage):
    storage.add_watched_tier(3, "Tier 3")
    storage.add_watched_tier(5, "Tier 5")

    assert await scheduler.run_tier_refresh() == 2
    assert await scheduler.run_tier_refresh() == 0

    jobs = queue.get_state().items
    assert [(job.kind, job.target_id) for job in jobs] == [(JobKind.TIER_REFRESH, 3), (JobKind.TIER_REFRESH, 5)]
    assert scheduler.get_status().last_tier_refresh_at is not None


@pytest.mark.asyncio
async def test_start_runs_due_check_immediately(scheduler, queue, target):
    scheduler.start()
    try:
        for _ in range(5):
            await asyncio.sleep(0)
        assert queue.get_state().pending_count == 1
        assert scheduler.get_status().is_running is True
    finally:
        await scheduler.stop()

    assert scheduler.get_status().is_running is False


@pytest.mark.asyncio
async def test_tier_timer_only_with_refresher(storage, clock):
    class Refresher:
        async def refresh(self, tier, force):
            raise AssertionError("not expected")

    plain = Scheduler(storage, ScrapeQueue(RecordingExecutor(clock), storage))
    with_tiers = Scheduler(storage, ScrapeQueue(RecordingExecutor(clock), storage, tier_refresher=Refresher()))

    plain.start()
    with_tiers.start()
    try:
        assert len(plain._tasks) == 1
        assert len(with_tiers._tasks) == 2
    finally:
        await plain.stop()
        await with_tiers.stop()


@pytest.mark.asyncio
async def test_status_is_a_copy(scheduler):
    status = scheduler.get_status()
    status.jobs_enqueued = 99
    assert scheduler.get_status().jobs_enqueued == 0
