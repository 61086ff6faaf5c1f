"""Tests for the application-facing tracker service."""

import pytest
import pytest_asyncio

from price_tracker.exceptions import PriceTrackerError, QueueBusyError
from price_tracker.models import JobSource, RunStatus, ScrapeResult, ScrapeStatus
from price_tracker.pipeline import RunExecutor, ScrapeQueue, Scheduler, TargetNotFound, TrackerService


@pytest_asyncio.fixture
async def service(storage, registry, clock):
    executor = RunExecutor(storage, registry)
    queue = ScrapeQueue(executor, storage, clock=clock, sleep=clock.sleep)
    service = TrackerService(storage, executor, queue, Scheduler(storage, queue))
    yield service
    await queue.stop()


@pytest.mark.asyncio
async def test_enqueue_target_is_manual_and_never_deduplicated(service, target):
    first = service.enqueue_target(target.id)
    second = service.force_run(target.id)

    assert first.source is JobSource.MANUAL
    assert second.source is JobSource.MANUAL
    assert service.get_queue_state().pending_count == 2


@pytest.mark.asyncio
async def test_unknown_target_raises(service):
    with pytest.raises(TargetNotFound, match="Scraper 404 not found"):
        service.enqueue_target(404)


@pytest.mark.asyncio
async def test_enqueue_target_raises_when_queue_returns_no_job(service, target, monkeypatch):
    monkeypatch.setattr(service.queue, "enqueue", lambda *args, **kwargs: None)

    with pytest.raises(PriceTrackerError, match="was not queued"):
        service.enqueue_target(target.id)


@pytest.mark.asyncio
async def test_enqueue_group(service, storage, product, target):
    group = storage.create_group("Nappies", [product.id])

    jobs = service.enqueue_group(group.id)

    assert [job.target_id for job in jobs] == [target.id]
    assert jobs[0].source is JobSource.GROUP
    assert service.get_group_jobs(group.id) == jobs

    with pytest.raises(TargetNotFound):
        service.enqueue_group(group.id + 1)


@pytest.mark.asyncio
async def test_run_target_now_bypasses_cache_and_marks_target(service, storage, target, fake_strategy):
    lines = []

    outcome = await service.run_target_now(target.id, on_log=lines.append)

    assert outcome.status is RunStatus.SUCCESS
    assert fake_strategy.calls[0][2].force_refresh is True
    assert lines
    assert storage.get_product_scraper_by_id(target.id).last_scrape_status is ScrapeStatus.SUCCESS
    assert service.get_queue_state().items == []


@pytest.mark.asyncio
async def test_set_queue_interval_persists_only_when_accepted(service, storage, target):
    service.pause_queue()
    service.enqueue_target(target.id)

    with pytest.raises(QueueBusyError):
        service.set_queue_interval(1000)
    assert storage.get_setting_number("queue_interval_ms", 0) == 120000

    assert service.clear_queue() == 1
    service.set_queue_interval(1000)
    assert storage.get_setting_number("queue_interval_ms", 0) == 1000
    assert service.get_queue_state().configured_interval_ms == 1000


@pytest.mark.asyncio
async def test_history_logs_and_issues(service, storage, target, fake_strategy):
    fake_strategy.result = ScrapeResult(success=False, error="blocked (403)")
    outcome = await service.run_target_now(target.id)

    history = service.get_run_history(target.id)
    assert [run.id for run in history] == [outcome.id]
    assert service.get_run_logs(outcome.id) == outcome.logs
    assert [t.id for t in service.get_issues()] == [target.id]
    assert service.get_issues()[0].last_scrape_error == "blocked (403)"

    service.dismiss_issue(target.id)
    assert service.get_issues() == []

    with pytest.raises(TargetNotFound):
        service.get_run_logs(outcome.id + 100)


@pytest.mark.asyncio
async def test_subscribe_and_scheduler_status(service):
    states = []
    unsubscribe = service.subscribe("ui", states.append)
    service.pause_queue()
    unsubscribe()
    service.resume_queue()

    assert [state.is_paused for state in states] == [False, True]
    assert service.get_scheduler_status().is_running is False
