"""End-to-end pipeline tests: scheduler, queue, executor and storage together.

Strategies and HTTP are faked; everything else is the real pipeline running
on a virtual clock.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from price_tracker.exceptions import QueueBusyError
from price_tracker.models import (
    JobSource,
    JobStatus,
    RunOutcome,
    RunStatus,
    ScrapeOptions,
    ScrapeResult,
    ScrapeStatus,
    StrategyType,
)
from price_tracker.pipeline import RunExecutor, ScrapeQueue, Scheduler
from price_tracker.pricing import build_price_record
from price_tracker.scrapers.base import StrategyRegistry
from price_tracker.scrapers.firecrawl import FirecrawlClient
from price_tracker.scrapers.retail import RetailStrategy
from price_tracker.services.notifications import NotificationService
from tests.fakes import CachingStrategy, FakeResponse, FakeSession, observation


class RecordingChannel:
    def __init__(self):
        self.sent = []

    async def send(self, target, payload):
        self.sent.append(payload)
        return True


class GatedStrategy:
    """Holds every scrape until the gate opens."""

    strategy_type = StrategyType.STATICICE

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = 0

    async def scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        self.started += 1
        await self.gate.wait()
        return ScrapeResult(success=True, prices=[observation()])


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def notifications(storage, channel) -> NotificationService:
    return NotificationService(storage, channels={"discord": channel})


@pytest_asyncio.fixture
async def pipeline(storage, registry, notifications, clock):
    executor = RunExecutor(storage, registry, post_run_hooks=[notifications.on_run_completed])
    queue = ScrapeQueue(executor, storage, interval_ms=120000, clock=clock, sleep=clock.sleep)
    scheduler = Scheduler(storage, queue)
    yield queue, scheduler
    await scheduler.stop()
    await queue.stop()


@pytest.mark.asyncio
async def test_scheduled_run_of_due_target(pipeline, storage, product, target, fake_strategy, channel):
    """A due target is queued once, scraped, persisted, marked and notified."""
    queue, scheduler = pipeline
    storage.create_notification_config("https://discord.test/hook", trigger_type="any_change")

    assert [t.id for t in storage.get_scrapers_needing_run()] == [target.id]
    assert await scheduler.run_due_check() == 1
    assert await scheduler.run_due_check() == 0

    queue.start()
    await queue.on_idle()

    state = queue.get_state()
    assert len(state.items) == 1
    assert state.items[0].status is JobStatus.SUCCESS
    assert state.items[0].source is JobSource.SCHEDULED

    assert len(fake_strategy.calls) == 1
    assert fake_strategy.calls[0][2].force_refresh is False

    runs = storage.get_runs_for_product_scraper(target.id)
    assert [(r.status, r.prices_saved) for r in runs] == [(RunStatus.SUCCESS, 1)]
    records = storage.get_price_records_for_product_scraper(target.id)
    assert [(r.price, r.currency) for r in records] == [(Decimal("39.99"), "AUD")]

    stored = storage.get_product_scraper_by_id(target.id)
    assert stored.last_scrape_status is ScrapeStatus.SUCCESS
    assert storage.get_scrapers_needing_run() == []

    assert len(channel.sent) == 1
    assert channel.sent[0].product_id == product.id
    assert channel.sent[0].change_type == "new"


@pytest.mark.asyncio
async def test_two_manual_runs_are_throttled(pipeline, storage, target, fake_strategy, clock):
    """Manual duplicates both run, one interval apart."""
    queue, _ = pipeline
    starts = []

    def scrape(options):
        starts.append(clock.now)
        return ScrapeResult(success=True, prices=[observation()])

    fake_strategy.result = scrape

    first = queue.enqueue(target, JobSource.MANUAL)
    second = queue.enqueue(target, JobSource.MANUAL)
    assert first is not None and second is not None

    queue.start()
    await queue.on_idle()

    assert len(starts) == 2
    assert starts[1] - starts[0] >= 120
    assert all(options.force_refresh for _, _, options in fake_strategy.calls)
    assert [job.status for job in queue.get_state().items] == [JobStatus.SUCCESS, JobStatus.SUCCESS]


@pytest.mark.asyncio
async def test_cached_run_replays_previous_prices(pipeline, storage, registry, product):
    """Within the cache window the previous batch is carried forward."""
    queue, _ = pipeline
    strategy = CachingStrategy([observation()])
    registry.register(strategy)
    target = storage.create_product_scraper(product.id, StrategyType.AMAZON, "https://www.amazon.com.au/dp/B0TEST")

    two_hours_ago = datetime.now(UTC) - timedelta(hours=2)
    storage.create_scraper_run(
        RunOutcome(
            product_scraper_id=target.id,
            status=RunStatus.SUCCESS,
            prices_found=2,
            prices_saved=2,
            created_at=two_hours_ago,
        )
    )
    retailer = storage.get_or_create_retailer("Amazon Australia", "amazon.com.au")
    storage.create_price_records(
        [
            build_price_record(observation("39.99"), target.id, retailer.id, two_hours_ago),
            build_price_record(observation("41.50"), target.id, retailer.id, two_hours_ago),
        ]
    )

    queue.enqueue(target, JobSource.SCHEDULED)
    queue.start()
    await queue.on_idle()

    assert strategy.network_calls == 0
    latest_run = storage.get_runs_for_product_scraper(target.id)[0]
    assert latest_run.status is RunStatus.CACHED
    assert latest_run.prices_found == 2

    latest = storage.get_latest_prices_for_product_scraper(target.id)
    assert sorted(r.price for r in latest) == [Decimal("39.99"), Decimal("41.50")]
    assert all(r.scraped_at > two_hours_ago for r in latest)
    assert len(storage.get_price_records_for_product_scraper(target.id)) == 4

    assert storage.get_product_scraper_by_id(target.id).last_scrape_status is ScrapeStatus.SUCCESS


@pytest.mark.asyncio
async def test_blocked_target_surfaces_as_issue(pipeline, storage, registry, product):
    """Exhausting every retail tier records the block and raises an issue."""
    queue, _ = pipeline
    session = FakeSession(
        get_responses={"https://www.bigw.com.au": FakeResponse(status=403)},
        post_responses=[
            FakeResponse(json_data={"data": {"metadata": {"statusCode": 403}}}),
            FakeResponse(json_data={"data": {"metadata": {"statusCode": 403}}}),
        ],
    )
    firecrawl = FirecrawlClient(api_key="test-key", endpoint="https://api.firecrawl.test/v1/scrape", timeout=5)
    registry.register(RetailStrategy(session_factory=lambda: session, firecrawl=firecrawl))
    target = storage.create_product_scraper(
        product.id, StrategyType.RETAIL, "https://www.bigw.com.au/product/huggies/p/456"
    )

    queue.enqueue(target, JobSource.SCHEDULED)
    queue.start()
    await queue.on_idle()

    run = storage.get_runs_for_product_scraper(target.id)[0]
    assert run.status is RunStatus.ERROR
    assert run.error_message == "blocked (403)"

    stored = storage.get_product_scraper_by_id(target.id)
    assert stored.last_scrape_status is ScrapeStatus.ERROR
    assert stored.last_scrape_error == "blocked (403)"
    assert target.id in [t.id for t in storage.get_scrapers_with_issues()]
    assert queue.get_state().items[0].error == "blocked (403)"


@pytest.mark.asyncio
async def test_interval_change_rejected_while_busy(storage, product, clock):
    """A rejected interval change leaves the interval and in-flight work alone."""
    strategy = GatedStrategy()

    registry = StrategyRegistry()
    registry.register(strategy)
    executor = RunExecutor(storage, registry)
    queue = ScrapeQueue(executor, storage, interval_ms=120000, clock=clock, sleep=clock.sleep)
    targets = [
        storage.create_product_scraper(product.id, StrategyType.STATICICE, f"https://www.staticice.com.au/?q={n}")
        for n in range(4)
    ]

    queue.enqueue_batch(targets, JobSource.SCHEDULED)
    queue.start()
    try:
        for _ in range(50):
            if strategy.started:
                break
            await asyncio.sleep(0)
        state = queue.get_state()
        assert state.running_count == 1
        assert state.pending_count == 3

        with pytest.raises(QueueBusyError):
            queue.set_interval(1000)

        state = queue.get_state()
        assert state.configured_interval_ms == 120000
        assert state.running_count == 1
        assert state.pending_count == 3

        strategy.gate.set()
        await queue.on_idle()
    finally:
        await queue.stop()

    assert strategy.started == 4
    assert queue.get_state().processed_count == 4
    assert clock.sleeps == [120.0, 120.0, 120.0]
