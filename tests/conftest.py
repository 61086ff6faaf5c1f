"""Global test configuration and fixtures.

Provides shared fixtures for all test levels: an isolated SQLite storage per
test, a registry holding a fake strategy and a virtual clock for the
throttled queue.
"""

import pytest

from price_tracker.config import config
from price_tracker.models import ScrapeResult, StrategyType, TrackedTarget
from price_tracker.scrapers.base import StrategyRegistry
from price_tracker.services.storage import SQLiteStorage
from tests.fakes import FakeClock, FakeStrategy, observation


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    """Fresh SQLite storage seeded with default settings."""
    return SQLiteStorage(str(tmp_path / "test.db"), default_settings=config.default_settings())


@pytest.fixture
def product(storage):
    return storage.create_product("Huggies Ultra Dry Size 4")


@pytest.fixture
def target(storage, product) -> TrackedTarget:
    return storage.create_product_scraper(
        product.id, StrategyType.STATICICE, "https://www.staticice.com.au/cgi-bin/search.cgi?q=huggies"
    )


@pytest.fixture
def fake_strategy() -> FakeStrategy:
    return FakeStrategy(result=ScrapeResult(success=True, prices=[observation()]))


@pytest.fixture
def registry(fake_strategy) -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(fake_strategy)
    return registry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
