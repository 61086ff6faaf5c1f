"""Base strategy protocol and abstractions for retailer price extraction.

Defines the unified interface that all extraction strategies must implement,
the shared cache/skip policy and validation helpers, and the registry that
maps each ``StrategyType`` to exactly one strategy instance.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Protocol

import aiohttp

from ..exceptions import StrategyFailure, StrategyNotFound
from ..models import PriceObservation, ScrapeOptions, ScrapeResult, StrategyType
from ..pricing import validate_observation
from ..utils import create_session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], aiohttp.ClientSession]


class StrategyProtocol(Protocol):
    """Protocol defining the interface for all extraction strategies.

    Methods:
        scrape: Extract price observations from a tracked URL.
    """

    strategy_type: StrategyType

    async def scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        """Extract price observations from a tracked URL.

        Args:
            url: Page to scrape.
            hints: Optional free-text hints configured on the target.
            options: Cache, validation and logging options for this call.

        Returns:
            ScrapeResult describing prices found, a failure, or a cache skip.
        """
        ...


class BaseStrategy:
    """Base class providing common functionality for all strategies.

    Concrete strategies implement ``_scrape`` and raise ``StrategyFailure``
    once every extraction tier is exhausted; ``scrape`` converts failures into
    a ``ScrapeResult``.
    """

    strategy_type: StrategyType

    def __init__(self, session_factory: SessionFactory | None = None):
        """Initialize base strategy.

        Args:
            session_factory: Builds the HTTP session used for one scrape call.
        """
        self.session_factory = session_factory or create_session
        self.logger = logging.getLogger(f"{__name__}.{self.strategy_type.value}")

    async def scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        self._log_scraping_start(url, options)
        try:
            result = await self._scrape(url, hints, options)
        except StrategyFailure as e:
            self._log_scraping_error(url, options, e)
            return ScrapeResult(success=False, error=str(e))
        except aiohttp.ClientError as e:
            self._log_scraping_error(url, options, e)
            return ScrapeResult(success=False, error=f"Request failed: {e}")
        except TimeoutError:
            self._log_scraping_error(url, options, "timed out")
            return ScrapeResult(success=False, error="Request timed out")

        if result.cached:
            self._log(options, "Skipping scrape, recent successful run is within the cache window")
        else:
            self._log_scraping_success(url, options, result)
        return result

    async def _scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        raise NotImplementedError

    def _check_cache(self, options: ScrapeOptions, now: datetime | None = None) -> bool:
        """Whether the expensive tiers can be skipped for this call.

        Args:
            options: Scrape options carrying force flag and last success time.
            now: Current time, defaults to now in UTC.

        Returns:
            True if the last successful run is within the cache window and
            the call is not forced.
        """
        if options.force_refresh or options.last_successful_run_at is None:
            return False
        now = now or datetime.now(UTC)
        window = timedelta(hours=options.settings.cache_hours)
        return now - options.last_successful_run_at < window

    def _validate(
        self,
        observations: Iterable[PriceObservation],
        options: ScrapeOptions,
        max_price: Decimal | None = None,
    ) -> list[PriceObservation]:
        accepted = []
        for observation in observations:
            cleaned = validate_observation(observation, options.settings, max_price=max_price, log=options.log)
            if cleaned is not None:
                accepted.append(cleaned)
        return accepted

    async def _fetch_html(self, session: aiohttp.ClientSession, url: str) -> str:
        """GET a page and return its body.

        Raises:
            StrategyFailure: On a blocking or error HTTP status.
        """
        async with session.get(url) as response:
            if response.status in (403, 429, 503):
                raise StrategyFailure(f"blocked ({response.status})")
            if response.status >= 400:
                raise StrategyFailure(f"HTTP {response.status}")
            return await response.text()

    def _log(self, options: ScrapeOptions, message: str) -> None:
        self.logger.info(message)
        options.log(f"[{self.strategy_type.value}] {message}")

    def _log_scraping_start(self, url: str, options: ScrapeOptions) -> None:
        forced = " (forced)" if options.force_refresh else ""
        self._log(options, f"Starting scrape{forced}: {url}")

    def _log_scraping_success(self, url: str, options: ScrapeOptions, result: ScrapeResult) -> None:
        self._log(options, f"Found {len(result.prices)} price(s) at {url}")

    def _log_scraping_error(self, url: str, options: ScrapeOptions, error: object) -> None:
        self.logger.error(f"Failed to scrape {url}: {error}")
        options.log(f"[{self.strategy_type.value}] Failed: {error}")


class StrategyRegistry:
    """Registry mapping each strategy type to its single implementation."""

    def __init__(self) -> None:
        """Initialize empty strategy registry."""
        self._strategies: dict[StrategyType, StrategyProtocol] = {}
        self.logger = logging.getLogger(f"{__name__}.registry")

    def register(self, strategy: StrategyProtocol) -> None:
        """Register a strategy, replacing any previous one for its type.

        Args:
            strategy: Strategy instance implementing StrategyProtocol.
        """
        self._strategies[strategy.strategy_type] = strategy
        self.logger.info(f"Registered strategy: {strategy.strategy_type.value}")

    def get(self, strategy_type: str) -> StrategyProtocol:
        """Look up the strategy for a persisted strategy identifier.

        Args:
            strategy_type: Raw strategy identifier stored on the target.

        Returns:
            Registered strategy instance.

        Raises:
            StrategyNotFound: If the identifier is unknown or unregistered.
        """
        try:
            key = StrategyType(strategy_type)
        except ValueError:
            raise StrategyNotFound(strategy_type) from None
        strategy = self._strategies.get(key)
        if strategy is None:
            raise StrategyNotFound(strategy_type)
        return strategy

    def get_all_types(self) -> list[StrategyType]:
        return list(self._strategies)
