"""Run executor: one scrape attempt for one tracked target.

Resolves the strategy, applies the cache/replay policy, persists price
records and always records exactly one run outcome. The executor never
raises and never updates the target's last-scrape metadata; the caller
does that with ``mark_scraper_as_run`` so retries stay safe.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

from ..exceptions import StrategyNotFound
from ..models import LogCallback, PriceRecord, RunOutcome, RunStatus, ScrapeOptions, TrackedTarget
from ..pricing import build_price_record
from ..scrapers.base import StrategyRegistry
from ..services.storage import StorageProtocol

logger = logging.getLogger(__name__)

PostRunHook = Callable[[TrackedTarget, RunOutcome], Awaitable[None]]


class RunExecutor:
    """Executes tracked targets and records their outcomes.

    Attributes:
        storage: Persistence backend.
        registry: Strategy registry.
        post_run_hooks: Coroutines invoked after a run that found prices.
    """

    def __init__(
        self,
        storage: StorageProtocol,
        registry: StrategyRegistry,
        post_run_hooks: Sequence[PostRunHook] = (),
    ):
        self.storage = storage
        self.registry = registry
        self.post_run_hooks = list(post_run_hooks)

    async def execute(
        self, target: TrackedTarget, force: bool = False, on_log: LogCallback | None = None
    ) -> RunOutcome:
        """Run a target once and persist the outcome.

        Args:
            target: Target to run.
            force: Bypass the strategy cache window.
            on_log: Optional callback receiving each log line as it is produced.

        Returns:
            The persisted RunOutcome.
        """
        started = time.monotonic()
        logs: list[str] = []

        def log(message: str) -> None:
            logs.append(message)
            if on_log:
                try:
                    on_log(message)
                except Exception as e:
                    logger.warning(f"Run log callback failed: {e}")

        log(f"Running {target.scraper_name} for '{target.product_name}' (target {target.id})")

        try:
            status, prices_found, prices_saved, error = await self._run(target, force, log)
        except Exception as e:
            logger.exception(f"Unexpected error running target {target.id}")
            status, prices_found, prices_saved, error = RunStatus.ERROR, 0, 0, str(e) or type(e).__name__
            log(f"Error: {error}")

        outcome = RunOutcome(
            product_scraper_id=target.id,
            status=status,
            prices_found=prices_found,
            prices_saved=prices_saved,
            error_message=error,
            logs=logs,
            duration_ms=int((time.monotonic() - started) * 1000),
            created_at=datetime.now(UTC),
        )

        try:
            outcome.id = self.storage.create_scraper_run(outcome)
        except Exception as e:
            logger.error(f"Failed to record run for target {target.id}: {e}")

        logger.info(
            f"Target {target.id} finished: {outcome.status.value}, "
            f"{outcome.prices_saved} saved in {outcome.duration_ms}ms"
        )

        if outcome.prices_found > 0:
            await self._run_hooks(target, outcome)

        return outcome

    async def _run(
        self, target: TrackedTarget, force: bool, log: LogCallback
    ) -> tuple[RunStatus, int, int, str | None]:
        try:
            strategy = self.registry.get(target.strategy_type)
        except StrategyNotFound as e:
            log(f"Error: {e}")
            return RunStatus.ERROR, 0, 0, str(e)

        last_success = self.storage.get_last_successful_run(target.id)
        settings = self.storage.get_scrape_settings()
        options = ScrapeOptions(
            force_refresh=force,
            last_successful_run_at=last_success.created_at if last_success else None,
            log=log,
            settings=settings,
        )

        result = await strategy.scrape(target.url, target.hints, options)

        if not result.success:
            error = result.error or "Scraper failed"
            log(f"Error: {error}")
            return RunStatus.ERROR, 0, 0, error

        if result.cached:
            replayed = self._replay_latest_prices(target, log)
            return RunStatus.CACHED, replayed, replayed, None

        if not result.prices:
            note = f": {result.error}" if result.error else ""
            log(f"No prices found{note}")
            return RunStatus.WARNING, 0, 0, None

        saved = self._save_prices(target, result.prices, log)
        return RunStatus.SUCCESS, len(result.prices), saved, None

    def _save_prices(self, target: TrackedTarget, observations, log: LogCallback) -> int:
        scraped_at = datetime.now(UTC)
        records: list[PriceRecord] = []
        for observation in observations:
            retailer = self.storage.get_or_create_retailer(observation.retailer_name, observation.retailer_domain)
            record = build_price_record(observation, target.id, retailer.id, scraped_at)
            records.append(record)
            log(f"  - {record.retailer_name}: ${record.price}")
        self.storage.create_price_records(records)
        log(f"Saved {len(records)} price record(s)")
        return len(records)

    def _replay_latest_prices(self, target: TrackedTarget, log: LogCallback) -> int:
        """Re-insert the latest batch at the current time so history stays continuous."""
        previous = self.storage.get_latest_prices_for_product_scraper(target.id)
        if not previous:
            log("Cached, but no previous prices to carry forward")
            return 0

        scraped_at = datetime.now(UTC)
        replayed = [record.model_copy(update={"id": None, "scraped_at": scraped_at}) for record in previous]
        self.storage.create_price_records(replayed)
        log(f"Cached: carried forward {len(replayed)} previous price(s)")
        return len(replayed)

    async def _run_hooks(self, target: TrackedTarget, outcome: RunOutcome) -> None:
        for hook in self.post_run_hooks:
            try:
                await hook(target, outcome)
            except Exception as e:
                logger.error(f"Post-run hook failed for target {target.id}: {e}")
