"""Data models for the price tracker application.

Defines Pydantic models for all data structures used throughout the
application including tracked targets, scraped price observations, persisted
price records, run outcomes and in-memory queue jobs. All models include
validation and type checking.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class StrategyType(StrEnum):
    """Closed set of extraction strategies a target can be scraped with."""

    STATICICE = "staticice"
    PCPARTPICKER = "pcpartpicker"
    RETAIL = "retail"
    AMAZON = "amazon"


class RunStatus(StrEnum):
    """Outcome of a single run of a tracked target."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CACHED = "cached"

    @property
    def scrape_status(self) -> "ScrapeStatus":
        """Status recorded on the target by ``mark_scraper_as_run``.

        A cached run re-used a recent successful scrape, so it is recorded
        as a success.
        """
        if self is RunStatus.ERROR:
            return ScrapeStatus.ERROR
        if self is RunStatus.WARNING:
            return ScrapeStatus.WARNING
        return ScrapeStatus.SUCCESS


class ScrapeStatus(StrEnum):
    """Last scrape status stored on a tracked target."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class JobSource(StrEnum):
    """Who asked for a job. Manual and group jobs bypass the scrape cache."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    GROUP = "group"


class JobKind(StrEnum):
    SCRAPE = "scrape"
    TIER_REFRESH = "tier_refresh"


class NotificationTrigger(StrEnum):
    PRICE_DROP = "price_drop"
    PRICE_INCREASE = "price_increase"
    ANY_CHANGE = "any_change"
    BELOW_THRESHOLD = "below_threshold"


class Product(BaseModel):
    """Product being tracked.

    Attributes:
        id: Database identifier.
        name: Display name.
        image_url: Optional product image.
        created_at: When the product was created.
    """

    id: int
    name: str
    image_url: str | None = None
    created_at: datetime | None = None


class ProductGroup(BaseModel):
    """Named group of products that can be scraped together."""

    id: int
    name: str
    product_ids: list[int] = Field(default_factory=list)


class TrackedTarget(BaseModel):
    """One (product, retailer URL, strategy) pairing scraped on an interval.

    Attributes:
        id: Database identifier.
        product_id: Product this target belongs to.
        product_name: Product display name.
        strategy_type: Raw persisted strategy identifier.
        url: Page to scrape.
        hints: Optional free-text hints passed to the strategy.
        scrape_interval_minutes: Minutes between scheduled scrapes.
        enabled: Whether the scheduler picks this target up.
        last_scraped_at: When the target was last run.
        last_scrape_status: Status of the last run.
        last_scrape_error: Error text of the last failed run.
        issue_dismissed_at: When the operator last dismissed its issue.
        created_at: When the target was created.
    """

    id: int
    product_id: int
    product_name: str = ""
    strategy_type: str
    url: str
    hints: str | None = None
    scrape_interval_minutes: int = 1440
    enabled: bool = True
    last_scraped_at: datetime | None = None
    last_scrape_status: ScrapeStatus | None = None
    last_scrape_error: str | None = None
    issue_dismissed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def scraper_name(self) -> str:
        return self.strategy_type


class Retailer(BaseModel):
    id: int
    name: str
    domain: str | None = None


class PriceObservation(BaseModel):
    """One retailer's price reading produced by an extraction strategy.

    Attributes:
        retailer_name: Retailer display name.
        retailer_domain: Retailer host name, if known.
        price: Single-unit price.
        currency: ISO currency code.
        in_stock: Whether the item can be bought now.
        preorder_status: ``preorder`` or ``backorder`` when applicable.
        product_url: Direct link to the product at the retailer.
        unit_count: Items in the pack, for per-unit pricing.
        unit_type: What a unit is (e.g. ``item``, ``nappy``).
        multi_buy_quantity: Quantity of a multi-buy deal ("2 for $55" -> 2).
        multi_buy_price: Total price of a multi-buy deal ("2 for $55" -> 55).
    """

    retailer_name: str
    retailer_domain: str | None = None
    price: Decimal
    currency: str = "AUD"
    in_stock: bool = True
    preorder_status: str | None = None
    product_url: str | None = None
    unit_count: int | None = None
    unit_type: str | None = None
    multi_buy_quantity: int | None = None
    multi_buy_price: Decimal | None = None


class PriceRecord(PriceObservation):
    """Persisted, immutable price observation with derived per-unit fields."""

    id: int | None = None
    product_scraper_id: int
    retailer_id: int
    price_per_unit: Decimal | None = None
    multi_buy_price_per_unit: Decimal | None = None
    scraped_at: datetime


class ScrapeSettings(BaseModel):
    """Runtime settings resolved from the settings table before each run."""

    cache_hours: float = 168.0
    max_price: Decimal = Decimal("1000")
    aggregator_max_price: Decimal = Decimal("50000")
    pack_size_min: int = 10
    pack_size_max: int = 500


LogCallback = Callable[[str], None]


def _discard_log(message: str) -> None:
    return None


class ScrapeOptions(BaseModel):
    """Per-call options passed to an extraction strategy.

    Attributes:
        force_refresh: Skip the cache window and always hit the network.
        last_successful_run_at: When this target last produced prices.
        log: Sink for human-readable run log lines.
        settings: Validation and cache settings for this run.
    """

    force_refresh: bool = False
    last_successful_run_at: datetime | None = None
    log: LogCallback = _discard_log
    settings: ScrapeSettings = Field(default_factory=ScrapeSettings)


class ScrapeResult(BaseModel):
    """Result of one strategy call.

    Attributes:
        success: False when every extraction tier failed.
        prices: Accepted price observations.
        product_name: Product name found on the page, if any.
        error: Failure reason, or an informational note on success.
        cached: The strategy skipped scraping; previous prices should be reused.
    """

    success: bool
    prices: list[PriceObservation] = Field(default_factory=list)
    product_name: str | None = None
    error: str | None = None
    cached: bool = False


class RunOutcome(BaseModel):
    """Append-only record of one execution of a tracked target.

    Attributes:
        id: Database identifier once persisted.
        product_scraper_id: Target that was run.
        status: Run status.
        prices_found: Observations returned (or replayed).
        prices_saved: Price records written.
        error_message: Failure reason for ``error`` runs.
        logs: Log lines captured during the run.
        duration_ms: Wall-clock duration.
        created_at: When the run finished.
    """

    id: int | None = None
    product_scraper_id: int
    status: RunStatus
    prices_found: int = 0
    prices_saved: int = 0
    error_message: str | None = None
    logs: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    created_at: datetime


class WatchedTier(BaseModel):
    """Rate tier refreshed by the secondary queue job kind."""

    id: int
    tier: int
    label: str


class TierPlan(BaseModel):
    """One broadband plan offered in a watched tier.

    Attributes:
        provider_name: Provider selling the plan.
        plan_name: Provider's plan name.
        monthly_price: Regular monthly price.
        setup_fee: One-off setup fee.
        promo_value: Monthly discount during the promo period.
        promo_duration: Promo length in months.
        typical_evening_speed: Advertised evening speed in Mbps.
        cis_url: Critical information summary link.
        yearly_cost: First-year cost including promo and setup fee.
    """

    provider_name: str
    plan_name: str
    monthly_price: Decimal
    setup_fee: Decimal = Decimal("0")
    promo_value: Decimal | None = None
    promo_duration: int | None = None
    typical_evening_speed: int | None = None
    cis_url: str | None = None
    yearly_cost: Decimal


class TierSnapshot(TierPlan):
    """Persisted plan snapshot, written when a provider's offer changes."""

    id: int
    watched_tier_id: int
    created_at: datetime


class TierRefreshResult(BaseModel):
    status: RunStatus
    message: str | None = None
    plans_fetched: int = 0
    snapshots_saved: int = 0
    run_id: int | None = None


class QueueJob(BaseModel):
    """In-memory unit of work held by the scrape queue.

    Attributes:
        id: Queue-local identifier.
        kind: Scrape or tier refresh.
        target_id: Tracked target id or watched tier id.
        product_id: Product of a scrape job.
        product_name: Display name of the product or tier.
        scraper_name: Display name of the strategy.
        status: Job status.
        source: Who enqueued the job.
        group_id: Group of a group-triggered job.
        group_name: Group display name.
        prices_saved: Price records written by the run.
        error: Failure reason.
        added_at: When the job was enqueued.
        started_at: When the worker picked it up.
        completed_at: When it reached a terminal status.
    """

    id: str
    kind: JobKind = JobKind.SCRAPE
    target_id: int
    product_id: int | None = None
    product_name: str = ""
    scraper_name: str = ""
    status: JobStatus = JobStatus.PENDING
    source: JobSource
    group_id: int | None = None
    group_name: str | None = None
    prices_saved: int | None = None
    error: str | None = None
    added_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RUNNING)


class QueueState(BaseModel):
    """Point-in-time snapshot of the scrape queue."""

    items: list[QueueJob]
    pending_count: int
    running_count: int
    is_processing: bool
    is_paused: bool
    processed_count: int
    last_processed_at: datetime | None = None
    configured_interval_ms: int
    estimated_next_run_at: datetime | None = None


class SchedulerState(BaseModel):
    """Scheduler status for observability."""

    is_running: bool = False
    started_at: datetime | None = None
    last_check_at: datetime | None = None
    last_enqueue_at: datetime | None = None
    last_tier_refresh_at: datetime | None = None
    jobs_enqueued: int = 0
    error_count: int = 0
    last_error: str | None = None


class NotificationConfig(BaseModel):
    """Where and when to send price change notifications.

    Attributes:
        id: Database identifier.
        product_id: Product scope, None for a global config.
        channel: Channel type (``discord`` or ``telegram``).
        target: Webhook URL or chat id, depending on channel.
        trigger_type: Condition that triggers a notification.
        threshold_value: Price threshold for ``below_threshold``.
        enabled: Whether the config is active.
    """

    id: int
    product_id: int | None = None
    channel: str = "discord"
    target: str
    trigger_type: NotificationTrigger = NotificationTrigger.PRICE_DROP
    threshold_value: Decimal | None = None
    enabled: bool = True


class LatestPrice(BaseModel):
    retailer_id: int
    retailer_name: str
    price: Decimal
    currency: str
    in_stock: bool
    product_url: str | None = None
    scraped_at: datetime


class NotificationPayload(BaseModel):
    product_id: int
    product_name: str
    old_price: Decimal | None = None
    new_price: Decimal
    retailer_name: str
    change_type: str  # "drop", "increase" or "new"
    change_percent: float | None = None
    product_url: str | None = None
