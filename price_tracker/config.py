"""Pipeline configuration.

Secrets and paths come from environment variables, tuning defaults from
``config/settings.yml``. Each concern gets its own settings class so the
container can hand components only the section they need.

Values here are defaults. The runtime-editable subset (cache window, price
ceiling, pack size bounds, queue interval, history limit) is seeded into the
settings table on startup and read from there afterwards.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings


class ScraperConfig(BaseSettings):
    """Extraction strategy parameters.

    Attributes:
        cache_hours: Hours a successful run keeps paid extraction tiers skipped.
        max_price: Maximum price accepted as valid (filters bad extractions).
        aggregator_max_price: Price ceiling for multi-retailer aggregator pages.
        pack_size_min: Smallest plausible pack/unit count.
        pack_size_max: Largest plausible pack/unit count.
        request_timeout: HTTP request timeout in seconds.
        browser_timeout: Headless browser navigation timeout in seconds.
        firecrawl_api_key: API key for the third-party extraction API.
        firecrawl_url: Extraction API scrape endpoint.
        firecrawl_timeout: Extraction API request timeout in seconds.
    """
    cache_hours: float = 168.0
    max_price: float = 1000.0
    aggregator_max_price: float = 50000.0
    pack_size_min: int = 10
    pack_size_max: int = 500
    request_timeout: int = 30
    browser_timeout: int = 90
    firecrawl_api_key: str | None = Field(default=None, validation_alias="FIRECRAWL_API_KEY")
    firecrawl_url: str = "https://api.firecrawl.dev/v1/scrape"
    firecrawl_timeout: int = 90


class QueueConfig(BaseSettings):
    """Scrape queue throttling.

    Attributes:
        interval_ms: Minimum milliseconds between two job starts.
        history_limit: Completed jobs kept in memory for observability.
    """
    interval_ms: int = 120000
    history_limit: int = 100


class SchedulerConfig(BaseSettings):
    """Periodic scheduler timers.

    Attributes:
        enabled: Whether timers start with the process.
        due_check_seconds: Period of the due-scraper check.
        tier_refresh_hours: Period of the tier refresh enqueue.
    """
    enabled: bool = Field(default=True, validation_alias="SCHEDULER_ENABLED")
    due_check_seconds: float = 60.0
    tier_refresh_hours: float = 6.0


class TierRefreshConfig(BaseSettings):
    """Broadband plan API used by the tier refresh job.

    Attributes:
        api_key: NetBargains API key.
        api_url: API base URL.
        page_size: Plans requested per page.
        page_delay: Seconds between paginated requests.
        top_plans: Cheapest plans per tier tracked in snapshots.
        timeout: Request timeout in seconds.
    """
    api_key: str | None = Field(default=None, validation_alias="NETBARGAINS_API_KEY")
    api_url: str = "https://api.netbargains.com.au/v1"
    page_size: int = 50
    page_delay: float = 0.5
    top_plans: int = 10
    timeout: int = 30


class DatabaseConfig(BaseSettings):
    """SQLite persistence settings.

    Attributes:
        path: Path to the SQLite database file.
    """
    path: str = Field(default="data/price_tracker.db", validation_alias="DATABASE_PATH")


class NotificationConfig(BaseSettings):
    """Price change notification settings.

    Attributes:
        telegram_bot_token: Bot token used by the Telegram channel.
        webhook_timeout: Timeout in seconds for webhook deliveries.
        currency: Currency used when formatting prices in messages.
    """
    telegram_bot_token: str | None = Field(default=None, validation_alias="TELEGRAM_BOT_TOKEN")
    webhook_timeout: int = 15
    currency: str = "AUD"


class Config:
    """All configuration sections, loaded once per process.

    Environment-backed sections (database, notifications) are read directly;
    scraper, queue, scheduler and tier sections are overlaid from ``settings.yml``
    when the file exists.
    """

    def __init__(self, config_dir: Path | None = None):
        """Load configuration.

        Args:
            config_dir: Directory holding ``settings.yml``, defaults to the
                packaged ``price_tracker/config``.
        """
        self.config_dir = Path(config_dir) if config_dir is not None else Path(__file__).parent / "config"

        self.database = DatabaseConfig()
        self.notifications = NotificationConfig()

        settings_path = self.config_dir / "settings.yml"
        if settings_path.exists():
            with open(settings_path) as f:
                data = yaml.safe_load(f) or {}

            self.scraper = ScraperConfig(**data.get("scraper", {}))
            self.queue = QueueConfig(**data.get("queue", {}))
            self.scheduler = SchedulerConfig(**data.get("scheduler", {}))
            self.tiers = TierRefreshConfig(**data.get("tiers", {}))
        else:
            self.scraper = ScraperConfig()
            self.queue = QueueConfig()
            self.scheduler = SchedulerConfig()
            self.tiers = TierRefreshConfig()

    def default_settings(self) -> dict[str, float]:
        """Runtime-editable settings seeded into the settings table.

        Returns:
            Mapping of setting key to its default numeric value.
        """
        return {
            "scraper_cache_hours": self.scraper.cache_hours,
            "scraper_max_price": self.scraper.max_price,
            "scraper_pack_size_min": self.scraper.pack_size_min,
            "scraper_pack_size_max": self.scraper.pack_size_max,
            "staticice_max_price": self.scraper.aggregator_max_price,
            "queue_interval_ms": self.queue.interval_ms,
            "queue_history_limit": self.queue.history_limit,
        }

    def as_dict(self) -> dict[str, Any]:
        """Dump all sections for the dependency-injection container.

        Returns:
            Nested dictionary keyed by section name.
        """
        return {
            "scraper": self.scraper.model_dump(),
            "queue": self.queue.model_dump(),
            "scheduler": self.scheduler.model_dump(),
            "tiers": self.tiers.model_dump(),
            "database": self.database.model_dump(),
            "notifications": self.notifications.model_dump(),
            "default_settings": self.default_settings(),
        }


# Global configuration instance
config = Config()
