"""Dependency-injection container.

This module defines a dependency-injection (DI) container that wires together
the scrape pipeline: storage, strategies, executor, queue, scheduler and the
service facade. Tests construct their own isolated instances instead of
sharing the container's singletons.
"""

from dependency_injector import containers, providers

from price_tracker.pipeline.executor import RunExecutor
from price_tracker.pipeline.queue import ScrapeQueue
from price_tracker.pipeline.scheduler import Scheduler
from price_tracker.pipeline.service import TrackerService
from price_tracker.scrapers import FirecrawlClient, build_registry
from price_tracker.services.notifications import DiscordChannel, NotificationService, TelegramChannel
from price_tracker.services.storage import SQLiteStorage
from price_tracker.services.tier_refresh import NetBargainsClient, TierRefreshService


class Container(containers.DeclarativeContainer):
    """DI container for the application.

    Populate ``config`` with ``Config.as_dict()`` before resolving providers.
    """

    config = providers.Configuration()

    # Services
    storage = providers.Singleton(
        SQLiteStorage,
        db_path=config.database.path,
        default_settings=config.default_settings,
    )
    notification_service = providers.Singleton(
        NotificationService,
        storage=storage,
        channels=providers.Dict(
            discord=providers.Singleton(DiscordChannel),
            telegram=providers.Singleton(TelegramChannel, token=config.notifications.telegram_bot_token),
        ),
    )

    # Strategies
    firecrawl = providers.Singleton(
        FirecrawlClient,
        api_key=config.scraper.firecrawl_api_key,
        endpoint=config.scraper.firecrawl_url,
        timeout=config.scraper.firecrawl_timeout,
    )
    registry = providers.Singleton(build_registry, firecrawl=firecrawl)

    # Pipeline
    executor = providers.Singleton(
        RunExecutor,
        storage=storage,
        registry=registry,
        post_run_hooks=providers.List(notification_service.provided.on_run_completed),
    )
    tier_refresher = providers.Singleton(
        TierRefreshService,
        storage=storage,
        client=providers.Singleton(
            NetBargainsClient,
            api_key=config.tiers.api_key,
            base_url=config.tiers.api_url,
            page_size=config.tiers.page_size,
            page_delay=config.tiers.page_delay,
        ),
        top_plans=config.tiers.top_plans,
    )
    queue = providers.Singleton(
        ScrapeQueue.from_settings,
        executor=executor,
        storage=storage,
        tier_refresher=tier_refresher,
    )
    scheduler = providers.Singleton(
        Scheduler,
        storage=storage,
        queue=queue,
        due_check_seconds=config.scheduler.due_check_seconds,
        tier_refresh_hours=config.scheduler.tier_refresh_hours,
    )
    tracker_service = providers.Singleton(
        TrackerService,
        storage=storage,
        executor=executor,
        queue=queue,
        scheduler=scheduler,
    )
