"""SQLite persistence for tracked targets, price history and run logs.

Provides the record store consumed by the scrape pipeline: due-target
queries, run bookkeeping, the append-only price history and run log,
runtime-editable settings and notification configuration. Each call opens
its own short-lived connection, so the store can be shared between the queue
worker, the scheduler and API handlers.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import closing, contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from ..models import (
    LatestPrice,
    NotificationConfig,
    PriceRecord,
    Product,
    ProductGroup,
    Retailer,
    RunOutcome,
    RunStatus,
    ScrapeSettings,
    ScrapeStatus,
    TierPlan,
    TierRefreshResult,
    TierSnapshot,
    TrackedTarget,
    WatchedTier,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    image_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS product_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_products (
    group_id INTEGER NOT NULL REFERENCES product_groups(id) ON DELETE CASCADE,
    product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
    PRIMARY KEY (group_id, product_id)
);

CREATE TABLE IF NOT EXISTS product_scrapers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
    strategy_type TEXT NOT NULL,
    url TEXT NOT NULL,
    hints TEXT,
    scrape_interval_minutes INTEGER NOT NULL DEFAULT 1440,
    enabled BOOLEAN NOT NULL DEFAULT 1,
    last_scraped_at TEXT,
    last_scrape_status TEXT,
    last_scrape_error TEXT,
    issue_dismissed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS retailers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    domain TEXT
);

CREATE TABLE IF NOT EXISTS price_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_scraper_id INTEGER NOT NULL REFERENCES product_scrapers(id) ON DELETE CASCADE,
    retailer_id INTEGER NOT NULL REFERENCES retailers(id) ON DELETE CASCADE,
    price TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'AUD',
    in_stock BOOLEAN NOT NULL DEFAULT 1,
    preorder_status TEXT,
    product_url TEXT,
    unit_count INTEGER,
    unit_type TEXT,
    price_per_unit TEXT,
    multi_buy_quantity INTEGER,
    multi_buy_price TEXT,
    multi_buy_price_per_unit TEXT,
    scraped_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scraper_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_scraper_id INTEGER NOT NULL REFERENCES product_scrapers(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    prices_found INTEGER NOT NULL DEFAULT 0,
    prices_saved INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    logs TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER REFERENCES products(id) ON DELETE CASCADE,
    channel TEXT NOT NULL DEFAULT 'discord',
    target TEXT NOT NULL,
    trigger_type TEXT NOT NULL DEFAULT 'price_drop',
    threshold_value TEXT,
    enabled BOOLEAN NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS watched_tiers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tier INTEGER NOT NULL UNIQUE,
    label TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tier_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    watched_tier_id INTEGER NOT NULL REFERENCES watched_tiers(id) ON DELETE CASCADE,
    provider_name TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    monthly_price TEXT NOT NULL,
    setup_fee TEXT NOT NULL,
    promo_value TEXT,
    promo_duration INTEGER,
    typical_evening_speed INTEGER,
    cis_url TEXT,
    yearly_cost TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tier_refresh_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    watched_tier_id INTEGER NOT NULL REFERENCES watched_tiers(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    plans_fetched INTEGER NOT NULL DEFAULT 0,
    snapshots_saved INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    logs TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_price_records_scraper
    ON price_records(product_scraper_id, scraped_at);
CREATE INDEX IF NOT EXISTS idx_scraper_runs_scraper
    ON scraper_runs(product_scraper_id, created_at);
CREATE INDEX IF NOT EXISTS idx_tier_snapshots_tier
    ON tier_snapshots(watched_tier_id, created_at);
"""

TARGET_SELECT = """
    SELECT ps.*, p.name AS product_name
    FROM product_scrapers ps
    JOIN products p ON p.id = ps.product_id
"""

PRICE_SELECT = """
    SELECT pr.*, r.name AS retailer_name, r.domain AS retailer_domain
    FROM price_records pr
    JOIN retailers r ON r.id = pr.retailer_id
"""


class StorageProtocol(Protocol):
    """Persistence interface consumed by the scrape pipeline."""

    def get_scrapers_needing_run(self, now: datetime | None = None) -> list[TrackedTarget]: ...

    def get_product_scraper_by_id(self, product_scraper_id: int) -> TrackedTarget | None: ...

    def mark_scraper_as_run(
        self, product_scraper_id: int, status: ScrapeStatus, error: str | None = None
    ) -> None: ...

    def create_scraper_run(self, outcome: RunOutcome) -> int: ...

    def get_last_successful_run(self, product_scraper_id: int) -> RunOutcome | None: ...

    def get_latest_prices_for_product_scraper(self, product_scraper_id: int) -> list[PriceRecord]: ...

    def get_or_create_retailer(self, name: str, domain: str | None = None) -> Retailer: ...

    def create_price_records(self, records: list[PriceRecord]) -> None: ...

    def get_scrape_settings(self) -> ScrapeSettings: ...

    def get_setting_number(self, key: str, default: float) -> float: ...


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _dec(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _parse_dec(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


class SQLiteStorage:
    """SQLite-backed implementation of the pipeline persistence interface.

    Attributes:
        db_path: Path to SQLite database file.
    """

    def __init__(self, db_path: str, default_settings: Mapping[str, float] | None = None):
        """Initialize storage and create the schema if needed.

        Args:
            db_path: Path to SQLite database file.
            default_settings: Settings seeded when missing from the settings table.
        """
        self.db_path = db_path

        # Create data directory if it doesn't exist
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()
        if default_settings:
            self.seed_settings(default_settings)
        logger.info(f"Storage initialized with database: {db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn

    def _init_database(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # Products, groups and targets

    def create_product(self, name: str, image_url: str | None = None) -> Product:
        created_at = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO products (name, image_url, created_at) VALUES (?, ?, ?)",
                (name, image_url, _ts(created_at)),
            )
        return Product(id=cursor.lastrowid, name=name, image_url=image_url, created_at=created_at)

    def get_product_by_id(self, product_id: int) -> Product | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        if row is None:
            return None
        return Product(
            id=row["id"],
            name=row["name"],
            image_url=row["image_url"],
            created_at=_parse_ts(row["created_at"]),
        )

    def create_group(self, name: str, product_ids: Iterable[int] = ()) -> ProductGroup:
        product_ids = list(product_ids)
        with self._connect() as conn:
            cursor = conn.execute("INSERT INTO product_groups (name) VALUES (?)", (name,))
            group_id = cursor.lastrowid
            conn.executemany(
                "INSERT INTO group_products (group_id, product_id) VALUES (?, ?)",
                [(group_id, product_id) for product_id in product_ids],
            )
        return ProductGroup(id=group_id, name=name, product_ids=product_ids)

    def get_group_by_id(self, group_id: int) -> ProductGroup | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM product_groups WHERE id = ?", (group_id,)).fetchone()
            if row is None:
                return None
            members = conn.execute(
                "SELECT product_id FROM group_products WHERE group_id = ? ORDER BY product_id",
                (group_id,),
            ).fetchall()
        return ProductGroup(id=row["id"], name=row["name"], product_ids=[m["product_id"] for m in members])

    def create_product_scraper(
        self,
        product_id: int,
        strategy_type: str,
        url: str,
        hints: str | None = None,
        scrape_interval_minutes: int = 1440,
        enabled: bool = True,
    ) -> TrackedTarget:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO product_scrapers
                (product_id, strategy_type, url, hints, scrape_interval_minutes, enabled, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (product_id, str(strategy_type), url, hints, scrape_interval_minutes, enabled, _ts(_now())),
            )
            row = conn.execute(f"{TARGET_SELECT} WHERE ps.id = ?", (cursor.lastrowid,)).fetchone()
        return self._row_to_target(row)

    def update_product_scraper(self, product_scraper_id: int, **fields: Any) -> TrackedTarget | None:
        """Update editable target fields (url, hints, interval, enabled, strategy)."""
        allowed = {"strategy_type", "url", "hints", "scrape_interval_minutes", "enabled"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE product_scrapers SET {assignments} WHERE id = ?",
                    (*fields.values(), product_scraper_id),
                )
        return self.get_product_scraper_by_id(product_scraper_id)

    @staticmethod
    def _row_to_target(row: sqlite3.Row) -> TrackedTarget:
        return TrackedTarget(
            id=row["id"],
            product_id=row["product_id"],
            product_name=row["product_name"],
            strategy_type=row["strategy_type"],
            url=row["url"],
            hints=row["hints"],
            scrape_interval_minutes=row["scrape_interval_minutes"],
            enabled=bool(row["enabled"]),
            last_scraped_at=_parse_ts(row["last_scraped_at"]),
            last_scrape_status=row["last_scrape_status"],
            last_scrape_error=row["last_scrape_error"],
            issue_dismissed_at=_parse_ts(row["issue_dismissed_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def get_product_scraper_by_id(self, product_scraper_id: int) -> TrackedTarget | None:
        with self._connect() as conn:
            row = conn.execute(f"{TARGET_SELECT} WHERE ps.id = ?", (product_scraper_id,)).fetchone()
        return None if row is None else self._row_to_target(row)

    def get_all_product_scrapers(self) -> list[TrackedTarget]:
        with self._connect() as conn:
            rows = conn.execute(f"{TARGET_SELECT} ORDER BY ps.id").fetchall()
        return [self._row_to_target(row) for row in rows]

    def get_product_scrapers_for_group(self, group_id: int) -> list[TrackedTarget]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {TARGET_SELECT}
                JOIN group_products gp ON gp.product_id = ps.product_id
                WHERE gp.group_id = ? AND ps.enabled = 1
                ORDER BY ps.id
                """,
                (group_id,),
            ).fetchall()
        return [self._row_to_target(row) for row in rows]

    def get_scrapers_needing_run(self, now: datetime | None = None) -> list[TrackedTarget]:
        """Enabled targets never scraped or whose interval has elapsed."""
        now = now or _now()
        with self._connect() as conn:
            rows = conn.execute(f"{TARGET_SELECT} WHERE ps.enabled = 1 ORDER BY ps.id").fetchall()

        due = []
        for target in (self._row_to_target(row) for row in rows):
            if target.last_scraped_at is None:
                due.append(target)
                continue
            next_run = target.last_scraped_at + timedelta(minutes=target.scrape_interval_minutes)
            if now >= next_run:
                due.append(target)
        return due

    def mark_scraper_as_run(
        self, product_scraper_id: int, status: ScrapeStatus = ScrapeStatus.SUCCESS, error: str | None = None
    ) -> None:
        """Record that a target ran; this is what advances its due time."""
        status = ScrapeStatus(status)
        last_error = (error or "Unknown error") if status is ScrapeStatus.ERROR else None
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE product_scrapers
                SET last_scraped_at = ?, last_scrape_status = ?, last_scrape_error = ?
                WHERE id = ?
                """,
                (_ts(_now()), status.value, last_error, product_scraper_id),
            )

    def get_scrapers_with_issues(self) -> list[TrackedTarget]:
        """Targets that failed, found no prices, or never ran.

        A dismissed issue stays hidden until the target runs again after the
        dismissal.
        """
        issues = []
        for target in self.get_all_product_scrapers():
            has_issue = (
                target.last_scrape_status in (ScrapeStatus.ERROR, ScrapeStatus.WARNING)
                or target.last_scraped_at is None
            )
            if not has_issue:
                continue
            if target.issue_dismissed_at is not None and (
                target.last_scraped_at is None or target.issue_dismissed_at >= target.last_scraped_at
            ):
                continue
            issues.append(target)
        return issues

    def dismiss_issue(self, product_scraper_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE product_scrapers SET issue_dismissed_at = ? WHERE id = ?",
                (_ts(_now()), product_scraper_id),
            )

    # Run log

    def create_scraper_run(self, outcome: RunOutcome) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scraper_runs
                (product_scraper_id, status, prices_found, prices_saved, error_message,
                 logs, duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.product_scraper_id,
                    outcome.status.value,
                    outcome.prices_found,
                    outcome.prices_saved,
                    outcome.error_message,
                    json.dumps(outcome.logs, ensure_ascii=False),
                    outcome.duration_ms,
                    _ts(outcome.created_at),
                ),
            )
        return cursor.lastrowid

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunOutcome:
        return RunOutcome(
            id=row["id"],
            product_scraper_id=row["product_scraper_id"],
            status=row["status"],
            prices_found=row["prices_found"],
            prices_saved=row["prices_saved"],
            error_message=row["error_message"],
            logs=json.loads(row["logs"]) if row["logs"] else [],
            duration_ms=row["duration_ms"],
            created_at=_parse_ts(row["created_at"]),
        )

    def get_runs_for_product_scraper(self, product_scraper_id: int, limit: int = 20) -> list[RunOutcome]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scraper_runs WHERE product_scraper_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (product_scraper_id, limit),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def get_run_by_id(self, run_id: int) -> RunOutcome | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scraper_runs WHERE id = ?", (run_id,)).fetchone()
        return None if row is None else self._row_to_run(row)

    def get_last_successful_run(self, product_scraper_id: int) -> RunOutcome | None:
        """Most recent ``success`` run; cached and warning runs do not count."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM scraper_runs
                WHERE product_scraper_id = ? AND status = 'success'
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (product_scraper_id,),
            ).fetchone()
        return None if row is None else self._row_to_run(row)

    # Prices

    def get_or_create_retailer(self, name: str, domain: str | None = None) -> Retailer:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM retailers WHERE name = ?", (name,)).fetchone()
            if row is not None:
                return Retailer(id=row["id"], name=row["name"], domain=row["domain"])
            cursor = conn.execute(
                "INSERT INTO retailers (name, domain) VALUES (?, ?)", (name, domain)
            )
        return Retailer(id=cursor.lastrowid, name=name, domain=domain)

    def create_price_records(self, records: list[PriceRecord]) -> None:
        if not records:
            return
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO price_records
                (product_scraper_id, retailer_id, price, currency, in_stock, preorder_status,
                 product_url, unit_count, unit_type, price_per_unit, multi_buy_quantity,
                 multi_buy_price, multi_buy_price_per_unit, scraped_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.product_scraper_id,
                        r.retailer_id,
                        _dec(r.price),
                        r.currency,
                        r.in_stock,
                        r.preorder_status,
                        r.product_url,
                        r.unit_count,
                        r.unit_type,
                        _dec(r.price_per_unit),
                        r.multi_buy_quantity,
                        _dec(r.multi_buy_price),
                        _dec(r.multi_buy_price_per_unit),
                        _ts(r.scraped_at),
                    )
                    for r in records
                ],
            )

    @staticmethod
    def _row_to_price(row: sqlite3.Row) -> PriceRecord:
        return PriceRecord(
            id=row["id"],
            product_scraper_id=row["product_scraper_id"],
            retailer_id=row["retailer_id"],
            retailer_name=row["retailer_name"],
            retailer_domain=row["retailer_domain"],
            price=Decimal(row["price"]),
            currency=row["currency"],
            in_stock=bool(row["in_stock"]),
            preorder_status=row["preorder_status"],
            product_url=row["product_url"],
            unit_count=row["unit_count"],
            unit_type=row["unit_type"],
            price_per_unit=_parse_dec(row["price_per_unit"]),
            multi_buy_quantity=row["multi_buy_quantity"],
            multi_buy_price=_parse_dec(row["multi_buy_price"]),
            multi_buy_price_per_unit=_parse_dec(row["multi_buy_price_per_unit"]),
            scraped_at=_parse_ts(row["scraped_at"]),
        )

    def get_price_records_for_product_scraper(self, product_scraper_id: int) -> list[PriceRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{PRICE_SELECT} WHERE pr.product_scraper_id = ? ORDER BY pr.scraped_at, pr.id",
                (product_scraper_id,),
            ).fetchall()
        return [self._row_to_price(row) for row in rows]

    def get_latest_prices_for_product_scraper(self, product_scraper_id: int) -> list[PriceRecord]:
        """Records of the most recent scrape batch for a target."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {PRICE_SELECT}
                WHERE pr.product_scraper_id = ?
                  AND pr.scraped_at = (
                      SELECT MAX(scraped_at) FROM price_records WHERE product_scraper_id = ?
                  )
                ORDER BY pr.id
                """,
                (product_scraper_id, product_scraper_id),
            ).fetchall()
        return [self._row_to_price(row) for row in rows]

    def get_price_history_for_product(self, product_id: int, days: int = 30) -> list[PriceRecord]:
        cutoff = _now() - timedelta(days=days)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {PRICE_SELECT}
                JOIN product_scrapers ps ON ps.id = pr.product_scraper_id
                WHERE ps.product_id = ? AND pr.scraped_at >= ?
                ORDER BY pr.scraped_at DESC, pr.id DESC
                """,
                (product_id, _ts(cutoff)),
            ).fetchall()
        return [self._row_to_price(row) for row in rows]

    def get_latest_prices_for_product(self, product_id: int, days: int = 7) -> list[LatestPrice]:
        """Latest price per retailer, cheapest first."""
        latest: dict[int, LatestPrice] = {}
        for record in self.get_price_history_for_product(product_id, days=days):
            existing = latest.get(record.retailer_id)
            if existing is None or record.scraped_at > existing.scraped_at:
                latest[record.retailer_id] = LatestPrice(
                    retailer_id=record.retailer_id,
                    retailer_name=record.retailer_name,
                    price=record.price,
                    currency=record.currency,
                    in_stock=record.in_stock,
                    product_url=record.product_url,
                    scraped_at=record.scraped_at,
                )
        return sorted(latest.values(), key=lambda p: p.price)

    def get_previous_lowest_price(self, product_id: int) -> Decimal | None:
        """Lowest price of the second most recent scrape batch for a product."""
        history = self.get_price_history_for_product(product_id, days=30)
        scrape_times = sorted({record.scraped_at for record in history}, reverse=True)
        if len(scrape_times) < 2:
            return None
        previous = [r.price for r in history if r.scraped_at == scrape_times[1]]
        return min(previous) if previous else None

    # Settings

    def seed_settings(self, defaults: Mapping[str, float]) -> None:
        """Insert settings missing from the settings table."""
        with self._connect() as conn:
            for key, value in defaults.items():
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, str(value), _ts(_now())),
                )
                if cursor.rowcount:
                    logger.info(f"Seeded setting: {key}")

    def get_setting(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM app_settings WHERE key = ?", (key,)).fetchone()
        return None if row is None else row["value"]

    def get_setting_number(self, key: str, default: float) -> float:
        value = self.get_setting(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            return default

    def update_setting(self, key: str, value: str | float | bool) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, str(value), _ts(_now())),
            )

    def get_scrape_settings(self) -> ScrapeSettings:
        defaults = ScrapeSettings()
        return ScrapeSettings(
            cache_hours=self.get_setting_number("scraper_cache_hours", defaults.cache_hours),
            max_price=Decimal(str(self.get_setting_number("scraper_max_price", float(defaults.max_price)))),
            aggregator_max_price=Decimal(
                str(self.get_setting_number("staticice_max_price", float(defaults.aggregator_max_price)))
            ),
            pack_size_min=int(self.get_setting_number("scraper_pack_size_min", defaults.pack_size_min)),
            pack_size_max=int(self.get_setting_number("scraper_pack_size_max", defaults.pack_size_max)),
        )

    # Notifications

    def create_notification_config(
        self,
        target: str,
        channel: str = "discord",
        trigger_type: str = "price_drop",
        product_id: int | None = None,
        threshold_value: Decimal | None = None,
        enabled: bool = True,
    ) -> NotificationConfig:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notification_configs
                (product_id, channel, target, trigger_type, threshold_value, enabled)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (product_id, channel, target, str(trigger_type), _dec(threshold_value), enabled),
            )
        return NotificationConfig(
            id=cursor.lastrowid,
            product_id=product_id,
            channel=channel,
            target=target,
            trigger_type=trigger_type,
            threshold_value=threshold_value,
            enabled=enabled,
        )

    def get_notification_configs_for_product(self, product_id: int) -> list[NotificationConfig]:
        """Configs scoped to the product plus global ones."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification_configs
                WHERE product_id = ? OR product_id IS NULL
                ORDER BY id
                """,
                (product_id,),
            ).fetchall()
        return [
            NotificationConfig(
                id=row["id"],
                product_id=row["product_id"],
                channel=row["channel"],
                target=row["target"],
                trigger_type=row["trigger_type"],
                threshold_value=_parse_dec(row["threshold_value"]),
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    # Watched tiers

    def add_watched_tier(self, tier: int, label: str) -> WatchedTier:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO watched_tiers (tier, label) VALUES (?, ?)", (tier, label)
            )
        return WatchedTier(id=cursor.lastrowid, tier=tier, label=label)

    def get_watched_tiers(self) -> list[WatchedTier]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM watched_tiers ORDER BY tier").fetchall()
        return [WatchedTier(id=row["id"], tier=row["tier"], label=row["label"]) for row in rows]

    def get_watched_tier(self, tier: int) -> WatchedTier | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM watched_tiers WHERE tier = ?", (tier,)).fetchone()
        return None if row is None else WatchedTier(id=row["id"], tier=row["tier"], label=row["label"])

    def add_tier_snapshot(self, watched_tier_id: int, plan: TierPlan) -> TierSnapshot:
        created_at = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tier_snapshots
                (watched_tier_id, provider_name, plan_name, monthly_price, setup_fee, promo_value,
                 promo_duration, typical_evening_speed, cis_url, yearly_cost, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    watched_tier_id,
                    plan.provider_name,
                    plan.plan_name,
                    _dec(plan.monthly_price),
                    _dec(plan.setup_fee),
                    _dec(plan.promo_value),
                    plan.promo_duration,
                    plan.typical_evening_speed,
                    plan.cis_url,
                    _dec(plan.yearly_cost),
                    _ts(created_at),
                ),
            )
        return TierSnapshot(
            id=cursor.lastrowid,
            watched_tier_id=watched_tier_id,
            created_at=created_at,
            **plan.model_dump(),
        )

    def get_latest_tier_snapshots(self, watched_tier_id: int) -> dict[str, TierSnapshot]:
        """Most recent snapshot per provider for a watched tier."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tier_snapshots
                WHERE watched_tier_id = ?
                ORDER BY created_at, id
                """,
                (watched_tier_id,),
            ).fetchall()

        latest: dict[str, TierSnapshot] = {}
        for row in rows:
            latest[row["provider_name"]] = TierSnapshot(
                id=row["id"],
                watched_tier_id=row["watched_tier_id"],
                provider_name=row["provider_name"],
                plan_name=row["plan_name"],
                monthly_price=Decimal(row["monthly_price"]),
                setup_fee=Decimal(row["setup_fee"]),
                promo_value=_parse_dec(row["promo_value"]),
                promo_duration=row["promo_duration"],
                typical_evening_speed=row["typical_evening_speed"],
                cis_url=row["cis_url"],
                yearly_cost=Decimal(row["yearly_cost"]),
                created_at=_parse_ts(row["created_at"]),
            )
        return latest

    def create_tier_refresh_run(
        self, watched_tier_id: int, result: TierRefreshResult, logs: list[str], duration_ms: int = 0
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tier_refresh_runs
                (watched_tier_id, status, plans_fetched, snapshots_saved, error_message, logs,
                 duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    watched_tier_id,
                    str(result.status),
                    result.plans_fetched,
                    result.snapshots_saved,
                    result.message if result.status is not RunStatus.SUCCESS else None,
                    json.dumps(logs),
                    duration_ms,
                    _ts(_now()),
                ),
            )
        return cursor.lastrowid

    def get_tier_refresh_runs(self, watched_tier_id: int, limit: int = 20) -> list[TierRefreshResult]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tier_refresh_runs
                WHERE watched_tier_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (watched_tier_id, limit),
            ).fetchall()
        return [
            TierRefreshResult(
                status=RunStatus(row["status"]),
                message=row["error_message"],
                plans_fetched=row["plans_fetched"],
                snapshots_saved=row["snapshots_saved"],
                run_id=row["id"],
            )
            for row in rows
        ]
