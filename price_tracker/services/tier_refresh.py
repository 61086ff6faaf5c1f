"""Broadband tier refresh, the queue's secondary job kind.

Each watched tier is a download speed. A refresh pulls the tier's plans from
the NetBargains API, ranks them by first-year cost and writes a snapshot for
every tracked provider whose offer changed since its last snapshot. Every
refresh, successful or not, leaves one row in the tier refresh run log.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import aiohttp

from ..config import config
from ..exceptions import PriceTrackerError
from ..models import RunStatus, TierPlan, TierRefreshResult, TierSnapshot
from .storage import SQLiteStorage

logger = logging.getLogger(__name__)

USER_AGENT = "price-tracker/0.1 (tier refresh)"
PROMO_MONTHS_CAP = 12
CENT = Decimal("0.01")


def _decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def calculate_yearly_cost(
    monthly_price: Decimal,
    setup_fee: Decimal = Decimal("0"),
    promo_value: Decimal | None = None,
    promo_duration: int | None = None,
) -> Decimal:
    """First-year cost of a plan.

    The promo discount applies for at most twelve months, the setup fee is
    paid once.

    Args:
        monthly_price: Regular monthly price.
        setup_fee: One-off setup fee.
        promo_value: Monthly discount during the promo.
        promo_duration: Promo length in months.

    Returns:
        Cost over the first twelve months, rounded to cents.
    """
    promo_months = min(promo_duration or 0, PROMO_MONTHS_CAP)
    promo_cost = (monthly_price - (promo_value or 0)) * promo_months
    regular_cost = monthly_price * (PROMO_MONTHS_CAP - promo_months)
    return (promo_cost + regular_cost + setup_fee).quantize(CENT, rounding=ROUND_HALF_UP)


def plan_from_item(item: dict[str, Any]) -> TierPlan:
    """Build a plan from one API item.

    Raises:
        ValueError: If the item has no provider, plan name or price.
    """
    provider = item.get("provider_name")
    plan_name = item.get("plan_name")
    monthly_price = _decimal(item.get("monthly_price"))
    if not provider or not plan_name or monthly_price is None:
        raise ValueError(f"Incomplete plan item: {item.get('id', '?')}")

    setup_fee = _decimal(item.get("setup_fee"), Decimal("0"))
    promo_value = _decimal(item.get("promo_value"))
    promo_duration = item.get("promo_duration")
    return TierPlan(
        provider_name=provider,
        plan_name=plan_name,
        monthly_price=monthly_price,
        setup_fee=setup_fee,
        promo_value=promo_value,
        promo_duration=promo_duration,
        typical_evening_speed=item.get("typical_evening_speed"),
        cis_url=item.get("cis_url") or None,
        yearly_cost=calculate_yearly_cost(monthly_price, setup_fee, promo_value, promo_duration),
    )


def plan_changed(latest: TierSnapshot | None, plan: TierPlan) -> bool:
    """Whether a plan differs from the provider's last snapshot.

    A plan also counts as changed when it fills in the CIS link or evening
    speed that the snapshot was missing.
    """
    if latest is None:
        return True
    if latest.yearly_cost != plan.yearly_cost or latest.plan_name != plan.plan_name:
        return True
    if not latest.cis_url and plan.cis_url:
        return True
    return not latest.typical_evening_speed and bool(plan.typical_evening_speed)


class NetBargainsClient:
    """Fetches fixed-line plans for a speed tier, cheapest first.

    Attributes:
        api_key: Bearer token; requests fail without one.
        base_url: API base URL.
        page_size: Plans per page.
        page_delay: Seconds to wait between pages.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        page_size: int | None = None,
        page_delay: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else config.tiers.api_key
        self.base_url = (base_url or config.tiers.api_url).rstrip("/")
        self.page_size = page_size or config.tiers.page_size
        self.page_delay = page_delay if page_delay is not None else config.tiers.page_delay

    async def _fetch_page(self, session: aiohttp.ClientSession, speed: int, skip: int) -> dict[str, Any]:
        params = [
            ("speed", str(speed)),
            ("connection_type", "FIXED_LINE"),
            ("network_type", "NBN"),
            ("network_type", "OPTICOMM"),
            ("skip", str(skip)),
            ("limit", str(self.page_size)),
            ("sort_by", "monthly_price"),
            ("sort_order", "asc"),
        ]
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": USER_AGENT,
        }
        async with session.get(f"{self.base_url}/plans/latest", params=params, headers=headers) as response:
            if response.status >= 400:
                text = await response.text()
                raise PriceTrackerError(f"NetBargains API error: {response.status} - {text[:200]}")
            payload = await response.json(content_type=None)

        if not isinstance(payload, dict):
            raise PriceTrackerError("NetBargains API returned an unexpected payload")
        return payload

    async def fetch_plans(self, session: aiohttp.ClientSession, speed: int, all_pages: bool = False) -> list[TierPlan]:
        """Fetch plans for a speed tier.

        Args:
            session: HTTP session for the API calls.
            speed: Download speed of the tier.
            all_pages: Follow pagination instead of reading only the first
                (cheapest) page.

        Returns:
            Parsed plans. Items missing a provider, name or price are skipped.

        Raises:
            PriceTrackerError: If no API key is configured or the API answers
                with an error status.
        """
        if not self.api_key:
            raise PriceTrackerError("NETBARGAINS_API_KEY is not configured")

        items: list[dict[str, Any]] = []
        skip = 0
        while True:
            if skip:
                await asyncio.sleep(self.page_delay)
            page = await self._fetch_page(session, speed, skip)
            items.extend(page.get("items") or [])
            skip += self.page_size
            if not all_pages or not page.get("has_more"):
                break
        logger.info(f"Fetched {len(items)} plan(s) for speed tier {speed}")

        plans = []
        for item in items:
            try:
                plans.append(plan_from_item(item))
            except (ValueError, ArithmeticError) as e:
                logger.warning(f"Skipping plan item: {e}")
        return plans


class TierRefreshService:
    """Refreshes watched tiers and records their plan snapshots.

    Attributes:
        storage: Persistence for watched tiers, snapshots and refresh runs.
        client: Plan API client.
        top_plans: Cheapest plans per tier that get snapshots.
    """

    def __init__(
        self,
        storage: SQLiteStorage,
        client: NetBargainsClient | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        top_plans: int | None = None,
    ):
        self.storage = storage
        self.client = client or NetBargainsClient()
        self.session_factory = session_factory or (
            lambda: aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=config.tiers.timeout))
        )
        self.top_plans = top_plans or config.tiers.top_plans

    async def refresh(self, tier: int, force: bool) -> TierRefreshResult:
        """Refresh one watched tier.

        Args:
            tier: Speed of the watched tier.
            force: Manual refresh; reads every page of plans instead of only
                the cheapest one.

        Returns:
            Outcome of the refresh. API and parsing failures are reported
            as an ``error`` result, not raised.
        """
        watched = self.storage.get_watched_tier(tier)
        if watched is None:
            return TierRefreshResult(status=RunStatus.ERROR, message=f"Tier {tier} is not watched")

        logs: list[str] = []

        def log(message: str) -> None:
            logger.info(message)
            logs.append(message)

        started = time.monotonic()
        result = TierRefreshResult(status=RunStatus.SUCCESS)
        try:
            log(f"Refreshing tier {watched.label}")
            async with self.session_factory() as session:
                plans = await self.client.fetch_plans(session, watched.tier, all_pages=force)
            result.plans_fetched = len(plans)

            if not plans:
                log(f"No plans found for tier {watched.label}")
                result.status = RunStatus.WARNING
                result.message = "No plans found"
            else:
                result.snapshots_saved = self._save_snapshots(watched.id, plans, log)
                result.message = f"Saved {result.snapshots_saved} snapshot(s)"
        except (PriceTrackerError, aiohttp.ClientError, TimeoutError, ValueError) as e:
            error = str(e) or type(e).__name__
            log(f"Error refreshing {watched.label}: {error}")
            result.status = RunStatus.ERROR
            result.message = error

        duration_ms = int((time.monotonic() - started) * 1000)
        result.run_id = self.storage.create_tier_refresh_run(watched.id, result, logs, duration_ms)
        return result

    def _save_snapshots(self, watched_tier_id: int, plans: list[TierPlan], log: Callable[[str], None]) -> int:
        top = sorted(plans, key=lambda plan: plan.yearly_cost)[: self.top_plans]
        for position, plan in enumerate(top, start=1):
            log(f"  {position}. {plan.provider_name}: ${plan.yearly_cost}/yr")

        latest = self.storage.get_latest_tier_snapshots(watched_tier_id)
        saved = 0
        for plan in top:
            if plan_changed(latest.get(plan.provider_name), plan):
                self.storage.add_tier_snapshot(watched_tier_id, plan)
                saved += 1

        log(f"Saved {saved} new snapshot(s)" if saved else "No plan changes")
        return saved
