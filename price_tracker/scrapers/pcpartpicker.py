"""PCPartPicker comparison table strategy.

Tier 1 fetches the product page directly. PCPartPicker frequently answers
automated requests with a bot check, so tier 2 renders the page in headless
Chromium when the plain fetch is blocked or yields no price rows.
"""

import logging
import re
from collections.abc import Callable

import aiohttp
from bs4 import BeautifulSoup

from ..config import config
from ..exceptions import StrategyFailure
from ..models import PriceObservation, ScrapeOptions, ScrapeResult, StrategyType
from ..pricing import parse_price
from ..utils import domain_of
from .base import BaseStrategy, SessionFactory
from .headless import HeadlessBrowser
from .staticice import add_cache_buster

logger = logging.getLogger(__name__)

PRICE_RE = re.compile(r"\$([\d,]+\.?\d*)")
MERCHANT_SRC_RE = re.compile(r"merchant_([a-z]+)", re.I)
PRICE_TABLE_SELECTOR = "td.td__base"

KNOWN_RETAILERS = {
    "centrecom": "Centre Com",
    "centre com": "Centre Com",
    "mwave": "Mwave",
    "mwave australia": "Mwave",
    "scorptec": "Scorptec",
    "umart": "Umart",
    "pccasegear": "PC Case Gear",
    "pc case gear": "PC Case Gear",
    "pccg": "PC Case Gear",
    "amazon": "Amazon AU",
    "amazonau": "Amazon AU",
    "amazon au": "Amazon AU",
    "bpctech": "BPC Tech",
    "ple": "PLE Computers",
    "plecom": "PLE Computers",
    "ple computers": "PLE Computers",
    "jw": "JW Computers",
    "jwcom": "JW Computers",
    "jw computers": "JW Computers",
    "austin computers": "Austin Computers",
    "skycomp": "Skycomp",
    "pcbyte": "PC Byte",
    "shoppingexpress": "Shopping Express",
    "computeralliance": "Computer Alliance",
    "computer alliance": "Computer Alliance",
}


def format_retailer_name(raw: str) -> str:
    """Normalize a merchant logo alt/slug to a consistent retailer name."""
    name = re.sub(r"\d+$", "", raw)
    name = re.sub(r"comau$", "", name, flags=re.I).strip()
    known = KNOWN_RETAILERS.get(name.lower())
    if known:
        return known
    return name[:1].upper() + name[1:]


def parse_pcpartpicker_html(html: str) -> list[PriceObservation]:
    """Parse the merchant price table of a PCPartPicker product page.

    One observation per retailer; later rows for the same retailer are
    ignored.
    """
    soup = BeautifulSoup(html, "lxml")
    observations: list[PriceObservation] = []
    seen: set[str] = set()

    for row in soup.find_all("tr"):
        logo_cell = row.select_one("td.td__logo")
        if logo_cell is None:
            continue
        merchant_img = logo_cell.select_one('img[src*="merchant"]')
        if merchant_img is None:
            continue

        retailer_name = merchant_img.get("alt", "").strip()
        if not retailer_name:
            match = MERCHANT_SRC_RE.search(merchant_img.get("src", ""))
            retailer_name = match.group(1) if match else ""
        if not retailer_name:
            continue
        retailer_name = format_retailer_name(retailer_name)

        base_cell = row.select_one(PRICE_TABLE_SELECTOR)
        match = PRICE_RE.search(base_cell.get_text(strip=True)) if base_cell else None
        price = parse_price(match.group(1)) if match else None
        if price is None:
            continue

        availability = row.select_one("td.td__availability")
        in_stock = availability is None or "td__availability--outOfStock" not in availability.get("class", [])

        buy_link = row.select_one("td.td__buy a") or logo_cell.find("a")
        product_url = buy_link.get("href") if buy_link else None

        if retailer_name.lower() in seen:
            continue
        seen.add(retailer_name.lower())

        observations.append(
            PriceObservation(
                retailer_name=retailer_name,
                retailer_domain=domain_of(product_url) or None if product_url else None,
                price=price,
                in_stock=in_stock,
                product_url=product_url or None,
            )
        )

    return observations


class PCPartPickerStrategy(BaseStrategy):
    """Two-tier strategy: plain fetch, then headless render."""

    strategy_type = StrategyType.PCPARTPICKER

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        browser_factory: Callable[[], HeadlessBrowser] | None = None,
    ):
        super().__init__(session_factory)
        self.browser_factory = browser_factory or (
            lambda: HeadlessBrowser(timeout_seconds=config.scraper.browser_timeout)
        )

    async def _scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        observations: list[PriceObservation] = []
        fetch_error: Exception | None = None

        try:
            async with self.session_factory() as session:
                html = await self._fetch_html(session, add_cache_buster(url))
            observations = parse_pcpartpicker_html(html)
            self._log(options, f"Direct fetch found {len(observations)} row(s)")
        except (StrategyFailure, aiohttp.ClientError, TimeoutError) as e:
            fetch_error = e
            self._log(options, f"Direct fetch failed: {e}")

        if not observations:
            self._log(options, "Falling back to headless browser")
            try:
                async with self.browser_factory() as browser:
                    html = await browser.render(url, wait_for_selector=PRICE_TABLE_SELECTOR)
            except Exception as e:
                reason = f"{fetch_error}; " if fetch_error else ""
                raise StrategyFailure(f"{reason}headless render failed: {e}") from e
            observations = parse_pcpartpicker_html(html)
            self._log(options, f"Headless render found {len(observations)} row(s)")

        prices = self._validate(observations, options, max_price=options.settings.aggregator_max_price)
        return ScrapeResult(success=True, prices=prices)
