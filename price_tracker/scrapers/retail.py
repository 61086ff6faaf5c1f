"""Single-retailer product page strategy with tiered extraction.

Tiers, cheapest first:

1. Direct fetch and structured-data extraction (JSON-LD, embedded price
   JSON). Free, works for most supermarket and pharmacy pages.
2. Firecrawl extraction, after the cache window check.
3. Firecrawl with the stealth proxy, only for retailers known to block the
   default proxy.

A page whose structured data says the product is out of stock with no price
stops at tier 1; the extraction API tends to invent a price from related
products in that case.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any

import aiohttp
from bs4 import BeautifulSoup

from ..exceptions import StrategyFailure
from ..models import PriceObservation, ScrapeOptions, ScrapeResult, StrategyType
from ..pricing import parse_price
from ..utils import domain_of, retailer_name_from_domain
from .base import BaseStrategy, SessionFactory
from .firecrawl import FirecrawlClient

logger = logging.getLogger(__name__)

RETAILERS = {
    "bigw.com.au": "Big W",
    "coles.com.au": "Coles",
    "woolworths.com.au": "Woolworths",
    "chemistwarehouse.com.au": "Chemist Warehouse",
    "babybunting.com.au": "Baby Bunting",
    "costco.com.au": "Costco",
}
STEALTH_DOMAINS = ("bigw.com.au",)

PACK_FROM_TITLE_RE = re.compile(r"(\d+)\s*pack", re.I)
PACK_FROM_URL_RE = re.compile(r"(\d+)-?(?:pack|nappies|nappy|count)", re.I)
MULTI_BUY_RE = re.compile(r"\b(\d+)\s+for\s+\$\s*([\d,]+(?:\.\d{1,2})?)", re.I)
COSTCO_PRICE_RE = re.compile(r'"price"\s*:\s*"?([\d.]+)"?')
CHEMIST_PRICE_RE = re.compile(r'"price":\s*\{\s*"value":\s*\{\s*"amount":\s*([\d.]+)')
TITLE_SUFFIX_RE = re.compile(
    r"\s*[-|]\s*(Costco|Woolworths|Coles|Chemist Warehouse|Big W|Baby Bunting|Buy Online).*$", re.I
)


def retailer_for(url: str) -> str:
    domain = domain_of(url)
    for suffix, name in RETAILERS.items():
        if domain.endswith(suffix):
            return name
    return retailer_name_from_domain(domain)


def needs_stealth(url: str) -> bool:
    return domain_of(url).endswith(STEALTH_DOMAINS)


def pack_size_from(title: str | None, url: str) -> int | None:
    """Pack size from the product title, falling back to the URL slug."""
    match = PACK_FROM_TITLE_RE.search(title or "") or PACK_FROM_URL_RE.search(url)
    return int(match.group(1)) if match else None


class DirectExtraction:
    """What the free tier learned from a page."""

    def __init__(self) -> None:
        self.observation: PriceObservation | None = None
        self.product_name: str | None = None
        self.out_of_stock: bool = False


def _iter_json_ld(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """All JSON-LD objects on the page, flattening lists and ``@graph``."""
    objects: list[dict[str, Any]] = []
    scripts = soup.find_all("script", type="application/ld+json") + soup.find_all("script", id="pdp-schema")
    for script in scripts:
        text = script.string
        if not text:
            continue
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        stack = data if isinstance(data, list) else [data]
        for item in stack:
            if not isinstance(item, dict):
                continue
            objects.append(item)
            graph = item.get("@graph")
            if isinstance(graph, list):
                objects.extend(g for g in graph if isinstance(g, dict))
    return objects


def _extract_product_name(soup: BeautifulSoup) -> str | None:
    og = soup.find("meta", property="og:title")
    if og and og.get("content"):
        return og["content"].strip()
    if soup.title:
        title = TITLE_SUFFIX_RE.sub("", soup.title.get_text(strip=True))
        if len(title) > 5:
            return title
    return None


def _extract_multi_buy(soup: BeautifulSoup) -> tuple[int | None, Decimal | None]:
    match = MULTI_BUY_RE.search(soup.get_text(" ", strip=True))
    if not match:
        return None, None
    return int(match.group(1)), parse_price(match.group(2))


def extract_from_html(html: str, url: str) -> DirectExtraction:
    """Structured-data price extraction for the free tier.

    Args:
        html: Page HTML.
        url: Page URL, used for retailer and pack size detection.

    Returns:
        DirectExtraction with an observation when a price was found.
    """
    result = DirectExtraction()
    soup = BeautifulSoup(html, "lxml")
    retailer = retailer_for(url)
    result.product_name = _extract_product_name(soup)

    price = None
    in_stock = True

    for data in _iter_json_ld(soup):
        if data.get("@type") != "Product":
            continue
        if data.get("name"):
            result.product_name = str(data["name"])
        offers = data.get("offers")
        offers = offers if isinstance(offers, list) else [offers] if offers else []
        for offer in offers:
            if not isinstance(offer, dict):
                continue
            if offer.get("availability"):
                in_stock = "InStock" in str(offer["availability"])
            candidate = parse_price(offer.get("price") or offer.get("lowPrice"))
            if candidate is not None:
                price = candidate
        if price is None and not in_stock:
            result.out_of_stock = True
            return result
        if price is not None:
            break

    if price is None and retailer == "Costco":
        match = COSTCO_PRICE_RE.search(html)
        price = parse_price(match.group(1)) if match else None
    if price is None and retailer == "Chemist Warehouse":
        match = CHEMIST_PRICE_RE.search(html)
        price = parse_price(match.group(1)) if match else None

    if price is None or price <= 0:
        return result

    multi_buy_quantity, multi_buy_price = _extract_multi_buy(soup)
    unit_count = pack_size_from(result.product_name, url)
    result.observation = PriceObservation(
        retailer_name=retailer,
        retailer_domain=domain_of(url) or None,
        price=price,
        in_stock=in_stock,
        product_url=url,
        unit_count=unit_count,
        unit_type="item" if unit_count else None,
        multi_buy_quantity=multi_buy_quantity,
        multi_buy_price=multi_buy_price,
    )
    return result


class RetailStrategy(BaseStrategy):
    """Tiered direct-fetch, extraction API, stealth extraction API strategy."""

    strategy_type = StrategyType.RETAIL

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        firecrawl: FirecrawlClient | None = None,
    ):
        super().__init__(session_factory)
        self.firecrawl = firecrawl or FirecrawlClient()

    async def _scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        retailer = retailer_for(url)
        self._log(options, f"Scraping {retailer}: {url}")

        async with self.session_factory() as session:
            direct = await self._try_direct_fetch(session, url, options)
            if direct.observation is not None:
                prices = self._validate([direct.observation], options)
                if prices:
                    return ScrapeResult(success=True, prices=prices, product_name=direct.product_name)

            if direct.out_of_stock:
                self._log(options, "Structured data reports out of stock with no price, skipping extraction API")
                return ScrapeResult(
                    success=True, prices=[], product_name=direct.product_name, error="Product is out of stock"
                )

            if self._check_cache(options):
                return ScrapeResult(success=True, cached=True, error="Cached - recent successful scrape")

            if not self.firecrawl.enabled:
                raise StrategyFailure("No price found - direct fetch failed and FIRECRAWL_API_KEY is not set")

            blocked_status = None
            for stealth in (False, True) if needs_stealth(url) else (False,):
                self._log(options, f"Trying extraction API{' (stealth)' if stealth else ''}")
                extraction = await self.firecrawl.extract(session, url, stealth=stealth)
                if extraction is None:
                    continue
                if extraction.blocked:
                    blocked_status = extraction.status_code
                    self._log(options, f"Extraction API blocked ({extraction.status_code})")
                    continue
                if extraction.price is None:
                    self._log(options, "Extraction API returned no price")
                    continue

                if extraction.multi_buy_quantity and extraction.multi_buy_price:
                    self._log(
                        options,
                        f"Ignoring extracted multi-buy {extraction.multi_buy_quantity} for "
                        f"${extraction.multi_buy_price}, only page markup is trusted for deals",
                    )
                product_name = extraction.product_name or direct.product_name
                unit_count = extraction.pack_size or pack_size_from(product_name, url)
                observation = PriceObservation(
                    retailer_name=retailer,
                    retailer_domain=domain_of(url) or None,
                    price=extraction.price,
                    in_stock=extraction.in_stock,
                    product_url=url,
                    unit_count=unit_count,
                    unit_type="item" if unit_count else None,
                )
                prices = self._validate([observation], options)
                if prices:
                    return ScrapeResult(success=True, prices=prices, product_name=product_name)

        if blocked_status is not None:
            raise StrategyFailure(f"blocked ({blocked_status})")
        raise StrategyFailure("No price found - extraction failed")

    async def _try_direct_fetch(
        self, session: aiohttp.ClientSession, url: str, options: ScrapeOptions
    ) -> DirectExtraction:
        self._log(options, "Trying direct fetch")
        try:
            html = await self._fetch_html(session, url)
        except StrategyFailure as e:
            self._log(options, f"Direct fetch failed: {e}")
            return DirectExtraction()
        except (aiohttp.ClientError, TimeoutError) as e:
            self._log(options, f"Direct fetch error: {e}")
            return DirectExtraction()

        self._log(options, f"Direct fetch returned {len(html)} chars")
        extraction = extract_from_html(html, url)
        if extraction.observation is not None:
            self._log(options, f"Direct fetch extracted ${extraction.observation.price}")
        return extraction
