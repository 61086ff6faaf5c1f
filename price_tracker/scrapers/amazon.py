"""Amazon marketplace strategy.

Amazon blocks plain fetches reliably, so this strategy goes straight to the
extraction API after the cache window check. Country, currency and retailer
name come from the marketplace host.
"""

import logging
import re

from ..exceptions import StrategyFailure
from ..models import PriceObservation, ScrapeOptions, ScrapeResult, StrategyType
from ..utils import domain_of
from .base import BaseStrategy, SessionFactory
from .firecrawl import FirecrawlClient

logger = logging.getLogger(__name__)

# host suffix -> (country, currency, retailer name)
MARKETPLACES = {
    "amazon.com.au": ("AU", "AUD", "Amazon Australia"),
    "amazon.co.uk": ("GB", "GBP", "Amazon UK"),
    "amazon.ca": ("CA", "CAD", "Amazon Canada"),
    "amazon.de": ("DE", "EUR", "Amazon Germany"),
    "amazon.co.jp": ("JP", "JPY", "Amazon Japan"),
}
DEFAULT_MARKETPLACE = ("US", "USD", "Amazon")

TITLE_PACK_PATTERNS = (
    re.compile(r"pack\s+of\s+(\d+)", re.I),
    re.compile(r"(\d+)\s*-?\s*(?:pack|count|ct|pcs|pieces)\b", re.I),
    re.compile(r"\((\d+)\s*(?:pack|count|ct)\)", re.I),
)
URL_PACK_RE = re.compile(r"(\d+)-?(?:pack|count|ct|pcs|pieces)", re.I)


def marketplace_for(url: str) -> tuple[str, str, str]:
    """(country, currency, retailer name) for an Amazon URL."""
    domain = domain_of(url)
    for suffix, marketplace in MARKETPLACES.items():
        if domain.endswith(suffix):
            return marketplace
    return DEFAULT_MARKETPLACE


def pack_size_from_title(title: str) -> int | None:
    for pattern in TITLE_PACK_PATTERNS:
        match = pattern.search(title)
        if match:
            size = int(match.group(1))
            if 2 <= size <= 1000:
                return size
    return None


def pack_size_from_url(url: str) -> int | None:
    match = URL_PACK_RE.search(url)
    if match:
        size = int(match.group(1))
        if 2 <= size <= 1000:
            return size
    return None


class AmazonStrategy(BaseStrategy):
    """Extraction-API-only strategy for Amazon marketplaces."""

    strategy_type = StrategyType.AMAZON

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        firecrawl: FirecrawlClient | None = None,
    ):
        super().__init__(session_factory)
        self.firecrawl = firecrawl or FirecrawlClient()

    async def _scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        country, currency, retailer_name = marketplace_for(url)
        self._log(options, f"Scraping {retailer_name}: {url}")

        if self._check_cache(options):
            return ScrapeResult(success=True, cached=True, error="Cached - recent successful scrape")

        if not self.firecrawl.enabled:
            raise StrategyFailure("FIRECRAWL_API_KEY is not set")

        async with self.session_factory() as session:
            extraction = await self.firecrawl.extract(session, url, country=country)

        if extraction is None:
            raise StrategyFailure("Extraction API request failed")
        if extraction.blocked:
            raise StrategyFailure(f"blocked ({extraction.status_code})")
        if extraction.price is None:
            raise StrategyFailure("No price found - extraction failed")

        product_name = extraction.product_name
        unit_count = (
            extraction.pack_size
            or pack_size_from_title(product_name or "")
            or pack_size_from_url(url)
        )
        self._log(
            options,
            f"Extracted {currency} {extraction.price}{f' ({unit_count} pack)' if unit_count else ''}",
        )

        observation = PriceObservation(
            retailer_name=retailer_name,
            retailer_domain=domain_of(url) or None,
            price=extraction.price,
            currency=currency,
            in_stock=extraction.in_stock,
            product_url=url,
            unit_count=unit_count,
            unit_type="item" if unit_count else None,
        )
        prices = self._validate([observation], options)
        if not prices:
            raise StrategyFailure(f"Extracted price {extraction.price} failed validation")
        return ScrapeResult(success=True, prices=prices, product_name=product_name)
