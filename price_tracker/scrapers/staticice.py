"""StaticICE price aggregator strategy.

StaticICE lists many retailers on one static HTML page. Each price is a link
to ``/cgi-bin/redirect.cgi`` whose ``name`` query parameter is the retailer
and whose ``newurl`` parameter is the retailer's product page.
"""

import logging
import re
import time
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from ..exceptions import StrategyFailure
from ..models import PriceObservation, ScrapeOptions, ScrapeResult, StrategyType
from ..pricing import parse_price
from ..utils import domain_of
from .base import BaseStrategy

logger = logging.getLogger(__name__)

BASE_URL = "https://www.staticice.com.au"
PRICE_LINK_RE = re.compile(r"^\[?\$?([\d,]+\.?\d*)\]?$")
TITLE_SUFFIX_RE = re.compile(r"\s*[-|]\s*StaticICE.*$", re.I)


def add_cache_buster(url: str) -> str:
    """Append a ``_cb`` timestamp parameter so caches serve fresh pages."""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}_cb={int(time.time() * 1000)}"


def _extract_product_name(soup: BeautifulSoup) -> str | None:
    title = soup.title.get_text(strip=True) if soup.title else ""
    name = TITLE_SUFFIX_RE.sub("", title).strip()
    if name:
        return name
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(strip=True) or None
    return None


def parse_staticice_html(html: str) -> tuple[list[PriceObservation], str | None]:
    """Parse every retailer price link on a StaticICE results page.

    Duplicate (retailer, price) pairs are collapsed.

    Args:
        html: Page HTML.

    Returns:
        Tuple of observations and the product name, if found.
    """
    soup = BeautifulSoup(html, "lxml")
    observations: list[PriceObservation] = []
    seen: set[tuple[str, str]] = set()

    for link in soup.select('a[href*="redirect.cgi"]'):
        match = PRICE_LINK_RE.match(link.get_text(strip=True))
        if not match:
            continue
        price = parse_price(match.group(1))
        if price is None:
            continue

        href = link.get("href", "")
        params = parse_qs(urlparse(href).query)
        retailer_name = (params.get("name") or [""])[0].strip()
        if len(retailer_name) < 2:
            continue

        product_url = (params.get("newurl") or [None])[0] or urljoin(BASE_URL, href)

        key = (retailer_name.lower(), str(price))
        if key in seen:
            continue
        seen.add(key)

        observations.append(
            PriceObservation(
                retailer_name=retailer_name,
                retailer_domain=domain_of(product_url) or None,
                price=price,
                product_url=product_url,
            )
        )

    return observations, _extract_product_name(soup)


class StaticIceStrategy(BaseStrategy):
    """Single-tier strategy for the StaticICE aggregator.

    A plain fetch is free, so no cache check is applied.
    """

    strategy_type = StrategyType.STATICICE

    async def _scrape(self, url: str, hints: str | None, options: ScrapeOptions) -> ScrapeResult:
        async with self.session_factory() as session:
            html = await self._fetch_html(session, add_cache_buster(url))

        observations, product_name = parse_staticice_html(html)
        if not observations and "redirect.cgi" not in html:
            raise StrategyFailure("No price listings found on page")

        prices = self._validate(observations, options, max_price=options.settings.aggregator_max_price)
        self._log(options, f"Parsed {len(observations)} listing(s), {len(prices)} accepted")
        return ScrapeResult(success=True, prices=prices, product_name=product_name)
