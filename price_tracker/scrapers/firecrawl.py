"""Client for the Firecrawl structured extraction API.

Firecrawl renders a page on its side and returns JSON matching a schema.
Each call costs credits, so strategies only reach for it after the free
direct-fetch tier has failed and the cache window has been checked.
"""

import logging
from decimal import Decimal
from typing import Any

import aiohttp
from pydantic import BaseModel

from ..config import config
from ..pricing import parse_price

logger = logging.getLogger(__name__)

EXTRACT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "productName": {"type": "string", "description": "The name of the product"},
        "price": {
            "type": "number",
            "description": (
                "The regular price for buying ONE item (not the multi-buy deal price). "
                "This is the price shown when adding just 1 to cart, e.g., $39.00"
            ),
        },
        "originalPrice": {"type": "number", "description": "The original/was price if on sale"},
        "inStock": {"type": "boolean", "description": "Whether the product is in stock"},
        "packSize": {"type": "number", "description": "Number of items in the pack"},
        "multiBuyQuantity": {
            "type": "number",
            "description": 'Quantity required for multi-buy deal (e.g., 2 for "2 for $55")',
        },
        "multiBuyPrice": {
            "type": "number",
            "description": 'Total price for multi-buy deal in dollars (e.g., 55 for "2 for $55.00")',
        },
    },
    "required": ["price"],
}

EXTRACT_PROMPT = (
    "Extract the product pricing information. Focus on the CURRENT price shown for buying ONE "
    "item (not bulk deals). If there is a multi-buy deal (like \"2 for $55\"), extract both the "
    "single item price AND the multi-buy details separately."
)

BLOCKED_STATUS_CODES = (403, 503)


class FirecrawlExtraction(BaseModel):
    """Structured fields returned by one extraction call."""

    product_name: str | None = None
    price: Decimal | None = None
    in_stock: bool = True
    pack_size: int | None = None
    multi_buy_quantity: int | None = None
    multi_buy_price: Decimal | None = None
    status_code: int | None = None

    @property
    def blocked(self) -> bool:
        return self.status_code in BLOCKED_STATUS_CODES and not self.price


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_extraction(payload: dict[str, Any]) -> FirecrawlExtraction | None:
    """Parse a ``/v1/scrape`` response body.

    Args:
        payload: Decoded JSON response.

    Returns:
        Extraction, or None when the response carries no extracted data.
    """
    data = payload.get("data") or {}
    extract = data.get("json") or data.get("extract")
    metadata = data.get("metadata") or {}
    status_code = _to_int(metadata.get("statusCode"))

    if not isinstance(extract, dict):
        if status_code is not None:
            return FirecrawlExtraction(status_code=status_code)
        return None

    return FirecrawlExtraction(
        product_name=extract.get("productName") or None,
        price=parse_price(extract.get("price")),
        in_stock=extract.get("inStock") is not False,
        pack_size=_to_int(extract.get("packSize")),
        multi_buy_quantity=_to_int(extract.get("multiBuyQuantity")),
        multi_buy_price=parse_price(extract.get("multiBuyPrice")),
        status_code=status_code,
    )


class FirecrawlClient:
    """Thin async wrapper over the Firecrawl scrape endpoint.

    Attributes:
        api_key: API key; the client is disabled without one.
        endpoint: Scrape endpoint URL.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str | None = None,
        endpoint: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else config.scraper.firecrawl_api_key
        self.endpoint = endpoint or config.scraper.firecrawl_url
        self.timeout = timeout or config.scraper.firecrawl_timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def extract(
        self,
        session: aiohttp.ClientSession,
        url: str,
        stealth: bool = False,
        country: str | None = None,
    ) -> FirecrawlExtraction | None:
        """Extract structured pricing data from a page.

        Args:
            session: HTTP session for the API call.
            url: Page to extract.
            stealth: Use the stealth proxy for sites that block the default one.
            country: ISO country to render the page from, for region-priced sites.

        Returns:
            Extraction, or None if the API call failed.
        """
        body = {
            "url": url,
            "formats": ["json"],
            "jsonOptions": {"schema": EXTRACT_SCHEMA, "prompt": EXTRACT_PROMPT},
            "proxy": "stealth" if stealth else "auto",
        }
        if country:
            language = "en-US" if country == "US" else f"en-{country}"
            body["location"] = {"country": country, "languages": [language]}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with session.post(
                self.endpoint,
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                payload = await response.json(content_type=None)
                if response.status >= 400:
                    error = payload.get("error") if isinstance(payload, dict) else None
                    logger.warning(f"Firecrawl returned HTTP {response.status} for {url}: {error}")
                    return FirecrawlExtraction(status_code=response.status)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.error(f"Firecrawl request failed for {url}: {e}")
            return None

        if not isinstance(payload, dict):
            return None
        return parse_extraction(payload)
