"""Tests for the concrete extraction strategies.

HTTP is served by ``FakeSession``; no test touches the network or a real
browser.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import aiohttp
import pytest

from price_tracker.models import ScrapeOptions
from price_tracker.scrapers.amazon import AmazonStrategy, marketplace_for, pack_size_from_title, pack_size_from_url
from price_tracker.scrapers.firecrawl import FirecrawlClient, parse_extraction
from price_tracker.scrapers.pcpartpicker import (
    PCPartPickerStrategy,
    format_retailer_name,
    parse_pcpartpicker_html,
)
from price_tracker.scrapers.retail import RetailStrategy, extract_from_html, needs_stealth, retailer_for
from price_tracker.scrapers.staticice import StaticIceStrategy, add_cache_buster, parse_staticice_html
from tests.fakes import FakeResponse, FakeSession

FIRECRAWL_URL = "https://api.firecrawl.test/v1/scrape"

STATICICE_HTML = """
<html><head><title>Huggies Ultra Dry Size 4 - StaticICE Australia</title></head>
<body><table>
<tr><td><a href="/cgi-bin/redirect.cgi?name=Coles&amp;newurl=https%3A%2F%2Fwww.coles.com.au%2Fp%2F1">$39.99</a></td></tr>
<tr><td><a href="/cgi-bin/redirect.cgi?name=Coles&amp;newurl=https%3A%2F%2Fwww.coles.com.au%2Fp%2F1">$39.99</a></td></tr>
<tr><td><a href="/cgi-bin/redirect.cgi?name=Big+W&amp;newurl=https%3A%2F%2Fwww.bigw.com.au%2Fp%2F2">$1,249.00</a></td></tr>
<tr><td><a href="/cgi-bin/redirect.cgi?name=X&amp;newurl=https%3A%2F%2Fx.com%2F">$10.00</a></td></tr>
<tr><td><a href="/cgi-bin/redirect.cgi?name=Shop">more details</a></td></tr>
</table></body></html>
"""

PCPARTPICKER_HTML = """
<html><body><table><tbody>
<tr>
  <td class="td__logo"><a href="/mr/scorptec/abc"><img src="https://cdn.example/merchant_scorptec.png" alt="Scorptec"></a></td>
  <td class="td__base">$1,349.00</td>
  <td class="td__availability">In stock</td>
  <td class="td__buy"><a href="https://www.scorptec.com.au/product/1">Buy</a></td>
</tr>
<tr>
  <td class="td__logo"><img src="https://cdn.example/merchant_mwave.png" alt=""></td>
  <td class="td__base">$1,299.00</td>
  <td class="td__availability td__availability--outOfStock">Out of stock</td>
</tr>
<tr>
  <td class="td__logo"><img src="https://cdn.example/merchant_scorptec.png" alt="Scorptec"></td>
  <td class="td__base">$1,399.00</td>
</tr>
</tbody></table></body></html>
"""

COLES_URL = "https://www.coles.com.au/product/huggies-ultra-dry-nappies-123"
BIGW_URL = "https://www.bigw.com.au/product/huggies-ultra-dry-nappies/p/456"

RETAIL_HTML = """
<html><head><title>Huggies Ultra Dry Nappies | Coles</title>
<script type="application/ld+json">
{"@type": "Product", "name": "Huggies Ultra Dry Nappies Size 4 54 Pack",
 "offers": {"@type": "Offer", "price": "39.99", "availability": "https://schema.org/InStock"}}
</script></head>
<body><p>Special: 2 for $70.00</p></body></html>
"""

OUT_OF_STOCK_HTML = """
<html><head>
<script type="application/ld+json">
{"@type": "Product", "name": "Huggies Ultra Dry Nappies",
 "offers": {"@type": "Offer", "availability": "https://schema.org/OutOfStock"}}
</script></head><body></body></html>
"""


def _extraction(price=None, status_code=200, **extra) -> FakeResponse:
    extract = {"productName": "Huggies Ultra Dry Nappies 54 Pack", **extra}
    if price is not None:
        extract["price"] = price
    return FakeResponse(
        json_data={"success": True, "data": {"json": extract, "metadata": {"statusCode": status_code}}}
    )


def _blocked(status_code=403) -> FakeResponse:
    return FakeResponse(json_data={"success": True, "data": {"metadata": {"statusCode": status_code}}})


def _firecrawl() -> FirecrawlClient:
    return FirecrawlClient(api_key="test-key", endpoint=FIRECRAWL_URL, timeout=5)


# StaticICE


def test_add_cache_buster():
    assert "?_cb=" in add_cache_buster("https://www.staticice.com.au/cgi-bin/search.cgi")
    assert "&_cb=" in add_cache_buster("https://www.staticice.com.au/cgi-bin/search.cgi?q=x")


def test_parse_staticice_html():
    """Price links are parsed, deduplicated and filtered."""
    observations, product_name = parse_staticice_html(STATICICE_HTML)

    assert product_name == "Huggies Ultra Dry Size 4"
    assert [(o.retailer_name, o.price) for o in observations] == [
        ("Coles", Decimal("39.99")),
        ("Big W", Decimal("1249.00")),
    ]
    assert observations[0].product_url == "https://www.coles.com.au/p/1"
    assert observations[0].retailer_domain == "coles.com.au"


@pytest.mark.asyncio
async def test_staticice_strategy_uses_aggregator_ceiling():
    session = FakeSession({"https://www.staticice.com.au": FakeResponse(STATICICE_HTML)})
    strategy = StaticIceStrategy(session_factory=lambda: session)

    result = await strategy.scrape(
        "https://www.staticice.com.au/cgi-bin/search.cgi?q=huggies", None, ScrapeOptions()
    )

    assert result.success is True
    assert len(result.prices) == 2
    assert "_cb=" in session.get_calls[0]


@pytest.mark.asyncio
async def test_staticice_strategy_without_listings_fails():
    session = FakeSession({"https://www.staticice.com.au": FakeResponse("<html><body>Nothing</body></html>")})
    strategy = StaticIceStrategy(session_factory=lambda: session)

    result = await strategy.scrape("https://www.staticice.com.au/cgi-bin/search.cgi?q=x", None, ScrapeOptions())

    assert result.success is False
    assert result.error == "No price listings found on page"


@pytest.mark.asyncio
async def test_staticice_strategy_blocked():
    session = FakeSession({"https://www.staticice.com.au": FakeResponse(status=403)})
    strategy = StaticIceStrategy(session_factory=lambda: session)

    result = await strategy.scrape("https://www.staticice.com.au/cgi-bin/search.cgi?q=x", None, ScrapeOptions())

    assert result.success is False
    assert result.error == "blocked (403)"


# PCPartPicker


def test_format_retailer_name():
    assert format_retailer_name("pccasegear2") == "PC Case Gear"
    assert format_retailer_name("mwavecomau") == "Mwave"
    assert format_retailer_name("newshop") == "Newshop"


def test_parse_pcpartpicker_html():
    observations = parse_pcpartpicker_html(PCPARTPICKER_HTML)

    assert [(o.retailer_name, o.price, o.in_stock) for o in observations] == [
        ("Scorptec", Decimal("1349.00"), True),
        ("Mwave", Decimal("1299.00"), False),
    ]
    assert observations[0].product_url == "https://www.scorptec.com.au/product/1"
    assert observations[1].product_url is None


class FakeBrowser:
    def __init__(self, html: str):
        self.html = html
        self.rendered: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def render(self, url, wait_for_selector=None):
        self.rendered.append(url)
        return self.html


@pytest.mark.asyncio
async def test_pcpartpicker_direct_fetch_skips_browser():
    session = FakeSession({"https://au.pcpartpicker.com": FakeResponse(PCPARTPICKER_HTML)})
    browser = FakeBrowser("")
    strategy = PCPartPickerStrategy(session_factory=lambda: session, browser_factory=lambda: browser)

    result = await strategy.scrape("https://au.pcpartpicker.com/product/abc", None, ScrapeOptions())

    assert result.success is True
    assert len(result.prices) == 2
    assert browser.rendered == []


@pytest.mark.asyncio
async def test_pcpartpicker_falls_back_to_headless_render():
    """A blocked fetch is retried in the headless browser."""
    session = FakeSession({"https://au.pcpartpicker.com": FakeResponse(status=403)})
    browser = FakeBrowser(PCPARTPICKER_HTML)
    strategy = PCPartPickerStrategy(session_factory=lambda: session, browser_factory=lambda: browser)

    result = await strategy.scrape("https://au.pcpartpicker.com/product/abc", None, ScrapeOptions())

    assert result.success is True
    assert len(result.prices) == 2
    assert browser.rendered == ["https://au.pcpartpicker.com/product/abc"]


@pytest.mark.asyncio
async def test_pcpartpicker_connection_error_falls_back_to_headless_render():
    """A network error on the plain fetch still reaches the headless tier."""
    class ResetSession(FakeSession):
        def get(self, url, **kwargs):
            self.get_calls.append(url)
            raise aiohttp.ClientConnectionError("connection reset by peer")

    session = ResetSession()
    browser = FakeBrowser(PCPARTPICKER_HTML)
    strategy = PCPartPickerStrategy(session_factory=lambda: session, browser_factory=lambda: browser)

    result = await strategy.scrape("https://au.pcpartpicker.com/product/abc", None, ScrapeOptions())

    assert result.success is True
    assert len(result.prices) == 2
    assert len(session.get_calls) == 1
    assert browser.rendered == ["https://au.pcpartpicker.com/product/abc"]


@pytest.mark.asyncio
async def test_pcpartpicker_render_failure_reports_both_tiers():
    class BrokenBrowser(FakeBrowser):
        async def render(self, url, wait_for_selector=None):
            raise RuntimeError("chromium missing")

    session = FakeSession({"https://au.pcpartpicker.com": FakeResponse(status=403)})
    strategy = PCPartPickerStrategy(session_factory=lambda: session, browser_factory=lambda: BrokenBrowser(""))

    result = await strategy.scrape("https://au.pcpartpicker.com/product/abc", None, ScrapeOptions())

    assert result.success is False
    assert "blocked (403)" in result.error
    assert "chromium missing" in result.error


# Firecrawl


def test_parse_extraction_reads_json_or_extract():
    extraction = parse_extraction(
        {"data": {"extract": {"price": "42.50", "inStock": False, "packSize": 54}, "metadata": {"statusCode": 200}}}
    )
    assert extraction.price == Decimal("42.50")
    assert extraction.in_stock is False
    assert extraction.pack_size == 54
    assert extraction.blocked is False


def test_parse_extraction_blocked_without_data():
    extraction = parse_extraction({"data": {"metadata": {"statusCode": 403}}})
    assert extraction.blocked is True
    assert parse_extraction({"data": {}}) is None


# Retail


def test_retailer_detection():
    assert retailer_for(COLES_URL) == "Coles"
    assert retailer_for("https://www.jbhifi.com.au/products/x") == "Jbhifi"
    assert needs_stealth(BIGW_URL)
    assert not needs_stealth(COLES_URL)


def test_extract_from_html_json_ld():
    extraction = extract_from_html(RETAIL_HTML, COLES_URL)

    observation = extraction.observation
    assert observation.retailer_name == "Coles"
    assert observation.price == Decimal("39.99")
    assert observation.unit_count == 54
    assert observation.multi_buy_quantity == 2
    assert observation.multi_buy_price == Decimal("70.00")
    assert extraction.product_name == "Huggies Ultra Dry Nappies Size 4 54 Pack"


def test_extract_from_html_out_of_stock():
    extraction = extract_from_html(OUT_OF_STOCK_HTML, COLES_URL)
    assert extraction.observation is None
    assert extraction.out_of_stock is True


def test_extract_from_html_costco_embedded_price():
    html = '<html><script>window.product = {"price": "54.99"};</script></html>'
    extraction = extract_from_html(html, "https://www.costco.com.au/p/123")
    assert extraction.observation.price == Decimal("54.99")
    assert extraction.observation.retailer_name == "Costco"


@pytest.mark.asyncio
async def test_retail_direct_fetch_tier():
    session = FakeSession({COLES_URL: FakeResponse(RETAIL_HTML)})
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(COLES_URL, None, ScrapeOptions())

    assert result.success is True
    assert result.prices[0].price == Decimal("39.99")
    assert result.prices[0].multi_buy_quantity == 2
    assert session.post_calls == []


@pytest.mark.asyncio
async def test_retail_out_of_stock_stops_before_extraction_api():
    session = FakeSession({COLES_URL: FakeResponse(OUT_OF_STOCK_HTML)})
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(COLES_URL, None, ScrapeOptions())

    assert result.success is True
    assert result.prices == []
    assert result.error == "Product is out of stock"
    assert session.post_calls == []


@pytest.mark.asyncio
async def test_retail_cache_window_skips_extraction_api():
    session = FakeSession()
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())
    options = ScrapeOptions(last_successful_run_at=datetime.now(UTC) - timedelta(hours=1))

    result = await strategy.scrape(COLES_URL, None, options)

    assert result.cached is True
    assert session.get_calls == [COLES_URL]
    assert session.post_calls == []


@pytest.mark.asyncio
async def test_retail_extraction_api_tier():
    """Extraction API multi-buy figures are not trusted."""
    session = FakeSession(post_responses=[_extraction(42.5, multiBuyQuantity=2, multiBuyPrice=70)])
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(COLES_URL, None, ScrapeOptions())

    assert result.success is True
    price = result.prices[0]
    assert price.price == Decimal("42.5")
    assert price.unit_count == 54
    assert price.multi_buy_quantity is None

    call = session.post_calls[0]
    assert call["url"] == FIRECRAWL_URL
    assert call["json"]["proxy"] == "auto"
    assert call["headers"]["Authorization"] == "Bearer test-key"


@pytest.mark.asyncio
async def test_retail_stealth_tier_after_block():
    session = FakeSession(post_responses=[_blocked(403), _extraction(44.0)])
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(BIGW_URL, None, ScrapeOptions())

    assert result.success is True
    assert result.prices[0].retailer_name == "Big W"
    assert [c["json"]["proxy"] for c in session.post_calls] == ["auto", "stealth"]


@pytest.mark.asyncio
async def test_retail_all_tiers_blocked():
    session = FakeSession(post_responses=[_blocked(403), _blocked(403)])
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(BIGW_URL, None, ScrapeOptions())

    assert result.success is False
    assert result.error == "blocked (403)"


@pytest.mark.asyncio
async def test_retail_no_price_anywhere():
    session = FakeSession(post_responses=[_extraction()])
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape(COLES_URL, None, ScrapeOptions())

    assert result.success is False
    assert result.error == "No price found - extraction failed"
    assert len(session.post_calls) == 1


@pytest.mark.asyncio
async def test_retail_without_api_key_fails_after_direct_tier():
    session = FakeSession()
    strategy = RetailStrategy(session_factory=lambda: session, firecrawl=FirecrawlClient(api_key=""))

    result = await strategy.scrape(COLES_URL, None, ScrapeOptions())

    assert result.success is False
    assert "FIRECRAWL_API_KEY" in result.error


# Amazon


def test_marketplace_detection():
    assert marketplace_for("https://www.amazon.com.au/dp/B0") == ("AU", "AUD", "Amazon Australia")
    assert marketplace_for("https://www.amazon.co.uk/dp/B0") == ("GB", "GBP", "Amazon UK")
    assert marketplace_for("https://www.amazon.com/dp/B0") == ("US", "USD", "Amazon")


def test_amazon_pack_size_detection():
    assert pack_size_from_title("Huggies Nappies, Pack of 108") == 108
    assert pack_size_from_title("Huggies Nappies (54 Count)") == 54
    assert pack_size_from_title("Huggies Nappies") is None
    assert pack_size_from_url("https://www.amazon.com.au/huggies-96-pack/dp/B0") == 96
    assert pack_size_from_url("https://www.amazon.com.au/huggies-5000-pack/dp/B0") is None


@pytest.mark.asyncio
async def test_amazon_extraction_uses_marketplace_location():
    session = FakeSession(post_responses=[_extraction(59.99, productName="Huggies Nappies, 108 Count")])
    strategy = AmazonStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape("https://www.amazon.com.au/dp/B0TEST", None, ScrapeOptions())

    assert result.success is True
    price = result.prices[0]
    assert price.retailer_name == "Amazon Australia"
    assert price.currency == "AUD"
    assert price.unit_count == 108
    assert session.post_calls[0]["json"]["location"] == {"country": "AU", "languages": ["en-AU"]}


@pytest.mark.asyncio
async def test_amazon_cache_skip_makes_no_request():
    session = FakeSession()
    strategy = AmazonStrategy(session_factory=lambda: session, firecrawl=_firecrawl())
    options = ScrapeOptions(last_successful_run_at=datetime.now(UTC) - timedelta(hours=2))

    result = await strategy.scrape("https://www.amazon.com.au/dp/B0TEST", None, options)

    assert result.cached is True
    assert session.post_calls == []


@pytest.mark.asyncio
async def test_amazon_blocked():
    session = FakeSession(post_responses=[_blocked(503)])
    strategy = AmazonStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape("https://www.amazon.com.au/dp/B0TEST", None, ScrapeOptions())

    assert result.success is False
    assert result.error == "blocked (503)"


@pytest.mark.asyncio
async def test_amazon_api_error_without_price():
    session = FakeSession()
    strategy = AmazonStrategy(session_factory=lambda: session, firecrawl=_firecrawl())

    result = await strategy.scrape("https://www.amazon.com.au/dp/B0TEST", None, ScrapeOptions())

    assert result.success is False
    assert result.error == "No price found - extraction failed"
