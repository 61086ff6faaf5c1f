"""HTTP helpers shared by extraction strategies and notification channels."""

import logging
from urllib.parse import urlparse

import aiohttp

from .config import config

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


def create_session(timeout: float | None = None) -> aiohttp.ClientSession:
    """Create configured aiohttp session for web scraping.

    Sets up session with connection limits, timeouts, and browser-like headers
    so retailer pages serve the same HTML a desktop browser would get.

    Args:
        timeout: Total request timeout in seconds, defaults to the scraper config.

    Returns:
        aiohttp.ClientSession: Configured HTTP session for making requests.
    """
    connector = aiohttp.TCPConnector(limit=20, limit_per_host=5)
    client_timeout = aiohttp.ClientTimeout(total=timeout or config.scraper.request_timeout)

    headers = {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-AU,en;q=0.9",
        "Accept-Encoding": "gzip, deflate",
        "DNT": "1",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
    }

    return aiohttp.ClientSession(connector=connector, timeout=client_timeout, headers=headers)


def domain_of(url: str) -> str:
    """Host name of a URL without the ``www.`` prefix.

    Returns an empty string for unparseable URLs.
    """
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host.removeprefix("www.")


def retailer_name_from_domain(domain: str) -> str:
    """Best-effort display name from a host name (``jbhifi.com.au`` -> ``Jbhifi``)."""
    label = domain.split(".")[0] if domain else ""
    return label.replace("-", " ").title() or "Unknown"
