"""
Firecrawl page source: rendered HTML and full-page screenshots of live web
forms, used by the URL ingestion paths.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any
from firecrawl import Firecrawl

from formintel.config import Config
from formintel.exceptions import PageSourceError, ConfigurationError
from formintel.utils.rate_limiter import RateLimiter
from formintel.utils.pdf_handler import PDFHandler

logger = logging.getLogger(__name__)


@dataclass
class RenderedPage:
    url: str
    html: str = ""
    screenshot: Optional[bytes] = None


def _get(document: Any, *names: str) -> Any:
    """Read an attribute from an SDK document object or a plain dict."""
    for name in names:
        value = document.get(name) if isinstance(document, dict) else getattr(document, name, None)
        if value:
            return value
    return None


class FirecrawlService:
    """Renders pages with Firecrawl (JavaScript executed, settle wait applied)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[Any] = None,
        navigation_timeout: Optional[float] = None,
        settle_wait_ms: Optional[int] = None,
        fetch_timeout: Optional[float] = None
    ):
        """
        Args:
            api_key: Firecrawl API key (defaults to Config.FIRECRAWL_API_KEY)
            rate_limiter: Optional rate limiter instance
            client: Pre-built Firecrawl client
            navigation_timeout: Navigation + render bound in seconds
            settle_wait_ms: Wait after load before capture
            fetch_timeout: Timeout for downloading a screenshot URL
        """
        self.api_key = api_key or Config.FIRECRAWL_API_KEY
        self.rate_limiter = rate_limiter
        self.service_name = 'firecrawl'
        self.navigation_timeout = navigation_timeout or Config.DOM_NAVIGATION_TIMEOUT
        self.settle_wait_ms = Config.DOM_SETTLE_WAIT_MS if settle_wait_ms is None else settle_wait_ms
        self.fetch_timeout = fetch_timeout or Config.IMAGE_FETCH_TIMEOUT
        self.pdf_handler = PDFHandler()

        if client is not None:
            self.client = client
        else:
            if not self.api_key:
                raise ConfigurationError("FIRECRAWL_API_KEY is required for URL analysis")
            self.client = Firecrawl(api_key=self.api_key)
        logger.info("Initialized Firecrawl service")

    def render_page(self, url: str, html: bool = True, screenshot: bool = False) -> RenderedPage:
        """
        Render a page and return its HTML and/or a full-page screenshot.

        Raises:
            PageSourceError: if rendering failed or returned nothing usable
            RateLimitExceededError: if the call budget is exhausted
        """
        if self.rate_limiter:
            self.rate_limiter.acquire(self.service_name)

        formats = []
        if html:
            formats.append('rawHtml')
        if screenshot:
            formats.append({'type': 'screenshot', 'fullPage': True})

        logger.info(f"Rendering {url} (formats: html={html}, screenshot={screenshot})")
        try:
            document = self.client.scrape(
                url,
                formats=formats,
                wait_for=self.settle_wait_ms,
                timeout=int(self.navigation_timeout * 1000)
            )
        except Exception as e:
            logger.error(f"Firecrawl failed to render {url}: {e}")
            raise PageSourceError(f"Could not render {url}: {e}", provider=self.service_name) from e

        page = RenderedPage(url=url)
        if html:
            page.html = _get(document, 'raw_html', 'rawHtml', 'html') or ''
            if not page.html:
                raise PageSourceError(f"No HTML returned for {url}", provider=self.service_name)
        if screenshot:
            page.screenshot = self._decode_screenshot(_get(document, 'screenshot'), url)

        return page

    def scrape_html(self, url: str) -> str:
        return self.render_page(url, html=True).html

    def capture_screenshot(self, url: str) -> bytes:
        return self.render_page(url, html=False, screenshot=True).screenshot

    def _decode_screenshot(self, screenshot: Optional[str], url: str) -> bytes:
        """Screenshots arrive as a hosted image URL or a base64 data URI."""
        if not screenshot:
            raise PageSourceError(f"No screenshot returned for {url}", provider=self.service_name)
        if screenshot.startswith('data:'):
            return base64.b64decode(screenshot.split(',', 1)[1])
        if screenshot.startswith('http'):
            return self.pdf_handler.download(screenshot, timeout=self.fetch_timeout)
        return base64.b64decode(screenshot)

    def get_status(self) -> Dict[str, Any]:
        return {
            'configured': bool(self.api_key),
            'settle_wait_ms': self.settle_wait_ms,
            'navigation_timeout': self.navigation_timeout
        }
