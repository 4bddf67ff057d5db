"""
Download and PDF utilities for in-memory processing.
Fetches remote images and renders PDF pages to PNG bytes without touching disk.
"""
import logging
from typing import List, Optional
from io import BytesIO
import requests
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError, PDFInfoNotInstalledError
from PIL import Image

from formintel.exceptions import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)


class PDFHandler:
    """Handler for remote downloads and PDF rendering."""

    @staticmethod
    def download(url: str, timeout: float = 30) -> bytes:
        """
        Download a URL and return its body.

        Args:
            url: Image or PDF URL
            timeout: Request timeout in seconds

        Raises:
            ProviderTimeoutError: if the request timed out
            ProviderError: for connection or HTTP errors
        """
        try:
            logger.info(f"Downloading {url}")
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.Timeout as e:
            raise ProviderTimeoutError(f"Fetching {url} timed out after {timeout}s", provider='image_fetch') from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ProviderError(f"Fetching {url} failed with HTTP {status}", provider='image_fetch',
                                status_code=status) from e
        except requests.RequestException as e:
            raise ProviderError(f"Fetching {url} failed: {e}", provider='image_fetch') from e

        content = response.content
        content_type = response.headers.get('Content-Type', '').lower()
        logger.info(f"Downloaded {len(content)} bytes ({content_type or 'unknown type'})")
        return content

    @staticmethod
    def is_pdf(data: bytes) -> bool:
        return data[:5] == b'%PDF-'

    @staticmethod
    def pdf_to_images(pdf_bytes: bytes, first_page_only: bool = False, dpi: int = 200) -> List[Image.Image]:
        """
        Convert PDF bytes to PIL Image objects.

        Raises:
            ProviderError: if poppler is missing or the PDF cannot be read
        """
        try:
            if first_page_only:
                images = convert_from_bytes(pdf_bytes, dpi=dpi, first_page=1, last_page=1)
            else:
                images = convert_from_bytes(pdf_bytes, dpi=dpi)
        except PDFInfoNotInstalledError as e:
            raise ProviderError("PDF rendering requires poppler to be installed", provider='pdf') from e
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise ProviderError(f"Could not read PDF: {e}", provider='pdf') from e

        logger.info(f"Converted PDF to {len(images)} image(s)")
        return images

    @classmethod
    def pdf_to_page_images(cls, pdf_bytes: bytes, dpi: int = 200) -> List[bytes]:
        """Render every PDF page to PNG bytes, in page order."""
        return [cls.image_to_bytes(image) for image in cls.pdf_to_images(pdf_bytes, dpi=dpi)]

    @staticmethod
    def image_to_bytes(image: Image.Image, format: str = 'PNG') -> bytes:
        buffer = BytesIO()
        image.save(buffer, format=format)
        return buffer.getvalue()

    @staticmethod
    def validate_url(url: Optional[str]) -> str:
        """
        Normalise a user-supplied URL, adding https:// when no scheme is given.

        Raises:
            ValueError: for empty URLs or schemes other than http/https
        """
        from urllib.parse import urlparse

        url = (url or '').strip()
        if not url:
            raise ValueError("URL is required")
        if '://' not in url:
            url = f"https://{url}"
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(f"Unsupported URL scheme: {parsed.scheme}")
        if not parsed.netloc:
            raise ValueError(f"Invalid URL: {url}")
        return url
