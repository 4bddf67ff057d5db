"""
OCR adapters: document text detection normalised into page text plus
spatial text blocks.

Two providers are supported:
- Google Vision (REST, DOCUMENT_TEXT_DETECTION) via requests
- AWS Textract (detect_document_text) via boto3

Adapters do not retry. Provider errors surface to the caller, which decides
whether a failed page is fatal.
"""
import base64
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from formintel.config import Config
from formintel.exceptions import OcrProviderError, ProviderTimeoutError, ConfigurationError
from formintel.services.field_extraction.fields import BoundingBox, TextBlock
from formintel.services.image_processor import ImageProcessor
from formintel.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class OcrResult:
    """Full text of one image plus its text blocks."""
    full_text: str
    blocks: List[TextBlock] = field(default_factory=list)


def _block_text(block: Dict[str, Any]) -> str:
    paragraphs = []
    for paragraph in block.get('paragraphs', []):
        words = [
            ''.join(symbol.get('text', '') for symbol in word.get('symbols', []))
            for word in paragraph.get('words', [])
        ]
        paragraphs.append(' '.join(w for w in words if w))
    return '\n'.join(p for p in paragraphs if p)


def flatten_vision_annotation(response: Dict[str, Any], page_number: int = 1) -> OcrResult:
    """
    Flatten a Vision annotate response into text blocks.

    Block text is the concatenation of its symbols (words joined by spaces,
    paragraphs by newlines); the bounding box comes from the block polygon.

    Args:
        response: One entry of the ``responses`` array, or an object with
            ``fullTextAnnotation`` directly
        page_number: Page number stamped on every block
    """
    annotation = response.get('fullTextAnnotation') or {}
    blocks: List[TextBlock] = []

    for page in annotation.get('pages', []):
        for block in page.get('blocks', []):
            text = _block_text(block)
            if not text:
                continue
            vertices = (block.get('boundingBox') or {}).get('vertices') or []
            blocks.append(TextBlock(
                text=text,
                bounding_box=BoundingBox.from_vertices(vertices),
                page_number=page_number
            ))

    return OcrResult(full_text=annotation.get('text', ''), blocks=blocks)


class OcrService:
    """Interface of the OCR adapters."""

    provider = 'ocr'

    def extract_text(self, image_bytes: bytes, page_number: int = 1) -> OcrResult:
        raise NotImplementedError


class VisionOcrService(OcrService):
    """Google Vision document text detection over REST."""

    provider = 'vision'

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key or Config.GOOGLE_VISION_API_KEY
        self.endpoint = endpoint or Config.GOOGLE_VISION_ENDPOINT
        self.timeout = timeout or Config.OCR_TIMEOUT
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()
        if not self.api_key:
            raise ConfigurationError("GOOGLE_VISION_API_KEY is required for Vision OCR")
        logger.info("Initialized Google Vision OCR service")

    def extract_text(self, image_bytes: bytes, page_number: int = 1) -> OcrResult:
        """
        Run DOCUMENT_TEXT_DETECTION on an image.

        Raises:
            OcrProviderError: auth, quota or malformed-input errors
            ProviderTimeoutError: if the request timed out
        """
        if self.rate_limiter:
            self.rate_limiter.acquire(self.provider)

        payload = {
            'requests': [{
                'image': {'content': base64.b64encode(image_bytes).decode('utf-8')},
                'features': [{'type': 'DOCUMENT_TEXT_DETECTION'}]
            }]
        }

        try:
            response = self.session.post(
                self.endpoint,
                params={'key': self.api_key},
                json=payload,
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.Timeout as e:
            raise ProviderTimeoutError(f"Vision OCR timed out after {self.timeout}s", provider=self.provider) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise OcrProviderError(
                f"Vision OCR failed with HTTP {status}", provider=self.provider, status_code=status
            ) from e
        except requests.RequestException as e:
            raise OcrProviderError(f"Vision OCR request failed: {e}", provider=self.provider) from e
        except ValueError as e:
            raise OcrProviderError(f"Vision OCR returned invalid JSON: {e}", provider=self.provider) from e

        responses = data.get('responses') or [{}]
        first = responses[0]
        if first.get('error'):
            error = first['error']
            raise OcrProviderError(
                f"Vision OCR error: {error.get('message', 'unknown error')}",
                provider=self.provider,
                status_code=error.get('code')
            )

        result = flatten_vision_annotation(first, page_number=page_number)
        logger.info(f"Vision OCR page {page_number}: {len(result.blocks)} blocks, {len(result.full_text)} chars")
        return result


class TextractOcrService(OcrService):
    """AWS Textract line detection, converted to pixel-space blocks."""

    provider = 'textract'

    def __init__(
        self,
        client: Optional[Any] = None,
        rate_limiter: Optional[RateLimiter] = None,
        image_processor: Optional[ImageProcessor] = None
    ):
        self.rate_limiter = rate_limiter
        self.image_processor = image_processor or ImageProcessor()

        if client is not None:
            self.client = client
        else:
            config = Config.get_boto3_config()
            if 'profile_name' in config:
                session = boto3.Session(profile_name=config['profile_name'])
                self.client = session.client('textract', region_name=config['region_name'])
            else:
                self.client = boto3.client('textract', **config)
        logger.info("Initialized AWS Textract OCR service")

    def extract_text(self, image_bytes: bytes, page_number: int = 1) -> OcrResult:
        """
        Run detect_document_text on an image.

        Textract geometry is relative (0-1); boxes are scaled by the image
        dimensions so blocks match the Vision provider's pixel space.

        Raises:
            OcrProviderError: on AWS client errors
        """
        if self.rate_limiter:
            self.rate_limiter.acquire(self.provider)

        try:
            response = self.client.detect_document_text(Document={'Bytes': image_bytes})
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', 'Unknown')
            message = e.response.get('Error', {}).get('Message', str(e))
            raise OcrProviderError(f"Textract error ({code}): {message}", provider=self.provider) from e
        except BotoCoreError as e:
            raise OcrProviderError(f"Textract request failed: {e}", provider=self.provider) from e

        width, height = self.image_processor.get_dimensions(image_bytes) or (1, 1)

        blocks: List[TextBlock] = []
        lines: List[str] = []
        for block in response.get('Blocks', []):
            if block.get('BlockType') != 'LINE':
                continue
            text = block.get('Text', '')
            box = block.get('Geometry', {}).get('BoundingBox', {})
            lines.append(text)
            blocks.append(TextBlock(
                text=text,
                bounding_box=BoundingBox(
                    x=box.get('Left', 0) * width,
                    y=box.get('Top', 0) * height,
                    width=box.get('Width', 0) * width,
                    height=box.get('Height', 0) * height
                ),
                page_number=page_number
            ))

        logger.info(f"Textract OCR page {page_number}: {len(blocks)} lines")
        return OcrResult(full_text='\n'.join(lines), blocks=blocks)


def create_ocr_service(provider: Optional[str] = None, rate_limiter: Optional[RateLimiter] = None) -> OcrService:
    """Build the OCR adapter selected by OCR_PROVIDER."""
    provider = (provider or Config.OCR_PROVIDER).lower()
    if provider == 'vision':
        return VisionOcrService(rate_limiter=rate_limiter)
    if provider == 'textract':
        return TextractOcrService(rate_limiter=rate_limiter)
    raise ConfigurationError(f"Unknown OCR provider: {provider}")
