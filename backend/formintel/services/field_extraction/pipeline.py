"""
Form Extraction Pipeline
========================

Facade over the ingestion paths. Every path ends in the same ordered,
validated list of FieldCandidate objects.

Paths:
------
1. OCR pages -> batch orchestrator -> batch merge
   (classify_pages_from_ocr; analyze_images / analyze_pdf run fetch,
   compression and OCR first)
2. Rendered HTML -> DOM extractor
   (classify_from_dom, classify_from_url)
3. One tall image -> split -> vision classification per section -> section
   merge (split_and_classify_image, classify_url_screenshot)

Concurrency:
------------
Provider clients are blocking. Async entry points run them in worker
threads, each call bounded by its stage timeout. Image fetches, compression
and OCR fan out concurrently with a partial-success policy; LLM calls run
one at a time. A stage only fails outright when every unit in it failed.

Provider clients are built once by the caller and injected, so tests can
pass stubs.
"""

import asyncio
import base64
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from formintel.config import Config
from formintel.exceptions import (
    AllImagesFailedError,
    AllPagesFailedError,
    AllSectionsFailedError,
    ConfigurationError,
    FormIntelError,
    PipelineCancelledError,
    ProviderTimeoutError,
)
from formintel.services.firecrawl_service import FirecrawlService
from formintel.services.image_processor import ImageProcessor, quick_complexity_check
from formintel.services.llm_client import LlmClient
from formintel.services.ocr_service import OcrService
from formintel.utils.pdf_handler import PDFHandler
from formintel.utils.timeout import get_timeouts, run_with_timeout

from .batch_orchestrator import BatchOrchestrator, OrchestratorResult
from .dom_extractor import DomFieldExtractor
from .field_classifier import LlmFieldClassifier
from .field_merger import merge_section_fields
from .fields import FieldCandidate, ImageSection, OcrPage, TextBlock, UnitFailure

logger = logging.getLogger(__name__)

ImageInput = Union[str, bytes]

SECTION_SYSTEM_PROMPT = (
    "You are a form analysis expert. Extract all form fields from this section of a form. "
    "You MUST respond with ONLY valid JSON."
)

SECTION_USER_PROMPT = """Analyze this section ({index} of {total}) of the form and extract all visible form fields.{split_note}

Return a JSON object with this exact structure:
{{
  "fields": [
    {{
      "label": "Field Name",
      "type": "text",
      "required": false,
      "options": [],
      "pageNumber": 1
    }}
  ]
}}

Field types: text, email, tel, number, textarea, select, date, radio-with-other, checkbox-with-other, rating, file, signature, payment, label
Display-only text (titles, headers, instructions) uses type "label" with an empty label and "richTextContent".
Extract fields exactly as they appear, top to bottom."""


@dataclass
class ClassificationOutput:
    """Fields plus analytics and per-unit failures of one job."""
    fields: List[FieldCandidate]
    analytics: Dict[str, Any] = field(default_factory=dict)
    errors: List[UnitFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fields': [f.to_dict() for f in self.fields],
            'analytics': self.analytics,
            'errors': [e.to_dict() for e in self.errors]
        }


@dataclass
class SplitClassificationOutput:
    """Result of the tall-image path."""
    fields: List[FieldCandidate]
    was_split: bool = False
    num_sections: int = 1
    errors: List[UnitFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fields': [f.to_dict() for f in self.fields],
            'was_split': self.was_split,
            'num_sections': self.num_sections,
            'errors': [e.to_dict() for e in self.errors]
        }


def coerce_page(page: Union[OcrPage, Dict[str, Any]]) -> OcrPage:
    """Accept OcrPage objects or {page, text, blocks} dicts."""
    if isinstance(page, OcrPage):
        return page
    number = int(page.get('page') or page.get('pageNumber') or 1)
    blocks = []
    for raw in page.get('blocks') or []:
        block = raw if isinstance(raw, TextBlock) else TextBlock.from_dict(raw)
        # Blocks belong to the page they were delivered with
        if block.page_number != number:
            block = TextBlock(text=block.text, bounding_box=block.bounding_box, page_number=number)
        blocks.append(block)
    return OcrPage(page=number, text=str(page.get('text') or ''), blocks=tuple(blocks))


class FormExtractionPipeline:
    """
    Entry points for every ingestion path.

    Example usage:

        pipeline = FormExtractionPipeline(llm_client=LlmClient(), ocr_service=create_ocr_service())
        output = asyncio.run(pipeline.analyze_images([png_bytes]))
        fields = [f.to_dict() for f in output.fields]
    """

    def __init__(
        self,
        llm_client: Optional[LlmClient] = None,
        ocr_service: Optional[OcrService] = None,
        page_source: Optional[FirecrawlService] = None,
        image_processor: Optional[ImageProcessor] = None,
        dom_extractor: Optional[DomFieldExtractor] = None,
        pdf_handler: Optional[PDFHandler] = None,
        batching_enabled: Optional[bool] = None,
        default_batch_size: Optional[int] = None,
        vision_model: Optional[str] = None
    ):
        """
        Args:
            llm_client: Chat completion client (a default client is built if omitted)
            ocr_service: OCR adapter, required for the image/PDF paths
            page_source: Page renderer, required for the URL paths
            image_processor: Compression and splitting
            dom_extractor: HTML field extractor
            pdf_handler: Download and PDF rendering helper
            batching_enabled: Overrides Config.ENABLE_BATCHING
            default_batch_size: Overrides Config.BATCH_SIZE
            vision_model: Model for image sections (defaults to Config.LLM_VISION_MODEL)
        """
        self.llm_client = llm_client or LlmClient()
        self.ocr_service = ocr_service
        self.page_source = page_source
        self.image_processor = image_processor or ImageProcessor()
        self.dom_extractor = dom_extractor or DomFieldExtractor()
        self.pdf_handler = pdf_handler or PDFHandler()

        self.classifier = LlmFieldClassifier(self.llm_client)
        self.vision_classifier = LlmFieldClassifier(
            self.llm_client, model=vision_model or Config.LLM_VISION_MODEL
        )
        self.orchestrator = BatchOrchestrator(
            self.classifier,
            default_batch_size=default_batch_size,
            batching_enabled=batching_enabled
        )
        self.timeouts = get_timeouts()
        # Navigation includes the settle wait
        self.timeouts['dom_navigation'] += Config.DOM_SETTLE_WAIT_MS / 1000

    # ------------------------------------------------------------------
    # OCR path
    # ------------------------------------------------------------------

    def classify_pages_from_ocr(
        self,
        pages: Sequence[Union[OcrPage, Dict[str, Any]]],
        batch_size: Any = None,
        reasoning_effort: Optional[str] = None,
        system_message_override: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ClassificationOutput:
        """
        Classify already-OCR'd pages.

        Raises:
            ValueError: if no pages are given
            AllBatchesFailedError: if every batch failed
        """
        return self._classify_pages(
            [coerce_page(p) for p in pages],
            batch_size=batch_size,
            reasoning_effort=reasoning_effort,
            system_message_override=system_message_override,
            cancel_event=cancel_event
        )

    def _classify_pages(
        self,
        pages: List[OcrPage],
        batch_size: Any = None,
        reasoning_effort: Optional[str] = None,
        system_message_override: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        ocr_time_ms: int = 0,
        prior_errors: Optional[List[UnitFailure]] = None
    ) -> ClassificationOutput:
        spatial_blocks = [block for page in pages for block in page.blocks]
        result = self.orchestrator.run(
            pages,
            spatial_blocks,
            batch_size=batch_size,
            reasoning_effort=reasoning_effort or Config.LLM_REASONING_EFFORT,
            system_message_override=system_message_override,
            cancel_event=cancel_event
        )
        errors = list(prior_errors or []) + result.failures
        return ClassificationOutput(
            fields=result.fields,
            analytics=self._build_analytics(result, len(pages), ocr_time_ms, errors),
            errors=errors
        )

    @staticmethod
    def _build_analytics(
        result: OrchestratorResult,
        page_count: int,
        ocr_time_ms: int,
        errors: List[UnitFailure]
    ) -> Dict[str, Any]:
        usage = result.token_usage
        return {
            'ocr': {'time_ms': ocr_time_ms, 'pages': page_count},
            'llm': {
                'time_ms': result.llm_time_ms,
                'prompt_tokens': usage.prompt_tokens,
                'completion_tokens': usage.completion_tokens,
                'total_tokens': usage.total_tokens
            },
            'batching': result.batching_analytics(),
            'errors': [e.to_dict() for e in errors]
        }

    async def _fetch_image(self, image: ImageInput) -> bytes:
        if isinstance(image, (bytes, bytearray)):
            return bytes(image)
        timeout = self.timeouts['image_fetch']
        # Outer bound slightly above the request timeout so the request reports first
        return await run_with_timeout(self.pdf_handler.download, timeout + 1, 'image_fetch', image, timeout)

    async def _compress(self, buffer: bytes, label: str) -> Tuple[bytes, str, Optional[int], Optional[int]]:
        """Compressed buffer, MIME type and size; the original on timeout."""
        try:
            result = await run_with_timeout(
                self.image_processor.compress_for_mime_type,
                self.timeouts['image_compression'],
                f"{label} compression",
                buffer
            )
        except ProviderTimeoutError:
            logger.warning(f"{label}: compression timed out, using original image")
            return buffer, 'image/png', None, None
        return result.buffer, result.mime_type, result.width, result.height

    async def analyze_images(
        self,
        images: Sequence[ImageInput],
        batch_size: Any = None,
        reasoning_effort: Optional[str] = None,
        system_message_override: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ClassificationOutput:
        """
        Fetch, compress and OCR page images concurrently, then classify.

        Args:
            images: Image URLs or raw image bytes, one per page in page order

        Raises:
            AllImagesFailedError: if no image could be fetched
            AllPagesFailedError: if OCR failed for every fetched image
            AllBatchesFailedError: if classification failed for every batch
        """
        if not images:
            raise ValueError("At least one image is required")
        if self.ocr_service is None:
            raise ConfigurationError("No OCR provider configured")

        errors: List[UnitFailure] = []

        # Fetch
        fetched = await asyncio.gather(*(self._fetch_image(image) for image in images), return_exceptions=True)
        buffers: List[Tuple[int, bytes]] = []
        for index, outcome in enumerate(fetched, start=1):
            if isinstance(outcome, FormIntelError):
                logger.error(f"Image {index} fetch failed: {outcome}")
                errors.append(UnitFailure.from_exception('image_fetch', f"image {index}", outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                buffers.append((index, outcome))

        if not buffers:
            raise AllImagesFailedError(f"All {len(images)} image(s) failed to fetch", failures=errors)
        if len(buffers) < len(images):
            logger.warning(f"Continuing with {len(buffers)}/{len(images)} images")

        self._check_cancelled(cancel_event, 'before OCR')

        # Compress + OCR
        ocr_start = time.time()
        ocr_outcomes = await asyncio.gather(
            *(self._ocr_page(page_number, buffer) for page_number, buffer in buffers),
            return_exceptions=True
        )
        pages: List[OcrPage] = []
        for (page_number, _), outcome in zip(buffers, ocr_outcomes):
            if isinstance(outcome, FormIntelError):
                logger.error(f"OCR failed for page {page_number}: {outcome}")
                errors.append(UnitFailure.from_exception('ocr', f"page {page_number}", outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                pages.append(outcome)
        ocr_time_ms = int((time.time() - ocr_start) * 1000)

        if not pages:
            raise AllPagesFailedError(f"OCR failed for all {len(buffers)} page(s)", failures=errors)
        logger.info(f"OCR complete: {len(pages)}/{len(buffers)} pages in {ocr_time_ms}ms")

        self._check_cancelled(cancel_event, 'before classification')

        return await asyncio.to_thread(
            self._classify_pages,
            pages,
            batch_size,
            reasoning_effort,
            system_message_override,
            cancel_event,
            ocr_time_ms,
            errors
        )

    async def _ocr_page(self, page_number: int, buffer: bytes) -> OcrPage:
        compressed, _, _, _ = await self._compress(buffer, f"Page {page_number}")
        result = await run_with_timeout(
            self.ocr_service.extract_text,
            self.timeouts['ocr'],
            'ocr',
            compressed,
            page_number
        )
        return OcrPage(page=page_number, text=result.full_text, blocks=tuple(result.blocks))

    async def analyze_pdf(self, pdf_bytes: bytes, **options: Any) -> ClassificationOutput:
        """Render a PDF to one image per page and run analyze_images on them."""
        page_images = await asyncio.to_thread(self.pdf_handler.pdf_to_page_images, pdf_bytes)
        if not page_images:
            raise ValueError("PDF has no pages")
        logger.info(f"Rendered PDF to {len(page_images)} page image(s)")
        return await self.analyze_images(page_images, **options)

    # ------------------------------------------------------------------
    # DOM path
    # ------------------------------------------------------------------

    def classify_from_dom(self, html: Any) -> List[FieldCandidate]:
        """Extract fields from rendered HTML (string, bytes or BeautifulSoup)."""
        return self.dom_extractor.extract_fields(html)

    def _require_page_source(self) -> FirecrawlService:
        if self.page_source is None:
            raise ConfigurationError("No page source configured (FIRECRAWL_API_KEY missing?)")
        return self.page_source

    def classify_from_url(self, url: str) -> List[FieldCandidate]:
        """Render a live form and extract its fields from the DOM."""
        url = self.pdf_handler.validate_url(url)
        html = self._require_page_source().scrape_html(url)
        return self.classify_from_dom(html)

    async def classify_from_url_async(self, url: str) -> List[FieldCandidate]:
        """
        classify_from_url with navigation (including settle wait) and extraction
        bounded by separate timeouts.
        """
        url = self.pdf_handler.validate_url(url)
        page_source = self._require_page_source()
        html = await run_with_timeout(
            page_source.scrape_html, self.timeouts['dom_navigation'], 'dom_navigation', url
        )
        return await run_with_timeout(
            self.classify_from_dom, self.timeouts['dom_extraction'], 'dom_extraction', html
        )

    # ------------------------------------------------------------------
    # Tall image path
    # ------------------------------------------------------------------

    def _section_content(self, section: ImageSection, buffer: bytes, mime_type: str, detail: str,
                         additional_context: Optional[str]) -> List[Dict[str, Any]]:
        split_note = (
            " This is part of a larger form that has been split into sections."
            if section.total_sections > 1 else ""
        )
        text = SECTION_USER_PROMPT.format(
            index=section.section_index + 1,
            total=section.total_sections,
            split_note=split_note
        )
        if additional_context:
            text += f"\n\nAdditional context: {additional_context}"
        encoded = base64.b64encode(buffer).decode('utf-8')
        return [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": detail}}
        ]

    async def split_and_classify_image(
        self,
        image_bytes: bytes,
        reasoning_effort: Optional[str] = None,
        system_message_override: Optional[str] = None,
        additional_context: Optional[str] = None,
        max_height: Optional[int] = None,
        overlap: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> SplitClassificationOutput:
        """
        Split a tall image, classify each section with the vision model and
        merge the sections' fields.

        Raises:
            AllSectionsFailedError: if every section failed to classify
        """
        sections = self.image_processor.split(image_bytes, max_height=max_height, overlap=overlap)
        was_split = len(sections) > 1
        system_prompt = system_message_override or SECTION_SYSTEM_PROMPT

        section_fields: List[List[FieldCandidate]] = []
        errors: List[UnitFailure] = []

        for section in sections:
            unit = f"section {section.section_index + 1}/{section.total_sections}"
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancellation observed, skipping {unit} and later sections")
                break

            buffer, mime_type, width, height = await self._compress(section.buffer, unit)
            detail = quick_complexity_check(buffer, width, height)
            content = self._section_content(section, buffer, mime_type, detail, additional_context)

            try:
                result = await run_with_timeout(
                    self.vision_classifier.classify,
                    self.timeouts['llm'],
                    'llm',
                    system_prompt,
                    content,
                    reasoning_effort
                )
            except FormIntelError as e:
                logger.error(f"{unit} classification failed: {e}")
                errors.append(UnitFailure.from_exception('section_classification', unit, e))
                continue

            logger.info(f"{unit} ({section.position}, detail={detail}): {len(result.fields)} fields")
            section_fields.append(result.fields)

        if not section_fields:
            if not errors:
                raise PipelineCancelledError("Image classification cancelled before any section completed")
            raise AllSectionsFailedError(f"All {len(sections)} section(s) failed to classify", failures=errors)

        fields = merge_section_fields(section_fields) if was_split else section_fields[0]
        return SplitClassificationOutput(
            fields=fields,
            was_split=was_split,
            num_sections=len(sections),
            errors=errors
        )

    async def classify_url_screenshot(self, url: str, **options: Any) -> SplitClassificationOutput:
        """Capture a full-page screenshot of a live form and run the tall image path."""
        url = self.pdf_handler.validate_url(url)
        page_source = self._require_page_source()
        screenshot = await run_with_timeout(
            page_source.capture_screenshot, self.timeouts['dom_navigation'], 'dom_navigation', url
        )
        return await self.split_and_classify_image(screenshot, **options)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], stage: str):
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelledError(f"Pipeline cancelled {stage}")
