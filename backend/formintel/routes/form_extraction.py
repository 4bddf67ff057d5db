"""
Form Extraction API Routes
==========================

REST API endpoints over the field extraction pipeline.

Endpoints:
- POST /api/v1/forms/classify-ocr - Classify pre-extracted OCR pages
- POST /api/v1/forms/analyze-images - Fetch, OCR and classify page images
- POST /api/v1/forms/analyze-pdf - OCR and classify an uploaded PDF
- POST /api/v1/forms/analyze-url - Screenshot a live form, split and classify
- POST /api/v1/forms/analyze-url-html - Extract fields from a live form's DOM
- POST /api/v1/forms/analyze-html - Extract fields from raw HTML
"""

import asyncio
import logging
from typing import List, Optional, Tuple, Type

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile

from formintel.exceptions import (
    ClassificationError,
    ConfigurationError,
    ExhaustedError,
    FormIntelError,
    PipelineCancelledError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitExceededError,
    TruncatedResponseError,
)
from formintel.models import (
    AnalyzeHtmlRequest,
    AnalyzeImagesRequest,
    AnalyzeUrlRequest,
    ClassificationResponse,
    ClassifyOcrRequest,
    DomClassificationResponse,
    SplitClassificationResponse,
)
from formintel.services.field_extraction.fields import FieldCandidate
from formintel.services.field_extraction.pipeline import FormExtractionPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/forms", tags=["Form Extraction"])

# First match wins, so subclasses come before their bases
ERROR_STATUS: Tuple[Tuple[Type[Exception], int], ...] = (
    (RateLimitExceededError, 429),
    (ProviderTimeoutError, 504),
    (TruncatedResponseError, 413),
    (ClassificationError, 502),
    (ExhaustedError, 502),
    (ProviderError, 502),
    (ConfigurationError, 500),
    (PipelineCancelledError, 503),
    (ValueError, 400),
)


def error_status(error: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def to_http_exception(error: Exception) -> HTTPException:
    """Map a pipeline error to an HTTPException naming the failed stage."""
    detail = {'error': type(error).__name__, 'message': str(error)}
    if isinstance(error, ExhaustedError):
        detail['stage'] = error.stage
        detail['failures'] = [f.to_dict() for f in error.failures]
    if isinstance(error, ClassificationError):
        detail['response_length'] = error.response_length
        detail['finish_reason'] = error.finish_reason
        detail['likely_truncated'] = error.likely_truncated
    if isinstance(error, ProviderError) and error.provider:
        detail['provider'] = error.provider
    return HTTPException(status_code=error_status(error), detail=detail)


def get_pipeline(request: Request) -> FormExtractionPipeline:
    """The pipeline built at startup."""
    pipeline = getattr(request.app.state, 'pipeline', None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def _dom_response(fields: List[FieldCandidate]) -> DomClassificationResponse:
    return DomClassificationResponse(
        fields=[f.to_dict() for f in fields],
        field_count=len(fields)
    )


# ============================================================================
# OCR paths
# ============================================================================

@router.post("/classify-ocr", response_model=ClassificationResponse)
async def classify_ocr(
    request: ClassifyOcrRequest,
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> ClassificationResponse:
    """
    Classify pages that were already OCR'd.

    Pages are batched, classified by the LLM with spatial hints, then merged
    into one ordered field list.
    """
    logger.info(f"Classifying {len(request.pages)} OCR page(s)")
    pages = [page.model_dump() for page in request.pages]
    try:
        output = await asyncio.to_thread(
            pipeline.classify_pages_from_ocr,
            pages,
            request.batch_size,
            request.reasoning_effort,
            request.system_message_override
        )
    except (FormIntelError, ValueError) as e:
        logger.error(f"OCR classification failed: {e}")
        raise to_http_exception(e) from e

    return ClassificationResponse(**output.to_dict())


@router.post("/analyze-images", response_model=ClassificationResponse)
async def analyze_images(
    request: AnalyzeImagesRequest,
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> ClassificationResponse:
    """Fetch page images, OCR them concurrently and classify the pages."""
    logger.info(f"Analyzing {len(request.image_urls)} image(s)")
    try:
        output = await pipeline.analyze_images(
            request.image_urls,
            batch_size=request.batch_size,
            reasoning_effort=request.reasoning_effort,
            system_message_override=request.system_message_override
        )
    except (FormIntelError, ValueError) as e:
        logger.error(f"Image analysis failed: {e}")
        raise to_http_exception(e) from e

    return ClassificationResponse(**output.to_dict())


@router.post("/analyze-pdf", response_model=ClassificationResponse)
async def analyze_pdf(
    file: UploadFile = File(..., description="PDF file to analyze"),
    batch_size: Optional[int] = Query(None, description="Pages per LLM batch"),
    reasoning_effort: Optional[str] = Query(None, pattern=r'^(low|medium|high)$'),
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> ClassificationResponse:
    """Render an uploaded PDF to page images, OCR and classify them."""
    if not (file.filename or '').lower().endswith('.pdf'):
        raise HTTPException(status_code=400, detail="Only PDF files are supported")

    pdf_bytes = await file.read()
    if len(pdf_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty file uploaded")
    if not pdf_bytes.startswith(b'%PDF'):
        raise HTTPException(status_code=400, detail="Invalid PDF format")

    logger.info(f"Analyzing PDF: {file.filename} ({len(pdf_bytes)} bytes)")
    try:
        output = await pipeline.analyze_pdf(
            pdf_bytes,
            batch_size=batch_size,
            reasoning_effort=reasoning_effort
        )
    except (FormIntelError, ValueError) as e:
        logger.error(f"PDF analysis failed: {e}")
        raise to_http_exception(e) from e

    return ClassificationResponse(**output.to_dict())


# ============================================================================
# URL / DOM paths
# ============================================================================

@router.post("/analyze-url", response_model=SplitClassificationResponse)
async def analyze_url(
    request: AnalyzeUrlRequest,
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> SplitClassificationResponse:
    """
    Capture a full-page screenshot of a live form, split it into sections
    and classify each section with the vision model.
    """
    logger.info(f"Analyzing URL screenshot: {request.url}")
    try:
        output = await pipeline.classify_url_screenshot(
            request.url,
            reasoning_effort=request.reasoning_effort,
            additional_context=request.additional_context
        )
    except (FormIntelError, ValueError) as e:
        logger.error(f"URL screenshot analysis failed: {e}")
        raise to_http_exception(e) from e

    return SplitClassificationResponse(**output.to_dict())


@router.post("/analyze-url-html", response_model=DomClassificationResponse)
async def analyze_url_html(
    request: AnalyzeUrlRequest,
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> DomClassificationResponse:
    """Render a live form and extract its fields from the DOM."""
    logger.info(f"Analyzing URL DOM: {request.url}")
    try:
        fields = await pipeline.classify_from_url_async(request.url)
    except (FormIntelError, ValueError) as e:
        logger.error(f"URL DOM analysis failed: {e}")
        raise to_http_exception(e) from e

    return _dom_response(fields)


@router.post("/analyze-html", response_model=DomClassificationResponse)
async def analyze_html(
    request: AnalyzeHtmlRequest,
    pipeline: FormExtractionPipeline = Depends(get_pipeline)
) -> DomClassificationResponse:
    """Extract fields from raw HTML."""
    try:
        fields = await asyncio.to_thread(pipeline.classify_from_dom, request.html)
    except (FormIntelError, ValueError) as e:
        logger.error(f"HTML analysis failed: {e}")
        raise to_http_exception(e) from e

    return _dom_response(fields)
