"""
FastAPI application for the form field extraction service.
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
import logging

from formintel.config import Config
from formintel.exceptions import ConfigurationError
from formintel.models import HealthResponse, RateLimitStatus
from formintel.routes.form_extraction import router as form_extraction_router
from formintel.utils.rate_limiter import RateLimiter
from formintel.services.firecrawl_service import FirecrawlService
from formintel.services.image_processor import ImageProcessor
from formintel.services.llm_client import LlmClient
from formintel.services.ocr_service import create_ocr_service
from formintel.services.field_extraction.pipeline import FormExtractionPipeline

# Configure logging
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Form Field Extraction API",
    description="API for extracting structured field schemas from PDFs, images and web forms",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(form_extraction_router)

# One call budget for every provider client
rate_limiter = RateLimiter(max_total_calls=Config.MAX_TOTAL_CALLS, enabled=Config.ENABLE_RATE_LIMITING)
app.state.rate_limiter = rate_limiter
app.state.pipeline = None


def build_pipeline(limiter: RateLimiter) -> FormExtractionPipeline:
    """Build provider clients once and inject them into the pipeline."""
    page_source = None
    if Config.FIRECRAWL_API_KEY:
        page_source = FirecrawlService(rate_limiter=limiter)
    else:
        logger.warning("FIRECRAWL_API_KEY not set, URL analysis endpoints are disabled")

    return FormExtractionPipeline(
        llm_client=LlmClient(rate_limiter=limiter),
        ocr_service=create_ocr_service(rate_limiter=limiter),
        page_source=page_source,
        image_processor=ImageProcessor()
    )


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    try:
        Config.validate()
        logger.info("Configuration validated successfully")

        app.state.pipeline = build_pipeline(rate_limiter)
        logger.info("Services initialized successfully")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    pipeline = app.state.pipeline
    return HealthResponse(
        status="healthy" if pipeline is not None else "starting",
        timestamp=datetime.now(),
        ocr_provider=Config.OCR_PROVIDER,
        url_analysis_available=pipeline is not None and pipeline.page_source is not None
    )


@app.get("/api/rate-limit/status", response_model=RateLimitStatus)
async def get_rate_limit_status():
    """Get current rate limit status."""
    stats = app.state.rate_limiter.get_stats()
    return RateLimitStatus(
        enabled=stats['enabled'],
        total_calls=stats['total_calls'],
        max_calls=stats['max_calls'],
        remaining_calls=stats['remaining_calls'],
        calls_by_service=stats['calls_by_service']
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors."""
    logger.warning(f"Rejected request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "formintel.main:app",
        host=Config.API_HOST,
        port=Config.API_PORT,
        reload=True
    )
