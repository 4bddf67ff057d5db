"""
Pydantic models for API request/response schemas.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime

REASONING_EFFORT_PATTERN = r'^(low|medium|high)$'


class RateLimitStatus(BaseModel):
    """Rate limit status response model."""
    enabled: bool
    total_calls: int
    max_calls: int
    remaining_calls: int
    calls_by_service: Dict[str, int]


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    ocr_provider: Optional[str] = None
    url_analysis_available: bool = False


class TextBlockInput(BaseModel):
    """One OCR text block with its pixel bounding box."""
    text: str
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


class OcrPageInput(BaseModel):
    """Already-OCR'd page."""
    page: int = Field(..., ge=1, description="1-based page number")
    text: str = ""
    blocks: List[TextBlockInput] = Field(default_factory=list)


class ClassifyOcrRequest(BaseModel):
    """Request for classifying pre-extracted OCR pages."""
    pages: List[OcrPageInput] = Field(..., min_length=1)
    batch_size: Optional[int] = Field(None, description="Pages per LLM batch; invalid values use the default")
    reasoning_effort: Optional[str] = Field(None, pattern=REASONING_EFFORT_PATTERN)
    system_message_override: Optional[str] = None


class AnalyzeImagesRequest(BaseModel):
    """Request for fetching, OCR'ing and classifying page images."""
    image_urls: List[str] = Field(..., min_length=1, description="One image URL per page, in page order")
    batch_size: Optional[int] = None
    reasoning_effort: Optional[str] = Field(None, pattern=REASONING_EFFORT_PATTERN)
    system_message_override: Optional[str] = None


class AnalyzeUrlRequest(BaseModel):
    """Request for analyzing a live web form."""
    url: str = Field(..., min_length=1)
    reasoning_effort: Optional[str] = Field(None, pattern=REASONING_EFFORT_PATTERN)
    additional_context: Optional[str] = Field(None, description="Extra instructions for the vision model")


class AnalyzeHtmlRequest(BaseModel):
    """Request for extracting fields from raw HTML."""
    html: str = Field(..., min_length=1)


class UnitFailureOutput(BaseModel):
    """A unit (page, image, batch or section) that failed while others succeeded."""
    stage: str
    unit: str
    error_type: str
    message: str


class ClassificationResponse(BaseModel):
    """Response for the OCR-based paths."""
    success: bool = True
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    analytics: Dict[str, Any] = Field(default_factory=dict)
    errors: List[UnitFailureOutput] = Field(default_factory=list)


class SplitClassificationResponse(BaseModel):
    """Response for the screenshot path."""
    success: bool = True
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    was_split: bool = False
    num_sections: int = 1
    errors: List[UnitFailureOutput] = Field(default_factory=list)


class DomClassificationResponse(BaseModel):
    """Response for the DOM paths."""
    success: bool = True
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    field_count: int = 0
