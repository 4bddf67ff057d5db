"""
Exception hierarchy for the form extraction service.

Transport errors (provider/network/timeout), content errors (unusable LLM
output) and exhaustion errors (every redundant unit failed) are kept apart so
callers can decide which ones to downgrade into partial-failure records.
"""
from typing import List, Optional, Any


class FormIntelError(Exception):
    """Base exception for the service."""


class ConfigurationError(FormIntelError):
    """Raised when configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------

class ProviderError(FormIntelError):
    """An external provider (OCR, LLM, page source) call failed."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class OcrProviderError(ProviderError):
    """OCR provider call failed (auth, quota, malformed input)."""


class LlmProviderError(ProviderError):
    """LLM provider call failed before a completion was returned."""


class PageSourceError(ProviderError):
    """Rendering a web page or capturing its screenshot failed."""


class ProviderTimeoutError(ProviderError):
    """An external call exceeded its configured timeout."""


class RateLimitExceededError(ProviderError):
    """The per-process external call budget is exhausted."""


# ---------------------------------------------------------------------------
# Content errors
# ---------------------------------------------------------------------------

class ClassificationError(FormIntelError):
    """
    The LLM returned a completion that could not be turned into fields.

    Carries enough context to diagnose the failure without the raw response.
    """

    def __init__(
        self,
        message: str,
        response_length: int = 0,
        preview: str = "",
        finish_reason: Optional[str] = None,
        likely_truncated: bool = False
    ):
        super().__init__(message)
        self.response_length = response_length
        self.preview = preview
        self.finish_reason = finish_reason
        self.likely_truncated = likely_truncated


class TruncatedResponseError(ClassificationError):
    """Completion hit the token limit before producing any content."""


class EmptyResponseError(ClassificationError):
    """Completion finished without content."""


class ResponseParseError(ClassificationError):
    """Content could not be parsed as a field list after retry and repair."""


# ---------------------------------------------------------------------------
# Exhaustion errors
# ---------------------------------------------------------------------------

class ExhaustedError(FormIntelError):
    """Every unit of a fan-out stage failed; carries the recorded failures."""

    stage = "pipeline"

    def __init__(self, message: str, failures: Optional[List[Any]] = None):
        super().__init__(message)
        self.failures = list(failures or [])


class AllBatchesFailedError(ExhaustedError):
    stage = "classification"


class AllPagesFailedError(ExhaustedError):
    stage = "ocr"


class AllImagesFailedError(ExhaustedError):
    stage = "image_fetch"


class AllSectionsFailedError(ExhaustedError):
    stage = "section_classification"


class PipelineCancelledError(FormIntelError):
    """Cancellation was observed before any result was produced."""
