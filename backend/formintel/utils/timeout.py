"""
Timeout helpers for blocking provider calls driven from async code.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, TypeVar

from formintel.config import Config
from formintel.exceptions import ProviderTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def get_timeouts() -> Dict[str, float]:
    """Per-stage timeouts in seconds."""
    return {
        'image_fetch': Config.IMAGE_FETCH_TIMEOUT,
        'image_compression': Config.IMAGE_COMPRESSION_TIMEOUT,
        'ocr': Config.OCR_TIMEOUT,
        'llm': Config.LLM_TIMEOUT,
        'dom_navigation': Config.DOM_NAVIGATION_TIMEOUT,
        'dom_extraction': Config.DOM_EXTRACTION_TIMEOUT,
    }


async def run_with_timeout(func: Callable[..., T], timeout: float, operation: str, *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking callable in a worker thread, bounded by ``timeout`` seconds.

    The worker thread is not killed on timeout; its result is discarded.

    Raises:
        ProviderTimeoutError: if the call did not finish in time
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(f"{operation} timed out after {timeout}s")
        raise ProviderTimeoutError(f"{operation} timed out after {timeout}s", provider=operation) from e
