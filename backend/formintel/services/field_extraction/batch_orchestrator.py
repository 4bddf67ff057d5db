"""
Batch Orchestrator
==================

Splits a multi-page OCR job into contiguous page batches and classifies
each batch with one LLM call.

- Batches run sequentially to bound provider concurrency and cost.
- A failed batch is recorded as a UnitFailure and the next batch runs;
  only when every batch fails is AllBatchesFailedError raised.
- Under batching, reasoning effort defaults to 'low' unless the caller
  overrides it: reasoning tokens come out of the same output budget the
  field list needs.
- Cancellation is checked before each batch is dispatched. In-flight calls
  are not interrupted.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from formintel.config import Config
from formintel.exceptions import AllBatchesFailedError, FormIntelError, PipelineCancelledError

from .field_classifier import LlmFieldClassifier
from .field_merger import MergeStats, merge_batch_fields
from .fields import BatchResult, FieldCandidate, OcrPage, PageBatch, TextBlock, TokenUsage, UnitFailure
from .spatial_hints import DEFAULT_SAMPLE_SIZE, build_spatial_hint

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
BATCHING_REASONING_EFFORT = 'low'


@dataclass
class OrchestratorResult:
    fields: List[FieldCandidate]
    batch_results: List[BatchResult] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)
    merge_stats: MergeStats = field(default_factory=MergeStats)
    batch_size: int = 0
    batch_count: int = 0
    batching_enabled: bool = True
    cancelled: bool = False

    @property
    def token_usage(self) -> TokenUsage:
        total = TokenUsage()
        for result in self.batch_results:
            total = total + result.token_usage
        return total

    @property
    def llm_time_ms(self) -> int:
        return sum(result.processing_time_ms for result in self.batch_results)

    def batching_analytics(self) -> Dict[str, Any]:
        return {
            'enabled': self.batching_enabled,
            'batch_count': self.batch_count,
            'batch_size': self.batch_size,
            'failed_batches': len(self.failures),
            'finish_reasons': [result.finish_reason for result in self.batch_results],
            'merge_stats': self.merge_stats.to_dict()
        }


def normalize_batch_size(batch_size: Any, total_pages: int, default: Optional[int] = None) -> int:
    """
    Pages per batch: invalid or non-positive sizes fall back to the default,
    and the result never exceeds the page count.
    """
    fallback = default if isinstance(default, int) and default > 0 else DEFAULT_BATCH_SIZE
    try:
        size = int(batch_size)
    except (TypeError, ValueError):
        size = fallback
    if size <= 0:
        size = fallback
    return max(1, min(size, total_pages))


def build_batches(pages: Sequence[OcrPage], spatial_blocks: Sequence[TextBlock], batch_size: int) -> List[PageBatch]:
    """Group pages into contiguous batches with their text and blocks."""
    ordered = sorted(pages, key=lambda p: p.page)
    batches = []
    for batch_index, start in enumerate(range(0, len(ordered), batch_size)):
        batch_pages = ordered[start:start + batch_size]
        page_numbers = [p.page for p in batch_pages]
        text = '\n\n'.join(f"--- Page {p.page} ---\n{p.text}" for p in batch_pages)
        blocks = [b for b in spatial_blocks if b.page_number in page_numbers]
        batches.append(PageBatch(batch_index=batch_index, pages=page_numbers, text=text, blocks=blocks))
    return batches


def batch_context(batch: PageBatch, total_pages: int) -> str:
    pages = ', '.join(str(p) for p in batch.pages)
    return (
        f"BATCH CONTEXT: You are processing {batch.label} of a {total_pages}-page form. "
        f"Only extract fields that appear on these pages, and set \"pageNumber\" on every field "
        f"to one of: {pages}."
    )


class BatchOrchestrator:
    """Runs page batches through the classifier and merges the results."""

    def __init__(
        self,
        classifier: LlmFieldClassifier,
        default_batch_size: Optional[int] = None,
        spatial_sample_size: Optional[int] = None,
        batching_enabled: Optional[bool] = None
    ):
        self.classifier = classifier
        self.default_batch_size = default_batch_size or Config.BATCH_SIZE or DEFAULT_BATCH_SIZE
        self.spatial_sample_size = spatial_sample_size or Config.SPATIAL_SAMPLE_SIZE or DEFAULT_SAMPLE_SIZE
        self.batching_enabled = Config.ENABLE_BATCHING if batching_enabled is None else batching_enabled

    def build_system_prompt(
        self,
        batch: PageBatch,
        total_pages: int,
        system_message_override: Optional[str] = None
    ) -> str:
        parts = [system_message_override or self.classifier.SYSTEM_PROMPT]
        hint = build_spatial_hint(batch.blocks, self.spatial_sample_size)
        if hint:
            parts.append(hint)
        parts.append(batch_context(batch, total_pages))
        return '\n\n'.join(parts)

    def run(
        self,
        pages: Sequence[OcrPage],
        spatial_blocks: Sequence[TextBlock],
        batch_size: Any = None,
        reasoning_effort: Optional[str] = None,
        system_message_override: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> OrchestratorResult:
        """
        Classify all pages batch by batch.

        Args:
            pages: OCR pages (page numbers 1-based)
            spatial_blocks: Text blocks for every page
            batch_size: Pages per batch; invalid values use the default
            reasoning_effort: Explicit override; 'low' under batching when None
            system_message_override: Replaces the base classification prompt
            cancel_event: Set to stop dispatching further batches

        Raises:
            ValueError: if there are no pages
            AllBatchesFailedError: if every batch failed
            PipelineCancelledError: if cancelled before any batch succeeded
        """
        if not pages:
            raise ValueError("No pages to classify")

        total_pages = max(len(pages), max(p.page for p in pages))
        if self.batching_enabled:
            size = normalize_batch_size(batch_size, total_pages, self.default_batch_size)
            if reasoning_effort is None:
                reasoning_effort = BATCHING_REASONING_EFFORT
        else:
            # Single-request mode: one batch of every page
            size = len(pages)

        batches = build_batches(pages, spatial_blocks, size)
        logger.info(
            f"Classifying {total_pages} pages in {len(batches)} batch(es) of up to {size} "
            f"(batching={'on' if self.batching_enabled else 'off'}, reasoning_effort={reasoning_effort})"
        )

        result = OrchestratorResult(
            fields=[],
            batch_size=size,
            batch_count=len(batches),
            batching_enabled=self.batching_enabled
        )

        for batch in batches:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.warning(f"Cancellation observed, skipping {batch.label} and later batches")
                break

            system_prompt = self.build_system_prompt(batch, total_pages, system_message_override)
            try:
                batch_result = self.classifier.classify(system_prompt, batch.text, reasoning_effort)
            except FormIntelError as e:
                logger.error(f"Batch {batch.batch_index + 1}/{len(batches)} ({batch.label}) failed: {e}")
                result.failures.append(UnitFailure.from_exception('classification', batch.label, e))
                continue

            batch_result.pages = list(batch.pages)
            result.batch_results.append(batch_result)
            logger.info(
                f"Batch {batch.batch_index + 1}/{len(batches)} ({batch.label}): "
                f"{len(batch_result.fields)} fields, finish_reason={batch_result.finish_reason}"
            )

        if not result.batch_results:
            if result.cancelled and not result.failures:
                raise PipelineCancelledError("Classification cancelled before any batch completed")
            raise AllBatchesFailedError(
                f"All {len(result.failures)} classification batch(es) failed",
                failures=result.failures
            )

        outcome = merge_batch_fields(result.batch_results, total_pages)
        result.fields = outcome.fields
        result.merge_stats = outcome.stats

        if result.failures:
            logger.warning(
                f"Partial classification: {len(result.failures)}/{len(batches)} batch(es) failed, "
                f"returning {len(result.fields)} fields from the rest"
            )
        return result
