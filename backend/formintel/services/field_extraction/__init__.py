"""
Form Field Extraction
=====================

Turns a form (OCR'd pages, rendered HTML or a tall screenshot) into an
ordered list of validated field candidates.

Stages:
1. OCR pages -> contiguous page batches with spatial hints
2. LLM classification per batch (retry once, then JSON repair)
3. Merge: validation, page ordering and exact deduplication
4. DOM path: deterministic extraction from rendered HTML
5. Image path: overlapping sections, classified and deduplicated

Design Principles:
- One candidate schema for every path
- Partial failures are recorded, a stage only fails when every unit fails
- Provider clients are injected, never built per request

The facade lives in ``formintel.services.field_extraction.pipeline`` and is
imported from there; it depends on the OCR and image services, which in turn
import the field types below.
"""

from .fields import (
    BoundingBox,
    TextBlock,
    OcrPage,
    ImageSection,
    PageBatch,
    FieldCandidate,
    TextField,
    ChoiceField,
    RatingField,
    WidgetField,
    LabelField,
    TokenUsage,
    BatchResult,
    UnitFailure,
    FIELD_TYPE_VOCABULARY,
    field_from_dict,
    fields_from_dicts,
)
from .json_repair import repair_json, RepairResult
from .field_merger import merge_batch_fields, merge_section_fields, MergeStats, MergeOutcome
from .spatial_hints import build_spatial_hint
from .field_classifier import LlmFieldClassifier
from .batch_orchestrator import BatchOrchestrator, OrchestratorResult
from .dom_extractor import DomFieldExtractor

__all__ = [
    # Types
    'BoundingBox',
    'TextBlock',
    'OcrPage',
    'ImageSection',
    'PageBatch',
    'FieldCandidate',
    'TextField',
    'ChoiceField',
    'RatingField',
    'WidgetField',
    'LabelField',
    'TokenUsage',
    'BatchResult',
    'UnitFailure',
    'FIELD_TYPE_VOCABULARY',
    'field_from_dict',
    'fields_from_dicts',
    # Stages
    'repair_json',
    'RepairResult',
    'merge_batch_fields',
    'merge_section_fields',
    'MergeStats',
    'MergeOutcome',
    'build_spatial_hint',
    'LlmFieldClassifier',
    'BatchOrchestrator',
    'OrchestratorResult',
    'DomFieldExtractor',
]
