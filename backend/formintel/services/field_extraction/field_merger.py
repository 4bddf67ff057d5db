"""
Field Merge & Dedup
===================

Combines per-batch and per-section field lists into one ordered array.

Two algorithms, one per ingestion path:

Batch merge (multi-page OCR path):
    Flatten the batch lists, drop fields that fail validation (page out of
    range, label without markup, input without a type), then stable-sort by
    page. Within a page, fields are ordered by ``yPosition`` when every field
    on that page carries one; otherwise the classifier's order is kept.

Section merge (tall single-image path):
    Concatenate section lists in section order and drop later duplicates of
    fields already seen in an earlier (overlapping) section, using three
    progressively looser keys.

Neither algorithm edits a FieldCandidate. They only filter and reorder.
"""

import logging
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .fields import FieldCandidate

logger = logging.getLogger(__name__)


@dataclass
class MergeStats:
    total_fields_before_merge: int = 0
    total_fields_after_merge: int = 0
    dropped_invalid_page: int = 0
    dropped_missing_type: int = 0
    dropped_missing_rich_text: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'total_fields_before_merge': self.total_fields_before_merge,
            'total_fields_after_merge': self.total_fields_after_merge,
            'dropped_invalid_page': self.dropped_invalid_page,
            'dropped_missing_type': self.dropped_missing_type,
            'dropped_missing_rich_text': self.dropped_missing_rich_text
        }


@dataclass
class MergeOutcome:
    fields: List[FieldCandidate]
    stats: MergeStats = field(default_factory=MergeStats)


# ---------------------------------------------------------------------------
# Batch merge
# ---------------------------------------------------------------------------

def validation_failure(candidate: FieldCandidate, total_pages: int) -> Optional[str]:
    """
    Reason a field must be dropped, or None when it is valid.

    The reason doubles as the MergeStats counter that records the drop.
    """
    page = candidate.page_number
    if page is None or page < 1 or page > total_pages:
        return 'dropped_invalid_page'
    if candidate.is_label:
        if not (getattr(candidate, 'rich_text_content', None) or '').strip():
            return 'dropped_missing_rich_text'
    elif not candidate.type:
        return 'dropped_missing_type'
    return None


def _order_within_page(page_fields: List[FieldCandidate]) -> List[FieldCandidate]:
    if page_fields and all(f.y_position is not None for f in page_fields):
        # sorted() is stable, so ties keep classifier order
        return sorted(page_fields, key=lambda f: f.y_position)
    return page_fields


def merge_batch_fields(
    batch_results: Iterable[Any],
    total_pages: int
) -> MergeOutcome:
    """
    Merge the field lists of several batches.

    Args:
        batch_results: BatchResult objects or plain lists of FieldCandidate
        total_pages: Number of pages in the document

    Returns:
        MergeOutcome with the ordered fields and drop counters
    """
    flattened: List[FieldCandidate] = []
    for result in batch_results:
        flattened.extend(getattr(result, 'fields', result))

    stats = MergeStats(total_fields_before_merge=len(flattened))
    valid: List[FieldCandidate] = []

    for candidate in flattened:
        reason = validation_failure(candidate, total_pages)
        if reason is None:
            valid.append(candidate)
            continue
        setattr(stats, reason, getattr(stats, reason) + 1)
        logger.warning(
            f"Dropping field '{candidate.label or candidate.type or '?'}' "
            f"(page={candidate.page_number}): {reason.replace('dropped_', '').replace('_', ' ')}"
        )

    by_page = sorted(valid, key=lambda f: f.page_number)
    merged: List[FieldCandidate] = []
    for _, page_fields in groupby(by_page, key=lambda f: f.page_number):
        merged.extend(_order_within_page(list(page_fields)))

    stats.total_fields_after_merge = len(merged)
    logger.info(
        f"Batch merge: {stats.total_fields_before_merge} -> {stats.total_fields_after_merge} fields "
        f"(invalid page: {stats.dropped_invalid_page}, missing type: {stats.dropped_missing_type}, "
        f"missing rich text: {stats.dropped_missing_rich_text})"
    )
    return MergeOutcome(fields=merged, stats=stats)


# ---------------------------------------------------------------------------
# Section merge
# ---------------------------------------------------------------------------

def normalize_label(label: str) -> str:
    return ' '.join((label or '').lower().split())


def _sorted_options(candidate: FieldCandidate) -> Tuple[str, ...]:
    return tuple(sorted(normalize_label(o) for o in candidate.options_list))


def dedup_keys(candidate: FieldCandidate) -> List[Tuple[Any, ...]]:
    """
    Keys under which a field counts as already seen.

    (a) label + type + required + options
    (b) label + type + options
    (c) label + type, only for fields with a non-empty option set
    """
    label = normalize_label(candidate.label)
    options = _sorted_options(candidate)
    keys: List[Tuple[Any, ...]] = [
        ('exact', label, candidate.type, candidate.required, options),
        ('no_required', label, candidate.type, options),
    ]
    if options:
        keys.append(('label_type', label, candidate.type))
    return keys


def _is_duplicate(candidate: FieldCandidate, seen: Dict[Tuple[Any, ...], FieldCandidate]) -> bool:
    label = normalize_label(candidate.label)
    options = _sorted_options(candidate)

    if ('exact', label, candidate.type, candidate.required, options) in seen:
        return True
    if ('no_required', label, candidate.type, options) in seen:
        return True
    # Loosest key: both sides must carry the same non-empty option set
    if options:
        earlier = seen.get(('label_type', label, candidate.type))
        if earlier is not None and _sorted_options(earlier) == options:
            return True
    return False


def merge_section_fields(section_fields: Sequence[Sequence[FieldCandidate]]) -> List[FieldCandidate]:
    """
    Merge fields from overlapping image sections, first occurrence wins.

    Display labels (no semantic label text) are deduplicated on their markup
    so a heading cut by an overlap is not repeated.
    """
    seen: Dict[Tuple[Any, ...], FieldCandidate] = {}
    seen_markup = set()
    merged: List[FieldCandidate] = []
    dropped = 0

    for section_index, fields in enumerate(section_fields):
        for candidate in fields:
            if candidate.is_label:
                markup = ' '.join((getattr(candidate, 'rich_text_content', None) or '').split())
                if markup and markup in seen_markup:
                    dropped += 1
                    logger.debug(f"Section {section_index}: dropping duplicate display label")
                    continue
                if markup:
                    seen_markup.add(markup)
                merged.append(candidate)
                continue

            if _is_duplicate(candidate, seen):
                dropped += 1
                logger.debug(
                    f"Section {section_index}: dropping duplicate field "
                    f"'{candidate.label}' ({candidate.type})"
                )
                continue

            for key in dedup_keys(candidate):
                seen.setdefault(key, candidate)
            merged.append(candidate)

    total = sum(len(fields) for fields in section_fields)
    logger.info(f"Section merge: {total} -> {len(merged)} fields ({dropped} duplicates removed)")
    return merged
