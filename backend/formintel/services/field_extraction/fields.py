"""
Field Extraction Data Model
===========================

Spatial inputs (TextBlock, ImageSection, PageBatch) and the atomic output
unit of every ingestion path: the FieldCandidate family.

FieldCandidate is a small family of frozen pydantic models keyed by ``type``:

- TextField:   text, email, tel, number, textarea, date (and any type string
               the classifier invents that we do not recognise)
- ChoiceField: select, radio, checkbox, radio-with-other, checkbox-with-other
- RatingField: rating
- WidgetField: file, signature, payment
- LabelField:  label (display-only markup, no input)

Wire names are camelCase (pageNumber, allowOther, richTextContent, ...)
because that is what the LLM is prompted to emit and what callers consume.
Instances are immutable; the merge engine filters and reorders them but never
edits classified attributes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Spatial inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BoundingBox:
    """Pixel-space bounding box."""
    x: float
    y: float
    width: float
    height: float

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    @classmethod
    def from_vertices(cls, vertices: List[Dict[str, Any]]) -> 'BoundingBox':
        """
        Build a box from polygon vertices.

        Providers omit zero coordinates and may return vertices in either
        winding order, so extents are taken from min/max and the height is
        guarded with abs().
        """
        if not vertices:
            return cls(0, 0, 0, 0)
        xs = [v.get('x', 0) or 0 for v in vertices]
        ys = [v.get('y', 0) or 0 for v in vertices]
        left, right = min(xs), max(xs)
        # Opposite corner of the polygon
        top, bottom = ys[0], ys[len(ys) // 2] if len(ys) > 2 else ys[-1]
        return cls(
            x=left,
            y=min(ys),
            width=right - left,
            height=abs(bottom - top)
        )


@dataclass(frozen=True)
class TextBlock:
    """One OCR-detected text region."""
    text: str
    bounding_box: BoundingBox
    page_number: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TextBlock':
        """Accept both nested ({boundingBox: {...}}) and flat ({x, y, w, h}) shapes."""
        box = data.get('boundingBox') or data.get('bounding_box') or data
        return cls(
            text=str(data.get('text', '')),
            bounding_box=BoundingBox(
                x=float(box.get('x', 0) or 0),
                y=float(box.get('y', 0) or 0),
                width=float(box.get('width', box.get('w', 0)) or 0),
                height=float(box.get('height', box.get('h', 0)) or 0),
            ),
            page_number=int(data.get('pageNumber', data.get('page_number', 1)) or 1)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'boundingBox': self.bounding_box.to_dict(),
            'pageNumber': self.page_number
        }


@dataclass(frozen=True)
class OcrPage:
    """OCR output for a single page: combined text plus its spatial blocks."""
    page: int
    text: str
    blocks: Tuple[TextBlock, ...] = ()


@dataclass(frozen=True)
class ImageSection:
    """A vertical slice of an oversized source image."""
    buffer: bytes
    y_offset: int
    height: int
    section_index: int
    total_sections: int
    overlap_with_next: int = 0

    @property
    def position(self) -> str:
        if self.total_sections == 1:
            return 'full'
        if self.section_index == 0:
            return 'top'
        if self.section_index == self.total_sections - 1:
            return 'bottom'
        return 'middle'


@dataclass
class PageBatch:
    """A contiguous group of pages classified together in one LLM call."""
    batch_index: int
    pages: List[int]
    text: str
    blocks: List[TextBlock] = field(default_factory=list)

    @property
    def label(self) -> str:
        if len(self.pages) == 1:
            return f"page {self.pages[0]}"
        return f"pages {self.pages[0]}-{self.pages[-1]}"


# ---------------------------------------------------------------------------
# Field candidates
# ---------------------------------------------------------------------------

TEXT_TYPES = ('text', 'email', 'tel', 'number', 'textarea', 'date')
CHOICE_TYPES = ('select', 'radio', 'checkbox', 'radio-with-other', 'checkbox-with-other')
WIDGET_TYPES = ('file', 'signature', 'payment')
RATING_TYPE = 'rating'
LABEL_TYPE = 'label'

FIELD_TYPE_VOCABULARY = TEXT_TYPES + CHOICE_TYPES + (RATING_TYPE,) + WIDGET_TYPES + (LABEL_TYPE,)


class FieldCandidate(BaseModel):
    """Common attributes of every extracted field."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra='ignore')

    id: Optional[str] = None
    label: str = ''
    type: str = ''
    required: bool = False
    placeholder: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    page_number: Optional[int] = Field(default=None, alias='pageNumber')
    # Fraction of page height (0 = top); emitted by the classifier when known
    y_position: Optional[float] = Field(default=None, alias='yPosition')

    @field_validator('label', mode='before')
    @classmethod
    def _coerce_label(cls, value: Any) -> str:
        return '' if value is None else str(value).strip()

    @field_validator('type', mode='before')
    @classmethod
    def _coerce_type(cls, value: Any) -> str:
        return '' if value is None else str(value).strip().lower()

    @field_validator('required', mode='before')
    @classmethod
    def _coerce_required(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ('true', 'yes', '1', 'required')
        return bool(value)

    @field_validator('page_number', mode='before')
    @classmethod
    def _coerce_page(cls, value: Any) -> Optional[int]:
        if value is None or value == '':
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @field_validator('placeholder', mode='before')
    @classmethod
    def _coerce_placeholder(cls, value: Any) -> Optional[str]:
        if value is None or value == '':
            return None
        return str(value)

    @field_validator('confidence', mode='before')
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Optional[float]:
        """Unparseable scores become None; 1-100 is read as a percentage."""
        if value is None or isinstance(value, bool):
            return None
        try:
            score = float(str(value).strip().rstrip('%'))
        except (TypeError, ValueError):
            return None
        if score != score:
            return None
        if score > 1.0:
            score = score / 100.0
        return min(1.0, max(0.0, score))

    @field_validator('y_position', mode='before')
    @classmethod
    def _coerce_y_position(cls, value: Any) -> Optional[float]:
        if value is None or value == '' or isinstance(value, bool):
            return None
        try:
            position = float(value)
        except (TypeError, ValueError):
            return None
        return None if position != position else position

    @property
    def is_label(self) -> bool:
        return self.type == LABEL_TYPE

    @property
    def options_list(self) -> List[str]:
        """Options for multi-choice variants, empty otherwise."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Serialise with wire (camelCase) names, omitting absent attributes."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TextField(FieldCandidate):
    """Free-text style inputs."""


class ChoiceField(FieldCandidate):
    """Multi-choice inputs with an optional free-text "other" escape."""

    options: List[str] = Field(default_factory=list)
    allow_other: Optional[bool] = Field(default=None, alias='allowOther')
    other_label: Optional[str] = Field(default=None, alias='otherLabel')
    other_placeholder: Optional[str] = Field(default=None, alias='otherPlaceholder')

    @field_validator('options', mode='before')
    @classmethod
    def _coerce_options(cls, value: Any) -> List[str]:
        if not value:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        options = []
        for option in value:
            # Models sometimes emit {"label": ..., "value": ...} objects
            if isinstance(option, dict):
                option = option.get('label') or option.get('value') or option.get('text')
            if option is None:
                continue
            text = str(option).strip()
            if text:
                options.append(text)
        return options

    @property
    def options_list(self) -> List[str]:
        return list(self.options)


class RatingField(ChoiceField):
    """Star/emoji rating widgets, or numeric scales (see is_numeric_scale)."""


class WidgetField(FieldCandidate):
    """Single-field widgets: file upload, signature pad, payment."""


class LabelField(FieldCandidate):
    """Display-only element; carries tagged markup and an empty label."""

    rich_text_content: Optional[str] = Field(default=None, alias='richTextContent')

    @field_validator('label', mode='before')
    @classmethod
    def _label_is_empty(cls, value: Any) -> str:
        return ''


_VARIANTS: Dict[str, Type[FieldCandidate]] = {}
_VARIANTS.update({t: TextField for t in TEXT_TYPES})
_VARIANTS.update({t: ChoiceField for t in CHOICE_TYPES})
_VARIANTS.update({t: WidgetField for t in WIDGET_TYPES})
_VARIANTS[RATING_TYPE] = RatingField
_VARIANTS[LABEL_TYPE] = LabelField


def variant_for(field_type: str, has_options: bool = False) -> Type[FieldCandidate]:
    """
    Model class for a type string. Unrecognised types are treated as
    choice-like when they carry options, text-like otherwise.
    """
    default = ChoiceField if has_options else TextField
    return _VARIANTS.get((field_type or '').strip().lower(), default)


def field_from_dict(raw: Dict[str, Any]) -> FieldCandidate:
    """
    Build the right FieldCandidate variant from a raw dict.

    Missing ``type`` is preserved as an empty string so the merge engine can
    drop it with a logged reason rather than it disappearing here.

    Raises:
        pydantic.ValidationError: if attributes have unusable values
    """
    field_type = raw.get('type') or ''
    options = raw.get('options')
    has_options = isinstance(options, (list, tuple)) and len(options) > 0
    model = variant_for(str(field_type), has_options)
    return model.model_validate(raw)


def fields_from_dicts(raw_fields: List[Any]) -> List[FieldCandidate]:
    """
    Convert a parsed JSON field list, skipping entries that are not objects
    or fail validation.
    """
    fields: List[FieldCandidate] = []
    for index, raw in enumerate(raw_fields):
        if not isinstance(raw, dict):
            logger.warning(f"Skipping field #{index}: expected an object, got {type(raw).__name__}")
            continue
        try:
            fields.append(field_from_dict(raw))
        except ValidationError as e:
            logger.warning(f"Skipping field #{index} ({raw.get('label')!r}): {e.error_count()} validation error(s)")
    return fields


# ---------------------------------------------------------------------------
# Per-unit results
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, usage: Optional[Dict[str, Any]]) -> 'TokenUsage':
        usage = usage or {}
        return cls(
            prompt_tokens=int(usage.get('prompt_tokens', 0) or 0),
            completion_tokens=int(usage.get('completion_tokens', 0) or 0),
            total_tokens=int(usage.get('total_tokens', 0) or 0)
        )

    def __add__(self, other: 'TokenUsage') -> 'TokenUsage':
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            'prompt_tokens': self.prompt_tokens,
            'completion_tokens': self.completion_tokens,
            'total_tokens': self.total_tokens
        }


@dataclass
class BatchResult:
    """Outcome of one successful classifier invocation."""
    fields: List[FieldCandidate]
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    processing_time_ms: int = 0
    finish_reason: Optional[str] = None
    pages: List[int] = field(default_factory=list)
    # Names of repair steps applied, empty when the content parsed directly
    repairs_applied: List[str] = field(default_factory=list)
    attempts: int = 1


@dataclass
class UnitFailure:
    """A recoverable failure of one page, image, section or batch."""
    stage: str
    unit: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, stage: str, unit: str, error: BaseException) -> 'UnitFailure':
        return cls(stage=stage, unit=unit, error_type=type(error).__name__, message=str(error))

    def to_dict(self) -> Dict[str, str]:
        return {
            'stage': self.stage,
            'unit': self.unit,
            'error_type': self.error_type,
            'message': self.message
        }


def is_numeric_scale(label: str, options: List[str]) -> bool:
    """
    Best-effort rule for treating a choice field as a rating.

    True when the label mentions "rating", or when there are at least three
    options and every one parses as a number. Short numeric ranges that are
    not ratings (e.g. number of children) will also match; callers should
    treat the result as a hint.
    """
    if 'rating' in (label or '').lower():
        return True
    if len(options) < 3:
        return False
    for option in options:
        try:
            float(option.strip())
        except ValueError:
            return False
    return True
