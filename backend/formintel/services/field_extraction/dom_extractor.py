"""
DOM Field Extractor
===================

Extracts form fields directly from a rendered page's HTML, without OCR or a
vision model. Web forms expose their structure in the DOM, which is more
reliable than reading it back from a screenshot.

Passes:

1. Rating widgets: clusters of 3-10 ``button[type=button]`` elements bearing
   star/emoji glyphs (or a "star" aria-label) are bound to a preceding
   label. A label reading exactly "Rating" with no widget nearby becomes a
   text field.
2. Radio/checkbox inputs are grouped by ``name`` into one field. An option
   reading "Other" (not "Mother", "Another", ...) is removed from the options
   and turned into allowOther/otherLabel/otherPlaceholder, consuming the
   adjacent free-text input.
3. Signature and file-upload widgets contribute one field each.
4. Every remaining input/textarea/select becomes a single field, labelled by
   the first label strategy that yields text (see LABEL_STRATEGIES).

Fields are returned in document order and deduplicated by id. Extraction
always returns a list: missing labels fall back to placeholder, name or a
synthetic "Field N".
"""

import copy
import re
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from bs4 import BeautifulSoup, Tag

from .fields import FieldCandidate, field_from_dict, is_numeric_scale

logger = logging.getLogger(__name__)

STAR_GLYPHS = ('★', '☆', '⭐')
RATING_MIN_BUTTONS = 3
RATING_MAX_BUTTONS = 10
RATING_SEARCH_DEPTH = 3
GROUP_LABEL_SEARCH_DEPTH = 5
DEFAULT_OTHER_PLACEHOLDER = 'Please specify...'

# Words that start with or contain "other" but are not an "Other" option
OTHER_FALSE_FRIENDS = ('mother', 'brother', 'father', 'another')

SKIPPED_INPUT_TYPES = ('hidden', 'submit', 'button', 'reset', 'image')

_REQUIRED_SPAN_STYLE = re.compile(r'color:\s*#ef4444', re.IGNORECASE)
_TRAILING_ASTERISKS = re.compile(r'\s*\*+\s*$')


@dataclass
class LabelInfo:
    text: str
    required: bool = False


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------

def input_type(element: Tag) -> str:
    if element.name in ('textarea', 'select'):
        return element.name
    return (element.get('type') or 'text').strip().lower()


def element_key(element: Tag) -> Optional[str]:
    return element.get('id') or element.get('name')


def _contains(tag: Tag, selector: str) -> bool:
    return tag.select_one(selector) is not None


def _is_required_span(tag: Tag) -> bool:
    return tag.name == 'span' and bool(_REQUIRED_SPAN_STYLE.search(tag.get('style', '')))


def _collapse(text: str) -> str:
    return ' '.join(text.split())


def extract_label_text(label: Optional[Tag]) -> LabelInfo:
    """
    Label text with required markers removed.

    Required when the text contains an asterisk or a red (#ef4444) span.
    """
    if label is None:
        return LabelInfo('')

    clone = copy.copy(label)
    required_spans = clone.find_all(_is_required_span)
    required = '*' in clone.get_text() or bool(required_spans)
    for span in required_spans:
        span.decompose()
    for control in clone.find_all(['input', 'button', 'select', 'textarea']):
        control.decompose()

    text = _TRAILING_ASTERISKS.sub('', _collapse(clone.get_text(' '))).strip()
    return LabelInfo(text, required)


def is_other_option(text: str, value: Optional[str] = None) -> bool:
    normalized = (text or '').strip().lower()
    if (value or '').lower() == 'other' or normalized in ('other', 'other:'):
        return True
    return (
        normalized.startswith('other')
        and len(normalized) < 20
        and not any(word in normalized for word in OTHER_FALSE_FRIENDS)
    )


def _has_star_glyph(text: str) -> bool:
    if any(glyph in text for glyph in STAR_GLYPHS):
        return True
    # Emoji faces and symbols used by emoji rating scales
    return any(ord(ch) >= 0x1F300 for ch in text)


def is_rating_button_cluster(buttons: List[Tag]) -> bool:
    if not RATING_MIN_BUTTONS <= len(buttons) <= RATING_MAX_BUTTONS:
        return False
    text = ''.join(button.get_text() for button in buttons)
    if _has_star_glyph(text):
        return True
    return any('star' in (button.get('aria-label') or '').lower() for button in buttons)


# ---------------------------------------------------------------------------
# Label strategies
# ---------------------------------------------------------------------------

LabelStrategy = Callable[['_DomContext', Tag], Optional[LabelInfo]]


def label_from_for_attribute(ctx: '_DomContext', element: Tag) -> Optional[LabelInfo]:
    key = element_key(element)
    if not key:
        return None
    label = ctx.soup.find('label', attrs={'for': key})
    if label is None or _contains(label, 'input, button, canvas'):
        return None
    return extract_label_text(label)


def label_from_enclosing_label(ctx: '_DomContext', element: Tag) -> Optional[LabelInfo]:
    label = element.find_parent('label')
    if label is None or _contains(label, 'input[type=radio], input[type=checkbox]'):
        return None
    info = extract_label_text(label)
    value = element.get('value') or ''
    if value and input_type(element) in ('text', 'email', 'tel'):
        info.text = info.text.replace(value, '').strip()
    return info


def label_from_preceding_sibling(ctx: '_DomContext', element: Tag) -> Optional[LabelInfo]:
    for sibling in element.find_previous_siblings('label'):
        if not _contains(sibling, 'input[type=radio], input[type=checkbox]'):
            return extract_label_text(sibling)
    return None


def label_from_parent_container(ctx: '_DomContext', element: Tag) -> Optional[LabelInfo]:
    parent = element.find_parent('div')
    if parent is None:
        return None
    label = parent.find('label')
    if label is None or _contains(label, 'input[type=radio], input[type=checkbox], canvas, button'):
        return None
    if ctx.position(label) < ctx.position(element):
        return extract_label_text(label)
    return None


LABEL_STRATEGIES: Tuple[LabelStrategy, ...] = (
    label_from_for_attribute,
    label_from_enclosing_label,
    label_from_preceding_sibling,
    label_from_parent_container,
)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class _DomContext:
    """Per-document state shared by the extraction passes."""

    def __init__(self, soup: BeautifulSoup):
        self.soup = soup
        self._positions: Dict[int, int] = {
            id(tag): index for index, tag in enumerate(soup.find_all(True))
        }
        self.processed_keys: Set[str] = set()
        self.consumed: Set[int] = set()
        self.consumed_containers: Set[int] = set()
        self.processed_groups: Set[Tuple[str, str]] = set()
        self.signature_containers: Set[int] = set()
        # (document position, field dict)
        self.records: List[Tuple[int, Dict]] = []

    def position(self, tag: Tag) -> int:
        return self._positions.get(id(tag), len(self._positions))

    def consume(self, tag: Tag):
        self.consumed.add(id(tag))
        key = element_key(tag)
        if key:
            self.processed_keys.add(key)

    def is_consumed(self, tag: Tag) -> bool:
        if id(tag) in self.consumed:
            return True
        key = element_key(tag)
        return bool(key) and key in self.processed_keys

    def add(self, anchor: Tag, data: Dict):
        self.records.append((self.position(anchor), data))


class DomFieldExtractor:
    """Extracts FieldCandidates from rendered HTML."""

    def __init__(self, label_strategies: Tuple[LabelStrategy, ...] = LABEL_STRATEGIES,
                 parser: str = 'html.parser'):
        self.label_strategies = label_strategies
        self.parser = parser

    def extract_fields(self, document: Union[str, bytes, BeautifulSoup]) -> List[FieldCandidate]:
        """
        Extract the form fields of a page.

        Args:
            document: Rendered HTML, or an already-parsed BeautifulSoup tree

        Returns:
            Fields in document order, deduplicated by id
        """
        soup = document if isinstance(document, BeautifulSoup) else BeautifulSoup(document, self.parser)
        ctx = _DomContext(soup)

        self._extract_ratings(ctx)
        for index, element in enumerate(soup.find_all(['input', 'textarea', 'select', 'canvas'])):
            self._extract_element(ctx, element, index)

        ordered = sorted(ctx.records, key=lambda record: record[0])
        fields: List[FieldCandidate] = []
        seen_ids: Set[str] = set()
        for _, data in ordered:
            if data['id'] in seen_ids:
                logger.debug(f"Dropping duplicate DOM field id {data['id']}")
                continue
            seen_ids.add(data['id'])
            fields.append(field_from_dict(data))

        logger.info(f"Extracted {len(fields)} fields from DOM")
        return fields

    # -- pass 1: rating widgets ---------------------------------------------

    def _find_rating_buttons(self, label: Tag) -> Tuple[Optional[Tag], List[Tag]]:
        current = label.parent
        depth = 0
        while isinstance(current, Tag) and depth < RATING_SEARCH_DEPTH:
            buttons = current.find_all('button', attrs={'type': 'button'})
            if is_rating_button_cluster(buttons):
                return current, buttons
            current = current.parent
            depth += 1
        return None, []

    def _extract_ratings(self, ctx: _DomContext):
        rating_count = 0
        for label in ctx.soup.find_all('label'):
            if _collapse(label.get_text()).lower() != 'rating':
                continue
            if _contains(label, 'input, button, canvas'):
                continue

            info = extract_label_text(label)
            container, buttons = self._find_rating_buttons(label)
            if container is not None:
                ctx.consumed_containers.add(id(container))
                for button in buttons:
                    ctx.consume(button)
                ctx.add(label, {
                    'id': f"rating_{rating_count}",
                    'label': info.text or 'Rating',
                    'type': 'rating',
                    'required': info.required,
                })
            else:
                ctx.add(label, {
                    'id': f"rating_text_{rating_count}",
                    'label': info.text or 'Rating',
                    'type': 'text',
                    'required': info.required,
                })
            rating_count += 1

        # Star clusters labelled with a custom question rather than "Rating"
        for parent in ctx.soup.find_all(True):
            if id(parent) in ctx.consumed_containers:
                continue
            buttons = parent.find_all('button', attrs={'type': 'button'}, recursive=False)
            if any(ctx.is_consumed(button) for button in buttons) or not is_rating_button_cluster(buttons):
                continue
            label = buttons[0].find_previous('label')
            if label is None or _contains(label, 'input, button, canvas'):
                continue
            info = extract_label_text(label)
            if not info.text:
                continue
            ctx.consumed_containers.add(id(parent))
            for button in buttons:
                ctx.consume(button)
            ctx.add(label, {
                'id': f"rating_{rating_count}",
                'label': info.text,
                'type': 'rating',
                'required': info.required,
            })
            rating_count += 1

    # -- pass 2-4: form controls ---------------------------------------------

    def _extract_element(self, ctx: _DomContext, element: Tag, index: int):
        if element.name == 'canvas':
            # Bare signature pads have no input element
            signature = self._signature_container(element)
            if signature is not None:
                self._extract_signature(ctx, element, signature, index)
            return

        kind = input_type(element)
        if kind in SKIPPED_INPUT_TYPES:
            return

        if kind == 'file':
            self._extract_file(ctx, element, index)
            return

        signature = self._signature_container(element)
        if signature is not None:
            self._extract_signature(ctx, element, signature, index)
            return

        if ctx.is_consumed(element):
            return

        if kind in ('radio', 'checkbox'):
            self._extract_group(ctx, element, kind, index)
            return

        container = element.find_parent('div')
        if container is not None and id(container) in ctx.consumed_containers:
            return
        if element.find_parent('button') is not None:
            return
        if 'preview' in (element.get('value') or '').lower():
            return
        if container is not None and 'preview' in container.get_text().lower():
            return

        self._extract_single(ctx, element, kind, index)

    def _extract_file(self, ctx: _DomContext, element: Tag, index: int):
        key = element_key(element)
        if ctx.is_consumed(element):
            return

        label_text = 'File upload'
        required = False
        container = element.find_parent('div')
        if container is not None:
            label = container.find('label')
            if label is not None and not _contains(label, 'input'):
                info = extract_label_text(label)
                label_text = info.text or label_text
                required = info.required
            outer = container.parent
            if isinstance(outer, Tag):
                outer_label = outer.find('label')
                if outer_label is not None and not _contains(outer_label, 'input, canvas, button'):
                    info = extract_label_text(outer_label)
                    if info.text and info.text.lower() != 'file upload':
                        label_text = info.text
                        required = info.required

        ctx.consume(element)
        ctx.add(element, {
            'id': key or f"file_{index}",
            'label': label_text,
            'type': 'file',
            'required': required or element.has_attr('required'),
        })

    @staticmethod
    def _signature_container(element: Tag) -> Optional[Tag]:
        for parent in element.parents:
            if not isinstance(parent, Tag):
                continue
            classes = parent.get('class') or []
            if 'signature-capture' in classes:
                return parent
            if parent.name == 'div' and any('signature' in cls for cls in classes):
                return parent
        return None

    def _extract_signature(self, ctx: _DomContext, element: Tag, container: Tag, index: int):
        if id(container) in ctx.signature_containers:
            return
        ctx.signature_containers.add(id(container))

        label_text = 'Signature'
        required = False
        current = container.parent
        depth = 0
        while isinstance(current, Tag) and depth < 3:
            label = current.find('label')
            if label is not None and not _contains(label, 'input, canvas, button'):
                info = extract_label_text(label)
                if info.text and info.text.lower() != 'preview':
                    label_text = info.text
                    required = info.required
                    break
            current = current.parent
            depth += 1

        for control in container.find_all(['input', 'canvas', 'button']):
            ctx.consume(control)

        ctx.add(container, {
            'id': element_key(element) or f"signature_{index}",
            'label': label_text,
            'type': 'signature',
            'required': required,
        })

    def _group_question_label(self, ctx: _DomContext, element: Tag) -> Optional[LabelInfo]:
        """
        Nearest label before the group that is not itself an option label.
        """
        element_position = ctx.position(element)
        current = element.parent
        depth = 0
        while isinstance(current, Tag) and depth < GROUP_LABEL_SEARCH_DEPTH:
            candidates = [
                label for label in current.find_all('label')
                if ctx.position(label) < element_position
                and not _contains(label, 'input[type=radio], input[type=checkbox]')
            ]
            for label in reversed(candidates):
                info = extract_label_text(label)
                if info.text:
                    return info

            for sibling in current.find_previous_siblings('label'):
                if not _contains(sibling, 'input[type=radio], input[type=checkbox]'):
                    info = extract_label_text(sibling)
                    if info.text:
                        return info

            current = current.parent
            depth += 1

        return label_from_for_attribute(ctx, element)

    def _extract_group(self, ctx: _DomContext, element: Tag, kind: str, index: int):
        name = element.get('name')
        if not name or (kind, name) in ctx.processed_groups:
            return
        ctx.processed_groups.add((kind, name))

        members = ctx.soup.find_all('input', attrs={'type': kind, 'name': name})
        question = self._group_question_label(ctx, element)
        label_text = question.text if question and question.text else name

        options: List[str] = []
        required = bool(question and question.required)
        other_label = None
        other_placeholder = None
        has_other = False

        for member in members:
            ctx.consume(member)
            option_text = member.get('value') or ''
            option_label = member.find_parent('label')
            if option_label is not None:
                clone = copy.copy(option_label)
                for control in clone.find_all('input'):
                    control.decompose()
                option_text = _collapse(clone.get_text(' ')) or option_text

            if member.has_attr('required'):
                required = True

            if is_other_option(option_text, member.get('value')):
                has_other = True
                other_label = option_text
                container = member.find_parent('div')
                other_input = container.find('input', attrs={'type': 'text'}) if container else None
                if other_input is not None:
                    other_placeholder = other_input.get('placeholder') or DEFAULT_OTHER_PLACEHOLDER
                    ctx.consume(other_input)
            else:
                options.append(option_text)

        if not options and not has_other:
            return

        if has_other:
            field_type = f"{kind}-with-other"
        elif is_numeric_scale(label_text, options):
            field_type = 'rating'
        else:
            field_type = kind

        ctx.add(element, {
            'id': name,
            'label': label_text,
            'type': field_type,
            'required': required,
            'options': options,
            'allowOther': True if has_other else None,
            'otherLabel': other_label,
            'otherPlaceholder': other_placeholder,
        })

    def _resolve_label(self, ctx: _DomContext, element: Tag) -> LabelInfo:
        required = False
        for strategy in self.label_strategies:
            info = strategy(ctx, element)
            if info is None:
                continue
            required = required or info.required
            if info.text:
                return LabelInfo(info.text, required)
        return LabelInfo('', required)

    def _extract_single(self, ctx: _DomContext, element: Tag, kind: str, index: int):
        placeholder = element.get('placeholder') or None
        info = self._resolve_label(ctx, element)
        label_text = info.text or placeholder or element.get('name') or f"Field {index + 1}"
        required = (
            info.required
            or element.has_attr('required')
            or (element.get('aria-required') or '').lower() == 'true'
        )

        options: List[str] = []
        if kind == 'textarea':
            field_type = 'textarea'
        elif kind == 'select':
            for option in element.find_all('option'):
                value = option.get('value')
                text = _collapse(option.get_text())
                # Options without a value are prompts ("Choose...")
                if value is None:
                    value = text
                if value:
                    options.append(text or value)
            field_type = 'rating' if is_numeric_scale(label_text, options) else 'select'
        elif kind in ('email', 'tel', 'date', 'number'):
            field_type = kind
        else:
            field_type = 'text'

        ctx.consume(element)
        ctx.add(element, {
            'id': element_key(element) or f"field_{index}",
            'label': label_text,
            'type': field_type,
            'required': required,
            'placeholder': placeholder,
            'options': options,
        })
