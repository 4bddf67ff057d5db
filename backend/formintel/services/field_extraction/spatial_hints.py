"""
Spatial hints for the classification prompt.

Geometry separates titles from section headers from field labels in a way
raw OCR text cannot, so a sample of blocks with their boxes is rendered into
the system prompt together with rules mapping geometry to structure.
"""

import logging
from typing import List, Sequence

from .fields import TextBlock

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 50

# Blocks whose vertical positions differ by less than this are one visual row
SAME_ROW_TOLERANCE_PX = 10

SPATIAL_RULES = """Use the block geometry to infer structure:
- Large height or width near the top of the first page: form title (type "label").
- Medium height, no trailing colon, standing alone: section header (type "label").
- Long or multi-line text: instructions or disclaimer (type "label").
- Text ending in a colon with an input area at a similar y-coordinate: a field label.
- A run of check boxes, option glyphs or repeated short phrases in the same y-band: the options of ONE field.
- Blocks whose y-coordinates differ by less than {tolerance}px are on the same visual row."""


def format_block(index: int, block: TextBlock) -> str:
    box = block.bounding_box
    text = ' '.join(block.text.split())
    return (
        f'Block {index}: "{text}" at '
        f'({round(box.x)}, {round(box.y)}, {round(box.width)}, {round(box.height)})'
    )


def build_spatial_hint(blocks: Sequence[TextBlock], sample_size: int = DEFAULT_SAMPLE_SIZE) -> str:
    """
    Render up to ``sample_size`` blocks plus the geometry rules.

    Blocks keep their given order and are numbered from 1. Returns an empty
    string when there are no blocks.
    """
    if not blocks:
        return ''

    sample = list(blocks[:max(sample_size, 0)])
    lines: List[str] = [
        f"SPATIAL LAYOUT (first {len(sample)} of {len(blocks)} text blocks, "
        f"coordinates as (x, y, width, height) in pixels):"
    ]
    lines.extend(format_block(i, block) for i, block in enumerate(sample, start=1))
    lines.append('')
    lines.append(SPATIAL_RULES.format(tolerance=SAME_ROW_TOLERANCE_PX))

    logger.debug(f"Built spatial hint from {len(sample)}/{len(blocks)} blocks")
    return '\n'.join(lines)
