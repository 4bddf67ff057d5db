"""Tests for spatial hint rendering."""

from formintel.services.field_extraction.fields import BoundingBox, TextBlock
from formintel.services.field_extraction.spatial_hints import build_spatial_hint, format_block


def block(text, y=0.0):
    return TextBlock(text=text, bounding_box=BoundingBox(x=10.4, y=y, width=99.6, height=14.0), page_number=1)


class TestSpatialHints:
    """Block formatting, sampling and the empty case."""

    def test_format_block(self):
        assert format_block(3, block('Full   name:', y=120.2)) == 'Block 3: "Full name:" at (10, 120, 100, 14)'

    def test_sample_size_caps_blocks(self):
        blocks = [block(f'Line {i}', y=i * 20) for i in range(10)]
        hint = build_spatial_hint(blocks, sample_size=4)

        assert 'first 4 of 10 text blocks' in hint
        assert 'Block 4: "Line 3"' in hint
        assert 'Block 5:' not in hint
        assert 'same visual row' in hint

    def test_blocks_keep_order(self):
        hint = build_spatial_hint([block('Second', y=50), block('First', y=10)])
        assert hint.index('Block 1: "Second"') < hint.index('Block 2: "First"')

    def test_empty_blocks(self):
        assert build_spatial_hint([]) == ''
