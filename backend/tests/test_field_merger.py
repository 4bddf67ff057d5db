"""Tests for batch merge and section dedup."""

import pytest

from formintel.services.field_extraction.field_merger import (
    dedup_keys,
    merge_batch_fields,
    merge_section_fields,
    normalize_label,
    validation_failure,
)
from formintel.services.field_extraction.fields import BatchResult, field_from_dict


def make_field(**raw):
    raw.setdefault('type', 'text')
    return field_from_dict(raw)


class TestBatchMerge:
    """Validation, page ordering and drop statistics."""

    def test_validation_is_idempotent(self):
        """Merging an already-valid list again changes nothing."""
        fields = [
            make_field(label='Name', pageNumber=1),
            make_field(label='', type='label', richTextContent='<h2>Contact</h2>', pageNumber=1),
            make_field(label='Signature', type='signature', pageNumber=2),
        ]
        once = merge_batch_fields([fields], total_pages=2)
        twice = merge_batch_fields([once.fields], total_pages=2)

        assert once.fields == fields
        assert twice.fields == once.fields
        assert twice.stats.total_fields_before_merge == twice.stats.total_fields_after_merge == 3

    @pytest.mark.parametrize("total_pages", [1, 2, 5])
    def test_page_range_filtering(self, total_pages):
        """pageNumber in [1, total] is kept; total + 1 is always dropped."""
        inside = [make_field(label=f'Q{page}', pageNumber=page) for page in range(1, total_pages + 1)]
        outside = make_field(label='Ghost', pageNumber=total_pages + 1)

        outcome = merge_batch_fields([inside + [outside]], total_pages=total_pages)

        assert outcome.fields == inside
        assert outcome.stats.dropped_invalid_page == 1

    def test_drop_reasons_counted(self):
        fields = [
            make_field(label='No page'),
            make_field(label='Zero page', pageNumber=0),
            make_field(label='', type='label', pageNumber=1),
            make_field(label='Typeless', type='', pageNumber=1),
            make_field(label='Kept', pageNumber=1),
        ]
        outcome = merge_batch_fields([fields], total_pages=1)

        assert [f.label for f in outcome.fields] == ['Kept']
        assert outcome.stats.to_dict() == {
            'total_fields_before_merge': 5,
            'total_fields_after_merge': 1,
            'dropped_invalid_page': 2,
            'dropped_missing_type': 1,
            'dropped_missing_rich_text': 1,
        }

    def test_stable_sort_by_page(self):
        """Batches arriving out of order are sorted by page, keeping within-page order."""
        batch_b = BatchResult(fields=[make_field(label='C', pageNumber=2), make_field(label='D', pageNumber=2)])
        batch_a = BatchResult(fields=[make_field(label='A', pageNumber=1), make_field(label='B', pageNumber=1)])

        outcome = merge_batch_fields([batch_b, batch_a], total_pages=2)

        assert [f.label for f in outcome.fields] == ['A', 'B', 'C', 'D']

    def test_y_position_orders_page_when_complete(self):
        fields = [
            make_field(label='Bottom', pageNumber=1, yPosition=0.9),
            make_field(label='Top', pageNumber=1, yPosition=0.1),
        ]
        outcome = merge_batch_fields([fields], total_pages=1)
        assert [f.label for f in outcome.fields] == ['Top', 'Bottom']

    def test_partial_y_position_keeps_classifier_order(self):
        fields = [
            make_field(label='First', pageNumber=1, yPosition=0.9),
            make_field(label='Second', pageNumber=1),
        ]
        outcome = merge_batch_fields([fields], total_pages=1)
        assert [f.label for f in outcome.fields] == ['First', 'Second']

    def test_validation_failure_reasons(self):
        assert validation_failure(make_field(label='x', pageNumber=3), total_pages=2) == 'dropped_invalid_page'
        assert validation_failure(make_field(label='x', pageNumber=2), total_pages=2) is None


class TestSectionMerge:
    """Dedup across overlapping sections, first occurrence wins."""

    def test_identical_field_kept_once(self):
        first = make_field(label='Preferred contact', type='radio', options=['Email', 'Phone'])
        second = make_field(label='  preferred   CONTACT ', type='radio', options=['Phone', 'Email'])

        merged = merge_section_fields([[first], [second]])

        assert merged == [first]

    def test_required_flag_ignored(self):
        first = make_field(label='Email', type='email', required=True)
        second = make_field(label='Email', type='email', required=False)

        assert merge_section_fields([[first], [second]]) == [first]

    def test_different_options_both_kept(self):
        mother = make_field(label='Phone', type='select', options=['Mobile', 'Home'])
        father = make_field(label='Phone', type='select', options=['Work', 'Other line'])

        assert merge_section_fields([[mother], [father]]) == [mother, father]

    def test_different_types_both_kept(self):
        text = make_field(label='Comments', type='text')
        area = make_field(label='Comments', type='textarea')

        assert merge_section_fields([[text], [area]]) == [text, area]

    def test_duplicate_display_label_dropped(self):
        heading = make_field(type='label', richTextContent='<h2>Section 2</h2>')
        repeat = make_field(type='label', richTextContent='<h2>Section  2</h2>')
        other = make_field(type='label', richTextContent='<p>Instructions</p>')

        assert merge_section_fields([[heading], [repeat, other]]) == [heading, other]

    def test_section_order_preserved(self):
        sections = [
            [make_field(label='A'), make_field(label='B')],
            [make_field(label='B'), make_field(label='C')],
            [make_field(label='D')],
        ]
        assert [f.label for f in merge_section_fields(sections)] == ['A', 'B', 'C', 'D']

    def test_dedup_keys(self):
        no_options = make_field(label='Name')
        with_options = make_field(label='Size', type='select', options=['S', 'M'])

        assert len(dedup_keys(no_options)) == 2
        assert ('label_type', 'size', 'select') in dedup_keys(with_options)
        assert normalize_label('  Full   NAME ') == 'full name'
