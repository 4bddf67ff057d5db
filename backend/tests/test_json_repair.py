"""Tests for the JSON repair pipeline."""

import json

import pytest

from formintel.services.field_extraction.json_repair import (
    extract_json_candidate,
    insert_missing_colons,
    insert_missing_commas,
    is_likely_truncated,
    normalize_quotes,
    quote_bare_keys,
    repair_json,
    strip_comments,
    strip_markdown_fences,
    strip_trailing_commas,
    tokenize,
)


class TestRepairSteps:
    """Each step fixes one kind of defect."""

    def test_strip_comments(self):
        text = '[{"a": 1}, // trailing\n /* block */ {"url": "http://x.io//y"}]'
        assert json.loads(strip_comments(text)) == [{"a": 1}, {"url": "http://x.io//y"}]

    def test_normalize_quotes(self):
        text = "{'label': 'Full \"legal\" name', \"note\": \"it's fine\"}"
        assert json.loads(normalize_quotes(text)) == {"label": 'Full "legal" name', "note": "it's fine"}

    def test_quote_bare_keys(self):
        text = '{label: "Name", type: "text", required: false}'
        assert json.loads(quote_bare_keys(text)) == {"label": "Name", "type": "text", "required": False}

    def test_bare_values_not_quoted(self):
        """Literals and numbers in value position are left alone."""
        text = '{"a": true, "b": 12, "c": null}'
        assert quote_bare_keys(text) == text

    def test_insert_missing_colons(self):
        assert json.loads(insert_missing_colons('{"label" "Name", "pageNumber" 1}')) == {
            "label": "Name", "pageNumber": 1
        }

    def test_insert_missing_commas_in_array(self):
        assert json.loads(insert_missing_commas('[{"a": 1} {"b": 2}]')) == [{"a": 1}, {"b": 2}]

    def test_insert_missing_commas_in_object(self):
        assert json.loads(insert_missing_commas('{"a": 1 "b": [1 2 3]}')) == {"a": 1, "b": [1, 2, 3]}

    def test_strip_trailing_commas(self):
        assert json.loads(strip_trailing_commas('[{"a": [1, 2,],},]')) == [{"a": [1, 2]}]

    def test_valid_json_untouched(self):
        text = '[{"label": "Name", "options": ["a", "b"]}]'
        result = repair_json(text)
        assert result.text == text
        assert result.applied == ()
        assert not result.changed

    def test_tokenize_round_trip(self):
        text = '{"a" : [1, two, \'x\'], b: null }'
        assert ''.join(value for _, value in tokenize(text)) == text


class TestRepairPipeline:
    """Steps compose left to right and report what changed."""

    def test_multiple_defects(self):
        text = """[
            // name field
            {label: 'Name', type: "text", required: false,},
            {label: 'Email' type: "email" "pageNumber" 2}
        ]"""
        result = repair_json(text)

        assert json.loads(result.text) == [
            {"label": "Name", "type": "text", "required": False},
            {"label": "Email", "type": "email", "pageNumber": 2},
        ]
        assert result.applied == (
            'strip_comments',
            'normalize_quotes',
            'quote_bare_keys',
            'insert_missing_colons',
            'insert_missing_commas',
            'strip_trailing_commas',
        )

    def test_custom_steps(self):
        result = repair_json('x', steps=(('upper', str.upper),))
        assert result.text == 'X'
        assert result.applied == ('upper',)


class TestHelpers:
    """Fence stripping, candidate extraction and truncation detection."""

    def test_strip_markdown_fences(self):
        assert strip_markdown_fences('```json\n[1, 2]\n```') == '[1, 2]'
        assert strip_markdown_fences('  [1]  ') == '[1]'
        assert strip_markdown_fences('```json\n[1, 2') == '[1, 2'

    def test_extract_json_candidate_from_prose(self):
        text = 'Here are the fields: [{"label": "Name"}] Hope this helps!'
        assert extract_json_candidate(text) == '[{"label": "Name"}]'

    def test_extract_json_candidate_fenced(self):
        text = 'Sure.\n```json\n{"fields": []}\n```\nDone.'
        assert extract_json_candidate(text) == '{"fields": []}'

    def test_extract_json_candidate_none(self):
        assert extract_json_candidate('no json here') is None

    @pytest.mark.parametrize("text,expected", [
        ('[{"a": 1}]', False),
        ('[{"a": 1}, {"b"', True),
        ('{"fields": [', True),
    ])
    def test_is_likely_truncated(self, text, expected):
        assert is_likely_truncated(text) is expected
