"""Tests for the LLM field classifier's retry and repair state machine."""

from unittest.mock import patch

import pytest

from formintel.exceptions import (
    EmptyResponseError,
    LlmProviderError,
    ResponseParseError,
    TruncatedResponseError,
)
from formintel.services.field_extraction.field_classifier import LlmFieldClassifier
from formintel.services.field_extraction.fields import (
    ChoiceField,
    LabelField,
    TextField,
    field_from_dict,
)

from conftest import completion

VALID_FIELDS = [{"label": "Name", "type": "text", "required": False, "pageNumber": 1}]


class TestDirectParse:
    """Attempt 1 succeeds."""

    def test_bare_array(self, stub_llm):
        stub_llm.complete.return_value = completion(VALID_FIELDS)
        result = LlmFieldClassifier(stub_llm).classify("system", "user")

        assert [f.label for f in result.fields] == ["Name"]
        assert result.attempts == 1
        assert result.repairs_applied == []
        assert result.token_usage.total_tokens == 150
        assert stub_llm.complete.call_count == 1

    def test_fields_object_and_fences(self, stub_llm):
        stub_llm.complete.return_value = completion('```json\n{"fields": [{"label": "Email", "type": "email"}]}\n```')
        result = LlmFieldClassifier(stub_llm).classify("system", "user")

        assert result.fields[0].type == "email"

    def test_variants_built_by_type(self, stub_llm):
        stub_llm.complete.return_value = completion([
            {"label": "Colour", "type": "radio-with-other", "options": ["Red", {"label": "Blue"}], "allowOther": True},
            {"label": "ignored", "type": "label", "richTextContent": "<h1>Intake</h1>"},
            {"label": "Mystery", "type": "hologram"},
        ])
        fields = LlmFieldClassifier(stub_llm).classify("system", "user").fields

        assert isinstance(fields[0], ChoiceField)
        assert fields[0].options == ["Red", "Blue"]
        assert fields[0].allow_other is True
        assert isinstance(fields[1], LabelField)
        assert fields[1].label == ""
        assert isinstance(fields[2], TextField)
        assert fields[2].type == "hologram"

    def test_unknown_type_with_options_keeps_options(self):
        field = field_from_dict({"label": "Colour", "type": "multiselect", "options": ["Red", "Blue"], "pageNumber": 1})

        assert isinstance(field, ChoiceField)
        assert field.type == "multiselect"
        assert field.options_list == ["Red", "Blue"]
        assert field.to_dict()["options"] == ["Red", "Blue"]

    def test_malformed_optional_attributes_keep_field(self, stub_llm):
        """Bad confidence, placeholder or position values never drop the field."""
        stub_llm.complete.return_value = completion([
            {"label": "Name", "type": "text", "confidence": 95, "placeholder": 12345, "pageNumber": 1},
            {"label": "Email", "type": "email", "confidence": "high", "yPosition": "top", "pageNumber": 1},
            {"label": "Phone", "type": "tel", "confidence": 0.9, "pageNumber": 1},
            {"label": "Age", "type": "number", "confidence": -3, "pageNumber": 1},
        ])
        fields = LlmFieldClassifier(stub_llm).classify("system", "user").fields

        assert [f.label for f in fields] == ["Name", "Email", "Phone", "Age"]
        assert fields[0].confidence == pytest.approx(0.95)
        assert fields[0].placeholder == "12345"
        assert fields[1].confidence is None
        assert fields[1].y_position is None
        assert fields[2].confidence == pytest.approx(0.9)
        assert fields[3].confidence == 0.0

    def test_empty_list_is_a_result(self, stub_llm):
        """An empty array means the form has no fields, not a failure."""
        stub_llm.complete.return_value = completion([])
        result = LlmFieldClassifier(stub_llm).classify("system", "user")
        assert result.fields == []

    def test_model_and_reasoning_effort_forwarded(self, stub_llm):
        stub_llm.complete.return_value = completion(VALID_FIELDS)
        LlmFieldClassifier(stub_llm, model="vision-model").classify("system", "user", reasoning_effort="low")

        kwargs = stub_llm.complete.call_args.kwargs
        assert kwargs["model"] == "vision-model"
        assert kwargs["reasoning_effort"] == "low"


class TestRetryBeforeRepair:
    """A parse failure is retried once before any repair is attempted."""

    def test_retry_succeeds_without_repair(self, stub_llm):
        stub_llm.complete.side_effect = [
            completion('[{"label": "Name" "type": "text"'),
            completion(VALID_FIELDS),
        ]
        with patch("formintel.services.field_extraction.field_classifier.repair_json") as mock_repair:
            result = LlmFieldClassifier(stub_llm).classify("system", "user")

        mock_repair.assert_not_called()
        assert result.attempts == 2
        assert [f.label for f in result.fields] == ["Name"]
        assert result.token_usage.total_tokens == 300

    def test_identical_request_on_retry(self, stub_llm):
        stub_llm.complete.side_effect = [completion("not json"), completion(VALID_FIELDS)]
        LlmFieldClassifier(stub_llm).classify("system prompt", "user prompt", reasoning_effort="medium")

        first, second = stub_llm.complete.call_args_list
        assert first == second

    def test_repair_applied_to_second_attempt(self, stub_llm):
        stub_llm.complete.side_effect = [
            completion("garbage"),
            completion("[{label: 'Name', type: 'text', pageNumber: 1,},]"),
        ]
        result = LlmFieldClassifier(stub_llm).classify("system", "user")

        assert [f.label for f in result.fields] == ["Name"]
        assert "quote_bare_keys" in result.repairs_applied
        assert "strip_trailing_commas" in result.repairs_applied

    def test_extraction_fallback(self, stub_llm):
        stub_llm.complete.side_effect = [
            completion("garbage"),
            completion('Here you go: [{"label": "Phone", "type": "tel"}] Let me know!'),
        ]
        result = LlmFieldClassifier(stub_llm).classify("system", "user")

        assert result.fields[0].label == "Phone"
        assert result.repairs_applied[0] == "extract_json"


class TestTerminalFailures:
    """Failures are raised, never turned into an empty list."""

    def test_truncated_without_content(self, stub_llm):
        stub_llm.complete.return_value = completion("", finish_reason="length")

        with pytest.raises(TruncatedResponseError) as exc_info:
            LlmFieldClassifier(stub_llm).classify("system", "user")
        assert exc_info.value.finish_reason == "length"
        assert stub_llm.complete.call_count == 1

    def test_empty_content(self, stub_llm):
        stub_llm.complete.return_value = completion("   ", finish_reason="stop")

        with pytest.raises(EmptyResponseError):
            LlmFieldClassifier(stub_llm).classify("system", "user")

    def test_empty_on_retry(self, stub_llm):
        stub_llm.complete.side_effect = [completion("not json"), completion("", finish_reason="content_filter")]

        with pytest.raises(EmptyResponseError):
            LlmFieldClassifier(stub_llm).classify("system", "user")

    def test_unparseable_after_repair(self, stub_llm):
        content = '{"fields": [{"label": "Name", "type": "te'
        stub_llm.complete.side_effect = [completion("nope"), completion(content, finish_reason="length")]

        with pytest.raises(ResponseParseError) as exc_info:
            LlmFieldClassifier(stub_llm).classify("system", "user")

        error = exc_info.value
        assert error.response_length == len(content)
        assert error.preview == content
        assert error.finish_reason == "length"
        assert error.likely_truncated is True

    def test_transport_error_not_retried(self, stub_llm):
        stub_llm.complete.side_effect = LlmProviderError("HTTP 500", provider="llm", status_code=500)

        with pytest.raises(LlmProviderError):
            LlmFieldClassifier(stub_llm).classify("system", "user")
        assert stub_llm.complete.call_count == 1
