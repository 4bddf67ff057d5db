"""Tests for page batching and partial-failure handling."""

import threading
from unittest.mock import MagicMock

import pytest

from formintel.exceptions import (
    AllBatchesFailedError,
    LlmProviderError,
    PipelineCancelledError,
    ResponseParseError,
)
from formintel.services.field_extraction.batch_orchestrator import (
    BatchOrchestrator,
    build_batches,
    normalize_batch_size,
)
from formintel.services.field_extraction.field_classifier import LlmFieldClassifier
from formintel.services.field_extraction.fields import BatchResult, TokenUsage, field_from_dict


def batch_result(*labels, page=1):
    return BatchResult(
        fields=[field_from_dict({'label': label, 'type': 'text', 'pageNumber': page}) for label in labels],
        token_usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        processing_time_ms=100,
        finish_reason='stop'
    )


@pytest.fixture
def classifier():
    stub = MagicMock(spec=LlmFieldClassifier)
    stub.SYSTEM_PROMPT = LlmFieldClassifier.SYSTEM_PROMPT
    return stub


class TestBatchSize:
    """Batch size normalization."""

    @pytest.mark.parametrize("requested,total,expected", [
        (2, 10, 2),
        (20, 3, 3),
        (0, 10, 5),
        (-4, 10, 5),
        ("abc", 10, 5),
        (None, 10, 5),
        ("3", 10, 3),
        (None, 2, 2),
    ])
    def test_normalize(self, requested, total, expected):
        assert normalize_batch_size(requested, total, default=5) == expected

    def test_build_batches_contiguous(self, three_pages):
        blocks = [block for page in three_pages for block in page.blocks]
        batches = build_batches(three_pages, blocks, 2)

        assert [b.pages for b in batches] == [[1, 2], [3]]
        assert [b.label for b in batches] == ['pages 1-2', 'page 3']
        assert all(block.page_number in (1, 2) for block in batches[0].blocks)
        assert '--- Page 2 ---' in batches[0].text


class TestRun:
    """Sequential batch execution with partial results."""

    def test_partial_failure(self, classifier, three_pages):
        """Batch 2 failing still returns batches 1 and 3 plus one recorded error."""
        classifier.classify.side_effect = [
            batch_result('Q1', page=1),
            LlmProviderError("HTTP 503", provider='llm', status_code=503),
            batch_result('Q3', page=3),
        ]
        orchestrator = BatchOrchestrator(classifier, default_batch_size=1, batching_enabled=True)

        result = orchestrator.run(three_pages, [], batch_size=1)

        assert [f.label for f in result.fields] == ['Q1', 'Q3']
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.stage == 'classification'
        assert failure.unit == 'page 2'
        assert failure.error_type == 'LlmProviderError'
        assert result.batch_count == 3
        assert result.batching_analytics()['failed_batches'] == 1
        assert result.token_usage.total_tokens == 30

    def test_all_batches_fail(self, classifier, three_pages):
        classifier.classify.side_effect = ResponseParseError("bad json", response_length=10)
        orchestrator = BatchOrchestrator(classifier, default_batch_size=1, batching_enabled=True)

        with pytest.raises(AllBatchesFailedError) as exc_info:
            orchestrator.run(three_pages, [], batch_size=1)
        assert len(exc_info.value.failures) == 3
        assert exc_info.value.stage == 'classification'

    def test_no_pages(self, classifier):
        with pytest.raises(ValueError):
            BatchOrchestrator(classifier).run([], [])

    def test_low_reasoning_effort_under_batching(self, classifier, three_pages):
        classifier.classify.return_value = batch_result('Q', page=1)
        BatchOrchestrator(classifier, batching_enabled=True).run(three_pages, [], batch_size=5)

        assert classifier.classify.call_args.args[2] == 'low'

    def test_explicit_reasoning_effort_kept(self, classifier, three_pages):
        classifier.classify.return_value = batch_result('Q', page=1)
        BatchOrchestrator(classifier, batching_enabled=True).run(three_pages, [], reasoning_effort='high')

        assert classifier.classify.call_args.args[2] == 'high'

    def test_single_request_mode(self, classifier, three_pages):
        """With batching disabled every page goes into one call."""
        classifier.classify.return_value = batch_result('Q', page=1)
        result = BatchOrchestrator(classifier, batching_enabled=False).run(three_pages, [], batch_size=1)

        assert classifier.classify.call_count == 1
        assert result.batch_count == 1
        assert classifier.classify.call_args.args[2] is None

    def test_prompt_has_batch_context_and_spatial_hint(self, classifier, three_pages):
        classifier.classify.return_value = batch_result('Q', page=3)
        blocks = [block for page in three_pages for block in page.blocks]
        BatchOrchestrator(classifier, batching_enabled=True).run(three_pages, blocks, batch_size=2)

        second_prompt = classifier.classify.call_args_list[1].args[0]
        assert 'page 3 of a 3-page form' in second_prompt
        assert 'Block 1: "Question 3:"' in second_prompt
        assert 'Question 1:' not in second_prompt

    def test_system_message_override(self, classifier, three_pages):
        classifier.classify.return_value = batch_result('Q', page=1)
        BatchOrchestrator(classifier).run(three_pages, [], system_message_override='CUSTOM PROMPT')

        assert classifier.classify.call_args.args[0].startswith('CUSTOM PROMPT')

    def test_cancellation_stops_dispatch(self, classifier, three_pages):
        cancel = threading.Event()

        def classify(*args, **kwargs):
            cancel.set()
            return batch_result('Q1', page=1)

        classifier.classify.side_effect = classify
        result = BatchOrchestrator(classifier, batching_enabled=True).run(
            three_pages, [], batch_size=1, cancel_event=cancel
        )

        assert classifier.classify.call_count == 1
        assert result.cancelled is True
        assert [f.label for f in result.fields] == ['Q1']

    def test_cancelled_before_start(self, classifier, three_pages):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(PipelineCancelledError):
            BatchOrchestrator(classifier).run(three_pages, [], cancel_event=cancel)
        classifier.classify.assert_not_called()
