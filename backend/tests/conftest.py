"""Pytest configuration and fixtures."""

import io
import json
from typing import Callable, List
from unittest.mock import MagicMock

import pytest
from PIL import Image

from formintel.services.llm_client import LlmClient, LlmCompletion
from formintel.services.field_extraction.fields import BoundingBox, OcrPage, TextBlock


def make_png(width: int = 100, height: int = 100, color=(255, 255, 255)) -> bytes:
    """Encode a solid-colour PNG in memory."""
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buffer, format='PNG')
    return buffer.getvalue()


def completion(content, finish_reason: str = 'stop', usage=None) -> LlmCompletion:
    """LlmCompletion from a string, or from a list/dict serialised as JSON."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return LlmCompletion(
        content=content,
        finish_reason=finish_reason,
        usage=usage or {'prompt_tokens': 100, 'completion_tokens': 50, 'total_tokens': 150},
        model='test-model'
    )


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    """Factory for in-memory PNG images."""
    return make_png


@pytest.fixture
def stub_llm():
    """LLM client stub; set ``complete.side_effect`` or ``return_value`` per test."""
    client = MagicMock(spec=LlmClient)
    client.complete.return_value = completion([])
    return client


@pytest.fixture
def name_page() -> OcrPage:
    """One clean page with a single labelled line."""
    block = TextBlock(text='Name:', bounding_box=BoundingBox(x=10, y=20, width=50, height=15), page_number=1)
    return OcrPage(page=1, text='Name: ____', blocks=(block,))


@pytest.fixture
def three_pages() -> List[OcrPage]:
    """Three single-line pages."""
    return [
        OcrPage(
            page=number,
            text=f'Question {number}: ____',
            blocks=(TextBlock(
                text=f'Question {number}:',
                bounding_box=BoundingBox(x=10, y=40, width=120, height=14),
                page_number=number
            ),)
        )
        for number in (1, 2, 3)
    ]


@pytest.fixture
def other_radio_html() -> str:
    """Radio group with Yes/No/Other and an adjacent free-text input."""
    return """
    <form>
      <div class="question">
        <label>Do you agree with the terms?</label>
        <label><input type="radio" name="agree" value="Yes"> Yes</label>
        <label><input type="radio" name="agree" value="No"> No</label>
        <div class="other-option">
          <label><input type="radio" name="agree" value="Other"> Other</label>
          <input type="text" name="agree_other" placeholder="Tell us why">
        </div>
      </div>
    </form>
    """
