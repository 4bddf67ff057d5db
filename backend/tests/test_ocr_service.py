"""Tests for the OCR adapters."""

from unittest.mock import MagicMock

import pytest
import requests
from botocore.exceptions import ClientError

from formintel.config import Config
from formintel.exceptions import ConfigurationError, OcrProviderError, ProviderTimeoutError
from formintel.services.ocr_service import (
    TextractOcrService,
    VisionOcrService,
    create_ocr_service,
    flatten_vision_annotation,
)

from conftest import make_png


def vision_block(words, vertices):
    return {
        'boundingBox': {'vertices': vertices},
        'paragraphs': [{
            'words': [{'symbols': [{'text': ch} for ch in word]} for word in words]
        }]
    }


VISION_RESPONSE = {
    'responses': [{
        'fullTextAnnotation': {
            'text': 'Full name:\nDate of birth:',
            'pages': [{
                'blocks': [
                    vision_block(['Full', 'name:'], [{'x': 10, 'y': 20}, {'x': 110, 'y': 20}, {'x': 110, 'y': 35}, {'x': 10, 'y': 35}]),
                    vision_block(['Date', 'of', 'birth:'], [{'y': 50}, {'x': 90, 'y': 50}, {'x': 90, 'y': 64}, {'y': 64}]),
                ]
            }]
        }
    }]
}


def vision_session(data=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data if data is not None else VISION_RESPONSE
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    session = MagicMock()
    session.post.return_value = response
    return session


class TestFlattenVision:
    """Flattening the annotate response into blocks."""

    def test_blocks_and_boxes(self):
        result = flatten_vision_annotation(VISION_RESPONSE['responses'][0], page_number=2)

        assert result.full_text == 'Full name:\nDate of birth:'
        assert [b.text for b in result.blocks] == ['Full name:', 'Date of birth:']
        first = result.blocks[0].bounding_box
        assert (first.x, first.y, first.width, first.height) == (10, 20, 100, 15)
        assert all(b.page_number == 2 for b in result.blocks)

    def test_omitted_zero_coordinates(self):
        result = flatten_vision_annotation(VISION_RESPONSE['responses'][0])
        second = result.blocks[1].bounding_box
        assert (second.x, second.y, second.width, second.height) == (0, 50, 90, 14)

    def test_no_annotation(self):
        result = flatten_vision_annotation({})
        assert result.full_text == ''
        assert result.blocks == []


class TestVisionOcrService:
    """Google Vision REST adapter."""

    def test_extract_text(self):
        session = vision_session()
        service = VisionOcrService(api_key='key', session=session)

        result = service.extract_text(b'image-bytes', page_number=3)

        assert len(result.blocks) == 2
        assert result.blocks[0].page_number == 3
        kwargs = session.post.call_args.kwargs
        assert kwargs['params'] == {'key': 'key'}
        assert kwargs['json']['requests'][0]['features'] == [{'type': 'DOCUMENT_TEXT_DETECTION'}]

    def test_http_error(self):
        service = VisionOcrService(api_key='key', session=vision_session(status_code=403))

        with pytest.raises(OcrProviderError) as exc_info:
            service.extract_text(b'image-bytes')
        assert exc_info.value.status_code == 403
        assert exc_info.value.provider == 'vision'

    def test_timeout(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout()
        service = VisionOcrService(api_key='key', session=session)

        with pytest.raises(ProviderTimeoutError):
            service.extract_text(b'image-bytes')

    def test_error_in_body(self):
        data = {'responses': [{'error': {'code': 3, 'message': 'Bad image data.'}}]}
        service = VisionOcrService(api_key='key', session=vision_session(data))

        with pytest.raises(OcrProviderError, match='Bad image data'):
            service.extract_text(b'image-bytes')

    def test_missing_key(self, monkeypatch):
        monkeypatch.setattr(Config, 'GOOGLE_VISION_API_KEY', None)
        with pytest.raises(ConfigurationError):
            VisionOcrService(session=MagicMock())

    def test_rate_limiter_consulted(self):
        limiter = MagicMock()
        VisionOcrService(api_key='key', session=vision_session(), rate_limiter=limiter).extract_text(b'x')
        limiter.acquire.assert_called_once_with('vision')


class TestTextractOcrService:
    """AWS Textract adapter."""

    def test_lines_scaled_to_pixels(self):
        client = MagicMock()
        client.detect_document_text.return_value = {
            'Blocks': [
                {'BlockType': 'PAGE'},
                {
                    'BlockType': 'LINE',
                    'Text': 'Full name:',
                    'Geometry': {'BoundingBox': {'Left': 0.1, 'Top': 0.2, 'Width': 0.5, 'Height': 0.1}}
                },
                {'BlockType': 'WORD', 'Text': 'Full'},
            ]
        }
        service = TextractOcrService(client=client)

        result = service.extract_text(make_png(200, 100), page_number=2)

        assert result.full_text == 'Full name:'
        box = result.blocks[0].bounding_box
        assert box.x == pytest.approx(20)
        assert box.y == pytest.approx(20)
        assert box.width == pytest.approx(100)
        assert box.height == pytest.approx(10)
        assert result.blocks[0].page_number == 2

    def test_client_error(self):
        client = MagicMock()
        client.detect_document_text.side_effect = ClientError(
            {'Error': {'Code': 'InvalidParameterException', 'Message': 'Bad document'}},
            'DetectDocumentText'
        )

        with pytest.raises(OcrProviderError, match='InvalidParameterException'):
            TextractOcrService(client=client).extract_text(make_png())


class TestFactory:

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            create_ocr_service('tesseract')

    def test_textract_provider(self, monkeypatch):
        client = MagicMock()
        monkeypatch.setattr('formintel.services.ocr_service.boto3.client', lambda *args, **kwargs: client)
        monkeypatch.setattr(Config, 'AWS_PROFILE', None)

        service = create_ocr_service('textract')

        assert isinstance(service, TextractOcrService)
        assert service.client is client
