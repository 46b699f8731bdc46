"""
Unit tests for the PaddleOCR client and its text helpers.
No network: the requests session is replaced by a scripted fake.
"""
import io

import pytest
import requests
from conftest import receipt_image
from PIL import Image

from loyalty.ocr import (
    OCRError,
    OCRUnavailableError,
    PaddleOCRClient,
    normalize_ocr_text,
    parse_paddle_response,
    prepare_image_for_ocr,
)


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if self.invalid_json:
            raise ValueError("no json")
        return self.payload


class FakeSession:
    """First post is the health check, the rest are OCR calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(*responses):
    session = FakeSession(*responses)
    return PaddleOCRClient(base_url="http://ocr:8866/", endpoint="/predict/ocr_system", session=session), session


# =====================================================================
# Text helpers
# =====================================================================
class TestNormalize:
    def test_whitespace(self):
        assert normalize_ocr_text("  TOTAL \t  *2,530.00  \r\nTIN:  1 ") == "TOTAL *2,530.00\nTIN: 1"

    def test_blank_lines_collapsed(self):
        assert normalize_ocr_text("A\n\n\n\nB") == "A\n\nB"


class TestParseResponse:
    def test_nested_results(self):
        payload = {"results": [[{"text": "LEWIS", "confidence": 0.9}, {"text": "TOTAL 10"}]]}
        assert parse_paddle_response(payload) == "LEWIS\nTOTAL 10"

    def test_double_wrapped(self):
        payload = {"results": {"results": [{"rec_text": "A"}, {"det_text": "B"}]}}
        assert parse_paddle_response(payload) == "A\nB"

    def test_text_confidence_pairs(self):
        assert parse_paddle_response([["TIN 1", 0.98], ["TOTAL", 0.9]]) == "TIN 1\nTOTAL"

    def test_empty_items_skipped(self):
        assert parse_paddle_response({"results": ["A", "  ", {"text": ""}, "B"]}) == "A\nB"

    def test_plain_text(self):
        assert parse_paddle_response({"text": "hello"}) == "hello"
        assert parse_paddle_response("hello") == "hello"

    def test_unknown_shape(self):
        with pytest.raises(OCRError):
            parse_paddle_response({"status": "ok"})


class TestPrepareImage:
    def test_downscaled_grayscale_jpeg(self):
        buf = io.BytesIO()
        Image.new("RGB", (3000, 1500), "white").save(buf, format="PNG")
        prepared = Image.open(io.BytesIO(prepare_image_for_ocr(buf.getvalue(), max_width=1500)))
        assert prepared.format == "JPEG"
        assert prepared.mode == "L"
        assert prepared.size == (1500, 750)

    def test_small_image_keeps_size(self):
        prepared = Image.open(io.BytesIO(prepare_image_for_ocr(receipt_image(1))))
        assert prepared.size == (64, 64)

    def test_unreadable_passthrough(self):
        assert prepare_image_for_ocr(b"garbage") == b"garbage"


# =====================================================================
# Client
# =====================================================================
class TestClient:
    def test_extract_text(self):
        client, session = _client(
            FakeResponse(status_code=400),
            FakeResponse({"results": [[{"text": "TOTAL *2,530.00"}]]}),
        )
        assert client.extract_text(receipt_image(1)) == "TOTAL *2,530.00"
        url, body, _ = session.calls[1]
        assert url == "http://ocr:8866/predict/ocr_system"
        assert len(body["images"]) == 1

    def test_health_check_refused(self):
        client, _ = _client(requests.exceptions.ConnectionError("refused"))
        assert not client.is_available()

    def test_unavailable(self):
        client, session = _client(requests.exceptions.ConnectTimeout("slow"))
        with pytest.raises(OCRUnavailableError):
            client.extract_text(receipt_image(1))
        assert len(session.calls) == 1

    def test_timeout_during_ocr(self):
        client, _ = _client(FakeResponse(), requests.exceptions.ReadTimeout("slow"))
        with pytest.raises(OCRUnavailableError):
            client.extract_text(receipt_image(1))

    def test_http_error(self):
        client, _ = _client(FakeResponse(), FakeResponse(status_code=500))
        with pytest.raises(OCRError) as exc:
            client.extract_text(receipt_image(1))
        assert not isinstance(exc.value, OCRUnavailableError)

    def test_invalid_json(self):
        client, _ = _client(FakeResponse(), FakeResponse(invalid_json=True))
        with pytest.raises(OCRError, match="invalid JSON"):
            client.extract_text(receipt_image(1))

    def test_empty_text(self):
        client, _ = _client(FakeResponse(), FakeResponse({"results": [[]]}))
        with pytest.raises(OCRError, match="empty text"):
            client.extract_text(receipt_image(1))

    def test_default_session(self, monkeypatch):
        session = FakeSession(FakeResponse(), FakeResponse({"text": "hi"}))
        monkeypatch.setattr(requests, "Session", lambda: session)
        assert PaddleOCRClient().extract_text(receipt_image(1)) == "hi"
