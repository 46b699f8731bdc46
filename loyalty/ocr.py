"""
OCR client for a PaddleOCR HTTP service.

``OCRUnavailableError`` means the service could not be reached (refused,
timed out, failed health check). ``OCRError`` means it answered but the
answer was unusable.
"""
from __future__ import annotations

import base64
import io
import logging
import re
from typing import Any, Optional

import requests
from PIL import Image, ImageOps

from loyalty.config import settings

logger = logging.getLogger(__name__)


class OCRError(Exception):
    """The OCR service answered with an error or an unusable result."""


class OCRUnavailableError(OCRError):
    """The OCR service could not be reached."""


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def normalize_ocr_text(text: str) -> str:
    """Collapse runs of spaces/tabs, unify newlines, keep at most one blank
    line in a row and trim every line."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def prepare_image_for_ocr(image_bytes: bytes, max_width: int = settings.OCR_MAX_WIDTH) -> bytes:
    """Downscale, grayscale, stretch contrast and recompress before OCR.

    Returns the original bytes if the image cannot be processed.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.width > max_width:
            height = max(1, round(img.height * max_width / img.width))
            img = img.resize((max_width, height), Image.Resampling.LANCZOS)
        img = ImageOps.autocontrast(img.convert("L"))
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=70)
        return out.getvalue()
    except (OSError, ValueError) as exc:
        logger.warning("Image preparation failed, sending original: %s", exc)
        return image_bytes


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return str(item.get("text") or item.get("det_text") or item.get("rec_text") or "")
    if isinstance(item, (list, tuple)) and item:
        return _item_text(item[0])
    return ""


def parse_paddle_response(payload: Any) -> str:
    """Pull text lines out of the shapes PaddleOCR deployments return.

    Handles ``{"results": [[{...}]]}``, ``{"results": {"results": [...]}}``,
    ``[text, confidence]`` pairs and bare strings.
    """
    results = payload.get("results", payload) if isinstance(payload, dict) else payload
    if isinstance(results, dict) and "results" in results:
        results = results["results"]

    if isinstance(results, list):
        # [text, confidence] pairs arrive as lists; flatten only nested groups
        lines = []
        for item in _flatten_groups(results):
            text = _item_text(item)
            if text.strip():
                lines.append(text)
        return "\n".join(lines)
    if isinstance(results, dict) and results.get("text"):
        return str(results["text"])
    if isinstance(payload, dict) and payload.get("text"):
        return str(payload["text"])
    if isinstance(payload, str):
        return payload
    raise OCRError("PaddleOCR response format not recognized")


def _is_text_pair(item: Any) -> bool:
    return isinstance(item, list) and len(item) >= 1 and isinstance(item[0], str)


def _flatten_groups(items: list) -> list:
    flat: list = []
    for item in items:
        if isinstance(item, list) and not _is_text_pair(item):
            flat.extend(_flatten_groups(item))
        else:
            flat.append(item)
    return flat


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PaddleOCRClient:
    def __init__(
        self,
        base_url: str = settings.PADDLEOCR_URL,
        endpoint: str = settings.PADDLEOCR_ENDPOINT,
        timeout: float = settings.PADDLEOCR_TIMEOUT,
        health_timeout: float = settings.PADDLEOCR_HEALTH_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = f"{base_url.rstrip('/')}{endpoint}"
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.session = session or requests.Session()

    def is_available(self) -> bool:
        """Any HTTP answer, even an error status, means the service is up."""
        try:
            self.session.post(self.url, json={"images": [""]}, timeout=self.health_timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout):
            return False
        except requests.exceptions.RequestException as exc:
            logger.debug("OCR health check got %s, treating service as up", exc)
        return True

    def extract_text(self, image_bytes: bytes) -> str:
        if not self.is_available():
            raise OCRUnavailableError(f"PaddleOCR service not available at {self.url}")

        prepared = prepare_image_for_ocr(image_bytes)
        payload = {"images": [base64.b64encode(prepared).decode("ascii")]}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as exc:
            raise OCRUnavailableError(f"PaddleOCR timeout after {self.timeout}s") from exc
        except requests.exceptions.ConnectionError as exc:
            raise OCRUnavailableError(f"PaddleOCR connection failed: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise OCRError(f"PaddleOCR failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise OCRError("PaddleOCR returned invalid JSON response") from exc

        text = parse_paddle_response(data)
        if not text.strip():
            raise OCRError("PaddleOCR returned empty text")
        logger.info("OCR extracted %d characters", len(text))
        return text
