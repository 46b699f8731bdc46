"""
Image fraud analysis.

Three independent signals feed one 0-100 risk score:
1. Perceptual hash lookup: exact-hash duplicates of earlier submissions
2. Tampering heuristics: compression, metadata and pixel statistics
3. AI-generation heuristics: ICC profile signatures and pixel statistics

Invoice and barcode reuse among live receipts adds to the same score.
"""
from __future__ import annotations

import base64
import hashlib
import io
import logging
import re
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError
from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.schemas import AIDetectionResult, FraudScore, TamperingResult

logger = logging.getLogger(__name__)

HASH_SIZE = 8

DUPLICATE_IMAGE_WEIGHT = 50
DUPLICATE_INVOICE_WEIGHT = 30
DUPLICATE_BARCODE_WEIGHT = 30
# Weights in tenths
TAMPERING_WEIGHT = 7
AI_WEIGHT = 5

AI_SIGNATURES = re.compile(
    r"midjourney|dall-e|stable diffusion|\bai\b|\bgenerated\b", re.IGNORECASE
)
GOLDEN_RATIO = 1.618

_EXIF_IFD = 0x8769
_EXIF_WIDTH = 0xA002
_EXIF_HEIGHT = 0xA003


class ImageAnalysisError(Exception):
    """The uploaded bytes could not be decoded as an image."""


def _open(image_bytes: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageAnalysisError(f"cannot decode image: {exc}") from exc
    return img


def _first_channel_std(img: Image.Image) -> float:
    if img.mode not in ("L", "RGB", "RGBA"):
        img = img.convert("RGB")
    return float(np.asarray(img.getchannel(0), dtype=np.float64).std())


def _weighted(score: int, tenths: int) -> int:
    # Half-up rounding of score * tenths / 10
    return (score * tenths + 5) // 10


# ---------------------------------------------------------------------------
# Perceptual hash
# ---------------------------------------------------------------------------

def calculate_image_hash(image_bytes: bytes) -> str:
    """Average hash over an 8x8 grayscale thumbnail, digested with SHA-256.

    Images that reduce to the same 8x8 brightness pattern collide on
    purpose; re-encodes and light crops of one photo stay duplicates.
    """
    img = _open(image_bytes)
    thumb = img.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.Resampling.BOX)
    pixels = np.asarray(thumb, dtype=np.float64).flatten()
    bits = "".join("1" if p > pixels.mean() else "0" for p in pixels)
    return base64.b64encode(hashlib.sha256(bits.encode("ascii")).digest()).decode("ascii")


# ---------------------------------------------------------------------------
# Tampering
# ---------------------------------------------------------------------------

def _exif_dimension_mismatch(img: Image.Image) -> bool:
    """EXIF block present without PixelXDimension/PixelYDimension.

    Resized photos keep their camera EXIF, so differing values alone do
    not count.
    """
    exif = img.getexif()
    if not exif:
        return False
    exif_ifd = exif.get_ifd(_EXIF_IFD)
    return exif_ifd.get(_EXIF_WIDTH) is None or exif_ifd.get(_EXIF_HEIGHT) is None


def detect_image_tampering(image_bytes: bytes) -> TamperingResult:
    img = _open(image_bytes)
    width, height = img.size
    file_size = len(image_bytes)
    indicators: list[str] = []
    details: dict = {}
    score = 0

    if img.format == "JPEG" and width and height:
        ratio = file_size / (width * height * 3)
        if ratio < 0.01 and file_size > 50_000:
            indicators.append("Compression anomalies detected")
            details["compression_anomalies"] = True
            score += 20

    if _exif_dimension_mismatch(img):
        indicators.append("Metadata dimension mismatch")
        details["metadata_mismatches"] = True
        score += 15

    if width and height:
        megapixels = width * height / 1_000_000
        size_mb = file_size / 1024 / 1024
        if megapixels > 10 and size_mb / megapixels < 0.5:
            indicators.append("Possible resolution manipulation")
            details["resolution_manipulation"] = True
            score += 25

    std = _first_channel_std(img)
    details["pixel_std"] = round(std, 2)
    if std < 10 or std > 100:
        indicators.append("Lighting inconsistencies detected")
        details["lighting_inconsistencies"] = True
        score += 15

    return TamperingResult(score=min(score, 100), indicators=indicators, details=details)


# ---------------------------------------------------------------------------
# AI generation
# ---------------------------------------------------------------------------

def detect_ai_generated_image(image_bytes: bytes) -> AIDetectionResult:
    img = _open(image_bytes)
    indicators: list[str] = []
    details: dict = {}
    probability = 0

    icc = img.info.get("icc_profile")
    if icc and AI_SIGNATURES.search(icc.decode("latin-1")):
        indicators.append("AI generation signature in metadata")
        details["metadata_signatures"] = True
        probability += 40

    std = _first_channel_std(img)
    if std < 10 or std > 80:
        indicators.append("Unusual pixel distribution patterns")
        details["unnatural_patterns"] = True
        probability += 15

    width, height = img.size
    if width and height:
        aspect = width / height
        # Only corroborates other signals
        if (abs(aspect - 1.0) < 0.01 or abs(aspect - GOLDEN_RATIO) < 0.01) and probability > 30:
            details["suspicious_aspect_ratio"] = True
            probability += 10

    return AIDetectionResult(probability=min(probability, 100), indicators=indicators, details=details)


# ---------------------------------------------------------------------------
# Combined score
# ---------------------------------------------------------------------------

def calculate_fraud_score(
    db: Session,
    image_bytes: bytes,
    invoice_no: Optional[str] = None,
    barcode_data: Optional[str] = None,
    exclude_receipt_id: Optional[str] = None,
) -> FraudScore:
    """Combine duplicate lookups and image heuristics into one score.

    *exclude_receipt_id* keeps a receipt being re-validated from matching
    itself. Undecodable images degrade to a zero score; database errors
    propagate.
    """
    try:
        image_hash = calculate_image_hash(image_bytes)
        tampering = detect_image_tampering(image_bytes)
        ai = detect_ai_generated_image(image_bytes)
    except ImageAnalysisError as exc:
        logger.warning("Fraud detection failed: %s", exc)
        return FraudScore(flags=["Fraud detection error"])

    flags: list[str] = []
    score = 0
    result = FraudScore(image_hash=image_hash)

    by_hash = repository.find_receipt_by_image_hash(db, image_hash, exclude_ids=[exclude_receipt_id])
    if by_hash is not None:
        result.duplicate_found = True
        result.duplicate_receipt_id = by_hash.id
        flags.append("Duplicate image (pHash match)")
        score += DUPLICATE_IMAGE_WEIGHT

    excluded = [exclude_receipt_id, by_hash.id if by_hash else None]
    if invoice_no and repository.find_receipt_by_invoice(
        db, invoice_no, statuses=repository.LIVE_STATUSES, exclude_ids=excluded
    ):
        result.duplicate_invoice = True
        flags.append("Duplicate invoice number")
        score += DUPLICATE_INVOICE_WEIGHT

    if barcode_data and repository.find_receipt_by_barcode(
        db, barcode_data, statuses=repository.LIVE_STATUSES, exclude_ids=excluded
    ):
        result.duplicate_barcode = True
        flags.append("Duplicate barcode")
        score += DUPLICATE_BARCODE_WEIGHT

    if tampering.score:
        flags.extend(tampering.indicators)
        score += _weighted(tampering.score, TAMPERING_WEIGHT)
    if ai.probability:
        flags.extend(ai.indicators)
        score += _weighted(ai.probability, AI_WEIGHT)

    result.overall_score = min(score, 100)
    result.tampering_score = tampering.score
    result.ai_detection_score = ai.probability
    result.flags = flags
    logger.info(
        "Fraud score %d (tampering %d, ai %d, duplicate=%s)",
        result.overall_score, result.tampering_score, result.ai_detection_score, result.duplicate_found,
    )
    return result
