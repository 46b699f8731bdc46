"""
Receipt rewards core pipeline.

Orchestrates: OCR → store resolution → field rules → fraud score →
uniqueness → visit limit → approval → visit and reward.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from loyalty.pipeline.rules import RuleSettingsProvider, SettingsCache
from loyalty.pipeline.validator import (
    ImageStorage,
    OCRService,
    ReceiptValidationPipeline,
    ValidationInput,
)
from loyalty.schemas import ValidationResult

logger = logging.getLogger(__name__)


def process_receipt(
    db: Session,
    ocr: OCRService,
    storage: ImageStorage,
    image_bytes: bytes,
    original_filename: str = "receipt.jpg",
    store_id: Optional[str] = None,
    customer_phone: Optional[str] = None,
    cache: Optional[SettingsCache] = None,
) -> ValidationResult:
    """Validate one uploaded receipt image.

    Returns the ``ValidationResult``; the receipt row, and any visit or
    reward it earned, are already committed.
    """
    pipeline = ReceiptValidationPipeline(
        db, ocr, storage, RuleSettingsProvider(db, cache)
    )
    return pipeline.validate(
        ValidationInput(
            image_bytes=image_bytes,
            original_filename=original_filename,
            store_id=store_id,
            customer_phone=customer_phone,
        )
    )
