"""
FastAPI dependency providers for the pipeline collaborators.
"""
from datetime import datetime
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from loyalty.database import get_db, utcnow
from loyalty.ocr import PaddleOCRClient
from loyalty.pipeline import ReceiptValidationPipeline
from loyalty.pipeline.rules import RuleSettingsProvider, SettingsCache
from loyalty.storage import LocalImageStorage

# Process-wide so every request shares the settings TTL
settings_cache = SettingsCache()

_ocr_client = None


def get_ocr_client() -> PaddleOCRClient:
    global _ocr_client
    if _ocr_client is None:
        _ocr_client = PaddleOCRClient()
    return _ocr_client


def get_storage() -> LocalImageStorage:
    return LocalImageStorage()


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_rules(db: Session = Depends(get_db)) -> RuleSettingsProvider:
    return RuleSettingsProvider(db, settings_cache)


def get_pipeline(
    db: Session = Depends(get_db),
    ocr: PaddleOCRClient = Depends(get_ocr_client),
    storage: LocalImageStorage = Depends(get_storage),
    rules: RuleSettingsProvider = Depends(get_rules),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ReceiptValidationPipeline:
    return ReceiptValidationPipeline(db, ocr, storage, rules, clock=clock)
