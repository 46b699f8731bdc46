"""
Receipt API endpoints.

POST /api/receipts/upload                  : validate an uploaded receipt image
GET  /api/receipts/{id}                    : stored receipt with store and customer
POST /api/receipts/{id}/link-store         : finish a receipt awaiting store selection
POST /api/receipts/{id}/manual-review      : customer escalation of a flagged receipt
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from loyalty.database import get_db
from loyalty.dependencies import get_pipeline, get_storage
from loyalty.pipeline import ReceiptValidationPipeline, ValidationInput
from loyalty.pipeline.review import (
    ReviewError,
    get_receipt_details,
    link_store,
    receipt_details,
    request_manual_review,
)
from loyalty.schemas import (
    LinkStoreRequest,
    ManualReviewRequest,
    ReceiptDetails,
    ValidationResult,
)
from loyalty.storage import LocalImageStorage

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/receipts")


# ── POST /api/receipts/upload ────────────────────────────────────────────
@router.post("/upload", response_model=ValidationResult)
def upload_receipt(
    file: UploadFile = File(...),
    store_id: Optional[str] = Form(None),
    customer_phone: Optional[str] = Form(None),
    pipeline: ReceiptValidationPipeline = Depends(get_pipeline),
):
    image_bytes = file.file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Receipt image must not be empty")

    logger.info(
        "Upload: file=%s  size=%d  store=%s", file.filename, len(image_bytes), store_id or "-"
    )
    return pipeline.validate(
        ValidationInput(
            image_bytes=image_bytes,
            original_filename=file.filename or "receipt.jpg",
            store_id=store_id or None,
            customer_phone=customer_phone or None,
        )
    )


# ── GET /api/receipts/{receipt_id} ───────────────────────────────────────
@router.get("/{receipt_id}", response_model=ReceiptDetails)
def get_receipt(receipt_id: str, db: Session = Depends(get_db)):
    details = get_receipt_details(db, receipt_id)
    if details is None:
        logger.warning("Receipt not found: %s", receipt_id)
        raise HTTPException(status_code=404, detail="Receipt not found")
    return details


# ── POST /api/receipts/{receipt_id}/link-store ───────────────────────────
@router.post("/{receipt_id}/link-store", response_model=ValidationResult)
def link_receipt_store(
    receipt_id: str,
    req: LinkStoreRequest,
    db: Session = Depends(get_db),
    pipeline: ReceiptValidationPipeline = Depends(get_pipeline),
    storage: LocalImageStorage = Depends(get_storage),
):
    try:
        return link_store(db, pipeline, storage, receipt_id, req.store_id, req.customer_phone)
    except ReviewError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


# ── POST /api/receipts/{receipt_id}/manual-review ────────────────────────
@router.post("/{receipt_id}/manual-review", response_model=ReceiptDetails)
def ask_manual_review(
    receipt_id: str,
    req: Optional[ManualReviewRequest] = None,
    db: Session = Depends(get_db),
):
    try:
        receipt = request_manual_review(db, receipt_id, req.note if req else None)
    except ReviewError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return receipt_details(db, receipt)
