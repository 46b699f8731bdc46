"""
Follow-up operations on stored receipts: store linking, admin review,
customer escalation and detail lookup.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.database import utcnow
from loyalty.models import ReceiptModel
from loyalty.pipeline.rewards import record_visit_and_evaluate_reward
from loyalty.pipeline.rules import RuleSettingsProvider
from loyalty.pipeline.stores import store_candidate
from loyalty.pipeline.validator import ReceiptValidationPipeline, ValidationInput
from loyalty.repository import DuplicateReceiptError
from loyalty.schemas import CustomerSummary, ReceiptDetails, ValidationResult
from loyalty.storage import LocalImageStorage, StorageError

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = ("flagged", "flagged_manual_requested", "pending")


class ReviewError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _load_receipt(db: Session, receipt_id: str) -> ReceiptModel:
    receipt = repository.get_receipt(db, receipt_id)
    if receipt is None:
        raise ReviewError("Receipt not found", status_code=404)
    return receipt


def _awaiting_store(receipt: ReceiptModel) -> bool:
    if receipt.status == "needs_store_selection":
        return True
    return receipt.status == "pending" and not receipt.store_id


# ---------------------------------------------------------------------------
# Store linking
# ---------------------------------------------------------------------------

def link_store(
    db: Session,
    pipeline: ReceiptValidationPipeline,
    storage: LocalImageStorage,
    receipt_id: str,
    store_id: str,
    customer_phone: Optional[str] = None,
) -> ValidationResult:
    """Finish a receipt that stopped at store selection.

    The stored image goes through the pipeline again with the chosen
    store and the outcome overwrites the same receipt row.
    """
    receipt = _load_receipt(db, receipt_id)
    if not _awaiting_store(receipt):
        raise ReviewError(f'Receipt is in "{receipt.status}" status and does not need a store')

    store = repository.get_store(db, store_id)
    if store is None:
        raise ReviewError("Store not found", status_code=404)
    if not store.is_active:
        raise ReviewError("Store is not active")
    if not store.allow_receipt_uploads:
        raise ReviewError("Receipt uploads are disabled for this store")

    try:
        image_bytes = storage.get(receipt.image_url)
    except StorageError as exc:
        logger.warning("Link-store for %s: %s", receipt_id, exc)
        raise ReviewError("Receipt image not found", status_code=404) from exc

    logger.info("Linking receipt %s to store %s", receipt_id, store.name)
    return pipeline.validate(
        ValidationInput(
            image_bytes=image_bytes,
            original_filename=receipt.image_url,
            store_id=store.id,
            customer_phone=customer_phone or receipt.customer_phone,
            receipt_id=receipt.id,
            stored_image_path=receipt.image_url,
        )
    )


# ---------------------------------------------------------------------------
# Admin review
# ---------------------------------------------------------------------------

def _check_reviewable(receipt: ReceiptModel) -> None:
    if receipt.status in ("approved", "rejected"):
        raise ReviewError(f"Receipt already {receipt.status}")
    if receipt.status not in REVIEWABLE_STATUSES:
        raise ReviewError(f'Receipt in "{receipt.status}" status cannot be reviewed')


def approve_receipt(
    db: Session,
    receipt_id: str,
    reviewer: str,
    rules: RuleSettingsProvider,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    now = now or utcnow()
    receipt = _load_receipt(db, receipt_id)
    _check_reviewable(receipt)
    if receipt.duplicate_of_id:
        raise ReviewError(
            f"Receipt duplicates receipt {receipt.duplicate_of_id} and cannot be approved"
        )
    if not receipt.store_id:
        raise ReviewError("Receipt has no store assigned. Link a store before approving.")

    values = dict(
        status="approved",
        reason="Receipt manually approved by admin",
        reviewed_by=reviewer,
        reviewed_at=now,
        review_notes=notes,
        processed_at=now,
    )
    try:
        receipt = repository.save_receipt(db, values, receipt_id=receipt.id)
    except DuplicateReceiptError as exc:
        raise ReviewError(
            f"Receipt {exc.field} already used by receipt {exc.existing_id}", status_code=409
        ) from exc
    logger.info("Receipt %s approved by %s", receipt.id, reviewer)

    result = ValidationResult(
        success=True,
        status="approved",
        reason="Receipt manually approved by admin",
        flags=list(receipt.flags or []),
        receipt_id=receipt.id,
    )
    if receipt.customer_phone:
        outcome = record_visit_and_evaluate_reward(
            db, receipt, receipt.customer_phone, receipt.store_id, rules, now
        )
        result.visit_id = outcome.visit.id
        result.visit_count = outcome.customer.total_visits
        result.visits_in_period = outcome.period.visits
        result.visits_needed = max(0, outcome.required_visits - outcome.period.visits)
        result.reward_id = outcome.reward.id if outcome.reward else None
    return result


def reject_receipt(
    db: Session,
    receipt_id: str,
    reviewer: str,
    reason: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    if not reason or not reason.strip():
        raise ReviewError("Reason is required for rejection")
    receipt = _load_receipt(db, receipt_id)
    _check_reviewable(receipt)

    receipt.status = "rejected"
    receipt.reason = reason
    receipt.reviewed_by = reviewer
    receipt.reviewed_at = now or utcnow()
    receipt.review_notes = notes
    db.commit()
    logger.info("Receipt %s rejected by %s", receipt.id, reviewer)
    return ValidationResult(
        success=False,
        status="rejected",
        reason=reason,
        flags=list(receipt.flags or []),
        receipt_id=receipt.id,
    )


def request_manual_review(db: Session, receipt_id: str, note: Optional[str] = None) -> ReceiptModel:
    """Customer asks an admin to look at a flagged receipt."""
    receipt = _load_receipt(db, receipt_id)
    if receipt.status != "flagged":
        raise ReviewError("Only flagged receipts can be sent for manual review")
    receipt.status = "flagged_manual_requested"
    if note:
        receipt.review_notes = note
    db.commit()
    db.refresh(receipt)
    logger.info("Manual review requested for receipt %s", receipt.id)
    return receipt


# ---------------------------------------------------------------------------
# Details
# ---------------------------------------------------------------------------

def receipt_details(db: Session, receipt: ReceiptModel) -> ReceiptDetails:
    store = repository.get_store(db, receipt.store_id) if receipt.store_id else None
    customer = None
    if receipt.customer_phone:
        row = repository.get_customer_by_phone(db, receipt.customer_phone)
        if row is not None:
            customer = CustomerSummary(
                id=row.id, name=row.name, phone=row.phone, total_visits=row.total_visits or 0
            )
    return ReceiptDetails(
        id=receipt.id,
        status=receipt.status,
        reason=receipt.reason,
        flags=list(receipt.flags or []),
        customer_phone=receipt.customer_phone,
        image_url=receipt.image_url,
        tin=receipt.tin,
        invoice_no=receipt.invoice_no,
        date_on_receipt=receipt.date_on_receipt,
        total_amount=receipt.total_amount,
        branch_text=receipt.branch_text,
        barcode_data=receipt.barcode_data,
        fraud_score=receipt.fraud_score,
        tampering_score=receipt.tampering_score,
        ai_detection_score=receipt.ai_detection_score,
        fraud_flags=list(receipt.fraud_flags or []),
        duplicate_of_id=receipt.duplicate_of_id,
        created_at=receipt.created_at,
        processed_at=receipt.processed_at,
        reviewed_by=receipt.reviewed_by,
        reviewed_at=receipt.reviewed_at,
        review_notes=receipt.review_notes,
        store=store_candidate(store) if store is not None else None,
        customer=customer,
    )


def get_receipt_details(db: Session, receipt_id: str) -> Optional[ReceiptDetails]:
    receipt = repository.get_receipt(db, receipt_id)
    if receipt is None:
        return None
    return receipt_details(db, receipt)
