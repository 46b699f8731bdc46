"""
Persistence queries for receipts, stores, customers, visits and rewards.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loyalty.models import (
    ACTIVE_REWARD_STATUSES,
    SYSTEM_SETTINGS_ID,
    CustomerModel,
    ReceiptModel,
    RewardModel,
    StoreModel,
    SystemSettingsModel,
)

logger = logging.getLogger(__name__)

# Statuses a receipt image/invoice/barcode must be unique against during fraud scoring
LIVE_STATUSES = ("approved", "pending", "flagged")
BARCODE_UNIQUE_STATUSES = ("approved", "pending")


class DuplicateReceiptError(Exception):
    """An insert or update hit the invoice or barcode unique index."""

    def __init__(self, field: str, existing_id: Optional[str]):
        self.field = field
        self.existing_id = existing_id
        super().__init__(f"duplicate {field} (existing receipt {existing_id})")


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

def get_store(db: Session, store_id: str) -> Optional[StoreModel]:
    return db.query(StoreModel).filter(StoreModel.id == store_id).first()


def find_upload_stores_by_tin(db: Session, tin: str) -> list[StoreModel]:
    return (
        db.query(StoreModel)
        .filter(
            StoreModel.tin == tin,
            StoreModel.is_active.is_(True),
            StoreModel.allow_receipt_uploads.is_(True),
        )
        .order_by(StoreModel.name)
        .all()
    )


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

def get_receipt(db: Session, receipt_id: str) -> Optional[ReceiptModel]:
    return db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()


def _excluding(query, exclude_ids: Iterable[Optional[str]]):
    ids = [i for i in exclude_ids if i]
    if ids:
        query = query.filter(ReceiptModel.id.notin_(ids))
    return query


def find_receipt_by_image_hash(
    db: Session, image_hash: str, exclude_ids: Iterable[Optional[str]] = ()
) -> Optional[ReceiptModel]:
    query = db.query(ReceiptModel).filter(
        ReceiptModel.image_hash == image_hash,
        ReceiptModel.status.in_(LIVE_STATUSES),
    )
    return _excluding(query, exclude_ids).order_by(ReceiptModel.created_at).first()


def find_receipt_by_invoice(
    db: Session,
    invoice_no: str,
    statuses: Optional[Iterable[str]] = None,
    exclude_ids: Iterable[Optional[str]] = (),
) -> Optional[ReceiptModel]:
    """Oldest receipt carrying *invoice_no*; any status unless *statuses* given."""
    query = db.query(ReceiptModel).filter(ReceiptModel.invoice_no == invoice_no)
    if statuses is not None:
        query = query.filter(ReceiptModel.status.in_(tuple(statuses)))
    return _excluding(query, exclude_ids).order_by(ReceiptModel.created_at).first()


def find_receipt_by_barcode(
    db: Session,
    barcode_data: str,
    statuses: Iterable[str] = BARCODE_UNIQUE_STATUSES,
    exclude_ids: Iterable[Optional[str]] = (),
) -> Optional[ReceiptModel]:
    query = db.query(ReceiptModel).filter(
        ReceiptModel.barcode_data == barcode_data,
        ReceiptModel.status.in_(tuple(statuses)),
    )
    return _excluding(query, exclude_ids).order_by(ReceiptModel.created_at).first()


def find_approved_receipt_since(
    db: Session, phone: str, since: datetime, exclude_ids: Iterable[Optional[str]] = ()
) -> Optional[ReceiptModel]:
    query = db.query(ReceiptModel).filter(
        ReceiptModel.customer_phone == phone,
        ReceiptModel.status == "approved",
        ReceiptModel.processed_at >= since,
    )
    return _excluding(query, exclude_ids).order_by(ReceiptModel.processed_at.desc()).first()


def first_approved_receipt(db: Session, phone: str) -> Optional[ReceiptModel]:
    return (
        db.query(ReceiptModel)
        .filter(
            ReceiptModel.customer_phone == phone,
            ReceiptModel.status == "approved",
            ReceiptModel.processed_at.isnot(None),
        )
        .order_by(ReceiptModel.processed_at.asc())
        .first()
    )


def latest_approved_receipt(db: Session, phone: str) -> Optional[ReceiptModel]:
    return (
        db.query(ReceiptModel)
        .filter(
            ReceiptModel.customer_phone == phone,
            ReceiptModel.status == "approved",
            ReceiptModel.processed_at.isnot(None),
        )
        .order_by(ReceiptModel.processed_at.desc())
        .first()
    )


def count_approved_receipts(
    db: Session, phone: str, start: datetime, end: Optional[datetime] = None
) -> int:
    query = db.query(ReceiptModel).filter(
        ReceiptModel.customer_phone == phone,
        ReceiptModel.status == "approved",
        ReceiptModel.processed_at >= start,
    )
    if end is not None:
        query = query.filter(ReceiptModel.processed_at <= end)
    return query.count()


def _conflicting_receipt(db: Session, values: dict, receipt_id: Optional[str]) -> tuple[str, Optional[str]]:
    """Work out which unique index an insert/update tripped over."""
    invoice_no = values.get("invoice_no")
    if invoice_no:
        existing = (
            _excluding(
                db.query(ReceiptModel).filter(
                    ReceiptModel.invoice_no == invoice_no,
                    ReceiptModel.duplicate_of_id.is_(None),
                ),
                [receipt_id],
            )
            .first()
        )
        if existing is not None:
            return "invoice", existing.id
    barcode = values.get("barcode_data")
    if barcode:
        existing = (
            _excluding(
                db.query(ReceiptModel).filter(
                    ReceiptModel.barcode_data == barcode,
                    ReceiptModel.duplicate_of_id.is_(None),
                    ReceiptModel.status.in_(BARCODE_UNIQUE_STATUSES),
                ),
                [receipt_id],
            )
            .first()
        )
        if existing is not None:
            return "barcode", existing.id
    return "invoice" if invoice_no else "barcode", None


def save_receipt(db: Session, values: dict, receipt_id: Optional[str] = None) -> ReceiptModel:
    """Insert a receipt, or update row *receipt_id*, and commit.

    Raises ``DuplicateReceiptError`` when the invoice/barcode unique
    indexes reject the write; the session is rolled back first.
    """
    if receipt_id:
        receipt = get_receipt(db, receipt_id)
        if receipt is None:
            raise LookupError(f"receipt {receipt_id} not found")
        for key, value in values.items():
            setattr(receipt, key, value)
    else:
        receipt = ReceiptModel(**values)
        db.add(receipt)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        field, existing_id = _conflicting_receipt(db, values, receipt_id)
        logger.warning("Receipt write lost a uniqueness race on %s (existing %s)", field, existing_id)
        raise DuplicateReceiptError(field, existing_id)
    db.refresh(receipt)
    return receipt


# ---------------------------------------------------------------------------
# Customers, visits, rewards
# ---------------------------------------------------------------------------

def get_customer_by_phone(db: Session, phone: str) -> Optional[CustomerModel]:
    return db.query(CustomerModel).filter(CustomerModel.phone == phone).first()


def get_or_create_customer(db: Session, phone: str) -> CustomerModel:
    customer = get_customer_by_phone(db, phone)
    if customer is not None:
        return customer
    # Name defaults to the phone until the customer registers one
    customer = CustomerModel(name=phone, phone=phone, total_visits=0)
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return get_customer_by_phone(db, phone)
    db.refresh(customer)
    logger.info("Created customer %s", customer.id)
    return customer


def find_active_reward(db: Session, customer_id: str, store_id: str) -> Optional[RewardModel]:
    return (
        db.query(RewardModel)
        .filter(
            RewardModel.customer_id == customer_id,
            RewardModel.store_id == store_id,
            RewardModel.status.in_(ACTIVE_REWARD_STATUSES),
        )
        .first()
    )


def list_active_rewards(db: Session, customer_id: str) -> list[RewardModel]:
    return (
        db.query(RewardModel)
        .filter(
            RewardModel.customer_id == customer_id,
            RewardModel.status.in_(ACTIVE_REWARD_STATUSES),
        )
        .order_by(RewardModel.issued_at.desc())
        .all()
    )


def get_reward(db: Session, reward_id: str) -> Optional[RewardModel]:
    return db.query(RewardModel).filter(RewardModel.id == reward_id).first()


def find_expirable_rewards(db: Session, now: datetime) -> list[RewardModel]:
    return (
        db.query(RewardModel)
        .filter(
            RewardModel.status.in_(ACTIVE_REWARD_STATUSES),
            RewardModel.expires_at < now,
        )
        .all()
    )


# ---------------------------------------------------------------------------
# System settings
# ---------------------------------------------------------------------------

def get_system_settings(db: Session) -> Optional[SystemSettingsModel]:
    return (
        db.query(SystemSettingsModel)
        .filter(SystemSettingsModel.id == SYSTEM_SETTINGS_ID)
        .first()
    )
