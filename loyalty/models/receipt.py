"""
Receipt upload record. One row per upload attempt, whatever the outcome.
"""
import uuid

from sqlalchemy import Column, DateTime, Float, Index, JSON, String, Text, text

from loyalty.database import Base, utcnow

RECEIPT_STATUSES = (
    "pending",
    "approved",
    "rejected",
    "flagged",
    "flagged_manual_requested",
    "needs_store_selection",
)


class ReceiptModel(Base):
    __tablename__ = "receipts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Identity (store may be unknown before resolution)
    customer_phone = Column(String, index=True)
    customer_id = Column(String, index=True)
    store_id = Column(String, index=True)

    image_url = Column(String, nullable=False)
    ocr_text = Column(Text, nullable=False, default="")

    # Extracted fields
    tin = Column(String, index=True)
    invoice_no = Column(String, index=True)
    date_on_receipt = Column(String)  # YYYY-MM-DD
    total_amount = Column(Float)
    branch_text = Column(String)
    barcode_data = Column(String, index=True)

    # Decision
    status = Column(String, nullable=False, default="pending", index=True)
    reason = Column(Text)
    flags = Column(JSON, nullable=False, default=list)
    duplicate_of_id = Column(String)  # set when this row repeats another receipt's invoice/barcode

    # Fraud
    image_hash = Column(String, index=True)
    fraud_score = Column(Float)
    tampering_score = Column(Float)
    ai_detection_score = Column(Float)
    fraud_flags = Column(JSON, nullable=False, default=list)

    # Review
    processed_at = Column(DateTime, index=True)
    reviewed_by = Column(String)
    reviewed_at = Column(DateTime)
    review_notes = Column(Text)

    __table_args__ = (
        # Invoice numbers are single-use across every status.
        Index(
            "uq_receipts_invoice_no",
            "invoice_no",
            unique=True,
            sqlite_where=text("invoice_no IS NOT NULL AND duplicate_of_id IS NULL"),
            postgresql_where=text("invoice_no IS NOT NULL AND duplicate_of_id IS NULL"),
        ),
        # Barcodes only collide with live receipts.
        Index(
            "uq_receipts_barcode_active",
            "barcode_data",
            unique=True,
            sqlite_where=text(
                "barcode_data IS NOT NULL AND duplicate_of_id IS NULL "
                "AND status IN ('approved', 'pending')"
            ),
            postgresql_where=text(
                "barcode_data IS NOT NULL AND duplicate_of_id IS NULL "
                "AND status IN ('approved', 'pending')"
            ),
        ),
        Index("ix_receipts_phone_status_processed", "customer_phone", "status", "processed_at"),
    )
