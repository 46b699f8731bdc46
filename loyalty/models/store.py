"""
Participating store
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String

from loyalty.database import Base, utcnow


class StoreModel(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    address = Column(String, nullable=False, default="")

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    allow_receipt_uploads = Column(Boolean, nullable=False, default=True)

    # Receipt matching
    tin = Column(String, index=True)
    branch_name = Column(String)
    min_receipt_amount = Column(Float, default=500)
    receipt_validity_hours = Column(Integer, default=24)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
