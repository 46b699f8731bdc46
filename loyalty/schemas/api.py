"""
HTTP request / response bodies
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from loyalty.schemas.base import StoreCandidate


class LinkStoreRequest(BaseModel):
    store_id: str
    customer_phone: Optional[str] = None


class ManualReviewRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class ReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    reviewer: str = Field(..., min_length=1)
    reason: Optional[str] = None
    notes: Optional[str] = None


class CustomerSummary(BaseModel):
    id: str
    name: str
    phone: str
    total_visits: int = 0


class ReceiptDetails(BaseModel):
    id: str
    status: str
    reason: Optional[str] = None
    flags: list[str] = Field(default_factory=list)
    customer_phone: Optional[str] = None
    image_url: str
    tin: Optional[str] = None
    invoice_no: Optional[str] = None
    date_on_receipt: Optional[str] = None
    total_amount: Optional[float] = None
    branch_text: Optional[str] = None
    barcode_data: Optional[str] = None
    fraud_score: Optional[float] = None
    tampering_score: Optional[float] = None
    ai_detection_score: Optional[float] = None
    fraud_flags: list[str] = Field(default_factory=list)
    duplicate_of_id: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    store: Optional[StoreCandidate] = None
    customer: Optional[CustomerSummary] = None


class RewardActionResponse(BaseModel):
    id: str
    code: str
    status: str
    expires_at: datetime
    redeemed_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
