"""
Contracts shared by the receipt validation pipeline stages.

All pipeline stages produce and consume these Pydantic v2 models.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class ParsedReceipt(BaseModel):
    """Fields pulled out of one OCR result. Never persisted as-is."""
    tin: Optional[str] = None
    invoice_no: Optional[str] = None
    date: Optional[str] = Field(None, description="YYYY-MM-DD")
    total_amount: Optional[float] = None
    branch_text: Optional[str] = None
    barcode_data: Optional[str] = None
    raw_text: str = ""
    confidence: str = Field("low", description="high | medium | low")
    flags: list[str] = Field(default_factory=list)

    def missing_critical_fields(self) -> list[str]:
        labels = {
            "tin": "TIN",
            "invoice_no": "Invoice Number",
            "date": "Date",
            "total_amount": "Total Amount",
        }
        return [label for attr, label in labels.items() if not getattr(self, attr)]


class RejectionDetail(BaseModel):
    """One field-attributed explanation, safe to show to the customer."""
    field: str
    issue: str
    found: Optional[str] = None
    expected: Optional[str] = None
    message: str


# ---------------------------------------------------------------------------
# Field validation failures
# ---------------------------------------------------------------------------

def _money(value: float) -> str:
    return f"{value:.2f} ETB"


class TinNotFound(BaseModel):
    kind: Literal["tin_not_found"] = "tin_not_found"
    expected: Optional[str] = None

    @property
    def reason(self) -> str:
        return "TIN not found in receipt"

    def to_detail(self) -> RejectionDetail:
        return RejectionDetail(
            field="TIN",
            issue="TIN not found",
            expected=self.expected,
            message="Could not find TIN number on receipt. Please ensure the receipt is clear and readable.",
        )


class TinMismatch(BaseModel):
    kind: Literal["tin_mismatch"] = "tin_mismatch"
    expected: str
    found: str

    @property
    def reason(self) -> str:
        return f"TIN mismatch (expected: {self.expected}, found: {self.found})"

    def to_detail(self) -> RejectionDetail:
        return RejectionDetail(
            field="TIN",
            issue="TIN mismatch",
            found=self.found,
            expected=self.expected,
            message=(
                f"TIN on receipt ({self.found}) does not match store TIN ({self.expected}). "
                "Please upload a receipt from the correct store."
            ),
        )


class TinNotAllowed(BaseModel):
    kind: Literal["tin_not_allowed"] = "tin_not_allowed"
    found: str
    allowed: list[str] = Field(default_factory=list)

    @property
    def reason(self) -> str:
        return f"TIN {self.found} is not authorized"

    def to_detail(self) -> RejectionDetail:
        return RejectionDetail(
            field="TIN",
            issue="TIN not authorized",
            found=self.found,
            expected=", ".join(self.allowed) or None,
            message=(
                f"Receipt TIN ({self.found}) is not from a participating store. "
                "Only receipts from participating stores are accepted."
            ),
        )


class AmountBelowMinimum(BaseModel):
    kind: Literal["amount_below_minimum"] = "amount_below_minimum"
    found: float
    expected: float

    @property
    def reason(self) -> str:
        return f"Amount {self.found:g} is below minimum {self.expected:g}"

    def to_detail(self) -> RejectionDetail:
        return RejectionDetail(
            field="Amount",
            issue="Amount below minimum",
            found=_money(self.found),
            expected=f"{_money(self.expected)} or more",
            message=(
                f"Receipt amount ({_money(self.found)}) is below the minimum "
                f"required amount ({_money(self.expected)})."
            ),
        )


class ReceiptTooOld(BaseModel):
    kind: Literal["receipt_too_old"] = "receipt_too_old"
    age_days: int
    max_age_days: float

    @property
    def reason(self) -> str:
        return f"Receipt is {self.age_days} days old (max: {self.max_age_days:g} days)"

    def to_detail(self) -> RejectionDetail:
        return RejectionDetail(
            field="Date",
            issue="Receipt too old",
            found=f"{self.age_days} days old",
            expected=f"Within {self.max_age_days:g} days",
            message=(
                f"Receipt is {self.age_days} days old. "
                f"Receipts must be uploaded within {self.max_age_days:g} days of purchase."
            ),
        )


ValidationFailure = Annotated[
    Union[TinNotFound, TinMismatch, TinNotAllowed, AmountBelowMinimum, ReceiptTooOld],
    Field(discriminator="kind"),
]


class ValidationRules(BaseModel):
    expected_tin: Optional[str] = None
    expected_branch: Optional[str] = None
    min_amount: Optional[float] = None
    max_age_days: Optional[float] = None


class FieldValidation(BaseModel):
    valid: bool
    failure: Optional[ValidationFailure] = None
    warnings: list[str] = Field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        return self.failure.reason if self.failure else None


# ---------------------------------------------------------------------------
# Fraud
# ---------------------------------------------------------------------------

class TamperingResult(BaseModel):
    score: int = 0
    indicators: list[str] = Field(default_factory=list)
    details: dict = Field(default_factory=dict)


class AIDetectionResult(BaseModel):
    probability: int = 0
    indicators: list[str] = Field(default_factory=list)
    details: dict = Field(default_factory=dict)


class FraudScore(BaseModel):
    overall_score: int = Field(0, ge=0, le=100)
    tampering_score: int = Field(0, ge=0, le=100)
    ai_detection_score: int = Field(0, ge=0, le=100)
    flags: list[str] = Field(default_factory=list)
    image_hash: str = ""
    duplicate_found: bool = False
    duplicate_receipt_id: Optional[str] = None
    duplicate_invoice: bool = False
    duplicate_barcode: bool = False


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class RuleSettings(BaseModel):
    """Effective business thresholds consumed by the pipeline."""
    allowed_tins: list[str] = Field(default_factory=lambda: ["0003169685"])
    min_receipt_amount: float = 2000
    receipt_validity_hours: int = 24
    visit_limit_hours: int = 24
    required_visits: int = 5
    reward_period_days: int = 45
    discount_percent: float = 10
    initial_expiration_days: int = 45
    redemption_expiration_days: int = 30


class RuleSettingsUpdate(BaseModel):
    allowed_tins: Optional[list[str]] = None
    min_receipt_amount: Optional[float] = Field(None, ge=0)
    receipt_validity_hours: Optional[int] = Field(None, ge=1)
    visit_limit_hours: Optional[int] = Field(None, ge=0)
    required_visits: Optional[int] = Field(None, ge=1)
    reward_period_days: Optional[int] = Field(None, ge=1)
    discount_percent: Optional[float] = Field(None, ge=0, le=100)
    initial_expiration_days: Optional[int] = Field(None, ge=1)
    redemption_expiration_days: Optional[int] = Field(None, ge=1)
    updated_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Pipeline result
# ---------------------------------------------------------------------------

class StoreCandidate(BaseModel):
    id: str
    name: str
    address: str = ""
    branch_name: Optional[str] = None
    tin: Optional[str] = None


class ValidationResult(BaseModel):
    success: bool
    status: str = Field(
        ...,
        description="approved | rejected | flagged | needs_store_selection",
    )
    reason: str
    rejection_details: list[RejectionDetail] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    receipt_id: Optional[str] = None
    visit_id: Optional[str] = None
    reward_id: Optional[str] = None
    visit_count: Optional[int] = None
    visits_in_period: Optional[int] = None
    visits_needed: Optional[int] = None
    tin: Optional[str] = None
    stores: list[StoreCandidate] = Field(default_factory=list)
    parsed: Optional[ParsedReceipt] = None


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

class RewardSummary(BaseModel):
    id: str
    code: str
    store_id: str
    reward_type: str
    status: str
    discount_percent: Optional[float] = None
    issued_at: datetime
    expires_at: datetime


class RewardStatus(BaseModel):
    customer_phone: str
    total_visits: int
    visits_in_period: int
    visits_needed: int
    required_visits: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    days_remaining: int = 0
    period_expired: bool = False
    active_rewards: list[RewardSummary] = Field(default_factory=list)
