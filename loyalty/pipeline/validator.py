"""
Receipt validation pipeline.

Stages run strictly in order and any of them may end the attempt:
OCR → store resolution → store checks → image storage → field rules →
fraud score → invoice/barcode uniqueness → rolling visit limit →
confidence gate → approval, visit and reward.

Every terminal decision is written to the receipts table before it is
returned, so each upload attempt leaves an audit row.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.config import settings
from loyalty.database import utcnow
from loyalty.models import ReceiptModel, StoreModel
from loyalty.ocr import OCRError, OCRUnavailableError, normalize_ocr_text
from loyalty.pipeline.fraud import calculate_fraud_score
from loyalty.pipeline.parser import parse_receipt_text, validate_parsed_receipt
from loyalty.pipeline.rewards import record_visit_and_evaluate_reward
from loyalty.pipeline.rules import RuleSettingsProvider
from loyalty.pipeline.stores import (
    NeedsSelection,
    ResolvedStore,
    StoreNotFound,
    resolve_store,
    store_candidate,
    store_ref_for,
)
from loyalty.repository import DuplicateReceiptError
from loyalty.schemas import (
    FraudScore,
    ParsedReceipt,
    RejectionDetail,
    TinNotAllowed,
    ValidationResult,
    ValidationRules,
)

logger = logging.getLogger(__name__)

RECEIPT_KEYWORDS = ("TIN", "INVOICE", "RECEIPT", "TOTAL", "AMOUNT", "DATE", "TAX", "SUBTOTAL")
MIN_RECEIPT_TEXT_LENGTH = 50
SHORT_TEXT_LENGTH = 15

FRAUD_REJECT_SCORE = 70
FRAUD_FLAG_SCORE = 40
TAMPERING_FLAG_SCORE = 50
AI_DETAIL_SCORE = 50


class OCRService(Protocol):
    def extract_text(self, image_bytes: bytes) -> str: ...


class ImageStorage(Protocol):
    def save(self, data: bytes, bucket: str, original_filename: str) -> str: ...


@dataclass
class ValidationInput:
    image_bytes: bytes
    original_filename: str = "receipt.jpg"
    store_id: Optional[str] = None
    customer_phone: Optional[str] = None
    # Re-validate an existing receipt row instead of creating one
    receipt_id: Optional[str] = None
    stored_image_path: Optional[str] = None


@dataclass
class _Attempt:
    data: ValidationInput
    now: datetime
    text: str = ""
    parsed: Optional[ParsedReceipt] = None
    store: Optional[StoreModel] = None
    image_path: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    fraud: Optional[FraudScore] = None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ReceiptValidationPipeline:
    def __init__(
        self,
        db: Session,
        ocr: OCRService,
        storage: ImageStorage,
        rules: RuleSettingsProvider,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ocr = ocr
        self.storage = storage
        self.rules = rules
        self.clock = clock

    def validate(self, data: ValidationInput) -> ValidationResult:
        logger.info(
            "Receipt validation start (store=%s, customer=%s)",
            data.store_id or "from TIN", data.customer_phone or "none",
        )
        try:
            result = self._run(_Attempt(data=data, now=self.clock()))
        except Exception:
            logger.exception("Receipt validation error")
            self.db.rollback()
            return ValidationResult(
                success=False,
                status="rejected",
                reason="Internal server error during validation",
            )
        logger.info("Receipt %s: %s (%s)", result.receipt_id, result.status, result.reason)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run(self, attempt: _Attempt) -> ValidationResult:
        try:
            early = self._read_receipt(attempt)
        except (OCRError, SQLAlchemyError) as exc:
            self.db.rollback()
            return self._processing_error(attempt, exc)
        if early is not None:
            return early

        early = self._check_store(attempt)
        if early is not None:
            return early

        logger.info("Stage 4: store image")
        self._save_image(attempt, attempt.store.id)

        for stage in (
            self._check_fields,
            self._check_fraud,
            self._check_uniqueness,
            self._check_visit_limit,
            self._check_confidence,
        ):
            early = stage(attempt)
            if early is not None:
                return early
        return self._approve(attempt)

    def _read_receipt(self, attempt: _Attempt) -> Optional[ValidationResult]:
        """OCR, then store resolution: explicit store id, else the printed TIN."""
        data = attempt.data
        logger.info("Stage 1: OCR")
        attempt.text = normalize_ocr_text(self.ocr.extract_text(data.image_bytes))
        text = attempt.text
        logger.debug("OCR text: %s", text)

        upper = text.upper()
        has_keywords = any(k in upper for k in RECEIPT_KEYWORDS)
        has_numbers = re.search(r"\d{4,}", text) is not None
        if not has_keywords and not has_numbers and len(text) < MIN_RECEIPT_TEXT_LENGTH:
            return self._not_a_receipt(attempt)

        if len(text) < SHORT_TEXT_LENGTH:
            probe = parse_receipt_text(text)
            if not (probe.tin or probe.invoice_no or probe.total_amount):
                return self._unreadable(attempt)
            logger.info("Short OCR text but key fields found, continuing")

        if data.store_id:
            logger.info("Stage 2: resolve store %s", data.store_id)
            resolution = resolve_store(self.db, store_ref_for(data.store_id, None))
        else:
            logger.info("Stage 2: resolve store by TIN")
            parsed = attempt.parsed = parse_receipt_text(text)
            if not parsed.tin:
                return self._tin_missing(attempt)
            if not self.rules.is_tin_allowed(parsed.tin):
                return self._tin_not_allowed(attempt, unknown_store=True)
            resolution = resolve_store(self.db, store_ref_for(None, parsed.tin))

        if isinstance(resolution, NeedsSelection):
            return self._needs_store_selection(attempt, resolution)
        if isinstance(resolution, ResolvedStore):
            attempt.store = resolution.store
            logger.info("Store resolved: %s", resolution.store.name)
        elif isinstance(resolution, StoreNotFound):
            logger.info("No store found for %s", resolution.lookup)
        return None

    def _check_store(self, attempt: _Attempt) -> Optional[ValidationResult]:
        logger.info("Stage 3: store checks")
        store = attempt.store
        if store is None:
            return self._store_not_found(attempt)
        if not store.is_active:
            return self._reject_store(attempt, "Store is not active", [])
        if not store.allow_receipt_uploads:
            return self._reject_store(attempt, "Receipt uploads are disabled for this store", [])
        if store.tin and not self.rules.is_tin_allowed(store.tin):
            allowed = ", ".join(self.rules.allowed_tins())
            return self._reject_store(
                attempt,
                f"Store TIN {store.tin} is not accepted. Only stores with allowed TINs are valid.",
                [
                    RejectionDetail(
                        field="TIN",
                        issue="Store TIN not accepted",
                        found=store.tin,
                        expected=allowed,
                        message=f"This store's TIN ({store.tin}) is not accepted. Only stores with allowed TINs are valid.",
                    )
                ],
            )
        logger.info("Store %s (%s) accepted", store.name, store.id)
        return None

    def _check_fields(self, attempt: _Attempt) -> Optional[ValidationResult]:
        logger.info("Stage 5: field rules")
        if attempt.parsed is None:
            attempt.parsed = parse_receipt_text(attempt.text)
        parsed, store = attempt.parsed, attempt.store

        if parsed.tin and not self.rules.is_tin_allowed(parsed.tin):
            return self._tin_not_allowed(attempt, unknown_store=False)

        validity_hours = self.rules.receipt_validity_hours(store.receipt_validity_hours)
        rules = ValidationRules(
            expected_tin=store.tin,
            expected_branch=store.branch_name,
            min_amount=self.rules.min_receipt_amount(store.min_receipt_amount),
            max_age_days=validity_hours / 24,
        )
        validation = validate_parsed_receipt(parsed, rules, now=attempt.now)
        attempt.warnings = validation.warnings
        for warning in validation.warnings:
            logger.warning("Receipt warning: %s", warning)
        if validation.valid:
            return None

        failure = validation.failure
        receipt = self._record(attempt, "rejected", failure.reason, parsed.flags)
        return self._result(
            attempt, receipt, "rejected", failure.reason, [failure.to_detail()]
        )

    def _check_fraud(self, attempt: _Attempt) -> Optional[ValidationResult]:
        logger.info("Stage 6: fraud score")
        parsed = attempt.parsed
        fraud = calculate_fraud_score(
            self.db,
            attempt.data.image_bytes,
            invoice_no=parsed.invoice_no,
            barcode_data=parsed.barcode_data,
            exclude_receipt_id=attempt.data.receipt_id,
        )
        attempt.fraud = fraud
        flags = parsed.flags + fraud.flags

        if fraud.overall_score > FRAUD_REJECT_SCORE:
            details = [
                RejectionDetail(
                    field="fraud",
                    issue="High fraud risk detected",
                    found=f"{fraud.overall_score}/100",
                    expected=f"Below {FRAUD_REJECT_SCORE}/100",
                    message=(
                        f"This receipt was flagged for potential fraud (risk score: "
                        f"{fraud.overall_score}/100). The receipt cannot be accepted."
                    ),
                )
            ] + _fraud_signal_details(fraud)
            receipt = self._record(
                attempt, "rejected",
                f"High fraud risk detected (score: {fraud.overall_score})",
                flags, fraud=fraud,
            )
            return self._result(attempt, receipt, "rejected", "Receipt rejected due to fraud detection", details)

        if fraud.overall_score > FRAUD_FLAG_SCORE or fraud.tampering_score > TAMPERING_FLAG_SCORE:
            details = [
                RejectionDetail(
                    field="fraud",
                    issue="Suspicious activity detected",
                    found=f"Fraud score: {fraud.overall_score}/100",
                    expected=f"Below {FRAUD_FLAG_SCORE}/100",
                    message=(
                        "This receipt has been flagged for review due to suspicious indicators "
                        f"(fraud score: {fraud.overall_score}/100). An admin will verify it manually."
                    ),
                )
            ] + _fraud_signal_details(fraud)
            receipt = self._record(
                attempt, "flagged",
                f"Suspicious activity detected (fraud score: {fraud.overall_score})",
                flags, fraud=fraud,
            )
            logger.warning("Receipt %s flagged for fraud review", receipt.id)
            return self._result(
                attempt, receipt, "flagged",
                "Receipt flagged for manual review due to suspicious activity", details,
            )
        return None

    def _check_uniqueness(self, attempt: _Attempt) -> Optional[ValidationResult]:
        logger.info("Stage 7: invoice and barcode uniqueness")
        parsed = attempt.parsed
        exclude = [attempt.data.receipt_id]
        if parsed.invoice_no:
            existing = repository.find_receipt_by_invoice(self.db, parsed.invoice_no, exclude_ids=exclude)
            if existing is not None:
                return self._reject_duplicate(attempt, "invoice", existing.id)
        if parsed.barcode_data:
            existing = repository.find_receipt_by_barcode(self.db, parsed.barcode_data, exclude_ids=exclude)
            if existing is not None:
                return self._reject_duplicate(attempt, "barcode", existing.id)
        return None

    def _check_visit_limit(self, attempt: _Attempt) -> Optional[ValidationResult]:
        phone = attempt.data.customer_phone
        hours = self.rules.visit_limit_hours()
        if not phone or hours <= 0:
            return None
        logger.info("Stage 8: %d-hour visit limit", hours)
        since = attempt.now - timedelta(hours=hours)
        previous = repository.find_approved_receipt_since(
            self.db, phone, since, exclude_ids=[attempt.data.receipt_id]
        )
        if previous is None:
            return None

        hours_ago = _round_half_up((attempt.now - previous.processed_at).total_seconds() / 3600)
        remaining = max(0, math.ceil(hours - hours_ago))
        receipt = self._record(
            attempt, "rejected",
            f"Only one visit per {hours} hours is allowed",
            [f"{hours}-hour limit exceeded"],
        )
        return self._result(
            attempt, receipt, "rejected",
            f"You have already submitted an approved receipt {hours_ago} hours ago. "
            f"Please wait {remaining} more hours before submitting another receipt.",
            [
                RejectionDetail(
                    field="visit_limit",
                    issue=f"{hours}-hour visit limit exceeded",
                    found=f"Approved receipt {hours_ago} hours ago",
                    expected=f"One approved receipt per {hours} hours",
                    message=(
                        f"You already have an approved receipt from {hours_ago} hours ago. "
                        f"Only one visit (approved receipt) per {hours} hours is allowed. "
                        f"Please wait {remaining} more hours."
                    ),
                )
            ],
        )

    def _check_confidence(self, attempt: _Attempt) -> Optional[ValidationResult]:
        logger.info("Stage 9: confidence gate")
        parsed = attempt.parsed
        if parsed.confidence == "low":
            details = [
                RejectionDetail(
                    field="parsing_confidence",
                    issue="Low parsing confidence",
                    found="Low",
                    expected="High or Medium",
                    message=(
                        "The system had difficulty reading some information from your receipt. "
                        "An admin will review it manually to ensure accuracy."
                    ),
                )
            ]
            if parsed.flags:
                details.append(
                    RejectionDetail(
                        field="parsing_issues",
                        issue="Parsing issues detected",
                        found=", ".join(parsed.flags),
                        message=f"Issues found during parsing: {', '.join(parsed.flags)}",
                    )
                )
            receipt = self._record(
                attempt, "flagged", "Low parsing confidence - manual review required", parsed.flags
            )
            return self._result(attempt, receipt, "flagged", "Receipt needs manual review by admin", details)

        missing = parsed.missing_critical_fields()
        if missing:
            receipt = self._record(
                attempt, "flagged", "Some critical fields could not be detected", parsed.flags
            )
            return self._result(
                attempt, receipt, "flagged", "Receipt needs manual review by admin",
                [
                    RejectionDetail(
                        field="missing_fields",
                        issue="Critical fields could not be detected",
                        found=f"Missing: {', '.join(missing)}",
                        expected="All fields required: TIN, Invoice Number, Date, Total Amount",
                        message=(
                            "The following critical information could not be read from your receipt: "
                            f"{', '.join(missing)}. An admin will review it to verify the details."
                        ),
                    )
                ],
            )
        return None

    def _approve(self, attempt: _Attempt) -> ValidationResult:
        logger.info("Stage 10: approve")
        data, parsed = attempt.data, attempt.parsed
        try:
            receipt = self._record(
                attempt, "approved", "All validation checks passed",
                parsed.flags + attempt.warnings, fraud=attempt.fraud,
            )
        except DuplicateReceiptError as exc:
            return self._reject_duplicate(attempt, exc.field, exc.existing_id)

        if not data.customer_phone:
            return self._result(attempt, receipt, "approved", "Receipt approved (no customer linked)")

        logger.info("Stage 11: visit and reward")
        outcome = record_visit_and_evaluate_reward(
            self.db, receipt, data.customer_phone, attempt.store.id, self.rules, attempt.now
        )
        result = self._result(
            attempt, receipt, "approved",
            "Receipt approved - You are now eligible for a reward!" if outcome.reward
            else "Receipt approved and visit recorded",
        )
        result.visit_id = outcome.visit.id
        result.visit_count = outcome.customer.total_visits
        result.visits_in_period = outcome.period.visits
        result.visits_needed = max(0, outcome.required_visits - outcome.period.visits)
        result.reward_id = outcome.reward.id if outcome.reward else None
        return result

    # ------------------------------------------------------------------
    # Early outcomes
    # ------------------------------------------------------------------

    def _not_a_receipt(self, attempt: _Attempt) -> ValidationResult:
        self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        receipt = self._record(
            attempt, "rejected", "Uploaded image does not appear to be a receipt",
            ["Not a receipt image"], store_id=None,
        )
        return self._result(
            attempt, receipt, "rejected",
            "The uploaded image does not appear to be a receipt. Please upload a clear photo of your receipt.",
            [
                RejectionDetail(
                    field="image_validation",
                    issue="Image is not a receipt",
                    found="No receipt keywords or structure detected",
                    expected="Valid receipt image with TIN, Invoice, Amount, Date",
                    message=(
                        "The uploaded image does not appear to be a receipt. Please make sure you "
                        "are uploading a clear photo of your purchase receipt."
                    ),
                )
            ],
        )

    def _unreadable(self, attempt: _Attempt) -> ValidationResult:
        length = len(attempt.text)
        quality = RejectionDetail(
            field="image_quality",
            issue="OCR extracted insufficient text",
            found=f"{length} characters",
            expected="At least 15 characters with key fields",
            message=(
                f"Receipt image is too blurry or unclear. The system could only read {length} "
                "characters, and key information (TIN, Invoice, Amount) could not be extracted."
            ),
        )
        store_id = attempt.data.store_id
        if store_id:
            self._save_image(attempt, store_id)
            receipt = self._record(
                attempt, "flagged", "OCR extracted very little text - image may be unclear",
                ["Low OCR confidence", "Short text"], store_id=store_id,
            )
            logger.warning("Unreadable receipt %s flagged for review", receipt.id)
            return self._result(
                attempt, receipt, "flagged",
                "Receipt image is unclear - text could not be read properly", [quality],
            )

        self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        receipt = self._record(
            attempt, "rejected", "OCR extracted very little text and no store was identified",
            ["Low OCR confidence", "Short text"], store_id=None,
        )
        return self._result(
            attempt, receipt, "rejected",
            "Receipt image is unclear - could not identify store. Please try scanning the store QR code or take a clearer photo.",
            [
                quality,
                RejectionDetail(
                    field="store_identification",
                    issue="Could not identify store from image",
                    message=(
                        "The store could not be identified from the receipt image. Please scan the "
                        "store QR code or take a clearer photo that shows all receipt details."
                    ),
                ),
            ],
        )

    def _tin_missing(self, attempt: _Attempt) -> ValidationResult:
        self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        receipt = self._record(
            attempt, "flagged", "TIN not found in receipt - needs manual review",
            ["TIN not found"], store_id=None,
        )
        logger.warning("Receipt %s flagged: TIN not found", receipt.id)
        return self._result(
            attempt, receipt, "flagged",
            "The receipt TIN could not be identified. An admin will review this receipt.",
            [
                RejectionDetail(
                    field="TIN",
                    issue="TIN not found in receipt",
                    message=(
                        "The receipt TIN (Tax Identification Number) could not be read from the image. "
                        "An admin will verify and process this receipt."
                    ),
                )
            ],
        )

    def _tin_not_allowed(self, attempt: _Attempt, unknown_store: bool) -> ValidationResult:
        parsed = attempt.parsed
        failure = TinNotAllowed(found=parsed.tin, allowed=self.rules.allowed_tins())
        if unknown_store:
            self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        receipt = self._record(
            attempt, "rejected",
            f"Receipt TIN {parsed.tin} is not accepted. Only receipts from allowed TINs are valid.",
            ["Invalid TIN"],
            store_id=None if unknown_store else attempt.store.id,
        )
        return self._result(
            attempt, receipt, "rejected",
            "This receipt is not from a participating store. Only receipts with allowed TINs are accepted.",
            [failure.to_detail()],
        )

    def _needs_store_selection(self, attempt: _Attempt, selection: NeedsSelection) -> ValidationResult:
        tin = selection.tin
        self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        if selection.candidates:
            flag = "Store selection needed - multiple stores with same TIN"
            reason = f"Multiple stores found with TIN {tin}. Please select the store."
        else:
            flag = "Store selection needed"
            reason = f"Please select the store for this receipt (TIN: {tin})"
        receipt = self._record(attempt, "needs_store_selection", reason, [flag], store_id=None)
        result = self._result(attempt, receipt, "needs_store_selection", reason)
        result.tin = tin
        result.stores = [store_candidate(s) for s in selection.candidates]
        return result

    def _store_not_found(self, attempt: _Attempt) -> ValidationResult:
        parsed = attempt.parsed or parse_receipt_text(attempt.text)
        attempt.parsed = parsed
        extracted = []
        if parsed.tin:
            extracted.append(f"TIN: {parsed.tin}")
        if parsed.invoice_no:
            extracted.append(f"Invoice: {parsed.invoice_no}")
        if parsed.date:
            extracted.append(f"Date: {parsed.date}")
        if parsed.total_amount:
            extracted.append(f"Amount: {parsed.total_amount} ETB")
        if parsed.branch_text:
            extracted.append(f"Store: {parsed.branch_text}")

        details = []
        if extracted:
            details.append(
                RejectionDetail(
                    field="extracted_data",
                    issue="Receipt information extracted",
                    found=", ".join(extracted),
                    message=f"We successfully extracted the following information from your receipt: {', '.join(extracted)}.",
                )
            )
        store_id = attempt.data.store_id
        details.append(
            RejectionDetail(
                field="store_not_found",
                issue="Store not found in system",
                found=store_id or parsed.tin or "Unknown",
                message=f"The store (ID: {store_id or 'N/A'}) is not registered in our loyalty system. This receipt cannot be accepted.",
            )
        )
        self._save_image(attempt, settings.UNKNOWN_STORE_BUCKET)
        receipt = self._record(attempt, "rejected", "Store not found", ["Store not found"], store_id=None)
        return self._result(
            attempt, receipt, "rejected",
            "Receipt not accepted: The store is not registered in our loyalty system. "
            "Please visit a participating store.",
            details,
        )

    def _reject_store(self, attempt: _Attempt, reason: str, details: list[RejectionDetail]) -> ValidationResult:
        store = attempt.store
        self._save_image(attempt, store.id)
        receipt = self._record(attempt, "rejected", reason, ["Store not accepting receipts"], store_id=store.id)
        return self._result(attempt, receipt, "rejected", reason, details)

    def _reject_duplicate(self, attempt: _Attempt, kind: str, existing_id: Optional[str]) -> ValidationResult:
        parsed = attempt.parsed
        if kind == "invoice":
            reason, flag = "Invoice number already used", "Duplicate invoice"
            detail = RejectionDetail(
                field="duplicate",
                issue="Invoice number already used",
                found=parsed.invoice_no,
                message=(
                    f"This receipt (Invoice #{parsed.invoice_no}) has already been submitted and "
                    "processed. Each receipt can only be used once."
                ),
            )
        else:
            reason, flag = "Barcode already used", "Duplicate barcode"
            detail = RejectionDetail(
                field="duplicate",
                issue="Barcode already used",
                found=parsed.barcode_data,
                message=(
                    "This receipt barcode has already been submitted and processed. "
                    "Each receipt can only be used once."
                ),
            )
        logger.info("Duplicate %s, first seen on receipt %s", kind, existing_id)
        receipt = self._record(
            attempt, "rejected", reason, [flag],
            fraud=attempt.fraud, duplicate_of_id=existing_id,
        )
        return self._result(attempt, receipt, "rejected", "This receipt has already been submitted", [detail])

    def _processing_error(self, attempt: _Attempt, exc: Exception) -> ValidationResult:
        store_id = attempt.data.store_id
        flag = "OCR unavailable" if isinstance(exc, OCRUnavailableError) else "OCR error"
        if not store_id:
            logger.warning("OCR/parsing failed without store context: %s", exc)
            return ValidationResult(
                success=False,
                status="rejected",
                reason="Error processing receipt image. Please try again or scan the store QR code.",
                flags=[flag],
            )
        logger.warning("OCR/parsing failed, flagging for manual review: %s", exc)
        self._save_image(attempt, store_id)
        receipt = self._record(
            attempt, "flagged", "Error processing receipt image - needs manual review",
            [flag], store_id=store_id,
        )
        return self._result(
            attempt, receipt, "flagged",
            "Error processing receipt - an admin will review it manually",
            [
                RejectionDetail(
                    field="processing_error",
                    issue="Error processing receipt image",
                    message=(
                        "An error occurred while processing the receipt image. An admin will "
                        "review it manually to verify the details."
                    ),
                )
            ],
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _save_image(self, attempt: _Attempt, bucket: str) -> str:
        if attempt.image_path is None:
            attempt.image_path = attempt.data.stored_image_path or self.storage.save(
                attempt.data.image_bytes, bucket, attempt.data.original_filename
            )
        return attempt.image_path

    def _record(
        self,
        attempt: _Attempt,
        status: str,
        reason: str,
        flags: list[str],
        fraud: Optional[FraudScore] = None,
        store_id: Optional[str] = "",
        duplicate_of_id: Optional[str] = None,
    ) -> ReceiptModel:
        """Persist the decision for this attempt.

        A non-approved row that collides with an existing invoice/barcode
        is saved again marked as a duplicate; a colliding approval raises
        ``DuplicateReceiptError`` for the caller to turn into a rejection.
        """
        data = attempt.data
        parsed = attempt.parsed or ParsedReceipt(raw_text=attempt.text)
        if store_id == "":
            store_id = attempt.store.id if attempt.store is not None else data.store_id
        values = dict(
            customer_phone=data.customer_phone,
            store_id=store_id,
            image_url=attempt.image_path or "",
            ocr_text=attempt.text,
            tin=parsed.tin,
            invoice_no=parsed.invoice_no,
            date_on_receipt=parsed.date,
            total_amount=parsed.total_amount,
            branch_text=parsed.branch_text,
            barcode_data=parsed.barcode_data,
            status=status,
            reason=reason,
            flags=list(flags),
            duplicate_of_id=duplicate_of_id,
            processed_at=attempt.now,
        )
        if fraud is not None:
            values.update(
                image_hash=fraud.image_hash or None,
                fraud_score=fraud.overall_score,
                tampering_score=fraud.tampering_score,
                ai_detection_score=fraud.ai_detection_score,
                fraud_flags=list(fraud.flags),
            )
        try:
            return repository.save_receipt(self.db, values, receipt_id=data.receipt_id)
        except DuplicateReceiptError as exc:
            if status == "approved":
                raise
            flag = "Duplicate invoice" if exc.field == "invoice" else "Duplicate barcode"
            values["duplicate_of_id"] = exc.existing_id
            if flag not in values["flags"]:
                values["flags"].append(flag)
            return repository.save_receipt(self.db, values, receipt_id=data.receipt_id)

    def _result(
        self,
        attempt: _Attempt,
        receipt: ReceiptModel,
        status: str,
        reason: str,
        details: Optional[list[RejectionDetail]] = None,
    ) -> ValidationResult:
        return ValidationResult(
            success=status == "approved",
            status=status,
            reason=reason,
            rejection_details=details or [],
            flags=list(receipt.flags or []),
            receipt_id=receipt.id,
            parsed=attempt.parsed,
        )


def _fraud_signal_details(fraud: FraudScore) -> list[RejectionDetail]:
    details = []
    if fraud.tampering_score > TAMPERING_FLAG_SCORE:
        details.append(
            RejectionDetail(
                field="image_tampering",
                issue="Possible image tampering detected",
                found=f"{fraud.tampering_score}/100",
                message="The receipt image shows signs of potential tampering or modification.",
            )
        )
    if fraud.ai_detection_score > AI_DETAIL_SCORE:
        details.append(
            RejectionDetail(
                field="ai_generated",
                issue="Possible AI-generated or fake receipt",
                found=f"{fraud.ai_detection_score}/100",
                message="The receipt image may be artificially generated or not authentic.",
            )
        )
    if fraud.duplicate_found:
        details.append(
            RejectionDetail(
                field="duplicate",
                issue="Duplicate image",
                found=fraud.duplicate_receipt_id,
                message="This receipt image has already been submitted.",
            )
        )
    if fraud.flags:
        details.append(
            RejectionDetail(
                field="fraud_flags",
                issue="Suspicious indicators found",
                found=", ".join(fraud.flags),
                message=f"Additional concerns: {', '.join(fraud.flags)}",
            )
        )
    return details
