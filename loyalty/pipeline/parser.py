"""
Receipt parsing and rule validation.

``parse_receipt_text`` runs every field extractor once and grades the
result; ``validate_parsed_receipt`` checks the parsed fields against a
store's rules and reports the first failure as a typed variant.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from loyalty.database import utcnow
from loyalty.pipeline.text_fields import (
    extract_barcode_data,
    extract_branch_text,
    extract_date,
    extract_invoice_no,
    extract_tin,
    extract_total_amount,
    parse_receipt_date,
)
from loyalty.schemas import (
    AmountBelowMinimum,
    FieldValidation,
    ParsedReceipt,
    ReceiptTooOld,
    TinMismatch,
    TinNotFound,
    ValidationRules,
)

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_FIELDS = 4
MEDIUM_CONFIDENCE_FIELDS = 2


def confidence_for(field_count: int) -> str:
    if field_count >= HIGH_CONFIDENCE_FIELDS:
        return "high"
    if field_count >= MEDIUM_CONFIDENCE_FIELDS:
        return "medium"
    return "low"


def parse_receipt_text(ocr_text: str) -> ParsedReceipt:
    tin = extract_tin(ocr_text)
    invoice_no = extract_invoice_no(ocr_text)
    receipt_date = extract_date(ocr_text)
    total_amount = extract_total_amount(ocr_text)
    branch_text = extract_branch_text(ocr_text)
    barcode_data = extract_barcode_data(ocr_text)

    found = sum(1 for v in (tin, invoice_no, receipt_date, total_amount, branch_text) if v)
    confidence = confidence_for(found)

    flags: list[str] = []
    if confidence == "low":
        flags.append("Low field extraction rate")
    if not tin:
        flags.append("TIN not found")
    if not invoice_no:
        flags.append("Invoice number not found")
    if not receipt_date:
        flags.append("Date not found")
    if not total_amount:
        flags.append("Amount not found")

    parsed = ParsedReceipt(
        tin=tin,
        invoice_no=invoice_no,
        date=receipt_date,
        total_amount=total_amount,
        branch_text=branch_text,
        barcode_data=barcode_data,
        raw_text=ocr_text,
        confidence=confidence,
        flags=flags,
    )
    logger.info(
        "Parsed receipt: tin=%s invoice=%s date=%s amount=%s confidence=%s",
        tin, invoice_no, receipt_date, total_amount, confidence,
    )
    return parsed


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def validate_parsed_receipt(
    parsed: ParsedReceipt,
    rules: ValidationRules,
    now: Optional[datetime] = None,
) -> FieldValidation:
    """Check TIN, branch, minimum amount and age, in that order.

    The first failing check is returned; a branch mismatch only adds a
    warning.
    """
    warnings: list[str] = []

    if rules.expected_tin:
        if not parsed.tin:
            return FieldValidation(valid=False, failure=TinNotFound(expected=rules.expected_tin))
        if _digits(rules.expected_tin) != _digits(parsed.tin):
            return FieldValidation(
                valid=False,
                failure=TinMismatch(expected=rules.expected_tin, found=parsed.tin),
            )

    if rules.expected_branch and parsed.branch_text:
        if rules.expected_branch.lower() not in parsed.branch_text.lower():
            warnings.append(
                f"Branch mismatch (expected: {rules.expected_branch}, found: {parsed.branch_text})"
            )

    if rules.min_amount and parsed.total_amount and parsed.total_amount < rules.min_amount:
        return FieldValidation(
            valid=False,
            failure=AmountBelowMinimum(found=parsed.total_amount, expected=rules.min_amount),
            warnings=warnings,
        )

    if rules.max_age_days and parsed.date:
        receipt_date = parse_receipt_date(parsed.date)
        if receipt_date is None:
            warnings.append("Could not validate receipt date")
        else:
            now = now or utcnow()
            midnight = datetime(receipt_date.year, receipt_date.month, receipt_date.day)
            age_days = (now - midnight).total_seconds() / 86400
            if age_days > rules.max_age_days:
                return FieldValidation(
                    valid=False,
                    failure=ReceiptTooOld(
                        age_days=int(age_days + 0.5), max_age_days=rules.max_age_days
                    ),
                    warnings=warnings,
                )

    return FieldValidation(valid=True, warnings=warnings)


def is_receipt_from_today(parsed: ParsedReceipt, today: Optional[date] = None) -> bool:
    if not parsed.date:
        return False
    receipt_date = parse_receipt_date(parsed.date)
    return receipt_date is not None and receipt_date == (today or utcnow().date())


def format_amount(amount: Optional[float], currency: str = "ETB") -> str:
    if amount is None:
        return "N/A"
    return f"{amount:.2f} {currency}"
