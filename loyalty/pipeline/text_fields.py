"""
Field extraction from normalised receipt OCR text.

Every extractor is an ordered list of named strategies. Each strategy
returns a value or ``None``; the first non-``None`` result wins, so the
priority order is the order of the list.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def first_match(
    strategies: Iterable[Callable[..., Optional[T]]], *args
) -> Optional[T]:
    """Run *strategies* in order and return the first non-None result."""
    for strategy in strategies:
        value = strategy(*args)
        if value is not None:
            logger.debug("%s matched: %r", strategy.__name__, value)
            return value
    return None


# ---------------------------------------------------------------------------
# TIN
# ---------------------------------------------------------------------------

MOBILE_PREFIXES = ("09", "251")

_TIN_LABEL = re.compile(r"\bTIN[:\s]*([0-9]{6,20})\b", re.IGNORECASE)
_TAX_ID_LABEL = re.compile(r"\bTax\s+ID[:\s]*([0-9]{6,20})\b", re.IGNORECASE)
_VAT_LABEL = re.compile(r"\bVAT[:\s]*([0-9]{6,20})\b", re.IGNORECASE)
_BARE_TIN = re.compile(r"\b([0-9]{10,15})\b")


def tin_from_tin_label(text: str) -> str | None:
    m = _TIN_LABEL.search(text)
    return m.group(1) if m else None


def tin_from_tax_id_label(text: str) -> str | None:
    m = _TAX_ID_LABEL.search(text)
    return m.group(1) if m else None


def tin_from_vat_label(text: str) -> str | None:
    m = _VAT_LABEL.search(text)
    return m.group(1) if m else None


def tin_from_bare_digits(text: str) -> str | None:
    """A 10-15 digit run that is not shaped like a mobile number."""
    for m in _BARE_TIN.finditer(text):
        if not m.group(1).startswith(MOBILE_PREFIXES):
            return m.group(1)
    return None


TIN_STRATEGIES = [
    tin_from_tin_label,
    tin_from_tax_id_label,
    tin_from_vat_label,
    tin_from_bare_digits,
]


def extract_tin(text: str) -> str | None:
    return first_match(TIN_STRATEGIES, text)


# ---------------------------------------------------------------------------
# Invoice number
# ---------------------------------------------------------------------------

_INVOICE_SHAPE = r"[0-9]{4,5}[\s\-]+[0-9]{2,3}[\s\-]+[0-9]{3,4}[A-Z]?"
_INVOICE_TOKEN = r"[0-9]{4,5}[\s\-][0-9]{2,3}[\s\-][0-9]{3,4}[A-Z]?"

_INVOICE_NO_ORDER = re.compile(
    rf"Invoice\s*No\s*Order[:\s]+({_INVOICE_SHAPE})", re.IGNORECASE
)
_INVOICE_NO = re.compile(
    rf"Invoice\s*(?:No|Number)[:\s]+({_INVOICE_SHAPE})", re.IGNORECASE
)
_INVOICE_STANDALONE = re.compile(rf"\b({_INVOICE_TOKEN})\b")
_INVOICE_LOOSE = re.compile(rf"({_INVOICE_TOKEN})")
_RECEIPT_OR_ORDER_NO = re.compile(
    r"(?:Receipt|Order)\s*(?:No|#|Number)[:\s]+([A-Z0-9\-/ \t]{4,50})", re.IGNORECASE
)
_INV_PREFIX = re.compile(r"INV[:\s\-]+([A-Z0-9\-/]{3,50})", re.IGNORECASE)

_INVOICE_KEYWORDS = ("invoice", "order")
_KEYWORD_WINDOW = 50


def _hyphenate(token: str) -> str:
    return re.sub(r"[\s\-]+", "-", token.strip())


def _plausible_invoice_token(candidate: str) -> bool:
    return len(candidate.split("-")) == 3 and 12 <= len(candidate) <= 20


def invoice_from_no_order_label(text: str) -> str | None:
    """``Invoice No Order: 05507-001-0036L`` (also glued variants)."""
    m = _INVOICE_NO_ORDER.search(text)
    return _hyphenate(m.group(1)) if m else None


def invoice_from_no_label(text: str) -> str | None:
    m = _INVOICE_NO.search(text)
    return _hyphenate(m.group(1)) if m else None


def invoice_from_standalone_token(text: str) -> str | None:
    m = _INVOICE_STANDALONE.search(text)
    if not m:
        return None
    candidate = _hyphenate(m.group(1))
    return candidate if _plausible_invoice_token(candidate) else None


def invoice_from_token_near_keyword(text: str) -> str | None:
    m = _INVOICE_LOOSE.search(text)
    if not m:
        return None
    candidate = _hyphenate(m.group(1))
    before = text[max(0, m.start() - _KEYWORD_WINDOW):m.start()].lower()
    after = text[m.end():m.end() + _KEYWORD_WINDOW].lower()
    near_keyword = any(k in before or k in after for k in _INVOICE_KEYWORDS)
    if near_keyword and len(candidate.split("-")) >= 3:
        return candidate
    return candidate if _plausible_invoice_token(candidate) else None


def invoice_from_receipt_or_order_label(text: str) -> str | None:
    m = _RECEIPT_OR_ORDER_NO.search(text)
    if not m:
        return None
    value = re.sub(r"\s+", "", m.group(1))
    return value or None


def invoice_from_inv_prefix(text: str) -> str | None:
    m = _INV_PREFIX.search(text)
    return m.group(1).strip() if m else None


def invoice_from_keyword_lines(text: str) -> str | None:
    """Token on a line mentioning invoice/order, or up to two lines below."""
    lines = text.split("\n")
    for i, line in enumerate(lines):
        lower = line.lower()
        if not any(k in lower for k in _INVOICE_KEYWORDS):
            continue
        for candidate_line in lines[i:i + 3]:
            m = _INVOICE_LOOSE.search(candidate_line)
            if m:
                return _hyphenate(m.group(1))
    return None


INVOICE_STRATEGIES = [
    invoice_from_no_order_label,
    invoice_from_no_label,
    invoice_from_standalone_token,
    invoice_from_token_near_keyword,
    invoice_from_receipt_or_order_label,
    invoice_from_inv_prefix,
    invoice_from_keyword_lines,
]


def extract_invoice_no(text: str) -> str | None:
    value = first_match(INVOICE_STRATEGIES, text)
    if value is None:
        logger.debug("No invoice number found")
    return value


# ---------------------------------------------------------------------------
# Date
# ---------------------------------------------------------------------------

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_ISO_DATE = re.compile(r"(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})")
_DMY_DATE = re.compile(r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})")
_MONTH_NAME_DATE = re.compile(
    r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+(\d{1,2}),?\s+(\d{4})",
    re.IGNORECASE,
)


def _format_date(year: int, month: int, day: int) -> str | None:
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def date_from_iso(text: str) -> str | None:
    for m in _ISO_DATE.finditer(text):
        value = _format_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if value:
            return value
    return None


def date_from_day_first(text: str) -> str | None:
    m = _DMY_DATE.search(text)
    if not m:
        return None
    return _format_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))


def date_from_month_name(text: str) -> str | None:
    m = _MONTH_NAME_DATE.search(text)
    if not m:
        return None
    month = MONTHS[m.group(1).lower()[:3]]
    return _format_date(int(m.group(3)), month, int(m.group(2)))


DATE_STRATEGIES = [date_from_iso, date_from_day_first, date_from_month_name]


def extract_date(text: str) -> str | None:
    """Return the receipt date as ``YYYY-MM-DD``."""
    return first_match(DATE_STRATEGIES, text)


def parse_receipt_date(value: str) -> date | None:
    """``YYYY-MM-DD`` to a date; ``None`` for impossible dates such as 31 Feb."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Total amount
# ---------------------------------------------------------------------------

MAX_AMOUNT = 1_000_000
MIN_TOTAL = 100
TAX_RANGE = (5, 500)
MAX_TAX_RATE = 0.25
REASONABLE_TOTAL_RANGE = (200, 10_000)

_TOTAL_MISREAD = re.compile(r"T[O0][T7][A4][L1]")
_PRIORITY_KEYWORDS = ("TOTAL", "GRAND TOTAL")
_SECONDARY_KEYWORDS = ("NET", "AMOUNT", "SUBTOTAL", "BALANCE")
_TENDER_KEYWORDS = ("CASH", "CHANGE")

_LINE_AMOUNT_PATTERNS = [
    re.compile(r"[*$€£]\s*(\d{1,3}(?:[\s,]\d{3})*(?:[.,]\d{2})?)"),
    re.compile(r"[*$€£]\s*(\d{1,3})[\s,]*(\d{2})"),
    re.compile(
        r"(?:TOTAL|NET|AMOUNT|SUBTOTAL)[:\s]*[*$€£]?\s*(\d{1,3}(?:[\s,]\d{3})*(?:[.,]\d{2})?)",
        re.IGNORECASE,
    ),
    re.compile(r"(\d{1,3}(?:[\s,]\d{3})*(?:[.,]\d{2})?)\s*(?:ETB|USD|EUR|GBP)", re.IGNORECASE),
    re.compile(r"(\d+[.,]\d{2})"),
    re.compile(r"(\d{1,3})[\s,]+(\d{2})(?!\d)"),
    re.compile(r"(\d{1,3}(?:[\s,]\d{3})*(?:[.,]\d{2})?)"),
]
_DECIMAL = re.compile(r"\d+[.,]\d{2}")
_ASTERISK_AMOUNT = re.compile(r"\*\s*(\d{1,3}(?:[\s,]\d{3})*(?:[.,]\d{2})?)")
_ANY_NUMBER = re.compile(r"\d{1,3}(?:[,\s]\d{3})*(?:[.,]\d{2})?|\d+[.,]\d{2}|\d+")


def to_amount(raw: str) -> float | None:
    """Parse an OCR'd currency string. A trailing ``,dd`` is a decimal comma."""
    cleaned = re.sub(r"\s", "", raw)
    if "." not in cleaned and re.search(r",\d{2}$", cleaned):
        cleaned = cleaned[:-3].replace(",", "") + "." + cleaned[-2:]
    cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def _positive(value: float | None) -> float | None:
    return value if value is not None and value > 0 else None


def number_on_line(line: str) -> float | None:
    """Best single amount on a SUBTOTAL/TAX line.

    Repairs common OCR splits first (``*244 .65``, ``*244 65``).
    """
    line = re.sub(r"\*\s*(\d+)\s+\.\s*(\d+)", r"*\1.\2", line)
    line = re.sub(r"(\d+)\s+\.\s*(\d+)", r"\1.\2", line)
    line = re.sub(r"\*\s*(\d{1,3})\s+(\d{2})(?!\d)", r"*\1.\2", line)

    m = re.search(r"\*\s*(\d+(?:\.\d{2})?)", line)
    if m and _positive(to_amount(m.group(1))):
        return to_amount(m.group(1))
    m = re.search(r"\*\s*(\d{1,3})[\s,]+(\d{2})(?!\d)", line)
    if m and _positive(to_amount(f"{m.group(1)}.{m.group(2)}")):
        return to_amount(f"{m.group(1)}.{m.group(2)}")
    m = re.search(r"(\d+[.,]\d{2})", line)
    if m and _positive(to_amount(m.group(1))):
        return to_amount(m.group(1))
    m = re.search(r"\*\s*(\d{1,3}(?:[\s,]\d{3})*)", line)
    if m and _positive(to_amount(m.group(1))):
        return to_amount(m.group(1))
    return None


def amount_on_line(line: str) -> float | None:
    """Currency-shaped amount on a TOTAL-like line, asterisk amounts first."""
    for pattern in _LINE_AMOUNT_PATTERNS:
        m = pattern.search(line)
        if not m:
            continue
        groups = m.groups()
        if len(groups) == 2 and groups[1] and len(groups[1]) == 2:
            amount = to_amount(f"{groups[0]}.{groups[1]}")
        else:
            amount = to_amount(groups[0])
        if amount is not None and 0 < amount < MAX_AMOUNT:
            return amount

    amounts = [a for a in (to_amount(n) for n in _DECIMAL.findall(line)) if a and a > 0]
    return max(amounts) if amounts else None


def _in_tax_range(value: float | None) -> bool:
    return value is not None and TAX_RANGE[0] < value < TAX_RANGE[1]


def find_subtotal(lines: list[str]) -> float | None:
    for i, line in enumerate(lines):
        if "SUBTOTAL" not in line.upper():
            continue
        for candidate in lines[i:i + 3]:
            value = number_on_line(candidate)
            if value:
                return value
    return None


def find_tax(lines: list[str]) -> float | None:
    for i, line in enumerate(lines):
        if "TAX" not in line.upper():
            continue
        # TAX 1 15.00 *36.79
        if re.search(r"TAX[^0-9]*\*?\s*(\d+[.,]\d{2})", line, re.IGNORECASE):
            value = number_on_line(line)
            if _in_tax_range(value):
                return value
        for following in lines[i + 1:i + 4]:
            upper = following.upper()
            if "TOTAL" in upper:
                break
            if any(k in upper for k in _TENDER_KEYWORDS):
                continue
            value = number_on_line(following)
            if not _in_tax_range(value) or "%" in upper or "ITEM" in upper:
                continue
            if "*" not in following or value < 100:
                return value
        value = number_on_line(line)
        if _in_tax_range(value):
            return value
    return None


@dataclass
class AmountContext:
    """Shared inputs for the total-amount strategies."""

    text: str
    lines: list[str] = field(default_factory=list)
    subtotal: float | None = None
    tax: float | None = None

    @classmethod
    def from_text(cls, text: str) -> "AmountContext":
        lines = text.split("\n")
        return cls(text=text, lines=lines, subtotal=find_subtotal(lines), tax=find_tax(lines))


def _looks_like_total_line(upper: str) -> bool:
    if "SUBTOTAL" in upper:
        return False
    return (
        "TOTAL" in upper
        or bool(_TOTAL_MISREAD.search(upper))
        or (bool(re.match(r"^T[O0]", upper)) and len(upper) < 10)
    )


def _total_near_total_line(ctx: AmountContext) -> float | None:
    lines = ctx.lines
    for i, line in enumerate(lines):
        if not _looks_like_total_line(line.upper()):
            continue
        neighbours = [line] + lines[i + 1:i + 4] + ([lines[i - 1]] if i > 0 else [])
        for candidate in neighbours:
            # Cash tendered and change sit next to the total but are not it
            if any(k in candidate.upper() for k in _TENDER_KEYWORDS):
                continue
            amount = amount_on_line(candidate)
            if amount is not None and amount > MIN_TOTAL:
                return amount
    return None


def _total_on_keyword_line(ctx: AmountContext) -> float | None:
    for line in ctx.lines:
        upper = line.upper()
        if "SUBTOTAL" not in upper and any(k in upper for k in _PRIORITY_KEYWORDS):
            amount = amount_on_line(line)
            if amount is not None and amount > MIN_TOTAL:
                return amount
    for line in ctx.lines:
        upper = line.upper()
        if any(k in upper for k in _SECONDARY_KEYWORDS):
            amount = amount_on_line(line)
            if amount is not None and amount > MIN_TOTAL:
                return amount
    return None


def total_from_total_line(ctx: AmountContext) -> float | None:
    """A TOTAL line (or an OCR misread of one) and its neighbours.

    Discarded when not above a known subtotal: that is usually the
    subtotal read twice.
    """
    amount = _total_near_total_line(ctx)
    if amount is None:
        amount = _total_on_keyword_line(ctx)
    if amount is None:
        return None
    if ctx.subtotal and amount <= ctx.subtotal:
        logger.debug("TOTAL %.2f <= SUBTOTAL %.2f, discarding", amount, ctx.subtotal)
        return None
    return amount


def total_from_subtotal_plus_tax(ctx: AmountContext) -> float | None:
    if not (ctx.subtotal and ctx.tax):
        return None
    calculated = ctx.subtotal + ctx.tax
    if ctx.subtotal < calculated <= ctx.subtotal * (1 + MAX_TAX_RATE):
        return round(calculated, 2)
    return None


def total_from_largest_asterisk(ctx: AmountContext) -> float | None:
    amounts = []
    for m in _ASTERISK_AMOUNT.finditer(ctx.text):
        amount = to_amount(m.group(1))
        if amount is not None and MIN_TOTAL < amount < MAX_AMOUNT:
            amounts.append(amount)
    if not amounts:
        return None
    if ctx.subtotal:
        larger = [a for a in amounts if a > ctx.subtotal]
        if larger:
            return max(larger)
    return max(amounts)


def total_from_largest_decimal(ctx: AmountContext) -> float | None:
    cleaned = [
        a for a in (to_amount(n) for n in _DECIMAL.findall(ctx.text))
        if a is not None and MIN_TOTAL < a < MAX_AMOUNT
    ]
    if not cleaned:
        return None
    low, high = REASONABLE_TOTAL_RANGE
    reasonable = [a for a in cleaned if low <= a <= high]
    if not reasonable:
        return max(cleaned)
    small = [a for a in cleaned if a < 1000]
    if small:
        above_subtotal = [a for a in reasonable if a > max(small)]
        if above_subtotal:
            return max(above_subtotal)
    return max(reasonable)


def total_from_largest_number(ctx: AmountContext) -> float | None:
    cleaned = [
        a for a in (to_amount(n) for n in _ANY_NUMBER.findall(ctx.text))
        if a is not None and MIN_TOTAL < a < MAX_AMOUNT
    ]
    if not cleaned:
        return None
    if ctx.subtotal:
        larger = [a for a in cleaned if a > ctx.subtotal]
        if larger:
            return max(larger)
    return max(cleaned)


AMOUNT_STRATEGIES = [
    total_from_total_line,
    total_from_subtotal_plus_tax,
    total_from_largest_asterisk,
    total_from_largest_decimal,
    total_from_largest_number,
]


def extract_total_amount(text: str) -> float | None:
    ctx = AmountContext.from_text(text)
    logger.debug("Amount context: subtotal=%s tax=%s", ctx.subtotal, ctx.tax)
    amount = first_match(AMOUNT_STRATEGIES, ctx)
    return round(amount, 2) if amount is not None else None


# ---------------------------------------------------------------------------
# Branch
# ---------------------------------------------------------------------------

BRANCH_KEYWORDS = (
    "branch", "location", "store", "outlet", "bole", "piassa",
    "meskel", "kazanchis", "merkato", "sarbet", "aware", "mexico",
    "bahir dar", "hawassa", "mekelle", "dire dawa", "adama",
)


def branch_from_keyword_line(lines: list[str]) -> str | None:
    for line in lines:
        lower = line.lower()
        if any(k in lower for k in BRANCH_KEYWORDS):
            return line.strip()
    return None


def branch_from_address_line(lines: list[str]) -> str | None:
    for line in lines:
        if 5 < len(line) < 100 and re.search(r"\d", line) and re.search(r"[A-Za-z]{3,}", line):
            return line.strip()
    return None


def branch_from_second_line(lines: list[str]) -> str | None:
    if len(lines) >= 2 and lines[1].strip():
        return lines[1].strip()
    return None


def _branch_keyword_or_address(lines: list[str]) -> str | None:
    # Keyword and address checks apply line by line, top first.
    for line in lines:
        value = branch_from_keyword_line([line]) or branch_from_address_line([line])
        if value:
            return value
    return None


BRANCH_STRATEGIES = [_branch_keyword_or_address, branch_from_second_line]


def extract_branch_text(text: str, max_lines: int = 10) -> str | None:
    return first_match(BRANCH_STRATEGIES, text.split("\n")[:max_lines])


# ---------------------------------------------------------------------------
# Barcode
# ---------------------------------------------------------------------------

_EAN13 = re.compile(r"\b(\d{13})\b")
_CODE128 = re.compile(r"\b([A-Z0-9]{8,20})\b")


def barcode_from_ean13(text: str) -> str | None:
    m = _EAN13.search(text)
    return m.group(1) if m else None


def barcode_from_alphanumeric(text: str) -> str | None:
    """Code-128 style run. Must carry a digit and not lead with zeros."""
    for m in _CODE128.finditer(text):
        candidate = m.group(1)
        if re.search(r"\d", candidate) and not re.match(r"0{2,}", candidate):
            return candidate
    return None


BARCODE_STRATEGIES = [barcode_from_ean13, barcode_from_alphanumeric]


def extract_barcode_data(text: str) -> str | None:
    return first_match(BARCODE_STRATEGIES, text)
