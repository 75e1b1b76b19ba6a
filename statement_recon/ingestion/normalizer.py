"""
Line normalizer: maps already-extracted statement fields into a canonical
StatementLine. Pure functions, no I/O.

Upstream extractors (CSV import, PDF/AI parsing) name their fields
inconsistently, so several aliases are accepted for each canonical field.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional, Tuple

import structlog

from ..errors import ValidationError
from ..models import LineType, StatementLine, parse_enum

logger = structlog.get_logger()

CENTS = Decimal("0.01")

FIELD_ALIASES = {
    "document_number": ("document_number", "invoice_number", "doc_no", "invoice_num"),
    "transaction_date": ("transaction_date", "invoice_date", "date"),
    "amount": ("amount", "total_amount"),
    "currency": ("currency", "currency_code"),
    "line_type": ("line_type", "type"),
    "description": ("description", "memo"),
    "reference": ("reference", "reference_number"),
}

LINE_TYPE_ALIASES = {
    "inv": LineType.INVOICE,
    "invoice": LineType.INVOICE,
    "cn": LineType.CREDIT_NOTE,
    "credit_note": LineType.CREDIT_NOTE,
    "credit note": LineType.CREDIT_NOTE,
    "credit-note": LineType.CREDIT_NOTE,
    "pmt": LineType.PAYMENT,
    "payment": LineType.PAYMENT,
    "adj": LineType.ADJUSTMENT,
    "adjustment": LineType.ADJUSTMENT,
}

# Line types whose amounts reduce the balance owed
CREDIT_TYPES = (LineType.CREDIT_NOTE, LineType.PAYMENT)

DOCUMENT_STRIP_PATTERN = re.compile(r"[\s\-_.,/]")

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%Y")

CURRENCY_MARKERS = (
    "USD", "EUR", "GBP", "MXN", "CAD", "AUD", "NZD", "CHF", "JPY", "CNY",
    "HKD", "SGD", "MYR", "INR", "BRL", "US$", "RM", "$", "€", "£", "¥",
)

_MARKER = "|".join(re.escape(marker) for marker in CURRENCY_MARKERS)

# Optional sign, optional currency marker, grouped or plain digits with a dot
# decimal, optional trailing marker
AMOUNT_PATTERN = re.compile(
    rf"(?P<sign>[+-])?\s*(?:{_MARKER})?\s*(?P<inner_sign>[+-])?\s*"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)"
    rf"\s*(?:{_MARKER})?"
)


def normalize_document_number(value: Optional[str]) -> str:
    """Strip spaces and punctuation and upper-case a document number."""
    if not value:
        return ""
    return DOCUMENT_STRIP_PATTERN.sub("", str(value)).upper()


def canonical_document_number(value: Optional[str]) -> str:
    """Trimmed, upper-cased document number used for exact comparison."""
    if not value:
        return ""
    return str(value).strip().upper()


def _quantize(amount: Decimal, value: Any, field: str) -> Decimal:
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Invalid {field}: {value!r}", field=field) from None


def parse_amount(value: Any, field: str = "amount") -> Tuple[Decimal, bool]:
    """
    Parse a monetary value into a Decimal quantized to cents.

    Accepts thousands separators, a leading or trailing currency symbol or
    code, parenthesised negatives and trailing CR/DR markers. Anything else,
    including exponents and decimal commas, is rejected rather than guessed.

    Returns:
        Tuple of (amount, explicitly_signed)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing {field}", field=field)

    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)

    if isinstance(value, (int, Decimal)):
        amount = Decimal(value)
        return _quantize(amount, value, field), amount < 0

    if isinstance(value, float):
        amount = Decimal(str(value))
        return _quantize(amount, value, field), amount < 0

    text = str(value).strip().upper()
    negative = False
    signed = False

    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1]
        negative = signed = True
    if text.endswith("CR"):
        text = text[:-2]
        negative = signed = True
    elif text.endswith("DR"):
        text = text[:-2]
        signed = True

    match = AMOUNT_PATTERN.fullmatch(text.strip())
    if match is None or (match.group("sign") and match.group("inner_sign")):
        raise ValidationError(f"Invalid {field}: {value!r}", field=field)

    sign = match.group("sign") or match.group("inner_sign")
    if sign:
        signed = True
        if sign == "-":
            negative = not negative

    amount = Decimal(match.group("number").replace(",", ""))
    if negative:
        amount = -amount
    return _quantize(amount, value, field), signed


def parse_date(value: Any, field: str = "transaction_date") -> Optional[date]:
    """Parse ISO or day-first dates. Empty values yield None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    # Drop a time component ("2024-01-15T10:30:00")
    text = text.split("T")[0].split(" ")[0]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    raise ValidationError(f"Invalid {field}: {value!r}", field=field)


def parse_line_type(value: Any) -> LineType:
    if value is None or value == "":
        return LineType.INVOICE
    if isinstance(value, LineType):
        return value
    alias = LINE_TYPE_ALIASES.get(str(value).strip().lower())
    if alias is not None:
        return alias
    return parse_enum(LineType, str(value).strip().lower(), "line_type")


def _pick(raw: Mapping[str, Any], canonical: str) -> Any:
    for key in FIELD_ALIASES[canonical]:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


class LineNormalizer:
    """
    Converts raw extracted statement rows into canonical StatementLines.

    Sign convention: invoices and debit adjustments are positive, payments
    and credit notes negative. An amount that arrives explicitly signed
    (minus sign, parentheses, CR/DR marker) is kept as given.
    """

    def __init__(self, default_currency: str = "USD"):
        self.default_currency = default_currency.upper()

    def normalize(
        self,
        raw: Mapping[str, Any],
        statement_id: str,
        line_number: Optional[int] = None,
    ) -> StatementLine:
        if not statement_id:
            raise ValidationError("statement_id is required", field="statement_id")

        line_type = parse_line_type(_pick(raw, "line_type"))
        amount = self._resolve_amount(raw, line_type)

        currency = (_pick(raw, "currency") or self.default_currency)
        currency = str(currency).strip().upper()
        if not re.fullmatch(r"[A-Z]{3}", currency):
            raise ValidationError(f"Invalid currency: {currency!r}", field="currency")

        document_number = _pick(raw, "document_number")
        if document_number is not None:
            document_number = str(document_number).strip() or None

        if line_number is None:
            line_number = int(raw.get("line_number") or 0)

        return StatementLine(
            statement_id=statement_id,
            line_number=line_number,
            document_number=document_number,
            transaction_date=parse_date(_pick(raw, "transaction_date")),
            amount=amount,
            currency=currency,
            line_type=line_type,
            description=str(_pick(raw, "description") or "").strip(),
            reference=_pick(raw, "reference"),
            raw_data=dict(raw),
        )

    def _resolve_amount(self, raw: Mapping[str, Any], line_type: LineType) -> Decimal:
        value = _pick(raw, "amount")

        # Separate debit/credit columns
        if value is None and ("debit" in raw or "credit" in raw):
            debit = raw.get("debit")
            credit = raw.get("credit")
            debit_amount = parse_amount(debit, "debit")[0] if debit not in (None, "") else Decimal("0.00")
            credit_amount = parse_amount(credit, "credit")[0] if credit not in (None, "") else Decimal("0.00")
            return debit_amount - credit_amount

        amount, signed = parse_amount(value)
        if not signed and line_type in CREDIT_TYPES:
            amount = -amount
        return amount


def normalize_line(
    raw: Mapping[str, Any],
    statement_id: str,
    line_number: Optional[int] = None,
    default_currency: str = "USD",
) -> StatementLine:
    """Normalize a single raw row. See LineNormalizer."""
    return LineNormalizer(default_currency).normalize(raw, statement_id, line_number)
