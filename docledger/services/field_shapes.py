"""Expected value shapes per extracted field, plus money/date parsing."""

from __future__ import annotations

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from docledger.core.errors import InvalidValue
from docledger.schemas.document import FieldName

CENT = Decimal("0.01")

AMOUNT_FIELDS = {
    FieldName.SUBTOTAL,
    FieldName.TAX_AMOUNT,
    FieldName.DISCOUNT_AMOUNT,
    FieldName.TOTAL_AMOUNT,
}
DATE_FIELDS = {FieldName.RECEIPT_DATE, FieldName.DUE_DATE}
IDENTIFIER_FIELDS = {FieldName.VENDOR_TAX_ID, FieldName.RECEIPT_NUMBER, FieldName.INVOICE_NUMBER}

_AMOUNT_RE = re.compile(r"^-?\d+(\.\d{1,2})?$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SHAPE_HINTS = {
    "amount": "decimal number with at most two fraction digits, e.g. 1250.00",
    "date": "ISO date YYYY-MM-DD",
    "currency": "three-letter ISO 4217 code, e.g. EUR",
    "percentage": "number between 0 and 100",
    "identifier": "1-64 characters",
    "text": "1-512 characters",
}


def shape_of(field_name: FieldName) -> str:
    if field_name in AMOUNT_FIELDS:
        return "amount"
    if field_name in DATE_FIELDS:
        return "date"
    if field_name == FieldName.CURRENCY:
        return "currency"
    if field_name == FieldName.TAX_RATE:
        return "percentage"
    if field_name in IDENTIFIER_FIELDS:
        return "identifier"
    return "text"


def _invalid(field_name: FieldName, value: str, shape: str) -> InvalidValue:
    return InvalidValue(
        f"Value for {field_name.value} must be a {SHAPE_HINTS[shape]}",
        errors=[{"field": field_name.value, "value": value, "expected": shape}],
    )


def validate_value(field_name: FieldName, value: str) -> str:
    """Check a human-entered value against the field's shape.

    Returns the trimmed value (currency upper-cased). Raises ``InvalidValue``.
    """
    cleaned = (value or "").strip()
    shape = shape_of(field_name)

    if shape == "amount":
        if not _AMOUNT_RE.match(cleaned):
            raise _invalid(field_name, value, shape)
        return cleaned
    if shape == "date":
        if not _DATE_RE.match(cleaned):
            raise _invalid(field_name, value, shape)
        try:
            date.fromisoformat(cleaned)
        except ValueError:
            raise _invalid(field_name, value, shape) from None
        return cleaned
    if shape == "currency":
        cleaned = cleaned.upper()
        if not _CURRENCY_RE.match(cleaned):
            raise _invalid(field_name, value, shape)
        return cleaned
    if shape == "percentage":
        try:
            rate = Decimal(cleaned)
        except InvalidOperation:
            raise _invalid(field_name, value, shape) from None
        if not rate.is_finite() or rate < 0 or rate > 100:
            raise _invalid(field_name, value, shape)
        return cleaned
    if shape == "identifier":
        if not 1 <= len(cleaned) <= 64:
            raise _invalid(field_name, value, shape)
        return cleaned
    if not 1 <= len(cleaned) <= 512:
        raise _invalid(field_name, value, shape)
    return cleaned


def to_money(value) -> Decimal:
    """Quantize a stored numeric to cents."""
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def _is_grouped(number: str, mark: str) -> bool:
    return re.fullmatch(rf"\d{{1,3}}(?:{re.escape(mark)}\d{{3}})+", number) is not None


def _plain_number(body: str) -> Optional[str]:
    """Rewrite a printed unsigned number as ``digits[.digits]`` or ``None``."""
    last_comma, last_dot = body.rfind(","), body.rfind(".")

    if last_comma >= 0 and last_dot >= 0:
        # Both separators: the later one is the decimal mark.
        decimal_mark = "," if last_comma > last_dot else "."
        group_mark = "." if decimal_mark == "," else ","
        integer, _, fraction = body.rpartition(decimal_mark)
        if not fraction.isdigit() or not _is_grouped(integer, group_mark):
            return None
        return f"{integer.replace(group_mark, '')}.{fraction}"

    if last_comma < 0 and last_dot < 0:
        return body if body.isdigit() else None

    mark = "," if last_comma >= 0 else "."
    if body.count(mark) > 1:
        return body.replace(mark, "") if _is_grouped(body, mark) else None

    integer, _, fraction = body.partition(mark)
    if not fraction.isdigit() or (integer and not integer.isdigit()):
        return None
    if len(fraction) <= 2 or not integer.strip("0"):
        return f"{integer or '0'}.{fraction}"
    if len(fraction) == 3 and len(integer) <= 3:
        # "1,250" is a thousands group; "1.250" could be either convention.
        return integer + fraction if mark == "," else None
    return f"{integer}.{fraction}" if mark == "." else None


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Lenient parse of a printed amount ("1,250", "€ 12.50", "1.250,00") for posting.

    Spaces and currency symbols are dropped. With both separators present the
    later one is the decimal mark and the other must form thousands groups. A
    lone separator followed by one or two digits is a decimal mark; a comma
    followed by a three-digit group is a thousands separator. Anything that
    does not fit, including "1.250", returns ``None`` instead of a guess.
    """
    if raw is None:
        return None
    text = re.sub(r"[^\d,.\-]", "", str(raw))
    negative = text.startswith("-")
    body = text[1:] if negative else text
    if not body or "-" in body:
        return None
    number = _plain_number(body)
    if number is None:
        return None
    try:
        amount = Decimal(number)
    except InvalidOperation:
        return None
    if negative:
        amount = -amount
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        return None
