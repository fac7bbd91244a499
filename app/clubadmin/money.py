"""
Dollar amounts as Decimal, quantized to cents.
"""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")

_MONEY_RE = re.compile(r"^-?\$?\s*(\d{1,3}(,\d{3})+|\d+)?(\.\d+)?$")


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_money(text: str | int | float | Decimal | None) -> Decimal:
    """
    Accepts 25, "25.5", "$1,025.00". Raises ValueError for anything else.
    """
    if text is None:
        raise ValueError("amount is required")
    if isinstance(text, Decimal):
        return to_cents(text)
    if isinstance(text, (int, float)):
        return to_cents(Decimal(str(text)))
    raw = str(text).strip()
    if not raw or not _MONEY_RE.match(raw) or not re.search(r"\d", raw):
        raise ValueError(f"invalid amount: {text!r}")
    negative = raw.startswith("-")
    cleaned = raw.lstrip("-").replace("$", "").replace(",", "").strip()
    try:
        value = Decimal(cleaned)
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {text!r}") from e
    return to_cents(-value if negative else value)


def format_money(value: Decimal | int | float | None) -> str:
    if value is None:
        return "$0.00"
    amount = to_cents(Decimal(str(value)))
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
