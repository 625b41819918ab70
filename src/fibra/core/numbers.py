"""Locale-tolerant number parsing for filings and uploaded spreadsheets."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


def parse_number(raw: str) -> Decimal | None:
    """Parse ``1,234.56``, ``1.234,56``, ``18,20`` or ``35.2%`` style numbers.

    A single comma followed by exactly three digits is read as a thousands
    separator; any other single comma is a decimal point.

    >>> parse_number("1.234,56")
    Decimal('1234.56')
    >>> parse_number("18,20")
    Decimal('18.20')
    """
    s = raw.strip().replace("$", "").replace("%", "").replace(" ", "").rstrip(".,")
    if not s:
        return None
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        parts = s.split(",")
        if len(parts) == 2 and len(parts[1]) != 3:
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    elif s.count(".") > 1:
        s = s.replace(".", "")
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


__all__ = ["parse_number"]
