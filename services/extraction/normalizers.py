"""Normalizers for locale-ambiguous monetary amounts and dates.

All functions are pure and never raise on malformed input: unparseable
values degrade to None.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Literal

DateOrder = Literal["MDY", "DMY"]

_CURRENCY_SYMBOLS_AND_SPACE = re.compile(r"[$€£¥\s]")
_NUMERIC_PREFIX = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
_DATE_SEPARATORS = re.compile(r"[-/]")

# Order matters: multi-character codes before bare symbols
_CURRENCY_MARKERS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(USD|EUR|GBP|JPY|CAD|AUD|CHF|INR|TRY)\b"), ""),
    (re.compile(r"€"), "EUR"),
    (re.compile(r"£"), "GBP"),
    (re.compile(r"¥"), "JPY"),
    (re.compile(r"₹"), "INR"),
    (re.compile(r"\$"), "USD"),
]


def parse_amount(text: str | None) -> Decimal | None:
    """Parse a monetary string into a Decimal.

    Disambiguates thousands and decimal separators:
    - both ',' and '.' present: the later one is the decimal point
    - only ',': decimal point if exactly two digits follow the last comma,
      otherwise commas are thousands separators
    - only '.' or neither: parsed directly

    Like JavaScript's parseFloat, only the leading numeric prefix is used,
    so "12.50 USD" parses as 12.50.

    Args:
        text: Raw amount text, e.g. "$1,234.56" or "1.234,56 €"

    Returns:
        Parsed amount, or None for empty or non-numeric input

    Example:
        >>> parse_amount("1.234,56")
        Decimal('1234.56')
    """
    if not text:
        return None

    cleaned = _CURRENCY_SYMBOLS_AND_SPACE.sub("", text)
    has_comma = "," in cleaned
    has_period = "." in cleaned

    if has_comma and has_period:
        if cleaned.rfind(",") > cleaned.rfind("."):
            # European format: 1.234,56
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            # US format: 1,234.56
            cleaned = cleaned.replace(",", "")
    elif has_comma:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) == 2 and tail.isdigit():
            cleaned = f"{head.replace(',', '')}.{tail}"
        else:
            cleaned = cleaned.replace(",", "")

    match = _NUMERIC_PREFIX.match(cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return None


def normalize_date(text: str | None, date_order: DateOrder = "MDY") -> str | None:
    """Normalize a slash or dash separated date to YYYY-MM-DD.

    The first component is the month under the default US ("MDY") order and
    the day under "DMY". A four-digit first component is read as an ISO
    year-month-day date. Two-digit years map to 19xx above 50, else 20xx.

    Args:
        text: Date text such as "03/15/2024" or "3-15-24"
        date_order: Component order for day/month ambiguous dates

    Returns:
        ISO date string, or None if the text is not a valid calendar date

    Example:
        >>> normalize_date("3/15/24")
        '2024-03-15'
    """
    if not text:
        return None

    parts = [part.strip() for part in _DATE_SEPARATORS.split(text.strip())]
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        return None

    first, second, third = parts
    if len(first) == 4:
        year_text, month_text, day_text = first, second, third
    else:
        if len(third) == 2:
            third = f"19{third}" if int(third) > 50 else f"20{third}"
        year_text = third
        if date_order == "DMY":
            day_text, month_text = first, second
        else:
            month_text, day_text = first, second

    if len(year_text) != 4:
        return None

    try:
        return date(int(year_text), int(month_text), int(day_text)).isoformat()
    except ValueError:
        return None


def detect_currency(text: str | None, default: str = "USD") -> str:
    """Detect an ISO currency code from symbols or codes in text.

    Args:
        text: Text to scan
        default: Code returned when no marker is found

    Returns:
        Three-letter currency code
    """
    if not text:
        return default
    for pattern, code in _CURRENCY_MARKERS:
        match = pattern.search(text)
        if match:
            return code or match.group(1)
    return default
