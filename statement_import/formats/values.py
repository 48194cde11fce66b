"""
Cell value parsing shared by all bank formats.

Both helpers are total: anything they cannot read comes back as None.
A malformed amount or date is degraded data, not an error, and the
classifier turns None into zero confidence.
"""

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Optional

from dateutil import parser as date_parser

_CURRENCY_MARKERS = re.compile(r"(₹|\$|inr|rs\.?)", re.IGNORECASE)
_DR_CR_SUFFIX = re.compile(r"\s*(dr|cr)\.?$", re.IGNORECASE)
_NUMBER = re.compile(r"^-?(\d+\.?\d*|\.\d+)$")

_ISO_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
# a two-digit year closes the date part, optionally followed by a time
_TWO_DIGIT_YEAR = re.compile(r"(?<=[/\-. ,])\d{2}(?:[ T]\d{1,2}:\d{2}(?::\d{2})?)?$")


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a statement amount cell.

    "1,234.56" -> Decimal("1234.56"), "(50.00)" -> Decimal("-50.00"),
    "₹ 99" -> Decimal("99"), "500.00 Dr" -> Decimal("500.00"),
    "" / "N/A" -> None.

    Dr/Cr markers are dropped; the column the cell came from decides
    the direction.
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    text = _DR_CR_SUFFIX.sub("", text)
    text = _CURRENCY_MARKERS.sub("", text)
    text = text.replace(",", "").replace(" ", "")

    if not _NUMBER.match(text):
        return None

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None

    return -abs(amount) if negative else amount


def parse_statement_date(value: Optional[str], today: Optional[date] = None) -> Optional[str]:
    """
    Parse a statement date cell into an ISO local timestamp.

    Day-first layouts (Indian bank exports) are assumed for numeric dates:
    "15/02/26" -> "2026-02-15T00:00:00". Spreadsheet cells that arrive as
    ISO text ("2026-02-15 00:00:00") are read year-month-day.
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    today = today or date.today()
    try:
        if _ISO_PREFIX.match(text):
            # dayfirst would swap month and day here
            parsed = date_parser.isoparse(text)
        else:
            parsed = date_parser.parse(
                text,
                dayfirst=True,
                default=datetime.combine(today, time()),
            )
            if _TWO_DIGIT_YEAR.search(text):
                parsed = parsed.replace(year=(today.year // 100) * 100 + parsed.year % 100)
    except (ValueError, OverflowError):
        return None

    return parsed.replace(tzinfo=None).isoformat(timespec="seconds")
