"""
Text normalization for receipt fields: account/reference keys, identifiers, amounts, dates, times.
Pure functions; each normalizer is idempotent.
"""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Any

_SPACES_DASHES = re.compile(r"[\s\-]+")
_NON_ALNUM = re.compile(r"[\W_]+", re.UNICODE)
_NON_DIGIT = re.compile(r"\D+")
_WHITESPACE = re.compile(r"\s+")

SPANISH_MONTHS = {
    "ENE": 1, "FEB": 2, "MAR": 3, "ABR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AGO": 8, "SEP": 9, "SEPT": 9, "OCT": 10, "NOV": 11, "DIC": 12,
    # English abbreviations appear on some terminals
    "JAN": 1, "APR": 4, "AUG": 8, "DEC": 12,
}

_ISO_DATE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})")
_DMY_DATE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{4})")
_TEXT_MONTH_DATE = re.compile(r"^(\d{1,2})\s*(?:de\s+)?([A-Za-z]{3,})\.?\s*(?:de\s+)?(\d{4})", re.IGNORECASE)
_TIME = re.compile(r"(\d{1,2})\s*[:h.]\s*(\d{2})(?:\s*[:.]\s*\d{2})?\s*([AaPp]\.?\s*[Mm]\.?)?")


def normalize_account(value: str | None) -> str:
    """Strip spaces and dashes, then leading zeros: '0024500-020949' -> '24500020949'."""
    if not value:
        return ""
    return _SPACES_DASHES.sub("", str(value)).lstrip("0")


def normalize_identifier(value: Any) -> str:
    """Uppercase and strip whitespace, dashes and punctuation."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).upper())


def digits_only(value: Any) -> str:
    if value is None:
        return ""
    return _NON_DIGIT.sub("", str(value))


def digits_no_leading_zeros(value: Any) -> str:
    return digits_only(value).lstrip("0")


def collapse_whitespace(value: Any) -> str:
    """Lowercase with all whitespace removed; used for free-text field comparison."""
    if value is None:
        return ""
    return _WHITESPACE.sub("", str(value).strip().lower())


def strip_date_separators(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"[-/.\s]", "", str(value).strip())


def parse_amount(value: Any) -> int:
    """
    Parse a COP amount into a non-negative integer.
    Handles '$ 1.000.000,00', '120,000,000.00', '1400000', 150000.0. Unparseable -> 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return 0
        return max(0, int(round(value)))
    s = re.sub(r"[^\d.,]", "", str(value))
    if not s:
        return 0
    if "." in s and "," in s:
        decimal_sep = "." if s.rfind(".") > s.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        s = s.replace(thousands_sep, "")
        s = s.split(decimal_sep)[0]
    else:
        sep = "." if "." in s else ("," if "," in s else "")
        if sep:
            parts = s.split(sep)
            if len(parts) > 2 or len(parts[-1]) == 3:
                s = "".join(parts)
            else:
                s = parts[0]
    try:
        return max(0, int(s or "0"))
    except ValueError:
        return 0


def _safe_date(year: int, month: int, day: int) -> str | None:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date_iso(value: Any) -> str | None:
    """Return ISO YYYY-MM-DD for a valid calendar date, else None."""
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()
    if not s:
        return None
    s = s.split("T")[0]
    m = _ISO_DATE.match(s)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _DMY_DATE.match(s)
    if m:
        return _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    m = _TEXT_MONTH_DATE.match(s)
    if m:
        month = SPANISH_MONTHS.get(m.group(2)[:3].upper()) or SPANISH_MONTHS.get(m.group(2)[:4].upper())
        if month:
            return _safe_date(int(m.group(3)), month, int(m.group(1)))
    return None


def parse_time_hhmm(value: Any) -> str | None:
    """Return 24h HH:MM, else None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if "T" in s:
        s = s.split("T", 1)[1]
    m = _TIME.search(s)
    if not m:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    meridiem = (m.group(3) or "").replace(".", "").replace(" ", "").lower()
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"
