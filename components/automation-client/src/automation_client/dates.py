"""Date normalisation for the rules API.

The backend expects encounter dates as ``MM/DD/YYYY`` strings and an empty
string when a date is absent.
"""

from __future__ import annotations

import re
from datetime import date, datetime

API_DATE_FORMAT = "%m/%d/%Y"
_API_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")
_FALLBACK_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%m/%d/%y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M %p",
    "%b %d, %Y",
    "%B %d, %Y",
)

DateLike = date | datetime | str | None


def parse_date(value: DateLike) -> date | None:
    """Parse a date-like value into a calendar date.

    Args:
        value: A ``date``, ``datetime``, or string in ISO 8601, ``MM/DD/YYYY``
            or one of a few common US spellings.

    Returns:
        The calendar date, or None when the value is empty or unparseable.

    Examples:
        >>> parse_date("2025-01-05T14:30:00Z")
        datetime.date(2025, 1, 5)
        >>> parse_date("not a date") is None
        True
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    if _API_DATE_RE.match(text):
        try:
            return datetime.strptime(text, API_DATE_FORMAT).date()
        except ValueError:
            return None

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text).date()
    except ValueError:
        pass

    for fmt in _FALLBACK_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: DateLike) -> str:
    """Format a date-like value as ``MM/DD/YYYY`` for the rules API.

    Strings already in ``MM/DD/YYYY`` form are returned unchanged, so the
    function is idempotent. Empty or unparseable input yields ``""``.

    Examples:
        >>> normalize_date("2025-01-05")
        '01/05/2025'
        >>> normalize_date("01/05/2025")
        '01/05/2025'
        >>> normalize_date(None)
        ''
    """
    if isinstance(value, str) and _API_DATE_RE.match(value.strip()):
        return value.strip()
    parsed = parse_date(value)
    if parsed is None:
        return ""
    return parsed.strftime(API_DATE_FORMAT)


def format_display_date(value: DateLike) -> str:
    """Human readable date, e.g. ``Jan 5, 2025``; ``Never`` when empty."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return "Never"
    parsed = parse_date(value)
    if parsed is None:
        return str(value)
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"
