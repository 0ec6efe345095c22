"""
Date token resolution for path and filename patterns.

Recognised placeholders (case-insensitive): ``{yyyy}``, ``{yy}``, ``{mm}``,
``{dd}``. Anything else, including malformed or unknown ``{...}`` text, is
left exactly as written; configuration validation reports unknown
placeholders before a pattern is ever resolved.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, tzinfo

_TOKEN = re.compile(r"\{(yyyy|yy|mm|dd)\}", re.IGNORECASE)
_PLACEHOLDER = re.compile(r"\{[^{}]*\}")


def _calendar_date(at: datetime | date, tz: tzinfo | None) -> date:
    if isinstance(at, datetime):
        if at.tzinfo is not None:
            at = at.astimezone(tz or UTC)
        return at.date()
    return at


def resolve_tokens(pattern: str, at: datetime | date, tz: tzinfo | None = None) -> str:
    """
    Expand date tokens in ``pattern`` for the calendar date of ``at``.

    Aware datetimes are converted to ``tz`` (UTC when omitted) before the
    date is taken; naive datetimes and plain dates are used as given.

    >>> resolve_tokens("/files/{yyyy}/{mm}/{dd}", date(2026, 2, 23))
    '/files/2026/02/23'
    """
    day = _calendar_date(at, tz)
    values = {
        "yyyy": f"{day.year:04d}",
        "yy": f"{day.year % 100:02d}",
        "mm": f"{day.month:02d}",
        "dd": f"{day.day:02d}",
    }
    return _TOKEN.sub(lambda m: values[m.group(1).lower()], pattern)


def contains_tokens(pattern: str) -> bool:
    """Whether ``pattern`` needs per-run resolution."""
    return _TOKEN.search(pattern) is not None


def find_invalid_tokens(pattern: str) -> list[str]:
    """Return ``{...}`` placeholders that are not recognised date tokens."""
    return [m.group(0) for m in _PLACEHOLDER.finditer(pattern) if not _TOKEN.fullmatch(m.group(0))]
