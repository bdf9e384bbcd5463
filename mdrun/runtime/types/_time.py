"""Time utilities for the types package.

Provides datetime serialization helpers used by all serdes functions.
Timestamps are always UTC and always carry a trailing ``Z``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_SANITIZE_PATTERN = re.compile(r"[:TZ.\-]")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _datetime_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO format string (millisecond precision) with Z suffix."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _iso_to_datetime(iso_str: Optional[str]) -> Optional[datetime]:
    """Parse ISO format string to an aware UTC datetime.

    Accepts both ``2026-01-02T03:04:05Z`` (legacy, second precision) and
    ``2026-01-02T03:04:05.123Z``. Returns None for unparseable input.
    """
    if not iso_str:
        return None
    # Remove Z suffix if present for parsing
    if iso_str.endswith("Z"):
        iso_str = iso_str[:-1]
    try:
        dt = datetime.fromisoformat(iso_str)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def sanitize_timestamp(iso_str: str) -> str:
    """Strip separators from an ISO timestamp so it can be used in a filename.

    Example:
        >>> sanitize_timestamp("2026-10-18T09:30:00.250Z")
        '20261018093000250'
    """
    return _SANITIZE_PATTERN.sub("", iso_str)
