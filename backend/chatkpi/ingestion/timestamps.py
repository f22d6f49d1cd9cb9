"""Lenient timestamp parsing for uploaded chat records.

Every instant leaving this module is timezone-aware UTC. Naive inputs are
read as UTC. Numbers, and strings of more than eight digits, are epoch
milliseconds. Free-form text must name a full calendar date; dateutil is
never allowed to fill in a missing year, month or day.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dt_parser

# Longer than a compact YYYYMMDD date.
_EPOCH_MS_TEXT = re.compile(r"\d{9,}")

# Two defaults that differ in year, month and day. A string that parses
# to different instants under them left some date part to the default.
_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch_ms(value: float) -> datetime | None:
    if not math.isfinite(value):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_text(text: str) -> datetime | None:
    try:
        return dt_parser.isoparse(text)
    except (ValueError, OverflowError):
        pass
    try:
        first = dt_parser.parse(text, default=_DEFAULT_A)
        second = dt_parser.parse(text, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        return None
    if first != second:
        return None
    return first


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a loosely-typed timestamp value, returning None if unparseable.

    Accepts datetimes, epoch-millisecond numbers or digit strings, ISO-8601
    text and other date strings that spell out year, month and day. Bare
    words and small numbers such as "Tuesday" or "10" are rejected.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)

    text = str(value).strip()
    if not text:
        return None
    if _EPOCH_MS_TEXT.fullmatch(text):
        return _from_epoch_ms(int(text))
    parsed = _parse_text(text)
    return ensure_utc(parsed) if parsed is not None else None


def to_iso(value: datetime) -> str:
    """Render a fixed-width UTC ISO-8601 string (sorts chronologically as text)."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Inverse of to_iso for values read back from storage."""
    return ensure_utc(datetime.fromisoformat(value))
