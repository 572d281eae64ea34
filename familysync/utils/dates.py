"""
Timestamp helpers.

All timestamps in the sync file are ISO-8601 strings in UTC with
millisecond precision and a trailing ``Z`` (``2026-01-31T09:15:00.000Z``).
Comparison always goes through ``parse_iso`` so that equivalent spellings
(``Z`` vs ``+00:00``, with or without fractional seconds) compare equal.
"""

from datetime import datetime, timezone
from typing import Optional


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format an aware (or naive-UTC) datetime as a sync-file timestamp."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Current UTC time as a sync-file timestamp."""
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: object) -> Optional[datetime]:
    """
    Parse a sync-file timestamp.

    Returns None for anything that is not a parseable ISO string.
    Naive values are assumed to be UTC.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
