"""UTC helpers.

The store keeps **naive** UTC datetimes everywhere; these helpers are the only
place that crosses between aware and naive values.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ISO-8601 UTC with a trailing ``Z``."""
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat() + "Z"


def utc_iso() -> str:
    return to_iso(utcnow())


def parse_iso(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))
