from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter, ValidationError

_DATETIME = TypeAdapter(datetime)


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_datetime(value: Any) -> datetime | None:
    """Lenient parse of sibling-service timestamps; None when absent or unparseable."""
    if value in (None, ""):
        return None
    try:
        return ensure_utc(_DATETIME.validate_python(value))
    except ValidationError:
        return None


def normalize_id(value) -> str | None:
    """Entity ids arrive as ints or strings from sibling services; store them as strings."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None
