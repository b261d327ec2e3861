"""
Timestamp helpers.

All timestamps in the store are naive UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """
    Parse the timestamp spellings used by the notes feeds.

    Accepts ISO-8601 (``2024-01-15T10:00:00Z``) and the API's
    ``2024-01-15 10:00:00 UTC`` form. Empty values yield None.
    """
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    if text.endswith(" UTC"):
        text = text[:-4].strip()
    if text.endswith("Z"):
        text = text[:-1]
    text = text.replace(" ", "T", 1)
    return to_naive_utc(datetime.fromisoformat(text))


def format_api_timestamp(value: datetime) -> str:
    """Render a timestamp for the incremental feed's ``from`` parameter"""
    return to_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
