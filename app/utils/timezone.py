"""
Timezone utilities for the settlement API.

All timestamps are stored as naive UTC datetimes. The DataGolf feed reports
its `last_updated` field as a UTC string ("2024-04-12 18:05:00 UTC"), which
is normalized here before it reaches the database.
"""
from datetime import datetime, UTC
from typing import Optional

FEED_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S UTC",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
)


def utcnow() -> datetime:
    """Current time as naive UTC, matching the stored column type."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_feed_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a feed `last_updated` string into naive UTC.

    Returns None for empty or unrecognized values; a bad timestamp must not
    discard an otherwise usable standings payload.
    """
    if not value:
        return None

    for fmt in FEED_TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt)
        except ValueError:
            continue

    try:
        return to_naive_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        return None
