"""Time helpers for the hour grid the Jira search API works on."""

import re
from datetime import datetime, timedelta, timezone

UTC = timezone.utc
HOUR = timedelta(hours=1)

# JQL only understands minute precision; the search index is effectively hourly.
JQL_DATETIME_FORMAT = "%Y-%m-%d %H:%M"

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def floor_hour(value: datetime) -> datetime:
    """Truncate to the start of the containing hour."""
    return ensure_utc(value).replace(minute=0, second=0, microsecond=0)


def ceil_hour(value: datetime) -> datetime:
    """Round up to the next hour boundary (identity on boundaries)."""
    floored = floor_hour(value)
    if floored == ensure_utc(value):
        return floored
    return floored + HOUR


def format_jql_datetime(value: datetime) -> str:
    """Format an instant the way JQL date comparisons expect it."""
    return ensure_utc(value).strftime(JQL_DATETIME_FORMAT)


def parse_jira_datetime(value: str) -> datetime:
    """
    Parse the timestamp formats Jira emits.

    Handles ``2024-01-15T10:30:00.000+0000``, ISO-8601 with ``Z`` or
    ``+00:00`` offsets, and the JQL ``2024-01-15 10:30`` form.

    Raises:
        ValueError: If the string matches none of the formats
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return ensure_utc(datetime.strptime(value.strip(), JQL_DATETIME_FORMAT))
