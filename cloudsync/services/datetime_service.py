"""Datetime helpers: strict storage format, lax parsing of provider timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import pendulum

# Strict storage format: YYYY-MM-DD HH:MM:SS.ffffff+HHMM
STRICT_FORMAT = "%Y-%m-%d %H:%M:%S.%f%z"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_datetime(dt: datetime) -> str:
    """Format a datetime to the strict storage format (always UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(STRICT_FORMAT)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse a stored or provider-reported timestamp into an aware datetime.

    Accepts the strict storage format, RFC 3339 (Drive, Dropbox) and naive
    ISO strings, which are taken as UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    parsed = pendulum.parse(value.strip(), tz="UTC", strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz="UTC"  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def parse_optional(value: str | None) -> datetime | None:
    """Parse a nullable stored timestamp."""
    if not value:
        return None
    return parse_datetime(value)


def parse_http_date(value: str | None) -> datetime | None:
    """Parse an RFC 1123 date as sent in WebDAV ``getlastmodified``."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def filename_timestamp(dt: datetime) -> str:
    """ISO timestamp safe for use inside a file name (no ':' or '.')."""
    iso = dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return iso.replace(":", "-").replace(".", "-")
