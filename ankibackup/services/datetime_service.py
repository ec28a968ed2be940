"""Datetime helpers: UTC clock, snapshot id timestamps, lax parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum

# Snapshot directory/id format: 2026-10-18T09-00-00Z (colons are not path-safe everywhere)
SNAPSHOT_ID_FORMAT = "%Y-%m-%dT%H-%M-%SZ"


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts ISO 8601 variants (``T`` or space separator, with or without
    fractional seconds or offset) and date-only strings. Missing timezone
    defaults to ``default_tz``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    parsed = pendulum.parse(value.strip(), tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def as_utc(dt: datetime) -> datetime:
    """Return ``dt`` converted to UTC; naive values are assumed to already be UTC.

    SQLite drops tzinfo on round-trip, so values read back from the store are naive.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    return as_utc(dt).isoformat()


def format_snapshot_timestamp(dt: datetime) -> str:
    """Format a capture time as the second-resolution base of a snapshot id."""
    return as_utc(dt).strftime(SNAPSHOT_ID_FORMAT)
