"""Datetime helpers.

All timestamps handled by the pipeline are naive UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum


def utc_now() -> datetime:
    return to_utc_naive(pendulum.now("UTC"))


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return datetime(
        value.year, value.month, value.day,
        value.hour, value.minute, value.second, value.microsecond,
    )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 provider timestamp into naive UTC.

    Durations, bare dates and times are rejected with ValueError.
    """
    parsed = pendulum.parse(value)
    if not isinstance(parsed, datetime):
        raise ValueError(f"not a timestamp: {value!r}")
    return to_utc_naive(parsed)


def minute_bucket(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)
