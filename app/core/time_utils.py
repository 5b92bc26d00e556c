# app/core/time_utils.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    All timestamps are stored naive-UTC so SQLite and Postgres round-trip
    them identically.
    """
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalize an aware datetime to naive UTC; naive values are assumed UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def truncate_to_second(value: datetime) -> datetime:
    return value.replace(microsecond=0)
