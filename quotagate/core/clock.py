from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Use UTC for consistent period boundaries and expiry checks.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as the UTC values they were written as.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
