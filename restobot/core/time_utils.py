from __future__ import annotations

from datetime import datetime, timedelta, timezone

from restobot.core.config import DISPLAY_UTC_OFFSET_MINUTES

DISPLAY_TZ = timezone(timedelta(minutes=DISPLAY_UTC_OFFSET_MINUTES))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive values; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_today(now: datetime):
    return as_utc(now).astimezone(DISPLAY_TZ).date()


def format_local(value: datetime | None, fmt: str = "%d %b %Y, %I:%M %p") -> str:
    if value is None:
        return "-"
    return as_utc(value).astimezone(DISPLAY_TZ).strftime(fmt)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()
