from __future__ import annotations

import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into naive UTC. Blank -> None, garbage -> ValueError."""
    if raw is None:
        return None
    raw = str(raw).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_unix(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple())


def isoformat_or_none(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def parse_int(raw, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        return default
    if lo is not None and n < lo:
        n = lo
    if hi is not None and n > hi:
        n = hi
    return n
