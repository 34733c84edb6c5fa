from __future__ import annotations

import secrets
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return utc_now().isoformat()


def iso_after(seconds: float, base: datetime | None = None) -> str:
    start = base or utc_now()
    return (start + timedelta(seconds=seconds)).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def new_token() -> str:
    return secrets.token_urlsafe(32)


def days_back(timezone_name: str, days: int) -> tuple[str, str]:
    """Return (date_from, date_to) covering the last `days` local days, today included."""
    today = datetime.now(tz=ZoneInfo(timezone_name)).date()
    start = today - timedelta(days=max(days, 1) - 1)
    return start.isoformat(), today.isoformat()


def daterange_inclusive(date_from: str, date_to: str) -> list[str]:
    d0 = date.fromisoformat(date_from)
    d1 = date.fromisoformat(date_to)
    if d1 < d0:
        d0, d1 = d1, d0
    out: list[str] = []
    cur = d0
    while cur <= d1:
        out.append(cur.isoformat())
        cur += timedelta(days=1)
    return out
