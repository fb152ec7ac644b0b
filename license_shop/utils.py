"""Shared utility helpers for license-shop."""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

_DB_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: datetime) -> str:
    """Encode a datetime as fixed-width UTC text.

    Fixed width keeps lexical order equal to chronological order, so the
    stored values can be compared directly in SQL."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_DB_TS_FORMAT)


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse a stored timestamp to a timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # Stored values are naive UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def format_local(dt: datetime | str | None, tz_name: str, fmt: str) -> str:
    """Render a UTC datetime (or stored timestamp) in the display timezone."""
    if isinstance(dt, str):
        dt = parse_timestamp(dt)
    if dt is None:
        return "N/A"
    return dt.astimezone(ZoneInfo(tz_name)).strftime(fmt)


def is_valid_email(text: str) -> bool:
    """Standard shape check: something@something.tld, no whitespace."""
    return bool(_EMAIL_RE.match(text.strip()))


def escape(text: object) -> str:
    """HTML-escape arbitrary user-supplied text for rich-text messages."""
    return html.escape(str(text), quote=False)


def display_handle(username: str | None) -> str:
    return f"@{username}" if username else "N/A"
