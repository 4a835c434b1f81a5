"""
Date helpers for provider timestamps.

NVD emits naive ISO strings, MITRE and OTX emit ISO with offsets, RSS feeds
emit RFC 822 dates. Everything is normalised to timezone-aware UTC.
"""

import re
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def safe_parse_date(raw: Optional[Union[str, datetime, date]]) -> Optional[datetime]:
    """
    Parse ISO 8601, RFC 822 or ``YYYY``/``YYYY-MM`` into an aware datetime.

    Returns None when the input cannot be parsed.
    """
    if raw is None:
        return None

    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)

    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)

    if not isinstance(raw, str):
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
        if dt is not None:
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        pass

    m = re.match(r"^(\d{4})(?:-(\d{1,2}))?$", value)
    if m:
        try:
            return datetime(int(m.group(1)), int(m.group(2) or 1), 1, tzinfo=timezone.utc)
        except ValueError:
            return None

    return None


def iso_or_none(raw: Optional[Union[str, datetime, date]]) -> Optional[str]:
    parsed = safe_parse_date(raw)
    return parsed.isoformat() if parsed else None


def sort_key(raw: Optional[str]) -> datetime:
    """Sort key placing unparseable dates first (oldest)."""
    return safe_parse_date(raw) or _EPOCH


def get_current_utc() -> datetime:
    return datetime.now(timezone.utc)


def nvd_timestamp(dt: datetime) -> str:
    """NVD API 2.0 date parameter format (``2024-01-31T00:00:00.000``)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000")


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    now = now or get_current_utc()
    return now - timedelta(days=days)
