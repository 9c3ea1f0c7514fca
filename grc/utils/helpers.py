"""Shared utility functions.

as_utc:      normalise naive (SQLite) datetimes to UTC-aware
utcnow:      timezone-aware now
parse_date:  ISO / DD.MM.YYYY string → date (None on bad input)
int_arg:     bounded integer query-string parameter
"""
from datetime import date, datetime, timezone

from flask import request


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; treat them as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def int_arg(name, default, *, minimum=0, maximum=None):
    """Read an integer query parameter, falling back to *default* on bad input."""
    try:
        value = int(request.args.get(name, default))
    except (ValueError, TypeError):
        return default
    value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value
