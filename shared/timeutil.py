"""Datetime helpers.

All timestamps are stored as naive UTC datetimes.
"""

from datetime import date, datetime, time, timezone


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso(ts):
    """Parse an ISO 8601 timestamp string.

    :param ts: Timestamp string.
    :returns: ``datetime`` on success, otherwise ``None``.
    """
    if not isinstance(ts, str):
        return None
    try:
        return datetime.fromisoformat(ts.replace('Z', '+00:00'))
    except ValueError:
        return None


def to_naive(dt):
    """Return a naive UTC datetime for easier comparisons.

    Converts aware datetimes to UTC and drops tzinfo. Leaves naive
    datetimes unchanged. Returns ``None`` when input is ``None``.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_naive(ts):
    return to_naive(parse_iso(ts))


def parse_date(value):
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def parse_time(value):
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def iso(dt):
    return dt.isoformat() if dt is not None else None
