"""UTC helpers shared by the verification pipeline.

Quest completions are keyed by UTC calendar day. ``utcnow()`` keeps the
naive-UTC convention used by the ORM timestamp columns.
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    """Current UTC calendar date."""
    return datetime.now(timezone.utc).date()
