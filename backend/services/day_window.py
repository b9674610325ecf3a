"""UTC calendar-day windowing for quest verification.

A block time ``t`` belongs to day ``D`` when ``D 00:00:00 <= t <= D 23:59:59``
in UTC. Bucket keys are ``datetime.date`` values; nothing here looks at the
host timezone.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from models.ledger import ClassifiedMatch, DayAggregate, LedgerTransaction, SignatureInfo

SECONDS_PER_DAY = 86_400

Classifier = Callable[[LedgerTransaction], list[ClassifiedMatch]]


def utc_day_for(block_time: int) -> date:
    return datetime.fromtimestamp(int(block_time), tz=timezone.utc).date()


def utc_day_bounds(day: date) -> tuple[int, int]:
    """Inclusive ``(first_second, last_second)`` of ``day`` as unix timestamps."""
    start = int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())
    return start, start + SECONDS_PER_DAY - 1


def signatures_for_day(signatures: Iterable[SignatureInfo], day: date) -> list[SignatureInfo]:
    """Signatures inside ``day`` from a newest-first listing.

    Stops at the first entry older than the day start. Entries without a
    block time are kept; the transaction fetch resolves their day.
    """
    start, end = utc_day_bounds(day)
    selected = []
    for info in signatures:
        if info.block_time is None:
            selected.append(info)
            continue
        if info.block_time < start:
            break
        if info.block_time <= end:
            selected.append(info)
    return selected


def bucketize(
    transactions: Iterable[LedgerTransaction],
    classifier: Classifier,
    only_day: Optional[date] = None,
) -> dict[date, DayAggregate]:
    """Fold classified matches into per-day aggregates.

    Days without a single match get no entry. With ``only_day`` every other
    day is ignored (check-today mode).
    """
    buckets: dict[date, DayAggregate] = {}
    for tx in transactions:
        day = utc_day_for(tx.block_time)
        if only_day is not None and day != only_day:
            continue
        matches = classifier(tx)
        if not matches:
            continue
        aggregate = buckets.get(day)
        if aggregate is None:
            aggregate = buckets[day] = DayAggregate(day=day)
        for match in matches:
            aggregate.add(match)
    return buckets


def calculate_streak(completed: Iterable[date], today: date) -> int:
    """Consecutive completed days ending today, or yesterday if today is still open."""
    days = set(completed)
    if today in days:
        cursor = today
    elif today - timedelta(days=1) in days:
        cursor = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def seconds_until_utc_midnight(now: Optional[datetime] = None) -> int:
    """Seconds left until the next UTC day starts (quest reset)."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    tomorrow = (now + timedelta(days=1)).date()
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)
    return max(0, int((midnight - now).total_seconds()))
