"""Period boundary arithmetic for hour/day/month buckets.

All instants are naive UTC datetimes. A period is described by its first
second and its last second, so an hour bucket covers ``HH:00:00`` through
``HH:59:59`` and a month bucket runs from the first day at ``00:00:00`` to
the last day at ``23:59:59``.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, NamedTuple

from token_usage.aggregation.models import PeriodType

ONE_SECOND = timedelta(seconds=1)


class PeriodWindow(NamedTuple):
    """Inclusive bounds of one bucket period."""

    start: datetime
    end: datetime

    @property
    def end_exclusive(self) -> datetime:
        """First instant after the period."""
        return self.end + ONE_SECOND


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def floor_period(instant: datetime, period_type: PeriodType) -> datetime:
    """Start of the period containing ``instant``."""
    if period_type == PeriodType.HOUR:
        return instant.replace(minute=0, second=0, microsecond=0)
    if period_type == PeriodType.DAY:
        return instant.replace(hour=0, minute=0, second=0, microsecond=0)
    if period_type == PeriodType.MONTH:
        return instant.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Invalid period type: {period_type}")


def next_period_start(start: datetime, period_type: PeriodType) -> datetime:
    """Start of the period following the one beginning at ``start``."""
    if period_type == PeriodType.HOUR:
        return start + timedelta(hours=1)
    if period_type == PeriodType.DAY:
        return start + timedelta(days=1)
    if period_type == PeriodType.MONTH:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    raise ValueError(f"Invalid period type: {period_type}")


def period_bounds(instant: datetime, period_type: PeriodType) -> PeriodWindow:
    """Bucket period containing ``instant``."""
    start = floor_period(instant, period_type)
    return PeriodWindow(start, next_period_start(start, period_type) - ONE_SECOND)


def period_windows(
    from_time: datetime,
    to_time: datetime,
    period_type: PeriodType,
) -> list[PeriodWindow]:
    """Every bucket period touched by the half-open span ``[from_time, to_time)``.

    Args:
        from_time: Inclusive span start.
        to_time: Exclusive span end.
        period_type: Bucket granularity.

    Returns:
        Periods in chronological order; empty when the span is empty.
    """
    if from_time >= to_time:
        return []

    windows: list[PeriodWindow] = []
    current = floor_period(from_time, period_type)
    while current < to_time:
        following = next_period_start(current, period_type)
        windows.append(PeriodWindow(current, following - ONE_SECOND))
        current = following
    return windows


def covering_range(
    start_date: datetime,
    end_date: datetime,
    period_type: PeriodType,
) -> PeriodWindow:
    """Widen the inclusive range ``[start_date, end_date]`` to whole periods."""
    return PeriodWindow(
        floor_period(start_date, period_type),
        period_bounds(end_date, period_type).end,
    )


class Span(NamedTuple):
    """Half-open time span ``[start, end)``."""

    start: datetime
    end: datetime

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def uncovered_spans(
    from_time: datetime,
    to_time: datetime,
    covered: Iterable[Span],
) -> list[Span]:
    """Parts of ``[from_time, to_time)`` outside every covered span.

    Args:
        from_time: Inclusive span start.
        to_time: Exclusive span end.
        covered: Already covered spans, in any order.

    Returns:
        Disjoint gaps in chronological order.
    """
    gaps: list[Span] = []
    cursor = from_time
    for span in sorted(covered):
        if span.end <= cursor:
            continue
        if span.start >= to_time:
            break
        if span.start > cursor:
            gaps.append(Span(cursor, span.start))
        cursor = max(cursor, span.end)
    if cursor < to_time:
        gaps.append(Span(cursor, to_time))
    return gaps
