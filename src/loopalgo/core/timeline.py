from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class AbsoluteScheduleValue(Generic[T]):
    """A constant schedule value over ``[start_date, end_date]``."""
    start_date: datetime
    end_date: datetime
    value: T

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date


@dataclass(frozen=True)
class DateInterval:
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, date: datetime) -> bool:
        return self.start <= date <= self.end


def closest_prior(timeline: Sequence, date: datetime):
    """
    Returns the last timeline item whose start is at or before ``date``.

    The item is returned even if ``date`` lies past its end; callers that need
    coverage must check ``end_date`` themselves.
    """
    result = None
    for item in timeline:
        if item.start_date > date:
            break
        result = item
    return result


def filter_date_range(
    timeline: Iterable,
    start: Optional[datetime],
    end: Optional[datetime],
) -> List:
    """Returns every item overlapping the closed interval ``[start, end]``, unclipped."""
    result = []
    for item in timeline:
        if start is not None and item.end_date < start:
            continue
        if end is not None and item.start_date > end:
            continue
        result.append(item)
    return result


def trimmed(
    timeline: Iterable[AbsoluteScheduleValue[T]],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[AbsoluteScheduleValue[T]]:
    """Returns the overlapping schedule values clipped to ``[start, end]``."""
    result: List[AbsoluteScheduleValue[T]] = []
    for item in filter_date_range(timeline, start, end):
        result.append(
            AbsoluteScheduleValue(
                start_date=max(start or item.start_date, item.start_date),
                end_date=min(end or item.end_date, item.end_date),
                value=item.value,
            )
        )
    return result


def value_at(timeline: Sequence[AbsoluteScheduleValue[T]], date: datetime) -> Optional[T]:
    """Value of the segment covering ``date``, or None when not covered."""
    item = closest_prior(timeline, date)
    if item is None or item.end_date < date:
        return None
    return item.value


def ensure_utc(date: datetime) -> datetime:
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date


def date_floored(date: datetime, interval: timedelta) -> datetime:
    """Floors ``date`` to a multiple of ``interval`` since the UNIX epoch."""
    step = interval.total_seconds()
    if step <= 0:
        return date
    seconds = math.floor(date.timestamp() / step) * step
    return datetime.fromtimestamp(seconds, tz=date.tzinfo or timezone.utc)


def date_ceiled(date: datetime, interval: timedelta) -> datetime:
    """Ceils ``date`` to a multiple of ``interval`` since the UNIX epoch."""
    step = interval.total_seconds()
    if step <= 0:
        return date
    seconds = math.ceil(date.timestamp() / step) * step
    return datetime.fromtimestamp(seconds, tz=date.tzinfo or timezone.utc)


def simulation_date_range(
    samples: Sequence,
    start: Optional[datetime],
    end: Optional[datetime],
    duration: timedelta,
    delay: timedelta = timedelta(0),
    delta: timedelta = timedelta(minutes=5),
) -> Optional[Tuple[datetime, datetime]]:
    """
    Computes the grid-aligned date range covering the effect of ``samples``.

    Args:
        samples: Items exposing ``start_date`` and ``end_date``.
        start: Explicit range start, or None to derive from the samples.
        end: Explicit range end, or None to derive from the samples.
        duration: Effect duration added past the last sample end.
        delay: Effect delay added past the last sample end.
        delta: Grid interval.

    Returns:
        ``(start, end)`` aligned to ``delta``, or None if there are no samples
        and the range cannot be derived.
    """
    if start is not None and end is not None:
        return date_floored(start, delta), date_ceiled(end, delta)

    if not samples:
        return None

    min_date = min(sample.start_date for sample in samples)
    max_date = max(sample.end_date for sample in samples)

    return (
        date_floored(start or min_date, delta),
        date_ceiled(end or (max_date + duration + delay), delta),
    )


def date_range(start: datetime, end: datetime, delta: timedelta) -> List[datetime]:
    """Grid dates from ``start`` through ``end`` inclusive."""
    dates = []
    date = start
    while date <= end:
        dates.append(date)
        date += delta
    return dates
