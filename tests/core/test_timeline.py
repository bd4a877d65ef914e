from datetime import datetime, timedelta, timezone

from loopalgo.core.timeline import (
    AbsoluteScheduleValue,
    closest_prior,
    date_ceiled,
    date_floored,
    date_range,
    filter_date_range,
    simulation_date_range,
    trimmed,
    value_at,
)


def _t(hour, minute=0):
    return datetime(2024, 1, 3, hour, minute, tzinfo=timezone.utc)


SCHEDULE = [
    AbsoluteScheduleValue(_t(0), _t(6), 1.0),
    AbsoluteScheduleValue(_t(6), _t(12), 1.5),
    AbsoluteScheduleValue(_t(12), _t(18), 0.8),
]


def test_closest_prior_returns_last_started_item():
    assert closest_prior(SCHEDULE, _t(7)).value == 1.5
    assert closest_prior(SCHEDULE, _t(6)).value == 1.5
    assert closest_prior(SCHEDULE, _t(20)).value == 0.8


def test_closest_prior_before_timeline_is_none():
    assert closest_prior(SCHEDULE, _t(0) - timedelta(minutes=1)) is None


def test_value_at_requires_coverage():
    assert value_at(SCHEDULE, _t(13)) == 0.8
    assert value_at(SCHEDULE, _t(18, 5)) is None


def test_filter_date_range_is_inclusive_and_unclipped():
    items = filter_date_range(SCHEDULE, _t(6), _t(11))
    # The first segment ends exactly at 06:00 and still overlaps
    assert [item.value for item in items] == [1.0, 1.5]
    assert items[0].start_date == _t(0)


def test_trimmed_clips_to_range():
    items = trimmed(SCHEDULE, _t(3), _t(13))
    assert [(item.start_date, item.end_date) for item in items] == [
        (_t(3), _t(6)),
        (_t(6), _t(12)),
        (_t(12), _t(13)),
    ]


def test_date_floor_and_ceil_align_to_grid():
    date = _t(10, 7)
    assert date_floored(date, timedelta(minutes=5)) == _t(10, 5)
    assert date_ceiled(date, timedelta(minutes=5)) == _t(10, 10)
    assert date_ceiled(_t(10, 5), timedelta(minutes=5)) == _t(10, 5)


def test_simulation_date_range_from_samples():
    samples = [AbsoluteScheduleValue(_t(10, 2), _t(10, 2), 1.0)]
    start, end = simulation_date_range(samples, None, None, timedelta(hours=1), timedelta(minutes=10))
    assert start == _t(10, 0)
    assert end == _t(11, 15)


def test_simulation_date_range_without_samples():
    assert simulation_date_range([], None, None, timedelta(hours=1)) is None
    start, end = simulation_date_range([], _t(10, 1), _t(11, 1), timedelta(hours=1))
    assert (start, end) == (_t(10, 0), _t(11, 5))


def test_date_range_is_inclusive():
    dates = date_range(_t(10), _t(10, 15), timedelta(minutes=5))
    assert dates == [_t(10), _t(10, 5), _t(10, 10), _t(10, 15)]
