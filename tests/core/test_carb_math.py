from datetime import datetime, timedelta, timezone

import pytest

from loopalgo.core.carbs.absorption import (
    CarbAbsorptionModel,
    CarbModelSettings,
    LinearAbsorption,
    ParabolicAbsorption,
    PiecewiseLinearAbsorption,
)
from loopalgo.core.carbs.math import (
    CarbEntry,
    carbs_on_board_timeline,
    dynamic_carbs_on_board,
    dynamic_glucose_effects,
    map_carbs,
)
from loopalgo.core.glucose.types import GlucoseEffectVelocity
from loopalgo.core.timeline import AbsoluteScheduleValue


def _t(hour, minute=0):
    return datetime(2024, 1, 3, hour, minute, tzinfo=timezone.utc)


CARB_RATIO = [AbsoluteScheduleValue(_t(0), _t(23, 59), 10.0)]
ISF = [AbsoluteScheduleValue(_t(0), _t(23, 59), 50.0)]
LINEAR = CarbModelSettings(LinearAbsorption(), initial_absorption_time_overrun=1.5)
ENTRY = CarbEntry(start_date=_t(12), grams=30.0)


@pytest.mark.parametrize("curve", [LinearAbsorption(), ParabolicAbsorption(), PiecewiseLinearAbsorption()])
def test_curve_inverse_is_consistent(curve):
    assert curve.percent_absorption_at_percent_time(0) == 0
    assert curve.percent_absorption_at_percent_time(1.2) == 1
    for percent_time in (0.1, 0.3, 0.8):
        absorbed = curve.percent_absorption_at_percent_time(percent_time)
        assert curve.percent_time_at_percent_absorption(absorbed) == pytest.approx(percent_time)


def test_piecewise_curve_is_continuous_at_breakpoints():
    curve = PiecewiseLinearAbsorption()
    for breakpoint in (curve.percent_end_of_rise, curve.percent_start_of_fall):
        below = curve.percent_absorption_at_percent_time(breakpoint - 1e-9)
        above = curve.percent_absorption_at_percent_time(breakpoint)
        assert below == pytest.approx(above, abs=1e-6)


def test_absorption_models_expose_settings():
    assert isinstance(CarbAbsorptionModel.LINEAR.curve, LinearAbsorption)
    assert CarbAbsorptionModel.NONLINEAR.settings.initial_absorption_time_overrun == 1.0
    assert CarbAbsorptionModel.ADAPTIVE_RATE_NONLINEAR.settings.adaptive_absorption_rate


def test_entry_carbs_on_board_follows_curve():
    entry = CarbEntry(start_date=_t(12), grams=30.0, absorption_time=timedelta(hours=2))
    curve = LinearAbsorption()
    delay = timedelta(minutes=10)

    assert entry.carbs_on_board(_t(11), timedelta(hours=3), delay, curve) == 0.0
    assert entry.carbs_on_board(_t(12, 5), timedelta(hours=3), delay, curve) == 30.0
    assert entry.carbs_on_board(_t(13, 10), timedelta(hours=3), delay, curve) == pytest.approx(15.0)


def test_unobserved_entry_uses_initial_absorption_time():
    statuses = map_carbs([ENTRY], [], CARB_RATIO, ISF, settings=LINEAR)

    status = statuses[0]
    assert status.carb_sensitivity_factor == 5.0
    assert status.observed_timeline is None
    assert status.absorption.observed == 0.0
    assert status.absorption_time == timedelta(hours=4, minutes=30)

    # Halfway through the 4.5 hour absorption, after the 10 minute delay
    cob = dynamic_carbs_on_board(statuses, _t(14, 25), curve=LinearAbsorption())
    assert cob == pytest.approx(15.0)


def test_observed_counteraction_is_credited_to_entry():
    velocity = GlucoseEffectVelocity(_t(12), _t(12, 30), 50.0 / 1800)

    status = map_carbs([ENTRY], [velocity], CARB_RATIO, ISF, settings=LINEAR)[0]
    absorption = status.absorption

    assert absorption.observed == pytest.approx(10.0)
    assert absorption.clamped == pytest.approx(10.0)
    assert absorption.remaining == pytest.approx(20.0)
    assert absorption.time_to_absorb_observed_carbs.total_seconds() == pytest.approx(5400, abs=1)
    assert absorption.estimated_time_remaining.total_seconds() == pytest.approx(10800, abs=1)
    assert absorption.is_active

    curve = LinearAbsorption()
    assert dynamic_carbs_on_board([status], _t(12, 30), curve=curve) == pytest.approx(20.0)
    assert dynamic_carbs_on_board([status], _t(14), curve=curve) == pytest.approx(10.0)


def test_negative_counteraction_is_not_credited():
    velocity = GlucoseEffectVelocity(_t(12), _t(12, 30), -50.0 / 1800)

    status = map_carbs([ENTRY], [velocity], CARB_RATIO, ISF, settings=LINEAR)[0]

    assert status.absorption.observed == 0.0
    # The minimum absorption rate still applies
    assert status.absorption.clamped == pytest.approx(30.0 * 20 / 270)


def test_map_carbs_requires_schedule_coverage():
    late_ratio = [AbsoluteScheduleValue(_t(13), _t(23), 10.0)]
    with pytest.raises(ValueError):
        map_carbs([ENTRY], [], late_ratio, ISF)
    assert map_carbs([ENTRY], [], late_ratio, ISF, strict=False) == []


def test_glucose_effects_reach_full_carb_effect():
    statuses = map_carbs([ENTRY], [], CARB_RATIO, ISF, settings=LINEAR)

    effects = dynamic_glucose_effects(statuses, curve=LinearAbsorption())

    assert effects[0].start_date == _t(12)
    assert effects[0].quantity == 0.0
    assert effects[-1].start_date == _t(16, 40)
    assert effects[-1].quantity == pytest.approx(150.0)


def test_carbs_on_board_timeline_drains():
    statuses = map_carbs([ENTRY], [], CARB_RATIO, ISF, settings=LINEAR)

    timeline = carbs_on_board_timeline(statuses, curve=LinearAbsorption())

    assert timeline[0].value == pytest.approx(30.0)
    assert timeline[-1].value == pytest.approx(0.0)
    assert dynamic_glucose_effects([], curve=LinearAbsorption()) == []
