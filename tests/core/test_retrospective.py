from datetime import datetime, timedelta, timezone

import pytest

from loopalgo.core.glucose.types import GlucoseChange, GlucoseSample
from loopalgo.core.retrospective import IntegralRetrospectiveCorrection, StandardRetrospectiveCorrection

START = datetime(2015, 7, 13, 12, 2, 37, tzinfo=timezone.utc)
GROUPING = timedelta(minutes=30)
RECENCY = timedelta(minutes=15)


def _single_discrepancy(value=10.0):
    return [GlucoseChange(START - timedelta(minutes=30), START, value)]


@pytest.mark.parametrize("correction_cls", [StandardRetrospectiveCorrection, IntegralRetrospectiveCorrection])
def test_single_discrepancy_is_fully_applied(correction_cls):
    correction = correction_cls(effect_duration=timedelta(minutes=60))
    effect = correction.compute_effect(
        GlucoseSample(START, 100.0),
        _single_discrepancy(),
        recency_interval=RECENCY,
        grouping_interval=GROUPING,
    )

    assert effect[0].start_date == datetime(2015, 7, 13, 12, 0, tzinfo=timezone.utc)
    assert effect[-1].start_date == datetime(2015, 7, 13, 13, 0, tzinfo=timezone.utc)
    assert effect[-1].quantity == pytest.approx(110.0)
    assert correction.total_glucose_correction_effect == pytest.approx(10.0)


def test_stale_discrepancy_produces_no_effect():
    correction = StandardRetrospectiveCorrection()
    stale = [GlucoseChange(START - timedelta(minutes=60), START - timedelta(minutes=20), 10.0)]

    effect = correction.compute_effect(GlucoseSample(START, 100.0), stale, RECENCY, GROUPING)

    assert effect == []
    assert correction.total_glucose_correction_effect is None


def test_no_discrepancies_produces_no_effect():
    correction = IntegralRetrospectiveCorrection()
    assert correction.compute_effect(GlucoseSample(START, 100.0), [], RECENCY, GROUPING) == []
    assert correction.compute_effect(GlucoseSample(START, 100.0), None, RECENCY, GROUPING) == []


def test_integral_correction_grows_with_persistent_discrepancies():
    discrepancies = [
        GlucoseChange(START - timedelta(minutes=30 + 5 * offset), START - timedelta(minutes=5 * offset), 10.0)
        for offset in reversed(range(6))
    ]
    standard = StandardRetrospectiveCorrection()
    integral = IntegralRetrospectiveCorrection()

    standard_effect = standard.compute_effect(GlucoseSample(START, 100.0), discrepancies, RECENCY, GROUPING)
    integral_effect = integral.compute_effect(GlucoseSample(START, 100.0), discrepancies, RECENCY, GROUPING)

    assert integral.total_glucose_correction_effect > standard.total_glucose_correction_effect
    # Each persistent discrepancy extends the effect by two grid steps
    assert len(integral_effect) > len(standard_effect)
    assert integral_effect[-1].quantity > standard_effect[-1].quantity


def test_integral_correction_stops_at_sign_change():
    discrepancies = [
        GlucoseChange(START - timedelta(minutes=40), START - timedelta(minutes=10), -10.0),
        GlucoseChange(START - timedelta(minutes=35), START - timedelta(minutes=5), 10.0),
        GlucoseChange(START - timedelta(minutes=30), START, 10.0),
    ]
    integral = IntegralRetrospectiveCorrection()
    integral.compute_effect(GlucoseSample(START, 100.0), discrepancies, RECENCY, GROUPING)

    forget = integral.integral_forget
    expected = integral.proportional_gain * 10.0 + integral.integral_gain * (forget * 10.0 + 10.0)
    assert integral.total_glucose_correction_effect == pytest.approx(expected)


def test_integral_differential_term_applies_when_shrinking():
    discrepancies = [
        GlucoseChange(START - timedelta(minutes=35), START - timedelta(minutes=5), 20.0),
        GlucoseChange(START - timedelta(minutes=30), START, 10.0),
    ]
    integral = IntegralRetrospectiveCorrection()
    integral.compute_effect(GlucoseSample(START, 100.0), discrepancies, RECENCY, GROUPING)

    forget = integral.integral_forget
    expected = (
        integral.proportional_gain * 10.0
        + integral.integral_gain * (forget * 10.0 + 20.0)
        + integral.differential_gain * (10.0 - 20.0)
    )
    assert integral.total_glucose_correction_effect == pytest.approx(expected)
