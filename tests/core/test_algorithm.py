import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from loopalgo.core.algorithm import (
    AlgorithmEffectsOptions,
    AlgorithmInput,
    RecommendationType,
    generate_prediction,
    recommend_dose,
    run,
    timeline_interval_for_sensitivity,
)
from loopalgo.core.carbs.math import CarbEntry
from loopalgo.core.dosing import InRange
from loopalgo.core.errors import LoopAlgorithmError, MissingGlucoseError, TargetTimelineIncompleteError
from loopalgo.core.glucose.math import counteraction_effects
from loopalgo.core.glucose.types import GlucoseRange, GlucoseSample
from loopalgo.core.insulin.doses import InsulinDeliveryType, InsulinDose
from loopalgo.core.insulin.math import glucose_effects_at_dates
from loopalgo.core.insulin.models import InsulinType, PresetInsulinModelProvider
from loopalgo.core.timeline import AbsoluteScheduleValue, DateInterval, date_ceiled, date_floored


START = datetime(2024, 1, 3, 12, tzinfo=timezone.utc)
DAY_START = START.replace(hour=0)
DAY_END = DAY_START + timedelta(days=1)


def _flat_glucose(value, end=START, hours=2):
    count = int(hours * 12) + 1
    return [GlucoseSample(end - timedelta(minutes=5 * (count - 1 - i)), value) for i in range(count)]


def _schedule(value, start=DAY_START, end=DAY_END):
    return [AbsoluteScheduleValue(start, end, value)]


def _input(glucose=100.0, **overrides):
    params = dict(
        prediction_start=START,
        glucose_history=_flat_glucose(glucose),
        doses=[],
        carb_entries=[],
        basal=_schedule(1.0),
        sensitivity=_schedule(50.0),
        carb_ratio=_schedule(10.0),
        target=_schedule(GlucoseRange(100, 110)),
        max_bolus=5.0,
        max_basal_rate=3.0,
        suspend_threshold=70.0,
    )
    params.update(overrides)
    return AlgorithmInput(**params)


def _shifted(algorithm_input, offset):
    def shift(items):
        return [dataclasses.replace(item, start_date=item.start_date + offset, end_date=item.end_date + offset) for item in items]

    return dataclasses.replace(
        algorithm_input,
        prediction_start=algorithm_input.prediction_start + offset,
        glucose_history=[
            dataclasses.replace(sample, start_date=sample.start_date + offset) for sample in algorithm_input.glucose_history
        ],
        doses=shift(algorithm_input.doses),
        basal=shift(algorithm_input.basal),
        sensitivity=shift(algorithm_input.sensitivity),
        carb_ratio=shift(algorithm_input.carb_ratio),
        target=shift(algorithm_input.target),
    )


def test_flat_glucose_in_range_keeps_neutral_basal():
    output = run(_input(100.0))

    assert output.succeeded
    assert isinstance(output.correction, InRange)
    automatic = output.recommendation.automatic
    assert automatic.bolus_units == 0
    assert automatic.basal_adjustment.units_per_hour == 1.0
    assert automatic.basal_adjustment.duration == timedelta(minutes=30)
    assert output.predicted_glucose[-1].start_date == START + timedelta(hours=6, minutes=10)
    assert all(value.quantity == pytest.approx(100.0) for value in output.predicted_glucose)
    assert output.active_insulin == 0.0
    assert output.active_carbs == 0.0


def test_flat_high_glucose_recommends_partial_bolus():
    output = run(_input(200.0))

    automatic = output.recommendation.automatic
    # (200 - 105) / 50 = 1.9U needed, 40% applied
    assert automatic.bolus_units == pytest.approx(0.76)
    assert automatic.basal_adjustment.units_per_hour == 1.0


def test_flat_high_glucose_temp_basal_and_manual():
    temp_basal = run(_input(200.0, recommendation_type=RecommendationType.TEMP_BASAL)).recommendation
    assert temp_basal.manual is None
    assert temp_basal.automatic.bolus_units is None
    assert temp_basal.automatic.basal_adjustment.units_per_hour == 3.0

    manual = run(_input(200.0, recommendation_type=RecommendationType.MANUAL_BOLUS)).recommendation
    assert manual.automatic is None
    assert manual.manual.amount == pytest.approx(1.9)
    assert manual.manual.notice is None


def test_application_factor_override():
    output = run(_input(200.0, automatic_bolus_application_factor=1.0))
    assert output.recommendation.automatic.bolus_units == pytest.approx(1.9)


def test_recommendation_is_independent_of_date():
    algorithm_input = _input(200.0)
    shifted = _shifted(algorithm_input, timedelta(days=40, hours=3))

    original = run(algorithm_input).recommendation.automatic
    moved = run(shifted).recommendation.automatic

    assert moved.bolus_units == pytest.approx(original.bolus_units)
    assert moved.basal_adjustment.units_per_hour == pytest.approx(original.basal_adjustment.units_per_hour)


def test_missing_glucose():
    output = run(_input(glucose_history=[]))

    assert not output.succeeded
    assert output.error.code == "missingGlucose"
    assert output.predicted_glucose == []
    with pytest.raises(MissingGlucoseError):
        recommend_dose(_input(glucose_history=[]))


def test_glucose_too_old():
    output = run(_input(glucose_history=_flat_glucose(100.0, end=START - timedelta(minutes=15))))
    assert output.error.code == "glucoseTooOld"


def test_future_basal_not_allowed_for_automated_dosing():
    future = InsulinDose(InsulinDeliveryType.BASAL, START + timedelta(minutes=10), START + timedelta(minutes=40), 0.5)

    output = run(_input(doses=[future]))
    assert output.error.code == "futureBasalNotAllowed"

    manual = run(_input(doses=[future], recommendation_type=RecommendationType.MANUAL_BOLUS))
    assert manual.error is None


def test_running_temp_basal_is_cut_at_prediction_start():
    running = InsulinDose(InsulinDeliveryType.BASAL, START - timedelta(minutes=10), START + timedelta(minutes=20), 1.5)

    output = run(_input(doses=[running]))

    assert output.error is None
    assert output.doses_relative_to_basal


def test_sensitivity_must_start_before_history():
    output = run(_input(sensitivity=_schedule(50.0, start=START - timedelta(hours=1))))
    assert output.error.code == "sensitivityTimelineStartsTooLate"


def test_sensitivity_must_cover_recommendation_effect():
    output = run(_input(sensitivity=_schedule(50.0, end=START + timedelta(hours=6))))
    assert output.error.code == "sensitivityTimelineEndsTooEarly"


def test_sensitivity_exact_coverage_is_accepted():
    sensitivity = _schedule(50.0, start=START - timedelta(hours=2), end=START + timedelta(hours=6, minutes=10))
    output = run(_input(sensitivity=sensitivity))
    assert output.error is None


def test_basal_must_cover_prediction_start():
    output = run(_input(basal=_schedule(1.0, start=START + timedelta(hours=1))))
    assert output.error.code == "basalTimelineIncomplete"


def test_missing_suspend_threshold():
    output = run(_input(suspend_threshold=None, target=[]))
    assert output.error.code == "missingSuspendThreshold"


def test_bolus_produces_insulin_effect_and_iob():
    bolus = InsulinDose(InsulinDeliveryType.BOLUS, START - timedelta(hours=1), START - timedelta(hours=1), 2.0)

    output = run(_input(150.0, doses=[bolus]))

    assert 0.0 < output.active_insulin < 2.0
    assert output.effects.insulin[-1].quantity < output.effects.insulin[0].quantity
    assert output.predicted_glucose[-1].quantity < 150.0


def test_effect_options_select_components():
    bolus = InsulinDose(InsulinDeliveryType.BOLUS, START - timedelta(hours=1), START - timedelta(hours=1), 2.0)
    algorithm_input = _input(150.0, doses=[bolus])

    without_insulin = run(algorithm_input, effect_options=AlgorithmEffectsOptions.CARBS)

    assert without_insulin.predicted_glucose[-1].quantity == pytest.approx(150.0)


def test_generate_prediction_without_glucose_still_reports_effects():
    bolus = InsulinDose(InsulinDeliveryType.BOLUS, START - timedelta(hours=1), START - timedelta(hours=1), 2.0)

    prediction = generate_prediction(
        start=START,
        glucose_history=[],
        doses=[bolus],
        carb_entries=[],
        basal=_schedule(1.0),
        sensitivity=_schedule(50.0),
        carb_ratio=_schedule(10.0),
    )

    assert prediction.glucose == []
    assert prediction.effects.insulin
    assert prediction.active_insulin > 0


def _rising(end=START):
    return [GlucoseSample(end - timedelta(minutes=minutes), value) for minutes, value in ((19, 100), (14, 120), (9, 140), (4, 160))]


def test_counteraction_requires_dose_history():
    output = run(_input(glucose_history=_rising()))

    assert output.effects.insulin_counteraction == []
    assert output.effects.retrospective_glucose_discrepancies == []
    assert output.effects.retrospective_correction == []
    assert output.effects.total_glucose_correction_effect is None

    bolus = InsulinDose(InsulinDeliveryType.BOLUS, START - timedelta(hours=3), START - timedelta(hours=3), 1.0)
    with_doses = run(_input(glucose_history=_rising(), doses=[bolus]))

    assert len(with_doses.effects.insulin_counteraction) == 3
    assert with_doses.effects.retrospective_correction


@pytest.mark.parametrize("mid_absorption", [False, True])
def test_counteraction_uses_forecast_sensitivity_mode(mid_absorption):
    bolus = InsulinDose(InsulinDeliveryType.BOLUS, START - timedelta(hours=1), START - timedelta(hours=1), 2.0)
    history = _flat_glucose(150.0)
    sensitivity = [
        AbsoluteScheduleValue(DAY_START, START - timedelta(minutes=30), 50.0),
        AbsoluteScheduleValue(START - timedelta(minutes=30), DAY_END, 100.0),
    ]

    prediction = generate_prediction(
        start=START,
        glucose_history=history,
        doses=[bolus],
        carb_entries=[],
        basal=_schedule(1.0),
        sensitivity=sensitivity,
        carb_ratio=_schedule(10.0),
        use_mid_absorption_isf=mid_absorption,
    )

    if mid_absorption:
        baseline = glucose_effects_at_dates(
            prediction.doses_relative_to_basal, sensitivity, [sample.start_date for sample in history]
        )
    else:
        baseline = prediction.effects.insulin
    assert prediction.effects.insulin_counteraction == counteraction_effects(history, baseline)


def test_target_must_cover_prediction_start():
    late_target = _schedule(GlucoseRange(100, 110), start=START + timedelta(minutes=30))

    output = run(_input(200.0, target=late_target))

    assert output.error.code == "targetTimelineIncomplete"
    assert output.predicted_glucose
    with pytest.raises(TargetTimelineIncompleteError):
        recommend_dose(_input(200.0, target=late_target))


def test_recommendation_result_holds_error_or_recommendation():
    assert run(_input(200.0)).recommendation_result.automatic is not None
    assert isinstance(run(_input(glucose_history=[])).recommendation_result, MissingGlucoseError)

    output = run(_input(200.0))
    output.recommendation = None
    with pytest.raises(LoopAlgorithmError):
        output.recommendation_result


# Rising glucose, no insulin, no carbs, settings spanning ten hours back
NOW = datetime(2020, 3, 11, 19, 13, 14, tzinfo=timezone.utc)


def _forecast_end(now):
    return date_ceiled(now + timedelta(hours=6, minutes=10), timedelta(minutes=5))


def _rising_input(now=NOW, **overrides):
    history_start = now - timedelta(hours=10)
    params = dict(
        prediction_start=now,
        glucose_history=_rising(now),
        doses=[],
        carb_entries=[],
        basal=[AbsoluteScheduleValue(history_start, now, 1.0)],
        sensitivity=[AbsoluteScheduleValue(history_start, _forecast_end(now), 55.0)],
        carb_ratio=[AbsoluteScheduleValue(history_start, now, 10.0)],
        target=[AbsoluteScheduleValue(history_start, now, GlucoseRange(100, 110))],
        suspend_threshold=65.0,
        max_bolus=6.0,
        max_basal_rate=8.0,
        recommendation_insulin_type=InsulinType.NOVOLOG,
        recommendation_type=RecommendationType.TEMP_BASAL,
    )
    params.update(overrides)
    return AlgorithmInput(**params)


def _bolus_and_meal(now=NOW):
    # 8U on board against 100g of carbs needing 10U
    return dict(
        doses=[InsulinDose(InsulinDeliveryType.BOLUS, now - timedelta(minutes=5), now - timedelta(minutes=4), 8.0)],
        carb_entries=[CarbEntry(now - timedelta(minutes=5), 100.0)],
    )


def test_sensitivity_change_mid_absorption():
    now = datetime(2024, 1, 3, tzinfo=timezone.utc)
    sensitivity = [
        AbsoluteScheduleValue(now - timedelta(hours=24), now + timedelta(hours=1.5), 50.0),
        AbsoluteScheduleValue(now + timedelta(hours=1.5), now + timedelta(hours=24), 100.0),
    ]
    bolus = InsulinDose(InsulinDeliveryType.BOLUS, now, now + timedelta(seconds=20), 1.0)
    algorithm_input = _rising_input(now, doses=[bolus], sensitivity=sensitivity)

    output = run(algorithm_input)
    assert output.effects.insulin[-1].quantity == pytest.approx(-50, abs=0.5)

    output = run(dataclasses.replace(algorithm_input, use_mid_absorption_isf=True))
    assert output.effects.insulin[-1].quantity == pytest.approx(-83, abs=0.5)


def test_automatic_bolus_clamped_by_active_insulin():
    algorithm_input = _rising_input(recommendation_type=RecommendationType.AUTOMATIC_BOLUS, max_bolus=8.0, **_bolus_and_meal())

    output = run(algorithm_input)
    assert output.active_insulin == pytest.approx(8.0)
    assert output.recommendation.automatic.bolus_units == pytest.approx(1.84, abs=0.01)

    without_rc = run(
        algorithm_input,
        effect_options=AlgorithmEffectsOptions.CARBS | AlgorithmEffectsOptions.INSULIN | AlgorithmEffectsOptions.MOMENTUM,
    )
    assert without_rc.recommendation.automatic.bolus_units == pytest.approx(1.66, abs=0.01)

    # Twice max bolus is already on board
    output = run(dataclasses.replace(algorithm_input, max_bolus=4.0))
    assert output.active_insulin == pytest.approx(8.0)
    assert output.recommendation.automatic.bolus_units == pytest.approx(0, abs=0.01)


def test_temp_basal_clamped_by_active_insulin():
    algorithm_input = _rising_input(max_bolus=8.0, **_bolus_and_meal())

    output = run(algorithm_input)
    assert output.active_insulin == pytest.approx(8.0)
    assert output.recommendation.automatic.basal_adjustment.units_per_hour == pytest.approx(8.0, abs=0.01)

    # Only the scheduled rate once twice max bolus is on board
    output = run(dataclasses.replace(algorithm_input, max_bolus=4.0))
    assert output.active_insulin == pytest.approx(8.0)
    assert output.recommendation.automatic.basal_adjustment.units_per_hour == pytest.approx(1.0, abs=0.01)


def test_manual_bolus_with_mid_absorption_sensitivity():
    change = NOW + timedelta(hours=1)
    sensitivity = [
        AbsoluteScheduleValue(NOW - timedelta(hours=48), change, 50.0),
        AbsoluteScheduleValue(change, NOW + timedelta(hours=48), 100.0),
    ]
    algorithm_input = _rising_input(recommendation_type=RecommendationType.MANUAL_BOLUS, sensitivity=sensitivity, max_bolus=8.0)

    fixed = run(algorithm_input).recommendation.manual.amount
    mid_absorption = run(dataclasses.replace(algorithm_input, use_mid_absorption_isf=True)).recommendation.manual.amount

    assert fixed == pytest.approx(2.50, abs=0.02)
    # Insulin still active after the change is twice as effective
    model = PresetInsulinModelProvider().model_for(InsulinType.NOVOLOG)
    remaining = model.percent_effect_remaining(change - NOW)
    assert mid_absorption == pytest.approx(fixed / (1 + remaining), rel=0.01)


def _running_basal(now=NOW):
    # 8 U/hr
    return InsulinDose(InsulinDeliveryType.BASAL, now - timedelta(minutes=5), now + timedelta(minutes=30), 4.0)


def test_incomplete_sensitivity_timeline():
    algorithm_input = _rising_input(
        recommendation_type=RecommendationType.MANUAL_BOLUS,
        doses=[_running_basal()],
        glucose_history=[GlucoseSample(NOW - timedelta(minutes=1), 105.0)],
    )
    delta = timedelta(minutes=5)

    starts_late = [AbsoluteScheduleValue(NOW, _forecast_end(NOW), 50.0)]
    output = run(dataclasses.replace(algorithm_input, sensitivity=starts_late))
    assert output.error.code == "sensitivityTimelineStartsTooLate"

    # Covers the basal start but not the end of its effect
    ends_early = [AbsoluteScheduleValue(date_floored(NOW - timedelta(minutes=5), delta), _forecast_end(NOW), 50.0)]
    output = run(dataclasses.replace(algorithm_input, sensitivity=ends_early))
    assert output.error.code == "sensitivityTimelineEndsTooEarly"

    model = PresetInsulinModelProvider().model_for(InsulinType.NOVOLOG)
    needed = timeline_interval_for_sensitivity(
        algorithm_input.doses,
        algorithm_input.glucose_history[0].start_date,
        DateInterval(NOW, NOW + model.effect_duration),
    )
    output = run(dataclasses.replace(algorithm_input, sensitivity=[AbsoluteScheduleValue(needed.start, needed.end, 50.0)]))
    assert output.succeeded
    assert output.recommendation.manual is not None


def test_incomplete_sensitivity_timeline_with_mid_absorption():
    sensitivity = [AbsoluteScheduleValue(date_floored(NOW - timedelta(minutes=5), timedelta(minutes=5)), _forecast_end(NOW), 50.0)]
    algorithm_input = _rising_input(
        recommendation_type=RecommendationType.MANUAL_BOLUS,
        doses=[_running_basal()],
        glucose_history=[GlucoseSample(NOW - timedelta(minutes=1), 105.0)],
        sensitivity=sensitivity,
        use_mid_absorption_isf=True,
    )

    output = run(algorithm_input)

    assert output.error.code == "sensitivityTimelineEndsTooEarly"
