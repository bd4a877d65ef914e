from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Union

from loopalgo.core.glucose.types import GlucoseRange, GlucoseSample, PredictedGlucoseValue
from loopalgo.core.insulin.models import InsulinModel
from loopalgo.core.timeline import AbsoluteScheduleValue, closest_prior, filter_date_range

logger = logging.getLogger("loopalgo.dosing")

GlucoseValue = Union[GlucoseSample, PredictedGlucoseValue]
Rounder = Callable[[float], float]

TEMP_BASAL_DURATION = timedelta(minutes=30)

# Before this fraction of the insulin effect duration the target is the suspend threshold
USE_MIN_TARGET_UNTIL_PERCENT = 0.5


def _glucose_dict(glucose: GlucoseValue) -> Dict[str, Any]:
    return {
        "startDate": glucose.start_date.isoformat(),
        "quantity": glucose.quantity,
        "quantityUnit": "mg/dL",
    }


class BolusRecommendationNoticeType(str, Enum):
    GLUCOSE_BELOW_SUSPEND_THRESHOLD = "glucoseBelowSuspendThreshold"
    CURRENT_GLUCOSE_BELOW_TARGET = "currentGlucoseBelowTarget"
    PREDICTED_GLUCOSE_BELOW_TARGET = "predictedGlucoseBelowTarget"
    PREDICTED_GLUCOSE_IN_RANGE = "predictedGlucoseInRange"
    ALL_GLUCOSE_BELOW_TARGET = "allGlucoseBelowTarget"


@dataclass(frozen=True)
class BolusRecommendationNotice:
    """Informational notice attached to a manual bolus recommendation."""
    type: BolusRecommendationNoticeType
    glucose: Optional[GlucoseValue] = None

    def to_dict(self) -> Union[str, Dict[str, Any]]:
        if self.glucose is None:
            return self.type.value
        key = "glucose" if self.type == BolusRecommendationNoticeType.CURRENT_GLUCOSE_BELOW_TARGET else "minGlucose"
        return {self.type.value: {key: _glucose_dict(self.glucose)}}


@dataclass(frozen=True)
class TempBasalRecommendation:
    units_per_hour: float
    duration: timedelta

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unitsPerHour": self.units_per_hour,
            "duration": self.duration.total_seconds(),
        }


@dataclass(frozen=True)
class ManualBolusRecommendation:
    amount: float
    notice: Optional[BolusRecommendationNotice] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"amount": self.amount}
        if self.notice is not None:
            result["notice"] = self.notice.to_dict()
        return result


@dataclass(frozen=True)
class AutomaticDoseRecommendation:
    basal_adjustment: Optional[TempBasalRecommendation] = None
    bolus_units: Optional[float] = None

    @property
    def has_dosing_change(self) -> bool:
        return self.basal_adjustment is not None or self.bolus_units is not None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.basal_adjustment is not None:
            result["basalAdjustment"] = self.basal_adjustment.to_dict()
        if self.bolus_units is not None:
            result["bolusUnits"] = self.bolus_units
        return result


@dataclass(frozen=True)
class DoseRecommendation:
    """Final recommendation; one branch is set depending on the requested type."""
    manual: Optional[ManualBolusRecommendation] = None
    automatic: Optional[AutomaticDoseRecommendation] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.manual is not None:
            result["manual"] = self.manual.to_dict()
        if self.automatic is not None:
            result["automatic"] = self.automatic.to_dict()
        return result


class InsulinCorrection:
    """
    Result of comparing a glucose forecast with the correction range.

    One of :class:`InRange`, :class:`AboveRange`, :class:`EntirelyBelowRange`
    or :class:`Suspend`.
    """

    @property
    def units(self) -> float:
        return 0.0

    @property
    def bolus_recommendation_notice(self) -> Optional[BolusRecommendationNotice]:
        raise NotImplementedError

    def as_temp_basal(
        self,
        neutral_basal_rate: float,
        max_basal_rate: float,
        duration: timedelta = TEMP_BASAL_DURATION,
        rate_rounder: Optional[Rounder] = None,
    ) -> TempBasalRecommendation:
        """The temp basal over ``duration`` that delivers the correction."""
        rate = self.units / (duration.total_seconds() / 3600.0)
        if not isinstance(self, Suspend):
            rate += neutral_basal_rate

        rate = min(max_basal_rate, max(0.0, rate))
        if rate_rounder is not None:
            rate = rate_rounder(rate)

        return TempBasalRecommendation(units_per_hour=rate, duration=duration)

    def as_manual_bolus(self, max_bolus: float) -> ManualBolusRecommendation:
        return ManualBolusRecommendation(
            amount=min(max_bolus, max(0.0, self.units)),
            notice=self.bolus_recommendation_notice,
        )

    def as_partial_bolus(
        self,
        partial_application_factor: float,
        max_bolus_units: float,
        volume_rounder: Optional[Rounder] = None,
    ) -> float:
        partial_dose = self.units * partial_application_factor
        if volume_rounder is not None:
            partial_dose = volume_rounder(partial_dose)
            max_bolus_units = volume_rounder(max_bolus_units)
        return min(max(0.0, partial_dose), max_bolus_units)


@dataclass(frozen=True)
class InRange(InsulinCorrection):
    @property
    def bolus_recommendation_notice(self) -> Optional[BolusRecommendationNotice]:
        return BolusRecommendationNotice(BolusRecommendationNoticeType.PREDICTED_GLUCOSE_IN_RANGE)


@dataclass(frozen=True)
class AboveRange(InsulinCorrection):
    min_glucose: GlucoseValue
    correcting: GlucoseValue
    min_target: float
    correction_units: float

    @property
    def units(self) -> float:
        return self.correction_units

    @property
    def bolus_recommendation_notice(self) -> Optional[BolusRecommendationNotice]:
        if self.correction_units > 0 and self.min_glucose.quantity < self.min_target:
            return BolusRecommendationNotice(BolusRecommendationNoticeType.PREDICTED_GLUCOSE_BELOW_TARGET, self.min_glucose)
        return None


@dataclass(frozen=True)
class EntirelyBelowRange(InsulinCorrection):
    min_glucose: GlucoseValue
    min_target: float
    correction_units: float

    @property
    def units(self) -> float:
        return self.correction_units

    @property
    def bolus_recommendation_notice(self) -> Optional[BolusRecommendationNotice]:
        return BolusRecommendationNotice(BolusRecommendationNoticeType.ALL_GLUCOSE_BELOW_TARGET, self.min_glucose)


@dataclass(frozen=True)
class Suspend(InsulinCorrection):
    min_glucose: GlucoseValue

    @property
    def bolus_recommendation_notice(self) -> Optional[BolusRecommendationNotice]:
        return BolusRecommendationNotice(BolusRecommendationNoticeType.GLUCOSE_BELOW_SUSPEND_THRESHOLD, self.min_glucose)


def insulin_correction_units(from_value: float, to_value: float, effected_sensitivity: float) -> float:
    if effected_sensitivity <= 0:
        raise ValueError(f"Effected sensitivity must be positive, got {effected_sensitivity}")
    return (from_value - to_value) / effected_sensitivity


def target_glucose_value(percent_effect_duration: float, min_value: float, max_value: float) -> float:
    """
    Target for a correction at a point in the insulin effect duration.

    Flat at ``min_value`` until half the duration has elapsed, then blended
    linearly to ``max_value`` by the end of the duration.
    """
    if percent_effect_duration <= USE_MIN_TARGET_UNTIL_PERCENT:
        return min_value
    if percent_effect_duration >= 1:
        return max_value
    slope = (max_value - min_value) / (1 - USE_MIN_TARGET_UNTIL_PERCENT)
    return min_value + slope * (percent_effect_duration - USE_MIN_TARGET_UNTIL_PERCENT)


def _range_at(target: Sequence[AbsoluteScheduleValue[GlucoseRange]], date: datetime) -> GlucoseRange:
    item = closest_prior(target, date)
    if item is None:
        raise ValueError(f"Correction range must cover date: {date.isoformat()}")
    return item.value


def _effected_sensitivity(
    sensitivity: Sequence[AbsoluteScheduleValue[float]],
    date: datetime,
    prediction_date: datetime,
    model: InsulinModel,
) -> float:
    effected = 0.0
    isf_end: Optional[timedelta] = None
    for segment in filter_date_range(sensitivity, date, prediction_date):
        start = max(date, segment.start_date) - date
        end = min(prediction_date, segment.end_date) - date
        percent_effected = model.percent_effect_remaining(start) - model.percent_effect_remaining(end)
        effected += percent_effected * segment.value
        isf_end = end

    if isf_end is None or isf_end < prediction_date - date:
        raise ValueError(f"Sensitivity timeline must cover date: {prediction_date.isoformat()}")
    return effected


def insulin_correction(
    prediction: Sequence[GlucoseValue],
    delivery_date: datetime,
    target: Sequence[AbsoluteScheduleValue[GlucoseRange]],
    suspend_threshold: float,
    sensitivity: Sequence[AbsoluteScheduleValue[float]],
    model: InsulinModel,
) -> InsulinCorrection:
    """
    Determines the least insulin delivered at ``delivery_date`` that corrects the
    forecast toward the middle of the correction range.

    Any forecast point below ``suspend_threshold`` returns :class:`Suspend`
    immediately. Effected sensitivity at each point sums, across the
    sensitivity segments crossed, the fraction of insulin effect elapsed in
    the segment times its sensitivity.

    Raises:
        ValueError: If the forecast is empty or shorter than the insulin effect
            duration, or the target or sensitivity timelines do not cover it.
    """
    if not prediction:
        raise ValueError("Unable to compute correction for empty glucose prediction")
    if prediction[-1].start_date < delivery_date + model.effect_duration:
        raise ValueError("Glucose prediction must cover at least the insulin effect duration")

    effect_seconds = model.effect_duration.total_seconds()

    min_glucose: Optional[GlucoseValue] = None
    eventual_glucose: Optional[GlucoseValue] = None
    correcting_glucose: Optional[GlucoseValue] = None
    min_correction_units: Optional[float] = None
    effected_sensitivity_at_min: Optional[float] = None

    for predicted in prediction:
        if predicted.start_date < delivery_date:
            continue

        if predicted.quantity < suspend_threshold:
            logger.debug("Predicted %.1f mg/dL at %s is below suspend threshold", predicted.quantity, predicted.start_date)
            return Suspend(min_glucose=predicted)

        eventual_glucose = predicted

        time = (predicted.start_date - delivery_date).total_seconds()
        target_value = target_glucose_value(
            percent_effect_duration=time / effect_seconds,
            min_value=suspend_threshold,
            max_value=_range_at(target, predicted.start_date).average,
        )

        effected_sensitivity = _effected_sensitivity(sensitivity, delivery_date, predicted.start_date, model)

        if min_glucose is None or predicted.quantity < min_glucose.quantity:
            min_glucose = predicted
            effected_sensitivity_at_min = effected_sensitivity

        correction_units = insulin_correction_units(
            from_value=predicted.quantity,
            to_value=target_value,
            effected_sensitivity=max(sys.float_info.epsilon, effected_sensitivity),
        )
        if correction_units <= 0:
            continue

        if min_correction_units is None or correction_units < min_correction_units:
            correcting_glucose = predicted
            min_correction_units = correction_units

    if min_glucose is None or eventual_glucose is None:
        raise ValueError("Glucose prediction has no values at or after the delivery date")

    min_glucose_targets = _range_at(target, min_glucose.start_date)
    eventual_glucose_targets = _range_at(target, eventual_glucose.start_date)

    if (
        min_glucose.quantity < min_glucose_targets.lower_bound
        and eventual_glucose.quantity < eventual_glucose_targets.lower_bound
    ):
        units = insulin_correction_units(
            from_value=min_glucose.quantity,
            to_value=min_glucose_targets.average,
            effected_sensitivity=max(sys.float_info.epsilon, effected_sensitivity_at_min or 0.0),
        )
        return EntirelyBelowRange(
            min_glucose=min_glucose,
            min_target=min_glucose_targets.lower_bound,
            correction_units=units,
        )

    if (
        eventual_glucose.quantity > eventual_glucose_targets.upper_bound
        and min_correction_units is not None
        and correcting_glucose is not None
    ):
        return AboveRange(
            min_glucose=min_glucose,
            correcting=correcting_glucose,
            min_target=eventual_glucose_targets.lower_bound,
            correction_units=min_correction_units,
        )

    return InRange()


def recommend_temp_basal(
    correction: InsulinCorrection,
    neutral_basal_rate: float,
    active_insulin: float,
    max_bolus: float,
    max_basal_rate: float,
    duration: timedelta = TEMP_BASAL_DURATION,
    rate_rounder: Optional[Rounder] = None,
) -> TempBasalRecommendation:
    """
    A temp basal for the correction, limited so that active insulin stays
    below twice ``max_bolus`` after ``duration`` at the recommended rate.
    """
    # High basal is withheld while any forecast point is below the correction range
    if isinstance(correction, AboveRange) and correction.min_glucose.quantity < correction.min_target:
        max_basal_rate = neutral_basal_rate

    iob_headroom = max_bolus * 2.0 - active_insulin
    max_rate_to_keep_iob_below_limit = iob_headroom * (3600.0 / duration.total_seconds()) + neutral_basal_rate
    max_basal_rate = min(max_rate_to_keep_iob_below_limit, max_basal_rate)

    return correction.as_temp_basal(
        neutral_basal_rate=neutral_basal_rate,
        max_basal_rate=max_basal_rate,
        duration=duration,
        rate_rounder=rate_rounder,
    )


def recommend_automatic_dose(
    correction: InsulinCorrection,
    application_factor: float,
    neutral_basal_rate: float,
    active_insulin: float,
    max_bolus: float,
    max_basal_rate: float,
    duration: timedelta = TEMP_BASAL_DURATION,
    volume_rounder: Optional[Rounder] = None,
) -> AutomaticDoseRecommendation:
    """
    A partial bolus of ``application_factor`` times the correction, alongside a
    temp basal no higher than the neutral rate.

    ``max_basal_rate`` is accepted for symmetry with :func:`recommend_temp_basal`;
    the automatic-bolus strategy never raises basal above neutral.
    """
    delivery_headroom = max(0.0, max_bolus * 2.0 - active_insulin)
    delivery_max = min(max_bolus * application_factor, delivery_headroom)

    if isinstance(correction, AboveRange) and correction.min_glucose.quantity < correction.min_target:
        delivery_max = 0.0

    temp_basal = correction.as_temp_basal(
        neutral_basal_rate=neutral_basal_rate,
        max_basal_rate=neutral_basal_rate,
        duration=duration,
    )
    bolus_units = correction.as_partial_bolus(
        partial_application_factor=application_factor,
        max_bolus_units=delivery_max,
        volume_rounder=volume_rounder,
    )
    return AutomaticDoseRecommendation(basal_adjustment=temp_basal, bolus_units=bolus_units)


def recommend_manual_bolus(
    correction: InsulinCorrection,
    max_bolus: float,
    current_glucose: GlucoseValue,
    target: Sequence[AbsoluteScheduleValue[GlucoseRange]],
) -> ManualBolusRecommendation:
    """A bolus capped at ``max_bolus``; current glucose below target overrides the notice."""
    bolus = correction.as_manual_bolus(max_bolus)

    target_at_current = closest_prior(target, current_glucose.start_date)
    if target_at_current is not None and current_glucose.quantity < target_at_current.value.lower_bound:
        bolus = ManualBolusRecommendation(
            amount=bolus.amount,
            notice=BolusRecommendationNotice(BolusRecommendationNoticeType.CURRENT_GLUCOSE_BELOW_TARGET, current_glucose),
        )
    return bolus
