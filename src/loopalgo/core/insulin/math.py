from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from loopalgo.core.glucose.types import GlucoseEffect
from loopalgo.core.insulin.doses import InsulinDose, _hours
from loopalgo.core.insulin.models import InsulinModel, InsulinModelProvider, PresetInsulinModelProvider
from loopalgo.core.timeline import (
    AbsoluteScheduleValue,
    DateInterval,
    closest_prior,
    filter_date_range,
    simulation_date_range,
    trimmed,
)

logger = logging.getLogger("loopalgo.insulin")

DEFAULT_DELTA = timedelta(minutes=5)
DEFAULT_INSULIN_ACTIVITY_DURATION = timedelta(hours=6, minutes=10)
MOMENTARY_DOSE_FACTOR = 1.05


@dataclass(frozen=True)
class BasalRelativeDose:
    """
    A dose expressed relative to the scheduled basal rate.

    ``scheduled_rate`` is None for boluses. Basal entries never cross a
    scheduled-rate boundary.
    """
    start_date: datetime
    end_date: datetime
    volume: float
    insulin_model: InsulinModel
    scheduled_rate: Optional[float] = None

    @property
    def is_bolus(self) -> bool:
        return self.scheduled_rate is None

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def net_basal_units(self) -> float:
        """Units delivered net of the scheduled basal over the dose duration."""
        if self.scheduled_rate is None:
            return self.volume
        hours = _hours(self.duration)
        if hours <= 0:
            return 0.0
        return self.volume - self.scheduled_rate * hours

    def _is_momentary(self, delta: timedelta) -> bool:
        return self.duration.total_seconds() <= MOMENTARY_DOSE_FACTOR * delta.total_seconds()

    def _continuous_delivery_remaining(self, date: datetime, delta: timedelta) -> float:
        # Piecewise sum of delta-wide sub-boluses over the dose duration
        dose_duration = self.duration.total_seconds()
        time = (date - self.start_date).total_seconds()
        step = delta.total_seconds()
        delay = self.insulin_model.delay.total_seconds()
        limit = min(math.floor((time + delay) / step) * step, dose_duration)

        remaining = 0.0
        dose_date = 0.0
        while True:
            if dose_duration > 0:
                segment = max(0.0, min(dose_date + step, dose_duration) - dose_date) / dose_duration
            else:
                segment = 1.0
            remaining += segment * self.insulin_model.percent_effect_remaining(timedelta(seconds=time - dose_date))
            dose_date += step
            if dose_date > limit:
                break
        return remaining

    def _continuous_delivery_percent_effect(self, date: datetime, delta: timedelta) -> float:
        dose_duration = self.duration.total_seconds()
        time = (date - self.start_date).total_seconds()
        step = delta.total_seconds()
        delay = self.insulin_model.delay.total_seconds()
        limit = min(math.floor((time + delay) / step) * step, dose_duration)

        value = 0.0
        dose_date = 0.0
        while True:
            if dose_duration > 0:
                segment = max(0.0, min(dose_date + step, dose_duration) - dose_date) / dose_duration
            else:
                segment = 1.0
            value += segment * (1.0 - self.insulin_model.percent_effect_remaining(timedelta(seconds=time - dose_date)))
            dose_date += step
            if dose_date > limit:
                break
        return value

    def insulin_on_board(self, date: datetime, delta: timedelta = DEFAULT_DELTA) -> float:
        time = date - self.start_date
        if time < timedelta(0):
            return 0.0
        if self._is_momentary(delta):
            return self.net_basal_units * self.insulin_model.percent_effect_remaining(time)
        return self.net_basal_units * self._continuous_delivery_remaining(date, delta)

    def glucose_effect(self, date: datetime, insulin_sensitivity: float, delta: timedelta = DEFAULT_DELTA) -> float:
        """Cumulative glucose effect of the dose at ``date`` using a single sensitivity."""
        time = date - self.start_date
        if time < timedelta(0):
            return 0.0
        if self._is_momentary(delta):
            percent = 1.0 - self.insulin_model.percent_effect_remaining(time)
        else:
            percent = self._continuous_delivery_percent_effect(date, delta)
        return self.net_basal_units * -insulin_sensitivity * percent

    def glucose_effect_during(
        self,
        interval: DateInterval,
        insulin_sensitivity: float,
        delta: timedelta = DEFAULT_DELTA,
    ) -> float:
        """Glucose effect of the dose accrued within ``interval``."""
        start = interval.start - self.start_date
        end = interval.end - self.start_date
        if end < start:
            return 0.0

        if self._is_momentary(delta):
            effect = (
                self.insulin_model.percent_effect_remaining(start)
                - self.insulin_model.percent_effect_remaining(end)
            )
        else:
            start_remaining = 1 - self._continuous_delivery_percent_effect(interval.start, delta)
            end_remaining = 1 - self._continuous_delivery_percent_effect(interval.end, delta)
            effect = start_remaining - end_remaining
        return self.net_basal_units * -insulin_sensitivity * effect


def annotate_dose(
    dose: InsulinDose,
    basal_history: Sequence[AbsoluteScheduleValue[float]],
    provider: InsulinModelProvider,
) -> List[BasalRelativeDose]:
    """
    Splits a basal dose at every scheduled basal boundary it crosses.

    Args:
        dose: A basal delivery record.
        basal_history: Schedule values overlapping the dose.
        provider: Resolves the dose insulin type to a model.
    """
    if not dose.is_basal:
        raise ValueError("annotate_dose requires a basal dose")

    model = provider.model_for(dose.insulin_type)
    duration = dose.duration.total_seconds()
    doses: List[BasalRelativeDose] = []

    for index, item in enumerate(basal_history):
        start_date = dose.start_date if index == 0 else item.start_date
        if index == len(basal_history) - 1:
            end_date = dose.end_date
        else:
            end_date = basal_history[index + 1].start_date

        segment_start = max(start_date, dose.start_date)
        segment_end = max(start_date, min(end_date, dose.end_date))
        segment_duration = (segment_end - segment_start).total_seconds()

        volume = dose.volume * segment_duration / duration if duration > 0 else 0.0

        doses.append(
            BasalRelativeDose(
                start_date=segment_start,
                end_date=segment_end,
                volume=volume,
                insulin_model=model,
                scheduled_rate=item.value,
            )
        )
    return doses


def annotated(
    doses: Sequence[InsulinDose],
    basal_history: Sequence[AbsoluteScheduleValue[float]],
    fill_basal_gaps: bool = False,
    provider: Optional[InsulinModelProvider] = None,
) -> List[BasalRelativeDose]:
    """
    Annotates doses with the scheduled basal history.

    Boluses pass through unchanged. Basal doses are split across schedule
    boundaries. With ``fill_basal_gaps``, spans of the timeline not covered by
    basal doses are filled with scheduled basal delivery.
    """
    provider = provider or PresetInsulinModelProvider()
    result: List[BasalRelativeDose] = []

    basal_doses = [dose for dose in doses if dose.is_basal]

    if not fill_basal_gaps and not doses:
        return []

    candidates = []
    if basal_history:
        candidates.append(basal_history[0].start_date)
    if basal_doses:
        candidates.append(basal_doses[0].start_date)
    date: Optional[datetime] = min(candidates) if candidates else None

    default_model = provider.model_for(None)

    def fill_gap(start: datetime, end: datetime) -> List[BasalRelativeDose]:
        filled = []
        for entry in trimmed(basal_history, start, end):
            if entry.end_date <= entry.start_date:
                continue
            filled.append(
                BasalRelativeDose(
                    start_date=entry.start_date,
                    end_date=entry.end_date,
                    volume=entry.value * _hours(entry.duration),
                    insulin_model=default_model,
                    scheduled_rate=entry.value,
                )
            )
        return filled

    for dose in doses:
        if not dose.is_basal:
            result.append(
                BasalRelativeDose(
                    start_date=dose.start_date,
                    end_date=dose.end_date,
                    volume=dose.volume,
                    insulin_model=provider.model_for(dose.insulin_type),
                )
            )
            continue

        if fill_basal_gaps and date is not None and date < dose.start_date:
            result.extend(fill_gap(date, dose.start_date))

        items = filter_date_range(basal_history, dose.start_date, dose.end_date)
        result.extend(annotate_dose(dose, items, provider))
        date = dose.end_date

    end_candidates = []
    if basal_history:
        end_candidates.append(basal_history[-1].end_date)
    if basal_doses:
        end_candidates.append(basal_doses[-1].end_date)
    end_date = max(end_candidates) if end_candidates else date

    if fill_basal_gaps and date is not None and end_date is not None and date < end_date:
        result.extend(fill_gap(date, end_date))

    return result


def insulin_on_board(
    doses: Sequence[BasalRelativeDose],
    date: datetime,
    delta: timedelta = DEFAULT_DELTA,
) -> float:
    return sum(dose.insulin_on_board(date, delta) for dose in doses)


def insulin_on_board_timeline(
    doses: Sequence[BasalRelativeDose],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    longest_effect_duration: timedelta = DEFAULT_INSULIN_ACTIVITY_DURATION,
    delta: timedelta = DEFAULT_DELTA,
) -> List[AbsoluteScheduleValue[float]]:
    """Insulin on board at each grid date; values are instantaneous (start equals end)."""
    date_range = simulation_date_range(doses, start, end, longest_effect_duration, delta=delta)
    if date_range is None:
        return []
    date, end_date = date_range

    values = []
    while True:
        value = insulin_on_board(doses, date, delta)
        values.append(AbsoluteScheduleValue(start_date=date, end_date=date, value=value))
        date += delta
        if date > end_date:
            break
    return values


def glucose_effects(
    doses: Sequence[BasalRelativeDose],
    insulin_sensitivity_history: Sequence[AbsoluteScheduleValue[float]],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    longest_effect_duration: timedelta = DEFAULT_INSULIN_ACTIVITY_DURATION,
    delta: timedelta = DEFAULT_DELTA,
    strict: bool = True,
) -> List[GlucoseEffect]:
    """
    Cumulative glucose effect of the doses, using the sensitivity in effect at
    each dose's start for that dose's whole absorption.

    Args:
        strict: Raise ``ValueError`` when a dose start is not covered by the
            sensitivity history. When False such doses are skipped.
    """
    active = [dose for dose in doses if dose.net_basal_units != 0]

    date_range = simulation_date_range(active, start, end, longest_effect_duration, delta=delta)
    if date_range is None:
        return []
    date, end_date = date_range

    dose_sensitivities = []
    for dose in active:
        item = closest_prior(insulin_sensitivity_history, dose.start_date)
        if item is None or item.end_date < dose.start_date:
            if strict:
                raise ValueError(f"Sensitivity history must cover dose start {dose.start_date.isoformat()}")
            logger.warning("Skipping dose at %s: no insulin sensitivity covers it", dose.start_date)
            continue
        dose_sensitivities.append((dose, item.value))

    values = []
    while True:
        value = sum(dose.glucose_effect(date, isf, delta) for dose, isf in dose_sensitivities)
        values.append(GlucoseEffect(start_date=date, quantity=value))
        date += delta
        if date > end_date:
            break
    return values


def _effect_between(
    doses: Sequence[BasalRelativeDose],
    insulin_sensitivity_timeline: Sequence[AbsoluteScheduleValue[float]],
    last_date: datetime,
    date: datetime,
    delta: timedelta,
    strict: bool,
) -> float:
    segments = filter_date_range(insulin_sensitivity_timeline, last_date, date)
    if not segments:
        if strict:
            raise ValueError(
                f"Sensitivity timeline must cover {last_date.isoformat()} to {date.isoformat()}"
            )
        logger.warning("No insulin sensitivity between %s and %s", last_date, date)
        return 0.0

    value = 0.0
    for dose in doses:
        for segment in segments:
            interval = DateInterval(max(last_date, segment.start_date), min(date, segment.end_date))
            value += dose.glucose_effect_during(interval, segment.value, delta)
    return value


def glucose_effects_mid_absorption_isf(
    doses: Sequence[BasalRelativeDose],
    insulin_sensitivity_timeline: Sequence[AbsoluteScheduleValue[float]],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    longest_effect_duration: timedelta = DEFAULT_INSULIN_ACTIVITY_DURATION,
    delta: timedelta = DEFAULT_DELTA,
    strict: bool = True,
) -> List[GlucoseEffect]:
    """
    Cumulative glucose effect of the doses where each interval of absorption is
    scaled by the sensitivity in effect during that interval.
    """
    active = [dose for dose in doses if dose.net_basal_units != 0]

    date_range = simulation_date_range(active, start, end, longest_effect_duration, delta=delta)
    if date_range is None:
        return []
    date, end_date = date_range

    last_date = date
    value = 0.0
    values = []
    while True:
        if date != last_date:
            value += _effect_between(active, insulin_sensitivity_timeline, last_date, date, delta, strict)
        values.append(GlucoseEffect(start_date=date, quantity=value))
        last_date = date
        date += delta
        if date > end_date:
            break
    return values


def glucose_effects_at_dates(
    doses: Sequence[BasalRelativeDose],
    insulin_sensitivity_timeline: Sequence[AbsoluteScheduleValue[float]],
    effect_dates: Sequence[datetime],
    delta: timedelta = DEFAULT_DELTA,
    strict: bool = False,
) -> List[GlucoseEffect]:
    """
    Cumulative glucose effect of the doses at arbitrary dates, accumulated
    between consecutive dates with the sensitivity in effect at the time.

    The first date has value zero; with no doses every value is zero.
    """
    if not effect_dates:
        return []

    active = [dose for dose in doses if dose.net_basal_units != 0]
    last_date = effect_dates[0]
    value = 0.0
    values = []
    for date in effect_dates:
        if date != last_date and active:
            value += _effect_between(active, insulin_sensitivity_timeline, last_date, date, delta, strict)
        values.append(GlucoseEffect(start_date=date, quantity=value))
        last_date = date
    return values


def effects_interval(doses: Sequence[InsulinDose], provider: InsulinModelProvider) -> Optional[DateInterval]:
    """The span from the first dose start to the latest end of any dose effect."""
    if not doses:
        return None
    min_date = doses[0].start_date
    max_date = doses[0].end_date
    for dose in doses:
        min_date = min(min_date, dose.start_date)
        max_date = max(max_date, dose.end_date + provider.model_for(dose.insulin_type).effect_duration)
    return DateInterval(min_date, max_date)
