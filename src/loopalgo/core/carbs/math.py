from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import numpy as np

from loopalgo.core.carbs.absorption import (
    CarbAbsorptionCurve,
    CarbModelSettings,
    PiecewiseLinearAbsorption,
)
from loopalgo.core.glucose.types import GlucoseEffect, GlucoseEffectVelocity
from loopalgo.core.timeline import AbsoluteScheduleValue, DateInterval, closest_prior, simulation_date_range

logger = logging.getLogger("loopalgo.carbs")

DEFAULT_ABSORPTION_TIME = timedelta(hours=3)
ABSORPTION_TIME_OVERRUN = 1.5
EFFECT_DELAY = timedelta(minutes=10)
DEFAULT_DELTA = timedelta(minutes=5)

# Tolerance used when deciding an entry has been fully observed
_COMPLETION_EPSILON = float(np.finfo(np.float32).eps)


@dataclass(frozen=True)
class CarbEntry:
    start_date: datetime
    grams: float
    absorption_time: Optional[timedelta] = None

    @property
    def end_date(self) -> datetime:
        return self.start_date

    def carbs_on_board(
        self,
        date: datetime,
        default_absorption_time: timedelta,
        delay: timedelta,
        curve: CarbAbsorptionCurve,
    ) -> float:
        time = date - self.start_date
        if time < timedelta(0):
            return 0.0
        return curve.unabsorbed_carbs(self.grams, time - delay, self.absorption_time or default_absorption_time)

    def absorbed_carbs(
        self,
        date: datetime,
        absorption_time: timedelta,
        delay: timedelta,
        curve: CarbAbsorptionCurve,
    ) -> float:
        return curve.absorbed_carbs(self.grams, date - self.start_date - delay, absorption_time)


@dataclass(frozen=True)
class CarbValue:
    """Grams of carbohydrate credited over ``[start_date, end_date]``."""
    start_date: datetime
    end_date: datetime
    quantity: float


@dataclass(frozen=True)
class AbsorbedCarbValue:
    observed: float
    clamped: float
    total: float
    remaining: float
    observed_date: DateInterval
    estimated_time_remaining: timedelta
    time_to_absorb_observed_carbs: timedelta

    @property
    def estimated_date(self) -> DateInterval:
        return DateInterval(
            self.observed_date.start,
            self.observed_date.start + self.observed_date.duration + self.estimated_time_remaining,
        )

    @property
    def is_active(self) -> bool:
        return self.estimated_time_remaining > timedelta(0)

    @property
    def observed_progress(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.observed / self.total


@dataclass(frozen=True)
class CarbStatus:
    """Absorption state of one carb entry after mapping insulin counteraction onto it."""
    entry: CarbEntry
    carb_sensitivity_factor: float
    absorption: Optional[AbsorbedCarbValue] = None
    observed_timeline: Optional[List[CarbValue]] = None

    @property
    def start_date(self) -> datetime:
        return self.entry.start_date

    @property
    def end_date(self) -> datetime:
        return self.entry.start_date

    @property
    def quantity(self) -> float:
        return self.entry.grams

    @property
    def original_absorption_time(self) -> Optional[timedelta]:
        return self.entry.absorption_time

    @property
    def absorption_time(self) -> Optional[timedelta]:
        if self.absorption is not None:
            return self.absorption.estimated_date.duration
        return self.entry.absorption_time

    def dynamic_carbs_on_board(
        self,
        date: datetime,
        default_absorption_time: timedelta,
        delay: timedelta,
        delta: timedelta,
        curve: CarbAbsorptionCurve,
    ) -> float:
        absorption = self.absorption
        if date < self.start_date - delta or absorption is None:
            return self.entry.carbs_on_board(date, default_absorption_time, delay, curve)

        if not self.observed_timeline:
            time = date - self.start_date - delay
            return curve.unabsorbed_carbs(absorption.total, time, absorption.estimated_date.duration)

        observation_end = self.observed_timeline[-1].end_date
        if date > observation_end:
            effective_time = date - observation_end + absorption.time_to_absorb_observed_carbs
            effective_absorption_time = absorption.time_to_absorb_observed_carbs + absorption.estimated_time_remaining
            unabsorbed = curve.unabsorbed_carbs(absorption.total, effective_time, effective_absorption_time)
            return max(unabsorbed, 0.0)

        # Scans the whole observed timeline for each date
        absorbed = sum(value.quantity for value in self.observed_timeline if value.end_date <= date)
        return max(self.quantity - absorbed, 0.0)

    def dynamic_absorbed_carbs(
        self,
        date: datetime,
        absorption_time: timedelta,
        delay: timedelta,
        delta: timedelta,
        curve: CarbAbsorptionCurve,
    ) -> float:
        absorption = self.absorption
        if date < self.start_date or absorption is None:
            return self.entry.absorbed_carbs(date, absorption_time, delay, curve)

        if not self.observed_timeline:
            time = date - self.start_date - delay
            return curve.absorbed_carbs(absorption.total, time, absorption.estimated_date.duration)

        observation_end = self.observed_timeline[-1].end_date
        if date > observation_end:
            effective_time = date - observation_end + absorption.time_to_absorb_observed_carbs
            effective_absorption_time = absorption.time_to_absorb_observed_carbs + absorption.estimated_time_remaining
            absorbed = curve.absorbed_carbs(absorption.total, effective_time, effective_absorption_time)
            return min(absorbed, absorption.total)

        before = [value for value in self.observed_timeline if value.start_date + delta <= date]
        total = 0.0
        if before:
            last = before.pop()
            observed = last.end_date - last.start_date
            if observed > timedelta(0):
                overlap = min(date, last.end_date) - last.start_date
                if overlap >= timedelta(0):
                    total += overlap / observed * last.quantity
        total += sum(value.quantity for value in before)
        return min(total, self.quantity)


class _CarbStatusBuilder:
    """Accumulates observed absorption for one entry while walking counteraction effects."""

    def __init__(
        self,
        entry: CarbEntry,
        carb_sensitivity_factor: float,
        initial_absorption_time: timedelta,
        max_absorption_time: timedelta,
        delay: timedelta,
        last_effect_date: datetime,
        settings: CarbModelSettings,
    ):
        self.entry = entry
        self.carb_sensitivity_factor = carb_sensitivity_factor
        self.initial_absorption_time = initial_absorption_time
        self.max_absorption_time = max_absorption_time
        self.delay = delay
        self.curve = settings.curve
        self.adaptive_absorption_rate = settings.adaptive_absorption_rate
        self.adaptive_rate_standby_interval = initial_absorption_time * settings.adaptive_rate_standby_interval_fraction
        self.last_effect_date = min(self.max_end_date, max(last_effect_date, entry.start_date))

        self.observed_effect = 0.0
        self.observed_timeline: List[CarbValue] = []
        self.observed_completion_date: Optional[datetime] = None

    @property
    def max_end_date(self) -> datetime:
        return self.entry.start_date + self.max_absorption_time + self.delay

    @property
    def entry_grams(self) -> float:
        return self.entry.grams

    @property
    def entry_effect(self) -> float:
        return self.entry_grams * self.carb_sensitivity_factor

    @property
    def observed_grams(self) -> float:
        return self.observed_effect / self.carb_sensitivity_factor

    @property
    def observed_absorption_dates(self) -> DateInterval:
        return DateInterval(self.entry.start_date, self.observed_completion_date or self.last_effect_date)

    @property
    def _elapsed(self) -> timedelta:
        return self.last_effect_date - self.entry.start_date - self.delay

    @property
    def min_predicted_grams(self) -> float:
        return self.curve.absorbed_carbs(self.entry_grams, self._elapsed, self.max_absorption_time)

    @property
    def clamped_grams(self) -> float:
        return min(self.entry_grams, max(self.min_predicted_grams, self.observed_grams))

    @property
    def _percent_absorbed(self) -> float:
        if self.entry_grams <= 0:
            return 1.0
        return self.clamped_grams / self.entry_grams

    @property
    def time_to_absorb_observed_carbs(self) -> timedelta:
        time = self._elapsed
        if time <= timedelta(0):
            return timedelta(0)
        if self.adaptive_absorption_rate and time > self.adaptive_rate_standby_interval:
            result = time
        else:
            result = self.curve.time_to_absorb(self._percent_absorbed, self.initial_absorption_time)
        return min(result, self.max_absorption_time)

    @property
    def estimated_time_remaining(self) -> timedelta:
        time = self._elapsed
        not_to_exceed = max(self.max_absorption_time - time, timedelta(0))
        if not_to_exceed <= timedelta(0):
            return timedelta(0)

        if self.adaptive_absorption_rate and time > self.adaptive_rate_standby_interval:
            dynamic_absorption_time = self.curve.absorption_time(self._percent_absorbed, time)
            dynamic_absorption_time = min(max(dynamic_absorption_time, time), self.max_absorption_time)
        else:
            dynamic_absorption_time = self.initial_absorption_time

        remaining = dynamic_absorption_time - self.time_to_absorb_observed_carbs
        return max(timedelta(0), min(remaining, not_to_exceed))

    def absorption_rate_at(self, time: timedelta) -> float:
        """Modeled absorption rate in grams per second ``time`` after the entry."""
        dynamic_absorption_time = min(
            self.observed_absorption_dates.duration + self.estimated_time_remaining,
            self.max_absorption_time,
        )
        seconds = dynamic_absorption_time.total_seconds()
        if seconds <= 0:
            return 0.0
        percent_time = time.total_seconds() / seconds
        return self.entry_grams / seconds * self.curve.percent_rate_at_percent_time(percent_time)

    def add_next_effect(self, effect: float, start: datetime, end: datetime) -> None:
        if start < self.entry.start_date:
            return

        self.observed_effect += effect

        if self.observed_completion_date is None:
            self.observed_timeline.append(
                CarbValue(start_date=start, end_date=end, quantity=effect / self.carb_sensitivity_factor)
            )
            if self.observed_effect + _COMPLETION_EPSILON >= self.entry_effect:
                self.observed_completion_date = end

    def result(self) -> CarbStatus:
        observed = self.observed_grams
        clamped = self.clamped_grams
        absorption = AbsorbedCarbValue(
            observed=observed,
            clamped=clamped,
            total=self.entry_grams,
            remaining=self.entry_grams - clamped,
            observed_date=self.observed_absorption_dates,
            estimated_time_remaining=self.estimated_time_remaining,
            time_to_absorb_observed_carbs=self.time_to_absorb_observed_carbs,
        )
        timeline = self.observed_timeline
        if not timeline or observed < clamped:
            timeline = None
        return CarbStatus(
            entry=self.entry,
            carb_sensitivity_factor=self.carb_sensitivity_factor,
            absorption=absorption,
            observed_timeline=timeline,
        )


def map_carbs(
    entries: Sequence[CarbEntry],
    effect_velocities: Sequence[GlucoseEffectVelocity],
    carb_ratio: Sequence[AbsoluteScheduleValue[float]],
    insulin_sensitivity: Sequence[AbsoluteScheduleValue[float]],
    settings: Optional[CarbModelSettings] = None,
    default_absorption_time: timedelta = DEFAULT_ABSORPTION_TIME,
    absorption_time_overrun: float = ABSORPTION_TIME_OVERRUN,
    delay: timedelta = EFFECT_DELAY,
    strict: bool = True,
) -> List[CarbStatus]:
    """
    Attributes insulin counteraction effects to carb entries.

    Each positive counteraction effect is split between the entries active at
    its start, in proportion to their modeled absorption rates. Any leftover
    effect is credited to the last active entry.

    Args:
        entries: Carb entries sorted by start date.
        effect_velocities: Insulin counteraction effects.
        carb_ratio: Carb ratio timeline (g/U) covering the entry starts.
        insulin_sensitivity: Sensitivity timeline (mg/dL/U) covering the entry starts.
        settings: Absorption curve and overrun settings.
        strict: Raise ``ValueError`` for entries without schedule coverage;
            when False such entries are skipped.
    """
    if settings is None:
        settings = CarbModelSettings(PiecewiseLinearAbsorption(), initial_absorption_time_overrun=ABSORPTION_TIME_OVERRUN)

    last_effect_date = effect_velocities[-1].end_date if effect_velocities else None

    builders: List[_CarbStatusBuilder] = []
    for entry in entries:
        ratio = closest_prior(carb_ratio, entry.start_date)
        sensitivity = closest_prior(insulin_sensitivity, entry.start_date)
        if ratio is None or sensitivity is None or ratio.value <= 0:
            if strict:
                raise ValueError(f"Carb ratio and sensitivity must cover carb entry at {entry.start_date.isoformat()}")
            logger.warning("Skipping carb entry at %s: no carb ratio or sensitivity", entry.start_date)
            continue

        absorption_time = entry.absorption_time or default_absorption_time
        builders.append(
            _CarbStatusBuilder(
                entry=entry,
                carb_sensitivity_factor=sensitivity.value / ratio.value,
                initial_absorption_time=absorption_time * settings.initial_absorption_time_overrun,
                max_absorption_time=absorption_time * absorption_time_overrun,
                delay=delay,
                last_effect_date=last_effect_date or entry.start_date,
                settings=settings,
            )
        )

    for velocity in effect_velocities:
        if velocity.end_date <= velocity.start_date:
            continue

        active = [
            builder for builder in builders
            if builder.entry.start_date <= velocity.start_date < builder.max_end_date
        ]
        if not active:
            continue

        # Negative velocities are not credited to carbs
        effect_value = max(0.0, velocity.effect.quantity)

        rates = [builder.absorption_rate_at(velocity.start_date - builder.entry.start_date) for builder in active]
        total_rate = sum(rates)

        for builder, rate in zip(active, rates):
            partial = min(effect_value, rate / total_rate * effect_value) if total_rate != 0 else 0.0
            total_rate -= rate
            effect_value -= partial
            builder.add_next_effect(partial, velocity.start_date, velocity.end_date)

            if effect_value > _COMPLETION_EPSILON and builder is active[-1]:
                builder.add_next_effect(effect_value, velocity.start_date, velocity.end_date)

    return [builder.result() for builder in builders]


def _max_effect_duration(
    statuses: Sequence[CarbStatus],
    default_absorption_time: timedelta,
    absorption_time_overrun: float,
) -> timedelta:
    longest = default_absorption_time
    for status in statuses:
        longest = max(longest, status.original_absorption_time or default_absorption_time)
    return longest * absorption_time_overrun


def dynamic_carbs_on_board(
    statuses: Sequence[CarbStatus],
    date: datetime,
    curve: Optional[CarbAbsorptionCurve] = None,
    default_absorption_time: timedelta = DEFAULT_ABSORPTION_TIME,
    delay: timedelta = EFFECT_DELAY,
    delta: timedelta = DEFAULT_DELTA,
) -> float:
    curve = curve or PiecewiseLinearAbsorption()
    return sum(
        status.dynamic_carbs_on_board(date, default_absorption_time, delay, delta, curve)
        for status in statuses
    )


def carbs_on_board_timeline(
    statuses: Sequence[CarbStatus],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    curve: Optional[CarbAbsorptionCurve] = None,
    default_absorption_time: timedelta = DEFAULT_ABSORPTION_TIME,
    absorption_time_overrun: float = ABSORPTION_TIME_OVERRUN,
    delay: timedelta = EFFECT_DELAY,
    delta: timedelta = DEFAULT_DELTA,
) -> List[AbsoluteScheduleValue[float]]:
    """Carbs on board at each grid date; values are instantaneous (start equals end)."""
    duration = _max_effect_duration(statuses, default_absorption_time, absorption_time_overrun)
    date_range = simulation_date_range(statuses, start, end, duration, delay=delay, delta=delta)
    if date_range is None:
        return []
    date, end_date = date_range

    values = []
    while True:
        value = dynamic_carbs_on_board(statuses, date, curve, default_absorption_time, delay, delta)
        values.append(AbsoluteScheduleValue(start_date=date, end_date=date, value=value))
        date += delta
        if date > end_date:
            break
    return values


def _glucose_effect_at(
    statuses: Sequence[CarbStatus],
    date: datetime,
    curve: CarbAbsorptionCurve,
    default_absorption_time: timedelta,
    delay: timedelta,
    delta: timedelta,
) -> float:
    value = 0.0
    for status in statuses:
        absorption_time = status.absorption_time or default_absorption_time
        absorbed = status.dynamic_absorbed_carbs(date, absorption_time, delay, delta, curve)
        value += status.carb_sensitivity_factor * absorbed
    return value


def dynamic_glucose_effects(
    statuses: Sequence[CarbStatus],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    curve: Optional[CarbAbsorptionCurve] = None,
    default_absorption_time: timedelta = DEFAULT_ABSORPTION_TIME,
    absorption_time_overrun: float = ABSORPTION_TIME_OVERRUN,
    delay: timedelta = EFFECT_DELAY,
    delta: timedelta = DEFAULT_DELTA,
) -> List[GlucoseEffect]:
    """Cumulative glucose effect (mg/dL) of absorbed carbs on a ``delta`` grid."""
    curve = curve or PiecewiseLinearAbsorption()
    duration = _max_effect_duration(statuses, default_absorption_time, absorption_time_overrun)
    date_range = simulation_date_range(statuses, start, end, duration, delay=delay, delta=delta)
    if date_range is None:
        return []
    date, end_date = date_range

    values = []
    while True:
        value = _glucose_effect_at(statuses, date, curve, default_absorption_time, delay, delta)
        values.append(GlucoseEffect(start_date=date, quantity=value))
        date += delta
        if date > end_date:
            break
    return values


def dynamic_glucose_effects_at_dates(
    statuses: Sequence[CarbStatus],
    dates: Sequence[datetime],
    curve: Optional[CarbAbsorptionCurve] = None,
    default_absorption_time: timedelta = DEFAULT_ABSORPTION_TIME,
    delay: timedelta = EFFECT_DELAY,
    delta: timedelta = DEFAULT_DELTA,
) -> List[GlucoseEffect]:
    """Cumulative glucose effect of absorbed carbs at explicit dates."""
    curve = curve or PiecewiseLinearAbsorption()
    return [
        GlucoseEffect(
            start_date=date,
            quantity=_glucose_effect_at(statuses, date, curve, default_absorption_time, delay, delta),
        )
        for date in dates
    ]
