from __future__ import annotations

import bisect
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from loopalgo.core.glucose.types import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseSample,
    PredictedGlucoseValue,
)
from loopalgo.core.timeline import date_ceiled, date_floored

DEFAULT_DELTA = timedelta(minutes=5)
MOMENTUM_DATA_INTERVAL = timedelta(minutes=15)
MOMENTUM_DURATION = timedelta(minutes=30)
VELOCITY_MIN_INTERVAL = timedelta(minutes=4)


def counteraction_effects(
    glucose: Sequence[GlucoseSample],
    insulin_effects: Sequence[GlucoseEffect],
    min_interval: timedelta = VELOCITY_MIN_INTERVAL,
) -> List[GlucoseEffectVelocity]:
    """
    Computes the glucose velocity not explained by insulin between samples.

    Consecutive samples closer than ``min_interval`` are merged into the next
    pair. Pairs of differing provenance or with display-only samples are skipped.
    The insulin effect at a sample is the first effect dated at or after it.
    """
    velocities: List[GlucoseEffectVelocity] = []
    if not glucose:
        return velocities

    effect_index = 0
    start_glucose = glucose[0]

    for end_glucose in glucose[1:]:
        interval = end_glucose.start_date - start_glucose.start_date
        if interval <= min_interval:
            continue

        previous, start_glucose = start_glucose, end_glucose
        if (
            previous.provenance_identifier != end_glucose.provenance_identifier
            or previous.is_display_only
            or end_glucose.is_display_only
        ):
            continue

        if effect_index >= len(insulin_effects):
            break

        start_effect: Optional[GlucoseEffect] = None
        end_effect: Optional[GlucoseEffect] = None
        for effect in insulin_effects[effect_index:]:
            if start_effect is None and effect.start_date >= previous.start_date:
                start_effect = effect
            elif end_effect is None and effect.start_date >= end_glucose.start_date:
                end_effect = effect
                break
            effect_index += 1

        if start_effect is None or end_effect is None:
            break

        glucose_change = end_glucose.quantity - previous.quantity
        effect_change = end_effect.quantity - start_effect.quantity
        velocities.append(
            GlucoseEffectVelocity(
                start_date=previous.start_date,
                end_date=end_glucose.start_date,
                quantity=(glucose_change - effect_change) / interval.total_seconds(),
            )
        )

    return velocities


def interpolated_effect(effects: Sequence[GlucoseEffect], date: datetime) -> float:
    """Value of a cumulative effect timeline at ``date``, linearly interpolated."""
    if not effects:
        return 0.0
    dates = [effect.start_date for effect in effects]
    index = bisect.bisect_left(dates, date)
    if index < len(dates) and dates[index] == date:
        return effects[index].quantity
    if index == 0:
        return effects[0].quantity
    if index >= len(dates):
        return effects[-1].quantity

    before, after = effects[index - 1], effects[index]
    span = (after.start_date - before.start_date).total_seconds()
    fraction = (date - before.start_date).total_seconds() / span
    return before.quantity + (after.quantity - before.quantity) * fraction


def subtracting(
    velocities: Sequence[GlucoseEffectVelocity],
    effects: Sequence[GlucoseEffect],
) -> List[GlucoseChange]:
    """Integrates each velocity and removes the change in ``effects`` over the same interval."""
    changes = []
    for velocity in velocities:
        observed = velocity.quantity * velocity.duration.total_seconds()
        modeled = interpolated_effect(effects, velocity.end_date) - interpolated_effect(effects, velocity.start_date)
        changes.append(
            GlucoseChange(
                start_date=velocity.start_date,
                end_date=velocity.end_date,
                quantity=observed - modeled,
            )
        )
    return changes


def combined_sums(changes: Sequence[GlucoseChange], duration: timedelta) -> List[GlucoseChange]:
    """
    Running sums of each change with the changes that precede it within ``duration``.

    The result has one entry per input change, ending at that change.
    """
    sums: List[GlucoseChange] = []
    last_valid_index = 0

    for change in reversed(changes):
        sums.append(GlucoseChange(change.start_date, change.end_date, change.quantity))
        for index in range(last_valid_index, len(sums) - 1):
            if sums[index].end_date > change.end_date + duration:
                last_valid_index += 1
                continue
            sums[index].append(change)

    sums.reverse()
    return sums


def net_effect(effects: Sequence[GlucoseEffect]) -> Optional[GlucoseChange]:
    if not effects:
        return None
    first, last = effects[0], effects[-1]
    return GlucoseChange(first.start_date, last.start_date, last.quantity - first.quantity)


def decay_effect(
    glucose: GlucoseSample,
    rate: float,
    duration: timedelta,
    delta: timedelta = DEFAULT_DELTA,
) -> List[GlucoseEffect]:
    """
    Decays a glucose velocity linearly to zero over ``duration``.

    Args:
        glucose: Starting point of the effect timeline.
        rate: Initial velocity in mg/dL per second.
        duration: Time for the velocity to reach zero.
    """
    start = date_floored(glucose.start_date, delta)
    end = date_ceiled(glucose.start_date + duration, delta)

    step = delta.total_seconds()
    decay_start = start + delta
    slope = -rate / (duration.total_seconds() - step)

    values = [GlucoseEffect(start_date=start, quantity=glucose.quantity)]
    last_value = glucose.quantity
    date = decay_start
    while True:
        value = last_value + (rate + slope * (date - decay_start).total_seconds()) * step
        values.append(GlucoseEffect(start_date=date, quantity=value))
        last_value = value
        date += delta
        if date >= end:
            break
    return values


def is_continuous(samples: Sequence[GlucoseSample], interval: timedelta = MOMENTUM_DATA_INTERVAL) -> bool:
    if not samples:
        return False
    return abs(samples[-1].start_date - samples[0].start_date) < interval


def has_single_provenance(samples: Sequence[GlucoseSample]) -> bool:
    return len({sample.provenance_identifier for sample in samples}) <= 1


def linear_momentum_effect(
    samples: Sequence[GlucoseSample],
    duration: timedelta = MOMENTUM_DURATION,
    delta: timedelta = DEFAULT_DELTA,
    data_interval: timedelta = MOMENTUM_DATA_INTERVAL,
) -> List[GlucoseEffect]:
    """
    Projects the least-squares glucose trend of ``samples`` forward for ``duration``.

    Requires at least three continuous samples from a single provenance with
    no display-only values; returns an empty list otherwise.
    """
    if (
        len(samples) <= 2
        or not is_continuous(samples, data_interval)
        or any(sample.is_display_only for sample in samples)
        or not has_single_provenance(samples)
    ):
        return []

    first, last = samples[0], samples[-1]
    x = np.array([(sample.start_date - first.start_date).total_seconds() for sample in samples])
    y = np.array([sample.quantity for sample in samples])
    if np.ptp(x) == 0:
        return []
    slope = float(np.polyfit(x, y, 1)[0])
    if not np.isfinite(slope):
        return []

    date = date_floored(last.start_date, delta)
    end = date_ceiled(last.start_date + duration, delta)
    values = []
    while True:
        elapsed = max(0.0, (date - last.start_date).total_seconds())
        values.append(GlucoseEffect(start_date=date, quantity=elapsed * slope))
        date += delta
        if date > end:
            break
    return values


def predict_glucose(
    starting_glucose: GlucoseSample,
    effects: Sequence[Sequence[GlucoseEffect]],
    momentum: Sequence[GlucoseEffect] = (),
) -> List[PredictedGlucoseValue]:
    """
    Sums effect timelines onto a starting glucose value.

    Momentum is blended in linearly: fully weighted at the starting glucose and
    fading out by the last momentum point.
    """
    changes: Dict[datetime, float] = {}

    for timeline in effects:
        if not timeline:
            continue
        previous = timeline[0].quantity
        for effect in timeline:
            changes[effect.start_date] = changes.get(effect.start_date, 0.0) + effect.quantity - previous
            previous = effect.quantity

    if len(momentum) > 2:
        previous = momentum[0].quantity
        blend_count = len(momentum) - 2
        time_delta = (momentum[1].start_date - momentum[0].start_date).total_seconds()
        momentum_offset = (starting_glucose.start_date - momentum[0].start_date).total_seconds()
        blend_slope = 1.0 / blend_count
        blend_offset = momentum_offset / time_delta * blend_slope

        for index, effect in enumerate(momentum):
            change = effect.quantity - previous
            split = min(1.0, max(0.0, (len(momentum) - index) / blend_count - blend_slope + blend_offset))
            changes[effect.start_date] = (1.0 - split) * changes.get(effect.start_date, 0.0) + split * change
            previous = effect.quantity

    prediction = [PredictedGlucoseValue(starting_glucose.start_date, starting_glucose.quantity)]
    for date in sorted(changes):
        if date > starting_glucose.start_date:
            prediction.append(PredictedGlucoseValue(date, prediction[-1].quantity + changes[date]))
    return prediction
