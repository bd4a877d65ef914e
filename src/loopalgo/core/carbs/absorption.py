from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum


class CarbAbsorptionCurve:
    """
    Shape of carbohydrate absorption over normalized time.

    Subclasses map a fraction of the absorption time to the fraction absorbed,
    its inverse, and the normalized absorption rate.
    """

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        raise NotImplementedError

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        raise NotImplementedError

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        raise NotImplementedError

    def absorbed_carbs(self, total: float, time: timedelta, absorption_time: timedelta) -> float:
        percent_time = time.total_seconds() / absorption_time.total_seconds()
        return total * self.percent_absorption_at_percent_time(percent_time)

    def unabsorbed_carbs(self, total: float, time: timedelta, absorption_time: timedelta) -> float:
        percent_time = time.total_seconds() / absorption_time.total_seconds()
        return total * (1.0 - self.percent_absorption_at_percent_time(percent_time))

    def time_to_absorb(self, percent_absorbed: float, total_absorption_time: timedelta) -> timedelta:
        return self.percent_time_at_percent_absorption(percent_absorbed) * total_absorption_time

    def absorption_time(self, percent_absorbed: float, time: timedelta) -> timedelta:
        """Total absorption time implied by ``percent_absorbed`` having been absorbed by ``time``."""
        percent_time = max(self.percent_time_at_percent_absorption(percent_absorbed), sys.float_info.epsilon)
        return time / percent_time


class LinearAbsorption(CarbAbsorptionCurve):
    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        if percent_time <= 0:
            return 0.0
        if percent_time < 1:
            return percent_time
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        if percent_absorption <= 0:
            return 0.0
        if percent_absorption < 1:
            return percent_absorption
        return 1.0

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        if 0 < percent_time <= 1:
            return 1.0
        return 0.0


class ParabolicAbsorption(CarbAbsorptionCurve):
    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        if t < 0:
            return 0.0
        if t <= 0.5:
            return 2.0 * t ** 2
        if t < 1:
            return -1.0 + 2.0 * t * (2.0 - t)
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        a = percent_absorption
        if a <= 0:
            return 0.0
        if a <= 0.5:
            return math.sqrt(0.5 * a)
        if a < 1:
            return 1.0 - math.sqrt(0.5 * (1.0 - a))
        return 1.0

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        if 0 < t <= 0.5:
            return 4.0 * t
        if 0.5 < t < 1:
            return 4.0 - 4.0 * t
        return 0.0


class PiecewiseLinearAbsorption(CarbAbsorptionCurve):
    """Absorption rate rises linearly, plateaus, then falls linearly to zero."""

    def __init__(self, percent_end_of_rise: float = 0.15, percent_start_of_fall: float = 0.5):
        self.percent_end_of_rise = percent_end_of_rise
        self.percent_start_of_fall = percent_start_of_fall

    @property
    def scale(self) -> float:
        return 2.0 / (1.0 + self.percent_start_of_fall - self.percent_end_of_rise)

    def percent_absorption_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if t <= 0:
            return 0.0
        if t < rise:
            return 0.5 * scale * t ** 2 / rise
        if t < fall:
            return scale * (t - 0.5 * rise)
        if t < 1:
            return 1.0 - 0.5 * scale * (1.0 - t) ** 2 / (1.0 - fall)
        return 1.0

    def percent_time_at_percent_absorption(self, percent_absorption: float) -> float:
        a = percent_absorption
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if a <= 0:
            return 0.0
        if a < 0.5 * scale * rise:
            return math.sqrt(2.0 * rise * a / scale)
        if a < 1.0 - 0.5 * scale * (1.0 - fall):
            return 0.5 * rise + a / scale
        if a < 1:
            return 1.0 - math.sqrt(2.0 * (1.0 - fall) * (1.0 - a) / scale)
        return 1.0

    def percent_rate_at_percent_time(self, percent_time: float) -> float:
        t = percent_time
        rise, fall, scale = self.percent_end_of_rise, self.percent_start_of_fall, self.scale
        if t <= 0:
            return 0.0
        if t < rise:
            return scale * t / rise
        if t < fall:
            return scale
        if t < 1:
            return scale * (1.0 - t) / (1.0 - fall)
        return 0.0


@dataclass(frozen=True)
class CarbModelSettings:
    curve: CarbAbsorptionCurve
    initial_absorption_time_overrun: float
    adaptive_absorption_rate: bool = False
    adaptive_rate_standby_interval_fraction: float = 0.2


class CarbAbsorptionModel(str, Enum):
    LINEAR = "linear"
    NONLINEAR = "nonlinear"
    PIECEWISE_LINEAR = "piecewiseLinear"
    ADAPTIVE_RATE_NONLINEAR = "adaptiveRateNonlinear"

    @property
    def settings(self) -> CarbModelSettings:
        if self is CarbAbsorptionModel.LINEAR:
            return CarbModelSettings(LinearAbsorption(), initial_absorption_time_overrun=1.5)
        if self is CarbAbsorptionModel.NONLINEAR:
            return CarbModelSettings(ParabolicAbsorption(), initial_absorption_time_overrun=1.0)
        if self is CarbAbsorptionModel.ADAPTIVE_RATE_NONLINEAR:
            return CarbModelSettings(
                PiecewiseLinearAbsorption(),
                initial_absorption_time_overrun=1.0,
                adaptive_absorption_rate=True,
                adaptive_rate_standby_interval_fraction=0.2,
            )
        return CarbModelSettings(PiecewiseLinearAbsorption(), initial_absorption_time_overrun=1.0)

    @property
    def curve(self) -> CarbAbsorptionCurve:
        return self.settings.curve
