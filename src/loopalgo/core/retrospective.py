from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional, Sequence

from loopalgo.core.glucose.math import decay_effect
from loopalgo.core.glucose.types import GlucoseChange, GlucoseEffect, GlucoseSample

logger = logging.getLogger("loopalgo.retrospective")


class RetrospectiveCorrection(ABC):
    """
    Derives a continued glucose effect from recent prediction discrepancies.

    Subclasses implement :meth:`compute_effect`, which also records the overall
    correction in :attr:`total_glucose_correction_effect`.
    """

    retrospection_interval = timedelta(minutes=30)

    def __init__(self, effect_duration: timedelta = timedelta(minutes=60), delta: timedelta = timedelta(minutes=5)):
        self.effect_duration = effect_duration
        self.delta = delta
        self.total_glucose_correction_effect: Optional[float] = None

    @staticmethod
    def _current_discrepancy(
        starting_glucose: GlucoseSample,
        discrepancies_summed: Optional[Sequence[GlucoseChange]],
        recency_interval: timedelta,
    ) -> Optional[GlucoseChange]:
        if not discrepancies_summed:
            return None
        current = discrepancies_summed[-1]
        if current.end_date <= starting_glucose.start_date - recency_interval:
            logger.debug("Discrepancy ending %s is too old for correction", current.end_date)
            return None
        return current

    @abstractmethod
    def compute_effect(
        self,
        starting_glucose: GlucoseSample,
        discrepancies_summed: Optional[Sequence[GlucoseChange]],
        recency_interval: timedelta,
        grouping_interval: timedelta,
    ) -> List[GlucoseEffect]:
        """
        Calculates the correction effect from a timeline of summed discrepancies.

        Args:
            starting_glucose: The latest glucose sample; the effect starts here.
            discrepancies_summed: Discrepancies (ICE minus carb effect) summed
                over ``grouping_interval``, oldest first.
            recency_interval: The latest discrepancy must end within this
                interval of the starting glucose, otherwise no effect is produced.
            grouping_interval: Nominal duration of each summed discrepancy.

        Returns:
            Cumulative glucose effects, empty when there is no recent discrepancy.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(effect_duration={self.effect_duration}, "
            f"total_glucose_correction_effect={self.total_glucose_correction_effect})"
        )


class StandardRetrospectiveCorrection(RetrospectiveCorrection):
    """Continues the most recent discrepancy as a velocity decaying to zero over the effect duration."""

    def compute_effect(
        self,
        starting_glucose: GlucoseSample,
        discrepancies_summed: Optional[Sequence[GlucoseChange]],
        recency_interval: timedelta,
        grouping_interval: timedelta,
    ) -> List[GlucoseEffect]:
        current = self._current_discrepancy(starting_glucose, discrepancies_summed, recency_interval)
        if current is None:
            self.total_glucose_correction_effect = None
            return []

        discrepancy_time = max(current.duration, grouping_interval)
        velocity = current.quantity / discrepancy_time.total_seconds()
        self.total_glucose_correction_effect = current.quantity

        return decay_effect(starting_glucose, velocity, self.effect_duration, self.delta)


class IntegralRetrospectiveCorrection(RetrospectiveCorrection):
    """
    Proportional-integral-differential correction over the persistent run of
    same-sign discrepancies.

    The integral term accumulates consecutive discrepancies with the same sign
    as the current one, and extends the effect duration for each of them up to
    ``maximum_correction_effect_duration``. The differential term only applies
    when discrepancies are shrinking.
    """

    retrospection_interval = timedelta(minutes=180)

    current_discrepancy_gain = 1.0
    persistent_discrepancy_gain = 2.0
    correction_time_constant = timedelta(minutes=60)
    differential_gain = 2.0
    maximum_correction_effect_duration = timedelta(minutes=180)

    @property
    def integral_forget(self) -> float:
        return math.exp(-self.delta / self.correction_time_constant)

    @property
    def integral_gain(self) -> float:
        forget = self.integral_forget
        return ((1 - forget) / forget) * (self.persistent_discrepancy_gain - self.current_discrepancy_gain)

    @property
    def proportional_gain(self) -> float:
        return self.current_discrepancy_gain - self.integral_gain

    def compute_effect(
        self,
        starting_glucose: GlucoseSample,
        discrepancies_summed: Optional[Sequence[GlucoseChange]],
        recency_interval: timedelta,
        grouping_interval: timedelta,
    ) -> List[GlucoseEffect]:
        current = self._current_discrepancy(starting_glucose, discrepancies_summed, recency_interval)
        if current is None or discrepancies_summed is None:
            self.total_glucose_correction_effect = None
            return []

        current_value = current.quantity
        window_start = starting_glucose.start_date - self.retrospection_interval

        integral_correction = 0.0
        effect_minutes = self.effect_duration - 2 * self.delta
        for discrepancy in reversed(discrepancies_summed):
            if discrepancy.end_date < window_start:
                break
            if discrepancy.quantity == 0 or (discrepancy.quantity > 0) != (current_value > 0):
                break
            integral_correction = self.integral_forget * integral_correction + discrepancy.quantity
            effect_minutes += 2 * self.delta

        effect_duration = min(effect_minutes, self.maximum_correction_effect_duration)

        differential_correction = 0.0
        if len(discrepancies_summed) > 1:
            differential = current_value - discrepancies_summed[-2].quantity
            if differential < 0:
                differential_correction = self.differential_gain * differential

        scaled_correction = (
            self.proportional_gain * current_value
            + self.integral_gain * integral_correction
            + differential_correction
        )
        self.total_glucose_correction_effect = scaled_correction

        discrepancy_time = max(current.duration, grouping_interval)
        velocity = scaled_correction / discrepancy_time.total_seconds()

        logger.debug(
            "Integral correction %.2f mg/dL over %s (integral %.2f)",
            scaled_correction,
            effect_duration,
            integral_correction,
        )
        return decay_effect(starting_glucose, velocity, effect_duration, self.delta)
