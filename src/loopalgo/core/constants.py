from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass
class LoopConstants:
    """
    Central configuration of the intervals and factors used by the prediction
    and dosing engine. Passed explicitly into the algorithm entry points.
    """
    # Simulation grid
    delta: timedelta = timedelta(minutes=5)
    insulin_activity_duration: timedelta = timedelta(hours=6, minutes=10)

    # Input validation
    input_data_recency_interval: timedelta = timedelta(minutes=15)

    # Recommendations
    temp_basal_duration: timedelta = timedelta(minutes=30)
    default_automatic_bolus_application_factor: float = 0.4

    # Carb absorption
    max_carb_absorption_interval: timedelta = timedelta(hours=10)
    default_carb_absorption_time: timedelta = timedelta(hours=3)
    carb_absorption_time_overrun: float = 1.5
    carb_effect_delay: timedelta = timedelta(minutes=10)
    adaptive_standby_fraction: float = 0.2

    # Retrospective correction
    retrospective_correction_grouping_interval: timedelta = timedelta(minutes=30)
    retrospective_correction_grouping_slack: float = 1.01
    retrospective_correction_effect_duration: timedelta = timedelta(minutes=60)
    integral_retrospection_interval: timedelta = timedelta(minutes=180)

    # Momentum
    momentum_data_interval: timedelta = timedelta(minutes=15)
    momentum_duration: timedelta = timedelta(minutes=30)

    # Insulin counteraction
    glucose_velocity_min_interval: timedelta = timedelta(minutes=4)

    @property
    def retrospective_grouping_window(self) -> timedelta:
        return self.retrospective_correction_grouping_interval * self.retrospective_correction_grouping_slack


DEFAULT_CONSTANTS = LoopConstants()
