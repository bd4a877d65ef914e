from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Optional

DEFAULT_PROVENANCE = "loopalgo"


class GlucoseTrend(IntEnum):
    UP_UP_UP = 1
    UP_UP = 2
    UP = 3
    FLAT = 4
    DOWN = 5
    DOWN_DOWN = 6
    DOWN_DOWN_DOWN = 7

    @property
    def symbol(self) -> str:
        return {
            GlucoseTrend.UP_UP_UP: "⇈",
            GlucoseTrend.UP_UP: "↑",
            GlucoseTrend.UP: "↗",
            GlucoseTrend.FLAT: "→",
            GlucoseTrend.DOWN: "↘",
            GlucoseTrend.DOWN_DOWN: "↓",
            GlucoseTrend.DOWN_DOWN_DOWN: "⇊",
        }[self]

    @property
    def arrows(self) -> str:
        return {
            GlucoseTrend.UP_UP_UP: "↑↑",
            GlucoseTrend.UP_UP: "↑",
            GlucoseTrend.UP: "↗",
            GlucoseTrend.FLAT: "→",
            GlucoseTrend.DOWN: "↘",
            GlucoseTrend.DOWN_DOWN: "↓",
            GlucoseTrend.DOWN_DOWN_DOWN: "↓↓",
        }[self]

    @classmethod
    def from_arrows(cls, arrows: str) -> Optional["GlucoseTrend"]:
        for trend in cls:
            if trend.arrows == arrows:
                return trend
        return None


@dataclass(frozen=True)
class GlucoseSample:
    """A glucose measurement in mg/dL."""
    start_date: datetime
    quantity: float
    is_display_only: bool = False
    was_user_entered: bool = False
    provenance_identifier: str = DEFAULT_PROVENANCE
    trend: Optional[GlucoseTrend] = None

    @property
    def end_date(self) -> datetime:
        return self.start_date


@dataclass(frozen=True)
class GlucoseEffect:
    """A cumulative glucose effect (mg/dL) at a point in time."""
    start_date: datetime
    quantity: float

    @property
    def end_date(self) -> datetime:
        return self.start_date


@dataclass(frozen=True)
class GlucoseEffectVelocity:
    """A rate of glucose change (mg/dL per second) over an interval."""
    start_date: datetime
    end_date: datetime
    quantity: float

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def effect(self) -> GlucoseEffect:
        """The velocity integrated over its interval, dated at the interval end."""
        return GlucoseEffect(
            start_date=self.end_date,
            quantity=self.quantity * self.duration.total_seconds(),
        )


@dataclass
class GlucoseChange:
    """A glucose change (mg/dL) accumulated over an interval."""
    start_date: datetime
    end_date: datetime
    quantity: float

    def append(self, other: "GlucoseChange") -> None:
        self.start_date = min(other.start_date, self.start_date)
        self.end_date = max(other.end_date, self.end_date)
        self.quantity += other.quantity

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date


@dataclass(frozen=True)
class PredictedGlucoseValue:
    start_date: datetime
    quantity: float

    @property
    def end_date(self) -> datetime:
        return self.start_date


@dataclass(frozen=True)
class GlucoseRange:
    """A closed target range in mg/dL."""
    lower_bound: float
    upper_bound: float

    def __post_init__(self):
        if self.lower_bound > self.upper_bound:
            raise ValueError("lower_bound must not exceed upper_bound")

    @property
    def average(self) -> float:
        return (self.lower_bound + self.upper_bound) / 2.0

    def contains(self, value: float) -> bool:
        return self.lower_bound <= value <= self.upper_bound
