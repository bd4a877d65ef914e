from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional

from loopalgo.core.insulin.models import InsulinType

logger = logging.getLogger("loopalgo.insulin")

_EPSILON = 1e-12


class InsulinDeliveryType(str, Enum):
    BOLUS = "bolus"
    BASAL = "basal"


class DoseType(str, Enum):
    BASAL = "basal"
    TEMP_BASAL = "tempBasal"
    BOLUS = "bolus"
    SUSPEND = "suspend"
    RESUME = "resume"


class DoseUnit(str, Enum):
    UNITS = "U"
    UNITS_PER_HOUR = "U/hr"


def _hours(duration: timedelta) -> float:
    return duration.total_seconds() / 3600.0


@dataclass(frozen=True)
class InsulinDose:
    """A delivery record: a bolus or a basal segment delivering ``volume`` units."""
    delivery_type: InsulinDeliveryType
    start_date: datetime
    end_date: datetime
    volume: float
    insulin_type: Optional[InsulinType] = None

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def units_per_hour(self) -> float:
        hours = _hours(self.duration)
        if hours <= 0:
            return 0.0
        return self.volume / hours

    @property
    def is_basal(self) -> bool:
        return self.delivery_type == InsulinDeliveryType.BASAL

    def trimmed(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> "InsulinDose":
        """Clips the dose to ``[start, end]``, scaling volume by the kept fraction."""
        new_start = max(start or self.start_date, self.start_date)
        new_end = max(new_start, min(end or self.end_date, self.end_date))

        original = self.duration.total_seconds()
        volume = self.volume
        if original > _EPSILON and (new_start > self.start_date or new_end < self.end_date):
            volume = self.volume * (new_end - new_start).total_seconds() / original

        return replace(self, start_date=new_start, end_date=new_end, volume=volume)


def trimmed_doses(
    doses: Iterable[InsulinDose],
    end: datetime,
    only_trim_basal: bool = True,
) -> List[InsulinDose]:
    """
    Truncates basal delivery at ``end``.

    Used before automated dosing so that the running temp basal is treated as
    cancelled at the prediction start. Basal records starting after ``end`` are
    kept as zero-length records at their start date.
    """
    result = []
    for dose in doses:
        if only_trim_basal and not dose.is_basal:
            result.append(dose)
            continue
        result.append(dose.trimmed(end=end))
    return result


@dataclass(frozen=True)
class DoseEntry:
    """
    A raw pump event.

    Basal, temp basal, suspend and resume events may overlap and must be
    reconciled before use with :func:`reconciled`.
    """
    type: DoseType
    start_date: datetime
    end_date: datetime
    value: float
    unit: DoseUnit
    delivered_units: Optional[float] = None
    is_mutable: bool = False
    scheduled_basal_rate: Optional[float] = None
    insulin_type: Optional[InsulinType] = None
    sync_identifier: Optional[str] = None
    automatic: Optional[bool] = None

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def programmed_units(self) -> float:
        if self.unit == DoseUnit.UNITS_PER_HOUR:
            return self.value * _hours(self.duration)
        return self.value

    @property
    def unit_rate(self) -> float:
        if self.unit == DoseUnit.UNITS_PER_HOUR:
            return self.value
        hours = _hours(self.duration)
        if hours <= 0:
            return 0.0
        return self.value / hours

    @property
    def units_in_deliverable_increments(self) -> float:
        # No pump-specific rounding is applied to programmed volume
        return self.programmed_units

    @property
    def net_units(self) -> float:
        return self.delivered_units if self.delivered_units is not None else self.programmed_units

    def trimmed(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        sync_identifier: Optional[str] = None,
    ) -> "DoseEntry":
        original = self.duration.total_seconds()
        new_start = max(start or self.start_date, self.start_date)
        new_end = max(new_start, min(end or self.end_date, self.end_date))

        delivered = self.delivered_units
        value = self.value
        if original > _EPSILON and (new_start > self.start_date or new_end < self.end_date):
            updated = self.units_in_deliverable_increments * (new_end - new_start).total_seconds() / original
            if delivered is not None:
                delivered = updated
            if self.unit == DoseUnit.UNITS:
                value = updated

        return replace(
            self,
            start_date=new_start,
            end_date=new_end,
            value=value,
            delivered_units=delivered,
            sync_identifier=sync_identifier if sync_identifier is not None else self.sync_identifier,
        )

    def resolving_delivery(self) -> "DoseEntry":
        """Fills in delivered units for finalized records that lack them."""
        if self.is_mutable or self.delivered_units is not None:
            return self
        if self.unit == DoseUnit.UNITS:
            return replace(self, delivered_units=self.value)
        if self.type == DoseType.TEMP_BASAL:
            return replace(self, delivered_units=self.units_in_deliverable_increments)
        if self.type == DoseType.BASAL:
            return replace(self, delivered_units=self.programmed_units)
        return self

    def to_insulin_dose(self) -> Optional[InsulinDose]:
        """Converts a reconciled entry to an :class:`InsulinDose`; resume events have none."""
        if self.type == DoseType.BOLUS:
            return InsulinDose(
                delivery_type=InsulinDeliveryType.BOLUS,
                start_date=self.start_date,
                end_date=self.end_date,
                volume=self.net_units,
                insulin_type=self.insulin_type,
            )
        if self.type in (DoseType.BASAL, DoseType.TEMP_BASAL):
            return InsulinDose(
                delivery_type=InsulinDeliveryType.BASAL,
                start_date=self.start_date,
                end_date=self.end_date,
                volume=self.net_units,
                insulin_type=self.insulin_type,
            )
        if self.type == DoseType.SUSPEND:
            return InsulinDose(
                delivery_type=InsulinDeliveryType.BASAL,
                start_date=self.start_date,
                end_date=self.end_date,
                volume=0.0,
                insulin_type=self.insulin_type,
            )
        return None


def reconciled(entries: Iterable[DoseEntry]) -> List[DoseEntry]:
    """
    Maps overlapping pump events to a non-overlapping delivery timeline.

    Args:
        entries: Pump events sorted by start date.

    Returns:
        Basal, temp basal, suspend and bolus records with delivered units resolved.
    """
    result: List[DoseEntry] = []
    last_suspend: Optional[DoseEntry] = None
    last_basal: Optional[DoseEntry] = None

    for dose in entries:
        if dose.type == DoseType.BOLUS:
            result.append(dose)

        elif dose.type in (DoseType.BASAL, DoseType.TEMP_BASAL):
            if last_suspend is None and last_basal is not None:
                end_date = min(last_basal.end_date, dose.start_date)
                if end_date > last_basal.start_date:
                    result.append(last_basal.trimmed(end=end_date))
            elif last_suspend is not None:
                # Suspend with no matching resume; close it when delivery restarts
                logger.debug("Closing suspend at %s without a resume event", dose.start_date)
                result.append(replace(last_suspend, end_date=dose.start_date))
                last_suspend = None
            last_basal = dose

        elif dose.type == DoseType.RESUME:
            if last_suspend is not None:
                result.append(replace(last_suspend, end_date=dose.start_date))
                last_suspend = None

                if last_basal is not None:
                    if last_basal.end_date > dose.end_date:
                        last_basal = replace(
                            last_basal,
                            start_date=dose.end_date,
                            delivered_units=None,
                            sync_identifier=dose.sync_identifier,
                        )
                    else:
                        last_basal = None

        elif dose.type == DoseType.SUSPEND:
            if last_basal is not None:
                result.append(
                    replace(
                        last_basal,
                        end_date=min(last_basal.end_date, dose.start_date),
                        delivered_units=None,
                    )
                )
                if last_basal.end_date <= dose.start_date:
                    last_basal = None
            last_suspend = dose

    if last_suspend is not None:
        result.append(replace(last_suspend, end_date=last_suspend.start_date, is_mutable=True))
    elif last_basal is not None and last_basal.end_date > last_basal.start_date:
        result.append(last_basal)

    return [entry.resolving_delivery() for entry in result]


def insulin_doses_from_entries(entries: Iterable[DoseEntry]) -> List[InsulinDose]:
    """Reconciles raw pump events and converts them to delivery records."""
    doses = []
    for entry in reconciled(entries):
        dose = entry.to_insulin_dose()
        if dose is not None:
            doses.append(dose)
    return doses
