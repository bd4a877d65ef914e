from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loopalgo.core.carbs.absorption import CarbAbsorptionModel
from loopalgo.core.glucose.types import DEFAULT_PROVENANCE
from loopalgo.core.insulin.models import InsulinType

RecommendationTypeName = Literal["manualBolus", "automaticBolus", "tempBasal"]


class ScheduleValueModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    startDate: datetime
    endDate: datetime
    value: float

    @model_validator(mode="after")
    def _check_dates(self) -> "ScheduleValueModel":
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        return self


class TargetEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    startDate: datetime
    endDate: datetime
    lowerBound: float = Field(gt=0)
    upperBound: float = Field(gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "TargetEntryModel":
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        if self.lowerBound > self.upperBound:
            raise ValueError("lowerBound must not exceed upperBound")
        return self


class GlucoseSampleModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: datetime
    value: float = Field(gt=0)
    provenanceIdentifier: str = DEFAULT_PROVENANCE
    isDisplayOnly: bool = False
    wasUserEntered: bool = False
    trend: Optional[int] = Field(default=None, ge=1, le=7)


class InsulinDoseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["basal", "bolus"]
    startDate: datetime
    endDate: datetime
    volume: float = Field(ge=0)
    insulinType: Optional[InsulinType] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "InsulinDoseModel":
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        return self


class CarbEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: datetime
    grams: float = Field(ge=0)
    absorptionTime: Optional[float] = Field(default=None, gt=0, description="Seconds")


class AlgorithmInputModel(BaseModel):
    """Wire format of an algorithm input fixture. Glucose values are mg/dL."""

    model_config = ConfigDict(extra="forbid")

    predictionStart: datetime
    glucoseHistory: List[GlucoseSampleModel] = Field(default_factory=list)
    doses: List[InsulinDoseModel] = Field(default_factory=list)
    carbEntries: List[CarbEntryModel] = Field(default_factory=list)
    basal: List[ScheduleValueModel] = Field(default_factory=list)
    sensitivity: List[ScheduleValueModel] = Field(default_factory=list)
    carbRatio: List[ScheduleValueModel] = Field(default_factory=list)
    target: List[TargetEntryModel] = Field(default_factory=list)
    suspendThreshold: Optional[float] = Field(default=None, gt=0)
    maxBolus: float = Field(ge=0)
    maxBasalRate: float = Field(ge=0)
    useIntegralRetrospectiveCorrection: bool = False
    includePositiveVelocityAndRC: bool = True
    useMidAbsorptionISF: bool = False
    carbAbsorptionModel: CarbAbsorptionModel = CarbAbsorptionModel.PIECEWISE_LINEAR
    recommendationInsulinType: InsulinType = InsulinType.NOVOLOG
    recommendationType: RecommendationTypeName = "automaticBolus"
    automaticBolusApplicationFactor: Optional[float] = Field(default=None, ge=0, le=1)

    @field_validator("suspendThreshold", mode="before")
    @classmethod
    def _normalize_threshold(cls, value: Any) -> Any:
        # Some exported fixtures encode a missing threshold as a unit dictionary
        if isinstance(value, dict):
            return value.get("value")
        return value

    @field_validator("sensitivity", "carbRatio")
    @classmethod
    def _check_positive(cls, values: List[ScheduleValueModel]) -> List[ScheduleValueModel]:
        for item in values:
            if item.value <= 0:
                raise ValueError("schedule values must be positive")
        return values

    @field_validator("glucoseHistory", "doses", "carbEntries", "basal", "sensitivity", "carbRatio", "target")
    @classmethod
    def _check_sorted(cls, values: List[Any]) -> List[Any]:
        dates = [getattr(item, "date", None) or getattr(item, "startDate") for item in values]
        if any(later < earlier for earlier, later in zip(dates, dates[1:])):
            raise ValueError("entries must be sorted by date")
        return values
