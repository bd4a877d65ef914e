from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from loopalgo.core.algorithm import AlgorithmInput, RecommendationType
from loopalgo.core.carbs.math import CarbEntry
from loopalgo.core.glucose.types import GlucoseRange, GlucoseSample, GlucoseTrend
from loopalgo.core.insulin.doses import InsulinDeliveryType, InsulinDose
from loopalgo.core.timeline import AbsoluteScheduleValue, ensure_utc
from loopalgo.validation.schemas import AlgorithmInputModel, ScheduleValueModel


def _read_payload(path: Path) -> Dict[str, Any]:
    text = path.read_text()
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def validate_algorithm_input_dict(data: Dict[str, Any]) -> AlgorithmInputModel:
    return AlgorithmInputModel.model_validate(data)


def load_algorithm_input_model(path: Union[str, Path]) -> AlgorithmInputModel:
    return validate_algorithm_input_dict(_read_payload(Path(path)))


def _schedule(values: List[ScheduleValueModel]) -> List[AbsoluteScheduleValue[float]]:
    return [
        AbsoluteScheduleValue(ensure_utc(item.startDate), ensure_utc(item.endDate), item.value)
        for item in values
    ]


def build_algorithm_input(model: AlgorithmInputModel) -> AlgorithmInput:
    """Converts a validated fixture into the algorithm's domain input."""
    glucose = [
        GlucoseSample(
            start_date=ensure_utc(sample.date),
            quantity=sample.value,
            is_display_only=sample.isDisplayOnly,
            was_user_entered=sample.wasUserEntered,
            provenance_identifier=sample.provenanceIdentifier,
            trend=GlucoseTrend(sample.trend) if sample.trend is not None else None,
        )
        for sample in model.glucoseHistory
    ]
    doses = [
        InsulinDose(
            delivery_type=InsulinDeliveryType(dose.type),
            start_date=ensure_utc(dose.startDate),
            end_date=ensure_utc(dose.endDate),
            volume=dose.volume,
            insulin_type=dose.insulinType,
        )
        for dose in model.doses
    ]
    carbs = [
        CarbEntry(
            start_date=ensure_utc(entry.date),
            grams=entry.grams,
            absorption_time=timedelta(seconds=entry.absorptionTime) if entry.absorptionTime is not None else None,
        )
        for entry in model.carbEntries
    ]
    target = [
        AbsoluteScheduleValue(
            ensure_utc(item.startDate),
            ensure_utc(item.endDate),
            GlucoseRange(item.lowerBound, item.upperBound),
        )
        for item in model.target
    ]
    return AlgorithmInput(
        prediction_start=ensure_utc(model.predictionStart),
        glucose_history=glucose,
        doses=doses,
        carb_entries=carbs,
        basal=_schedule(model.basal),
        sensitivity=_schedule(model.sensitivity),
        carb_ratio=_schedule(model.carbRatio),
        target=target,
        max_bolus=model.maxBolus,
        max_basal_rate=model.maxBasalRate,
        suspend_threshold=model.suspendThreshold,
        use_integral_retrospective_correction=model.useIntegralRetrospectiveCorrection,
        include_positive_velocity_and_rc=model.includePositiveVelocityAndRC,
        use_mid_absorption_isf=model.useMidAbsorptionISF,
        carb_absorption_model=model.carbAbsorptionModel,
        recommendation_insulin_type=model.recommendationInsulinType,
        recommendation_type=RecommendationType(model.recommendationType),
        automatic_bolus_application_factor=model.automaticBolusApplicationFactor,
    )


def load_algorithm_input(path: Union[str, Path]) -> AlgorithmInput:
    """
    Loads a JSON or YAML fixture into an :class:`AlgorithmInput`.

    Raises:
        ValueError: If the file does not match the fixture schema. The message
            lists each offending field on its own line.
    """
    try:
        model = load_algorithm_input_model(path)
    except ValidationError as exc:
        raise ValueError("\n".join(format_validation_error(exc))) from exc
    return build_algorithm_input(model)


def input_warnings(model: AlgorithmInputModel) -> List[str]:
    warnings: List[str] = []
    if not model.glucoseHistory:
        warnings.append("glucoseHistory: empty, no recommendation can be made")
    if model.suspendThreshold is None:
        prediction_start = ensure_utc(model.predictionStart)
        if not any(ensure_utc(entry.startDate) <= prediction_start for entry in model.target):
            warnings.append("suspendThreshold: missing and no target to fall back on, no recommendation can be made")
    for idx, entry in enumerate(model.carbEntries):
        if entry.grams > 250:
            warnings.append(f"carbEntries[{idx}]: {entry.grams}g is unusually high")
    for idx, dose in enumerate(model.doses):
        if dose.type == "bolus" and dose.volume > model.maxBolus > 0:
            warnings.append(f"doses[{idx}]: bolus of {dose.volume}U exceeds maxBolus")
    if model.glucoseHistory:
        latest = model.glucoseHistory[-1].date
        if ensure_utc(model.predictionStart) - ensure_utc(latest) >= timedelta(minutes=15):
            warnings.append("glucoseHistory: latest sample is older than 15 minutes")
    return warnings


def format_validation_error(error: ValidationError) -> List[str]:
    lines: List[str] = []
    for entry in error.errors():
        loc = ".".join(str(item) for item in entry.get("loc", []))
        msg = entry.get("msg", "Invalid value")
        lines.append(f"{loc}: {msg}")
    return lines
