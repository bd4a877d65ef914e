from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pandas as pd

from loopalgo.core.algorithm import AlgorithmOutput
from loopalgo.core.carbs.math import CarbStatus


def _dated_values(values: Sequence[Any]) -> List[Dict[str, Any]]:
    return [{"startDate": value.start_date.isoformat(), "quantity": value.quantity} for value in values]


def _ranged_values(values: Sequence[Any]) -> List[Dict[str, Any]]:
    return [
        {
            "startDate": value.start_date.isoformat(),
            "endDate": value.end_date.isoformat(),
            "quantity": value.quantity,
        }
        for value in values
    ]


def _carb_status(status: CarbStatus) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "startDate": status.start_date.isoformat(),
        "grams": status.quantity,
        "carbSensitivityFactor": status.carb_sensitivity_factor,
    }
    absorption_time = status.absorption_time
    if absorption_time is not None:
        result["absorptionTime"] = absorption_time.total_seconds()
    absorption = status.absorption
    if absorption is not None:
        result["absorption"] = {
            "observed": absorption.observed,
            "clamped": absorption.clamped,
            "total": absorption.total,
            "remaining": absorption.remaining,
            "estimatedTimeRemaining": absorption.estimated_time_remaining.total_seconds(),
        }
    return result


def serialize_output(output: AlgorithmOutput) -> Dict[str, Any]:
    """Converts an algorithm output to a JSON-ready mapping."""
    payload: Dict[str, Any] = {
        "predictedGlucose": _dated_values(output.predicted_glucose),
        "activeInsulin": output.active_insulin,
        "activeCarbs": output.active_carbs,
        "effects": {
            "insulin": _dated_values(output.effects.insulin),
            "carbs": _dated_values(output.effects.carbs),
            "retrospectiveCorrection": _dated_values(output.effects.retrospective_correction),
            "momentum": _dated_values(output.effects.momentum),
            "insulinCounteraction": _ranged_values(output.effects.insulin_counteraction),
            "retrospectiveGlucoseDiscrepancies": _ranged_values(output.effects.retrospective_glucose_discrepancies),
            "totalGlucoseCorrectionEffect": output.effects.total_glucose_correction_effect,
            "carbStatus": [_carb_status(status) for status in output.effects.carb_status],
        },
    }
    if output.error is not None:
        payload["error"] = {"code": output.error.code, "message": output.error.message}
    elif output.recommendation is not None:
        payload["recommendation"] = output.recommendation.to_dict()
    return payload


def prediction_frame(output: AlgorithmOutput) -> pd.DataFrame:
    """
    Aligns the prediction and its component effects on the prediction dates.

    Component effects are cumulative and are left empty where they do not
    share a date with the prediction.
    """
    frame = pd.DataFrame(
        {
            "date": [value.start_date for value in output.predicted_glucose],
            "predicted_glucose": [value.quantity for value in output.predicted_glucose],
        }
    )
    components = {
        "insulin_effect": output.effects.insulin,
        "carb_effect": output.effects.carbs,
        "retrospective_correction": output.effects.retrospective_correction,
        "momentum_effect": output.effects.momentum,
    }
    for column, effects in components.items():
        series = pd.Series({effect.start_date: effect.quantity for effect in effects}, dtype=float)
        frame[column] = frame["date"].map(series)
    return frame


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True))


def write_prediction_csv(path: Path, output: AlgorithmOutput) -> None:
    prediction_frame(output).to_csv(path, index=False)
