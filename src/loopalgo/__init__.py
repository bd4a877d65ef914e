# src/loopalgo/__init__.py

__version__ = "0.1.0"

# Configuration and errors
from .core.constants import LoopConstants
from .core.errors import (
    LoopAlgorithmError,
    MissingGlucoseError,
    GlucoseTooOldError,
    BasalTimelineIncompleteError,
    MissingSuspendThresholdError,
    SensitivityTimelineStartsTooLateError,
    SensitivityTimelineEndsTooEarlyError,
    FutureBasalNotAllowedError,
    TargetTimelineIncompleteError,
)
from .core.timeline import AbsoluteScheduleValue, DateInterval

# Domain types
from .core.glucose.types import (
    GlucoseSample,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseChange,
    GlucoseRange,
    GlucoseTrend,
    PredictedGlucoseValue,
)
from .core.insulin.models import (
    ExponentialInsulinModel,
    ExponentialInsulinModelPreset,
    InsulinType,
    PresetInsulinModelProvider,
)
from .core.insulin.doses import DoseEntry, DoseType, DoseUnit, InsulinDeliveryType, InsulinDose, reconciled
from .core.insulin.math import BasalRelativeDose
from .core.carbs.absorption import CarbAbsorptionModel
from .core.carbs.math import CarbEntry, CarbStatus, AbsorbedCarbValue

# Dosing
from .core.dosing import (
    InsulinCorrection,
    InRange,
    AboveRange,
    EntirelyBelowRange,
    Suspend,
    BolusRecommendationNotice,
    BolusRecommendationNoticeType,
    TempBasalRecommendation,
    ManualBolusRecommendation,
    AutomaticDoseRecommendation,
    DoseRecommendation,
)

# Algorithm entry points
from .core.algorithm import (
    AlgorithmEffectsOptions,
    AlgorithmInput,
    AlgorithmOutput,
    LoopPrediction,
    RecommendationType,
    generate_prediction,
    recommend_dose,
    run,
)

__all__ = [
    "__version__",
    "LoopConstants",
    "LoopAlgorithmError",
    "MissingGlucoseError",
    "GlucoseTooOldError",
    "BasalTimelineIncompleteError",
    "MissingSuspendThresholdError",
    "SensitivityTimelineStartsTooLateError",
    "SensitivityTimelineEndsTooEarlyError",
    "FutureBasalNotAllowedError",
    "TargetTimelineIncompleteError",
    "AbsoluteScheduleValue",
    "DateInterval",
    "GlucoseSample",
    "GlucoseEffect",
    "GlucoseEffectVelocity",
    "GlucoseChange",
    "GlucoseRange",
    "GlucoseTrend",
    "PredictedGlucoseValue",
    "ExponentialInsulinModel",
    "ExponentialInsulinModelPreset",
    "InsulinType",
    "PresetInsulinModelProvider",
    "DoseEntry",
    "DoseType",
    "DoseUnit",
    "InsulinDeliveryType",
    "InsulinDose",
    "reconciled",
    "BasalRelativeDose",
    "CarbAbsorptionModel",
    "CarbEntry",
    "CarbStatus",
    "AbsorbedCarbValue",
    "InsulinCorrection",
    "InRange",
    "AboveRange",
    "EntirelyBelowRange",
    "Suspend",
    "BolusRecommendationNotice",
    "BolusRecommendationNoticeType",
    "TempBasalRecommendation",
    "ManualBolusRecommendation",
    "AutomaticDoseRecommendation",
    "DoseRecommendation",
    "AlgorithmEffectsOptions",
    "AlgorithmInput",
    "AlgorithmOutput",
    "LoopPrediction",
    "RecommendationType",
    "generate_prediction",
    "recommend_dose",
    "run",
]
