from .types import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseRange,
    GlucoseSample,
    GlucoseTrend,
    PredictedGlucoseValue,
)
