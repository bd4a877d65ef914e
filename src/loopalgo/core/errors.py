from __future__ import annotations


class LoopAlgorithmError(Exception):
    """Base class for failures that prevent a dose recommendation."""

    code = "loopAlgorithmError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class MissingGlucoseError(LoopAlgorithmError):
    """No glucose history was provided."""

    code = "missingGlucose"


class GlucoseTooOldError(LoopAlgorithmError):
    """The most recent glucose sample is older than the recency interval."""

    code = "glucoseTooOld"


class BasalTimelineIncompleteError(LoopAlgorithmError):
    """No basal schedule segment starts at or before the prediction start."""

    code = "basalTimelineIncomplete"


class MissingSuspendThresholdError(LoopAlgorithmError):
    """No suspend threshold and no target range to derive one from."""

    code = "missingSuspendThreshold"


class SensitivityTimelineStartsTooLateError(LoopAlgorithmError):
    """The sensitivity timeline starts after the interval needed for dose effects."""

    code = "sensitivityTimelineStartsTooLate"


class SensitivityTimelineEndsTooEarlyError(LoopAlgorithmError):
    """The sensitivity timeline ends before the forecast window is covered."""

    code = "sensitivityTimelineEndsTooEarly"


class FutureBasalNotAllowedError(LoopAlgorithmError):
    """Automated recommendations cannot be made with basal delivery past the prediction start."""

    code = "futureBasalNotAllowed"


class TargetTimelineIncompleteError(LoopAlgorithmError):
    """No correction range segment starts at or before the prediction start."""

    code = "targetTimelineIncomplete"
