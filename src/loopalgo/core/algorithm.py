from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag
from typing import List, Optional, Sequence, Union

from loopalgo.core.carbs.absorption import CarbAbsorptionModel
from loopalgo.core.carbs.math import (
    CarbEntry,
    CarbStatus,
    dynamic_carbs_on_board,
    dynamic_glucose_effects,
    dynamic_glucose_effects_at_dates,
    map_carbs,
)
from loopalgo.core.constants import LoopConstants
from loopalgo.core.dosing import (
    AutomaticDoseRecommendation,
    DoseRecommendation,
    InsulinCorrection,
    insulin_correction,
    recommend_automatic_dose,
    recommend_manual_bolus,
    recommend_temp_basal,
)
from loopalgo.core.errors import (
    BasalTimelineIncompleteError,
    FutureBasalNotAllowedError,
    GlucoseTooOldError,
    LoopAlgorithmError,
    MissingGlucoseError,
    MissingSuspendThresholdError,
    SensitivityTimelineEndsTooEarlyError,
    SensitivityTimelineStartsTooLateError,
    TargetTimelineIncompleteError,
)
from loopalgo.core.glucose.math import (
    combined_sums,
    counteraction_effects,
    linear_momentum_effect,
    net_effect,
    predict_glucose,
    subtracting,
)
from loopalgo.core.glucose.types import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseRange,
    GlucoseSample,
    PredictedGlucoseValue,
)
from loopalgo.core.insulin.doses import InsulinDose, trimmed_doses
from loopalgo.core.insulin.math import (
    BasalRelativeDose,
    annotated,
    effects_interval,
    glucose_effects,
    glucose_effects_at_dates,
    glucose_effects_mid_absorption_isf,
    insulin_on_board,
)
from loopalgo.core.insulin.models import InsulinModelProvider, InsulinType, PresetInsulinModelProvider
from loopalgo.core.retrospective import (
    IntegralRetrospectiveCorrection,
    RetrospectiveCorrection,
    StandardRetrospectiveCorrection,
)
from loopalgo.core.timeline import (
    AbsoluteScheduleValue,
    DateInterval,
    closest_prior,
    date_ceiled,
    date_floored,
    filter_date_range,
)

logger = logging.getLogger("loopalgo.algorithm")


class AlgorithmEffectsOptions(Flag):
    """Effects combined into the glucose forecast."""
    CARBS = 1
    INSULIN = 2
    MOMENTUM = 4
    RETROSPECTION = 8
    ALL = CARBS | INSULIN | MOMENTUM | RETROSPECTION


class RecommendationType(str, Enum):
    MANUAL_BOLUS = "manualBolus"
    AUTOMATIC_BOLUS = "automaticBolus"
    TEMP_BASAL = "tempBasal"

    @property
    def automated(self) -> bool:
        return self is not RecommendationType.MANUAL_BOLUS


@dataclass
class AlgorithmInput:
    """Everything needed for one prediction and dose recommendation."""
    prediction_start: datetime
    glucose_history: List[GlucoseSample]
    doses: List[InsulinDose]
    carb_entries: List[CarbEntry]
    basal: List[AbsoluteScheduleValue[float]]
    sensitivity: List[AbsoluteScheduleValue[float]]
    carb_ratio: List[AbsoluteScheduleValue[float]]
    target: List[AbsoluteScheduleValue[GlucoseRange]]
    max_bolus: float
    max_basal_rate: float
    suspend_threshold: Optional[float] = None

    # Feature flags
    use_integral_retrospective_correction: bool = False
    include_positive_velocity_and_rc: bool = True
    use_mid_absorption_isf: bool = False

    carb_absorption_model: CarbAbsorptionModel = CarbAbsorptionModel.PIECEWISE_LINEAR
    recommendation_insulin_type: InsulinType = InsulinType.NOVOLOG
    recommendation_type: RecommendationType = RecommendationType.AUTOMATIC_BOLUS
    automatic_bolus_application_factor: Optional[float] = None


@dataclass
class AlgorithmEffects:
    insulin: List[GlucoseEffect] = field(default_factory=list)
    carbs: List[GlucoseEffect] = field(default_factory=list)
    carb_status: List[CarbStatus] = field(default_factory=list)
    retrospective_correction: List[GlucoseEffect] = field(default_factory=list)
    momentum: List[GlucoseEffect] = field(default_factory=list)
    insulin_counteraction: List[GlucoseEffectVelocity] = field(default_factory=list)
    retrospective_glucose_discrepancies: List[GlucoseChange] = field(default_factory=list)
    total_glucose_correction_effect: Optional[float] = None


@dataclass
class LoopPrediction:
    glucose: List[PredictedGlucoseValue]
    effects: AlgorithmEffects
    doses_relative_to_basal: List[BasalRelativeDose]
    active_insulin: Optional[float] = None
    active_carbs: Optional[float] = None


@dataclass
class AlgorithmOutput:
    """
    Recommendation result together with the full prediction trace.

    Exactly one of ``recommendation`` and ``error`` is set. The trace fields are
    populated as far as the input allows, whether or not a recommendation was made.
    """
    recommendation: Optional[DoseRecommendation]
    error: Optional[LoopAlgorithmError]
    predicted_glucose: List[PredictedGlucoseValue]
    effects: AlgorithmEffects
    doses_relative_to_basal: List[BasalRelativeDose]
    active_insulin: Optional[float] = None
    active_carbs: Optional[float] = None
    correction: Optional[InsulinCorrection] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def recommendation_result(self) -> Union[DoseRecommendation, LoopAlgorithmError]:
        if self.error is not None:
            return self.error
        if self.recommendation is None:
            raise LoopAlgorithmError("Output has neither a recommendation nor an error")
        return self.recommendation


def _retrospective_correction(use_integral: bool, constants: LoopConstants) -> RetrospectiveCorrection:
    if use_integral:
        return IntegralRetrospectiveCorrection(constants.retrospective_correction_effect_duration, constants.delta)
    return StandardRetrospectiveCorrection(constants.retrospective_correction_effect_duration, constants.delta)


def generate_prediction(
    start: datetime,
    glucose_history: Sequence[GlucoseSample],
    doses: Sequence[InsulinDose],
    carb_entries: Sequence[CarbEntry],
    basal: Sequence[AbsoluteScheduleValue[float]],
    sensitivity: Sequence[AbsoluteScheduleValue[float]],
    carb_ratio: Sequence[AbsoluteScheduleValue[float]],
    algorithm_effects_options: AlgorithmEffectsOptions = AlgorithmEffectsOptions.ALL,
    use_integral_retrospective_correction: bool = False,
    include_positive_velocity_and_rc: bool = True,
    use_mid_absorption_isf: bool = False,
    carb_absorption_model: CarbAbsorptionModel = CarbAbsorptionModel.PIECEWISE_LINEAR,
    provider: Optional[InsulinModelProvider] = None,
    constants: Optional[LoopConstants] = None,
) -> LoopPrediction:
    """
    Generates a glucose forecast and the effects it is built from.

    Best-effort: incomplete input yields partial effects rather than an error,
    so the forecast can be shown even when dosing is not possible.

    Args:
        start: The prediction start.
        glucose_history: Glucose samples, oldest first, covering about 10 hours.
        doses: Reconciled delivery records, oldest first, covering about 16 hours.
        carb_entries: Carb entries, oldest first, covering about 10 hours.
        basal: Scheduled basal rate timeline covering the doses.
        sensitivity: Insulin sensitivity timeline covering dose effects.
        carb_ratio: Carb ratio timeline covering the carb entries.
        algorithm_effects_options: Effects combined into the forecast.
        use_integral_retrospective_correction: Integral instead of standard correction.
        include_positive_velocity_and_rc: When False, rising momentum and
            positive retrospective correction are left out of the forecast.
        use_mid_absorption_isf: Scale dose effects by the sensitivity in effect
            during absorption instead of the sensitivity at dose start.
        carb_absorption_model: Absorption curve and overrun settings.
        provider: Insulin model lookup, defaults to the preset provider.
        constants: Engine intervals and factors.

    Returns:
        LoopPrediction: forecast, effects, annotated doses, IOB and COB.
    """
    constants = constants or LoopConstants()
    provider = provider or PresetInsulinModelProvider()
    delta = constants.delta

    effects = AlgorithmEffects()
    doses_relative_to_basal: List[BasalRelativeDose] = []
    prediction: List[PredictedGlucoseValue] = []
    active_insulin = 0.0

    if doses and basal and basal[0].start_date <= doses[0].start_date:
        doses_relative_to_basal = annotated(doses, basal, fill_basal_gaps=True, provider=provider)

        effects_start = date_floored(start - constants.max_carb_absorption_interval, delta)
        effect_function = glucose_effects_mid_absorption_isf if use_mid_absorption_isf else glucose_effects
        effects.insulin = effect_function(
            doses_relative_to_basal,
            sensitivity,
            start=effects_start,
            longest_effect_duration=constants.insulin_activity_duration,
            delta=delta,
            strict=False,
        )
        active_insulin = insulin_on_board(doses_relative_to_basal, start, delta)

        if glucose_history:
            if use_mid_absorption_isf:
                insulin_effects_at_glucose = glucose_effects_at_dates(
                    doses_relative_to_basal,
                    sensitivity,
                    [sample.start_date for sample in glucose_history],
                    delta=delta,
                )
            else:
                insulin_effects_at_glucose = effects.insulin
            effects.insulin_counteraction = counteraction_effects(
                glucose_history,
                insulin_effects_at_glucose,
                constants.glucose_velocity_min_interval,
            )
    elif doses:
        logger.warning("Basal history does not cover doses starting %s; insulin effects omitted", doses[0].start_date)
    else:
        logger.debug("No dose history; counteraction and retrospective correction omitted")

    settings = carb_absorption_model.settings
    if settings.adaptive_absorption_rate:
        settings = dataclasses.replace(settings, adaptive_rate_standby_interval_fraction=constants.adaptive_standby_fraction)

    effects.carb_status = map_carbs(
        carb_entries,
        effects.insulin_counteraction,
        carb_ratio,
        sensitivity,
        settings=settings,
        default_absorption_time=constants.default_carb_absorption_time,
        absorption_time_overrun=constants.carb_absorption_time_overrun,
        delay=constants.carb_effect_delay,
        strict=False,
    )
    effects.carbs = dynamic_glucose_effects(
        effects.carb_status,
        start=start - constants.integral_retrospection_interval,
        curve=settings.curve,
        default_absorption_time=constants.default_carb_absorption_time,
        absorption_time_overrun=constants.carb_absorption_time_overrun,
        delay=constants.carb_effect_delay,
        delta=delta,
    )
    active_carbs = dynamic_carbs_on_board(
        effects.carb_status,
        start,
        curve=settings.curve,
        default_absorption_time=constants.default_carb_absorption_time,
        delay=constants.carb_effect_delay,
        delta=delta,
    )

    if effects.insulin_counteraction:
        ice_dates = sorted(
            {velocity.start_date for velocity in effects.insulin_counteraction}
            | {velocity.end_date for velocity in effects.insulin_counteraction}
        )
        carb_effects_at_ice = dynamic_glucose_effects_at_dates(
            effects.carb_status,
            ice_dates,
            curve=settings.curve,
            default_absorption_time=constants.default_carb_absorption_time,
            delay=constants.carb_effect_delay,
            delta=delta,
        )
        discrepancies = subtracting(effects.insulin_counteraction, carb_effects_at_ice)
        effects.retrospective_glucose_discrepancies = combined_sums(discrepancies, constants.retrospective_grouping_window)

    logger.debug(
        "Prediction inputs: %d doses, %d counteraction effects, %d carb statuses",
        len(doses_relative_to_basal),
        len(effects.insulin_counteraction),
        len(effects.carb_status),
    )

    if glucose_history:
        latest_glucose = glucose_history[-1]

        rc = _retrospective_correction(use_integral_retrospective_correction, constants)
        effects.retrospective_correction = rc.compute_effect(
            latest_glucose,
            effects.retrospective_glucose_discrepancies,
            recency_interval=constants.input_data_recency_interval,
            grouping_interval=constants.retrospective_correction_grouping_interval,
        )
        effects.total_glucose_correction_effect = rc.total_glucose_correction_effect

        combined: List[List[GlucoseEffect]] = []
        if AlgorithmEffectsOptions.CARBS in algorithm_effects_options:
            combined.append(effects.carbs)
        if AlgorithmEffectsOptions.INSULIN in algorithm_effects_options:
            combined.append(effects.insulin)
        if AlgorithmEffectsOptions.RETROSPECTION in algorithm_effects_options:
            net_rc = net_effect(effects.retrospective_correction)
            if not include_positive_velocity_and_rc and net_rc is not None and net_rc.quantity > 0:
                logger.debug("Positive retrospective correction %.1f mg/dL left out", net_rc.quantity)
            else:
                combined.append(effects.retrospective_correction)

        use_momentum = False
        if AlgorithmEffectsOptions.MOMENTUM in algorithm_effects_options:
            momentum_input = filter_date_range(glucose_history, start - constants.momentum_data_interval, start)
            effects.momentum = linear_momentum_effect(
                momentum_input,
                duration=constants.momentum_duration,
                delta=delta,
                data_interval=constants.momentum_data_interval,
            )
            net_momentum = net_effect(effects.momentum)
            use_momentum = include_positive_velocity_and_rc or net_momentum is None or net_momentum.quantity <= 0

        prediction = predict_glucose(
            latest_glucose,
            combined,
            momentum=effects.momentum if use_momentum else [],
        )

        # Dosing needs the forecast to span the insulin activity duration
        final_date = start + constants.insulin_activity_duration
        if prediction and prediction[-1].start_date < final_date:
            prediction.append(PredictedGlucoseValue(start_date=final_date, quantity=prediction[-1].quantity))

    return LoopPrediction(
        glucose=prediction,
        effects=effects,
        doses_relative_to_basal=doses_relative_to_basal,
        active_insulin=active_insulin,
        active_carbs=active_carbs,
    )


def timeline_interval_for_sensitivity(
    doses: Sequence[InsulinDose],
    glucose_history_start: datetime,
    recommendation_effect_interval: DateInterval,
    provider: Optional[InsulinModelProvider] = None,
    constants: Optional[LoopConstants] = None,
) -> DateInterval:
    """
    The interval a sensitivity timeline must cover to compute historical dose
    effects, counteraction effects and the recommendation's own effect.
    """
    constants = constants or LoopConstants()
    provider = provider or PresetInsulinModelProvider()

    start = min(glucose_history_start, recommendation_effect_interval.start)
    end = recommendation_effect_interval.end

    dose_interval = effects_interval(doses, provider)
    if dose_interval is not None:
        start = min(dose_interval.start, start)
        end = max(dose_interval.end, end)

    return DateInterval(date_floored(start, constants.delta), date_ceiled(end, constants.delta))


def _correction_sensitivity(
    algorithm_input: AlgorithmInput,
    prediction: Sequence[PredictedGlucoseValue],
    effect_end: datetime,
) -> List[AbsoluteScheduleValue[float]]:
    if algorithm_input.use_mid_absorption_isf:
        return list(algorithm_input.sensitivity)

    # One sensitivity value for the whole recommended dose
    item = closest_prior(algorithm_input.sensitivity, algorithm_input.prediction_start)
    end = max(effect_end, prediction[-1].start_date) if prediction else effect_end
    return [AbsoluteScheduleValue(start_date=algorithm_input.prediction_start, end_date=end, value=item.value)]


def run(
    algorithm_input: AlgorithmInput,
    effect_options: AlgorithmEffectsOptions = AlgorithmEffectsOptions.ALL,
    provider: Optional[InsulinModelProvider] = None,
    constants: Optional[LoopConstants] = None,
) -> AlgorithmOutput:
    """
    Runs the prediction and, if the input passes validation, the dose recommendation.

    Validation failures are returned in :attr:`AlgorithmOutput.error`; the
    prediction trace is populated either way.
    """
    constants = constants or LoopConstants()
    provider = provider or PresetInsulinModelProvider()

    # Automated dosing assumes the running temp basal is cancelled
    if algorithm_input.recommendation_type.automated:
        doses = trimmed_doses(algorithm_input.doses, algorithm_input.prediction_start)
    else:
        doses = list(algorithm_input.doses)

    prediction = generate_prediction(
        start=algorithm_input.prediction_start,
        glucose_history=algorithm_input.glucose_history,
        doses=doses,
        carb_entries=algorithm_input.carb_entries,
        basal=algorithm_input.basal,
        sensitivity=algorithm_input.sensitivity,
        carb_ratio=algorithm_input.carb_ratio,
        algorithm_effects_options=effect_options,
        use_integral_retrospective_correction=algorithm_input.use_integral_retrospective_correction,
        include_positive_velocity_and_rc=algorithm_input.include_positive_velocity_and_rc,
        use_mid_absorption_isf=algorithm_input.use_mid_absorption_isf,
        carb_absorption_model=algorithm_input.carb_absorption_model,
        provider=provider,
        constants=constants,
    )

    recommendation: Optional[DoseRecommendation] = None
    error: Optional[LoopAlgorithmError] = None
    correction: Optional[InsulinCorrection] = None

    try:
        if not algorithm_input.glucose_history:
            raise MissingGlucoseError()
        latest_glucose = algorithm_input.glucose_history[-1]

        if algorithm_input.prediction_start - latest_glucose.start_date >= constants.input_data_recency_interval:
            raise GlucoseTooOldError(
                f"Latest glucose at {latest_glucose.start_date.isoformat()} is older than "
                f"{constants.input_data_recency_interval} before {algorithm_input.prediction_start.isoformat()}"
            )

        if algorithm_input.recommendation_type.automated:
            for dose in doses:
                if dose.is_basal and dose.end_date > algorithm_input.prediction_start:
                    raise FutureBasalNotAllowedError(
                        f"Basal dose starting {dose.start_date.isoformat()} extends past the prediction start"
                    )

        model = provider.model_for(algorithm_input.recommendation_insulin_type)
        recommendation_interval = DateInterval(algorithm_input.prediction_start, algorithm_input.prediction_start + model.effect_duration)
        needed = timeline_interval_for_sensitivity(
            doses,
            algorithm_input.glucose_history[0].start_date,
            recommendation_interval,
            provider=provider,
            constants=constants,
        )
        if algorithm_input.use_mid_absorption_isf and prediction.glucose:
            needed = DateInterval(needed.start, max(needed.end, prediction.glucose[-1].start_date))

        if not algorithm_input.sensitivity or algorithm_input.sensitivity[0].start_date > needed.start:
            raise SensitivityTimelineStartsTooLateError(
                f"Sensitivity timeline must start at or before {needed.start.isoformat()}"
            )
        if algorithm_input.sensitivity[-1].end_date < needed.end:
            raise SensitivityTimelineEndsTooEarlyError(
                f"Sensitivity timeline must end at or after {needed.end.isoformat()}"
            )

        scheduled_basal = closest_prior(algorithm_input.basal, algorithm_input.prediction_start)
        if scheduled_basal is None:
            raise BasalTimelineIncompleteError()
        neutral_basal_rate = scheduled_basal.value

        suspend_threshold = algorithm_input.suspend_threshold
        if suspend_threshold is None:
            target_now = closest_prior(algorithm_input.target, algorithm_input.prediction_start)
            if target_now is None:
                raise MissingSuspendThresholdError()
            suspend_threshold = target_now.value.lower_bound

        if closest_prior(algorithm_input.target, algorithm_input.prediction_start) is None:
            raise TargetTimelineIncompleteError(
                f"Correction range must start at or before {algorithm_input.prediction_start.isoformat()}"
            )

        correction = insulin_correction(
            prediction.glucose,
            algorithm_input.prediction_start,
            algorithm_input.target,
            suspend_threshold,
            _correction_sensitivity(algorithm_input, prediction.glucose, recommendation_interval.end),
            model,
        )
        logger.debug("Insulin correction: %s", correction)

        active_insulin = prediction.active_insulin or 0.0

        if algorithm_input.recommendation_type == RecommendationType.MANUAL_BOLUS:
            recommendation = DoseRecommendation(
                manual=recommend_manual_bolus(correction, algorithm_input.max_bolus, latest_glucose, algorithm_input.target)
            )
        elif algorithm_input.recommendation_type == RecommendationType.AUTOMATIC_BOLUS:
            factor = algorithm_input.automatic_bolus_application_factor
            if factor is None:
                factor = constants.default_automatic_bolus_application_factor
            recommendation = DoseRecommendation(
                automatic=recommend_automatic_dose(
                    correction,
                    application_factor=factor,
                    neutral_basal_rate=neutral_basal_rate,
                    active_insulin=active_insulin,
                    max_bolus=algorithm_input.max_bolus,
                    max_basal_rate=algorithm_input.max_basal_rate,
                    duration=constants.temp_basal_duration,
                )
            )
        else:
            temp_basal = recommend_temp_basal(
                correction,
                neutral_basal_rate=neutral_basal_rate,
                active_insulin=active_insulin,
                max_bolus=algorithm_input.max_bolus,
                max_basal_rate=algorithm_input.max_basal_rate,
                duration=constants.temp_basal_duration,
            )
            recommendation = DoseRecommendation(automatic=AutomaticDoseRecommendation(basal_adjustment=temp_basal))
    except LoopAlgorithmError as exc:
        logger.warning("No recommendation (%s): %s", exc.code, exc.message)
        error = exc
        recommendation = None

    return AlgorithmOutput(
        recommendation=recommendation,
        error=error,
        predicted_glucose=prediction.glucose,
        effects=prediction.effects,
        doses_relative_to_basal=prediction.doses_relative_to_basal,
        active_insulin=prediction.active_insulin,
        active_carbs=prediction.active_carbs,
        correction=correction,
    )


def recommend_dose(
    algorithm_input: AlgorithmInput,
    provider: Optional[InsulinModelProvider] = None,
    constants: Optional[LoopConstants] = None,
) -> DoseRecommendation:
    """Like :func:`run` but returns only the recommendation, raising on validation failure."""
    result = run(algorithm_input, provider=provider, constants=constants).recommendation_result
    if isinstance(result, LoopAlgorithmError):
        raise result
    return result
