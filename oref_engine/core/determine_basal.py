# oref_engine/core/determine_basal.py
"""
One dosing decision per cycle.

validate -> adjust sensitivity -> predict -> eventual / guard BG
-> low-glucose gate -> insulinReq -> temp basal -> SMB -> carbsReq

Any OrefError aborts to an error-tagged result with no dosing fields set.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from oref_engine.config import CARBS_REQ_WINDOW_MINUTES, MAX_DELTA_BG_FRACTION, MIN_VALID_BG, TEMP_DURATION_MINUTES
from oref_engine.core import dosing
from oref_engine.core.autosens import clamp_ratio
from oref_engine.core.glucose import check_freshness
from oref_engine.core.glucose import tick as format_tick
from oref_engine.core.predictions import PredictionSet, predict
from oref_engine.errors import CalculationError, InvalidGlucose, MissingData, OrefError
from oref_engine.structs import (
    AutosensResult,
    CobResult,
    CurrentTemp,
    DetermineBasalResult,
    GlucoseStatus,
    IobTotal,
    Profile,
    convert_bg,
    round_dec,
    without_zeros,
)

logger = logging.getLogger(__name__)


def _finite(name: str, value: float) -> float:
    if value is None or not math.isfinite(value):
        raise CalculationError(f"{name} is not finite: {value}")
    return value


def _minutes_above(series: Sequence[int], level: float) -> int:
    for i, v in enumerate(series):
        if v < level:
            return 5 * i
    return 240


def _carbs_required(
    rt: DetermineBasalResult,
    preds: PredictionSet,
    meal: CobResult,
    naive_eventual_bg: float,
    threshold: float,
    sens: float,
    carb_ratio: float,
    basal: float,
    profile: Profile,
) -> None:
    series = preds.pred_bgs.COB if meal.meal_cob > 0 and preds.carbs_active else preds.pred_bgs.IOB
    minutes_above_threshold = _minutes_above(series, threshold)

    carbs_req_bg = naive_eventual_bg
    if carbs_req_bg < MIN_VALID_BG:
        carbs_req_bg = min(preds.min_guard_bg, carbs_req_bg)
    bg_undershoot = threshold - carbs_req_bg

    csf = sens / carb_ratio
    zero_temp_effect = basal * sens * minutes_above_threshold / 60
    cob_for_carbs_req = max(0.0, meal.meal_cob - 0.25 * meal.carbs)
    carbs_req = int(round((bg_undershoot - zero_temp_effect) / csf - cob_for_carbs_req))

    rt.console_error.append(
        f"naive_eventualBG: {convert_bg(naive_eventual_bg)} bgUndershoot: {round_dec(bg_undershoot, 1):g} "
        f"zeroTempDuration: {minutes_above_threshold} zeroTempEffect: {round(zero_temp_effect)} carbsReq: {carbs_req}"
    )
    if carbs_req >= profile.carbs_req_threshold and minutes_above_threshold <= CARBS_REQ_WINDOW_MINUTES:
        rt.carbs_req = carbs_req
        rt.carbs_req_within = minutes_above_threshold
        rt.reason += f"{carbs_req} add'l carbs req w/in {minutes_above_threshold}m; "


def _smb_allowed(
    rt: DetermineBasalResult,
    profile: Profile,
    glucose_status: GlucoseStatus,
    iob: float,
    insulin_req: float,
    microbolus_allowed: bool,
) -> bool:
    if not profile.enable_smb:
        return False
    if not microbolus_allowed:
        rt.console_error.append("SMB not allowed this cycle")
        return False
    if insulin_req <= 0:
        return False
    if iob >= profile.max_iob:
        rt.console_error.append(f"IOB {round_dec(iob, 2):g} >= maxIOB {profile.max_iob:g} - disabling SMB")
        return False

    bg = glucose_status.glucose
    max_delta = max(glucose_status.delta, glucose_status.short_avg_delta, glucose_status.long_avg_delta)
    if max_delta > MAX_DELTA_BG_FRACTION * bg:
        rt.reason += (
            f"maxDelta {convert_bg(max_delta)} > {int(100 * MAX_DELTA_BG_FRACTION)}% of BG {convert_bg(bg)}: SMB disabled; "
        )
        return False
    return True


def _set_temp(
    rt: DetermineBasalResult,
    rate: float,
    duration: int,
    current_temp: Optional[CurrentTemp],
    basal: float,
    profile: Profile,
) -> DetermineBasalResult:
    """Apply hysteresis against the running delivery, then set rate/duration."""
    if not dosing.needs_new_temp(rate, current_temp, basal, duration):
        if current_temp is not None and current_temp.duration > 0:
            running = f"{current_temp.duration}m@{without_zeros(current_temp.rate)}"
        else:
            running = f"scheduled basal {without_zeros(basal)}"
        rt.reason += f"{running} ~ req {without_zeros(rate)}U/hr: no change"
        return rt

    if profile.skip_neutral_temps and (current_temp is None or current_temp.duration <= 0) and rate == round_dec(basal, 2):
        rt.reason += f"neutral temp {without_zeros(rate)}U/hr skipped: no change"
        return rt

    rt.rate = rate
    rt.duration = duration
    rt.reason += f"temp {without_zeros(rate)}U/hr for {duration}m"
    return rt


def determine_basal(
    glucose_status: Optional[GlucoseStatus],
    current_temp: Optional[CurrentTemp],
    iob_array: Sequence[IobTotal],
    profile: Profile,
    autosens_data: Optional[AutosensResult],
    meal_data: Optional[CobResult],
    current_time: int,
    microbolus_allowed: bool = True,
) -> DetermineBasalResult:
    try:
        return _determine_basal(
            glucose_status,
            current_temp,
            iob_array,
            profile,
            autosens_data,
            meal_data,
            current_time,
            microbolus_allowed,
        )
    except OrefError as e:
        logger.warning("determine_basal: cycle rejected: %s", e)
        return DetermineBasalResult.error_result(str(e), kind=e.kind, deliver_at=current_time)


def _determine_basal(
    glucose_status: Optional[GlucoseStatus],
    current_temp: Optional[CurrentTemp],
    iob_array: Sequence[IobTotal],
    profile: Profile,
    autosens_data: Optional[AutosensResult],
    meal_data: Optional[CobResult],
    current_time: int,
    microbolus_allowed: bool,
) -> DetermineBasalResult:
    # --- validate ---
    if glucose_status is None:
        raise MissingData("glucose status")
    if not iob_array:
        raise MissingData("IOB array is empty")
    bg_mins_ago = check_freshness(glucose_status, current_time)
    bg = _finite("bg", glucose_status.glucose)
    if bg < MIN_VALID_BG:
        raise InvalidGlucose(f"BG {bg:g} below {MIN_VALID_BG:g} (sensor error)")
    meal = meal_data or CobResult()
    iob_data = iob_array[0]

    # --- sensitivity ---
    sensitivity_ratio = clamp_ratio(autosens_data.ratio if autosens_data else 1.0, profile)
    if not math.isfinite(sensitivity_ratio) or sensitivity_ratio <= 0:
        raise CalculationError(f"sensitivity ratio must be positive, got {sensitivity_ratio}")
    profile_sens = _finite("ISF", profile.sens_at(current_time))
    if profile_sens <= 0:
        raise CalculationError(f"ISF must be positive, got {profile_sens}")
    sens = round_dec(profile_sens / sensitivity_ratio, 1)
    basal = round_dec(_finite("basal", profile.basal_at(current_time)) * sensitivity_ratio, 2)
    carb_ratio = profile.carb_ratio_at(current_time)
    min_bg, max_bg = profile.targets_at(current_time)
    target_bg = round_dec((min_bg + max_bg) / 2, 0)
    threshold = profile.threshold

    console_error = [
        f"Autosens ratio: {sensitivity_ratio:g}; ISF from {profile_sens:g} to {sens:g}; "
        f"basal from {profile.basal_at(current_time):g} to {basal:g}"
    ]
    if autosens_data and autosens_data.sens_result:
        console_error.append(autosens_data.sens_result)

    # --- predict ---
    min_delta = min(glucose_status.delta, glucose_status.short_avg_delta)
    bgi = round_dec(-iob_data.activity * sens * 5, 2)
    deviation = round_dec(30 / 5 * (min_delta - bgi), 0)
    naive_eventual_bg = round_dec(bg - iob_data.iob * sens, 0)

    preds = predict(
        glucose_status,
        iob_array,
        meal,
        sens,
        carb_ratio,
        sensitivity_ratio,
        target_bg,
        threshold,
        profile.enable_uam,
        current_time,
    )
    console_error.extend(preds.log)

    if meal.meal_cob > 0:
        eventual_bg = float(preds.pred_bgs.COB[-1])
    else:
        eventual_bg = float(preds.pred_bgs.IOB[-1])
    min_guard_bg = _finite("minGuardBG", preds.min_guard_bg)
    _finite("minPredBG", preds.min_pred_bg)

    rt = DetermineBasalResult(
        bg=bg,
        tick=format_tick(glucose_status.delta),
        eventual_bg=eventual_bg,
        target_bg=target_bg,
        threshold=threshold,
        bg_mins_ago=bg_mins_ago,
        sensitivity_ratio=sensitivity_ratio,
        variable_sens=sens,
        pred_bgs=preds.pred_bgs,
        cob=round_dec(meal.meal_cob, 1),
        iob=round_dec(iob_data.iob, 3),
        deliver_at=current_time,
        smb_enabled=profile.enable_smb and microbolus_allowed,
        console_error=console_error,
    )
    rt.console_log.append(f"Glucose {convert_bg(bg)}, {bg_mins_ago:g}m ago")

    rt.reason = (
        f"IOB: {round_dec(iob_data.iob, 2):g}, COB: {without_zeros(round_dec(meal.meal_cob, 1))}, "
        f"Dev: {convert_bg(deviation)}, BGI: {convert_bg(bgi)}, ISF: {convert_bg(sens)}, "
        f"CR: {without_zeros(round_dec(carb_ratio, 2))}, Target: {convert_bg(target_bg)}, "
        f"Autosens ratio: {sensitivity_ratio:g}, minPredBG {convert_bg(preds.min_pred_bg)}, "
        f"minGuardBG {convert_bg(min_guard_bg)}, Eventual BG {convert_bg(eventual_bg)}; "
    )

    _carbs_required(rt, preds, meal, naive_eventual_bg, threshold, sens, carb_ratio, basal, profile)

    # --- low-glucose gate ---
    if bg < threshold or min_guard_bg < threshold:
        if bg < threshold:
            rt.reason += f"BG {convert_bg(bg)} < threshold {convert_bg(threshold)}; "
        else:
            rt.reason += f"minGuardBG {convert_bg(min_guard_bg)} < threshold {convert_bg(threshold)}; "
        duration = dosing.zero_temp_duration(target_bg, min(min_guard_bg, bg), sens, basal)
        rt.insulin_req = 0.0
        rt.rate = 0.0
        rt.duration = duration
        rt.reason += f"temp 0U/hr for {duration}m"
        logger.debug("low glucose gate: bg=%s minGuardBG=%s -> zero temp %sm", bg, min_guard_bg, duration)
        return rt

    # --- insulin requirement ---
    insulin_req = dosing.insulin_required(eventual_bg, target_bg, sens)
    rt.insulin_req = insulin_req
    rt.console_error.append(f"insulinReq {insulin_req:g}U (eventualBG {convert_bg(eventual_bg)}, target {convert_bg(target_bg)})")

    # --- temp basal ---
    extra = insulin_req
    if insulin_req > 0:
        headroom = max(0.0, profile.max_iob - iob_data.iob)
        if insulin_req > headroom:
            rt.reason += f"max_iob {profile.max_iob:g}, "
        extra = min(insulin_req, headroom)
    candidate = dosing.rate_from_insulin_req(basal, extra, TEMP_DURATION_MINUTES)
    rate = dosing.clamp_rate(candidate, profile, basal)
    if candidate > rate:
        rt.reason += f"adj. req. rate: {without_zeros(round_dec(candidate, 2))} to maxSafeBasal: {without_zeros(rate)}, "
    duration = TEMP_DURATION_MINUTES
    if rate <= 0:
        duration = dosing.zero_temp_duration(target_bg, min_guard_bg, sens, basal)

    # --- SMB ---
    if _smb_allowed(rt, profile, glucose_status, iob_data.iob, insulin_req, microbolus_allowed):
        units = dosing.size_smb(insulin_req, iob_data.iob, profile)
        if units is not None:
            rt.units = units
            rt.reason += f"Microbolusing {without_zeros(units)}U. "
            rate = dosing.clamp_rate(basal, profile, basal)
            duration = TEMP_DURATION_MINUTES
        else:
            rt.console_error.append(f"SMB below {profile.bolus_increment:g}U increment, temp basal only")

    return _set_temp(rt, rate, duration, current_temp, basal, profile)
