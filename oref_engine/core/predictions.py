# oref_engine/core/predictions.py
"""
Glucose trajectories over the IOB array (5m ticks out to DIA).

  IOB  insulin activity plus the current deviation, decaying to 0 over 60 min
  COB  adds the current carb impact, decaying linearly over the CI duration,
       and a triangular absorption of the remaining carbs
  UAM  adds the current unexplained impact, decaying by the deviation slope
       (at most UAM_MAX_HOURS)
  ZT   insulin activity only, with basal delivery stopped now

Min predicted and min guard values per trajectory feed the decision engine.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Sequence

from oref_engine.config import (
    ASSUMED_CARB_ABSORPTION_RATE,
    DEVIATION_DECAY_MINUTES,
    INSULIN_PEAK_MINUTES,
    MAX_CARB_ABSORPTION_RATE,
    MAX_PRED_BG,
    MIN_VALID_BG,
    REMAINING_CA_TIME_MIN_HOURS,
    REMAINING_CARBS_CAP,
    STEP_MINUTES,
    UAM_MAX_HOURS,
)
from oref_engine.errors import CalculationError, MissingData
from oref_engine.structs import CobResult, GlucoseStatus, IobTotal, Predictions, round_dec

logger = logging.getLogger(__name__)

UNSET = 999.0


@dataclass
class PredictionSet:
    pred_bgs: Predictions
    ci: float = 0.0
    uci: float = 0.0
    cid: float = 0.0
    remaining_ci_peak: float = 0.0
    remaining_ca_time: float = 0.0
    uam_duration: float = 0.0

    min_iob_pred_bg: float = UNSET
    min_cob_pred_bg: float = UNSET
    min_uam_pred_bg: float = UNSET
    min_iob_guard_bg: float = UNSET
    min_cob_guard_bg: float = UNSET
    min_uam_guard_bg: float = UNSET
    min_zt_guard_bg: float = UNSET

    min_pred_bg: float = UNSET
    avg_pred_bg: float = UNSET
    min_guard_bg: float = UNSET
    log: List[str] = field(default_factory=list)

    @property
    def carbs_active(self) -> bool:
        return self.cid > 0 or self.remaining_ci_peak > 0


def clamp_bg(value: float) -> int:
    return int(round(min(MAX_PRED_BG, max(MIN_VALID_BG, value))))


def predict(
    glucose_status: GlucoseStatus,
    iob_array: Sequence[IobTotal],
    meal: CobResult,
    sens: float,
    carb_ratio: float,
    sensitivity_ratio: float,
    target_bg: float,
    threshold: float,
    enable_uam: bool,
    time: int,
) -> PredictionSet:
    if len(iob_array) < 2:
        raise MissingData(f"IOB array needs at least 2 ticks, got {len(iob_array)}")

    bg = glucose_status.glucose
    min_delta = min(glucose_status.delta, glucose_status.short_avg_delta)
    bgi = round_dec(-iob_array[0].activity * sens * 5, 2)

    ci = round_dec(min_delta - bgi, 1)
    uci = ci
    csf = sens / carb_ratio
    log: List[str] = [f"ISF: {round_dec(sens, 1)}, CSF: {round_dec(csf, 2)}"]

    max_ci = round_dec(MAX_CARB_ABSORPTION_RATE * csf * 5 / 60, 1)
    if ci > max_ci:
        log.append(f"Limiting carb impact from {ci} to {max_ci} mg/dL/5m ({MAX_CARB_ABSORPTION_RATE} g/h)")
        ci = max_ci

    remaining_ca_time_min = REMAINING_CA_TIME_MIN_HOURS / sensitivity_ratio
    remaining_ca_time = remaining_ca_time_min
    if meal.carbs > 0:
        remaining_ca_time_min = max(remaining_ca_time_min, meal.meal_cob / ASSUMED_CARB_ABSORPTION_RATE)
        last_carb_age = round_dec((time - meal.last_carb_time) / 60000.0, 0)
        fraction_absorbed = (meal.carbs - meal.meal_cob) / meal.carbs
        remaining_ca_time = round_dec(remaining_ca_time_min + 1.5 * last_carb_age / 60, 1)
        log.append(
            f"Last carbs {last_carb_age:g} minutes ago; remainingCATime: {remaining_ca_time} hours; "
            f"{round_dec(fraction_absorbed * 100, 0):g}% carbs absorbed"
        )

    total_ci = max(0.0, ci / 5 * 60 * remaining_ca_time / 2)
    total_ca = total_ci / csf
    remaining_carbs = min(REMAINING_CARBS_CAP, max(0.0, meal.meal_cob - total_ca))
    remaining_ci_peak = remaining_carbs * csf * 5 / 60 / (remaining_ca_time / 2)

    slope_from_deviations = min(meal.slope_from_max_deviation, -meal.slope_from_min_deviation / 3)

    cid = 0.0
    if ci != 0:
        cid = min(remaining_ca_time * 60 / 5 / 2, max(0.0, meal.meal_cob * csf / ci))
    log.append(
        f"Carb Impact: {ci} mg/dL per 5m; CI Duration: {round_dec(cid * 5 / 60 * 2, 1)} hours; "
        f"remaining CI ({round_dec(remaining_ca_time / 2, 1)}h peak): {round_dec(remaining_ci_peak, 1)} mg/dL per 5m"
    )

    out = PredictionSet(
        pred_bgs=Predictions(),
        ci=ci,
        uci=uci,
        cid=cid,
        remaining_ci_peak=remaining_ci_peak,
        remaining_ca_time=remaining_ca_time,
    )

    iob_bgs: List[float] = [bg]
    cob_bgs: List[float] = [bg]
    uam_bgs: List[float] = [bg]
    zt_bgs: List[float] = [bg]
    decay_ticks = DEVIATION_DECAY_MINUTES / STEP_MINUTES
    uam_ticks = UAM_MAX_HOURS * 60 / STEP_MINUTES
    insulin_peak_ticks = INSULIN_PEAK_MINUTES / STEP_MINUTES

    # the last tick would step past DIA
    for tick in iob_array[:-1]:
        n = len(iob_bgs)
        pred_bgi = round_dec(-tick.activity * sens * 5, 2)
        zt_tick = tick.iob_with_zero_temp or tick
        pred_zt_bgi = round_dec(-zt_tick.activity * sens * 5, 2)

        pred_dev = ci * (1 - min(1.0, n / decay_ticks))
        iob_bg = iob_bgs[-1] + pred_bgi + pred_dev
        zt_bg = zt_bgs[-1] + pred_zt_bgi

        pred_ci = max(0.0, max(0.0, ci) * (1 - n / max(cid * 2, 1.0)))
        intervals = min(n, remaining_ca_time * 12 - n)
        remaining_ci = max(0.0, intervals / (remaining_ca_time / 2 * 12) * remaining_ci_peak)
        cob_bg = cob_bgs[-1] + pred_bgi + min(0.0, pred_dev) + pred_ci + remaining_ci

        pred_uci_slope = max(0.0, uci + n * slope_from_deviations)
        pred_uci_max = max(0.0, uci * (1 - n / max(uam_ticks, 1.0)))
        pred_uci = min(pred_uci_slope, pred_uci_max)
        if pred_uci > 0:
            out.uam_duration = round_dec((n + 1) * 5 / 60.0, 1)
        uam_bg = uam_bgs[-1] + pred_bgi + min(0.0, pred_dev) + pred_uci

        iob_bgs.append(iob_bg)
        cob_bgs.append(cob_bg)
        uam_bgs.append(uam_bg)
        zt_bgs.append(zt_bg)

        out.min_cob_guard_bg = min(out.min_cob_guard_bg, round_dec(cob_bg, 0))
        out.min_uam_guard_bg = min(out.min_uam_guard_bg, round_dec(uam_bg, 0))
        out.min_iob_guard_bg = min(out.min_iob_guard_bg, iob_bg)
        out.min_zt_guard_bg = min(out.min_zt_guard_bg, round_dec(zt_bg, 0))

        if n + 1 > insulin_peak_ticks:
            out.min_iob_pred_bg = min(out.min_iob_pred_bg, round_dec(iob_bg, 0))
            if out.carbs_active:
                out.min_cob_pred_bg = min(out.min_cob_pred_bg, round_dec(cob_bg, 0))
        if enable_uam and n + 1 > 12:
            out.min_uam_pred_bg = min(out.min_uam_pred_bg, round_dec(uam_bg, 0))

    # clamp_bg would hide a NaN as 39
    for name, series in (("IOB", iob_bgs), ("COB", cob_bgs), ("UAM", uam_bgs), ("ZT", zt_bgs)):
        if not all(math.isfinite(x) for x in series):
            raise CalculationError(f"{name} prediction is not finite")

    out.pred_bgs = Predictions(
        IOB=[clamp_bg(x) for x in iob_bgs],
        COB=[clamp_bg(x) for x in cob_bgs],
        UAM=[clamp_bg(x) for x in uam_bgs],
        ZT=[clamp_bg(x) for x in zt_bgs],
    )
    log.append(f"UAM Impact: {uci} mg/dL per 5m; UAM Duration: {out.uam_duration} hours")

    _summarize(out, meal, target_bg, threshold, enable_uam)
    out.log = log + out.log
    logger.debug(
        "predictions: minPredBG=%s minGuardBG=%s avgPredBG=%s",
        out.min_pred_bg,
        out.min_guard_bg,
        out.avg_pred_bg,
    )
    return out


def _summarize(out: PredictionSet, meal: CobResult, target_bg: float, threshold: float, enable_uam: bool) -> None:
    """Blend the per-trajectory minima into minPredBG, avgPredBG and minGuardBG."""
    preds = out.pred_bgs
    min_iob = max(MIN_VALID_BG, out.min_iob_pred_bg)
    min_cob = max(MIN_VALID_BG, out.min_cob_pred_bg)
    min_uam = max(MIN_VALID_BG, out.min_uam_pred_bg)
    out.min_iob_pred_bg, out.min_cob_pred_bg, out.min_uam_pred_bg = min_iob, min_cob, min_uam
    min_pred = round_dec(min_iob, 0)

    fraction_carbs_left = meal.meal_cob / meal.carbs if meal.carbs > 0 else 0.0
    last_iob = preds.IOB[-1]
    last_cob = preds.COB[-1]
    last_uam = preds.UAM[-1]

    if min_uam < UNSET and min_cob < UNSET:
        avg = (1 - fraction_carbs_left) * last_uam + fraction_carbs_left * last_cob
    elif min_cob < UNSET:
        avg = (last_iob + last_cob) / 2.0
    elif min_uam < UNSET:
        avg = (last_iob + last_uam) / 2.0
    else:
        avg = float(last_iob)
    avg = round_dec(avg, 0)
    # zero-temp only ever raises the average
    if out.min_zt_guard_bg > avg:
        avg = out.min_zt_guard_bg

    if out.carbs_active:
        if enable_uam:
            guard = fraction_carbs_left * out.min_cob_guard_bg + (1 - fraction_carbs_left) * out.min_uam_guard_bg
        else:
            guard = out.min_cob_guard_bg
    elif enable_uam:
        guard = out.min_uam_guard_bg
    else:
        guard = out.min_iob_guard_bg
    guard = round_dec(guard, 0)

    min_zt_uam = min_uam
    if out.min_zt_guard_bg < threshold:
        min_zt_uam = (min_uam + out.min_zt_guard_bg) / 2.0
    elif out.min_zt_guard_bg < target_bg:
        blend = (out.min_zt_guard_bg - threshold) / (target_bg - threshold)
        blended = min_uam * blend + out.min_zt_guard_bg * (1 - blend)
        min_zt_uam = (min_uam + blended) / 2.0
    elif out.min_zt_guard_bg > min_uam:
        min_zt_uam = (min_uam + out.min_zt_guard_bg) / 2.0
    min_zt_uam = round_dec(min_zt_uam, 0)

    if meal.carbs > 0:
        if not enable_uam and min_cob < UNSET:
            min_pred = round_dec(max(min_iob, min_cob), 0)
        elif min_cob < UNSET:
            blended_min = fraction_carbs_left * min_cob + (1 - fraction_carbs_left) * min_zt_uam
            min_pred = round_dec(max(min_iob, min_cob, blended_min), 0)
        elif enable_uam:
            min_pred = min_zt_uam
        else:
            min_pred = guard
    elif enable_uam:
        min_pred = round_dec(max(min_iob, min_zt_uam), 0)

    out.min_pred_bg = min(min_pred, avg)
    out.avg_pred_bg = avg
    out.min_guard_bg = guard
    out.log.append(
        f"minPredBG: {out.min_pred_bg:g} minIOBPredBG: {min_iob:g} minZTGuardBG: {out.min_zt_guard_bg:g} avgPredBG: {avg:g}"
    )
