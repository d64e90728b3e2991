# oref_engine/core/autosens.py
"""
Sensitivity drift from the last 24h of non-meal deviations.

ratio = 1 + median(deviation / ISF * 12 / basal)

ratio > 1 means BG rises more than modeled (resistance): ISF is divided by the
ratio and basal multiplied by it downstream.
"""

from __future__ import annotations

import logging
import math
import statistics
from typing import Iterable, List, Sequence

from oref_engine.config import AUTOSENS_LOOKBACK_HOURS, AUTOSENS_MIN_INTERVALS
from oref_engine.core.cob import absorb, carb_entries
from oref_engine.core.deviations import calc_deviations
from oref_engine.errors import CalculationError
from oref_engine.structs import AutosensResult, GlucoseReading, Profile, Treatment, round_dec

logger = logging.getLogger(__name__)


def clamp_ratio(ratio: float, profile: Profile) -> float:
    return max(profile.autosens_min, min(profile.autosens_max, ratio))


def detect_sensitivity(
    readings: Iterable[GlucoseReading],
    treatments: Sequence[Treatment],
    profile: Profile,
    time: int,
    lookback_hours: float = AUTOSENS_LOOKBACK_HOURS,
) -> AutosensResult:
    start = int(time - lookback_hours * 3600 * 1000)
    deviations = calc_deviations(readings, treatments, profile, start, time)

    max_abs_ms = int(profile.max_meal_absorption_time * 3600 * 1000)
    trace = absorb(carb_entries(treatments, start - max_abs_ms, time), deviations, profile)

    normalized: List[float] = []
    meal_intervals = 0
    for i, dev in enumerate(deviations):
        if trace.absorbing(i):
            meal_intervals += 1
            continue
        basal = profile.basal_at(dev.date)
        if basal <= 0:
            continue
        # U/h of unexplained insulin need, relative to scheduled basal
        normalized.append(dev.deviation / dev.isf * 12 / basal)

    if len(normalized) < AUTOSENS_MIN_INTERVALS:
        logger.debug("autosens: %d usable intervals, need %d", len(normalized), AUTOSENS_MIN_INTERVALS)
        return AutosensResult(ratio=1.0, sens_result="not enough data", deviations_used=len(normalized))

    raw = 1.0 + float(statistics.median(normalized))
    if not math.isfinite(raw):
        raise CalculationError(f"autosens ratio is not finite: {raw}")

    ratio = clamp_ratio(round_dec(raw, 2), profile)
    if ratio > 1:
        text = "Excess insulin resistance detected"
    elif ratio < 1:
        text = "Excess insulin sensitivity detected"
    else:
        text = "Sensitivity normal"

    logger.debug(
        "autosens: raw=%.3f ratio=%.2f intervals=%d meal_excluded=%d",
        raw,
        ratio,
        len(normalized),
        meal_intervals,
    )
    return AutosensResult(
        ratio=ratio,
        sens_result=f"{text}: ratio {ratio:g}",
        deviations_used=len(normalized),
    )
