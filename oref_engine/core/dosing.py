# oref_engine/core/dosing.py
"""
Insulin requirement, basal safety limits, temp basal hysteresis and SMB sizing.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from oref_engine.config import MAX_ZERO_TEMP_MINUTES, TEMP_DURATION_MINUTES, TEMP_HYSTERESIS_FRACTION
from oref_engine.errors import CalculationError
from oref_engine.structs import CurrentTemp, Profile, round_dec

logger = logging.getLogger(__name__)


def insulin_required(eventual_bg: float, target_bg: float, sens: float) -> float:
    """
    insulin_req = (eventual_bg - target_bg) / sens

    Returns units; negative means BG is heading below target.
    """
    if sens <= 0:
        raise CalculationError(f"sensitivity must be positive, got {sens}")
    return round_dec((eventual_bg - target_bg) / sens, 2)


def rate_from_insulin_req(basal: float, insulin_req: float, duration: int = TEMP_DURATION_MINUTES) -> float:
    """
    rate = basal + insulin_req * 60 / duration

    Spreads the requirement over `duration` minutes on top of basal.
    """
    return basal + insulin_req * 60.0 / duration


def max_safe_basal(profile: Profile, basal: float) -> float:
    return min(
        profile.max_basal,
        profile.max_daily_basal * profile.max_daily_safety_multiplier,
        basal * profile.current_basal_safety_multiplier,
    )


def clamp_rate(rate: float, profile: Profile, basal: float) -> float:
    if not math.isfinite(rate):
        raise CalculationError(f"temp basal rate is not finite: {rate}")
    return round_dec(max(0.0, min(rate, max_safe_basal(profile, basal))), 2)


def needs_new_temp(
    candidate: float,
    current_temp: Optional[CurrentTemp],
    basal: float,
    duration: int = TEMP_DURATION_MINUTES,
) -> bool:
    """
    False when the running delivery is close enough to `candidate`.

    A running temp is kept when it has more than duration - 10 minutes left and
    the candidate is within TEMP_HYSTERESIS_FRACTION of its rate. With no temp
    running, the scheduled basal counts as running indefinitely.
    """
    if current_temp is not None and current_temp.duration > 0:
        running = current_temp.rate
        if current_temp.duration <= duration - 10:
            return True
    else:
        running = basal

    return abs(candidate - running) > TEMP_HYSTERESIS_FRACTION * running


def floor_to_increment(units: float, increment: float) -> float:
    # round first so 0.1 / 0.05 does not land on 1.9999999
    steps = math.floor(round(units / increment, 6))
    return round_dec(steps * increment, 3)


def size_smb(insulin_req: float, iob: float, profile: Profile) -> Optional[float]:
    """
    SMB size, or None when below one bolus increment.

    min(insulin_req * smb_delivery_ratio, max_smb_units, max_iob - iob),
    floored to the bolus increment.
    """
    headroom = profile.max_iob - iob
    raw = min(insulin_req * profile.smb_delivery_ratio, profile.max_smb_units, headroom)
    if raw <= 0:
        return None
    units = floor_to_increment(raw, profile.bolus_increment)
    if units < profile.bolus_increment:
        logger.debug("SMB %.3fU below increment %.3fU", raw, profile.bolus_increment)
        return None
    return units


def zero_temp_duration(target_bg: float, min_guard_bg: float, sens: float, basal: float) -> int:
    """
    Worst-case duration for a low-glucose zero temp: the time at `basal` that
    covers the undershoot below target, rounded to 30 min, within 30..120.
    """
    if basal <= 0:
        return MAX_ZERO_TEMP_MINUTES
    worst_case_insulin_req = (target_bg - min_guard_bg) / sens
    duration_req = int(round(60 * worst_case_insulin_req / basal))
    duration_req = int(round(duration_req / 30.0)) * 30
    return min(MAX_ZERO_TEMP_MINUTES, max(TEMP_DURATION_MINUTES, duration_req))
