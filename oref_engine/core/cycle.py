# oref_engine/core/cycle.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from oref_engine.config import AUTOSENS_LOOKBACK_HOURS
from oref_engine.core import iob as iob_engine
from oref_engine.core.autosens import detect_sensitivity
from oref_engine.core.cob import calculate_cob
from oref_engine.core.determine_basal import determine_basal
from oref_engine.core.glucose import get_glucose_status
from oref_engine.errors import OrefError
from oref_engine.structs import CurrentTemp, DetermineBasalResult, GlucoseReading, Profile, Treatment

logger = logging.getLogger(__name__)


def run_cycle(
    profile: Profile,
    treatments: Iterable[Treatment],
    glucose: Iterable[GlucoseReading],
    current_time: int,
    current_temp: Optional[CurrentTemp] = None,
    microbolus_allowed: bool = True,
    autosens_hours: float = AUTOSENS_LOOKBACK_HOURS,
) -> DetermineBasalResult:
    """
    Full chain for one control cycle: glucose status, IOB array, COB, autosens,
    then determine_basal. Anything dated after `current_time` is ignored.
    """
    history = sorted((t for t in treatments if t.date <= current_time), key=lambda t: (t.date, t.kind))
    readings = sorted((r for r in glucose if r.date <= current_time), key=lambda r: r.date)

    try:
        glucose_status = get_glucose_status(readings)
        iob_array = iob_engine.calculate_array(history, profile, current_time)
        meal_data = calculate_cob(history, readings, profile, current_time)
        autosens_data = detect_sensitivity(readings, history, profile, current_time, lookback_hours=autosens_hours)
        if current_temp is None:
            current_temp = iob_engine.current_temp(history, current_time)
    except OrefError as e:
        logger.warning("run_cycle: cycle rejected at %s: %s", current_time, e)
        return DetermineBasalResult.error_result(str(e), kind=e.kind, deliver_at=current_time)

    logger.debug(
        "run_cycle %s: bg=%s iob=%.3f cob=%s ratio=%s",
        current_time,
        glucose_status.glucose,
        iob_array[0].iob,
        meal_data.meal_cob,
        autosens_data.ratio,
    )
    return determine_basal(
        glucose_status,
        current_temp,
        iob_array,
        profile,
        autosens_data,
        meal_data,
        current_time,
        microbolus_allowed=microbolus_allowed,
    )
