# oref_engine/core/cob.py
"""
Carbs on board from observed deviations.

Every interval after a carb entry, the positive deviation (floored at
min_5m_carbimpact) is treated as carb absorption:

    grams = max(deviation, min_5m_carbimpact) / ISF * carb_ratio

consumed first-in-first-out across entries. An entry stops absorbing once its
grams are used up or max_meal_absorption_time has passed since it was logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from oref_engine.config import DEVIATION_LOOKBACK_MINUTES
from oref_engine.core.deviations import Deviation, calc_deviations
from oref_engine.structs import CarbEntry, CobResult, GlucoseReading, Profile, Treatment, round_dec

logger = logging.getLogger(__name__)


@dataclass
class CarbState:
    date: int
    carbs: float
    remaining: float


@dataclass
class CarbAbsorption:
    entries: List[CarbState]
    # attributed carb impact per deviation interval, None when nothing was absorbing
    impacts: List[Optional[float]]

    def absorbing(self, index: int) -> bool:
        return self.impacts[index] is not None


def carb_entries(treatments: Iterable[Treatment], start: int, end: int) -> List[CarbEntry]:
    entries = [t for t in treatments if isinstance(t, CarbEntry) and start <= t.date <= end and t.carbs > 0]
    entries.sort(key=lambda c: c.date)
    return entries


def absorb(entries: Sequence[CarbEntry], deviations: Sequence[Deviation], profile: Profile) -> CarbAbsorption:
    max_abs_ms = profile.max_meal_absorption_time * 3600 * 1000
    states = [CarbState(date=e.date, carbs=float(e.carbs), remaining=float(e.carbs)) for e in entries]
    impacts: List[Optional[float]] = []

    for dev in deviations:
        active = [s for s in states if s.date < dev.date and s.remaining > 0 and dev.date - s.date <= max_abs_ms]
        if not active:
            impacts.append(None)
            continue

        ci = max(dev.deviation, profile.min_5m_carbimpact)
        absorbed = ci / dev.isf * dev.carb_ratio * (dev.minutes / 5.0)
        impacts.append(ci)

        for s in active:
            if absorbed <= 0:
                break
            used = min(s.remaining, absorbed)
            s.remaining -= used
            absorbed -= used

    return CarbAbsorption(entries=states, impacts=impacts)


def _deviation_slopes(deviations: Sequence[Deviation]):
    """current/max/min deviation and slopes over the last DEVIATION_LOOKBACK_MINUTES."""
    if not deviations:
        return 0.0, 0.0, 0.0, 0.0, 0.0

    latest = deviations[-1]
    current = round_dec(latest.deviation, 3)
    max_dev = 0.0
    min_dev = 999.0
    slope_max = 0.0
    slope_min = 0.0
    window_start = latest.date - DEVIATION_LOOKBACK_MINUTES * 60000

    for dev in reversed(deviations[:-1]):
        if dev.date < window_start:
            break
        avg = round_dec(dev.deviation, 3)
        # per 5m, positive when the deviation is rising toward now
        slope = (avg - current) / (dev.date - latest.date) * 5 * 60000
        if avg > max_dev:
            slope_max = min(0.0, slope)
            max_dev = avg
        if avg < min_dev:
            slope_min = max(0.0, slope)
            min_dev = avg

    if min_dev == 999.0:
        min_dev = current
    return current, max_dev, min_dev, round_dec(slope_max, 2), round_dec(slope_min, 2)


def calculate_cob(
    treatments: Sequence[Treatment],
    readings: Iterable[GlucoseReading],
    profile: Profile,
    time: int,
) -> CobResult:
    max_abs_ms = int(profile.max_meal_absorption_time * 3600 * 1000)
    entries = carb_entries(treatments, time - max_abs_ms, time)

    start = time - DEVIATION_LOOKBACK_MINUTES * 60000
    if entries:
        start = min(start, entries[0].date)
    deviations = calc_deviations(readings, treatments, profile, start, time)

    current, max_dev, min_dev, slope_max, slope_min = _deviation_slopes(deviations)
    result = CobResult(
        current_deviation=current,
        max_deviation=max_dev,
        min_deviation=min_dev,
        slope_from_max_deviation=slope_max,
        slope_from_min_deviation=slope_min,
    )
    if not entries:
        return result

    trace = absorb(entries, deviations, profile)
    carbs = sum(e.carbs for e in entries)
    remaining = sum(s.remaining for s in trace.entries if time - s.date <= max_abs_ms)
    cob = min(max(0.0, remaining), carbs, profile.max_cob)

    result.carbs = round_dec(carbs, 3)
    result.meal_cob = round_dec(cob, 2)
    result.last_carb_time = entries[-1].date
    if trace.impacts and trace.impacts[-1] is not None and cob > 0:
        result.carb_impact = round_dec(trace.impacts[-1], 2)

    logger.debug(
        "COB: carbs=%s cob=%s ci=%s slopes=(%s, %s)",
        result.carbs,
        result.meal_cob,
        result.carb_impact,
        slope_max,
        slope_min,
    )
    return result
