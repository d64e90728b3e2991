# oref_engine/core/iob.py
"""
Insulin on board from a treatment history.

Boluses contribute directly through the insulin curve. Temp basals are split
into TEMP_SEGMENT_MINUTES virtual doses (rate * minutes / 60 U, placed at the
segment midpoint) over the part that was actually delivered: a temp ends at
its programmed end, at the start of the next temp, or at the delivery cutoff,
whichever comes first. No scheduled-basal baseline is assumed.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence, Tuple

from oref_engine.config import STEP_MINUTES, TEMP_SEGMENT_MINUTES
from oref_engine.core.curves import iob_contrib
from oref_engine.errors import InvalidTreatment
from oref_engine.structs import Bolus, CarbEntry, CurrentTemp, IobTotal, Profile, TempBasal, Treatment

logger = logging.getLogger(__name__)

MS_PER_MIN = 60_000


def _split(treatments: Iterable[Treatment]) -> Tuple[List[Bolus], List[TempBasal]]:
    boluses: List[Bolus] = []
    temps: List[TempBasal] = []
    for t in treatments:
        if isinstance(t, Bolus):
            boluses.append(t)
        elif isinstance(t, TempBasal):
            temps.append(t)
        elif isinstance(t, CarbEntry):
            continue
        else:
            raise InvalidTreatment(f"unknown treatment type: {type(t).__name__}")
    boluses.sort(key=lambda b: b.date)
    temps.sort(key=lambda t: t.date)
    return boluses, temps


def temp_segments(temps: Sequence[TempBasal], delivered_until: int) -> List[Tuple[float, float]]:
    """
    Virtual doses (midpoint_ms, units) for temps sorted by start time.

    Only temps that started at or before `delivered_until` are considered; each
    is truncated by the next temp's start and by `delivered_until`.
    """
    doses: List[Tuple[float, float]] = []
    seg_ms = TEMP_SEGMENT_MINUTES * MS_PER_MIN

    for i, temp in enumerate(temps):
        if temp.date > delivered_until:
            break
        end = min(temp.end, delivered_until)
        if i + 1 < len(temps):
            end = min(end, temps[i + 1].date)
        if end <= temp.date or temp.rate <= 0:
            continue

        start = temp.date
        while start < end:
            stop = min(start + seg_ms, end)
            minutes = (stop - start) / MS_PER_MIN
            doses.append(((start + stop) / 2.0, temp.rate * minutes / 60.0))
            start = stop

    return doses


def _accumulate(
    boluses: Sequence[Bolus],
    doses: Sequence[Tuple[float, float]],
    profile: Profile,
    at: int,
) -> IobTotal:
    dia_ms = profile.dia * 60 * MS_PER_MIN
    peak = profile.peak
    bolus_iob = 0.0
    basal_iob = 0.0
    activity = 0.0

    for b in boluses:
        age = at - b.date
        if age < 0 or age > dia_ms:
            continue
        iob, act = iob_contrib(b.insulin, age / MS_PER_MIN, profile.curve, profile.dia, peak)
        bolus_iob += iob
        activity += act

    for ts, units in doses:
        age = at - ts
        if age < 0 or age > dia_ms:
            continue
        iob, act = iob_contrib(units, age / MS_PER_MIN, profile.curve, profile.dia, peak)
        basal_iob += iob
        activity += act

    return IobTotal(
        iob=max(0.0, bolus_iob + basal_iob),
        activity=max(0.0, activity),
        bolus_iob=bolus_iob,
        basal_iob=basal_iob,
        time=int(at),
    )


def _window(treatments: Iterable[Treatment], profile: Profile, time: int) -> Tuple[List[Bolus], List[TempBasal]]:
    boluses, temps = _split(treatments)
    oldest = time - profile.dia * 60 * MS_PER_MIN
    boluses = [b for b in boluses if oldest <= b.date <= time]
    temps = [t for t in temps if t.date <= time]
    # temps superseded before the window contribute nothing
    while len(temps) > 1 and temps[1].date <= oldest:
        temps = temps[1:]
    return boluses, temps


def calculate(treatments: Iterable[Treatment], profile: Profile, time: int) -> IobTotal:
    """IOB and activity at `time`. Treatments dated after `time` are ignored."""
    boluses, temps = _window(treatments, profile, time)
    return _accumulate(boluses, temp_segments(temps, time), profile, time)


def calculate_array(
    treatments: Iterable[Treatment],
    profile: Profile,
    time: int,
    ticks: Optional[int] = None,
) -> List[IobTotal]:
    """
    IOB at 5-minute ticks starting at `time`, out to DIA by default.

    The running temp keeps delivering to its programmed end in the main series;
    `iob_with_zero_temp` on each tick is the same projection with basal
    delivery stopped at `time`.
    """
    if ticks is None:
        ticks = int(math.ceil(profile.dia * 60 / STEP_MINUTES)) + 1

    boluses, temps = _window(treatments, profile, time)
    delivered_now = temp_segments(temps, time)

    out: List[IobTotal] = []
    for k in range(ticks):
        at = time + k * STEP_MINUTES * MS_PER_MIN
        tick = _accumulate(boluses, temp_segments(temps, at), profile, at)
        tick.iob_with_zero_temp = _accumulate(boluses, delivered_now, profile, at)
        out.append(tick)

    logger.debug("IOB array: %d ticks, iob0=%.3f activity0=%.5f", len(out), out[0].iob, out[0].activity)
    return out


def current_temp(treatments: Iterable[Treatment], time: int) -> Optional[CurrentTemp]:
    """The temp basal running at `time`, or None when the scheduled basal runs."""
    _, temps = _split(treatments)
    started = [t for t in temps if t.date <= time]
    if not started:
        return None
    last = started[-1]
    if last.end <= time:
        return None
    return CurrentTemp(
        duration=int(round((last.end - time) / MS_PER_MIN)),
        rate=last.rate,
        minutes_running=int(round((time - last.date) / MS_PER_MIN)),
    )
