# oref_engine/core/glucose.py
"""
Glucose status from a CGM series: latest value plus 5m / short / long deltas,
all expressed per 5 minutes.

Readings within 2.5 min of the newest are averaged into it. Bands (minutes back
from the newest reading):
  delta            2.5 .. 7.5
  short_avg_delta  2.5 .. 17.5
  long_avg_delta   17.5 .. 42.5
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List

from oref_engine.config import GLUCOSE_FRESHNESS_MINUTES, GLUCOSE_MAX_FUTURE_MINUTES, MIN_VALID_BG
from oref_engine.errors import InvalidGlucose, MissingData
from oref_engine.structs import GlucoseReading, GlucoseStatus, round_dec

logger = logging.getLogger(__name__)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def valid_readings(readings: Iterable[GlucoseReading]) -> List[GlucoseReading]:
    """Finite readings at or above MIN_VALID_BG, newest first."""
    out = [r for r in readings if r.glucose is not None and math.isfinite(r.glucose) and r.glucose >= MIN_VALID_BG]
    out.sort(key=lambda r: r.date, reverse=True)
    return out


def get_glucose_status(readings: Iterable[GlucoseReading]) -> GlucoseStatus:
    readings = list(readings)
    if not readings:
        raise MissingData("no glucose readings")
    data = valid_readings(readings)
    if not data:
        raise InvalidGlucose(f"no readings at or above {MIN_VALID_BG:g} mg/dL")

    now = data[0]
    now_glucose = float(now.glucose)
    now_date = float(now.date)
    averaged = 1

    last_deltas: List[float] = []
    short_deltas: List[float] = []
    long_deltas: List[float] = []

    for then in data[1:]:
        minutes_ago = (now_date - then.date) / 60000.0
        if minutes_ago < 2.5:
            # running average of near-duplicate readings
            now_glucose = (now_glucose * averaged + then.glucose) / (averaged + 1)
            now_date = (now_date * averaged + then.date) / (averaged + 1)
            averaged += 1
            continue

        avg_delta = (now_glucose - then.glucose) / minutes_ago * 5
        if 2.5 < minutes_ago < 17.5:
            short_deltas.append(avg_delta)
            if minutes_ago < 7.5:
                last_deltas.append(avg_delta)
        elif 17.5 < minutes_ago < 42.5:
            long_deltas.append(avg_delta)
        elif minutes_ago >= 42.5:
            break

    status = GlucoseStatus(
        glucose=round_dec(now_glucose, 2),
        delta=round_dec(_mean(last_deltas), 2),
        short_avg_delta=round_dec(_mean(short_deltas), 2),
        long_avg_delta=round_dec(_mean(long_deltas), 2),
        date=int(round(now_date)),
        noise=float(now.noise or 0.0),
    )
    logger.debug(
        "glucose status: bg=%s delta=%s short=%s long=%s",
        status.glucose,
        status.delta,
        status.short_avg_delta,
        status.long_avg_delta,
    )
    return status


def check_freshness(status: GlucoseStatus, time: int, max_age: float = GLUCOSE_FRESHNESS_MINUTES) -> float:
    """Minutes since the newest reading; raises InvalidGlucose outside the window."""
    bg_mins_ago = round_dec((time - status.date) / 60000.0, 1)
    if bg_mins_ago > max_age:
        raise InvalidGlucose(f"stale glucose: last reading {bg_mins_ago:g}m ago (max {max_age:g}m)")
    if bg_mins_ago < -GLUCOSE_MAX_FUTURE_MINUTES:
        raise InvalidGlucose(f"glucose reading {-bg_mins_ago:g}m in the future")
    return bg_mins_ago


def tick(delta: float) -> str:
    if delta > -0.5:
        return f"+{int(round(delta))}"
    return str(int(round(delta)))
