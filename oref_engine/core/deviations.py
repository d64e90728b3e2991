# oref_engine/core/deviations.py
"""
Per-interval BG deviations: how far each observed 5m change departs from the
change insulin activity alone explains (BGI). Shared by COB and autosens.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from oref_engine.config import MAX_INTERVAL_GAP_MINUTES, MIN_VALID_BG
from oref_engine.core import iob as iob_engine
from oref_engine.errors import CalculationError
from oref_engine.structs import GlucoseReading, Profile, Treatment, round_dec

logger = logging.getLogger(__name__)


@dataclass
class Deviation:
    date: int  # ms, end of the interval
    glucose: float
    delta: float  # observed, per 5m
    bgi: float  # insulin-only, per 5m
    deviation: float  # delta - bgi
    isf: float
    carb_ratio: float
    minutes: float  # interval length


def calc_deviations(
    readings: Iterable[GlucoseReading],
    treatments: Sequence[Treatment],
    profile: Profile,
    start: int,
    end: int,
) -> List[Deviation]:
    """Deviations for consecutive reading pairs whose later reading lies in (start, end]."""
    data = sorted(
        (r for r in readings if r.glucose is not None and math.isfinite(r.glucose) and r.glucose >= MIN_VALID_BG and r.date <= end),
        key=lambda r: r.date,
    )
    out: List[Deviation] = []

    for prev, cur in zip(data, data[1:]):
        if cur.date <= start:
            continue
        minutes = (cur.date - prev.date) / 60000.0
        if minutes <= 0 or minutes > MAX_INTERVAL_GAP_MINUTES:
            continue

        isf = profile.sens_at(cur.date)
        if isf <= 0:
            raise CalculationError(f"non-positive ISF {isf} at {cur.date}")

        activity = iob_engine.calculate(treatments, profile, cur.date).activity
        delta = (cur.glucose - prev.glucose) / minutes * 5
        bgi = round_dec(-activity * isf * 5, 2)
        out.append(
            Deviation(
                date=cur.date,
                glucose=float(cur.glucose),
                delta=delta,
                bgi=bgi,
                deviation=delta - bgi,
                isf=isf,
                carb_ratio=profile.carb_ratio_at(cur.date),
                minutes=minutes,
            )
        )

    logger.debug("deviations: %d intervals in window", len(out))
    return out
