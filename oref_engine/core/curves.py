# oref_engine/core/curves.py
"""
Insulin action curves.

Two families, both normalized so that one unit of insulin integrates to one
unit of activity over DIA:
  - bilinear: triangle, linear rise to a fixed peak at 75 min, linear decay to 0 at DIA
  - exponential: the oref0 bi-exponential model, used by rapid-acting and ultra-rapid

t is minutes since delivery, dia_minutes is DIA * 60.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from oref_engine.errors import InvalidProfile


@dataclass(frozen=True)
class CurveConstants:
    default_peak: int  # minutes
    min_dia: float  # hours
    min_peak: int
    max_peak: int
    exponential: bool


class InsulinCurve(str, Enum):
    BILINEAR = "bilinear"
    RAPID_ACTING = "rapid-acting"
    ULTRA_RAPID = "ultra-rapid"

    @classmethod
    def parse(cls, name: "str | InsulinCurve") -> "InsulinCurve":
        if isinstance(name, InsulinCurve):
            return name
        key = str(name).strip().lower().replace("_", "-")
        aliases = {
            "bilinear": cls.BILINEAR,
            "rapid-acting": cls.RAPID_ACTING,
            "rapidacting": cls.RAPID_ACTING,
            "ultra-rapid": cls.ULTRA_RAPID,
            "ultrarapid": cls.ULTRA_RAPID,
        }
        try:
            return aliases[key]
        except KeyError:
            raise InvalidProfile(f"Unknown insulin curve: {name}") from None

    @property
    def constants(self) -> CurveConstants:
        return _CURVE_TABLE[self]

    @property
    def default_peak(self) -> int:
        return self.constants.default_peak

    @property
    def min_dia(self) -> float:
        return self.constants.min_dia

    @property
    def min_peak(self) -> int:
        return self.constants.min_peak

    @property
    def max_peak(self) -> int:
        return self.constants.max_peak

    def effective_peak(self, peak: float, use_custom: bool) -> float:
        if not use_custom:
            return float(self.default_peak)
        return float(min(max(peak, self.min_peak), self.max_peak))

    def __str__(self) -> str:
        return self.value


_CURVE_TABLE = {
    InsulinCurve.BILINEAR: CurveConstants(default_peak=75, min_dia=3.0, min_peak=75, max_peak=75, exponential=False),
    InsulinCurve.RAPID_ACTING: CurveConstants(default_peak=75, min_dia=5.0, min_peak=50, max_peak=120, exponential=True),
    InsulinCurve.ULTRA_RAPID: CurveConstants(default_peak=55, min_dia=5.0, min_peak=35, max_peak=100, exponential=True),
}

BILINEAR_PEAK = 75.0


# --- bilinear (triangle) ---
def bilinear_activity(t: float, dia_minutes: float, peak: float = BILINEAR_PEAK) -> float:
    if t <= 0 or t >= dia_minutes:
        return 0.0
    h = 2.0 / dia_minutes
    if t < peak:
        return h * t / peak
    return h * (dia_minutes - t) / (dia_minutes - peak)


def bilinear_iob(t: float, dia_minutes: float, peak: float = BILINEAR_PEAK) -> float:
    if t <= 0:
        return 1.0
    if t >= dia_minutes:
        return 0.0
    h = 2.0 / dia_minutes
    if t < peak:
        consumed = 0.5 * t * (h * t / peak)
        return max(0.0, 1.0 - consumed)
    rem_base = dia_minutes - t
    return max(0.0, 0.5 * rem_base * (h * rem_base / (dia_minutes - peak)))


# --- exponential (oref0) ---
def _exp_params(peak: float, end: float) -> tuple[float, float, float]:
    tau = peak * (1 - peak / end) / (1 - 2 * peak / end)
    a = 2 * tau / end
    s = 1 / (1 - a + (1 + a) * math.exp(-end / tau))
    return tau, a, s


def exponential_activity(t: float, dia_minutes: float, peak: float) -> float:
    if t < 0 or t >= dia_minutes:
        return 0.0
    end = dia_minutes
    tau, _a, s = _exp_params(peak, end)
    return max(0.0, (s / tau**2) * t * (1 - t / end) * math.exp(-t / tau))


def exponential_iob(t: float, dia_minutes: float, peak: float) -> float:
    if t <= 0:
        return 1.0
    if t >= dia_minutes:
        return 0.0
    end = dia_minutes
    tau, a, s = _exp_params(peak, end)
    frac = 1 - s * (1 - a) * ((t**2 / (tau * end * (1 - a)) - t / tau - 1) * math.exp(-t / tau) + 1)
    return min(1.0, max(0.0, frac))


def iob_fraction(t: float, curve: InsulinCurve, dia_hours: float, peak: float) -> float:
    """Fraction of one unit still active t minutes after delivery."""
    dia_minutes = dia_hours * 60.0
    if curve.constants.exponential:
        return exponential_iob(t, dia_minutes, peak)
    return bilinear_iob(t, dia_minutes)


def activity_fraction(t: float, curve: InsulinCurve, dia_hours: float, peak: float) -> float:
    """Activity of one unit t minutes after delivery (U/min per U)."""
    dia_minutes = dia_hours * 60.0
    if curve.constants.exponential:
        return exponential_activity(t, dia_minutes, peak)
    return bilinear_activity(t, dia_minutes)


def iob_contrib(insulin: float, minutes_ago: float, curve: InsulinCurve, dia_hours: float, peak: float) -> tuple[float, float]:
    """Return (iob, activity) left by `insulin` units delivered `minutes_ago` minutes ago."""
    return (
        insulin * iob_fraction(minutes_ago, curve, dia_hours, peak),
        insulin * activity_fraction(minutes_ago, curve, dia_hours, peak),
    )
