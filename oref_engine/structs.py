# oref_engine/structs.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union

from oref_engine.core.curves import InsulinCurve
from oref_engine.errors import InvalidGlucose, InvalidProfile, InvalidTimestamp, InvalidTreatment, OutOfRange

MAX_DIA_HOURS = 24.0


# -----------------------------
# Helpers
# -----------------------------
def round_dec(value: float, digits: int) -> float:
    if not math.isfinite(value):
        return value
    scale = 10.0**digits
    return round(value * scale) / scale


def without_zeros(value: float) -> str:
    s = f"{value:.2f}"
    return s.rstrip("0").rstrip(".")


def convert_bg(value: float) -> str:
    # mg/dL, whole numbers
    return str(int(round(value)))


def _check_finite(name: str, value: float, error=InvalidProfile) -> None:
    if value is None or not math.isfinite(float(value)):
        raise error(f"{name} must be finite, got {value}")


def _check_timestamp(date: int) -> None:
    if not isinstance(date, (int, float)) or isinstance(date, bool) or not math.isfinite(date) or date < 0:
        raise InvalidTimestamp(f"{date!r}")


# -----------------------------
# Glucose readings
# -----------------------------
class Direction(str, Enum):
    NONE = "NONE"
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"
    TRIPLE_UP = "TripleUp"
    TRIPLE_DOWN = "TripleDown"
    NOT_COMPUTABLE = "NOT COMPUTABLE"
    RATE_OUT_OF_RANGE = "RATE OUT OF RANGE"
    CGM_ERROR = "CGM ERROR"


@dataclass(frozen=True)
class GlucoseReading:
    glucose: float  # mg/dL
    date: int  # timestamp (ms)
    direction: Optional[Direction] = None
    noise: float = 0.0

    def __post_init__(self) -> None:
        _check_timestamp(self.date)
        _check_finite("glucose", self.glucose, InvalidGlucose)


# -----------------------------
# Treatments
# -----------------------------
@dataclass(frozen=True)
class Bolus:
    date: int
    insulin: float  # U
    kind = "bolus"

    def __post_init__(self) -> None:
        _check_timestamp(self.date)
        _check_finite("insulin", self.insulin, InvalidTreatment)
        if self.insulin < 0:
            raise InvalidTreatment(f"negative bolus: {self.insulin}")


@dataclass(frozen=True)
class TempBasal:
    date: int
    rate: float  # U/h
    duration: float  # minutes
    kind = "temp_basal"

    def __post_init__(self) -> None:
        _check_timestamp(self.date)
        _check_finite("rate", self.rate, InvalidTreatment)
        _check_finite("duration", self.duration, InvalidTreatment)
        if self.rate < 0:
            raise InvalidTreatment(f"negative temp basal rate: {self.rate}")
        if self.duration < 0:
            raise InvalidTreatment(f"negative temp basal duration: {self.duration}")

    @property
    def end(self) -> int:
        return int(self.date + self.duration * 60_000)


@dataclass(frozen=True)
class CarbEntry:
    date: int
    carbs: float  # g
    kind = "carbs"

    def __post_init__(self) -> None:
        _check_timestamp(self.date)
        _check_finite("carbs", self.carbs, InvalidTreatment)
        if self.carbs < 0:
            raise InvalidTreatment(f"negative carbs: {self.carbs}")


Treatment = Union[Bolus, TempBasal, CarbEntry]


# -----------------------------
# Profile
# -----------------------------
class ProfileSchedules(Protocol):
    """Time-of-day lookups owned by the caller. Each takes an epoch-ms timestamp."""

    def basal(self, ts: int) -> float: ...

    def isf(self, ts: int) -> float: ...

    def carb_ratio(self, ts: int) -> float: ...

    def targets(self, ts: int) -> Tuple[float, float]: ...


@dataclass(frozen=True)
class Profile:
    dia: float = 5.0  # hours
    curve: InsulinCurve = InsulinCurve.RAPID_ACTING
    use_custom_peak_time: bool = False
    insulin_peak_time: float = 75.0  # minutes

    sens: float = 50.0  # mg/dL per U
    carb_ratio: float = 10.0  # g per U
    current_basal: float = 1.0  # U/h
    min_bg: float = 100.0
    max_bg: float = 100.0

    # safety
    max_iob: float = 3.0
    max_basal: float = 3.0
    max_daily_basal: float = 1.0
    max_daily_safety_multiplier: float = 3.0
    current_basal_safety_multiplier: float = 4.0
    threshold: float = 70.0
    skip_neutral_temps: bool = False

    # SMB / UAM
    enable_smb: bool = False
    max_smb_units: float = 1.0
    smb_delivery_ratio: float = 0.5
    bolus_increment: float = 0.05
    enable_uam: bool = False

    # autosens
    autosens_min: float = 0.7
    autosens_max: float = 1.2

    # carbs
    min_5m_carbimpact: float = 8.0
    max_cob: float = 120.0
    max_meal_absorption_time: float = 6.0  # hours
    carbs_req_threshold: float = 1.0

    schedules: Optional[ProfileSchedules] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "curve", InsulinCurve.parse(self.curve))
        for name in (
            "dia",
            "insulin_peak_time",
            "sens",
            "carb_ratio",
            "current_basal",
            "min_bg",
            "max_bg",
            "max_iob",
            "max_basal",
            "max_daily_basal",
            "max_daily_safety_multiplier",
            "current_basal_safety_multiplier",
            "threshold",
            "max_smb_units",
            "smb_delivery_ratio",
            "bolus_increment",
            "autosens_min",
            "autosens_max",
            "min_5m_carbimpact",
            "max_cob",
            "max_meal_absorption_time",
            "carbs_req_threshold",
        ):
            _check_finite(name, getattr(self, name))

        if not self.curve.min_dia <= self.dia <= MAX_DIA_HOURS:
            raise OutOfRange("dia", self.dia, self.curve.min_dia, MAX_DIA_HOURS)
        if self.sens <= 0:
            raise InvalidProfile(f"sens must be positive, got {self.sens}")
        if self.carb_ratio <= 0:
            raise InvalidProfile(f"carb_ratio must be positive, got {self.carb_ratio}")
        for name in ("current_basal", "max_iob", "max_basal", "max_daily_basal", "max_smb_units", "max_cob"):
            if getattr(self, name) < 0:
                raise InvalidProfile(f"{name} must not be negative, got {getattr(self, name)}")
        if self.min_bg > self.max_bg:
            raise InvalidProfile(f"min_bg {self.min_bg} above max_bg {self.max_bg}")
        if not 0 < self.autosens_min <= 1.0:
            raise OutOfRange("autosens_min", self.autosens_min, 0, 1)
        if not self.autosens_min <= 1.0 <= self.autosens_max:
            raise InvalidProfile(f"autosens bounds must bracket 1.0, got {self.autosens_min}..{self.autosens_max}")
        if not 0 < self.smb_delivery_ratio <= 1:
            raise OutOfRange("smb_delivery_ratio", self.smb_delivery_ratio, 0, 1)
        if self.bolus_increment <= 0:
            raise InvalidProfile(f"bolus_increment must be positive, got {self.bolus_increment}")
        if self.max_meal_absorption_time <= 0:
            raise InvalidProfile(f"max_meal_absorption_time must be positive, got {self.max_meal_absorption_time}")

    @property
    def peak(self) -> float:
        return self.curve.effective_peak(self.insulin_peak_time, self.use_custom_peak_time)

    @property
    def target_bg(self) -> float:
        return (self.min_bg + self.max_bg) / 2

    def basal_at(self, ts: int) -> float:
        if self.schedules is None:
            return self.current_basal
        return self.schedules.basal(ts)

    def sens_at(self, ts: int) -> float:
        if self.schedules is None:
            return self.sens
        return self.schedules.isf(ts)

    def carb_ratio_at(self, ts: int) -> float:
        if self.schedules is None:
            return self.carb_ratio
        return self.schedules.carb_ratio(ts)

    def targets_at(self, ts: int) -> Tuple[float, float]:
        if self.schedules is None:
            return self.min_bg, self.max_bg
        return self.schedules.targets(ts)


# -----------------------------
# Glucose status (mg/dL)
# -----------------------------
@dataclass
class GlucoseStatus:
    glucose: float
    delta: float  # 5m delta
    short_avg_delta: float  # ~15m
    long_avg_delta: float  # ~40m
    date: int
    noise: float = 0.0


# -----------------------------
# IOB + activity (U, U/min)
# -----------------------------
@dataclass
class IobTotal:
    iob: float = 0.0
    activity: float = 0.0
    bolus_iob: float = 0.0
    basal_iob: float = 0.0
    time: int = 0
    iob_with_zero_temp: Optional["IobTotal"] = None


# -----------------------------
# Meal data
# -----------------------------
@dataclass
class CobResult:
    carbs: float = 0.0  # entered within the absorption window (g)
    meal_cob: float = 0.0
    carb_impact: float = 0.0  # mg/dL per 5m
    last_carb_time: int = 0
    current_deviation: float = 0.0
    max_deviation: float = 0.0
    min_deviation: float = 0.0
    slope_from_max_deviation: float = 0.0
    slope_from_min_deviation: float = 0.0


# -----------------------------
# Autosens result
# -----------------------------
@dataclass
class AutosensResult:
    ratio: float = 1.0
    sens_result: str = ""
    deviations_used: int = 0


# -----------------------------
# Current temp basal
# -----------------------------
@dataclass
class CurrentTemp:
    duration: int = 0  # minutes remaining
    rate: float = 0.0
    minutes_running: int = 0


# -----------------------------
# Predictions (mg/dL)
# -----------------------------
@dataclass
class Predictions:
    IOB: List[int] = field(default_factory=list)
    COB: List[int] = field(default_factory=list)
    UAM: List[int] = field(default_factory=list)
    ZT: List[int] = field(default_factory=list)


# -----------------------------
# Final result
# -----------------------------
@dataclass
class DetermineBasalResult:
    rate: Optional[float] = None
    duration: Optional[int] = None
    units: Optional[float] = None  # SMB

    eventual_bg: Optional[float] = None
    insulin_req: Optional[float] = None
    variable_sens: Optional[float] = None
    sensitivity_ratio: Optional[float] = None
    pred_bgs: Optional[Predictions] = None

    bg: Optional[float] = None
    target_bg: Optional[float] = None
    threshold: Optional[float] = None
    bg_mins_ago: Optional[float] = None
    smb_enabled: Optional[bool] = None
    carbs_req: Optional[int] = None
    carbs_req_within: Optional[int] = None
    deliver_at: Optional[int] = None
    cob: Optional[float] = None
    iob: Optional[float] = None
    tick: Optional[str] = None

    error: Optional[str] = None
    error_kind: Optional[str] = None

    reason: str = ""
    console_log: List[str] = field(default_factory=list)
    console_error: List[str] = field(default_factory=list)

    @classmethod
    def error_result(cls, message: str, kind: str = "error", deliver_at: Optional[int] = None) -> "DetermineBasalResult":
        return cls(error=message, error_kind=kind, reason=message, deliver_at=deliver_at, console_error=[message])

    def has_error(self) -> bool:
        return self.error is not None

    def has_smb(self) -> bool:
        return self.units is not None and self.units > 0

    def has_temp(self) -> bool:
        return self.rate is not None and self.duration is not None
