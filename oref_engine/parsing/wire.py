# oref_engine/parsing/wire.py
"""
Wire format adapter.

Field names are lower camelCase; optional fields that are unset are left out
of the output entirely, never written as null. Predictions are flat arrays
(predBgsIob, predBgsCob, predBgsUam, predBgsZt) plus predictedBg, the
trajectory eventualBg was read from. deliverAt is an ISO-8601 UTC string.

Decoders accept camelCase, snake_case and the common oref / Nightscout
spellings, and raise the matching typed error on bad input.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from oref_engine.core.curves import InsulinCurve
from oref_engine.errors import InvalidGlucose, InvalidProfile, InvalidTimestamp, InvalidTreatment, OrefError
from oref_engine.structs import (
    Bolus,
    CarbEntry,
    DetermineBasalResult,
    Direction,
    GlucoseReading,
    Predictions,
    Profile,
    TempBasal,
    Treatment,
)

logger = logging.getLogger(__name__)

PREDICTION_KEYS = ("IOB", "COB", "UAM", "ZT")

# spellings that the generic camel/snake conversion does not cover
_ALIASES = {
    "min5mCarbimpact": "min_5m_carbimpact",
    "min_5m_carbimpact": "min_5m_carbimpact",
    "maxIOB": "max_iob",
    "enableSMB": "enable_smb",
    "enableUAM": "enable_uam",
    "maxSMBUnits": "max_smb_units",
    "maxCOB": "max_cob",
    "eventualBG": "eventual_bg",
    "targetBG": "target_bg",
    "predBGs": "pred_bgs",
    "COB": "cob",
    "IOB": "iob",
    "insulinPeakTime": "insulin_peak_time",
    "curveType": "curve",
    "insulinCurve": "curve",
}

NIGHTSCOUT_EVENT_TYPES = {
    "Meal Bolus": ("bolus", "carbs"),
    "Snack Bolus": ("bolus", "carbs"),
    "Correction Bolus": ("bolus",),
    "Bolus": ("bolus",),
    "SMB": ("bolus",),
    "Carb Correction": ("carbs",),
    "Carbs": ("carbs",),
    "Temp Basal": ("temp_basal",),
}


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def to_snake(key: str) -> str:
    if key in _ALIASES:
        return _ALIASES[key]
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _omit_unset(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in obj.items() if v is not None}


# -----------------------------
# Encoding
# -----------------------------
def predictions_to_wire(pred: Predictions, from_cob: bool = False) -> Dict[str, List[int]]:
    out = {"predBgs" + key.capitalize(): list(getattr(pred, key)) for key in PREDICTION_KEYS}
    out["predictedBg"] = list(pred.COB if from_cob else pred.IOB)
    return out


def iso_time(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def result_to_wire(result: DetermineBasalResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(result):
        value = getattr(result, f.name)
        if value is None:
            continue
        if f.name == "pred_bgs":
            out.update(predictions_to_wire(value, from_cob=bool(result.cob)))
            continue
        if f.name == "deliver_at":
            value = iso_time(value)
        elif isinstance(value, list):
            value = list(value)
        out[to_camel(f.name)] = value
    return out


def profile_to_wire(profile: Profile) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(profile):
        if f.name == "schedules":
            continue
        value = getattr(profile, f.name)
        if isinstance(value, InsulinCurve):
            value = value.value
        out[to_camel(f.name)] = value
    return _omit_unset(out)


def treatment_to_wire(treatment: Treatment) -> Dict[str, Any]:
    out = {"kind": treatment.kind}
    out.update({to_camel(f.name): getattr(treatment, f.name) for f in dataclasses.fields(treatment)})
    return out


def reading_to_wire(reading: GlucoseReading) -> Dict[str, Any]:
    return _omit_unset(
        {
            "glucose": reading.glucose,
            "date": reading.date,
            "direction": reading.direction.value if reading.direction is not None else None,
            "noise": reading.noise,
        }
    )


def dumps(result: DetermineBasalResult, **kwargs: Any) -> str:
    return json.dumps(result_to_wire(result), **kwargs)


# -----------------------------
# Decoding
# -----------------------------
def _normalized(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {to_snake(k): v for k, v in raw.items()}


def _parse_date(raw: Dict[str, Any], error=InvalidTimestamp) -> int:
    for key in ("date", "mills", "timestamp"):
        if raw.get(key) is not None:
            value = raw[key]
            if isinstance(value, bool):
                raise error(f"{key}={value!r}")
            if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
                return _parse_iso(value)
            try:
                return int(value)
            except (TypeError, ValueError):
                raise error(f"{key}={value!r}") from None
    for key in ("created_at", "date_string"):
        if raw.get(key):
            return _parse_iso(raw[key])
    raise InvalidTimestamp("no date, mills, timestamp or created_at field")


def _parse_iso(value: str) -> int:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidTimestamp(f"unparseable date {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _number(raw: Dict[str, Any], key: str, error, default: Optional[float] = None) -> float:
    value = raw.get(key, default)
    if value is None:
        raise error(f"missing field {key!r}")
    if isinstance(value, bool):
        raise error(f"{key}={value!r} is not a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise error(f"{key}={value!r} is not a number") from None


def profile_from_wire(raw: Dict[str, Any]) -> Profile:
    if not isinstance(raw, dict):
        raise InvalidProfile(f"expected an object, got {type(raw).__name__}")
    names = {f.name for f in dataclasses.fields(Profile)} - {"schedules"}
    kwargs: Dict[str, Any] = {}
    for key, value in _normalized(raw).items():
        if key not in names:
            logger.debug("profile_from_wire: ignoring unknown field %r", key)
            continue
        if value is None:
            continue
        kwargs[key] = value

    for key, value in list(kwargs.items()):
        if key == "curve":
            continue
        field_type = Profile.__dataclass_fields__[key].type
        if field_type in ("bool", bool):
            if not isinstance(value, bool):
                raise InvalidProfile(f"{key}={value!r} is not a boolean")
        else:
            kwargs[key] = _number(kwargs, key, InvalidProfile)
    return Profile(**kwargs)


def treatment_from_wire(raw: Dict[str, Any]) -> List[Treatment]:
    """
    One wire record as treatments. A Nightscout "Meal Bolus" carrying both
    insulin and carbs becomes a Bolus and a CarbEntry.
    """
    if not isinstance(raw, dict):
        raise InvalidTreatment(f"expected an object, got {type(raw).__name__}")
    data = _normalized(raw)
    date = _parse_date(data)

    if "kind" in data:
        kinds = (data["kind"],)
    elif "event_type" in data:
        event_type = data["event_type"]
        if event_type not in NIGHTSCOUT_EVENT_TYPES:
            raise InvalidTreatment(f"unsupported eventType {event_type!r}")
        kinds = NIGHTSCOUT_EVENT_TYPES[event_type]
    else:
        kinds = tuple(k for k, field_name in (("bolus", "insulin"), ("carbs", "carbs")) if data.get(field_name))
        if not kinds:
            raise InvalidTreatment("cannot tell treatment kind: no kind, eventType, insulin or carbs")

    out: List[Treatment] = []
    for kind in kinds:
        if kind == "bolus":
            if data.get("insulin") is None and len(kinds) > 1:
                continue
            out.append(Bolus(date=date, insulin=_number(data, "insulin", InvalidTreatment)))
        elif kind == "carbs":
            if data.get("carbs") is None and len(kinds) > 1:
                continue
            out.append(CarbEntry(date=date, carbs=_number(data, "carbs", InvalidTreatment)))
        elif kind == "temp_basal":
            rate_key = "rate" if data.get("rate") is not None else "absolute"
            out.append(
                TempBasal(
                    date=date,
                    rate=_number(data, rate_key, InvalidTreatment),
                    duration=_number(data, "duration", InvalidTreatment),
                )
            )
        else:
            raise InvalidTreatment(f"unknown treatment kind {kind!r}")
    if not out:
        raise InvalidTreatment(f"no insulin or carbs in {raw.get('eventType', kinds)!r} record")
    return out


def treatments_from_wire(records: Iterable[Dict[str, Any]]) -> List[Treatment]:
    out: List[Treatment] = []
    for rec in records:
        out.extend(treatment_from_wire(rec))
    return out


def reading_from_wire(raw: Dict[str, Any]) -> GlucoseReading:
    if not isinstance(raw, dict):
        raise InvalidGlucose(f"expected an object, got {type(raw).__name__}")
    data = _normalized(raw)
    key = "glucose" if data.get("glucose") is not None else "sgv"
    glucose = _number(data, key, InvalidGlucose)
    direction = None
    if data.get("direction") is not None:
        try:
            direction = Direction(data["direction"])
        except ValueError:
            raise InvalidGlucose(f"unknown direction {data['direction']!r}") from None
    noise = data.get("noise") or 0.0
    return GlucoseReading(glucose=glucose, date=_parse_date(data, InvalidGlucose), direction=direction, noise=float(noise))


def result_from_wire(raw: Dict[str, Any]) -> DetermineBasalResult:
    """
    Accepts the flat predBgsIob... arrays as well as a nested
    predBgs {"IOB": ..} object. predictedBg is derived and ignored.
    """
    names = {f.name for f in dataclasses.fields(DetermineBasalResult)}
    data = _normalized(raw)
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in names:
            continue
        if key == "pred_bgs" and isinstance(value, dict):
            value = Predictions(**{k: [int(round(x)) for x in value.get(k, [])] for k in PREDICTION_KEYS})
        elif key == "deliver_at" and isinstance(value, str):
            value = _parse_iso(value)
        kwargs[key] = value

    flat = {k: data["pred_bgs_" + k.lower()] for k in PREDICTION_KEYS if data.get("pred_bgs_" + k.lower()) is not None}
    if flat and "pred_bgs" not in kwargs:
        kwargs["pred_bgs"] = Predictions(**{k: [int(round(x)) for x in v] for k, v in flat.items()})
    return DetermineBasalResult(**kwargs)


def loads_result(text: str) -> DetermineBasalResult:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise OrefError(f"invalid JSON: {e}") from None
    return result_from_wire(raw)
