import json

import pytest

from oref_engine.core.curves import InsulinCurve
from oref_engine.core.determine_basal import determine_basal
from oref_engine.errors import InvalidGlucose, InvalidProfile, InvalidTimestamp, InvalidTreatment, OrefError, OutOfRange
from oref_engine.parsing import wire
from oref_engine.structs import AutosensResult, Bolus, CarbEntry, CobResult, DetermineBasalResult, Direction, TempBasal

T0 = 1_700_000_000_000
MIN = 60_000


@pytest.fixture
def high_result(profile, status, flat_iob_array):
    return determine_basal(status(250), None, flat_iob_array(), profile, AutosensResult(), CobResult(), T0)


def _has_null(obj):
    if obj is None:
        return True
    if isinstance(obj, dict):
        return any(_has_null(v) for v in obj.values())
    if isinstance(obj, list):
        return any(_has_null(v) for v in obj)
    return False


def test_case_conversion():
    assert wire.to_camel("eventual_bg") == "eventualBg"
    assert wire.to_camel("pred_bgs") == "predBgs"
    assert wire.to_snake("sensitivityRatio") == "sensitivity_ratio"
    assert wire.to_snake("eventualBG") == "eventual_bg"
    assert wire.to_snake("min5mCarbimpact") == "min_5m_carbimpact"


def test_result_keys_are_camel_case(high_result):
    out = wire.result_to_wire(high_result)
    assert out["rate"] == pytest.approx(3.0)
    assert out["duration"] == 30
    assert "insulinReq" in out
    assert "sensitivityRatio" in out
    assert "predBgs" not in out
    for key in ("predBgsIob", "predBgsCob", "predBgsUam", "predBgsZt"):
        assert len(out[key]) == 61
    assert out["predictedBg"] == out["predBgsIob"]
    assert out["deliverAt"] == "2023-11-14T22:13:20.000Z"
    assert all("_" not in key for key in out)


def test_predicted_bg_follows_cob_when_carbs(profile, status, flat_iob_array):
    meal = CobResult(carbs=40, meal_cob=30, carb_impact=5.0, last_carb_time=T0 - 20 * MIN)
    res = determine_basal(status(120, delta=3.0), None, flat_iob_array(), profile, AutosensResult(), meal, T0)
    out = wire.result_to_wire(res)
    assert out["predictedBg"] == out["predBgsCob"]
    assert out["predictedBg"][-1] == res.eventual_bg


def test_unset_fields_are_omitted(high_result):
    out = wire.result_to_wire(high_result)
    assert "units" not in out
    assert "error" not in out
    assert "null" not in wire.dumps(high_result)
    assert not _has_null(out)


def test_error_result_has_no_dosing_fields():
    out = wire.result_to_wire(DetermineBasalResult.error_result("stale glucose: 20m old", kind="invalid_glucose"))
    assert out["error"] == "stale glucose: 20m old"
    assert out["errorKind"] == "invalid_glucose"
    for key in ("rate", "duration", "units", "insulinReq", "predBgsIob", "predictedBg"):
        assert key not in out


def test_result_round_trip(high_result):
    assert wire.loads_result(wire.dumps(high_result)) == high_result


def test_result_from_nested_predictions():
    raw = {
        "eventualBG": 120,
        "deliverAt": T0,
        "predBGs": {"IOB": [120, 118], "COB": [120, 125], "UAM": [120, 121], "ZT": [120, 110]},
    }
    res = wire.result_from_wire(raw)
    assert res.eventual_bg == 120
    assert res.deliver_at == T0
    assert res.pred_bgs.ZT == [120, 110]


def test_result_from_flat_predictions():
    raw = {"predBgsIob": [100.0, 99.6], "predBgsZt": [100, 95], "predictedBg": [100, 99], "deliverAt": "2023-11-14T22:13:20.250Z"}
    res = wire.result_from_wire(raw)
    assert res.pred_bgs.IOB == [100, 100]
    assert res.pred_bgs.ZT == [100, 95]
    assert res.pred_bgs.COB == []
    assert res.deliver_at == T0 + 250


def test_loads_result_rejects_bad_json():
    with pytest.raises(OrefError):
        wire.loads_result("{not json")


def test_profile_from_wire_aliases():
    profile = wire.profile_from_wire(
        {
            "dia": 6,
            "curve": "ultra-rapid",
            "sens": 45,
            "carb_ratio": 12,
            "currentBasal": 0.8,
            "maxIOB": 4,
            "enableSMB": True,
            "min5mCarbimpact": 6,
            "somethingElse": "ignored",
        }
    )
    assert profile.dia == 6.0
    assert profile.curve is InsulinCurve.ULTRA_RAPID
    assert profile.carb_ratio == 12.0
    assert profile.current_basal == pytest.approx(0.8)
    assert profile.max_iob == 4.0
    assert profile.enable_smb is True
    assert profile.min_5m_carbimpact == 6.0


def test_profile_wire_round_trip(make_profile):
    profile = make_profile(enable_uam=True, max_smb_units=0.5)
    assert wire.profile_from_wire(wire.profile_to_wire(profile)) == profile


@pytest.mark.parametrize(
    "raw,error",
    [
        ({"sens": "abc"}, InvalidProfile),
        ({"enableSMB": "yes"}, InvalidProfile),
        ({"curve": "nonsense"}, InvalidProfile),
        ({"dia": 1.0}, OutOfRange),
        ({"dia": 30}, OutOfRange),
        ([1, 2], InvalidProfile),
    ],
)
def test_profile_from_wire_errors(raw, error):
    with pytest.raises(error):
        wire.profile_from_wire(raw)


def test_treatments_by_kind():
    records = [
        {"kind": "bolus", "date": T0, "insulin": 1.5},
        {"kind": "temp_basal", "date": T0, "rate": 0.5, "duration": 30},
        {"kind": "carbs", "date": T0, "carbs": 20},
    ]
    assert wire.treatments_from_wire(records) == [
        Bolus(date=T0, insulin=1.5),
        TempBasal(date=T0, rate=0.5, duration=30),
        CarbEntry(date=T0, carbs=20),
    ]


def test_nightscout_event_types():
    meal = wire.treatment_from_wire({"eventType": "Meal Bolus", "mills": T0, "insulin": 2, "carbs": 30})
    assert meal == [Bolus(date=T0, insulin=2.0), CarbEntry(date=T0, carbs=30.0)]

    carbs_only = wire.treatment_from_wire({"eventType": "Meal Bolus", "mills": T0, "carbs": 15})
    assert carbs_only == [CarbEntry(date=T0, carbs=15.0)]

    temp = wire.treatment_from_wire({"eventType": "Temp Basal", "created_at": "2023-11-14T22:13:20Z", "absolute": 1.2, "duration": 30})
    assert temp == [TempBasal(date=T0, rate=1.2, duration=30.0)]


def test_treatment_to_wire():
    assert wire.treatment_to_wire(Bolus(date=T0, insulin=1.0)) == {"kind": "bolus", "date": T0, "insulin": 1.0}


@pytest.mark.parametrize(
    "raw,error",
    [
        ({"kind": "bolus", "insulin": 1.0}, InvalidTimestamp),
        ({"kind": "bolus", "date": "yesterday", "insulin": 1.0}, InvalidTimestamp),
        ({"kind": "bolus", "date": T0, "insulin": -1.0}, InvalidTreatment),
        ({"kind": "extended", "date": T0}, InvalidTreatment),
        ({"eventType": "Site Change", "date": T0}, InvalidTreatment),
        ({"date": T0, "notes": "hello"}, InvalidTreatment),
    ],
)
def test_treatment_errors(raw, error):
    with pytest.raises(error):
        wire.treatment_from_wire(raw)


def test_reading_from_wire():
    reading = wire.reading_from_wire({"sgv": 123, "date": T0, "direction": "Flat"})
    assert reading.glucose == 123.0
    assert reading.date == T0
    assert reading.direction is Direction.FLAT

    same = wire.reading_from_wire({"glucose": 123, "dateString": "2023-11-14T22:13:20+00:00"})
    assert same.date == T0
    assert wire.reading_to_wire(same) == {"glucose": 123.0, "date": T0, "noise": 0.0}


def test_reading_errors():
    with pytest.raises(InvalidGlucose):
        wire.reading_from_wire({"sgv": "Infinity", "date": T0})
    with pytest.raises(InvalidGlucose):
        wire.reading_from_wire({"sgv": float("nan"), "date": T0})
    with pytest.raises(InvalidGlucose):
        wire.reading_from_wire({"date": T0})
    with pytest.raises(InvalidGlucose):
        wire.reading_from_wire({"sgv": 100, "date": T0, "direction": "Sideways"})


def test_dumps_is_valid_json(high_result):
    parsed = json.loads(wire.dumps(high_result, sort_keys=True))
    assert parsed["eventualBg"] == 250
