import pytest

from oref_engine.core.predictions import clamp_bg, predict
from oref_engine.errors import CalculationError, MissingData
from oref_engine.structs import CobResult, IobTotal

T0 = 1_700_000_000_000
MIN = 60_000


def _active_array(activity, iob=1.0, ticks=61):
    return [
        IobTotal(
            iob=iob,
            activity=activity,
            time=T0 + k * 5 * MIN,
            iob_with_zero_temp=IobTotal(iob=iob, activity=activity, time=T0 + k * 5 * MIN),
        )
        for k in range(ticks)
    ]


def _predict(status, iob_array, meal=None, enable_uam=False):
    return predict(status, iob_array, meal or CobResult(), 50.0, 10.0, 1.0, 100.0, 70.0, enable_uam, T0)


def test_uam_impact_capped_at_three_hours(status, flat_iob_array):
    preds = _predict(status(150, delta=5.0), flat_iob_array())
    uam = preds.pred_bgs.UAM
    # 5 mg/dL/5m decaying linearly to 0 over 36 ticks
    assert uam[-1] == pytest.approx(150 + 87.5, abs=1)
    assert len(set(uam[36:])) == 1
    assert uam[20] < uam[35]
    assert preds.uam_duration == pytest.approx(3.0)


def test_uam_impact_decays_by_deviation_slope(status, flat_iob_array):
    meal = CobResult(slope_from_max_deviation=-1.0)
    preds = _predict(status(150, delta=5.0), flat_iob_array(), meal=meal)
    # 4 + 3 + 2 + 1 before the slope runs out
    assert preds.pred_bgs.UAM[-1] == 160
    assert preds.pred_bgs.UAM[5:] == [160] * (len(preds.pred_bgs.UAM) - 5)
    assert preds.uam_duration == pytest.approx(0.4)


def test_iob_deviation_decays_over_an_hour(status, flat_iob_array):
    iob = _predict(status(150, delta=5.0), flat_iob_array()).pred_bgs.IOB
    assert len(set(iob[12:])) == 1
    assert iob[-1] == pytest.approx(150 + 5 * 5.5, abs=1)


def test_uam_raises_guard_when_enabled(status):
    iob_array = _active_array(activity=0.002)
    without = _predict(status(150, delta=2.0), iob_array)
    with_uam = _predict(status(150, delta=2.0), iob_array, enable_uam=True)
    assert without.pred_bgs.UAM == with_uam.pred_bgs.UAM
    assert without.min_guard_bg == pytest.approx(134, abs=1)
    assert with_uam.min_guard_bg > without.min_guard_bg


def test_zero_temp_trajectory_uses_zero_temp_activity(status):
    iob_array = _active_array(activity=0.0)
    for tick in iob_array:
        tick.iob_with_zero_temp = IobTotal(iob=0.0, activity=0.001, time=tick.time)
    preds = _predict(status(120), iob_array)
    assert preds.pred_bgs.IOB[-1] == 120
    assert preds.pred_bgs.ZT[-1] == 120 - 15


def test_needs_two_ticks(status, flat_iob_array):
    with pytest.raises(MissingData):
        _predict(status(120), flat_iob_array(ticks=1))


def test_non_finite_prediction_rejected(status, flat_iob_array):
    with pytest.raises(CalculationError):
        _predict(status(120, delta=float("nan")), flat_iob_array())


@pytest.mark.parametrize("value,expected", [(12.0, 39), (39.4, 39), (120.6, 121), (999.0, 401)])
def test_clamp_bg(value, expected):
    assert clamp_bg(value) == expected
