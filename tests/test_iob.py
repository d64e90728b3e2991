import pytest

from oref_engine.core import iob
from oref_engine.errors import InvalidTimestamp, InvalidTreatment
from oref_engine.structs import Bolus, CarbEntry, TempBasal

T0 = 1_700_000_000_000
MIN = 60_000


def test_empty_history_is_exactly_zero(profile):
    res = iob.calculate([], profile, T0)
    assert res.iob == 0.0
    assert res.activity == 0.0
    assert res.bolus_iob == 0.0
    assert res.basal_iob == 0.0


def test_single_bolus_full_then_gone(profile):
    history = [Bolus(date=T0, insulin=5.0)]
    assert iob.calculate(history, profile, T0).iob == pytest.approx(5.0)
    assert iob.calculate(history, profile, T0 + 300 * MIN).iob == pytest.approx(0.0, abs=1e-6)


def test_bolus_iob_decreases_and_activity_positive(profile):
    history = [Bolus(date=T0, insulin=2.0)]
    prev = 2.0
    for minutes in range(5, 300, 5):
        res = iob.calculate(history, profile, T0 + minutes * MIN)
        assert res.iob <= prev + 1e-12
        assert res.activity >= 0.0
        assert res.bolus_iob == pytest.approx(res.iob)
        prev = res.iob


def test_future_treatments_ignored(profile):
    history = [Bolus(date=T0 + 10 * MIN, insulin=3.0), TempBasal(date=T0 + 5 * MIN, rate=2.0, duration=30)]
    assert iob.calculate(history, profile, T0).iob == 0.0


def test_carbs_do_not_contribute(profile):
    assert iob.calculate([CarbEntry(date=T0 - 30 * MIN, carbs=40)], profile, T0).iob == 0.0


def test_temp_basal_only_delivered_part_counts(profile):
    # 6 U/h started 10 minutes ago: 1 U delivered so far
    history = [TempBasal(date=T0 - 10 * MIN, rate=6.0, duration=60)]
    res = iob.calculate(history, profile, T0)
    assert 0.9 < res.basal_iob <= 1.0
    assert res.bolus_iob == 0.0


def test_temp_truncated_by_next_temp(profile):
    first = TempBasal(date=T0 - 60 * MIN, rate=2.0, duration=60)
    cancel = TempBasal(date=T0 - 30 * MIN, rate=0.0, duration=30)
    alone = iob.calculate([first], profile, T0).basal_iob
    truncated = iob.calculate([first, cancel], profile, T0).basal_iob
    assert truncated < alone
    # roughly half the insulin delivered
    assert truncated < 1.0


def test_temp_segments_are_five_minutes_at_midpoints():
    temp = TempBasal(date=T0, rate=1.2, duration=12)
    doses = iob.temp_segments([temp], T0 + 60 * MIN)
    assert [round((ts - T0) / MIN, 1) for ts, _ in doses] == [2.5, 7.5, 11.0]
    assert sum(u for _, u in doses) == pytest.approx(1.2 * 12 / 60)


def test_iob_array_length_and_first_tick(profile):
    history = [Bolus(date=T0 - 30 * MIN, insulin=1.5), TempBasal(date=T0 - 20 * MIN, rate=2.0, duration=60)]
    arr = iob.calculate_array(history, profile, T0)
    assert len(arr) == 61
    now = iob.calculate(history, profile, T0)
    assert arr[0].iob == pytest.approx(now.iob)
    assert arr[0].iob_with_zero_temp.iob == pytest.approx(now.iob)
    assert [t.time for t in arr[:3]] == [T0, T0 + 5 * MIN, T0 + 10 * MIN]


def test_iob_array_running_temp_continues_only_in_main_series(profile):
    history = [TempBasal(date=T0 - 20 * MIN, rate=2.0, duration=60)]
    arr = iob.calculate_array(history, profile, T0)
    # 30 minutes ahead the running temp has delivered another unit
    assert arr[6].iob > arr[6].iob_with_zero_temp.iob
    assert all(t.iob_with_zero_temp.iob <= t.iob + 1e-12 for t in arr)


def test_current_temp(profile):
    history = [TempBasal(date=T0 - 10 * MIN, rate=0.5, duration=30)]
    temp = iob.current_temp(history, T0)
    assert temp.rate == 0.5
    assert temp.duration == 20
    assert temp.minutes_running == 10

    assert iob.current_temp(history, T0 + 40 * MIN) is None
    assert iob.current_temp([], T0) is None


def test_invalid_treatments():
    with pytest.raises(InvalidTreatment):
        Bolus(date=T0, insulin=-1.0)
    with pytest.raises(InvalidTreatment):
        TempBasal(date=T0, rate=float("nan"), duration=30)
    with pytest.raises(InvalidTimestamp):
        CarbEntry(date=-5, carbs=10)


def test_unknown_treatment_type_rejected(profile):
    with pytest.raises(InvalidTreatment):
        iob.calculate([object()], profile, T0)
