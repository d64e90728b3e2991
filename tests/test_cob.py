import pytest

from oref_engine.core.cob import calculate_cob
from oref_engine.structs import CarbEntry

T0 = 1_700_000_000_000
MIN = 60_000


def test_no_carbs(profile, glucose_series):
    res = calculate_cob([], glucose_series([100] * 20), profile, T0)
    assert res.carbs == 0.0
    assert res.meal_cob == 0.0
    assert res.carb_impact == 0.0


def test_flat_glucose_absorbs_at_min_carb_impact(profile, glucose_series):
    # 8 mg/dL/5m / ISF 50 * CR 10 = 1.6 g per interval, 12 intervals in the last hour
    history = [CarbEntry(date=T0 - 60 * MIN, carbs=30)]
    res = calculate_cob(history, glucose_series([100] * 36), profile, T0)
    assert res.carbs == 30
    assert res.meal_cob == pytest.approx(30 - 12 * 1.6)
    assert res.carb_impact == pytest.approx(8.0)
    assert res.last_carb_time == T0 - 60 * MIN


def test_rising_glucose_absorbs_faster(profile, glucose_series):
    history = [CarbEntry(date=T0 - 60 * MIN, carbs=30)]
    flat = calculate_cob(history, glucose_series([100] * 36), profile, T0)
    rising = calculate_cob(history, glucose_series([100] * 24 + [100 + 10 * i for i in range(1, 13)]), profile, T0)
    assert rising.meal_cob < flat.meal_cob
    assert rising.carb_impact == pytest.approx(10.0)


def test_fifo_across_entries(profile, glucose_series):
    history = [CarbEntry(date=T0 - 60 * MIN, carbs=5), CarbEntry(date=T0 - 55 * MIN, carbs=20)]
    res = calculate_cob(history, glucose_series([100] * 36), profile, T0)
    # 12 intervals * 1.6 g = 19.2 g, the older entry used up first
    assert res.carbs == 25
    assert res.meal_cob == pytest.approx(25 - 19.2)


@pytest.mark.parametrize("step", [-10, -2, 0, 3, 20])
def test_cob_within_bounds(profile, glucose_series, step):
    history = [CarbEntry(date=T0 - 90 * MIN, carbs=40), CarbEntry(date=T0 - 20 * MIN, carbs=15)]
    values = [200 + step * i for i in range(40)]
    res = calculate_cob(history, glucose_series([max(40, v) for v in values]), profile, T0)
    assert 0.0 <= res.meal_cob <= res.carbs


def test_cob_expires_after_max_absorption_time(profile):
    history = [CarbEntry(date=T0, carbs=50)]
    # no glucose data: nothing observed as absorbed yet
    assert calculate_cob(history, [], profile, T0 + 60 * MIN).meal_cob == 50
    late = calculate_cob(history, [], profile, T0 + 6 * 60 * MIN + 5 * MIN)
    assert late.meal_cob == 0.0
    assert late.carbs == 0.0


def test_cob_capped_by_max_cob(make_profile):
    profile = make_profile(max_cob=120)
    res = calculate_cob([CarbEntry(date=T0 - 1 * MIN, carbs=200)], [], profile, T0)
    assert res.meal_cob == 120
    assert res.carbs == 200


def test_deviation_slopes_without_carbs(profile, glucose_series):
    # deviations of 10, 8, 6, 4, 2 over the last 25 minutes
    values = [100] * 12 + [110, 118, 124, 128, 130]
    res = calculate_cob([], glucose_series(values), profile, T0)
    assert res.current_deviation == pytest.approx(2.0)
    assert res.max_deviation == pytest.approx(10.0)
    assert res.slope_from_max_deviation == pytest.approx(-2.0)
    assert res.slope_from_min_deviation >= 0.0
