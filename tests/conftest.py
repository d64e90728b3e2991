import pytest

from oref_engine.structs import GlucoseReading, GlucoseStatus, IobTotal, Profile

T0 = 1_700_000_000_000  # ms
MIN = 60_000


@pytest.fixture
def now():
    return T0


@pytest.fixture
def make_profile():
    def _make(**overrides):
        base = dict(
            dia=5.0,
            curve="rapid-acting",
            sens=50.0,
            carb_ratio=10.0,
            current_basal=1.0,
            min_bg=100.0,
            max_bg=100.0,
            max_iob=3.0,
            max_basal=3.0,
            max_daily_basal=1.0,
        )
        base.update(overrides)
        return Profile(**base)

    return _make


@pytest.fixture
def profile(make_profile):
    return make_profile()


@pytest.fixture
def glucose_series():
    """values oldest first, 5 minutes apart, newest at `end`"""

    def _series(values, end=T0, step=5):
        n = len(values)
        return [GlucoseReading(glucose=float(v), date=end - (n - 1 - i) * step * MIN) for i, v in enumerate(values)]

    return _series


@pytest.fixture
def status():
    def _status(bg, delta=0.0, short=None, long=None, date=T0):
        return GlucoseStatus(
            glucose=bg,
            delta=delta,
            short_avg_delta=delta if short is None else short,
            long_avg_delta=delta if long is None else long,
            date=date,
        )

    return _status


@pytest.fixture
def flat_iob_array():
    """constant IOB, no activity: predictions stay at the current BG"""

    def _array(iob=0.0, ticks=61, start=T0):
        return [
            IobTotal(
                iob=iob,
                activity=0.0,
                time=start + k * 5 * MIN,
                iob_with_zero_temp=IobTotal(iob=iob, activity=0.0, time=start + k * 5 * MIN),
            )
            for k in range(ticks)
        ]

    return _array
