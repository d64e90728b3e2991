import matplotlib

matplotlib.use("Agg")

import pytest  # noqa: E402

from oref_engine.analysis.replay import replay, to_frame  # noqa: E402
from oref_engine.core.determine_basal import determine_basal  # noqa: E402
from oref_engine.structs import AutosensResult, CobResult, DetermineBasalResult  # noqa: E402
from oref_engine.viz.plots_matplotlib import plot_predictions, plot_replay  # noqa: E402

T0 = 1_700_000_000_000
MIN = 60_000


@pytest.fixture
def result(profile, status, flat_iob_array):
    return determine_basal(status(180, delta=2.0), None, flat_iob_array(iob=0.5), profile, AutosensResult(), CobResult(), T0)


def test_plot_predictions_figure(result):
    fig = plot_predictions(result)
    ax = fig.axes[0]
    assert len(ax.lines) == 6  # four trajectories, target, threshold
    assert "eventualBG" in ax.get_title()


def test_plot_predictions_to_file(result, tmp_path):
    out = plot_predictions(result, tmp_path / "plots" / "pred.png", title="cycle")
    assert out.exists()
    assert out.stat().st_size > 0


def test_plot_predictions_error_result():
    assert plot_predictions(DetermineBasalResult.error_result("stale glucose")) is None


def test_plot_replay(profile, glucose_series, tmp_path):
    frame = to_frame(replay(profile, [], glucose_series([150] * 40), T0 - 30 * MIN, T0))
    out = plot_replay(frame, tmp_path / "replay.png")
    assert out.exists()
    assert plot_replay(frame.iloc[0:0]) is None
