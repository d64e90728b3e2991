# oref_engine/viz/plots_matplotlib.py
from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from oref_engine.config import STEP_MINUTES
from oref_engine.structs import DetermineBasalResult

logger = logging.getLogger(__name__)

SERIES_STYLE = {
    "IOB": {"color": "tab:blue", "label": "IOB"},
    "COB": {"color": "tab:orange", "label": "COB"},
    "UAM": {"color": "tab:green", "label": "UAM"},
    "ZT": {"color": "tab:gray", "label": "ZT", "linestyle": "--"},
}


def plot_predictions(result: DetermineBasalResult, out_path: str | Path | None = None, title: str | None = None):
    """
    Four predicted trajectories with target and threshold lines.

    out_path: optional PNG path; if None, returns the matplotlib Figure
    """
    if result.pred_bgs is None:
        logger.warning("plot_predictions: result has no predictions (error=%s)", result.error)
        return None

    # import matplotlib only when plotting
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(10, 4))
    for key, style in SERIES_STYLE.items():
        values = getattr(result.pred_bgs, key)
        if not values:
            continue
        minutes = np.arange(len(values)) * STEP_MINUTES
        ax.plot(minutes, values, **style)

    if result.target_bg is not None:
        ax.axhline(result.target_bg, color="tab:green", alpha=0.4, label=f"target {result.target_bg:g}")
    if result.threshold is not None:
        ax.axhline(result.threshold, color="tab:red", alpha=0.6, label=f"threshold {result.threshold:g}")

    ax.set_xlabel("minutes from now")
    ax.set_ylabel("mg/dL")
    if title is None:
        action = []
        if result.rate is not None:
            action.append(f"temp {result.rate:g}U/h {result.duration}m")
        if result.units:
            action.append(f"SMB {result.units:g}U")
        title = f"eventualBG {result.eventual_bg:g}" + (f" | {', '.join(action)}" if action else " | no change")
    ax.set_title(title)
    ax.legend(loc="upper right", fontsize="small")
    fig.tight_layout()

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path)
        plt.close(fig)
        logger.info("plot saved to %s", out_path)
        return out_path
    return fig


def plot_replay(frame, out_path: str | Path | None = None):
    """
    BG, eventual BG and recommended rate over a replay (see analysis.replay.to_frame).
    """
    if frame is None or len(frame) == 0:
        logger.warning("plot_replay: nothing to plot")
        return None

    import matplotlib.pyplot as plt

    minutes = (frame["time"].to_numpy() - frame["time"].iloc[0]) / 60000.0
    fig, (ax_bg, ax_rate) = plt.subplots(2, 1, figsize=(12, 6), sharex=True)
    ax_bg.plot(minutes, frame["bg"].astype(float), label="BG")
    ax_bg.plot(minutes, frame["eventual_bg"].astype(float), label="eventual BG", linestyle="--")
    ax_bg.set_ylabel("mg/dL")
    ax_bg.legend(loc="upper right", fontsize="small")

    ax_rate.step(minutes, frame["rate"].astype(float), where="post", label="temp rate")
    units = frame["units"].astype(float).fillna(0.0)
    ax_rate.bar(minutes, units, width=STEP_MINUTES * 0.6, color="tab:purple", label="SMB")
    ax_rate.set_xlabel("minutes")
    ax_rate.set_ylabel("U/h, U")
    ax_rate.legend(loc="upper right", fontsize="small")
    fig.tight_layout()

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path)
        plt.close(fig)
        return out_path
    return fig
