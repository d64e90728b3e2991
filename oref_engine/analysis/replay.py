# oref_engine/analysis/replay.py
"""
Deterministic replay of a history through run_cycle, and comparison of the
replayed decisions against reference decisions (e.g. a pump's own log).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from oref_engine.config import STEP_MINUTES
from oref_engine.core.cycle import run_cycle
from oref_engine.structs import Bolus, GlucoseReading, Profile, TempBasal, Treatment

logger = logging.getLogger(__name__)

ROW_FIELDS = (
    "time",
    "bg",
    "iob",
    "cob",
    "eventual_bg",
    "insulin_req",
    "sensitivity_ratio",
    "rate",
    "duration",
    "units",
    "error",
)
REGRESSION_KEYS = ("eventual_bg_mae", "rate_mae", "smb_mae")


def replay(
    profile: Profile,
    treatments: Iterable[Treatment],
    glucose: Iterable[GlucoseReading],
    start: int,
    end: int,
    step_minutes: int = STEP_MINUTES,
    close_loop: bool = False,
) -> List[Dict[str, Any]]:
    """
    Run one cycle every `step_minutes` from `start` to `end` inclusive.

    With close_loop=True each recommended temp and SMB is added to the history
    seen by later cycles.
    """
    history: List[Treatment] = list(treatments)
    readings = sorted(glucose, key=lambda r: r.date)
    rows: List[Dict[str, Any]] = []

    t = start
    while t <= end:
        result = run_cycle(profile, history, readings, t)
        rows.append({"time": t, **{k: getattr(result, k) for k in ROW_FIELDS[1:]}})

        if close_loop and not result.has_error():
            if result.has_temp():
                history.append(TempBasal(date=t, rate=result.rate, duration=result.duration))
            if result.has_smb():
                history.append(Bolus(date=t, insulin=result.units))
        t += step_minutes * 60_000

    errors = sum(1 for r in rows if r["error"])
    logger.info("replay: %d cycles, %d rejected", len(rows), errors)
    return rows


def to_frame(rows: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows), columns=list(ROW_FIELDS))
    if not df.empty:
        df["timestamp"] = pd.to_datetime(df["time"], unit="ms", utc=True)
    return df


# -----------------------------
# Metrics
# -----------------------------
def mae(a, b) -> float:
    return float(np.abs(np.asarray(a, dtype=float) - np.asarray(b, dtype=float)).mean())


def rmse(a, b) -> float:
    return float(np.sqrt(((np.asarray(a, dtype=float) - np.asarray(b, dtype=float)) ** 2).mean()))


def match_pct(a, b, tol: float = 0.05) -> float:
    return float((np.abs(np.asarray(a, dtype=float) - np.asarray(b, dtype=float)) <= tol).mean())


def compare_with_reference(
    rows: Sequence[Dict[str, Any]] | pd.DataFrame,
    reference: Sequence[Dict[str, Any]] | pd.DataFrame,
    rate_tol: float = 0.05,
) -> Dict[str, Optional[float]]:
    """
    Metrics between replayed rows and reference rows joined on `time`.

    A row matches on rate when both sides left it unset ("no change") or
    both set it within `rate_tol`.
    """
    ours = rows if isinstance(rows, pd.DataFrame) else to_frame(rows)
    ref = reference if isinstance(reference, pd.DataFrame) else pd.DataFrame(list(reference))
    if ours.empty or ref.empty:
        return {"count": 0}

    df = ours.merge(ref, on="time", suffixes=("", "_ref"))
    if df.empty:
        return {"count": 0}

    metrics: Dict[str, Optional[float]] = {"count": int(len(df))}

    ev = df[["eventual_bg", "eventual_bg_ref"]].dropna() if "eventual_bg_ref" in df else df.iloc[0:0]
    if len(ev):
        diff = ev["eventual_bg"] - ev["eventual_bg_ref"]
        metrics["eventual_bg_mae"] = mae(ev["eventual_bg"], ev["eventual_bg_ref"])
        metrics["eventual_bg_rmse"] = rmse(ev["eventual_bg"], ev["eventual_bg_ref"])
        metrics["eventual_bg_max"] = float(np.abs(diff).max())
    else:
        metrics["eventual_bg_mae"] = metrics["eventual_bg_rmse"] = metrics["eventual_bg_max"] = None

    if "rate_ref" in df:
        both = df[["rate", "rate_ref"]]
        set_both = both.dropna()
        metrics["rate_mae"] = mae(set_both["rate"], set_both["rate_ref"]) if len(set_both) else None
        close = np.zeros(len(df), dtype=bool)
        mask = both.notna().all(axis=1).to_numpy()
        close[mask] = np.abs(both["rate"].to_numpy(dtype=float)[mask] - both["rate_ref"].to_numpy(dtype=float)[mask]) <= rate_tol
        unset_both = both.isna().all(axis=1).to_numpy()
        metrics["rate_match_pct"] = float((close | unset_both).mean())
    else:
        metrics["rate_mae"] = metrics["rate_match_pct"] = None

    if "units_ref" in df:
        metrics["smb_mae"] = mae(df["units"].fillna(0.0), df["units_ref"].fillna(0.0))
    else:
        metrics["smb_mae"] = None

    logger.debug("compare_with_reference: %s", metrics)
    return metrics


def find_regressions(
    prev: Dict[str, Optional[float]],
    last: Dict[str, Optional[float]],
    keys: Iterable[str] = REGRESSION_KEYS,
) -> List[tuple]:
    """(key, prev, last) for every error metric that got worse."""
    regressions = []
    for k in keys:
        if prev.get(k) is None or last.get(k) is None:
            continue
        if last[k] > prev[k]:
            regressions.append((k, prev[k], last[k]))
    return regressions


def write_metrics(metrics: Dict[str, Any], path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
    return path


def load_metrics(path: str | Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))
