"""Event-related potentials: filtered, baseline-corrected trial averages and N2/P3b peaks."""
from __future__ import annotations

import warnings
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .config import HarmonicFieldConfig, Status
from .data_loader import TrialSet
from .modeling import normalize_labels
from .preprocessing import bandpass_filter


@dataclass
class ERPResult:
    erp: np.ndarray                 # (n_channels, n_samples) trial mean
    erp_std: np.ndarray
    erp_sem: np.ndarray
    time: np.ndarray                # seconds relative to onset
    n_trials: int
    n_channels: int
    n2_latency: float
    n2_amplitude: float
    p3b_latency: float
    p3b_amplitude: float
    erp_by_condition: Dict[str, np.ndarray] = field(default_factory=dict)
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls) -> "ERPResult":
        return cls(
            erp=np.empty((0, 0)),
            erp_std=np.empty((0, 0)),
            erp_sem=np.empty((0, 0)),
            time=np.empty(0),
            n_trials=0,
            n_channels=0,
            n2_latency=np.nan,
            n2_amplitude=np.nan,
            p3b_latency=np.nan,
            p3b_amplitude=np.nan,
            status=Status.FAILED,
        )


def _peak(mean_erp: np.ndarray, time: np.ndarray, window: Tuple[float, float], polarity: int):
    """(latency, amplitude) of the most negative (polarity -1) or positive (+1) point in *window*."""
    mask = (time >= window[0]) & (time <= window[1])
    if not np.any(mask):
        return np.nan, np.nan
    segment = mean_erp[mask]
    idx = int(np.argmin(segment)) if polarity < 0 else int(np.argmax(segment))
    return float(time[mask][idx]), float(segment[idx])


def conditional_erps(labels: pd.DataFrame, epochs: np.ndarray) -> Dict[str, np.ndarray]:
    """Trial averages split by set size (``setsize_<n>``) and by ``correct`` / ``error``."""
    out: Dict[str, np.ndarray] = {}
    if "setsize" in labels.columns:
        sizes = normalize_labels(labels, "setsize")
        for size in np.unique(sizes[np.isfinite(sizes)]):
            out[f"setsize_{int(size)}"] = epochs[sizes == size].mean(axis=0)
    if "correct" in labels.columns:
        correct = normalize_labels(labels, "correct")
        if np.any(correct == 1):
            out["correct"] = epochs[correct == 1].mean(axis=0)
        if np.any(correct == 0):
            out["error"] = epochs[correct == 0].mean(axis=0)
    return out


def analyze_erp(trials: Optional[TrialSet], cfg: HarmonicFieldConfig) -> ERPResult:
    """
    Average trials that share the most common (channels, samples) shape.

    Each trial is band-passed (``cfg.erp_filter``) and baseline-corrected with
    the mean over ``cfg.erp_baseline``. N2 is the most negative channel-mean
    deflection in ``cfg.erp_n2_window``, P3b the most positive in
    ``cfg.erp_p3b_window``.
    """
    if trials is None or len(trials) == 0:
        warnings.warn("No trials provided for ERP analysis.")
        return ERPResult.empty()

    try:
        shapes = [t.signal.shape for t in trials.trials if t.signal.size > 0]
        if not shapes:
            warnings.warn("All trials are empty.")
            return ERPResult.empty()
        shape = Counter(shapes).most_common(1)[0][0]
        keep = [i for i, t in enumerate(trials.trials) if t.signal.shape == shape]

        if len(keep) < cfg.erp_min_trials:
            warnings.warn(f"Too few valid trials for ERP ({len(keep)} < {cfg.erp_min_trials}).")
            return ERPResult.empty()

        time = trials.trials[keep[0]].time
        epochs = np.stack(
            [bandpass_filter(trials.trials[i].signal, trials.sfreq, cfg.erp_filter, cfg.filter_order) for i in keep]
        )

        baseline = (time >= cfg.erp_baseline[0]) & (time <= cfg.erp_baseline[1])
        if np.any(baseline):
            epochs = epochs - epochs[:, :, baseline].mean(axis=2, keepdims=True)
        else:
            warnings.warn("No samples in the ERP baseline window; skipping baseline correction.")

        n_valid = len(keep)
        erp = np.nanmean(epochs, axis=0)
        erp_std = np.nanstd(epochs, axis=0, ddof=1) if n_valid > 1 else np.zeros_like(erp)
        mean_erp = erp.mean(axis=0)
        n2_lat, n2_amp = _peak(mean_erp, time, cfg.erp_n2_window, -1)
        p3_lat, p3_amp = _peak(mean_erp, time, cfg.erp_p3b_window, +1)

        labels = trials.labels.iloc[keep].reset_index(drop=True)

        return ERPResult(
            erp=erp,
            erp_std=erp_std,
            erp_sem=erp_std / np.sqrt(n_valid),
            time=time,
            n_trials=n_valid,
            n_channels=shape[0],
            n2_latency=n2_lat,
            n2_amplitude=n2_amp,
            p3b_latency=p3_lat,
            p3b_amplitude=p3_amp,
            erp_by_condition=conditional_erps(labels, epochs),
        )
    except (ValueError, MemoryError) as e:
        warnings.warn(f"ERP analysis failed: {e}")
        return ERPResult.empty()
