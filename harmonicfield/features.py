"""Maintenance-window band-power features for the task decoder."""
from __future__ import annotations

import warnings
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.signal import welch

from .config import HarmonicFieldConfig
from .data_loader import Trial, TrialSet


def band_power_vector(
    segment: np.ndarray,
    sfreq: float,
    bands: Dict[str, Tuple[float, float]],
) -> np.ndarray:
    """
    Welch band power for one trial segment, ordered band-major
    ``[band0_ch0, band0_ch1, ..., band1_ch0, ...]``.

    Welch uses a Hann window of ``min(n_samples, sfreq)`` samples. A band with
    no frequency bins in range contributes zeros.
    """
    n_channels, n_samples = segment.shape
    nperseg = max(1, min(n_samples, int(round(sfreq))))
    freqs, pxx = welch(segment, fs=sfreq, window="hann", nperseg=nperseg, axis=-1)

    out = np.zeros(len(bands) * n_channels)
    for b, (lo, hi) in enumerate(bands.values()):
        mask = (freqs >= lo) & (freqs <= hi)
        if np.any(mask):
            out[b * n_channels: (b + 1) * n_channels] = pxx[:, mask].mean(axis=1)
    return out


def _maintenance_segment(trial: Trial, window: Tuple[float, float]) -> np.ndarray:
    mask = (trial.time >= window[0]) & (trial.time <= window[1])
    return trial.signal[:, mask]


def zscore_columns(features: np.ndarray) -> np.ndarray:
    """Column-wise z-score (ddof=1); zero-variance columns become 0."""
    features = np.where(np.isfinite(features), features, 0.0)
    if features.shape[0] < 2:
        return np.zeros_like(features)
    mean = features.mean(axis=0)
    std = features.std(axis=0, ddof=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (features - mean) / std
    return np.where(np.isfinite(z), z, 0.0)


def extract_maintenance_features(
    trials: TrialSet,
    cfg: HarmonicFieldConfig,
    n_channels: Optional[int] = None,
) -> np.ndarray:
    """
    One feature row per trial: band power for every channel × band inside
    ``cfg.maintenance_window``, then z-scored across trials.

    Returns
    -------
    features : (n_trials, n_channels * n_bands)

    Trials that are empty, have no samples in the maintenance window or a
    mismatching channel count keep an all-zero row.
    """
    if len(trials) == 0:
        raise ValueError("No trials to extract features from")

    bands = cfg.band_dict
    if n_channels is None:
        n_channels = trials.trials[0].signal.shape[0]
    features = np.zeros((len(trials), n_channels * len(bands)))

    for i, trial in enumerate(trials.trials):
        if trial.signal.shape[0] != n_channels:
            warnings.warn(f"Trial {i} has {trial.signal.shape[0]} channels, expected {n_channels}; using zeros.")
            continue
        segment = _maintenance_segment(trial, cfg.maintenance_window)
        if segment.shape[1] == 0:
            warnings.warn(f"Trial {i} has no data in the maintenance window; using zeros.")
            continue
        try:
            features[i] = band_power_vector(segment, trials.sfreq, bands)
        except ValueError as e:
            warnings.warn(f"Trial {i} feature extraction failed: {e}")

    return zscore_columns(features)
