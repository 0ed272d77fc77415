"""Band-wise phase-locking value (PLV) and weighted phase-lag index (wPLI) matrices."""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
from scipy.signal import hilbert

from .config import HarmonicFieldConfig, Status
from .data_loader import Recording, usable_signal
from .preprocessing import bandpass_filter


@dataclass
class ConnectivityResult:
    bands: Tuple[str, ...]
    plv_by_band: Dict[str, np.ndarray]      # band -> (n_channels, n_channels), symmetric, diagonal 0
    wpli_by_band: Dict[str, np.ndarray]
    mean_plv: np.ndarray                    # average over bands
    mean_wpli: np.ndarray
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, band_names: Sequence[str], n_channels: int = 0) -> "ConnectivityResult":
        zeros = np.zeros((n_channels, n_channels))
        return cls(
            bands=tuple(band_names),
            plv_by_band={b: zeros.copy() for b in band_names},
            wpli_by_band={b: zeros.copy() for b in band_names},
            mean_plv=zeros.copy(),
            mean_wpli=zeros.copy(),
            status=Status.FAILED,
        )

    @property
    def n_channels(self) -> int:
        return self.mean_plv.shape[0]


def _upper_pairs(n_channels: int):
    for a in range(n_channels):
        for b in range(a + 1, n_channels):
            yield a, b


def plv_matrix(phase: np.ndarray) -> np.ndarray:
    """
    PLV for every unordered channel pair, filled symmetrically.

    Parameters
    ----------
    phase : (n_channels, n_times) instantaneous phase in radians
    """
    n_ch = phase.shape[0]
    phasors = np.exp(1j * phase)
    out = np.zeros((n_ch, n_ch))
    for a, b in _upper_pairs(n_ch):
        value = np.abs(np.mean(phasors[a] * np.conj(phasors[b])))
        out[a, b] = out[b, a] = min(value, 1.0)
    return out


def wpli_matrix(analytic: np.ndarray) -> np.ndarray:
    """
    wPLI = |mean(Im S)| / mean(|Im S|) with S = z_a · conj(z_b).

    Pairs whose imaginary cross-spectrum is identically zero get 0; pairs
    involving a NaN channel stay NaN.
    """
    n_ch = analytic.shape[0]
    out = np.zeros((n_ch, n_ch))
    for a, b in _upper_pairs(n_ch):
        imag = np.imag(analytic[a] * np.conj(analytic[b]))
        denom = np.mean(np.abs(imag))
        if not np.isfinite(denom):
            value = np.nan
        else:
            value = np.abs(np.mean(imag)) / denom if denom > 0 else 0.0
        out[a, b] = out[b, a] = value
    return out


def mean_pairwise_plv(phase: np.ndarray) -> float:
    """Average PLV over all channel pairs; NaN with fewer than two channels.

    Pairs involving a NaN channel are left out of the average.
    """
    n_ch = phase.shape[0]
    if n_ch < 2:
        return np.nan
    values = plv_matrix(phase)[np.triu_indices(n_ch, k=1)]
    values = values[np.isfinite(values)]
    return float(values.mean()) if values.size else np.nan


def analyze_connectivity(recording: Recording, cfg: HarmonicFieldConfig) -> ConnectivityResult:
    """
    Per configured band: filter, Hilbert transform, PLV and wPLI matrices.

    A band that fails is replaced by all-zero matrices of the right shape.
    """
    band_names = tuple(cfg.connectivity_bands)
    signal = usable_signal(recording)
    if signal is None:
        return ConnectivityResult.empty(band_names)

    n_ch = signal.shape[0]
    plv_by_band: Dict[str, np.ndarray] = {}
    wpli_by_band: Dict[str, np.ndarray] = {}

    for band_name in band_names:
        try:
            band = cfg.band(band_name)
            filtered = bandpass_filter(signal, recording.sfreq, band, cfg.filter_order)
            analytic = hilbert(filtered, axis=-1)
            plv_by_band[band_name] = plv_matrix(np.angle(analytic))
            wpli_by_band[band_name] = wpli_matrix(analytic)
        except (ValueError, MemoryError) as e:
            warnings.warn(f"Connectivity band {band_name} failed: {e}")
            plv_by_band[band_name] = np.zeros((n_ch, n_ch))
            wpli_by_band[band_name] = np.zeros((n_ch, n_ch))

    if band_names:
        mean_plv = np.mean([plv_by_band[b] for b in band_names], axis=0)
        mean_wpli = np.mean([wpli_by_band[b] for b in band_names], axis=0)
    else:
        mean_plv = np.zeros((n_ch, n_ch))
        mean_wpli = np.zeros((n_ch, n_ch))

    return ConnectivityResult(
        bands=band_names,
        plv_by_band=plv_by_band,
        wpli_by_band=wpli_by_band,
        mean_plv=mean_plv,
        mean_wpli=mean_wpli,
    )
