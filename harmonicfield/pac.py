"""Theta-phase / gamma-amplitude coupling with Tort's Modulation Index and permutation surrogates."""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.signal import hilbert

from .config import HarmonicFieldConfig, Status
from .data_loader import Recording, usable_signal
from .preprocessing import bandpass_filter


@dataclass
class PACResult:
    modulation_index: np.ndarray    # (n_channels,), >= 0 or NaN
    surrogates: np.ndarray          # (n_channels, surrogate_n)
    p_values: np.ndarray            # (n_channels,), fraction of surrogates >= observed
    z_scores: np.ndarray
    mean_mi: float
    mean_z: float
    n_significant: int
    phase_bin_edges: np.ndarray     # (n_bins + 1,)
    mean_amp_by_phase: np.ndarray   # (n_channels, n_bins)
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, n_channels: int = 0, surrogate_n: int = 0, n_bins: int = 18) -> "PACResult":
        return cls(
            modulation_index=np.full(n_channels, np.nan),
            surrogates=np.full((n_channels, surrogate_n), np.nan),
            p_values=np.ones(n_channels),
            z_scores=np.full(n_channels, np.nan),
            mean_mi=np.nan,
            mean_z=np.nan,
            n_significant=0,
            phase_bin_edges=np.linspace(-np.pi, np.pi, n_bins + 1),
            mean_amp_by_phase=np.zeros((n_channels, n_bins)),
            status=Status.FAILED,
        )


def phase_bin_indices(phase: np.ndarray, n_bins: int) -> np.ndarray:
    """Assign each phase in [-pi, pi) to one of ``n_bins`` equal-width bins."""
    width = 2 * np.pi / n_bins
    idx = np.floor((phase + np.pi) / width).astype(int)
    return np.clip(idx, 0, n_bins - 1)


def _mean_amplitude_per_bin(bin_idx: np.ndarray, amplitude: np.ndarray, n_bins: int) -> np.ndarray:
    sums = np.bincount(bin_idx, weights=amplitude, minlength=n_bins)
    counts = np.bincount(bin_idx, minlength=n_bins)
    return np.divide(sums, counts, out=np.zeros(n_bins), where=counts > 0)


def _mi_from_binned(mean_amp: np.ndarray) -> float:
    n_bins = mean_amp.size
    total = mean_amp.sum()
    if not total > 0:
        return np.nan
    p = mean_amp / total
    p[p == 0] = np.finfo(float).eps
    entropy = -np.sum(p * np.log(p))
    h_max = np.log(n_bins)
    return max((h_max - entropy) / h_max, 0.0)


def modulation_index(
    phase: np.ndarray,
    amplitude: np.ndarray,
    n_bins: int = 18,
    min_samples: int = 100,
) -> float:
    """
    Tort's MI = (log(n_bins) - H(P)) / log(n_bins), P the normalised
    phase-binned mean amplitude. NaN when fewer than ``min_samples`` paired
    non-NaN samples remain.
    """
    phase = np.asarray(phase, dtype=float)
    amplitude = np.asarray(amplitude, dtype=float)
    valid = ~np.isnan(phase) & ~np.isnan(amplitude)
    if valid.sum() < min_samples:
        return np.nan
    bin_idx = phase_bin_indices(phase[valid], n_bins)
    return _mi_from_binned(_mean_amplitude_per_bin(bin_idx, amplitude[valid], n_bins))


def surrogate_modulation_indices(
    phase: np.ndarray,
    amplitude: np.ndarray,
    n_bins: int,
    n_surrogates: int,
    rng: np.random.Generator,
    min_samples: int = 100,
) -> np.ndarray:
    """MI for ``n_surrogates`` random permutations of the amplitude series, phase held fixed."""
    valid = ~np.isnan(phase) & ~np.isnan(amplitude)
    if valid.sum() < min_samples:
        return np.full(n_surrogates, np.nan)
    bin_idx = phase_bin_indices(phase[valid], n_bins)
    amp = amplitude[valid]
    out = np.empty(n_surrogates)
    for s in range(n_surrogates):
        out[s] = _mi_from_binned(_mean_amplitude_per_bin(bin_idx, rng.permutation(amp), n_bins))
    return out


def permutation_p_value(observed: float, surrogates: np.ndarray) -> float:
    """Fraction of surrogate values >= observed."""
    surrogates = np.asarray(surrogates, dtype=float)
    if np.isnan(observed) or surrogates.size == 0:
        return 1.0
    return float(np.sum(surrogates >= observed) / surrogates.size)


def analyze_pac(
    recording: Recording,
    cfg: HarmonicFieldConfig,
    rng: Optional[np.random.Generator] = None,
) -> PACResult:
    """
    Per channel: MI between phase of the phase-band signal and amplitude of
    the amplitude-band signal, with a permutation null distribution.

    p = fraction of surrogate MIs >= observed; z = (MI - mean) / std.
    A failing channel is recorded as MI NaN, p = 1.
    """
    n_bins, n_surr = cfg.pac_n_bins, cfg.pac_surrogate_n
    signal = usable_signal(recording)
    if signal is None:
        return PACResult.empty(0, n_surr, n_bins)
    if rng is None:
        rng = np.random.default_rng(cfg.random_seed)

    n_ch = signal.shape[0]
    try:
        phase = np.angle(hilbert(bandpass_filter(signal, recording.sfreq, cfg.pac_phase_band, cfg.filter_order), axis=-1))
        amplitude = np.abs(hilbert(bandpass_filter(signal, recording.sfreq, cfg.pac_amp_band, cfg.filter_order), axis=-1))
    except (ValueError, MemoryError) as e:
        warnings.warn(f"PAC phase/amplitude extraction failed: {e}")
        return PACResult.empty(n_ch, n_surr, n_bins)

    mi = np.full(n_ch, np.nan)
    surrogates = np.full((n_ch, n_surr), np.nan)
    p_values = np.ones(n_ch)
    mean_amp = np.zeros((n_ch, n_bins))

    for ch in range(n_ch):
        try:
            mi[ch] = modulation_index(phase[ch], amplitude[ch], n_bins, cfg.pac_min_samples)
            if np.isnan(mi[ch]):
                warnings.warn(f"Channel {ch}: fewer than {cfg.pac_min_samples} valid samples; MI set to NaN.")
                continue
            surrogates[ch] = surrogate_modulation_indices(
                phase[ch], amplitude[ch], n_bins, n_surr, rng, cfg.pac_min_samples
            )
            p_values[ch] = permutation_p_value(mi[ch], surrogates[ch])
            valid = ~np.isnan(phase[ch]) & ~np.isnan(amplitude[ch])
            mean_amp[ch] = _mean_amplitude_per_bin(
                phase_bin_indices(phase[ch, valid], n_bins), amplitude[ch, valid], n_bins
            )
        except (ValueError, FloatingPointError) as e:
            warnings.warn(f"Channel {ch} PAC failed: {e}")
            mi[ch] = np.nan
            surrogates[ch] = np.nan
            p_values[ch] = 1.0

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        surr_mean = np.nanmean(surrogates, axis=1)
        surr_std = np.nanstd(surrogates, axis=1)
        z = np.where(surr_std > 0, (mi - surr_mean) / np.where(surr_std > 0, surr_std, 1.0), np.nan)
        mean_mi = float(np.nanmean(mi)) if np.any(np.isfinite(mi)) else np.nan
        mean_z = float(np.nanmean(z)) if np.any(np.isfinite(z)) else np.nan

    return PACResult(
        modulation_index=mi,
        surrogates=surrogates,
        p_values=p_values,
        z_scores=z,
        mean_mi=mean_mi,
        mean_z=mean_z,
        n_significant=int(np.sum(p_values < cfg.pac_alpha)),
        phase_bin_edges=np.linspace(-np.pi, np.pi, n_bins + 1),
        mean_amp_by_phase=mean_amp,
    )
