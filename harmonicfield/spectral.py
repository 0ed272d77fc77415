"""Welch power spectra, aperiodic (1/f) fit and band power per channel."""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
from scipy.signal import welch

from .config import HarmonicFieldConfig, Status
from .data_loader import Recording, usable_signal


@dataclass
class SpectralResult:
    freqs: np.ndarray                   # (n_freqs,) shared by every channel
    power_spectrum: np.ndarray          # (n_channels, n_freqs); failed channels are NaN rows
    aperiodic_slope: float              # median across channels
    aperiodic_offset: float
    slope_by_channel: np.ndarray        # (n_channels,)
    offset_by_channel: np.ndarray
    fit_quality: np.ndarray             # R² per channel
    fit_quality_mean: float
    band_power: Dict[str, np.ndarray]   # band name -> (n_channels,)
    periodic_power: np.ndarray          # PSD minus fitted aperiodic curve
    total_power: float
    dominant_band: Optional[str]
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, band_names: Sequence[str], n_channels: int = 0) -> "SpectralResult":
        nan_ch = np.full(n_channels, np.nan)
        return cls(
            freqs=np.empty(0),
            power_spectrum=np.empty((n_channels, 0)),
            aperiodic_slope=np.nan,
            aperiodic_offset=np.nan,
            slope_by_channel=nan_ch.copy(),
            offset_by_channel=nan_ch.copy(),
            fit_quality=nan_ch.copy(),
            fit_quality_mean=np.nan,
            band_power={name: nan_ch.copy() for name in band_names},
            periodic_power=np.empty((n_channels, 0)),
            total_power=np.nan,
            dominant_band=None,
            status=Status.FAILED,
        )

    @property
    def mean_spectrum(self) -> np.ndarray:
        """Channel-averaged PSD, ignoring failed channels."""
        if self.power_spectrum.size == 0 or np.all(np.isnan(self.power_spectrum)):
            return np.full(self.freqs.shape, np.nan)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            return np.nanmean(self.power_spectrum, axis=0)


def _next_pow2(n: int) -> int:
    return 1 << max(int(n) - 1, 0).bit_length()


def fit_aperiodic(freqs: np.ndarray, psd: np.ndarray, min_points: int = 10):
    """
    OLS fit of log10(power) against log10(frequency).

    Returns
    -------
    (slope, offset, r_squared). The slope is the negated regression slope so a
    steeper 1/f decay gives a larger value. All NaN when fewer than
    ``min_points`` finite points remain.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        log_f = np.log10(freqs)
        log_p = np.log10(psd)
    valid = np.isfinite(log_f) & np.isfinite(log_p)
    if valid.sum() < min_points:
        return np.nan, np.nan, np.nan

    log_f, log_p = log_f[valid], log_p[valid]
    coef = np.polyfit(log_f, log_p, 1)
    fitted = np.polyval(coef, log_f)
    ss_res = np.sum((log_p - fitted) ** 2)
    ss_tot = np.sum((log_p - log_p.mean()) ** 2)
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else np.nan
    return float(-coef[0]), float(coef[1]), float(r2)


def aperiodic_curve(freqs: np.ndarray, slope: float, offset: float) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return 10.0 ** (offset - slope * np.log10(freqs))


def compute_band_power(
    freqs: np.ndarray,
    psd: np.ndarray,
    bands: Dict[str, tuple],
) -> Dict[str, np.ndarray]:
    """Mean PSD inside each band; a band with no bins in range is NaN with a warning."""
    n_channels = psd.shape[0]
    out: Dict[str, np.ndarray] = {}
    for name, (lo, hi) in bands.items():
        mask = (freqs >= lo) & (freqs <= hi)
        if not np.any(mask):
            warnings.warn(f"No frequencies in {name} band [{lo:.1f}-{hi:.1f} Hz]; band power set to NaN.")
            out[name] = np.full(n_channels, np.nan)
            continue
        out[name] = psd[:, mask].mean(axis=1)
    return out


def _dominant_band(band_power: Dict[str, np.ndarray]) -> Optional[str]:
    best, best_val = None, -np.inf
    for name, values in band_power.items():
        if values.size == 0 or np.all(np.isnan(values)):
            continue
        val = np.nanmean(values)
        if val > best_val:
            best, best_val = name, val
    return best


def analyze_spectrum(recording: Recording, cfg: HarmonicFieldConfig) -> SpectralResult:
    """
    Welch PSD per channel (Hann taper, nfft = next power of two), aperiodic
    fit per channel, median aggregation and band power.

    Never raises: a failing channel becomes a NaN row; a failing stage returns
    ``SpectralResult.empty`` tagged ``failed``.
    """
    band_names = cfg.band_names
    signal = usable_signal(recording)
    if signal is None:
        n_ch = recording.n_channels if recording is not None and np.ndim(recording.signal) == 2 else 0
        return SpectralResult.empty(band_names, n_channels=n_ch)

    try:
        sfreq = recording.sfreq
        n_channels, n_samples = signal.shape
        nperseg = min(int(round(cfg.welch_window * sfreq)), n_samples)
        noverlap = int(round(nperseg * cfg.welch_overlap))
        nfft = _next_pow2(nperseg)

        all_freqs = np.fft.rfftfreq(nfft, d=1.0 / sfreq)
        freq_mask = (all_freqs >= cfg.spectral_freq_range[0]) & (all_freqs <= cfg.spectral_freq_range[1])
        freqs = all_freqs[freq_mask]

        psd = np.full((n_channels, freqs.size), np.nan)
        for ch in range(n_channels):
            try:
                _, pxx = welch(
                    signal[ch],
                    fs=sfreq,
                    window="hann",
                    nperseg=nperseg,
                    noverlap=noverlap,
                    nfft=nfft,
                )
                if not np.all(np.isfinite(pxx)):
                    raise ValueError("non-finite PSD")
                psd[ch] = pxx[freq_mask]
            except ValueError as e:
                warnings.warn(f"Channel {ch} PSD failed: {e}")

        # --- Aperiodic fit per channel ---
        fit_mask = (freqs >= cfg.aperiodic_fit_range[0]) & (freqs <= cfg.aperiodic_fit_range[1])
        slopes = np.full(n_channels, np.nan)
        offsets = np.full(n_channels, np.nan)
        quality = np.full(n_channels, np.nan)
        for ch in range(n_channels):
            if np.all(np.isnan(psd[ch])):
                continue
            try:
                slopes[ch], offsets[ch], quality[ch] = fit_aperiodic(
                    freqs[fit_mask], psd[ch, fit_mask], cfg.aperiodic_min_points
                )
            except (ValueError, np.linalg.LinAlgError) as e:
                warnings.warn(f"Channel {ch} aperiodic fit failed: {e}")

        # --- Periodic residual (diagnostic only) ---
        periodic = psd.copy()
        for ch in range(n_channels):
            if np.isfinite(slopes[ch]):
                periodic[ch] = psd[ch] - aperiodic_curve(freqs, slopes[ch], offsets[ch])

        band_power = compute_band_power(freqs, psd, cfg.band_dict)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)  # all-NaN slices
            slope = float(np.nanmedian(slopes)) if np.any(np.isfinite(slopes)) else np.nan
            offset = float(np.nanmedian(offsets)) if np.any(np.isfinite(offsets)) else np.nan
            quality_mean = float(np.nanmean(quality)) if np.any(np.isfinite(quality)) else np.nan
            total = float(np.nansum(np.nanmean(psd, axis=0))) if np.any(np.isfinite(psd)) else np.nan

        return SpectralResult(
            freqs=freqs,
            power_spectrum=psd,
            aperiodic_slope=slope,
            aperiodic_offset=offset,
            slope_by_channel=slopes,
            offset_by_channel=offsets,
            fit_quality=quality,
            fit_quality_mean=quality_mean,
            band_power=band_power,
            periodic_power=periodic,
            total_power=total,
            dominant_band=_dominant_band(band_power),
        )
    except (ValueError, MemoryError, np.linalg.LinAlgError) as e:
        warnings.warn(f"Spectral analysis failed: {e}")
        return SpectralResult.empty(band_names, n_channels=signal.shape[0])
