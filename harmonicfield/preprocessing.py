"""Signal conditioning: zero-phase band-pass filtering, safe downsampling, bad-channel detection."""
from __future__ import annotations

import warnings
from typing import Tuple

import numpy as np
from scipy.signal import butter, sosfiltfilt


# ---------------------------------------------------------------------------
# Band-pass filter shared by every frequency-domain stage
# ---------------------------------------------------------------------------

def bandpass_filter(
    signal: np.ndarray,
    sfreq: float,
    band: Tuple[float, float],
    order: int = 4,
) -> np.ndarray:
    """
    Zero-phase Butterworth band-pass along the last axis.

    Parameters
    ----------
    signal : np.ndarray, shape (n_channels, n_times) or (n_times,)
    sfreq  : sampling rate in Hz
    band   : (low, high) pass band in Hz
    order  : filter order

    Returns
    -------
    np.ndarray, same shape. Channels are filtered independently. A channel
    holding any non-finite sample comes back as all NaN. If the filter
    cannot be designed (edges at/above Nyquist) the input is returned
    unmodified; a channel the filter cannot be applied to (shorter than
    the padding, non-finite output) keeps its unfiltered samples. Both
    cases emit a warning.
    """
    signal = np.asarray(signal, dtype=float)
    low, high = band
    nyq = sfreq / 2.0
    try:
        if not 0 < low < high < nyq:
            raise ValueError(f"band edges must satisfy 0 < low < high < Nyquist ({nyq:.1f} Hz)")
        sos = butter(order, [low / nyq, high / nyq], btype="bandpass", output="sos")
    except ValueError as e:
        warnings.warn(
            f"Band-pass {low:g}-{high:g} Hz failed at {sfreq:g} Hz ({e}); returning unfiltered signal."
        )
        return signal

    rows = np.atleast_2d(signal)
    filtered = np.full(rows.shape, np.nan)
    failed = []
    for ch, row in enumerate(rows):
        if not np.all(np.isfinite(row)):
            continue
        try:
            out = sosfiltfilt(sos, row)
            if not np.all(np.isfinite(out)):
                raise ValueError("filter produced non-finite values")
            filtered[ch] = out
        except ValueError as e:
            filtered[ch] = row
            failed.append((ch, e))
    if failed:
        ch, e = failed[0]
        warnings.warn(
            f"Band-pass {low:g}-{high:g} Hz failed at {sfreq:g} Hz on {len(failed)} channel(s) "
            f"(first: {ch}, {e}); those channels are unfiltered."
        )
    return filtered.reshape(signal.shape)


def lowpass_filter(signal: np.ndarray, sfreq: float, cutoff: float, order: int = 4) -> np.ndarray:
    signal = np.asarray(signal, dtype=float)
    nyq = sfreq / 2.0
    try:
        if not 0 < cutoff < nyq:
            raise ValueError(f"cutoff must satisfy 0 < cutoff < Nyquist ({nyq:.1f} Hz)")
        sos = butter(order, cutoff / nyq, btype="lowpass", output="sos")
        return sosfiltfilt(sos, signal, axis=-1)
    except ValueError as e:
        warnings.warn(f"Low-pass at {cutoff:g} Hz failed ({e}); returning unfiltered signal.")
        return signal


# ---------------------------------------------------------------------------
# Downsampling
# ---------------------------------------------------------------------------

def downsample_signal(signal: np.ndarray, sfreq: float, factor: int) -> Tuple[np.ndarray, float]:
    """
    Anti-aliased integer downsampling.

    Low-passes at 0.8 / factor of Nyquist, then keeps every ``factor``-th sample.

    Returns
    -------
    (downsampled, new_sfreq)
    """
    if factor < 1:
        raise ValueError(f"factor must be >= 1, got {factor}")
    if factor == 1:
        return np.asarray(signal, dtype=float), sfreq
    cutoff = 0.8 / factor * (sfreq / 2.0)
    filtered = lowpass_filter(signal, sfreq, cutoff)
    return filtered[..., ::factor], sfreq / factor


# ---------------------------------------------------------------------------
# Bad channels
# ---------------------------------------------------------------------------

def detect_bad_channels(signal: np.ndarray, threshold_std: float = 5.0) -> np.ndarray:
    """
    Flag channels whose variance lies more than ``threshold_std`` standard
    deviations from the mean channel variance.

    Returns
    -------
    np.ndarray of int: indices of bad channels (possibly empty).
    """
    channel_var = np.nanvar(signal, axis=1)
    spread = np.nanstd(channel_var)
    if not np.isfinite(spread) or spread == 0:
        return np.array([], dtype=int)
    bad = np.where(np.abs(channel_var - np.nanmean(channel_var)) > threshold_std * spread)[0]
    if bad.size:
        warnings.warn(f"Detected {bad.size} bad channel(s): {bad.tolist()}")
    return bad
