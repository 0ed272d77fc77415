"""
Access-window detection: sliding-window theta coherence followed by a
two-threshold hysteresis state machine.

The detector runs on the coherence time series, whose sample axis is the
sliding-window index (rate = sfreq / step_samples), not the raw signal axis.
All duration parameters are configured in milliseconds and converted with
that effective rate.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import hilbert

from .config import HarmonicFieldConfig, Status
from .connectivity import ConnectivityResult, mean_pairwise_plv
from .data_loader import Recording, usable_signal
from .preprocessing import bandpass_filter
from .spectral import SpectralResult

IDLE = "idle"
ACTIVE = "active"


@dataclass(frozen=True)
class AccessWindow:
    """[start, end] on the coherence time-series axis."""
    start: int
    end: int

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class HysteresisParams:
    """Detector thresholds; every duration is in coherence-axis samples."""
    r_hi: float
    r_lo: float
    t_on: int = 1
    t_off: int = 1
    dwell_min: int = 0
    dwell_max: int = np.iinfo(np.int64).max
    refractory: int = 0

    @classmethod
    def from_config(cls, cfg: HarmonicFieldConfig, effective_rate: float) -> "HysteresisParams":
        return cls(
            r_hi=cfg.access_r_hi,
            r_lo=cfg.access_r_lo,
            # Entry/exit need at least one confirming sample
            t_on=max(1, ms_to_samples(cfg.access_t_on, effective_rate)),
            t_off=max(1, ms_to_samples(cfg.access_t_off, effective_rate)),
            dwell_min=ms_to_samples(cfg.access_dwell_min, effective_rate),
            dwell_max=ms_to_samples(cfg.access_dwell_max, effective_rate),
            refractory=ms_to_samples(cfg.access_refractory, effective_rate),
        )


def ms_to_samples(ms: float, rate: float) -> int:
    return int(round(ms / 1000.0 * rate))


# ---------------------------------------------------------------------------
# Step 1: coherence time series
# ---------------------------------------------------------------------------

def coherence_timeseries(
    signal: np.ndarray,
    sfreq: float,
    band: Tuple[float, float],
    window: float,
    overlap: float,
    order: int = 4,
) -> Tuple[np.ndarray, int]:
    """
    Mean pairwise PLV in sliding windows over the band-passed signal.

    Parameters
    ----------
    signal  : (n_channels, n_times)
    window  : window length in seconds
    overlap : fractional overlap between consecutive windows

    Returns
    -------
    coherence    : (n_windows,) one value per window (NaN if it cannot be computed)
    step_samples : hop between windows in raw samples
    """
    win = max(1, int(round(window * sfreq)))
    step = max(1, int(round(win * (1.0 - overlap))))
    n_times = signal.shape[1]
    if n_times < win:
        return np.empty(0), step

    filtered = bandpass_filter(signal, sfreq, band, order)
    n_windows = (n_times - win) // step + 1
    coherence = np.full(n_windows, np.nan)
    for w in range(n_windows):
        segment = filtered[:, w * step: w * step + win]
        if segment.shape[1] < 10:
            continue
        coherence[w] = mean_pairwise_plv(np.angle(hilbert(segment, axis=-1)))
    return coherence, step


# ---------------------------------------------------------------------------
# Step 2: hysteresis state machine
# ---------------------------------------------------------------------------

def detect_windows(coherence: Sequence[float], params: HysteresisParams) -> List[AccessWindow]:
    """
    Single forward pass over ``coherence``.

    idle -> active once the value has stayed >= r_hi for t_on consecutive
    samples and the confirming sample lies at least ``refractory`` samples
    after the end of the last accepted window; the refractory check gates
    only the transition, the above-threshold counter keeps running. The
    window starts at the first sample of that above-threshold run.

    active -> idle once the value has stayed <= r_lo for t_off consecutive
    samples; the window ends at the first sample of that run. Windows whose
    duration falls outside [dwell_min, dwell_max] are discarded and do not
    restart the refractory clock.

    NaN samples are skipped without touching either counter. A window still
    open at the end is closed at the last index and tested the same way.
    """
    values = np.asarray(coherence, dtype=float)
    windows: List[AccessWindow] = []

    state = IDLE
    above = 0
    below = 0
    run_start = 0           # first sample of the current above-r_hi run
    exit_start = 0          # first sample of the current below-r_lo run
    candidate_start = 0
    last_end: Optional[int] = None

    def accept(start: int, end: int) -> bool:
        if params.dwell_min <= end - start <= params.dwell_max:
            windows.append(AccessWindow(start, end))
            return True
        return False

    for t, value in enumerate(values):
        if np.isnan(value):
            continue

        if state == IDLE:
            if value >= params.r_hi:
                if above == 0:
                    run_start = t
                above += 1
                refractory_over = last_end is None or t - last_end >= params.refractory
                if above >= params.t_on and refractory_over:
                    state = ACTIVE
                    candidate_start = run_start
                    below = 0
            else:
                above = 0
        else:
            if value <= params.r_lo:
                if below == 0:
                    exit_start = t
                below += 1
                if below >= params.t_off:
                    window_end = exit_start
                    if accept(candidate_start, window_end):
                        last_end = window_end
                    state = IDLE
                    above = 0
                    below = 0
            else:
                below = 0

    if state == ACTIVE and values.size:
        accept(candidate_start, values.size - 1)

    return windows


# ---------------------------------------------------------------------------
# Step 3: summary
# ---------------------------------------------------------------------------

@dataclass
class AccessResult:
    windows: List[AccessWindow]
    coherence_timeseries: np.ndarray
    effective_rate: float           # coherence samples per second
    step_samples: int
    n_events: int = 0
    mean_duration: float = 0.0      # seconds
    std_duration: float = 0.0
    total_access_time: float = 0.0
    access_proportion: float = 0.0
    params: Optional[HysteresisParams] = None
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls) -> "AccessResult":
        return cls(
            windows=[],
            coherence_timeseries=np.empty(0),
            effective_rate=np.nan,
            step_samples=0,
            status=Status.FAILED,
        )

    @property
    def window_array(self) -> np.ndarray:
        """(n_events, 2) array of [start, end] indices."""
        return np.array([[w.start, w.end] for w in self.windows], dtype=int).reshape(-1, 2)


def summarize_windows(
    windows: Sequence[AccessWindow],
    effective_rate: float,
    recording_duration: float,
) -> dict:
    """Count, duration statistics (s), total access time and proportion; zeros when empty."""
    if not windows:
        return dict(n_events=0, mean_duration=0.0, std_duration=0.0, total_access_time=0.0, access_proportion=0.0)
    durations = np.array([w.duration for w in windows], dtype=float) / effective_rate
    total = float(durations.sum())
    return dict(
        n_events=len(windows),
        mean_duration=float(durations.mean()),
        std_duration=float(durations.std(ddof=1)) if len(durations) > 1 else 0.0,
        total_access_time=total,
        access_proportion=total / recording_duration if recording_duration > 0 else 0.0,
    )


def detect_access(
    recording: Recording,
    spectral: Optional[SpectralResult],
    connectivity: Optional[ConnectivityResult],
    cfg: HarmonicFieldConfig,
) -> AccessResult:
    """
    Coherence time series -> hysteresis windows -> summary statistics.

    Requires connectivity output for the coherence band; otherwise returns
    ``AccessResult.empty`` with a warning. Zero detected windows is a normal
    outcome with status ``complete``.
    """
    if connectivity is None or cfg.coherence_band not in connectivity.plv_by_band:
        warnings.warn(f"No {cfg.coherence_band}-band connectivity available; skipping access detection.")
        return AccessResult.empty()

    signal = usable_signal(recording)
    if signal is None:
        return AccessResult.empty()

    try:
        coherence, step = coherence_timeseries(
            signal,
            recording.sfreq,
            cfg.band(cfg.coherence_band),
            cfg.coherence_window,
            cfg.coherence_overlap,
            cfg.filter_order,
        )
    except (ValueError, MemoryError) as e:
        warnings.warn(f"Coherence time series failed: {e}")
        return AccessResult.empty()

    if coherence.size == 0 or np.all(np.isnan(coherence)):
        warnings.warn("Could not compute a valid coherence time series.")
        return AccessResult.empty()

    effective_rate = recording.sfreq / step
    params = HysteresisParams.from_config(cfg, effective_rate)
    if params.dwell_max < params.t_on:
        # a confirmed window lasts at least t_on samples
        warnings.warn(
            f"Maximum dwell ({cfg.access_dwell_max:g} ms = {params.dwell_max} samples) is shorter than "
            f"entry confirmation ({params.t_on} samples) at the coherence rate of {effective_rate:g} Hz; "
            "no access window can be accepted. Shorten coherence_window or lengthen access_dwell_max."
        )
    windows = detect_windows(coherence, params)
    summary = summarize_windows(windows, effective_rate, recording.duration)

    return AccessResult(
        windows=windows,
        coherence_timeseries=coherence,
        effective_rate=effective_rate,
        step_samples=step,
        params=params,
        **summary,
    )
