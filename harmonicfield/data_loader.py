"""Data loading utilities for BIDS (i)EEG recordings, event tables and trial segmentation."""
from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import mne
import numpy as np
import pandas as pd

from .config import HarmonicFieldConfig

mne.set_log_level("WARNING")

# Lower-cased event columns that are renamed to the canonical contrast names
EVENT_COLUMN_ALIASES = {
    "set_size": "setsize",
    "load": "setsize",
    "response_correct": "correct",
    "probe_type": "match",
}


@dataclass
class Recording:
    """Continuous multi-channel recording for one subject/session. Read-only to the analyzers."""
    subject_id: str
    signal: np.ndarray              # shape (n_channels, n_samples), µV
    sfreq: float
    channel_names: List[str]
    events: pd.DataFrame            # one row per trial; 'onset_sample' plus condition columns
    session_id: str = ""
    channel_info: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def n_channels(self) -> int:
        return self.signal.shape[0]

    @property
    def n_samples(self) -> int:
        return self.signal.shape[1]

    @property
    def duration(self) -> float:
        """Time of the last sample in seconds."""
        return max(self.n_samples - 1, 0) / self.sfreq


@dataclass(frozen=True)
class Trial:
    signal: np.ndarray              # (n_channels, n_trial_samples), may be clipped at boundaries
    time: np.ndarray                # seconds relative to event onset
    onset_sample: int


@dataclass(frozen=True)
class TrialSet:
    trials: Tuple[Trial, ...]
    labels: pd.DataFrame            # row i describes trials[i]
    sfreq: float

    def __len__(self) -> int:
        return len(self.trials)


# ---------------------------------------------------------------------------
# Signal validation shared by the analyzers
# ---------------------------------------------------------------------------

def usable_signal(recording: Optional[Recording]) -> Optional[np.ndarray]:
    """Return the recording's signal as a float array, or None (with a warning) if unusable."""
    if recording is None:
        warnings.warn("No recording provided.")
        return None
    try:
        signal = np.asarray(recording.signal, dtype=float)
    except (TypeError, ValueError) as e:
        warnings.warn(f"Recording signal is not numeric: {e}")
        return None
    if signal.ndim != 2 or signal.shape[0] == 0 or signal.shape[1] == 0 or not recording.sfreq > 0:
        warnings.warn(f"Expected a non-empty (channels, samples) signal, got shape {signal.shape}")
        return None
    return signal


# ---------------------------------------------------------------------------
# Event tables
# ---------------------------------------------------------------------------

def normalize_events(events: pd.DataFrame, sfreq: float) -> pd.DataFrame:
    """
    Lower-case column names, apply aliases and derive a 0-based ``onset_sample``.

    The onset is taken from ``begsample`` (1-based, FieldTrip style), ``sample``
    (0-based, BIDS) or ``onset`` (seconds), in that order of preference.
    """
    df = events.copy()
    df.columns = [str(c).strip().lower() for c in df.columns]
    for alias, canonical in EVENT_COLUMN_ALIASES.items():
        if alias in df.columns and canonical not in df.columns:
            df = df.rename(columns={alias: canonical})

    if "onset_sample" not in df.columns:
        if "begsample" in df.columns:
            df["onset_sample"] = pd.to_numeric(df["begsample"], errors="coerce") - 1
        elif "sample" in df.columns:
            df["onset_sample"] = pd.to_numeric(df["sample"], errors="coerce")
        elif "onset" in df.columns:
            df["onset_sample"] = np.round(pd.to_numeric(df["onset"], errors="coerce") * sfreq)
        else:
            raise ValueError(
                f"Event table has no onset column (expected begsample, sample or onset); got {list(df.columns)}"
            )

    n_before = len(df)
    df = df[df["onset_sample"].notna()].copy()
    if len(df) < n_before:
        warnings.warn(f"Dropped {n_before - len(df)} event(s) with missing onsets.")
    df["onset_sample"] = df["onset_sample"].astype(int)
    return df.reset_index(drop=True)


def load_events(events_path: str | Path, sfreq: float) -> pd.DataFrame:
    df = pd.read_csv(events_path, sep="\t", na_values=["n/a", "N/A"])
    return normalize_events(df, sfreq)


# ---------------------------------------------------------------------------
# BIDS discovery and loading
# ---------------------------------------------------------------------------

def discover_subjects(data_root: str | Path) -> List[str]:
    """Return sorted ``sub-*`` directory names under *data_root*."""
    root = Path(data_root)
    if not root.is_dir():
        raise FileNotFoundError(f"Data root does not exist: {root}")
    return sorted(p.name for p in root.glob("sub-*") if p.is_dir())


def list_sessions(data_root: str | Path, subject_id: str) -> List[str]:
    sessions = sorted(p.name for p in (Path(data_root) / subject_id).glob("ses-*") if p.is_dir())
    return sessions or [""]


def _detect_modality(session_dir: Path) -> str:
    for modality in ("ieeg", "eeg"):
        if (session_dir / modality).is_dir():
            return modality
    raise FileNotFoundError(f"No eeg or ieeg directory found in {session_dir}")


def load_subject_recording(
    data_root: str | Path,
    subject_id: str,
    session_id: Optional[str] = None,
    channels: Optional[Sequence[str]] = None,
) -> Recording:
    """
    Load one subject/session from a BIDS dataset.

    Parameters
    ----------
    data_root:   BIDS root directory.
    subject_id:  e.g. ``sub-01``.
    session_id:  e.g. ``ses-01``; the first session is used when None.
    channels:    optional subset of channel labels to keep.

    Returns
    -------
    Recording
    """
    if session_id is None:
        session_id = list_sessions(data_root, subject_id)[0]
    session_dir = Path(data_root) / subject_id / session_id
    data_dir = session_dir / _detect_modality(session_dir)

    edf_files = sorted(data_dir.glob("*.edf"))
    if not edf_files:
        raise FileNotFoundError(f"No EDF file found in {data_dir}")

    raw = mne.io.read_raw_edf(str(edf_files[0]), preload=True, verbose=False)
    if channels is not None:
        wanted = [ch for ch in channels if ch in raw.ch_names]
        if not wanted:
            raise ValueError(f"None of {list(channels)} found in {raw.ch_names}")
        raw.pick(wanted)

    # MNE returns Volts; analyzers work in µV
    signal = raw.get_data() * 1e6
    sfreq = float(raw.info["sfreq"])

    event_files = sorted(data_dir.glob("*events.tsv"))
    if event_files:
        events = load_events(event_files[0], sfreq)
    else:
        warnings.warn(f"No events file found for {subject_id} {session_id}")
        events = pd.DataFrame(columns=["onset_sample"])

    channel_files = sorted(data_dir.glob("*channels.tsv"))
    channel_info = pd.DataFrame()
    if channel_files:
        try:
            channel_info = pd.read_csv(channel_files[0], sep="\t")
        except (OSError, pd.errors.ParserError) as e:
            warnings.warn(f"Failed to load channel info for {subject_id}: {e}")

    return Recording(
        subject_id=subject_id,
        signal=signal,
        sfreq=sfreq,
        channel_names=list(raw.ch_names),
        events=events,
        session_id=session_id,
        channel_info=channel_info,
    )


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------

def segment_trials(recording: Recording, window: Tuple[float, float]) -> TrialSet:
    """
    Cut one trial per event row, ``window = (pre, post)`` seconds around onset.

    A negative ``pre`` means time before onset. Trials near the recording
    edges are clipped to the available samples, so lengths may differ.
    """
    events = recording.events
    if events is None or len(events) == 0:
        raise ValueError(f"No events available for segmentation of {recording.subject_id}")

    sfreq = recording.sfreq
    start_offset = int(round(window[0] * sfreq))
    end_offset = int(round(window[1] * sfreq))
    n_total = recording.n_samples

    trials = []
    for onset in events["onset_sample"].astype(int):
        idx_start = max(0, onset + start_offset)
        idx_end = min(n_total, onset + end_offset + 1)
        if idx_end <= idx_start:
            segment = np.empty((recording.n_channels, 0))
            time = np.empty(0)
        else:
            segment = recording.signal[:, idx_start:idx_end].copy()
            time = (np.arange(idx_start, idx_end) - onset) / sfreq
        trials.append(Trial(signal=segment, time=time, onset_sample=int(onset)))

    return TrialSet(trials=tuple(trials), labels=events.reset_index(drop=True).copy(), sfreq=sfreq)


# ---------------------------------------------------------------------------
# Synthetic recording (unit tests and demo runs without real data)
# ---------------------------------------------------------------------------

def make_synthetic_recording(
    cfg: HarmonicFieldConfig,
    n_channels: int = 4,
    sfreq: float = 1000.0,
    duration: Optional[float] = None,
    n_trials: int = 12,
    coherent_spans: Sequence[Tuple[float, float]] = (),
    theta_freq: float = 6.0,
    theta_amplitude: float = 10.0,
    noise_std: float = 1.0,
    pac_strength: float = 0.0,
    seed: int = 42,
    subject_id: Optional[str] = None,
) -> Recording:
    """
    Generate a synthetic Recording with gaussian background noise.

    ``coherent_spans`` are (start, end) seconds during which every channel
    carries the same ``theta_freq`` oscillation. ``pac_strength > 0`` adds a
    60 Hz component whose amplitude follows the shared theta phase. Trials
    are spaced by the configured trial window, with set size cycling 4/6/8.
    """
    rng = np.random.default_rng(seed)
    trial_len = cfg.trial_window[1] - cfg.trial_window[0]
    pre = -cfg.trial_window[0]
    if duration is None:
        duration = pre + n_trials * trial_len + 1.0
    n_samples = int(round(duration * sfreq))
    t = np.arange(n_samples) / sfreq

    signal = rng.standard_normal((n_channels, n_samples)) * noise_std

    theta = np.sin(2 * np.pi * theta_freq * t)
    for start, end in coherent_spans:
        mask = (t >= start) & (t < end)
        signal[:, mask] += theta_amplitude * theta[mask]
        if pac_strength > 0:
            envelope = pac_strength * (1.0 + theta[mask]) / 2.0
            signal[:, mask] += envelope * np.sin(2 * np.pi * 60.0 * t[mask])

    onsets = [int(round((pre + i * trial_len) * sfreq)) for i in range(n_trials)]
    onsets = [o for o in onsets if o < n_samples]
    n_events = len(onsets)
    set_sizes = np.array([4, 6, 8])[np.arange(n_events) % 3]

    # Set size scales alpha power in the maintenance window so decoding has signal to find
    alpha = np.sin(2 * np.pi * 10.0 * t)
    m0, m1 = cfg.maintenance_window
    for onset, size in zip(onsets, set_sizes):
        a = max(0, onset + int(m0 * sfreq))
        b = min(n_samples, onset + int(m1 * sfreq))
        signal[:, a:b] += (size / 4.0) * 2.0 * alpha[a:b]

    events = pd.DataFrame(
        {
            "onset_sample": onsets,
            "setsize": set_sizes,
            "correct": rng.integers(0, 2, n_events),
            "match": rng.choice(["IN", "OUT"], n_events),
        }
    )

    return Recording(
        subject_id=subject_id or f"sub-{seed:02d}",
        signal=signal,
        sfreq=sfreq,
        channel_names=[f"ch{i}" for i in range(n_channels)],
        events=events,
    )
