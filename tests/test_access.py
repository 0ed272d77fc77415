"""Hysteresis access-window detector: state machine edge cases and end-to-end scenarios."""
from dataclasses import replace

import numpy as np
import pytest

from harmonicfield.access import (
    AccessWindow,
    HysteresisParams,
    coherence_timeseries,
    detect_access,
    detect_windows,
    ms_to_samples,
    summarize_windows,
)
from harmonicfield.config import HarmonicFieldConfig, Status
from harmonicfield.connectivity import analyze_connectivity
from harmonicfield.data_loader import make_synthetic_recording


CFG = HarmonicFieldConfig()


def _series(*runs):
    """Concatenate (value, length) runs into one coherence series."""
    return np.concatenate([np.full(n, v, dtype=float) for v, n in runs])


def _spans(windows):
    return [(w.start, w.end) for w in windows]


PARAMS = HysteresisParams(r_hi=0.55, r_lo=0.45, t_on=2, t_off=2, dwell_min=3, dwell_max=100, refractory=10)


# ---------------------------------------------------------------------------
# state machine
# ---------------------------------------------------------------------------

def test_constant_zero_gives_no_windows():
    assert detect_windows(np.zeros(200), PARAMS) == []


def test_constant_high_gives_one_full_window():
    windows = detect_windows(np.ones(50), PARAMS)
    assert _spans(windows) == [(0, 49)]


def test_constant_high_longer_than_dwell_max_gives_nothing():
    assert detect_windows(np.ones(50), replace(PARAMS, dwell_max=10)) == []


def test_brief_crossing_below_t_on_gives_nothing():
    series = _series((0.2, 10), (0.9, 2), (0.2, 10), (0.9, 1), (0.5, 10))
    assert detect_windows(series, replace(PARAMS, t_on=3)) == []


def test_window_bounds_use_first_sample_of_each_run():
    series = _series((0.2, 5), (0.9, 20), (0.3, 10))
    assert _spans(detect_windows(series, PARAMS)) == [(5, 25)]


def test_values_between_thresholds_keep_the_window_open():
    series = _series((0.9, 10), (0.5, 10), (0.9, 5), (0.1, 5))
    assert _spans(detect_windows(series, PARAMS)) == [(0, 25)]


def test_refractory_gates_confirmed_entry_only():
    # second run starts 5 samples after the first window ends; the counter
    # keeps running and entry is confirmed once refractory has elapsed
    series = _series((0.9, 10), (0.1, 5), (0.9, 26), (0.1, 10))
    assert _spans(detect_windows(series, PARAMS)) == [(0, 10), (15, 41)]


def test_run_ending_inside_refractory_is_rejected():
    series = _series((0.9, 10), (0.1, 5), (0.9, 5), (0.1, 30))
    assert _spans(detect_windows(series, PARAMS)) == [(0, 10)]


def test_rejected_window_does_not_start_refractory():
    series = _series((0.9, 2), (0.1, 3), (0.9, 16), (0.1, 5))
    params = replace(PARAMS, refractory=50)
    assert _spans(detect_windows(series, params)) == [(5, 21)]


def test_nan_samples_neither_extend_nor_reset():
    series = np.array([1, 1, np.nan, 1, 1, 1, 1, 1, 1, 1, 0, np.nan, 0, 0], dtype=float)
    params = replace(PARAMS, t_on=3, dwell_min=0)
    assert _spans(detect_windows(series, params)) == [(0, 10)]


def test_nan_does_not_force_exit():
    series = np.array([1, 1, 1, np.nan, np.nan, np.nan, 1, 1], dtype=float)
    assert _spans(detect_windows(series, replace(PARAMS, dwell_min=0))) == [(0, 7)]


def test_open_window_closed_at_last_index():
    series = _series((0.0, 2), (1.0, 4))
    assert _spans(detect_windows(series, replace(PARAMS, dwell_min=0))) == [(2, 5)]


def test_windows_sorted_and_non_overlapping():
    rng = np.random.default_rng(7)
    series = np.clip(np.cumsum(rng.normal(0, 0.08, 5000)) % 1.0, 0, 1)
    params = HysteresisParams(r_hi=0.6, r_lo=0.4, t_on=3, t_off=3, dwell_min=0, dwell_max=10_000, refractory=5)
    windows = detect_windows(series, params)
    assert len(windows) > 0
    for w in windows:
        assert w.start <= w.end
    for prev, nxt in zip(windows, windows[1:]):
        assert prev.end <= nxt.start


# ---------------------------------------------------------------------------
# parameters and summary
# ---------------------------------------------------------------------------

def test_ms_to_samples():
    assert ms_to_samples(30, 100.0) == 3
    assert ms_to_samples(2000, 0.5) == 1


def test_params_from_config_use_effective_rate():
    params = HysteresisParams.from_config(CFG, effective_rate=100.0)
    assert (params.t_on, params.t_off, params.dwell_min, params.dwell_max, params.refractory) == (3, 2, 10, 30, 6)
    slow = HysteresisParams.from_config(CFG, effective_rate=0.5)
    assert slow.t_on == 1 and slow.t_off == 1


def test_summarize_windows():
    summary = summarize_windows([AccessWindow(0, 10), AccessWindow(20, 40)], effective_rate=10.0, recording_duration=10.0)
    assert summary["n_events"] == 2
    assert summary["mean_duration"] == pytest.approx(1.5)
    assert summary["total_access_time"] == pytest.approx(3.0)
    assert summary["access_proportion"] == pytest.approx(0.3)


def test_summarize_no_windows_is_zero_not_nan():
    summary = summarize_windows([], effective_rate=10.0, recording_duration=10.0)
    assert summary == dict(n_events=0, mean_duration=0.0, std_duration=0.0, total_access_time=0.0, access_proportion=0.0)


# ---------------------------------------------------------------------------
# coherence time series
# ---------------------------------------------------------------------------

def test_coherence_timeseries_window_count():
    rec = make_synthetic_recording(CFG, n_channels=3, duration=10.0, n_trials=0, coherent_spans=((0.0, 10.0),))
    coherence, step = coherence_timeseries(rec.signal, rec.sfreq, CFG.band("theta"), 4.0, 0.5)
    assert step == 2000
    assert coherence.shape == (4,)
    assert np.all(coherence > 0.9)


def test_coherence_timeseries_too_short():
    signal = np.random.default_rng(0).standard_normal((2, 1000))
    coherence, _ = coherence_timeseries(signal, 1000.0, (4.0, 8.0), 4.0, 0.5)
    assert coherence.size == 0


def test_coherence_timeseries_skips_nan_channel():
    rec = make_synthetic_recording(CFG, n_channels=3, duration=12.0, n_trials=0, coherent_spans=((2.0, 8.0),))
    dirty = rec.signal.copy()
    dirty[2, 100] = np.nan
    band = CFG.band("theta")
    clean, _ = coherence_timeseries(rec.signal[:2], rec.sfreq, band, 2.0, 0.5)
    with_nan, _ = coherence_timeseries(dirty, rec.sfreq, band, 2.0, 0.5)
    np.testing.assert_allclose(with_nan, clean)


# ---------------------------------------------------------------------------
# end-to-end
# ---------------------------------------------------------------------------

def _detect(cfg, duration, spans):
    rec = make_synthetic_recording(cfg, n_channels=4, duration=duration, n_trials=0, coherent_spans=spans)
    return detect_access(rec, None, analyze_connectivity(rec, cfg), cfg)


def test_sustained_coherence_gives_one_window():
    cfg = replace(CFG, access_t_on=2000.0, access_t_off=2000.0, access_dwell_min=2000.0,
                  access_dwell_max=60000.0, access_refractory=0.0)
    result = _detect(cfg, 10.0, ((0.0, 10.0),))
    assert result.status == Status.COMPLETE
    assert result.effective_rate == pytest.approx(0.5)
    assert result.n_events == 1
    assert _spans(result.windows) == [(0, 3)]
    assert result.total_access_time == pytest.approx(6.0)
    assert result.window_array.shape == (1, 2)


def test_brief_coherence_gives_no_windows():
    cfg = replace(CFG, access_t_on=20000.0, access_t_off=2000.0, access_dwell_min=2000.0,
                  access_dwell_max=60000.0)
    result = _detect(cfg, 30.0, ((12.0, 16.0),))
    assert result.status == Status.COMPLETE
    assert result.n_events == 0
    assert result.windows == []
    assert result.access_proportion == 0.0
    assert result.mean_duration == 0.0


def test_default_dwell_limits_warn_when_no_window_fits():
    # 4 s windows at 50 % overlap give a 0.5 Hz coherence axis, so 300 ms rounds to 0 samples
    rec = make_synthetic_recording(CFG, n_channels=4, duration=60.0, n_trials=0, coherent_spans=((10.0, 30.0),))
    with pytest.warns(UserWarning, match="no access window can be accepted"):
        result = detect_access(rec, None, analyze_connectivity(rec, CFG), CFG)
    assert result.params.dwell_max < result.params.t_on
    assert result.n_events == 0


def test_missing_connectivity_gives_empty_result():
    rec = make_synthetic_recording(CFG, n_channels=2, duration=10.0, n_trials=0)
    with pytest.warns(UserWarning):
        result = detect_access(rec, None, None, CFG)
    assert result.status == Status.FAILED
    assert result.n_events == 0
    assert result.window_array.shape == (0, 2)
