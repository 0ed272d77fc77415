"""Preprocessing, spectral, connectivity, PAC, ERP and energy-budget tests."""
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from harmonicfield.config import HarmonicFieldConfig, Status
from harmonicfield.connectivity import (
    ConnectivityResult,
    analyze_connectivity,
    mean_pairwise_plv,
    wpli_matrix,
)
from harmonicfield.data_loader import Recording, Trial, TrialSet, make_synthetic_recording, segment_trials
from harmonicfield.energy import compute_energy_budget
from harmonicfield.erp import analyze_erp
from harmonicfield.pac import (
    analyze_pac,
    modulation_index,
    permutation_p_value,
    phase_bin_indices,
    surrogate_modulation_indices,
)
from harmonicfield.preprocessing import bandpass_filter, detect_bad_channels, downsample_signal
from harmonicfield.spectral import SpectralResult, analyze_spectrum, fit_aperiodic


CFG = replace(HarmonicFieldConfig(), pac_surrogate_n=50)
SFREQ = 500.0


def _recording(signal, sfreq=SFREQ):
    n_ch = signal.shape[0]
    return Recording(
        subject_id="sub-test",
        signal=signal,
        sfreq=sfreq,
        channel_names=[f"ch{i}" for i in range(n_ch)],
        events=pd.DataFrame(columns=["onset_sample"]),
    )


# ---------------------------------------------------------------------------
# preprocessing
# ---------------------------------------------------------------------------

def test_bandpass_keeps_in_band_and_removes_out_of_band():
    t = np.arange(int(10 * SFREQ)) / SFREQ
    alpha = np.sin(2 * np.pi * 10 * t)
    mixed = alpha + np.sin(2 * np.pi * 60 * t)
    filtered = bandpass_filter(mixed[None, :], SFREQ, (8.0, 13.0))
    mid = slice(int(2 * SFREQ), int(8 * SFREQ))
    np.testing.assert_allclose(filtered[0, mid], alpha[mid], atol=0.1)


def test_bandpass_above_nyquist_returns_input():
    x = np.random.default_rng(0).standard_normal((2, 1000))
    with pytest.warns(UserWarning):
        out = bandpass_filter(x, 100.0, (10.0, 80.0))
    np.testing.assert_array_equal(out, x)


def test_bandpass_nan_channel_does_not_touch_other_channels():
    x = np.random.default_rng(5).standard_normal((3, 2000))
    x[2, 500] = np.nan
    out = bandpass_filter(x, SFREQ, (8.0, 13.0))
    np.testing.assert_allclose(out[:2], bandpass_filter(x[:2], SFREQ, (8.0, 13.0)))
    assert np.all(np.isnan(out[2]))


def test_downsample_signal():
    x = np.random.default_rng(0).standard_normal((3, 2000))
    ds, new_sfreq = downsample_signal(x, 1000.0, 4)
    assert ds.shape == (3, 500)
    assert new_sfreq == 250.0


def test_detect_bad_channels():
    x = np.random.default_rng(0).standard_normal((10, 5000))
    x[7] *= 100
    with pytest.warns(UserWarning):
        bad = detect_bad_channels(x, threshold_std=2.0)
    assert bad.tolist() == [7]


# ---------------------------------------------------------------------------
# spectral
# ---------------------------------------------------------------------------

def test_fit_aperiodic_recovers_power_law():
    freqs = np.arange(1.0, 50.0, 0.5)
    psd = 10 ** (2.0 - 1.5 * np.log10(freqs))
    slope, offset, r2 = fit_aperiodic(freqs, psd)
    assert slope == pytest.approx(1.5)
    assert offset == pytest.approx(2.0)
    assert r2 == pytest.approx(1.0)


def test_fit_aperiodic_too_few_points():
    freqs = np.arange(1.0, 6.0)
    assert all(np.isnan(fit_aperiodic(freqs, 1.0 / freqs, min_points=10)))


def test_spectrum_band_keys_and_dominant_band():
    rng = np.random.default_rng(1)
    t = np.arange(int(20 * SFREQ)) / SFREQ
    signal = rng.standard_normal((3, t.size)) * 0.1 + 10 * np.sin(2 * np.pi * 10 * t)
    result = analyze_spectrum(_recording(signal), CFG)
    assert result.status == Status.COMPLETE
    assert list(result.band_power) == list(CFG.band_names)
    assert result.dominant_band == "alpha"
    assert result.power_spectrum.shape == (3, result.freqs.size)
    assert result.freqs.max() <= CFG.spectral_freq_range[1]


def test_spectrum_failed_channel_keeps_band_keys():
    signal = np.random.default_rng(2).standard_normal((3, int(10 * SFREQ)))
    signal[1] = np.nan
    with pytest.warns(UserWarning):
        result = analyze_spectrum(_recording(signal), CFG)
    assert list(result.band_power) == list(CFG.band_names)
    assert np.all(np.isnan(result.power_spectrum[1]))
    assert np.isnan(result.slope_by_channel[1])
    assert np.isfinite(result.aperiodic_slope)


def test_spectrum_empty_signal_returns_empty_result():
    with pytest.warns(UserWarning):
        result = analyze_spectrum(_recording(np.empty((0, 0))), CFG)
    assert result.status == Status.FAILED
    assert list(result.band_power) == list(CFG.band_names)
    assert np.isnan(result.aperiodic_slope)


def test_brown_noise_slope_near_two():
    rng = np.random.default_rng(3)
    signal = np.cumsum(rng.standard_normal((2, int(60 * SFREQ))), axis=1)
    result = analyze_spectrum(_recording(signal), CFG)
    assert 1.5 < result.aperiodic_slope < 2.5


# ---------------------------------------------------------------------------
# connectivity
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def coherent_connectivity():
    rec = make_synthetic_recording(
        CFG, n_channels=4, sfreq=SFREQ, duration=10.0, n_trials=0, coherent_spans=((0.0, 10.0),)
    )
    return analyze_connectivity(rec, CFG)


def test_connectivity_matrices_symmetric_and_bounded(coherent_connectivity):
    assert list(coherent_connectivity.plv_by_band) == list(CFG.connectivity_bands)
    for band in CFG.connectivity_bands:
        for matrix in (coherent_connectivity.plv_by_band[band], coherent_connectivity.wpli_by_band[band]):
            assert matrix.shape == (4, 4)
            np.testing.assert_allclose(matrix, matrix.T)
            assert np.all((matrix >= 0) & (matrix <= 1))
            np.testing.assert_array_equal(np.diag(matrix), 0.0)


def test_shared_theta_gives_high_plv(coherent_connectivity):
    theta = coherent_connectivity.plv_by_band["theta"]
    assert theta[np.triu_indices(4, k=1)].min() > 0.9


def test_wpli_for_constant_quarter_cycle_lag():
    phase = 2 * np.pi * 6 * np.arange(2000) / SFREQ
    analytic = np.vstack([np.exp(1j * phase), np.exp(1j * (phase - np.pi / 2))])
    np.testing.assert_allclose(wpli_matrix(analytic)[0, 1], 1.0)


def test_mean_pairwise_plv_single_channel_is_nan():
    assert np.isnan(mean_pairwise_plv(np.zeros((1, 100))))


def test_connectivity_empty_result_shapes():
    empty = ConnectivityResult.empty(CFG.connectivity_bands, n_channels=3)
    assert empty.status == Status.FAILED
    assert empty.plv_by_band["theta"].shape == (3, 3)


@pytest.fixture(scope="module")
def recording_with_nan_channel():
    """(clean 2-channel recording, same channels plus a third with one NaN sample)."""
    rec = make_synthetic_recording(
        CFG, n_channels=3, sfreq=SFREQ, duration=20.0, n_trials=0,
        coherent_spans=((5.0, 15.0),), pac_strength=2.0,
    )
    dirty = rec.signal.copy()
    dirty[2, 500] = np.nan
    return _recording(rec.signal[:2].copy()), _recording(dirty)


def test_nan_channel_leaves_other_pairs_unchanged(recording_with_nan_channel):
    clean, dirty = recording_with_nan_channel
    a = analyze_connectivity(clean, CFG)
    b = analyze_connectivity(dirty, CFG)
    for band in CFG.connectivity_bands:
        np.testing.assert_allclose(b.plv_by_band[band][0, 1], a.plv_by_band[band][0, 1], atol=1e-12)
        np.testing.assert_allclose(b.wpli_by_band[band][0, 1], a.wpli_by_band[band][0, 1], atol=1e-12)
        assert np.isnan(b.plv_by_band[band][0, 2])


# ---------------------------------------------------------------------------
# phase-amplitude coupling
# ---------------------------------------------------------------------------

def test_designed_coupling_gives_mi_near_one():
    n_bins = 18
    phase = np.tile(np.linspace(-np.pi, np.pi, 180, endpoint=False), 20)
    amplitude = (phase_bin_indices(phase, n_bins) == 0).astype(float)
    assert modulation_index(phase, amplitude, n_bins) > 0.99


def test_uniform_amplitude_gives_zero_mi():
    phase = np.tile(np.linspace(-np.pi, np.pi, 180, endpoint=False), 20)
    assert modulation_index(phase, np.ones_like(phase)) == pytest.approx(0.0, abs=1e-10)


def test_modulation_index_needs_min_samples():
    assert np.isnan(modulation_index(np.zeros(50), np.ones(50), min_samples=100))


def test_null_p_values_roughly_uniform():
    rng = np.random.default_rng(4)
    p_values = []
    for _ in range(30):
        phase = rng.uniform(-np.pi, np.pi, 2000)
        amplitude = np.abs(rng.standard_normal(2000))
        mi = modulation_index(phase, amplitude)
        surrogates = surrogate_modulation_indices(phase, amplitude, 18, 99, rng)
        p_values.append(permutation_p_value(mi, surrogates))
    assert 0.3 < np.mean(p_values) < 0.7


def test_analyze_pac_detects_designed_coupling():
    rec = make_synthetic_recording(
        CFG, n_channels=4, sfreq=SFREQ, duration=20.0, n_trials=0,
        coherent_spans=((0.0, 20.0),), pac_strength=4.0,
    )
    result = analyze_pac(rec, CFG)
    assert result.status == Status.COMPLETE
    assert result.surrogates.shape == (4, CFG.pac_surrogate_n)
    assert result.mean_amp_by_phase.shape == (4, CFG.pac_n_bins)
    assert result.phase_bin_edges.size == CFG.pac_n_bins + 1
    assert result.n_significant == 4
    assert result.mean_mi > 0.01
    assert np.all(result.z_scores > 2)


def test_analyze_pac_is_reproducible():
    rec = make_synthetic_recording(CFG, n_channels=2, sfreq=SFREQ, duration=5.0, n_trials=0)
    a = analyze_pac(rec, CFG)
    b = analyze_pac(rec, CFG)
    np.testing.assert_array_equal(a.p_values, b.p_values)


def test_pac_nan_channel_leaves_other_channels_unchanged(recording_with_nan_channel):
    clean, dirty = recording_with_nan_channel
    a = analyze_pac(clean, CFG)
    with pytest.warns(UserWarning):
        b = analyze_pac(dirty, CFG)
    np.testing.assert_allclose(b.modulation_index[:2], a.modulation_index)
    assert np.isnan(b.modulation_index[2])
    assert b.p_values[2] == 1.0


# ---------------------------------------------------------------------------
# ERP
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def erp_trials():
    rec = make_synthetic_recording(CFG, n_channels=3, sfreq=SFREQ, n_trials=8)
    return segment_trials(rec, CFG.trial_window)


def test_erp_shapes_and_components(erp_trials):
    result = analyze_erp(erp_trials, CFG)
    assert result.status == Status.COMPLETE
    assert result.n_trials == 8
    assert result.erp.shape == (3, result.time.size)
    assert result.erp_sem.shape == result.erp.shape
    assert CFG.erp_n2_window[0] <= result.n2_latency <= CFG.erp_n2_window[1]
    assert CFG.erp_p3b_window[0] <= result.p3b_latency <= CFG.erp_p3b_window[1]


def test_erp_is_baseline_corrected(erp_trials):
    result = analyze_erp(erp_trials, CFG)
    baseline = (result.time >= CFG.erp_baseline[0]) & (result.time <= CFG.erp_baseline[1])
    np.testing.assert_allclose(result.erp[:, baseline].mean(axis=1), 0.0, atol=1e-8)


def test_erp_condition_averages(erp_trials):
    result = analyze_erp(erp_trials, CFG)
    assert {"setsize_4", "setsize_6", "setsize_8"} <= set(result.erp_by_condition)
    assert all(v.shape == result.erp.shape for v in result.erp_by_condition.values())


def test_erp_correct_error_accepts_string_labels(erp_trials):
    numeric = erp_trials.labels.assign(correct=[1, 0] * 4)
    words = erp_trials.labels.assign(correct=["correct", "error"] * 4)
    a = analyze_erp(TrialSet(trials=erp_trials.trials, labels=numeric, sfreq=erp_trials.sfreq), CFG)
    b = analyze_erp(TrialSet(trials=erp_trials.trials, labels=words, sfreq=erp_trials.sfreq), CFG)
    assert {"correct", "error"} <= set(b.erp_by_condition)
    np.testing.assert_allclose(b.erp_by_condition["correct"], a.erp_by_condition["correct"])
    np.testing.assert_allclose(b.erp_by_condition["error"], a.erp_by_condition["error"])


def test_erp_drops_ragged_trials(erp_trials):
    short = Trial(signal=erp_trials.trials[0].signal[:, :100], time=erp_trials.trials[0].time[:100], onset_sample=0)
    ragged = TrialSet(trials=erp_trials.trials + (short,), labels=pd.concat(
        [erp_trials.labels, erp_trials.labels.iloc[:1]], ignore_index=True), sfreq=erp_trials.sfreq)
    assert analyze_erp(ragged, CFG).n_trials == 8


def test_erp_too_few_trials(erp_trials):
    few = TrialSet(trials=erp_trials.trials[:3], labels=erp_trials.labels.iloc[:3], sfreq=erp_trials.sfreq)
    with pytest.warns(UserWarning):
        result = analyze_erp(few, CFG)
    assert result.status == Status.FAILED
    assert result.n_trials == 0
    assert np.isnan(result.n2_latency)


# ---------------------------------------------------------------------------
# energy budget
# ---------------------------------------------------------------------------

def _spectral_with(band_power):
    spectral = SpectralResult.empty(CFG.band_names, n_channels=2)
    spectral.band_power = {k: np.asarray(v, dtype=float) for k, v in band_power.items()}
    return spectral


BAND_POWER = {
    "delta": [1.0, 1.0],
    "theta": [0.4, 0.4],
    "alpha": [0.3, 0.3],
    "beta": [0.2, 0.2],
    "gamma_low": [0.1, 0.1],
    "gamma_high": [0.1, 0.1],
}


def test_energy_within_budget():
    result = compute_energy_budget(_spectral_with(BAND_POWER), CFG)
    assert (result.E, result.P, result.C) == pytest.approx((0.5, 0.2, 0.4))
    assert result.spiking_cost == pytest.approx(0.378)
    assert result.synaptic_cost == pytest.approx(0.275)
    assert result.gamma_cost == pytest.approx(0.06)
    assert result.total_energy == pytest.approx(0.713)
    assert result.within_budget
    assert result.violation == 0.0
    assert result.lagrange_multiplier == 0.0
    assert result.utilisation == pytest.approx(71.3)
    assert sum(result.breakdown.values()) == pytest.approx(100.0)


def test_energy_over_budget_correction():
    power = dict(BAND_POWER, alpha=[1.0, 1.0], beta=[1.0, 1.0])
    result = compute_energy_budget(_spectral_with(power), CFG)
    assert result.total_energy == pytest.approx(6.788)
    assert not result.within_budget
    assert result.violation == pytest.approx(5.788)
    assert result.lagrange_multiplier == pytest.approx(CFG.energy_eta * 5.788)
    again = compute_energy_budget(_spectral_with(power), CFG)
    assert again.lagrange_multiplier == result.lagrange_multiplier


def test_energy_tolerance_band():
    # total just above cap but inside the tolerance
    result = compute_energy_budget(_spectral_with(BAND_POWER), replace(CFG, energy_caps=(("wake", 0.70),)))
    assert result.within_budget
    assert result.violation == pytest.approx(0.013)
    assert result.lagrange_multiplier == 0.0


def test_energy_state_cap():
    result = compute_energy_budget(_spectral_with(BAND_POWER), CFG, state="task_high")
    assert result.cap == 1.05
    with pytest.warns(UserWarning):
        fallback = compute_energy_budget(_spectral_with(BAND_POWER), CFG, state="dreaming")
    assert fallback.state == CFG.energy_state


def test_energy_missing_bands_use_defaults():
    with pytest.warns(UserWarning):
        result = compute_energy_budget(SpectralResult.empty(CFG.band_names, n_channels=2), CFG)
    assert (result.E, result.P, result.C) == CFG.energy_default_proxies
    assert result.total_energy == pytest.approx(2.5)
    assert result.status == Status.COMPLETE


def test_energy_gamma_low_only():
    power = {k: v for k, v in BAND_POWER.items() if k != "gamma_high"}
    result = compute_energy_budget(_spectral_with(power), CFG)
    assert result.P == pytest.approx(0.1)
