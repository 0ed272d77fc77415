"""HarmonicFieldConfig: single source of truth for all pipeline parameters."""
from __future__ import annotations

import json
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple


class ConfigError(ValueError):
    """Raised when the configuration is inconsistent; fatal to the whole run."""


class Status(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


DECODER_CONTRASTS = ("setsize", "correct", "match")

Band = Tuple[float, float]


@dataclass(frozen=True)
class HarmonicFieldConfig:
    # --- Frequency band registry (name, (low, high) Hz) ---
    bands: Tuple[Tuple[str, Band], ...] = (
        ("delta", (1.0, 4.0)),
        ("theta", (4.0, 8.0)),
        ("alpha", (8.0, 13.0)),
        ("beta", (13.0, 30.0)),
        ("gamma_low", (30.0, 50.0)),
        ("gamma_high", (50.0, 100.0)),
    )
    filter_order: int = 4

    # --- Spectral (Welch + aperiodic fit) ---
    spectral_freq_range: Band = (1.0, 200.0)
    welch_window: float = 4.0           # seconds
    welch_overlap: float = 0.5          # fraction of the window
    aperiodic_fit_range: Band = (1.0, 50.0)
    aperiodic_min_points: int = 10

    # --- Connectivity ---
    connectivity_bands: Tuple[str, ...] = ("theta", "alpha", "beta", "gamma_low")

    # --- Phase-amplitude coupling ---
    pac_phase_band: Band = (4.0, 7.0)
    pac_amp_band: Band = (50.0, 80.0)
    pac_n_bins: int = 18
    pac_surrogate_n: int = 200
    pac_min_samples: int = 100
    pac_alpha: float = 0.05

    # --- ERP ---
    erp_baseline: Band = (-0.2, 0.0)
    erp_filter: Band = (0.1, 40.0)
    erp_n2_window: Band = (0.2, 0.35)
    erp_p3b_window: Band = (0.3, 0.6)
    erp_min_trials: int = 5

    # --- Access detection (thresholds are PLV, durations in ms) ---
    coherence_band: str = "theta"
    coherence_window: float = 4.0       # seconds
    coherence_overlap: float = 0.5
    access_r_hi: float = 0.55
    access_r_lo: float = 0.45
    access_t_on: float = 30.0
    access_t_off: float = 20.0
    access_dwell_min: float = 100.0
    access_dwell_max: float = 300.0
    access_refractory: float = 60.0

    # --- Energy budget ---
    energy_c_e: float = 1.0             # pyramidal spiking cost
    energy_c_p: float = 0.8             # PV spiking cost
    energy_c_c: float = 0.6             # CCK spiking cost
    energy_c_syn: float = 0.5
    energy_c_gamma: float = 0.3
    energy_caps: Tuple[Tuple[str, float], ...] = (
        ("wake", 1.0),
        ("task_high", 1.05),
        ("task_low", 0.95),
    )
    energy_state: str = "wake"
    energy_eta: float = 0.01
    energy_tolerance: float = 0.02
    energy_default_proxies: Tuple[float, float, float] = (1.0, 0.5, 0.5)  # E, P, C

    # --- Task decoder ---
    decoder_contrasts: Tuple[str, ...] = DECODER_CONTRASTS
    trial_window: Band = (-0.5, 8.5)    # seconds around event onset
    maintenance_window: Band = (2.0, 6.0)
    cv_folds: int = 5
    svm_C: float = 1.0

    # --- Cross-validation / group statistics ---
    n_bootstrap: int = 2000
    confidence_level: float = 0.95

    # --- Compute ---
    n_jobs: Optional[int] = None        # None -> cpu_count - reserved_cores
    reserved_cores: int = 2

    # --- Reproducibility ---
    random_seed: int = 42

    @property
    def band_dict(self) -> Dict[str, Band]:
        return {name: (float(lo), float(hi)) for name, (lo, hi) in self.bands}

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.bands)

    def band(self, name: str) -> Band:
        try:
            return self.band_dict[name]
        except KeyError:
            raise ConfigError(f"Band '{name}' is not in the band registry {self.band_names}")

    @property
    def energy_cap(self) -> float:
        return dict(self.energy_caps)[self.energy_state]


def _check_interval(name: str, interval, allow_negative: bool = False) -> None:
    if len(interval) != 2:
        raise ConfigError(f"{name} must be a (low, high) pair, got {interval!r}")
    lo, hi = interval
    if not allow_negative and lo < 0:
        raise ConfigError(f"{name} low edge must be >= 0, got {lo}")
    if not lo < hi:
        raise ConfigError(f"{name} must satisfy low < high, got {interval!r}")


def validate_config(cfg: HarmonicFieldConfig) -> HarmonicFieldConfig:
    """Check cross-field consistency, raising ConfigError on the first problem."""
    names = cfg.band_names
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate band names in registry: {names}")
    for name, interval in cfg.bands:
        _check_interval(f"band '{name}'", interval)

    for name in cfg.connectivity_bands:
        if name not in names:
            raise ConfigError(f"Connectivity band '{name}' is not in the band registry {names}")
    if cfg.coherence_band not in names:
        raise ConfigError(f"Coherence band '{cfg.coherence_band}' is not in the band registry {names}")

    _check_interval("spectral_freq_range", cfg.spectral_freq_range)
    _check_interval("aperiodic_fit_range", cfg.aperiodic_fit_range)
    _check_interval("pac_phase_band", cfg.pac_phase_band)
    _check_interval("pac_amp_band", cfg.pac_amp_band)
    _check_interval("erp_filter", cfg.erp_filter)
    _check_interval("erp_baseline", cfg.erp_baseline, allow_negative=True)
    _check_interval("trial_window", cfg.trial_window, allow_negative=True)
    _check_interval("maintenance_window", cfg.maintenance_window, allow_negative=True)

    for label, value in (("welch_overlap", cfg.welch_overlap), ("coherence_overlap", cfg.coherence_overlap)):
        if not 0.0 <= value < 1.0:
            raise ConfigError(f"{label} must be in [0, 1), got {value}")
    if cfg.welch_window <= 0 or cfg.coherence_window <= 0:
        raise ConfigError("welch_window and coherence_window must be positive")

    if not cfg.access_r_lo < cfg.access_r_hi:
        raise ConfigError(
            f"access_r_lo ({cfg.access_r_lo}) must be below access_r_hi ({cfg.access_r_hi})"
        )
    if cfg.access_dwell_min > cfg.access_dwell_max:
        raise ConfigError("access_dwell_min must not exceed access_dwell_max")
    for label in ("access_t_on", "access_t_off", "access_dwell_min", "access_refractory"):
        if getattr(cfg, label) < 0:
            raise ConfigError(f"{label} must be >= 0")

    if cfg.energy_state not in dict(cfg.energy_caps):
        raise ConfigError(f"energy_state '{cfg.energy_state}' has no entry in energy_caps")

    unknown = set(cfg.decoder_contrasts) - set(DECODER_CONTRASTS)
    if unknown:
        raise ConfigError(f"Unknown decoder contrasts {sorted(unknown)}; known: {DECODER_CONTRASTS}")

    if cfg.cv_folds < 2:
        raise ConfigError("cv_folds must be >= 2")
    if cfg.pac_n_bins < 2 or cfg.pac_surrogate_n < 1:
        raise ConfigError("pac_n_bins must be >= 2 and pac_surrogate_n >= 1")
    if cfg.n_bootstrap < 0:
        raise ConfigError("n_bootstrap must be >= 0")
    if not 0.0 < cfg.confidence_level < 1.0:
        raise ConfigError("confidence_level must be in (0, 1)")
    return cfg


def _as_tuple(value):
    if isinstance(value, list):
        return tuple(_as_tuple(v) for v in value)
    return value


def config_from_dict(overrides: Mapping) -> HarmonicFieldConfig:
    """
    Build a validated config from a mapping of field overrides.

    JSON lists become tuples; ``bands`` and ``energy_caps`` may be given as
    objects (name -> value).
    """
    known = {f.name for f in fields(HarmonicFieldConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs = {}
    for key, value in overrides.items():
        if key in ("bands", "energy_caps") and isinstance(value, Mapping):
            value = tuple((name, _as_tuple(v)) for name, v in value.items())
        kwargs[key] = _as_tuple(value)
    return validate_config(HarmonicFieldConfig(**kwargs))


def load_config(path: Optional[str | Path] = None) -> HarmonicFieldConfig:
    """Load JSON overrides from *path*; defaults when *path* is None."""
    if path is None:
        return validate_config(HarmonicFieldConfig())
    with open(path, "r") as fh:
        try:
            overrides = json.load(fh)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Could not parse config file {path}: {e}")
    if not isinstance(overrides, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return config_from_dict(overrides)
