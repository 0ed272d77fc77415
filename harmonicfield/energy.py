"""Metabolic cost estimate from band-power proxies, checked against a state-dependent cap."""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from .config import HarmonicFieldConfig, Status
from .spectral import SpectralResult


@dataclass
class EnergyResult:
    E: float                        # pyramidal proxy (alpha + beta)
    P: float                        # fast-inhibitory proxy (gamma)
    C: float                        # slow-inhibitory proxy (theta)
    spiking_cost: float
    synaptic_cost: float
    gamma_cost: float
    total_energy: float
    state: str
    cap: float
    within_budget: bool
    violation: float                # max(0, total - cap)
    lagrange_multiplier: float      # eta * violation when over budget, else 0
    utilisation: float              # percent of cap
    breakdown: Dict[str, float]     # percent of total per cost term
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, cfg: HarmonicFieldConfig) -> "EnergyResult":
        return cls(
            E=np.nan,
            P=np.nan,
            C=np.nan,
            spiking_cost=np.nan,
            synaptic_cost=np.nan,
            gamma_cost=np.nan,
            total_energy=np.nan,
            state=cfg.energy_state,
            cap=cfg.energy_cap,
            within_budget=False,
            violation=np.nan,
            lagrange_multiplier=0.0,
            utilisation=np.nan,
            breakdown={"spiking": np.nan, "synaptic": np.nan, "gamma": np.nan},
            status=Status.FAILED,
        )


def _proxy(band_power: Dict[str, np.ndarray], names: Sequence[str]) -> float:
    """Channel mean of the summed band powers; NaN if any band is missing or all-NaN."""
    if any(name not in band_power for name in names):
        return np.nan
    summed = np.sum([np.asarray(band_power[name], dtype=float) for name in names], axis=0)
    if summed.size == 0 or not np.any(np.isfinite(summed)):
        return np.nan
    return float(np.nanmean(summed))


def extract_proxies(spectral: Optional[SpectralResult], cfg: HarmonicFieldConfig) -> Tuple[float, float, float]:
    """
    (E, P, C) from spectral band power.

    P uses gamma_low + gamma_high, or gamma_low alone when gamma_high is
    unavailable. Any proxy that cannot be computed falls back to
    ``cfg.energy_default_proxies`` with a warning.
    """
    default_e, default_p, default_c = cfg.energy_default_proxies
    band_power = spectral.band_power if spectral is not None else {}

    e = _proxy(band_power, ("alpha", "beta"))
    p = _proxy(band_power, ("gamma_low", "gamma_high"))
    if np.isnan(p):
        p = _proxy(band_power, ("gamma_low",))
    c = _proxy(band_power, ("theta",))

    if np.isnan(e):
        warnings.warn(f"Alpha/beta power unavailable; using default E={default_e}.")
        e = default_e
    if np.isnan(p):
        warnings.warn(f"Gamma power unavailable; using default P={default_p}.")
        p = default_p
    if np.isnan(c):
        warnings.warn(f"Theta power unavailable; using default C={default_c}.")
        c = default_c
    return e, p, c


def energy_costs(e: float, p: float, c: float, cfg: HarmonicFieldConfig) -> Tuple[float, float, float]:
    """(spiking, synaptic, gamma) cost terms."""
    spiking = cfg.energy_c_e * e ** 2 + cfg.energy_c_p * p ** 2 + cfg.energy_c_c * c ** 2
    synaptic = cfg.energy_c_syn * (e ** 2 + p * e + c * e)
    gamma = cfg.energy_c_gamma * p
    return spiking, synaptic, gamma


def compute_energy_budget(
    spectral: Optional[SpectralResult],
    cfg: HarmonicFieldConfig,
    state: Optional[str] = None,
) -> EnergyResult:
    """
    Total cost = spiking + synaptic + gamma-coordination, compared against
    the cap for ``state`` (``cfg.energy_state`` by default).

    Stateless: the correction term is recomputed from scratch on every call.
    """
    state = state or cfg.energy_state
    caps = dict(cfg.energy_caps)
    if state not in caps:
        warnings.warn(f"Unknown brain state '{state}'; using '{cfg.energy_state}'.")
        state = cfg.energy_state
    cap = caps[state]

    try:
        e, p, c = extract_proxies(spectral, cfg)
        spiking, synaptic, gamma = energy_costs(e, p, c, cfg)
    except (ValueError, TypeError) as err:
        warnings.warn(f"Energy budget failed: {err}")
        return EnergyResult.empty(cfg)

    total = spiking + synaptic + gamma
    within = total <= cap * (1.0 + cfg.energy_tolerance)
    violation = max(0.0, total - cap)

    if total > 0:
        breakdown = {
            "spiking": 100.0 * spiking / total,
            "synaptic": 100.0 * synaptic / total,
            "gamma": 100.0 * gamma / total,
        }
    else:
        breakdown = {"spiking": 0.0, "synaptic": 0.0, "gamma": 0.0}

    return EnergyResult(
        E=e,
        P=p,
        C=c,
        spiking_cost=spiking,
        synaptic_cost=synaptic,
        gamma_cost=gamma,
        total_energy=total,
        state=state,
        cap=cap,
        within_budget=bool(within),
        violation=violation,
        lagrange_multiplier=0.0 if within else cfg.energy_eta * violation,
        utilisation=100.0 * total / cap,
        breakdown=breakdown,
    )
