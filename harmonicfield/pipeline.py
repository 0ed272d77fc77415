"""Per-subject processing: load, segment, then run every analysis stage in a fixed order."""
from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import numpy as np

from .access import AccessResult, detect_access
from .config import HarmonicFieldConfig, Status
from .connectivity import ConnectivityResult, analyze_connectivity
from .data_loader import Recording, segment_trials
from .energy import EnergyResult, compute_energy_budget
from .erp import ERPResult, analyze_erp
from .modeling import DecoderResults, decode_all_conditions
from .pac import PACResult, analyze_pac
from .spectral import SpectralResult, analyze_spectrum

logger = logging.getLogger(__name__)

SubjectLoader = Callable[[str], Recording]


@dataclass
class SubjectResult:
    subject_id: str
    status: Status = Status.PROCESSING
    session_id: str = ""
    data_info: Dict[str, float] = field(default_factory=dict)
    spectral: Optional[SpectralResult] = None
    connectivity: Optional[ConnectivityResult] = None
    pac: Optional[PACResult] = None
    erp: Optional[ERPResult] = None
    access: Optional[AccessResult] = None
    energy: Optional[EnergyResult] = None
    decoder: Optional[DecoderResults] = None
    error: Optional[Dict[str, str]] = None      # message, type, timestamp, traceback

    @property
    def is_complete(self) -> bool:
        """Eligible for group statistics."""
        return (
            self.status == Status.COMPLETE
            and self.spectral is not None
            and self.connectivity is not None
            and self.pac is not None
        )

    def summary_row(self) -> dict:
        """Flat per-subject scalars for tabular export."""
        row = {"subject_id": self.subject_id, "status": self.status.value, "session_id": self.session_id}
        row.update(self.data_info)
        if self.spectral is not None:
            row["aperiodic_slope"] = self.spectral.aperiodic_slope
            row["dominant_band"] = self.spectral.dominant_band
        if self.pac is not None:
            row["pac_mean_mi"] = self.pac.mean_mi
            row["pac_n_significant"] = self.pac.n_significant
        if self.erp is not None:
            row["n2_latency"] = self.erp.n2_latency
            row["p3b_latency"] = self.erp.p3b_latency
        if self.access is not None:
            row["access_n_events"] = self.access.n_events
            row["access_proportion"] = self.access.access_proportion
        if self.energy is not None:
            row["energy_total"] = self.energy.total_energy
            row["energy_within_budget"] = self.energy.within_budget
        if self.decoder is not None:
            for name, acc in self.decoder.accuracies().items():
                row[f"{name}_accuracy"] = acc
        if self.error is not None:
            row["error"] = self.error["message"]
        return row


def _error_record(exc: BaseException) -> Dict[str, str]:
    return {
        "message": str(exc),
        "type": type(exc).__name__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def process_single_subject(
    subject_id: str,
    cfg: HarmonicFieldConfig,
    loader: SubjectLoader,
) -> SubjectResult:
    """
    Run one subject through every stage.

    Stage order: load/segment -> spectral -> connectivity -> PAC -> ERP ->
    access detection -> energy budget -> decoding. Analyzers contain their
    own failures; anything that still escapes (typically loading, or a
    recording without events) marks the subject ``failed`` and is recorded
    in ``SubjectResult.error`` instead of being raised.
    """
    result = SubjectResult(subject_id=subject_id)
    logger.info("Processing %s", subject_id)

    try:
        recording = loader(subject_id)
        trials = segment_trials(recording, cfg.trial_window)
        if len(trials) == 0:
            raise ValueError(f"No trials found for {subject_id}")

        result.session_id = recording.session_id
        result.data_info = {
            "n_channels": recording.n_channels,
            "sfreq": recording.sfreq,
            "n_trials": len(trials),
            "duration": recording.duration,
        }
        logger.info("  %s loaded: %d channels, %d trials", subject_id, recording.n_channels, len(trials))

        result.spectral = analyze_spectrum(recording, cfg)
        result.connectivity = analyze_connectivity(recording, cfg)
        result.pac = analyze_pac(recording, cfg)
        result.erp = analyze_erp(trials, cfg)
        result.access = detect_access(recording, result.spectral, result.connectivity, cfg)
        logger.info("  %s access windows: %d", subject_id, result.access.n_events)
        result.energy = compute_energy_budget(result.spectral, cfg)
        result.decoder = decode_all_conditions(trials, cfg)
        for name, acc in result.decoder.accuracies().items():
            logger.info("  %s %s accuracy: %s", subject_id, name, "n/a" if np.isnan(acc) else f"{100 * acc:.1f}%")

        result.status = Status.COMPLETE
    except Exception as e:
        result.status = Status.FAILED
        result.error = _error_record(e)
        logger.error("Subject %s failed: %s", subject_id, e)

    return result
