"""Group-level aggregation, pooled set-size validation and bootstrap confidence intervals."""
from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.metrics import confusion_matrix

from .config import HarmonicFieldConfig, Status
from .pipeline import SubjectResult

ResultsInput = Union[Mapping[str, SubjectResult], Iterable[SubjectResult]]


def _by_subject(results: ResultsInput) -> Dict[str, SubjectResult]:
    if isinstance(results, Mapping):
        return dict(results)
    return {r.subject_id: r for r in results}


def _mean_std(values: List[float]) -> Tuple[float, float, int]:
    arr = np.asarray(values, dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return np.nan, np.nan, 0
    std = float(arr.std(ddof=1)) if arr.size > 1 else 0.0
    return float(arr.mean()), std, int(arr.size)


def _stack_if_same_shape(arrays: List[np.ndarray]) -> Optional[np.ndarray]:
    if not arrays or any(a.shape != arrays[0].shape for a in arrays) or arrays[0].size == 0:
        return None
    return np.stack(arrays)


def _upper_mean(matrix: np.ndarray) -> float:
    n = matrix.shape[0]
    if n < 2:
        return np.nan
    values = matrix[np.triu_indices(n, k=1)]
    values = values[np.isfinite(values)]
    return float(values.mean()) if values.size else np.nan


# ---------------------------------------------------------------------------
# Group aggregation
# ---------------------------------------------------------------------------

@dataclass
class GroupResults:
    n_subjects: int
    subject_ids: List[str]
    failed_subjects: List[str]
    metrics: Dict[str, Tuple[float, float, int]] = field(default_factory=dict)   # name -> (mean, std, n)
    freqs: Optional[np.ndarray] = None
    mean_spectrum: Optional[np.ndarray] = None
    std_spectrum: Optional[np.ndarray] = None
    plv_by_band: Dict[str, np.ndarray] = field(default_factory=dict)             # band -> mean matrix
    wpli_by_band: Dict[str, np.ndarray] = field(default_factory=dict)

    def summary(self) -> pd.DataFrame:
        """One row per scalar metric with mean, std and the number of contributing subjects."""
        cols = ["metric", "mean", "std", "n"]
        if not self.metrics:
            return pd.DataFrame(columns=cols)
        return pd.DataFrame(
            [{"metric": k, "mean": m, "std": s, "n": n} for k, (m, s, n) in self.metrics.items()],
            columns=cols,
        )


def aggregate_group_results(results: ResultsInput) -> GroupResults:
    """
    Cross-subject means/stds over complete subjects only.

    A subject counts when its status is complete and it carries spectral,
    connectivity and PAC results; every other subject is listed in
    ``failed_subjects`` and contributes to no aggregate. Spectra and
    connectivity matrices are only averaged when every subject shares the
    same shape.
    """
    by_subject = _by_subject(results)
    included = sorted(sid for sid, r in by_subject.items() if r.is_complete)
    failed = sorted(sid for sid, r in by_subject.items() if not r.is_complete)
    group = GroupResults(n_subjects=len(included), subject_ids=included, failed_subjects=failed)
    if not included:
        warnings.warn("No complete subjects to aggregate.")
        return group

    subjects = [by_subject[sid] for sid in included]

    scalars: Dict[str, List[float]] = {
        "aperiodic_slope": [r.spectral.aperiodic_slope for r in subjects],
        "spectral_fit_quality": [r.spectral.fit_quality_mean for r in subjects],
        "pac_mean_mi": [r.pac.mean_mi for r in subjects],
        "pac_n_significant": [r.pac.n_significant for r in subjects],
    }
    for band in subjects[0].connectivity.bands:
        scalars[f"plv_{band}"] = [
            _upper_mean(r.connectivity.plv_by_band[band]) if band in r.connectivity.plv_by_band else np.nan
            for r in subjects
        ]
        scalars[f"wpli_{band}"] = [
            _upper_mean(r.connectivity.wpli_by_band[band]) if band in r.connectivity.wpli_by_band else np.nan
            for r in subjects
        ]
    scalars["access_n_events"] = [r.access.n_events if r.access is not None else np.nan for r in subjects]
    scalars["access_proportion"] = [r.access.access_proportion if r.access is not None else np.nan for r in subjects]
    scalars["energy_total"] = [r.energy.total_energy if r.energy is not None else np.nan for r in subjects]

    contrasts = sorted({c for r in subjects if r.decoder is not None for c in r.decoder.results})
    for contrast in contrasts:
        scalars[f"{contrast}_accuracy"] = [
            r.decoder.results[contrast].accuracy
            if r.decoder is not None and contrast in r.decoder.results
            else np.nan
            for r in subjects
        ]

    group.metrics = {name: _mean_std(values) for name, values in scalars.items()}

    spectra = _stack_if_same_shape([r.spectral.mean_spectrum for r in subjects])
    if spectra is not None:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            group.freqs = subjects[0].spectral.freqs
            group.mean_spectrum = np.nanmean(spectra, axis=0)
            group.std_spectrum = np.nanstd(spectra, axis=0)
    else:
        warnings.warn("Subject spectra differ in shape; group spectrum not computed.")

    for band in subjects[0].connectivity.bands:
        plv = _stack_if_same_shape([r.connectivity.plv_by_band.get(band, np.empty(0)) for r in subjects])
        wpli = _stack_if_same_shape([r.connectivity.wpli_by_band.get(band, np.empty(0)) for r in subjects])
        if plv is not None:
            group.plv_by_band[band] = plv.mean(axis=0)
        if wpli is not None:
            group.wpli_by_band[band] = wpli.mean(axis=0)

    return group


# ---------------------------------------------------------------------------
# Pooled validation
# ---------------------------------------------------------------------------

@dataclass
class CrossValidationResult:
    contrast: str
    accuracy: float
    confusion_matrix: np.ndarray
    classes: np.ndarray
    ci_lower: float
    ci_upper: float
    bootstrap_mean: float
    subject_accuracies: Dict[str, float]
    mean_subject_accuracy: float
    std_subject_accuracy: float
    n_subjects: int
    n_samples: int
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, contrast: str = "setsize") -> "CrossValidationResult":
        return cls(
            contrast=contrast,
            accuracy=np.nan,
            confusion_matrix=np.empty((0, 0), dtype=int),
            classes=np.empty(0),
            ci_lower=np.nan,
            ci_upper=np.nan,
            bootstrap_mean=np.nan,
            subject_accuracies={},
            mean_subject_accuracy=np.nan,
            std_subject_accuracy=np.nan,
            n_subjects=0,
            n_samples=0,
            status=Status.FAILED,
        )

    def to_dict(self) -> dict:
        return {
            "contrast": self.contrast,
            "accuracy": self.accuracy,
            "confusion_matrix": self.confusion_matrix.tolist(),
            "classes": self.classes.tolist(),
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "bootstrap_mean": self.bootstrap_mean,
            "subject_accuracies": self.subject_accuracies,
            "mean_subject_accuracy": self.mean_subject_accuracy,
            "std_subject_accuracy": self.std_subject_accuracy,
            "n_subjects": self.n_subjects,
            "n_samples": self.n_samples,
            "status": self.status.value,
        }


def bootstrap_accuracy_ci(
    correct: np.ndarray,
    n_bootstrap: int,
    confidence_level: float,
    rng: np.random.Generator,
) -> Tuple[float, float, float]:
    """(mean, lower, upper) of accuracy over ``n_bootstrap`` resamples with replacement."""
    correct = np.asarray(correct, dtype=float)
    if n_bootstrap <= 0 or correct.size == 0:
        return np.nan, np.nan, np.nan
    idx = rng.integers(0, correct.size, size=(n_bootstrap, correct.size))
    boot = correct[idx].mean(axis=1)
    tail = 100.0 * (1.0 - confidence_level) / 2.0
    lower, upper = np.percentile(boot, [tail, 100.0 - tail])
    return float(boot.mean()), float(lower), float(upper)


def run_cross_validation(
    results: ResultsInput,
    cfg: HarmonicFieldConfig,
    contrast: str = "setsize",
) -> CrossValidationResult:
    """
    Pool each subject's held-out ``contrast`` predictions and score them together.

    Subjects are pooled in sorted id order, so the outcome does not depend
    on processing order. Needs at least two subjects with a usable decoder
    result; otherwise the empty (NaN) result is returned.
    """
    by_subject = _by_subject(results)
    valid = []
    for sid in sorted(by_subject):
        r = by_subject[sid]
        if r.status != Status.COMPLETE or r.decoder is None or contrast not in r.decoder.results:
            continue
        decoded = r.decoder.results[contrast]
        if decoded.n_trials > 0 and np.isfinite(decoded.accuracy):
            valid.append((sid, decoded))

    if len(valid) < 2:
        warnings.warn(f"Need at least 2 subjects for cross-validation, got {len(valid)}.")
        return CrossValidationResult.empty(contrast)

    predictions = np.concatenate([d.predictions for _, d in valid])
    true_labels = np.concatenate([d.true_labels for _, d in valid])
    classes = np.unique(true_labels)
    correct = predictions == true_labels

    rng = np.random.default_rng(cfg.random_seed)
    boot_mean, lower, upper = bootstrap_accuracy_ci(correct, cfg.n_bootstrap, cfg.confidence_level, rng)
    subject_acc = {sid: float(d.accuracy) for sid, d in valid}
    accs = np.array(list(subject_acc.values()))

    return CrossValidationResult(
        contrast=contrast,
        accuracy=float(correct.mean()),
        confusion_matrix=confusion_matrix(true_labels, predictions, labels=classes),
        classes=classes,
        ci_lower=lower,
        ci_upper=upper,
        bootstrap_mean=boot_mean,
        subject_accuracies=subject_acc,
        mean_subject_accuracy=float(accs.mean()),
        std_subject_accuracy=float(accs.std(ddof=1)),
        n_subjects=len(valid),
        n_samples=int(correct.size),
    )


def print_results_table(group: GroupResults, validation: Optional[CrossValidationResult] = None) -> None:
    """Print a formatted summary table to stdout."""
    print("\n" + "=" * 60)
    print(f"GROUP RESULTS  ({group.n_subjects} complete, {len(group.failed_subjects)} failed)")
    print("=" * 60)
    print(group.summary().to_string(index=False, float_format=lambda x: f"{x:.3f}"))
    if group.failed_subjects:
        print(f"\nFailed subjects: {', '.join(group.failed_subjects)}")

    if validation is not None:
        print(f"\nPooled {validation.contrast} decoding:")
        if validation.status == Status.COMPLETE:
            print(
                f"  accuracy={validation.accuracy:.3f}  "
                f"CI=[{validation.ci_lower:.3f}, {validation.ci_upper:.3f}]  "
                f"subjects={validation.n_subjects}  samples={validation.n_samples}"
            )
            print(
                f"  per-subject: {validation.mean_subject_accuracy:.3f} ± {validation.std_subject_accuracy:.3f}"
            )
        else:
            print("  not enough subjects")
    print("=" * 60 + "\n")
