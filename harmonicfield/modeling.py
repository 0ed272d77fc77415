"""Cross-validated linear SVM decoding of working-memory task conditions."""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, confusion_matrix, mutual_info_score
from sklearn.model_selection import KFold, StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVC

from .config import HarmonicFieldConfig, Status
from .data_loader import TrialSet
from .features import extract_maintenance_features

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results containers
# ---------------------------------------------------------------------------

@dataclass
class DecodeResult:
    condition: str
    accuracy: float
    predictions: np.ndarray         # held-out prediction for every kept trial
    true_labels: np.ndarray
    test_fold: np.ndarray           # fold in which each trial was held out
    confusion_matrix: np.ndarray    # rows true, columns predicted, ordered as ``classes``
    per_class_accuracy: np.ndarray
    mutual_information: float       # bits
    n_trials: int
    n_classes: int
    classes: np.ndarray
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, condition: str) -> "DecodeResult":
        return cls(
            condition=condition,
            accuracy=np.nan,
            predictions=np.empty(0),
            true_labels=np.empty(0),
            test_fold=np.empty(0, dtype=int),
            confusion_matrix=np.empty((0, 0), dtype=int),
            per_class_accuracy=np.empty(0),
            mutual_information=np.nan,
            n_trials=0,
            n_classes=0,
            classes=np.empty(0),
            status=Status.FAILED,
        )


@dataclass
class DecoderResults:
    results: Dict[str, DecodeResult] = field(default_factory=dict)
    n_features: int = 0
    status: Status = Status.COMPLETE

    @classmethod
    def empty(cls, contrasts: Sequence[str]) -> "DecoderResults":
        return cls(results={c: DecodeResult.empty(c) for c in contrasts}, status=Status.FAILED)

    def __getitem__(self, condition: str) -> DecodeResult:
        return self.results[condition]

    def accuracies(self) -> Dict[str, float]:
        return {name: r.accuracy for name, r in self.results.items()}

    def summary(self) -> pd.DataFrame:
        """One row per contrast: accuracy, mutual information, trial/class counts and status."""
        cols = ["condition", "accuracy", "mutual_information", "n_trials", "n_classes", "status"]
        if not self.results:
            return pd.DataFrame(columns=cols)
        return pd.DataFrame(
            [
                {
                    "condition": r.condition,
                    "accuracy": r.accuracy,
                    "mutual_information": r.mutual_information,
                    "n_trials": r.n_trials,
                    "n_classes": r.n_classes,
                    "status": r.status.value,
                }
                for r in self.results.values()
            ],
            columns=cols,
        )


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

_TRUE_STRINGS = {"1", "true", "yes", "correct", "in"}
_FALSE_STRINGS = {"0", "false", "no", "error", "incorrect", "out"}


def _binary_label(value) -> float:
    if isinstance(value, (bool, np.bool_)):
        return float(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return 1.0
        if v in _FALSE_STRINGS:
            return 0.0
        return np.nan
    try:
        f = float(value)
    except (TypeError, ValueError):
        return np.nan
    return f if f in (0.0, 1.0) else np.nan


def normalize_labels(events: pd.DataFrame, contrast: str) -> np.ndarray:
    """
    Numeric labels for one contrast; invalid or missing entries become NaN.

    setsize -> numeric value, correct -> 0/1, match -> IN = 1 / OUT = 0.
    """
    column = events[contrast]
    if contrast == "setsize":
        return pd.to_numeric(column, errors="coerce").to_numpy(dtype=float)
    return np.array([_binary_label(v) for v in column], dtype=float)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def build_classifier(cfg: HarmonicFieldConfig) -> Pipeline:
    """StandardScaler -> linear-kernel SVC (L2-regularised, one-vs-one for > 2 classes)."""
    return Pipeline(
        [
            ("scaler", StandardScaler()),
            ("svm", SVC(kernel="linear", C=cfg.svm_C)),
        ]
    )


def _make_splitter(labels: np.ndarray, n_folds: int, seed: int):
    _, counts = np.unique(labels, return_counts=True)
    n_splits = min(n_folds, len(labels))
    if counts.min() >= n_splits:
        return StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)
    return KFold(n_splits=n_splits, shuffle=True, random_state=seed)


def decode_condition(
    features: np.ndarray,
    labels: np.ndarray,
    condition: str,
    cfg: HarmonicFieldConfig,
) -> DecodeResult:
    """
    K-fold cross-validated decoding of ``labels`` from ``features``.

    Trials with non-finite labels are dropped first. Every remaining trial is
    predicted exactly once, by a model that never saw it. Fewer than two
    classes (or fewer than two trials) gives ``DecodeResult.empty``.
    """
    features = np.asarray(features, dtype=float)
    labels = np.asarray(labels, dtype=float)
    valid = np.isfinite(labels)
    X, y = features[valid], labels[valid]

    classes = np.unique(y)
    if len(y) < 2 or len(classes) < 2:
        warnings.warn(f"Insufficient data for {condition} decoding ({len(y)} trials, {len(classes)} classes).")
        return DecodeResult.empty(condition)

    splitter = _make_splitter(y, cfg.cv_folds, cfg.random_seed)
    predictions = np.empty_like(y)
    test_fold = np.full(len(y), -1, dtype=int)

    for fold, (train_idx, test_idx) in enumerate(splitter.split(X, y)):
        test_fold[test_idx] = fold
        y_train = y[train_idx]
        if len(np.unique(y_train)) < 2:
            warnings.warn(f"Only one class in training fold {fold} for {condition}; predicting it.")
            predictions[test_idx] = y_train[0]
            continue
        try:
            clf = build_classifier(cfg)
            clf.fit(X[train_idx], y_train)
            predictions[test_idx] = clf.predict(X[test_idx])
        except ValueError as e:
            warnings.warn(f"Fold {fold} failed for {condition}: {e}; predicting the majority class.")
            values, counts = np.unique(y_train, return_counts=True)
            predictions[test_idx] = values[np.argmax(counts)]

    cm = confusion_matrix(y, predictions, labels=classes)
    class_totals = cm.sum(axis=1)
    per_class = np.divide(np.diag(cm), class_totals, out=np.zeros(len(classes)), where=class_totals > 0)

    result = DecodeResult(
        condition=condition,
        accuracy=float(accuracy_score(y, predictions)),
        predictions=predictions,
        true_labels=y,
        test_fold=test_fold,
        confusion_matrix=cm,
        per_class_accuracy=per_class,
        mutual_information=float(mutual_info_score(y, predictions) / np.log(2)),
        n_trials=len(y),
        n_classes=len(classes),
        classes=classes,
    )
    logger.debug("%s decoded: %.1f%% accuracy over %d trials", condition, 100 * result.accuracy, len(y))
    return result


def decode_all_conditions(
    trials: Optional[TrialSet],
    cfg: HarmonicFieldConfig,
) -> DecoderResults:
    """
    Extract maintenance-window features once, then decode every contrast in
    ``cfg.decoder_contrasts`` whose column is present in the trial labels.
    """
    contrasts = tuple(cfg.decoder_contrasts)
    if trials is None or len(trials) == 0:
        warnings.warn("No trials provided for decoding.")
        return DecoderResults.empty(contrasts)

    try:
        features = extract_maintenance_features(trials, cfg)
    except (ValueError, MemoryError) as e:
        warnings.warn(f"Feature extraction failed: {e}")
        return DecoderResults.empty(contrasts)

    events = trials.labels
    results: Dict[str, DecodeResult] = {}
    for contrast in contrasts:
        if contrast not in events.columns:
            warnings.warn(f"{contrast} decoding skipped: column not found in events.")
            results[contrast] = DecodeResult.empty(contrast)
            continue
        try:
            results[contrast] = decode_condition(features, normalize_labels(events, contrast), contrast, cfg)
        except ValueError as e:
            warnings.warn(f"{contrast} decoding failed: {e}")
            results[contrast] = DecodeResult.empty(contrast)

    return DecoderResults(results=results, n_features=features.shape[1])
