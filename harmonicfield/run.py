"""
Harmonic-field pipeline orchestrator.

Usage
-----
Synthetic smoke run:
  python -m harmonicfield.run --use-synthetic --output results/

BIDS dataset:
  python -m harmonicfield.run \\
      --data-root /path/to/bids \\
      --config    overrides.json \\
      --output    results/
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import warnings
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .config import ConfigError, HarmonicFieldConfig, load_config
from .data_loader import Recording, discover_subjects, load_subject_recording, make_synthetic_recording
from .pipeline import SubjectLoader, SubjectResult, process_single_subject
from .stats import (
    CrossValidationResult,
    GroupResults,
    aggregate_group_results,
    print_results_table,
    run_cross_validation,
)

warnings.filterwarnings("ignore", category=FutureWarning)
warnings.filterwarnings("ignore", category=RuntimeWarning, module="mne")

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False) -> None:
    """Timestamped console logging; analyzer warnings are routed through the ``py.warnings`` logger."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.captureWarnings(True)
    logging.getLogger("mne").setLevel(logging.WARNING)
    logging.getLogger("sklearn").setLevel(logging.WARNING)


class SyntheticLoader:
    """Picklable loader producing a synthetic recording for ``sub-NN`` ids."""

    def __init__(self, cfg: HarmonicFieldConfig, n_trials: int = 12, n_channels: int = 4):
        self.cfg = cfg
        self.n_trials = n_trials
        self.n_channels = n_channels

    def __call__(self, subject_id: str) -> Recording:
        index = int("".join(ch for ch in subject_id if ch.isdigit()) or 0)
        return make_synthetic_recording(
            self.cfg,
            n_channels=self.n_channels,
            n_trials=self.n_trials,
            coherent_spans=((10.0, 40.0), (60.0, 80.0)),
            pac_strength=2.0,
            seed=self.cfg.random_seed + index,
            subject_id=subject_id,
        )


def default_n_jobs(cfg: HarmonicFieldConfig) -> int:
    if cfg.n_jobs is not None:
        return max(1, cfg.n_jobs)
    return max(1, (os.cpu_count() or 1) - cfg.reserved_cores)


def run_pipeline(
    subject_ids: Sequence[str],
    cfg: HarmonicFieldConfig,
    loader: SubjectLoader,
    n_jobs: Optional[int] = None,
) -> Dict[str, SubjectResult]:
    """
    Process subjects independently across a worker pool.

    Returns results keyed by subject id; a failed subject appears with
    status ``failed`` and never stops its siblings.
    """
    n_jobs = n_jobs or default_n_jobs(cfg)
    logger.info("Processing %d subject(s) with %d worker(s)", len(subject_ids), n_jobs)

    if n_jobs == 1:
        results = [process_single_subject(sid, cfg, loader) for sid in subject_ids]
    else:
        results = Parallel(n_jobs=n_jobs)(
            delayed(process_single_subject)(sid, cfg, loader) for sid in subject_ids
        )

    by_subject = {r.subject_id: r for r in results}
    n_ok = sum(r.is_complete for r in results)
    logger.info("Finished: %d succeeded, %d failed", n_ok, len(results) - n_ok)
    return by_subject


def write_error_records(results: Dict[str, SubjectResult], output_dir: Path) -> List[Path]:
    """One ``error_<subject>.txt`` per failed subject."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for sid, r in sorted(results.items()):
        if r.error is None:
            continue
        path = output_dir / f"error_{sid}.txt"
        with open(path, "w") as fh:
            fh.write(f"Subject: {sid}\n")
            fh.write(f"Time: {r.error['timestamp']}\n")
            fh.write(f"Error: {r.error['type']}: {r.error['message']}\n\n")
            fh.write(r.error["traceback"])
        written.append(path)
    return written


def export_results(
    results: Dict[str, SubjectResult],
    group: GroupResults,
    validation: CrossValidationResult,
    output_dir: Path,
) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)

    pd.DataFrame([results[sid].summary_row() for sid in sorted(results)]).to_csv(
        output_dir / "subject_summary.csv", index=False
    )
    group.summary().to_csv(output_dir / "group_summary.csv", index=False)

    cv = validation.to_dict()
    # JSON has no NaN
    cv = {k: (None if isinstance(v, float) and np.isnan(v) else v) for k, v in cv.items()}
    with open(output_dir / "cross_validation.json", "w") as fh:
        json.dump(cv, fh, indent=2)

    write_error_records(results, output_dir / "errors")
    logger.info("Results saved to: %s", output_dir.resolve())


def main(
    data_root: Optional[str] = None,
    config_path: Optional[str] = None,
    output_dir: str = "results",
    subjects: Optional[Sequence[str]] = None,
    use_synthetic: bool = False,
    n_synthetic_subjects: int = 3,
    n_synthetic_trials: int = 12,
    n_jobs: Optional[int] = None,
) -> Dict[str, SubjectResult]:
    cfg = load_config(config_path)

    logger.info("=" * 55)
    logger.info("  Harmonic-field iEEG pipeline")
    logger.info("=" * 55)

    if use_synthetic:
        logger.info("Mode: SYNTHETIC (%d subjects, %d trials each)", n_synthetic_subjects, n_synthetic_trials)
        subject_ids = [f"sub-{i + 1:02d}" for i in range(n_synthetic_subjects)]
        loader: SubjectLoader = SyntheticLoader(cfg, n_trials=n_synthetic_trials)
    elif data_root:
        logger.info("Mode: BIDS at %s", data_root)
        subject_ids = list(subjects) if subjects else discover_subjects(data_root)
        if not subject_ids:
            raise FileNotFoundError(f"No sub-* directories found under {data_root}")
        loader = partial(load_subject_recording, data_root)
    else:
        raise ValueError("Provide --use-synthetic or --data-root")

    results = run_pipeline(subject_ids, cfg, loader, n_jobs=n_jobs)
    group = aggregate_group_results(results)
    validation = run_cross_validation(results, cfg)

    print_results_table(group, validation)
    export_results(results, group, validation, Path(output_dir))
    return results


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def cli_main() -> None:
    parser = argparse.ArgumentParser(
        description="Harmonic-field iEEG analysis pipeline",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--data-root", help="BIDS dataset root containing sub-* directories")
    parser.add_argument("--config", dest="config_path", help="JSON file with configuration overrides")
    parser.add_argument("--output", default="results", help="Output directory")
    parser.add_argument("--subjects", nargs="+", help="Subset of subject ids to process")
    parser.add_argument("--use-synthetic", action="store_true", help="Run with synthetic data")
    parser.add_argument("--n-subjects", type=int, default=3, help="Number of synthetic subjects")
    parser.add_argument("--n-trials", type=int, default=12, help="Trials per synthetic subject")
    parser.add_argument("--n-jobs", type=int, default=None, help="Worker count (default: cores minus reserve)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    setup_logging(args.debug)
    try:
        main(
            data_root=args.data_root,
            config_path=args.config_path,
            output_dir=args.output,
            subjects=args.subjects,
            use_synthetic=args.use_synthetic,
            n_synthetic_subjects=args.n_subjects,
            n_synthetic_trials=args.n_trials,
            n_jobs=args.n_jobs,
        )
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)


if __name__ == "__main__":
    cli_main()
