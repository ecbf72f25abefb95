"""End-to-end alignment of one dataset.

scan -> extract peaks -> cluster (or bin) -> match -> build matrix -> filter,
with optional persistence into a content-addressed run directory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .checkpoint import (
    KEY_LENGTH,
    checkpoint_dir,
    checkpoint_key,
    dump_spectra,
    is_complete,
    write_manifest,
)
from .clustering import ClusterResult, bin_masses, cluster_masses
from .config import AlignConfig
from .dataset import (
    Dataset,
    ExtractionReport,
    PeakTable,
    extract_peaks,
    list_spectrum_files,
    scan_dataset,
    spectra_frame,
)
from .filters import FilterResult, apply_filters
from .matching import match_peaks
from .matrix import AlignedMatrix, build_matrix
from .msi_utils import SpectrumSchema, load_background


logger = logging.getLogger(__name__)

ALL_CENTROIDS_FILE = "all_centroids.csv"
FILTER_REPORT_FILE = "filter_report.csv"


@dataclass
class AlignmentResult:
    dataset: Dataset
    peaks: PeakTable
    clusters: ClusterResult
    unfiltered: AlignedMatrix
    filtered: FilterResult
    extraction: ExtractionReport
    config: AlignConfig
    background: Optional[np.ndarray] = None

    @property
    def matrix(self) -> AlignedMatrix:
        return self.filtered.matrix

    def summary(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset.name,
            "n_files": int(self.extraction.n_files),
            "n_failed_files": int(self.extraction.n_failed),
            "n_pixels": int(self.dataset.n_pixels),
            "n_peaks": int(len(self.peaks)),
            "n_centroids": int(self.clusters.n_centroids),
            "n_features": int(self.matrix.n_features),
            "n_background_masses": int(self.background.size) if self.background is not None else 0,
        }

    def save(self, run_dir: Path, *, run_id: str = "", command: str = "align", extra: Optional[Dict[str, Any]] = None) -> Path:
        """Persist the run; the manifest is written last and marks the run complete."""
        from . import __version__

        run_dir = Path(run_dir)
        run_dir.mkdir(parents=True, exist_ok=True)
        self.matrix.save(run_dir)
        self.clusters.to_frame().to_csv(run_dir / ALL_CENTROIDS_FILE, index=False)
        self.filtered.report.to_csv(run_dir / FILTER_REPORT_FILE, index=False)
        dump_spectra(run_dir, spectra_frame(self.dataset.pixels))

        payload: Dict[str, Any] = {
            "command": command,
            "msi_align_version": __version__,
            "run_id": run_id or run_dir.name,
            "config": self.config.to_dict(),
            "failures": [{"path": p, "error": e} for p, e in self.extraction.failures],
        }
        payload.update(self.summary())
        if extra:
            payload.update(extra)
        return write_manifest(run_dir, payload)


def align_spectra(
    dataset: Dataset,
    config: Optional[AlignConfig] = None,
    *,
    background: Optional[Sequence[float]] = None,
    extraction: Optional[ExtractionReport] = None,
) -> AlignmentResult:
    """Align an in-memory dataset."""
    cfg = (config or AlignConfig()).validate()
    peaks = extract_peaks(dataset)
    bg = None if background is None else np.sort(np.asarray(background, dtype=float).ravel())
    extra = bg if (bg is not None and cfg.inject_background) else None

    if cfg.peak_alignment_method == "clustering":
        clusters = cluster_masses(
            peaks.mz,
            cfg.clust_h,
            linkage_method=cfg.linkage,
            centroid=cfg.centroid_method,
            extra_masses=extra,
        )
        tolerance = float(cfg.clust_h)
    else:
        clusters = bin_masses(peaks.mz, cfg.bin_width, mz_range=cfg.mass_range, extra_masses=extra)
        tolerance = float(cfg.bin_width) / 2.0
    logger.info(
        "%s: %d peaks from %d pixels -> %d centroids (%s, h=%g)",
        dataset.name,
        len(peaks),
        dataset.n_pixels,
        clusters.n_centroids,
        clusters.method,
        clusters.height,
    )

    triplets = match_peaks(peaks, clusters, cfg.aggregation_mode)
    unfiltered = build_matrix(triplets, clusters, dataset, decimals=cfg.label_decimals)
    filtered = apply_filters(
        unfiltered,
        mass_range=cfg.mass_range,
        prevalence_fraction=cfg.prevalence_fraction,
        background=bg,
        background_tolerance=tolerance,
        linked_mz=clusters.extra_centroids() if extra is not None else None,
    )
    if filtered.matrix.n_features == 0:
        logger.warning("%s: no columns left after filtering", dataset.name)

    if extraction is None:
        extraction = ExtractionReport(n_files=0, n_pixels=dataset.n_pixels)
    return AlignmentResult(
        dataset=dataset,
        peaks=peaks,
        clusters=clusters,
        unfiltered=unfiltered,
        filtered=filtered,
        extraction=extraction,
        config=cfg,
        background=bg,
    )


def _schema(cfg: AlignConfig) -> SpectrumSchema:
    return SpectrumSchema(mz_col=cfg.mz_col, intensity_col=cfg.intensity_col, scan_col=cfg.scan_col or None)


def align_dataset(root: Path, config: Optional[AlignConfig] = None, *, name: Optional[str] = None) -> AlignmentResult:
    """Load a class-per-subdirectory dataset from disk and align it.

    Files that fail to load are skipped and reported (unless `config.strict`);
    if every file fails a RuntimeError lists the failures.
    """
    cfg = (config or AlignConfig()).validate()
    dataset, report = scan_dataset(
        Path(root),
        schema=_schema(cfg),
        n_jobs=cfg.n_jobs,
        strict=cfg.strict,
        name=name,
    )
    if report.n_files and report.n_failed == report.n_files:
        details = "; ".join(f"{p}: {e}" for p, e in report.failures)
        raise RuntimeError(f"All {report.n_files} spectrum files under {root} failed to load: {details}")

    background = load_background(Path(cfg.background_file)) if cfg.background_file else None
    return align_spectra(dataset, cfg, background=background, extraction=report)


def run_alignment(
    root: Path,
    out_dir: Path,
    config: Optional[AlignConfig] = None,
    *,
    name: Optional[str] = None,
    force: bool = False,
) -> Tuple[Path, Optional[AlignmentResult]]:
    """Align `root` into a checkpoint directory under `out_dir`.

    Returns (run_dir, result); result is None when a complete checkpoint for the
    same inputs and config already existed and was reused.
    """
    cfg = (config or AlignConfig()).validate()
    root = Path(root)
    name = name or root.name
    files = [path for _, path in list_spectrum_files(root)]
    background = Path(cfg.background_file) if cfg.background_file else None
    key = checkpoint_key(files, cfg, root=root, background=background, name=name)
    run_dir = checkpoint_dir(out_dir, key)

    if is_complete(run_dir) and not force:
        logger.info("Reusing checkpoint %s for %s", run_dir, root)
        return run_dir, None

    result = align_dataset(root, cfg, name=name)
    result.save(run_dir, run_id=key[:KEY_LENGTH], extra={"root": str(root), "checkpoint_key": key})
    logger.info("Saved run %s (%d pixels x %d columns)", run_dir, result.matrix.n_pixels, result.matrix.n_features)
    return run_dir, result
