"""Dataset records and peak extraction.

A dataset root holds one subdirectory per class; each class directory holds
per-pixel peak-list files. Files are loaded in a joblib worker pool, one job
per file, and a failing file is reported without aborting the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .msi_utils import SPECTRUM_SUFFIXES, SpectrumSchema, read_spectrum_table, split_pixel_stem


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PixelSpectrum:
    sample: str
    scan: int
    class_label: str
    mz: np.ndarray
    intensity: np.ndarray
    source: str = ""

    @property
    def pixel_id(self) -> str:
        return f"{self.sample}.{self.scan}"

    @property
    def tic(self) -> float:
        return float(np.sum(self.intensity))

    @property
    def n_peaks(self) -> int:
        return int(self.mz.size)


@dataclass
class ClassGroup:
    name: str
    spectra: List[PixelSpectrum] = field(default_factory=list)


@dataclass
class Dataset:
    name: str
    classes: List[ClassGroup] = field(default_factory=list)
    _index: Optional[Dict[str, int]] = field(default=None, init=False, repr=False, compare=False)

    @property
    def pixels(self) -> List[PixelSpectrum]:
        return [px for group in self.classes for px in group.spectra]

    @property
    def pixel_ids(self) -> List[str]:
        return [px.pixel_id for px in self.pixels]

    @property
    def pixel_index(self) -> Dict[str, int]:
        """Row index of each pixel id, built once."""
        if self._index is None:
            index: Dict[str, int] = {}
            for row, pid in enumerate(self.pixel_ids):
                if pid in index:
                    raise ValueError(f"{self.name}: duplicate pixel id {pid!r}")
                index[pid] = row
            self._index = index
        return self._index

    @property
    def n_pixels(self) -> int:
        return sum(len(group.spectra) for group in self.classes)

    def pixel_table(self) -> pd.DataFrame:
        """Per-pixel metadata: sample, scan, class, tic, n_peaks, source."""
        pixels = self.pixels
        table = pd.DataFrame(
            {
                "pixel_id": [px.pixel_id for px in pixels],
                "sample": [px.sample for px in pixels],
                "scan": np.asarray([px.scan for px in pixels], dtype=np.int64),
                "class": [px.class_label for px in pixels],
                "tic": np.asarray([px.tic for px in pixels], dtype=float),
                "n_peaks": np.asarray([px.n_peaks for px in pixels], dtype=np.int64),
                "source": [px.source for px in pixels],
            }
        )
        return table.set_index("pixel_id")


@dataclass
class PeakTable:
    """All peaks of a dataset flattened into aligned arrays."""

    mz: np.ndarray
    intensity: np.ndarray
    pixel: np.ndarray  # row of the owning pixel in `Dataset.pixels`

    def __len__(self) -> int:
        return int(self.mz.size)


@dataclass
class ExtractionReport:
    n_files: int = 0
    n_pixels: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def n_failed(self) -> int:
        return len(self.failures)


def list_spectrum_files(root: Path) -> List[Tuple[str, Path]]:
    """(class name, file path) pairs under `root`, sorted by class then file name."""
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(root)
    out: List[Tuple[str, Path]] = []
    for class_dir in sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith(".")):
        for path in sorted(class_dir.iterdir()):
            if path.is_file() and path.suffix.lower() in SPECTRUM_SUFFIXES:
                out.append((class_dir.name, path))
    return out


def load_pixel_file(path: Path, class_label: str, schema: Optional[SpectrumSchema] = None) -> List[PixelSpectrum]:
    """Load the pixels stored in one file.

    With a scan column every distinct scan is one pixel and the file stem is the
    sample name; otherwise the stem encodes `<sample>.<scan>` (scan 1 if absent).
    """
    schema = schema or SpectrumSchema()
    path = Path(path)
    table = read_spectrum_table(path, schema)

    if "scan" in table.columns:
        sample = path.stem
        spectra = []
        for scan, grp in table.groupby("scan", sort=True):
            spectra.append(_make_pixel(sample, int(scan), class_label, grp, path))
        return spectra

    sample, scan = split_pixel_stem(path.stem)
    return [_make_pixel(sample, 1 if scan is None else scan, class_label, table, path)]


def _make_pixel(sample: str, scan: int, class_label: str, table: pd.DataFrame, path: Path) -> PixelSpectrum:
    mz = table["mz"].to_numpy(dtype=float)
    intensity = table["intensity"].to_numpy(dtype=float)
    order = np.argsort(mz, kind="stable")
    mz = mz[order]
    intensity = intensity[order]
    mz.setflags(write=False)
    intensity.setflags(write=False)
    return PixelSpectrum(
        sample=str(sample),
        scan=int(scan),
        class_label=str(class_label),
        mz=mz,
        intensity=intensity,
        source=str(path),
    )


def _load_file_job(
    class_label: str, path: Path, schema: SpectrumSchema
) -> Tuple[str, Path, List[PixelSpectrum], Optional[str]]:
    try:
        return class_label, path, load_pixel_file(path, class_label, schema), None
    except Exception as exc:
        return class_label, path, [], f"{type(exc).__name__}: {exc}"


def scan_dataset(
    root: Path,
    *,
    schema: Optional[SpectrumSchema] = None,
    n_jobs: int = 1,
    strict: bool = False,
    name: Optional[str] = None,
) -> Tuple[Dataset, ExtractionReport]:
    """Build a `Dataset` from a class-per-subdirectory root.

    Files are loaded concurrently; results are assembled in (class, file name)
    order whatever the completion order. A failing file is logged and listed in
    the report; with `strict=True` the first failure is raised instead.
    """
    root = Path(root)
    schema = schema or SpectrumSchema()
    files = list_spectrum_files(root)
    report = ExtractionReport(n_files=len(files))

    results = Parallel(n_jobs=n_jobs)(
        delayed(_load_file_job)(class_label, path, schema) for class_label, path in files
    )

    groups: Dict[str, ClassGroup] = {}
    for class_label, path, spectra, err in results:
        group = groups.setdefault(class_label, ClassGroup(name=class_label))
        if err is not None:
            if strict:
                raise ValueError(f"Failed to load {path}: {err}")
            logger.warning("Skipping %s: %s", path, err)
            report.failures.append((str(path), err))
            continue
        group.spectra.extend(spectra)

    dataset = Dataset(name=name or root.name, classes=[groups[k] for k in sorted(groups)])
    dataset.pixel_index  # duplicate pixel ids fail here, before clustering
    report.n_pixels = dataset.n_pixels
    logger.info(
        "Loaded %d pixels from %d files in %s (%d failed)",
        report.n_pixels,
        report.n_files,
        root,
        report.n_failed,
    )
    return dataset, report


def dataset_from_spectra(name: str, spectra: Iterable[PixelSpectrum]) -> Dataset:
    """Group in-memory spectra by class label, keeping their order within a class."""
    groups: Dict[str, ClassGroup] = {}
    for px in spectra:
        groups.setdefault(px.class_label, ClassGroup(name=px.class_label)).spectra.append(px)
    dataset = Dataset(name=name, classes=list(groups.values()))
    dataset.pixel_index
    return dataset


def extract_peaks(dataset: Dataset) -> PeakTable:
    """Flatten every pixel's peaks into one global `PeakTable`."""
    pixels = dataset.pixels
    if not pixels:
        empty = np.zeros(0, dtype=float)
        return PeakTable(mz=empty, intensity=empty.copy(), pixel=np.zeros(0, dtype=np.int64))
    sizes = np.asarray([px.n_peaks for px in pixels], dtype=np.int64)
    return PeakTable(
        mz=np.concatenate([px.mz for px in pixels]).astype(float),
        intensity=np.concatenate([px.intensity for px in pixels]).astype(float),
        pixel=np.repeat(np.arange(len(pixels), dtype=np.int64), sizes),
    )


def spectra_frame(pixels: Sequence[PixelSpectrum]) -> pd.DataFrame:
    """Long-format raw spectra (pixel_id, mz, intensity) for persistence."""
    if not pixels:
        return pd.DataFrame({"pixel_id": pd.Series(dtype=str), "mz": pd.Series(dtype=float), "intensity": pd.Series(dtype=float)})
    return pd.DataFrame(
        {
            "pixel_id": np.repeat([px.pixel_id for px in pixels], [px.n_peaks for px in pixels]),
            "mz": np.concatenate([px.mz for px in pixels]),
            "intensity": np.concatenate([px.intensity for px in pixels]),
        }
    )
