from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .clustering import ClusterResult
from .dataset import Dataset


MATRIX_FILE = "aligned_matrix.csv"
CENTROIDS_FILE = "centroids.csv"
PIXELS_FILE = "pixels.csv"

_PIXEL_COLUMNS = ["sample", "scan", "class", "tic", "n_peaks", "source"]


def format_labels(mz: Sequence[float], decimals: int = 4) -> List[str]:
    """Mass labels for matrix columns; a repeated label gets a `_2`, `_3`, ... suffix."""
    out: List[str] = []
    seen: Dict[str, int] = {}
    for x in np.asarray(mz, dtype=float):
        label = f"{x:.{int(decimals)}f}"
        k = seen.get(label, 0) + 1
        seen[label] = k
        out.append(label if k == 1 else f"{label}_{k}")
    return out


def _empty_pixels() -> pd.DataFrame:
    pixels = pd.DataFrame({c: pd.Series(dtype=object) for c in _PIXEL_COLUMNS})
    pixels.index = pd.Index([], name="pixel_id", dtype=object)
    return pixels


@dataclass
class AlignedMatrix:
    """Pixel x centroid intensities; zero means no peak matched."""

    data: pd.DataFrame  # index: pixel_id; columns: mass labels
    mz: np.ndarray  # centroid mass per column, strictly ascending
    pixels: pd.DataFrame  # index: pixel_id; sample, scan, class, tic, ...
    name: str = ""

    def __post_init__(self) -> None:
        self.mz = np.asarray(self.mz, dtype=float)
        if self.mz.size != self.data.shape[1]:
            raise ValueError(f"{self.name}: {self.data.shape[1]} columns but {self.mz.size} centroid masses.")
        if self.mz.size > 1 and not np.all(np.diff(self.mz) > 0):
            raise ValueError(f"{self.name}: column masses must be strictly ascending.")
        if not self.data.index.is_unique:
            raise ValueError(f"{self.name}: duplicate pixel ids in matrix index.")

    @property
    def n_pixels(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.data.shape[1])

    @property
    def labels(self) -> List[str]:
        return [str(c) for c in self.data.columns]

    def values(self) -> np.ndarray:
        return self.data.to_numpy(dtype=float)

    def centroid_table(self) -> pd.DataFrame:
        return pd.DataFrame({"label": self.labels, "mz": self.mz})

    def select_columns(self, keep: np.ndarray) -> "AlignedMatrix":
        """Columns where `keep` is True, in original order."""
        keep = np.asarray(keep, dtype=bool)
        return AlignedMatrix(
            data=self.data.loc[:, keep].copy(),
            mz=self.mz[keep],
            pixels=self.pixels,
            name=self.name,
        )

    def with_data(self, data: pd.DataFrame) -> "AlignedMatrix":
        return AlignedMatrix(data=data, mz=self.mz.copy(), pixels=self.pixels, name=self.name)

    def save(self, out_dir: Path) -> None:
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        data = self.data.copy()
        data.index.name = "pixel_id"
        data.to_csv(out_dir / MATRIX_FILE)
        self.centroid_table().to_csv(out_dir / CENTROIDS_FILE, index=False)
        pixels = self.pixels.copy()
        pixels.index.name = "pixel_id"
        pixels.to_csv(out_dir / PIXELS_FILE)

    @classmethod
    def load(cls, run_dir: Path, *, name: str = "") -> "AlignedMatrix":
        run_dir = Path(run_dir)
        for fname in (MATRIX_FILE, CENTROIDS_FILE, PIXELS_FILE):
            if not (run_dir / fname).exists():
                raise FileNotFoundError(run_dir / fname)
        centroids = pd.read_csv(run_dir / CENTROIDS_FILE, dtype={"label": str})
        labels = centroids["label"].astype(str).tolist()
        data = pd.read_csv(run_dir / MATRIX_FILE, dtype={"pixel_id": str})
        data = data.set_index("pixel_id")
        data.columns = [str(c) for c in data.columns]
        if data.columns.tolist() != labels:
            raise ValueError(f"{run_dir}: matrix columns do not match {CENTROIDS_FILE}.")
        pixels = pd.read_csv(run_dir / PIXELS_FILE, dtype={"pixel_id": str, "sample": str, "class": str}).set_index("pixel_id")
        return cls(
            data=data.astype(float),
            mz=centroids["mz"].to_numpy(dtype=float),
            pixels=pixels.reindex(data.index),
            name=name or run_dir.name,
        )

    @classmethod
    def empty(cls, pixel_ids: Sequence[str], pixels: Optional[pd.DataFrame] = None, name: str = "") -> "AlignedMatrix":
        index = pd.Index([str(p) for p in pixel_ids], name="pixel_id")
        data = pd.DataFrame(np.zeros((len(index), 0)), index=index)
        if pixels is None:
            pixels = _empty_pixels().reindex(index)
        return cls(data=data, mz=np.zeros(0, dtype=float), pixels=pixels, name=name)


def build_matrix(
    triplets: pd.DataFrame,
    clusters: ClusterResult,
    dataset: Dataset,
    *,
    decimals: int = 4,
) -> AlignedMatrix:
    """Stack sparse per-pixel vectors into a dense matrix in dataset pixel order."""
    pixels = dataset.pixel_table()
    n_rows = int(pixels.shape[0])
    n_cols = clusters.n_centroids

    values = np.zeros((n_rows, n_cols), dtype=float)
    if len(triplets):
        rows = triplets["pixel"].to_numpy(dtype=np.int64)
        cols = triplets["centroid"].to_numpy(dtype=np.int64)
        if rows.max() >= n_rows or cols.max() >= n_cols:
            raise ValueError("Matched peaks reference pixels or centroids outside the matrix.")
        values[rows, cols] = triplets["intensity"].to_numpy(dtype=float)

    data = pd.DataFrame(values, index=pixels.index.copy(), columns=format_labels(clusters.centroids, decimals))
    return AlignedMatrix(data=data, mz=clusters.centroids.copy(), pixels=pixels, name=dataset.name)
