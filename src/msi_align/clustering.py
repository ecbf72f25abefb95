"""1-D hierarchical clustering and fixed-width binning of observed masses.

Both paths return a `ClusterResult`: ascending centroid masses plus, for every
input mass, the id of the centroid it belongs to. The matcher reuses these
labels directly, so peak-to-centroid assignment always agrees with the global
clustering.

Single linkage on sorted scalars is computed exactly by cutting wherever a
consecutive gap exceeds the cut height. Average and complete linkage first
split at the same gaps (no merge at height <= h can cross a gap > h under
either linkage) and run scipy's agglomerative clustering inside each block.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage


@dataclass
class ClusterResult:
    centroids: np.ndarray  # ascending; centroid id == position
    labels: np.ndarray  # centroid id per input mass (input order)
    mz: np.ndarray  # input masses (input order)
    height: float
    method: str  # "single" | "average" | "complete" | "binning"
    extra_mz: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=float))
    extra_labels: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    @property
    def n_centroids(self) -> int:
        return int(self.centroids.size)

    def members(self, centroid_id: int) -> np.ndarray:
        """Observed masses assigned to one centroid, ascending."""
        return np.sort(self.mz[self.labels == int(centroid_id)])

    def counts(self) -> np.ndarray:
        """Number of observed masses per centroid."""
        return np.bincount(self.labels, minlength=self.n_centroids).astype(np.int64)

    def extra_centroids(self) -> np.ndarray:
        """Centroid masses of clusters that contain an injected extra mass."""
        if self.extra_labels.size == 0:
            return np.zeros(0, dtype=float)
        return self.centroids[np.unique(self.extra_labels)]

    def to_frame(self) -> pd.DataFrame:
        counts = self.counts()
        return pd.DataFrame(
            {
                "centroid": np.arange(self.n_centroids, dtype=np.int64),
                "mz": self.centroids,
                "n_members": counts,
                "min_mz": _per_label(self.mz, self.labels, self.n_centroids, np.minimum, np.inf),
                "max_mz": _per_label(self.mz, self.labels, self.n_centroids, np.maximum, -np.inf),
            }
        )


def _per_label(values: np.ndarray, labels: np.ndarray, n: int, ufunc, fill: float) -> np.ndarray:
    out = np.full(n, fill, dtype=float)
    if values.size:
        ufunc.at(out, labels, values)
    out[~np.isfinite(out)] = np.nan
    return out


def _as_masses(values: Optional[Sequence[float]], what: str) -> np.ndarray:
    if values is None:
        return np.zeros(0, dtype=float)
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size and not np.all(np.isfinite(arr)):
        raise ValueError(f"{what} contains non-finite masses.")
    return arr


def _empty_result(height: float, method: str, extra: np.ndarray) -> ClusterResult:
    return ClusterResult(
        centroids=np.zeros(0, dtype=float),
        labels=np.zeros(0, dtype=np.int64),
        mz=np.zeros(0, dtype=float),
        height=float(height),
        method=method,
        extra_mz=extra,
        extra_labels=np.zeros(0, dtype=np.int64),
    )


def gap_blocks(sorted_mz: np.ndarray, height: float) -> np.ndarray:
    """Block id per sorted mass; a new block starts wherever the gap exceeds `height`."""
    if sorted_mz.size == 0:
        return np.zeros(0, dtype=np.int64)
    breaks = np.diff(sorted_mz) > float(height)
    return np.concatenate([[0], np.cumsum(breaks)]).astype(np.int64)


def _block_bounds(blocks: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    starts = np.flatnonzero(np.r_[True, blocks[1:] != blocks[:-1]])
    ends = np.r_[starts[1:], blocks.size]
    return starts, ends


def _agglomerate(sorted_mz: np.ndarray, height: float, method: str) -> np.ndarray:
    blocks = gap_blocks(sorted_mz, height)
    if method == "single":
        return blocks

    flat = np.empty(sorted_mz.size, dtype=np.int64)
    next_id = 0
    starts, ends = _block_bounds(blocks)
    for s, e in zip(starts, ends):
        if e - s == 1:
            flat[s] = next_id
            next_id += 1
            continue
        tree = linkage(sorted_mz[s:e, np.newaxis], method=method)
        sub = fcluster(tree, t=float(height), criterion="distance")
        # fcluster ids are arbitrary; renumber by first appearance in mass order.
        _, first, inverse = np.unique(sub, return_index=True, return_inverse=True)
        rank = np.argsort(np.argsort(first, kind="stable"), kind="stable")
        flat[s:e] = next_id + rank[inverse]
        next_id += first.size
    return flat


def _centroid_values(sorted_mz: np.ndarray, labels: np.ndarray, n: int, how: str) -> np.ndarray:
    if how == "median":
        return pd.Series(sorted_mz).groupby(labels, sort=True).median().to_numpy(dtype=float)
    sums = np.bincount(labels, weights=sorted_mz, minlength=n)
    counts = np.bincount(labels, minlength=n)
    return sums / counts


def _relabel_ascending(centroids: np.ndarray, labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    order = np.argsort(centroids, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(order.size)
    return centroids[order], rank[labels]


def cluster_masses(
    mz: Sequence[float],
    height: float,
    *,
    linkage_method: str = "single",
    centroid: str = "mean",
    extra_masses: Optional[Sequence[float]] = None,
) -> ClusterResult:
    """Cluster observed masses at cut height `height`.

    Args:
        mz: Observed masses, any order.
        height: Cut height in Da; masses closer than this (per the linkage) share a centroid.
        linkage_method: "single" (gap cut), "average" or "complete".
        centroid: "mean" or "median" of member masses.
        extra_masses: Masses clustered alongside `mz` (e.g. a background list); their
            labels are returned in `extra_labels` and they count toward centroid values.

    Returns:
        ClusterResult with centroids ascending. Ties in mass are broken by input
        position (observed masses first, then extra masses), so identical input
        always yields identical membership.
    """
    method = str(linkage_method).lower().strip()
    if method not in {"single", "average", "complete"}:
        raise ValueError(f"Unsupported linkage: {linkage_method!r}")
    how = str(centroid).lower().strip()
    if how not in {"mean", "median"}:
        raise ValueError(f"Unsupported centroid method: {centroid!r}")
    height = float(height)
    if not np.isfinite(height) or height < 0:
        raise ValueError("height must be finite and >= 0.")

    observed = _as_masses(mz, "mz")
    extra = _as_masses(extra_masses, "extra_masses")
    values = np.concatenate([observed, extra])
    if values.size == 0:
        return _empty_result(height, method, extra)

    order = np.argsort(values, kind="stable")
    sorted_mz = values[order]
    sorted_labels = _agglomerate(sorted_mz, height, method)
    n = int(sorted_labels.max()) + 1
    centroids = _centroid_values(sorted_mz, sorted_labels, n, how)
    centroids, sorted_labels = _relabel_ascending(centroids, sorted_labels)

    labels = np.empty(values.size, dtype=np.int64)
    labels[order] = sorted_labels
    return ClusterResult(
        centroids=centroids,
        labels=labels[: observed.size],
        mz=observed,
        height=height,
        method=method,
        extra_mz=extra,
        extra_labels=labels[observed.size :],
    )


def bin_masses(
    mz: Sequence[float],
    bin_width: float,
    *,
    mz_range: Optional[Tuple[float, float]] = None,
    extra_masses: Optional[Sequence[float]] = None,
) -> ClusterResult:
    """Fixed-width binning; occupied bins become centroids at their bin centres.

    The bin grid starts at the lower bound of `mz_range` when given, otherwise
    at the smallest mass.
    """
    width = float(bin_width)
    if not np.isfinite(width) or width <= 0:
        raise ValueError("bin_width must be finite and > 0.")

    observed = _as_masses(mz, "mz")
    extra = _as_masses(extra_masses, "extra_masses")
    values = np.concatenate([observed, extra])
    if values.size == 0:
        return _empty_result(width, "binning", extra)

    origin = float(mz_range[0]) if mz_range is not None else float(values.min())
    idx = np.floor((values - origin) / width).astype(np.int64)
    occupied, labels = np.unique(idx, return_inverse=True)
    centroids = origin + (occupied.astype(float) + 0.5) * width
    labels = labels.astype(np.int64).ravel()
    return ClusterResult(
        centroids=centroids,
        labels=labels[: observed.size],
        mz=observed,
        height=width,
        method="binning",
        extra_mz=extra,
        extra_labels=labels[observed.size :],
    )
