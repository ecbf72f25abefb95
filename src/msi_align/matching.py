"""Assign pixel peaks to centroids and aggregate intensities per pixel.

Assignment reuses the labels of the global clustering (`ClusterResult.labels`);
there is no independent nearest-neighbour search. A peak whose label does not
name a valid centroid is an error, never reassigned.
"""

from __future__ import annotations

from typing import Dict, Sequence

import numpy as np
import pandas as pd

from .clustering import ClusterResult
from .dataset import PeakTable


_MODE_ALIASES = {
    "sum": "sum",
    "sumints": "sum",
    "max": "max",
    "maxint": "max",
}


def resolve_mode(mode: str) -> str:
    key = str(mode).lower().strip()
    if key not in _MODE_ALIASES:
        raise ValueError(f"Unsupported intensity aggregation mode: {mode!r} (expected sum/sumints or max/maxint)")
    return _MODE_ALIASES[key]


def _check_labels(labels: np.ndarray, n_centroids: int) -> None:
    if labels.size == 0:
        return
    bad = (labels < 0) | (labels >= int(n_centroids))
    if np.any(bad):
        first = int(labels[np.flatnonzero(bad)[0]])
        raise ValueError(
            f"{int(bad.sum())} peak(s) carry centroid ids outside [0, {int(n_centroids)}) (first: {first})."
        )


def match_pixel(
    labels: Sequence[int],
    intensity: Sequence[float],
    n_centroids: int,
    mode: str = "sum",
) -> Dict[int, float]:
    """Aggregate one pixel's peaks onto their centroids.

    Returns a sparse {centroid id: intensity} map; centroids without a peak are absent.
    """
    how = resolve_mode(mode)
    lab = np.asarray(labels, dtype=np.int64).ravel()
    val = np.asarray(intensity, dtype=float).ravel()
    if lab.size != val.size:
        raise ValueError("labels and intensity must have the same length.")
    _check_labels(lab, n_centroids)

    out: Dict[int, float] = {}
    for cid, x in zip(lab.tolist(), val.tolist()):
        if cid not in out:
            out[cid] = x
        elif how == "sum":
            out[cid] += x
        else:
            out[cid] = max(out[cid], x)
    return out


def match_peaks(peaks: PeakTable, clusters: ClusterResult, mode: str = "sum") -> pd.DataFrame:
    """Aggregate every peak of a dataset onto the centroid it was clustered into.

    `peaks` must be the same peak table (same order) whose masses produced
    `clusters`. Returns sparse triplets `pixel`, `centroid`, `intensity`
    sorted by pixel then centroid.
    """
    how = resolve_mode(mode)
    if len(peaks) != int(clusters.labels.size):
        raise ValueError(
            f"Peak table has {len(peaks)} peaks but the clustering labelled {int(clusters.labels.size)} masses."
        )
    _check_labels(clusters.labels, clusters.n_centroids)

    if len(peaks) == 0:
        return pd.DataFrame(
            {
                "pixel": pd.Series(dtype=np.int64),
                "centroid": pd.Series(dtype=np.int64),
                "intensity": pd.Series(dtype=float),
            }
        )

    triplets = pd.DataFrame(
        {
            "pixel": peaks.pixel.astype(np.int64),
            "centroid": clusters.labels.astype(np.int64),
            "intensity": peaks.intensity.astype(float),
        }
    )
    agg = triplets.groupby(["pixel", "centroid"], sort=True)["intensity"].agg(how)
    return agg.reset_index()
