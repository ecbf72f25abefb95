"""Column filters applied to an aligned matrix, in fixed order:

1. prevalence  - keep columns detected in more than floor(fraction * n_pixels) pixels
2. background  - drop columns within the clustering height of a background mass
3. mass range  - keep columns with lower < m/z < upper

Every step keeps the surviving columns in their original order and logs what
it dropped.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .matrix import AlignedMatrix


logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    matrix: AlignedMatrix
    retained_mz: np.ndarray
    report: pd.DataFrame  # step, n_before, n_after, threshold


def prevalence_threshold(n_rows: int, fraction: float = 0.10) -> int:
    """floor(fraction * n_rows), robust to binary rounding of the product."""
    return int(math.floor(round(float(fraction) * int(n_rows), 9)))


def _log_drop(step: str, matrix: AlignedMatrix, keep: np.ndarray, reason: str) -> None:
    dropped = [lab for lab, k in zip(matrix.labels, keep) if not k]
    if not dropped:
        return
    logger.info("%s filter on %s: dropped %d of %d columns (%s)", step, matrix.name or "matrix", len(dropped), keep.size, reason)
    logger.debug("%s filter dropped labels: %s", step, ", ".join(dropped))


def prevalence_filter(matrix: AlignedMatrix, fraction: float = 0.10) -> Tuple[AlignedMatrix, int]:
    """Keep columns whose nonzero count is strictly greater than the threshold.

    Returns the filtered matrix and the threshold used.
    """
    threshold = prevalence_threshold(matrix.n_pixels, fraction)
    if matrix.n_features == 0:
        return matrix, threshold
    nonzero = np.count_nonzero(matrix.values(), axis=0)
    keep = nonzero > threshold
    _log_drop("prevalence", matrix, keep, f"nonzero count must exceed {threshold} of {matrix.n_pixels} pixels")
    return matrix.select_columns(keep), threshold


def background_mask(
    mz: np.ndarray,
    background: Sequence[float],
    tolerance: float,
    linked_mz: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """True for columns to keep: farther than `tolerance` from every background mass
    and not one of `linked_mz` (centroids whose cluster contains a background mass)."""
    mz = np.asarray(mz, dtype=float)
    keep = np.ones(mz.size, dtype=bool)
    bg = np.sort(np.asarray(background, dtype=float).ravel())
    if mz.size == 0:
        return keep
    if bg.size:
        pos = np.searchsorted(bg, mz)
        left = bg[np.clip(pos - 1, 0, bg.size - 1)]
        right = bg[np.clip(pos, 0, bg.size - 1)]
        nearest = np.minimum(np.abs(mz - left), np.abs(mz - right))
        keep &= nearest > float(tolerance)
    if linked_mz is not None and len(linked_mz):
        linked = np.asarray(linked_mz, dtype=float)
        keep &= ~np.isin(mz, linked)
    return keep


def background_filter(
    matrix: AlignedMatrix,
    background: Optional[Sequence[float]],
    tolerance: float,
    linked_mz: Optional[Sequence[float]] = None,
) -> AlignedMatrix:
    """Drop background columns; a no-op when no background list is given."""
    if background is None:
        return matrix
    keep = background_mask(matrix.mz, background, tolerance, linked_mz)
    _log_drop("background", matrix, keep, f"within {float(tolerance):g} Da of {len(background)} background masses")
    return matrix.select_columns(keep)


def mass_range_filter(matrix: AlignedMatrix, mass_range: Tuple[float, float]) -> AlignedMatrix:
    """Keep columns with lower < m/z < upper (open interval)."""
    lo, hi = float(mass_range[0]), float(mass_range[1])
    keep = (matrix.mz > lo) & (matrix.mz < hi)
    _log_drop("mass range", matrix, keep, f"outside ({lo:g}, {hi:g})")
    return matrix.select_columns(keep)


def apply_filters(
    matrix: AlignedMatrix,
    *,
    mass_range: Tuple[float, float],
    prevalence_fraction: float = 0.10,
    background: Optional[Sequence[float]] = None,
    background_tolerance: float = 0.0,
    linked_mz: Optional[Sequence[float]] = None,
) -> FilterResult:
    rows: List[Dict[str, object]] = []

    n0 = matrix.n_features
    out, threshold = prevalence_filter(matrix, prevalence_fraction)
    rows.append({"step": "prevalence", "n_before": n0, "n_after": out.n_features, "threshold": float(threshold)})

    n1 = out.n_features
    out = background_filter(out, background, background_tolerance, linked_mz)
    rows.append(
        {
            "step": "background",
            "n_before": n1,
            "n_after": out.n_features,
            "threshold": float(background_tolerance) if background is not None else float("nan"),
        }
    )

    n2 = out.n_features
    out = mass_range_filter(out, mass_range)
    rows.append({"step": "mass_range", "n_before": n2, "n_after": out.n_features, "threshold": float("nan")})

    report = pd.DataFrame.from_records(rows, columns=["step", "n_before", "n_after", "threshold"])
    logger.info("Filtering %s: %d -> %d columns", matrix.name or "matrix", n0, out.n_features)
    return FilterResult(matrix=out, retained_mz=out.mz.copy(), report=report)
