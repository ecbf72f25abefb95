"""Row-wise intensity normalisation.

Methods:
  - tic:            row / row sum
  - maxpeak:        row / row max
  - median:         row / row median
  - median_nonzero: row / median of the row's nonzero entries (zeros stay zero)
  - medianlog:      log1p of the row, minus the median of the logged row
  - none:           unchanged copy

A row whose divisor is zero (or, for median_nonzero, that has no nonzero
entry) is returned as all zeros.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import pandas as pd

from .matrix import AlignedMatrix


METHODS = ("tic", "maxpeak", "median", "median_nonzero", "medianlog", "none")


def _safe_divide(x: np.ndarray, divisor: np.ndarray) -> np.ndarray:
    out = np.zeros_like(x)
    ok = np.isfinite(divisor) & (divisor != 0)
    out[ok] = x[ok] / divisor[ok, np.newaxis]
    return out


def _nonzero_median(x: np.ndarray) -> np.ndarray:
    masked = np.where(x != 0, x, np.nan)
    med = np.zeros(x.shape[0], dtype=float)
    has = np.any(x != 0, axis=1)
    if np.any(has):
        med[has] = np.nanmedian(masked[has], axis=1)
    return med


def normalize_rows(x: np.ndarray, method: str = "tic") -> np.ndarray:
    """Normalise each row of a 2-D intensity array."""
    how = str(method).lower().strip()
    if how not in METHODS:
        raise ValueError(f"Unsupported normalization method: {method!r} (expected one of {METHODS})")
    x = np.asarray(x, dtype=float)
    if x.ndim != 2:
        raise ValueError("normalize_rows expects a 2-D array (pixels x features).")
    if x.size == 0 or how == "none":
        return x.copy()

    if how == "tic":
        return _safe_divide(x, x.sum(axis=1))
    if how == "maxpeak":
        return _safe_divide(x, x.max(axis=1))
    if how == "median":
        return _safe_divide(x, np.median(x, axis=1))
    if how == "median_nonzero":
        return _safe_divide(x, _nonzero_median(x))

    logged = np.log1p(np.clip(x, 0.0, None))
    return logged - np.median(logged, axis=1)[:, np.newaxis]


def normalize_frame(df: pd.DataFrame, method: str = "tic") -> pd.DataFrame:
    return pd.DataFrame(normalize_rows(df.to_numpy(dtype=float), method), index=df.index, columns=df.columns)


def normalize_matrix(matrix: Union[AlignedMatrix, pd.DataFrame], method: str = "tic"):
    """Normalise an `AlignedMatrix` (returns a new one) or a plain DataFrame."""
    if isinstance(matrix, AlignedMatrix):
        return matrix.with_data(normalize_frame(matrix.data, method))
    return normalize_frame(matrix, method)
