from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import polars as pl


SPECTRUM_SUFFIXES = (".csv", ".tsv", ".txt", ".parquet")

_FLOAT_TOKEN = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?\s*$")
_STEM_SCAN = re.compile(r"^(?P<sample>.+?)[._-](?:scan)?(?P<scan>\d+)$", re.IGNORECASE)
_FIELD_SEP = re.compile(r"[\t,; ]+")


@dataclass(frozen=True)
class SpectrumSchema:
    mz_col: str = "mz"
    intensity_col: str = "intensity"
    scan_col: Optional[str] = "scan"


def split_pixel_stem(stem: str) -> Tuple[str, Optional[int]]:
    """Split a file stem like `patient3.12` or `patient3_scan12` into (sample, scan)."""
    m = _STEM_SCAN.match(str(stem).strip())
    if m is None:
        return str(stem).strip(), None
    return m.group("sample"), int(m.group("scan"))


def _frame_from_polars(frame: pl.DataFrame) -> pd.DataFrame:
    return pd.DataFrame({name: frame.get_column(name).to_numpy() for name in frame.columns})


def _looks_headerless(columns: Sequence[object]) -> bool:
    cols = [str(c) for c in columns]
    return len(cols) >= 2 and all(_FLOAT_TOKEN.match(c) for c in cols[:2])


def read_table(path: Path, *, header: bool = True) -> pd.DataFrame:
    """Read one tabular spectrum file (.csv, .tsv, .txt or .parquet) into pandas."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return _frame_from_polars(pl.read_parquet(path))
    if suffix in {".csv", ".tsv"}:
        sep = "," if suffix == ".csv" else "\t"
        try:
            return _frame_from_polars(pl.read_csv(path, separator=sep, has_header=header))
        except Exception:
            return pd.read_csv(path, sep=sep, header=0 if header else None)
    if suffix == ".txt":
        return pd.read_csv(path, sep=r"[\t,; ]+", engine="python", header=0 if header else None)
    raise ValueError(f"Unsupported spectrum file type {suffix!r} for {path}; expected one of {SPECTRUM_SUFFIXES}")


def normalize_schema(df: pd.DataFrame, schema: SpectrumSchema, *, source: object = "") -> pd.DataFrame:
    """Return a copy with canonical `mz`, `intensity` (and `scan` when present) columns.

    Column names are matched case-insensitively. Rows with non-finite or
    non-positive masses are dropped and negative intensities are clipped to 0.
    """
    lookup = {str(c).strip().lower(): c for c in df.columns}
    mz_src = lookup.get(schema.mz_col.lower())
    int_src = lookup.get(schema.intensity_col.lower())
    scan_src = lookup.get(schema.scan_col.lower()) if schema.scan_col else None

    if mz_src is None or int_src is None:
        if df.shape[1] == 2 and mz_src is None and int_src is None:
            mz_src, int_src = df.columns[0], df.columns[1]
        else:
            raise ValueError(
                f"{source}: expected columns {schema.mz_col!r} and {schema.intensity_col!r}, "
                f"found {[str(c) for c in df.columns]}"
            )

    out = pd.DataFrame(
        {
            "mz": pd.to_numeric(df[mz_src], errors="coerce").astype(float),
            "intensity": pd.to_numeric(df[int_src], errors="coerce").astype(float),
        }
    )
    if scan_src is not None:
        out["scan"] = pd.to_numeric(df[scan_src], errors="coerce")

    keep = np.isfinite(out["mz"].to_numpy()) & (out["mz"].to_numpy() > 0)
    if "scan" in out.columns:
        keep &= np.isfinite(out["scan"].to_numpy(dtype=float))
    out = out.loc[keep].copy()
    out["intensity"] = np.clip(np.nan_to_num(out["intensity"].to_numpy(dtype=float), nan=0.0), 0.0, np.inf)
    if "scan" in out.columns:
        out["scan"] = out["scan"].astype(np.int64)
    return out.reset_index(drop=True)


def _first_line_fields(path: Path) -> List[str]:
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            if line.strip():
                return [tok for tok in _FIELD_SEP.split(line.strip()) if tok]
    return []


def read_spectrum_table(path: Path, schema: SpectrumSchema) -> pd.DataFrame:
    """Read and canonicalise one spectrum file; headerless two-column files are accepted."""
    path = Path(path)
    if path.suffix.lower() != ".parquet" and path.exists() and _looks_headerless(_first_line_fields(path)):
        df = read_table(path, header=False)
    else:
        df = read_table(path)
    return normalize_schema(df, schema, source=path)


def load_background(path: Path) -> np.ndarray:
    """Load a background peak list (single column of masses), sorted ascending."""
    path = Path(path)
    df = read_table(path)
    if df.shape[1] == 0:
        return np.zeros(0, dtype=float)
    if _FLOAT_TOKEN.match(str(df.columns[0])) and path.suffix.lower() != ".parquet":
        df = read_table(path, header=False)
    mz = pd.to_numeric(df.iloc[:, 0], errors="coerce").to_numpy(dtype=float)
    mz = mz[np.isfinite(mz)]
    return np.sort(mz)
