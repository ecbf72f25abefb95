"""Alignment configuration for msi_align.

`AlignConfig` carries every option recognised by the alignment pipeline.
Values may come from keyword arguments, a YAML/JSON config file, or CLI flags
(flags win over file values).
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


ALIGNMENT_METHODS = ("clustering", "binning")
INTENSITY_METHODS = ("sumints", "maxint")
NORMALIZATION_METHODS = ("tic", "maxpeak", "median", "median_nonzero", "medianlog", "none")
LINKAGE_METHODS = ("single", "average", "complete")
CENTROID_METHODS = ("mean", "median")


@dataclass
class AlignConfig:
    """Configuration for peak alignment of one dataset."""

    # Open interval (lower, upper) retained by the mass-range filter.
    mass_range: Tuple[float, float] = (50.0, 1200.0)
    peak_alignment_method: str = "clustering"  # "clustering" | "binning"
    # Cut height of the 1-D hierarchical clustering (Da).
    clust_h: float = 0.005
    clust_int_method: str = "sumints"  # "sumints" | "maxint"
    normalization_method: str = "tic"  # "tic" | "maxpeak" | "median" | "median_nonzero" | "medianlog" | "none"
    background_file: Optional[str] = None

    # Clustering details
    linkage: str = "single"  # "single" | "average" | "complete"
    centroid_method: str = "mean"  # "mean" | "median"
    # Background masses take part in clustering so they form their own centroids.
    inject_background: bool = True
    # Binning
    bin_width: float = 0.01

    # Filtering
    prevalence_fraction: float = 0.10

    # Matrix labels
    label_decimals: int = 4

    # Input schema
    mz_col: str = "mz"
    intensity_col: str = "intensity"
    scan_col: str = "scan"

    # Execution
    n_jobs: int = 1
    strict: bool = False

    def __post_init__(self) -> None:
        self.peak_alignment_method = str(self.peak_alignment_method).lower().strip()
        self.clust_int_method = str(self.clust_int_method).lower().strip()
        self.normalization_method = str(self.normalization_method).lower().strip()
        self.linkage = str(self.linkage).lower().strip()
        self.centroid_method = str(self.centroid_method).lower().strip()
        lo, hi = self.mass_range
        self.mass_range = (float(lo), float(hi))
        if self.background_file is not None:
            self.background_file = str(self.background_file)

    def validate(self) -> "AlignConfig":
        if self.peak_alignment_method not in ALIGNMENT_METHODS:
            raise ValueError(f"Unsupported peak_alignment_method: {self.peak_alignment_method!r}")
        if self.clust_int_method not in INTENSITY_METHODS:
            raise ValueError(f"Unsupported clust_int_method: {self.clust_int_method!r}")
        if self.normalization_method not in NORMALIZATION_METHODS:
            raise ValueError(f"Unsupported normalization_method: {self.normalization_method!r}")
        if self.linkage not in LINKAGE_METHODS:
            raise ValueError(f"Unsupported linkage: {self.linkage!r}")
        if self.centroid_method not in CENTROID_METHODS:
            raise ValueError(f"Unsupported centroid_method: {self.centroid_method!r}")
        lo, hi = self.mass_range
        if not (math.isfinite(lo) and math.isfinite(hi)) or lo >= hi:
            raise ValueError(f"mass_range must be a finite (lower, upper) pair with lower < upper, got {self.mass_range!r}")
        if not math.isfinite(float(self.clust_h)) or float(self.clust_h) < 0:
            raise ValueError("clust_h must be finite and >= 0.")
        if not math.isfinite(float(self.bin_width)) or float(self.bin_width) <= 0:
            raise ValueError("bin_width must be finite and > 0.")
        if not 0.0 <= float(self.prevalence_fraction) < 1.0:
            raise ValueError("prevalence_fraction must be in [0, 1).")
        if int(self.label_decimals) < 0:
            raise ValueError("label_decimals must be >= 0.")
        if int(self.n_jobs) == 0:
            raise ValueError("n_jobs must be nonzero (use -1 for all cores).")
        return self

    @property
    def aggregation_mode(self) -> str:
        """Matcher mode ("sum" | "max") for `clust_int_method`."""
        return "sum" if self.clust_int_method == "sumints" else "max"

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["mass_range"] = [float(self.mass_range[0]), float(self.mass_range[1])]
        return out

    def override(self, **kwargs: Any) -> "AlignConfig":
        """Return a copy with the non-None keyword values applied."""
        updates = {k: v for k, v in kwargs.items() if v is not None}
        unknown = sorted(set(updates) - {f.name for f in fields(self)})
        if unknown:
            raise ValueError(f"Unknown config options: {unknown}")
        return replace(self, **updates)


def config_from_mapping(obj: Any) -> AlignConfig:
    """Build a validated config from a plain mapping."""
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise ValueError("Config must be a mapping of option names to values.")
    if "alignment" in obj and isinstance(obj["alignment"], dict):
        obj = obj["alignment"]

    known = {f.name for f in fields(AlignConfig)}
    unknown = sorted(set(obj) - known)
    if unknown:
        raise ValueError(f"Unknown config options: {unknown}")

    values = dict(obj)
    if "mass_range" in values:
        mr = values["mass_range"]
        if not isinstance(mr, (list, tuple)) or len(mr) != 2:
            raise ValueError("mass_range must be a two-element list [lower, upper].")
        values["mass_range"] = (float(mr[0]), float(mr[1]))
    return AlignConfig(**values).validate()


def load_config(path: Path) -> AlignConfig:
    """Load an alignment config from YAML or JSON."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    suffix = path.suffix.lower().strip()
    if suffix in {".yaml", ".yml"}:
        with open(path, "r", encoding="utf-8") as handle:
            obj = yaml.safe_load(handle)
    elif suffix == ".json":
        obj = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise ValueError(f"Unsupported config type {suffix!r}; expected .yaml/.yml or .json")
    return config_from_mapping(obj)
