"""Merge independently aligned matrices into one compiled matrix.

Columns are unioned by exact mass label (no re-clustering across runs); each
run's values are copied into a zero-filled superset. Dataset-level metadata
(tissue etc.) is found per run through an injectable `MetadataResolver`; a run
whose metadata cannot be matched uniquely is skipped with a warning.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import pandas as pd
import yaml

from .checkpoint import RunArtifacts, load_run
from .matrix import AlignedMatrix


logger = logging.getLogger(__name__)

PROVENANCE_COLUMNS = ["dataset", "tissue", "class", "sample"]
METADATA_SUFFIXES = (".json", ".yaml", ".yml", ".csv", ".tsv")
# Half the resolution of a 4-decimal mass label.
DEFAULT_COLLISION_TOLERANCE = 5e-5


@dataclass
class CompiledMatrix:
    data: pd.DataFrame  # index: (dataset, pixel_id); columns: mass labels
    mz: np.ndarray
    provenance: pd.DataFrame  # same index; dataset, tissue, class, sample (+ extra metadata)
    skipped: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def n_pixels(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.data.shape[1])

    @property
    def datasets(self) -> List[str]:
        if self.data.shape[0] == 0:
            return []
        return list(dict.fromkeys(self.data.index.get_level_values("dataset")))

    def to_frame(self) -> pd.DataFrame:
        """Provenance columns followed by intensities, one row per pixel."""
        out = pd.concat([self.provenance, self.data], axis=1)
        out.index = out.index.get_level_values("pixel_id")
        out.index.name = "pixel_id"
        return out

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path)
        pd.DataFrame({"label": [str(c) for c in self.data.columns], "mz": self.mz}).to_csv(
            path.with_name(path.stem + "_centroids.csv"), index=False
        )
        return path


def _empty_compiled(skipped: List[Tuple[str, str]]) -> CompiledMatrix:
    index = pd.MultiIndex.from_arrays([[], []], names=["dataset", "pixel_id"])
    return CompiledMatrix(
        data=pd.DataFrame(index=index, dtype=float),
        mz=np.zeros(0, dtype=float),
        provenance=pd.DataFrame({c: pd.Series(dtype=object) for c in PROVENANCE_COLUMNS}, index=index),
        skipped=skipped,
    )


def _union_columns(
    matrices: Sequence[AlignedMatrix],
    names: Sequence[str],
    collision_tolerance: Optional[float],
) -> Tuple[List[str], np.ndarray, List[Dict[str, str]]]:
    registry: Dict[str, float] = {}
    renames: List[Dict[str, str]] = []
    for matrix, name in zip(matrices, names):
        mapping: Dict[str, str] = {}
        used: set = set()
        for label, mz in zip(matrix.labels, matrix.mz):
            final = label
            if label in registry and collision_tolerance is not None:
                gap = abs(registry[label] - float(mz))
                if 0 < gap <= float(collision_tolerance):
                    logger.debug("Label %s in %s merged with a column %.6g Da away", label, name, gap)
                if gap > float(collision_tolerance):
                    final = f"{label}_{name}"
                    logger.warning(
                        "Label %s in %s is %.6g Da from the existing column with that label (tolerance %g); keeping it as %s",
                        label,
                        name,
                        gap,
                        float(collision_tolerance),
                        final,
                    )
            if final in used:
                raise ValueError(f"{name}: two columns map onto merged label {final!r}.")
            used.add(final)
            registry.setdefault(final, float(mz))
            mapping[label] = final
        renames.append(mapping)

    ordered = sorted(registry.items(), key=lambda kv: (kv[1], kv[0]))
    labels = [k for k, _ in ordered]
    mz = np.asarray([v for _, v in ordered], dtype=float)
    return labels, mz, renames


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return bool(np.ndim(value) == 0 and pd.isna(value))


def _provenance(matrix: AlignedMatrix, name: str, metadata: Dict[str, Any]) -> pd.DataFrame:
    pixels = matrix.pixels.reindex(matrix.data.index)
    prov = pd.DataFrame(index=matrix.data.index.copy())
    prov["dataset"] = name
    tissue = metadata.get("tissue")
    prov["tissue"] = name if _is_missing(tissue) else str(tissue)
    prov["class"] = pixels["class"].to_numpy() if "class" in pixels.columns else ""
    prov["sample"] = pixels["sample"].to_numpy() if "sample" in pixels.columns else ""
    for key, value in metadata.items():
        if key in prov.columns or key in {"run_id"} or _is_missing(value):
            continue
        prov[str(key)] = value
    return prov


def merge_matrices(
    matrices: Sequence[AlignedMatrix],
    *,
    names: Optional[Sequence[str]] = None,
    metadata: Optional[Sequence[Dict[str, Any]]] = None,
    collision_tolerance: Optional[float] = DEFAULT_COLLISION_TOLERANCE,
) -> CompiledMatrix:
    """Union-align several matrices.

    Args:
        matrices: Aligned matrices from separate runs.
        names: Dataset name per matrix (default: `matrix.name`); must be unique.
        metadata: Per-dataset metadata mapping (e.g. {"tissue": "kidney"}),
            attached to every row of that dataset.
        collision_tolerance: A label shared by two runs whose centroid masses
            differ by more than this is kept as a separate `label_<dataset>`
            column instead of being overwritten. None merges on labels alone.
    """
    if not matrices:
        return _empty_compiled([])
    names = [str(n) for n in (names or [m.name or f"dataset{i}" for i, m in enumerate(matrices)])]
    if len(names) != len(matrices):
        raise ValueError("names must have one entry per matrix.")
    if len(set(names)) != len(names):
        raise ValueError(f"Dataset names must be unique, got {names}")
    metadata = list(metadata) if metadata is not None else [{} for _ in matrices]
    if len(metadata) != len(matrices):
        raise ValueError("metadata must have one entry per matrix.")

    labels, mz, renames = _union_columns(matrices, names, collision_tolerance)

    blocks: List[pd.DataFrame] = []
    prov_blocks: List[pd.DataFrame] = []
    for matrix, name, mapping, meta in zip(matrices, names, renames, metadata):
        block = matrix.data.rename(columns=mapping).reindex(columns=labels, fill_value=0.0)
        blocks.append(block.astype(float))
        prov_blocks.append(_provenance(matrix, name, meta or {}))

    data = pd.concat(blocks, keys=names, names=["dataset", "pixel_id"])
    provenance = pd.concat(prov_blocks, keys=names, names=["dataset", "pixel_id"])
    logger.info(
        "Merged %d datasets: %d pixels x %d columns",
        len(matrices),
        data.shape[0],
        data.shape[1],
    )
    return CompiledMatrix(data=data, mz=mz, provenance=provenance)


class MetadataResolver(Protocol):
    def candidates(self, run: RunArtifacts) -> List[Dict[str, Any]]:
        ...


def _run_value(run: RunArtifacts, key: str) -> str:
    if key == "run_id":
        return run.run_id
    if key in {"dataset", "name"}:
        return run.name
    return str(run.manifest.get(key, ""))


@dataclass
class ExactIdResolver:
    """Join runs to metadata rows on an exact id (`run_id` or `dataset`)."""

    table: pd.DataFrame
    key: str = "run_id"

    def candidates(self, run: RunArtifacts) -> List[Dict[str, Any]]:
        if self.key not in self.table.columns:
            raise ValueError(f"Metadata table has no {self.key!r} column.")
        want = _run_value(run, self.key)
        rows = self.table.loc[self.table[self.key].astype(str) == want]
        return rows.to_dict(orient="records")

    @classmethod
    def from_file(cls, path: Path, key: str = "run_id") -> "ExactIdResolver":
        path = Path(path)
        sep = "\t" if path.suffix.lower() == ".tsv" else ","
        return cls(table=pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False), key=key)


def read_metadata_file(path: Path) -> Dict[str, Any]:
    """One metadata record from a JSON/YAML mapping or the first row of a CSV/TSV."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".json":
        obj = json.loads(path.read_text(encoding="utf-8"))
    elif suffix in {".yaml", ".yml"}:
        with open(path, "r", encoding="utf-8") as handle:
            obj = yaml.safe_load(handle)
    elif suffix in {".csv", ".tsv"}:
        table = pd.read_csv(path, sep="\t" if suffix == ".tsv" else ",", dtype=str, keep_default_na=False)
        obj = table.iloc[0].to_dict() if len(table) else {}
    else:
        raise ValueError(f"Unsupported metadata file type {suffix!r}: {path}")
    if not isinstance(obj, dict):
        raise ValueError(f"{path}: metadata must be a mapping.")
    return obj


@dataclass
class DirectoryNameResolver:
    """Metadata files whose name contains the dataset name (case-insensitive)."""

    metadata_dir: Path

    def candidates(self, run: RunArtifacts) -> List[Dict[str, Any]]:
        root = Path(self.metadata_dir)
        if not root.is_dir():
            raise FileNotFoundError(root)
        want = run.name.lower()
        hits = [
            p
            for p in sorted(root.iterdir())
            if p.is_file() and p.suffix.lower() in METADATA_SUFFIXES and want in p.stem.lower()
        ]
        out = []
        for p in hits:
            record = read_metadata_file(p)
            record.setdefault("metadata_file", str(p))
            out.append(record)
        return out


def compile_runs(
    run_dirs: Sequence[Path],
    *,
    resolver: Optional[MetadataResolver] = None,
    collision_tolerance: Optional[float] = DEFAULT_COLLISION_TOLERANCE,
) -> CompiledMatrix:
    """Load persisted runs and merge them.

    A missing or unreadable run fails immediately. A run whose metadata
    resolves to zero or several candidates is skipped with a warning.
    """
    runs: List[RunArtifacts] = [load_run(Path(d)) for d in run_dirs]

    kept: List[RunArtifacts] = []
    metas: List[Dict[str, Any]] = []
    skipped: List[Tuple[str, str]] = []
    for run in runs:
        meta: Dict[str, Any] = {}
        if resolver is not None:
            cands = resolver.candidates(run)
            if len(cands) != 1:
                where = [str(c.get("metadata_file", c)) for c in cands]
                reason = f"{len(cands)} metadata candidates" + (f": {where}" if where else "")
                logger.warning("Skipping run %s (%s, dataset %s): %s", run.run_dir, run.run_id, run.name, reason)
                skipped.append((run.name, reason))
                continue
            meta = dict(cands[0])
        kept.append(run)
        metas.append(meta)

    if not kept:
        logger.warning("No runs left to merge after metadata resolution.")
        return _empty_compiled(skipped)

    names = _unique_names([run.name for run in kept], [run.run_id for run in kept])
    compiled = merge_matrices(
        [run.matrix for run in kept],
        names=names,
        metadata=metas,
        collision_tolerance=collision_tolerance,
    )
    compiled.skipped = skipped
    return compiled


def _unique_names(names: Sequence[str], run_ids: Sequence[str]) -> List[str]:
    counts: Dict[str, int] = {}
    for n in names:
        counts[n] = counts.get(n, 0) + 1
    return [n if counts[n] == 1 else f"{n}_{rid[:8]}" for n, rid in zip(names, run_ids)]
