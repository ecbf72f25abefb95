"""Content-addressed run checkpoints.

A run directory is named after a hash of the input files (relative path, size
and content digest) and the alignment config, so rerunning the same inputs
with the same options resolves to the same directory and can be reused.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import joblib
import pandas as pd

from .config import AlignConfig
from .matrix import AlignedMatrix


MANIFEST_FILE = "run_manifest.json"
SPECTRA_FILE = "spectra.joblib"
KEY_LENGTH = 16


def file_digest(path: Path, *, chunk_size: int = 1 << 20) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def checkpoint_key(
    files: Sequence[Path],
    config: AlignConfig,
    *,
    root: Optional[Path] = None,
    background: Optional[Path] = None,
    name: Optional[str] = None,
) -> str:
    """sha256 over the input files and the canonical config JSON."""
    entries: List[Dict[str, Any]] = []
    for path in files:
        path = Path(path)
        rel = path.relative_to(root).as_posix() if root is not None else path.name
        entries.append({"path": rel, "size": path.stat().st_size, "sha256": file_digest(path)})
    entries.sort(key=lambda e: e["path"])

    cfg = config.to_dict()
    # The background file enters through its content, not its location.
    cfg.pop("background_file", None)
    # Worker count and strictness do not change the output.
    cfg.pop("n_jobs", None)
    cfg.pop("strict", None)
    payload = {
        "files": entries,
        "config": cfg,
        "background": file_digest(Path(background)) if background is not None else None,
        "name": name,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def checkpoint_dir(out_dir: Path, key: str) -> Path:
    return Path(out_dir) / key[:KEY_LENGTH]


def is_complete(run_dir: Path) -> bool:
    return (Path(run_dir) / MANIFEST_FILE).exists()


def write_manifest(run_dir: Path, payload: Dict[str, Any]) -> Path:
    path = Path(run_dir) / MANIFEST_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")
    return path


def read_manifest(run_dir: Path) -> Dict[str, Any]:
    path = Path(run_dir) / MANIFEST_FILE
    if not path.exists():
        raise FileNotFoundError(path)
    return json.loads(path.read_text(encoding="utf-8"))


def dump_spectra(run_dir: Path, spectra: pd.DataFrame) -> Path:
    path = Path(run_dir) / SPECTRA_FILE
    joblib.dump(spectra, path, compress=3)
    return path


def load_spectra(run_dir: Path) -> pd.DataFrame:
    path = Path(run_dir) / SPECTRA_FILE
    if not path.exists():
        raise FileNotFoundError(path)
    return joblib.load(path)


@dataclass
class RunArtifacts:
    run_dir: Path
    run_id: str
    name: str
    matrix: AlignedMatrix
    manifest: Dict[str, Any]


def load_run(run_dir: Path) -> RunArtifacts:
    """Load the aligned matrix and manifest of a finished run."""
    run_dir = Path(run_dir)
    manifest = read_manifest(run_dir)
    name = str(manifest.get("dataset") or run_dir.name)
    matrix = AlignedMatrix.load(run_dir, name=name)
    return RunArtifacts(
        run_dir=run_dir,
        run_id=str(manifest.get("run_id") or run_dir.name),
        name=name,
        matrix=matrix,
        manifest=manifest,
    )
