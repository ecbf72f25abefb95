import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from msi_align.checkpoint import write_manifest
from msi_align.matrix import AlignedMatrix
from msi_align.merge import DirectoryNameResolver, ExactIdResolver, compile_runs, merge_matrices


def _matrix(name, labels, mz, values, classes=None):
    values = np.asarray(values, dtype=float)
    ids = [f"{name}.{i + 1}" for i in range(values.shape[0])]
    index = pd.Index(ids, name="pixel_id")
    pixels = pd.DataFrame(
        {
            "sample": [name] * len(ids),
            "scan": list(range(1, len(ids) + 1)),
            "class": classes or ["tumor"] * len(ids),
        },
        index=index,
    )
    data = pd.DataFrame(values, index=index, columns=labels)
    return AlignedMatrix(data=data, mz=np.asarray(mz, dtype=float), pixels=pixels, name=name)


def _save_run(root: Path, matrix: AlignedMatrix, run_id: str) -> Path:
    run_dir = root / run_id
    matrix.save(run_dir)
    write_manifest(run_dir, {"dataset": matrix.name, "run_id": run_id, "config": {"normalization_method": "tic"}})
    return run_dir


def test_same_labels_stack_rows():
    a = _matrix("a", ["100.0000", "200.0000"], [100.0, 200.0], [[1, 2], [3, 4]])
    b = _matrix("b", ["100.0000", "200.0000"], [100.0, 200.0], [[5, 6], [7, 8], [9, 10]])
    out = merge_matrices([a, b])

    assert out.data.shape == (5, 2)
    assert out.datasets == ["a", "b"]
    assert out.data.loc[("b", "b.3"), "200.0000"] == 10.0


def test_union_of_columns_is_zero_filled_and_sorted_by_mass():
    a = _matrix("a", ["100.0000", "200.0000"], [100.0, 200.0], [[1, 2]])
    b = _matrix("b", ["200.0000", "300.0000"], [200.0, 300.0], [[3, 4]])
    out = merge_matrices([a, b])

    assert list(out.data.columns) == ["100.0000", "200.0000", "300.0000"]
    np.testing.assert_allclose(out.mz, [100.0, 200.0, 300.0])
    np.testing.assert_allclose(out.data.to_numpy(), [[1, 2, 0], [0, 3, 4]])
    assert out.provenance["tissue"].tolist() == ["a", "b"]


def test_collision_tolerance_keeps_distant_masses_apart():
    a = _matrix("a", ["100.0000"], [100.0], [[1]])
    b = _matrix("b", ["100.0000"], [100.00004], [[2]])

    merged = merge_matrices([a, b])
    assert list(merged.data.columns) == ["100.0000"]

    split = merge_matrices([a, b], collision_tolerance=0.00001)
    assert list(split.data.columns) == ["100.0000", "100.0000_b"]
    np.testing.assert_allclose(split.data.to_numpy(), [[1, 0], [0, 2]])


def test_duplicate_dataset_names_raise():
    a = _matrix("a", ["100.0000"], [100.0], [[1]])
    with pytest.raises(ValueError):
        merge_matrices([a, a])


def test_metadata_is_attached_per_dataset():
    a = _matrix("a", ["100.0000"], [100.0], [[1], [2]])
    out = merge_matrices([a], metadata=[{"tissue": "kidney", "site": "x"}])
    frame = out.to_frame()

    assert frame.index.tolist() == ["a.1", "a.2"]
    assert frame["tissue"].tolist() == ["kidney", "kidney"]
    assert frame["site"].tolist() == ["x", "x"]
    assert list(frame.columns[:4]) == ["dataset", "tissue", "class", "sample"]


def test_exact_resolver_skips_runs_without_a_unique_row(tmp_path, caplog):
    run_a = _save_run(tmp_path / "runs", _matrix("kidney", ["100.0000"], [100.0], [[1]]), "run_a")
    run_b = _save_run(tmp_path / "runs", _matrix("liver", ["100.0000"], [100.0], [[2]]), "run_b")
    table = pd.DataFrame({"run_id": ["run_a"], "tissue": ["kidney"]})

    with caplog.at_level(logging.WARNING):
        out = compile_runs([run_a, run_b], resolver=ExactIdResolver(table))

    assert out.datasets == ["kidney"]
    assert out.skipped == [("liver", "0 metadata candidates")]
    assert "Skipping run" in caplog.text


def test_directory_resolver_matches_metadata_files_by_dataset_name(tmp_path, caplog):
    run_a = _save_run(tmp_path / "runs", _matrix("kidney", ["100.0000"], [100.0], [[1]]), "run_a")
    run_b = _save_run(tmp_path / "runs", _matrix("liver", ["200.0000"], [200.0], [[2]]), "run_b")
    meta = tmp_path / "meta"
    meta.mkdir()
    (meta / "kidney_info.json").write_text(json.dumps({"tissue": "renal cortex"}), encoding="utf-8")
    (meta / "liver_a.json").write_text(json.dumps({"tissue": "liver"}), encoding="utf-8")
    (meta / "liver_b.yaml").write_text("tissue: liver\n", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        out = compile_runs([run_a, run_b], resolver=DirectoryNameResolver(meta))

    assert out.datasets == ["kidney"]
    assert out.provenance["tissue"].tolist() == ["renal cortex"]
    assert out.skipped[0][0] == "liver"
    assert "2 metadata candidates" in caplog.text


def test_compile_runs_with_nothing_left_is_empty(tmp_path):
    run_a = _save_run(tmp_path / "runs", _matrix("kidney", ["100.0000"], [100.0], [[1]]), "run_a")
    out = compile_runs([run_a], resolver=ExactIdResolver(pd.DataFrame({"run_id": ["other"]})))
    assert out.n_pixels == 0
    assert out.datasets == []


def test_missing_run_dir_fails(tmp_path):
    with pytest.raises(FileNotFoundError):
        compile_runs([tmp_path / "nope"])


def test_default_tolerance_splits_shared_label_with_distant_masses():
    a = _matrix("a", ["100.0000"], [100.0], [[1]])
    b = _matrix("b", ["100.0000"], [100.00008], [[2]])

    split = merge_matrices([a, b])
    assert list(split.data.columns) == ["100.0000", "100.0000_b"]

    merged = merge_matrices([a, b], collision_tolerance=None)
    assert list(merged.data.columns) == ["100.0000"]


def test_blank_metadata_cells_fall_back_to_dataset_name(tmp_path):
    run_a = _save_run(tmp_path / "runs", _matrix("kidney", ["100.0000"], [100.0], [[1]]), "run_a")
    meta = tmp_path / "meta.csv"
    meta.write_text("run_id,tissue,site\nrun_a,,\n", encoding="utf-8")

    out = compile_runs([run_a], resolver=ExactIdResolver.from_file(meta))

    assert out.provenance["tissue"].tolist() == ["kidney"]
    assert "site" not in out.provenance.columns
