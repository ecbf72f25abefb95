import json
from pathlib import Path

import numpy as np
import pytest

from msi_align.checkpoint import MANIFEST_FILE, load_spectra
from msi_align.config import AlignConfig
from msi_align.pipeline import align_dataset, run_alignment


def _write_dataset(root: Path) -> Path:
    (root / "tissue").mkdir(parents=True, exist_ok=True)
    (root / "tissue" / "s.1.csv").write_text("mz,intensity\n100.001,10\n100.002,5\n", encoding="utf-8")
    (root / "tissue" / "s.2.csv").write_text("mz,intensity\n500.5,20\n", encoding="utf-8")
    return root


def test_align_dataset_two_pixel_example(tmp_path):
    root = _write_dataset(tmp_path / "demo")
    result = align_dataset(root, AlignConfig(clust_h=0.01, clust_int_method="sumints"))
    m = result.matrix

    assert m.name == "demo"
    assert m.data.index.tolist() == ["s.1", "s.2"]
    np.testing.assert_allclose(m.mz, [100.0015, 500.5])
    np.testing.assert_allclose(m.values(), [[15.0, 0.0], [0.0, 20.0]])
    assert result.summary()["n_centroids"] == 2


def test_maxint_and_binning(tmp_path):
    root = _write_dataset(tmp_path / "demo")
    result = align_dataset(root, AlignConfig(peak_alignment_method="binning", bin_width=0.01, clust_int_method="maxint"))
    np.testing.assert_allclose(result.matrix.values()[0], [10.0, 0.0])
    assert result.clusters.method == "binning"


def test_background_file_removes_column(tmp_path):
    root = _write_dataset(tmp_path / "demo")
    bg = tmp_path / "background.csv"
    bg.write_text("500.5\n", encoding="utf-8")
    result = align_dataset(root, AlignConfig(clust_h=0.01, background_file=str(bg)))

    np.testing.assert_allclose(result.matrix.mz, [100.0015])
    report = result.filtered.report.set_index("step")
    assert report.loc["background", "n_after"] == 1


def test_all_files_failing_raises(tmp_path):
    root = tmp_path / "bad"
    (root / "x").mkdir(parents=True)
    (root / "x" / "a.csv").write_text("a,b,c\n1,2,3\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        align_dataset(root)


def test_run_alignment_reuses_checkpoint(tmp_path):
    root = _write_dataset(tmp_path / "demo")
    out_dir = tmp_path / "runs"
    cfg = AlignConfig(clust_h=0.01)

    run_dir, result = run_alignment(root, out_dir, cfg)
    assert result is not None
    manifest = json.loads((run_dir / MANIFEST_FILE).read_text(encoding="utf-8"))
    assert manifest["dataset"] == "demo"
    assert manifest["n_features"] == 2
    assert manifest["run_id"] == run_dir.name
    assert (run_dir / "aligned_matrix.csv").exists()
    assert (run_dir / "all_centroids.csv").exists()
    assert len(load_spectra(run_dir)) == 3

    again, reused = run_alignment(root, out_dir, cfg)
    assert again == run_dir
    assert reused is None

    forced, recomputed = run_alignment(root, out_dir, cfg, force=True)
    assert forced == run_dir
    assert recomputed is not None

    other, _ = run_alignment(root, out_dir, AlignConfig(clust_h=0.02))
    assert other != run_dir


def test_no_columns_in_mass_range_gives_empty_matrix(tmp_path):
    root = _write_dataset(tmp_path / "demo")
    result = align_dataset(root, AlignConfig(mass_range=(600.0, 1200.0)))

    assert result.matrix.n_features == 0
    assert result.matrix.n_pixels == 2
    assert result.matrix.data.index.tolist() == ["s.1", "s.2"]


def test_same_content_roots_get_their_own_runs(tmp_path):
    kidney = _write_dataset(tmp_path / "kidney")
    liver = _write_dataset(tmp_path / "liver")
    out_dir = tmp_path / "runs"

    kidney_dir, _ = run_alignment(kidney, out_dir)
    liver_dir, liver_result = run_alignment(liver, out_dir)

    assert liver_dir != kidney_dir
    assert liver_result is not None
    manifest = json.loads((liver_dir / MANIFEST_FILE).read_text(encoding="utf-8"))
    assert manifest["dataset"] == "liver"

    named_dir, _ = run_alignment(liver, out_dir, name="liver")
    assert named_dir == liver_dir
