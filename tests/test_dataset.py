import logging
from pathlib import Path

import numpy as np
import pytest

from msi_align.dataset import extract_peaks, list_spectrum_files, load_pixel_file, scan_dataset
from msi_align.msi_utils import SpectrumSchema, load_background, split_pixel_stem


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _make_root(root: Path) -> Path:
    _write(root / "tumor" / "p1.1.csv", "mz,intensity\n200.0,4\n100.0,1\n")
    _write(root / "tumor" / "p1.2.csv", "MZ,Intensity\n100.001,2\n")
    _write(root / "normal" / "p2.1.txt", "100.0\t5\n300.0\t7\n")
    _write(root / "normal" / "notes.md", "ignored")
    return root


def test_split_pixel_stem():
    assert split_pixel_stem("patient3.12") == ("patient3", 12)
    assert split_pixel_stem("patient3_scan12") == ("patient3", 12)
    assert split_pixel_stem("blank") == ("blank", None)


def test_list_spectrum_files_is_sorted_and_filtered(tmp_path):
    root = _make_root(tmp_path / "ds")
    files = list_spectrum_files(root)
    assert [(c, p.name) for c, p in files] == [
        ("normal", "p2.1.txt"),
        ("tumor", "p1.1.csv"),
        ("tumor", "p1.2.csv"),
    ]


def test_load_pixel_file_sorts_peaks_and_reads_headerless(tmp_path):
    root = _make_root(tmp_path / "ds")
    (px,) = load_pixel_file(root / "tumor" / "p1.1.csv", "tumor")
    assert px.pixel_id == "p1.1"
    assert px.mz.tolist() == [100.0, 200.0]
    assert px.intensity.tolist() == [1.0, 4.0]

    (hl,) = load_pixel_file(root / "normal" / "p2.1.txt", "normal")
    assert hl.mz.tolist() == [100.0, 300.0]
    assert hl.tic == 12.0


def test_scan_column_splits_one_file_into_pixels(tmp_path):
    path = _write(tmp_path / "ds" / "tumor" / "section7.csv", "mz,intensity,scan\n100,1,2\n101,2,1\n102,3,2\n")
    pixels = load_pixel_file(path, "tumor", SpectrumSchema())
    assert [px.pixel_id for px in pixels] == ["section7.1", "section7.2"]
    assert pixels[1].mz.tolist() == [100.0, 102.0]


def test_scan_dataset_builds_classes_in_order(tmp_path):
    root = _make_root(tmp_path / "ds")
    ds, report = scan_dataset(root)

    assert ds.name == "ds"
    assert [g.name for g in ds.classes] == ["normal", "tumor"]
    assert ds.pixel_ids == ["p2.1", "p1.1", "p1.2"]
    assert ds.pixel_index["p1.2"] == 2
    assert report.n_files == 3 and report.n_failed == 0

    peaks = extract_peaks(ds)
    assert len(peaks) == 5
    assert peaks.pixel.tolist() == [0, 0, 1, 1, 2]


def test_scan_dataset_parallel_matches_serial(tmp_path):
    root = _make_root(tmp_path / "ds")
    serial, _ = scan_dataset(root, n_jobs=1)
    parallel, _ = scan_dataset(root, n_jobs=2)
    assert serial.pixel_ids == parallel.pixel_ids


def test_failing_file_is_isolated(tmp_path, caplog):
    root = _make_root(tmp_path / "ds")
    _write(root / "tumor" / "p1.3.csv", "a,b,c\nx,y,z\n")

    with caplog.at_level(logging.WARNING):
        ds, report = scan_dataset(root)

    assert ds.n_pixels == 3
    assert report.n_failed == 1
    assert report.failures[0][0].endswith("p1.3.csv")
    assert "Skipping" in caplog.text

    with pytest.raises(ValueError):
        scan_dataset(root, strict=True)


def test_duplicate_pixel_ids_fail(tmp_path):
    root = tmp_path / "ds"
    _write(root / "a" / "s.1.csv", "mz,intensity\n100,1\n")
    _write(root / "b" / "s.1.csv", "mz,intensity\n100,1\n")
    with pytest.raises(ValueError):
        scan_dataset(root)


def test_load_background_with_and_without_header(tmp_path):
    plain = _write(tmp_path / "bg.csv", "300.1\n100.2\n")
    named = _write(tmp_path / "bg2.csv", "mz\n300.1\n100.2\n")
    np.testing.assert_allclose(load_background(plain), [100.2, 300.1])
    np.testing.assert_allclose(load_background(named), [100.2, 300.1])


def test_headerless_file_with_repeated_first_row_values(tmp_path):
    path = _write(tmp_path / "ds" / "tumor" / "p9.1.csv", "100.0,100.0\n200.0,5\n")
    (px,) = load_pixel_file(path, "tumor")
    assert px.mz.tolist() == [100.0, 200.0]
    assert px.intensity.tolist() == [100.0, 5.0]
