import numpy as np
import pytest

from msi_align.clustering import cluster_masses
from msi_align.dataset import PeakTable
from msi_align.matching import match_peaks, match_pixel, resolve_mode


def test_match_pixel_sum_and_max():
    assert match_pixel([0, 0, 1], [10.0, 5.0, 20.0], 2, "sumints") == {0: 15.0, 1: 20.0}
    assert match_pixel([0, 0, 1], [10.0, 5.0, 20.0], 2, "maxint") == {0: 10.0, 1: 20.0}


def test_match_pixel_rejects_out_of_range_labels():
    with pytest.raises(ValueError):
        match_pixel([0, 3], [1.0, 1.0], 2)
    with pytest.raises(ValueError):
        match_pixel([-1], [1.0], 2)


def test_unknown_mode_raises():
    assert resolve_mode(" MaxInt ") == "max"
    with pytest.raises(ValueError):
        resolve_mode("mean")


def test_match_peaks_uses_global_cluster_labels():
    peaks = PeakTable(
        mz=np.array([100.001, 100.002, 500.5]),
        intensity=np.array([10.0, 5.0, 20.0]),
        pixel=np.array([0, 0, 1]),
    )
    clusters = cluster_masses(peaks.mz, 0.01)
    out = match_peaks(peaks, clusters, "sum")

    assert list(out.columns) == ["pixel", "centroid", "intensity"]
    assert out.to_dict(orient="records") == [
        {"pixel": 0, "centroid": 0, "intensity": 15.0},
        {"pixel": 1, "centroid": 1, "intensity": 20.0},
    ]


def test_match_peaks_requires_matching_peak_count():
    peaks = PeakTable(mz=np.array([1.0]), intensity=np.array([1.0]), pixel=np.array([0]))
    clusters = cluster_masses([1.0, 2.0], 0.01)
    with pytest.raises(ValueError):
        match_peaks(peaks, clusters)
