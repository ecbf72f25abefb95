import numpy as np
import pandas as pd
import pytest

from msi_align.matrix import AlignedMatrix
from msi_align.normalize import normalize_matrix, normalize_rows


def test_tic_rows_sum_to_one_and_zero_rows_stay_zero():
    x = np.array([[1.0, 3.0, 0.0], [0.0, 0.0, 0.0], [2.0, 2.0, 4.0]])
    out = normalize_rows(x, "tic")

    np.testing.assert_allclose(out[[0, 2]].sum(axis=1), 1.0, atol=1e-6)
    assert np.all(out[1] == 0.0)


def test_maxpeak():
    out = normalize_rows(np.array([[2.0, 4.0, 1.0]]), "maxpeak")
    np.testing.assert_allclose(out, [[0.5, 1.0, 0.25]])


def test_median_divides_by_whole_row_median():
    out = normalize_rows(np.array([[1.0, 2.0, 4.0, 6.0]]), "median")
    np.testing.assert_allclose(out, [[1 / 3, 2 / 3, 4 / 3, 2.0]])


def test_median_of_sparse_row_is_zero_so_row_stays_zero():
    out = normalize_rows(np.array([[0.0, 0.0, 0.0, 2.0, 4.0]]), "median")
    assert np.all(out == 0.0)


def test_median_nonzero_ignores_zeros():
    out = normalize_rows(np.array([[0.0, 2.0, 4.0, 6.0]]), "median_nonzero")
    np.testing.assert_allclose(out, [[0.0, 0.5, 1.0, 1.5]])


def test_medianlog_centres_logged_row_on_its_median():
    x = np.array([[0.0, np.e - 1.0, np.exp(3.0) - 1.0], [0.0, 0.0, 0.0]])
    out = normalize_rows(x, "medianlog")
    np.testing.assert_allclose(out, [[-1.0, 0.0, 2.0], [0.0, 0.0, 0.0]], atol=1e-12)


def test_none_returns_copy():
    x = np.array([[1.0, 2.0]])
    out = normalize_rows(x, "none")
    out[0, 0] = 9.0
    assert x[0, 0] == 1.0


def test_invalid_input_raises():
    with pytest.raises(ValueError):
        normalize_rows(np.ones((2, 2)), "zscore")
    with pytest.raises(ValueError):
        normalize_rows(np.ones(3), "tic")


def test_normalize_matrix_keeps_labels_and_index():
    index = pd.Index(["a.1", "a.2"], name="pixel_id")
    data = pd.DataFrame([[1.0, 1.0], [0.0, 5.0]], index=index, columns=["100.0000", "200.0000"])
    matrix = AlignedMatrix(data=data, mz=np.array([100.0, 200.0]), pixels=pd.DataFrame(index=index), name="a")

    out = normalize_matrix(matrix, "tic")
    assert isinstance(out, AlignedMatrix)
    assert out.labels == matrix.labels
    np.testing.assert_allclose(out.values(), [[0.5, 0.5], [0.0, 1.0]])
    assert isinstance(normalize_matrix(data, "tic"), pd.DataFrame)
