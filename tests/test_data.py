# tests/test_data.py
import warnings

import numpy as np
import pandas as pd
import pytest
import torch

from gmm_em import ConfigurationError, add_noise, as_tensor, load_dataset


def test_as_tensor_accepts_common_inputs():
    arr = np.arange(6, dtype=np.float32).reshape(3, 2)
    for X in (arr, torch.from_numpy(arr), pd.DataFrame(arr), arr.tolist()):
        t = as_tensor(X)
        assert t.dtype == torch.float64
        assert t.shape == (3, 2)


def test_as_tensor_accepts_read_only_arrays():
    arr = np.arange(6, dtype=np.float64).reshape(3, 2)
    arr.setflags(write=False)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        t = as_tensor(arr)
    assert t.shape == (3, 2)
    t[0, 0] = 42.0
    assert arr[0, 0] == 0.0


@pytest.mark.parametrize("X", [
    np.zeros(3),
    np.zeros((0, 2)),
    np.zeros((2, 0)),
    np.array([[1.0, np.inf]]),
    np.array([[np.nan, 1.0]]),
])
def test_as_tensor_rejects_unusable_data(X):
    with pytest.raises(ConfigurationError):
        as_tensor(X)


def test_load_csv(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("1.0,2.0\n3.0,4.0\n5.0,6.5\n")
    X = load_dataset(path)
    np.testing.assert_array_equal(X, [[1.0, 2.0], [3.0, 4.0], [5.0, 6.5]])


def test_load_whitespace_delimited(tmp_path):
    path = tmp_path / "data.txt"
    path.write_text("1 2 3\n4  5\t6\n")
    X = load_dataset(path)
    np.testing.assert_array_equal(X, [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_dataset(tmp_path / "nope.csv")


def test_load_non_numeric(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("1.0,abc\n3.0,4.0\n")
    with pytest.raises(ConfigurationError):
        load_dataset(path)


def test_add_noise_zero_variance_is_identity():
    X = torch.ones((4, 2), dtype=torch.float64)
    assert add_noise(X, 0.0) is X


def test_add_noise_is_seeded():
    X = torch.zeros((20000, 2), dtype=torch.float64)
    a = add_noise(X, 4.0, torch.Generator().manual_seed(1))
    b = add_noise(X, 4.0, torch.Generator().manual_seed(1))

    assert torch.equal(a, b)
    # variance, not standard deviation
    assert abs(float(a.var()) - 4.0) < 0.2


def test_add_noise_rejects_negative_variance():
    with pytest.raises(ConfigurationError):
        add_noise(torch.zeros((2, 2), dtype=torch.float64), -1.0)
