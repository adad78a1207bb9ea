import numpy as np
import pytest
import torch


TRUE_CENTERS = np.array([[0.0, 0.0], [10.0, 10.0]])


def two_clusters(rng, n_per_cluster=500, std=0.5):
    """Two well-separated isotropic Gaussian clusters around (0,0) and (10,10)."""
    parts = [c + std * rng.randn(n_per_cluster, 2) for c in TRUE_CENTERS]
    return np.concatenate(parts, axis=0)


@pytest.fixture
def blobs():
    return torch.from_numpy(two_clusters(np.random.RandomState(0)))


@pytest.fixture
def small_blobs():
    return torch.from_numpy(two_clusters(np.random.RandomState(1), n_per_cluster=60))
