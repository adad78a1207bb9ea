# gmm_em/_init.py
"""Initial mixtures built from a k-means clustering of the data.

Each cluster becomes one component:
- mean:        the cluster centroid
- covariance:  the biased empirical covariance of its points
- weight:      its share of the points (smoothed by 10 * eps like the M-step)

Clusters with fewer than two points cannot support a covariance estimate;
they get the global (biased) covariance of the whole dataset, or the
identity if the data is constant.
"""

from __future__ import annotations

import logging
from typing import Optional

import torch

from ._gaussian import _nk_eps
from ._kmeans import DEFAULT_PERCENTAGE, DEFAULT_SAMPLINGS, KMeans, RefinedStart
from ._model import GaussianMixtureModel

logger = logging.getLogger(__name__)


def _global_covariance(X: torch.Tensor) -> torch.Tensor:
    N, D = X.shape
    Xc = X - X.mean(dim=0, keepdim=True)
    cov = (Xc.T @ Xc) / N
    if not bool(cov.any()):
        cov = torch.eye(D, device=X.device, dtype=X.dtype)
    return cov


@torch.no_grad()
def model_from_labels(X: torch.Tensor, labels: torch.Tensor, centroids: torch.Tensor) -> GaussianMixtureModel:
    """Build a mixture from hard cluster assignments."""
    N, D = X.shape
    K = centroids.shape[0]

    counts = torch.bincount(labels, minlength=K).to(X.dtype)  # (K,)
    nk = counts + _nk_eps(X.dtype)
    weights = nk / nk.sum()

    diff = X - centroids[labels]  # (N,D)
    cov = torch.zeros((K, D, D), device=X.device, dtype=X.dtype)
    cov.index_add_(0, labels, diff.unsqueeze(2) * diff.unsqueeze(1))
    cov = cov / counts.clamp_min(1.0).view(K, 1, 1)

    small = counts < 2
    if small.any():
        logger.debug(
            "Cluster(s) %s have fewer than 2 points; using the global covariance",
            torch.nonzero(small).flatten().tolist(),
        )
        cov[small] = _global_covariance(X)

    return GaussianMixtureModel(weights=weights, means=centroids.clone(), covariances=cov)


class Initializer:
    """Produces an initial (possibly coarse) mixture for one EM trial."""

    def initialize(
        self,
        X: torch.Tensor,
        n_components: int,
        generator: Optional[torch.Generator] = None,
    ) -> GaussianMixtureModel:
        raise NotImplementedError


class KMeansInitializer(Initializer):
    """Standard k-means initialization (k-means++ seeding by default)."""

    def __init__(self, kmeans: Optional[KMeans] = None) -> None:
        self.kmeans = kmeans if kmeans is not None else KMeans()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kmeans={self.kmeans!r})"

    def initialize(
        self,
        X: torch.Tensor,
        n_components: int,
        generator: Optional[torch.Generator] = None,
    ) -> GaussianMixtureModel:
        labels, centroids = self.kmeans.cluster(X, n_components, generator)
        return model_from_labels(X, labels, centroids)


class RefinedStartInitializer(KMeansInitializer):
    """k-means initialization seeded by the Bradley-Fayyad refined start."""

    def __init__(
        self,
        samplings: int = DEFAULT_SAMPLINGS,
        percentage: float = DEFAULT_PERCENTAGE,
        kmeans: Optional[KMeans] = None,
    ) -> None:
        self.refined_start = RefinedStart(samplings, percentage)
        base = kmeans if kmeans is not None else KMeans()
        super().__init__(KMeans(max_iter=base.max_iter, init=self.refined_start, backend=base.backend))


def make_initializer(
    refined_start: bool = False,
    samplings: int = DEFAULT_SAMPLINGS,
    percentage: float = DEFAULT_PERCENTAGE,
    kmeans: Optional[KMeans] = None,
) -> Initializer:
    if refined_start:
        return RefinedStartInitializer(samplings, percentage, kmeans=kmeans)
    return KMeansInitializer(kmeans)
