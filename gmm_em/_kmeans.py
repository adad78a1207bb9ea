# gmm_em/_kmeans.py
"""k-means clustering used to initialize the mixture.

KMeans.cluster(X, K, generator) -> (labels (N,), centroids (K, D)), with
squared-Euclidean distance. The initial centers come from a pluggable
strategy:
- 'k-means++': k-means++ seeding
- 'random':    K distinct observations drawn at random
- a callable ``init(X, K, generator) -> (K, D)``, e.g. RefinedStart

Backends:
- 'torch':   Lloyd iterations in PyTorch
- 'sklearn': sklearn.cluster.KMeans with n_init=1, random_state drawn from
             the generator (callable inits are evaluated first and passed in
             as an explicit center array)

All randomness comes from the torch.Generator passed in; nothing touches the
global RNG.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple, Union

import torch
from sklearn.cluster import KMeans as SklearnKMeans

from ._errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_KMEANS_MAX_ITER = 1000
DEFAULT_SAMPLINGS = 100
DEFAULT_PERCENTAGE = 0.02

InitStrategy = Callable[[torch.Tensor, int, Optional[torch.Generator]], torch.Tensor]


# ---------------------------
# Seeding strategies
# ---------------------------

@torch.no_grad()
def kmeans_plus_plus_centroids(X: torch.Tensor, K: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    # First centroid uniformly
    i0 = torch.randint(0, N, (1,), generator=generator, device=X.device).item()
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total <= 0:
            # every point coincides with a chosen centroid
            idx = torch.randint(0, N, (1,), generator=generator, device=X.device).item()
        else:
            idx = torch.multinomial(closest_d2 / total, 1, generator=generator).item()
        centroids[k] = X[idx]

        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = torch.minimum(closest_d2, d2_new)

    return centroids


@torch.no_grad()
def random_sample_centroids(X: torch.Tensor, K: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
    """K distinct observations chosen uniformly at random."""
    idx = torch.randperm(X.shape[0], generator=generator, device=X.device)[:K]
    return X[idx].clone()


_NAMED_INITS = {
    "k-means++": kmeans_plus_plus_centroids,
    "random": random_sample_centroids,
}


# ---------------------------
# Lloyd iterations
# ---------------------------

def _assign(X: torch.Tensor, centroids: torch.Tensor) -> torch.Tensor:
    d2 = torch.cdist(X, centroids).pow(2)  # (N,K)
    return torch.argmin(d2, dim=1)


def distortion(X: torch.Tensor, centroids: torch.Tensor, labels: torch.Tensor) -> float:
    """Sum of squared distances from each point to its assigned centroid."""
    return float(torch.sum((X - centroids[labels]) ** 2).item())


@torch.no_grad()
def lloyd(
    X: torch.Tensor,
    centroids: torch.Tensor,
    max_iter: int = DEFAULT_KMEANS_MAX_ITER,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Run Lloyd iterations from the given centroids until they stop moving.

    Empty clusters are reseeded with a random observation. Returns
    (labels (N,), centroids (K, D)).
    """
    N, D = X.shape
    K, D2 = centroids.shape
    assert D == D2

    centroids = centroids.clone()
    for _ in range(max_iter):
        labels = _assign(X, centroids)

        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)
        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        new_centroids = sums / counts.clamp_min(1.0).unsqueeze(1)

        empty_mask = counts == 0
        if empty_mask.any():
            random_idx = torch.randint(0, N, (int(empty_mask.sum().item()),), generator=generator, device=X.device)
            new_centroids[empty_mask] = X[random_idx]

        moved = not torch.equal(new_centroids, centroids)
        centroids = new_centroids
        if not moved:
            break

    return _assign(X, centroids), centroids


# ---------------------------
# Clusterer
# ---------------------------

class KMeans:
    """k-means with a pluggable initial-center strategy and backend."""

    def __init__(
        self,
        max_iter: int = DEFAULT_KMEANS_MAX_ITER,
        init: Union[str, InitStrategy] = "k-means++",
        backend: str = "torch",
    ) -> None:
        if max_iter <= 0:
            raise ConfigurationError("k-means max_iter must be positive")
        if isinstance(init, str) and init not in _NAMED_INITS:
            raise ConfigurationError(f"init must be one of {sorted(_NAMED_INITS)} or a callable, got {init!r}")
        if backend not in ("torch", "sklearn"):
            raise ConfigurationError(f"backend must be 'torch' or 'sklearn', got {backend!r}")
        self.max_iter = max_iter
        self.init = init
        self.backend = backend

    def __repr__(self) -> str:
        return f"KMeans(max_iter={self.max_iter}, init={self.init!r}, backend={self.backend!r})"

    def initial_centroids(self, X: torch.Tensor, K: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        strategy = _NAMED_INITS[self.init] if isinstance(self.init, str) else self.init
        return strategy(X, K, generator)

    @torch.no_grad()
    def cluster(
        self,
        X: torch.Tensor,
        K: int,
        generator: Optional[torch.Generator] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        N = X.shape[0]
        if K < 1:
            raise ConfigurationError(f"Number of clusters must be >= 1, got {K}")
        if N < K:
            raise ConfigurationError(f"Cannot form {K} clusters from {N} points")

        if self.backend == "sklearn":
            return self._cluster_sklearn(X, K, generator)

        centroids = self.initial_centroids(X, K, generator)
        return lloyd(X, centroids, max_iter=self.max_iter, generator=generator)

    def _cluster_sklearn(
        self,
        X: torch.Tensor,
        K: int,
        generator: Optional[torch.Generator],
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        if isinstance(self.init, str):
            init = self.init
        else:
            init = self.initial_centroids(X, K, generator).cpu().numpy()
        random_state = int(torch.randint(0, 2**31 - 1, (1,), generator=generator, device=X.device).item())

        km = SklearnKMeans(
            n_clusters=K,
            init=init,
            n_init=1,
            max_iter=self.max_iter,
            random_state=random_state,
        ).fit(X.cpu().numpy())

        labels = torch.from_numpy(km.labels_).to(device=X.device, dtype=torch.long)
        centroids = torch.from_numpy(km.cluster_centers_).to(device=X.device, dtype=X.dtype)
        return labels, centroids


# ---------------------------
# Refined start (Bradley & Fayyad, 1998)
# ---------------------------

class RefinedStart:
    """Refined initial centers from clustered sub-sample solutions.

    Draws ``samplings`` sub-samples of ``percentage * N`` points each (at
    least K), clusters every sub-sample from random starting points, then
    clusters the pooled sub-sample centroids once per candidate set (started
    from that set) and keeps the solution with the smallest distortion over
    the pool.
    """

    def __init__(
        self,
        samplings: int = DEFAULT_SAMPLINGS,
        percentage: float = DEFAULT_PERCENTAGE,
        max_iter: int = DEFAULT_KMEANS_MAX_ITER,
    ) -> None:
        validate_refined_start(samplings, percentage)
        self.samplings = int(samplings)
        self.percentage = float(percentage)
        self.max_iter = max_iter

    def __repr__(self) -> str:
        return f"RefinedStart(samplings={self.samplings}, percentage={self.percentage})"

    @torch.no_grad()
    def __call__(self, X: torch.Tensor, K: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        N = X.shape[0]
        n_points = min(max(int(self.percentage * N), K), N)

        candidates = []
        for _ in range(self.samplings):
            idx = torch.randperm(N, generator=generator, device=X.device)[:n_points]
            sub = X[idx]
            start = random_sample_centroids(sub, K, generator)
            _, centroids = lloyd(sub, start, max_iter=self.max_iter, generator=generator)
            candidates.append(centroids)

        pool = torch.cat(candidates, dim=0)  # (samplings*K, D)

        best_centroids = None
        best_distortion = float("inf")
        for start in candidates:
            labels, refined = lloyd(pool, start, max_iter=self.max_iter, generator=generator)
            d = distortion(pool, refined, labels)
            if d < best_distortion:
                best_distortion = d
                best_centroids = refined

        logger.debug(
            "Refined start: %d samplings of %d points, best pooled distortion %.6g",
            self.samplings, n_points, best_distortion,
        )
        return best_centroids


def validate_refined_start(samplings: int, percentage: float) -> None:
    if samplings < 1:
        raise ConfigurationError(f"Number of samplings ({samplings}) must be greater than 0!")
    if not (0.0 < percentage <= 1.0):
        raise ConfigurationError(
            f"Percentage for sampling ({percentage}) must be greater than 0.0 and less than or equal to 1.0!"
        )
