# gmm_em/_model.py
"""In-memory Gaussian mixture model.

Storage (always full covariances, also under the diagonal constraint):
- weights:      (K,)
- means:        (K, D)
- covariances:  (K, D, D)

precisions_cholesky is derived lazily from covariances and cached; a model
is treated as immutable once built.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import torch

from ._errors import ConfigurationError, FatalNumericalError
from ._gaussian import _safe_log, compute_precisions, compute_precisions_cholesky, estimate_log_gaussian_prob

FORMAT_VERSION = 1


@dataclass(eq=False)
class GaussianMixtureModel:
    weights: torch.Tensor
    means: torch.Tensor
    covariances: torch.Tensor
    _prec_chol: Optional[torch.Tensor] = field(default=None, init=False, repr=False, compare=False)

    @property
    def n_components(self) -> int:
        return int(self.means.shape[0])

    @property
    def dimensionality(self) -> int:
        return int(self.means.shape[1])

    @property
    def dtype(self) -> torch.dtype:
        return self.means.dtype

    @property
    def device(self) -> torch.device:
        return self.means.device

    def validate(self) -> "GaussianMixtureModel":
        """Check shapes and the weight simplex. Raises ConfigurationError."""
        if self.means.dim() != 2 or self.means.shape[0] < 1:
            raise ConfigurationError(f"means must have shape (K,D) with K >= 1, got {tuple(self.means.shape)}")
        K, D = self.means.shape
        if self.weights.shape != (K,):
            raise ConfigurationError(f"weights must have shape (K,) = {(K,)}, got {tuple(self.weights.shape)}")
        if self.covariances.shape != (K, D, D):
            raise ConfigurationError(
                f"covariances must have shape (K,D,D) = {(K, D, D)}, got {tuple(self.covariances.shape)}"
            )
        if bool((self.weights < 0).any()) or not bool(torch.isfinite(self.weights).all()):
            raise ConfigurationError("weights must be finite and non-negative")
        total = float(self.weights.sum())
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"weights must sum to 1, got {total}")
        return self

    def to(self, device=None, dtype=None) -> "GaussianMixtureModel":
        return GaussianMixtureModel(
            weights=self.weights.to(device=device, dtype=dtype),
            means=self.means.to(device=device, dtype=dtype),
            covariances=self.covariances.to(device=device, dtype=dtype),
        )

    # -----------------------
    # Densities
    # -----------------------

    @property
    def precisions_cholesky(self) -> torch.Tensor:
        if self._prec_chol is None:
            self._prec_chol = compute_precisions_cholesky(self.covariances)
        return self._prec_chol

    @property
    def precisions(self) -> torch.Tensor:
        return compute_precisions(self.precisions_cholesky)

    def _check_X(self, X: torch.Tensor) -> torch.Tensor:
        X = torch.as_tensor(X, dtype=self.dtype, device=self.device)
        if X.dim() != 2 or X.shape[1] != self.dimensionality:
            raise ConfigurationError(
                f"X must have shape (N, {self.dimensionality}), got {tuple(X.shape)}"
            )
        return X

    @torch.no_grad()
    def weighted_log_prob(self, X: torch.Tensor) -> torch.Tensor:
        """log w_k + log N(x_n | mu_k, cov_k), shape (N, K)."""
        X = self._check_X(X)
        log_prob = estimate_log_gaussian_prob(X, self.means, self.precisions_cholesky)
        return log_prob + _safe_log(self.weights).unsqueeze(0)

    @torch.no_grad()
    def score_samples(self, X: torch.Tensor) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        return torch.logsumexp(self.weighted_log_prob(X), dim=1)

    @torch.no_grad()
    def log_likelihood(self, X: torch.Tensor) -> float:
        """Total log-likelihood of the data under the model."""
        return float(self.score_samples(X).sum().item())

    @torch.no_grad()
    def predict_proba(self, X: torch.Tensor) -> torch.Tensor:
        """Posterior responsibilities (N, K)."""
        wlp = self.weighted_log_prob(X)
        return (wlp - torch.logsumexp(wlp, dim=1, keepdim=True)).exp()

    @torch.no_grad()
    def predict(self, X: torch.Tensor) -> torch.Tensor:
        """Most likely component of each observation."""
        return torch.argmax(self.weighted_log_prob(X), dim=1)

    def n_parameters(self, diagonal: bool = False) -> int:
        """Free parameter count, for AIC/BIC."""
        K, D = self.n_components, self.dimensionality
        cov_params = K * D if diagonal else K * D * (D + 1) // 2
        return int((K - 1) + K * D + cov_params)

    @torch.no_grad()
    def aic(self, X: torch.Tensor, diagonal: bool = False) -> float:
        """Akaike information criterion."""
        return 2.0 * self.n_parameters(diagonal) - 2.0 * self.log_likelihood(X)

    @torch.no_grad()
    def bic(self, X: torch.Tensor, diagonal: bool = False) -> float:
        """Bayesian information criterion."""
        N = self._check_X(X).shape[0]
        return math.log(N) * self.n_parameters(diagonal) - 2.0 * self.log_likelihood(X)

    @torch.no_grad()
    def sample(self, n_samples: int, generator: Optional[torch.Generator] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        if n_samples <= 0:
            raise ConfigurationError("n_samples must be positive")

        labels = torch.multinomial(self.weights, n_samples, replacement=True, generator=generator)
        L, info = torch.linalg.cholesky_ex(self.covariances)  # (K,D,D)
        if bool((info != 0).any()):
            bad = torch.nonzero(info != 0).flatten().tolist()
            raise FatalNumericalError(
                f"Covariance matrix of component(s) {bad} is not positive definite; cannot sample."
            )
        z = torch.randn(
            (n_samples, self.dimensionality), generator=generator, dtype=self.dtype, device=self.device
        )
        X_out = self.means[labels] + torch.einsum('nde,ne->nd', L[labels], z)
        return X_out, labels

    # -----------------------
    # Persistence
    # -----------------------

    def save(self, path: Union[str, Path]) -> None:
        state = {
            "format_version": FORMAT_VERSION,
            "weights": self.weights.detach().cpu(),
            "means": self.means.detach().cpu(),
            "covariances": self.covariances.detach().cpu(),
        }
        torch.save(state, Path(path))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "GaussianMixtureModel":
        state = torch.load(Path(path), map_location="cpu", weights_only=True)
        version = state.get("format_version")
        if version != FORMAT_VERSION:
            raise ConfigurationError(f"Unsupported GMM file format version {version!r} in {path}")
        return cls(
            weights=state["weights"],
            means=state["means"],
            covariances=state["covariances"],
        ).validate()
