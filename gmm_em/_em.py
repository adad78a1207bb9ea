# gmm_em/_em.py
"""EM iterations for a Gaussian mixture with full covariance storage.

One EMFit.fit call walks through

    INITIALIZED -> ITERATING -> CONVERGED | MAX_ITERATIONS_REACHED

and raises FatalNumericalError instead of entering a FAILED state. Each
iteration is an M-step (weights, means, covariances, then the covariance
constraint and the positive-definite corrector), followed by an E-step on
the new parameters. The E-step also yields the total log-likelihood used for
the convergence test.

Alignment notes:
- responsibilities are kept in log space and normalized with logsumexp.
- rows whose normalizer underflows to -inf (every weighted log-density is
  -inf) are clamped from below at ``log_density_floor`` and become uniform;
  all other rows are normalized exactly.
- nk smoothing uses: nk = resp.sum(0) + 10 * eps(dtype).
- convergence is |ll_new - ll_old| < tolerance on the *total* log-likelihood.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import torch

from ._constraints import CovarianceConstraint, NoConstraint, PositiveDefiniteCorrector
from ._errors import ConfigurationError, FatalNumericalError
from ._gaussian import _nk_eps, _safe_log, estimate_log_gaussian_prob
from ._init import Initializer, KMeansInitializer
from ._model import GaussianMixtureModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 250
DEFAULT_TOLERANCE = 1e-10

_DEFAULT = object()


class EMState(enum.Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class FitResult:
    model: GaussianMixtureModel
    log_likelihood: float
    initial_log_likelihood: float
    n_iter: int
    state: EMState
    log_likelihoods: List[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state is EMState.CONVERGED


# ---------------------------
# EM steps
# ---------------------------

def expectation_step(
    X: torch.Tensor,
    model: GaussianMixtureModel,
    log_density_floor: Optional[float] = None,
) -> Tuple[float, torch.Tensor]:
    """E-step. Returns (total log-likelihood, log_resp (N,K))."""
    log_prob = estimate_log_gaussian_prob(X, model.means, model.precisions_cholesky)  # (N,K)
    weighted_log_prob = log_prob + _safe_log(model.weights).unsqueeze(0)  # (N,K)

    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    if log_density_floor is not None:
        # only rows that cannot be normalized; every other row stays exact
        rows = ~torch.isfinite(log_prob_norm)
        if bool(rows.any()):
            floored = torch.nan_to_num(weighted_log_prob, nan=log_density_floor, neginf=log_density_floor)
            weighted_log_prob = torch.where(rows.unsqueeze(1), floored, weighted_log_prob)
            log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)

    if not bool(torch.isfinite(log_prob_norm).all()):
        bad = int((~torch.isfinite(log_prob_norm)).sum())
        raise FatalNumericalError(
            f"{bad} responsibility row(s) could not be normalized: every component density is zero or undefined."
        )
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    return float(log_prob_norm.sum().item()), log_resp


def maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    constraint: Optional[CovarianceConstraint] = None,
    corrector: Optional[PositiveDefiniteCorrector] = None,
) -> GaussianMixtureModel:
    """M-step producing an updated model from log-responsibilities."""
    N, D = X.shape
    K = log_resp.shape[1]
    assert log_resp.shape == (N, K)

    resp = log_resp.exp()  # (N,K)
    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)

    weights = nk / nk.sum()
    means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    # For each k: sum_n resp[n,k] * diff[n,k,:] * diff[n,k,:]^T / nk[k]
    cov = torch.einsum('nk,nkd,nke->kde', resp, diff, diff) / nk.view(K, 1, 1)  # (K,D,D)

    if constraint is not None:
        cov = constraint.apply(cov)
    if corrector is not None:
        cov = corrector.correct(cov)

    return GaussianMixtureModel(weights=weights, means=means, covariances=cov)


# ---------------------------
# Fitter
# ---------------------------

class EMFit:
    """Iterate EM from an initial mixture to convergence."""

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
        initializer: Optional[Initializer] = None,
        constraint: Optional[CovarianceConstraint] = None,
        corrector: Optional[PositiveDefiniteCorrector] = _DEFAULT,
        log_density_floor=_DEFAULT,
    ) -> None:
        if max_iterations < 0:
            raise ConfigurationError("max_iterations must be non-negative (0 means no limit)")
        if tolerance < 0:
            raise ConfigurationError("tolerance must be non-negative")

        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.initializer = initializer if initializer is not None else KMeansInitializer()
        self.constraint = constraint if constraint is not None else NoConstraint()
        self.corrector = PositiveDefiniteCorrector() if corrector is _DEFAULT else corrector
        self._log_density_floor = log_density_floor

    def __repr__(self) -> str:
        return (
            f"EMFit(max_iterations={self.max_iterations}, tolerance={self.tolerance}, "
            f"initializer={self.initializer!r}, constraint={self.constraint!r}, corrector={self.corrector!r})"
        )

    @property
    def force_positive_definite(self) -> bool:
        return self.corrector is not None

    def log_density_floor(self, dtype: torch.dtype) -> Optional[float]:
        if self._log_density_floor is _DEFAULT:
            return math.log(torch.finfo(dtype).tiny)
        return self._log_density_floor

    def legalize(self, model: GaussianMixtureModel) -> GaussianMixtureModel:
        """Apply the constraint and corrector to a model's covariances."""
        cov = self.constraint.apply(model.covariances)
        if self.corrector is not None:
            cov = self.corrector.correct(cov)
        return GaussianMixtureModel(weights=model.weights, means=model.means, covariances=cov)

    @torch.no_grad()
    def fit(
        self,
        X: torch.Tensor,
        initial_model: Optional[GaussianMixtureModel] = None,
        n_components: Optional[int] = None,
        generator: Optional[torch.Generator] = None,
    ) -> FitResult:
        """Run EM on X (N, D).

        Starts from ``initial_model`` if given, otherwise from
        ``self.initializer`` with ``n_components`` components.
        """
        if initial_model is None:
            if n_components is None:
                raise ConfigurationError("Either initial_model or n_components must be given")
            initial_model = self.initializer.initialize(X, n_components, generator)
        model = self.legalize(initial_model.to(device=X.device, dtype=X.dtype))

        floor = self.log_density_floor(X.dtype)
        lower, log_resp = expectation_step(X, model, floor)
        initial_lower = lower
        history = [lower]
        logger.debug("EM initial log-likelihood %.10g", lower)

        n_iter = 0
        state = EMState.ITERATING
        while state is EMState.ITERATING:
            model = maximization_step(X, log_resp, self.constraint, self.corrector)
            n_iter += 1

            new_lower, log_resp = expectation_step(X, model, floor)
            history.append(new_lower)
            change = new_lower - lower
            lower = new_lower
            logger.debug("EM iteration %d: log-likelihood %.10g (change %.3g)", n_iter, lower, change)

            if abs(change) < self.tolerance:
                state = EMState.CONVERGED
            elif self.max_iterations and n_iter >= self.max_iterations:
                state = EMState.MAX_ITERATIONS_REACHED

        if state is EMState.MAX_ITERATIONS_REACHED:
            logger.info("EM stopped after %d iterations without converging", n_iter)
        else:
            logger.debug("EM converged after %d iterations", n_iter)

        return FitResult(
            model=model,
            log_likelihood=lower,
            initial_log_likelihood=initial_lower,
            n_iter=n_iter,
            state=state,
            log_likelihoods=history,
        )
