# gmm_em/_constraints.py
"""Covariance legality: structural constraints and positive-definite repair.

After every M-step each component covariance goes through

    cov -> constraint.apply(cov) -> corrector.correct(cov)

The constraint (NoConstraint or DiagonalConstraint) is chosen once per
training run. The corrector can be disabled by passing ``corrector=None`` to
EMFit; singular covariances then surface as FatalNumericalError when the
likelihood is evaluated.
"""

from __future__ import annotations

import logging

import torch

from ._errors import FatalNumericalError
from ._gaussian import _is_diagonal, _symmetrize

logger = logging.getLogger(__name__)


# ---------------------------
# Structural constraints
# ---------------------------

class CovarianceConstraint:
    """Policy applied to the stacked (K, D, D) covariances after each M-step."""

    diagonal = False

    def apply(self, cov: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class NoConstraint(CovarianceConstraint):
    """Full covariances, no structural restriction."""

    def apply(self, cov: torch.Tensor) -> torch.Tensor:
        return cov


class DiagonalConstraint(CovarianceConstraint):
    """Keep only the variances; every off-diagonal entry becomes exactly 0."""

    diagonal = True

    def apply(self, cov: torch.Tensor) -> torch.Tensor:
        return torch.diag_embed(torch.diagonal(cov, dim1=-2, dim2=-1))


def make_constraint(diagonal: bool) -> CovarianceConstraint:
    return DiagonalConstraint() if diagonal else NoConstraint()


# ---------------------------
# Positive-definite repair
# ---------------------------

class PositiveDefiniteCorrector:
    """Project covariances back into the positive-definite cone.

    A matrix is repaired when its smallest eigenvalue is negative, when its
    condition number exceeds ``max_condition``, or when its largest
    eigenvalue is below ``min_eigenvalue``. Repair floors every eigenvalue
    at ``max(lambda_max / max_condition, min_eigenvalue)`` and reassembles
    V diag(lambda) V^T. Diagonal matrices skip the eigendecomposition and
    have their variances floored directly.

    The result is verified with a Cholesky factorization. Matrices that
    still fail get ``jitter * I`` added, with the jitter growing tenfold per
    attempt, for at most ``max_attempts`` attempts. After that the corrector
    raises FatalNumericalError.
    """

    def __init__(
        self,
        max_condition: float = 1e5,
        min_eigenvalue: float = 1e-50,
        max_attempts: int = 10,
    ) -> None:
        if max_condition < 1.0:
            raise ValueError("max_condition must be >= 1")
        if min_eigenvalue <= 0.0:
            raise ValueError("min_eigenvalue must be positive")
        if max_attempts < 0:
            raise ValueError("max_attempts must be non-negative")
        self.max_condition = float(max_condition)
        self.min_eigenvalue = float(min_eigenvalue)
        self.max_attempts = int(max_attempts)

    def __repr__(self) -> str:
        return (
            f"PositiveDefiniteCorrector(max_condition={self.max_condition}, "
            f"min_eigenvalue={self.min_eigenvalue}, max_attempts={self.max_attempts})"
        )

    def _min_eigenvalue(self, dtype: torch.dtype) -> float:
        # 1e-50 underflows in float32
        return max(self.min_eigenvalue, float(torch.finfo(dtype).tiny))

    @torch.no_grad()
    def correct(self, cov: torch.Tensor) -> torch.Tensor:
        """Return a positive-definite version of a (D, D) or (K, D, D) covariance."""
        single = cov.dim() == 2
        if single:
            cov = cov.unsqueeze(0)
        if cov.dim() != 3 or cov.shape[-1] != cov.shape[-2]:
            raise ValueError(f"cov must be (D,D) or (K,D,D), got {tuple(cov.shape)}")

        if not bool(torch.isfinite(cov).all()):
            raise FatalNumericalError("Covariance matrix contains NaN or Inf entries.")

        cov = _symmetrize(cov)
        if _is_diagonal(cov):
            out = self._floor_variances(cov)
        else:
            out = self._floor_eigenvalues(cov)
        out = self._verify(out)

        return out[0] if single else out

    def _floor_variances(self, cov: torch.Tensor) -> torch.Tensor:
        var = torch.diagonal(cov, dim1=-2, dim2=-1)  # (K,D)
        floor = (var.max(dim=1).values / self.max_condition).clamp_min(self._min_eigenvalue(cov.dtype))
        fixed = torch.maximum(var, floor.unsqueeze(1))
        n_fixed = int((fixed != var).any(dim=1).sum())
        if n_fixed:
            logger.debug("Floored variances of %d diagonal covariance(s)", n_fixed)
        return torch.diag_embed(fixed)

    def _floor_eigenvalues(self, cov: torch.Tensor) -> torch.Tensor:
        try:
            eigval, eigvec = torch.linalg.eigh(cov)  # ascending (K,D), (K,D,D)
        except torch.linalg.LinAlgError as err:
            raise FatalNumericalError(f"Eigendecomposition of covariance failed: {err}") from err

        lo, hi = eigval[:, 0], eigval[:, -1]
        min_eig = self._min_eigenvalue(cov.dtype)
        needs = (lo < 0.0) | (hi > self.max_condition * lo) | (hi < min_eig)
        if not bool(needs.any()):
            return cov

        floor = (hi / self.max_condition).clamp_min(min_eig)
        clamped = torch.maximum(eigval, floor.unsqueeze(1))
        fixed = _symmetrize(eigvec @ torch.diag_embed(clamped) @ eigvec.transpose(-1, -2))
        logger.debug(
            "Projected covariance(s) %s onto the positive-definite cone",
            torch.nonzero(needs).flatten().tolist(),
        )
        return torch.where(needs.view(-1, 1, 1), fixed, cov)

    def _verify(self, cov: torch.Tensor) -> torch.Tensor:
        K, D, _ = cov.shape
        eye = torch.eye(D, device=cov.device, dtype=cov.dtype)
        eps = float(torch.finfo(cov.dtype).eps)

        for attempt in range(self.max_attempts + 1):
            _, info = torch.linalg.cholesky_ex(cov)
            bad = info != 0
            if not bool(bad.any()):
                return cov
            if attempt == self.max_attempts:
                break
            scale = torch.diagonal(cov, dim1=-2, dim2=-1).abs().amax(dim=1).clamp_min(self._min_eigenvalue(cov.dtype))
            jitter = scale * eps * (10.0 ** attempt)
            cov = cov + (bad.to(cov.dtype) * jitter).view(K, 1, 1) * eye
            logger.debug("Added jitter to covariance(s) %s (attempt %d)", torch.nonzero(bad).flatten().tolist(), attempt + 1)

        raise FatalNumericalError(
            f"Could not make covariance matrix positive definite within {self.max_attempts} attempts."
        )
