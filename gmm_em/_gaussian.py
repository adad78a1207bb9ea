# gmm_em/_gaussian.py
"""Multivariate normal log-densities via precision Cholesky factors.

Covariances are always stored as full (K, D, D) stacks, also when the
diagonal constraint is active. The E-step never inverts a covariance
directly: it factors cov = L L^T and uses precision_chol = inv(L), so that

    precision = precision_chol^T precision_chol
    log N(x | mu, cov) = -0.5 * (D log 2pi + |precision_chol (x - mu)|^2)
                         + sum log diag(precision_chol)
"""

from __future__ import annotations

import math

import torch

from ._errors import FatalNumericalError


def _nk_eps(dtype: torch.dtype) -> float:
    """Smoothing added to cluster masses: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _symmetrize(cov: torch.Tensor) -> torch.Tensor:
    return 0.5 * (cov + cov.transpose(-1, -2))


def _is_diagonal(cov: torch.Tensor) -> bool:
    """True when every off-diagonal entry of a (..., D, D) stack is exactly zero."""
    D = cov.shape[-1]
    on_diag = torch.eye(D, dtype=torch.bool, device=cov.device)
    return not bool(cov.masked_fill(on_diag, 0.0).any())


@torch.no_grad()
def compute_precisions_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """Compute precisions_cholesky (K, D, D) from covariances (K, D, D).

    cov = L L^T (L lower).  precision_chol = inv(L) (lower).
    Raises FatalNumericalError if any covariance is not positive definite,
    including matrices that only factor because of rounding: the squared
    pivots L_dd^2 bound the eigenvalues, so min/max pivot <= eps means the
    matrix is singular within machine precision.
    """
    if cov.dim() != 3 or cov.shape[-1] != cov.shape[-2]:
        raise ValueError(f"cov must be (K,D,D), got {tuple(cov.shape)}")
    K, D, _ = cov.shape

    L, info = torch.linalg.cholesky_ex(cov)
    pivots = torch.diagonal(L, dim1=1, dim2=2) ** 2  # (K,D)
    ratio = pivots.min(dim=1).values / pivots.max(dim=1).values  # (K,)
    singular = (info != 0) | ~(ratio > torch.finfo(cov.dtype).eps)
    if bool(singular.any()):
        bad = torch.nonzero(singular).flatten().tolist()
        raise FatalNumericalError(
            f"Covariance matrix of component(s) {bad} is not positive definite; "
            "it cannot be inverted. Enable positive-definite forcing or add noise "
            "to the data."
        )

    I = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, I, upper=False)


@torch.no_grad()
def compute_precisions(prec_chol: torch.Tensor) -> torch.Tensor:
    """Compute precisions (inverse covariances) from precisions_cholesky."""
    return torch.bmm(prec_chol.transpose(-1, -2), prec_chol)


def estimate_log_gaussian_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """log N(X | means, cov) for every sample and component, shape (N, K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    # 0.5 * logdet(precision) = sum_d log(prec_chol_{k,d,d})
    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)
