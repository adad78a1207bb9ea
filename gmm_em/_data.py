# gmm_em/_data.py
"""Dataset loading and preprocessing. Rows are observations, columns are dimensions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
import torch

from ._errors import ConfigurationError

logger = logging.getLogger(__name__)


def as_tensor(X, dtype: torch.dtype = torch.float64, device=None) -> torch.Tensor:
    """Convert X to a (N, D) tensor and check it is usable for fitting."""
    if isinstance(X, pd.DataFrame):
        X = X.to_numpy()
    if not isinstance(X, torch.Tensor):
        X = torch.tensor(np.asarray(X))
    X = X.to(device=device, dtype=dtype)

    if X.dim() != 2:
        raise ConfigurationError(f"Data must be a 2-D (N, D) matrix, got shape {tuple(X.shape)}")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise ConfigurationError(f"Data must be non-empty, got shape {tuple(X.shape)}")
    if not bool(torch.isfinite(X).all()):
        raise ConfigurationError("Data contains NaN or Inf values")
    return X


def load_dataset(path: Union[str, Path]) -> np.ndarray:
    """Load a numeric matrix from a headerless CSV or whitespace-delimited file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Input file {path} does not exist")

    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, header=None)
    else:
        df = pd.read_csv(path, header=None, sep=r"\s+")

    try:
        X = df.to_numpy(dtype=np.float64)
    except ValueError as err:
        raise ConfigurationError(f"Input file {path} contains non-numeric values") from err

    logger.info("Loaded %s: %d points in %d dimensions", path, X.shape[0], X.shape[1])
    return X


@torch.no_grad()
def add_noise(X: torch.Tensor, variance: float, generator: Optional[torch.Generator] = None) -> torch.Tensor:
    """Add zero-mean Gaussian noise with the given variance to every entry."""
    if variance < 0:
        raise ConfigurationError(f"Noise variance must be non-negative, got {variance}")
    if variance == 0:
        return X
    noise = torch.randn(X.shape, generator=generator, dtype=X.dtype, device=X.device)
    logger.info("Added zero-mean Gaussian noise with variance %g to dataset", variance)
    return X + noise * float(np.sqrt(variance))
