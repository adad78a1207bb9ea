"""Gaussian mixture model training with EM in PyTorch.

Multiple k-means (or refined-start k-means) initialized trials, optional
diagonal covariance constraint, and positive-definite covariance repair.
"""

from ._constraints import (
    CovarianceConstraint,
    DiagonalConstraint,
    NoConstraint,
    PositiveDefiniteCorrector,
    make_constraint,
)
from ._data import add_noise, as_tensor, load_dataset
from ._em import EMFit, EMState, FitResult, expectation_step, maximization_step
from ._errors import ConfigurationError, FatalNumericalError
from ._init import Initializer, KMeansInitializer, RefinedStartInitializer, make_initializer
from ._kmeans import KMeans, RefinedStart
from ._model import GaussianMixtureModel
from ._trainer import GMMTrainer, TrialResult, TrialSummary, train_gmm

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "CovarianceConstraint",
    "DiagonalConstraint",
    "EMFit",
    "EMState",
    "FatalNumericalError",
    "FitResult",
    "GMMTrainer",
    "GaussianMixtureModel",
    "Initializer",
    "KMeans",
    "KMeansInitializer",
    "NoConstraint",
    "PositiveDefiniteCorrector",
    "RefinedStart",
    "RefinedStartInitializer",
    "TrialResult",
    "TrialSummary",
    "add_noise",
    "as_tensor",
    "expectation_step",
    "load_dataset",
    "make_constraint",
    "make_initializer",
    "maximization_step",
    "train_gmm",
]
