# gmm_em/_trainer.py
"""Best-of-N training: independent (initializer -> EM) trials, keep the most likely.

Every trial gets its own seed, derived from one master seed with
numpy.random.SeedSequence.spawn, and its own torch.Generator. Trials share
only the read-only data tensor, so they can run on a thread pool
(``n_jobs > 1``). Results are reduced on the calling thread in trial order;
a strictly higher log-likelihood replaces the best so far, so ties keep the
first trial. A FatalNumericalError in any trial aborts the whole run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np
import torch

from ._constraints import PositiveDefiniteCorrector, make_constraint
from ._data import as_tensor
from ._em import DEFAULT_MAX_ITERATIONS, DEFAULT_TOLERANCE, EMFit
from ._errors import ConfigurationError
from ._init import make_initializer
from ._kmeans import DEFAULT_PERCENTAGE, DEFAULT_SAMPLINGS, KMeans
from ._model import GaussianMixtureModel

logger = logging.getLogger(__name__)


@dataclass
class TrialResult:
    trial: int
    seed: int
    model: GaussianMixtureModel
    log_likelihood: float
    initial_log_likelihood: float
    n_iter: int
    converged: bool
    log_likelihoods: List[float] = field(default_factory=list)


@dataclass
class TrialSummary:
    """Scalar diagnostics of one trial, kept after its model is released."""
    trial: int
    seed: int
    log_likelihood: float
    initial_log_likelihood: float
    n_iter: int
    converged: bool


class GMMTrainer:
    """Run ``n_trials`` EM fits and keep the one with the highest log-likelihood."""

    def __init__(
        self,
        n_components: int,
        n_trials: int = 1,
        em: Optional[EMFit] = None,
        n_jobs: int = 1,
        dtype: torch.dtype = torch.float64,
        device=None,
    ) -> None:
        if n_components < 1:
            raise ConfigurationError(
                f"Invalid number of Gaussians ({n_components}); must be greater than or equal to 1."
            )
        if n_trials < 1:
            raise ConfigurationError(f"Number of trials must be positive, got {n_trials}")
        if n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be positive, got {n_jobs}")

        self.n_components = int(n_components)
        self.n_trials = int(n_trials)
        self.em = em if em is not None else EMFit()
        self.n_jobs = int(n_jobs)
        self.dtype = dtype
        self.device = device

        # fitted attributes
        self.model_: Optional[GaussianMixtureModel] = None
        self.log_likelihood_: float = float("-inf")
        self.best_trial_: Optional[int] = None
        self.trial_seeds_: List[int] = []
        self.trial_log_likelihoods_: List[float] = []
        self.trial_summaries_: List[TrialSummary] = []

    def __repr__(self) -> str:
        return (
            f"GMMTrainer(n_components={self.n_components}, n_trials={self.n_trials}, "
            f"em={self.em!r}, n_jobs={self.n_jobs})"
        )

    def trial_seeds(self, seed: Optional[int] = None) -> List[int]:
        """Independent per-trial seeds derived from one master seed."""
        children = np.random.SeedSequence(seed).spawn(self.n_trials)
        return [int(child.generate_state(1)[0]) for child in children]

    def _check_initial_model(self, X: torch.Tensor, initial_model: GaussianMixtureModel) -> None:
        initial_model.validate()
        if initial_model.dimensionality != X.shape[1]:
            raise ConfigurationError(
                f"Given input data has dimensionality {X.shape[1]}, but the initial model "
                f"has dimensionality {initial_model.dimensionality}!"
            )
        if initial_model.n_components != self.n_components:
            raise ConfigurationError(
                f"Initial model has {initial_model.n_components} components, "
                f"but {self.n_components} were requested"
            )

    def run_trial(
        self,
        X,
        seed: int,
        initial_model: Optional[GaussianMixtureModel] = None,
        trial: int = 0,
    ) -> TrialResult:
        """One standalone (initializer -> EM) run, fully determined by ``seed``."""
        X = as_tensor(X, dtype=self.dtype, device=self.device)
        generator = torch.Generator(device=X.device).manual_seed(int(seed))
        fit = self.em.fit(X, initial_model=initial_model, n_components=self.n_components, generator=generator)
        return TrialResult(
            trial=trial,
            seed=int(seed),
            model=fit.model,
            log_likelihood=fit.log_likelihood,
            initial_log_likelihood=fit.initial_log_likelihood,
            n_iter=fit.n_iter,
            converged=fit.converged,
            log_likelihoods=fit.log_likelihoods,
        )

    def _iter_trials(self, X: torch.Tensor, seeds: List[int], initial_model) -> Iterator[TrialResult]:
        """Yield trial results in trial order.

        In the thread pool each future is dropped as soon as its result has
        been handed over, so a trial's model lives only until it is reduced.
        """
        starts = [initial_model if i == 0 else None for i in range(len(seeds))]

        if self.n_jobs == 1 or len(seeds) == 1:
            for i, (s, m) in enumerate(zip(seeds, starts)):
                yield self.run_trial(X, s, m, i)
            return

        with ThreadPoolExecutor(max_workers=min(self.n_jobs, len(seeds))) as pool:
            futures = [pool.submit(self.run_trial, X, s, m, i) for i, (s, m) in enumerate(zip(seeds, starts))]
            try:
                for i in range(len(futures)):
                    result = futures[i].result()
                    futures[i] = None
                    yield result
            except Exception:
                for f in futures:
                    if f is not None:
                        f.cancel()
                raise

    def train(
        self,
        X,
        initial_model: Optional[GaussianMixtureModel] = None,
        seed: Optional[int] = None,
    ) -> Tuple[GaussianMixtureModel, float]:
        """Fit the mixture; returns (best model, its total log-likelihood).

        If ``initial_model`` is given, trial 0 starts from it instead of
        running the initializer; the remaining trials are initialized as
        usual. Only the best trial's model is kept; the others are released
        as soon as they have been compared.
        """
        X = as_tensor(X, dtype=self.dtype, device=self.device)
        N = X.shape[0]
        if initial_model is not None:
            self._check_initial_model(X, initial_model)
        if (initial_model is None or self.n_trials > 1) and N < self.n_components:
            raise ConfigurationError(f"Cannot fit {self.n_components} Gaussians to {N} points")

        seeds = self.trial_seeds(seed)
        logger.info(
            "Training %d-component GMM on %d points in %d dimensions (%d trial(s))",
            self.n_components, N, X.shape[1], self.n_trials,
        )

        best: Optional[TrialResult] = None
        summaries: List[TrialSummary] = []
        for result in self._iter_trials(X, seeds, initial_model):
            summaries.append(TrialSummary(
                trial=result.trial,
                seed=result.seed,
                log_likelihood=result.log_likelihood,
                initial_log_likelihood=result.initial_log_likelihood,
                n_iter=result.n_iter,
                converged=result.converged,
            ))
            logger.info(
                "Trial %d: log-likelihood %.10g after %d iteration(s)%s",
                result.trial, result.log_likelihood, result.n_iter, "" if result.converged else " (not converged)",
            )
            if best is None or result.log_likelihood > best.log_likelihood:
                best = result
        result = None

        self.model_ = best.model
        self.log_likelihood_ = best.log_likelihood
        self.best_trial_ = best.trial
        self.trial_seeds_ = seeds
        self.trial_log_likelihoods_ = [s.log_likelihood for s in summaries]
        self.trial_summaries_ = summaries
        logger.info("Best trial %d, log-likelihood %.10g", best.trial, best.log_likelihood)

        return self.model_, self.log_likelihood_


def train_gmm(
    X,
    n_components: int,
    trials: int = 1,
    force_positive_definite: bool = True,
    diagonal_covariance: bool = False,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    tolerance: float = DEFAULT_TOLERANCE,
    refined_start: bool = False,
    samplings: int = DEFAULT_SAMPLINGS,
    percentage: float = DEFAULT_PERCENTAGE,
    kmeans_backend: str = "torch",
    initial_model: Optional[GaussianMixtureModel] = None,
    seed: Optional[int] = None,
    n_jobs: int = 1,
    dtype: torch.dtype = torch.float64,
    device=None,
) -> Tuple[GaussianMixtureModel, float]:
    """Train a GMM with EM; returns (model, log-likelihood).

    Parameters mirror the ``gmm-train`` command line. All parameters are
    validated before any computation starts.
    """
    initializer = make_initializer(
        refined_start=refined_start,
        samplings=samplings,
        percentage=percentage,
        kmeans=KMeans(backend=kmeans_backend),
    )
    em = EMFit(
        max_iterations=max_iterations,
        tolerance=tolerance,
        initializer=initializer,
        constraint=make_constraint(diagonal_covariance),
        corrector=PositiveDefiniteCorrector() if force_positive_definite else None,
    )
    trainer = GMMTrainer(n_components, n_trials=trials, em=em, n_jobs=n_jobs, dtype=dtype, device=device)
    if not force_positive_definite:
        logger.warning(
            "Positive-definite forcing is disabled; a singular covariance will abort training "
            "with FatalNumericalError."
        )
    return trainer.train(X, initial_model=initial_model, seed=seed)
