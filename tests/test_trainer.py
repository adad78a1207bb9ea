# tests/test_trainer.py
import gc
import weakref

import numpy as np
import pytest
import torch

from gmm_em import (
    ConfigurationError,
    DiagonalConstraint,
    EMFit,
    EMState,
    FatalNumericalError,
    FitResult,
    GaussianMixtureModel,
    GMMTrainer,
    train_gmm,
)

from conftest import TRUE_CENTERS


def _sorted_means(model):
    m = model.means.numpy()
    return m[np.argsort(m[:, 0])]


def _poor_start():
    return GaussianMixtureModel(
        weights=torch.tensor([0.5, 0.5], dtype=torch.float64),
        means=torch.tensor([[3.0, 3.0], [7.0, 7.0]], dtype=torch.float64),
        covariances=torch.eye(2, dtype=torch.float64).expand(2, 2, 2).clone(),
    )


# ---------------------------
# end-to-end
# ---------------------------

def test_two_clusters_end_to_end(blobs):
    model, ll = train_gmm(blobs, 2, trials=1, max_iterations=250, tolerance=1e-10, seed=1)

    np.testing.assert_allclose(_sorted_means(model), TRUE_CENTERS, atol=0.5)
    np.testing.assert_allclose(sorted(model.weights.tolist()), [0.5, 0.5], atol=0.01)
    assert ll == pytest.approx(model.log_likelihood(blobs), rel=1e-12)
    for k in range(2):
        assert (torch.linalg.eigvalsh(model.covariances[k]) > 0).all()


def test_trial_result_reports_improvement(blobs):
    trainer = GMMTrainer(2, em=EMFit(max_iterations=250, tolerance=1e-10))
    result = trainer.run_trial(blobs, seed=5)

    assert result.log_likelihood >= result.initial_log_likelihood - 1e-9 * abs(result.initial_log_likelihood)
    assert result.converged
    assert result.n_iter == len(result.log_likelihoods) - 1

    history = result.log_likelihoods
    for prev, cur in zip(history, history[1:]):
        assert cur >= prev - 1e-9 * abs(prev)


def test_poor_initial_model_strictly_improves(blobs):
    trainer = GMMTrainer(2, em=EMFit())
    start = _poor_start()
    result = trainer.run_trial(blobs, seed=0, initial_model=start)

    assert result.initial_log_likelihood == pytest.approx(start.log_likelihood(blobs), rel=1e-12)
    assert result.log_likelihood > result.initial_log_likelihood
    np.testing.assert_allclose(_sorted_means(result.model), TRUE_CENTERS, atol=0.5)


def test_initial_model_through_train_gmm(blobs):
    model, ll = train_gmm(blobs, 2, initial_model=_poor_start(), seed=3)
    np.testing.assert_allclose(_sorted_means(model), TRUE_CENTERS, atol=0.5)
    assert ll > _poor_start().log_likelihood(blobs)


def test_diagonal_covariance_end_to_end(blobs):
    model, _ = train_gmm(blobs, 2, diagonal_covariance=True, seed=2)

    off = ~torch.eye(2, dtype=torch.bool)
    assert (model.covariances[:, off] == 0).all()
    assert (torch.diagonal(model.covariances, dim1=1, dim2=2) > 0).all()
    np.testing.assert_allclose(_sorted_means(model), TRUE_CENTERS, atol=0.5)


def test_refined_start_end_to_end(blobs):
    model, _ = train_gmm(blobs, 2, refined_start=True, samplings=10, percentage=0.05, seed=4)
    np.testing.assert_allclose(_sorted_means(model), TRUE_CENTERS, atol=0.5)


def test_sklearn_backend_end_to_end(blobs):
    model, _ = train_gmm(blobs, 2, kmeans_backend="sklearn", seed=4)
    np.testing.assert_allclose(_sorted_means(model), TRUE_CENTERS, atol=0.5)


def test_single_component_matches_sample_statistics():
    rng = np.random.RandomState(8)
    A = np.array([[1.0, 0.0, 0.0], [0.6, 0.8, 0.0], [0.2, -0.3, 0.5]])
    X = rng.randn(400, 3) @ A.T + np.array([1.0, -2.0, 3.0])

    trainer = GMMTrainer(1, em=EMFit(max_iterations=250, tolerance=1e-10))
    result = trainer.run_trial(X, seed=0)

    np.testing.assert_allclose(result.model.means[0].numpy(), X.mean(axis=0), atol=1e-10)
    np.testing.assert_allclose(result.model.covariances[0].numpy(), np.cov(X.T, bias=True), atol=1e-10)
    assert result.model.weights.tolist() == pytest.approx([1.0])
    assert result.n_iter <= 3


# ---------------------------
# multi-trial
# ---------------------------

def test_best_of_trials_equals_best_standalone_run(blobs):
    trainer = GMMTrainer(3, n_trials=5, em=EMFit(max_iterations=50))
    _, ll = trainer.train(blobs, seed=42)

    assert len(trainer.trial_seeds_) == 5
    assert len(set(trainer.trial_seeds_)) == 5

    standalone = [trainer.run_trial(blobs, s).log_likelihood for s in trainer.trial_seeds_]
    assert ll == pytest.approx(max(standalone), rel=1e-9)
    assert trainer.trial_log_likelihoods_ == pytest.approx(standalone, rel=1e-9)
    assert trainer.best_trial_ == int(np.argmax(trainer.trial_log_likelihoods_))
    assert trainer.log_likelihood_ == ll
    assert [s.trial for s in trainer.trial_summaries_] == [0, 1, 2, 3, 4]
    assert [s.seed for s in trainer.trial_summaries_] == trainer.trial_seeds_
    assert not hasattr(trainer.trial_summaries_[0], "model")


def test_parallel_trials_match_serial(blobs):
    serial = GMMTrainer(3, n_trials=4, em=EMFit(max_iterations=50), n_jobs=1)
    parallel = GMMTrainer(3, n_trials=4, em=EMFit(max_iterations=50), n_jobs=3)

    _, ll_serial = serial.train(blobs, seed=7)
    _, ll_parallel = parallel.train(blobs, seed=7)

    assert ll_parallel == pytest.approx(ll_serial, rel=1e-9)
    assert parallel.trial_log_likelihoods_ == pytest.approx(serial.trial_log_likelihoods_, rel=1e-9)


def test_same_seed_same_result(small_blobs):
    _, ll1 = train_gmm(small_blobs, 3, trials=2, seed=11)
    _, ll2 = train_gmm(small_blobs, 3, trials=2, seed=11)
    assert ll1 == pytest.approx(ll2, rel=1e-12)


def test_trial_seeds_are_deterministic():
    trainer = GMMTrainer(2, n_trials=3)
    assert trainer.trial_seeds(5) == trainer.trial_seeds(5)
    assert trainer.trial_seeds(5) != trainer.trial_seeds(6)


class _ScriptedEM(EMFit):
    """EMFit stand-in returning preset log-likelihoods, one per call in trial order."""

    def __init__(self, lls, fail_on=None):
        super().__init__()
        self.lls = list(lls)
        self.fail_on = fail_on
        self.calls = 0

    def fit(self, X, initial_model=None, n_components=None, generator=None):
        call = self.calls
        self.calls += 1
        if call == self.fail_on:
            raise FatalNumericalError("scripted failure")
        D = X.shape[1]
        model = GaussianMixtureModel(
            weights=torch.ones(n_components, dtype=X.dtype) / n_components,
            means=torch.full((n_components, D), float(call), dtype=X.dtype),
            covariances=torch.eye(D, dtype=X.dtype).expand(n_components, D, D).clone(),
        )
        ll = self.lls[call]
        return FitResult(model=model, log_likelihood=ll, initial_log_likelihood=ll,
                         n_iter=1, state=EMState.CONVERGED, log_likelihoods=[ll, ll])


def test_ties_keep_the_first_trial(small_blobs):
    trainer = GMMTrainer(2, n_trials=4, em=_ScriptedEM([-5.0, -1.0, -1.0, -3.0]))
    model, ll = trainer.train(small_blobs, seed=0)

    assert ll == -1.0
    assert trainer.best_trial_ == 1
    assert float(model.means[0, 0]) == 1.0


def test_failure_in_any_trial_aborts_training(small_blobs):
    trainer = GMMTrainer(2, n_trials=3, em=_ScriptedEM([-1.0, -2.0, -3.0], fail_on=1))
    with pytest.raises(FatalNumericalError):
        trainer.train(small_blobs, seed=0)
    assert trainer.model_ is None


def test_failure_in_parallel_trial_aborts_training(blobs):
    X = blobs.clone()
    X[:, 1] = 0.0
    trainer = GMMTrainer(2, n_trials=3, em=EMFit(corrector=None), n_jobs=2)
    with pytest.raises(FatalNumericalError):
        trainer.train(X, seed=0)


class _RecordingEM(EMFit):
    """EMFit that keeps a weak reference to every model it returns."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.refs = []

    def fit(self, X, initial_model=None, n_components=None, generator=None):
        result = super().fit(X, initial_model=initial_model, n_components=n_components, generator=generator)
        self.refs.append(weakref.ref(result.model))
        return result


@pytest.mark.parametrize("n_jobs", [1, 2])
def test_only_the_best_model_is_kept(blobs, n_jobs):
    em = _RecordingEM(max_iterations=20)
    trainer = GMMTrainer(3, n_trials=4, em=em, n_jobs=n_jobs)
    model, _ = trainer.train(blobs, seed=3)
    gc.collect()

    alive = [ref() for ref in em.refs if ref() is not None]
    assert len(em.refs) == 4
    assert len(alive) == 1
    assert alive[0] is model
    assert len(trainer.trial_summaries_) == 4


# ---------------------------
# degenerate data / forcing
# ---------------------------

def test_constant_dimension_without_forcing_is_fatal(blobs):
    X = blobs.clone()
    X[:, 1] = 0.0
    with pytest.raises(FatalNumericalError):
        train_gmm(X, 2, force_positive_definite=False, seed=0)


def test_constant_dimension_diagonal_without_forcing_is_fatal(blobs):
    X = blobs.clone()
    X[:, 1] = 0.0
    with pytest.raises(FatalNumericalError):
        train_gmm(X, 2, diagonal_covariance=True, force_positive_definite=False, seed=0)


@pytest.mark.parametrize("value", [1.0, -3.5])
def test_constant_nonzero_dimension_without_forcing_is_fatal(blobs, value):
    X = blobs.clone()
    X[:, 1] = value
    with pytest.raises(FatalNumericalError):
        train_gmm(X, 2, force_positive_definite=False, seed=0)


@pytest.mark.parametrize("diagonal", [False, True])
def test_constant_dimension_with_forcing_trains(blobs, diagonal):
    X = blobs.clone()
    X[:, 1] = 0.0
    model, ll = train_gmm(X, 2, diagonal_covariance=diagonal, max_iterations=20, seed=0)
    assert np.isfinite(ll)
    for k in range(2):
        torch.linalg.cholesky(model.covariances[k])


def test_tiny_dataset_with_forcing():
    X = torch.tensor([[0.0, 0.0], [1.0, 2.0], [2.0, 1.0], [5.0, 5.0]], dtype=torch.float64)
    model, ll = train_gmm(X, 3, max_iterations=10, seed=0)
    assert model.n_components == 3
    assert np.isfinite(ll)


# ---------------------------
# configuration errors
# ---------------------------

@pytest.mark.parametrize("kwargs", [
    {"n_components": 0},
    {"n_components": 2, "n_trials": 0},
    {"n_components": 2, "n_jobs": 0},
])
def test_trainer_rejects_bad_configuration(kwargs):
    with pytest.raises(ConfigurationError):
        GMMTrainer(**kwargs)


@pytest.mark.parametrize("kwargs", [{"max_iterations": -1}, {"tolerance": -1e-3}])
def test_em_rejects_bad_configuration(kwargs):
    with pytest.raises(ConfigurationError):
        EMFit(**kwargs)


def test_dimensionality_mismatch_is_configuration_error(blobs):
    start = GaussianMixtureModel(
        weights=torch.tensor([0.5, 0.5], dtype=torch.float64),
        means=torch.zeros((2, 3), dtype=torch.float64),
        covariances=torch.eye(3, dtype=torch.float64).expand(2, 3, 3).clone(),
    )
    with pytest.raises(ConfigurationError, match="dimensionality"):
        train_gmm(blobs, 2, initial_model=start)


def test_component_count_mismatch_is_configuration_error(blobs):
    with pytest.raises(ConfigurationError):
        train_gmm(blobs, 3, initial_model=_poor_start())


def test_too_few_points_is_configuration_error():
    X = torch.zeros((2, 2), dtype=torch.float64)
    with pytest.raises(ConfigurationError):
        train_gmm(X, 3)


def test_bad_data_is_configuration_error():
    with pytest.raises(ConfigurationError):
        train_gmm(np.array([1.0, 2.0, 3.0]), 1)
    with pytest.raises(ConfigurationError):
        train_gmm(np.array([[1.0, np.nan], [2.0, 3.0]]), 1)


def test_max_iterations_reached(blobs):
    trainer = GMMTrainer(3, em=EMFit(max_iterations=2, tolerance=0.0))
    result = trainer.run_trial(blobs, seed=0)
    assert result.n_iter == 2
    assert not result.converged


def test_zero_max_iterations_runs_until_converged():
    rng = np.random.RandomState(21)
    X = np.vstack([rng.randn(200, 2), rng.randn(200, 2) + np.array([2.0, 0.0])])

    em = EMFit(max_iterations=0, tolerance=1e-8)
    result = em.fit(torch.from_numpy(X), initial_model=_poor_start())

    assert result.state is EMState.CONVERGED
    assert result.n_iter > 5
    assert abs(result.log_likelihoods[-1] - result.log_likelihoods[-2]) < 1e-8


def test_em_fit_state(blobs):
    em = EMFit(max_iterations=250, tolerance=1e-10, constraint=DiagonalConstraint())
    fit = em.fit(blobs, n_components=2, generator=torch.Generator().manual_seed(0))
    assert fit.state is EMState.CONVERGED
    assert fit.converged
    with pytest.raises(ConfigurationError):
        em.fit(blobs)
