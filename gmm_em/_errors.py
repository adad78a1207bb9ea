# gmm_em/_errors.py
"""Exception types raised by the GMM trainer."""


class ConfigurationError(ValueError):
    """Invalid parameters, detected before any computation starts."""


class FatalNumericalError(ArithmeticError):
    """Numerical state that cannot be repaired.

    Raised when a covariance matrix cannot be made positive definite, when a
    Cholesky factorization fails during likelihood evaluation, or when a
    responsibility row cannot be normalized. It aborts the current trial and,
    through the trainer, the whole training run.
    """
