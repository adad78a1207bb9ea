# gmm_em/cli.py
"""gmm-train: fit a Gaussian mixture model to a data file with EM.

Optionally runs several trials with different random initializations and
keeps the result with the highest log-likelihood on the training data. The
trained model can be saved and passed back in with --input_model to
re-train on another dataset.

Example:
    gmm-train --input data.csv --gaussians 6 --trials 3 --output_model gmm.pt
    gmm-train --input_model gmm.pt --input data2.csv --gaussians 6 --output_model new_gmm.pt
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import numpy as np
import torch

from ._data import add_noise, as_tensor, load_dataset
from ._em import DEFAULT_MAX_ITERATIONS, DEFAULT_TOLERANCE
from ._errors import ConfigurationError, FatalNumericalError
from ._kmeans import DEFAULT_PERCENTAGE, DEFAULT_SAMPLINGS
from ._model import GaussianMixtureModel
from ._trainer import train_gmm

logger = logging.getLogger("gmm_em")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gmm-train",
        description="Gaussian Mixture Model (GMM) training with the EM algorithm.",
    )
    parser.add_argument("--input", "-i", required=True, help="Training data (CSV or whitespace-delimited; rows are points).")
    parser.add_argument("--gaussians", "-g", type=int, required=True, help="Number of Gaussians in the GMM.")
    parser.add_argument("--seed", "-s", type=int, default=0, help="Random seed. If 0, a nondeterministic seed is used.")
    parser.add_argument("--trials", "-t", type=int, default=1, help="Number of trials to perform in training GMM.")

    # EM
    parser.add_argument("--tolerance", "-T", type=float, default=DEFAULT_TOLERANCE, help="Tolerance for convergence of EM.")
    parser.add_argument("--no_force_positive", "-P", action="store_true",
                        help="Do not force the covariance matrices to be positive definite.")
    parser.add_argument("--max_iterations", "-n", type=int, default=DEFAULT_MAX_ITERATIONS,
                        help="Maximum number of iterations of EM algorithm (passing 0 will run until convergence).")
    parser.add_argument("--diagonal_covariance", "-d", action="store_true",
                        help="Force the covariance of the Gaussians to be diagonal.")

    # dataset modification
    parser.add_argument("--noise", "-N", type=float, default=0.0,
                        help="Variance of zero-mean Gaussian noise to add to data.")

    # k-means initialization
    parser.add_argument("--refined_start", "-r", action="store_true",
                        help="Use refined initial positions for k-means clustering (Bradley and Fayyad, 1998).")
    parser.add_argument("--samplings", "-S", type=int, default=DEFAULT_SAMPLINGS,
                        help="If using --refined_start, the number of samplings used for initial points.")
    parser.add_argument("--percentage", "-p", type=float, default=DEFAULT_PERCENTAGE,
                        help="If using --refined_start, the fraction of the dataset used for each sampling (0.0, 1.0].")
    parser.add_argument("--kmeans_backend", choices=("torch", "sklearn"), default="torch",
                        help="k-means implementation used for initialization.")

    # models
    parser.add_argument("--input_model", "-m", default=None, help="Initial input GMM model to start training with.")
    parser.add_argument("--output_model", "-M", default=None, help="Output for trained GMM model.")

    parser.add_argument("--jobs", "-j", type=int, default=1, help="Number of trials to run in parallel.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Display informational messages.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    seed = args.seed if args.seed != 0 else None

    if args.diagonal_covariance and args.no_force_positive:
        logger.warning("--no_force_positive only disables variance flooring when --diagonal_covariance is specified!")
    if args.output_model is None:
        logger.warning("--output_model is not specified, so no model will be saved!")

    try:
        X = as_tensor(load_dataset(args.input))

        if args.noise:
            noise_seed = int(np.random.SeedSequence(seed).generate_state(1)[0])
            X = add_noise(X, args.noise, torch.Generator().manual_seed(noise_seed))

        initial_model = None
        if args.input_model is not None:
            initial_model = GaussianMixtureModel.load(args.input_model)

        gmm, likelihood = train_gmm(
            X,
            args.gaussians,
            trials=args.trials,
            force_positive_definite=not args.no_force_positive,
            diagonal_covariance=args.diagonal_covariance,
            max_iterations=args.max_iterations,
            tolerance=args.tolerance,
            refined_start=args.refined_start,
            samplings=args.samplings,
            percentage=args.percentage,
            kmeans_backend=args.kmeans_backend,
            initial_model=initial_model,
            seed=seed,
            n_jobs=args.jobs,
        )
    except ConfigurationError as err:
        logger.error("Invalid configuration: %s", err)
        return 1
    except FatalNumericalError as err:
        logger.error("Training failed: %s", err)
        return 1

    logger.info("Log-likelihood of estimate: %.10g.", likelihood)

    if args.output_model is not None:
        gmm.save(args.output_model)
        logger.info("Saved model to %s", args.output_model)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
