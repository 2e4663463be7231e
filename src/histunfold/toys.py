"""
Toy Monte-Carlo replicas of an unfolding.

Toys are thrown by the backend of the unfolding (see ``backends``) and run
strictly in sequence from one random generator, so a seeded generator
reproduces the whole ensemble.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from .constants import ErrorTreatment

if TYPE_CHECKING:
    from .unfolding import Unfolding

logger = logging.getLogger(__name__)


@dataclass
class ToyResults:
    """Unfolded values, diagonal errors and chi-square of each toy.

    ``failures`` counts the toys whose unfolding or errors failed; their
    entries hold the zeros returned by the failed unfolding.
    """

    values: List[np.ndarray] = field(default_factory=list)
    errors: List[np.ndarray] = field(default_factory=list)
    chi2: List[float] = field(default_factory=list)
    failures: int = 0

    def __len__(self) -> int:
        return len(self.values)


def run_toys(
    unfolding: "Unfolding",
    ntoys: int,
    rng: Optional[np.random.Generator] = None,
    with_errors: Optional[bool] = None,
) -> ToyResults:
    """
    Unfold ``ntoys`` fluctuated replicas of the inputs of ``unfolding``.

    Parameters
    ----------
    unfolding : Unfolding
        Unfolding to replicate. Its cached results are restored afterwards.
    ntoys : int
        Number of toys.
    rng : np.random.Generator, optional
        Random generator, default the generator of ``unfolding``.
    with_errors : bool, optional
        Record per-toy diagonal errors and the chi-square against the
        response truth. By default errors are recorded unless the current
        error treatment of ``unfolding`` is NO_ERROR.

    Returns
    -------
    ToyResults
        One entry per toy; ``errors`` and ``chi2`` are empty when errors
        are not recorded.
    """
    if ntoys < 0:
        raise ValueError(f"Number of toys must be non-negative: {ntoys}")
    rng = unfolding.rng if rng is None else rng
    error_type = unfolding.error_treatment
    if with_errors is None:
        with_errors = error_type != ErrorTreatment.NO_ERROR

    snapshot = unfolding.cache
    truth = unfolding.response.truth
    results = ToyResults()
    unfolding.error_treatment = ErrorTreatment.DEFAULT
    toys = unfolding.backend.toys(unfolding, ntoys, rng)
    try:
        for _ in toys:
            results.values.append(unfolding.vunfold())
            if with_errors:
                results.errors.append(unfolding.eunfold_v(ErrorTreatment.ERRORS))
                results.chi2.append(unfolding.chi2(truth, ErrorTreatment.ERRORS))
            if unfolding.cache.fail:
                results.failures += 1
    finally:
        toys.close()
        unfolding.error_treatment = error_type
        unfolding.restore_cache(snapshot)

    if results.failures:
        logger.warning("%s: %d of %d toys failed", unfolding.name, results.failures, ntoys)
    if unfolding.verbose >= 2:
        logger.info("%s: ran %d toys", unfolding.name, ntoys)
    return results


def run_toy(
    unfolding: "Unfolding", rng: Optional[np.random.Generator] = None
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Single toy: unfolded values, errors and chi-square."""
    results = run_toys(unfolding, 1, rng, with_errors=True)
    return results.values[0], results.errors[0], results.chi2[0]


def toy_covariance(
    unfolding: "Unfolding", ntoys: int, rng: Optional[np.random.Generator] = None
) -> Optional[np.ndarray]:
    """
    Sample covariance of the unfolded result over ``ntoys`` toys.

    Uses the unbiased estimator
    ``(sum x_i x_j - sum x_i sum x_j / N) / (N - 1)``. Returns None for
    fewer than 2 toys.
    """
    if ntoys <= 1:
        return None
    nt = unfolding.nt
    xisum = np.zeros(nt)
    xijsum = np.zeros((nt, nt))
    for x in run_toys(unfolding, ntoys, rng, with_errors=False).values:
        xisum += x
        xijsum += np.outer(x, x)
    return (xijsum - np.outer(xisum, xisum) / ntoys) / (ntoys - 1)
