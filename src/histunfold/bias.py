"""
Bias estimation protocols.

All protocols work on a disposable clone of the unfolding, configured with
the same algorithm, regularisation and toy settings, so the cached results
of the unfolding itself are left untouched.

ESTIMATOR
    Fold the reference truth, unfold it once and compare with the truth.
CLOSURE
    Throw toys around the nominal measured distribution of the response,
    unfold each and average the relative pulls.
ASIMOV
    Throw primary toys around the response truth, and for each of them
    secondary toys that are folded and unfolded. The reference truth
    argument is not used.

A protocol returns None if any unfolding of its clone fails.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Tuple, Union

import numpy as np

from .constants import BiasMethod, ErrorTreatment, SystematicsTreatment
from .histogram import Histogram
from .toys import run_toys

if TYPE_CHECKING:
    from .unfolding import Unfolding

logger = logging.getLogger(__name__)

BiasResult = Tuple[np.ndarray, np.ndarray]


def _reference(
    unfolding: "Unfolding", truth: Optional[Union[Histogram, np.ndarray]]
) -> Tuple[np.ndarray, np.ndarray]:
    """Truth values and errors used as bias reference."""
    if truth is None:
        truth = unfolding.response.truth
    if isinstance(truth, Histogram):
        values = unfolding.backend.vector(truth, unfolding.overflow, unfolding.density)
        errors = unfolding.backend.error_vector(truth, unfolding.overflow, unfolding.density)
    else:
        values = np.asarray(truth, dtype=float)
        errors = np.zeros_like(values)
    if len(values) != unfolding.nt:
        raise ValueError(
            f"truth length ({len(values)}) must match number of truth bins ({unfolding.nt})"
        )
    return values, errors


def bias_estimator(
    unfolding: "Unfolding", truth: Optional[Union[Histogram, np.ndarray]] = None
) -> Optional[BiasResult]:
    """
    Relative bias of one unfolding of the exactly folded truth.

    Both the bias and its error are divided by the signed truth, so a
    negative truth bin gives a negative error.
    """
    vtruth, etruth = _reference(unfolding, truth)
    folded = unfolding.backend.fold(unfolding.response, vtruth)
    toy = unfolding.clone()
    toy.set_measured_vector(folded, errors=np.sqrt(np.abs(folded)))

    unfolded = toy.vunfold()
    unfolded_err = toy.eunfold_v(ErrorTreatment.ERRORS)
    if toy.cache.fail:
        return None

    diff = unfolded - vtruth
    sigma = np.sqrt(etruth ** 2 + unfolded_err ** 2)
    nonzero = vtruth != 0
    norm = np.where(nonzero, vtruth, 1.0)
    return diff / norm, sigma / norm


def bias_closure(
    unfolding: "Unfolding",
    ntoys: int,
    truth: Optional[Union[Histogram, np.ndarray]] = None,
    rng: Optional[np.random.Generator] = None,
) -> Optional[BiasResult]:
    """
    Mean relative pull of ``ntoys`` toys around the nominal measurement.

    The pull of each toy is normalised to the unfolded value of that toy,
    ``(unfolded - truth) / unfolded``. Bins of a toy with zero error do not
    contribute. The error is the standard error of the mean.
    """
    if ntoys < 1:
        raise ValueError(f"Closure bias needs at least one toy: {ntoys}")
    vtruth, _ = _reference(unfolding, truth)
    toy = unfolding.clone()
    results = run_toys(toy, ntoys, rng, with_errors=True)
    if results.failures:
        return None

    values = np.asarray(results.values)
    errors = np.asarray(results.errors)
    usable = (errors != 0) & (values != 0)
    pulls = np.zeros_like(values)
    np.divide(values - vtruth, values, out=pulls, where=usable)

    bias = pulls.sum(axis=0) / ntoys
    sum2 = ((pulls - bias) ** 2).sum(axis=0)
    if ntoys > 1:
        sigbias = np.sqrt(sum2 / (ntoys - 1) / ntoys)
    else:
        sigbias = np.sqrt(sum2)
    return bias, sigbias


def bias_asimov(
    unfolding: "Unfolding", ntoys: int, rng: Optional[np.random.Generator] = None
) -> Optional[BiasResult]:
    """
    Double-toy bias around the response truth.

    ``ntoys`` primary toys of the truth, each with ``ntoys`` secondary toys
    that are folded and unfolded; ``(primary - unfolded) / primary`` is
    collected into an ensemble of ``ntoys**2`` entries. The error is
    ``sqrt(var / n)`` with ``var = |sum x^2 - mean * sum x| / (n - 1)``.
    """
    if ntoys < 1:
        raise ValueError(f"Asimov bias needs at least one toy: {ntoys}")
    toy = unfolding.clone()
    rng = toy.rng if rng is None else rng
    backend = toy.backend
    response = toy.response

    ensemble = []
    for _ in range(ntoys):
        toy.force_recalculation()
        if toy.systematics == SystematicsTreatment.ALL:
            response.run_toy(rng)
        primary = backend.randomize(response.truth_vector(), rng)
        for _ in range(ntoys):
            secondary = backend.randomize(primary, rng)
            toy.clear_cache()
            toy.cache.v_mes = backend.fold(response, secondary)
            unfolded = toy.vunfold()
            if toy.cache.fail:
                toy.force_recalculation()
                return None
            rel = np.zeros_like(primary)
            np.divide(primary - unfolded, primary, out=rel, where=primary > 0)
            ensemble.append(rel)
    toy.force_recalculation()

    ensemble = np.asarray(ensemble)
    n = len(ensemble)
    total = ensemble.sum(axis=0)
    total2 = (ensemble ** 2).sum(axis=0)
    mean = total / n
    var = np.abs(total2 - total * mean) / max(n - 1, 1)
    return mean, np.sqrt(var / n)


def calculate_bias(
    unfolding: "Unfolding",
    method: Union[BiasMethod, int],
    ntoys: int = 0,
    truth: Optional[Union[Histogram, np.ndarray]] = None,
    rng: Optional[np.random.Generator] = None,
) -> Optional[BiasResult]:
    """Dispatch to one of the bias protocols; returns ``(bias, error)`` or None."""
    try:
        method = BiasMethod(method)
    except ValueError:
        raise ValueError(f"Unknown bias method: {method!r}") from None

    if unfolding.verbose >= 1:
        logger.info("%s: calculating %s bias with %d toys", unfolding.name, method.name, ntoys)
    if method == BiasMethod.ESTIMATOR:
        return bias_estimator(unfolding, truth)
    if method == BiasMethod.CLOSURE:
        return bias_closure(unfolding, ntoys, truth, rng)
    return bias_asimov(unfolding, ntoys, rng)
