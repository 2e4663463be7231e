"""
Distribution backends.

A backend turns a distribution object into the vectors the unfolding works
with and knows how that kind of distribution is fluctuated for toys:

* ``HistogramBackend`` for plain ``Histogram`` inputs. Toys fluctuate the
  measured vector directly and diagonal errors come from the covariance.
* ``ParametricBackend`` for ``ParametricHistogram`` inputs. Toys sample the
  per-bin nuisance parameters and diagonal errors come from the spread of a
  toy ensemble.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator, List, Optional

import numpy as np

from .constants import SystematicsTreatment
from .histogram import Histogram, NuisanceParameter, ParametricHistogram
from .toys import run_toys

if TYPE_CHECKING:
    from .response import Response
    from .unfolding import Unfolding

logger = logging.getLogger(__name__)


class Backend:
    """Common operations; subclasses specialise toys and diagonal errors."""

    name = "base"

    def vector(self, hist: Histogram, overflow: bool, density: bool) -> np.ndarray:
        return hist.vector(overflow, density)

    def error_vector(self, hist: Histogram, overflow: bool, density: bool) -> np.ndarray:
        return hist.error_vector(overflow, density)

    def nuisance_parameters(self, hist: Optional[Histogram]) -> List[NuisanceParameter]:
        return []

    def fold(self, response: "Response", truth: np.ndarray) -> np.ndarray:
        return response.fold(truth)

    @staticmethod
    def randomize(values: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """Poisson fluctuation of the positive entries of ``values``."""
        values = np.asarray(values, dtype=float)
        drawn = rng.poisson(np.clip(values, 0.0, None)).astype(float)
        return np.where(values > 0, drawn, values)

    def toys(
        self, unfolding: "Unfolding", ntoys: int, rng: np.random.Generator
    ) -> Iterator[int]:
        """
        Prepare ``unfolding`` for each of ``ntoys`` toys in turn.

        Yields the toy index after the cache has been reset and the inputs
        fluctuated; the caller unfolds and records the result.
        """
        raise NotImplementedError

    def variances(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        """Diagonal variances of the unfolded result, or None on failure."""
        raise NotImplementedError


class HistogramBackend(Backend):
    name = "histogram"

    def toys(self, unfolding, ntoys, rng):
        dosys = unfolding.systematics
        for i in range(ntoys):
            unfolding.force_recalculation()
            if dosys != SystematicsTreatment.NO_MEASURED:
                unfolding.cache.v_mes = self.randomize(unfolding.vmeasured(), rng)
            if dosys == SystematicsTreatment.ALL:
                unfolding.response.run_toy(rng)
            yield i

    def variances(self, unfolding):
        cache = unfolding.cache
        if not cache.have_cov:
            unfolding.get_cov()
        if not cache.have_cov:
            return None
        return np.diag(cache.cov).copy()


class ParametricBackend(Backend):
    name = "parametric"

    def nuisance_parameters(self, hist):
        if isinstance(hist, ParametricHistogram):
            return hist.nuisance_parameters()
        return []

    def _error_parameters(self, unfolding: "Unfolding") -> List[NuisanceParameter]:
        dosys = unfolding.systematics
        sources: List[Optional[Histogram]] = []
        if dosys != SystematicsTreatment.NO_MEASURED:
            sources.append(unfolding.measured)
        if dosys == SystematicsTreatment.ALL:
            sources.extend([unfolding.response.measured, unfolding.response.truth])

        params: List[NuisanceParameter] = []
        for hist in sources:
            for p in self.nuisance_parameters(hist):
                if any(p is q for q in params):
                    continue
                if p.error == 0.0:
                    raise ValueError(
                        f"unable to build covariance matrix for parameter '{p.name}' "
                        "with error 0 - is this an observable? please set constant"
                    )
                params.append(p)
        return params

    def _parameter_covariance(
        self, unfolding: "Unfolding", params: List[NuisanceParameter]
    ) -> np.ndarray:
        cov = np.diag([p.error ** 2 for p in params])
        measured = unfolding.measured
        if (
            unfolding.has_measured_cov
            and unfolding.systematics != SystematicsTreatment.NO_MEASURED
            and isinstance(measured, ParametricHistogram)
        ):
            meas = unfolding.vmeasured()
            cov_mes = unfolding.measured_cov()
            offset = 1 if unfolding.overflow else 0
            index = {id(p): k for k, p in enumerate(params)}
            for i, gi in enumerate(measured.gammas):
                k1 = index.get(id(gi))
                if k1 is None:
                    continue
                for j, gj in enumerate(measured.gammas):
                    k2 = index.get(id(gj))
                    if k2 is None:
                        continue
                    denom = meas[i + offset] * meas[j + offset]
                    if denom != 0.0:
                        cov[k1, k2] = cov_mes[i + offset, j + offset] / denom
        return cov

    def toys(self, unfolding, ntoys, rng):
        params = self._error_parameters(unfolding)
        if not params:
            logger.warning("%s: no free nuisance parameters, toys are identical", unfolding.name)
        snapshot = [p.value for p in params]
        if params:
            cov = self._parameter_covariance(unfolding, params)
            draws = rng.multivariate_normal(snapshot, cov, size=ntoys)
        else:
            draws = np.zeros((ntoys, 0))
        try:
            for i, draw in enumerate(draws):
                for p, value in zip(params, draw):
                    p.value = float(value)
                unfolding.force_recalculation()
                yield i
        finally:
            for p, value in zip(params, snapshot):
                p.value = value

    def variances(self, unfolding):
        ntoys = unfolding.ntoys
        if ntoys <= 1:
            logger.warning(
                "%s: at least 2 toys are needed for toy-based errors (ntoys=%d)",
                unfolding.name, ntoys,
            )
            return None
        values = np.asarray(run_toys(unfolding, ntoys, with_errors=False).values)
        return np.var(values, axis=0, ddof=1)


def backend_for(hist: Optional[Histogram]) -> Backend:
    """Backend matching the type of a measured distribution."""
    if isinstance(hist, ParametricHistogram):
        return ParametricBackend()
    return HistogramBackend()
