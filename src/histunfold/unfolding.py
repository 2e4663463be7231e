"""Unfolding engine: configuration, cached results and error propagation."""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import numpy as np

from . import bias as _bias
from . import toys as _toys
from .algorithms import Algorithm, RegularizationBounds, create_algorithm
from .backends import Backend, HistogramBackend, backend_for
from .cache import ResultCache
from .constants import (
    CHI2_FAILED,
    DEFAULT_NTOYS,
    DEFAULT_VERBOSE,
    AlgorithmTag,
    BiasMethod,
    ErrorTreatment,
    SystematicsTreatment,
)
from .histogram import Histogram
from .linalg import invert_matrix
from .response import Response

logger = logging.getLogger(__name__)

TruthLike = Union[Histogram, Sequence[float], np.ndarray]


class Unfolding:
    """
    Unfold a measured distribution through a detector response.

    The unfolding owns a private copy of the response (or takes ownership
    of it) and of the measured distribution. Results are computed on first
    access and kept in a ``ResultCache``; any change of the inputs replaces
    the cache with an empty one.

    Parameters
    ----------
    response : Response, optional
        Response mapping truth to measured bins.
    measured : Histogram, optional
        Measured distribution to unfold.
    algorithm : Algorithm, AlgorithmTag, int or str, optional
        Unfolding strategy; the dummy unfolding if omitted.
    regparm : float, optional
        Regularisation parameter passed to the algorithm.
    name, title : str, optional
        Labels; default to the response name and "Unfold <response title>".
    verbose : int, optional
        Diagnostic level: 0 silent, 1 condition numbers and summaries,
        3 also matrix products. Default: 1.
    ntoys : int, optional
        Number of toys for toy-based errors, default: 50.
    systematics : SystematicsTreatment, optional
        Inputs fluctuated in toys, default: measured distribution only.
    seed : int, optional
        Seed for a new random generator.
    rng : np.random.Generator, optional
        Random generator to share; takes precedence over ``seed``.
    take_ownership : bool, optional
        Use ``response`` directly instead of copying it.

    Examples
    --------
    >>> unfolding = Unfolding(response, measured, algorithm="bayes", regparm=4)
    >>> unfolded = unfolding.vunfold()
    >>> errors = unfolding.eunfold_v(ErrorTreatment.COVARIANCE)
    >>> chi2 = unfolding.chi2(truth, ErrorTreatment.COVARIANCE)
    """

    def __init__(
        self,
        response: Optional[Response] = None,
        measured: Optional[Histogram] = None,
        algorithm: Optional[Union[Algorithm, AlgorithmTag, int, str]] = None,
        regparm: Optional[float] = None,
        name: str = "",
        title: str = "",
        verbose: int = DEFAULT_VERBOSE,
        ntoys: int = DEFAULT_NTOYS,
        systematics: SystematicsTreatment = SystematicsTreatment.NO_SYSTEMATICS,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        take_ownership: bool = False,
    ):
        if algorithm is None:
            algorithm = Algorithm()
        elif not isinstance(algorithm, Algorithm):
            algorithm = create_algorithm(algorithm)
        self._algorithm = algorithm
        if regparm is not None:
            self._algorithm.set_regparm(regparm)

        self.name = name
        self.title = title
        self._verbose = int(verbose)
        self.set_ntoys(ntoys)
        self._dosys = SystematicsTreatment(systematics)
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self._with_error = ErrorTreatment.DEFAULT

        self._init_inputs()
        self._cache = ResultCache()
        if response is not None:
            self.setup(response, measured, take_ownership)

    def _init_inputs(self) -> None:
        self._response: Optional[Response] = None
        self._measured: Optional[Histogram] = None
        self._cov_mes: Optional[np.ndarray] = None
        self._backend: Backend = HistogramBackend()
        self._nm = 0
        self._nt = 0
        self._overflow = False

    def __str__(self) -> str:
        parts = [
            f"{type(self).__name__}::{self.name} \"{self.title}\"",
            f"algorithm={self._algorithm.label}",
            f"regularisation parameter={self.regparm:g}",
        ]
        if self._cov_mes is not None:
            parts.append("with measurement covariance")
        if self._dosys != SystematicsTreatment.NO_SYSTEMATICS:
            parts.append(f"systematics={self._dosys.name}")
        parts.append(f"{self._nm} bins measured")
        parts.append(f"{self._nt} bins truth" + (" including overflows" if self._overflow else ""))
        return ", ".join(parts)

    def __repr__(self) -> str:
        return (
            f"Unfolding(name={self.name!r}, algorithm={self._algorithm!r}, "
            f"nm={self._nm}, nt={self._nt})"
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @classmethod
    def new(
        cls,
        algorithm: Union[AlgorithmTag, int, str],
        response: Response,
        measured: Optional[Histogram] = None,
        regparm: Optional[float] = None,
        **kwargs,
    ) -> "Unfolding":
        """Create an unfolding for the algorithm identified by ``algorithm``."""
        return cls(response, measured, algorithm=create_algorithm(algorithm, regparm), **kwargs)

    def setup(
        self,
        response: Response,
        measured: Optional[Histogram] = None,
        take_ownership: bool = False,
    ) -> "Unfolding":
        """Attach a response and a measured distribution, discarding all state."""
        self.reset()
        self.set_response(response, take_ownership)
        if measured is not None:
            self.set_measured(measured)
        return self

    def reset(self) -> None:
        """Drop the inputs and all cached results."""
        self.clear_cache()
        self._init_inputs()

    def set_response(self, response: Response, take_ownership: bool = False) -> None:
        """
        Set the response, copying it unless ``take_ownership``.

        Raises
        ------
        ValueError
            If ``response`` is None.
        TypeError
            If ``response`` is not a ``Response``.
        """
        if response is None:
            raise ValueError("cannot set response to invalid value!")
        if not isinstance(response, Response):
            raise TypeError(f"response must be a Response, got {type(response).__name__}")
        self._response = response if take_ownership else response.copy()
        self._overflow = self._response.overflow
        self._nm = self._response.n_measured
        self._nt = self._response.n_truth
        if not self.name:
            self.name = self._response.name
        if not self.title:
            self.title = f"Unfold {self._response.title}"
        self.clear_cache()

    def set_measured(self, measured: Histogram) -> None:
        """Set the measured distribution; clears any measured covariance."""
        if not isinstance(measured, Histogram):
            raise TypeError(f"measured must be a Histogram, got {type(measured).__name__}")
        self._require_response()
        if measured.nvalues(self._overflow) != self._nm:
            raise ValueError(
                f"measured distribution has {measured.nvalues(self._overflow)} bins, "
                f"response expects {self._nm}"
            )
        self._measured = measured.copy()
        self._cov_mes = None
        self._backend = backend_for(self._measured)
        self.clear_cache()

    def set_measured_vector(
        self,
        values: Sequence[float],
        errors: Optional[Sequence[float]] = None,
        covariance: Optional[np.ndarray] = None,
    ) -> None:
        """
        Set the measured distribution from a vector with the response binning.

        Parameters
        ----------
        values : array_like
            Measured values, length ``nm``.
        errors : array_like, optional
            Per-bin errors. Default ``sqrt(|values|)``.
        covariance : np.ndarray, optional
            Full covariance matrix ``(nm, nm)``; mutually exclusive with
            ``errors``.
        """
        self._require_response()
        values = np.asarray(values, dtype=float)
        if len(values) != self._nm:
            raise ValueError(
                f"measured vector length ({len(values)}) must match "
                f"number of measured bins ({self._nm})"
            )
        if errors is not None and covariance is not None:
            raise ValueError("give either errors or covariance, not both")
        if covariance is not None:
            covariance = self._check_cov(covariance)
            errors = np.sqrt(np.clip(np.diag(covariance), 0.0, None))
        response = self._response
        hist = Histogram.from_vector(
            values,
            errors,
            like=response.measured,
            overflow=self._overflow,
            density=response.density,
            name=self.name,
            title=self.title,
        )
        self.set_measured(hist)
        if covariance is not None:
            self.set_measured_cov(covariance)

    def _check_cov(self, cov: np.ndarray) -> np.ndarray:
        cov = np.array(cov, dtype=float)
        if cov.shape != (self._nm, self._nm):
            raise ValueError(
                f"measured covariance shape {cov.shape} must be ({self._nm}, {self._nm})"
            )
        return cov

    def set_measured_cov(self, cov: np.ndarray) -> None:
        """Set the covariance matrix of the measured distribution."""
        self._require_response()
        self._cov_mes = self._check_cov(cov)
        self.clear_cache()

    def measured_cov(self) -> np.ndarray:
        """Measured covariance; diagonal of squared measured errors if none was set."""
        if self._cov_mes is not None:
            return self._cov_mes.copy()
        cache = self._cache
        if cache.cov_mes is None:
            cache.cov_mes = np.diag(self.emeasured() ** 2)
        return cache.cov_mes.copy()

    @property
    def has_measured_cov(self) -> bool:
        return self._cov_mes is not None

    def _require_response(self) -> None:
        if self._response is None:
            raise ValueError("no response set - call setup() first")

    def _require_measured(self) -> None:
        self._require_response()
        if self._measured is None:
            raise ValueError("no measured distribution set")

    def vmeasured(self) -> np.ndarray:
        """Measured distribution as a vector."""
        cache = self._cache
        if cache.v_mes is None:
            self._require_measured()
            cache.v_mes = self._backend.vector(self._measured, self._overflow, self.density)
        return cache.v_mes.copy()

    def emeasured(self) -> np.ndarray:
        """Measured errors as a vector."""
        cache = self._cache
        if cache.e_mes is None:
            if self._cov_mes is not None:
                cache.e_mes = np.sqrt(np.clip(np.diag(self._cov_mes), 0.0, None))
            else:
                self._require_measured()
                cache.e_mes = self._backend.error_vector(
                    self._measured, self._overflow, self.density
                )
        return cache.e_mes.copy()

    @property
    def response(self) -> Optional[Response]:
        return self._response

    @property
    def measured(self) -> Optional[Histogram]:
        return self._measured

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def algorithm(self) -> Algorithm:
        return self._algorithm

    @property
    def algorithm_tag(self) -> AlgorithmTag:
        return self._algorithm.tag

    @property
    def nm(self) -> int:
        return self._nm

    @property
    def nt(self) -> int:
        return self._nt

    @property
    def overflow(self) -> bool:
        return self._overflow

    def set_overflow(self, overflow: bool) -> None:
        """Override the use of under/overflow bins taken from the response."""
        self._overflow = bool(overflow)
        if self._response is not None:
            self._response.overflow = self._overflow
            self._response.clear_cache()
            self._nm = self._response.n_measured
            self._nt = self._response.n_truth
        self.clear_cache()

    @property
    def density(self) -> bool:
        return self._response.density if self._response is not None else False

    @property
    def verbose(self) -> int:
        return self._verbose

    def set_verbose(self, level: int) -> None:
        self._verbose = int(level)

    @property
    def ntoys(self) -> int:
        return self._ntoys

    def set_ntoys(self, ntoys: int) -> None:
        """Set the number of toys used for toy-based errors."""
        if ntoys < 0:
            raise ValueError(f"Number of toys must be non-negative: {ntoys}")
        self._ntoys = int(ntoys)

    def set_seed(self, seed: Optional[int]) -> None:
        self.rng = np.random.default_rng(seed)

    def set_name_title(self, name: str, title: str) -> None:
        self.name = name
        self.title = title

    @property
    def systematics(self) -> SystematicsTreatment:
        return self._dosys

    def include_systematics(self, dosys: SystematicsTreatment = SystematicsTreatment.ALL) -> None:
        """
        Choose which inputs are fluctuated in toys.

        Use ``NO_MEASURED`` to exclude measurement errors. Changing the
        setting clears the cache.
        """
        dosys = SystematicsTreatment(dosys)
        if dosys != self._dosys:
            self.clear_cache()
            self._dosys = dosys

    @property
    def error_treatment(self) -> ErrorTreatment:
        """Error treatment of the last error computation."""
        return self._with_error

    @error_treatment.setter
    def error_treatment(self, treatment: ErrorTreatment) -> None:
        self._with_error = ErrorTreatment(treatment)

    @property
    def regparm(self) -> float:
        return self._algorithm.regparm

    def set_regparm(self, regparm: float) -> None:
        self._algorithm.set_regparm(regparm)
        self.clear_cache()

    def regularization_bounds(self) -> RegularizationBounds:
        """Minimum, maximum, step and default of the regularisation parameter."""
        cache = self._cache
        if not cache.have_settings:
            bounds = self._algorithm.settings(self)
            cache.min_parm, cache.max_parm, cache.step_size_parm, cache.default_parm = bounds
            cache.have_settings = True
        return RegularizationBounds(
            cache.min_parm, cache.max_parm, cache.step_size_parm, cache.default_parm
        )

    @property
    def min_parm(self) -> float:
        return self.regularization_bounds().minimum

    @property
    def max_parm(self) -> float:
        return self.regularization_bounds().maximum

    @property
    def step_size_parm(self) -> float:
        return self.regularization_bounds().step

    @property
    def default_parm(self) -> float:
        return self.regularization_bounds().default

    def clone(self, measured: Optional[Histogram] = None, verbose: int = 0) -> "Unfolding":
        """
        Independent unfolding configured like this one.

        The clone copies the response and algorithm and shares the random
        generator. Its measured distribution is ``measured``, or an Asimov
        copy of the response measured distribution.
        """
        self._require_response()
        if measured is None:
            measured = self._response.measured.asimov_clone()
        clone = Unfolding(
            self._response,
            measured,
            algorithm=self._algorithm.copy(),
            name=f"{self.name}_toy",
            title=self.title,
            verbose=verbose,
            ntoys=self._ntoys,
            systematics=self._dosys,
            rng=self.rng,
        )
        if clone.overflow != self._overflow:
            clone.set_overflow(self._overflow)
            clone.set_measured(measured)
        return clone

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    @property
    def cache(self) -> ResultCache:
        """Cached results; replaced, never reused, when inputs change."""
        return self._cache

    def clear_cache(self) -> None:
        self._cache = ResultCache()

    def force_recalculation(self) -> None:
        """Clear the cache and any toy variation of the response."""
        self._cache = ResultCache()
        if self._response is not None:
            self._response.clear_cache()

    def restore_cache(self, cache: ResultCache) -> None:
        """Reinstate a cache saved before running toys."""
        self._cache = cache
        if self._response is not None:
            self._response.clear_cache()

    # ------------------------------------------------------------------
    # Unfolding and error propagation
    # ------------------------------------------------------------------
    def unfold(self) -> None:
        """Run the algorithm and store the unfolded vector in the cache."""
        self._require_measured()
        cache = self._cache
        rec = self._algorithm.unfold(self)
        if rec is None:
            logger.warning("%s: %s unfolding failed", self.name, self._algorithm.label)
            return
        rec = np.asarray(rec, dtype=float)
        if rec.shape != (self._nt,):
            raise ValueError(
                f"{self._algorithm.label} returned {rec.shape} values, expected ({self._nt},)"
            )
        cache.rec = rec
        cache.unfolded = True

    def _resolve(self, treatment: ErrorTreatment) -> ErrorTreatment:
        try:
            treatment = ErrorTreatment(treatment)
        except ValueError:
            raise ValueError(f"unrecognised error method {treatment!r}") from None
        if treatment == ErrorTreatment.DEFAULT:
            treatment = self._with_error
        if treatment == ErrorTreatment.DEFAULT:
            treatment = ErrorTreatment.ERRORS
        return treatment

    def unfold_with_errors(
        self, treatment: ErrorTreatment, want_weights: bool = False
    ) -> bool:
        """
        Unfold if needed and compute the errors for ``treatment``.

        Returns False, and sets the sticky failure flag, if the unfolding or
        the requested error quantity could not be computed.

        Raises
        ------
        ValueError
            If ``treatment`` is not an ``ErrorTreatment``.
        """
        try:
            treatment = ErrorTreatment(treatment)
        except ValueError:
            raise ValueError(f"unrecognised error method {treatment!r}") from None

        cache = self._cache
        if cache.fail:
            return False
        if not cache.unfolded:
            self.unfold()
            if not cache.unfolded:
                cache.fail = True
                return False

        if self._with_error != treatment:
            cache.have_errors = False
        self._with_error = treatment

        if want_weights and treatment in (ErrorTreatment.ERRORS, ErrorTreatment.COVARIANCE):
            if not cache.have_wgt:
                self.get_wgt()
            ok = cache.have_wgt
        elif treatment in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            if not cache.have_errors:
                self.get_errors()
            ok = cache.have_errors
        elif treatment == ErrorTreatment.COVARIANCE:
            if not cache.have_cov:
                self.get_cov()
            ok = cache.have_cov
        elif treatment == ErrorTreatment.COV_TOY:
            if not cache.have_err_mat:
                self.get_err_mat()
            ok = cache.have_err_mat
        else:
            ok = True

        if not ok:
            logger.warning("%s: %s errors could not be computed", self.name, treatment.name)
            cache.fail = True
        return ok

    def get_errors(self) -> None:
        """Compute the diagonal variances of the unfolded vector."""
        cache = self._cache
        variances = self._algorithm.variances(self)
        if variances is None:
            return
        cache.variances = np.asarray(variances, dtype=float)
        cache.have_errors = True

    def get_cov(self) -> None:
        """Compute the covariance matrix of the unfolded vector."""
        cache = self._cache
        cov = self._algorithm.covariance(self)
        if cov is None:
            return
        cov = np.asarray(cov, dtype=float)
        if cov.shape != (self._nt, self._nt):
            raise ValueError(
                f"{self._algorithm.label} covariance has shape {cov.shape}, "
                f"expected ({self._nt}, {self._nt})"
            )
        cache.cov = cov
        cache.have_cov = True

    def get_wgt(self) -> None:
        """Compute the weight matrix, the inverse of the covariance."""
        cache = self._cache
        if not cache.have_cov:
            self.get_cov()
        if not cache.have_cov:
            return
        result = invert_matrix(cache.cov, "covariance matrix", self._verbose)
        if not result.ok:
            return
        cache.wgt = result.inverse
        cache.have_wgt = True

    def get_err_mat(self) -> None:
        """Compute the covariance matrix from the spread of toy results."""
        cache = self._cache
        if self._ntoys <= 1:
            logger.warning(
                "%s: at least 2 toys are needed for the toy covariance (ntoys=%d)",
                self.name, self._ntoys,
            )
            return
        if self._verbose >= 1:
            logger.info("%s: calculating covariance from %d toys", self.name, self._ntoys)
        err_mat = _toys.toy_covariance(self, self._ntoys)
        if err_mat is None:
            return
        cache.err_mat = err_mat
        cache.have_err_mat = True

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def vunfold(self) -> np.ndarray:
        """Unfolded distribution as a vector; zeros if the unfolding failed."""
        cache = self._cache
        if not cache.unfolded:
            if not cache.fail:
                self.unfold()
            if not cache.unfolded:
                cache.fail = True
                if cache.rec is None:
                    cache.rec = np.zeros(self._nt)
        return cache.rec.copy()

    def eunfold(self, treatment: ErrorTreatment = ErrorTreatment.COVARIANCE) -> np.ndarray:
        """
        Covariance matrix of the unfolded distribution.

        NO_ERROR gives the bin contents on the diagonal, ERRORS and ROOFIT
        the diagonal variances, COVARIANCE the propagated covariance and
        COV_TOY the toy covariance. Zero matrix on failure.
        """
        treatment = self._resolve(treatment)
        if not self.unfold_with_errors(treatment):
            return np.zeros((self._nt, self._nt))
        cache = self._cache
        if treatment == ErrorTreatment.NO_ERROR:
            return np.diag(cache.rec)
        if treatment in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            return np.diag(cache.variances)
        if treatment == ErrorTreatment.COVARIANCE:
            return cache.cov.copy()
        return cache.err_mat.copy()

    def eunfold_v(self, treatment: ErrorTreatment = ErrorTreatment.ERRORS) -> np.ndarray:
        """Errors of the unfolded distribution as a vector; zeros on failure."""
        treatment = self._resolve(treatment)
        if not self.unfold_with_errors(treatment):
            return np.zeros(self._nt)
        cache = self._cache
        if treatment == ErrorTreatment.NO_ERROR:
            variances = cache.rec
        elif treatment in (ErrorTreatment.ERRORS, ErrorTreatment.ROOFIT):
            variances = cache.variances
        elif treatment == ErrorTreatment.COVARIANCE:
            variances = np.diag(cache.cov)
        else:
            variances = np.diag(cache.err_mat)
        return np.sqrt(np.abs(variances))

    def wunfold(self, treatment: ErrorTreatment = ErrorTreatment.COVARIANCE) -> np.ndarray:
        """Weight matrix (inverse covariance) of the unfolded distribution."""
        treatment = self._resolve(treatment)
        wgt = np.zeros((self._nt, self._nt))
        if not self.unfold_with_errors(treatment, want_weights=True):
            return wgt
        cache = self._cache
        if treatment == ErrorTreatment.NO_ERROR:
            np.fill_diagonal(
                wgt, np.divide(1.0, cache.rec, out=np.zeros(self._nt), where=cache.rec != 0)
            )
        elif treatment == ErrorTreatment.ERRORS:
            np.fill_diagonal(wgt, np.diag(cache.wgt))
        elif treatment == ErrorTreatment.ROOFIT:
            v = cache.variances
            np.fill_diagonal(wgt, np.divide(1.0, v, out=np.zeros(self._nt), where=v > 0))
        elif treatment == ErrorTreatment.COVARIANCE:
            wgt = cache.wgt.copy()
        else:
            result = invert_matrix(cache.err_mat, "covariance matrix from toys", self._verbose)
            if not result.ok:
                cache.fail = True
                return wgt
            wgt = result.inverse
        return wgt

    def hunfold(self, treatment: ErrorTreatment = ErrorTreatment.ERRORS) -> Histogram:
        """Unfolded distribution as a histogram with the truth binning."""
        self._require_response()
        treatment = self._resolve(treatment)
        if not self.unfold_with_errors(treatment):
            treatment = ErrorTreatment.NO_ERROR
        truth = self._response.truth
        if not self._cache.unfolded:
            return Histogram(truth.edges, name=truth.name, title=truth.title)
        return Histogram.from_vector(
            self.vunfold(),
            self.eunfold_v(treatment),
            like=truth,
            overflow=self._overflow,
            density=self.density,
            name=truth.name,
            title=truth.title,
        )

    def _truth_vector(self, truth: Optional[TruthLike]) -> np.ndarray:
        if truth is None:
            self._require_response()
            truth = self._response.truth
        if isinstance(truth, Histogram):
            values = self._backend.vector(truth, self._overflow, self.density)
        else:
            values = np.asarray(truth, dtype=float)
        if len(values) != self._nt:
            raise ValueError(
                f"truth length ({len(values)}) must match number of truth bins ({self._nt})"
            )
        return values

    def chi2(
        self,
        truth: Optional[TruthLike] = None,
        treatment: ErrorTreatment = ErrorTreatment.COVARIANCE,
    ) -> float:
        """
        Chi-square of the unfolded distribution against ``truth``.

        COVARIANCE and COV_TOY use the full weight matrix; other treatments
        sum ``(residual / error)^2`` over bins with non-zero error. Returns
        ``CHI2_FAILED`` if the errors could not be computed.

        Parameters
        ----------
        truth : Histogram or array_like, optional
            Reference distribution, default the response truth.
        treatment : ErrorTreatment, optional
            Error treatment, default COVARIANCE.
        """
        treatment = self._resolve(treatment)
        if not self.unfold_with_errors(treatment):
            return CHI2_FAILED
        res = self._cache.rec - self._truth_vector(truth)
        if treatment in (ErrorTreatment.COVARIANCE, ErrorTreatment.COV_TOY):
            wgt = self.wunfold(treatment)
            if self._cache.fail:
                return CHI2_FAILED
            return float(res @ wgt @ res)
        err = self.eunfold_v(treatment)
        if self._cache.fail:
            return CHI2_FAILED
        mask = err > 0.0
        return float(np.sum((res[mask] / err[mask]) ** 2))

    # ------------------------------------------------------------------
    # Toys and bias
    # ------------------------------------------------------------------
    def run_toys(
        self, ntoys: int, rng: Optional[np.random.Generator] = None,
        with_errors: Optional[bool] = None,
    ) -> _toys.ToyResults:
        """Unfold ``ntoys`` fluctuated replicas; see ``toys.run_toys``."""
        self._require_measured()
        return _toys.run_toys(self, ntoys, rng, with_errors)

    def run_toy(self, rng: Optional[np.random.Generator] = None):
        """Single toy: unfolded values, errors and chi-square."""
        self._require_measured()
        return _toys.run_toy(self, rng)

    def calculate_bias(
        self,
        method: Optional[BiasMethod] = None,
        ntoys: int = 0,
        truth: Optional[TruthLike] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        """
        Estimate the bias of the unfolding.

        Parameters
        ----------
        method : BiasMethod, optional
            Bias protocol. If omitted, ESTIMATOR for ``ntoys == 0`` and
            CLOSURE otherwise.
        ntoys : int, optional
            Number of toys (primary and secondary for ASIMOV).
        truth : Histogram or array_like, optional
            Reference truth, default the response truth. Not used by ASIMOV.
        rng : np.random.Generator, optional
            Random generator, default the generator of this unfolding.

        Raises
        ------
        ValueError
            If the method is unknown or the toy count is invalid.

        If an unfolding of the clone fails, a warning is logged and no bias
        is stored.
        """
        self._require_response()
        if method is None:
            method = BiasMethod.ESTIMATOR if ntoys == 0 else BiasMethod.CLOSURE
        if truth is not None and not isinstance(truth, Histogram):
            truth = np.asarray(truth, dtype=float)
        result = _bias.calculate_bias(self, method, ntoys, truth, rng)
        cache = self._cache
        if result is None:
            logger.warning("%s: bias calculation failed", self.name)
            cache.bias = cache.sigbias = None
            cache.have_bias = False
            return
        cache.bias, cache.sigbias = result
        cache.have_bias = True

    def vbias(self) -> np.ndarray:
        """Bias as a vector."""
        if not self._cache.have_bias:
            raise RuntimeError("calculate bias before attempting to retrieve it!")
        return self._cache.bias.copy()

    def ebias(self) -> np.ndarray:
        """Bias errors as a vector."""
        if not self._cache.have_bias:
            raise RuntimeError("calculate bias before attempting to retrieve it!")
        return self._cache.sigbias.copy()

    def dump(self) -> None:
        """Log the configuration and cache flags."""
        cache = self._cache
        logger.info("%s", self)
        logger.info(
            "nm=%d nt=%d overflow=%s ntoys=%d dosys=%s verbose=%d with_error=%s backend=%s",
            self._nm, self._nt, self._overflow, self._ntoys, self._dosys.name,
            self._verbose, self._with_error.name, self._backend.name,
        )
        logger.info(
            "cache: unfolded=%s fail=%s cov=%s wgt=%s err_mat=%s errors=%s bias=%s",
            cache.unfolded, cache.fail, cache.have_cov, cache.have_wgt,
            cache.have_err_mat, cache.have_errors, cache.have_bias,
        )
        logger.info("response: %r", self._response)
        logger.info("measured: %r", self._measured)


def new_unfolding(
    algorithm: Union[AlgorithmTag, int, str],
    response: Response,
    measured: Optional[Histogram] = None,
    regparm: Optional[float] = None,
    **kwargs,
) -> Unfolding:
    """
    Factory: unfolding with the algorithm selected by tag.

    Parameters
    ----------
    algorithm : AlgorithmTag, int or str
        Algorithm tag, integer code or name ("bayes", "svd", "bin_by_bin",
        "tikhonov", "invert", "none").
    response : Response
        Response mapping.
    measured : Histogram, optional
        Measured distribution.
    regparm : float, optional
        Regularisation parameter; the algorithm default if omitted.
    **kwargs
        Further ``Unfolding`` options.
    """
    return Unfolding.new(algorithm, response, measured, regparm, **kwargs)
