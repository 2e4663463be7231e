"""
Unfolding algorithms.

Each algorithm is a strategy object used by ``Unfolding``: it produces the
unfolded vector from the response and the measured vector, and may
override how the covariance and the diagonal variances are computed and
which regularisation parameter range it supports. Algorithms are
registered by ``AlgorithmTag`` so that an unfolding can be created from a
tag, a name or an integer code.

The base ``Algorithm`` is the dummy unfolding: it copies the measured
values into the result and propagates the measured covariance unchanged.
"""
from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Optional, Type, Union

import cvxpy as cp
import numpy as np

from .constants import REGPARM_UNSET, AlgorithmTag
from .linalg import invert_matrix

if TYPE_CHECKING:
    from .unfolding import Unfolding

logger = logging.getLogger(__name__)


class RegularizationBounds(NamedTuple):
    """Suggested range of the regularisation parameter of an algorithm."""

    minimum: float
    maximum: float
    step: float
    default: float


_REGISTRY: Dict[AlgorithmTag, Type["Algorithm"]] = {}


def register_algorithm(cls: Type["Algorithm"]) -> Type["Algorithm"]:
    """Class decorator adding an algorithm to the factory registry."""
    _REGISTRY[cls.tag] = cls
    return cls


def resolve_tag(tag: Union[AlgorithmTag, int, str]) -> AlgorithmTag:
    """
    Convert an algorithm tag given as enum, integer code or name.

    Names are case-insensitive and ignore '-' and '_', so ``"BinByBin"``,
    ``"bin_by_bin"`` and ``3`` all resolve to ``AlgorithmTag.BIN_BY_BIN``.

    Raises
    ------
    ValueError
        If the tag is unknown.
    """
    if isinstance(tag, AlgorithmTag):
        return tag
    if isinstance(tag, str):
        key = tag.replace("-", "").replace("_", "").lower()
        for member in AlgorithmTag:
            if member.name.replace("_", "").lower() == key:
                return member
        raise ValueError(f"Unknown unfolding algorithm: {tag!r}")
    try:
        return AlgorithmTag(tag)
    except ValueError:
        raise ValueError(f"Unknown unfolding algorithm: {tag!r}") from None


def create_algorithm(
    tag: Union[AlgorithmTag, int, str], regparm: Optional[float] = None
) -> "Algorithm":
    """Instantiate the registered algorithm for ``tag``."""
    tag = resolve_tag(tag)
    if tag not in _REGISTRY:
        raise ValueError(f"Unfolding algorithm {tag.name} is not available")
    return _REGISTRY[tag](regparm)


def available_algorithms() -> List[str]:
    return [tag.name for tag in sorted(_REGISTRY)]


def _weights(errors: np.ndarray) -> np.ndarray:
    return np.divide(1.0, errors, out=np.zeros_like(errors), where=errors > 0)


@register_algorithm
class Algorithm:
    """
    Dummy unfolding and default error propagation.

    Parameters
    ----------
    regparm : float, optional
        Regularisation parameter; ignored by algorithms without one.
    """

    tag = AlgorithmTag.NONE
    label = "Dummy"
    has_regparm = False

    def __init__(self, regparm: Optional[float] = None):
        self._regparm = REGPARM_UNSET
        if regparm is not None:
            self.set_regparm(regparm)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(regparm={self.regparm:g})"

    @property
    def regparm(self) -> float:
        return self._regparm

    def set_regparm(self, regparm: float) -> None:
        if self.has_regparm and regparm != REGPARM_UNSET:
            self._regparm = float(regparm)

    def parameter(self, unfolding: "Unfolding") -> float:
        """Regularisation parameter in use: the one set, else the default."""
        if self._regparm != REGPARM_UNSET:
            return self._regparm
        return self.settings(unfolding).default

    def settings(self, unfolding: "Unfolding") -> RegularizationBounds:
        return RegularizationBounds(0.0, 0.0, 0.0, 0.0)

    def unfold(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        """Return the unfolded vector (length ``nt``), or None on failure."""
        if unfolding.verbose >= 1:
            logger.info("%s: dummy unfolding - just copy input", unfolding.name)
        vmeas = unfolding.vmeasured()
        rec = np.zeros(unfolding.nt)
        nb = min(unfolding.nm, unfolding.nt)
        rec[:nb] = vmeas[:nb]
        return rec

    def covariance(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        """
        Covariance of the unfolded vector, or None on failure.

        The default places the measured covariance in the leading
        ``min(nm, nt)`` block and zeros elsewhere.
        """
        cov_mes = unfolding.measured_cov()
        nb = min(unfolding.nm, unfolding.nt)
        cov = np.zeros((unfolding.nt, unfolding.nt))
        cov[:nb, :nb] = cov_mes[:nb, :nb]
        return cov

    def variances(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        """Diagonal variances; delegated to the distribution backend."""
        return unfolding.backend.variances(unfolding)

    def copy(self) -> "Algorithm":
        return copy.deepcopy(self)


class _LinearAlgorithm(Algorithm):
    """Algorithm whose result is a matrix applied to the measured vector."""

    def unfolding_matrix(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        raise NotImplementedError

    def unfold(self, unfolding):
        mat = self.unfolding_matrix(unfolding)
        if mat is None:
            return None
        return mat @ unfolding.vmeasured()

    def covariance(self, unfolding):
        mat = self.unfolding_matrix(unfolding)
        if mat is None:
            return None
        return mat @ unfolding.measured_cov() @ mat.T


@register_algorithm
class BayesAlgorithm(_LinearAlgorithm):
    """
    Iterative Bayesian unfolding (D'Agostini).

    The regularisation parameter is the number of iterations. The prior of
    the first iteration is the truth distribution of the response.
    Errors are propagated linearly through the unfolding matrix of the last
    iteration.
    """

    tag = AlgorithmTag.BAYES
    label = "Bayes"
    has_regparm = True

    def settings(self, unfolding):
        return RegularizationBounds(1.0, 15.0, 1.0, 4.0)

    def unfolding_matrix(self, unfolding):
        response = unfolding.response
        R = response.matrix()
        eff = R.sum(axis=0)
        y = unfolding.vmeasured()
        prior = np.clip(response.truth_vector(), 0.0, None)
        if prior.sum() <= 0:
            prior = np.ones(unfolding.nt)
        n_iterations = max(1, int(round(self.parameter(unfolding))))

        x = prior * (y.sum() / prior.sum())
        M = np.zeros((unfolding.nt, unfolding.nm))
        for it in range(n_iterations):
            joint = R * x[np.newaxis, :]
            folded = joint.sum(axis=1)
            posterior = np.divide(
                joint, folded[:, np.newaxis],
                out=np.zeros_like(joint), where=folded[:, np.newaxis] > 0,
            )
            M = np.divide(
                posterior.T, eff[:, np.newaxis],
                out=np.zeros_like(posterior.T), where=eff[:, np.newaxis] > 0,
            )
            x = M @ y
            logger.debug("Bayes iteration %d: total=%g", it + 1, x.sum())
        if not np.all(np.isfinite(M)):
            logger.warning("%s: Bayes unfolding matrix is not finite", unfolding.name)
            return None
        return M


@register_algorithm
class SvdAlgorithm(_LinearAlgorithm):
    """
    Regularised singular value decomposition unfolding.

    The response is scaled by the inverse measured errors and decomposed;
    singular values are damped with filter factors ``s^2 / (s^2 + s_k^2)``
    where ``k`` is the regularisation parameter.
    """

    tag = AlgorithmTag.SVD
    label = "SVD"
    has_regparm = True

    def settings(self, unfolding):
        nt = max(1, unfolding.nt)
        return RegularizationBounds(1.0, float(nt), 1.0, float(max(1, nt // 2)))

    def unfolding_matrix(self, unfolding):
        R = unfolding.response.matrix()
        w = _weights(unfolding.emeasured())
        w = np.where(w > 0, w, 1.0)
        U, s, Vt = np.linalg.svd(R * w[:, np.newaxis], full_matrices=False)
        if s.size == 0 or s[0] == 0:
            logger.warning("%s: response matrix has no non-zero singular values", unfolding.name)
            return None
        k = int(round(self.parameter(unfolding)))
        k = max(1, min(k, len(s)))
        tau = s[k - 1] ** 2
        filt = np.divide(s, s ** 2 + tau, out=np.zeros_like(s), where=s > 0)
        logger.debug("SVD: k=%d, tau=%g, singular values=%s", k, tau, s)
        return (Vt.T * filt) @ U.T * w[np.newaxis, :]


@register_algorithm
class InvertAlgorithm(_LinearAlgorithm):
    """Unfolding by (pseudo-)inversion of the response matrix."""

    tag = AlgorithmTag.INVERT
    label = "Invert"

    def unfolding_matrix(self, unfolding):
        result = invert_matrix(unfolding.response.matrix(), "response matrix", unfolding.verbose)
        if not result.ok:
            return None
        return result.inverse


@register_algorithm
class BinByBinAlgorithm(Algorithm):
    """
    Correction-factor unfolding.

    Each bin is scaled by ``truth / measured`` of the response training
    sample. Migrations between bins are ignored, so the truth and measured
    binnings must match.
    """

    tag = AlgorithmTag.BIN_BY_BIN
    label = "BinByBin"

    def factors(self, unfolding: "Unfolding") -> Optional[np.ndarray]:
        if unfolding.nm != unfolding.nt:
            logger.warning(
                "%s: bin-by-bin unfolding needs equal truth and measured binning (%d != %d)",
                unfolding.name, unfolding.nt, unfolding.nm,
            )
            return None
        response = unfolding.response
        train_meas = response.measured_vector()
        train_truth = response.truth_vector()
        return np.divide(
            train_truth, train_meas, out=np.zeros_like(train_truth), where=train_meas != 0
        )

    def unfold(self, unfolding):
        c = self.factors(unfolding)
        if c is None:
            return None
        return c * unfolding.vmeasured()

    def covariance(self, unfolding):
        c = self.factors(unfolding)
        if c is None:
            return None
        return c[:, np.newaxis] * unfolding.measured_cov() * c[np.newaxis, :]

    def variances(self, unfolding):
        c = self.factors(unfolding)
        if c is None:
            return None
        return c ** 2 * np.diag(unfolding.measured_cov())


@register_algorithm
class TikhonovAlgorithm(Algorithm):
    """
    Non-negative least squares with a curvature penalty, solved with cvxpy.

    Minimizes ``|W (R x - y)|^2 + tau |C x|^2`` with ``x >= 0``, where ``W``
    holds the inverse measured errors and ``C`` is the second-derivative
    operator. The regularisation parameter is ``tau``. The covariance is
    that of the unconstrained solution.
    """

    tag = AlgorithmTag.TIKHONOV
    label = "Tikhonov"
    has_regparm = True

    def settings(self, unfolding):
        return RegularizationBounds(1e-6, 1.0, 1e-3, 1e-3)

    @staticmethod
    def curvature_matrix(n: int) -> np.ndarray:
        if n < 3:
            return np.eye(n)
        C = np.zeros((n - 2, n))
        for i in range(n - 2):
            C[i, i] = 1.0
            C[i, i + 1] = -2.0
            C[i, i + 2] = 1.0
        return C

    def _system(self, unfolding: "Unfolding"):
        R = unfolding.response.matrix()
        w = _weights(unfolding.emeasured())
        C = self.curvature_matrix(unfolding.nt)
        tau = self.parameter(unfolding)
        return R, w, C, tau

    def unfold(self, unfolding):
        R, w, C, tau = self._system(unfolding)
        y = unfolding.vmeasured()
        x = cp.Variable(unfolding.nt, nonneg=True)
        objective = cp.Minimize(
            cp.sum_squares(cp.multiply(w, R @ x - y)) + tau * cp.sum_squares(C @ x)
        )
        problem = cp.Problem(objective)
        try:
            problem.solve()
        except cp.error.SolverError as exc:
            logger.warning("%s: CVXPY solver failed: %s", unfolding.name, exc)
            return None
        logger.debug("CVXPY status: %s", problem.status)
        logger.debug("CVXPY objective value: %s", problem.value)
        if problem.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE) or x.value is None:
            logger.warning("%s: CVXPY status %s", unfolding.name, problem.status)
            return None
        return np.asarray(x.value, dtype=float)

    def covariance(self, unfolding):
        R, w, C, tau = self._system(unfolding)
        Rw = R * (w ** 2)[:, np.newaxis]
        normal = R.T @ Rw + tau * (C.T @ C)
        result = invert_matrix(normal, "Tikhonov normal matrix", unfolding.verbose)
        if not result.ok:
            return None
        G = result.inverse @ Rw.T
        return G @ unfolding.measured_cov() @ G.T
