"""
Matrix inversion with numerical-conditioning diagnostics.
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import NamedTuple

import numpy as np
from scipy import linalg

from .constants import COND_MAX

logger = logging.getLogger(__name__)


class InversionStatus(IntEnum):
    FAILED = 0
    OK = 1
    BAD_CONDITION = 2
    POOR_CONDITION = 3


class InversionResult(NamedTuple):
    """Result of ``invert_matrix``.

    ``inverse`` must not be used when ``status`` is ``FAILED``; statuses
    ``BAD_CONDITION`` and ``POOR_CONDITION`` carry a best-effort inverse.
    """

    inverse: np.ndarray
    status: InversionStatus
    condition: float

    @property
    def ok(self) -> bool:
        return self.status != InversionStatus.FAILED


def invert_matrix(
    mat: np.ndarray, name: str = "matrix", verbose: int = 0
) -> InversionResult:
    """
    Invert a matrix by singular value decomposition.

    Singular values below ``max(shape) * eps * s_max`` are treated as zero,
    so the result is the Moore-Penrose pseudo-inverse (shape ``(c, r)`` for
    an ``(r, c)`` input).

    Parameters
    ----------
    mat : np.ndarray
        Matrix to invert.
    name : str, optional
        Label used in log messages.
    verbose : int, optional
        1 or more logs condition, determinant and the maximum deviation of
        ``mat @ inverse`` from the identity; 3 or more also logs the product.

    Returns
    -------
    InversionResult
        Inverse, status and condition number. The condition is negative,
        and the status BAD_CONDITION, if a singular value is exactly zero.
        The status is POOR_CONDITION if the condition exceeds ``COND_MAX``
        or a singular value was truncated.
    """
    mat = np.asarray(mat, dtype=float)
    if mat.ndim != 2:
        raise ValueError(f"{name} must be a 2D array")
    failed = InversionResult(np.zeros((mat.shape[1], mat.shape[0])), InversionStatus.FAILED, -1.0)
    if not np.all(np.isfinite(mat)):
        logger.warning("%s inversion failed: non-finite elements", name)
        return failed
    try:
        U, s, Vt = linalg.svd(mat, full_matrices=False)
    except (linalg.LinAlgError, ValueError) as exc:
        logger.warning("%s inversion failed: %s", name, exc)
        return failed
    if s.size == 0 or s[0] == 0.0:
        logger.warning("%s inversion failed: matrix is zero", name)
        return failed

    tol = max(mat.shape) * np.finfo(float).eps * s[0]
    cond = s[0] / s[-1] if s[-1] > 0.0 else -1.0

    if verbose >= 1:
        if mat.shape[0] == mat.shape[1]:
            sign, logdet = np.linalg.slogdet(mat)
            logger.info(
                "%s condition=%g, determinant=%g (log|det|=%g), tolerance=%g",
                name, cond, sign * np.exp(logdet), logdet, tol,
            )
        else:
            logger.info("%s condition=%g, tolerance=%g", name, cond, tol)

    status = InversionStatus.OK
    if cond < 0.0:
        logger.warning("bad %s condition (%g)", name, cond)
        status = InversionStatus.BAD_CONDITION
    elif cond > COND_MAX or s[-1] <= tol:
        logger.warning(
            "poorly conditioned %s - inverse may be inaccurate (condition=%g)", name, cond
        )
        status = InversionStatus.POOR_CONDITION

    s_inv = np.divide(1.0, s, out=np.zeros_like(s), where=s > tol)
    inv = (Vt.T * s_inv) @ U.T
    if not np.all(np.isfinite(inv)):
        logger.warning("%s inversion failed: non-finite inverse", name)
        return failed

    if verbose >= 1:
        product = mat @ inv
        if verbose >= 3:
            logger.debug("V*V^-1 for %s:\n%s", name, product)
        if product.shape[0] == product.shape[1]:
            deviation = np.max(np.abs(product - np.eye(product.shape[0])))
            logger.info("Inverse %s %g%% maximum error", name, 100.0 * deviation)

    return InversionResult(inv, status, float(cond))


def cut_zeros(mat: np.ndarray) -> np.ndarray:
    """Remove each row and the matching column whose row sums to zero."""
    mat = np.asarray(mat, dtype=float)
    keep = np.flatnonzero(mat.sum(axis=1) != 0)
    return mat[np.ix_(keep, keep)]
