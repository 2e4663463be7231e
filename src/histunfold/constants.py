"""Enumerations and default settings shared across histunfold."""
from __future__ import annotations

from enum import IntEnum


class AlgorithmTag(IntEnum):
    """Identifier of an unfolding algorithm, used for factory dispatch."""

    NONE = 0
    BAYES = 1
    SVD = 2
    BIN_BY_BIN = 3
    TIKHONOV = 4
    INVERT = 5


class ErrorTreatment(IntEnum):
    """
    Error propagation method for the unfolded distribution.

    NO_ERROR
        Errors are the square root of the bin content.
    ERRORS
        Diagonal of the covariance matrix given by the unfolding.
    COVARIANCE
        Full covariance matrix given by the unfolding.
    COV_TOY
        Covariance matrix from the variation of toy Monte-Carlo results.
    ROOFIT
        Diagonal errors computed the way the distribution backend prefers
        (covariance for plain histograms, a toy ensemble for parametric ones).
    DEFAULT
        Use the treatment last requested on the unfolding, or ERRORS.
    """

    NO_ERROR = 0
    ERRORS = 1
    COVARIANCE = 2
    COV_TOY = 3
    ROOFIT = 4
    DEFAULT = -1


class BiasMethod(IntEnum):
    """Protocol used by ``Unfolding.calculate_bias``."""

    ESTIMATOR = 0
    CLOSURE = 1
    ASIMOV = 2


class SystematicsTreatment(IntEnum):
    """Which inputs are fluctuated when throwing toys."""

    NO_SYSTEMATICS = 0  # measured distribution only
    ALL = 1  # measured distribution and response
    NO_MEASURED = 2  # response only


DEFAULT_VERBOSE = 1
DEFAULT_NTOYS = 50

# GetRegParm() of an algorithm without a regularisation parameter
REGPARM_UNSET = -1e30

# condition number above which an inverse is reported as inaccurate
COND_MAX = 1e17

# returned by Unfolding.chi2 when the errors could not be computed
CHI2_FAILED = -1.0
