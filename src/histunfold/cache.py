"""Memoized unfolding results."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class ResultCache:
    """
    Lazily computed results of an ``Unfolding``.

    The unfolding owns one instance and replaces it with an empty one
    whenever an input changes. Accessors that look read-only (``vunfold``,
    ``eunfold_v``, ``chi2``...) fill it in on first use, so this object is
    mutated through them. Each ``have_*`` flag is true only while the
    matching field is consistent with the current configuration.

    ``fail`` is sticky: once set, accessors return zero-filled results
    until the cache is replaced.
    """

    unfolded: bool = False
    fail: bool = False
    have_cov: bool = False
    have_wgt: bool = False
    have_err_mat: bool = False
    have_bias: bool = False
    have_errors: bool = False

    rec: Optional[np.ndarray] = None
    cov: Optional[np.ndarray] = None
    wgt: Optional[np.ndarray] = None
    variances: Optional[np.ndarray] = None
    err_mat: Optional[np.ndarray] = None
    bias: Optional[np.ndarray] = None
    sigbias: Optional[np.ndarray] = None

    # derived from the measured input
    v_mes: Optional[np.ndarray] = None
    e_mes: Optional[np.ndarray] = None
    cov_mes: Optional[np.ndarray] = None

    # regularisation parameter bounds reported by the algorithm
    min_parm: float = 0.0
    max_parm: float = 0.0
    step_size_parm: float = 0.0
    default_parm: float = 0.0
    have_settings: bool = False
