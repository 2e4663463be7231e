"""Tabular and graphical summaries of an unfolding result."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .constants import ErrorTreatment
from .histogram import Histogram

if TYPE_CHECKING:
    from .unfolding import Unfolding

logger = logging.getLogger(__name__)


def _padded(values: Optional[np.ndarray], n: int) -> np.ndarray:
    out = np.full(n, np.nan)
    if values is not None:
        values = np.asarray(values, dtype=float)
        out[: len(values)] = values[:n]
    return out


def print_table(
    unfolding: "Unfolding",
    truth: Optional[Union[Histogram, np.ndarray]] = None,
    treatment: ErrorTreatment = ErrorTreatment.DEFAULT,
) -> pd.DataFrame:
    """
    Bin-by-bin comparison of training, measured, unfolded and truth values.

    Parameters
    ----------
    unfolding : Unfolding
        Unfolding to summarise.
    truth : Histogram or array_like, optional
        Reference truth; the ``truth``, ``diff`` and ``pull`` columns are NaN
        if omitted.
    treatment : ErrorTreatment, optional
        Error treatment of the ``error`` column.

    Returns
    -------
    pd.DataFrame
        One row per bin, ``max(nm, nt)`` rows. Columns missing for a bin
        (measured vs truth binning) are NaN. ``attrs`` holds the chi-square
        against ``truth`` and the error treatment used.
    """
    response = unfolding.response
    nm, nt = unfolding.nm, unfolding.nt
    n = max(nm, nt)

    unfolded = unfolding.vunfold()
    errors = unfolding.eunfold_v(treatment)
    vtruth = None
    chi2 = np.nan
    if truth is not None:
        if isinstance(truth, Histogram):
            vtruth = unfolding.backend.vector(truth, unfolding.overflow, unfolding.density)
        else:
            vtruth = np.asarray(truth, dtype=float)
        chi2 = unfolding.chi2(vtruth, treatment)

    df = pd.DataFrame(
        {
            "train_truth": _padded(response.truth_vector(), n),
            "train_measured": _padded(response.measured_vector(), n),
            "truth": _padded(vtruth, n),
            "measured": _padded(unfolding.vmeasured(), n),
            "unfolded": _padded(unfolded, n),
            "error": _padded(errors, n),
        }
    )
    df["diff"] = df["unfolded"] - df["truth"]
    df["pull"] = df["diff"] / df["error"].where(df["error"] > 0)
    df.index.name = "bin"
    df.attrs["chi2"] = chi2
    df.attrs["error_treatment"] = unfolding.error_treatment.name

    if unfolding.verbose >= 1:
        logger.info("%s\n%s", unfolding, df.to_string(float_format=lambda x: f"{x:.4g}"))
        if truth is not None:
            logger.info("Chi^2/NDF=%.4g/%d", chi2, nt)
    return df


def plot_unfolded(
    unfolding: "Unfolding",
    truth: Optional[Union[Histogram, np.ndarray]] = None,
    treatment: ErrorTreatment = ErrorTreatment.ERRORS,
    ax: Optional[plt.Axes] = None,
) -> plt.Axes:
    """
    Plot the unfolded distribution with error bars against truth and measured.

    Returns the axes drawn on; a new figure is created if ``ax`` is None.
    """
    if ax is None:
        _, ax = plt.subplots(1, 1, figsize=(10, 6))

    hist = unfolding.hunfold(treatment)
    centers = 0.5 * (hist.edges[1:] + hist.edges[:-1])
    ax.errorbar(
        centers,
        hist.vector(),
        yerr=hist.error_vector(),
        fmt="o",
        label=f"unfolded ({unfolding.algorithm.label})",
    )
    if truth is not None:
        if isinstance(truth, Histogram):
            tvals = truth.vector()
        else:
            tvals = np.asarray(truth, dtype=float)
            if unfolding.overflow:
                tvals = tvals[1:-1]
        ax.stairs(tvals, hist.edges, label="truth")
    measured = unfolding.measured
    if measured is not None:
        ax.stairs(measured.vector(), measured.edges, label="measured", linestyle="--")

    ax.set_xlabel("x")
    ax.set_ylabel("Entries")
    ax.legend()
    ax.grid(True, alpha=0.3)
    ax.set_title(unfolding.title or "Unfolded distribution")
    return ax
