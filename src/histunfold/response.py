"""Response mapping between truth and measured distributions."""
from __future__ import annotations

import copy
import logging
from typing import Optional, Sequence

import numpy as np

from .histogram import Histogram

logger = logging.getLogger(__name__)


class Response:
    """
    Detector response: migrations from truth bins into measured bins.

    Parameters
    ----------
    measured : Histogram
        Measured distribution of the training sample.
    truth : Histogram
        Truth distribution of the training sample, including events that
        were not reconstructed (inefficiency).
    migrations : array_like
        Counts of events generated in truth bin ``j`` and reconstructed in
        measured bin ``i``, shape ``(nm, nt)`` over inner bins or
        ``(nm + 2, nt + 2)`` including under/overflow.
    overflow : bool, optional
        Include under/overflow bins in all vectors and matrices.
    density : bool, optional
        Vectors are bin contents divided by bin width.

    Attributes
    ----------
    n_measured, n_truth : int
        Number of measured / truth values (flow bins included if
        ``overflow``).
    """

    def __init__(
        self,
        measured: Histogram,
        truth: Histogram,
        migrations: Sequence[Sequence[float]],
        overflow: bool = False,
        density: bool = False,
        name: str = "response",
        title: str = "",
    ):
        if measured is None or truth is None:
            raise ValueError("measured and truth histograms are required")
        self.measured = measured
        self.truth = truth
        self.overflow = bool(overflow)
        self.density = bool(density)
        self.name = name
        self.title = title or name

        mig = np.asarray(migrations, dtype=float)
        full = (measured.nbins + 2, truth.nbins + 2)
        if mig.shape == (measured.nbins, truth.nbins):
            padded = np.zeros(full)
            padded[1:-1, 1:-1] = mig
            mig = padded
        elif mig.shape != full:
            raise ValueError(
                f"migrations shape {mig.shape} does not match binning "
                f"{(measured.nbins, truth.nbins)} or {full}"
            )
        self.migrations = mig
        self._matrix: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        return (
            f"Response(name={self.name!r}, measured bins={self.n_measured}, "
            f"truth bins={self.n_truth}, overflow={self.overflow})"
        )

    @property
    def n_measured(self) -> int:
        return self.measured.nvalues(self.overflow)

    @property
    def n_truth(self) -> int:
        return self.truth.nvalues(self.overflow)

    def truth_vector(self) -> np.ndarray:
        return self.truth.vector(self.overflow, self.density)

    def truth_errors(self) -> np.ndarray:
        return self.truth.error_vector(self.overflow, self.density)

    def measured_vector(self) -> np.ndarray:
        return self.measured.vector(self.overflow, self.density)

    def measured_errors(self) -> np.ndarray:
        return self.measured.error_vector(self.overflow, self.density)

    def _select(self, mig: np.ndarray) -> np.ndarray:
        return mig if self.overflow else mig[1:-1, 1:-1]

    def _normalise(self, mig: np.ndarray) -> np.ndarray:
        truth = self.truth.contents if self.overflow else self.truth.contents[1:-1]
        return np.divide(
            mig, truth[np.newaxis, :], out=np.zeros_like(mig), where=truth[np.newaxis, :] != 0
        )

    def matrix(self) -> np.ndarray:
        """
        Response matrix ``P(measured bin i | truth bin j)``.

        Columns are normalized to the truth contents, so column sums are the
        reconstruction efficiencies. A toy variation from ``run_toy`` stays
        in effect until ``clear_cache``.
        """
        if self._matrix is None:
            self._matrix = self._normalise(self._select(self.migrations))
        return self._matrix

    def fold(self, truth: Sequence[float]) -> np.ndarray:
        """Fold a truth vector into measured space."""
        truth = np.asarray(truth, dtype=float)
        if len(truth) != self.n_truth:
            raise ValueError(
                f"truth vector length ({len(truth)}) must match "
                f"number of truth bins ({self.n_truth})"
            )
        if self.density:
            folded = self.matrix() @ (truth * self.truth.widths(self.overflow))
            return folded / self.measured.widths(self.overflow)
        return self.matrix() @ truth

    def run_toy(self, rng: np.random.Generator) -> None:
        """Replace the cached matrix with a Poisson fluctuation of the migrations."""
        mig = self._select(self.migrations)
        fluctuated = rng.poisson(np.clip(mig, 0.0, None)).astype(float)
        self._matrix = self._normalise(fluctuated)

    def clear_cache(self) -> None:
        self._matrix = None

    def copy(self) -> "Response":
        return copy.deepcopy(self)

    @classmethod
    def from_pairs(
        cls,
        measured_edges: Sequence[float],
        truth_edges: Sequence[float],
        measured: Sequence[float],
        truth: Sequence[float],
        weights: Optional[Sequence[float]] = None,
        missed: Optional[Sequence[float]] = None,
        overflow: bool = False,
        density: bool = False,
        name: str = "response",
    ) -> "Response":
        """
        Fill a response from paired (measured, truth) samples.

        Parameters
        ----------
        measured_edges, truth_edges : array_like
            Binning of the measured and truth spaces.
        measured, truth : array_like
            Reconstructed and generated values of each event.
        weights : array_like, optional
            Event weights, default 1.
        missed : array_like, optional
            Truth values of events that were not reconstructed.
        """
        m_edges = np.asarray(measured_edges, dtype=float)
        t_edges = np.asarray(truth_edges, dtype=float)
        meas = np.asarray(measured, dtype=float)
        tru = np.asarray(truth, dtype=float)
        w = np.ones_like(meas) if weights is None else np.asarray(weights, dtype=float)
        if not (len(meas) == len(tru) == len(w)):
            raise ValueError("measured, truth and weights must have equal length")

        m_full = np.concatenate(([-np.inf], m_edges, [np.inf]))
        t_full = np.concatenate(([-np.inf], t_edges, [np.inf]))
        mig, _, _ = np.histogram2d(meas, tru, bins=[m_full, t_full], weights=w)
        meas_counts = mig.sum(axis=1)
        truth_counts = mig.sum(axis=0)
        if missed is not None:
            missed_counts, _ = np.histogram(np.asarray(missed, dtype=float), bins=t_full)
            truth_counts = truth_counts + missed_counts

        logger.debug(
            "Filled response %s from %d events (%d missed)",
            name, len(meas), 0 if missed is None else len(missed),
        )
        return cls(
            Histogram(m_edges, meas_counts, name=f"{name}_measured"),
            Histogram(t_edges, truth_counts, name=f"{name}_truth"),
            mig,
            overflow=overflow,
            density=density,
            name=name,
        )
