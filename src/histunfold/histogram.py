"""
One-dimensional binned distributions used as unfolding inputs and outputs.

Contents and errors are stored with an underflow entry at index 0 and an
overflow entry at index ``nbins + 1``, so that vectors can be produced with
or without the flow bins.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np


def _with_flows(values: Optional[Sequence[float]], nbins: int, name: str) -> np.ndarray:
    """Pad a vector of inner-bin values with zero flow entries if needed."""
    if values is None:
        return np.zeros(nbins + 2, dtype=float)
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be a 1D array")
    if len(arr) == nbins:
        return np.concatenate(([0.0], arr, [0.0]))
    if len(arr) == nbins + 2:
        return arr.copy()
    raise ValueError(
        f"{name} length ({len(arr)}) must be the number of bins ({nbins}) "
        f"or include under/overflow ({nbins + 2})"
    )


class Histogram:
    """
    Binned distribution with per-bin errors.

    Parameters
    ----------
    edges : array_like
        Bin boundaries, strictly increasing, length ``nbins + 1``.
    contents : array_like, optional
        Bin contents, either ``nbins`` inner bins or ``nbins + 2`` values
        including under/overflow. Zero if omitted.
    errors : array_like, optional
        Bin errors in the same layout. Defaults to ``sqrt(|contents|)``.
    name, title : str, optional
        Labels carried over to unfolded histograms.

    Examples
    --------
    >>> h = Histogram(np.linspace(0, 10, 11), np.arange(10.0))
    >>> h.vector(overflow=False).shape
    (10,)
    """

    def __init__(
        self,
        edges: Sequence[float],
        contents: Optional[Sequence[float]] = None,
        errors: Optional[Sequence[float]] = None,
        name: str = "",
        title: str = "",
    ):
        self.edges = np.asarray(edges, dtype=float)
        if self.edges.ndim != 1 or len(self.edges) < 2:
            raise ValueError("edges must be a 1D array with at least 2 entries")
        if np.any(np.diff(self.edges) <= 0):
            raise ValueError("edges must be strictly increasing")
        self.name = name
        self.title = title
        self._contents = _with_flows(contents, self.nbins, "contents")
        if errors is None:
            self._errors = None
        else:
            self._errors = _with_flows(errors, self.nbins, "errors")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, nbins={self.nbins}, "
            f"range=({self.edges[0]:g}, {self.edges[-1]:g}))"
        )

    @property
    def nbins(self) -> int:
        """Number of inner bins."""
        return len(self.edges) - 1

    @property
    def contents(self) -> np.ndarray:
        """Bin contents including under/overflow."""
        return self._contents

    @contents.setter
    def contents(self, values: Sequence[float]) -> None:
        self._contents = _with_flows(values, self.nbins, "contents")

    @property
    def errors(self) -> np.ndarray:
        """Bin errors including under/overflow."""
        if self._errors is None:
            return np.sqrt(np.abs(self.contents))
        return self._errors

    @errors.setter
    def errors(self, values: Optional[Sequence[float]]) -> None:
        self._errors = None if values is None else _with_flows(values, self.nbins, "errors")

    def widths(self, overflow: bool = False) -> np.ndarray:
        w = np.diff(self.edges)
        if overflow:
            return np.concatenate(([1.0], w, [1.0]))
        return w

    def _select(self, values: np.ndarray, overflow: bool, density: bool) -> np.ndarray:
        v = values.copy() if overflow else values[1:-1].copy()
        if density:
            v = v / self.widths(overflow)
        return v

    def vector(self, overflow: bool = False, density: bool = False) -> np.ndarray:
        """Bin contents as a vector, optionally including flow bins."""
        return self._select(self.contents, overflow, density)

    def error_vector(self, overflow: bool = False, density: bool = False) -> np.ndarray:
        """Bin errors as a vector, optionally including flow bins."""
        return self._select(self.errors, overflow, density)

    def nvalues(self, overflow: bool = False) -> int:
        return self.nbins + 2 if overflow else self.nbins

    def copy(self) -> "Histogram":
        return copy.deepcopy(self)

    def asimov_clone(self) -> "Histogram":
        """Copy with contents kept and Poisson errors ``sqrt(contents)``."""
        clone = self.copy()
        clone.errors = np.sqrt(np.abs(clone.contents))
        return clone

    @classmethod
    def from_vector(
        cls,
        values: Sequence[float],
        errors: Optional[Sequence[float]] = None,
        like: Optional["Histogram"] = None,
        overflow: bool = False,
        density: bool = False,
        name: str = "",
        title: str = "",
    ) -> "Histogram":
        """
        Build a histogram from a vector, using the binning of ``like``.

        Parameters
        ----------
        values : array_like
            Vector as produced by ``vector(overflow, density)``.
        errors : array_like, optional
            Error vector in the same layout.
        like : Histogram, optional
            Template providing the binning. Unit-width bins if omitted.
        overflow, density : bool
            Layout of ``values``, see ``vector``.
        """
        values = np.asarray(values, dtype=float)
        if like is None:
            nbins = len(values) - 2 if overflow else len(values)
            edges = np.arange(nbins + 1, dtype=float)
        else:
            edges = like.edges
        hist = Histogram(edges, name=name, title=title)
        if len(values) != hist.nvalues(overflow):
            raise ValueError(
                f"vector length ({len(values)}) does not match binning "
                f"({hist.nvalues(overflow)} values)"
            )
        scale = hist.widths(overflow) if density else 1.0
        hist.contents = values * scale
        if errors is not None:
            errors = np.asarray(errors, dtype=float)
            if len(errors) != len(values):
                raise ValueError("errors must have the same length as values")
            hist.errors = errors * scale
        return hist


@dataclass
class NuisanceParameter:
    """Per-bin multiplicative nuisance parameter of a parametric histogram."""

    name: str
    value: float = 1.0
    error: float = 0.0
    constant: bool = False


class ParametricHistogram(Histogram):
    """
    Histogram whose contents are nominal values scaled by per-bin factors.

    Each inner bin ``i`` carries a ``NuisanceParameter`` ("gamma") with
    nominal value 1 and a relative error, defaulting to the Poisson relative
    error ``1/sqrt(n)``. Toys for this kind of distribution are thrown by
    sampling the gammas rather than fluctuating the contents directly.
    """

    def __init__(
        self,
        edges: Sequence[float],
        contents: Optional[Sequence[float]] = None,
        errors: Optional[Sequence[float]] = None,
        name: str = "",
        title: str = "",
        relative_errors: Optional[Sequence[float]] = None,
    ):
        super().__init__(edges, contents, errors, name=name, title=title)
        self._nominal = self._contents.copy()
        inner = self._nominal[1:-1]
        if relative_errors is None:
            err = np.sqrt(np.abs(inner)) if self._errors is None else self._errors[1:-1]
            rel = np.divide(err, np.abs(inner), out=np.zeros_like(inner), where=inner != 0)
        else:
            rel = np.asarray(relative_errors, dtype=float)
            if len(rel) != self.nbins:
                raise ValueError("relative_errors must have one entry per bin")
        prefix = name or "hist"
        self.gammas: List[NuisanceParameter] = [
            NuisanceParameter(
                name=f"gamma_{prefix}_bin_{i}",
                error=float(rel[i]),
                constant=bool(rel[i] == 0.0),
            )
            for i in range(self.nbins)
        ]

    @property
    def contents(self) -> np.ndarray:
        factors = np.concatenate(([1.0], [g.value for g in self.gammas], [1.0]))
        return self._nominal * factors

    @contents.setter
    def contents(self, values: Sequence[float]) -> None:
        self._nominal = _with_flows(values, self.nbins, "contents")
        for g in self.gammas:
            g.value = 1.0

    @property
    def errors(self) -> np.ndarray:
        if self._errors is None:
            err = np.sqrt(np.abs(self._nominal))
            err[1:-1] = np.abs(self.contents[1:-1]) * [g.error for g in self.gammas]
            return err
        return self._errors

    @errors.setter
    def errors(self, values: Optional[Sequence[float]]) -> None:
        self._errors = None if values is None else _with_flows(values, self.nbins, "errors")

    def nuisance_parameters(self) -> List[NuisanceParameter]:
        """Free (non-constant) nuisance parameters."""
        return [g for g in self.gammas if not g.constant]
