"""
Model specifications and the design-matrix pieces built from them.

A model is described by an explicit, immutable ModelSpec (response,
parametric terms, smooth terms, family). Deriving a bigger model from a
smaller one goes through add_term, which returns a new spec.
"""

from dataclasses import dataclass, field, replace

import numpy as np
import pandas as pd
import scipy.sparse as sp
from pygam.terms import SplineTerm

from foresthealth.graph import penalty_from_neighbors
from foresthealth.ocat import OrderedCategorical


@dataclass(frozen=True)
class ParametricTerm:
    name: str
    kind: str = "numeric"   # "numeric" or "factor"

    def __post_init__(self):
        if self.kind not in ("numeric", "factor"):
            raise ValueError(f"ParametricTerm {self.name!r}: kind must be 'numeric' or 'factor', got {self.kind!r}")

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class SmoothTerm:
    covariate: str
    basis: str = "ps"       # "ps" (P-spline) or "mrf" (Markov random field)
    k: int = 10
    neighbors: dict | None = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.basis not in ("ps", "mrf"):
            raise ValueError(f"s({self.covariate}): basis must be 'ps' or 'mrf', got {self.basis!r}")
        if self.basis == "mrf" and not self.neighbors:
            raise ValueError(f"s({self.covariate}): an 'mrf' smooth needs a neighbour mapping")
        if self.basis == "ps" and self.k < 4:
            raise ValueError(f"s({self.covariate}): basis dimension k must be >= 4, got {self.k}")

    @property
    def label(self) -> str:
        return f"s({self.covariate})"


@dataclass(frozen=True)
class ModelSpec:
    response: str
    parametric: tuple = ()
    smooths: tuple = ()
    family: OrderedCategorical = field(default_factory=lambda: OrderedCategorical(3))

    def __post_init__(self):
        object.__setattr__(self, "parametric", tuple(self.parametric))
        object.__setattr__(self, "smooths", tuple(self.smooths))
        labels = self.labels
        dup = sorted({lab for lab in labels if labels.count(lab) > 1})
        if dup:
            raise ValueError(f"Duplicate model terms: {dup}")

    @property
    def labels(self) -> list:
        return [t.label for t in self.parametric] + [t.label for t in self.smooths]

    @property
    def covariates(self) -> list:
        return [t.name for t in self.parametric] + [t.covariate for t in self.smooths]

    def __str__(self):
        rhs = " + ".join(self.labels) or "1"
        return f"{self.response} ~ {rhs}  [{self.family!r}]"


def add_term(spec: ModelSpec, term) -> ModelSpec:
    """Return a copy of ``spec`` with ``term`` appended; ``spec`` is left untouched."""
    if isinstance(term, SmoothTerm):
        return replace(spec, smooths=spec.smooths + (term,))
    if isinstance(term, ParametricTerm):
        return replace(spec, parametric=spec.parametric + (term,))
    raise TypeError(f"Cannot add {type(term).__name__} to a ModelSpec")


# ---------------- Bases ----------------
def _sum_to_zero(X: np.ndarray) -> np.ndarray:
    """Null space of the column-sum constraint 1'X b = 0 (QR based)."""
    C = X.sum(axis=0)[:, None]
    Q, _ = np.linalg.qr(C, mode="complete")
    return Q[:, 1:]


class FactorBasis:
    """Treatment-coded dummies for a categorical covariate (first level is the reference)."""

    def __init__(self, term: ParametricTerm, data: pd.DataFrame):
        self.term = term
        s = data[term.name]
        if isinstance(s.dtype, pd.CategoricalDtype):
            self.levels = list(s.cat.remove_unused_categories().cat.categories)
        else:
            self.levels = sorted(s.unique())
        if len(self.levels) < 2:
            raise ValueError(f"Factor {term.name!r} has fewer than two levels in the data")
        self.names = [f"{term.name}{lev}" for lev in self.levels[1:]]
        self.penalty = None

    def columns(self, data: pd.DataFrame) -> np.ndarray:
        s = pd.Series(np.asarray(data[self.term.name], dtype=object))
        unseen = sorted({str(v) for v in s.unique()} - {str(v) for v in self.levels})
        if unseen:
            raise ValueError(
                f"Factor {self.term.name!r}: levels {unseen} were not present when the model was fitted "
                f"(fitted levels: {self.levels})"
            )
        keys = s.astype(str).values
        return np.column_stack([(keys == str(lev)).astype(float) for lev in self.levels[1:]])


class NumericBasis:
    def __init__(self, term: ParametricTerm, data: pd.DataFrame):
        self.term = term
        self.names = [term.name]
        self.penalty = None

    def columns(self, data: pd.DataFrame) -> np.ndarray:
        x = np.asarray(data[self.term.name], dtype=float)
        if not np.all(np.isfinite(x)):
            row = int(np.flatnonzero(~np.isfinite(x))[0])
            raise ValueError(f"Column {self.term.name!r}: missing or non-finite value at row {row}.")
        return x[:, None]


class PSplineBasis:
    """
    Cubic P-spline of one covariate (pyGAM basis and difference penalty),
    centred by absorbing a sum-to-zero constraint.
    """

    def __init__(self, term: SmoothTerm, data: pd.DataFrame):
        self.term = term
        self.spline = SplineTerm(0, n_splines=term.k, spline_order=3, lam=1.0)
        x = self._x(data)
        self.spline.compile(x)
        raw = self._raw(x)
        self.Z = _sum_to_zero(raw)
        P = self.spline.build_penalties()
        P = P.toarray() if sp.issparse(P) else np.asarray(P, dtype=float)
        self.penalty = self.Z.T @ P @ self.Z
        self.names = [f"{term.label}.{j + 1}" for j in range(self.Z.shape[1])]
        self.range = (float(x.min()), float(x.max()))

    def _x(self, data):
        x = np.asarray(data[self.term.covariate], dtype=float)[:, None]
        if not np.all(np.isfinite(x)):
            raise ValueError(f"{self.term.label}: covariate has missing or non-finite values")
        return x

    def _raw(self, x):
        B = self.spline.build_columns(x)
        return B.toarray() if sp.issparse(B) else np.asarray(B)

    def columns(self, data: pd.DataFrame) -> np.ndarray:
        return self._raw(self._x(data)) @ self.Z


class MRFBasis:
    """
    Markov random field smooth over discrete spatial units.

    One coefficient per graph vertex (indicator basis); the penalty is the
    graph Laplacian of the neighbour mapping. Centred like the P-splines.
    """

    def __init__(self, term: SmoothTerm, data: pd.DataFrame):
        self.term = term
        S = penalty_from_neighbors(term.neighbors)
        self.units = list(S.index)
        raw = self._raw(data)
        self.Z = _sum_to_zero(raw)
        self.penalty = self.Z.T @ S.values @ self.Z
        self.names = [f"{term.label}.{j + 1}" for j in range(self.Z.shape[1])]

    def _raw(self, data):
        ids = pd.Series(np.asarray(data[self.term.covariate], dtype=object)).astype(str)
        pos = pd.Index(self.units).get_indexer(ids)
        if (pos < 0).any():
            unseen = sorted(ids[pos < 0].unique())
            raise ValueError(f"{self.term.label}: unit ids not in the neighbour graph: {unseen[:10]}")
        B = np.zeros((len(ids), len(self.units)))
        B[np.arange(len(ids)), pos] = 1.0
        return B

    def columns(self, data: pd.DataFrame) -> np.ndarray:
        return self._raw(data) @ self.Z

    def unit_columns(self) -> np.ndarray:
        """Constrained basis rows, one per graph unit (in graph order)."""
        return self.Z


def build_basis(term, data: pd.DataFrame):
    if isinstance(term, ParametricTerm):
        return FactorBasis(term, data) if term.kind == "factor" else NumericBasis(term, data)
    if term.basis == "mrf":
        return MRFBasis(term, data)
    return PSplineBasis(term, data)
