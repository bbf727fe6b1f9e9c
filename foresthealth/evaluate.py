"""
Class assignment, accuracy, confusion tables and model comparison.
"""

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, confusion_matrix

from foresthealth.config import CLASS_LABELS


def predicted_class(prob, labels=CLASS_LABELS) -> pd.Categorical:
    """
    Most probable class per row.

    Ties go to the lowest class index (first column), as np.argmax does.
    """
    prob = np.asarray(prob, dtype=float)
    if prob.ndim != 2 or prob.shape[1] != len(labels):
        raise ValueError(f"expected an (n, {len(labels)}) probability matrix, got shape {prob.shape}")
    return pd.Categorical.from_codes(np.argmax(prob, axis=1), categories=labels, ordered=True)


def _labels(values, labels):
    s = pd.Series(np.asarray(values, dtype=object)).astype(str)
    bad = sorted(set(s) - set(labels))
    if bad:
        raise ValueError(f"Unknown class labels {bad}; expected {list(labels)}")
    return s.values


def accuracy(observed, predicted, labels=CLASS_LABELS) -> float:
    """Fraction of rows whose predicted class equals the observed class."""
    obs, pred = _labels(observed, labels), _labels(predicted, labels)
    if obs.size != pred.size:
        raise ValueError(f"observed ({obs.size}) and predicted ({pred.size}) lengths differ")
    return float(accuracy_score(obs, pred))


def confusion_table(predicted, observed, labels=CLASS_LABELS) -> pd.DataFrame:
    """Counts per (predicted, observed) pair over the full class grid."""
    obs, pred = _labels(observed, labels), _labels(predicted, labels)
    # sklearn puts the true classes in rows
    cm = confusion_matrix(obs, pred, labels=list(labels)).T
    return pd.DataFrame(
        cm,
        index=pd.Index(labels, name="predicted"),
        columns=pd.Index(labels, name="observed"),
    )


def aic_difference(model_a, model_b) -> float:
    """AIC(b) - AIC(a); negative means b is preferred."""
    return float(model_b.aic() - model_a.aic())


def probability_table(prob, data: pd.DataFrame, labels=CLASS_LABELS,
                      keep=("id", "year", "x", "y")) -> pd.DataFrame:
    """Tidy table: one row per observation x class with its probability."""
    prob = np.asarray(prob, dtype=float)
    if prob.shape != (len(data), len(labels)):
        raise ValueError(f"probability matrix shape {prob.shape} does not match data ({len(data)} rows)")
    wide = pd.DataFrame(prob, columns=list(labels))
    for c in keep:
        if c in data.columns:
            wide[c] = data[c].to_numpy()
    wide["obs"] = np.arange(len(data))
    id_vars = ["obs"] + [c for c in keep if c in data.columns]
    long = wide.melt(id_vars=id_vars, value_vars=list(labels), var_name="class", value_name="prob")
    long["class"] = pd.Categorical(long["class"], categories=labels, ordered=True)
    return long.sort_values(["obs", "class"]).reset_index(drop=True)


def prediction_grid(data: pd.DataFrame, vary: str, values=None, n: int = 50,
                    covariates=None, unit_col: str = "id") -> pd.DataFrame:
    """
    Synthetic held-out rows along one covariate.

    The varied covariate runs over ``values`` (or n points over its observed
    range); other continuous covariates sit at their median, categoricals at
    their most frequent level and the unit id at the first fitted level, a
    placeholder meant to be paired with exclude=["s(<unit_col>)"].
    """
    if vary not in data.columns:
        raise ValueError(f"Unknown covariate {vary!r}")
    if values is None:
        col = data[vary]
        if isinstance(col.dtype, pd.CategoricalDtype):
            values = list(col.cat.categories)
        elif np.issubdtype(col.dtype, np.integer):
            values = np.arange(col.min(), col.max() + 1)
        else:
            values = np.linspace(col.min(), col.max(), n)
    values = list(values)
    cols = list(covariates) if covariates is not None else [c for c in data.columns if c != vary]

    grid = pd.DataFrame({vary: values})
    if isinstance(data[vary].dtype, pd.CategoricalDtype):
        grid[vary] = pd.Categorical(grid[vary], categories=data[vary].cat.categories)
    for c in cols:
        if c == vary:
            continue
        col = data[c]
        if c == unit_col:
            cats = col.cat.categories if isinstance(col.dtype, pd.CategoricalDtype) else sorted(col.unique())
            grid[c] = pd.Categorical([cats[0]] * len(grid), categories=cats)
        elif isinstance(col.dtype, pd.CategoricalDtype):
            grid[c] = pd.Categorical([col.mode().iloc[0]] * len(grid), categories=col.cat.categories)
        elif np.issubdtype(col.dtype, np.number):
            grid[c] = float(col.median())
    return grid
