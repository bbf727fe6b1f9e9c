"""
Loading and recoding of the forest health survey table.

One row is one (tree stand, year) observation. The raw defoliation
percentage is coarsened into an ordered 3-class response and the nominal
site covariates are typed as pandas categoricals with fixed level sets.
"""

import warnings

import numpy as np
import pandas as pd

from foresthealth.config import (
    COLUMN_MAP, CONTINUOUS_COLS, FACTOR_LEVELS, FACTOR_MERGE,
    DEFOL_LEVELS, DEFOL_CUTS, CLASS_LABELS, NA_VALUES,
)


def pad_unit_id(values, width: int | None = None) -> pd.Series:
    """Zero-pad integer-like unit ids so that lexical order equals numeric order.

    With width=None the widest id sets the width.
    """
    s = pd.Series(values)
    as_num = pd.to_numeric(s, errors="coerce")
    bad = as_num.isna() | (as_num != np.floor(as_num))
    if bad.any():
        row = int(np.flatnonzero(bad.values)[0])
        raise ValueError(f"Column 'id': non-integer unit id {s.iloc[row]!r} at row {row}.")
    ids = as_num.astype(np.int64).astype(str)
    if width is None:
        width = int(ids.str.len().max())
    return ids.str.zfill(width)


def recode_defoliation(percent, cuts=DEFOL_CUTS, labels=CLASS_LABELS,
                       levels=DEFOL_LEVELS) -> pd.Categorical:
    """
    Coarsen raw defoliation percentages into ordered classes.

    With the default cut points: <=10 -> low, (10, 45] -> med, >45 -> high.
    Values outside the admissible raw levels raise a ValueError naming the row.
    """
    x = np.asarray(percent, dtype=float)
    valid = np.isin(x, np.asarray(levels, dtype=float))
    if not valid.all():
        row = int(np.flatnonzero(~valid)[0])
        raise ValueError(
            f"Column 'defol': value {x[row]!r} at row {row} is not one of the "
            f"admissible defoliation levels {list(levels)}."
        )
    codes = np.searchsorted(np.asarray(cuts, dtype=float), x, side="left")
    return pd.Categorical.from_codes(codes, categories=labels, ordered=True)


def class_frequency(data: pd.DataFrame, col: str = "defol_class") -> pd.Series:
    """Counts per ordered class, zero-count classes included."""
    return data[col].value_counts(sort=False).reindex(data[col].cat.categories, fill_value=0)


def _to_numeric_strict(df: pd.DataFrame, col: str) -> pd.Series:
    out = pd.to_numeric(df[col], errors="coerce")
    bad = out.isna() & df[col].notna()
    if bad.any():
        row = int(np.flatnonzero(bad.values)[0])
        raise ValueError(f"Column '{col}': cannot parse {df[col].iloc[row]!r} as a number (row {row}).")
    return out


def _as_factor(s: pd.Series, col: str, levels: list, merge: dict | None) -> pd.Series:
    seen = s.dropna()
    bad = ~seen.isin(levels)
    if bad.any():
        idx = seen.index[np.flatnonzero(bad.values)[0]]
        raise ValueError(
            f"Column '{col}': value {s.loc[idx]!r} at row {idx} is outside the declared levels {levels}."
        )
    s = s.astype("Int64")
    cats = list(levels)
    if merge:
        s = s.replace(merge)
        cats = [c for c in cats if c not in merge]
    return pd.Series(pd.Categorical(s, categories=cats), index=s.index, name=col)


def load_forest_health(
    path: str,
    columns: dict = COLUMN_MAP,
    na_values: list = NA_VALUES,
    id_width: int | None = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Read and clean the forest health table.

    Returns a DataFrame with canonical column names, zero-padded string unit
    ids, categorical nominal covariates and the derived ordered response
    'defol_class'. Rows with a missing required value are dropped with a
    warning summarising the loss.
    """
    raw = pd.read_csv(path, sep=None, engine="python", na_values=na_values)
    raw.columns = [str(c).strip() for c in raw.columns]
    return prepare_forest_health(raw, columns=columns, id_width=id_width, verbose=verbose)


def prepare_forest_health(
    raw: pd.DataFrame,
    columns: dict = COLUMN_MAP,
    id_width: int | None = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """Recode an already-read raw table (see load_forest_health)."""
    missing = [c for c in columns if c not in raw.columns]
    if missing:
        raise ValueError(f"Input table missing columns: {missing}")

    df = raw[list(columns)].rename(columns=columns).reset_index(drop=True)

    # 1) Drop incomplete rows, but say so
    n_before = len(df)
    na_counts = df.isna().sum()
    df = df.dropna().reset_index(drop=True)
    n_dropped = n_before - len(df)
    if n_dropped:
        where = {c: int(n) for c, n in na_counts.items() if n}
        warnings.warn(
            f"Dropped {n_dropped} of {n_before} rows with missing values "
            f"(missing per column: {where}).",
            UserWarning,
            stacklevel=2,
        )
    if df.empty:
        raise ValueError("No complete rows left after dropping missing values.")

    # 2) Numeric columns
    for c in ["year", "x", "y", "defol", *CONTINUOUS_COLS]:
        df[c] = _to_numeric_strict(df, c)
    df["year"] = df["year"].astype(int)

    # 3) Unit id as fixed-width string
    df["id"] = pad_unit_id(df["id"], id_width)
    df["id"] = pd.Categorical(df["id"], categories=sorted(df["id"].unique()))

    # 4) Nominal covariates
    for c, levels in FACTOR_LEVELS.items():
        if c in df.columns:
            df[c] = _as_factor(_to_numeric_strict(df, c), c, levels, FACTOR_MERGE.get(c))
            df[c] = df[c].cat.remove_unused_categories()

    # 5) Ordered response
    df["defol_class"] = recode_defoliation(df["defol"].values)

    if verbose:
        freq = class_frequency(df)
        print(f"[OK] Loaded {len(df)} observations on {df['id'].nunique()} units, "
              f"years {df['year'].min()}-{df['year'].max()}")
        print("[info] Defoliation class frequencies:")
        print(freq.to_string())
    return df
