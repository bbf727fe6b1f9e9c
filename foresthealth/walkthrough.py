#!/usr/bin/env python3
"""
Forest health: ordered-categorical GAM, non-spatial vs MRF-spatial

What this script does
---------------------
1) Loads the forest health survey table and the neighbour graph (.gra)
2) Recodes defoliation into 3 ordered classes (low / med / high)
3) Aligns graph vertex ids with the zero-padded unit ids of the table
4) Fits
   - GAM (non-spatial): smooths of the stand covariates and year + site factors
   - spatial GAM = the same model + an MRF smooth over the stand id
   with smoothing parameters chosen by REML
5) Compares AIC, predicts class probabilities on the training rows,
   assigns the most probable class and tabulates it against the observed one
6) Predicts population-level probabilities over the years (spatial term excluded)
7) Writes figures and CSV tables to OUTPUT_DIR

Run:  python -m foresthealth.walkthrough
Inputs come from foresthealth.config (DATA_PATH, GRAPH_PATH, OUTPUT_DIR).
"""

import os
import warnings

import pandas as pd

from foresthealth import config
from foresthealth.data import load_forest_health
from foresthealth.evaluate import (
    predicted_class, accuracy, confusion_table, aic_difference,
    probability_table, prediction_grid,
)
from foresthealth.gam import fit
from foresthealth.graph import read_gra, reorder_neighbors, check_alignment
from foresthealth.terms import ModelSpec, ParametricTerm, SmoothTerm, add_term
from foresthealth.ocat import OrderedCategorical


def ensure_packages():
    try:
        import pygam  # noqa: F401
        import libpysal  # noqa: F401
        import matplotlib  # noqa: F401
        import sklearn  # noqa: F401
    except Exception as e:
        raise RuntimeError(
            "Missing packages. Install with:\n"
            "  pip install pygam libpysal scikit-learn matplotlib pandas numpy scipy"
        ) from e


def base_spec() -> ModelSpec:
    """defol_class ~ s(age) + s(canopy) + ... + s(year) + site factors."""
    smooths = [SmoothTerm(c, basis="ps", k=config.K_SMOOTH[c])
               for c in [*config.CONTINUOUS_COLS, "year"]]
    factors = [ParametricTerm(c, kind="factor") for c in config.PARAMETRIC_FACTORS]
    return ModelSpec(
        response="defol_class",
        parametric=tuple(factors),
        smooths=tuple(smooths),
        family=OrderedCategorical(len(config.CLASS_LABELS)),
    )


def print_summary(name, model):
    param, smooth = model.summary()
    print(f"\n=== {name} ===")
    print(model)
    print(param.round(4).to_string())
    print(smooth.round(4).to_string())


def main():
    ensure_packages()
    os.makedirs(config.OUTPUT_DIR, exist_ok=True)
    from foresthealth import plots

    # 1) Graph first: its ids fix the zero-padding width
    graph_raw = read_gra(config.GRAPH_PATH)
    width = max(len(str(int(v))) for v in graph_raw)
    neighbors = reorder_neighbors(graph_raw, width=width)
    print(f"[OK] Read neighbour graph: {len(neighbors)} vertices "
          f"({sum(len(v) for v in neighbors.values()) // 2} links)")

    # 2) Data
    df = load_forest_health(config.DATA_PATH, id_width=width)

    # 3) Alignment (fatal on mismatch)
    check_alignment(df["id"], neighbors)
    print("[OK] Graph vertices match the unit ids of the table.")

    control = {"nthreads": config.N_THREADS}

    # 4) Non-spatial model
    spec_gam = base_spec()
    print(f"[info] Fitting {spec_gam}")
    gam = fit(spec_gam, df, method="REML", control=control, verbose=True)
    print_summary("GAM (non-spatial)", gam)

    # 5) Spatial model = non-spatial model + MRF smooth over the unit id
    spec_geo = add_term(spec_gam, SmoothTerm("id", basis="mrf", neighbors=neighbors))
    print(f"[info] Fitting {spec_geo}")
    geogam = fit(spec_geo, df, method="REML", control=control, verbose=True)
    print_summary("GAM + MRF(id)", geogam)

    d_aic = aic_difference(gam, geogam)
    print(f"\nAIC non-spatial: {gam.aic():.3f}")
    print(f"AIC spatial:     {geogam.aic():.3f}")
    print(f"AIC difference (spatial - non-spatial): {d_aic:.3f}")

    # 6) Training predictions and confusion table
    rows = []
    for name, model in [("gam", gam), ("geogam", geogam)]:
        prob = model.predict(df, type="response")
        pred = predicted_class(prob)
        acc = accuracy(df["defol_class"], pred)
        tab = confusion_table(pred, df["defol_class"])
        print(f"\n[{name}] accuracy = {acc:.4f}")
        print(tab.to_string())
        tab.to_csv(os.path.join(config.OUTPUT_DIR, f"confusion_{name}.csv"))
        rows.append({"model": name, "aic": model.aic(), "edf": model.edf_total_,
                     "loglik": model.loglik_, "reml": model.reml_, "accuracy": acc})

        long = probability_table(prob, df)
        long.to_csv(os.path.join(config.OUTPUT_DIR, f"probabilities_{name}.csv"), index=False)
        plots.plot_spatial_classes(long, os.path.join(config.OUTPUT_DIR, f"spatial_classes_{name}.png"))

    pd.DataFrame(rows).to_csv(os.path.join(config.OUTPUT_DIR, "model_comparison.csv"), index=False)

    # 7) Smooth plots (band includes mean uncertainty for heavily penalised terms)
    plots.plot_smooths(gam, os.path.join(config.OUTPUT_DIR, "smooths_gam.png"), data=df)
    plots.plot_smooths(geogam, os.path.join(config.OUTPUT_DIR, "smooths_geogam.png"), data=df)
    plots.plot_mrf_effect(geogam, df, os.path.join(config.OUTPUT_DIR, "mrf_effect_geogam.png"))

    # 8) Time trend at typical covariate values, spatial term excluded
    grid = prediction_grid(df, vary="year", covariates=spec_geo.covariates)
    prob_grid = geogam.predict(grid, type="response", exclude=["s(id)"])
    trend = pd.concat([grid[["year"]], pd.DataFrame(prob_grid, columns=config.CLASS_LABELS)], axis=1)
    trend.to_csv(os.path.join(config.OUTPUT_DIR, "time_trend_geogam.csv"), index=False)
    plots.plot_time_trend(prob_grid, grid["year"], os.path.join(config.OUTPUT_DIR, "time_trend_geogam.png"),
                          labels=config.CLASS_LABELS)

    print(f"\n[OK] Outputs written to {config.OUTPUT_DIR}")
    print("[Done] Forest health GAM vs spatial GAM complete.")


if __name__ == "__main__":
    with warnings.catch_warnings():
        # pyGAM knot warnings are noise here; data warnings stay visible
        warnings.filterwarnings("ignore", module="pygam")
        main()
