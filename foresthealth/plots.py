"""
Figures for the forest health GAMs (matplotlib, written to disk).
"""

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from foresthealth.config import FIG_DPI


def plot_smooths(model, out_path, data: pd.DataFrame | None = None, with_mean: bool = True,
                 width: float = 0.95, n: int = 200) -> None:
    """One panel per P-spline smooth: fitted curve, credible band and (optional) rug."""
    labels = [t.label for t in model.spec.smooths if t.basis == "ps"]
    if not labels:
        print("[warn] Model has no P-spline smooths to plot.")
        return
    ncol = min(3, len(labels))
    nrow = int(np.ceil(len(labels) / ncol))
    fig, axes = plt.subplots(nrow, ncol, figsize=(4.2 * ncol, 3.4 * nrow), squeeze=False)

    for ax, label in zip(axes.ravel(), labels):
        est = model.smooth_estimate(label, n=n, width=width, with_mean=with_mean)
        cov = est.columns[0]
        ax.fill_between(est[cov], est["lower"], est["upper"], alpha=0.25, linewidth=0)
        ax.plot(est[cov], est["fit"], lw=1.5)
        ax.axhline(0, color="k", lw=0.6, ls=":")
        if data is not None and cov in data.columns:
            x = np.asarray(data[cov], dtype=float)
            ax.plot(x, np.full_like(x, est["lower"].min()), "|", color="k", alpha=0.3, ms=6)
        ax.set_xlabel(cov)
        ax.set_ylabel(f"{label}  (edf {model.edf_[label]:.2f})")
    for ax in axes.ravel()[len(labels):]:
        ax.set_visible(False)

    fig.suptitle(f"Smooth terms ({int(width * 100)}% band{', incl. mean' if with_mean else ''})")
    fig.tight_layout()
    fig.savefig(out_path, dpi=FIG_DPI)
    plt.close(fig)


def plot_mrf_effect(model, data: pd.DataFrame, out_path, label: str | None = None,
                    unit_col: str = "id", xcol: str = "x", ycol: str = "y") -> None:
    """Estimated MRF unit effect drawn at each unit's coordinates."""
    if label is None:
        mrf = [t.label for t in model.spec.smooths if t.basis == "mrf"]
        if not mrf:
            print("[warn] Model has no MRF smooth to plot.")
            return
        label = mrf[0]
    est = model.smooth_estimate(label)
    cov = est.columns[0]
    coords = (data.assign(**{unit_col: data[unit_col].astype(str)})
                  .groupby(unit_col)[[xcol, ycol]].first())
    est = est.assign(**{cov: est[cov].astype(str)}).merge(coords, left_on=cov, right_index=True, how="inner")

    lim = float(np.nanmax(np.abs(est["fit"]))) or 1.0
    plt.figure(figsize=(6, 5))
    sc = plt.scatter(est[xcol], est[ycol], c=est["fit"], cmap="RdBu_r", vmin=-lim, vmax=lim, s=40)
    plt.colorbar(sc, label=f"{label} (latent scale)")
    plt.title(f"Spatial effect {label}  (edf {model.edf_[label]:.2f})")
    plt.xlabel(xcol)
    plt.ylabel(ycol)
    plt.tight_layout()
    plt.savefig(out_path, dpi=FIG_DPI)
    plt.close()


def plot_spatial_classes(long_table: pd.DataFrame, out_path, years=None) -> None:
    """
    Class probabilities in space: rows = class, columns = year.
    Expects the tidy table from evaluate.probability_table.
    """
    classes = list(long_table["class"].cat.categories)
    if years is None:
        years = sorted(long_table["year"].unique())
    years = list(years)
    fig, axes = plt.subplots(len(classes), len(years), figsize=(2.4 * len(years), 2.4 * len(classes)),
                             squeeze=False, sharex=True, sharey=True)
    sc = None
    for i, cl in enumerate(classes):
        for j, yr in enumerate(years):
            ax = axes[i, j]
            d = long_table[(long_table["class"] == cl) & (long_table["year"] == yr)]
            sc = ax.scatter(d["x"], d["y"], c=d["prob"], vmin=0, vmax=1, cmap="viridis", s=12)
            if i == 0:
                ax.set_title(str(yr))
            if j == 0:
                ax.set_ylabel(cl)
            ax.set_xticks([])
            ax.set_yticks([])
    if sc is not None:
        fig.colorbar(sc, ax=axes, shrink=0.8, label="Probability")
    plt.savefig(out_path, dpi=FIG_DPI)
    plt.close(fig)


def plot_time_trend(prob, years, out_path, labels=None, title="Class probability over time") -> None:
    """Probability of each class against year (population level, spatial term excluded)."""
    prob = np.asarray(prob, dtype=float)
    if labels is None:
        labels = [f"class {k}" for k in range(prob.shape[1])]
    plt.figure(figsize=(6.5, 4.5))
    for k, lab in enumerate(labels):
        plt.plot(years, prob[:, k], "o-", ms=3, label=lab)
    plt.ylim(0, 1)
    plt.xlabel("Year")
    plt.ylabel("Probability")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_path, dpi=FIG_DPI)
    plt.close()
