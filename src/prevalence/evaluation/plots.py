# src/prevalence/evaluation/plots.py
from pathlib import Path

import matplotlib
matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import arviz as az
import numpy as np

from prevalence.data.schema import NUMERIC_COLUMNS


def _fig(obj):
    ax0 = obj.ravel()[0] if hasattr(obj, "ravel") else obj
    return getattr(ax0, "figure", plt.gcf())


def _save(fig, out_path, dpi=150):
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return str(out_path)


def plot_correlation_heatmap(df, out_path, columns=None):
    """Pearson correlation matrix of the covariates as an annotated heatmap."""
    columns = list(columns or NUMERIC_COLUMNS)
    corr = df[columns].corr().to_numpy()

    fig, ax = plt.subplots(figsize=(0.6 * len(columns) + 3, 0.6 * len(columns) + 2))
    im = ax.imshow(corr, cmap="RdBu_r", vmin=-1, vmax=1)
    ax.set_xticks(np.arange(len(columns)))
    ax.set_yticks(np.arange(len(columns)))
    ax.set_xticklabels(columns, rotation=45, ha="right", fontsize=8)
    ax.set_yticklabels(columns, fontsize=8)
    for i in range(len(columns)):
        for j in range(len(columns)):
            ax.text(j, i, f"{corr[i, j]:.2f}", ha="center", va="center", fontsize=6)
    fig.colorbar(im, ax=ax, shrink=0.8)
    ax.set_title("Covariate correlations")
    return _save(fig, out_path)


def plot_covariate_densities(original, out_path, imputed=None, columns=None):
    """Histogram densities per covariate; overlays the imputed column when given."""
    columns = list(columns or NUMERIC_COLUMNS)
    ncols = 5
    nrows = int(np.ceil(len(columns) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(3.2 * ncols, 2.6 * nrows), squeeze=False)

    for ax, col in zip(axes.ravel(), columns):
        obs = original[col].dropna().to_numpy(dtype=float)
        ax.hist(obs, bins=20, density=True, alpha=0.6, label="observed")
        if imputed is not None:
            ax.hist(imputed[col].to_numpy(dtype=float), bins=20, density=True,
                    histtype="step", lw=1.5, label="imputed")
        ax.set_title(col, fontsize=8)
    for ax in axes.ravel()[len(columns):]:
        ax.set_visible(False)
    axes.ravel()[0].legend(fontsize=7)
    fig.tight_layout()
    return _save(fig, out_path)


def plot_trace(idata, out_path, var_names=None):
    """ArviZ trace plot (density + chain traces) for the chosen parameters."""
    tr = az.plot_trace(idata, var_names=var_names, figsize=(10, 2.2 * max(len(var_names or []), 3)))
    return _save(_fig(tr), out_path)


def plot_predictions(predictions, out_path, title="Observed vs predicted"):
    """Observed outcome vs posterior-predictive mean with the predictive interval as error bars."""
    if "observed" not in predictions.columns:
        raise ValueError("predictions has no 'observed' column to plot against.")
    y = predictions["observed"].to_numpy(dtype=float)
    pred = predictions["mean"].to_numpy(dtype=float)
    err = np.vstack([pred - predictions["lower"].to_numpy(dtype=float),
                     predictions["upper"].to_numpy(dtype=float) - pred])

    fig, ax = plt.subplots(figsize=(5, 5))
    ax.errorbar(y, pred, yerr=err, fmt="o", ms=3, alpha=0.7, elinewidth=0.6, capsize=0)
    if y.size:
        lo, hi = float(min(y.min(), pred.min())), float(max(y.max(), pred.max()))
        ax.plot([lo, hi], [lo, hi], "--", color="k", lw=1)
    ax.set_xlabel("Observed")
    ax.set_ylabel("Predicted mean (95% interval)")
    ax.set_title(title)
    return _save(fig, out_path)
