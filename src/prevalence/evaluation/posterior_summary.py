# src/prevalence/evaluation/posterior_summary.py
import arviz as az
import numpy as np
import pandas as pd

from prevalence.model.model import PARAMETER_NAMES


def as_idata(fit_or_idata):
    """Accept a FitResult (status-checked) or a bare InferenceData."""
    if hasattr(fit_or_idata, "require_usable"):
        return fit_or_idata.require_usable().idata
    return fit_or_idata


def pooled_draws(fit_or_idata, name: str) -> np.ndarray:
    """
    Pool chains for one posterior variable.
    Returns (samples,) for scalars or (samples, k) for vector parameters.
    """
    da = as_idata(fit_or_idata).posterior[name]
    da = da.stack(sample=("chain", "draw"))
    other = [d for d in da.dims if d != "sample"]
    if len(other) > 1:
        raise ValueError(f"pooled_draws expects at most 1 non-sample dim, got {da.dims}")
    return da.transpose("sample", *other).values


def hdi_interval(samples, prob: float = 0.95) -> np.ndarray:
    """
    Highest-density interval of pooled draws.

    Among all contiguous windows of the sorted sample holding `prob` of the
    mass, the narrowest one is returned (not the equal-tailed interval).

    Parameters
    ----------
    samples : array-like
        Shape (draws,) or (draws, k).
    prob : float
        Probability mass in (0, 1).

    Returns
    -------
    np.ndarray
        [lower, upper] for 1-D input, (k, 2) for 2-D input.
    """
    if not 0.0 < prob < 1.0:
        raise ValueError(f"prob must be in (0, 1), got {prob}")
    arr = np.asarray(samples, dtype=np.float64)
    if arr.shape[0] < 2:
        raise ValueError("Need at least 2 draws for an interval.")
    if arr.ndim == 1:
        return np.asarray(az.hdi(arr, hdi_prob=prob))
    if arr.ndim == 2:
        # (draws, k) -> (chain=1, draws, k) so arviz treats axis 0 as draws
        return np.asarray(az.hdi(arr[None, ...], hdi_prob=prob))
    raise ValueError(f"samples must be 1-D or 2-D, got shape {arr.shape}")


def summarize_posterior(fit_or_idata, hdi_prob: float = 0.95, var_names=None) -> pd.DataFrame:
    """
    Per-parameter summary from the pooled post-warmup draws.

    Columns: mean, sd, hdi_lower, hdi_upper, r_hat, ess_bulk, ess_tail.
    Index: parameter component, e.g. 'beta[vuln_conflict]', 'alpha[governance]'.
    """
    idata = as_idata(fit_or_idata)
    if var_names is None:
        var_names = [v for v in PARAMETER_NAMES if v in idata.posterior.data_vars]

    summary = az.summary(idata, var_names=var_names, hdi_prob=hdi_prob, kind="all", round_to="none")
    hdi_cols = [c for c in summary.columns if c.startswith("hdi_")]
    summary = summary.rename(columns={hdi_cols[0]: "hdi_lower", hdi_cols[1]: "hdi_upper"})
    keep = ["mean", "sd", "hdi_lower", "hdi_upper", "r_hat", "ess_bulk", "ess_tail"]
    return summary[[c for c in keep if c in summary.columns]]


def parameter_intervals(fit_or_idata, hdi_prob: float = 0.95, var_names=None) -> dict:
    """{parameter: (lower, upper)} or {parameter: array (k, 2)} for vector parameters."""
    idata = as_idata(fit_or_idata)
    if var_names is None:
        var_names = [v for v in PARAMETER_NAMES if v in idata.posterior.data_vars]
    out = {}
    for name in var_names:
        draws = pooled_draws(idata, name)
        bounds = hdi_interval(draws, prob=hdi_prob)
        out[name] = tuple(float(b) for b in bounds) if draws.ndim == 1 else bounds
    return out
