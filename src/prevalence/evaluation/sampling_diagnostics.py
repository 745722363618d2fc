# src/prevalence/evaluation/sampling_diagnostics.py
from enum import Enum

import arviz as az
import numpy as np

DEFAULT_THRESHOLDS = {
    "rhat_max": 1.01,
    "ess_min": 400.0,
    "max_divergences": 0,
}


class FitStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"


def sampling_diagnostics(idata, var_names=None):
    """
    Convergence diagnostics for a fitted posterior:
      - az.summary table (R-hat, bulk/tail ESS, MCSE)    [subset to var_names if provided]
      - divergences count
      - BFMI (min across chains)
      - tree depth saturation
      - step size & acceptance
    Variables missing from the posterior are ignored and reported.
    """
    # ---------------------------
    # Resolve the variable list
    # ---------------------------
    posterior_vars = set(idata.posterior.data_vars) if hasattr(idata, "posterior") else set()
    requested = list(var_names) if var_names else None
    if requested:
        kept = [v for v in requested if v in posterior_vars]
        missing = [v for v in requested if v not in posterior_vars]
    else:
        kept, missing = None, []

    summary = az.summary(idata, var_names=kept, kind="diagnostics", round_to="none")

    rhat = summary["r_hat"].to_numpy(dtype=float) if "r_hat" in summary else np.array([])
    ess_bulk = summary["ess_bulk"].to_numpy(dtype=float) if "ess_bulk" in summary else np.array([])
    ess_tail = summary["ess_tail"].to_numpy(dtype=float) if "ess_tail" in summary else np.array([])

    # ---------------------------
    # sample_stats-based metrics
    # ---------------------------
    ss = getattr(idata, "sample_stats", None)

    divergences = int(ss["diverging"].sum().item()) if (ss is not None and "diverging" in ss) else None

    bfmi_min = None
    if ss is not None and "energy" in ss:
        bfmi_da = az.bfmi(idata)
        bfmi_min = float(np.min(bfmi_da)) if np.size(bfmi_da) else None

    tree_depth_stats = None
    if ss is not None and "tree_depth" in ss:
        td = ss["tree_depth"]
        td_max = int(td.max().item())
        td_hits = int((td == td_max).sum().item())
        td_total = int(td.size)
        tree_depth_stats = {
            "max_observed": td_max,
            "hits_at_max": td_hits,
            "hits_ratio": float(td_hits / td_total) if td_total else None,
            "total_draws": td_total,
        }
    if ss is not None and "reached_max_treedepth" in ss and tree_depth_stats is not None:
        tree_depth_stats["reached_max_treedepth"] = int(ss["reached_max_treedepth"].sum().item())

    step_size_stats = None
    if ss is not None and "step_size" in ss:
        step_size_stats = {
            "mean": float(ss["step_size"].mean().item()),
            "sd": float(ss["step_size"].std().item()),
        }

    acceptance_stats = None
    for name in ("acceptance_rate", "accept_rate"):
        if ss is not None and name in ss:
            acceptance_stats = {
                "mean": float(ss[name].mean().item()),
                "sd": float(ss[name].std().item()),
            }
            break

    warnings = []
    if requested and missing:
        warnings.append(f"Ignored missing variables: {missing}")

    return {
        "requested_vars": requested,
        "checked_vars": kept if kept else "ALL",
        "missing_vars": missing,
        "summary": summary,
        "n_chains": int(idata.posterior.sizes["chain"]),
        "n_draws": int(idata.posterior.sizes["draw"]),
        "divergences": divergences,
        "rhat_max": float(np.nanmax(rhat)) if np.isfinite(rhat).any() else None,
        "ess_bulk_min": float(np.nanmin(ess_bulk)) if np.isfinite(ess_bulk).any() else None,
        "ess_tail_min": float(np.nanmin(ess_tail)) if np.isfinite(ess_tail).any() else None,
        "bfmi_min": bfmi_min,
        "tree_depth": tree_depth_stats,
        "step_size": step_size_stats,
        "acceptance": acceptance_stats,
        "warnings": warnings,
    }


def classify_fit(diagnostics, thresholds=None):
    """
    Turn diagnostics into a fit status.

    Any threshold breach marks the fit DEGRADED (results still usable, but
    flagged). Returns (FitStatus, list of human-readable reasons).
    """
    t = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    reasons = []

    div = diagnostics.get("divergences")
    if div is not None and div > t["max_divergences"]:
        n_total = diagnostics["n_chains"] * diagnostics["n_draws"]
        reasons.append(f"{div} divergent transitions out of {n_total} draws")

    rhat_max = diagnostics.get("rhat_max")
    if rhat_max is not None and rhat_max > t["rhat_max"]:
        reasons.append(f"max R-hat {rhat_max:.3f} > {t['rhat_max']}")

    ess_min = diagnostics.get("ess_bulk_min")
    if ess_min is not None and ess_min < t["ess_min"]:
        reasons.append(f"min bulk ESS {ess_min:.0f} < {t['ess_min']:.0f}")

    td = diagnostics.get("tree_depth") or {}
    if td.get("reached_max_treedepth"):
        reasons.append(f"{td['reached_max_treedepth']} transitions hit the maximum tree depth")

    status = FitStatus.DEGRADED if reasons else FitStatus.SUCCEEDED
    return status, reasons
