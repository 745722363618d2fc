# src/prevalence/model/posterior_predictive.py
import logging

import numpy as np
import pandas as pd
import pymc as pm
import xarray as xr

from prevalence.data.schema import COVARIATE_COLUMNS, LABEL_COLUMN, OUTCOME_COLUMN
from prevalence.errors import ConfigurationError, InputSchemaError
from prevalence.evaluation.posterior_summary import as_idata

logger = logging.getLogger(__name__)

# How lambda enters theta for the rows being predicted:
#   "posterior": reuse the fitted lambda (training rows only, same order)
#   "zero":      drop the random effect (out-of-sample default)
#   "resample":  fresh lambda ~ Normal(0, tau) per draw and row
RANDOM_EFFECT_MODES = ("posterior", "zero", "resample")

# Data containers rewired for prediction; X first since it defines the "obs" length
DATA_NAMES = ("X", "re_idx", "re_mask", "y_data", "country_id")


def _extract_var_from_idata(idata, name: str) -> xr.DataArray:
    """Return DataArray for `name` from posterior_predictive or predictions."""
    if hasattr(idata, "posterior_predictive") and name in idata.posterior_predictive:
        return idata.posterior_predictive[name]
    if hasattr(idata, "predictions") and name in idata.predictions:
        return idata.predictions[name]
    raise KeyError(f"'{name}' not found in posterior_predictive or predictions.")


def random_effect_data(random_effect: str, n_rows: int, n_train: int) -> dict:
    """
    Values for re_idx / re_mask / country_id that select a random-effect mode.

    "posterior" requires the rows to be the training rows (n_rows == n_train);
    "resample" resizes the country dim to one fresh lambda per row.
    """
    if random_effect not in RANDOM_EFFECT_MODES:
        raise ConfigurationError(f"random_effect must be one of {RANDOM_EFFECT_MODES}, got {random_effect!r}")
    if random_effect == "posterior":
        if n_rows != n_train:
            raise ConfigurationError(
                f"random_effect='posterior' needs the training rows ({n_train}); got {n_rows} rows"
            )
        return {
            "re_idx": np.arange(n_rows, dtype="int64"),
            "re_mask": np.ones(n_rows),
            "country_id": np.arange(n_train, dtype="int64"),
        }
    if random_effect == "zero":
        return {
            "re_idx": np.zeros(n_rows, dtype="int64"),
            "re_mask": np.zeros(n_rows),
            "country_id": np.arange(n_train, dtype="int64"),
        }
    return {
        "re_idx": np.arange(n_rows, dtype="int64"),
        "re_mask": np.ones(n_rows),
        "country_id": np.arange(n_rows, dtype="int64"),
    }


def _check_interval(interval):
    lo_q, hi_q = interval
    if not 0.0 <= lo_q < hi_q <= 1.0:
        raise ConfigurationError(f"interval must satisfy 0 <= lo < hi <= 1, got {interval}")
    return float(lo_q), float(hi_q)


def summarize_draws(y_ppc: xr.DataArray, interval=(0.025, 0.975)) -> pd.DataFrame:
    """Per-row mean and percentile interval across (chain, draw)."""
    lo_q, hi_q = _check_interval(interval)
    return pd.DataFrame({
        "mean": y_ppc.mean(("chain", "draw")).to_numpy().reshape(-1),
        "lower": y_ppc.quantile(lo_q, ("chain", "draw")).to_numpy().reshape(-1),
        "upper": y_ppc.quantile(hi_q, ("chain", "draw")).to_numpy().reshape(-1),
    })


def predict(
    model: pm.Model,
    fit_or_idata,
    data: pd.DataFrame,
    random_effect: str = "zero",
    seed=2025,
    interval=(0.025, 0.975),
    return_draws: bool = False,
):
    """
    Posterior-predictive simulation for a prepared (standardized) table.

    Steps:
      1) pm.set_data points the fitted model at `data` and sets the
         random-effect mode through re_idx / re_mask / country_id.
      2) pm.sample_posterior_predictive draws y_obs (and, for "resample",
         a fresh lambda) from the posterior with `seed`.
      3) Mean and percentile interval over (chain, draw) per row.
    The model's training data is restored afterwards. The same posterior,
    table and seed always give the same output.

    Returns
    -------
    pd.DataFrame
        Index of `data`; columns mean, lower, upper (plus `country` and
        `observed` when present in `data`).
    np.ndarray, optional
        Raw draws (S, M) when `return_draws=True`.
    """
    missing = [c for c in COVARIATE_COLUMNS if c not in data.columns]
    if missing:
        raise InputSchemaError(f"Prediction table is missing columns: {missing}")
    absent = [n for n in DATA_NAMES if n not in model.named_vars]
    if absent:
        raise ConfigurationError(f"Model has no data containers {absent}; build it with build_prevalence_model")

    _check_interval(interval)
    idata = as_idata(fit_or_idata)
    n_rows = len(data)
    n_train = int(model["country_id"].get_value().shape[0])
    re_data = random_effect_data(random_effect, n_rows, n_train)

    if n_rows == 0:
        summary = pd.DataFrame({"mean": [], "lower": [], "upper": []}, dtype=np.float64)
        n_samples = idata.posterior.sizes["chain"] * idata.posterior.sizes["draw"]
        y_draws = np.empty((n_samples, 0))
    else:
        # forward sampling ignores the outcome; keep the observed one when there is one
        if OUTCOME_COLUMN in data.columns:
            y_placeholder = data[OUTCOME_COLUMN].to_numpy(dtype=np.float64)
        else:
            y_placeholder = np.ones(n_rows)
        new_data = {
            "X": data[COVARIATE_COLUMNS].to_numpy(dtype=np.float64),
            "re_idx": re_data["re_idx"],
            "re_mask": re_data["re_mask"],
            "y_data": y_placeholder,
            "country_id": re_data["country_id"],
        }
        want_names = ["y_obs"]
        if random_effect == "resample":
            want_names.insert(0, "z_lambda" if "z_lambda" in model.named_vars else "lambda")

        original = {name: model[name].get_value() for name in DATA_NAMES}
        try:
            with model:
                pm.set_data(new_data, model=model)
                ppc = pm.sample_posterior_predictive(
                    idata,
                    var_names=want_names,
                    random_seed=seed,
                    return_inferencedata=True,
                    progressbar=False,
                )
        finally:
            pm.set_data(original, model=model)

        y_ppc = _extract_var_from_idata(ppc, "y_obs")
        n_inf = int(np.isinf(y_ppc.to_numpy()).sum())
        if n_inf:
            logger.warning(f"{n_inf} predictive draws overflowed (theta too large); they are infinite")
        summary = summarize_draws(y_ppc, interval=interval)
        y_draws = y_ppc.stack(sample=("chain", "draw")).transpose("sample", ...).to_numpy()

    summary.index = data.index
    if LABEL_COLUMN in data.columns:
        summary.insert(0, LABEL_COLUMN, data[LABEL_COLUMN].to_numpy())
    if OUTCOME_COLUMN in data.columns:
        summary["observed"] = data[OUTCOME_COLUMN].to_numpy(dtype=np.float64)

    logger.info(f"Predicted {n_rows} rows from {y_draws.shape[0]} posterior draws (random_effect={random_effect})")
    return (summary, y_draws) if return_draws else summary
