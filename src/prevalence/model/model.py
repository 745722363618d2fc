# src/prevalence/model/model.py
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt

from prevalence.data.schema import (
    COEF_GROUP_IDX,
    COVARIATE_COLUMNS,
    GROUP_NAMES,
    OUTCOME_COLUMN,
)
from prevalence.errors import ConfigurationError, InputSchemaError

DEFAULT_MODEL_CFG = {
    "gamma_sigma": 1000.0,  # gamma ~ Normal(0, 1000)
    "alpha_sigma": 1000.0,  # alpha[g] ~ Normal(0, 1000)
    "delta_beta": 100.0,    # delta[g] ~ HalfCauchy(0, 100)
    "tau_beta": 100.0,      # tau ~ HalfCauchy(0, 100)
    "pooling": "partial",   # "partial" (hierarchical) or "none" (independent betas)
    "non_centered": False,
}

# Free parameters reported in summaries and used for convergence checks
PARAMETER_NAMES = ["gamma", "alpha", "delta", "beta", "tau", "lambda"]


def resolve_model_cfg(model_cfg=None) -> dict:
    """Merge user settings over the defaults and reject invalid values."""
    cfg = {**DEFAULT_MODEL_CFG, **(model_cfg or {})}
    unknown = set(cfg) - set(DEFAULT_MODEL_CFG)
    if unknown:
        raise ConfigurationError(f"Unknown model_cfg keys: {sorted(unknown)}")
    for key in ("gamma_sigma", "alpha_sigma", "delta_beta", "tau_beta"):
        if not float(cfg[key]) > 0:
            raise ConfigurationError(f"model_cfg['{key}'] must be > 0, got {cfg[key]}")
        cfg[key] = float(cfg[key])
    if cfg["pooling"] not in ("partial", "none"):
        raise ConfigurationError(f"model_cfg['pooling'] must be 'partial' or 'none', got {cfg['pooling']!r}")
    cfg["non_centered"] = bool(cfg["non_centered"])
    return cfg


def coefficient_groups() -> pd.DataFrame:
    """Coefficient index -> semantic group (1-4 region, 5-9 vulnerability, 10-14 governance)."""
    return pd.DataFrame({
        "coef": COVARIATE_COLUMNS,
        "index": np.arange(1, len(COVARIATE_COLUMNS) + 1),
        "group": [GROUP_NAMES[g] for g in COEF_GROUP_IDX],
    })


def build_prevalence_model(train: pd.DataFrame, model_cfg=None) -> pm.Model:
    """
    Hierarchical exponential regression of prevalence on 14 covariates.

        y_i      ~ Exponential(rate = exp(-theta_i))          (mean = exp(theta_i))
        theta_i  = gamma + sum_k beta[k] * x_k[i] + lambda_i
        beta[k]  ~ Normal(alpha[g(k)], delta[g(k)])           g: 1-4 -> region, 5-9 -> vulnerability, 10-14 -> governance
        alpha[g] ~ Normal(0, 1000),  delta[g] ~ HalfCauchy(0, 100)
        gamma    ~ Normal(0, 1000)
        lambda_i ~ Normal(0, tau),   tau ~ HalfCauchy(0, 100)

    In the graph lambda lives on the "country" dim (one entry per training
    row) and reaches theta as `re_mask[i] * lambda[re_idx[i]]`; during
    fitting re_idx is the identity and re_mask is all ones.

    `train` must already be validated and standardized (see
    `prevalence.data.standardize.prepare_datasets`).
    """
    cfg = resolve_model_cfg(model_cfg)

    # ----------------
    # Arrays & coords
    # ----------------
    missing = [c for c in COVARIATE_COLUMNS + [OUTCOME_COLUMN] if c not in train.columns]
    if missing:
        raise InputSchemaError(f"Training table is missing columns: {missing}")
    if len(train) == 0:
        raise InputSchemaError("Training table has no rows")

    X_arr = train[COVARIATE_COLUMNS].to_numpy(dtype=np.float64)  # (N, 14), schema order
    y_arr = train[OUTCOME_COLUMN].to_numpy(dtype=np.float64)     # (N,)
    if not np.all(y_arr > 0):
        raise InputSchemaError(f"'{OUTCOME_COLUMN}' must be > 0 for the exponential likelihood")
    n_obs = len(train)

    # "obs" and "country" take their lengths from the data containers below so
    # prediction can resize them through pm.set_data
    coords = {
        "coef": COVARIATE_COLUMNS,
        "group": GROUP_NAMES,
    }
    group_idx = COEF_GROUP_IDX  # coefficient -> group, fixed by the schema

    with pm.Model(coords=coords) as model:
        # ----------------
        # Data containers: Mutable Pytensor variables
        # ----------------
        X = pm.Data("X", X_arr, dims=("obs", "coef"))
        re_idx = pm.Data("re_idx", np.arange(n_obs, dtype="int64"), dims="obs")   # row -> lambda entry
        re_mask = pm.Data("re_mask", np.ones(n_obs), dims="obs")                  # 1 = random effect on
        y_data = pm.Data("y_data", y_arr, dims="obs")
        pm.Data("country_id", np.arange(n_obs, dtype="int64"), dims="country")    # one lambda per training row

        # ----------------
        # Intercept
        # ----------------
        gamma = pm.Normal("gamma", mu=0.0, sigma=cfg["gamma_sigma"])

        # ----------------
        # Coefficients: partial pooling within each of the three groups
        # ----------------
        if cfg["pooling"] == "partial":
            alpha = pm.Normal("alpha", mu=0.0, sigma=cfg["alpha_sigma"], dims="group")
            delta = pm.HalfCauchy("delta", beta=cfg["delta_beta"], dims="group")
            if cfg["non_centered"]:
                z_beta = pm.Normal("z_beta", mu=0.0, sigma=1.0, dims="coef")
                beta = pm.Deterministic("beta", alpha[group_idx] + delta[group_idx] * z_beta, dims="coef")
            else:
                beta = pm.Normal("beta", mu=alpha[group_idx], sigma=delta[group_idx], dims="coef")
        else:
            # Unpooled comparison fit: every coefficient independent under the wide prior
            beta = pm.Normal("beta", mu=0.0, sigma=cfg["alpha_sigma"], dims="coef")

        # ----------------
        # Per-country random effect
        # ----------------
        tau = pm.HalfCauchy("tau", beta=cfg["tau_beta"])
        if cfg["non_centered"]:
            z_lambda = pm.Normal("z_lambda", mu=0.0, sigma=1.0, dims="country")
            lam = pm.Deterministic("lambda", tau * z_lambda, dims="country")
        else:
            lam = pm.Normal("lambda", mu=0.0, sigma=tau, dims="country")

        # ----------------
        # Linear predictor & likelihood
        # ----------------
        theta = pm.Deterministic("theta", gamma + pt.dot(X, beta) + re_mask * lam[re_idx], dims="obs")
        pm.Exponential("y_obs", lam=pt.exp(-theta), observed=y_data, dims="obs")

    return model
