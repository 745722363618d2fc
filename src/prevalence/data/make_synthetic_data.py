# src/prevalence/data/make_synthetic_data.py
import numpy as np
import pandas as pd

from prevalence.data.schema import (
    LABEL_COLUMN,
    NUMERIC_COLUMNS,
    OUTCOME_COLUMN,
    REGION_COLUMNS,
)

# ---- Default generating values (standardized covariate scale) ----
TRUE_GAMMA = 0.5
TRUE_BETA = np.array([
    0.2, 0.1, -0.1, -0.2,             # regions
    0.30, 0.25, 0.20, 0.15, 0.10,     # vulnerability
    -0.30, -0.25, -0.20, -0.15, -0.10,  # governance
])


def make_synthetic_dataset(
    n_obs=100,
    n_test=0,
    seed=42,
    gamma=TRUE_GAMMA,
    beta=None,
    tau=0.0,
    region_probs=(0.3, 0.25, 0.25, 0.2),
):
    """
    Simulate observations from the exact generative model the package fits.

    Covariates are drawn on an index-like raw scale (mean 50, sd 15); the
    linear predictor uses their z-scores under the *training* mean/sd so the
    generating coefficients are directly comparable with a fit on the
    standardized training table:

        theta_i = gamma + sum_k beta[k] * x_k[i] + lambda_i,  lambda_i ~ Normal(0, tau)
        y_i ~ Exponential(rate = exp(-theta_i))

    Parameters
    ----------
    n_obs : int
        Number of training rows.
    n_test : int
        Number of held-out rows. Each gets its own lambda ~ Normal(0, tau) draw,
        independent of the training rows; these draws are not returned in `truth`.
    seed : int
        Seed for `np.random.default_rng`.
    gamma : float
        True intercept.
    beta : array-like of length 14, optional
        True coefficients in schema order. Defaults to `TRUE_BETA`.
    tau : float
        Random-effect scale. 0 gives no per-observation effect.
    region_probs : tuple of 4 floats
        Sampling probabilities for the region one-hot.

    Returns
    -------
    train : pd.DataFrame
    test : pd.DataFrame
        Empty (zero rows, schema columns) when n_test == 0.
    truth : dict
        {"gamma", "beta", "tau", "lambda"} used for the training rows.
    """
    beta = np.asarray(TRUE_BETA if beta is None else beta, dtype=np.float64)
    if beta.shape != (len(REGION_COLUMNS) + len(NUMERIC_COLUMNS),):
        raise ValueError(f"beta must have length 14, got shape {beta.shape}")
    if tau < 0:
        raise ValueError("tau must be >= 0")

    rng = np.random.default_rng(seed)
    n_total = n_obs + n_test

    # ---- Regions (one-hot, exactly one flag per row) ----
    region = rng.choice(len(REGION_COLUMNS), size=n_total, p=np.asarray(region_probs) / np.sum(region_probs))
    flags = np.eye(len(REGION_COLUMNS), dtype="int64")[region]

    # ---- Raw covariates and their training-scale z-scores ----
    raw = rng.normal(50.0, 15.0, size=(n_total, len(NUMERIC_COLUMNS)))
    mu = raw[:n_obs].mean(axis=0)
    sd = raw[:n_obs].std(axis=0, ddof=1)
    z = (raw - mu) / sd

    X = np.hstack([flags, z])
    lam = rng.normal(0.0, tau, size=n_total) if tau > 0 else np.zeros(n_total)
    theta = gamma + X @ beta + lam
    y = rng.exponential(scale=np.exp(theta))

    df = pd.DataFrame(raw, columns=NUMERIC_COLUMNS)
    for j, col in enumerate(REGION_COLUMNS):
        df.insert(j, col, flags[:, j])
    df.insert(0, LABEL_COLUMN, [f"C{i + 1:03d}" for i in range(n_total)])
    df[OUTCOME_COLUMN] = y

    truth = {"gamma": float(gamma), "beta": beta.copy(), "tau": float(tau), "lambda": lam[:n_obs].copy()}
    train = df.iloc[:n_obs].reset_index(drop=True)
    test = df.iloc[n_obs:].reset_index(drop=True)
    return train, test, truth
