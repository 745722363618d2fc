# tests/conftest.py
import warnings

import pytest
import numpy as np
import arviz as az
import matplotlib
matplotlib.use("Agg", force=True)

from prevalence.data.make_synthetic_data import TRUE_BETA, make_synthetic_dataset
from prevalence.data.schema import COVARIATE_COLUMNS
from prevalence.data.standardize import prepare_datasets
from prevalence.errors import SamplerConvergenceWarning
from prevalence.model.model import build_prevalence_model
from prevalence.model.sampler import run_sampler


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False, help="run full MCMC property tests")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --runslow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# Sampler settings small enough for unit tests but still multi-chain
FAST_SAMPLER_CFG = {
    "chains": 2,
    "warmup": 200,
    "iterations": 400,
    "seed": 11,
    "target_accept": 0.9,
    "max_depth": 8,
    "step_size": 0.1,
    "cores": 1,
}


@pytest.fixture
def synthetic_tables():
    """Raw (unstandardized) train/test tables plus the generating parameters."""
    return make_synthetic_dataset(n_obs=60, n_test=15, seed=7, tau=0.2)


@pytest.fixture
def prepared_tables(synthetic_tables):
    train, test, _ = synthetic_tables
    return prepare_datasets(train, test)


@pytest.fixture
def raw_row():
    """One valid observation in schema order (single region flag set)."""
    row = {c: 0 for c in COVARIATE_COLUMNS[:4]}
    row["asia_pacific"] = 1
    row.update({c: 40.0 + i for i, c in enumerate(COVARIATE_COLUMNS[4:])})
    row["prevalence"] = 3.2
    row["country"] = "C001"
    return row


def _fake_idata(n_obs, chains=2, draws=100, seed=0, gamma=0.5, tau=0.2):
    """
    InferenceData shaped like a real fit: gamma, alpha, delta, beta[coef], tau,
    lambda[country], plus the country_id container that fixes the country dim.
    """
    rng = np.random.default_rng(seed)
    beta = TRUE_BETA[None, None, :] + rng.normal(0, 0.05, size=(chains, draws, len(COVARIATE_COLUMNS)))
    posterior = {
        "gamma": gamma + rng.normal(0, 0.05, size=(chains, draws)),
        "alpha": rng.normal(0, 0.1, size=(chains, draws, 3)),
        "delta": np.abs(rng.normal(0.2, 0.05, size=(chains, draws, 3))),
        "beta": beta,
        "tau": np.abs(tau + rng.normal(0, 0.02, size=(chains, draws))),
        "lambda": rng.normal(0, tau, size=(chains, draws, n_obs)),
    }
    return az.from_dict(
        posterior=posterior,
        coords={
            "coef": COVARIATE_COLUMNS,
            "group": ["region", "vulnerability", "governance"],
            "country": np.arange(n_obs),
        },
        dims={"alpha": ["group"], "delta": ["group"], "beta": ["coef"], "lambda": ["country"], "country_id": ["country"]},
        constant_data={"country_id": np.arange(n_obs, dtype="int64")},
    )


@pytest.fixture
def fake_idata_factory():
    return _fake_idata


@pytest.fixture
def fake_idata(prepared_tables):
    train, _, _ = prepared_tables
    return _fake_idata(len(train))


@pytest.fixture
def prevalence_model(prepared_tables):
    """Centered model on the prepared training table; matches `fake_idata`."""
    train, _, _ = prepared_tables
    return build_prevalence_model(train)


@pytest.fixture(scope="function")
def idata_no_stats():
    """
    Minimal InferenceData without sample_stats to test graceful fallbacks
    for divergences and BFMI.
    """
    return az.from_dict(posterior={"gamma": np.array([[0.0, 1.0, 0.5], [0.2, 0.8, 0.4]])})


@pytest.fixture(scope="session")
def tiny_fit():
    """
    Fit the real model once on a small synthetic set and share it.
    Non-centered so a short run on few rows stays usable; cores=1 for
    Windows friendliness. Short chains are expected to be flagged degraded.
    """
    train, _, _ = make_synthetic_dataset(n_obs=40, seed=3, tau=0.2)
    train_std, _, _ = prepare_datasets(train)
    model = build_prevalence_model(train_std, {"non_centered": True})
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", SamplerConvergenceWarning)
        fit = run_sampler(model, FAST_SAMPLER_CFG)
    return fit, train_std, model
