import numpy as np
import pymc as pm
import pytest
from prevalence.data.schema import COVARIATE_COLUMNS
from prevalence.errors import ConfigurationError, InputSchemaError
from prevalence.model.model import (
    DEFAULT_MODEL_CFG,
    build_prevalence_model,
    coefficient_groups,
    resolve_model_cfg,
)


def test_build_smoke_and_vars(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train)
    assert isinstance(m, pm.Model)

    for cd in ["coef", "group", "obs", "country"]:
        assert cd in m.dim_lengths
    assert list(m.coords["coef"]) == COVARIATE_COLUMNS
    assert int(m.dim_lengths["obs"].eval()) == len(train)
    assert int(m.dim_lengths["country"].eval()) == len(train)

    for name in ["gamma", "alpha", "delta", "beta", "tau", "lambda", "theta", "y_obs", "X", "re_idx", "re_mask", "y_data", "country_id"]:
        assert name in m.named_vars, f"{name} missing"
    assert {v.name for v in m.free_RVs} == {"gamma", "alpha", "delta", "beta", "tau", "lambda"}

def test_initial_point_log_density_is_finite(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train)
    logp = m.compile_logp()(m.initial_point())
    assert np.isfinite(logp)

def test_prior_scales_follow_config(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train, {"gamma_sigma": 5.0})
    # Normal(0, 5) log density at 0
    logp_gamma = pm.logp(m["gamma"], 0.0).eval()
    assert logp_gamma == pytest.approx(-np.log(5.0 * np.sqrt(2 * np.pi)), rel=1e-6)

def test_non_centered_same_named_parameters(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train, {"non_centered": True})
    free = {v.name for v in m.free_RVs}
    assert {"z_beta", "z_lambda"} <= free
    assert "beta" not in free and "lambda" not in free
    # still exposed as deterministics for summaries/prediction
    assert "beta" in m.named_vars and "lambda" in m.named_vars

def test_unpooled_has_no_hyperpriors(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train, {"pooling": "none"})
    assert "alpha" not in m.named_vars
    assert "delta" not in m.named_vars
    assert "beta" in m.named_vars

def test_rejects_non_positive_outcome(prepared_tables):
    train, _, _ = prepared_tables
    bad = train.copy()
    bad.loc[bad.index[0], "prevalence"] = 0.0
    with pytest.raises(InputSchemaError):
        build_prevalence_model(bad)

def test_rejects_missing_columns_and_empty(prepared_tables):
    train, _, _ = prepared_tables
    with pytest.raises(InputSchemaError, match="gov_risk_factors"):
        build_prevalence_model(train.drop(columns=["gov_risk_factors"]))
    with pytest.raises(InputSchemaError):
        build_prevalence_model(train.iloc[:0])

@pytest.mark.parametrize("cfg", [
    {"tau_beta": 0},
    {"alpha_sigma": -1},
    {"pooling": "complete"},
    {"sigma_everything": 1.0},
])
def test_invalid_model_cfg(cfg):
    with pytest.raises(ConfigurationError):
        resolve_model_cfg(cfg)

def test_default_cfg_resolves_unchanged():
    cfg = resolve_model_cfg(None)
    assert cfg.keys() == DEFAULT_MODEL_CFG.keys()
    assert cfg["pooling"] == "partial" and cfg["non_centered"] is False
    assert cfg["gamma_sigma"] == 1000.0 and cfg["tau_beta"] == 100.0

def test_coefficient_groups_table():
    groups = coefficient_groups()
    assert groups["index"].tolist() == list(range(1, 15))
    assert groups.groupby("group").size().to_dict() == {"governance": 5, "region": 4, "vulnerability": 5}
    assert groups.loc[groups["coef"] == "vuln_conflict", "group"].item() == "vulnerability"

def test_random_effect_containers_start_as_identity(prepared_tables):
    train, _, _ = prepared_tables
    m = build_prevalence_model(train)
    np.testing.assert_array_equal(m["re_idx"].get_value(), np.arange(len(train)))
    np.testing.assert_array_equal(m["re_mask"].get_value(), np.ones(len(train)))
    np.testing.assert_allclose(m["y_data"].get_value(), train["prevalence"].to_numpy())
