# tests/evaluation/test_oos_metrics.py
import json

import numpy as np
import pytest
from prevalence.errors import EvaluationDivisionError
from prevalence.evaluation.oos_prediction import (
    evaluate_predictions,
    evaluate_split,
    mae,
    mape,
    metrics_record,
    rmse,
)


def test_point_metrics():
    y, p = [1.0, 2.0, 4.0], [1.5, 2.0, 3.0]
    assert rmse(y, p) == pytest.approx(np.sqrt((0.25 + 0 + 1.0) / 3))
    assert mae(y, p) == pytest.approx(0.5)
    assert mape(y, p) == pytest.approx((0.5 + 0.0 + 0.25) / 3)


def test_length_mismatch():
    with pytest.raises(ValueError, match="length"):
        rmse([1.0, 2.0], [1.0])


def test_zero_outcome_raises_for_mape_only():
    y, p = [0.0, 2.0, 4.0], [0.5, 2.5, 3.0]
    with pytest.raises(EvaluationDivisionError):
        mape(y, p)
    res = evaluate_predictions(y, p)
    assert res["metrics"]["rmse"] == pytest.approx(rmse(y, p))
    assert res["metrics"]["mae"] == pytest.approx(0.5)
    assert np.isnan(res["metrics"]["mape"])
    assert "mape" in res["errors"]


def test_zero_division_error_is_catchable_as_builtin():
    with pytest.raises(ZeroDivisionError):
        mape([0.0], [1.0])


def test_skip_policy_drops_zero_rows():
    y, p = [0.0, 2.0, 4.0], [0.5, 2.5, 3.0]
    assert mape(y, p, zero_policy="skip") == pytest.approx((0.25 + 0.25) / 2)
    with pytest.raises(EvaluationDivisionError):
        mape([0.0, 0.0], [1.0, 1.0], zero_policy="skip")
    with pytest.raises(ValueError):
        mape(y, p, zero_policy="ignore")


def test_empty_inputs_give_empty_metrics():
    res = evaluate_predictions([], [])
    assert res == {"n_obs": 0, "metrics": {}, "errors": {}}


def test_coverage():
    res = evaluate_predictions([1.0, 2.0, 3.0, 4.0], [1.0, 2.0, 3.0, 4.0],
                               lower=[0.0, 0.0, 3.5, 3.0], upper=[2.0, 3.0, 5.0, 5.0])
    assert res["metrics"]["coverage"] == pytest.approx(0.75)


def test_evaluate_split(prevalence_model, fake_idata, prepared_tables):
    _, test, _ = prepared_tables
    preds, res = evaluate_split(prevalence_model, fake_idata, test, random_effect="zero", seed=3)
    assert len(preds) == len(test)
    assert set(res["metrics"]) == {"rmse", "mae", "mape", "coverage"}
    assert res["n_obs"] == len(test)


def test_evaluate_split_zero_outcome(prevalence_model, fake_idata, prepared_tables):
    _, test, _ = prepared_tables
    test = test.copy()
    test.loc[test.index[0], "prevalence"] = 0.0
    _, res = evaluate_split(prevalence_model, fake_idata, test)
    assert np.isfinite(res["metrics"]["rmse"]) and np.isfinite(res["metrics"]["mae"])
    assert np.isnan(res["metrics"]["mape"])
    _, skipped = evaluate_split(prevalence_model, fake_idata, test, mape_zero_policy="skip")
    assert np.isfinite(skipped["metrics"]["mape"])


def test_evaluate_split_empty_and_unlabelled(prevalence_model, fake_idata, prepared_tables):
    _, test, _ = prepared_tables
    preds, res = evaluate_split(prevalence_model, fake_idata, test.iloc[:0])
    assert len(preds) == 0 and res["metrics"] == {}

    preds, res = evaluate_split(prevalence_model, fake_idata, test.drop(columns=["prevalence"]))
    assert len(preds) == len(test) and res["metrics"] == {}


def test_metrics_record_writes_strict_json():
    results = {"test": {"random_effect": "zero", "n_obs": 3,
                        "metrics": {"rmse": 1.0, "mape": float("nan")}, "errors": {"mape": "observed 0"}}}
    record = metrics_record(results)
    assert record["test"]["metrics"] == {"rmse": 1.0, "mape": None}
    assert record["test"]["errors"] == {"mape": "observed 0"}
    text = json.dumps(record, allow_nan=False)
    assert "NaN" not in text
    # the input is left untouched
    assert np.isnan(results["test"]["metrics"]["mape"])
