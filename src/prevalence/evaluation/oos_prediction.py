# src/prevalence/evaluation/oos_prediction.py
import logging

import numpy as np
import pandas as pd

from prevalence.data.schema import OUTCOME_COLUMN
from prevalence.errors import EvaluationDivisionError
from prevalence.model.posterior_predictive import predict

logger = logging.getLogger(__name__)

MAPE_ZERO_POLICIES = ("raise", "skip")


def _pair(y_true, y_pred):
    y_true = np.asarray(y_true, dtype=np.float64).reshape(-1)
    y_pred = np.asarray(y_pred, dtype=np.float64).reshape(-1)
    if y_true.shape[0] != y_pred.shape[0]:
        raise ValueError(f"y_true length {y_true.shape[0]} != predictions length {y_pred.shape[0]}")
    return y_true, y_pred


def rmse(y_true, y_pred) -> float:
    y_true, y_pred = _pair(y_true, y_pred)
    return float(np.sqrt(np.mean((y_true - y_pred) ** 2)))


def mae(y_true, y_pred) -> float:
    y_true, y_pred = _pair(y_true, y_pred)
    return float(np.mean(np.abs(y_true - y_pred)))


def mape(y_true, y_pred, zero_policy: str = "raise") -> float:
    """
    Mean absolute percentage error as a fraction, mean(|y - pred| / |y|).

    zero_policy:
      "raise" - any observed 0 raises EvaluationDivisionError
      "skip"  - rows with observed 0 are left out (error if none remain)
    """
    if zero_policy not in MAPE_ZERO_POLICIES:
        raise ValueError(f"zero_policy must be one of {MAPE_ZERO_POLICIES}, got {zero_policy!r}")
    y_true, y_pred = _pair(y_true, y_pred)

    zero = y_true == 0
    if zero.any():
        if zero_policy == "raise":
            raise EvaluationDivisionError(
                f"MAPE undefined: {int(zero.sum())} observed outcome(s) are exactly 0"
            )
        logger.info(f"MAPE: skipping {int(zero.sum())} rows with observed outcome 0")
        y_true, y_pred = y_true[~zero], y_pred[~zero]
        if y_true.size == 0:
            raise EvaluationDivisionError("MAPE undefined: every observed outcome is 0")
    return float(np.mean(np.abs(y_true - y_pred) / np.abs(y_true)))


def evaluate_predictions(y_true, y_pred, lower=None, upper=None, mape_zero_policy: str = "raise"):
    """
    RMSE / MAE / MAPE (and interval coverage when bounds are given).

    A failing metric is reported as NaN with its error message under
    `errors`; it never invalidates the other metrics. Zero rows give empty
    outputs.

    Returns
    -------
    dict
        {"n_obs", "metrics": {...}, "errors": {metric: message}}
    """
    y_true, y_pred = _pair(y_true, y_pred)
    if y_true.size == 0:
        return {"n_obs": 0, "metrics": {}, "errors": {}}

    metrics, errors = {}, {}
    metrics["rmse"] = rmse(y_true, y_pred)
    metrics["mae"] = mae(y_true, y_pred)
    try:
        metrics["mape"] = mape(y_true, y_pred, zero_policy=mape_zero_policy)
    except EvaluationDivisionError as e:
        logger.warning(f"MAPE not computed: {e}")
        metrics["mape"] = float("nan")
        errors["mape"] = str(e)

    if lower is not None and upper is not None:
        lo, hi = _pair(lower, upper)
        metrics["coverage"] = float(np.mean((y_true >= lo) & (y_true <= hi)))

    return {"n_obs": int(y_true.size), "metrics": metrics, "errors": errors}


def evaluate_split(
    model,
    fit_or_idata,
    data: pd.DataFrame,
    random_effect: str = "zero",
    seed=2025,
    interval=(0.025, 0.975),
    mape_zero_policy: str = "raise",
):
    """
    Predict one prepared table and score it against its observed outcomes.

    Returns
    -------
    predictions : pd.DataFrame
        mean / lower / upper per row (see `predict`).
    results : dict
        Output of `evaluate_predictions`; `{"n_obs": M, "metrics": {}, ...}`
        when the table has no outcome column or no rows.
    """
    predictions = predict(model, fit_or_idata, data, random_effect=random_effect, seed=seed, interval=interval)
    if OUTCOME_COLUMN not in data.columns:
        logger.info("No observed outcome column; skipping metrics")
        return predictions, {"n_obs": int(len(data)), "metrics": {}, "errors": {}}

    results = evaluate_predictions(
        data[OUTCOME_COLUMN].to_numpy(dtype=np.float64),
        predictions["mean"].to_numpy(),
        lower=predictions["lower"].to_numpy(),
        upper=predictions["upper"].to_numpy(),
        mape_zero_policy=mape_zero_policy,
    )
    return predictions, results


def metrics_record(results):
    """Copy of nested metric results with NaN replaced by None, for strict JSON."""
    if isinstance(results, dict):
        return {k: metrics_record(v) for k, v in results.items()}
    if isinstance(results, (list, tuple)):
        return [metrics_record(v) for v in results]
    if isinstance(results, float) and np.isnan(results):
        return None
    return results
