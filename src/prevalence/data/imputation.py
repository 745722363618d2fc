# src/prevalence/data/imputation.py
import logging

import numpy as np
import pandas as pd
from scipy.stats import ks_2samp
from sklearn.impute import KNNImputer

from prevalence.data.schema import COVARIATE_COLUMNS, REGION_COLUMNS
from prevalence.errors import InputSchemaError

logger = logging.getLogger(__name__)


def _one_hot_regions(out: pd.DataFrame, original: pd.DataFrame, regions) -> None:
    """Rows whose region flags had gaps get exactly one flag: an observed 1, else the largest imputed value."""
    if not regions:
        return
    gaps = original[regions].isna().any(axis=1).to_numpy()
    if not gaps.any():
        return
    scores = out.loc[gaps, regions].to_numpy(dtype=np.float64)
    scores = scores + (original.loc[gaps, regions].to_numpy(dtype=np.float64) == 1.0)
    one_hot = np.zeros_like(scores)
    one_hot[np.arange(scores.shape[0]), scores.argmax(axis=1)] = 1.0
    out.loc[gaps, regions] = one_hot


def impute_knn(train: pd.DataFrame, test: pd.DataFrame | None = None, n_neighbors: int = 5):
    """
    Fill missing covariates with k-nearest-neighbour imputation.

    The imputer is fitted on the training covariates only and then applied to
    both tables, so test rows never influence the training values. In a row
    with missing region flags the flag set to 1 is an observed 1 if there is
    one, otherwise the region with the largest imputed value; the other flags
    become 0. The outcome column is never imputed.

    Parameters
    ----------
    train : pd.DataFrame
        Raw training table (schema columns, NaNs allowed in covariates).
    test : pd.DataFrame, optional
        Raw test table with the same covariate columns.
    n_neighbors : int, default=5
        Number of neighbours passed to `sklearn.impute.KNNImputer`.

    Returns
    -------
    (train_imputed, test_imputed) : tuple of pd.DataFrame
        `test_imputed` is None when `test` is None.

    Raises
    ------
    InputSchemaError
        If a training covariate column has no observed values.
    """
    if n_neighbors < 1:
        raise ValueError(f"n_neighbors must be >= 1, got {n_neighbors}")

    cols = [c for c in COVARIATE_COLUMNS if c in train.columns]
    empty = [c for c in cols if train[c].isna().all()]
    if empty:
        raise InputSchemaError(f"Training columns have no observed values and cannot be imputed: {empty}")
    imputer = KNNImputer(n_neighbors=n_neighbors)
    imputer.fit(train[cols].to_numpy(dtype=np.float64))
    regions = [c for c in REGION_COLUMNS if c in cols]

    def _apply(df):
        out = df.copy()
        n_missing = int(out[cols].isna().sum().sum())
        if n_missing == 0:
            return out
        filled = imputer.transform(out[cols].to_numpy(dtype=np.float64))
        out[cols] = filled
        _one_hot_regions(out, df, regions)
        logger.info(f"KNN-imputed {n_missing} missing covariate values (k={n_neighbors})")
        return out

    return _apply(train), (_apply(test) if test is not None else None)


def ks_imputation_check(original: pd.DataFrame, imputed: pd.DataFrame, columns=None) -> pd.DataFrame:
    """
    Two-sample Kolmogorov-Smirnov test of observed vs imputed distributions.

    Only columns that actually had missing values in `original` are tested.
    A small p-value means imputation shifted the distribution of that column.
    """
    columns = columns or [c for c in COVARIATE_COLUMNS if c in original.columns]
    rows = []
    for col in columns:
        n_missing = int(original[col].isna().sum())
        if n_missing == 0:
            continue
        observed = original[col].dropna().to_numpy(dtype=np.float64)
        if observed.size < 2:
            logger.warning(f"KS check skipped for '{col}': fewer than 2 observed values")
            continue
        res = ks_2samp(observed, imputed[col].to_numpy(dtype=np.float64))
        rows.append({
            "column": col,
            "n_missing": n_missing,
            "statistic": float(res.statistic),
            "pvalue": float(res.pvalue),
        })
    return pd.DataFrame(rows, columns=["column", "n_missing", "statistic", "pvalue"])
