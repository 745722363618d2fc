# src/prevalence/data/standardize.py
from typing import NamedTuple

import numpy as np
import pandas as pd

from prevalence.data.schema import NUMERIC_COLUMNS, validate_table
from prevalence.errors import DegenerateScaleError


class ScaleParams(NamedTuple):
    """Per-covariate training mean and standard deviation (sample sd, ddof=1)."""
    mean: pd.Series
    sd: pd.Series

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"mean": self.mean, "sd": self.sd})


def fit_standardizer(train: pd.DataFrame, columns=None) -> ScaleParams:
    """
    Compute z-score parameters from the training rows only.

    Parameters
    ----------
    train : pd.DataFrame
        Training table containing the numeric covariate columns.
    columns : list of str, optional
        Columns to standardize. Defaults to the ten vulnerability/governance covariates.

    Returns
    -------
    ScaleParams
        Read-only (mean, sd) series indexed by column name.

    Raises
    ------
    DegenerateScaleError
        If any column has zero or non-finite standard deviation.
    """
    columns = list(columns or NUMERIC_COLUMNS)
    values = train[columns].astype(np.float64)
    mean = values.mean(axis=0)
    sd = values.std(axis=0, ddof=1)

    bad = [c for c in columns if not np.isfinite(sd[c]) or sd[c] <= 0]
    if bad:
        raise DegenerateScaleError(
            f"Cannot standardize; zero or undefined variance in training rows for {bad}"
        )
    return ScaleParams(mean=mean.copy(), sd=sd.copy())


def apply_standardizer(df: pd.DataFrame, params: ScaleParams) -> pd.DataFrame:
    """Apply `(x - mean) / sd` with training parameters; other columns pass through."""
    out = df.copy()
    cols = list(params.mean.index)
    out[cols] = (out[cols].astype(np.float64) - params.mean) / params.sd
    return out


def prepare_datasets(train: pd.DataFrame, test: pd.DataFrame | None = None):
    """
    Validate both tables, fit the scaler on train and apply it to train and test.

    Returns
    -------
    (train_std, test_std, params)
        `test_std` is None when `test` is None. The test outcome may be
        absent or zero; the training outcome must be strictly positive.
    """
    train = validate_table(train, require_outcome=True, positive_outcome=True)
    params = fit_standardizer(train)
    train_std = apply_standardizer(train, params)

    test_std = None
    if test is not None:
        test = validate_table(test, require_outcome=False, positive_outcome=False)
        test_std = apply_standardizer(test, params)
    return train_std, test_std, params
