# src/prevalence/data/schema.py
from typing import NamedTuple

import numpy as np
import pandas as pd

from prevalence.errors import InputSchemaError


class Field(NamedTuple):
    name: str
    kind: str   # "region" | "vulnerability" | "governance" | "outcome"
    dtype: str  # "int" | "float"


# Column order defines the coefficient order beta[1..14] in the model
REGION_FIELDS = (
    Field("africa", "region", "int"),
    Field("americas", "region", "int"),
    Field("asia_pacific", "region", "int"),
    Field("europe_central_asia", "region", "int"),
)
VULNERABILITY_FIELDS = (
    Field("vuln_political_rights", "vulnerability", "float"),
    Field("vuln_social_rights", "vulnerability", "float"),
    Field("vuln_personal_security", "vulnerability", "float"),
    Field("vuln_refugees", "vulnerability", "float"),
    Field("vuln_conflict", "vulnerability", "float"),
)
GOVERNANCE_FIELDS = (
    Field("gov_survivor_support", "governance", "float"),
    Field("gov_criminal_justice", "governance", "float"),
    Field("gov_coordination", "governance", "float"),
    Field("gov_risk_factors", "governance", "float"),
    Field("gov_supply_chains", "governance", "float"),
)
OUTCOME_FIELD = Field("prevalence", "outcome", "float")
LABEL_COLUMN = "country"

COVARIATE_FIELDS = REGION_FIELDS + VULNERABILITY_FIELDS + GOVERNANCE_FIELDS
SCHEMA = COVARIATE_FIELDS + (OUTCOME_FIELD,)

REGION_COLUMNS = [f.name for f in REGION_FIELDS]
NUMERIC_COLUMNS = [f.name for f in VULNERABILITY_FIELDS + GOVERNANCE_FIELDS]
COVARIATE_COLUMNS = [f.name for f in COVARIATE_FIELDS]
OUTCOME_COLUMN = OUTCOME_FIELD.name

# Coefficient groups: 0 = region effects, 1 = vulnerability, 2 = governance
GROUP_NAMES = ["region", "vulnerability", "governance"]
COEF_GROUP_IDX = np.array([GROUP_NAMES.index(f.kind) for f in COVARIATE_FIELDS], dtype="int64")


def validate_table(df: pd.DataFrame, require_outcome: bool = True, positive_outcome: bool = True) -> pd.DataFrame:
    """
    Check a raw table against the fixed schema and return a typed copy.

    Parameters
    ----------
    df : pd.DataFrame
        Table with (at least) the schema columns. Extra columns are kept.
    require_outcome : bool, default=True
        Whether the outcome column must be present (train) or may be absent (test).
    positive_outcome : bool, default=True
        Whether every outcome must be strictly positive (exponential likelihood).

    Returns
    -------
    pd.DataFrame
        Copy with region flags as int64 and numeric covariates/outcome as float64.

    Raises
    ------
    InputSchemaError
        Missing or non-numeric column, missing values, region flags not
        exactly one-hot, or non-positive outcomes when `positive_outcome`.
    """
    if not isinstance(df, pd.DataFrame):
        raise InputSchemaError(f"Expected a pandas DataFrame, got {type(df)}")

    required = list(COVARIATE_COLUMNS)
    if require_outcome:
        required.append(OUTCOME_COLUMN)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InputSchemaError(f"Missing required columns: {missing}")

    out = df.copy()
    present = [f for f in SCHEMA if f.name in out.columns]

    # Zero-row tables (e.g. an empty test split) only need their dtypes fixed
    if len(out) == 0:
        return out.astype({f.name: ("int64" if f.dtype == "int" else "float64") for f in present})

    for field in present:
        col = out[field.name]
        if field.kind == "region" and pd.api.types.is_bool_dtype(col):
            out[field.name] = col.astype("int64")
        elif not pd.api.types.is_numeric_dtype(col) or pd.api.types.is_bool_dtype(col):
            raise InputSchemaError(
                f"Column '{field.name}' must be numeric, got dtype {out[field.name].dtype}"
            )

    has_na = [f.name for f in present if out[f.name].isna().any()]
    if has_na:
        raise InputSchemaError(f"Columns contain missing values (impute first): {has_na}")

    # --- Region flags: 0/1 and exactly one per row ---
    flags = out[REGION_COLUMNS].to_numpy(dtype=np.float64)
    if not np.isin(flags, (0.0, 1.0)).all():
        raise InputSchemaError(f"Region flags {REGION_COLUMNS} must be 0/1")
    bad_rows = np.flatnonzero(flags.sum(axis=1) != 1)
    if bad_rows.size:
        raise InputSchemaError(
            f"Exactly one region flag must be set per row; violated at rows {bad_rows[:10].tolist()}"
        )
    out[REGION_COLUMNS] = out[REGION_COLUMNS].astype("int64")
    out[NUMERIC_COLUMNS] = out[NUMERIC_COLUMNS].astype("float64")

    if OUTCOME_COLUMN in out.columns:
        out[OUTCOME_COLUMN] = out[OUTCOME_COLUMN].astype("float64")
        if positive_outcome and (out[OUTCOME_COLUMN] <= 0).any():
            n_bad = int((out[OUTCOME_COLUMN] <= 0).sum())
            raise InputSchemaError(
                f"'{OUTCOME_COLUMN}' must be > 0 for the exponential likelihood ({n_bad} rows are not)"
            )

    return out
