# src/prevalence/data/load_data.py
import logging
from pathlib import Path

import pandas as pd

from prevalence.data.schema import validate_table
from prevalence.errors import InputSchemaError

logger = logging.getLogger(__name__)


def read_raw(path) -> pd.DataFrame:
    """Read a CSV into a dataframe without validation (imputation runs on this)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")
    df = pd.read_csv(path)
    logger.info(f"Loaded {path.name}: {df.shape[0]} rows x {df.shape[1]} cols")
    return df


def load_dataset(path, require_outcome: bool = True, positive_outcome: bool = True) -> pd.DataFrame:
    """
    Read a CSV and validate it against the fixed schema.

    The test table may omit the outcome (`require_outcome=False`) and may
    contain zero outcomes (`positive_outcome=False`).
    """
    df = read_raw(path)
    try:
        return validate_table(df, require_outcome=require_outcome, positive_outcome=positive_outcome)
    except InputSchemaError as e:
        raise InputSchemaError(f"{Path(path).name}: {e}") from e
