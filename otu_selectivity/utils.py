"""
utils.py
---------
Helper routines shared by the pipeline stages:
 - logging setup for the command line entry points,
 - parsing of the fixed timestamp format,
 - column-wise standardization and constant-column removal,
 - plot styling.
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

try:
    import scienceplots  # noqa: F401
    _SCIENCEPLOTS_AVAILABLE = True
except ImportError:  # pragma: no cover - optional dependency
    _SCIENCEPLOTS_AVAILABLE = False

from otu_selectivity.constants import DATE_FORMAT, DATE_FORMAT_HUMAN
from otu_selectivity.errors import DateFormatError


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Configure root logging for a command line run.
    Records go to stderr and, if given, to logs/<log_file>.
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        os.makedirs('logs', exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join('logs', log_file)))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("otu_selectivity")


@contextmanager
def science_style():
    """Context manager to temporarily apply the SciencePlots style."""
    if not _SCIENCEPLOTS_AVAILABLE:
        yield
    else:  # pragma: no cover - styling only
        with plt.style.context(["science", "no-latex"]):
            yield


def parse_timestamp(value: Union[str, datetime, pd.Timestamp], what: str = "date") -> pd.Timestamp:
    """
    Parse a 'dd.mm.yyyy HH:MM' string. Timestamps pass through unchanged.
    Raises DateFormatError naming `what` and the offending value.
    """
    if isinstance(value, (pd.Timestamp, datetime)):
        return pd.Timestamp(value)
    try:
        return pd.Timestamp(datetime.strptime(str(value).strip(), DATE_FORMAT))
    except ValueError as e:
        raise DateFormatError(
            f"The {what} '{value}' does not match the format '{DATE_FORMAT_HUMAN}'"
        ) from e


def parse_datetime_column(series: pd.Series, what: str = "datetime column") -> pd.Series:
    """Parse a column of timestamp strings with the fixed format."""
    if pd.api.types.is_datetime64_any_dtype(series):
        return series
    parsed = pd.to_datetime(series, format=DATE_FORMAT, errors='coerce')
    bad = parsed.isna() & series.notna()
    if bad.any():
        first_bad = series[bad].iloc[0]
        raise DateFormatError(
            f"{int(bad.sum())} value(s) in the {what} do not match '{DATE_FORMAT_HUMAN}', "
            f"first offending value: '{first_bad}'"
        )
    return parsed


def standardize_columns(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Z-score each column (sample standard deviation).

    Columns with zero standard deviation are divided by 1, so constant
    columns become all-zero. NaN/Inf produced along the way are set to 0.

    Returns:
        (standardized copy, column means, column stds used for scaling)
    """
    X = np.array(X, dtype=np.float64, copy=True)
    squeeze = X.ndim == 1
    if squeeze:
        X = X[:, None]
    mean = X.mean(axis=0)
    std = X.std(axis=0, ddof=1) if X.shape[0] > 1 else np.zeros(X.shape[1])
    std = np.where((std == 0) | ~np.isfinite(std), 1.0, std)
    Z = (X - mean) / std
    Z[~np.isfinite(Z)] = 0.0
    if squeeze:
        return Z[:, 0], mean, std
    return Z, mean, std


def remove_constant_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Drop columns holding fewer than two distinct non-missing values."""
    keep = [col for col in df.columns if df[col].dropna().nunique() > 1]
    return df[keep]


def format_number(value: float) -> str:
    """Column label for a breakpoint: integers without the trailing '.0'."""
    value = round(float(value), 10)
    if value.is_integer():
        return str(int(value))
    return repr(value)
