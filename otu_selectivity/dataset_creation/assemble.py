"""
assemble.py
-----------
Join of the frequency features with the abundance of one OTU.

The abundance table has one row per OTU, an identifier column and one
numeric column per sampling position. Column names match the position
names of the environmental table, and the join uses those names.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from otu_selectivity.constants import POSITION_COL, VALUES_COL
from otu_selectivity.dataset_creation.frequencies import bin_frequencies, compute_breakpoints, value_range
from otu_selectivity.dataset_creation.load_data import select_environmental_variable
from otu_selectivity.dataset_creation.windowing import prepare_env_data, tag_positions
from otu_selectivity.errors import (
    AmbiguousIdentifier,
    NoInformativeFeatures,
    ShapeMismatch,
    UnknownIdentifier,
)
from otu_selectivity.utils import remove_constant_columns

logger = logging.getLogger(__name__)


@dataclass
class JoinedSample:
    """
    Model input of one OTU: feature matrix and response, aligned by position.

    `table` keeps the joined rows (positions, counts and abundance) before
    constant-column removal, as written to the frequencies file.
    """
    table: pd.DataFrame
    X: pd.DataFrame
    y: np.ndarray
    positions: List[str]

    @property
    def feature_names(self) -> List[str]:
        return list(self.X.columns)


def numeric_columns(df: pd.DataFrame, id_col: str) -> List[str]:
    return [
        c for c in df.columns
        if c != id_col and pd.api.types.is_numeric_dtype(df[c]) and not pd.api.types.is_bool_dtype(df[c])
    ]


def normalize_otu_data(df: pd.DataFrame, id_col: str) -> pd.DataFrame:
    """
    Z-score the numeric columns of the OTU table, leaving the others untouched.

    Each position column is standardized across OTUs (sample standard
    deviation; a constant column is divided by 1). Works on a copy.
    """
    df_y = df.copy()
    numeric_cols = numeric_columns(df, id_col)
    if not numeric_cols:
        return df_y
    Y = df[numeric_cols].to_numpy(dtype=np.float64)
    mean = np.nanmean(Y, axis=0)
    std = np.nanstd(Y, axis=0, ddof=1) if len(Y) > 1 else np.zeros(Y.shape[1])
    std = np.where((std == 0) | ~np.isfinite(std), 1.0, std)
    df_y[numeric_cols] = (Y - mean) / std
    return df_y


def select_otu_row(df_otu: pd.DataFrame, otu_id: str, id_col: str) -> pd.Series:
    """The single row of `otu_id`; zero or several matches are errors."""
    if id_col not in df_otu.columns:
        raise UnknownIdentifier(f"The selected id column name ({id_col}) is not contained in the dataframe.")
    selected = df_otu[df_otu[id_col].astype(str) == str(otu_id)]
    if len(selected) > 1:
        raise AmbiguousIdentifier(f"There is more than one row ({len(selected)}) with the given ID: {otu_id}")
    if len(selected) < 1:
        raise UnknownIdentifier(
            f"Incorrect OTU ID. The selected OTU ID ({otu_id}) is not contained in the id column '{id_col}'."
        )
    return selected.iloc[0]


def assemble(
    df_frequencies: pd.DataFrame,
    df_otu: pd.DataFrame,
    otu_id: str,
    id_col: str,
    normalize: bool = True,
) -> JoinedSample:
    """
    Join a frequency table with the abundance of one OTU.

    Parameters:
        df_frequencies: Output of `bin_frequencies` (bins + `position`).
        df_otu: OTU table (identifier column + one numeric column per position).
        otu_id: Identifier of the OTU to analyse.
        id_col: Name of the identifier column.
        normalize: Z-score the OTU table before selecting the row.

    Returns:
        JoinedSample with complete rows only and non-constant features.
    """
    df_y = normalize_otu_data(df_otu, id_col) if normalize else df_otu.copy()
    row = select_otu_row(df_y, otu_id, id_col)

    numeric_cols = numeric_columns(df_otu, id_col)
    values = row[numeric_cols].to_numpy(dtype=np.float64)

    n_positions = df_frequencies[POSITION_COL].nunique()
    if n_positions != len(values):
        raise ShapeMismatch(
            f"The OTU table holds {len(values)} numeric values for '{otu_id}', "
            f"but the frequency table has {n_positions} positions"
        )

    df_otu_selected = pd.DataFrame({
        VALUES_COL: values,
        POSITION_COL: [str(c) for c in numeric_cols],
    })
    table = df_frequencies.merge(df_otu_selected, on=POSITION_COL, how='inner')
    if len(table) < len(df_frequencies):
        unmatched = sorted(set(df_frequencies[POSITION_COL]) - set(df_otu_selected[POSITION_COL]))
        logger.warning(f"{len(unmatched)} position(s) without abundance data: {unmatched}")

    cleaned = table.dropna().reset_index(drop=True)
    if len(cleaned) < len(table):
        logger.info(f"Dropped {len(table) - len(cleaned)} row(s) with missing values")

    features = cleaned.drop(columns=[POSITION_COL, VALUES_COL])
    X = remove_constant_columns(features).astype(np.float64)
    if X.shape[1] == 0:
        raise NoInformativeFeatures(
            "All features were removed due to being constant. Check your data preprocessing "
            f"(step size, window span, season) for OTU '{otu_id}'."
        )
    dropped = features.shape[1] - X.shape[1]
    if dropped:
        logger.info(f"Removed {dropped} constant feature column(s)")

    return JoinedSample(
        table=table,
        X=X,
        y=cleaned[VALUES_COL].to_numpy(dtype=np.float64),
        positions=cleaned[POSITION_COL].tolist(),
    )


def frequencies_filename(env_var: str, otu_id: str, span, season: str, cdna: bool = False) -> str:
    cdna_indicator = "c" if cdna else ""
    return f"{env_var}_{otu_id}{cdna_indicator}_{span}_{season}_frequencies.csv"


def save_frequencies(
    table: pd.DataFrame,
    output_dir: Union[str, Path],
    env_var: str,
    otu_id: str,
    span,
    season: str,
    cdna: bool = False,
) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / frequencies_filename(env_var, otu_id, span, season, cdna)
    table.to_csv(path, index=False)
    logger.info(f"Saved frequency table to {path}")
    return path


def prepare_data(
    df_env: pd.DataFrame,
    df_otu: pd.DataFrame,
    otu_id: str,
    env_var: str,
    sampling_dates: Dict[str, str],
    span: float,
    step: float,
    date_col: str,
    id_col: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    season: str = "all",
    binning: str = "range",
    normalize: bool = True,
    regions: Optional[Dict[str, str]] = None,
    cdna: bool = False,
    output_dir: Optional[Union[str, Path]] = None,
) -> JoinedSample:
    """
    Window, bin and join the data of one OTU and one environmental variable.

    The breakpoints derive from the full range of the variable, so runs with
    different windows or seasons share the same bins. When `output_dir` is
    given, the joined table is written there as the frequencies file.
    """
    df = select_environmental_variable(df_env, env_var)
    tags = tag_positions(df.columns, date_col, regions)

    min_val, max_val = value_range(df, date_col)
    breakpoints = compute_breakpoints(min_val, max_val, step)
    logger.info(f"Environmental data ranging from {min_val} to {max_val} ({len(breakpoints)} breakpoints).")

    truncated = prepare_env_data(df, date_col, sampling_dates, span, start_date, end_date, season, tags)
    df_frequencies = bin_frequencies(truncated, date_col, breakpoints, binning)
    sample = assemble(df_frequencies, df_otu, otu_id, id_col, normalize=normalize)

    if output_dir is not None:
        save_frequencies(sample.table, output_dir, env_var, otu_id, span, season, cdna)
    return sample
