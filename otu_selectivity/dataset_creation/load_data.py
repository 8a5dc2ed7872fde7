"""
load_data.py
------------
Reading of the environmental and OTU tables.

The field loggers export CSV files with a decimal comma ("12,5"), one
datetime column and one column per sampling position. The three variables
(air temperature, soil temperature, soil moisture) come in separate files
and are stacked into one long table tagged by an `env_var` column.
"""

import io
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

from otu_selectivity.constants import ENV_VAR_COL, ENV_VARIABLES
from otu_selectivity.errors import UnknownEnvironmentalVariable

logger = logging.getLogger(__name__)

_DECIMAL_COMMA = re.compile(r"(\d),(\d)")
_QUOTED_DECIMAL_COMMA = re.compile(r'"(-?\d*),(\d+)"')


def _detect_separator(header: str) -> str:
    for sep in (";", "\t", ","):
        if sep in header:
            return sep
    return ","


def read_csv(file_path: Union[str, Path], output_path: Optional[Union[str, Path]] = None) -> pd.DataFrame:
    """
    Read a CSV file whose numbers use commas as decimal separators.

    The field separator is taken from the header line. With ";" or tab
    separated files every "1,5" becomes "1.5"; with comma separated files
    only quoted numbers ("1,5") are repaired.

    Args:
        file_path: Path to the input CSV file.
        output_path: Optional path to save the repaired text to.

    Returns:
        DataFrame with numbers parsed as floats and fully empty rows removed.
    """
    content = Path(file_path).read_text(encoding="utf-8")
    sep = _detect_separator(content.split("\n", 1)[0])
    if sep == ",":
        content = _QUOTED_DECIMAL_COMMA.sub(r'"\1.\2"', content)
    else:
        content = _DECIMAL_COMMA.sub(r"\1.\2", content)

    if output_path is not None:
        Path(output_path).write_text(content, encoding="utf-8")
        logger.info(f"Wrote decimal-point copy of {file_path} to {output_path}")

    df = pd.read_csv(io.StringIO(content), sep=sep)
    return df.dropna(how='all').reset_index(drop=True)


def check_environmental_input(df: pd.DataFrame, date_col: str, first_date: str, last_date: str) -> Dict[str, object]:
    """
    Check that an environmental table has the expected layout.

    Logs one record per check and returns the outcomes, so a notebook or the
    CLI can decide whether to go on.
    """
    report = {
        "has_date_col": date_col in df.columns,
        "first_date_ok": False,
        "last_date_ok": False,
        "non_float_columns": [],
    }
    if not report["has_date_col"]:
        logger.warning(f"Column {date_col} is missing in the DataFrame.")
        return report
    logger.info(f"Column {date_col} is present in the DataFrame.")

    first_value = df[date_col].iloc[0] if len(df) else None
    report["first_date_ok"] = first_value == first_date
    if report["first_date_ok"]:
        logger.info(f"The first value in column {date_col} is {first_date}")
    else:
        logger.warning(f"The first value in column {date_col} is not {first_date} (found {first_value})")

    last_value = df[date_col].iloc[-1] if len(df) else None
    report["last_date_ok"] = last_value == last_date
    if report["last_date_ok"]:
        logger.info(f"The last value in column {date_col} is {last_date}")
    else:
        logger.warning(f"The last value in column {date_col} is not {last_date} (found {last_value})")

    data_cols = [c for c in df.columns if c not in (date_col, ENV_VAR_COL)]
    report["non_float_columns"] = [c for c in data_cols if not pd.api.types.is_float_dtype(df[c])]
    if report["non_float_columns"]:
        logger.warning(f"The following columns are NOT of type float: {report['non_float_columns']}")
    else:
        logger.info("All data columns are of type float.")
    return report


def combine_environmental_tables(tables: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """
    Stack per-variable tables into one table with an `env_var` column.

    Args:
        tables: Mapping such as {"AT": df_at, "ST": df_st, "SM": df_sm}.
    """
    frames = []
    for env_var, df in tables.items():
        if env_var not in ENV_VARIABLES:
            raise UnknownEnvironmentalVariable(
                f"Unknown environmental variable '{env_var}'. Expected one of {ENV_VARIABLES}"
            )
        tagged = df.copy()
        tagged[ENV_VAR_COL] = env_var
        frames.append(tagged)
    return pd.concat(frames, ignore_index=True)


def select_environmental_variable(df_env: pd.DataFrame, env_var: str) -> pd.DataFrame:
    """Rows of one variable, without the `env_var` column."""
    available = sorted(df_env[ENV_VAR_COL].dropna().unique())
    if env_var not in available:
        raise UnknownEnvironmentalVariable(
            f"The selected env_var ({env_var}) is not contained in the dataframe. "
            f"Available values are {available}"
        )
    df = df_env[df_env[ENV_VAR_COL] == env_var].drop(columns=[ENV_VAR_COL])
    return df.reset_index(drop=True)


def load_environmental_data(paths: Dict[str, Union[str, Path]]) -> pd.DataFrame:
    """Read the per-variable CSV files and stack them."""
    tables = {}
    for env_var, path in paths.items():
        logger.info(f"Loading {env_var} data from {path}")
        tables[env_var] = read_csv(path)
    return combine_environmental_tables(tables)
