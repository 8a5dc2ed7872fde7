"""
frequencies.py
--------------
Conversion of windowed time series into occurrence-frequency features.

For every position the number of hours falling into a bucket of the
variable's range is counted. The buckets derive from breakpoints spaced by
`step` between the global minimum and maximum of the variable:

 - "range": bucket i counts values in [b[i-1], b[i+1]) for the interior
   breakpoints, giving len(b) - 2 columns labelled by b[i];
 - "threshold": each breakpoint v counts values >= v (v >= 0) or <= v
   (v < 0), giving len(b) columns.

Missing values never count.
"""

import logging
from typing import Dict, Iterable

import numpy as np
import pandas as pd

from otu_selectivity.constants import BINNING_POLICIES, POSITION_COL
from otu_selectivity.errors import EmptyFilterResult, NoInformativeFeatures
from otu_selectivity.utils import format_number

logger = logging.getLogger(__name__)


def value_range(df: pd.DataFrame, date_col: str):
    """Global (min, max) of all non-missing values outside the datetime column."""
    values = df.drop(columns=[date_col], errors='ignore').to_numpy(dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        raise EmptyFilterResult("The environmental table holds no non-missing values")
    return float(finite.min()), float(finite.max())


def compute_breakpoints(min_val: float, max_val: float, step: float) -> np.ndarray:
    """Ascending breakpoints min, min+step, ... up to max (inclusive when on the grid)."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    n = int(np.floor((max_val - min_val) / step + 1e-9)) + 1
    return np.round(min_val + step * np.arange(n), 10)


def count_frequencies_range(df: pd.DataFrame, date_col: str, breakpoints: Iterable[float]) -> pd.DataFrame:
    """
    Count, per position, the values lying around each interior breakpoint.

    Returns:
        One row per position, one column per interior breakpoint, plus the
        `position` column.
    """
    breakpoints = np.asarray(breakpoints, dtype=np.float64)
    lower = breakpoints[:-2]
    upper = breakpoints[2:]
    labels = [format_number(v) for v in breakpoints[1:-1]]

    positions = [c for c in df.columns if c != date_col]
    values = df[positions].to_numpy(dtype=np.float64)  # (T, P)
    counts = np.zeros((len(positions), len(labels)), dtype=np.int64)
    for i, (lo, hi) in enumerate(zip(lower, upper)):
        with np.errstate(invalid='ignore'):
            inside = (values >= lo) & (values < hi)
        counts[:, i] = inside.sum(axis=0)

    df_counts = pd.DataFrame(counts, columns=labels)
    df_counts[POSITION_COL] = [str(p) for p in positions]
    return df_counts


def count_frequencies_threshold(df: pd.DataFrame, date_col: str, breakpoints: Iterable[float]) -> pd.DataFrame:
    """
    Count, per position, the values above (v >= 0) or below (v < 0) each breakpoint.
    """
    breakpoints = np.asarray(breakpoints, dtype=np.float64)
    labels = [format_number(v) for v in breakpoints]

    positions = [c for c in df.columns if c != date_col]
    values = df[positions].to_numpy(dtype=np.float64)
    counts = np.zeros((len(positions), len(labels)), dtype=np.int64)
    for i, v in enumerate(breakpoints):
        with np.errstate(invalid='ignore'):
            hit = values >= v if v >= 0 else values <= v
        counts[:, i] = hit.sum(axis=0)

    df_counts = pd.DataFrame(counts, columns=labels)
    df_counts[POSITION_COL] = [str(p) for p in positions]
    return df_counts


def bin_frequencies(
    truncated: Dict[str, pd.DataFrame],
    date_col: str,
    breakpoints: Iterable[float],
    binning: str = "range",
) -> pd.DataFrame:
    """
    Build the frequency table of all regions.

    Args:
        truncated: {region: windowed DataFrame} from `prepare_env_data`.
        date_col: Name of the datetime column.
        breakpoints: Output of `compute_breakpoints`.
        binning: "range" or "threshold".

    Returns:
        Frequency table, one row per position (regions stacked), identical
        columns for every row.
    """
    if binning not in BINNING_POLICIES:
        raise ValueError(f"binning must be one of {BINNING_POLICIES}, got {binning!r}")
    breakpoints = np.asarray(breakpoints, dtype=np.float64)
    if binning == "range" and len(breakpoints) < 3:
        raise NoInformativeFeatures(
            f"Range binning needs at least 3 breakpoints, got {len(breakpoints)}; use a smaller step"
        )
    if not truncated or all(len(df) == 0 for df in truncated.values()):
        raise EmptyFilterResult("No observations survived the window and season filters")

    counter = count_frequencies_range if binning == "range" else count_frequencies_threshold
    tables = []
    # west before east
    for region in sorted(truncated, key=lambda r: r != "west"):
        tables.append(counter(truncated[region], date_col, breakpoints))
    df_frequencies = pd.concat(tables, ignore_index=True)
    logger.info(
        f"Frequency table: {len(df_frequencies)} positions x {df_frequencies.shape[1] - 1} bins ({binning})"
    )
    return df_frequencies
