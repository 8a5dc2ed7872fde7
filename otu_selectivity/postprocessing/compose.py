"""
Smoothing of the selectivity-ratio curve and assembly of the result table.
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from otu_selectivity.constants import DEFAULT_SIGNIFICANCE, DEFAULT_SMOOTHING_SPAN, RESULT_COLUMNS
from otu_selectivity.training.permutation_test import significance

logger = logging.getLogger(__name__)

MIN_SMOOTHING_POINTS = 3


def bounded(ratio) -> np.ndarray:
    """ratio / (|ratio| + 1), which maps the ratio into (-1, 1)."""
    ratio = np.asarray(ratio, dtype=np.float64)
    return ratio / (np.abs(ratio) + 1.0)


def smooth(x, y, span: float = DEFAULT_SMOOTHING_SPAN) -> np.ndarray:
    """
    Local linear regression (LOWESS) of y on x, without robustness iterations.

    Non-finite y stay NaN and do not take part in the fit. With fewer than
    three finite points the values are returned unchanged.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    out = np.full_like(y, np.nan)
    finite = np.isfinite(x) & np.isfinite(y)
    n = int(finite.sum())
    if n < MIN_SMOOTHING_POINTS:
        out[finite] = y[finite]
        return out
    frac = max(span, min(1.0, MIN_SMOOTHING_POINTS / n))
    out[finite] = lowess(y[finite], x[finite], frac=frac, it=0, return_sorted=False)
    return out


def compose(
    signed_ratio: Sequence[float],
    p_values: Sequence[float],
    x_grid: Sequence,
    smoothing_span: float = DEFAULT_SMOOTHING_SPAN,
    alpha: float = DEFAULT_SIGNIFICANCE,
) -> pd.DataFrame:
    """
    Result table of one run, ordered by the environmental value x.

    Columns:
        sel_ratio, p_val, significance, x, sel_ratio_smooth,
        explained_var (bounded ratio), explained_var_smooth,
        explained_var_smooth_sig (smoothed bounded ratio on significant rows).
    """
    x = pd.to_numeric(pd.Series(list(x_grid), dtype=object), errors='raise').to_numpy(dtype=np.float64)
    sel_ratio = np.asarray(signed_ratio, dtype=np.float64)
    p_val = np.asarray(p_values, dtype=np.float64)
    if not (len(x) == len(sel_ratio) == len(p_val)):
        raise ValueError(
            f"Length mismatch: {len(sel_ratio)} ratios, {len(p_val)} p-values, {len(x)} x values"
        )

    order = np.argsort(x, kind='stable')
    x, sel_ratio, p_val = x[order], sel_ratio[order], p_val[order]

    is_significant = significance(p_val, alpha)
    explained_var = bounded(sel_ratio)
    explained_var_smooth = smooth(x, explained_var, smoothing_span)

    result = pd.DataFrame({
        "sel_ratio": sel_ratio,
        "p_val": p_val,
        "significance": is_significant.astype(bool),
        "x": x,
        "sel_ratio_smooth": smooth(x, sel_ratio, smoothing_span),
        "explained_var": explained_var,
        "explained_var_smooth": explained_var_smooth,
        "explained_var_smooth_sig": np.where(is_significant, explained_var_smooth, np.nan),
    })
    return result[RESULT_COLUMNS]
