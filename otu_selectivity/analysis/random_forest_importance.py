"""
Random forest importance of aggregated environmental conditions.

Side analysis to the selectivity ratios: each variable (AT, ST, SM) is
windowed like the PLS input, averaged per position by month, by year or over
the whole window, and a random forest regressor ranks these means by their
impurity importance for the abundance of one OTU.
"""

import logging
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor

from otu_selectivity.constants import (
    ENV_VARIABLES,
    MONTH_ABBREVIATIONS,
    POSITION_COL,
    RF_GROUPINGS,
    RF_PARAMS,
    VALUES_COL,
)
from otu_selectivity.dataset_creation.assemble import numeric_columns, normalize_otu_data, select_otu_row
from otu_selectivity.dataset_creation.load_data import select_environmental_variable
from otu_selectivity.dataset_creation.windowing import prepare_env_data, tag_positions
from otu_selectivity.errors import NoInformativeFeatures, ShapeMismatch
from otu_selectivity.training.selectivity_ratio import standardize_xy

logger = logging.getLogger(__name__)


def transform_data(
    df_env: pd.DataFrame,
    env_var: str,
    sampling_dates: Dict[str, str],
    span: float,
    date_col: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    group_by: str = "all",
    season: str = "all",
    regions: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Mean of one variable per position and group.

    Returns:
        DataFrame indexed by position with one column per group
        ("Jan".."Dec", years, or "all").
    """
    if group_by not in RF_GROUPINGS:
        raise ValueError(f"group_by must be one of {RF_GROUPINGS}, got {group_by!r}")
    df = select_environmental_variable(df_env, env_var)
    tags = tag_positions(df.columns, date_col, regions)
    truncated = prepare_env_data(df, date_col, sampling_dates, span, start_date, end_date, season, tags)

    frames = []
    for region_df in truncated.values():
        dates = region_df[date_col]
        if group_by == "month":
            group = dates.dt.month
        elif group_by == "year":
            group = dates.dt.year
        else:
            group = pd.Series("all", index=region_df.index)
        means = region_df.drop(columns=[date_col]).groupby(group.values).mean()
        frames.append(means.T)

    transformed = pd.concat(frames, axis=0)
    transformed = transformed[sorted(transformed.columns, key=lambda c: (str(type(c)), c))]
    if group_by == "month":
        transformed.columns = [MONTH_ABBREVIATIONS[int(m)] for m in transformed.columns]
    else:
        transformed.columns = [str(c) for c in transformed.columns]
    transformed.index = [str(i) for i in transformed.index]
    transformed.index.name = POSITION_COL
    return transformed


def random_forest_importance(
    df_env: pd.DataFrame,
    df_otu: pd.DataFrame,
    otu_id: str,
    sampling_dates: Dict[str, str],
    span: float,
    date_col: str,
    id_col: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    season: str = "all",
    group_by: str = "all",
    env_vars: Iterable[str] = ENV_VARIABLES,
    normalize: bool = True,
    regions: Optional[Dict[str, str]] = None,
    random_state: Optional[int] = 42,
) -> pd.DataFrame:
    """
    Impurity importance of every (variable, group) mean for one OTU.

    Returns:
        DataFrame with columns feature, importance, env, variable, otu_id,
        sorted by importance (descending).
    """
    parts = []
    for env_var in env_vars:
        part = transform_data(
            df_env, env_var, sampling_dates, span, date_col,
            start_date, end_date, group_by, season, regions,
        )
        parts.append(part.add_prefix(f"{env_var}_"))
    features = pd.concat(parts, axis=1)

    df_y = normalize_otu_data(df_otu, id_col) if normalize else df_otu.copy()
    row = select_otu_row(df_y, otu_id, id_col)
    numeric_cols = numeric_columns(df_otu, id_col)
    values = row[numeric_cols].to_numpy(dtype=np.float64)
    if len(features) != len(values):
        raise ShapeMismatch(
            f"The OTU table holds {len(values)} numeric values for '{otu_id}', "
            f"but the environmental table has {len(features)} positions"
        )

    abundance = pd.Series(values, index=[str(c) for c in numeric_cols], name=VALUES_COL)
    joined = features.join(abundance, how='inner').dropna()
    if joined.shape[1] < 2 or len(joined) < 2:
        raise NoInformativeFeatures(f"No complete rows left for OTU '{otu_id}' after joining")

    feature_names = [c for c in joined.columns if c != VALUES_COL]
    X, y = standardize_xy(joined[feature_names].to_numpy(), joined[VALUES_COL].to_numpy())

    model = RandomForestRegressor(random_state=random_state, n_jobs=-1, **{
        **RF_PARAMS, "max_features": min(RF_PARAMS["max_features"], len(feature_names)),
    })
    model.fit(X, y)
    logger.info(f"Random forest fitted for {otu_id} on {X.shape[0]} positions x {X.shape[1]} features")

    df_importance = pd.DataFrame({
        "feature": feature_names,
        "importance": model.feature_importances_,
        "env": [f.split("_", 1)[0] for f in feature_names],
        "variable": [f.split("_", 1)[1] for f in feature_names],
        "otu_id": otu_id,
    })
    return df_importance.sort_values("importance", ascending=False).reset_index(drop=True)
