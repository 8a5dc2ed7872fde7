"""
Merging of per-OTU result tables and CSV export.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd

from otu_selectivity.constants import DEFAULT_ID_COL

logger = logging.getLogger(__name__)

LAYOUTS = ("vertical", "horizontal")
MERGED_COLUMNS = [
    "sel_ratio", "p_val", "significance",
    "sel_ratio_smooth", "explained_var", "explained_var_smooth",
]


def process_results(results: Dict[str, pd.DataFrame], layout: str = "vertical", id_col: str = DEFAULT_ID_COL) -> pd.DataFrame:
    """
    Combine the result tables of several OTUs.

    Args:
        results: {otu_id: result table from `compose`}.
        layout: "vertical" stacks the tables with an id column;
            "horizontal" outer-joins them on x with "<otu>_<column>" names.

    Returns:
        The merged table, missing cells filled with NaN.
    """
    if layout not in LAYOUTS:
        raise ValueError(f"layout must be one of {LAYOUTS}, got {layout!r}")
    if not results:
        return pd.DataFrame()

    if layout == "vertical":
        frames = []
        for otu_id, result in results.items():
            df = result.copy()
            df[id_col] = otu_id
            frames.append(df)
        return pd.concat(frames, ignore_index=True)

    all_x = np.unique(np.concatenate([r["x"].to_numpy(dtype=np.float64) for r in results.values()]))
    merged = pd.DataFrame({"x": all_x})
    for otu_id, result in results.items():
        part = result[["x"] + [c for c in MERGED_COLUMNS if c in result.columns]].copy()
        part = part.rename(columns={c: f"{otu_id}_{c}" for c in MERGED_COLUMNS})
        merged = merged.merge(part, on="x", how="outer")
    for col in merged.columns:
        if merged[col].dtype == object:
            merged[col] = merged[col].astype(float)
    return merged.sort_values("x").reset_index(drop=True)


def results_filename(env_var: str, span, season: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H_%M")
    return f"{stamp}_{env_var}_{span}_{season}.csv"


def write_results(
    merged: pd.DataFrame,
    output_dir: Union[str, Path],
    env_var: str,
    span,
    season: str,
) -> Path:
    """Write a merged table under a timestamped name and return its path."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / results_filename(env_var, span, season)
    merged.to_csv(path, index=False)
    logger.info(f"Saved results to {path}")
    return path
