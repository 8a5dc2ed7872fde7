"""
Plots of selectivity-ratio profiles and random forest feature importances.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from otu_selectivity.constants import (
    ENV_VARIABLE_LABELS,
    GENERIC_ENV_LABEL,
    MAIN_COLOUR,
    PALETTE_SIGNIFICANCE,
)
from otu_selectivity.utils import science_style

logger = logging.getLogger(__name__)

FIGSIZE = (5.5, 5.5)  # 14 x 14 cm


def x_axis_label(env_var: str) -> str:
    if env_var not in ENV_VARIABLE_LABELS:
        logger.warning(
            f"The selected env_var ({env_var}) is invalid. Available values are {list(ENV_VARIABLE_LABELS)}"
        )
        return GENERIC_ENV_LABEL
    return ENV_VARIABLE_LABELS[env_var]


def plot_title(otu_id: str, span, season: str, cdna: bool = False) -> str:
    cdna_indicator = "c" if cdna else ""
    season_title = "" if season == "all" else f", season = {season}"
    return f"{otu_id}{cdna_indicator}, for {span} hours{season_title}"


def _save(fig, output_dir: Union[str, Path], stem: str, save_pdf: bool, save_png: bool) -> None:
    if not (save_pdf or save_png):
        return
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for ext, wanted in (("pdf", save_pdf), ("png", save_png)):
        if wanted:
            path = output_dir / f"{stem}.{ext}"
            fig.savefig(path, dpi=300, bbox_inches='tight')
            logger.info(f"Saved plot to {path}")


def plot_selectivity_ratio(
    result: pd.DataFrame,
    otu_id: str,
    span,
    env_var: str,
    season: str = "all",
    cdna: bool = False,
    save_pdf: bool = False,
    save_png: bool = False,
    output_dir: Union[str, Path] = ".",
):
    """
    Bar chart of the bounded selectivity ratio per bin, coloured by
    significance, with the smoothed curve (grey) and its significant part
    (black).

    Returns:
        The matplotlib Figure.
    """
    df = result[np.isfinite(result["sel_ratio"].to_numpy(dtype=np.float64))]
    x = df["x"].to_numpy(dtype=np.float64)
    width = float(np.min(np.diff(np.unique(x)))) * 0.8 if len(np.unique(x)) > 1 else 0.8

    with science_style():
        fig, ax = plt.subplots(figsize=FIGSIZE)
        colours = [PALETTE_SIGNIFICANCE[bool(s)] for s in df["significance"]]
        ax.bar(x, df["explained_var"], width=width, color=colours, edgecolor='none')
        ax.plot(x, df["explained_var_smooth"], color="grey", linewidth=2)
        ax.plot(x, df["explained_var_smooth_sig"], color="black", linewidth=2)

        handles = [
            plt.Rectangle((0, 0), 1, 1, color=PALETTE_SIGNIFICANCE[False]),
            plt.Rectangle((0, 0), 1, 1, color=PALETTE_SIGNIFICANCE[True]),
        ]
        ax.legend(handles, ["not significant", "significant"], loc="upper right", frameon=False)
        ax.axhline(0, color="black", linewidth=0.5)
        ax.set_ylim(-1.2, 1.2)
        ax.set_xlabel(x_axis_label(env_var))
        ax.set_ylabel("Selectivity Ratio (smoothed and scaled)")
        ax.set_title(plot_title(otu_id, span, season, cdna))
        fig.tight_layout()

    cdna_indicator = "c" if cdna else ""
    _save(fig, output_dir, f"{env_var}_{otu_id}{cdna_indicator}_{span}_{season}", save_pdf, save_png)
    return fig


def plot_feature_importance(
    importance: pd.DataFrame,
    otu_id: str,
    span,
    season: str = "all",
    save_pdf: bool = False,
    save_png: bool = False,
    output_dir: Union[str, Path] = ".",
    hue: Optional[str] = None,
):
    """Bar chart of random forest importances (optionally dodged by `hue`)."""
    df = importance
    if "otu_id" in df.columns:
        df = df[df["otu_id"] == otu_id]

    season_title = "" if season == "all" else f", season = {season}"
    with science_style():
        fig, ax = plt.subplots(figsize=(max(FIGSIZE[0], 0.35 * len(df)), FIGSIZE[1]))
        if hue and hue in df.columns:
            pivot = df.pivot_table(index="feature", columns=hue, values="importance", aggfunc="sum")
            pivot.plot.bar(ax=ax)
        else:
            ax.bar(df["feature"], df["importance"], color=MAIN_COLOUR)
        ax.set_ylim(0, 1)
        ax.set_xlabel("Feature")
        ax.set_ylabel("Importance")
        ax.set_title(f"{otu_id} - Feature importance (Random Forest) for {span} hours{season_title}")
        ax.tick_params(axis='x', labelrotation=90)
        fig.tight_layout()

    _save(fig, output_dir, f"{otu_id}_{span}_{season}_feature_importance", save_pdf, save_png)
    return fig
