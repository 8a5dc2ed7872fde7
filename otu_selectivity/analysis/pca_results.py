"""
PCA of selectivity-ratio profiles across OTUs.

Each OTU is described by its (bounded) selectivity ratio at every x value of
a horizontal result table; the PCA places OTUs with similar environmental
responses close together.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from otu_selectivity.constants import DEFAULT_ID_COL
from otu_selectivity.utils import format_number, science_style

logger = logging.getLogger(__name__)

N_COMPONENTS = 3


@dataclass
class PCAResult:
    scores: pd.DataFrame                 # one row per OTU, PC1..PCn
    loadings: pd.DataFrame               # one row per component, one column per x value
    explained_variance_ratio: np.ndarray


def profiles_from_horizontal(merged: pd.DataFrame, value: str = "explained_var") -> pd.DataFrame:
    """
    Reshape a horizontal result table to one row per OTU and one column per x.
    Missing cells are set to 0.
    """
    suffix = f"_{value}"
    cols = [c for c in merged.columns if c.endswith(suffix) and not c.endswith(f"{suffix}_smooth")]
    if not cols:
        raise ValueError(f"No '<otu>{suffix}' columns in the merged table")
    profiles = merged.set_index("x")[cols].T
    profiles.index = [c[: -len(suffix)] for c in cols]
    profiles.index.name = DEFAULT_ID_COL
    profiles.columns = [format_number(x) for x in profiles.columns]
    return profiles.fillna(0.0)


def pca_results(profiles: pd.DataFrame, n_components: int = N_COMPONENTS) -> PCAResult:
    """Standardize the profiles and project them on the leading components."""
    n_components = min(n_components, profiles.shape[0], profiles.shape[1])
    if n_components < 1:
        raise ValueError(f"Profiles of shape {profiles.shape} cannot be decomposed")
    scaled = StandardScaler().fit_transform(profiles.to_numpy(dtype=np.float64))
    pca = PCA(n_components=n_components)
    components = pca.fit_transform(scaled)
    names = [f"PC{i + 1}" for i in range(n_components)]

    scores = pd.DataFrame(components, columns=names, index=profiles.index).reset_index()
    loadings = pd.DataFrame(
        pca.components_ * np.sqrt(pca.explained_variance_)[:, None],
        index=names,
        columns=profiles.columns,
    )
    logger.info(
        "PCA explained variance ratio: "
        + ", ".join(f"{n}={r:.3f}" for n, r in zip(names, pca.explained_variance_ratio_))
    )
    return PCAResult(scores=scores, loadings=loadings, explained_variance_ratio=pca.explained_variance_ratio_)


def plot_pca(
    result: PCAResult,
    hue: Optional[pd.Series] = None,
    output_path: Optional[Union[str, Path]] = None,
):
    """Scatter of the first two components, optionally coloured by a grouping (e.g. taxonomic order)."""
    scores = result.scores.copy()
    y_col = "PC2" if "PC2" in scores.columns else "PC1"
    hue_col = None
    if hue is not None:
        scores["group"] = scores[DEFAULT_ID_COL].map(hue)
        hue_col = "group"

    with science_style():
        fig, ax = plt.subplots(figsize=(6, 5))
        sns.scatterplot(data=scores, x="PC1", y=y_col, hue=hue_col, ax=ax, s=40, edgecolor='none')
        for _, row in scores.iterrows():
            ax.annotate(str(row[DEFAULT_ID_COL]), (row["PC1"], row[y_col]), fontsize=6, alpha=0.7)
        ratio = result.explained_variance_ratio
        ax.set_xlabel(f"PC1 ({ratio[0]:.1%})")
        if y_col == "PC2":
            ax.set_ylabel(f"PC2 ({ratio[1]:.1%})")
        fig.tight_layout()

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches='tight')
        logger.info(f"Saved PCA plot to {output_path}")
    return fig
