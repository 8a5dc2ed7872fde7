"""
Selectivity Ratio Estimation

Relates the occurrence frequency of each bin of an environmental variable to
the abundance of an OTU with partial least squares (PLS) regression, and
summarises every bin by its selectivity ratio: the variance of the feature
explained by the fitted model divided by the variance it leaves unexplained.

The estimate is stabilised by repeated subsampling: each fold fits PLS on a
random 80% of the positions (drawn without replacement, folds overlap), drops
the bins that are nearly constant within that subsample, and scatters the
per-bin ratios back into a full-length vector. Ratios are averaged over the
folds, and the sign of the association comes from the PLS regression
coefficients.

Two formulas are available:
 - "target_projection" (default): X is projected on the normalised
   regression-coefficient vector, giving one target-projected component t.
   For feature j, explained = var(t * p_j) and residual = var(x_j - t * p_j).
 - "weights": explained = sum of squared PLS weights of feature j over the
   latent variables, divided by the feature variance.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed
from sklearn.cross_decomposition import PLSRegression

from otu_selectivity.constants import (
    DEFAULT_MAX_COMPONENTS,
    DEFAULT_N_FOLDS,
    DEFAULT_SUBSAMPLE_FRACTION,
    NEAR_ZERO_VARIANCE,
    SR_METHODS,
)
from otu_selectivity.errors import InsufficientSamples
from otu_selectivity.utils import standardize_columns

logger = logging.getLogger(__name__)


@dataclass
class SelectivityEstimate:
    """
    Aggregated result of the subsampling loop.

    Shapes:
       ratio, sign, signed_ratio: (n_features,)
       fold_ratios, fold_signs: (n_folds, n_features), NaN where a feature
       was dropped in that fold
       folds: n_folds arrays of row indices

    `nlv` is the component count resolved once for the subsample size;
    `n_components` holds the count actually fitted in each fold (lower
    when fewer features survive the fold's variance filter).
    """
    ratio: np.ndarray
    sign: np.ndarray
    signed_ratio: np.ndarray
    fold_ratios: np.ndarray
    fold_signs: np.ndarray
    folds: List[np.ndarray]
    nlv: int
    n_components: List[int] = field(default_factory=list)
    feature_names: Optional[List[str]] = None


def standardize_xy(X, y) -> Tuple[np.ndarray, np.ndarray]:
    """Z-score X column-wise and y, on copies (zero std counts as 1, NaN/Inf -> 0)."""
    Xs, _, _ = standardize_columns(np.asarray(X, dtype=np.float64))
    ys, _, _ = standardize_columns(np.asarray(y, dtype=np.float64).ravel())
    return Xs, ys


def resolve_n_components(n_rows: int, n_features: int, n_components: Optional[int] = None) -> int:
    """
    Number of latent variables for a fit on `n_rows` x `n_features`.

    Without an explicit request, up to DEFAULT_MAX_COMPONENTS are used,
    limited to n_rows - 1. An explicit request above n_rows - 1 is an
    error, never reduced. Both are limited to the feature count, with a
    warning when an explicit request is lowered.
    """
    if n_components is None:
        nlv = min(DEFAULT_MAX_COMPONENTS, n_rows - 1)
        if nlv < 1:
            raise InsufficientSamples(
                f"Not enough samples for PLS (nlv = {nlv}): a fit needs at least 2 rows, got {n_rows}. "
                "Increase subsample_fraction or provide more positions."
            )
    else:
        if n_components > n_rows - 1:
            raise InsufficientSamples(
                f"n_components = {n_components} requires at least {n_components + 1} rows per fit, "
                f"got {n_rows}. Lower n_components or increase subsample_fraction."
            )
        nlv = n_components
        if nlv > n_features:
            logger.warning(f"n_components = {n_components} reduced to {max(n_features, 1)}, the number of features")
    return max(1, min(nlv, n_features))


def fit_pls(X: np.ndarray, y: np.ndarray, n_components: int) -> PLSRegression:
    pls = PLSRegression(n_components=n_components, scale=True)
    pls.fit(X, y)
    return pls


def _coefficients(pls: PLSRegression) -> np.ndarray:
    # coef_ is (n_targets, n_features) in recent scikit-learn, transposed before
    return np.ravel(pls.coef_)


def selectivity_ratio(
    pls: PLSRegression,
    X: np.ndarray,
    method: str = "target_projection",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-feature selectivity ratio and coefficient sign of a fitted model.

    Args:
        pls: PLS model fitted on X.
        X: The (n_rows, n_features) matrix the model was fitted on.
        method: "target_projection" or "weights".

    Returns:
        (ratio, sign), both of shape (n_features,).
    """
    coef = _coefficients(pls)
    sign = np.sign(coef)

    if method == "weights":
        W = pls.x_weights_
        explained = np.sum(W ** 2, axis=1)
        feature_variance = np.var(X, axis=0, ddof=1)
        feature_variance[feature_variance == 0] = 1.0
        return explained / feature_variance, sign

    if method != "target_projection":
        raise ValueError(f"method must be one of {SR_METHODS}, got {method!r}")

    Xc = X - X.mean(axis=0)
    norm = np.linalg.norm(coef)
    if norm == 0 or not np.isfinite(norm):
        return np.zeros(X.shape[1]), sign
    t = Xc @ (coef / norm)
    tt = float(t @ t)
    if tt == 0:
        return np.zeros(X.shape[1]), sign
    p = Xc.T @ t / tt
    explained_part = np.outer(t, p)
    explained = np.var(explained_part, axis=0, ddof=1)
    residual = np.var(Xc - explained_part, axis=0, ddof=1)
    residual[residual == 0] = 1.0
    return explained / residual, sign


def draw_subsamples(
    n_rows: int,
    n_folds: int,
    subsample_fraction: float,
    rng: np.random.Generator,
) -> List[np.ndarray]:
    """Row indices of each fold: round(fraction * n_rows) rows without replacement."""
    subset_size = int(round(subsample_fraction * n_rows))
    subset_size = min(max(subset_size, 1), n_rows)
    return [np.sort(rng.choice(n_rows, size=subset_size, replace=False)) for _ in range(n_folds)]


def _fit_fold(X: np.ndarray, y: np.ndarray, rows: np.ndarray, nlv: int, method: str):
    """Ratio and sign of one subsample, NaN for the features constant within it."""
    X_fold = X[rows]
    y_fold = y[rows]
    n_features = X.shape[1]

    variances = np.var(X_fold, axis=0, ddof=1) if len(rows) > 1 else np.zeros(n_features)
    keep = variances > NEAR_ZERO_VARIANCE

    ratio_full = np.full(n_features, np.nan)
    sign_full = np.full(n_features, np.nan)

    fold_nlv = max(1, min(nlv, int(keep.sum())))
    if not keep.any():
        return ratio_full, sign_full, fold_nlv

    X_sel = X_fold[:, keep]
    pls = fit_pls(X_sel, y_fold, fold_nlv)
    ratio, sign = selectivity_ratio(pls, X_sel, method)

    ratio_full[keep] = ratio
    sign_full[keep] = sign
    return ratio_full, sign_full, fold_nlv


def fold_mean_ratio(X: np.ndarray, y: np.ndarray, folds: Sequence[np.ndarray], nlv: int, method: str) -> np.ndarray:
    """Unsigned ratio averaged over the given folds, fitted one after the other."""
    fold_ratios = np.vstack([_fit_fold(X, y, rows, nlv, method)[0] for rows in folds])
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)  # all-NaN columns
        return np.nanmean(fold_ratios, axis=0)


def aggregate_folds(fold_ratios: np.ndarray, fold_signs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """NaN-ignoring mean ratio per feature and the sign of the mean fold sign."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)  # all-NaN columns
        ratio = np.nanmean(fold_ratios, axis=0)
        sign = np.sign(np.nanmean(fold_signs, axis=0))
    return ratio, sign


def estimate(
    X,
    y,
    n_folds: int = DEFAULT_N_FOLDS,
    subsample_fraction: float = DEFAULT_SUBSAMPLE_FRACTION,
    n_components: Optional[int] = None,
    method: str = "target_projection",
    random_state: Optional[int] = None,
    n_jobs: int = 1,
    feature_names: Optional[Sequence[str]] = None,
) -> SelectivityEstimate:
    """
    Selectivity ratio of every feature, averaged over random subsamples.

    Parameters:
        X: (n_rows, n_features) feature matrix (frequency counts).
        y: (n_rows,) abundance values.
        n_folds: Number of random subsamples.
        subsample_fraction: Share of rows drawn for each subsample.
        n_components: Latent variables per fit (None: up to 3).
        method: "target_projection" or "weights".
        random_state: Seed of the subsample draws.
        n_jobs: Parallel folds (joblib); results are identical for any value.
        feature_names: Optional labels carried into the result.

    Returns:
        SelectivityEstimate with per-fold and aggregated values.
    """
    if method not in SR_METHODS:
        raise ValueError(f"method must be one of {SR_METHODS}, got {method!r}")
    Xs, ys = standardize_xy(X, y)
    n_rows, n_features = Xs.shape

    rng = np.random.default_rng(random_state)
    folds = draw_subsamples(n_rows, n_folds, subsample_fraction, rng)
    # one count for every fold, resolved before any fit
    nlv = resolve_n_components(len(folds[0]), n_features, n_components)

    outputs = Parallel(n_jobs=n_jobs)(
        delayed(_fit_fold)(Xs, ys, rows, nlv, method) for rows in folds
    )

    fold_ratios = np.full((n_folds, n_features), np.nan)
    fold_signs = np.full((n_folds, n_features), np.nan)
    nlvs = []
    for i, (ratio_full, sign_full, fold_nlv) in enumerate(outputs):
        fold_ratios[i] = ratio_full
        fold_signs[i] = sign_full
        nlvs.append(fold_nlv)
        kept = int(np.isfinite(ratio_full).sum())
        logger.info(f"Remaining features after selection for fold {i + 1}: {kept}")
        if kept == 0:
            logger.warning(f"Fold {i + 1}: every feature is constant within the subsample")

    if n_components is not None and min(nlvs) < nlv:
        logger.warning(
            f"n_components = {nlv} reduced to the retained feature count in "
            f"{sum(v < nlv for v in nlvs)} of {n_folds} fold(s)"
        )
    logger.info(f"Number of NaN values in the selectivity ratios matrix: {int(np.isnan(fold_ratios).sum())}")
    ratio, sign = aggregate_folds(fold_ratios, fold_signs)

    return SelectivityEstimate(
        ratio=ratio,
        sign=sign,
        signed_ratio=sign * ratio,
        fold_ratios=fold_ratios,
        fold_signs=fold_signs,
        folds=folds,
        nlv=nlv,
        n_components=nlvs,
        feature_names=list(feature_names) if feature_names is not None else None,
    )
