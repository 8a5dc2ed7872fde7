"""
Permutation Significance Test

Builds an empirical null distribution of the selectivity ratio of every
feature by shuffling the response and recomputing the statistic exactly as
it was observed: the same subsamples, the same number of latent variables,
the ratios averaged over the subsamples. The p-value of a feature is the
share of trials whose |ratio| reaches the observed |ratio|.

Trials are independent: each one draws its permutation from its own child
seed and writes one row of a buffer sized up front, so the results do not
depend on the number of workers. Trials run in batches; an optional time
budget stops the test at the first batch boundary past the deadline.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from joblib import Parallel, delayed
from tqdm import tqdm

from otu_selectivity.constants import DEFAULT_N_PERMUTATIONS, DEFAULT_PERMUTATION_BATCH, DEFAULT_SIGNIFICANCE
from otu_selectivity.training.selectivity_ratio import (
    fold_mean_ratio,
    resolve_n_components,
    standardize_xy,
)

logger = logging.getLogger(__name__)


@dataclass
class PermutationResult:
    p_values: np.ndarray       # (n_features,)
    null_ratios: np.ndarray    # (n_completed, n_features)
    n_components: int
    n_requested: int

    @property
    def n_completed(self) -> int:
        return self.null_ratios.shape[0]


def _permuted_ratio(
    X: np.ndarray,
    y: np.ndarray,
    seed: np.random.SeedSequence,
    folds: Sequence[np.ndarray],
    nlv: int,
    method: str,
) -> np.ndarray:
    rng = np.random.default_rng(seed)
    permuted_y = rng.permutation(y)
    return fold_mean_ratio(X, permuted_y, folds, nlv, method)


def empirical_p_values(null_ratios: np.ndarray, observed_ratio: np.ndarray) -> np.ndarray:
    """Share of null rows with |ratio| >= |observed|; NaN where observed is NaN."""
    observed = np.abs(np.asarray(observed_ratio, dtype=np.float64))
    if null_ratios.shape[0] == 0:
        return np.full(observed.shape, np.nan)
    with np.errstate(invalid='ignore'):
        exceed = np.abs(null_ratios) >= observed[None, :]
    p_values = exceed.mean(axis=0)
    p_values[~np.isfinite(observed)] = np.nan
    return p_values


def significance(p_values: np.ndarray, alpha: float = DEFAULT_SIGNIFICANCE) -> np.ndarray:
    """True where p < alpha (NaN p-values are never significant)."""
    p_values = np.asarray(p_values, dtype=np.float64)
    with np.errstate(invalid='ignore'):
        return np.where(np.isfinite(p_values), p_values < alpha, False)


def permutation_p_values(
    X,
    y,
    observed_ratio,
    n_permutations: int = DEFAULT_N_PERMUTATIONS,
    n_components: Optional[int] = None,
    method: str = "target_projection",
    random_state: Optional[int] = None,
    n_jobs: int = 1,
    max_seconds: Optional[float] = None,
    batch_size: int = DEFAULT_PERMUTATION_BATCH,
    progress: bool = False,
    folds: Optional[Sequence[np.ndarray]] = None,
) -> PermutationResult:
    """
    Permutation p-value of each feature's selectivity ratio.

    Parameters:
        X: (n_rows, n_features) feature matrix (standardized on a copy here).
        y: (n_rows,) response.
        observed_ratio: Unsigned mean selectivity ratio per feature.
        n_permutations: Number of shuffles of y.
        n_components: Latent variables; pass `SelectivityEstimate.nlv` so
            the null is fitted like the observed ratio (None: up to 3 for
            the subsample size, see resolve_n_components).
        method: Selectivity-ratio formula, same as for the observed ratio.
        random_state: Root seed; trial i always uses child seed i.
        n_jobs: joblib workers.
        max_seconds: Optional time budget.
        batch_size: Trials per joblib dispatch.
        progress: Show a tqdm bar over batches.
        folds: Row subsamples the observed ratio was averaged over
            (`SelectivityEstimate.folds`). Every trial averages over the
            same subsamples. None fits each trial once on all rows.
    """
    Xs, ys = standardize_xy(X, y)
    n_rows, n_features = Xs.shape
    observed_ratio = np.asarray(observed_ratio, dtype=np.float64)
    if observed_ratio.shape != (n_features,):
        raise ValueError(
            f"observed_ratio has shape {observed_ratio.shape}, expected ({n_features},)"
        )
    folds = [np.arange(n_rows)] if folds is None else [np.asarray(rows) for rows in folds]
    nlv = resolve_n_components(min(len(rows) for rows in folds), n_features, n_components)

    seeds = np.random.SeedSequence(random_state).spawn(n_permutations)
    null_ratios = np.full((n_permutations, n_features), np.nan)
    completed = 0
    started = time.monotonic()

    batches = range(0, n_permutations, batch_size)
    with Parallel(n_jobs=n_jobs) as parallel:
        for start in tqdm(batches, desc="Permutations", disable=not progress):
            stop = min(start + batch_size, n_permutations)
            rows = parallel(
                delayed(_permuted_ratio)(Xs, ys, seeds[i], folds, nlv, method) for i in range(start, stop)
            )
            null_ratios[start:stop] = np.vstack(rows)
            completed = stop
            if max_seconds is not None and completed < n_permutations and time.monotonic() - started > max_seconds:
                logger.warning(
                    f"Permutation budget of {max_seconds}s reached after {completed}/{n_permutations} trials; "
                    "p-values use the completed trials only."
                )
                break

    null_ratios = null_ratios[:completed]
    logger.info(f"Permutation test finished: {completed} trials, {len(folds)} subsample(s) each, nlv = {nlv}")
    return PermutationResult(
        p_values=empirical_p_values(null_ratios, observed_ratio),
        null_ratios=null_ratios,
        n_components=nlv,
        n_requested=n_permutations,
    )
