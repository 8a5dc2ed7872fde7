#!/usr/bin/env python3
"""
Selectivity ratio of OTUs along environmental gradients.

Runs the full pipeline (window, bin, join, PLS subsampling, permutation test,
smoothing) for every combination of OTU and environmental variable, and
writes the frequency tables, one result table per run, the merged results
per variable and the profile plots.

Example:
    python -m otu_selectivity.training.run_selectivity_ratio \
        --env_files AT=data/AT.csv ST=data/ST.csv SM=data/SM.csv \
        --otu_file data/otus.csv --sampling_east "15.07.2021 12:00" \
        --sampling_west "16.07.2021 12:00" --span 720 --season summer
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, replace
from itertools import product
from pathlib import Path
from typing import Dict, List, Optional, Union

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from tabulate import tabulate
from tqdm import tqdm

from otu_selectivity.analysis.random_forest_importance import random_forest_importance
from otu_selectivity.constants import (
    BINNING_POLICIES,
    DEFAULT_DATE_COL,
    DEFAULT_ID_COL,
    DEFAULT_N_FOLDS,
    DEFAULT_N_PERMUTATIONS,
    DEFAULT_SIGNIFICANCE,
    DEFAULT_SMOOTHING_SPAN,
    DEFAULT_SUBSAMPLE_FRACTION,
    ENV_VARIABLES,
    RF_GROUPINGS,
    SEASONS,
    SR_METHODS,
    SelectivityConfig,
)
from otu_selectivity.dataset_creation.assemble import JoinedSample, prepare_data
from otu_selectivity.dataset_creation.load_data import load_environmental_data, read_csv
from otu_selectivity.errors import SelectivityError
from otu_selectivity.postprocessing.compose import compose
from otu_selectivity.reporting.process_results import LAYOUTS, process_results, write_results
from otu_selectivity.training.permutation_test import PermutationResult, permutation_p_values
from otu_selectivity.training.selectivity_ratio import SelectivityEstimate, estimate
from otu_selectivity.utils import setup_logging
from otu_selectivity.visualization.plot_selectivity_ratio import plot_feature_importance, plot_selectivity_ratio

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = 'results/selectivity_ratio'


@dataclass
class RunResult:
    otu_id: str
    env_var: str
    result: pd.DataFrame
    estimate: SelectivityEstimate
    permutation: PermutationResult
    sample: JoinedSample


def get_selectivity_ratio(
    df_env: pd.DataFrame,
    df_otu: pd.DataFrame,
    otu_id: str,
    config: SelectivityConfig,
    cdna: bool = False,
    output_dir: Optional[Union[str, Path]] = None,
    progress: bool = False,
) -> RunResult:
    """
    Selectivity-ratio profile of one OTU along one environmental variable.

    Parameters:
        df_env: Long environmental table (datetime, positions, env_var).
        df_otu: OTU table (identifier column + one column per position).
        otu_id: OTU to analyse.
        config: Run parameters.
        cdna: Marks cDNA data in output file names.
        output_dir: If given, the frequency table is written there.
        progress: Show a progress bar over permutation batches.

    Returns:
        RunResult whose `result` holds the composed table.
    """
    started = time.time()
    logger.info(f"Selectivity ratio for OTU {otu_id}, {config.env_var}, span {config.span} h, season {config.season}")

    sample = prepare_data(
        df_env, df_otu, otu_id, config.env_var, config.sampling_dates, config.span, config.step,
        date_col=config.date_col,
        id_col=config.id_col,
        start_date=config.start_date,
        end_date=config.end_date,
        season=config.season,
        binning=config.binning,
        normalize=config.normalize,
        regions=config.regions,
        cdna=cdna,
        output_dir=output_dir,
    )
    X = sample.X.to_numpy(dtype=np.float64)
    logger.info(f"Model input: {X.shape[0]} positions x {X.shape[1]} bins")

    sr = estimate(
        X, sample.y,
        n_folds=config.n_folds,
        subsample_fraction=config.subsample_fraction,
        n_components=config.n_components,
        method=config.method,
        random_state=config.random_state,
        n_jobs=config.n_jobs,
        feature_names=sample.feature_names,
    )
    perm = permutation_p_values(
        X, sample.y, sr.ratio,
        n_permutations=config.n_permutations,
        n_components=sr.nlv,
        method=config.method,
        random_state=config.random_state,
        n_jobs=config.n_jobs,
        max_seconds=config.max_seconds,
        progress=progress,
        folds=sr.folds,
    )
    result = compose(sr.signed_ratio, perm.p_values, sample.feature_names, config.smoothing_span, config.alpha)

    logger.info(
        f"OTU {otu_id} / {config.env_var}: {int(result['significance'].sum())} significant bin(s) "
        f"out of {len(result)} ({time.time() - started:.1f}s)"
    )
    return RunResult(otu_id=otu_id, env_var=config.env_var, result=result, estimate=sr, permutation=perm, sample=sample)


def summarize_run(run: RunResult) -> Dict[str, object]:
    """One summary row: significant bins and the bin with the largest |ratio|."""
    result = run.result
    finite = result[np.isfinite(result["sel_ratio"])]
    row = {
        "OTU": run.otu_id,
        "variable": run.env_var,
        "bins": len(result),
        "significant": int(result["significance"].sum()),
        "strongest_x": np.nan,
        "sel_ratio": np.nan,
        "p_val": np.nan,
    }
    if len(finite):
        best = finite.loc[finite["sel_ratio"].abs().idxmax()]
        row.update({"strongest_x": best["x"], "sel_ratio": round(float(best["sel_ratio"]), 3), "p_val": best["p_val"]})
    return row


def result_filename(env_var: str, otu_id: str, span, season: str, cdna: bool = False) -> str:
    cdna_indicator = "c" if cdna else ""
    return f"{env_var}_{otu_id}{cdna_indicator}_{span}_{season}_selectivity_ratio.csv"


def _parse_env_files(items: List[str]) -> Dict[str, str]:
    paths = {}
    for item in items:
        if "=" not in item:
            raise argparse.ArgumentTypeError(f"Expected VAR=PATH, got '{item}'")
        env_var, path = item.split("=", 1)
        paths[env_var.strip()] = path.strip()
    return paths


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Selectivity ratio of OTUs along environmental gradients (PLS + permutation test).')
    parser.add_argument('--env_files', nargs='+', required=True,
                        help='Environmental CSV files as VAR=PATH (VAR in AT, ST, SM).')
    parser.add_argument('--otu_file', type=str, required=True,
                        help='OTU table CSV (identifier column + one column per position).')
    parser.add_argument('--otu_ids', type=str, default=None,
                        help='Comma-separated OTU ids (default: every id of the OTU table).')
    parser.add_argument('--env_vars', type=str, default=",".join(ENV_VARIABLES),
                        help='Comma-separated environmental variables to analyse.')
    parser.add_argument('--sampling_east', type=str, required=True,
                        help='Sampling date of the eastern positions (dd.mm.yyyy HH:MM).')
    parser.add_argument('--sampling_west', type=str, required=True,
                        help='Sampling date of the western positions (dd.mm.yyyy HH:MM).')
    parser.add_argument('--span', type=int, default=720, help='Hours before the sampling date (default: 720).')
    parser.add_argument('--step', type=float, default=1.0, help='Bin width in units of the variable (default: 1.0).')
    parser.add_argument('--season', choices=SEASONS, default='all')
    parser.add_argument('--start_date', type=str, default=None, help='Explicit window start (overrides --span).')
    parser.add_argument('--end_date', type=str, default=None, help='Explicit window end (not after the sampling date).')
    parser.add_argument('--binning', choices=BINNING_POLICIES, default='range')
    parser.add_argument('--n_folds', type=int, default=DEFAULT_N_FOLDS)
    parser.add_argument('--n_permutations', type=int, default=DEFAULT_N_PERMUTATIONS)
    parser.add_argument('--subsample_fraction', type=float, default=DEFAULT_SUBSAMPLE_FRACTION)
    parser.add_argument('--n_components', type=int, default=None,
                        help='PLS latent variables (default: up to 3, limited by the subsample size).')
    parser.add_argument('--method', choices=SR_METHODS, default='target_projection')
    parser.add_argument('--smoothing_span', type=float, default=DEFAULT_SMOOTHING_SPAN)
    parser.add_argument('--alpha', type=float, default=DEFAULT_SIGNIFICANCE, help='Significance threshold.')
    parser.add_argument('--no_normalize', action='store_true', help='Do not z-score the OTU table.')
    parser.add_argument('--n_jobs', type=int, default=1)
    parser.add_argument('--max_seconds', type=float, default=None, help='Time budget of each permutation test.')
    parser.add_argument('--seed', type=int, default=42)
    parser.add_argument('--date_col', type=str, default=DEFAULT_DATE_COL)
    parser.add_argument('--id_col', type=str, default=DEFAULT_ID_COL)
    parser.add_argument('--cdna', action='store_true', help='Input is cDNA data (adds a "c" to file names).')
    parser.add_argument('--layout', choices=LAYOUTS, default='horizontal', help='Layout of the merged results.')
    parser.add_argument('--save_pdf', action='store_true')
    parser.add_argument('--save_png', action='store_true')
    parser.add_argument('--random_forest', choices=RF_GROUPINGS, default=None,
                        help='Also rank AT/ST/SM means by random forest importance, grouped by month, year or all.')
    parser.add_argument('--output_dir', type=str, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument('--log_file', type=str, default='run_selectivity_ratio.log')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    with open(output_dir / 'run_config.json', 'w') as f:
        json.dump(vars(args), f, indent=2)
    logger.info(f"Output directory: {output_dir}")

    env_vars = [v.strip() for v in args.env_vars.split(",") if v.strip()]
    base_config = SelectivityConfig(
        env_var=env_vars[0],
        sampling_dates={"east": args.sampling_east, "west": args.sampling_west},
        span=args.span,
        step=args.step,
        season=args.season,
        start_date=args.start_date,
        end_date=args.end_date,
        binning=args.binning,
        n_folds=args.n_folds,
        n_permutations=args.n_permutations,
        subsample_fraction=args.subsample_fraction,
        n_components=args.n_components,
        method=args.method,
        smoothing_span=args.smoothing_span,
        alpha=args.alpha,
        normalize=not args.no_normalize,
        n_jobs=args.n_jobs,
        max_seconds=args.max_seconds,
        random_state=args.seed,
        date_col=args.date_col,
        id_col=args.id_col,
    )

    df_env = load_environmental_data(_parse_env_files(args.env_files))
    logger.info(f"Loading OTU table from {args.otu_file}...")
    df_otu = read_csv(args.otu_file)
    if args.otu_ids:
        otu_ids = [o.strip() for o in args.otu_ids.split(",") if o.strip()]
    else:
        otu_ids = df_otu[args.id_col].astype(str).tolist()
    logger.info(f"{len(otu_ids)} OTU(s) x {len(env_vars)} variable(s)")

    results_by_env: Dict[str, Dict[str, pd.DataFrame]] = {env_var: {} for env_var in env_vars}
    summary_rows = []
    failures = []
    for otu_id, env_var in tqdm(list(product(otu_ids, env_vars)), desc="Runs"):
        config = replace(base_config, env_var=env_var)
        try:
            run = get_selectivity_ratio(df_env, df_otu, otu_id, config, args.cdna, output_dir / 'frequencies')
        except SelectivityError as e:
            logger.error(f"OTU {otu_id} / {env_var} failed: {e}")
            failures.append((otu_id, env_var))
            continue

        results_by_env[env_var][otu_id] = run.result
        path = output_dir / 'results' / result_filename(env_var, otu_id, args.span, args.season, args.cdna)
        path.parent.mkdir(parents=True, exist_ok=True)
        run.result.to_csv(path, index=False)

        if args.save_pdf or args.save_png:
            fig = plot_selectivity_ratio(
                run.result, otu_id, args.span, env_var, args.season, args.cdna,
                save_pdf=args.save_pdf, save_png=args.save_png, output_dir=output_dir / 'plots',
            )
            plt.close(fig)
        summary_rows.append(summarize_run(run))

    for env_var, results in results_by_env.items():
        if results:
            merged = process_results(results, layout=args.layout, id_col=args.id_col)
            write_results(merged, output_dir, env_var, args.span, args.season)

    if args.random_forest:
        importances = []
        for otu_id in tqdm(otu_ids, desc="Random forest"):
            try:
                importance = random_forest_importance(
                    df_env, df_otu, otu_id, base_config.sampling_dates, args.span,
                    date_col=args.date_col, id_col=args.id_col,
                    start_date=args.start_date, end_date=args.end_date,
                    season=args.season, group_by=args.random_forest,
                    normalize=not args.no_normalize, random_state=args.seed,
                )
            except SelectivityError as e:
                logger.error(f"Random forest for OTU {otu_id} failed: {e}")
                failures.append((otu_id, "random_forest"))
                continue
            importances.append(importance)
            if args.save_pdf or args.save_png:
                fig = plot_feature_importance(
                    importance, otu_id, args.span, args.season,
                    save_pdf=args.save_pdf, save_png=args.save_png, output_dir=output_dir / 'plots',
                )
                plt.close(fig)
        if importances:
            rf_path = output_dir / f"random_forest_importance_{args.random_forest}_{args.span}_{args.season}.csv"
            pd.concat(importances, ignore_index=True).to_csv(rf_path, index=False)
            logger.info(f"Saved random forest importances to {rf_path}")

    if summary_rows:
        logger.info("\n" + tabulate(pd.DataFrame(summary_rows), headers='keys', tablefmt='psql', showindex=False))
    if failures:
        logger.error(f"{len(failures)} run(s) failed: {failures}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
