# test_pipeline.py
"""
End-to-end run on synthetic field data: 1000 hourly values in [0, 10] at 20
positions, a 240 h window before the last timestamp and a unit step. The
abundance of OTU "signal" is linear in the number of hours spent at 4.5,
which the "4" and "5" range buckets count.
"""

import json
import sys
from pathlib import Path

import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent))
sys.path.append(str(Path(__file__).parent))
from otu_selectivity.constants import RESULT_COLUMNS, SelectivityConfig
from otu_selectivity.errors import InsufficientSamples, ShapeMismatch
from otu_selectivity.training.run_selectivity_ratio import get_selectivity_ratio, main, summarize_run
from synthetic_data import make_field_data, with_env_var

INFORMATIVE_BINS = [4.0, 5.0]


def _config(sampling, **overrides):
    params = dict(
        env_var="AT",
        sampling_dates={"east": sampling, "west": sampling},
        span=240,
        step=1.0,
        n_folds=10,
        n_permutations=200,
        n_components=1,
        normalize=False,
        random_state=42,
    )
    params.update(overrides)
    return SelectivityConfig(**params)


@pytest.fixture(scope="module")
def field_data():
    return make_field_data(n_per_region=10)


def test_informative_bins_are_recovered(field_data):
    df_env, df_otu, sampling, _ = field_data
    run = get_selectivity_ratio(with_env_var(df_env), df_otu, "signal", _config(sampling))
    result = run.result.set_index("x")

    assert list(run.result.columns) == RESULT_COLUMNS
    assert run.result["x"].is_monotonic_increasing
    for x in INFORMATIVE_BINS:
        assert result.loc[x, "sel_ratio"] > 0
        assert result.loc[x, "p_val"] < 0.1
        assert result.loc[x, "significance"]

    noise = result.drop(index=INFORMATIVE_BINS)
    assert noise["p_val"].median() > 0.1
    assert result.loc[INFORMATIVE_BINS, "sel_ratio"].min() > noise["sel_ratio"].abs().max()


def test_five_positions_with_default_components():
    # three east and two west positions, subsamples of four rows
    df_env, df_otu, sampling, _ = make_field_data(n_per_region=3, n_west=2)
    run = get_selectivity_ratio(with_env_var(df_env), df_otu, "signal", _config(sampling, n_components=None))
    result = run.result.set_index("x")

    assert run.estimate.nlv == 3
    assert run.permutation.n_components == run.estimate.nlv
    for x in INFORMATIVE_BINS:
        assert result.loc[x, "sel_ratio"] > 0
        assert result.loc[x, "p_val"] < 0.1
        assert result.loc[x, "significance"]

    noise = result.drop(index=INFORMATIVE_BINS)
    assert noise["p_val"].median() > 0.1


def test_null_is_fitted_with_the_components_of_the_estimate():
    df_env, df_otu, sampling, _ = make_field_data(n_per_region=2)
    run = get_selectivity_ratio(
        with_env_var(df_env), df_otu, "signal", _config(sampling, n_components=None, n_permutations=20),
    )
    # subsamples of round(0.8 * 4) = 3 rows support two components
    assert run.estimate.nlv == 2
    assert run.permutation.n_components == run.estimate.nlv
    assert max(run.estimate.n_components) <= run.estimate.nlv


def test_summary_names_the_strongest_bin(field_data):
    df_env, df_otu, sampling, _ = field_data
    run = get_selectivity_ratio(with_env_var(df_env), df_otu, "signal", _config(sampling, n_permutations=50))
    row = summarize_run(run)
    assert row["OTU"] == "signal"
    assert row["strongest_x"] in INFORMATIVE_BINS
    assert row["significant"] >= 2


def test_threshold_binning_runs(field_data):
    df_env, df_otu, sampling, _ = field_data
    run = get_selectivity_ratio(
        with_env_var(df_env), df_otu, "noise", _config(sampling, binning="threshold", n_permutations=20),
    )
    assert run.result["x"].min() >= 0.0
    assert run.permutation.n_completed == 20


def test_too_many_components_fail_the_run(field_data):
    df_env, df_otu, sampling, _ = field_data
    # folds hold 16 of the 20 positions
    with pytest.raises(InsufficientSamples):
        get_selectivity_ratio(with_env_var(df_env), df_otu, "signal", _config(sampling, n_components=16))


def test_short_abundance_row_fails_the_run(field_data):
    df_env, df_otu, sampling, _ = field_data
    with pytest.raises(ShapeMismatch):
        get_selectivity_ratio(with_env_var(df_env), df_otu.drop(columns=["E1"]), "signal", _config(sampling))


def test_invalid_configuration():
    with pytest.raises(ValueError, match="season"):
        _config("01.06.2021 00:00", season="monsoon")
    with pytest.raises(ValueError, match="subsample_fraction"):
        _config("01.06.2021 00:00", subsample_fraction=0.0)
    with pytest.raises(ValueError, match="sampling_dates"):
        SelectivityConfig(env_var="AT", sampling_dates={"east": "01.06.2021 00:00"})


def test_command_line_run(field_data, tmp_path, monkeypatch):
    df_env, df_otu, sampling, _ = field_data
    monkeypatch.chdir(tmp_path)
    df_env.to_csv(tmp_path / "AT.csv", sep=";", decimal=",", index=False)
    df_otu.to_csv(tmp_path / "otus.csv", sep=";", decimal=",", index=False)

    status = main([
        "--env_files", "AT=AT.csv",
        "--otu_file", "otus.csv",
        "--otu_ids", "signal,unknown_otu",
        "--env_vars", "AT",
        "--sampling_east", sampling,
        "--sampling_west", sampling,
        "--span", "240",
        "--n_permutations", "20",
        "--n_components", "1",
        "--no_normalize",
        "--save_png",
        "--output_dir", "out",
    ])

    out = tmp_path / "out"
    assert status == 1  # unknown_otu fails, signal is kept
    assert json.loads((out / "run_config.json").read_text())["span"] == 240
    assert (out / "frequencies" / "AT_signal_240_all_frequencies.csv").exists()
    assert (out / "results" / "AT_signal_240_all_selectivity_ratio.csv").exists()
    assert (out / "plots" / "AT_signal_240_all.png").exists()
    merged = list(out.glob("*_AT_240_all.csv"))
    assert len(merged) == 1
    assert "signal_sel_ratio" in pd.read_csv(merged[0]).columns
    assert (tmp_path / "logs" / "run_selectivity_ratio.log").exists()
