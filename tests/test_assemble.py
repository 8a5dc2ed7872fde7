# test_assemble.py
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent))
sys.path.append(str(Path(__file__).parent))
from otu_selectivity.constants import DEFAULT_DATE_COL, DEFAULT_ID_COL, POSITION_COL
from otu_selectivity.dataset_creation.assemble import (
    assemble,
    frequencies_filename,
    normalize_otu_data,
    prepare_data,
    select_otu_row,
)
from otu_selectivity.errors import (
    AmbiguousIdentifier,
    NoInformativeFeatures,
    ShapeMismatch,
    UnknownEnvironmentalVariable,
    UnknownIdentifier,
)
from synthetic_data import make_field_data, with_env_var


def _frequencies():
    return pd.DataFrame({
        "1": [3, 1, 4, 1],
        "2": [5, 5, 5, 5],
        "3": [2, 7, 1, 8],
        POSITION_COL: ["W1", "W2", "E1", "E2"],
    })


def _otu_table():
    return pd.DataFrame({
        DEFAULT_ID_COL: ["otu_a", "otu_b", "otu_c"],
        "E1": [1.0, 2.0, 3.0],
        "E2": [2.0, 2.0, 2.0],
        "W1": [0.5, 1.5, 2.5],
        "W2": [4.0, 0.0, 2.0],
    })


def test_normalize_otu_data_leaves_identifier_untouched():
    df = _otu_table()
    out = normalize_otu_data(df, DEFAULT_ID_COL)
    assert out[DEFAULT_ID_COL].tolist() == ["otu_a", "otu_b", "otu_c"]
    np.testing.assert_allclose(out["E1"], [-1.0, 0.0, 1.0])
    np.testing.assert_allclose(out["E2"], [0.0, 0.0, 0.0])  # constant column divided by 1
    assert df["E1"].tolist() == [1.0, 2.0, 3.0]


def test_select_otu_row_errors():
    df = _otu_table()
    with pytest.raises(UnknownIdentifier, match="otu_z"):
        select_otu_row(df, "otu_z", DEFAULT_ID_COL)
    with pytest.raises(UnknownIdentifier):
        select_otu_row(df, "otu_a", "taxon")
    duplicated = pd.concat([df, df.iloc[[0]]], ignore_index=True)
    with pytest.raises(AmbiguousIdentifier):
        select_otu_row(duplicated, "otu_a", DEFAULT_ID_COL)


def test_assemble_joins_on_position_name():
    sample = assemble(_frequencies(), _otu_table(), "otu_b", DEFAULT_ID_COL, normalize=False)
    assert sample.positions == ["W1", "W2", "E1", "E2"]
    np.testing.assert_allclose(sample.y, [1.5, 0.0, 2.0, 2.0])
    # column "2" is constant
    assert sample.feature_names == ["1", "3"]
    assert "2" in sample.table.columns


def test_assemble_drops_incomplete_rows():
    freqs = _frequencies()
    otus = _otu_table()
    otus.loc[1, "W2"] = np.nan
    sample = assemble(freqs, otus, "otu_b", DEFAULT_ID_COL, normalize=False)
    assert "W2" not in sample.positions
    assert len(sample.y) == 3


def test_assemble_shape_mismatch():
    otus = _otu_table().drop(columns=["E2"])
    with pytest.raises(ShapeMismatch):
        assemble(_frequencies(), otus, "otu_a", DEFAULT_ID_COL, normalize=False)


def test_assemble_no_informative_features():
    freqs = _frequencies()
    freqs["1"] = 2
    freqs["3"] = 0
    with pytest.raises(NoInformativeFeatures):
        assemble(freqs, _otu_table(), "otu_a", DEFAULT_ID_COL, normalize=False)


def test_prepare_data_writes_frequency_table(tmp_path):
    df_env, df_otu, sampling, m = make_field_data(n_per_region=4)
    sample = prepare_data(
        with_env_var(df_env, "ST"), df_otu, "signal", "ST",
        {"east": sampling, "west": sampling}, span=240, step=1.0,
        date_col=DEFAULT_DATE_COL, id_col=DEFAULT_ID_COL, normalize=False,
        output_dir=tmp_path,
    )
    written = tmp_path / frequencies_filename("ST", "signal", 240, "all")
    assert written.name == "ST_signal_240_all_frequencies.csv"
    assert written.exists()
    assert len(pd.read_csv(written)) == 8
    # west positions come first
    assert sample.positions[:4] == ["W1", "W2", "W3", "W4"]
    assert set(sample.feature_names) <= {str(i) for i in range(1, 10)}


def test_prepare_data_unknown_variable():
    df_env, df_otu, sampling, _ = make_field_data(n_per_region=2)
    with pytest.raises(UnknownEnvironmentalVariable, match="SM"):
        prepare_data(
            with_env_var(df_env, "AT"), df_otu, "signal", "SM",
            {"east": sampling, "west": sampling}, span=240, step=1.0,
            date_col=DEFAULT_DATE_COL, id_col=DEFAULT_ID_COL,
        )


def test_frequencies_filename_marks_cdna():
    assert frequencies_filename("AT", "otu_1", 720, "summer", cdna=True) == "AT_otu_1c_720_summer_frequencies.csv"
