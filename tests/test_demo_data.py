"""Tests for demo dataset module."""
import pytest
import pandas as pd
import numpy as np

from demo_data import CELL_LINES, get_demo_description, simulate_counts


@pytest.fixture(scope="module")
def simulated():
    return simulate_counts(n_genes=300, n_de=30, seed=5)


def test_simulate_counts_shapes(simulated):
    counts_df, metadata_df, truth = simulated
    assert counts_df.shape == (300, 8)
    assert metadata_df.shape == (8, 2)
    assert len(truth) == 300


def test_simulate_counts_design(simulated):
    counts_df, metadata_df, _ = simulated
    assert list(counts_df.columns) == list(metadata_df.index)
    assert set(metadata_df["cell"]) == set(CELL_LINES)
    assert list(metadata_df["dex"].cat.categories) == ["untrt", "trt"]
    assert (metadata_df["dex"] == "trt").sum() == 4


def test_simulate_counts_integer(simulated):
    counts_df, _, _ = simulated
    for col in counts_df.columns:
        assert pd.api.types.is_integer_dtype(counts_df[col])
    assert (counts_df >= 0).all().all()


def test_simulate_counts_truth(simulated):
    _, _, truth = simulated
    assert (truth != 0).sum() == 30
    assert set(np.abs(truth[truth != 0])) == {2.0}


def test_simulate_counts_reproducible():
    a = simulate_counts(n_genes=50, n_de=5, seed=3)
    b = simulate_counts(n_genes=50, n_de=5, seed=3)
    assert a[0].equals(b[0])
    assert a[2].equals(b[2])
    c = simulate_counts(n_genes=50, n_de=5, seed=4)
    assert not a[0].equals(c[0])


def test_simulate_counts_invalid():
    with pytest.raises(ValueError):
        simulate_counts(n_genes=10, n_de=11)


def test_get_demo_description():
    desc = get_demo_description()
    assert isinstance(desc, str)
    assert "~ cell + dex" in desc
