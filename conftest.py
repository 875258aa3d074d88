"""
Pytest configuration and fixtures for the differential expression engine tests.
"""

from pathlib import Path
import pytest
import pandas as pd
import numpy as np

from analysis_config import AnalysisConfig
from de_analysis import DEAnalysisEngine
from demo_data import simulate_counts


# ============================================================================
# Test Data Directory Fixtures
# ============================================================================


@pytest.fixture
def config_dir():
    """Return path to the shipped configuration directory."""
    return Path(__file__).parent / "config"


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_counts_df():
    """
    Two-group negative binomial count matrix.
    Shape: (200 genes, 6 samples); genes 0-19 are 4x higher in treatment.
    """
    rng = np.random.RandomState(42)
    n_genes = 200
    base = rng.lognormal(mean=5, sigma=1.0, size=n_genes)
    fold = np.ones((n_genes, 6))
    fold[:20, 3:] = 4.0
    mu = base[:, None] * fold
    size = 10.0
    data = rng.negative_binomial(size, size / (size + mu))
    samples = [f"sample_{i + 1}" for i in range(6)]
    genes = [f"gene_{i + 1}" for i in range(n_genes)]
    return pd.DataFrame(data, index=genes, columns=samples)


@pytest.fixture
def sample_metadata_df():
    """
    Sample metadata matching sample_counts_df.
    Shape: (6 samples, columns: sample_id, condition)
    """
    samples = [f"sample_{i + 1}" for i in range(6)]
    conditions = ["control"] * 3 + ["treatment"] * 3
    return pd.DataFrame({"sample_id": samples, "condition": conditions})


@pytest.fixture
def sample_conditions_dict():
    """Sample conditions dictionary for testing."""
    return {f"sample_{i + 1}": "control" if i < 3 else "treatment" for i in range(6)}


@pytest.fixture
def sample_de_results_df():
    """
    Sample differential expression results for testing.
    Contains the engine's result columns, including NaN rows for untested genes.
    """
    rng = np.random.RandomState(42)
    n_genes = 100
    genes = [f"gene_{i + 1}" for i in range(n_genes)]

    df = pd.DataFrame(
        {
            "gene": genes,
            "baseMean": rng.uniform(10, 1000, n_genes),
            "log2FoldChange": rng.normal(0, 2, n_genes),
            "lfcSE": rng.uniform(0.1, 0.5, n_genes),
            "stat": rng.normal(0, 3, n_genes),
            "pvalue": rng.uniform(0, 1, n_genes),
            "padj": rng.uniform(0, 1, n_genes),
        }
    )
    df["log2FoldChangeShrunk"] = df["log2FoldChange"] * 0.8

    # Ensure some significant genes
    df.loc[:10, "padj"] = rng.uniform(0, 0.05, 11)
    df.loc[:10, "log2FoldChange"] = rng.uniform(1.5, 3, 11)
    # All-zero genes at the end
    df.loc[95:, ["baseMean"]] = 0.0
    df.loc[95:, ["log2FoldChange", "log2FoldChangeShrunk", "lfcSE", "stat", "pvalue", "padj"]] = np.nan

    return df


# ============================================================================
# Simulated Experiment Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def paired_simulation():
    """
    Paired 4 + 4 design (4 cell lines × untrt/trt), 2000 genes, 200 DE at |log2FC| = 2,
    plus one all-zero gene.
    """
    counts_df, metadata_df, truth = simulate_counts(n_genes=2000, n_de=200, seed=11)
    counts_df.iloc[0] = 0
    truth.iloc[0] = 0.0
    return counts_df, metadata_df, truth


@pytest.fixture(scope="session")
def paired_model(paired_simulation):
    """Model fitted once on paired_simulation with the design ~ cell + dex."""
    counts_df, metadata_df, _ = paired_simulation
    engine = DEAnalysisEngine(AnalysisConfig())
    return engine.fit_model(counts_df, metadata_df, "~ cell + dex")


@pytest.fixture
def engine():
    return DEAnalysisEngine(AnalysisConfig())
