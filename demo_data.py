"""
Simulated RNA-seq count data with known differential expression.

The layout follows the airway experiment: four cell lines, each with one
untreated and one dexamethasone-treated sample, analysed with the paired
design ``~ cell + dex``.
"""

from typing import Tuple
import pandas as pd
import numpy as np

CELL_LINES = ["N61311", "N052611", "N080611", "N061011"]


def simulate_counts(
    n_genes: int = 20000,
    n_de: int = 500,
    log2_fold_change: float = 2.0,
    cell_lines: Tuple[str, ...] = tuple(CELL_LINES),
    asympt_disp: float = 0.05,
    extra_pois: float = 2.0,
    seed: int = 42,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.Series]:
    """
    Simulate negative binomial counts for a paired treated/untreated design.

    Args:
        n_genes: Number of genes
        n_de: Number of truly differentially expressed genes
        log2_fold_change: Magnitude of the simulated effect; each DE gene gets
            a random sign
        cell_lines: Blocking levels, one treated and one untreated sample each
        asympt_disp: Dispersion at high counts
        extra_pois: Extra-Poisson term of the dispersion trend
            (dispersion = asympt_disp + extra_pois / mean)
        seed: Random seed; the same seed always gives the same data

    Returns:
        Tuple of (counts_df, metadata_df, true_log2_fold_change):
        - counts_df: genes × samples integer counts
        - metadata_df: index=sample names, columns "cell" and "dex"
          ("dex" is categorical with reference level "untrt")
        - true_log2_fold_change: per gene, 0 for null genes
    """
    if not 0 <= n_de <= n_genes:
        raise ValueError(f"n_de must be between 0 and n_genes, got {n_de}")
    rng = np.random.RandomState(seed)

    sample_names = []
    cells = []
    dex = []
    for cell in cell_lines:
        for treatment in ("untrt", "trt"):
            sample_names.append(f"{cell}_{treatment}")
            cells.append(cell)
            dex.append(treatment)
    n_samples = len(sample_names)

    gene_ids = [f"gene_{i:05d}" for i in range(1, n_genes + 1)]

    # Baseline expression on the log2 scale, most genes moderately expressed
    intercept = rng.normal(7.0, 2.0, size=n_genes)
    cell_effect = rng.normal(0.0, 0.5, size=(n_genes, len(cell_lines)))
    true_lfc = np.zeros(n_genes)
    de_idx = rng.choice(n_genes, size=n_de, replace=False)
    true_lfc[de_idx] = log2_fold_change * rng.choice([-1.0, 1.0], size=n_de)

    size_factors = rng.uniform(0.6, 1.6, size=n_samples)

    cell_index = np.array([list(cell_lines).index(c) for c in cells])
    treated = np.array([d == "trt" for d in dex], dtype=float)
    log2_mean = intercept[:, None] + cell_effect[:, cell_index] + true_lfc[:, None] * treated[None, :]
    mean = 2.0 ** log2_mean

    dispersion = asympt_disp + extra_pois / mean.mean(axis=1)
    mu = mean * size_factors[None, :]
    size = 1.0 / dispersion[:, None]
    counts = rng.negative_binomial(size, size / (size + mu))

    counts_df = pd.DataFrame(counts.astype(int), index=gene_ids, columns=sample_names)
    metadata_df = pd.DataFrame(
        {
            "cell": cells,
            "dex": pd.Categorical(dex, categories=["untrt", "trt"]),
        },
        index=sample_names,
    )
    truth = pd.Series(true_lfc, index=gene_ids, name="true_log2FoldChange")
    return counts_df, metadata_df, truth


def get_demo_description() -> str:
    """
    Get markdown description of the simulated dataset.

    Returns:
        Markdown string describing dataset characteristics and design
    """
    description = """# Simulated Paired RNA-seq Dataset

## Experimental Design
- **Samples**: 8 total, 4 cell lines × (untreated, dexamethasone-treated)
- **Covariates**: `cell` (blocking factor), `dex` (`untrt` reference, `trt`)
- **Design**: `~ cell + dex`

## Counts
- Negative binomial with dispersion `0.05 + 2 / mean`
- Per-sample size factors drawn between 0.6 and 1.6
- 500 of 20,000 genes differentially expressed with |log2 fold change| = 2

## Usage
```python
from demo_data import simulate_counts
from de_analysis import DEAnalysisEngine

counts_df, metadata_df, truth = simulate_counts(seed=1)
engine = DEAnalysisEngine()
model = engine.fit_model(counts_df, metadata_df, "~ cell + dex")
result = engine.get_comparison(model, ("dex", "trt", "untrt"))
print(result.results.format_summary())
```
"""
    return description
