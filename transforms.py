"""
Count transformations for exploratory analysis (PCA, clustering, heatmaps).

These are not used for testing; the GLM works on raw counts.
"""

from typing import Union
import logging

import numpy as np
import pandas as pd

from count_data import CountMatrix
from dispersion import DispersionTrend

logger = logging.getLogger(__name__)


def _as_factor_matrix(factors: np.ndarray, shape) -> np.ndarray:
    factors = np.asarray(factors, dtype=float)
    if factors.ndim == 1:
        factors = np.broadcast_to(factors[None, :], shape)
    if factors.shape != shape:
        raise ValueError(f"Normalization factors of shape {factors.shape} do not match counts {shape}")
    return factors


def normalized_counts(counts: CountMatrix, factors: np.ndarray) -> pd.DataFrame:
    """
    Counts divided by size factors (per sample) or normalization factors
    (genes × samples).

    Returns:
        genes × samples DataFrame
    """
    values = counts.values / _as_factor_matrix(factors, counts.values.shape)
    return pd.DataFrame(values, index=counts.gene_ids, columns=counts.sample_ids)


def log_normalized_counts(counts: CountMatrix, factors: np.ndarray, pseudocount: float = 1.0) -> pd.DataFrame:
    """log2(normalized + pseudocount), genes × samples."""
    return np.log2(normalized_counts(counts, factors) + pseudocount)


def variance_stabilizing_transform(
    counts: CountMatrix, factors: np.ndarray, trend: DispersionTrend
) -> pd.DataFrame:
    """
    Variance stabilizing transformation derived from the dispersion trend.

    For the parametric trend alpha(mu) = a0 + a1/mu the transform is
        log2((1 + a1 + 2 a0 q + 2 sqrt(a0 q (1 + a1 + a0 q))) / (4 a0))
    and for a constant dispersion alpha
        (2 asinh(sqrt(alpha q)) - log(alpha) - log(4)) / log(2)
    where q is the normalized count. Both are approximately log2 for large
    counts.

    Args:
        counts: Raw counts
        factors: Size factors or normalization factors
        trend: Fitted dispersion trend

    Returns:
        genes × samples DataFrame on an approximately log2 scale
    """
    q = normalized_counts(counts, factors).to_numpy()
    if trend.kind == "parametric":
        a0, a1 = trend.coefficients
        values = np.log2(
            (1 + a1 + 2 * a0 * q + 2 * np.sqrt(a0 * q * (1 + a1 + a0 * q))) / (4 * a0)
        )
    else:
        alpha = trend.coefficients[0]
        if not np.isfinite(alpha) or alpha <= 0:
            raise ValueError(f"Cannot build a variance stabilizing transform from dispersion {alpha}")
        values = (2 * np.arcsinh(np.sqrt(alpha * q)) - np.log(alpha) - np.log(4)) / np.log(2)

    logger.info(f"Variance stabilizing transform ({trend.kind} trend) on {counts.n_genes} genes")
    return pd.DataFrame(values, index=counts.gene_ids, columns=counts.sample_ids)


def top_variable_genes(transformed: pd.DataFrame, n_top: int = 500) -> pd.DataFrame:
    """Rows of a genes × samples matrix with the highest variance across samples."""
    variances = transformed.var(axis=1)
    order = variances.sort_values(ascending=False, kind="mergesort").index[:n_top]
    return transformed.loc[order]
