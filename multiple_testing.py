"""Benjamini-Hochberg false discovery rate adjustment."""

import numpy as np


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg step-up adjusted p-values.

    NaN p-values are excluded from the correction (they do not count towards
    n) and stay NaN. For the remaining genes, ranked ascending,
    padj_(i) = min over k >= i of p_(k) * n / k, capped at 1, so adjusted
    values never decrease with rank and are never below the raw p-value.

    Args:
        pvalues: Raw p-values in any order

    Returns:
        Adjusted p-values in the input order
    """
    pvalues = np.asarray(pvalues, dtype=float)
    padj = np.full(pvalues.shape, np.nan)
    ok = np.isfinite(pvalues)
    n = int(ok.sum())
    if n == 0:
        return padj

    p = pvalues[ok]
    order = np.argsort(p, kind="mergesort")
    ranks = np.arange(1, n + 1)
    scaled = p[order] * n / ranks
    # Ratchet from the largest rank down
    adjusted = np.minimum.accumulate(scaled[::-1])[::-1]
    adjusted = np.minimum(adjusted, 1.0)

    result = np.empty(n)
    result[order] = adjusted
    padj[ok] = result
    return padj
