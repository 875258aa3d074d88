"""
Per-sample size factors and per-gene/per-sample normalization factors.

Median-of-ratios estimator:

1. Per gene, the log geometric mean of counts across samples, using only
   genes with a positive count in every sample.
2. Per sample, the median over those genes of log(count) - log(geometric mean).
3. size factor = exp(median).

Scaling every count of sample j by k scales its size factor by k.
"""

from typing import Any, Dict, Optional
import logging

import numpy as np

logger = logging.getLogger(__name__)


class DegenerateNormalizationError(Exception):
    """Raised when size factors cannot be estimated for the whole analysis."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


def _log_counts(counts: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return np.where(counts > 0, np.log(np.maximum(counts, 1e-300)), np.nan)


def estimate_size_factors(counts: np.ndarray, method: str = "ratio") -> np.ndarray:
    """
    Estimate one positive size factor per sample.

    Args:
        counts: genes × samples array of non-negative counts
        method: "ratio" (standard median-of-ratios; genes with any zero are
            excluded) or "poscounts" (geometric means over positive counts
            only, for data where every gene has at least one zero)

    Returns:
        Array of size factors, one per sample

    Raises:
        DegenerateNormalizationError: If no gene is usable for the chosen method
            or a sample's factor is not positive and finite
    """
    counts = np.asarray(counts, dtype=float)
    if counts.ndim != 2 or counts.shape[1] == 0:
        raise DegenerateNormalizationError(f"Expected a genes × samples matrix, got shape {counts.shape}")

    log_counts = _log_counts(counts)

    if method == "ratio":
        usable = (counts > 0).all(axis=1)
        if not usable.any():
            raise DegenerateNormalizationError(
                "Size factor estimation failed: every gene has a zero count in at least one sample, "
                "so no geometric means can be computed. Suggestion: use method='poscounts'.",
                details={"n_genes": counts.shape[0], "genes_all_positive": 0},
            )
        log_geo_means = log_counts[usable].mean(axis=1)
        ratios = log_counts[usable] - log_geo_means[:, None]
        size_factors = np.exp(np.median(ratios, axis=0))

    elif method == "poscounts":
        n_samples = counts.shape[1]
        sum_log_pos = np.nansum(log_counts, axis=1)
        log_geo_means = sum_log_pos / n_samples
        usable = (counts > 0).any(axis=1)
        if not usable.any():
            raise DegenerateNormalizationError(
                "Size factor estimation failed: all counts are zero.",
                details={"n_genes": counts.shape[0]},
            )
        ratios = log_counts[usable] - log_geo_means[usable, None]
        size_factors = np.exp(np.nanmedian(ratios, axis=0))
        size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))

    else:
        raise ValueError(f"Unknown size factor method: {method}")

    if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise DegenerateNormalizationError(
            f"Size factor estimation produced non-positive or non-finite values: {size_factors}",
            details={"size_factors": size_factors.tolist()},
        )

    logger.info(
        f"Size factors ({method}) from {int(usable.sum())} genes: "
        f"min={size_factors.min():.3f}, max={size_factors.max():.3f}"
    )
    return size_factors


def estimate_normalization_factors(
    counts: np.ndarray, lengths: np.ndarray, method: str = "ratio"
) -> np.ndarray:
    """
    Gene × sample normalization factors from an average transcript length matrix.

    The length matrix is centred per gene by its geometric mean, size factors
    are estimated on the length-corrected counts, and the product is
    re-centred so every gene's factors have geometric mean 1 across samples.

    Args:
        counts: genes × samples counts
        lengths: genes × samples average transcript lengths (positive)
        method: size factor method for the length-corrected counts

    Returns:
        genes × samples array of positive normalization factors
    """
    counts = np.asarray(counts, dtype=float)
    lengths = np.asarray(lengths, dtype=float)
    if lengths.shape != counts.shape:
        raise DegenerateNormalizationError(
            f"Length matrix shape {lengths.shape} does not match counts {counts.shape}"
        )
    if not np.all(np.isfinite(lengths)) or np.any(lengths <= 0):
        raise DegenerateNormalizationError("Length matrix must be positive and finite")

    log_lengths = np.log(lengths)
    norm_matrix = np.exp(log_lengths - log_lengths.mean(axis=1, keepdims=True))

    size_factors = estimate_size_factors(counts / norm_matrix, method=method)
    factors = norm_matrix * size_factors[None, :]
    factors = factors / np.exp(np.log(factors).mean(axis=1, keepdims=True))
    logger.info(f"Normalization factors computed for {counts.shape[0]} genes from transcript lengths")
    return factors
