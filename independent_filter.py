"""
Independent filtering of low-information genes before FDR correction.

Genes are filtered on a statistic that is independent of the p-value under
the null (by default the mean of normalized counts). A sweep of quantile
cutoffs is evaluated; at each, the surviving p-values are BH-adjusted and the
rejections at ``alpha`` counted. Filtered-out genes receive NaN adjusted
p-values.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from multiple_testing import benjamini_hochberg

logger = logging.getLogger(__name__)

N_THETA = 50
INDEPENDENCE_MIN_GENES = 20
INDEPENDENCE_ALPHA = 1e-3


class FilteringPreconditionWarning(UserWarning):
    """The filter statistic does not look independent of the null p-values."""


@dataclass(frozen=True, eq=False)
class FilterResult:
    """
    Outcome of independent filtering.

    Attributes:
        padj: Adjusted p-values (NaN for filtered or untested genes)
        threshold: Filter statistic cutoff; genes below it were filtered
        theta: Quantile fraction of the selected cutoff
        num_rejections: Table of theta, cutoff and rejections for every candidate
        provisional: True when the independence check failed
        independence_pvalue: KS p-value of the independence check (NaN if not run)
    """

    padj: np.ndarray = field(repr=False)
    threshold: float
    theta: float
    num_rejections: pd.DataFrame = field(repr=False)
    provisional: bool = False
    independence_pvalue: float = np.nan


def check_independence(
    filter_stat: np.ndarray, pvalues: np.ndarray, threshold: float
) -> float:
    """
    KS test comparing the p-values above 0.5 of filtered and kept genes.

    Null genes dominate p-values above 0.5; when the filter is independent of
    the p-values under the null their distribution does not depend on which
    side of the cutoff a gene falls.

    Returns:
        KS p-value, or NaN when either side has too few genes
    """
    ok = np.isfinite(pvalues) & np.isfinite(filter_stat) & (pvalues > 0.5)
    dropped = ok & (filter_stat < threshold)
    kept = ok & (filter_stat >= threshold)
    if dropped.sum() < INDEPENDENCE_MIN_GENES or kept.sum() < INDEPENDENCE_MIN_GENES:
        return np.nan
    return float(stats.ks_2samp(pvalues[dropped], pvalues[kept]).pvalue)


def independent_filtering(
    filter_stat: np.ndarray,
    pvalues: np.ndarray,
    alpha: float = 0.1,
    theta: Optional[np.ndarray] = None,
    rule: str = "max",
) -> FilterResult:
    """
    Choose the filter cutoff and return BH-adjusted p-values of kept genes.

    Args:
        filter_stat: Per-gene filter statistic (e.g. base mean)
        pvalues: Per-gene raw p-values (NaN = not tested)
        alpha: Target FDR used to count rejections
        theta: Candidate quantile fractions; default 50 values from the
            fraction of zero filter statistics up to 0.95
        rule: "max" selects the cutoff with the most rejections (the first on
            ties); "lowess" selects the first cutoff whose rejections exceed
            the maximum of a lowess fit minus its residual RMSE, and skips
            filtering when no cutoff gives more than 10 rejections

    Returns:
        FilterResult
    """
    filter_stat = np.asarray(filter_stat, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)
    if filter_stat.shape != pvalues.shape:
        raise ValueError("filter_stat and pvalues must have the same length")
    if rule not in ("max", "lowess"):
        raise ValueError(f"Unknown filter rule: {rule}")

    if theta is None:
        lower = float(np.mean(filter_stat == 0))
        upper = 0.95 if lower < 0.95 else 1.0
        theta = np.linspace(lower, upper, N_THETA)
    theta = np.asarray(theta, dtype=float)
    if len(theta) < 2:
        raise ValueError("theta must hold at least two candidate fractions")

    cutoffs = np.quantile(filter_stat, theta)
    padj_matrix = np.full((len(filter_stat), len(cutoffs)), np.nan)
    for k, cutoff in enumerate(cutoffs):
        use = filter_stat >= cutoff
        if use.any():
            padj_matrix[use, k] = benjamini_hochberg(pvalues[use])
    with np.errstate(invalid="ignore"):
        num_rej = np.sum(padj_matrix < alpha, axis=0)

    if rule == "max":
        j = int(np.argmax(num_rej))
    elif num_rej.max() <= 10:
        j = 0
    else:
        fit = lowess(num_rej, theta, frac=1 / 5)
        positive = num_rej > 0
        residual = num_rej[positive] - fit[positive, 1]
        thresh = np.max(fit[:, 1]) - np.sqrt(np.mean(residual ** 2))
        above = np.flatnonzero(num_rej > thresh)
        j = int(above[0]) if len(above) else 0

    threshold = float(cutoffs[j])
    table = pd.DataFrame({"theta": theta, "cutoff": cutoffs, "numRej": num_rej})

    independence_p = check_independence(filter_stat, pvalues, threshold)
    provisional = bool(np.isfinite(independence_p) and independence_p < INDEPENDENCE_ALPHA)
    if provisional:
        message = (
            f"Filter statistic appears dependent on null p-values (KS p={independence_p:.2e}); "
            f"independent filtering results are provisional"
        )
        logger.warning(message)
        warnings.warn(message, FilteringPreconditionWarning, stacklevel=2)

    logger.info(
        f"Independent filtering ({rule}): threshold {threshold:.4g} (theta={theta[j]:.3f}), "
        f"{int(num_rej[j])} rejections at alpha={alpha} vs {int(num_rej[0])} at the lowest cutoff"
    )
    return FilterResult(
        padj=padj_matrix[:, j],
        threshold=threshold,
        theta=float(theta[j]),
        num_rejections=table,
        provisional=provisional,
        independence_pvalue=independence_p,
    )
