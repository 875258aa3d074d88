"""
Negative binomial dispersion estimation with empirical-Bayes shrinkage.

Three stages, each a barrier for the next:

1. Gene-wise estimates: maximise the Cox-Reid adjusted profile likelihood of
   log(alpha) per gene, mu fixed from a GLM fit at a moments-based start.
2. Trend: dispersion as a function of mean normalized count,
   alpha(mean) = a0 + a1 / mean, fitted with a Gamma-family GLM (identity
   link) that iteratively drops genes far from the curve.
3. Shrinkage: maximum a posteriori estimate with a normal prior on
   log(alpha) centred at the trend. Genes far above the trend keep their
   gene-wise estimate (dispersion outliers).

Per-gene work (stages 1 and 3) runs in gene batches on the worker pool.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple
import logging
import warnings

import numpy as np
import statsmodels.api as sm
from scipy import special, stats
from statsmodels.tools.sm_exceptions import ConvergenceWarning, DomainWarning

from gene_batches import run_in_batches
from nb_glm import fit_nb_glm

logger = logging.getLogger(__name__)

GRID_POINTS = 20
GRID_PASSES = 3
TREND_MAX_ITER = 10


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted mean-dispersion trend. ``kind`` is "parametric" or "mean"."""

    kind: str
    coefficients: Tuple[float, ...]

    def __call__(self, means: np.ndarray) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        if self.kind == "parametric":
            a0, a1 = self.coefficients
            with np.errstate(divide="ignore"):
                return a0 + a1 / means
        return np.full(means.shape, self.coefficients[0])


@dataclass(frozen=True, eq=False)
class DispersionEstimate:
    """
    Dispersion estimates for every gene.

    ``genewise`` is NaN for all-zero genes and when the design leaves no
    residual degrees of freedom; ``final`` is the value used by the GLM.
    """

    base_mean: np.ndarray = field(repr=False)
    genewise: np.ndarray = field(repr=False)
    trend_values: np.ndarray = field(repr=False)
    map: np.ndarray = field(repr=False)
    final: np.ndarray = field(repr=False)
    outlier: np.ndarray = field(repr=False)
    used_for_trend: np.ndarray = field(repr=False)
    trend: DispersionTrend = DispersionTrend("mean", (np.nan,))
    prior_var: float = np.nan
    var_log_disp: float = np.nan

    def __post_init__(self):
        for name in ("base_mean", "genewise", "trend_values", "map", "final", "outlier", "used_for_trend"):
            arr = np.array(getattr(self, name))
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)


def moments_dispersion(normalized: np.ndarray, norm_factors: np.ndarray) -> np.ndarray:
    """Method-of-moments dispersion: (var - xim * mean) / mean²."""
    mean = normalized.mean(axis=1)
    var = normalized.var(axis=1, ddof=1)
    xim = (1.0 / norm_factors).mean(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (var - xim * mean) / mean ** 2


def rough_dispersion(normalized: np.ndarray, design_matrix: np.ndarray) -> np.ndarray:
    """Dispersion from residuals of a linear fit to normalized counts."""
    X = np.asarray(design_matrix, dtype=float)
    n_samples, p = X.shape
    if n_samples <= p:
        return np.full(normalized.shape[0], np.nan)
    coefs = np.linalg.lstsq(X, normalized.T, rcond=None)[0]
    mu = np.maximum((X @ coefs).T, 1.0)
    est = (((normalized - mu) ** 2 - mu) / mu ** 2).sum(axis=1) / (n_samples - p)
    return np.maximum(est, 0.0)


def cox_reid_log_likelihood(
    log_alpha: np.ndarray, counts: np.ndarray, mu: np.ndarray, design_matrix: np.ndarray
) -> np.ndarray:
    """
    Cox-Reid adjusted profile log-likelihood.

    Args:
        log_alpha: genes × K candidate log dispersions
        counts, mu: genes × samples
        design_matrix: samples × coefficients

    Returns:
        genes × K log-likelihood values
    """
    alpha = np.exp(log_alpha)[:, :, None]
    y = counts[:, None, :]
    m = mu[:, None, :]
    size = 1.0 / alpha
    loglik = stats.nbinom.logpmf(y, size, size / (size + m)).sum(axis=2)
    w = m / (1.0 + alpha * m)
    xtwx = np.einsum("sp,gks,sq->gkpq", design_matrix, w, design_matrix)
    _, logdet = np.linalg.slogdet(xtwx)
    return loglik - 0.5 * logdet


def grid_maximize(
    objective: Callable[[np.ndarray], np.ndarray],
    n_genes: int,
    lower: float,
    upper: float,
    n_points: int = GRID_POINTS,
    passes: int = GRID_PASSES,
) -> np.ndarray:
    """
    Maximise a per-gene objective of one scalar by nested grid refinement.

    Each pass evaluates ``n_points`` values around the previous best, spanning
    one previous grid step on either side, so the resolution improves by a
    factor of about n_points / 2 per pass. Always terminates.
    """
    grid = np.tile(np.linspace(lower, upper, n_points), (n_genes, 1))
    step = (upper - lower) / (n_points - 1)
    best = np.full(n_genes, lower)
    for _ in range(passes):
        values = objective(grid)
        values = np.where(np.isfinite(values), values, -np.inf)
        best = grid[np.arange(n_genes), np.argmax(values, axis=1)]
        offsets = np.linspace(-step, step, n_points)
        grid = np.clip(best[:, None] + offsets[None, :], lower, upper)
        step = 2 * step / (n_points - 1)
    return best


def fit_dispersion_trend(base_mean: np.ndarray, genewise: np.ndarray) -> DispersionTrend:
    """
    Fit alpha(mean) = a0 + a1 / mean with a Gamma-family identity-link GLM.

    Genes whose ratio of gene-wise estimate to fitted value falls outside
    (1e-4, 15) are dropped and the fit repeated until the coefficients settle.
    Falls back to a trimmed mean of the gene-wise estimates when the
    parametric fit fails or yields non-positive coefficients.
    """
    means = np.asarray(base_mean, dtype=float)
    disps = np.asarray(genewise, dtype=float)

    coefs = np.array([0.1, 1.0])
    try:
        for iteration in range(1, TREND_MAX_ITER + 1):
            ratio = disps / (coefs[0] + coefs[1] / means)
            keep = (ratio > 1e-4) & (ratio < 15)
            if keep.sum() < 3:
                raise ValueError("too few genes left for the parametric trend")
            exog = np.column_stack([np.ones(int(keep.sum())), 1.0 / means[keep]])
            family = sm.families.Gamma(link=sm.families.links.Identity())
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DomainWarning)
                warnings.simplefilter("ignore", ConvergenceWarning)
                result = sm.GLM(disps[keep], exog, family=family).fit(start_params=coefs)
            new_coefs = np.asarray(result.params, dtype=float)
            if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
                raise ValueError(f"non-positive trend coefficients {new_coefs}")
            settled = np.sum(np.log(new_coefs / coefs) ** 2) < 1e-6
            coefs = new_coefs
            if settled:
                break
        else:
            logger.warning("Parametric dispersion trend did not settle in 10 iterations; using last fit")
        logger.info(f"Parametric dispersion trend: asymptDisp={coefs[0]:.4g}, extraPois={coefs[1]:.4g}")
        return DispersionTrend("parametric", (float(coefs[0]), float(coefs[1])))
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.warning(f"Parametric dispersion trend failed ({e}); falling back to mean trend")
        return DispersionTrend("mean", (float(stats.trim_mean(disps, 0.001)),))


def estimate_dispersions(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    norm_factors: np.ndarray,
    min_disp: float = 1e-8,
    max_disp: Optional[float] = None,
    outlier_sd: float = 2.0,
    min_log_disp_prior_var: float = 0.25,
    glm_kwargs: Optional[dict] = None,
    n_workers: int = 1,
    batch_size: int = 2000,
) -> DispersionEstimate:
    """
    Estimate gene-wise, trended and shrunk dispersions.

    Args:
        counts: genes × samples counts
        design_matrix: samples × coefficients
        norm_factors: genes × samples normalization factors
        min_disp: Lower bound of the dispersion search range
        max_disp: Upper bound (default max(10, n_samples))
        outlier_sd: Genes whose log gene-wise estimate exceeds the trend by more
            than this many SDs of the log residuals keep the gene-wise value
        min_log_disp_prior_var: Floor on the prior variance of log dispersion
        glm_kwargs: Extra arguments for the GLM fit used to obtain mu
        n_workers: Worker pool size
        batch_size: Genes per batch

    Returns:
        DispersionEstimate
    """
    counts = np.asarray(counts, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    nf = np.broadcast_to(np.asarray(norm_factors, dtype=float), counts.shape)
    n_genes, n_samples = counts.shape
    p = X.shape[1]
    residual_df = n_samples - p
    if max_disp is None:
        max_disp = max(10.0, float(n_samples))
    log_lo, log_hi = np.log(min_disp), np.log(max_disp)

    normalized = counts / nf
    base_mean = normalized.mean(axis=1)
    all_zero = (counts == 0).all(axis=1)
    nonzero_idx = np.flatnonzero(~all_zero)

    genewise = np.full(n_genes, np.nan)
    mu = np.full((n_genes, n_samples), np.nan)

    if residual_df > 0 and len(nonzero_idx):
        start = np.fmin(moments_dispersion(normalized, nf), rough_dispersion(normalized, X))
        start = np.clip(np.nan_to_num(start, nan=min_disp), min_disp, max_disp)

        fit = fit_nb_glm(
            counts[nonzero_idx], X, nf[nonzero_idx], start[nonzero_idx],
            n_workers=n_workers, batch_size=batch_size, **(glm_kwargs or {}),
        )
        mu_nz = np.array(fit.mu)
        # Unconverged starting fits fall back to the mean normalized count
        bad = ~np.all(np.isfinite(mu_nz), axis=1)
        mu_nz[bad] = base_mean[nonzero_idx][bad, None] * nf[nonzero_idx][bad]
        mu[nonzero_idx] = np.maximum(mu_nz, 1e-6)

        def genewise_batch(rows: slice) -> dict:
            idx = nonzero_idx[rows]
            best = grid_maximize(
                lambda grid: cox_reid_log_likelihood(grid, counts[idx], mu[idx], X),
                len(idx), log_lo, log_hi,
            )
            return {"log_alpha": best}

        parts = run_in_batches(genewise_batch, len(nonzero_idx), n_workers, batch_size)
        genewise[nonzero_idx] = np.exp(parts["log_alpha"])
        logger.info(f"Gene-wise dispersions estimated for {len(nonzero_idx)} genes")
    elif residual_df <= 0:
        logger.warning(
            f"Design has {p} coefficients for {n_samples} samples: no residual degrees of freedom, "
            f"gene-wise dispersions are not available and the trend is used for every gene"
        )

    # Barrier: the trend needs every gene-wise estimate
    used_for_trend = np.isfinite(genewise) & (genewise >= 100 * min_disp) & (base_mean > 0)
    if used_for_trend.sum() >= 3:
        trend = fit_dispersion_trend(base_mean[used_for_trend], genewise[used_for_trend])
    else:
        fallback = np.nanmean(moments_dispersion(normalized[~all_zero], nf[~all_zero])) if (~all_zero).any() else np.nan
        fallback = float(np.clip(np.nan_to_num(fallback, nan=0.1), min_disp, max_disp))
        logger.warning(
            f"Only {int(used_for_trend.sum())} genes usable for the dispersion trend; "
            f"using constant dispersion {fallback:.4g}"
        )
        trend = DispersionTrend("mean", (fallback,))

    trend_values = np.full(n_genes, np.nan)
    trend_values[~all_zero] = np.clip(trend(base_mean[~all_zero]), min_disp, max_disp)

    map_disp = np.full(n_genes, np.nan)
    outlier = np.zeros(n_genes, dtype=bool)
    prior_var = np.nan
    var_log_disp = np.nan

    if used_for_trend.any() and residual_df > 0:
        residuals = np.log(genewise[used_for_trend]) - np.log(trend_values[used_for_trend])
        var_log_disp = float(stats.median_abs_deviation(residuals, scale="normal") ** 2)
        expected_var = float(special.polygamma(1, residual_df / 2.0))
        prior_var = max(var_log_disp - expected_var, min_log_disp_prior_var)
        logger.info(
            f"Dispersion prior: var(log disp)={var_log_disp:.4f}, expected sampling var={expected_var:.4f}, "
            f"prior var={prior_var:.4f}"
        )

        fit_idx = np.flatnonzero(np.isfinite(genewise))
        log_trend = np.log(trend_values)

        def map_batch(rows: slice) -> dict:
            idx = fit_idx[rows]

            def posterior(grid: np.ndarray) -> np.ndarray:
                prior = -((grid - log_trend[idx, None]) ** 2) / (2.0 * prior_var)
                return cox_reid_log_likelihood(grid, counts[idx], mu[idx], X) + prior

            return {"log_alpha": grid_maximize(posterior, len(idx), log_lo, log_hi)}

        # Barrier: MAP needs the trend and the prior variance
        parts = run_in_batches(map_batch, len(fit_idx), n_workers, batch_size)
        map_disp[fit_idx] = np.exp(parts["log_alpha"])

        with np.errstate(invalid="ignore"):
            outlier = np.log(genewise) > np.log(trend_values) + outlier_sd * np.sqrt(var_log_disp)
        outlier &= np.isfinite(genewise)

    final = np.where(np.isfinite(map_disp), map_disp, trend_values)
    final = np.where(outlier, genewise, final)
    final = np.where(all_zero, np.nan, np.clip(final, min_disp, max_disp))

    logger.info(
        f"Dispersions: {int(np.isfinite(final).sum())} genes, trend={trend.kind}, "
        f"{int(outlier.sum())} dispersion outliers"
    )
    return DispersionEstimate(
        base_mean=base_mean,
        genewise=genewise,
        trend_values=trend_values,
        map=map_disp,
        final=final,
        outlier=outlier,
        used_for_trend=used_for_trend,
        trend=trend,
        prior_var=float(prior_var),
        var_log_disp=float(var_log_disp),
    )
