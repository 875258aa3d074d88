"""
Negative binomial GLM fitting.

Per gene: log(mu_ij) = x_j · beta_i + log(nf_ij), Var(y_ij) = mu_ij + alpha_i * mu_ij².
Coefficients are fitted by iteratively reweighted least squares with a tiny
ridge penalty, vectorised over each batch of genes. Genes that fail to
converge within the iteration cap get NaN coefficients and are flagged,
never an unconverged numeric value.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import logging

import numpy as np
from scipy import stats

from gene_batches import run_in_batches

logger = logging.getLogger(__name__)

LOG2 = np.log(2.0)


@dataclass(frozen=True, eq=False)
class FitResult:
    """
    Per-gene NB GLM fit. Coefficients are on the natural-log scale.

    Attributes:
        beta: genes × coefficients
        covariance: genes × coefficients × coefficients
        mu: genes × samples fitted means
        hat_diagonals: genes × samples leverages
        log_likelihood: per gene
        converged: per gene; False also for genes that were not fitted
        n_iter: IRLS iterations used per gene
    """

    beta: np.ndarray = field(repr=False)
    covariance: np.ndarray = field(repr=False)
    mu: np.ndarray = field(repr=False)
    hat_diagonals: np.ndarray = field(repr=False)
    log_likelihood: np.ndarray = field(repr=False)
    converged: np.ndarray = field(repr=False)
    n_iter: np.ndarray = field(repr=False)
    coef_names: Tuple[str, ...] = ()

    def __post_init__(self):
        for name in ("beta", "covariance", "mu", "hat_diagonals", "log_likelihood", "converged", "n_iter"):
            arr = np.array(getattr(self, name))
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def standard_errors(self) -> np.ndarray:
        diag = np.diagonal(self.covariance, axis1=1, axis2=2)
        with np.errstate(invalid="ignore"):
            return np.sqrt(diag)

    @property
    def log2_beta(self) -> np.ndarray:
        return self.beta / LOG2

    @property
    def log2_standard_errors(self) -> np.ndarray:
        return self.standard_errors / LOG2

    def contrast(self, vector: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Estimate and standard error of c'beta per gene, on the log2 scale."""
        vector = np.asarray(vector, dtype=float)
        estimate = self.beta @ vector
        variance = np.einsum("p,gpq,q->g", vector, self.covariance, vector)
        with np.errstate(invalid="ignore"):
            se = np.sqrt(np.where(variance >= 0, variance, np.nan))
        return estimate / LOG2, se / LOG2


def nb_log_likelihood(counts: np.ndarray, mu: np.ndarray, dispersions: np.ndarray) -> np.ndarray:
    """Per-gene negative binomial log-likelihood summed over samples."""
    counts = np.asarray(counts, dtype=float)
    size = 1.0 / np.asarray(dispersions, dtype=float)[:, None]
    prob = size / (size + mu)
    return stats.nbinom.logpmf(counts, size, prob).sum(axis=1)


def _irls_batch(
    y: np.ndarray,
    X: np.ndarray,
    nf: np.ndarray,
    alpha: np.ndarray,
    ridge_lambda: float,
    max_iter: int,
    tol: float,
    min_mu: float,
    max_abs_log2_beta: float,
) -> dict:
    n_genes, n_samples = y.shape
    p = X.shape[1]
    ridge = ridge_lambda * np.eye(p)

    # Start from least squares on log normalized counts
    z0 = np.log(y / nf + 0.1)
    beta = np.linalg.lstsq(X, z0.T, rcond=None)[0].T

    converged = np.zeros(n_genes, dtype=bool)
    n_iter = np.zeros(n_genes, dtype=int)
    dev_old = np.full(n_genes, np.inf)

    for it in range(1, max_iter + 1):
        active = ~converged
        mu = np.maximum(nf * np.exp(beta @ X.T), min_mu)
        w = mu / (1.0 + alpha[:, None] * mu)
        z = np.log(mu / nf) + (y - mu) / mu
        xtwx = np.einsum("mp,gm,mq->gpq", X, w, X) + ridge
        xtwz = np.einsum("mp,gm->gp", X, w * z)
        beta_new = np.linalg.solve(xtwx, xtwz[..., None])[..., 0]
        beta = np.where(active[:, None], beta_new, beta)
        n_iter[active] = it

        diverged = np.any(np.abs(beta) / LOG2 > max_abs_log2_beta, axis=1) | ~np.all(np.isfinite(beta), axis=1)
        if diverged.any():
            beta[diverged] = 0.0
        mu_fit = np.maximum(nf * np.exp(beta @ X.T), min_mu)
        dev = -2.0 * nb_log_likelihood(y, mu_fit, alpha)
        change = np.abs(dev - dev_old) / (np.abs(dev) + 0.1)
        newly = active & (change < tol) & ~diverged
        converged |= newly
        dev_old = dev
        failed_now = active & diverged
        if failed_now.any():
            # Pin diverging genes so they stop iterating and are reported as failures
            n_iter[failed_now] = max_iter + 1
            converged |= failed_now
        if converged.all():
            break

    failed = n_iter > max_iter
    failed |= ~converged
    converged = converged & ~failed

    mu_hat = nf * np.exp(beta @ X.T)
    mu_w = np.maximum(mu_hat, min_mu)
    w = mu_w / (1.0 + alpha[:, None] * mu_w)
    xtwx = np.einsum("mp,gm,mq->gpq", X, w, X)
    inv = np.linalg.inv(xtwx + ridge)
    covariance = inv @ xtwx @ inv
    hat = np.einsum("mp,gpq,mq->gm", X, inv, X) * w
    loglik = nb_log_likelihood(y, mu_hat, alpha)

    beta[failed] = np.nan
    covariance[failed] = np.nan
    mu_hat[failed] = np.nan
    hat[failed] = np.nan
    loglik[failed] = np.nan
    return {
        "beta": beta,
        "covariance": covariance,
        "mu": mu_hat,
        "hat": hat,
        "loglik": loglik,
        "converged": converged,
        "n_iter": np.minimum(n_iter, max_iter),
    }


def fit_nb_glm(
    counts: np.ndarray,
    design_matrix: np.ndarray,
    norm_factors: np.ndarray,
    dispersions: np.ndarray,
    coef_names: Tuple[str, ...] = (),
    ridge_lambda: float = 1e-6,
    max_iter: int = 100,
    tol: float = 1e-8,
    min_mu: float = 0.5,
    max_abs_log2_beta: float = 30.0,
    n_workers: int = 1,
    batch_size: int = 2000,
) -> FitResult:
    """
    Fit a negative binomial GLM per gene with fixed dispersion.

    Args:
        counts: genes × samples counts
        design_matrix: samples × coefficients
        norm_factors: genes × samples normalization factors (size factors broadcast)
        dispersions: per-gene dispersion; genes with non-finite dispersion or
            all-zero counts are not fitted
        coef_names: Names of the design columns
        ridge_lambda: Ridge penalty added to X'WX
        max_iter: IRLS iteration cap
        tol: Relative deviance change for convergence
        min_mu: Lower bound on fitted means inside the IRLS weights
        max_abs_log2_beta: |beta| (log2 scale) beyond which a fit is treated as diverged
        n_workers: Worker pool size
        batch_size: Genes per batch

    Returns:
        FitResult with NaN rows for genes that were not fitted or did not converge
    """
    counts = np.asarray(counts, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    nf = np.broadcast_to(np.asarray(norm_factors, dtype=float), counts.shape)
    dispersions = np.asarray(dispersions, dtype=float)
    n_genes, n_samples = counts.shape
    p = X.shape[1]

    fit_mask = np.isfinite(dispersions) & (counts.sum(axis=1) > 0)
    fit_idx = np.flatnonzero(fit_mask)

    def fit_batch(rows: slice) -> dict:
        idx = fit_idx[rows]
        return _irls_batch(
            counts[idx], X, nf[idx], dispersions[idx],
            ridge_lambda, max_iter, tol, min_mu, max_abs_log2_beta,
        )

    beta = np.full((n_genes, p), np.nan)
    covariance = np.full((n_genes, p, p), np.nan)
    mu = np.full((n_genes, n_samples), np.nan)
    hat = np.full((n_genes, n_samples), np.nan)
    loglik = np.full(n_genes, np.nan)
    converged = np.zeros(n_genes, dtype=bool)
    n_iter = np.zeros(n_genes, dtype=int)

    if len(fit_idx):
        parts = run_in_batches(fit_batch, len(fit_idx), n_workers=n_workers, batch_size=batch_size)
        beta[fit_idx] = parts["beta"]
        covariance[fit_idx] = parts["covariance"]
        mu[fit_idx] = parts["mu"]
        hat[fit_idx] = parts["hat"]
        loglik[fit_idx] = parts["loglik"]
        converged[fit_idx] = parts["converged"]
        n_iter[fit_idx] = parts["n_iter"]

    n_failed = int((fit_mask & ~converged).sum())
    if n_failed:
        logger.warning(f"{n_failed} genes did not converge in {max_iter} IRLS iterations; coefficients set to NaN")
    logger.info(f"NB GLM fitted for {len(fit_idx)} of {n_genes} genes ({p} coefficients)")

    return FitResult(
        beta=beta,
        covariance=covariance,
        mu=mu,
        hat_diagonals=hat,
        log_likelihood=loglik,
        converged=converged,
        n_iter=n_iter,
        coef_names=tuple(coef_names),
    )


def cooks_distance(
    counts: np.ndarray, fit: FitResult, dispersions: np.ndarray
) -> np.ndarray:
    """
    Cook's distance per gene and sample.

    cooks_ij = r_ij² / p * h_ij / (1 - h_ij)², with r the Pearson residual
    under variance mu + alpha * mu².
    """
    counts = np.asarray(counts, dtype=float)
    p = fit.beta.shape[1]
    mu = fit.mu
    variance = mu + np.asarray(dispersions, dtype=float)[:, None] * mu ** 2
    hat = fit.hat_diagonals
    with np.errstate(divide="ignore", invalid="ignore"):
        pearson_sq = (counts - mu) ** 2 / variance
        return pearson_sq / p * hat / (1.0 - hat) ** 2


COOKS_MIN_DISP = 0.04


def _trim_for(n: int) -> Tuple[float, float]:
    """Trim proportion and variance scale for a trimmed mean over n samples."""
    if n <= 3.5:
        return 1.0 / 3.0, 2.04
    if n <= 23.5:
        return 0.25, 1.86
    return 0.125, 1.51


def robust_moments_dispersion(
    normalized: np.ndarray, design_matrix: np.ndarray, min_disp: float = COOKS_MIN_DISP
) -> np.ndarray:
    """
    Method-of-moments dispersion from trimmed variances, for Cook's distances.

    A single extreme count inflates the fitted dispersion of its gene and
    with it the Pearson variance, hiding the outlier. Trimmed variances ignore
    the extreme sample. When every design cell has at least 3 samples the
    variance is the largest trimmed within-cell variance, otherwise a trimmed
    variance over all samples.

    Args:
        normalized: genes × samples normalized counts
        design_matrix: samples × coefficients
        min_disp: Lower bound of the estimate

    Returns:
        Per-gene dispersion (NaN for all-zero genes)
    """
    normalized = np.asarray(normalized, dtype=float)
    _, cells, sizes = np.unique(np.asarray(design_matrix), axis=0, return_inverse=True, return_counts=True)
    cells = np.asarray(cells).ravel()

    if (sizes >= 3).all():
        variance = np.zeros(normalized.shape[0])
        for cell, size in enumerate(sizes):
            block = normalized[:, cells == cell]
            trim, scale = _trim_for(int(size))
            centre = stats.trim_mean(block, trim, axis=1)
            cell_var = scale * stats.trim_mean((block - centre[:, None]) ** 2, trim, axis=1)
            variance = np.maximum(variance, cell_var)
    else:
        centre = stats.trim_mean(normalized, 0.125, axis=1)
        variance = 1.51 * stats.trim_mean((normalized - centre[:, None]) ** 2, 0.125, axis=1)

    means = normalized.mean(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        alpha = (variance - means) / means ** 2
    return np.maximum(alpha, min_disp)


def cooks_outliers(
    cooks: np.ndarray,
    design_matrix: np.ndarray,
    replicates_per_sample: np.ndarray,
    quantile: float = 0.99,
    min_replicates: int = 3,
) -> Tuple[np.ndarray, Optional[float]]:
    """
    Flag genes whose maximum Cook's distance exceeds the F(p, m - p) quantile.

    Only samples belonging to a design cell with at least ``min_replicates``
    samples are considered, and only when the design has residual degrees of
    freedom.

    Returns:
        (boolean mask per gene, cutoff or None when the check does not apply)
    """
    n_samples, p = np.asarray(design_matrix).shape
    n_genes = cooks.shape[0]
    if n_samples <= p:
        return np.zeros(n_genes, dtype=bool), None
    eligible = np.asarray(replicates_per_sample) >= min_replicates
    if not eligible.any():
        return np.zeros(n_genes, dtype=bool), None

    cutoff = float(stats.f.ppf(quantile, p, n_samples - p))
    max_cooks = np.nanmax(np.where(np.isfinite(cooks[:, eligible]), cooks[:, eligible], -np.inf), axis=1)
    flagged = max_cooks > cutoff
    logger.info(f"Cook's distance cutoff {cutoff:.3f}: {int(flagged.sum())} genes flagged")
    return flagged, cutoff
