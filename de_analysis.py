"""
Differential expression analysis with a negative binomial GLM.

Implements "fit once, contrast many" model for efficient multi-comparison analysis:
size factors, dispersions, GLM coefficients and Cook's distances are
estimated once by ``fit_model``; every contrast, threshold or alternative
hypothesis is then answered from the stored fit by ``get_comparison``.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd

from analysis_config import AnalysisConfig
from count_data import (
    CountMatrix,
    InputValidationError,
    SampleMetadata,
    validate_alignment,
)
from design import ContrastSpec, DesignError, DesignMatrix, DesignSpecification
from dispersion import DispersionEstimate, estimate_dispersions
from hypothesis_tests import likelihood_ratio_test, wald_test
from independent_filter import FilterResult, independent_filtering
from lfc_shrink import shrink_lfc
from multiple_testing import benjamini_hochberg
from nb_glm import FitResult, cooks_distance, cooks_outliers, fit_nb_glm, robust_moments_dispersion
from results import ResultsTable, assemble_results
from size_factors import (
    DegenerateNormalizationError,
    estimate_normalization_factors,
    estimate_size_factors,
)
from transforms import (
    log_normalized_counts,
    normalized_counts,
    variance_stabilizing_transform,
)

logger = logging.getLogger(__name__)

# Errors that fail a single comparison (or the fit) in run_all_comparisons
ANALYSIS_ERRORS = (
    ValueError,
    RuntimeError,
    TypeError,
    InputValidationError,
    DesignError,
    DegenerateNormalizationError,
)

DesignLike = Union[str, DesignSpecification]


@dataclass(frozen=True, eq=False)
class FittedModel:
    """
    Everything estimated once per dataset and design.

    Attributes:
        counts: Validated genes × samples counts
        metadata: Sample metadata aligned with the count columns
        design: Compiled design matrix
        size_factors: Per-sample size factors (None when normalization
            factors came from a transcript length matrix)
        norm_factors: genes × samples normalization factors
        dispersions: Gene-wise, trend and final dispersions
        fit: GLM fit with the final dispersions
        cooks: genes × samples Cook's distances
        cooks_outlier: Genes exceeding the Cook's cutoff
        cooks_cutoff: The cutoff, or None when the check does not apply
        config: Settings used for the fit and default for contrasts
    """

    counts: CountMatrix
    metadata: SampleMetadata
    design: DesignMatrix
    size_factors: Optional[np.ndarray] = field(repr=False)
    norm_factors: np.ndarray = field(repr=False)
    dispersions: DispersionEstimate = field(repr=False)
    fit: FitResult = field(repr=False)
    cooks: np.ndarray = field(repr=False)
    cooks_outlier: np.ndarray = field(repr=False)
    cooks_cutoff: Optional[float] = None
    config: AnalysisConfig = field(default_factory=AnalysisConfig)

    @property
    def base_mean(self) -> np.ndarray:
        return self.dispersions.base_mean

    @property
    def coef_names(self) -> Tuple[str, ...]:
        return self.design.coef_names

    def normalized_counts(self) -> pd.DataFrame:
        return normalized_counts(self.counts, self.norm_factors)

    def log_normalized_counts(self) -> pd.DataFrame:
        return log_normalized_counts(self.counts, self.norm_factors)

    def vst(self) -> pd.DataFrame:
        return variance_stabilizing_transform(self.counts, self.norm_factors, self.dispersions.trend)


@dataclass(frozen=True, eq=False)
class DEResult:
    """Result from differential expression analysis."""

    results_df: pd.DataFrame  # Columns: see results.RESULT_COLUMNS
    results: Optional[ResultsTable]  # None when the comparison failed
    normalized_counts: Optional[pd.DataFrame]  # genes × samples
    log_normalized_counts: Optional[pd.DataFrame]  # genes × samples, log2(norm+1)
    model: Optional[FittedModel]
    comparison: Union[str, Tuple[str, str]]
    n_significant: int  # Count of genes with padj < alpha
    warnings: List[str]
    filtering: Optional[FilterResult] = None


def _failed_result(comparison, message: str, model: Optional[FittedModel] = None) -> DEResult:
    return DEResult(
        results_df=pd.DataFrame(),  # Empty
        results=None,
        normalized_counts=model.normalized_counts() if model is not None else None,
        log_normalized_counts=model.log_normalized_counts() if model is not None else None,
        model=model,
        comparison=comparison,
        n_significant=0,
        warnings=[message],
    )


class DEAnalysisEngine:
    """Differential expression analysis with a negative binomial GLM."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config if config is not None else AnalysisConfig()

    def fit_model(
        self,
        counts: Union[CountMatrix, pd.DataFrame],
        metadata: Union[SampleMetadata, pd.DataFrame],
        design: DesignLike = "~ condition",
        lengths: Optional[Union[np.ndarray, pd.DataFrame]] = None,
    ) -> FittedModel:
        """
        Fit the model ONCE. Returns a FittedModel reused for every contrast.

        Args:
            counts: genes × samples CountMatrix (or DataFrame of integer counts)
            metadata: SampleMetadata (or DataFrame indexed by sample id) in the
                same sample order as the count columns
            design: Formula such as "~ cell + dex" or a DesignSpecification
            lengths: Optional genes × samples average transcript lengths; when
                given, gene × sample normalization factors replace size factors

        Returns:
            FittedModel

        Raises:
            InputValidationError: Invalid or misaligned inputs, or no genes
            DesignError: Invalid design
            DegenerateNormalizationError: Size factors cannot be estimated
        """
        cfg = self.config
        if isinstance(counts, pd.DataFrame):
            counts = CountMatrix.from_dataframe(counts)
        if isinstance(metadata, pd.DataFrame):
            metadata = SampleMetadata.from_dataframe(metadata)
        if isinstance(design, str):
            design = DesignSpecification.from_formula(design)

        if counts.n_genes == 0:
            raise InputValidationError("Count matrix has no genes", details={"shape": counts.values.shape})
        validate_alignment(counts, metadata)
        design_matrix = design.compile(metadata)

        values = counts.values.astype(float)
        if lengths is not None:
            if isinstance(lengths, pd.DataFrame):
                lengths = lengths.loc[counts.gene_ids, counts.sample_ids].to_numpy(dtype=float)
            size_factors = None
            norm_factors = estimate_normalization_factors(values, lengths, method=cfg.size_factor_method)
        else:
            size_factors = estimate_size_factors(values, method=cfg.size_factor_method)
            norm_factors = np.broadcast_to(size_factors[None, :], values.shape).copy()
        norm_factors.setflags(write=False)

        glm_kwargs = dict(
            ridge_lambda=cfg.ridge_lambda,
            max_iter=cfg.glm_max_iter,
            tol=cfg.glm_tol,
            min_mu=cfg.min_mu,
            max_abs_log2_beta=cfg.max_abs_log2_beta,
        )
        dispersions = estimate_dispersions(
            values,
            design_matrix.matrix,
            norm_factors,
            min_disp=cfg.min_disp,
            max_disp=cfg.max_disp,
            outlier_sd=cfg.outlier_sd,
            min_log_disp_prior_var=cfg.min_log_disp_prior_var,
            glm_kwargs=glm_kwargs,
            n_workers=cfg.n_workers,
            batch_size=cfg.batch_size,
        )
        fit = fit_nb_glm(
            values,
            design_matrix.matrix,
            norm_factors,
            dispersions.final,
            coef_names=design_matrix.coef_names,
            n_workers=cfg.n_workers,
            batch_size=cfg.batch_size,
            **glm_kwargs,
        )

        cooks_disp = robust_moments_dispersion(values / norm_factors, design_matrix.matrix)
        cooks = cooks_distance(values, fit, cooks_disp)
        if cfg.cooks_filter:
            cooks_flag, cutoff = cooks_outliers(
                cooks,
                design_matrix.matrix,
                design_matrix.replicates_per_sample(),
                quantile=cfg.cooks_cutoff_quantile,
                min_replicates=cfg.min_replicates_for_cooks,
            )
        else:
            cooks_flag, cutoff = np.zeros(counts.n_genes, dtype=bool), None

        logger.info(
            f"Model fitted: {counts.n_genes} genes × {counts.n_samples} samples, "
            f"design {design.formula}, coefficients {list(design_matrix.coef_names)}"
        )
        return FittedModel(
            counts=counts,
            metadata=metadata,
            design=design_matrix,
            size_factors=size_factors,
            norm_factors=norm_factors,
            dispersions=dispersions,
            fit=fit,
            cooks=cooks,
            cooks_outlier=cooks_flag,
            cooks_cutoff=cutoff,
            config=cfg,
        )

    def _adjust(self, model: FittedModel, pvalues: np.ndarray) -> Tuple[np.ndarray, Optional[FilterResult]]:
        cfg = self.config
        if cfg.independent_filtering:
            filtering = independent_filtering(
                model.base_mean, pvalues, alpha=cfg.alpha, rule=cfg.filter_rule
            )
            return filtering.padj, filtering
        return benjamini_hochberg(pvalues), None

    def _mask_pvalues(self, model: FittedModel, pvalues: np.ndarray) -> np.ndarray:
        pvalues = np.array(pvalues, dtype=float)
        pvalues[model.base_mean == 0] = np.nan
        pvalues[model.cooks_outlier] = np.nan
        return pvalues

    def _warnings(self, model: FittedModel, filtering: Optional[FilterResult]) -> List[str]:
        messages = []
        n_unconverged = int(((model.base_mean > 0) & ~model.fit.converged).sum())
        if n_unconverged:
            messages.append(f"{n_unconverged} genes did not converge; their results are not available")
        if filtering is not None and filtering.provisional:
            messages.append(
                f"Independent filtering is provisional (independence check p={filtering.independence_pvalue:.2e})"
            )
        return messages

    def get_comparison(
        self,
        model: FittedModel,
        contrast: ContrastSpec,
        lfc_threshold: float = 0.0,
        alt_hypothesis: str = "greaterAbs",
        shrink: bool = True,
    ) -> DEResult:
        """
        Compute single contrast from fitted model.

        Args:
            model: FittedModel from fit_model
            contrast: Coefficient name, (factor, test_level, reference_level)
                or a numeric weight per coefficient
            lfc_threshold: Log2 fold change threshold for the Wald test
            alt_hypothesis: "greaterAbs", "lessAbs", "greater" or "less"
            shrink: Add shrunk log2 fold changes and intervals

        Returns:
            DEResult for this comparison

        Raises:
            DesignError / ValueError on an invalid contrast (caller should
            catch and mark comparison as failed)
        """
        cfg = self.config
        vector, name = model.design.contrast_vector(contrast)
        lfc, se = model.fit.contrast(vector)

        wald = wald_test(lfc, se, lfc_threshold=lfc_threshold, alt_hypothesis=alt_hypothesis)
        pvalues = self._mask_pvalues(model, wald.pvalue)
        padj, filtering = self._adjust(model, pvalues)

        shrinkage = None
        if shrink:
            shrinkage = shrink_lfc(lfc, se, method=cfg.shrinkage_method, level=cfg.interval_level)

        table = assemble_results(
            model.counts.gene_ids,
            model.base_mean,
            lfc,
            se,
            np.where(np.isnan(pvalues), np.nan, wald.stat),
            pvalues,
            padj,
            shrinkage=shrinkage,
            dispersion=model.dispersions.final,
            disp_outlier=model.dispersions.outlier,
            cooks_outlier=model.cooks_outlier,
            converged=model.fit.converged,
            contrast=name,
            test="Wald",
            alpha=cfg.alpha,
            filter_threshold=filtering.threshold if filtering is not None else None,
            provisional=filtering.provisional if filtering is not None else False,
        )
        n_sig = int((table.frame["padj"] < cfg.alpha).sum())
        logger.info(f"Contrast {name}: {n_sig} genes with padj < {cfg.alpha}")

        return DEResult(
            results_df=table.to_frame(),
            results=table,
            normalized_counts=model.normalized_counts(),
            log_normalized_counts=model.log_normalized_counts(),
            model=model,
            comparison=name,
            n_significant=n_sig,
            warnings=self._warnings(model, filtering),
            filtering=filtering,
        )

    def run_lrt(
        self,
        model: FittedModel,
        reduced_design: DesignLike,
        coefficient: Optional[str] = None,
    ) -> DEResult:
        """
        Likelihood ratio test of the fitted design against a nested reduced design.

        The reduced model is fitted with the full model's final dispersions.
        Reported log2 fold changes are those of ``coefficient`` (default: the
        last coefficient of the full design) and are descriptive only.

        Args:
            model: FittedModel from fit_model
            reduced_design: Formula or DesignSpecification, e.g. "~ cell"
            coefficient: Full-model coefficient whose fold change is reported

        Returns:
            DEResult with test "LRT"
        """
        cfg = self.config
        if isinstance(reduced_design, str):
            reduced_design = DesignSpecification.from_formula(
                reduced_design, model.design.specification.reference_levels
            )
        reduced = reduced_design.compile(model.metadata)
        df = model.design.n_coefs - reduced.n_coefs
        if df < 1:
            raise DesignError(
                f"Reduced design {reduced_design.formula} must have fewer coefficients than "
                f"{model.design.specification.formula}",
                details={"full": model.design.n_coefs, "reduced": reduced.n_coefs},
            )

        reduced_fit = fit_nb_glm(
            model.counts.values.astype(float),
            reduced.matrix,
            model.norm_factors,
            model.dispersions.final,
            coef_names=reduced.coef_names,
            ridge_lambda=cfg.ridge_lambda,
            max_iter=cfg.glm_max_iter,
            tol=cfg.glm_tol,
            min_mu=cfg.min_mu,
            max_abs_log2_beta=cfg.max_abs_log2_beta,
            n_workers=cfg.n_workers,
            batch_size=cfg.batch_size,
        )
        lrt = likelihood_ratio_test(model.fit.log_likelihood, reduced_fit.log_likelihood, df)
        pvalues = self._mask_pvalues(model, lrt.pvalue)
        pvalues[~(model.fit.converged & reduced_fit.converged)] = np.nan
        padj, filtering = self._adjust(model, pvalues)

        coefficient = coefficient or model.coef_names[-1]
        lfc, se = model.fit.contrast(model.design.contrast_vector(coefficient)[0])
        name = f"LRT {model.design.specification.formula} vs {reduced_design.formula}"

        table = assemble_results(
            model.counts.gene_ids,
            model.base_mean,
            lfc,
            se,
            np.where(np.isnan(pvalues), np.nan, lrt.stat),
            pvalues,
            padj,
            dispersion=model.dispersions.final,
            disp_outlier=model.dispersions.outlier,
            cooks_outlier=model.cooks_outlier,
            converged=model.fit.converged & reduced_fit.converged,
            contrast=name,
            test="LRT",
            alpha=cfg.alpha,
            filter_threshold=filtering.threshold if filtering is not None else None,
            provisional=filtering.provisional if filtering is not None else False,
        )
        n_sig = int((table.frame["padj"] < cfg.alpha).sum())
        logger.info(f"{name} (df={df}): {n_sig} genes with padj < {cfg.alpha}")

        return DEResult(
            results_df=table.to_frame(),
            results=table,
            normalized_counts=model.normalized_counts(),
            log_normalized_counts=model.log_normalized_counts(),
            model=model,
            comparison=name,
            n_significant=n_sig,
            warnings=self._warnings(model, filtering),
            filtering=filtering,
        )

    def run_all_comparisons(
        self,
        counts: Union[CountMatrix, pd.DataFrame],
        metadata: Union[SampleMetadata, pd.DataFrame],
        comparisons: Sequence[Tuple[str, str]],
        design_factor: str = "condition",
        design: Optional[DesignLike] = None,
    ) -> Dict[Tuple[str, str], DEResult]:
        """
        Main entry point: fit model once, compute all contrasts.

        Args:
            counts: genes × samples counts
            metadata: Sample metadata
            comparisons: List of (test, reference) levels of design_factor
            design_factor: Column name in metadata (default: "condition")
            design: Full design; defaults to "~ design_factor"

        Returns:
            Dict mapping (test, ref) → DEResult
            Failed comparisons have empty results_df and warnings populated
        """
        results = {}
        if design is None:
            design = f"~ {design_factor}"

        try:
            # Fit model once
            model = self.fit_model(counts, metadata, design)
        except ANALYSIS_ERRORS as e:
            # Model fit failed - all comparisons fail
            logger.error(f"DE analysis model fit failed: {str(e)}", exc_info=True)
            for comparison in comparisons:
                results[tuple(comparison)] = _failed_result(tuple(comparison), f"Model fit failed: {str(e)}")
            return results

        # Compute each comparison
        for test_cond, ref_cond in comparisons:
            try:
                results[(test_cond, ref_cond)] = self.get_comparison(
                    model, (design_factor, test_cond, ref_cond)
                )
            except ANALYSIS_ERRORS as e:
                # This comparison failed, but others may succeed
                logger.error(
                    f"DE analysis comparison ({test_cond} vs {ref_cond}) failed: {str(e)}",
                    exc_info=True,
                )
                results[(test_cond, ref_cond)] = _failed_result(
                    (test_cond, ref_cond), f"Comparison failed: {str(e)}", model
                )

        return results

    @staticmethod
    def filter_results(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 1.0,
    ) -> pd.DataFrame:
        """
        Filter DE results to significant genes.

        Args:
            results_df: DE results DataFrame
            padj_threshold: Adjusted p-value threshold (default: 0.05)
            lfc_threshold: Absolute log2 fold change threshold (default: 1.0)

        Returns:
            Filtered DataFrame with significant genes only
        """
        return results_df[
            (results_df["padj"] < padj_threshold)
            & (abs(results_df["log2FoldChange"]) > lfc_threshold)
        ].copy()
