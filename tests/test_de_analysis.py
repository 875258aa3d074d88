"""
End-to-end tests for the differential expression engine.
"""
import pytest
import pandas as pd
import numpy as np

from analysis_config import AnalysisConfig
from count_data import InputValidationError
from de_analysis import DEAnalysisEngine, DEResult, FittedModel
from demo_data import simulate_counts
from design import DesignError
from results import RESULT_COLUMNS

DEX = ("dex", "trt", "untrt")


@pytest.fixture(scope="module")
def dex_result(paired_model):
    return DEAnalysisEngine(AnalysisConfig()).get_comparison(paired_model, DEX)


class TestFittedModel:
    def test_model_contents(self, paired_model):
        assert isinstance(paired_model, FittedModel)
        assert paired_model.coef_names[-1] == "dex[T.trt]"
        assert paired_model.size_factors.shape == (8,)
        assert paired_model.norm_factors.shape == (2000, 8)
        assert paired_model.fit.beta.shape == (2000, 5)
        # One sample per design cell: Cook's filtering does not apply
        assert paired_model.cooks_cutoff is None
        assert not paired_model.cooks_outlier.any()

    def test_all_zero_gene_is_not_fitted(self, paired_model):
        assert paired_model.base_mean[0] == 0
        assert np.isnan(paired_model.dispersions.final[0])
        assert not paired_model.fit.converged[0]

    def test_transformed_counts(self, paired_model):
        vst = paired_model.vst()
        assert vst.shape == (2000, 8)
        assert np.isfinite(vst.to_numpy()).all()
        normalized = paired_model.normalized_counts()
        np.testing.assert_allclose(
            normalized.iloc[5].to_numpy(),
            paired_model.counts.values[5] / paired_model.size_factors,
        )


class TestComparison:
    def test_result_layout(self, dex_result):
        assert isinstance(dex_result, DEResult)
        assert dex_result.comparison == "dex_trt_vs_untrt"
        assert list(dex_result.results_df.columns) == RESULT_COLUMNS
        assert len(dex_result.results_df) == 2000
        assert dex_result.normalized_counts.shape == (2000, 8)
        assert dex_result.results.shrinkage_method == "cauchy"

    def test_all_zero_gene_never_significant(self, dex_result):
        row = dex_result.results_df.set_index("gene").loc["gene_00001"]
        assert row["baseMean"] == 0
        for column in ("log2FoldChange", "stat", "pvalue", "padj", "log2FoldChangeShrunk"):
            assert np.isnan(row[column])
        assert "gene_00001" not in set(dex_result.results.significant()["gene"])

    def test_no_missing_value_is_coerced(self, dex_result):
        df = dex_result.results_df
        assert df["pvalue"].isna().sum() >= 1
        assert (df["padj"].isna() >= df["pvalue"].isna()).all()
        assert ((df["padj"] >= df["pvalue"]) | df["padj"].isna()).all()

    def test_detects_simulated_effects(self, dex_result, paired_simulation):
        _, _, truth = paired_simulation
        sig = dex_result.results.significant()
        assert dex_result.n_significant == len(sig)
        assert len(sig) > 120
        false_discoveries = (truth.loc[sig["gene"]] == 0).sum()
        assert false_discoveries / len(sig) <= 0.15
        true_sig = sig[truth.loc[sig["gene"]].to_numpy() != 0]
        agree = np.sign(true_sig["log2FoldChange"].to_numpy()) == np.sign(truth.loc[true_sig["gene"]].to_numpy())
        assert agree.mean() > 0.98

    def test_fold_changes_track_truth(self, dex_result, paired_simulation):
        _, _, truth = paired_simulation
        df = dex_result.results_df.set_index("gene")
        de_genes = truth.index[truth != 0]
        estimates = df.loc[de_genes, "log2FoldChange"].dropna()
        assert np.median(np.abs(estimates - truth.loc[estimates.index])) < 0.5

    def test_shrunk_values_are_smaller(self, dex_result):
        df = dex_result.results_df.dropna(subset=["log2FoldChange", "log2FoldChangeShrunk", "lfcShrunkLower"])
        assert (df["log2FoldChangeShrunk"].abs() <= df["log2FoldChange"].abs() + 1e-9).all()
        assert (df["lfcShrunkLower"] <= df["log2FoldChangeShrunk"]).all()

    def test_coefficient_name_matches_factor_contrast(self, engine, paired_model, dex_result):
        by_name = engine.get_comparison(paired_model, "dex[T.trt]", shrink=False)
        a = by_name.results_df.set_index("gene").sort_index()
        b = dex_result.results_df.set_index("gene").sort_index()
        np.testing.assert_allclose(a["log2FoldChange"], b["log2FoldChange"])
        np.testing.assert_allclose(a["padj"], b["padj"])
        assert a["log2FoldChangeShrunk"].isna().all()

    def test_reversed_contrast_flips_sign(self, engine, paired_model, dex_result):
        reversed_result = engine.get_comparison(paired_model, ("dex", "untrt", "trt"))
        a = reversed_result.results_df.set_index("gene").sort_index()
        b = dex_result.results_df.set_index("gene").sort_index()
        np.testing.assert_allclose(a["log2FoldChange"], -b["log2FoldChange"])
        np.testing.assert_allclose(a["pvalue"], b["pvalue"])

    def test_cell_line_contrast(self, engine, paired_model):
        result = engine.get_comparison(paired_model, ("cell", "N061011", "N052611"))
        assert result.comparison == "cell_N061011_vs_N052611"
        assert result.results_df["log2FoldChange"].notna().sum() > 1900

    def test_threshold_reduces_discoveries(self, engine, paired_model, dex_result):
        thresholded = engine.get_comparison(paired_model, DEX, lfc_threshold=1.0)
        assert 0 < thresholded.n_significant <= dex_result.n_significant
        less = engine.get_comparison(paired_model, DEX, lfc_threshold=1.0, alt_hypothesis="lessAbs")
        assert less.results.test == "Wald"

    def test_unknown_level_raises(self, engine, paired_model):
        with pytest.raises(DesignError):
            engine.get_comparison(paired_model, ("dex", "high", "untrt"))

    def test_without_independent_filtering(self, paired_model, dex_result):
        engine = DEAnalysisEngine(AnalysisConfig(independent_filtering=False))
        result = engine.get_comparison(paired_model, DEX)
        assert result.filtering is None
        assert result.results.filter_threshold is None
        assert result.n_significant <= dex_result.n_significant

    def test_identical_results_with_worker_pool(self, paired_simulation, dex_result):
        counts_df, metadata_df, _ = paired_simulation
        engine = DEAnalysisEngine(AnalysisConfig(n_workers=3, batch_size=250))
        model = engine.fit_model(counts_df, metadata_df, "~ cell + dex")
        pooled = engine.get_comparison(model, DEX)
        a = pooled.results_df.set_index("gene").sort_index()
        b = dex_result.results_df.set_index("gene").sort_index()
        np.testing.assert_allclose(a["padj"], b["padj"], rtol=1e-8, equal_nan=True)
        np.testing.assert_allclose(a["log2FoldChange"], b["log2FoldChange"], rtol=1e-8, equal_nan=True)


class TestLikelihoodRatio:
    def test_lrt_against_reduced_design(self, engine, paired_model, dex_result):
        lrt = engine.run_lrt(paired_model, "~ cell")
        assert lrt.results.test == "LRT"
        assert lrt.comparison == "LRT ~ cell + dex vs ~ cell"
        assert lrt.n_significant > 120
        wald_sig = set(dex_result.results.significant()["gene"])
        lrt_sig = set(lrt.results.significant()["gene"])
        assert len(wald_sig & lrt_sig) / len(wald_sig | lrt_sig) > 0.8
        row = lrt.results_df.set_index("gene").loc["gene_00001"]
        assert np.isnan(row["pvalue"])

    def test_lrt_with_dropped_term(self, engine, paired_model):
        reduced = paired_model.design.specification.drop_terms("dex")
        lrt = engine.run_lrt(paired_model, reduced, coefficient="dex[T.trt]")
        assert lrt.comparison == "LRT ~ cell + dex vs ~ cell"
        assert lrt.results.test == "LRT"

    def test_lrt_needs_fewer_coefficients(self, engine, paired_model):
        with pytest.raises(DesignError):
            engine.run_lrt(paired_model, "~ cell + dex")


class TestRunAllComparisons:
    def test_two_group_analysis(self, engine, sample_counts_df, sample_metadata_df):
        results = engine.run_all_comparisons(
            sample_counts_df, sample_metadata_df, [("treatment", "control"), ("missing", "control")]
        )
        good = results[("treatment", "control")]
        assert good.comparison == "condition_treatment_vs_control"
        assert not good.warnings or all(isinstance(w, str) for w in good.warnings)
        sig = set(good.results.significant()["gene"])
        planted = {f"gene_{i + 1}" for i in range(20)}
        assert len(sig & planted) >= 15

        bad = results[("missing", "control")]
        assert bad.results_df.empty
        assert bad.results is None
        assert bad.n_significant == 0
        assert "Comparison failed" in bad.warnings[0]
        assert bad.normalized_counts is not None

    def test_model_failure_fails_every_comparison(self, engine, sample_counts_df, sample_metadata_df):
        metadata = sample_metadata_df.rename(columns={"condition": "group"})
        results = engine.run_all_comparisons(sample_counts_df, metadata, [("treatment", "control")])
        failed = results[("treatment", "control")]
        assert failed.results_df.empty
        assert failed.model is None
        assert "Model fit failed" in failed.warnings[0]


class TestInputErrors:
    def test_no_genes(self, engine, sample_counts_df, sample_metadata_df):
        with pytest.raises(InputValidationError):
            engine.fit_model(sample_counts_df.iloc[:0], sample_metadata_df)

    def test_reordered_metadata(self, engine, sample_counts_df, sample_metadata_df):
        with pytest.raises(InputValidationError):
            engine.fit_model(sample_counts_df, sample_metadata_df.iloc[::-1])

    def test_negative_counts(self, engine, sample_counts_df, sample_metadata_df):
        counts = sample_counts_df.copy()
        counts.iloc[0, 0] = -1
        with pytest.raises(InputValidationError):
            engine.fit_model(counts, sample_metadata_df)


def test_transcript_lengths_replace_size_factors(engine, sample_counts_df, sample_metadata_df):
    rng = np.random.RandomState(4)
    lengths = pd.DataFrame(
        rng.uniform(800, 3000, size=sample_counts_df.shape),
        index=sample_counts_df.index,
        columns=sample_counts_df.columns,
    )
    model = engine.fit_model(sample_counts_df, sample_metadata_df, lengths=lengths)
    assert model.size_factors is None
    assert model.norm_factors.shape == sample_counts_df.shape
    result = engine.get_comparison(model, ("condition", "treatment", "control"))
    assert len(result.results_df) == len(sample_counts_df)


def test_filter_results(sample_de_results_df):
    filtered = DEAnalysisEngine.filter_results(sample_de_results_df, padj_threshold=0.05, lfc_threshold=1.0)
    assert len(filtered) >= 11
    assert (filtered["padj"] < 0.05).all()
    assert (filtered["log2FoldChange"].abs() > 1.0).all()
    assert filtered["baseMean"].gt(0).all()


def _two_group_counts(rng, n_genes=400, n_per_group=4):
    n_samples = 2 * n_per_group
    base = rng.lognormal(mean=5, sigma=0.8, size=n_genes)
    size = 10.0
    data = rng.negative_binomial(size, size / (size + base[:, None]), size=(n_genes, n_samples))
    samples = [f"s{i + 1}" for i in range(n_samples)]
    counts = pd.DataFrame(data, index=[f"g{i}" for i in range(n_genes)], columns=samples)
    metadata = pd.DataFrame(
        {"condition": ["control"] * n_per_group + ["treatment"] * n_per_group}, index=samples
    )
    return counts, metadata


class TestOutliersAndFailures:
    def test_single_extreme_count_is_masked(self, engine):
        counts, metadata = _two_group_counts(np.random.RandomState(8))
        counts.iloc[0] = [100, 98, 103, 2000, 150, 148, 155, 151]
        model = engine.fit_model(counts, metadata)
        assert model.cooks_cutoff is not None
        assert model.cooks_outlier[0]
        assert model.cooks_outlier.mean() < 0.05

        result = engine.get_comparison(model, ("condition", "treatment", "control"))
        row = result.results_df.set_index("gene").loc["g0"]
        assert row["cooksOutlier"]
        assert np.isnan(row["pvalue"])
        assert np.isnan(row["padj"])
        assert "g0" not in set(result.results.significant()["gene"])

    def test_large_outlier_in_three_replicates_is_not_significant(self, engine):
        counts, metadata = _two_group_counts(np.random.RandomState(9), n_per_group=3)
        counts.iloc[0] = [200, 190, 210, 20000, 205, 195]
        model = engine.fit_model(counts, metadata)
        assert model.cooks_outlier[0]
        result = engine.get_comparison(model, ("condition", "treatment", "control"))
        row = result.results_df.set_index("gene").loc["g0"]
        assert np.isnan(row["padj"])

    def test_unconverged_genes_have_no_pvalue(self, sample_counts_df, sample_metadata_df):
        # Intercepts above log2(256) exceed the divergence bound
        engine = DEAnalysisEngine(AnalysisConfig(max_abs_log2_beta=8.0))
        model = engine.fit_model(sample_counts_df, sample_metadata_df)
        means = sample_counts_df.mean(axis=1).to_numpy()
        high = sample_counts_df.iloc[:, :3].mean(axis=1).to_numpy() > 600
        low = (sample_counts_df.max(axis=1).to_numpy() < 120) & (means > 5)
        assert high.any() and low.any()
        assert not model.fit.converged[high].any()
        assert np.isnan(model.fit.beta[high]).all()
        assert np.isnan(model.fit.covariance[high]).all()
        assert model.fit.converged[low].all()

        result = engine.get_comparison(model, ("condition", "treatment", "control"))
        df = result.results_df.set_index("gene").loc[sample_counts_df.index]
        for column in ("log2FoldChange", "lfcSE", "stat", "pvalue", "padj"):
            assert df.loc[high, column].isna().all()
        assert not df.loc[high, "converged"].any()
        assert df.loc[low, "pvalue"].notna().all()


def test_repeated_query_is_identical(engine, paired_model):
    first = engine.get_comparison(paired_model, DEX)
    second = engine.get_comparison(paired_model, DEX)
    pd.testing.assert_frame_equal(first.results_df, second.results_df)
    assert first.n_significant == second.n_significant


def test_global_null_controls_false_discoveries(engine):
    alpha = engine.config.alpha
    fractions = []
    for seed in (1, 2, 3):
        counts_df, metadata_df, truth = simulate_counts(n_genes=1000, n_de=0, seed=seed)
        assert (truth == 0).all()
        model = engine.fit_model(counts_df, metadata_df, "~ cell + dex")
        padj = engine.get_comparison(model, DEX).results_df["padj"]
        fractions.append(float((padj < alpha).mean()))
    assert np.mean(fractions) <= alpha
