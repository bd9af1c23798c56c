"""Tests for PyDESeq2-backed differential expression and batch handling."""
import pytest
import pandas as pd
import numpy as np

import de_analysis
from analysis_config import AnalysisConfig
from analysis_errors import MalformedInputError, UndefinedStatisticWarning
from count_matrix import Contrast, CountMatrix, SampleSheet
from de_analysis import (
    RESULT_COLUMNS,
    DEAnalysisEngine,
    adjust_pvalues,
    ensure_gene_index,
    replicated_samples,
)


def _nb_background(n_genes, samples, seed, prefix="bg"):
    """Negative-binomial genes with dispersion 0.05 and no treatment effect."""
    rng = np.random.default_rng(seed)
    means = rng.uniform(50, 2000, n_genes)
    r = 20.0
    counts = rng.negative_binomial(
        r, (r / (r + means))[:, np.newaxis], size=(n_genes, len(samples))
    )
    return pd.DataFrame(counts, index=[f"{prefix}{i}" for i in range(n_genes)], columns=samples)


# =============================================================================
# Worked two-gene example
# =============================================================================
class TestTwoGeneScenario:
    @pytest.fixture
    def embedded(self, two_gene_data):
        counts, sheet = two_gene_data
        background = _nb_background(200, list(counts.samples), seed=11)
        return CountMatrix(pd.concat([counts.to_frame(), background])), sheet

    def test_fixed_size_factors(self, embedded):
        counts, sheet = embedded
        result = DEAnalysisEngine().test_contrast(
            counts, sheet, Contrast("treated", "treated"), size_factors=[1.0] * 6
        )
        table = result.results_df
        # two-group fits reproduce the group means exactly: 600 vs 300 and 300 vs 300
        assert table.loc["A", "log2FoldChange"] == pytest.approx(1.0, abs=0.01)
        assert table.loc["B", "log2FoldChange"] == pytest.approx(0.0, abs=0.01)
        assert table.loc["A", "pvalue"] < table.loc["B", "pvalue"]
        assert (result.size_factors == 1.0).all()

    def test_estimated_size_factors(self, embedded):
        counts, sheet = embedded
        result = DEAnalysisEngine().test_contrast(counts, sheet, Contrast("treated", "treated"))
        table = result.results_df
        assert table.loc["A", "log2FoldChange"] == pytest.approx(1.0, abs=0.2)
        assert abs(table.loc["B", "log2FoldChange"]) < 0.2
        assert table.loc["A", "pvalue"] < table.loc["B", "pvalue"]


# =============================================================================
# Statistical behaviour on simulated data
# =============================================================================
class TestSimulatedContrasts:
    def test_batch_succeeds(self, demo_batch):
        assert set(demo_batch.results) == {"t1", "t2"}
        assert not demo_batch.failures

    def test_result_columns(self, demo_batch):
        result = demo_batch.results["t1"]
        assert list(result.results_df.columns) == RESULT_COLUMNS
        assert result.vst.shape == result.normalized_counts.shape
        assert list(result.design.columns)[-1] == "treat1"

    def test_planted_effects_recovered(self, demo_batch, demo_dataset):
        table = demo_batch.results["t1"].results_df
        up = [g for g in table.index if g.startswith("UP_IN_BOTH")]
        down = [g for g in table.index if g.startswith("DOWN_IN_BOTH")]
        assert table.loc[up, "log2FoldChange"].median() == pytest.approx(1.5, abs=0.4)
        assert table.loc[down, "log2FoldChange"].median() == pytest.approx(-1.5, abs=0.4)
        assert (table.loc[up, "padj"] < 0.05).mean() > 0.5

    def test_null_genes(self, demo_batch):
        table = demo_batch.results["t1"].results_df
        null = table[table.index.str.startswith("GENE")].dropna(subset=["pvalue"])
        assert abs(null["log2FoldChange"].median()) < 0.15
        # roughly uniform: about half below 0.5, few below 0.01
        assert 0.35 < (null["pvalue"] < 0.5).mean() < 0.65
        assert (null["pvalue"] < 0.01).mean() < 0.05

    def test_bh_monotone_and_not_below_raw(self, demo_batch):
        table = demo_batch.results["t2"].results_df.dropna(subset=["padj"])
        ordered = table.sort_values("pvalue")
        assert (ordered["padj"] >= ordered["pvalue"] - 1e-12).all()
        assert ordered["padj"].is_monotonic_increasing

    def test_sorted_table(self, demo_batch):
        table = demo_batch.results["t1"].sorted_table()
        pvalues = table["pvalue"].dropna()
        assert pvalues.is_monotonic_increasing
        assert table["pvalue"].isna().sum() == 0 or np.isnan(table["pvalue"].iloc[-1])

    def test_significant_helpers(self, demo_batch):
        result = demo_batch.results["t1"]
        up = result.get_upregulated(0.05, 0.0)
        down = result.get_downregulated(0.05, 0.0)
        assert (up["log2FoldChange"] > 0).all()
        assert (down["log2FoldChange"] < 0).all()
        assert result.n_significant == int((result.results_df["padj"] < 0.05).sum())


# =============================================================================
# Edge cases
# =============================================================================
def _counts_with_constant_gene():
    samples = ["c1", "c2", "c3", "t1", "t2", "t3"]
    df = _nb_background(60, samples, seed=5, prefix="g")
    df.loc["flat"] = 50
    sheet = pd.DataFrame({"treated": [0, 0, 0, 1, 1, 1]}, index=df.columns)
    return CountMatrix(df), SampleSheet(sheet)


def test_zero_variance_gene_gets_nan():
    counts, sheet = _counts_with_constant_gene()
    with pytest.warns(UndefinedStatisticWarning):
        result = DEAnalysisEngine().test_contrast(counts, sheet, Contrast("t", "treated"))
    row = result.results_df.loc["flat"]
    assert np.isnan(row["log2FoldChange"])
    assert np.isnan(row["lfcSE"])
    assert np.isnan(row["pvalue"])
    assert np.isnan(row["padj"])
    assert result.warnings
    assert result.results_df.drop(index="flat")["pvalue"].notna().all()


def test_cooks_outlier_excluded_from_bh():
    samples = [f"c{i}" for i in range(4)] + [f"t{i}" for i in range(4)]
    df = _nb_background(60, samples, seed=9, prefix="g")
    df.loc["spike"] = [300, 310, 290, 5000, 300, 305, 295, 310]
    sheet = SampleSheet(pd.DataFrame({"treated": [0] * 4 + [1] * 4}, index=df.columns))
    result = DEAnalysisEngine().test_contrast(CountMatrix(df), sheet, Contrast("t", "treated"))
    row = result.results_df.loc["spike"]
    assert bool(row["cooks_outlier"])
    assert np.isnan(row["padj"])
    assert not np.isnan(row["pvalue"])
    others = result.results_df.drop(index="spike")
    assert others["padj"].notna().mean() > 0.9


def test_no_cooks_flags_without_replicates():
    samples = ["c1", "c2", "t1", "t2"]
    df = _nb_background(60, samples, seed=12, prefix="g")
    df.loc["spike"] = [300, 5000, 300, 310]
    sheet = SampleSheet(pd.DataFrame({"treated": [0, 0, 1, 1]}, index=df.columns))
    result = DEAnalysisEngine().test_contrast(CountMatrix(df), sheet, Contrast("t", "treated"))
    assert not result.results_df["cooks_outlier"].any()


def test_vst_tracks_log2_normalized(demo_batch):
    result = demo_batch.results["t1"]
    top = result.results_df["baseMean"].nlargest(20).index
    vst = result.vst.loc[top]
    log_norm = np.log2(result.normalized_counts.loc[top])
    # same within-gene sample ordering, and close to log2 for well-expressed genes
    assert (vst.rank(axis=1) == log_norm.rank(axis=1)).all().all()
    assert float((vst - log_norm).abs().median().median()) < 0.5


def test_model_fit_error_recorded(monkeypatch, sample_count_matrix, sample_sheet):
    def broken_stats(*args, **kwargs):
        raise RuntimeError("singular information matrix")

    monkeypatch.setattr(de_analysis, "DeseqStats", broken_stats)
    batch = DEAnalysisEngine().run_all_comparisons(
        sample_count_matrix, sample_sheet, [Contrast("t", "treated")]
    )
    assert not batch.results
    assert batch.failures["t"].error_type == "ModelFitError"
    assert "singular" in batch.failures["t"].message


def test_replicated_samples():
    design = np.array([[1, 0], [1, 0], [1, 0], [1, 1], [1, 1]], dtype=float)
    assert replicated_samples(design, 3).tolist() == [True, True, True, False, False]


def test_adjust_pvalues_excludes_masked():
    pvalues = np.array([0.01, 0.02, np.nan, 0.03])
    padj = adjust_pvalues(pvalues, include=np.array([True, True, True, False]))
    assert np.isnan(padj[2]) and np.isnan(padj[3])
    assert padj[0] == pytest.approx(0.02)
    assert padj[1] == pytest.approx(0.02)


def test_ensure_gene_index_from_column(sample_de_results_df):
    table = ensure_gene_index(sample_de_results_df)
    assert table.index.name == "gene"
    assert "gene_1" in table.index


# =============================================================================
# Batch handling
# =============================================================================
class TestBatch:
    def test_failing_contrast_does_not_affect_others(self, sample_count_matrix, sample_sheet):
        good = Contrast("good", "treated")
        bad = Contrast("bad", "treated", samples=("sample_1", "sample_4"))
        batch = DEAnalysisEngine().run_all_comparisons(sample_count_matrix, sample_sheet, [good, bad])
        assert "good" in batch.results
        assert batch.failures["bad"].error_type == "InsufficientSamplesError"
        summary = batch.summary().set_index("contrast")
        assert summary.loc["good", "status"] == "SUCCESS"
        assert summary.loc["bad", "status"] == "FAILED"

    def test_malformed_input_aborts_before_fitting(self, sample_count_matrix, sample_sheet):
        contrasts = [Contrast("ok", "treated"), Contrast("broken", "no_such_indicator")]
        with pytest.raises(MalformedInputError):
            DEAnalysisEngine().run_all_comparisons(sample_count_matrix, sample_sheet, contrasts)

    def test_duplicate_contrast_names(self, sample_count_matrix, sample_sheet):
        contrasts = [Contrast("x", "treated"), Contrast("x", "batch")]
        with pytest.raises(MalformedInputError, match="unique"):
            DEAnalysisEngine().run_all_comparisons(sample_count_matrix, sample_sheet, contrasts)

    def test_accepts_plain_dataframes(self, sample_counts_df, sample_sheet_df):
        batch = DEAnalysisEngine().run_all_comparisons(
            sample_counts_df, sample_sheet_df, [Contrast("t", "treated")]
        )
        assert "t" in batch.results

    def test_threaded_matches_serial(self, sample_count_matrix, sample_sheet, treated_contrast):
        serial = DEAnalysisEngine(AnalysisConfig(n_workers=1)).test_contrast(
            sample_count_matrix, sample_sheet, treated_contrast
        )
        threaded = DEAnalysisEngine(AnalysisConfig(n_workers=3)).test_contrast(
            sample_count_matrix, sample_sheet, treated_contrast
        )
        pd.testing.assert_frame_equal(serial.results_df, threaded.results_df)


def test_filter_results():
    df = pd.DataFrame(
        {"padj": [0.01, 0.01, 0.2], "log2FoldChange": [2.0, 0.5, 3.0]},
        index=["a", "b", "c"],
    )
    assert list(DEAnalysisEngine.filter_results(df).index) == ["a"]
