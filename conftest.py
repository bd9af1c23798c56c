"""
Pytest configuration and fixtures for the RNA-seq contrast and enrichment tests.
"""

import pytest
import pandas as pd
import numpy as np

from analysis_config import AnalysisConfig
from count_matrix import Contrast, CountMatrix, SampleSheet
from de_analysis import DEAnalysisEngine
from demo_data import load_demo_dataset, two_gene_scenario


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_counts_df():
    """
    Small count matrix for validation tests.
    Shape: (100 genes, 6 samples)
    """
    rng = np.random.default_rng(42)
    data = rng.negative_binomial(n=10, p=0.1, size=(100, 6))
    genes = [f"gene_{i + 1}" for i in range(100)]
    samples = [f"sample_{i + 1}" for i in range(6)]
    return pd.DataFrame(data, index=genes, columns=samples)


@pytest.fixture
def sample_sheet_df():
    """Sample sheet matching sample_counts_df: first 3 control, last 3 treated."""
    samples = [f"sample_{i + 1}" for i in range(6)]
    return pd.DataFrame(
        {"treated": [0, 0, 0, 1, 1, 1], "batch": [0, 1, 0, 1, 0, 1]},
        index=pd.Index(samples, name="sample"),
    )


@pytest.fixture
def sample_count_matrix(sample_counts_df):
    return CountMatrix(sample_counts_df)


@pytest.fixture
def sample_sheet(sample_sheet_df):
    return SampleSheet(sample_sheet_df)


@pytest.fixture
def treated_contrast():
    return Contrast(name="treated", indicator="treated")


@pytest.fixture
def sample_de_results_df():
    """
    Differential expression table with typical DE output columns.
    gene_1..gene_11 are strongly up-regulated.
    """
    rng = np.random.default_rng(42)
    n_genes = 100
    genes = [f"gene_{i + 1}" for i in range(n_genes)]

    df = pd.DataFrame(
        {
            "gene_id": genes,
            "baseMean": rng.uniform(10, 1000, n_genes),
            "log2FoldChange": rng.normal(0, 0.5, n_genes),
            "lfcSE": rng.uniform(0.1, 0.5, n_genes),
            "stat": rng.normal(0, 1, n_genes),
            "pvalue": rng.uniform(0, 1, n_genes),
            "padj": rng.uniform(0.1, 1, n_genes),
        }
    )
    df.loc[:10, "padj"] = rng.uniform(0, 0.05, 11)
    df.loc[:10, "log2FoldChange"] = rng.uniform(2.0, 3.0, 11)
    return df


@pytest.fixture
def two_gene_data():
    scenario = two_gene_scenario()
    return CountMatrix(scenario["counts"]), SampleSheet(scenario["sample_sheet"])


# ============================================================================
# Simulated Experiment Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def demo_dataset():
    """Two-treatment simulated experiment with planted gene sets."""
    return load_demo_dataset(n_background=400, set_size=20, seed=7)


@pytest.fixture(scope="session")
def demo_batch(demo_dataset):
    """DE results for both demo contrasts (computed once per session)."""
    engine = DEAnalysisEngine(AnalysisConfig())
    return engine.run_all_comparisons(
        CountMatrix(demo_dataset.counts),
        SampleSheet(demo_dataset.sample_sheet),
        demo_dataset.contrasts,
    )


@pytest.fixture
def gmt_file(tmp_path):
    """Small GMT file with three sets."""
    path = tmp_path / "sets.gmt"
    path.write_text(
        "SET_A\tfirst set\tgene_1\tgene_2\tgene_3\tgene_4\tgene_5\tgene_6\n"
        "SET_B\tsecond set\tgene_50\tgene_51\tgene_52\tgene_53\tgene_54\n"
        "SET_C\tthird set\tNOT_MEASURED_1\tNOT_MEASURED_2\n"
    )
    return path
