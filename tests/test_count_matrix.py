"""Tests for CountMatrix, SampleSheet and Contrast validation."""
import pytest
import pandas as pd
import numpy as np

from analysis_errors import MalformedInputError
from count_matrix import INTERCEPT, Contrast, CountMatrix, SampleSheet


class TestCountMatrix:
    def test_valid_matrix(self, sample_counts_df):
        counts = CountMatrix(sample_counts_df)
        assert counts.shape == (100, 6)
        assert list(counts.samples) == list(sample_counts_df.columns)
        assert counts.genes.name == "gene"

    def test_values_are_read_only(self, sample_count_matrix):
        with pytest.raises(ValueError):
            sample_count_matrix.values[0, 0] = 5

    def test_negative_counts_rejected(self, sample_counts_df):
        sample_counts_df.iloc[3, 2] = -1
        with pytest.raises(MalformedInputError, match="negative"):
            CountMatrix(sample_counts_df)

    def test_fractional_counts_rejected(self, sample_counts_df):
        df = sample_counts_df.astype(float)
        df.iloc[0, 0] = 2.5
        with pytest.raises(MalformedInputError, match="non-integer"):
            CountMatrix(df)

    def test_missing_cells_rejected(self, sample_counts_df):
        df = sample_counts_df.astype(float)
        df.iloc[1, 1] = np.nan
        with pytest.raises(MalformedInputError, match="missing"):
            CountMatrix(df)

    def test_duplicate_genes_rejected(self):
        df = pd.DataFrame([[1, 2], [3, 4]], index=["g1", "g1"], columns=["s1", "s2"])
        with pytest.raises(MalformedInputError, match="Duplicate gene"):
            CountMatrix(df)

    def test_duplicate_samples_rejected(self):
        df = pd.DataFrame([[1, 2], [3, 4]], index=["g1", "g2"], columns=["s1", "s1"])
        with pytest.raises(MalformedInputError, match="Duplicate sample"):
            CountMatrix(df)

    def test_non_numeric_rejected(self):
        df = pd.DataFrame({"s1": [1, 2], "s2": ["a", "b"]}, index=["g1", "g2"])
        with pytest.raises(MalformedInputError, match="Non-numeric"):
            CountMatrix(df)

    def test_empty_rejected(self):
        with pytest.raises(MalformedInputError, match="empty"):
            CountMatrix(pd.DataFrame())

    def test_float_integers_accepted(self):
        df = pd.DataFrame({"s1": [1.0, 2.0], "s2": [0.0, 7.0]}, index=["g1", "g2"])
        counts = CountMatrix(df)
        assert counts.values.dtype == np.int64

    def test_submatrix_and_unknown_sample(self, sample_count_matrix):
        sub = sample_count_matrix.submatrix(["sample_2", "sample_1"], np.array([0, 5]))
        assert sub.shape == (2, 2)
        assert sub[1, 0] == sample_count_matrix.values[5, 1]
        with pytest.raises(MalformedInputError, match="not present"):
            sample_count_matrix.submatrix(["sample_99"])

    def test_from_file_round_trip(self, tmp_path, sample_counts_df):
        path = tmp_path / "counts.csv"
        sample_counts_df.to_csv(path)
        counts = CountMatrix.from_file(path)
        pd.testing.assert_frame_equal(
            counts.to_frame(), sample_counts_df.astype(np.int64), check_names=False
        )


class TestSampleSheet:
    def test_non_binary_indicator_rejected(self):
        df = pd.DataFrame({"treated": [0, 1, 2]}, index=["a", "b", "c"])
        with pytest.raises(MalformedInputError, match="0 or 1"):
            SampleSheet(df)

    def test_duplicate_sample_rejected(self):
        df = pd.DataFrame({"treated": [0, 1]}, index=["a", "a"])
        with pytest.raises(MalformedInputError, match="more than once"):
            SampleSheet(df)

    def test_unknown_indicator(self, sample_sheet, sample_count_matrix):
        contrast = Contrast(name="x", indicator="missing_column")
        with pytest.raises(MalformedInputError, match="unknown indicator"):
            sample_sheet.contrast_samples(contrast, sample_count_matrix)

    def test_sample_missing_from_counts(self, sample_counts_df, sample_sheet_df):
        counts = CountMatrix(sample_counts_df.drop(columns="sample_6"))
        sheet = SampleSheet(sample_sheet_df)
        with pytest.raises(MalformedInputError, match="absent from the count matrix"):
            sheet.contrast_samples(Contrast(name="t", indicator="treated"), counts)

    def test_contrast_subset(self, sample_sheet, sample_count_matrix):
        contrast = Contrast(
            name="t", indicator="treated", samples=("sample_1", "sample_2", "sample_4")
        )
        assert sample_sheet.contrast_samples(contrast, sample_count_matrix) == [
            "sample_1",
            "sample_2",
            "sample_4",
        ]

    def test_design_matrix(self, sample_sheet):
        contrast = Contrast(name="t", indicator="treated", covariates=("batch",))
        design = sample_sheet.design_matrix(contrast, list(sample_sheet.samples))
        assert list(design.columns) == [INTERCEPT, "batch", "treated"]
        assert design["treated"].tolist() == [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]
        assert (design[INTERCEPT] == 1.0).all()


class TestContrastParse:
    def test_parse_indicator_only(self):
        contrast = Contrast.parse("t1=treat1")
        assert contrast == Contrast(name="t1", indicator="treat1")

    def test_parse_with_samples(self):
        contrast = Contrast.parse("t2=treat2:c1,c2,s1")
        assert contrast.samples == ("c1", "c2", "s1")

    def test_parse_rejects_bad_spec(self):
        with pytest.raises(MalformedInputError):
            Contrast.parse("treat1")
