"""
Core data model: gene × sample count matrix, sample sheet and contrasts.

Canonical orientation is genes × samples (gene identifiers as index, sample
identifiers as columns). Both containers validate on construction and raise
MalformedInputError before any statistics run.
"""

from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
import pandas as pd
import numpy as np

from analysis_errors import MalformedInputError

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"


def _read_table(path: Union[str, PathLike]) -> pd.DataFrame:
    """Read a CSV or tab-separated table (optionally gzipped), first column as index."""
    suffixes = [s.lower() for s in Path(path).suffixes]
    sep = "," if ".csv" in suffixes else "\t"
    return pd.read_csv(path, sep=sep, index_col=0)


class CountMatrix:
    """
    Dense, immutable gene × sample matrix of non-negative integer counts.

    The underlying array is flagged read-only; per-contrast filtering is done
    with index arrays over it rather than copies of the frame.
    """

    def __init__(self, counts: pd.DataFrame):
        self._validate(counts)
        values = counts.to_numpy(dtype=np.int64, copy=True)
        values.setflags(write=False)
        self._values = values
        self._genes = pd.Index(counts.index.astype(str), name="gene")
        self._samples = pd.Index(counts.columns.astype(str), name="sample")

    @staticmethod
    def _validate(counts: pd.DataFrame) -> None:
        if not isinstance(counts, pd.DataFrame):
            raise MalformedInputError(
                f"Count matrix must be a DataFrame, got {type(counts).__name__}"
            )
        if counts.shape[0] == 0 or counts.shape[1] == 0:
            raise MalformedInputError(
                "Count matrix is empty", {"shape": list(counts.shape)}
            )
        if counts.index.has_duplicates:
            dupes = counts.index[counts.index.duplicated()].unique().tolist()
            raise MalformedInputError(
                f"Duplicate gene identifiers: {dupes[:5]}", {"duplicates": dupes}
            )
        if counts.columns.has_duplicates:
            dupes = counts.columns[counts.columns.duplicated()].unique().tolist()
            raise MalformedInputError(
                f"Duplicate sample identifiers: {dupes[:5]}", {"duplicates": dupes}
            )

        non_numeric = [
            c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])
        ]
        if non_numeric:
            raise MalformedInputError(
                f"Non-numeric count columns: {non_numeric[:5]}",
                {"columns": non_numeric},
            )

        values = counts.to_numpy(dtype=float)
        if np.isnan(values).any():
            n_missing = int(np.isnan(values).sum())
            raise MalformedInputError(
                f"Count matrix has {n_missing} missing cells", {"missing": n_missing}
            )
        if not np.isfinite(values).all():
            raise MalformedInputError("Count matrix has infinite cells")
        if (values < 0).any():
            n_negative = int((values < 0).sum())
            raise MalformedInputError(
                f"Count matrix has {n_negative} negative cells",
                {"negative": n_negative},
            )
        if (values != np.round(values)).any():
            n_fractional = int((values != np.round(values)).sum())
            raise MalformedInputError(
                f"Count matrix has {n_fractional} non-integer cells",
                {"non_integer": n_fractional},
            )

    @classmethod
    def from_file(cls, path: Union[str, PathLike]) -> "CountMatrix":
        """Load a genes × samples table (CSV, TSV, optionally gzipped)."""
        return cls(_read_table(path))

    @property
    def genes(self) -> pd.Index:
        return self._genes

    @property
    def samples(self) -> pd.Index:
        return self._samples

    @property
    def values(self) -> np.ndarray:
        """Read-only int64 array, genes × samples."""
        return self._values

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    def sample_positions(self, samples: Sequence[str]) -> np.ndarray:
        positions = self._samples.get_indexer(list(samples))
        if (positions < 0).any():
            missing = [s for s, p in zip(samples, positions) if p < 0]
            raise MalformedInputError(
                f"Samples not present in count matrix: {missing}",
                {"missing": missing},
            )
        return positions

    def submatrix(
        self, samples: Sequence[str], gene_positions: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """Counts restricted to the given samples (and optionally gene rows)."""
        cols = self.sample_positions(samples)
        if gene_positions is None:
            return self._values[:, cols]
        return self._values[np.ix_(gene_positions, cols)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._values.copy(), index=self._genes, columns=self._samples)

    def __repr__(self) -> str:
        return f"CountMatrix({self.shape[0]} genes × {self.shape[1]} samples)"


@dataclass(frozen=True)
class Contrast:
    """
    One control-vs-treatment comparison.

    indicator: SampleSheet column whose value 1 marks the treated samples
    samples: sample subset for this contrast (None = every sample in the sheet)
    covariates: extra binary SampleSheet columns added to the design
    """

    name: str
    indicator: str
    samples: Optional[Tuple[str, ...]] = None
    covariates: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, spec: str) -> "Contrast":
        """Parse ``name=indicator[:s1,s2,...]`` as used on the command line."""
        if "=" not in spec:
            raise MalformedInputError(
                f"Contrast spec '{spec}' must look like name=indicator[:s1,s2,...]"
            )
        name, rest = spec.split("=", 1)
        indicator, _, sample_part = rest.partition(":")
        samples = tuple(s for s in sample_part.split(",") if s) or None
        if not name or not indicator:
            raise MalformedInputError(f"Contrast spec '{spec}' is missing a name or indicator")
        return cls(name=name.strip(), indicator=indicator.strip(), samples=samples)


class SampleSheet:
    """Sample identifier → binary (0/1) group indicators."""

    def __init__(self, sheet: pd.DataFrame):
        self._validate(sheet)
        frame = sheet.apply(pd.to_numeric).astype(np.int64)
        frame.index = frame.index.astype(str)
        frame.index.name = "sample"
        self._frame = frame

    @staticmethod
    def _validate(sheet: pd.DataFrame) -> None:
        if not isinstance(sheet, pd.DataFrame) or sheet.empty:
            raise MalformedInputError("Sample sheet must be a non-empty DataFrame")
        if sheet.index.has_duplicates:
            dupes = sheet.index[sheet.index.duplicated()].unique().tolist()
            raise MalformedInputError(
                f"Sample sheet lists samples more than once: {dupes}",
                {"duplicates": dupes},
            )
        for col in sheet.columns:
            values = pd.to_numeric(sheet[col], errors="coerce")
            bad = sheet.index[values.isna() | ~values.isin([0, 1])].tolist()
            if bad:
                raise MalformedInputError(
                    f"Indicator '{col}' must be 0 or 1; offending samples: {bad}",
                    {"indicator": col, "samples": bad},
                )

    @classmethod
    def from_file(cls, path: Union[str, PathLike]) -> "SampleSheet":
        return cls(_read_table(path))

    @property
    def samples(self) -> pd.Index:
        return self._frame.index

    @property
    def indicators(self) -> List[str]:
        return list(self._frame.columns)

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def contrast_samples(self, contrast: Contrast, counts: CountMatrix) -> List[str]:
        """
        Resolve and validate the sample subset of a contrast.

        Raises MalformedInputError when the contrast references unknown
        indicators, or samples missing from the sheet or the count matrix.
        """
        for column in (contrast.indicator,) + tuple(contrast.covariates):
            if column not in self._frame.columns:
                raise MalformedInputError(
                    f"Contrast '{contrast.name}' references unknown indicator '{column}'",
                    {"contrast": contrast.name, "indicators": self.indicators},
                )

        samples = list(contrast.samples) if contrast.samples else list(self._frame.index)
        if len(set(samples)) != len(samples):
            raise MalformedInputError(
                f"Contrast '{contrast.name}' lists a sample more than once"
            )
        missing_sheet = [s for s in samples if s not in self._frame.index]
        if missing_sheet:
            raise MalformedInputError(
                f"Contrast '{contrast.name}' samples missing from sample sheet: {missing_sheet}",
                {"contrast": contrast.name, "missing": missing_sheet},
            )
        missing_counts = [s for s in samples if s not in counts.samples]
        if missing_counts:
            raise MalformedInputError(
                f"Sample sheet references columns absent from the count matrix: {missing_counts}",
                {"contrast": contrast.name, "missing": missing_counts},
            )
        return samples

    def design_matrix(self, contrast: Contrast, samples: Sequence[str]) -> pd.DataFrame:
        """Intercept + covariates + treatment indicator (last column), samples as rows."""
        design = pd.DataFrame({INTERCEPT: 1.0}, index=pd.Index(list(samples), name="sample"))
        for column in tuple(contrast.covariates) + (contrast.indicator,):
            design[column] = self._frame.loc[list(samples), column].astype(float).values
        return design

    def group_sizes(self, contrast: Contrast, samples: Sequence[str]) -> Dict[int, int]:
        values = self._frame.loc[list(samples), contrast.indicator]
        return {0: int((values == 0).sum()), 1: int((values == 1).sum())}
