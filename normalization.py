"""
Per-contrast detectability filtering and median-of-ratios size factors.

A ContrastView is an index over the shared CountMatrix: the contrast's sample
columns, the genes that pass the detectability filter, and the design.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union
import logging
import pandas as pd
import numpy as np
from pydeseq2.preprocessing import deseq2_norm

from analysis_errors import (
    InsufficientSamplesError,
    MalformedInputError,
    NoDetectableGenesError,
)
from count_matrix import Contrast, CountMatrix, SampleSheet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContrastView:
    """Filtered, read-only view of one contrast's data."""

    contrast: Contrast
    samples: pd.Index
    genes: pd.Index
    gene_positions: np.ndarray  # rows of the parent CountMatrix
    counts: np.ndarray  # genes × samples, raw integer counts
    design: pd.DataFrame  # samples × (intercept, covariates..., indicator)
    size_factors: pd.Series

    @property
    def normalized(self) -> np.ndarray:
        return self.counts / self.size_factors.to_numpy()[np.newaxis, :]

    @property
    def n_samples(self) -> int:
        return len(self.samples)


def detectable_genes(
    counts: CountMatrix, samples: Sequence[str], min_mean_count: float = 10.0
) -> np.ndarray:
    """Row positions of genes whose mean raw count across ``samples`` exceeds the threshold."""
    sub = counts.submatrix(samples)
    return np.flatnonzero(sub.mean(axis=1) > min_mean_count)


def estimate_size_factors(counts: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factors (PyDESeq2's ``deseq2_norm``).

    Genes with a zero in any sample have no usable geometric-mean reference
    and do not contribute.

    Args:
        counts: genes × samples raw count array

    Returns:
        One positive size factor per sample

    Raises:
        NoDetectableGenesError: if no gene has a nonzero reference
    """
    counts = np.asarray(counts, dtype=float)
    if not (counts > 0).all(axis=1).any():
        raise NoDetectableGenesError(
            "Every gene has a zero count in at least one sample; "
            "size factors cannot be estimated",
            {"n_genes": int(counts.shape[0])},
        )
    _, size_factors = deseq2_norm(counts.T)
    return np.asarray(size_factors, dtype=float)


def _coerce_size_factors(
    size_factors: Union[pd.Series, Mapping[str, float], Sequence[float]],
    samples: pd.Index,
) -> np.ndarray:
    if isinstance(size_factors, (pd.Series, dict)):
        series = pd.Series(size_factors)
        missing = [s for s in samples if s not in series.index]
        if missing:
            raise MalformedInputError(
                f"Size factors missing for samples: {missing}", {"missing": missing}
            )
        values = series.loc[list(samples)].to_numpy(dtype=float)
    else:
        values = np.asarray(size_factors, dtype=float)
        if values.shape != (len(samples),):
            raise MalformedInputError(
                f"Expected {len(samples)} size factors, got {values.size}"
            )
    if not np.isfinite(values).all() or (values <= 0).any():
        raise MalformedInputError("Size factors must be positive and finite")
    return values


def prepare_contrast(
    counts: CountMatrix,
    sheet: SampleSheet,
    contrast: Contrast,
    min_mean_count: float = 10.0,
    min_samples: int = 3,
    size_factors: Optional[Union[pd.Series, Mapping[str, float], Sequence[float]]] = None,
) -> ContrastView:
    """
    Resolve samples, apply the detectability filter and compute size factors.

    Raises:
        MalformedInputError: the contrast references unknown samples/indicators
        InsufficientSamplesError: too few samples, or a group with no samples
        NoDetectableGenesError: no gene passes the filter
    """
    samples = sheet.contrast_samples(contrast, counts)
    groups = sheet.group_sizes(contrast, samples)
    if len(samples) < min_samples:
        raise InsufficientSamplesError(
            f"Contrast '{contrast.name}' has {len(samples)} samples; "
            f"at least {min_samples} are required",
            {"contrast": contrast.name, "n_samples": len(samples)},
        )
    if groups[0] == 0 or groups[1] == 0:
        raise InsufficientSamplesError(
            f"Contrast '{contrast.name}' needs samples with '{contrast.indicator}' = 0 and = 1",
            {"contrast": contrast.name, "group_sizes": groups},
        )

    positions = detectable_genes(counts, samples, min_mean_count)
    if positions.size == 0:
        raise NoDetectableGenesError(
            f"No gene in contrast '{contrast.name}' has mean count > {min_mean_count}",
            {"contrast": contrast.name},
        )
    sub = counts.submatrix(samples, positions)
    sample_index = pd.Index(samples, name="sample")

    if size_factors is None:
        factors = estimate_size_factors(sub)
    else:
        factors = _coerce_size_factors(size_factors, sample_index)

    design = sheet.design_matrix(contrast, samples)
    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < design.shape[1]:
        raise InsufficientSamplesError(
            f"Design for contrast '{contrast.name}' is not full rank",
            {"contrast": contrast.name, "columns": list(design.columns)},
        )

    logger.info(
        f"Contrast '{contrast.name}': {len(samples)} samples "
        f"({groups[0]} control, {groups[1]} treated), "
        f"{positions.size}/{counts.shape[0]} genes with mean count > {min_mean_count}"
    )
    sub.setflags(write=False)
    return ContrastView(
        contrast=contrast,
        samples=sample_index,
        genes=counts.genes[positions],
        gene_positions=positions,
        counts=sub,
        design=design,
        size_factors=pd.Series(factors, index=sample_index, name="size_factor"),
    )
