"""
Negative-binomial dispersion estimation with empirical-Bayes shrinkage.

Each contrast gets its own PyDESeq2 DeseqDataSet built from the filtered
ContrastView, with the view's size factors. The estimation steps are
PyDESeq2's:
1. Gene-wise estimates maximizing the Cox-Reid adjusted profile likelihood.
2. A mean-dispersion trend ``a0 + a1 / mean`` (or a constant mean trend).
3. MAP estimates under a log-normal prior centred on the trend. Genes far
   above the trend keep their gene-wise value.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging
import pandas as pd
import numpy as np
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference

from analysis_config import DispersionParams
from analysis_errors import ModelFitError
from normalization import ContrastView

logger = logging.getLogger(__name__)

TREATMENT = "treatment"
CONTROL_LEVEL = "control"
TREATED_LEVEL = "treated"

# PyDESeq2 raises these from its solvers on degenerate data
FIT_ERRORS = (ValueError, RuntimeError, FloatingPointError, np.linalg.LinAlgError)


@dataclass(frozen=True)
class DispersionEstimate:
    """Per-gene dispersion values for one contrast."""

    genes: pd.Index
    base_mean: np.ndarray
    gene_wise: np.ndarray
    trend_values: np.ndarray
    map_values: np.ndarray
    final: np.ndarray
    outlier: np.ndarray
    fit_type: str  # trend actually used; PyDESeq2 falls back to "mean"
    trend_coeffs: Optional[np.ndarray]  # (a0, a1) for a parametric trend
    prior_var: float
    dataset: DeseqDataSet = field(repr=False, compare=False)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "baseMean": self.base_mean,
                "dispGeneEst": self.gene_wise,
                "dispFit": self.trend_values,
                "dispMAP": self.map_values,
                "dispersion": self.final,
                "dispOutlier": self.outlier,
            },
            index=self.genes,
        )


def contrast_metadata(view: ContrastView) -> pd.DataFrame:
    """
    Sample metadata for the PyDESeq2 design.

    Covariates become ``covariate0..`` factors with levels "0"/"1" and the
    indicator becomes the ``treatment`` factor with "control" as reference.
    Column names are generated so arbitrary sample sheet headers never
    reach the formula parser.
    """
    metadata = pd.DataFrame(index=pd.Index(view.samples.astype(str)))
    for i, column in enumerate(view.contrast.covariates):
        levels = view.design[column].astype(int).astype(str).to_numpy()
        metadata[f"covariate{i}"] = pd.Categorical(levels, categories=["0", "1"])
    treated = view.design[view.contrast.indicator].to_numpy() == 1
    metadata[TREATMENT] = pd.Categorical(
        np.where(treated, TREATED_LEVEL, CONTROL_LEVEL),
        categories=[CONTROL_LEVEL, TREATED_LEVEL],
    )
    return metadata


def design_formula(view: ContrastView) -> str:
    terms = [f"covariate{i}" for i in range(len(view.contrast.covariates))] + [TREATMENT]
    return "~" + " + ".join(terms)


def build_dataset(
    view: ContrastView, params: Optional[DispersionParams] = None, n_workers: int = 1
) -> DeseqDataSet:
    """DeseqDataSet over the view's counts with the view's size factors already set."""
    params = params or DispersionParams()
    counts = pd.DataFrame(
        view.counts.T.astype(np.int64),
        index=view.samples.astype(str),
        columns=view.genes.astype(str),
    )
    dds = DeseqDataSet(
        counts=counts,
        metadata=contrast_metadata(view),
        design=design_formula(view),
        fit_type=params.fit_type,
        min_disp=params.min_disp,
        max_disp=params.max_disp,
        refit_cooks=False,
        inference=DefaultInference(n_cpus=n_workers),
        quiet=True,
    )
    size_factors = view.size_factors.to_numpy(dtype=float)
    dds.obsm["size_factors"] = size_factors
    dds.layers["normed_counts"] = dds.X / size_factors[:, np.newaxis]
    dds.varm["_normed_means"] = dds.layers["normed_counts"].mean(axis=0)
    return dds


def estimate_dispersions(
    view: ContrastView,
    params: Optional[DispersionParams] = None,
    n_workers: int = 1,
) -> DispersionEstimate:
    """
    Gene-wise, trend and MAP dispersions for the genes of one contrast.

    Args:
        view: Filtered contrast view (counts, size factors, design)
        params: Estimation parameters (defaults if None)
        n_workers: CPUs handed to PyDESeq2's inference backend

    Returns:
        DispersionEstimate holding the fitted DeseqDataSet, ready for the GLM

    Raises:
        ModelFitError: PyDESeq2 cannot estimate dispersions for this contrast
    """
    dds = build_dataset(view, params, n_workers)
    try:
        dds.fit_genewise_dispersions()
        dds.fit_dispersion_trend()
        dds.fit_dispersion_prior()
        dds.fit_MAP_dispersions()
    except FIT_ERRORS as e:
        raise ModelFitError(
            f"Dispersion estimation failed for contrast '{view.contrast.name}': {e}",
            {"contrast": view.contrast.name, "step": "dispersion"},
        ) from e

    fit_type = str(dds.uns.get("disp_function_type", dds.fit_type))
    trend_coeffs = None
    if fit_type == "parametric" and "trend_coeffs" in dds.uns:
        trend_coeffs = np.asarray(dds.uns["trend_coeffs"], dtype=float)
    outlier = np.asarray(dds.varm["_outlier_genes"], dtype=bool)
    prior_var = float(dds.uns["prior_disp_var"])

    if trend_coeffs is not None:
        trend_text = f"parametric dispersion trend (a0={trend_coeffs[0]:.4g}, a1={trend_coeffs[1]:.4g})"
    else:
        trend_text = f"{fit_type} dispersion trend"
    logger.info(
        f"Contrast '{view.contrast.name}': {trend_text}, "
        f"prior var {prior_var:.3g}, {int(outlier.sum())} dispersion outliers"
    )
    return DispersionEstimate(
        genes=view.genes,
        base_mean=np.asarray(dds.varm["_normed_means"], dtype=float),
        gene_wise=np.asarray(dds.varm["genewise_dispersions"], dtype=float),
        trend_values=np.asarray(dds.varm["fitted_dispersions"], dtype=float),
        map_values=np.asarray(dds.varm["MAP_dispersions"], dtype=float),
        final=np.asarray(dds.varm["dispersions"], dtype=float),
        outlier=outlier,
        fit_type=fit_type,
        trend_coeffs=trend_coeffs,
        prior_var=prior_var,
        dataset=dds,
    )
