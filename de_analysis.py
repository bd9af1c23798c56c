"""
Differential expression testing with PyDESeq2.

For each contrast: detectability filter and size factors (normalization),
dispersion estimation with shrinkage (dispersion), then PyDESeq2's per-gene
NB GLM and Wald test on the treatment coefficient. Cook's distance outliers
are flagged against an F-distribution cutoff and left out of the
Benjamini-Hochberg correction; genes with identical counts in every sample
get NaN statistics. A variance-stabilizing transform is reported alongside.

Contrasts are independent: one that cannot be fit is reported as a failure
while the others complete.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Union
import logging
import warnings
import pandas as pd
import numpy as np
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats
from scipy.stats import f as f_dist
from statsmodels.stats.multitest import multipletests

from analysis_config import AnalysisConfig
from analysis_errors import (
    ContrastError,
    MalformedInputError,
    ModelFitError,
    UndefinedStatisticWarning,
)
from count_matrix import Contrast, CountMatrix, SampleSheet
from dispersion import (
    CONTROL_LEVEL,
    FIT_ERRORS,
    TREATED_LEVEL,
    TREATMENT,
    DispersionEstimate,
    estimate_dispersions,
)
from normalization import ContrastView, prepare_contrast

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "dispersion",
    "cooks_outlier",
]


def ensure_gene_index(df: pd.DataFrame) -> pd.DataFrame:
    """
    Return a DE table indexed by gene identifier.

    Accepts tables whose gene identifiers sit in the index already or in a
    column named like gene / Gene / gene_id / SYMBOL (first match wins).
    """
    gene_aliases = [
        "gene", "Gene", "GENE", "gene_id", "GeneSymbol", "gene_symbol", "SYMBOL",
        "gene_name", "ensembl_gene_id",
    ]
    for alias in gene_aliases:
        if alias in df.columns:
            out = df.set_index(alias)
            out.index = out.index.astype(str)
            out.index.name = "gene"
            return out
    out = df.copy()
    out.index = out.index.astype(str)
    out.index.name = "gene"
    return out


def adjust_pvalues(pvalues: np.ndarray, include: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    Entries that are NaN, or excluded by ``include``, get NaN and do not count
    towards the number of tests.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    mask = ~np.isnan(pvalues)
    if include is not None:
        mask &= np.asarray(include, dtype=bool)
    padj = np.full(pvalues.shape, np.nan)
    if mask.any():
        padj[mask] = multipletests(pvalues[mask], method="fdr_bh")[1]
    return padj


def replicated_samples(design: np.ndarray, min_replicates: int = 3) -> np.ndarray:
    """Samples whose design row occurs at least ``min_replicates`` times."""
    _, inverse, counts = np.unique(design, axis=0, return_inverse=True, return_counts=True)
    return counts[np.ravel(inverse)] >= min_replicates


@dataclass(frozen=True)
class DEResult:
    """Result from differential expression testing of one contrast."""

    contrast: Contrast
    results_df: pd.DataFrame  # genes (filter order) × RESULT_COLUMNS
    vst: pd.DataFrame  # genes × samples, variance-stabilized
    normalized_counts: pd.DataFrame  # genes × samples
    size_factors: pd.Series
    dispersions: DispersionEstimate
    design: pd.DataFrame
    n_significant: int
    warnings: List[str] = field(default_factory=list)

    def sorted_table(self) -> pd.DataFrame:
        """Canonical emitted table: ascending raw p-value, NaN p-values last."""
        return self.results_df.sort_values("pvalue", na_position="last", kind="mergesort")

    def get_significant(
        self, padj_threshold: float = 0.05, lfc_threshold: float = 0.0
    ) -> pd.DataFrame:
        mask = (self.results_df["padj"] < padj_threshold) & (
            self.results_df["log2FoldChange"].abs() > lfc_threshold
        )
        return self.results_df[mask].sort_values("padj")

    def get_upregulated(self, padj: float = 0.05, lfc: float = 0.0) -> pd.DataFrame:
        mask = (self.results_df["padj"] < padj) & (self.results_df["log2FoldChange"] > lfc)
        return self.results_df[mask].sort_values("padj")

    def get_downregulated(self, padj: float = 0.05, lfc: float = 0.0) -> pd.DataFrame:
        mask = (self.results_df["padj"] < padj) & (self.results_df["log2FoldChange"] < -lfc)
        return self.results_df[mask].sort_values("padj")


@dataclass(frozen=True)
class ContrastFailure:
    """Diagnostic for a contrast that could not be fit."""

    contrast: Contrast
    error_type: str
    message: str
    details: Dict = field(default_factory=dict)


@dataclass
class ContrastBatch:
    """Outcome of a batch: complete results for some contrasts, failures for others."""

    results: Dict[str, DEResult] = field(default_factory=dict)
    failures: Dict[str, ContrastFailure] = field(default_factory=dict)

    def summary(self) -> pd.DataFrame:
        rows = []
        for name, result in self.results.items():
            rows.append(
                {
                    "contrast": name,
                    "status": "SUCCESS",
                    "n_genes": len(result.results_df),
                    "n_significant": result.n_significant,
                    "message": "; ".join(result.warnings),
                }
            )
        for name, failure in self.failures.items():
            rows.append(
                {
                    "contrast": name,
                    "status": "FAILED",
                    "n_genes": 0,
                    "n_significant": 0,
                    "message": f"{failure.error_type}: {failure.message}",
                }
            )
        return pd.DataFrame(rows, columns=["contrast", "status", "n_genes", "n_significant", "message"])


class DEAnalysisEngine:
    """Differential expression using PyDESeq2, one independent fit per contrast."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def test_contrast(
        self,
        counts: CountMatrix,
        sheet: SampleSheet,
        contrast: Contrast,
        size_factors: Optional[Union[pd.Series, Mapping[str, float], Sequence[float]]] = None,
    ) -> DEResult:
        """
        Fit and test a single contrast.

        Args:
            counts: Validated count matrix (genes × samples)
            sheet: Sample sheet with the contrast's indicator column
            contrast: Which indicator and samples to compare
            size_factors: Optional fixed size factors (one per contrast sample)

        Returns:
            DEResult for this contrast

        Raises:
            ContrastError: the contrast cannot be fit (caller decides whether
                to continue with other contrasts)
        """
        cfg = self.config
        view = prepare_contrast(
            counts,
            sheet,
            contrast,
            min_mean_count=cfg.min_mean_count,
            min_samples=cfg.min_samples,
            size_factors=size_factors,
        )
        disp = estimate_dispersions(view, cfg.dispersion, n_workers=cfg.n_workers)
        return self._wald_test(view, disp)

    def _wald_test(self, view: ContrastView, disp: DispersionEstimate) -> DEResult:
        cfg = self.config
        dds = disp.dataset
        design = view.design.to_numpy()
        n_samples, n_coefs = design.shape
        try:
            dds.fit_LFC()
            dds.calculate_cooks()
            stat_res = DeseqStats(
                dds,
                contrast=[TREATMENT, TREATED_LEVEL, CONTROL_LEVEL],
                cooks_filter=False,
                independent_filter=False,
                inference=DefaultInference(n_cpus=cfg.n_workers),
                quiet=True,
            )
            stat_res.summary()
        except FIT_ERRORS as e:
            raise ModelFitError(
                f"GLM fit failed for contrast '{view.contrast.name}': {e}",
                {"contrast": view.contrast.name, "step": "wald"},
            ) from e

        table = stat_res.results_df
        lfc = table["log2FoldChange"].to_numpy(dtype=float).copy()
        lfc_se = table["lfcSE"].to_numpy(dtype=float).copy()
        stat = table["stat"].to_numpy(dtype=float).copy()
        pvalue = table["pvalue"].to_numpy(dtype=float).copy()
        cooks = np.asarray(dds.layers["cooks"], dtype=float).T  # genes × samples
        normalized = np.asarray(dds.layers["normed_counts"], dtype=float).T.copy()

        run_warnings: List[str] = []
        zero_var = np.ptp(view.counts, axis=1) == 0
        if zero_var.any():
            message = (
                f"{int(zero_var.sum())} genes have identical counts in every sample of "
                f"contrast '{view.contrast.name}'; their statistics are NaN"
            )
            warnings.warn(message, UndefinedStatisticWarning, stacklevel=3)
            run_warnings.append(message)
            for arr in (lfc, lfc_se, stat, pvalue):
                arr[zero_var] = np.nan

        if "_LFC_converged" in dds.varm:
            converged = np.asarray(dds.varm["_LFC_converged"], dtype=bool)
            if not converged.all():
                message = f"{int((~converged).sum())} genes did not converge in the GLM fit"
                logger.warning(f"Contrast '{view.contrast.name}': {message}")
                run_warnings.append(message)

        cooks_outlier = np.zeros(len(view.genes), dtype=bool)
        if n_samples > n_coefs:
            cutoff = f_dist.ppf(cfg.cooks_quantile, n_coefs, n_samples - n_coefs)
            eligible = replicated_samples(design, cfg.min_replicates_for_cooks)
            if eligible.any():
                max_cooks = np.max(cooks[:, eligible], axis=1)
                cooks_outlier = (max_cooks > cutoff) & ~zero_var

        padj = adjust_pvalues(pvalue, include=~cooks_outlier)

        results_df = pd.DataFrame(
            {
                "baseMean": table["baseMean"].to_numpy(dtype=float),
                "log2FoldChange": lfc,
                "lfcSE": lfc_se,
                "stat": stat,
                "pvalue": pvalue,
                "padj": padj,
                "dispersion": disp.final,
                "cooks_outlier": cooks_outlier,
            },
            index=view.genes,
        )[RESULT_COLUMNS]

        # vst() refits size factors and dispersions on the dataset, so it goes last
        try:
            dds.vst(use_design=False)
        except FIT_ERRORS as e:
            raise ModelFitError(
                f"Variance-stabilizing transform failed for contrast '{view.contrast.name}': {e}",
                {"contrast": view.contrast.name, "step": "vst"},
            ) from e
        vst = np.asarray(dds.layers["vst_counts"], dtype=float).T

        n_sig = int((results_df["padj"] < cfg.padj_threshold).sum())
        logger.info(
            f"Contrast '{view.contrast.name}': tested {len(results_df)} genes, "
            f"{n_sig} with padj < {cfg.padj_threshold}, "
            f"{int(cooks_outlier.sum())} Cook's outliers"
        )

        return DEResult(
            contrast=view.contrast,
            results_df=results_df,
            vst=pd.DataFrame(vst, index=view.genes, columns=view.samples),
            normalized_counts=pd.DataFrame(normalized, index=view.genes, columns=view.samples),
            size_factors=view.size_factors,
            dispersions=disp,
            design=view.design,
            n_significant=n_sig,
            warnings=run_warnings,
        )

    def run_all_comparisons(
        self,
        counts: Union[CountMatrix, pd.DataFrame],
        sheet: Union[SampleSheet, pd.DataFrame],
        contrasts: Sequence[Contrast],
        size_factors: Optional[Dict[str, pd.Series]] = None,
    ) -> ContrastBatch:
        """
        Main entry point: validate every input, then fit each contrast independently.

        Malformed inputs raise before any contrast is fit. A contrast that
        raises ContrastError is recorded in ``failures``; every other contrast
        still produces a complete result.

        Args:
            counts: genes × samples integer counts
            sheet: sample → 0/1 indicators
            contrasts: contrasts to fit (names must be unique)
            size_factors: optional fixed size factors per contrast name

        Returns:
            ContrastBatch with results and failures keyed by contrast name
        """
        if not isinstance(counts, CountMatrix):
            counts = CountMatrix(counts)
        if not isinstance(sheet, SampleSheet):
            sheet = SampleSheet(sheet)

        names = [c.name for c in contrasts]
        if len(set(names)) != len(names):
            raise MalformedInputError(f"Contrast names must be unique: {names}")
        for contrast in contrasts:
            sheet.contrast_samples(contrast, counts)

        batch = ContrastBatch()
        for contrast in contrasts:
            fixed = (size_factors or {}).get(contrast.name)
            try:
                batch.results[contrast.name] = self.test_contrast(
                    counts, sheet, contrast, size_factors=fixed
                )
            except ContrastError as e:
                # This contrast failed, but others may succeed
                logger.error(
                    f"DE analysis of contrast '{contrast.name}' failed: {e.message}",
                    exc_info=True,
                )
                batch.failures[contrast.name] = ContrastFailure(
                    contrast=contrast,
                    error_type=type(e).__name__,
                    message=e.message,
                    details=e.details,
                )
        return batch

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
            & (results_df["log2FoldChange"].abs() > lfc_threshold)
        ].copy()
