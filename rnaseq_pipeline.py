"""
Batch orchestration: contrasts → DE results → enrichment → overlaps → export.

Command-line use:

    python rnaseq_pipeline.py counts.tsv samples.tsv \\
        --contrast t1=treat1 --contrast t2=treat2:c1,c2,c3,s4,s5,s6 \\
        --gene-sets reactome.gmt --config analysis.yaml --outdir results
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union
import argparse
import logging
import sys
import pandas as pd

from analysis_config import AnalysisConfig, configure_logging
from analysis_errors import AnalysisError, EnrichmentError, MalformedInputError
from count_matrix import Contrast, CountMatrix, SampleSheet
from de_analysis import ContrastBatch, DEAnalysisEngine
from export_engine import ExportData, ExportEngine
from gene_sets import load_gene_sets, symbol_from_composite_key
from overlap_report import OverlapReport, call_direction_sets, compute_overlaps
from pathway_enrichment import EnrichmentRun, PathwayEnrichment
from transcript_aggregator import aggregate_transcripts, read_three_column_table

logger = logging.getLogger(__name__)

JOINT_RUN = "joint"


@dataclass
class PipelineResult:
    batch: ContrastBatch
    enrichment_runs: Dict[str, EnrichmentRun] = field(default_factory=dict)
    enrichment_failures: Dict[str, str] = field(default_factory=dict)
    overlap: Optional[OverlapReport] = None


class RNASeqPipeline:
    """
    Main pipeline orchestrator.

    Each contrast is tested independently; enrichment runs once per successful
    contrast and once jointly over all successful contrasts (when there are
    at least two). A run that cannot be scored is recorded as a failure and
    the DE results and overlaps are kept.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.de_engine = DEAnalysisEngine(self.config)
        self.enrichment = PathwayEnrichment(self.config.enrichment, n_workers=self.config.n_workers)

    def run(
        self,
        counts: Union[CountMatrix, pd.DataFrame],
        sheet: Union[SampleSheet, pd.DataFrame],
        contrasts: Sequence[Contrast],
        gene_sets: Optional[Mapping[str, Sequence[str]]] = None,
        id_map=None,
        size_factors: Optional[Dict[str, pd.Series]] = None,
    ) -> PipelineResult:
        """
        Run the complete analysis in memory.

        Args:
            counts: genes × samples count matrix
            sheet: sample sheet with 0/1 indicators
            contrasts: contrasts to test
            gene_sets: set name → genes; enrichment is skipped when None
            id_map: translation of DE gene ids to gene-set ids (dict or callable)
            size_factors: optional fixed size factors per contrast

        Returns:
            PipelineResult with DE batch, enrichment runs and overlap report

        Raises:
            MalformedInputError: a contrast is named like the joint run
        """
        if gene_sets is not None and any(c.name == JOINT_RUN for c in contrasts):
            raise MalformedInputError(
                f"Contrast name '{JOINT_RUN}' is reserved for the joint enrichment run",
                {"contrasts": [c.name for c in contrasts]},
            )
        batch = self.de_engine.run_all_comparisons(counts, sheet, contrasts, size_factors)
        logger.info(
            f"DE finished: {len(batch.results)} contrasts succeeded, {len(batch.failures)} failed"
        )
        result = PipelineResult(batch=batch)
        if not batch.results:
            return result

        if gene_sets is not None:
            for name, de_result in batch.results.items():
                self._enrich(result, name, {name: de_result}, gene_sets, id_map)
            if len(batch.results) > 1:
                self._enrich(result, JOINT_RUN, batch.results, gene_sets, id_map)

        label_sets = call_direction_sets(
            batch.results, self.config.padj_threshold, self.config.lfc_threshold
        )
        result.overlap = compute_overlaps(label_sets)
        return result

    def _enrich(self, result: PipelineResult, label: str, results, gene_sets, id_map) -> None:
        try:
            result.enrichment_runs[label] = self.enrichment.run(results, gene_sets, id_map)
        except EnrichmentError as e:
            logger.error(f"Enrichment run '{label}' failed: {e.message}")
            result.enrichment_failures[label] = e.message

    def save(
        self,
        result: PipelineResult,
        outdir: Union[str, Path],
        fmt: str = "tsv",
        excel: bool = False,
        sheet: Optional[SampleSheet] = None,
    ) -> List[Path]:
        """Write all tables (and optionally an Excel workbook) to ``outdir``."""
        sample_groups = {}
        if sheet is not None:
            frame = sheet.to_frame()
            sample_groups = {
                sample: ", ".join(f"{col}={int(val)}" for col, val in row.items())
                for sample, row in frame.iterrows()
            }
        export_data = ExportData(
            batch=result.batch,
            enrichment_runs=result.enrichment_runs,
            enrichment_failures=result.enrichment_failures,
            overlap=result.overlap,
            settings=self.config.to_dict(),
            sample_groups=sample_groups,
        )
        engine = ExportEngine()
        written = engine.write_tables(outdir, export_data, fmt=fmt)
        if excel:
            workbook = Path(outdir) / "rnaseq_results.xlsx"
            engine.export_excel(workbook, export_data)
            written.append(workbook)
        return written


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Two-treatment RNA-seq contrasts with multi-contrast pathway enrichment"
    )
    parser.add_argument(
        "counts",
        help="genes × samples count table (TSV/CSV), or a headerless "
        "sample/target_id/est_counts table with --transcripts",
    )
    parser.add_argument("samples", help="sample sheet (TSV/CSV) with 0/1 indicator columns")
    parser.add_argument(
        "--contrast",
        action="append",
        required=True,
        metavar="NAME=INDICATOR[:S1,S2,...]",
        help="contrast to test (repeatable)",
    )
    parser.add_argument(
        "--transcripts",
        action="store_true",
        help="COUNTS is a transcript-level three-column table to aggregate per gene",
    )
    parser.add_argument("--tx2gene", help="transcript_id/gene_id table for --transcripts")
    parser.add_argument("--gene-sets", help="GMT file, long (set, gene) table or Enrichr library")
    parser.add_argument(
        "--symbols",
        action="store_true",
        help="match gene sets on the symbol part of '<gene_id> <symbol>' keys",
    )
    parser.add_argument("--config", help="YAML analysis configuration")
    parser.add_argument("--outdir", default="results", help="output directory")
    parser.add_argument("--format", choices=["tsv", "csv"], default="tsv")
    parser.add_argument("--excel", action="store_true", help="also write an Excel workbook")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper())

    try:
        config = AnalysisConfig.from_yaml(args.config) if args.config else AnalysisConfig()
        if args.transcripts:
            tx2gene = pd.read_csv(args.tx2gene, sep=None, engine="python") if args.tx2gene else None
            counts = aggregate_transcripts(read_three_column_table(args.counts), tx2gene)
        else:
            counts = CountMatrix.from_file(args.counts)
        sheet = SampleSheet.from_file(args.samples)
        contrasts = [Contrast.parse(spec) for spec in args.contrast]
        gene_sets = load_gene_sets(args.gene_sets) if args.gene_sets else None
    except (AnalysisError, FileNotFoundError) as e:
        logger.error(f"Could not load inputs: {e}")
        return 2

    pipeline = RNASeqPipeline(config)
    try:
        result = pipeline.run(
            counts,
            sheet,
            contrasts,
            gene_sets=gene_sets,
            id_map=symbol_from_composite_key if args.symbols else None,
        )
    except AnalysisError as e:
        logger.error(f"Analysis aborted: {e.message}")
        return 2

    pipeline.save(result, args.outdir, fmt=args.format, excel=args.excel, sheet=sheet)
    return 1 if result.batch.failures or result.enrichment_failures else 0


if __name__ == "__main__":
    sys.exit(main())
