"""
Export of analysis results.

Writes DE, enrichment and overlap tables as TSV/CSV files, and a multi-sheet
Excel workbook with the same tables plus a Settings sheet describing the run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import re
import sys
import pandas as pd
import pydeseq2

from de_analysis import ContrastBatch
from overlap_report import OverlapReport
from pathway_enrichment import EnrichmentRun

logger = logging.getLogger(__name__)


@dataclass
class ExportData:
    """Complete export bundle, assembled by the pipeline before calling export."""

    batch: ContrastBatch
    enrichment_runs: Dict[str, EnrichmentRun] = field(default_factory=dict)
    enrichment_failures: Dict[str, str] = field(default_factory=dict)  # run → error message
    overlap: Optional[OverlapReport] = None

    # Settings/metadata: padj_threshold, lfc_threshold, null model, ...
    settings: Dict[str, Any] = field(default_factory=dict)
    sample_groups: Dict[str, str] = field(default_factory=dict)  # sample → indicator summary


class ExportEngine:
    """Table and Excel export engine for contrast and enrichment results."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '

        Args:
            name: Raw sheet name
            max_length: Maximum length (default 31 for Excel)

        Returns:
            Sanitized sheet name
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    @staticmethod
    def sanitize_file_stem(name: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_") or "unnamed"

    def write_tables(
        self, outdir: Union[str, Path], export_data: ExportData, fmt: str = "tsv"
    ) -> List[Path]:
        """
        Write every result table to ``outdir``.

        Files:
        - de_<contrast>.<fmt>: DE table sorted by raw p-value
        - vst_<contrast>.<fmt>: variance-stabilized expression
        - enrichment_<run>.<fmt>: enrichment table sorted by padj
        - overlap.<fmt>: overlap counts (when an overlap report exists)
        - contrast_summary.<fmt>: status of every contrast
        - enrichment_summary.<fmt>: status of every enrichment run (when any ran)

        Returns:
            Paths written, in the order above
        """
        if fmt not in ("tsv", "csv"):
            raise ValueError(f"Unsupported table format '{fmt}' (use 'tsv' or 'csv')")
        sep = "\t" if fmt == "tsv" else ","
        out = Path(outdir)
        out.mkdir(parents=True, exist_ok=True)
        written = []

        def save(frame: pd.DataFrame, stem: str, index: bool) -> None:
            path = out / f"{stem}.{fmt}"
            frame.to_csv(path, sep=sep, index=index)
            written.append(path)

        for name, result in export_data.batch.results.items():
            stem = self.sanitize_file_stem(name)
            save(result.sorted_table(), f"de_{stem}", index=True)
            save(result.vst, f"vst_{stem}", index=True)
        for name, run in export_data.enrichment_runs.items():
            save(run.table, f"enrichment_{self.sanitize_file_stem(name)}", index=False)
        if export_data.overlap is not None:
            save(export_data.overlap.to_frame(), "overlap", index=False)
        save(export_data.batch.summary(), "contrast_summary", index=False)
        if export_data.enrichment_runs or export_data.enrichment_failures:
            save(_enrichment_summary(export_data), "enrichment_summary", index=False)

        logger.info(f"Wrote {len(written)} tables to {out}")
        return written

    def export_excel(self, filepath: Union[str, Path], export_data: ExportData) -> None:
        """
        Export analysis results to a multi-sheet Excel workbook.

        Sheet layout: DE_{contrast}, Sig_{contrast} per contrast,
        Enrich_{run} per enrichment run, Overlap, Settings.

        Args:
            filepath: Output Excel file path (.xlsx)
            export_data: Complete export data bundle
        """
        padj_threshold = export_data.settings.get("padj_threshold", 0.05)
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            for name, de_result in export_data.batch.results.items():
                sheet_name = self.sanitize_sheet_name(f"DE_{name}")
                de_result.sorted_table().to_excel(writer, sheet_name=sheet_name)

                sig_sheet = self.sanitize_sheet_name(f"Sig_{name}")
                sig_genes = de_result.get_significant(padj_threshold)
                sig_genes.to_excel(writer, sheet_name=sig_sheet)

            for name, run in export_data.enrichment_runs.items():
                enrich_sheet = self.sanitize_sheet_name(f"Enrich_{name}")
                run.table.to_excel(writer, sheet_name=enrich_sheet, index=False)

            if export_data.overlap is not None:
                export_data.overlap.to_frame().to_excel(writer, sheet_name="Overlap", index=False)

            self._write_settings_sheet(writer, export_data)
        logger.info(f"Wrote Excel workbook {filepath}")

    def _write_settings_sheet(
        self, writer: pd.ExcelWriter, export_data: ExportData
    ) -> None:
        """
        Write Settings sheet with analysis metadata.

        Settings sheet contains key-value rows with sections:
        - Analysis Date, Python and PyDESeq2 versions
        - Settings (thresholds, enrichment options)
        - Contrasts (with success/failure status)
        - Enrichment runs (sets scored)
        - Sample groups
        """
        settings_data = [
            ["Parameter", "Value"],  # Header row
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
            ["PyDESeq2 Version", pydeseq2.__version__],
        ]

        if export_data.settings:
            settings_data.append(["---", "---"])  # Separator
            settings_data.append(["Settings", ""])
            for key, value in _flatten(export_data.settings).items():
                settings_data.append([key, str(value)])

        batch = export_data.batch
        if batch.results or batch.failures:
            settings_data.append(["---", "---"])
            settings_data.append(["Contrasts", ""])
            for name, de_result in batch.results.items():
                status = f"SUCCESS ({de_result.n_significant} significant genes)"
                if de_result.warnings:
                    status += f"; {de_result.warnings[0]}"
                settings_data.append([name, status])
            for name, failure in batch.failures.items():
                settings_data.append([name, f"FAILED ({failure.error_type}: {failure.message})"])

        if export_data.enrichment_runs or export_data.enrichment_failures:
            settings_data.append(["---", "---"])
            settings_data.append(["Enrichment Runs", ""])
            for name, run in export_data.enrichment_runs.items():
                settings_data.append(
                    [name, f"{len(run.table)} sets scored ({run.null_model}); {run.n_small} too small"]
                )
            for name, message in export_data.enrichment_failures.items():
                settings_data.append([name, f"FAILED ({message})"])

        if export_data.sample_groups:
            settings_data.append(["---", "---"])
            settings_data.append(["Sample Groups", ""])
            for sample, group in sorted(export_data.sample_groups.items()):
                settings_data.append([sample, group])

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)


def _flatten(settings: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat = {}
    for key, value in settings.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{name}."))
        else:
            flat[name] = value
    return flat


def _enrichment_summary(export_data: ExportData) -> pd.DataFrame:
    rows = [
        {"run": name, "status": "SUCCESS", "contrasts": ",".join(run.contrasts),
         "sets_scored": len(run.table), "error": ""}
        for name, run in export_data.enrichment_runs.items()
    ]
    rows += [
        {"run": name, "status": "FAILED", "contrasts": "", "sets_scored": 0, "error": message}
        for name, message in export_data.enrichment_failures.items()
    ]
    return pd.DataFrame(rows, columns=["run", "status", "contrasts", "sets_scored", "error"])
