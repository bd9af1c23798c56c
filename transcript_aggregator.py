"""
Collapse per-sample transcript abundances into a gene-level count matrix.

Input is the long three-column table written by the quantification stage
(sample, transcript id, estimated counts). Transcripts are grouped by gene key
with exact string matching, summed per sample and rounded to integers.
"""

from os import PathLike
from typing import Dict, Iterable, Optional, Union
import logging
import pandas as pd
import numpy as np

from analysis_errors import MalformedInputError
from count_matrix import CountMatrix

logger = logging.getLogger(__name__)

THREE_COLUMN_NAMES = ["sample", "target_id", "est_counts"]


def read_three_column_table(path: Union[str, PathLike]) -> pd.DataFrame:
    """
    Read the headerless ``sample<TAB>target_id<TAB>est_counts`` table.

    Compression is inferred from the file name, so ``3col.tsv.gz`` works as is.
    """
    table = pd.read_csv(
        path,
        sep="\t",
        header=None,
        names=THREE_COLUMN_NAMES,
        dtype={"sample": str, "target_id": str},
        compression="infer",
    )
    logger.info(
        f"Read {len(table)} transcript records for "
        f"{table['sample'].nunique()} samples from {path}"
    )
    return table


def gene_key_from_gencode_header(header: str) -> str:
    """
    Composite gene key ``"<gene_id> <gene_name>"`` from a GENCODE transcript header.

    GENCODE transcript FASTA headers are pipe-delimited:
    ``ENST...|ENSG...|OTTHUMG...|OTTHUMT...|tx_name|gene_name|length|biotype|``
    """
    fields = header.split("|")
    if len(fields) < 6 or not fields[1] or not fields[5]:
        raise MalformedInputError(
            f"Transcript id is not a GENCODE header: '{header}'", {"header": header}
        )
    return f"{fields[1]} {fields[5]}"


def tx2gene_from_headers(transcripts: Iterable[str]) -> Dict[str, str]:
    """Build a transcript → composite gene key mapping from GENCODE headers."""
    return {tx: gene_key_from_gencode_header(tx) for tx in transcripts}


def _as_mapping(tx2gene: Union[pd.Series, pd.DataFrame, Dict[str, str]]) -> pd.Series:
    if isinstance(tx2gene, pd.DataFrame):
        if {"transcript_id", "gene_id"} - set(tx2gene.columns):
            raise MalformedInputError(
                "tx2gene table needs 'transcript_id' and 'gene_id' columns",
                {"columns": list(tx2gene.columns)},
            )
        mapping = tx2gene.set_index("transcript_id")["gene_id"]
    elif isinstance(tx2gene, pd.Series):
        mapping = tx2gene
    else:
        mapping = pd.Series(dict(tx2gene))

    if mapping.index.has_duplicates:
        conflicting = mapping.groupby(level=0).nunique()
        conflicting = conflicting[conflicting > 1].index.tolist()
        if conflicting:
            raise MalformedInputError(
                f"Transcripts mapped to more than one gene: {conflicting[:5]}",
                {"transcripts": conflicting},
            )
        mapping = mapping[~mapping.index.duplicated()]
    return mapping.astype(str)


def aggregate_transcripts(
    records: pd.DataFrame,
    tx2gene: Optional[Union[pd.Series, pd.DataFrame, Dict[str, str]]] = None,
    sample_col: str = "sample",
    transcript_col: str = "target_id",
    value_col: str = "est_counts",
) -> CountMatrix:
    """
    Sum transcript-level values per gene and sample, then round to integers.

    Args:
        records: Long table with one row per (sample, transcript)
        tx2gene: transcript → gene mapping (Series, dict, or DataFrame with
            transcript_id/gene_id columns). When None, keys are derived from
            GENCODE transcript headers.
        sample_col, transcript_col, value_col: Column names in ``records``

    Returns:
        Dense CountMatrix (genes × samples, both sorted); genes a sample has
        no transcripts for are 0 in that sample.

    Raises:
        MalformedInputError: missing columns, or negative / non-finite values
    """
    missing = [c for c in (sample_col, transcript_col, value_col) if c not in records.columns]
    if missing:
        raise MalformedInputError(
            f"Transcript table is missing columns: {missing}",
            {"columns": list(records.columns)},
        )

    values = pd.to_numeric(records[value_col], errors="coerce")
    if values.isna().any() or not np.isfinite(values.to_numpy()).all():
        raise MalformedInputError(
            f"Transcript table has {int((~np.isfinite(values.to_numpy(dtype=float))).sum())} "
            f"missing or non-finite values"
        )
    if (values < 0).any():
        raise MalformedInputError(
            f"Transcript table has {int((values < 0).sum())} negative values"
        )

    transcripts = records[transcript_col].astype(str)
    if tx2gene is None:
        mapping = pd.Series(tx2gene_from_headers(transcripts.unique()))
    else:
        mapping = _as_mapping(tx2gene)

    genes = transcripts.map(mapping)
    unmapped = genes.isna()
    if unmapped.any():
        logger.warning(
            f"Dropped {int(unmapped.sum())} records for "
            f"{transcripts[unmapped].nunique()} transcripts with no gene mapping"
        )

    long_df = pd.DataFrame(
        {
            "gene": genes[~unmapped].values,
            "sample": records.loc[~unmapped, sample_col].astype(str).values,
            "value": values[~unmapped].values,
        }
    )
    if long_df.empty:
        raise MalformedInputError("No transcript could be mapped to a gene")

    gene_table = (
        long_df.groupby(["gene", "sample"])["value"]
        .sum()
        .unstack("sample", fill_value=0.0)
        .sort_index()
        .sort_index(axis=1)
    )
    counts = np.rint(gene_table.to_numpy(dtype=float)).astype(np.int64)
    logger.info(
        f"Aggregated {long_df.shape[0]} transcript records into "
        f"{counts.shape[0]} genes × {counts.shape[1]} samples"
    )
    return CountMatrix(pd.DataFrame(counts, index=gene_table.index, columns=gene_table.columns))
