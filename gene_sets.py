"""
Gene set sourcing for the enrichment engine.

Gene sets come from a GMT file, a two-column long table (set, gene), or a
named Enrichr library fetched through GSEApy. All loaders return a plain
``{set name: frozenset(gene ids)}`` mapping; intersection with measured genes
happens in the enrichment engine.
"""

from os import PathLike
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Union
import logging
import pandas as pd
import gseapy as gp

from analysis_errors import MalformedInputError

logger = logging.getLogger(__name__)

GeneSets = Dict[str, FrozenSet[str]]


def _clean(raw: Mapping[str, Iterable[str]]) -> GeneSets:
    sets = {}
    for name, genes in raw.items():
        members = frozenset(str(g).strip() for g in genes if g is not None and str(g).strip())
        sets[str(name)] = members
    return sets


def load_gmt(path: Union[str, PathLike]) -> GeneSets:
    """
    Read a GMT file: one set per line, ``name<TAB>description<TAB>gene...``.

    Raises:
        FileNotFoundError: if the file does not exist
        MalformedInputError: if the file holds no gene sets
    """
    gmt_file = Path(path)
    if not gmt_file.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")
    sets = _clean(gp.read_gmt(str(gmt_file)))
    if not sets:
        raise MalformedInputError(f"No gene sets found in {path}")
    logger.info(f"Loaded {len(sets)} gene sets from {gmt_file.name}")
    return sets


def from_long_table(
    table: pd.DataFrame, set_col: str = "set", gene_col: str = "gene"
) -> GeneSets:
    """Build gene sets from a long table with one (set, gene) pair per row."""
    missing = [c for c in (set_col, gene_col) if c not in table.columns]
    if missing:
        raise MalformedInputError(
            f"Gene set table is missing columns: {missing}",
            {"columns": list(table.columns)},
        )
    pairs = table[[set_col, gene_col]].dropna().astype(str)
    grouped = pairs.groupby(set_col)[gene_col].apply(list).to_dict()
    return _clean(grouped)


def read_long_table(
    path: Union[str, PathLike], set_col: str = "set", gene_col: str = "gene"
) -> GeneSets:
    """Read a CSV/TSV long (set, gene) table from disk."""
    sep = "," if str(path).lower().endswith((".csv", ".csv.gz")) else "\t"
    sets = from_long_table(pd.read_csv(path, sep=sep), set_col, gene_col)
    logger.info(f"Loaded {len(sets)} gene sets from {path}")
    return sets


def fetch_library(name: str, organism: str = "Human") -> GeneSets:
    """
    Download a named Enrichr library (needs network access).

    Args:
        name: Enrichr library name (e.g. 'Reactome_2022')
        organism: Enrichr organism
    """
    logger.info(f"Fetching Enrichr library '{name}' ({organism})")
    return _clean(gp.get_library(name=name, organism=organism))


def load_gene_sets(source: Union[str, PathLike]) -> GeneSets:
    """
    Load gene sets from a GMT path, a long-table path, or an Enrichr library name.

    Anything that is not an existing file is treated as a library name.
    """
    path = Path(source)
    if path.exists():
        if path.suffix.lower() == ".gmt":
            return load_gmt(path)
        return read_long_table(path)
    return fetch_library(str(source))


def symbol_from_composite_key(key: str) -> str:
    """
    Gene symbol from a ``"<gene_id> <gene_name>"`` composite key.

    Keys without a space are returned unchanged.
    """
    parts = str(key).split()
    return parts[-1] if parts else str(key)


def set_sizes(gene_sets: Mapping[str, FrozenSet[str]]) -> pd.Series:
    """Number of members per set, largest first."""
    return pd.Series({name: len(genes) for name, genes in gene_sets.items()}).sort_values(
        ascending=False
    )
