"""
Rank-based multi-contrast pathway enrichment.

Every gene is ranked within each contrast and ranks are scaled to [-1, 1].
A gene set's score in one contrast is half the difference between the mean
scaled rank of its members and of all other genes. Across N contrasts the
set's scores form a vector; the combined effect distance is its Euclidean
norm, signed by the dominant dimension, and the discordance is the standard
deviation of the per-contrast scores.

Significance compares members with non-members on the joint scaled ranks,
either with Hotelling's T² (closed form) or against a seeded permutation
null of set-size-matched random gene draws.

Classes:
    EnrichmentRun: Result of one enrichment run (one or more contrasts)
    PathwayEnrichment: Runs enrichment from DE results and gene sets
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import warnings
import pandas as pd
import numpy as np
from scipy.stats import f as f_dist

from analysis_config import EnrichmentParams
from analysis_errors import EmptyGeneSetWarning, EnrichmentError, MalformedInputError
from de_analysis import DEResult, adjust_pvalues, ensure_gene_index
from parallel_utils import map_partitions

logger = logging.getLogger(__name__)

IdMap = Union[Mapping[str, str], Callable[[str], str]]


def effect_matrix(
    results: Mapping[str, Union[DEResult, pd.DataFrame]],
    column: str = "log2FoldChange",
    id_map: Optional[IdMap] = None,
) -> pd.DataFrame:
    """
    Genes × contrasts matrix of one DE statistic.

    Only genes measured (non-NaN) in every contrast are kept. With ``id_map``
    gene identifiers are translated first; unmapped genes are dropped and
    values of genes that map to the same identifier are averaged.

    Args:
        results: contrast name → DEResult or DE table
        column: DE column to use ('log2FoldChange' or 'stat')
        id_map: optional identifier translation (dict-like or callable)

    Returns:
        DataFrame indexed by gene, one column per contrast in input order

    Raises:
        EnrichmentError: fewer than 3 genes are shared, too few to scale
            ranks and estimate a covariance
    """
    if not results:
        raise MalformedInputError("At least one contrast is needed for enrichment")

    columns = []
    for name, result in results.items():
        table = result.results_df if isinstance(result, DEResult) else ensure_gene_index(result)
        if column not in table.columns:
            raise MalformedInputError(
                f"DE table for '{name}' has no column '{column}'",
                {"contrast": name, "columns": list(table.columns)},
            )
        values = pd.to_numeric(table[column], errors="coerce").dropna()
        if id_map is not None:
            mapper = id_map if callable(id_map) else pd.Series(id_map)
            mapped = values.index.map(mapper)
            keep = ~pd.isna(mapped)
            values = pd.Series(values.to_numpy()[keep], index=mapped[keep])
            values = values.groupby(level=0).mean()
        columns.append(values.rename(name))

    matrix = pd.concat(columns, axis=1, join="inner")
    matrix.index.name = "gene"
    if len(matrix) < 3:
        raise EnrichmentError(
            f"Only {len(matrix)} genes are measured in every contrast",
            {"contrasts": list(results)},
        )
    return matrix


def scaled_ranks(effects: pd.DataFrame) -> pd.DataFrame:
    """Per-column average-tie ranks scaled linearly to [-1, 1]."""
    n = len(effects)
    ranks = effects.rank(method="average")
    return (2.0 * ranks - n - 1.0) / (n - 1.0)


def effect_distance(scores: Sequence[float]) -> float:
    """
    Signed length of a set's score vector.

    One dimension: the score itself. Several: the Euclidean norm, signed by
    the dimension with the largest magnitude. When dimensions tie for the
    largest magnitude the sign of their sum decides; an exact cancellation
    gives 0.
    """
    scores = np.asarray(scores, dtype=float)
    if scores.size == 1:
        return float(scores[0])
    magnitude = np.abs(scores)
    dominant = np.isclose(magnitude, magnitude.max())
    total = scores[dominant].sum()
    direction = 0.0 if np.isclose(total, 0.0) else np.sign(total)
    return float(direction * np.sqrt(np.sum(scores**2)))


def discordance(scores: Sequence[float]) -> float:
    scores = np.asarray(scores, dtype=float)
    if scores.size < 2:
        return np.nan
    return float(np.std(scores, ddof=1))


class _RankMoments:
    """Totals of the scaled rank matrix, so member / non-member moments are cheap."""

    def __init__(self, ranks: np.ndarray):
        self.ranks = ranks
        self.n, self.dims = ranks.shape
        self.total = ranks.sum(axis=0)
        self.cross = ranks.T @ ranks

    def group_stats(self, members: np.ndarray):
        """Member mean, non-member mean and pooled within-group covariance."""
        sub = self.ranks[members]
        k = sub.shape[0]
        rest = self.n - k
        sum_in = sub.sum(axis=0)
        sum_out = self.total - sum_in
        mean_in = sum_in / k
        mean_out = sum_out / rest
        cross_in = sub.T @ sub
        cross_out = self.cross - cross_in
        scatter = (
            cross_in - k * np.outer(mean_in, mean_in)
            + cross_out - rest * np.outer(mean_out, mean_out)
        )
        pooled = scatter / (self.n - 2)
        return mean_in, mean_out, pooled, k

    def hotelling(self, members: np.ndarray) -> float:
        """Two-group Hotelling T² of members against non-members."""
        mean_in, mean_out, pooled, k = self.group_stats(members)
        diff = mean_in - mean_out
        t2 = (k * (self.n - k) / self.n) * diff @ np.linalg.pinv(pooled) @ diff
        return float(t2)


def hotelling_pvalue(t2: float, n_genes: int, n_dims: int) -> float:
    """Exact F conversion of a two-group T²: F(p, n - p - 1)."""
    df2 = n_genes - n_dims - 1
    if df2 <= 0 or not np.isfinite(t2):
        return np.nan
    f_stat = t2 * df2 / (n_dims * (n_genes - 2))
    return float(f_dist.sf(f_stat, n_dims, df2))


@dataclass(frozen=True)
class EnrichmentRun:
    """One enrichment run over one or more contrasts."""

    contrasts: Tuple[str, ...]
    table: pd.DataFrame
    ranks: pd.DataFrame  # genes × contrasts, scaled to [-1, 1]
    members: Dict[str, FrozenSet[str]]  # measured members of every scored set
    null_model: str
    n_small: int = 0
    n_empty: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def dims(self) -> int:
        return len(self.contrasts)

    def top_sets(self, n: int = 10) -> pd.DataFrame:
        return self.table.head(n)

    def significant(self, padj_threshold: float = 0.05) -> pd.DataFrame:
        return self.table[self.table["padj"] < padj_threshold]


def detailed_sets(run: EnrichmentRun, n: int = 5) -> Dict[str, pd.DataFrame]:
    """
    Member-level scaled ranks of the top ``n`` sets of a run.

    Returns:
        set name → DataFrame (members × contrasts), rows ordered by mean
        scaled rank descending
    """
    details = {}
    for name in run.table["set"].head(n):
        genes = sorted(run.members[name])
        member_ranks = run.ranks.loc[genes]
        order = member_ranks.mean(axis=1).sort_values(ascending=False).index
        details[name] = member_ranks.loc[order]
    return details


class PathwayEnrichment:
    """
    Multi-contrast rank-based enrichment of gene sets.

    Supports:
    - One or many contrasts scored jointly
    - Hotelling T² or permutation significance
    - Sorting by significance, effect size or discordance
    """

    def __init__(self, params: Optional[EnrichmentParams] = None, n_workers: int = 1):
        self.params = params or EnrichmentParams()
        self.n_workers = n_workers

    def prepare_sets(
        self, gene_sets: Mapping[str, Sequence[str]], measured: pd.Index
    ) -> Tuple[Dict[str, FrozenSet[str]], int, int]:
        """
        Intersect sets with measured genes and drop those too small to score.

        Returns (kept sets, number of small sets, number of empty sets).
        """
        measured_set = set(measured)
        n_genes = len(measured_set)
        kept, n_small, n_empty = {}, 0, 0
        for name, genes in gene_sets.items():
            members = frozenset(g for g in genes if g in measured_set)
            if not members:
                n_empty += 1
            elif len(members) < self.params.min_set_size or len(members) >= n_genes:
                n_small += 1
            else:
                kept[name] = members
        if n_empty:
            warnings.warn(
                f"{n_empty} gene sets have no measured members and were dropped",
                EmptyGeneSetWarning,
                stacklevel=3,
            )
        return kept, n_small, n_empty

    def _permutation_nulls(self, moments: _RankMoments, sizes: Sequence[int]) -> Dict[int, np.ndarray]:
        rng = np.random.default_rng(self.params.seed)
        nulls = {}
        for size in sorted(set(sizes)):
            draws = np.empty(self.params.n_permutations)
            for b in range(self.params.n_permutations):
                draws[b] = moments.hotelling(rng.choice(moments.n, size=size, replace=False))
            nulls[size] = draws
        return nulls

    def run(
        self,
        results: Mapping[str, Union[DEResult, pd.DataFrame]],
        gene_sets: Mapping[str, Sequence[str]],
        id_map: Optional[IdMap] = None,
    ) -> EnrichmentRun:
        """
        Score every gene set against the contrasts in ``results`` jointly.

        Args:
            results: contrast name → DEResult or DE table (1..N contrasts)
            gene_sets: set name → gene identifiers
            id_map: optional translation of DE gene ids to gene set ids

        Returns:
            EnrichmentRun with the sorted table
        """
        params = self.params
        effects = effect_matrix(results, params.score_column, id_map)
        ranks = scaled_ranks(effects)
        contrasts = tuple(effects.columns)
        n_genes, n_dims = ranks.shape

        sets, n_small, n_empty = self.prepare_sets(gene_sets, ranks.index)
        run_warnings = []
        if n_small:
            run_warnings.append(
                f"{n_small} gene sets skipped with fewer than {params.min_set_size} measured members"
            )
        names = list(sets)
        positions = [ranks.index.get_indexer(sorted(sets[name])) for name in names]
        moments = _RankMoments(ranks.to_numpy())

        nulls = None
        if params.null_model == "permutation":
            nulls = self._permutation_nulls(moments, [len(p) for p in positions])

        def score_chunk(start: int, stop: int) -> List[dict]:
            rows = []
            for name, members in zip(names[start:stop], positions[start:stop]):
                mean_in, mean_out, _, k = moments.group_stats(members)
                scores = (mean_in - mean_out) / 2.0
                t2 = moments.hotelling(members)
                if nulls is None:
                    pvalue = hotelling_pvalue(t2, n_genes, n_dims)
                else:
                    null = nulls[k]
                    pvalue = (1.0 + np.sum(null >= t2)) / (1.0 + null.size)
                row = {"set": name, "set_size": k}
                row.update({f"s_{c}": float(s) for c, s in zip(contrasts, scores)})
                row["s_dist"] = effect_distance(scores)
                row["SD"] = discordance(scores)
                row["pvalue"] = float(pvalue)
                rows.append(row)
            return rows

        chunks = map_partitions(score_chunk, len(names), self.n_workers, chunk_size=200)
        rows = [row for chunk in chunks for row in chunk]
        columns = ["set", "set_size"] + [f"s_{c}" for c in contrasts] + ["s_dist", "SD", "pvalue", "padj"]
        table = pd.DataFrame(rows, columns=columns[:-1])
        table["padj"] = adjust_pvalues(table["pvalue"].to_numpy(dtype=float))
        table = self._sort(table)

        logger.info(
            f"Enrichment over {n_dims} contrast(s) ({', '.join(contrasts)}): "
            f"{len(table)} sets scored on {n_genes} genes, {n_small} too small, "
            f"{n_empty} empty, {int((table['padj'] < 0.05).sum())} with padj < 0.05"
        )
        return EnrichmentRun(
            contrasts=contrasts,
            table=table,
            ranks=ranks,
            members=sets,
            null_model=params.null_model,
            n_small=n_small,
            n_empty=n_empty,
            warnings=run_warnings,
        )

    def _sort(self, table: pd.DataFrame) -> pd.DataFrame:
        ordered = table.assign(_abs=table["s_dist"].abs())
        if self.params.priority == "effect":
            keys, ascending = ["_abs", "padj", "set"], [False, True, True]
        elif self.params.priority == "discordance":
            keys, ascending = ["SD", "padj", "set"], [False, True, True]
        else:
            keys, ascending = ["padj", "_abs", "set"], [True, False, True]
        ordered = ordered.sort_values(keys, ascending=ascending, na_position="last", kind="mergesort")
        return ordered.drop(columns="_abs").reset_index(drop=True)

    def run_each(
        self,
        results: Mapping[str, Union[DEResult, pd.DataFrame]],
        gene_sets: Mapping[str, Sequence[str]],
        id_map: Optional[IdMap] = None,
    ) -> Dict[str, EnrichmentRun]:
        """One single-contrast run per contrast."""
        return {name: self.run({name: result}, gene_sets, id_map) for name, result in results.items()}
