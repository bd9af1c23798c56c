"""
Overlap of significant gene lists across contrasts.

Labels are ``"<contrast> up"`` and ``"<contrast> down"``. For every non-empty
combination of labels the report holds the inclusive intersection size (genes
in all of the combination's sets) and the exclusive region size (genes in
exactly those sets and no other), i.e. the numbers behind a Venn or UpSet
diagram.
"""

from dataclasses import dataclass
from itertools import combinations
from typing import Dict, FrozenSet, Mapping, Sequence, Tuple
import logging
import pandas as pd

from analysis_errors import MalformedInputError
from de_analysis import DEResult

logger = logging.getLogger(__name__)

Combination = Tuple[str, ...]


@dataclass(frozen=True)
class OverlapReport:
    labels: Tuple[str, ...]
    sets: Dict[str, FrozenSet[str]]
    inclusive: Dict[Combination, int]
    exclusive: Dict[Combination, int]

    def to_frame(self) -> pd.DataFrame:
        """One row per combination with a 0/1 membership column per label."""
        rows = []
        for combo in self.inclusive:
            row = {label: int(label in combo) for label in self.labels}
            row["combination"] = " & ".join(combo)
            row["n_labels"] = len(combo)
            row["inclusive"] = self.inclusive[combo]
            row["exclusive"] = self.exclusive[combo]
            rows.append(row)
        return pd.DataFrame(rows)

    def genes_in(self, *labels: str) -> FrozenSet[str]:
        """Genes shared by all the given labels."""
        return frozenset.intersection(*(self.sets[label] for label in labels))


def call_direction_sets(
    results: Mapping[str, DEResult],
    padj_threshold: float = 0.05,
    lfc_threshold: float = 0.0,
) -> Dict[str, FrozenSet[str]]:
    """Significant up- and down-regulated genes per contrast, labelled by direction."""
    sets = {}
    for name, result in results.items():
        up = result.get_upregulated(padj_threshold, lfc_threshold)
        down = result.get_downregulated(padj_threshold, lfc_threshold)
        sets[f"{name} up"] = frozenset(up.index)
        sets[f"{name} down"] = frozenset(down.index)
    return sets


def compute_overlaps(label_sets: Mapping[str, Sequence[str]]) -> OverlapReport:
    """
    Inclusive and exclusive counts for every non-empty combination of sets.

    Args:
        label_sets: label → gene identifiers (at least two labels)

    Returns:
        OverlapReport keyed by tuples of labels in input order
    """
    if len(label_sets) < 2:
        raise MalformedInputError(
            f"Overlap needs at least 2 sets, got {len(label_sets)}",
            {"labels": list(label_sets)},
        )
    labels = tuple(label_sets)
    sets = {label: frozenset(label_sets[label]) for label in labels}

    inclusive, exclusive = {}, {}
    for size in range(1, len(labels) + 1):
        for combo in combinations(labels, size):
            inclusive[combo] = len(frozenset.intersection(*(sets[label] for label in combo)))
            exclusive[combo] = 0

    # Each gene falls in exactly one region: the combination of labels containing it
    for gene in frozenset().union(*sets.values()):
        region = tuple(label for label in labels if gene in sets[label])
        exclusive[region] += 1

    logger.debug(f"Computed overlaps of {len(labels)} sets over {len(inclusive)} combinations")
    return OverlapReport(labels=labels, sets=sets, inclusive=inclusive, exclusive=exclusive)
