"""
Demo dataset generator.

Simulates a two-treatment experiment (control, treatment 1, treatment 2;
3 replicates each) with negative-binomial counts, known fold changes and gene
sets whose members move together, so the DE and enrichment results can be
checked against the truth.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List
import pandas as pd
import numpy as np

from count_matrix import Contrast

CONTROL = "Control"
TREATMENTS = ("Treat1", "Treat2")

# Planted pathways: log2 fold change of members in (treat1, treat2)
PLANTED_SETS = {
    "UP_IN_BOTH": (1.5, 1.5),
    "DOWN_IN_BOTH": (-1.5, -1.5),
    "UP1_DOWN2": (1.5, -1.5),
    "TREAT1_ONLY": (2.0, 0.0),
}


@dataclass(frozen=True)
class DemoDataset:
    counts: pd.DataFrame  # genes × samples
    sample_sheet: pd.DataFrame  # samples × indicator columns
    gene_sets: Dict[str, FrozenSet[str]]
    true_lfc: pd.DataFrame  # genes × contrasts
    size_factors: pd.Series
    contrasts: List[Contrast]


def simulate_nb_counts(
    means: np.ndarray,
    dispersions: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw NB counts with mean ``means`` and variance ``mu + alpha * mu^2``."""
    r = 1.0 / dispersions
    p = r / (r + means)
    return rng.negative_binomial(r, p)


def load_demo_dataset(
    n_background: int = 600,
    set_size: int = 25,
    n_replicates: int = 3,
    seed: int = 42,
) -> DemoDataset:
    """
    Generate a reproducible two-treatment dataset.

    Dataset characteristics:
    - Samples: Control_Rep1..n, Treat1_Rep1..n, Treat2_Rep1..n
    - Genes: ``n_background`` unchanged genes plus ``set_size`` members for
      each planted set in PLANTED_SETS, and a RANDOM_SET of background genes
    - Base means log-normal; dispersion follows ``0.05 + 1/mean``
    - Sample sheet indicators ``treat1`` and ``treat2``; contrast t1 uses the
      control and Treat1 samples, t2 the control and Treat2 samples
    """
    rng = np.random.default_rng(seed)

    samples = [
        f"{group}_Rep{i + 1}" for group in (CONTROL,) + TREATMENTS for i in range(n_replicates)
    ]
    background = [f"GENE{i:04d}" for i in range(n_background)]
    gene_sets: Dict[str, FrozenSet[str]] = {}
    genes = list(background)
    lfc_rows = {gene: (0.0, 0.0) for gene in background}
    for name, effect in PLANTED_SETS.items():
        members = [f"{name}_{i:02d}" for i in range(set_size)]
        gene_sets[name] = frozenset(members)
        genes.extend(members)
        lfc_rows.update({gene: effect for gene in members})
    gene_sets["RANDOM_SET"] = frozenset(rng.choice(background, size=set_size, replace=False))

    true_lfc = pd.DataFrame.from_dict(lfc_rows, orient="index", columns=["t1", "t2"]).loc[genes]

    base_means = rng.lognormal(mean=5.0, sigma=1.0, size=len(genes))
    dispersions = 0.05 + 1.0 / base_means
    size_factors = rng.uniform(0.7, 1.3, size=len(samples))

    counts = np.empty((len(genes), len(samples)), dtype=np.int64)
    for j, sample in enumerate(samples):
        lfc = np.zeros(len(genes))
        if sample.startswith(TREATMENTS[0]):
            lfc = true_lfc["t1"].to_numpy()
        elif sample.startswith(TREATMENTS[1]):
            lfc = true_lfc["t2"].to_numpy()
        means = base_means * 2.0**lfc * size_factors[j]
        counts[:, j] = simulate_nb_counts(means, dispersions, rng)

    sample_sheet = pd.DataFrame(
        {
            "treat1": [int(s.startswith(TREATMENTS[0])) for s in samples],
            "treat2": [int(s.startswith(TREATMENTS[1])) for s in samples],
        },
        index=pd.Index(samples, name="sample"),
    )
    controls = tuple(s for s in samples if s.startswith(CONTROL))
    contrasts = [
        Contrast(
            name=f"t{k + 1}",
            indicator=f"treat{k + 1}",
            samples=controls + tuple(s for s in samples if s.startswith(treatment)),
        )
        for k, treatment in enumerate(TREATMENTS)
    ]

    return DemoDataset(
        counts=pd.DataFrame(counts, index=pd.Index(genes, name="gene"), columns=samples),
        sample_sheet=sample_sheet,
        gene_sets=gene_sets,
        true_lfc=true_lfc,
        size_factors=pd.Series(size_factors, index=samples, name="size_factor"),
        contrasts=contrasts,
    )


def two_gene_scenario() -> Dict[str, pd.DataFrame]:
    """
    Minimal worked example: gene A doubles under treatment, gene B is flat.

    Returns the counts (2 genes × 6 samples) and the matching sample sheet.
    """
    samples = ["c1", "c2", "c3", "t1", "t2", "t3"]
    counts = pd.DataFrame(
        [[100, 110, 90, 200, 220, 180], [95, 105, 100, 98, 102, 100]],
        index=pd.Index(["A", "B"], name="gene"),
        columns=samples,
    )
    sheet = pd.DataFrame({"treated": [0, 0, 0, 1, 1, 1]}, index=pd.Index(samples, name="sample"))
    return {"counts": counts, "sample_sheet": sheet}


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    lines = [
        "# RNA-seq Demo Dataset",
        "",
        "Two treatments and a control, 3 replicates each, negative-binomial counts.",
        "",
        "## Planted gene sets (log2 fold change in t1, t2)",
    ]
    lines += [f"- **{name}**: {t1:+.1f}, {t2:+.1f}" for name, (t1, t2) in PLANTED_SETS.items()]
    lines += [
        "- **RANDOM_SET**: unchanged background genes",
        "",
        "Contrasts: `t1` (Treat1 vs Control) and `t2` (Treat2 vs Control).",
    ]
    return "\n".join(lines)
