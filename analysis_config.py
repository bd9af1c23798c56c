"""
Analysis configuration.

Defaults live in dataclasses; a YAML file can override any of them:

    min_mean_count: 10
    padj_threshold: 0.05
    dispersion:
      fit_type: mean
    enrichment:
      null_model: permutation
      seed: 7
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import warnings
import yaml

from analysis_errors import EmptyGeneSetWarning, MalformedInputError

logger = logging.getLogger(__name__)

NULL_MODELS = ("hotelling", "permutation")
PRIORITIES = ("significance", "effect", "discordance")
FIT_TYPES = ("parametric", "mean")


@dataclass(frozen=True)
class DispersionParams:
    """Parameters passed to pydeseq2's dispersion estimation."""

    min_disp: float = 1e-8
    max_disp: float = 10.0
    fit_type: str = "parametric"  # or "mean" for a constant trend


@dataclass(frozen=True)
class EnrichmentParams:
    """Parameters for the rank-based enrichment engine."""

    score_column: str = "log2FoldChange"
    min_set_size: int = 5  # sets need more than 4 measured members
    null_model: str = "hotelling"
    n_permutations: int = 1000
    seed: int = 42
    priority: str = "significance"


@dataclass(frozen=True)
class AnalysisConfig:
    """Top-level configuration for a batch of contrasts and enrichment runs."""

    min_mean_count: float = 10.0
    min_samples: int = 3
    padj_threshold: float = 0.05
    lfc_threshold: float = 0.0
    cooks_quantile: float = 0.99
    min_replicates_for_cooks: int = 3
    n_workers: int = 1
    dispersion: DispersionParams = field(default_factory=DispersionParams)
    enrichment: EnrichmentParams = field(default_factory=EnrichmentParams)

    def __post_init__(self):
        if self.enrichment.null_model not in NULL_MODELS:
            raise MalformedInputError(
                f"Unknown null model '{self.enrichment.null_model}'",
                {"allowed": list(NULL_MODELS)},
            )
        if self.enrichment.priority not in PRIORITIES:
            raise MalformedInputError(
                f"Unknown priority '{self.enrichment.priority}'",
                {"allowed": list(PRIORITIES)},
            )
        if self.dispersion.fit_type not in FIT_TYPES:
            raise MalformedInputError(
                f"Unknown dispersion fit type '{self.dispersion.fit_type}'",
                {"allowed": list(FIT_TYPES)},
            )
        if self.n_workers < 1:
            raise MalformedInputError("n_workers must be at least 1")
        if self.min_samples < 3:
            raise MalformedInputError("min_samples cannot be lower than 3")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Build a config from a (possibly nested) mapping, rejecting unknown keys."""
        data = dict(data or {})
        dispersion = _build_section(DispersionParams, data.pop("dispersion", None), "dispersion")
        enrichment = _build_section(EnrichmentParams, data.pop("enrichment", None), "enrichment")

        known = {f.name for f in fields(cls)} - {"dispersion", "enrichment"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise MalformedInputError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                {"unknown": unknown},
            )
        _check_types(cls, data, "config")
        return cls(dispersion=dispersion, enrichment=enrichment, **data)

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "AnalysisConfig":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to YAML config file

        Returns:
            AnalysisConfig with file values layered over the defaults

        Raises:
            FileNotFoundError: If the file does not exist
            MalformedInputError: If the file contains unknown keys or bad values
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Analysis config not found: {config_path}")

        with open(config_file, "r") as f:
            raw = yaml.safe_load(f)

        if raw is not None and not isinstance(raw, dict):
            raise MalformedInputError(
                f"Analysis config must be a mapping, got {type(raw).__name__}"
            )
        logger.info(f"Loaded analysis config from {config_file}")
        return cls.from_dict(raw or {})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build_section(section_cls, values: Optional[Dict[str, Any]], name: str):
    if values is None:
        return section_cls()
    if not isinstance(values, dict):
        raise MalformedInputError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise MalformedInputError(
            f"Unknown keys in '{name}': {', '.join(unknown)}",
            {"section": name, "unknown": unknown},
        )
    _check_types(section_cls, values, name)
    return section_cls(**values)


def _check_types(config_cls, values: Dict[str, Any], name: str) -> None:
    """Reject values whose type does not match the field (ints are accepted as floats)."""
    declared = {f.name: f.type for f in fields(config_cls)}
    for key, value in values.items():
        expected = declared[key]
        if expected not in (int, float, str):
            continue
        if expected is float:
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif expected is int:
            ok = isinstance(value, int) and not isinstance(value, bool)
        else:
            ok = isinstance(value, str)
        if not ok:
            raise MalformedInputError(
                f"Config value '{name}.{key}' must be {expected.__name__}, got {value!r}",
                {"section": name, "key": key},
            )


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Install a basic stream handler for command-line runs.

    Dropped empty gene sets are already counted in the enrichment tables, so
    the per-run warning is silenced here rather than printed.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    warnings.simplefilter("ignore", EmptyGeneSetWarning)
