"""
Error and warning taxonomy for the contrast and enrichment core.

MalformedInputError aborts a whole run before any computation starts.
ContrastError subclasses abort a single contrast; the batch layer records
them as failures and carries on with the remaining contrasts. EnrichmentError
likewise fails one enrichment run without touching the DE results.
"""

from typing import Any, Optional


class AnalysisError(Exception):
    """Base class for errors raised by the analysis core."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message: str = message
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)


class MalformedInputError(AnalysisError):
    """Raised when a count matrix, sample sheet or config fails validation."""


class ContrastError(AnalysisError):
    """A single contrast cannot be fit. Other contrasts are unaffected."""


class InsufficientSamplesError(ContrastError):
    """Fewer than the minimum number of samples (or an empty group) in a contrast."""


class NoDetectableGenesError(ContrastError):
    """No gene survives the detectability filter or has a nonzero reference."""


class ModelFitError(ContrastError):
    """The negative-binomial model cannot be fit for a contrast."""


class EnrichmentError(AnalysisError):
    """An enrichment run cannot be scored (too few genes shared by its contrasts)."""


class UndefinedStatisticWarning(UserWarning):
    """A gene has zero-variance counts; its statistics are reported as NaN."""


class EmptyGeneSetWarning(UserWarning):
    """Gene sets with no measured members were dropped from an enrichment run."""
