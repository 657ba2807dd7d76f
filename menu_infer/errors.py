# menu_infer/errors.py
"""
Error taxonomy for the inference pipeline.

Only structurally invalid input is fatal (InputFailure). Thumbnail render
errors are raised by renderers and recovered inside Phase 2. Low yield,
gate rejections and non-convergence are not exceptions at all: they are
recorded in the session log under the FailureKind labels below.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class InputFailure(PipelineError):
    """Zero pages or zero usable tokens: the run aborts before Phase 0."""


class RegionExtractionFailure(PipelineError):
    """A region thumbnail could not be rendered."""


class ParseCancelled(PipelineError):
    """Cooperative cancellation was requested for the parse session."""


class FailureKind:
    """Labels attached to recoverable-failure log entries."""
    REGION_EXTRACTION = "region_extraction"
    LOW_YIELD = "low_yield"
    VALIDATION = "validation"
    CONVERGENCE = "convergence"
