"""Exception and warning types raised by the roll-up pipeline.

Structural problems (bad columns, shape or key mismatches, thresholds on
metrics that are not in the table) raise a ``PipelineError`` subclass and
abort the run. Robust aggregation that fails to converge is not fatal and is
reported through ``ConvergenceWarning`` plus a per-row flag.
"""

from __future__ import annotations


class PipelineError(ValueError):
    """Base class for fatal pipeline errors.

    Args:
        message: Description of the violated invariant
        stage: Name of the pipeline stage that failed, if known

    """

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def with_stage(self, stage: str) -> PipelineError:
        """Return the same error annotated with the failing stage."""
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class InputFormatError(PipelineError):
    """Expected columns are missing or abundance columns are malformed."""


class IntegrityError(PipelineError):
    """Duplicate keys or rows without a unique protein assignment."""


class ThresholdConfigError(PipelineError):
    """A filter threshold was requested for a metric absent from the input."""


class ShapeMismatchError(PipelineError):
    """Matrix and metadata dimensions disagree."""


class ConvergenceWarning(UserWarning):
    """An iterative step stopped at its iteration cap without converging."""
