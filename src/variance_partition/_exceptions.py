"""Error and warning taxonomy.

Pre-run structural problems abort immediately with one of the
exceptions below.  Problems confined to a single row never raise:
they are recorded as a :class:`RowFitFailure` in that row's slot so a
run over tens of thousands of rows survives a handful of bad fits.

Exceptions
~~~~~~~~~~
* :class:`ConfigurationError`: inputs are inconsistent (shapes,
  unknown formula variables, zero-variance rows).
* :class:`PoolUnavailableError`: the executor is not connected.
* :class:`DesignRankDeficientError`: the fixed-effect design is
  rank deficient.  The design depends only on the formula and the
  metadata, so this is detected once, on the probe fit.

Warnings
~~~~~~~~
* :class:`ValidationWarning`: singular fit, non-convergence, high
  collinearity.
* :class:`NoReplicationWarning`: too few rows with residual degrees of
  freedom to estimate observation weights.
* :class:`SampleNameWarning`: sample labels of the data and metadata
  disagree.
"""

from __future__ import annotations

from dataclasses import dataclass

_RESCALE_HINT = (
    "Suggestion: rescale fixed effect variables.\n"
    "This will not change the variance fractions or p-values."
)


class ConfigurationError(ValueError):
    """Inputs are inconsistent; raised before any fitting starts."""


class ShapeMismatchError(ConfigurationError):
    """Data, weights and metadata disagree in shape."""


class VariableNotFoundError(ConfigurationError):
    """A formula references a column that the metadata does not have."""

    def __init__(self, variable: str) -> None:
        self.variable = variable
        super().__init__(f"Variable in formula is not found: {variable}")


class ZeroVarianceError(ConfigurationError):
    """A response row has the same value for every sample."""

    def __init__(self, row_index: int, row_name: str | None = None) -> None:
        self.row_index = row_index
        self.row_name = row_name
        label = f" ('{row_name}')" if row_name is not None else ""
        super().__init__(f"Response variable {row_index}{label} has a variance of 0")


class PoolUnavailableError(RuntimeError):
    """The worker pool is disconnected; no work was dispatched."""


class DesignRankDeficientError(ValueError):
    """The fixed-effect design matrix is column rank deficient."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"{detail}\n\n{_RESCALE_HINT}")


class ValidationWarning(UserWarning):
    """A fit is degenerate (singular, non-converged or collinear)."""


class NoReplicationWarning(UserWarning):
    """Observation weights fell back to 1 for lack of replication."""


class SampleNameWarning(UserWarning):
    """Column labels of the data do not match the metadata index."""


@dataclass(frozen=True)
class RowFitFailure:
    """Marker stored in place of a row's result when its fit failed.

    Attributes:
        row_index: 0-based position of the row in the input matrix.
        row_name: Row label (e.g. gene name), or ``None``.
        reason: Human-readable description of the failure.
    """

    row_index: int
    row_name: str | None
    reason: str

    def __str__(self) -> str:
        label = self.row_name if self.row_name is not None else self.row_index
        return f"row {label}: {self.reason}"


__all__ = [
    "ConfigurationError",
    "DesignRankDeficientError",
    "NoReplicationWarning",
    "PoolUnavailableError",
    "RowFitFailure",
    "SampleNameWarning",
    "ShapeMismatchError",
    "ValidationWarning",
    "VariableNotFoundError",
    "ZeroVarianceError",
]
