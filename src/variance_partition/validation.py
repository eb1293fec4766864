"""Model status checks for fitted rows.

:func:`validate` inspects a fit for degenerate conditions and returns a
:class:`ModelStatus`.  Each check is independent:

==================  ======  ==============================================
Condition           Status  Trigger
==================  ======  ==============================================
``SINGULAR_FIT``    WARN    a variance component estimated at the boundary
``NON_CONVERGENCE`` WARN    the optimizer reported non-convergence
``COLLINEARITY``    WARN    |corr| between two fixed design columns
                            exceeds ``colinearity_cutoff``
``RANK_DEFICIENT``  FAIL    the fixed design is column rank deficient
==================  ======  ==============================================

A WARN lets fitting proceed; a FAIL means the fit cannot be used.
Rank deficiency depends only on the formula and metadata, so the
orchestrator turns a FAIL on the probe fit into a run-level abort.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ._exceptions import _RESCALE_HINT

DEFAULT_COLINEARITY_CUTOFF = 0.999


class Status(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


class Condition(str, Enum):
    SINGULAR_FIT = "singular_fit"
    NON_CONVERGENCE = "non_convergence"
    COLLINEARITY = "collinearity"
    RANK_DEFICIENT = "rank_deficient"


_MESSAGES: dict[Condition, str] = {
    Condition.SINGULAR_FIT: (
        "Model fit is singular: one or more variance components were "
        "estimated at zero."
    ),
    Condition.NON_CONVERGENCE: "Model failed to converge.",
    Condition.COLLINEARITY: (
        "Fixed effect variables are highly collinear; variance fractions "
        "of these variables may be unstable."
    ),
    Condition.RANK_DEFICIENT: (
        "The fixed-effects model matrix is column rank deficient.\n\n"
        + _RESCALE_HINT
    ),
}


def describe(condition: Condition) -> str:
    """Human-readable message for *condition*."""
    return _MESSAGES[condition]


@dataclass(frozen=True)
class ModelStatus:
    """Outcome of :func:`validate`.

    Attributes:
        status: Worst status over all triggered conditions.
        reasons: Triggered condition codes.
        details: Extra numbers behind each condition (e.g. the observed
            correlation or the boundary terms).
    """

    status: Status
    reasons: frozenset[Condition] = frozenset()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    @property
    def failed(self) -> bool:
        return self.status is Status.FAIL

    def messages(self) -> list[str]:
        """Human-readable message per triggered condition, in a fixed order."""
        return [describe(c) for c in Condition if c in self.reasons]


def validate(
    fit: Any,
    colinearity_cutoff: float = DEFAULT_COLINEARITY_CUTOFF,
    *,
    check_singular: bool = True,
) -> ModelStatus:
    """Check *fit* for singularity, non-convergence and collinearity.

    Args:
        fit: A :class:`~variance_partition.solvers.FixedFit` or
            :class:`~variance_partition.solvers.MixedFit`.
        colinearity_cutoff: Correlation above which fixed design columns
            are reported as collinear.
        check_singular: Report boundary variance components.  Set to
            ``False`` to suppress singular-fit warnings.

    Returns:
        A :class:`ModelStatus`.
    """
    reasons: set[Condition] = set()
    details: dict[str, Any] = {}

    if fit.is_rank_deficient:
        reasons.add(Condition.RANK_DEFICIENT)
        details["rank"] = fit.design_rank
        details["n_columns"] = fit.n_columns

    boundary = getattr(fit, "boundary_terms", ())
    if check_singular and boundary:
        reasons.add(Condition.SINGULAR_FIT)
        details["boundary_terms"] = tuple(boundary)

    if not fit.converged:
        reasons.add(Condition.NON_CONVERGENCE)

    if fit.max_correlation > colinearity_cutoff:
        reasons.add(Condition.COLLINEARITY)
        details["max_correlation"] = fit.max_correlation

    if Condition.RANK_DEFICIENT in reasons:
        status = Status.FAIL
    elif reasons:
        status = Status.WARN
    else:
        status = Status.OK
    return ModelStatus(status=status, reasons=frozenset(reasons), details=details)


__all__ = [
    "DEFAULT_COLINEARITY_CUTOFF",
    "Condition",
    "ModelStatus",
    "Status",
    "describe",
    "validate",
]
