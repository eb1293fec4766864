"""Fit orchestration: one model per row unit.

The :class:`ModelFitOrchestrator` owns everything a worker needs to turn
a :class:`~variance_partition.iterators.RowUnit` into a result:

1. **Model kind**: decided once, on the first row (the *probe*).  A
   mixed fit is attempted; when the formula has no random terms the
   solver reports :class:`~variance_partition.solvers.NoRandomEffects`
   and every row of the run takes the fixed path instead.
2. **Probe validation**: the design depends only on the formula and
   the metadata, so a rank-deficient design found on the probe aborts
   the run with :class:`~variance_partition.DesignRankDeficientError`.
3. **Per-row fit**: the design is bound once; only the response (and
   weights) of each row changes.
4. **Validation**: every fit passes through
   :func:`~variance_partition.validation.validate`.  Warnings travel
   back with the row; a hard failure becomes a
   :class:`~variance_partition.RowFitFailure`.
5. **Transform**: the caller-supplied function is applied to the
   validated fit (identity by default).

The orchestrator is a plain picklable object: it is shipped to worker
processes together with each chunk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ._exceptions import DesignRankDeficientError, RowFitFailure
from ._typing import FitTransform
from .formula import DesignMatrices
from .iterators import Chunk, RowUnit
from .solvers import (
    FixedFit,
    MixedFit,
    NoRandomEffects,
    RankDeficientDesign,
    fit_model,
)
from .validation import DEFAULT_COLINEARITY_CUTOFF, Condition, validate

logger = logging.getLogger(__name__)


def _identity(fit: Any) -> Any:
    return fit


@dataclass(frozen=True)
class RowOutcome:
    """What a worker sends back for one row.

    Attributes:
        index: 0-based row position in the input matrix.
        name: Row label, or ``None``.
        value: Transformed fit, or a :class:`RowFitFailure`.
        conditions: Validation conditions the fit triggered.
        df_residual: Residual degrees of freedom of the fit (``None``
            for failed rows).
    """

    index: int
    name: str | None
    value: Any
    conditions: frozenset[Condition] = frozenset()
    df_residual: float | None = None

    @property
    def failed(self) -> bool:
        return isinstance(self.value, RowFitFailure)


def fit_one(
    row_unit: RowUnit,
    design: DesignMatrices,
    effects_kind: str,
    weights_enabled: bool,
    *,
    reml: bool = False,
    control: dict[str, Any] | None = None,
) -> FixedFit | MixedFit:
    """Fit the model of one row.

    Args:
        row_unit: Response (and weights) of the row.
        design: Design shared by all rows.
        effects_kind: ``"mixed"`` or ``"fixed"``.
        weights_enabled: Pass the row's weights to the solver.
        reml: REML instead of ML for mixed fits.
        control: Optimizer options for mixed fits.
    """
    weights = row_unit.weights if weights_enabled else None
    return fit_model(
        design,
        row_unit.response,
        weights,
        kind=effects_kind,
        reml=reml,
        control=control,
    )


class ModelFitOrchestrator:
    """Fit, validate and transform row units against one design.

    Construct the orchestrator, call :meth:`probe` with the first row to
    fix the model kind, then call :meth:`fit_row` for every row (usually
    via :func:`run_chunk` inside a worker task).

    Args:
        design: Design built once from the formula and metadata.
        use_weights: Pass observation weights to the solver.
        reml: Use REML for mixed fits.  ML is the default: REML
            integrates the fixed effects out before estimating the
            variance components, so fixed and random contributions
            would no longer be on one scale.
        control: Optimizer options forwarded to ``MixedLM.fit``.
        transform: Function applied to every validated fit.  Defaults
            to the identity.
        colinearity_cutoff: Correlation above which fixed design columns
            are reported as collinear.
    """

    def __init__(
        self,
        design: DesignMatrices,
        *,
        use_weights: bool = True,
        reml: bool = False,
        control: dict[str, Any] | None = None,
        transform: FitTransform | None = None,
        colinearity_cutoff: float = DEFAULT_COLINEARITY_CUTOFF,
    ) -> None:
        self.design = design
        self.use_weights = use_weights
        self.reml = reml
        self.control = control
        self.transform = transform if transform is not None else _identity
        self.colinearity_cutoff = colinearity_cutoff
        self.kind: str | None = None

    def probe(self, row_unit: RowUnit) -> FixedFit | MixedFit:
        """Fit the first row, fix the model kind and check the design.

        Warnings raised by the probe fit are not emitted here: the probe
        row is fitted again in the first chunk and reported with the
        other rows.

        Returns:
            The raw fit of the probe row.

        Raises:
            DesignRankDeficientError: If the fixed design is rank
                deficient (or leaves no residual degrees of freedom).
        """
        try:
            try:
                fit = fit_one(
                    row_unit,
                    self.design,
                    "mixed",
                    self.use_weights,
                    reml=self.reml,
                    control=self.control,
                )
                kind = "mixed"
            except NoRandomEffects:
                fit = fit_one(row_unit, self.design, "fixed", self.use_weights)
                kind = "fixed"
        except RankDeficientDesign as exc:
            raise DesignRankDeficientError(f"Problem with design: {exc}.") from None

        status = validate(fit, self.colinearity_cutoff)
        if status.failed:
            raise DesignRankDeficientError(
                "Problem with design: the fixed-effects model matrix is "
                "column rank deficient."
            )
        self.kind = kind
        logger.debug("Probe fit on row %d selected the %s model", row_unit.index, kind)
        return fit

    def fit_row(self, row_unit: RowUnit) -> RowOutcome:
        """Fit, validate and transform one row; never raises for row problems."""
        if self.kind is None:
            raise RuntimeError("probe() must be called before fit_row().")

        try:
            fit = fit_one(
                row_unit,
                self.design,
                self.kind,
                self.use_weights,
                reml=self.reml,
                control=self.control,
            )
        except Exception as exc:
            logger.debug("Fit of row %d failed: %s", row_unit.index, exc)
            return self._failure(row_unit, f"{type(exc).__name__}: {exc}")

        status = validate(fit, self.colinearity_cutoff)
        if status.failed:
            return self._failure(row_unit, " ".join(status.messages()))
        if status.reasons:
            logger.debug(
                "Row %d: %s",
                row_unit.index,
                ", ".join(sorted(c.value for c in status.reasons)),
            )

        try:
            value = self.transform(fit)
        except Exception as exc:
            logger.debug("Transform of row %d failed: %s", row_unit.index, exc)
            return self._failure(row_unit, f"transform failed: {type(exc).__name__}: {exc}")

        return RowOutcome(
            index=row_unit.index,
            name=row_unit.name,
            value=value,
            conditions=status.reasons,
            df_residual=fit.df_residual,
        )

    @staticmethod
    def _failure(row_unit: RowUnit, reason: str) -> RowOutcome:
        return RowOutcome(
            index=row_unit.index,
            name=row_unit.name,
            value=RowFitFailure(row_unit.index, row_unit.name, reason),
        )


def run_chunk(
    orchestrator: ModelFitOrchestrator, chunk: Chunk
) -> tuple[int, list[RowOutcome]]:
    """Worker task: fit every row of *chunk* sequentially.

    Returns:
        ``(chunk.index, outcomes)`` so the reducer can restore order.
    """
    return chunk.index, [orchestrator.fit_row(row) for row in chunk]


__all__ = [
    "ModelFitOrchestrator",
    "RowFitFailure",
    "RowOutcome",
    "fit_one",
    "run_chunk",
]
