"""Caller-facing entry points.

Two operations share one pipeline:

* :func:`fit_all` fits one model per row and returns the (transformed)
  fits as a :class:`~variance_partition.FitList`.
* :func:`fit_and_decompose` runs the same pipeline with the variance
  decomposition as the transform and returns a
  :class:`~variance_partition.VarPartTable`.

Pipeline
~~~~~~~~
1. **Inputs**: the container is converted once by an input adapter
   into a response matrix, an optional weights matrix and labels.
2. **Pre-run checks**: shapes of data, weights and metadata; a
   zero-variance scan over all rows; the executor must be connected.
   Any failure aborts before a single model is fitted.
3. **Design**: the formula is evaluated once against the metadata.
4. **Probe**: the first row is fitted to choose between the mixed and
   fixed model and to reject a rank-deficient design.  Its timing is
   used for an informational run-time projection.
5. **Dispatch**: rows are split into chunks (100 by default,
   independent of the worker count) and fitted by the executor's
   workers.  Each row is fitted, validated and transformed; a failing
   row is recorded in place and never aborts the run.
6. **Reduce**: chunk results are reassembled in input row order.
7. **Report**: validation conditions are counted over all rows and
   emitted once per condition as a
   :class:`~variance_partition.ValidationWarning`.
"""

from __future__ import annotations

import logging
import pickle
import time
import warnings
from collections import Counter
from collections.abc import Iterable
from functools import partial
from typing import Any

import numpy as np
import pandas as pd

from ._config import get_chunk_count
from ._context import FitContext
from ._exceptions import (
    ConfigurationError,
    PoolUnavailableError,
    SampleNameWarning,
    ShapeMismatchError,
    ValidationWarning,
    ZeroVarianceError,
)
from ._results import FitList, VarPartTable
from ._typing import FitTransform
from .adapters import CoreInputs, _ensure_pandas_df, to_core_inputs
from .decompose import VarPartRow, decompose, resolve_adjust_terms
from .engine import ModelFitOrchestrator, RowOutcome, run_chunk
from .executor import ChunkExecutor
from .formula import RESIDUALS, ModelFormula, as_formula, build_design
from .iterators import ChunkPlanner, RowWeightedIterator
from .reducer import ParallelReducer
from .validation import DEFAULT_COLINEARITY_CUTOFF, Condition, describe

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Pre-run checks
# ------------------------------------------------------------------ #


def _check_shapes(inputs: CoreInputs, metadata: pd.DataFrame) -> None:
    n_samples = inputs.values.shape[1]
    if n_samples != len(metadata):
        raise ShapeMismatchError(
            f"The number of samples in data ({n_samples}) and metadata "
            f"({len(metadata)}) must be the same."
        )


def _check_sample_names(
    inputs: CoreInputs, metadata: pd.DataFrame, *, stacklevel: int
) -> None:
    if inputs.sample_names is None:
        return
    if [str(i) for i in metadata.index] != inputs.sample_names:
        warnings.warn(
            "Sample names of responses (i.e. columns of data) do not match "
            "sample names of metadata (i.e. rows of metadata).  Samples are "
            "matched by position.",
            SampleNameWarning,
            stacklevel=stacklevel,
        )


def _check_weights(weights: np.ndarray | None) -> None:
    if weights is not None and np.any(weights[np.isfinite(weights)] < 0):
        raise ConfigurationError("Observation weights must be non-negative.")


def _check_zero_variance(inputs: CoreInputs) -> None:
    """Raise :class:`ZeroVarianceError` for the first constant row."""
    values = inputs.values
    if values.size == 0:
        return
    with warnings.catch_warnings():
        # All-NaN rows are left to fail at fit time.
        warnings.simplefilter("ignore", RuntimeWarning)
        constant = np.nanmax(values, axis=1) == np.nanmin(values, axis=1)
    if constant.any():
        i = int(np.flatnonzero(constant)[0])
        raise ZeroVarianceError(i, inputs.row_names[i])


def _format_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


# ------------------------------------------------------------------ #
# Pipeline
# ------------------------------------------------------------------ #


def _run(
    data: Any,
    formula: str | ModelFormula,
    metadata: Any,
    executor: ChunkExecutor,
    *,
    use_weights: bool,
    weights_matrix: Any,
    reml: bool,
    show_warnings: bool,
    transform: FitTransform | None,
    chunk_count: int | None,
    quiet: bool,
    colinearity_cutoff: float,
    control: dict[str, Any] | None,
    ctx: FitContext,
    stacklevel: int,
) -> tuple[list[RowOutcome], str, list[str]]:
    start = time.perf_counter()
    formula = as_formula(formula)
    ctx.formula = str(formula)

    # ---- Inputs and pre-run checks ---------------------------------
    inputs = to_core_inputs(data, weights_matrix)
    metadata = _ensure_pandas_df(metadata, name="metadata")
    _check_shapes(inputs, metadata)
    rows = RowWeightedIterator(
        inputs.values,
        inputs.weights,
        use_weights=use_weights,
        row_names=inputs.row_names,
    )
    if rows.n_rows == 0:
        raise ConfigurationError("data has no rows.")
    if rows.use_weights:
        _check_weights(inputs.weights)
    _check_zero_variance(inputs)
    _check_sample_names(inputs, metadata, stacklevel=stacklevel + 1)
    if not executor.is_connected:
        raise PoolUnavailableError(
            "The worker pool is not connected; no work was dispatched."
        )

    ctx.n_rows = rows.n_rows
    ctx.n_samples = rows.n_samples
    ctx.use_weights = rows.use_weights
    ctx.backend = getattr(executor, "active_backend", None)
    ctx.n_workers = executor.n_workers

    # ---- Design and probe ------------------------------------------
    design = build_design(formula, metadata)
    orchestrator = ModelFitOrchestrator(
        design,
        use_weights=rows.use_weights,
        reml=reml,
        control=control,
        transform=transform,
        colinearity_cutoff=colinearity_cutoff,
    )
    probe_start = time.perf_counter()
    probe_fit = orchestrator.probe(next(rows))
    ctx.probe_seconds = time.perf_counter() - probe_start
    ctx.method = orchestrator.kind
    ctx.projected_seconds = ctx.probe_seconds * ctx.n_rows / max(ctx.n_workers, 1)
    ctx.projected_bytes = len(pickle.dumps(probe_fit)) * ctx.n_rows

    # ---- Dispatch and reduce ---------------------------------------
    planner = ChunkPlanner(
        RowWeightedIterator(
            inputs.values,
            inputs.weights,
            use_weights=rows.use_weights,
            row_names=inputs.row_names,
        ),
        n_chunks=chunk_count if chunk_count is not None else get_chunk_count(),
    )
    ctx.n_chunks = planner.n_chunks
    if not quiet:
        logger.info(
            "Fitting %s model to %d rows in %d chunks on %d worker(s)",
            ctx.method,
            ctx.n_rows,
            ctx.n_chunks,
            ctx.n_workers,
        )
        logger.info(
            "Projected run time ~%.1f s, projected memory usage > %s",
            ctx.projected_seconds,
            _format_bytes(ctx.projected_bytes),
        )

    outcomes: list[RowOutcome] = ParallelReducer(executor).run(
        planner, partial(run_chunk, orchestrator)
    )

    # ---- Report ----------------------------------------------------
    counts = Counter(c for o in outcomes for c in o.conditions)
    ctx.condition_counts = {c.value: counts[c] for c in Condition if counts[c]}
    ctx.n_failed = sum(o.failed for o in outcomes)
    if show_warnings:
        for condition in Condition:
            if counts[condition]:
                warnings.warn(
                    f"{describe(condition)} ({counts[condition]} of "
                    f"{len(outcomes)} rows)",
                    ValidationWarning,
                    stacklevel=stacklevel,
                )

    ctx.elapsed_seconds = time.perf_counter() - start
    if not quiet:
        if ctx.n_failed:
            logger.info("%d of %d row fits failed", ctx.n_failed, ctx.n_rows)
        logger.info("Total: %.1f s", ctx.elapsed_seconds)
    return outcomes, orchestrator.kind or "", inputs.row_names


def _fit(
    data: Any,
    formula: str | ModelFormula,
    metadata: Any,
    executor: ChunkExecutor | None,
    *,
    stacklevel: int,
    **options: Any,
) -> FitList:
    """Run the pipeline on *executor* (or a private one) into a FitList.

    *stacklevel* locates the caller of the public entry point, counted
    from this frame; warnings emitted during the run point there.
    """
    ctx = FitContext()
    own_executor = executor is None
    if own_executor:
        executor = ChunkExecutor(n_jobs=1).open()
    try:
        outcomes, method, row_names = _run(
            data,
            formula,
            metadata,
            executor,
            ctx=ctx,
            stacklevel=stacklevel + 1,
            **options,
        )
    finally:
        if own_executor:
            executor.close()

    df_residual = np.array(
        [np.nan if o.df_residual is None else o.df_residual for o in outcomes]
    )
    return FitList(
        row_names=tuple(row_names),
        results=tuple(o.value for o in outcomes),
        method=method,
        df_residual=df_residual,
        context=ctx,
    )


def fit_all(
    data: Any,
    formula: str | ModelFormula,
    metadata: Any,
    *,
    executor: ChunkExecutor | None = None,
    use_weights: bool = True,
    weights_matrix: Any = None,
    reml: bool = False,
    show_warnings: bool = True,
    transform: FitTransform | None = None,
    chunk_count: int | None = None,
    quiet: bool = False,
    colinearity_cutoff: float = DEFAULT_COLINEARITY_CUTOFF,
    control: dict[str, Any] | None = None,
) -> FitList:
    """Fit one linear (mixed) model per row of *data*.

    Args:
        data: Response matrix ``(n_rows, n_samples)``: a numpy array,
            pandas or Polars DataFrame, scipy sparse matrix, or a
            :class:`~variance_partition.WeightedExpression` carrying
            its own weights.  Row labels (the DataFrame index) become
            the keys of the result.
        formula: Model formula, e.g.
            ``"~ Age + (1|Individual) + (1|Tissue)"``, or a
            :class:`~variance_partition.ModelFormula`.  The rows of
            *data* are the response.
        metadata: One row per sample, one column per variable in the
            formula.  pandas or Polars DataFrame.
        executor: An open :class:`~variance_partition.ChunkExecutor`.
            When omitted, a single-worker executor is created and
            closed around the run.
        use_weights: Use observation weights if a weights matrix is
            available.  Silently ignored when there is none.
        weights_matrix: Weights ``(n_rows, n_samples)`` for unweighted
            containers.
        reml: Estimate variance components with REML instead of ML.
            ML keeps fixed and random contributions comparable.
        show_warnings: Emit one
            :class:`~variance_partition.ValidationWarning` per
            condition found among the row fits.
        transform: Function applied to every validated fit; its return
            value is stored.  Identity by default.
        chunk_count: Number of chunks (default 100, or
            ``VARIANCE_PARTITION_CHUNKS``).
        quiet: Suppress INFO-level progress logging.
        colinearity_cutoff: Correlation above which fixed design
            columns are reported as collinear.
        control: Optimizer options for ``MixedLM.fit``.

    Returns:
        A :class:`~variance_partition.FitList` in input row order.

    Raises:
        ConfigurationError: Shapes disagree, a formula variable is
            missing from *metadata*, or a row has zero variance.
        PoolUnavailableError: *executor* is not connected.
        DesignRankDeficientError: The fixed design is rank deficient.

    The residual degrees of freedom in ``FitList.df_residual`` feed
    :func:`~variance_partition.uniform_weights_if_unreplicated` when
    precision weights are estimated from these fits.
    """
    return _fit(
        data,
        formula,
        metadata,
        executor,
        use_weights=use_weights,
        weights_matrix=weights_matrix,
        reml=reml,
        show_warnings=show_warnings,
        transform=transform,
        chunk_count=chunk_count,
        quiet=quiet,
        colinearity_cutoff=colinearity_cutoff,
        control=control,
        stacklevel=3,
    )


def fit_and_decompose(
    data: Any,
    formula: str | ModelFormula,
    metadata: Any,
    *,
    executor: ChunkExecutor | None = None,
    use_weights: bool = True,
    weights_matrix: Any = None,
    reml: bool = False,
    show_warnings: bool = True,
    chunk_count: int | None = None,
    quiet: bool = False,
    colinearity_cutoff: float = DEFAULT_COLINEARITY_CUTOFF,
    control: dict[str, Any] | None = None,
    adjust_terms: Iterable[str] | None = None,
    adjust_all: bool = False,
) -> VarPartTable:
    """Fit one model per row and decompose its variance by term.

    Takes the same arguments as :func:`fit_all` (except ``transform``),
    plus:

    Args:
        adjust_terms: Terms to remove from the denominator; the table
            then reports adjusted intra-class correlations.
        adjust_all: Adjust for every term except ``Residuals``.

    Returns:
        A :class:`~variance_partition.VarPartTable` whose columns are the
        formula terms in order followed by ``Residuals``.  Each valid
        row sums to one (to one among the non-adjusted terms when
        adjusting).  Rows whose fit failed are NaN and listed in
        ``failures``.

    Raises:
        ConfigurationError: As for :func:`fit_all`, or when
            *adjust_terms* names a term not in the formula.
    """
    formula = as_formula(formula)
    adjusted = resolve_adjust_terms(formula.term_names, adjust_terms, adjust_all)

    fits = _fit(
        data,
        formula,
        metadata,
        executor,
        use_weights=use_weights,
        weights_matrix=weights_matrix,
        reml=reml,
        show_warnings=show_warnings,
        transform=partial(decompose, adjust_terms=adjusted),
        chunk_count=chunk_count,
        quiet=quiet,
        colinearity_cutoff=colinearity_cutoff,
        control=control,
        stacklevel=3,
    )

    columns = [*formula.term_names, RESIDUALS]
    values = np.full((len(fits), len(columns)), np.nan)
    n_clipped = 0
    for i, row in enumerate(fits.results):
        if isinstance(row, VarPartRow):
            values[i] = [row[c] for c in columns]
            n_clipped += bool(row.clipped)
    fractions = pd.DataFrame(values, index=pd.Index(fits.row_names), columns=columns)

    ctx = fits.context
    if ctx is not None:
        ctx.n_clipped = n_clipped
    if n_clipped and not quiet:
        logger.info("Negative contributions clipped to 0 in %d row(s)", n_clipped)

    return VarPartTable(
        fractions=fractions,
        method=fits.method,
        adjusted_for=adjusted,
        failures=fits.failures,
        context=ctx,
    )


__all__ = ["fit_all", "fit_and_decompose"]
