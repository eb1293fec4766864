"""Run context: mutable accumulator for run telemetry.

A :class:`FitContext` is created at the start of
:func:`~variance_partition.fit_all` and filled in as the run
progresses.  It is attached to the returned
:class:`~variance_partition.FitList` /
:class:`~variance_partition.VarPartTable` so that callers can inspect
what happened without re-running anything.

The context is **not** part of the serialised result:
:meth:`~variance_partition.VarPartTable.to_dict` skips it.

Lifecycle::

    ┌──────────────────────────────────────────────┐
    │  fit_all()                                   │
    │  ├─ ctx = FitContext()                       │
    │  ├─ ctx.n_rows / n_samples / use_weights     │
    │  ├─ orchestrator.probe(first row)            │
    │  │   ├─ ctx.method                           │
    │  │   ├─ ctx.probe_seconds                    │
    │  │   └─ ctx.projected_seconds / _bytes       │
    │  ├─ ParallelReducer.run(…)                   │
    │  │   ├─ ctx.n_chunks / n_workers             │
    │  │   └─ ctx.condition_counts                 │
    │  └─ ctx.elapsed_seconds                      │
    └──────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FitContext:
    """Mutable accumulator for run telemetry.

    Every field defaults to ``None`` (or an empty container) so the
    context can be created empty and populated incrementally.  A
    ``None`` field means that stage of the run has not happened.

    The time and memory projections are computed from the probe fit
    and are informational only: they never change how the run is
    scheduled.
    """

    # ---- Inputs --------------------------------------------------
    n_rows: int | None = None
    """Number of response rows."""

    n_samples: int | None = None
    """Number of samples (columns) per row."""

    use_weights: bool | None = None
    """Whether observation weights were passed to the solver."""

    formula: str | None = None
    """Normalised formula text."""

    # ---- Probe ---------------------------------------------------
    method: str | None = None
    """``"fixed"`` or ``"mixed"``, decided on the probe fit."""

    probe_seconds: float | None = None
    """Wall time of the probe fit."""

    projected_seconds: float | None = None
    """Projected total fit time: probe time × rows ÷ workers."""

    projected_bytes: int | None = None
    """Projected size of all fits: serialised probe fit × rows."""

    # ---- Execution -----------------------------------------------
    backend: str | None = None
    """joblib backend of the executor."""

    n_chunks: int | None = None
    """Number of chunks the rows were split into."""

    n_workers: int | None = None
    """Effective number of workers."""

    elapsed_seconds: float | None = None
    """Wall time of the whole run."""

    # ---- Outcomes ------------------------------------------------
    n_failed: int = 0
    """Rows recorded as :class:`~variance_partition.RowFitFailure`."""

    condition_counts: dict[str, int] = field(default_factory=dict)
    """Number of rows per validation condition (e.g. ``"singular_fit"``)."""

    n_clipped: int = 0
    """Rows where a negative contribution was clipped to zero."""

    extra: dict[str, Any] = field(default_factory=dict)
    """Free-form slot for caller annotations."""
