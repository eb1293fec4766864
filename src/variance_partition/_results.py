"""Typed result objects for a run.

Frozen dataclasses that provide:

* **Attribute access**: ``table.method``, ``table.fractions``, etc.
* **Dict-like access**: ``table["method"]``, ``table.get("key")``,
  ``"key" in table`` for consumers that prefer bracket syntax.
* **Serialisation**: ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

Two result types mirror the two entry points:

* :class:`FitList`: returned by :func:`~variance_partition.fit_all`;
  an ordered mapping row name → transformed fit (or
  :class:`~variance_partition.RowFitFailure`).
* :class:`VarPartTable`: returned by
  :func:`~variance_partition.fit_and_decompose`; one row of variance
  fractions per input row.

Both are frozen to communicate that results are a snapshot of a
completed run.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

from ._exceptions import RowFitFailure
from .decompose import VarPartRow
from .formula import RESIDUALS

if TYPE_CHECKING:
    from ._context import FitContext

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, and
    np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]`` raises ``KeyError`` on miss
    2. ``result.get(key, d)`` returns *d* on miss (default ``None``)
    3. ``"key" in result`` tests membership

    Subclasses may override ``_SERIALIZERS`` to register custom
    conversion functions for non-primitive fields (e.g. a DataFrame →
    nested ``dict``).  Serializers compose with
    :func:`_numpy_to_python`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Applies per-field serializers from ``_SERIALIZERS``, then runs
        :func:`_numpy_to_python` on every value so the returned dict
        is fully JSON-serialisable.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


def _failures_to_list(failures: tuple[RowFitFailure, ...]) -> list[dict[str, Any]]:
    return [asdict(f) for f in failures]


# ------------------------------------------------------------------ #
# VarPartTable
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class VarPartTable(_DictAccessMixin):
    """Variance fractions for every input row.

    Returned by :func:`~variance_partition.fit_and_decompose`.

    All fields are accessible both as attributes (``table.method``)
    and via dict syntax (``table["method"]``).
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "fractions": lambda df: {
            str(k): v for k, v in df.to_dict(orient="index").items()
        },
        "failures": _failures_to_list,
    }

    fractions: pd.DataFrame
    """Fractions ``(n_rows, n_terms + 1)``: index = row names, columns =
    term names in formula order followed by ``Residuals``.  Rows whose
    fit failed are all-NaN."""

    method: str
    """``"fixed"`` or ``"mixed"``."""

    adjusted_for: tuple[str, ...] = ()
    """Terms removed from the denominator (empty when unadjusted)."""

    failures: tuple[RowFitFailure, ...] = ()
    """Rows whose fit failed, in row order."""

    # ---- Computation context (not serialised) ----------------------
    context: FitContext | None = field(default=None, repr=False, compare=False)
    """Run telemetry.  Excluded from ``to_dict()`` serialisation."""

    @property
    def label(self) -> str:
        """Axis label suited to the kind of fractions in the table."""
        if self.adjusted_for:
            return "adjusted intra-class correlation"
        return "Variance explained (%)"

    @property
    def term_names(self) -> tuple[str, ...]:
        """Output columns without ``Residuals``."""
        return tuple(c for c in self.fractions.columns if c != RESIDUALS)

    @property
    def valid(self) -> pd.Series:
        """Boolean mask of rows with a successful fit."""
        return self.fractions.notna().all(axis=1)

    def row(self, name: str) -> VarPartRow:
        """Fractions of one row as a :class:`VarPartRow`.

        Raises:
            KeyError: If *name* is not a row label.
        """
        values = self.fractions.loc[name]
        if isinstance(values, pd.DataFrame):
            values = values.iloc[0]
        return VarPartRow(
            fractions={str(k): float(v) for k, v in values.items()},
            adjusted_for=self.adjusted_for,
        )

    def __len__(self) -> int:
        return len(self.fractions)


# ------------------------------------------------------------------ #
# FitList
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class FitList(Mapping[str, Any]):
    """Ordered mapping row name → transformed fit.

    Returned by :func:`~variance_partition.fit_all`.  Values are
    whatever the ``transform`` returned (the raw
    :class:`~variance_partition.solvers.FixedFit` /
    :class:`~variance_partition.solvers.MixedFit` by default), or a
    :class:`~variance_partition.RowFitFailure` for rows whose fit
    failed.

    Iteration yields row names in input order.  Lookup accepts a row
    name; use :meth:`at` for positional access.
    """

    row_names: tuple[str, ...]
    results: tuple[Any, ...]
    method: str
    df_residual: np.ndarray
    context: FitContext | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if len(self.row_names) != len(self.results):
            raise ValueError(
                f"{len(self.row_names)} row names for {len(self.results)} results."
            )
        object.__setattr__(
            self, "_index", {name: i for i, name in enumerate(self.row_names)}
        )

    def __getitem__(self, key: str) -> Any:
        return self.results[self._index[key]]  # type: ignore[attr-defined]

    def __iter__(self) -> Iterator[str]:
        return iter(self.row_names)

    def __len__(self) -> int:
        return len(self.results)

    def at(self, position: int) -> Any:
        """Result of the row at *position*."""
        return self.results[position]

    @property
    def failures(self) -> tuple[RowFitFailure, ...]:
        """Rows whose fit failed, in row order."""
        return tuple(r for r in self.results if isinstance(r, RowFitFailure))

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of rows with a successful fit."""
        return np.array([not isinstance(r, RowFitFailure) for r in self.results])

    def __repr__(self) -> str:
        return (
            f"FitList(n_rows={len(self)}, method={self.method!r}, "
            f"n_failed={len(self.failures)})"
        )


__all__ = ["FitList", "VarPartTable"]
