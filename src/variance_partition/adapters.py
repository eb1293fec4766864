"""Input adapters: convert container types to plain core inputs.

The core never inspects the caller's container type.  Every supported
input is converted once, at the boundary, into a :class:`CoreInputs`
triple of ``(values, weights-or-None, metadata)`` plus row and sample
labels.

Supported response containers:
    * ``numpy.ndarray``: 2-D, rows are the response variables.
    * ``pandas.DataFrame``: index gives row names, columns give
      sample names.
    * ``polars.DataFrame`` / ``polars.LazyFrame``: converted via
      pandas.  Polars is **not** a required dependency.
    * ``scipy.sparse`` matrices: densified.
    * :class:`WeightedExpression`: a response matrix bundled with its
      observation-level weights (the output of a precision-weighting
      step).

Metadata may be a pandas or Polars DataFrame.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, runtime_checkable

import numpy as np
import pandas as pd
import scipy.sparse as sp

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

# Runtime detection avoids a hard dependency on Polars.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


@dataclass(frozen=True)
class CoreInputs:
    """Plain numeric inputs consumed by the fitting core.

    Attributes:
        values: Response matrix ``(n_rows, n_samples)`` of float64.
        weights: Observation weights of the same shape, or ``None``.
        row_names: One label per row.
        sample_names: One label per sample (column), or ``None`` when
            the container carries no column labels.
    """

    values: np.ndarray
    weights: np.ndarray | None
    row_names: list[str]
    sample_names: list[str] | None


@dataclass(frozen=True)
class WeightedExpression:
    """Response matrix bundled with observation-level weights.

    Attributes:
        values: ``(n_rows, n_samples)`` responses, as an array or a
            DataFrame (labels are taken from a DataFrame).
        weights: ``(n_rows, n_samples)`` weights matching *values*.
    """

    values: np.ndarray | pd.DataFrame
    weights: np.ndarray | pd.DataFrame


@runtime_checkable
class InputAdapter(Protocol):
    """Capability interface: anything that can produce core inputs."""

    def to_core_inputs(self) -> CoreInputs: ...


# ------------------------------------------------------------------ #
# Concrete adapters
# ------------------------------------------------------------------ #


def _default_row_names(n: int) -> list[str]:
    return [str(i) for i in range(n)]


@dataclass(frozen=True)
class ArrayAdapter:
    """Adapter for 2-D ndarrays and scipy sparse matrices."""

    values: Any
    weights: Any = None

    def to_core_inputs(self) -> CoreInputs:
        values = self.values
        if sp.issparse(values):
            values = values.toarray()
        arr = np.asarray(values, dtype=np.float64)
        if arr.ndim != 2:
            raise TypeError(
                f"Response matrix must be 2-D (rows x samples), got shape {arr.shape}."
            )
        weights = None
        if self.weights is not None:
            weights = np.asarray(
                self.weights.toarray() if sp.issparse(self.weights) else self.weights,
                dtype=np.float64,
            )
        return CoreInputs(
            values=arr,
            weights=weights,
            row_names=_default_row_names(arr.shape[0]),
            sample_names=None,
        )


@dataclass(frozen=True)
class FrameAdapter:
    """Adapter for labelled pandas DataFrames."""

    frame: pd.DataFrame
    weights: Any = None

    def to_core_inputs(self) -> CoreInputs:
        arr = self.frame.to_numpy(dtype=np.float64)
        weights = None
        if self.weights is not None:
            w = self.weights
            weights = np.asarray(
                w.to_numpy(dtype=np.float64) if isinstance(w, pd.DataFrame) else w,
                dtype=np.float64,
            )
        return CoreInputs(
            values=arr,
            weights=weights,
            row_names=[str(i) for i in self.frame.index],
            sample_names=[str(c) for c in self.frame.columns],
        )


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "input") -> pd.DataFrame:
    """Convert *obj* to a :class:`pandas.DataFrame` if necessary.

    Accepted types:
        * ``pandas.DataFrame``: returned as-is.
        * ``polars.DataFrame``: converted via ``.to_pandas()``.
        * ``polars.LazyFrame``: collected then converted.

    Raises:
        TypeError: If *obj* is not a recognised DataFrame type.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )


def resolve_adapter(data: Any, weights_matrix: Any = None) -> InputAdapter:
    """Select the adapter for *data*.

    The selection happens once; the returned adapter is the only place
    that knows about the caller's container type.

    Raises:
        TypeError: If *data* is not a supported container.
    """
    if isinstance(data, InputAdapter):
        return data
    if isinstance(data, WeightedExpression):
        if isinstance(data.values, pd.DataFrame):
            return FrameAdapter(data.values, data.weights)
        return ArrayAdapter(data.values, data.weights)
    if isinstance(data, pd.DataFrame):
        return FrameAdapter(data, weights_matrix)
    if _HAS_POLARS and isinstance(data, (pl.DataFrame, pl.LazyFrame)):
        return FrameAdapter(_ensure_pandas_df(data, name="data"), weights_matrix)
    if isinstance(data, np.ndarray) or sp.issparse(data):
        return ArrayAdapter(data, weights_matrix)
    raise TypeError(
        "data must be a numpy array, pandas DataFrame, scipy sparse matrix"
        + (", Polars DataFrame" if _HAS_POLARS else "")
        + f" or WeightedExpression, got {type(data).__name__}."
    )


def to_core_inputs(data: Any, weights_matrix: Any = None) -> CoreInputs:
    """Convert *data* (and an optional weights matrix) to :class:`CoreInputs`.

    A :class:`WeightedExpression` carries its own weights; an explicit
    *weights_matrix* is only used for unweighted containers.
    """
    return resolve_adapter(data, weights_matrix).to_core_inputs()


__all__ = [
    "ArrayAdapter",
    "CoreInputs",
    "FrameAdapter",
    "InputAdapter",
    "WeightedExpression",
    "resolve_adapter",
    "to_core_inputs",
]
