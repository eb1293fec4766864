"""Row iteration and chunk planning.

A run fits one model per row of a ``(n_rows, n_samples)`` matrix.
Rows are streamed as :class:`RowUnit` objects by a
:class:`RowWeightedIterator`; a :class:`ChunkPlanner` groups contiguous
row ranges into :class:`Chunk` objects, one per parallel task, so that
the per-task dispatch overhead is paid once per chunk instead of once
per row.

Neither class copies the full matrix.  A chunk holds *views* of its
row block and only builds row units when iterated, so the memory held
by a task is bounded by one chunk's rows.  When a chunk is shipped to a
worker process only its block is serialised.

Chunk sizes follow the balanced partition

    size_i = ⌊N / K⌋ + (1 if i < N mod K else 0),   i = 0, …, K − 1

with ``K = min(n_chunks, N)``, so any two chunks differ in size by at
most one row and the partition depends only on ``(N, K)``.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from ._exceptions import ShapeMismatchError


@dataclass(frozen=True)
class RowUnit:
    """One regression problem: a response row and its weights.

    Attributes:
        index: 0-based position of the row in the input matrix.
        response: Response vector ``(n_samples,)``.
        weights: Observation weights ``(n_samples,)`` or ``None``.
        name: Row label (e.g. gene name), or ``None``.
    """

    index: int
    response: np.ndarray
    weights: np.ndarray | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.weights is not None and len(self.weights) != len(self.response):
            raise ShapeMismatchError(
                f"Row {self.index}: {len(self.weights)} weights for "
                f"{len(self.response)} responses."
            )


class RowWeightedIterator:
    """Lazily yield :class:`RowUnit` objects from a matrix.

    The iterator is single-pass: once exhausted, build a new one to
    iterate again.

    Args:
        values: Response matrix ``(n_rows, n_samples)``.
        weights: Weights matrix of identical shape, or ``None``.
        use_weights: Attach each row's weights to its unit.  When no
            weights matrix is given this is silently downgraded to
            unweighted iteration.
        row_names: Optional label per row.
        offset: Row index of ``values[0]`` in the full matrix; used when
            iterating over a chunk's block.

    Raises:
        ShapeMismatchError: If *use_weights* is requested and *weights*
            does not have the same shape as *values*.
    """

    def __init__(
        self,
        values: np.ndarray,
        weights: np.ndarray | None = None,
        *,
        use_weights: bool = True,
        row_names: list[str] | None = None,
        offset: int = 0,
    ) -> None:
        values = np.asarray(values)
        if values.ndim != 2:
            raise ShapeMismatchError(
                f"Response matrix must be 2-D, got shape {values.shape}."
            )
        if weights is None:
            use_weights = False
        elif use_weights:
            weights = np.asarray(weights)
            if weights.shape != values.shape:
                raise ShapeMismatchError(
                    "Data and weights matrix must have the same dimensions: "
                    f"{values.shape} vs {weights.shape}."
                )
        if row_names is not None and len(row_names) != values.shape[0]:
            raise ShapeMismatchError(
                f"{len(row_names)} row names for {values.shape[0]} rows."
            )
        self._values = values
        self._weights = weights if use_weights else None
        self._row_names = row_names
        self._offset = offset
        self._pos = 0

    @property
    def n_rows(self) -> int:
        return int(self._values.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self._values.shape[1])

    @property
    def use_weights(self) -> bool:
        return self._weights is not None

    def __iter__(self) -> RowWeightedIterator:
        return self

    def __next__(self) -> RowUnit:
        if self._pos >= self.n_rows:
            raise StopIteration
        i = self._pos
        self._pos += 1
        return RowUnit(
            index=self._offset + i,
            response=self._values[i],
            weights=self._weights[i] if self._weights is not None else None,
            name=self._row_names[i] if self._row_names is not None else None,
        )

    def block(self, start: int, stop: int) -> Chunk:
        """Return rows ``[start, stop)`` as an unmaterialised chunk.

        Does not advance the iterator.
        """
        return Chunk(
            index=-1,
            start=self._offset + start,
            stop=self._offset + stop,
            values=self._values[start:stop],
            weights=self._weights[start:stop] if self._weights is not None else None,
            row_names=(
                self._row_names[start:stop] if self._row_names is not None else None
            ),
        )


@dataclass(frozen=True)
class Chunk:
    """A contiguous block of rows dispatched as one parallel task.

    Attributes:
        index: Position of the chunk in the plan; the reducer uses it to
            restore row order.
        start: First row index (inclusive).
        stop: Last row index (exclusive).
        values: View of the response rows ``[start, stop)``.
        weights: View of the matching weights, or ``None``.
        row_names: Labels of the rows, or ``None``.
    """

    index: int
    start: int
    stop: int
    values: np.ndarray
    weights: np.ndarray | None = None
    row_names: list[str] | None = None

    def __len__(self) -> int:
        return self.stop - self.start

    def __iter__(self) -> Iterator[RowUnit]:
        return RowWeightedIterator(
            self.values,
            self.weights,
            use_weights=self.weights is not None,
            row_names=self.row_names,
            offset=self.start,
        )


def plan_chunks(n_rows: int, n_chunks: int = 100) -> list[tuple[int, int]]:
    """Partition ``[0, n_rows)`` into ``min(n_chunks, n_rows)`` ranges.

    Returns:
        ``(start, stop)`` pairs, contiguous and non-overlapping, whose
        sizes differ by at most one.

    Raises:
        ValueError: If *n_chunks* is not positive or *n_rows* is negative.
    """
    if n_chunks < 1:
        raise ValueError(f"n_chunks must be at least 1, got {n_chunks}.")
    if n_rows < 0:
        raise ValueError(f"n_rows must be non-negative, got {n_rows}.")
    k = min(n_chunks, n_rows)
    if k == 0:
        return []
    base, extra = divmod(n_rows, k)
    bounds: list[tuple[int, int]] = []
    start = 0
    for i in range(k):
        stop = start + base + (1 if i < extra else 0)
        bounds.append((start, stop))
        start = stop
    return bounds


class ChunkPlanner:
    """Split a :class:`RowWeightedIterator`'s rows into lazy chunks.

    Args:
        rows: Source of the row block views.  The planner reads blocks
            from it without advancing it.
        n_chunks: Target number of chunks (default 100), independent of
            the number of workers.
    """

    def __init__(self, rows: RowWeightedIterator, n_chunks: int = 100) -> None:
        self._rows = rows
        self._bounds = plan_chunks(rows.n_rows, n_chunks)

    @property
    def n_chunks(self) -> int:
        return len(self._bounds)

    @property
    def bounds(self) -> list[tuple[int, int]]:
        return list(self._bounds)

    def __len__(self) -> int:
        return self.n_chunks

    def __iter__(self) -> Iterator[Chunk]:
        for i, (start, stop) in enumerate(self._bounds):
            block = self._rows.block(start, stop)
            yield Chunk(
                index=i,
                start=block.start,
                stop=block.stop,
                values=block.values,
                weights=block.weights,
                row_names=block.row_names,
            )


__all__ = [
    "Chunk",
    "ChunkPlanner",
    "RowUnit",
    "RowWeightedIterator",
    "plan_chunks",
]
