"""Order-preserving reduction of chunk results.

Workers finish chunks in whatever order they like.  Every chunk task
returns its result list tagged with the chunk's position in the plan,
and :func:`reduce_in_order` concatenates the lists strictly by tag:
chunks that arrive early are buffered until all their predecessors are
in.  Row ``i`` of the output therefore corresponds to row ``i`` of the
input whatever order the executor delivers chunks in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sized
from typing import Any, Protocol

from ._exceptions import PoolUnavailableError
from .iterators import Chunk

logger = logging.getLogger(__name__)


class _Executor(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def map_unordered(self, fn: Callable[[Any], Any], items: Iterable[Any]) -> Iterable[Any]: ...


def reduce_in_order(
    completed: Iterable[tuple[int, list[Any]]], n_chunks: int
) -> list[Any]:
    """Concatenate tagged chunk results in tag order.

    Args:
        completed: ``(tag, results)`` pairs in any order, where *tag* is
            the chunk position ``0 … n_chunks - 1``.
        n_chunks: Number of chunks that were dispatched.

    Returns:
        Flat list of per-row results in input row order.

    Raises:
        RuntimeError: If a tag is out of range, repeated, or missing
            once *completed* is exhausted.
    """
    pending: dict[int, list[Any]] = {}
    out: list[Any] = []
    next_tag = 0
    for tag, results in completed:
        if not 0 <= tag < n_chunks:
            raise RuntimeError(f"Received result for unknown chunk {tag}.")
        if tag < next_tag or tag in pending:
            raise RuntimeError(f"Received chunk {tag} more than once.")
        pending[tag] = results
        # Flush every chunk whose predecessors have all arrived.
        while next_tag in pending:
            out.extend(pending.pop(next_tag))
            next_tag += 1
    if next_tag != n_chunks:
        missing = sorted(set(range(next_tag, n_chunks)) - set(pending))
        raise RuntimeError(
            f"{len(missing)} chunk(s) never completed (first missing: {missing[0]})."
        )
    return out


class ParallelReducer:
    """Dispatch chunks to an executor and reassemble rows in order.

    Args:
        executor: An open :class:`~variance_partition.ChunkExecutor` (or
            any object with ``is_connected`` and ``map_unordered``).
    """

    def __init__(self, executor: _Executor) -> None:
        self.executor = executor

    def run(
        self,
        chunks: Iterable[Chunk],
        chunk_fn: Callable[[Chunk], tuple[int, list[Any]]],
    ) -> list[Any]:
        """Run *chunk_fn* over every chunk; return per-row results in order.

        Args:
            chunks: The chunk plan.  Must be sized (e.g. a
                :class:`~variance_partition.ChunkPlanner`) or a list.
            chunk_fn: Worker task returning ``(chunk.index, results)``.

        Raises:
            PoolUnavailableError: If the executor is not connected.  No
                work is dispatched in that case.
        """
        if not self.executor.is_connected:
            raise PoolUnavailableError(
                "The worker pool is not connected; no work was dispatched."
            )
        if not isinstance(chunks, Sized):
            chunks = list(chunks)
        n_chunks = len(chunks)
        logger.debug("Dispatching %d chunk(s)", n_chunks)
        completed = self.executor.map_unordered(chunk_fn, chunks)
        return reduce_in_order(completed, n_chunks)


__all__ = ["ParallelReducer", "reduce_in_order"]
