"""Tests for the executor handle and the order-preserving reducer."""

import numpy as np
import pytest

from variance_partition._exceptions import PoolUnavailableError
from variance_partition.executor import ChunkExecutor
from variance_partition.iterators import ChunkPlanner, RowWeightedIterator
from variance_partition.reducer import ParallelReducer, reduce_in_order


def _row_indices(chunk):
    return chunk.index, [unit.index for unit in chunk]


def _square(x):
    return x * x


class _ReversingExecutor:
    """Completes every task, then delivers results last-to-first."""

    is_connected = True

    def __init__(self):
        self.calls = 0

    def map_unordered(self, fn, items):
        self.calls += 1
        return reversed([fn(item) for item in items])


class _DisconnectedExecutor:
    is_connected = False

    def map_unordered(self, fn, items):
        raise AssertionError("work dispatched to a disconnected pool")


def _planner(n_rows, n_chunks):
    values = np.arange(n_rows * 2, dtype=float).reshape(n_rows, 2)
    return ChunkPlanner(RowWeightedIterator(values), n_chunks=n_chunks)


class TestReduceInOrder:
    def test_in_order_input(self):
        assert reduce_in_order([(0, [1, 2]), (1, [3])], 2) == [1, 2, 3]

    def test_reversed_input(self):
        assert reduce_in_order([(2, ["e"]), (1, ["c", "d"]), (0, ["a", "b"])], 3) == [
            "a",
            "b",
            "c",
            "d",
            "e",
        ]

    def test_missing_chunk(self):
        with pytest.raises(RuntimeError, match="never completed"):
            reduce_in_order([(0, [1]), (2, [3])], 3)

    def test_duplicate_chunk(self):
        with pytest.raises(RuntimeError, match="more than once"):
            reduce_in_order([(0, [1]), (0, [1])], 2)

    def test_duplicate_pending_chunk(self):
        with pytest.raises(RuntimeError, match="more than once"):
            reduce_in_order([(1, [1]), (1, [1])], 2)

    def test_unknown_chunk(self):
        with pytest.raises(RuntimeError, match="unknown chunk"):
            reduce_in_order([(5, [1])], 2)

    def test_empty(self):
        assert reduce_in_order([], 0) == []


class TestParallelReducer:
    def test_order_preserved_under_reversed_completion(self):
        executor = _ReversingExecutor()
        out = ParallelReducer(executor).run(_planner(1000, 100), _row_indices)
        assert out == list(range(1000))
        assert executor.calls == 1

    def test_fails_fast_when_disconnected(self):
        with pytest.raises(PoolUnavailableError):
            ParallelReducer(_DisconnectedExecutor()).run(_planner(10, 2), _row_indices)

    def test_accepts_unsized_iterable(self):
        chunks = iter(list(_planner(9, 4)))
        out = ParallelReducer(_ReversingExecutor()).run(chunks, _row_indices)
        assert out == list(range(9))

    @pytest.mark.parametrize("backend", ["sequential", "threading"])
    def test_real_executor(self, backend):
        with ChunkExecutor(n_jobs=2, backend=backend) as ex:
            out = ParallelReducer(ex).run(_planner(57, 10), _row_indices)
        assert out == list(range(57))


class TestChunkExecutor:
    def test_lifecycle(self):
        ex = ChunkExecutor(n_jobs=1, backend="sequential")
        assert not ex.is_connected
        ex.open()
        assert ex.is_connected
        assert ex.active_backend == "sequential"
        ex.close()
        assert not ex.is_connected
        assert ex.active_backend is None
        ex.close()  # idempotent

    def test_context_manager(self):
        with ChunkExecutor(backend="threading") as ex:
            assert ex.is_connected
        assert not ex.is_connected

    def test_reopen(self):
        ex = ChunkExecutor(backend="sequential")
        with ex:
            assert sorted(ex.map_unordered(_square, [1, 2, 3])) == [1, 4, 9]
        with ex:
            assert sorted(ex.map_unordered(_square, [4])) == [16]

    def test_map_unordered_threading(self):
        with ChunkExecutor(n_jobs=2, backend="threading") as ex:
            assert sorted(ex.map_unordered(_square, range(20))) == [i * i for i in range(20)]

    def test_map_requires_open_pool(self):
        with pytest.raises(PoolUnavailableError, match="not connected"):
            ChunkExecutor().map_unordered(_square, [1])

    def test_n_workers(self):
        assert ChunkExecutor(n_jobs=4, backend="sequential").n_workers == 1
        assert ChunkExecutor(n_jobs=2, backend="threading").n_workers == 2

    def test_zero_jobs_rejected(self):
        with pytest.raises(ValueError):
            ChunkExecutor(n_jobs=0)

    def test_repr(self):
        assert "closed" in repr(ChunkExecutor(backend="sequential"))
