"""Explicit worker-pool handle.

A :class:`ChunkExecutor` wraps a managed :class:`joblib.Parallel`
instance.  Its lifecycle is owned by the caller::

    with ChunkExecutor(n_jobs=4) as ex:
        table = fit_and_decompose(data, formula, metadata, executor=ex)

or, equivalently, ``ex.open()`` … ``ex.close()``.  Keeping the pool
open across calls reuses the same workers.  Nothing is registered
globally: a run uses exactly the executor it is given.

Results are delivered in completion order
(``return_as="generator_unordered"``); restoring row order is the job
of :class:`~variance_partition.reducer.ParallelReducer`.  Tasks are
dispatched lazily (``pre_dispatch``), so only a few chunks are
serialised and in flight at any time.

Backends
--------
``"loky"`` (default) runs chunks in worker processes.  ``"threading"``
runs them in threads; the statsmodels/LAPACK kernels release the GIL
for most of a fit.  ``"sequential"`` runs everything in the calling
process.  When *backend* is ``None`` the choice follows
:func:`~variance_partition.get_backend`.  joblib's
``"multiprocessing"`` backend cannot stream results out of order and
is rejected when the pool is opened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from joblib import Parallel, delayed, effective_n_jobs
from typing_extensions import Self

from ._config import get_backend
from ._exceptions import PoolUnavailableError

logger = logging.getLogger(__name__)


class ChunkExecutor:
    """Caller-owned pool that runs chunk tasks in parallel.

    Args:
        n_jobs: Number of workers (joblib semantics: ``-1`` uses all
            cores).
        backend: ``"loky"``, ``"threading"`` or ``"sequential"``.
            ``None`` resolves through :func:`~variance_partition.get_backend`
            when the pool is opened.
        pre_dispatch: Number of tasks dispatched ahead of the workers.
        verbose: joblib progress verbosity.
    """

    def __init__(
        self,
        n_jobs: int = 1,
        backend: str | None = None,
        *,
        pre_dispatch: str | int = "2 * n_jobs",
        verbose: int = 0,
    ) -> None:
        if n_jobs == 0:
            raise ValueError("n_jobs must be non-zero.")
        self.n_jobs = n_jobs
        self.backend = backend
        self.pre_dispatch = pre_dispatch
        self.verbose = verbose
        self._parallel: Parallel | None = None
        self._active_backend: str | None = None

    # ---- Lifecycle ---------------------------------------------------

    def open(self) -> Self:
        """Start the workers.  Opening an open executor is a no-op."""
        if self._parallel is not None:
            return self
        backend = self.backend if self.backend is not None else get_backend()
        parallel = Parallel(
            n_jobs=self.n_jobs,
            backend=backend,
            return_as="generator_unordered",
            pre_dispatch=self.pre_dispatch,
            verbose=self.verbose,
        )
        parallel.__enter__()
        self._parallel = parallel
        self._active_backend = backend
        logger.debug(
            "Opened %s executor with %d worker(s)", backend, self.n_workers
        )
        return self

    def close(self) -> None:
        """Shut the workers down.  Closing a closed executor is a no-op."""
        if self._parallel is None:
            return
        parallel, self._parallel = self._parallel, None
        parallel.__exit__(None, None, None)
        logger.debug("Closed %s executor", self._active_backend)

    def __enter__(self) -> Self:
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ---- State -------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether the pool is open and can accept tasks."""
        return self._parallel is not None

    @property
    def active_backend(self) -> str | None:
        """Backend the open pool runs on, or ``None`` when closed."""
        return self._active_backend if self._parallel is not None else None

    @property
    def n_workers(self) -> int:
        """Effective number of workers."""
        backend = self._active_backend or self.backend or get_backend()
        if backend == "sequential":
            return 1
        return int(effective_n_jobs(self.n_jobs))

    # ---- Dispatch ----------------------------------------------------

    def map_unordered(
        self, fn: Callable[[Any], Any], items: Iterable[Any]
    ) -> Iterator[Any]:
        """Apply *fn* to every item; yield results as they complete.

        Raises:
            PoolUnavailableError: If the executor is not open.
        """
        if self._parallel is None:
            raise PoolUnavailableError(
                "The worker pool is not connected; open the executor "
                "before dispatching work."
            )
        return iter(self._parallel(delayed(fn)(item) for item in items))

    def __repr__(self) -> str:
        state = "open" if self.is_connected else "closed"
        backend = self._active_backend or self.backend or "default"
        return f"ChunkExecutor(n_jobs={self.n_jobs}, backend={backend!r}, {state})"


__all__ = ["ChunkExecutor"]
