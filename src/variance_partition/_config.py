"""Executor configuration for the variance_partition package.

Controls which joblib backend a :class:`~variance_partition.executor.ChunkExecutor`
uses when it is created without an explicit ``backend``, and the default
number of chunks the work is divided into.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_backend`.
    2. The ``VARIANCE_PARTITION_BACKEND`` environment variable.
    3. The default, ``"loky"`` (process-based workers).

Valid backend names are ``"loky"``, ``"threading"`` and
``"sequential"`` (case-insensitive), plus ``"auto"`` to clear an
override.

Examples:
    Run everything in-process from the shell::

        export VARIANCE_PARTITION_BACKEND=sequential

    Switch to thread workers programmatically::

        import variance_partition
        variance_partition.set_backend("threading")

    Restore the default resolution order::

        variance_partition.set_backend("auto")
"""

from __future__ import annotations

import os

_VALID_BACKENDS = {"loky", "threading", "sequential", "auto"}

_DEFAULT_BACKEND = "loky"
_DEFAULT_CHUNK_COUNT = 100

# Sentinel indicating "no programmatic override has been set".
_backend_override: str | None = None


def get_backend() -> str:
    """Return the active joblib backend name.

    Resolution order:
        1. Value set by :func:`set_backend` (unless ``"auto"``).
        2. ``VARIANCE_PARTITION_BACKEND`` environment variable.
        3. ``"loky"``.

    Returns:
        ``"loky"``, ``"threading"`` or ``"sequential"``.
    """
    # 1. Programmatic override
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override

    # 2. Environment variable
    env = os.environ.get("VARIANCE_PARTITION_BACKEND", "").strip().lower()
    if env in _VALID_BACKENDS - {"auto"}:
        return env

    # 3. Default
    return _DEFAULT_BACKEND


def set_backend(name: str) -> None:
    """Override the backend selection.

    Args:
        name: One of ``"loky"``, ``"threading"``, ``"sequential"`` or
            ``"auto"`` (case-insensitive).  ``"auto"`` restores the
            default resolution order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised


def get_chunk_count() -> int:
    """Return the default number of chunks a run is divided into.

    ``VARIANCE_PARTITION_CHUNKS`` overrides the built-in default of 100
    when it holds a positive integer; anything else is ignored.
    """
    env = os.environ.get("VARIANCE_PARTITION_CHUNKS", "").strip()
    if env.isdigit() and int(env) > 0:
        return int(env)
    return _DEFAULT_CHUNK_COUNT
