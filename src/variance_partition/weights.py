"""Replication check for observation-weight estimation.

Precision weights are estimated upstream from a mean–variance trend
across rows, which needs residual degrees of freedom in at least two
rows.  Without replication there is nothing to fit the trend to, so
every observation gets weight 1.
"""

from __future__ import annotations

import warnings

import numpy as np

from ._exceptions import NoReplicationWarning
from ._typing import ArrayLike


def uniform_weights_if_unreplicated(
    df_residual: ArrayLike, shape: tuple[int, int]
) -> np.ndarray | None:
    """Return a matrix of ones when fewer than two rows have replication.

    Args:
        df_residual: Residual degrees of freedom, one per row fit
            (``NaN`` for failed rows).
        shape: ``(n_rows, n_samples)`` of the weights matrix to build.

    Returns:
        ``np.ones(shape)`` after emitting a :class:`NoReplicationWarning`
        if fewer than two rows have positive residual degrees of
        freedom, otherwise ``None`` (weights should be estimated).
    """
    df = np.asarray(df_residual, dtype=np.float64)
    n_replicated = int(np.sum(np.nan_to_num(df, nan=0.0) > 0))
    if n_replicated < 2:
        if n_replicated == 0:
            message = "The experimental design has no replication."
        else:
            message = "Only one row has any replication."
        warnings.warn(
            f"{message} Setting weights to 1.",
            NoReplicationWarning,
            stacklevel=2,
        )
        return np.ones(shape)
    return None


__all__ = ["uniform_weights_if_unreplicated"]
