"""Variance decomposition of a fitted per-row model.

Every term of the model, fixed or random, contributes one
non-negative quantity ``v_t`` to the total variance, and the residual
contributes ``v_res``:

* **Mixed fit**: ``v_t`` is the variance component of a random term or
  ``var(X_t β̂_t)`` for a fixed term; ``v_res`` is the residual variance.
* **Fixed fit**: ``v_t`` is the sequential (type I) ANOVA sum of
  squares of the term; ``v_res`` is the residual sum of squares.

Random effects are part of the common denominator, so fixed and random
terms are treated symmetrically and the fractions are comparable
across both categories:

    f_t = v_t / (Σ_s v_s + v_res)

With an adjustment set ``S`` the contributions of the terms in ``S``
are removed from both the numerator pool and the denominator.  Terms
outside ``S`` (and the residual) are re-normalised among themselves,
and each adjusted term reports its adjusted intra-class correlation:

    D = Σ_{s ∉ S} v_s + v_res
    f_t = v_t / D                 (t ∉ S)
    f_t = v_t / (v_t + D)         (t ∈ S)

A contribution that comes out negative is clipped at zero before
normalising; the clip is logged and recorded on the row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from ._exceptions import ConfigurationError
from .formula import RESIDUALS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VarPartRow(Mapping[str, float]):
    """Ordered mapping of term name → variance fraction for one row.

    Attributes:
        fractions: Fractions in formula order followed by ``Residuals``.
        adjusted_for: Terms removed from the denominator (possibly empty).
        clipped: Terms whose negative contribution was clipped to zero.
    """

    fractions: dict[str, float]
    adjusted_for: tuple[str, ...] = ()
    clipped: tuple[str, ...] = field(default=())

    def __getitem__(self, key: str) -> float:
        return self.fractions[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.fractions)

    def __len__(self) -> int:
        return len(self.fractions)

    def to_series(self, name: str | None = None) -> pd.Series:
        return pd.Series(self.fractions, name=name, dtype=float)


def resolve_adjust_terms(
    term_names: Iterable[str],
    adjust_terms: Iterable[str] | None = None,
    adjust_all: bool = False,
) -> tuple[str, ...]:
    """Return the adjusted-for terms in formula order.

    ``adjust_all`` selects every term except ``Residuals`` and
    overrides *adjust_terms*.

    Raises:
        ConfigurationError: If *adjust_terms* names ``Residuals`` or a
            term that is not in the model.
    """
    names = [n for n in term_names if n != RESIDUALS]
    if adjust_all:
        return tuple(names)
    if not adjust_terms:
        return ()
    requested = set(adjust_terms)
    if RESIDUALS in requested:
        raise ConfigurationError("Cannot adjust for 'Residuals'.")
    unknown = sorted(requested - set(names))
    if unknown:
        raise ConfigurationError(
            f"Cannot adjust for term(s) not in the model: {', '.join(unknown)}. "
            f"Model terms: {', '.join(names)}."
        )
    return tuple(n for n in names if n in requested)


def decompose(
    fit: Any,
    adjust_terms: Iterable[str] | None = None,
    adjust_all: bool = False,
) -> VarPartRow:
    """Compute the fraction of variance attributable to each term of *fit*.

    Args:
        fit: A :class:`~variance_partition.solvers.FixedFit` or
            :class:`~variance_partition.solvers.MixedFit`.
        adjust_terms: Terms to remove from the denominator.
        adjust_all: Adjust for every term (overrides *adjust_terms*).

    Returns:
        A :class:`VarPartRow`.  Without adjustment the fractions sum to
        one; with adjustment the non-adjusted fractions sum to one.

    Raises:
        ConfigurationError: For invalid adjustment terms.
        ValueError: If a contribution is not finite or the
            non-adjusted contributions sum to zero.
    """
    contributions = fit.contributions()
    adjusted = resolve_adjust_terms(contributions, adjust_terms, adjust_all)

    clipped: list[str] = []
    values: dict[str, float] = {}
    for name, v in contributions.items():
        if not np.isfinite(v):
            raise ValueError(f"Contribution of term '{name}' is not finite ({v}).")
        if v < 0:
            logger.info("Clipping negative contribution of '%s' (%.3g) to 0", name, v)
            clipped.append(name)
            v = 0.0
        values[name] = float(v)

    denom = sum(v for name, v in values.items() if name not in adjusted)
    if denom <= 0:
        raise ValueError("Total variance of the non-adjusted terms is zero.")

    fractions: dict[str, float] = {}
    for name, v in values.items():
        if name in adjusted:
            fractions[name] = v / (v + denom)
        else:
            fractions[name] = v / denom

    return VarPartRow(fractions=fractions, adjusted_for=adjusted, clipped=tuple(clipped))


__all__ = ["VarPartRow", "decompose", "resolve_adjust_terms"]
