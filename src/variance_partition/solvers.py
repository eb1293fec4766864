"""Model-fitting capability: one linear (mixed) model per response row.

Two model kinds share one interface, :func:`fit_model`:

* **Fixed**: weighted least squares via ``statsmodels`` ``WLS``.  The
  fit carries the sequential (type I) sum of squares of every fixed
  term, taken from the QR *effects* of the whitened design with the
  columns permuted into formula term order:

      W^{1/2} X = Q R,    e = Q' W^{1/2} y,    SS_t = Σ_{j ∈ cols(t)} e_j²

  which is the ANOVA decomposition R's ``anova.lm`` reports.

* **Mixed**: ``statsmodels`` ``MixedLM`` with one variance component
  per random term.  Crossed random intercepts are expressed as
  variance components of a single dummy group, so the model is

      y = Xβ + Σ_k Z_k u_k + ε,   u_k ~ N(0, σ²_k I),   ε ~ N(0, σ² W⁻¹)

  Observation weights are applied by whitening every row of y, X and
  Z_k with √w, which leaves the variance components unchanged.  The
  contribution of each fixed term is the variance of its part of the
  linear predictor, ``var(X_t β̂_t)``, so fixed and random terms are
  expressed on the same scale.

Maximum likelihood (``reml=False``) is the default: REML integrates the
fixed effects out before estimating the variance components, which
biases the comparison of fixed and random contributions.

The solver reports two structural conditions as exceptions:
:class:`NoRandomEffects` when asked for a mixed fit of a formula
without random terms, and :class:`RankDeficientDesign` when the fixed
design is column rank deficient or saturated (no residual degrees of
freedom).

Samples whose response or weight is not finite are dropped for that
row only; fitted values keep NaN at those positions.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, ClassVar

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.regression.mixed_linear_model import MixedLM, VCSpec

from .formula import RESIDUALS, DesignMatrices

logger = logging.getLogger(__name__)

# lme4's boundary tolerance on θ = σ_k / σ.
_SINGULAR_TOL = 1e-4

_DEFAULT_CONTROL: dict[str, Any] = {"method": "lbfgs"}

_NON_CONVERGENCE_MARKERS = (
    "failed to converge",
    "did not converge",
    "gradient optimization failed",
    "convergence not achieved",
)


class NoRandomEffects(Exception):
    """The formula specifies no random effects terms."""


class RankDeficientDesign(Exception):
    """The fixed-effects model matrix is column rank deficient."""


# ------------------------------------------------------------------ #
# Fit results
# ------------------------------------------------------------------ #


@dataclass(frozen=True, kw_only=True)
class _BaseFit:
    """Fields shared by both fit kinds."""

    term_names: tuple[str, ...]
    residual_variance: float
    df_residual: float
    coefficients: pd.Series
    fitted_values: np.ndarray
    n_obs: int
    converged: bool
    messages: tuple[str, ...]
    design_rank: int
    n_columns: int
    max_correlation: float

    kind: ClassVar[str] = ""

    @property
    def is_rank_deficient(self) -> bool:
        return self.design_rank < self.n_columns

    def contributions(self) -> dict[str, float]:
        """Per-term contribution to total variance, then ``Residuals``."""
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class FixedFit(_BaseFit):
    """Fixed-effects (WLS) fit of one row.

    Attributes:
        term_ss: Sequential sum of squares per fixed term.
        residual_ss: Weighted residual sum of squares.
    """

    term_ss: dict[str, float]
    residual_ss: float

    kind: ClassVar[str] = "fixed"

    def contributions(self) -> dict[str, float]:
        out = {name: self.term_ss[name] for name in self.term_names}
        out[RESIDUALS] = self.residual_ss
        return out


@dataclass(frozen=True, kw_only=True)
class MixedFit(_BaseFit):
    """Linear mixed model fit of one row.

    Attributes:
        random_variances: Variance component ``σ²_k`` per random term.
        fixed_variances: ``var(X_t β̂_t)`` per fixed term.
        log_likelihood: Maximised (restricted) log-likelihood.
        reml: Whether REML was used.
    """

    random_variances: dict[str, float]
    fixed_variances: dict[str, float]
    log_likelihood: float
    reml: bool

    kind: ClassVar[str] = "mixed"

    def contributions(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for name in self.term_names:
            if name in self.random_variances:
                out[name] = self.random_variances[name]
            else:
                out[name] = self.fixed_variances[name]
        out[RESIDUALS] = self.residual_variance
        return out

    @property
    def boundary_terms(self) -> tuple[str, ...]:
        """Random terms whose variance was estimated at zero."""
        if self.residual_variance <= 0:
            return tuple(self.random_variances)
        return tuple(
            name
            for name, v in self.random_variances.items()
            if np.sqrt(max(v, 0.0) / self.residual_variance) < _SINGULAR_TOL
        )


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _complete_cases(
    response: np.ndarray, weights: np.ndarray | None
) -> tuple[np.ndarray, np.ndarray | None, np.ndarray]:
    """Drop samples whose response (or weight) is not finite."""
    y = np.asarray(response, dtype=np.float64)
    mask = np.isfinite(y)
    w = None
    if weights is not None:
        w = np.asarray(weights, dtype=np.float64)
        mask &= np.isfinite(w)
    return y[mask], (w[mask] if w is not None else None), mask


def _check_rank(design: DesignMatrices, X: np.ndarray, mask: np.ndarray) -> int:
    rank = design.rank if mask.all() else int(np.linalg.matrix_rank(X))
    if rank < X.shape[1]:
        raise RankDeficientDesign(
            "the fixed-effects model matrix is column rank deficient "
            f"(rank {rank} < {X.shape[1]} columns)"
        )
    if rank >= X.shape[0]:
        raise RankDeficientDesign(
            "the fixed-effects model matrix is saturated "
            f"({X.shape[1]} columns for {X.shape[0]} samples): "
            "no residual degrees of freedom remain"
        )
    return rank


def _expand(values: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Scatter *values* back to full length, NaN where *mask* is False."""
    if mask.all():
        return values
    out = np.full(mask.shape[0], np.nan)
    out[mask] = values
    return out


def _caught_messages(caught: list[warnings.WarningMessage]) -> tuple[str, ...]:
    # Deduplicate while keeping first-seen order.
    return tuple(dict.fromkeys(str(w.message) for w in caught))


def _converged(flag: bool, messages: tuple[str, ...]) -> bool:
    lowered = [m.lower() for m in messages]
    return bool(flag) and not any(
        marker in m for m in lowered for marker in _NON_CONVERGENCE_MARKERS
    )


# ------------------------------------------------------------------ #
# Solvers
# ------------------------------------------------------------------ #


def _sequential_order(
    design: DesignMatrices,
) -> tuple[np.ndarray, dict[str, np.ndarray]]:
    """Column permutation of ``X`` that enters fixed terms as written.

    patsy groups categorical terms ahead of numeric ones, so its column
    order can differ from the formula.  Returns the permutation
    (intercept first) and, per term, its positions in the permuted
    matrix.
    """
    order: list[int] = [0]
    blocks: dict[str, np.ndarray] = {}
    for name in design.formula.fixed:
        cols = design.fixed_columns.get(name, np.empty(0, dtype=np.intp))
        blocks[name] = np.arange(len(order), len(order) + len(cols), dtype=np.intp)
        order.extend(int(c) for c in cols)
    seen = set(order)
    order.extend(c for c in range(design.n_columns) if c not in seen)
    return np.asarray(order, dtype=np.intp), blocks


def fit_fixed(
    design: DesignMatrices,
    response: np.ndarray,
    weights: np.ndarray | None = None,
) -> FixedFit:
    """Fit a weighted least squares model and its sequential ANOVA.

    Raises:
        RankDeficientDesign: If the design is column rank deficient.
    """
    y, w, mask = _complete_cases(response, weights)
    X = design.X[mask]
    rank = _check_rank(design, X, mask)
    w_arr = w if w is not None else np.ones_like(y)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = sm.WLS(y, X, weights=w_arr).fit()

    # Sequential sums of squares from the QR effects of the whitened
    # design, with columns entered in formula order.
    order, blocks = _sequential_order(design)
    sw = np.sqrt(w_arr)
    q, _ = np.linalg.qr(X[:, order] * sw[:, None])
    effects = q.T @ (y * sw)
    term_ss = {name: float(np.sum(effects[pos] ** 2)) for name, pos in blocks.items()}

    messages = _caught_messages(caught)
    return FixedFit(
        term_names=design.term_names,
        residual_variance=float(res.scale),
        df_residual=float(res.df_resid),
        coefficients=pd.Series(np.asarray(res.params), index=design.column_names),
        fitted_values=_expand(np.asarray(res.fittedvalues), mask),
        n_obs=int(len(y)),
        converged=True,
        messages=messages,
        design_rank=rank,
        n_columns=design.n_columns,
        max_correlation=design.max_correlation,
        term_ss=term_ss,
        residual_ss=float(res.ssr),
    )


def fit_mixed(
    design: DesignMatrices,
    response: np.ndarray,
    weights: np.ndarray | None = None,
    *,
    reml: bool = False,
    control: dict[str, Any] | None = None,
) -> MixedFit:
    """Fit a linear mixed model with crossed random intercepts.

    Args:
        design: Design built from a formula with random terms.
        response: Response vector ``(n_samples,)``.
        weights: Observation weights or ``None``.
        reml: Use REML instead of ML.
        control: Keyword arguments for ``MixedLM.fit`` (optimizer
            ``method``, ``maxiter``, …).

    Raises:
        NoRandomEffects: If the formula has no random terms.
        RankDeficientDesign: If the fixed design is rank deficient.
    """
    if not design.formula.has_random:
        raise NoRandomEffects("No random effects terms specified in formula")

    y, w, mask = _complete_cases(response, weights)
    X = design.X[mask]
    rank = _check_rank(design, X, mask)
    names = list(design.random)
    Zs = [design.random[name][mask] for name in names]

    sw = np.sqrt(w) if w is not None else np.ones_like(y)
    yw = y * sw
    Xw = X * sw[:, None]
    Zw = [Z * sw[:, None] for Z in Zs]

    # One dummy group; each random term is a variance component of it.
    vc = VCSpec(
        names,
        [[list(design.random_levels[name])] for name in names],
        [[Z] for Z in Zw],
    )
    model = MixedLM(yw, Xw, groups=np.zeros(len(y)), exog_vc=vc)

    fit_kwargs = dict(_DEFAULT_CONTROL)
    if control:
        fit_kwargs.update(control)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = model.fit(reml=reml, **fit_kwargs)

    beta = np.asarray(res.fe_params)
    random_variances = {
        name: float(v) for name, v in zip(names, np.asarray(res.vcomp), strict=True)
    }
    fixed_variances: dict[str, float] = {}
    for name, cols in design.fixed_columns.items():
        if len(cols) == 0:
            fixed_variances[name] = 0.0
            continue
        fixed_variances[name] = float(np.var(X[:, cols] @ beta[cols], ddof=1))

    messages = _caught_messages(caught)
    fitted = np.asarray(res.fittedvalues) / sw
    return MixedFit(
        term_names=design.term_names,
        residual_variance=float(res.scale),
        df_residual=float(len(y) - rank),
        coefficients=pd.Series(beta, index=design.column_names),
        fitted_values=_expand(fitted, mask),
        n_obs=int(len(y)),
        converged=_converged(getattr(res, "converged", True), messages),
        messages=messages,
        design_rank=rank,
        n_columns=design.n_columns,
        max_correlation=design.max_correlation,
        random_variances=random_variances,
        fixed_variances=fixed_variances,
        log_likelihood=float(res.llf),
        reml=reml,
    )


def fit_model(
    design: DesignMatrices,
    response: np.ndarray,
    weights: np.ndarray | None = None,
    *,
    kind: str = "mixed",
    reml: bool = False,
    control: dict[str, Any] | None = None,
) -> FixedFit | MixedFit:
    """Fit one row with the requested model kind.

    Raises:
        ValueError: If *kind* is not ``"fixed"`` or ``"mixed"``.
        NoRandomEffects: Mixed fit of a formula without random terms.
        RankDeficientDesign: Rank-deficient fixed design.
    """
    if kind == "mixed":
        return fit_mixed(design, response, weights, reml=reml, control=control)
    if kind == "fixed":
        return fit_fixed(design, response, weights)
    raise ValueError(f"Unknown model kind '{kind}'. Choose from: 'fixed', 'mixed'.")


__all__ = [
    "FixedFit",
    "MixedFit",
    "NoRandomEffects",
    "RankDeficientDesign",
    "fit_fixed",
    "fit_mixed",
    "fit_model",
]
