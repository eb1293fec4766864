"""Structured model formulas and design construction.

A formula describes the explanatory side of every per-row model, for
example::

    ~ Age + Batch + (1|Individual) + (1|Tissue)

Fixed terms (``Age``, ``Batch``) are patsy term expressions; random
terms are random intercepts written ``(1|group)``.  The rows of the
response matrix supply the left-hand side, so the formula never names
the response.

The text is parsed once into a :class:`ModelFormula` and evaluated once
against the metadata by :func:`build_design`.  The resulting
:class:`DesignMatrices` hold everything the solver needs except the
response vector, which is bound per row by reference.  No formula text
is ever rebuilt around a row's values.
"""

from __future__ import annotations

import logging
import re
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import patsy

from ._exceptions import ConfigurationError, VariableNotFoundError

logger = logging.getLogger(__name__)

_BAR_TERM = re.compile(r"^\(\s*(?P<lhs>[^()|]+?)\s*\|\s*(?P<group>[^()|]+?)\s*\)$")
_PATSY_NAME_ERROR = re.compile(r"name '(?P<name>[^']+)' is not defined")

RESIDUALS = "Residuals"


# ------------------------------------------------------------------ #
# Formula representation
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RandomTerm:
    """Random intercept for the levels of one grouping variable."""

    group: str

    @property
    def name(self) -> str:
        return self.group


@dataclass(frozen=True)
class ModelFormula:
    """Parsed right-hand side of a per-row model.

    Attributes:
        terms: Terms in the order they were written.  Each entry is
            either a fixed-term expression (``str``) or a
            :class:`RandomTerm`.
    """

    terms: tuple[str | RandomTerm, ...]

    @property
    def fixed(self) -> tuple[str, ...]:
        return tuple(t for t in self.terms if isinstance(t, str))

    @property
    def random(self) -> tuple[RandomTerm, ...]:
        return tuple(t for t in self.terms if isinstance(t, RandomTerm))

    @property
    def has_random(self) -> bool:
        return bool(self.random)

    @property
    def term_names(self) -> tuple[str, ...]:
        """Output column names in formula order (without Residuals)."""
        return tuple(t.name if isinstance(t, RandomTerm) else t for t in self.terms)

    @classmethod
    def parse(cls, text: str) -> ModelFormula:
        """Parse an lme4-style formula string.

        Raises:
            ConfigurationError: If the formula is empty or contains a
                random-slope term.
        """
        if "~" in text:
            lhs, rhs = text.split("~", 1)
            if lhs.strip():
                warnings.warn(
                    f"Ignoring left-hand side '{lhs.strip()}' of the formula: "
                    "each row of the data is used as the response.",
                    UserWarning,
                    stacklevel=3,
                )
        else:
            rhs = text

        terms: list[str | RandomTerm] = []
        for token in _split_top_level(rhs):
            if token in ("", "1"):
                continue
            if token in ("0", "-1"):
                raise ConfigurationError(
                    "Formulas without an intercept are not supported."
                )
            match = _BAR_TERM.match(token)
            if match is not None:
                if match.group("lhs") != "1":
                    raise ConfigurationError(
                        f"Random term '{token}' is not supported: only random "
                        "intercepts of the form (1|group) are allowed."
                    )
                terms.append(RandomTerm(match.group("group")))
            else:
                terms.append(token)

        if not terms:
            raise ConfigurationError(f"Formula '{text}' specifies no terms.")
        names = [t.name if isinstance(t, RandomTerm) else t for t in terms]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigurationError(f"Formula repeats term(s): {', '.join(dupes)}.")
        return cls(tuple(terms))

    def __str__(self) -> str:
        parts = [f"(1|{t.group})" if isinstance(t, RandomTerm) else t for t in self.terms]
        return "~ " + " + ".join(parts)


def _split_top_level(rhs: str) -> list[str]:
    """Split on ``+`` outside parentheses, stripping whitespace."""
    tokens: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in rhs:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ConfigurationError(f"Unbalanced parentheses in formula '{rhs}'.")
        if ch == "+" and depth == 0:
            tokens.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise ConfigurationError(f"Unbalanced parentheses in formula '{rhs}'.")
    tokens.append("".join(current).strip())
    return tokens


def as_formula(formula: str | ModelFormula) -> ModelFormula:
    """Return *formula* as a :class:`ModelFormula`, parsing text if needed."""
    if isinstance(formula, ModelFormula):
        return formula
    if isinstance(formula, str):
        return ModelFormula.parse(formula)
    raise TypeError(
        f"formula must be a string or ModelFormula, got {type(formula).__name__}."
    )


# ------------------------------------------------------------------ #
# Design construction
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class DesignMatrices:
    """Design of every per-row model; only the response varies by row.

    Attributes:
        formula: The formula the design was built from.
        X: Fixed-effect design ``(n, p)`` including the intercept column.
        column_names: Names of the ``p`` columns of *X*.
        fixed_columns: Column indices of *X* belonging to each fixed term.
        random: One-hot indicator matrix ``(n, G_k)`` per random term.
        random_levels: Level labels per random term.
        rank: Numerical rank of *X*.
        max_correlation: Largest absolute pairwise correlation among the
            non-intercept columns of *X* (0.0 when fewer than two).
    """

    formula: ModelFormula
    X: np.ndarray
    column_names: tuple[str, ...]
    fixed_columns: dict[str, np.ndarray]
    random: dict[str, np.ndarray] = field(default_factory=dict)
    random_levels: dict[str, tuple[str, ...]] = field(default_factory=dict)
    rank: int = 0
    max_correlation: float = 0.0

    @property
    def n_samples(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_columns(self) -> int:
        return int(self.X.shape[1])

    @property
    def is_rank_deficient(self) -> bool:
        return self.rank < self.n_columns

    @property
    def term_names(self) -> tuple[str, ...]:
        return self.formula.term_names


@dataclass(frozen=True)
class DesignSpec:
    """A formula together with the metadata it is evaluated against.

    *metadata* has one row per sample and one column per variable the
    formula references.
    """

    formula: ModelFormula
    metadata: pd.DataFrame

    def build(self) -> DesignMatrices:
        return build_design(self.formula, self.metadata)


def _check_variables(formula: ModelFormula, metadata: pd.DataFrame) -> None:
    """Raise :class:`VariableNotFoundError` for bare names not in *metadata*."""
    columns = {str(c) for c in metadata.columns}
    for term in formula.terms:
        if isinstance(term, RandomTerm):
            if term.group not in columns:
                raise VariableNotFoundError(term.group)
            continue
        desc = patsy.ModelDesc.from_formula(term)
        for patsy_term in desc.rhs_termlist:
            for factor in patsy_term.factors:
                code = factor.code.strip()
                if code.isidentifier() and code not in columns:
                    raise VariableNotFoundError(code)


def _fixed_design(
    formula: ModelFormula, metadata: pd.DataFrame
) -> tuple[np.ndarray, tuple[str, ...], dict[str, np.ndarray]]:
    """Evaluate the fixed terms with patsy and map columns back to terms."""
    rhs = " + ".join(("1",) + formula.fixed)
    # Names resolve against the metadata, numpy and patsy builtins only.
    env = patsy.EvalEnvironment([{"np": np}])
    try:
        dm = patsy.dmatrix(rhs, metadata, eval_env=env, NA_action="raise")
    except patsy.PatsyError as exc:
        match = _PATSY_NAME_ERROR.search(str(exc))
        if match is not None:
            raise VariableNotFoundError(match.group("name")) from None
        raise ConfigurationError(f"Could not evaluate formula terms: {exc}") from exc

    info = dm.design_info
    slices = info.term_name_slices
    claimed: set[str] = {"Intercept"}
    fixed_columns: dict[str, np.ndarray] = {}
    for token in formula.fixed:
        desc = patsy.ModelDesc.from_formula(token)
        cols: list[int] = []
        for patsy_term in desc.rhs_termlist:
            name = patsy_term.name()
            if name in claimed or name not in slices:
                continue
            claimed.add(name)
            sl = slices[name]
            cols.extend(range(sl.start, sl.stop))
        fixed_columns[token] = np.asarray(sorted(cols), dtype=np.intp)
    return np.asarray(dm, dtype=np.float64), tuple(info.column_names), fixed_columns


def _random_design(
    term: RandomTerm, metadata: pd.DataFrame
) -> tuple[np.ndarray, tuple[str, ...]]:
    """One-hot indicator matrix for the levels of *term*'s grouping variable."""
    labels = metadata[term.group]
    if labels.isna().any():
        raise ConfigurationError(
            f"Grouping variable '{term.group}' contains missing values."
        )
    # Map labels to 0-based contiguous integers
    unique_labels, coded = np.unique(labels.astype(str).to_numpy(), return_inverse=True)
    Z = np.zeros((len(labels), len(unique_labels)), dtype=np.float64)
    Z[np.arange(len(labels)), coded] = 1.0
    return Z, tuple(str(u) for u in unique_labels)


def _max_abs_correlation(X: np.ndarray) -> float:
    """Largest absolute off-diagonal correlation among non-intercept columns."""
    cols = X[:, 1:]
    if cols.shape[1] < 2:
        return 0.0
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.corrcoef(cols, rowvar=False)
    corr = np.nan_to_num(corr, nan=0.0)
    np.fill_diagonal(corr, 0.0)
    return float(np.max(np.abs(corr)))


def build_design(
    formula: str | ModelFormula, metadata: pd.DataFrame
) -> DesignMatrices:
    """Evaluate *formula* against *metadata* once for all rows.

    Raises:
        VariableNotFoundError: If a referenced column is missing.
        ConfigurationError: If the terms cannot be evaluated.
    """
    formula = as_formula(formula)
    _check_variables(formula, metadata)

    X, column_names, fixed_columns = _fixed_design(formula, metadata)

    random: dict[str, np.ndarray] = {}
    random_levels: dict[str, tuple[str, ...]] = {}
    for term in formula.random:
        random[term.name], random_levels[term.name] = _random_design(term, metadata)

    rank = int(np.linalg.matrix_rank(X))
    design = DesignMatrices(
        formula=formula,
        X=X,
        column_names=column_names,
        fixed_columns=fixed_columns,
        random=random,
        random_levels=random_levels,
        rank=rank,
        max_correlation=_max_abs_correlation(X),
    )
    logger.debug(
        "Built design for %s: %d samples, %d fixed columns (rank %d), %d random terms",
        formula,
        design.n_samples,
        design.n_columns,
        rank,
        len(random),
    )
    return design


__all__ = [
    "RESIDUALS",
    "DesignMatrices",
    "DesignSpec",
    "ModelFormula",
    "RandomTerm",
    "as_formula",
    "build_design",
]
