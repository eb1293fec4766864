"""variance_partition: Per-row variance partitioning with linear (mixed) models.

Fits one fixed- or mixed-effect regression per row of a large numeric
matrix (e.g. one model per gene) and decomposes each row's variance
into the fractions explained by every term of the formula, with random
effects in the common denominator so fixed and random terms are
directly comparable.  Rows are streamed in chunks to a caller-owned
worker pool and reassembled in input order.

Public API:
    .. autosummary::
        fit_all
        fit_and_decompose
        decompose
        resolve_adjust_terms
        validate
        build_design
        ModelFormula
        RandomTerm
        DesignSpec
        DesignMatrices
        RowUnit
        RowWeightedIterator
        Chunk
        ChunkPlanner
        plan_chunks
        ModelFitOrchestrator
        ParallelReducer
        ChunkExecutor
        WeightedExpression
        to_core_inputs
        uniform_weights_if_unreplicated
        get_backend
        set_backend
        get_chunk_count
        FitContext
        FitList
        VarPartTable
        VarPartRow
"""

from ._config import get_backend, get_chunk_count, set_backend
from ._context import FitContext
from ._exceptions import (
    ConfigurationError,
    DesignRankDeficientError,
    NoReplicationWarning,
    PoolUnavailableError,
    RowFitFailure,
    SampleNameWarning,
    ShapeMismatchError,
    ValidationWarning,
    VariableNotFoundError,
    ZeroVarianceError,
)
from ._results import FitList, VarPartTable
from .adapters import CoreInputs, InputAdapter, WeightedExpression, to_core_inputs
from .core import fit_all, fit_and_decompose
from .decompose import VarPartRow, decompose, resolve_adjust_terms
from .engine import ModelFitOrchestrator, fit_one, run_chunk
from .executor import ChunkExecutor
from .formula import (
    DesignMatrices,
    DesignSpec,
    ModelFormula,
    RandomTerm,
    build_design,
)
from .iterators import Chunk, ChunkPlanner, RowUnit, RowWeightedIterator, plan_chunks
from .reducer import ParallelReducer, reduce_in_order
from .solvers import FixedFit, MixedFit, fit_model
from .validation import Condition, ModelStatus, Status, validate
from .weights import uniform_weights_if_unreplicated

__all__ = [
    "fit_all",
    "fit_and_decompose",
    "decompose",
    "resolve_adjust_terms",
    "validate",
    "build_design",
    "fit_model",
    "fit_one",
    "run_chunk",
    "plan_chunks",
    "reduce_in_order",
    "to_core_inputs",
    "uniform_weights_if_unreplicated",
    "get_backend",
    "set_backend",
    "get_chunk_count",
    "ModelFormula",
    "RandomTerm",
    "DesignSpec",
    "DesignMatrices",
    "RowUnit",
    "RowWeightedIterator",
    "Chunk",
    "ChunkPlanner",
    "ModelFitOrchestrator",
    "ParallelReducer",
    "ChunkExecutor",
    "CoreInputs",
    "InputAdapter",
    "WeightedExpression",
    "FixedFit",
    "MixedFit",
    "Condition",
    "ModelStatus",
    "Status",
    "FitContext",
    "FitList",
    "VarPartTable",
    "VarPartRow",
    "RowFitFailure",
    "ConfigurationError",
    "ShapeMismatchError",
    "VariableNotFoundError",
    "ZeroVarianceError",
    "PoolUnavailableError",
    "DesignRankDeficientError",
    "ValidationWarning",
    "NoReplicationWarning",
    "SampleNameWarning",
]

__version__ = "0.1.0"
