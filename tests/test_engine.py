"""Tests for the fit orchestrator."""

import pickle

import numpy as np
import pytest

from variance_partition._exceptions import DesignRankDeficientError, RowFitFailure
from variance_partition.decompose import VarPartRow, decompose
from variance_partition.engine import ModelFitOrchestrator, RowOutcome, fit_one, run_chunk
from variance_partition.formula import build_design
from variance_partition.iterators import ChunkPlanner, RowUnit, RowWeightedIterator
from variance_partition.solvers import FixedFit, MixedFit


def _rows(expression, weights=None):
    return RowWeightedIterator(
        expression.to_numpy(), weights, row_names=list(expression.index)
    )


def _boom(fit):
    raise RuntimeError("no thanks")


class TestFitOne:
    def test_fixed(self, expression, metadata):
        design = build_design("~ Age", metadata)
        unit = next(_rows(expression))
        assert isinstance(fit_one(unit, design, "fixed", False), FixedFit)

    def test_weights_disabled_ignores_weights(self, expression, metadata):
        design = build_design("~ Age", metadata)
        y = expression.iloc[0].to_numpy()
        w = np.linspace(0.5, 2.0, len(y))
        weighted = fit_one(RowUnit(0, y, w), design, "fixed", True)
        unweighted = fit_one(RowUnit(0, y, w), design, "fixed", False)
        plain = fit_one(RowUnit(0, y), design, "fixed", True)
        assert unweighted.residual_ss == pytest.approx(plain.residual_ss)
        assert weighted.residual_ss != pytest.approx(plain.residual_ss)


class TestProbe:
    def test_selects_fixed_without_random_terms(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age + C(Batch)", metadata))
        fit = orch.probe(next(_rows(expression)))
        assert orch.kind == "fixed"
        assert isinstance(fit, FixedFit)

    def test_selects_mixed_with_random_terms(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age + (1|Tissue)", metadata))
        fit = orch.probe(next(_rows(expression)))
        assert orch.kind == "mixed"
        assert isinstance(fit, MixedFit)

    def test_rank_deficient_design_aborts(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age + C(Individual)", metadata))
        with pytest.raises(DesignRankDeficientError, match="rescale fixed effect"):
            orch.probe(next(_rows(expression)))
        assert orch.kind is None

    def test_fit_row_requires_probe(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age", metadata))
        with pytest.raises(RuntimeError, match="probe"):
            orch.fit_row(next(_rows(expression)))


class TestFitRow:
    def test_identity_transform(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age", metadata))
        rows = _rows(expression)
        orch.probe(next(rows))
        outcome = orch.fit_row(next(rows))
        assert isinstance(outcome, RowOutcome)
        assert outcome.index == 1
        assert outcome.name == "gene1"
        assert isinstance(outcome.value, FixedFit)
        assert outcome.df_residual == len(metadata) - 2
        assert not outcome.failed

    def test_decompose_transform(self, expression, metadata):
        orch = ModelFitOrchestrator(
            build_design("~ Age + C(Batch)", metadata), transform=decompose
        )
        rows = _rows(expression)
        orch.probe(next(rows))
        outcome = orch.fit_row(next(rows))
        assert isinstance(outcome.value, VarPartRow)
        assert sum(outcome.value.values()) == pytest.approx(1.0)

    def test_row_failure_is_recorded(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age + C(Batch)", metadata))
        orch.probe(next(_rows(expression)))
        y = np.full(len(metadata), np.nan)
        y[:2] = [1.0, 2.0]
        outcome = orch.fit_row(RowUnit(7, y, name="bad"))
        assert outcome.failed
        assert isinstance(outcome.value, RowFitFailure)
        assert outcome.value.row_index == 7
        assert outcome.value.row_name == "bad"
        assert outcome.df_residual is None
        assert "bad" in str(outcome.value)

    def test_transform_failure_is_recorded(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age", metadata), transform=_boom)
        rows = _rows(expression)
        orch.probe(next(rows))
        outcome = orch.fit_row(next(rows))
        assert outcome.failed
        assert "transform failed" in outcome.value.reason
        assert "no thanks" in outcome.value.reason

    def test_collinearity_condition_travels_with_row(self, expression, metadata):
        jitter = np.tile([0.0, 0.001], len(metadata) // 2)
        meta = metadata.assign(Age2=metadata["Age"].to_numpy() * 2.0 + jitter)
        orch = ModelFitOrchestrator(build_design("~ Age + Age2", meta))
        rows = _rows(expression)
        orch.probe(next(rows))
        outcome = orch.fit_row(next(rows))
        assert not outcome.failed
        assert "collinearity" in {c.value for c in outcome.conditions}


class TestRunChunk:
    def test_returns_tag_and_rows_in_order(self, expression, metadata):
        orch = ModelFitOrchestrator(build_design("~ Age", metadata))
        orch.probe(next(_rows(expression)))
        chunks = list(ChunkPlanner(_rows(expression), n_chunks=3))
        tag, outcomes = run_chunk(orch, chunks[1])
        assert tag == 1
        assert [o.index for o in outcomes] == list(range(chunks[1].start, chunks[1].stop))

    def test_orchestrator_is_picklable(self, expression, metadata):
        orch = ModelFitOrchestrator(
            build_design("~ Age + (1|Tissue)", metadata), transform=decompose
        )
        orch.probe(next(_rows(expression)))
        restored = pickle.loads(pickle.dumps(orch))
        assert restored.kind == "mixed"
        outcome = restored.fit_row(next(_rows(expression)))
        assert isinstance(outcome.value, VarPartRow)
