"""Edge-case tests for input handling and boundary conditions.

Covers: single-row and single-term runs, more chunks than rows, sparse
and weighted containers, missing and infinite values, all-missing rows,
REML and optimizer options, and clipping of negative contributions.
"""

import logging

import numpy as np
import pytest
import scipy.sparse as sp

from variance_partition import (
    RowFitFailure,
    WeightedExpression,
    fit_all,
    fit_and_decompose,
)
from variance_partition.formula import RESIDUALS

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _run(func, *args, **kwargs):
    kwargs.setdefault("quiet", True)
    kwargs.setdefault("show_warnings", False)
    return func(*args, **kwargs)


# ------------------------------------------------------------------ #
# 1. Degenerate sizes
# ------------------------------------------------------------------ #


class TestSizes:
    def test_single_row(self, expression, metadata):
        table = _run(fit_and_decompose, expression.iloc[:1], "~ (1|Tissue)", metadata)
        assert table.fractions.shape == (1, 2)
        assert table.fractions.iloc[0].sum() == pytest.approx(1.0)

    def test_more_chunks_than_rows(self, expression, metadata):
        table = _run(fit_and_decompose, expression, "~ Age", metadata, chunk_count=500)
        assert len(table) == len(expression)
        assert table.context.n_chunks == len(expression)

    def test_single_chunk(self, expression, metadata):
        table = _run(fit_and_decompose, expression, "~ Age", metadata, chunk_count=1)
        assert table.context.n_chunks == 1
        assert list(table.fractions.index) == list(expression.index)

    def test_single_random_term(self, expression, metadata):
        table = _run(fit_and_decompose, expression, "~ (1|Individual)", metadata)
        assert table.method == "mixed"
        assert list(table.fractions.columns) == ["Individual", RESIDUALS]

    def test_chunking_does_not_change_results(self, expression, metadata):
        a = _run(fit_and_decompose, expression, "~ Age + Tissue", metadata, chunk_count=1)
        b = _run(fit_and_decompose, expression, "~ Age + Tissue", metadata, chunk_count=4)
        np.testing.assert_allclose(a.fractions.to_numpy(), b.fractions.to_numpy())


# ------------------------------------------------------------------ #
# 2. Containers
# ------------------------------------------------------------------ #


class TestContainers:
    def test_sparse_matches_dense(self, expression, metadata):
        dense = _run(fit_and_decompose, expression.to_numpy(), "~ Age + Batch", metadata)
        sparse = _run(
            fit_and_decompose,
            sp.csr_matrix(expression.to_numpy()),
            "~ Age + Batch",
            metadata,
        )
        np.testing.assert_allclose(dense.fractions.to_numpy(), sparse.fractions.to_numpy())

    def test_weighted_expression(self, expression, metadata, rng):
        w = rng.uniform(0.5, 2.0, expression.shape)
        bundled = _run(
            fit_and_decompose, WeightedExpression(expression, w), "~ Age", metadata
        )
        explicit = _run(fit_and_decompose, expression, "~ Age", metadata, weights_matrix=w)
        np.testing.assert_allclose(
            bundled.fractions.to_numpy(), explicit.fractions.to_numpy()
        )
        assert bundled.context.use_weights

    def test_weighted_expression_weights_can_be_disabled(self, expression, metadata, rng):
        w = rng.uniform(0.5, 2.0, expression.shape)
        off = _run(
            fit_and_decompose,
            WeightedExpression(expression, w),
            "~ Age",
            metadata,
            use_weights=False,
        )
        plain = _run(fit_and_decompose, expression, "~ Age", metadata)
        np.testing.assert_allclose(off.fractions.to_numpy(), plain.fractions.to_numpy())

    def test_unit_weights_equal_unweighted(self, expression, metadata):
        ones = _run(
            fit_and_decompose,
            expression,
            "~ Age + (1|Tissue)",
            metadata,
            weights_matrix=np.ones(expression.shape),
        )
        plain = _run(fit_and_decompose, expression, "~ Age + (1|Tissue)", metadata)
        np.testing.assert_allclose(
            ones.fractions.to_numpy(), plain.fractions.to_numpy(), atol=1e-5
        )


# ------------------------------------------------------------------ #
# 3. Missing and non-finite values
# ------------------------------------------------------------------ #


class TestMissingValues:
    def test_infinite_response_dropped(self, expression, metadata):
        data = expression.copy()
        data.iloc[1, 0] = np.inf
        fits = _run(fit_all, data, "~ Age", metadata)
        assert fits["gene1"].n_obs == len(metadata) - 1

    def test_missing_weight_drops_sample(self, expression, metadata):
        w = np.ones(expression.shape)
        w[2, 7] = np.nan
        fits = _run(fit_all, expression, "~ Age", metadata, weights_matrix=w)
        assert fits["gene2"].n_obs == len(metadata) - 1
        assert fits["gene0"].n_obs == len(metadata)

    def test_all_missing_row_fails_alone(self, expression, metadata):
        data = expression.copy()
        data.iloc[4] = np.nan
        table = _run(fit_and_decompose, data, "~ Age", metadata)
        assert table.fractions.loc["gene4"].isna().all()
        assert [f.row_name for f in table.failures] == ["gene4"]
        assert table.valid.sum() == len(expression) - 1

    def test_failure_reason_names_the_error(self, expression, metadata):
        data = expression.copy()
        data.iloc[2] = np.nan
        data.iloc[2, :2] = [0.0, 1.0]
        fits = _run(fit_all, data, "~ Age + Batch", metadata)
        failure = fits["gene2"]
        assert isinstance(failure, RowFitFailure)
        assert "RankDeficientDesign" in failure.reason


# ------------------------------------------------------------------ #
# 4. Estimation options
# ------------------------------------------------------------------ #


class TestEstimation:
    FORMULA = "~ Age + (1|Individual) + (1|Tissue)"

    def test_reml(self, expression, metadata):
        fits = _run(fit_all, expression, self.FORMULA, metadata, reml=True)
        assert all(fit.reml for fit in fits.values())

    def test_reml_fractions_sum_to_one(self, expression, metadata):
        table = _run(fit_and_decompose, expression, self.FORMULA, metadata, reml=True)
        np.testing.assert_allclose(table.fractions.sum(axis=1), 1.0, atol=1e-6)

    def test_control_forwarded(self, expression, metadata):
        table = _run(
            fit_and_decompose,
            expression,
            self.FORMULA,
            metadata,
            control={"method": ["lbfgs"], "maxiter": 500},
        )
        assert table.valid.all()

    def test_colinearity_cutoff(self, expression, metadata):
        meta = metadata.assign(Age2=metadata["Age"] + np.linspace(0, 5, len(metadata)))
        strict = _run(
            fit_and_decompose, expression, "~ Age + Age2", meta, colinearity_cutoff=0.5
        )
        lax = _run(fit_and_decompose, expression, "~ Age + Age2", meta)
        assert strict.context.condition_counts.get("collinearity") == len(expression)
        assert "collinearity" not in lax.context.condition_counts


# ------------------------------------------------------------------ #
# 5. Negative contributions
# ------------------------------------------------------------------ #


class TestClipping:
    def test_fractions_never_negative(self, metadata, rng):
        # Pure noise: fixed sequential SS are non-negative, random
        # components may sit at the boundary.
        data = rng.normal(0, 1, (8, len(metadata)))
        table = _run(
            fit_and_decompose, data, "~ Age + (1|Individual) + (1|Tissue)", metadata
        )
        valid = table.fractions[table.valid]
        assert (valid.to_numpy() >= 0).all()
        np.testing.assert_allclose(valid.sum(axis=1), 1.0, atol=1e-6)

    def test_clip_count_recorded(self, expression, metadata, caplog):
        with caplog.at_level(logging.INFO, logger="variance_partition"):
            table = fit_and_decompose(
                expression, "~ Age + Tissue", metadata, show_warnings=False
            )
        assert table.context.n_clipped == 0
        assert "clipped" not in caplog.text
