"""Tests for model status validation."""

from types import SimpleNamespace

import numpy as np
import pytest

from variance_partition.formula import build_design
from variance_partition.solvers import fit_fixed, fit_mixed
from variance_partition.validation import (
    DEFAULT_COLINEARITY_CUTOFF,
    Condition,
    ModelStatus,
    Status,
    describe,
    validate,
)


def _fit(**overrides):
    attrs = dict(
        is_rank_deficient=False,
        design_rank=3,
        n_columns=3,
        boundary_terms=(),
        converged=True,
        max_correlation=0.2,
    )
    attrs.update(overrides)
    return SimpleNamespace(**attrs)


class TestValidate:
    def test_clean_fit_ok(self):
        status = validate(_fit())
        assert status.status is Status.OK
        assert status.ok
        assert not status.failed
        assert status.reasons == frozenset()
        assert status.messages() == []

    def test_singular_fit_warns(self):
        status = validate(_fit(boundary_terms=("Tissue",)))
        assert status.status is Status.WARN
        assert status.reasons == {Condition.SINGULAR_FIT}
        assert status.details["boundary_terms"] == ("Tissue",)

    def test_singular_check_can_be_suppressed(self):
        status = validate(_fit(boundary_terms=("Tissue",)), check_singular=False)
        assert status.ok

    def test_non_convergence_warns(self):
        status = validate(_fit(converged=False))
        assert status.status is Status.WARN
        assert Condition.NON_CONVERGENCE in status.reasons

    def test_collinearity_warns_above_cutoff(self):
        assert validate(_fit(max_correlation=0.9995)).reasons == {Condition.COLLINEARITY}
        assert validate(_fit(max_correlation=0.99)).ok
        assert validate(_fit(max_correlation=0.99), colinearity_cutoff=0.95).reasons == {
            Condition.COLLINEARITY
        }

    def test_rank_deficiency_fails_with_hint(self):
        status = validate(_fit(is_rank_deficient=True, design_rank=2))
        assert status.status is Status.FAIL
        assert status.failed
        assert status.details["rank"] == 2
        assert any("rescale" in m for m in status.messages())

    def test_fail_outranks_warn(self):
        status = validate(_fit(is_rank_deficient=True, converged=False))
        assert status.status is Status.FAIL
        assert status.reasons == {Condition.RANK_DEFICIENT, Condition.NON_CONVERGENCE}

    def test_messages_in_fixed_order(self):
        status = ModelStatus(
            Status.WARN, frozenset({Condition.COLLINEARITY, Condition.SINGULAR_FIT})
        )
        assert status.messages() == [
            describe(Condition.SINGULAR_FIT),
            describe(Condition.COLLINEARITY),
        ]

    def test_default_cutoff(self):
        assert DEFAULT_COLINEARITY_CUTOFF == 0.999


class TestValidateRealFits:
    def test_fixed_fit_ok(self, expression, metadata):
        fit = fit_fixed(build_design("~ Age + C(Batch)", metadata), expression.iloc[0].to_numpy())
        assert validate(fit).ok

    def test_collinear_design(self, expression, metadata):
        jitter = np.tile([0.0, 0.001], len(metadata) // 2)
        meta = metadata.assign(Age2=metadata["Age"].to_numpy() * 2.0 + jitter)
        fit = fit_fixed(build_design("~ Age + Age2", meta), expression.iloc[0].to_numpy())
        assert Condition.COLLINEARITY in validate(fit).reasons

    def test_mixed_fit_has_boundary_attribute(self, expression, metadata):
        fit = fit_mixed(
            build_design("~ (1|Tissue)", metadata), expression.iloc[0].to_numpy()
        )
        status = validate(fit)
        assert not status.failed
        assert isinstance(fit.boundary_terms, tuple)

    @pytest.mark.parametrize("status", list(Status))
    def test_status_values_are_strings(self, status):
        assert isinstance(status.value, str)
