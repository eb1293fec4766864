"""Tests for the executor configuration system."""

import os

import pytest

import variance_partition._config as _cfg
from variance_partition._config import get_backend, get_chunk_count, set_backend


class TestGetBackend:
    """Tests for get_backend() resolution order."""

    def setup_method(self):
        """Reset state before each test."""
        _cfg._backend_override = None
        os.environ.pop("VARIANCE_PARTITION_BACKEND", None)

    def teardown_method(self):
        """Reset state after each test."""
        _cfg._backend_override = None
        os.environ.pop("VARIANCE_PARTITION_BACKEND", None)

    def test_default_is_loky(self):
        assert get_backend() == "loky"

    def test_env_var_overrides_default(self):
        os.environ["VARIANCE_PARTITION_BACKEND"] = "threading"
        assert get_backend() == "threading"

    def test_env_var_case_insensitive(self):
        os.environ["VARIANCE_PARTITION_BACKEND"] = "Sequential"
        assert get_backend() == "sequential"

    def test_unknown_env_var_ignored(self):
        os.environ["VARIANCE_PARTITION_BACKEND"] = "dask"
        assert get_backend() == "loky"

    def test_programmatic_override_wins_over_env(self):
        os.environ["VARIANCE_PARTITION_BACKEND"] = "threading"
        set_backend("sequential")
        assert get_backend() == "sequential"

    def test_auto_restores_default(self):
        set_backend("threading")
        assert get_backend() == "threading"
        set_backend("auto")
        assert get_backend() == "loky"


class TestSetBackend:
    """Tests for set_backend() validation."""

    def setup_method(self):
        _cfg._backend_override = None

    def teardown_method(self):
        _cfg._backend_override = None

    def test_accepts_valid_names(self):
        for name in ("loky", "threading", "sequential", "auto"):
            set_backend(name)  # should not raise

    def test_case_insensitive(self):
        set_backend("THREADING")
        assert get_backend() == "threading"

    def test_rejects_invalid_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("multiprocessing-pool")


class TestChunkCount:
    def teardown_method(self):
        os.environ.pop("VARIANCE_PARTITION_CHUNKS", None)

    def test_default(self):
        os.environ.pop("VARIANCE_PARTITION_CHUNKS", None)
        assert get_chunk_count() == 100

    def test_env_override(self):
        os.environ["VARIANCE_PARTITION_CHUNKS"] = "25"
        assert get_chunk_count() == 25

    @pytest.mark.parametrize("value", ["0", "-3", "ten", ""])
    def test_invalid_env_ignored(self, value):
        os.environ["VARIANCE_PARTITION_CHUNKS"] = value
        assert get_chunk_count() == 100
