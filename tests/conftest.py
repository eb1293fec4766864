"""Shared fixtures: a small simulated expression study.

40 samples from 10 individuals, each observed in 4 tissues (crossed
design), with a continuous ``Age`` per individual and a two-level
``Batch`` that alternates within every individual and every tissue.
Every expression row is a mix of individual, tissue and
age effects plus noise with a known dominant source.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

N_INDIVIDUALS = 10
N_TISSUES = 4
N_SAMPLES = N_INDIVIDUALS * N_TISSUES


def make_metadata(seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    individual = np.repeat([f"ind{i}" for i in range(N_INDIVIDUALS)], N_TISSUES)
    tissue = np.tile([f"t{j}" for j in range(N_TISSUES)], N_INDIVIDUALS)
    age = np.repeat(rng.uniform(20, 70, N_INDIVIDUALS).round(1), N_TISSUES)
    parity = (
        np.repeat(np.arange(N_INDIVIDUALS), N_TISSUES)
        + np.tile(np.arange(N_TISSUES), N_INDIVIDUALS)
    ) % 2
    batch = np.array(["b1", "b2"])[parity]
    return pd.DataFrame(
        {"Individual": individual, "Tissue": tissue, "Age": age, "Batch": batch},
        index=[f"s{k}" for k in range(N_SAMPLES)],
    )


def make_expression(
    metadata: pd.DataFrame,
    n_rows: int = 6,
    seed: int = 42,
) -> pd.DataFrame:
    """Rows alternate between tissue-, individual- and age-driven genes."""
    rng = np.random.default_rng(seed)
    ind_codes = pd.factorize(metadata["Individual"])[0]
    tis_codes = pd.factorize(metadata["Tissue"])[0]
    age = metadata["Age"].to_numpy()
    rows = []
    for g in range(n_rows):
        ind_eff = rng.normal(0, 1, N_INDIVIDUALS)[ind_codes]
        tis_eff = np.array([-3.0, -1.0, 1.0, 3.0])[tis_codes]
        age_eff = (age - age.mean()) / age.std()
        scale = {0: (0.3, 1.0, 0.1), 1: (2.0, 0.2, 0.1), 2: (0.3, 0.2, 2.0)}[g % 3]
        y = (
            scale[0] * ind_eff
            + scale[1] * tis_eff
            + scale[2] * age_eff
            + rng.normal(0, 0.5, len(metadata))
            + 10.0
        )
        rows.append(y)
    return pd.DataFrame(
        np.vstack(rows),
        index=[f"gene{g}" for g in range(n_rows)],
        columns=metadata.index,
    )


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def metadata():
    return make_metadata()


@pytest.fixture
def expression(metadata):
    return make_expression(metadata)
