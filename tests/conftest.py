import logging
import os
import sys

import numpy as np
import pytest

from .synthetic_data import make_zinb_counts


def pytest_configure():
    os.environ.setdefault("OMP_NUM_THREADS", "1")
    os.environ.setdefault("MKL_NUM_THREADS", "1")
    os.environ.setdefault("OPENBLAS_NUM_THREADS", "1")
    os.environ.setdefault("NUMEXPR_NUM_THREADS", "1")
    os.environ.setdefault("NUMBA_NUM_THREADS", "1")

    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)
    logging.getLogger("zidepy").setLevel(logging.INFO)


@pytest.fixture(scope="session")
def zinb_data():
    rng = np.random.default_rng(2024)
    return make_zinb_counts(rng)


@pytest.fixture
def small_counts():
    rng = np.random.default_rng(7)
    counts, truth = make_zinb_counts(rng, n_genes=30, n_cells=24, n_de=3)
    return counts, truth


LOW_FILTER = {
    "min_count": 1,
    "min_cells": 1,
    "trend_min_count": 5,
    "trend_min_cells": 5,
}


@pytest.fixture(scope="session")
def de_fit(zinb_data):
    from zidepy import zinb_de

    counts, truth = zinb_data
    return zinb_de(counts, condition=truth.condition, control=LOW_FILTER)
