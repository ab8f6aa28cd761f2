import tracemalloc

import numpy as np
import pytest

from zidepy import CountMatrix, InputValidationError, zinb_weights
from zidepy.core.weights import _initialize, _update_dispersion
from zidepy.utils.utils import nb_logpmf


@pytest.fixture
def group_design(small_counts):
    _, truth = small_counts
    return np.column_stack([np.ones(len(truth.condition)), truth.condition == "B"]).astype(float)


def test_weights_bounded_and_one_for_positive_counts(small_counts, group_design):
    counts, _ = small_counts
    fit = zinb_weights(counts.values, X=group_design, max_iter=10)
    w = fit.weights
    assert w.shape == counts.shape
    assert np.all(w >= 0) and np.all(w <= 1)
    assert np.all(w[counts.values > 0] == 1)
    # dropout zeros are down-weighted
    assert w[counts.values == 0].mean() < 1


def test_fit_shapes(small_counts):
    counts, _ = small_counts
    fit = zinb_weights(CountMatrix(counts), K=1, max_iter=5)
    assert fit.W.shape == (counts.shape[1], 1)
    assert fit.mu.shape == counts.shape
    assert fit.pi.shape == counts.shape
    assert fit.dispersion.shape == (counts.shape[0],)
    assert np.all(fit.dispersion > 0)
    assert np.all((fit.pi > 0) & (fit.pi < 1))
    assert len(fit.loglik) == fit.n_iter + 1


def test_weights_reproducible(small_counts, group_design):
    counts, _ = small_counts
    a = zinb_weights(counts.values, X=group_design, K=1, max_iter=8, random_state=3)
    b = zinb_weights(counts.values, X=group_design, K=1, max_iter=8, random_state=3)
    np.testing.assert_array_equal(a.weights, b.weights)


def test_weights_read_only(small_counts):
    counts, _ = small_counts
    fit = zinb_weights(counts.values, max_iter=2)
    with pytest.raises(ValueError):
        fit.weights[0, 0] = 0.5


def test_non_convergence_is_flagged(small_counts):
    counts, _ = small_counts
    fit = zinb_weights(counts.values, max_iter=1, tol=1e-14)
    assert not fit.converged
    assert fit.n_iter == 1
    assert np.all(np.isfinite(fit.weights))


def test_best_iterate_kept(small_counts):
    counts, _ = small_counts
    fit = zinb_weights(counts.values, max_iter=10)
    assert fit.loglik.max() >= fit.loglik[0]


def test_all_zero_gene_rejected(small_counts):
    counts, _ = small_counts
    Y = counts.values.copy()
    Y[0] = 0
    with pytest.raises(InputValidationError):
        zinb_weights(Y)


@pytest.mark.parametrize("K", [-1, 24])
def test_invalid_rank(small_counts, K):
    counts, _ = small_counts
    with pytest.raises(InputValidationError):
        zinb_weights(counts.values, K=K)


def test_dispersion_update_memory_scales_with_matrix():
    rng = np.random.default_rng(11)
    Y = rng.negative_binomial(2, 0.2, size=(200, 500)).astype(np.float64) + 1
    X = np.ones((Y.shape[1], 1))
    bounds = (1e-4, 1e3)
    params = _initialize(Y, X, 0, 0, 0, bounds)
    w = np.ones_like(Y)
    # compile the kernel outside the traced region
    nb_logpmf(np.ones(3), np.ones(3), np.full(3, 0.1))

    tracemalloc.start()
    try:
        updated = _update_dispersion(Y, X, params, w, 0.0, bounds)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert peak < 12 * Y.nbytes
    assert np.all(np.isfinite(updated.log_disp))
