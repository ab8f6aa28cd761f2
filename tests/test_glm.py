import numpy as np
import pandas as pd
import pytest

from zidepy import GLMFit, InputValidationError, fit_nb_glm
from tests.synthetic_data import make_zinb_counts


@pytest.fixture(scope="module")
def glm_data():
    rng = np.random.default_rng(3)
    counts, truth = make_zinb_counts(rng, n_genes=15, n_cells=40, n_de=5, dropout_rate=0.0)
    X = pd.DataFrame(
        {"Intercept": 1.0, "condition[T.B]": (truth.condition == "B").astype(float)},
        index=counts.columns,
    )
    return counts, truth, X


def test_fit_structure(glm_data):
    counts, truth, X = glm_data
    fit = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X)
    assert isinstance(fit, GLMFit)
    assert fit.coef_names == ["Intercept", "condition[T.B]"]
    assert list(fit.coef.index) == list(counts.index)
    assert fit.mu.shape == counts.shape
    assert fit.converged.all()
    assert np.all(fit.deviance >= -1e-8)
    assert np.all(fit.se.values > 0)


def test_recovers_fold_change(glm_data):
    counts, truth, X = glm_data
    fit = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X)
    lfc = fit.coef["condition[T.B]"].values / np.log(2)
    assert np.mean(lfc[:5]) == pytest.approx(2.0, abs=0.5)
    assert np.mean(np.abs(lfc[5:])) < 0.5


def test_warm_start_reproduces_fit(glm_data):
    counts, truth, X = glm_data
    first = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X)
    second = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X, start=first.coef.values)
    np.testing.assert_allclose(second.mu, first.mu, rtol=1e-5)
    assert np.all(second.n_iter <= first.n_iter)


def test_constant_gene():
    n = 20
    Y = np.vstack([np.full(n, 10), np.r_[np.full(10, 2), np.full(10, 8)]])
    X = np.column_stack([np.ones(n), np.r_[np.zeros(10), np.ones(10)]])
    fit = fit_nb_glm(Y, None, np.ones(n), np.array([0.05, 0.1]), X)
    assert fit.coef.iloc[0, 1] == pytest.approx(0.0, abs=1e-6)
    assert fit.coef.iloc[0, 0] == pytest.approx(np.log(10), abs=1e-6)
    assert fit.converged.iloc[0]
    assert fit.coef.iloc[1, 1] == pytest.approx(np.log(4), abs=1e-4)


def test_zero_weights_equal_dropping_cells(glm_data):
    counts, truth, X = glm_data
    w = np.ones(counts.shape)
    w[:, ::4] = 0
    keep = np.ones(counts.shape[1], dtype=bool)
    keep[::4] = False
    weighted = fit_nb_glm(counts, w, truth.size_factors, truth.dispersion, X)
    dropped = fit_nb_glm(counts.loc[:, keep], None, truth.size_factors[keep], truth.dispersion, X.loc[keep])
    np.testing.assert_allclose(weighted.coef.values, dropped.coef.values, atol=1e-5)
    np.testing.assert_allclose(weighted.loglik.values, dropped.loglik.values, rtol=1e-6)


def test_empty_group_does_not_diverge():
    n = 20
    Y = np.vstack([np.r_[np.full(10, 5), np.zeros(10, dtype=int)], np.arange(n)])
    X = np.column_stack([np.ones(n), np.r_[np.zeros(10), np.ones(10)]])
    fit = fit_nb_glm(Y, None, np.ones(n), np.array([0.1, 0.1]), X)
    assert np.all(np.isfinite(fit.coef.values))
    assert np.all(np.abs(fit.coef.values) <= 30)
    assert fit.coef.iloc[0, 1] < -5


def test_min_iter_blocks_early_exit(glm_data):
    counts, truth, X = glm_data
    fit = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X, min_iter=5, maxit=3)
    assert not fit.converged.any()
    assert np.all(fit.n_iter == 3)
    forced = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X, min_iter=8)
    assert np.all(forced.n_iter >= 8)
    assert forced.converged.all()


def test_parallel_matches_sequential(glm_data):
    counts, truth, X = glm_data
    seq = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X, n_jobs=1)
    par = fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X, n_jobs=2)
    np.testing.assert_allclose(par.coef.values, seq.coef.values)


def test_invalid_inputs(glm_data):
    counts, truth, X = glm_data
    with pytest.raises(InputValidationError):
        fit_nb_glm(counts, None, truth.size_factors, np.full(15, np.nan), X)
    with pytest.raises(InputValidationError):
        fit_nb_glm(counts, np.ones((2, 2)), truth.size_factors, truth.dispersion, X)
    with pytest.raises(InputValidationError):
        fit_nb_glm(counts, None, truth.size_factors, truth.dispersion, X.iloc[:10])


def test_failed_step_halving_keeps_previous_coefficients(monkeypatch):
    from zidepy.core import glm

    rng = np.random.default_rng(8)
    y = rng.poisson(10, size=20).astype(np.float64)
    w = np.ones(20)
    X = np.column_stack([np.ones(20), np.repeat([0.0, 1.0], 10)])
    start = np.array([1.0, 0.5])
    record = glm.GeneRecord(index=0, y=y, w=w, dispersion=0.1, start=start)

    true_loglik = glm._weighted_loglik
    calls = []

    def loglik_rejecting_steps(y_, mu, w_, disp):
        calls.append(1)
        # saturated and starting likelihoods, then every proposal is worse
        if len(calls) <= 2:
            return true_loglik(y_, mu, w_, disp)
        return -np.inf

    monkeypatch.setattr(glm, "_weighted_loglik", loglik_rejecting_steps)
    result = glm._fit_gene(record, X, np.zeros(20), 1e-6, 0, 5, 1e-8)

    np.testing.assert_array_equal(result["coef"], start)
    np.testing.assert_allclose(result["mu"], np.exp(X @ start))
    assert result["loglik"] == pytest.approx(true_loglik(y, np.exp(X @ start), w, 0.1))
