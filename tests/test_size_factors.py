import numpy as np
import pytest

from zidepy import (
    InputValidationError,
    compare_size_factors,
    select_size_factors,
    size_factors_pooled,
    size_factors_positive_counts,
)
from zidepy.utils import geometric_mean
from tests.synthetic_data import make_zinb_counts


@pytest.fixture(scope="module")
def null_data():
    rng = np.random.default_rng(11)
    return make_zinb_counts(rng, n_genes=200, n_cells=60, n_de=0, sf_sdlog=0.4)


@pytest.mark.parametrize("estimator", [size_factors_positive_counts, size_factors_pooled])
def test_positive_with_unit_geometric_mean(null_data, estimator):
    counts, _ = null_data
    sf = estimator(counts)
    assert list(sf.index) == list(counts.columns)
    assert np.all(sf > 0)
    assert geometric_mean(sf.values) == pytest.approx(1.0)


@pytest.mark.parametrize("estimator", [size_factors_positive_counts, size_factors_pooled])
def test_tracks_true_factors(null_data, estimator):
    counts, truth = null_data
    sf = estimator(counts)
    assert np.corrcoef(np.log(sf.values), np.log(truth.size_factors))[0, 1] > 0.9


def test_pooled_with_clusters(null_data):
    counts, truth = null_data
    sf = size_factors_pooled(counts, clusters=truth.condition)
    assert np.all(sf > 0)
    assert geometric_mean(sf.values) == pytest.approx(1.0)
    assert np.corrcoef(np.log(sf.values), np.log(truth.size_factors))[0, 1] > 0.8


def test_pooled_small_pools(null_data):
    counts, _ = null_data
    sf = size_factors_pooled(counts.iloc[:, :12], sizes=[4, 6])
    assert len(sf) == 12
    assert np.all(sf > 0)


def test_positive_counts_reference_fallback():
    Y = np.array(
        [
            [0, 2, 4, 8],
            [3, 0, 6, 12],
            [5, 10, 0, 40],
        ]
    )
    sf = size_factors_positive_counts(Y)
    assert np.all(sf > 0)
    assert geometric_mean(sf.values) == pytest.approx(1.0)


def test_positive_counts_complete_genes_only():
    Y = np.array(
        [
            [1, 2, 4],
            [10, 20, 40],
            [0, 7, 0],
        ]
    )
    sf = size_factors_positive_counts(Y).values
    np.testing.assert_allclose(sf / sf[0], [1, 2, 4])


def test_empty_cell_rejected():
    Y = np.array([[0, 2, 4], [0, 3, 0]])
    with pytest.raises(InputValidationError):
        size_factors_positive_counts(Y)
    with pytest.raises(InputValidationError):
        size_factors_pooled(Y)


def test_compare_and_select(null_data):
    counts, truth = null_data
    candidates = {
        "pooled": size_factors_pooled(counts),
        "poscounts": size_factors_positive_counts(counts),
    }
    scores = compare_size_factors(candidates, truth.size_factors)
    assert set(scores.index) == {"pooled", "poscounts"}
    name, sf = select_size_factors(candidates, truth=truth.size_factors)
    assert name == scores.idxmax()
    assert sf is candidates[name]
    assert select_size_factors(candidates)[0] == "pooled"
    with pytest.raises(ValueError):
        select_size_factors(candidates, default="tmm")
