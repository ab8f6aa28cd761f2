import numpy as np
import pandas as pd
import pytest

from zidepy import find_all_degs, find_deg, from_matrix
from tests.conftest import LOW_FILTER


@pytest.fixture(scope="module")
def adata(zinb_data):
    counts, truth = zinb_data
    obs = pd.DataFrame({"group": truth.condition}, index=counts.columns)
    return from_matrix(counts, c_data=obs)


def test_find_deg_two_groups(adata, zinb_data):
    _, truth = zinb_data
    res = find_deg(adata, "group", "B", "A", control=LOW_FILTER)
    assert list(res.columns) == ["avg_log2FC", "pct.1", "pct.2", "baseMean", "p_val", "p_val_adj"]
    assert res.index.name == "gene"
    padj = res["p_val_adj"].dropna().values
    assert np.all(np.diff(padj) >= 0)
    top = res.index[:5]
    de_genes = {f"gene_{i}" for i in np.where(truth.is_de)[0]}
    assert set(top) <= de_genes
    assert np.all(res.loc[list(top), "avg_log2FC"] > 0)
    assert res["pct.1"].between(0, 1).all()


def test_find_deg_filters(adata):
    res = find_deg(adata, "group", "B", control=LOW_FILTER, only_pos=True, logfc_threshold=1.0)
    assert np.all(res["avg_log2FC"] >= 1.0)


def test_find_deg_validates(adata):
    with pytest.raises(ValueError):
        find_deg(adata, "group", "B", test_method="score")
    with pytest.raises(ValueError):
        find_deg(adata, "group", "C")


def test_find_all_degs(adata):
    res = find_all_degs(adata, "group", control=LOW_FILTER)
    assert set(res["cluster"]) == {"A", "B"}
    assert "gene" in res.columns
