import numpy as np

from zidepy.example import create_example_data


def test_create_example_data():
    adata = create_example_data(n_cells=50, n_genes=20, n_de=4)
    assert adata.shape == (50, 20)
    assert set(adata.obs["group"]) == {"A", "B"}
    assert "counts" in adata.layers
    assert np.all(adata.layers["counts"] >= 0)
    assert adata.var["true_lfc"].iloc[:4].eq(2.0).all()
