"""
Conversion between AnnData and zidepy objects.

AnnData stores cells x genes while zidepy works on genes x cells; the
functions here take care of the orientation.
"""

from typing import Optional, Union

import anndata
import numpy as np
import pandas as pd

from .core.count_matrix import CountMatrix
from .exceptions import InputValidationError


def from_matrix(
    counts: Union[np.ndarray, pd.DataFrame],
    c_data: Optional[pd.DataFrame] = None,
    f_data: Optional[pd.DataFrame] = None,
    layer: Optional[str] = "counts",
) -> anndata.AnnData:
    """
    Create AnnData from a genes x cells count matrix.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Counts (genes x cells)
    c_data : pd.DataFrame, optional
        Cell metadata
    f_data : pd.DataFrame, optional
        Gene metadata
    layer : str, optional
        Also store the counts under this layer name

    Returns
    -------
    anndata.AnnData
        AnnData object with cells as observations
    """
    if isinstance(counts, pd.DataFrame):
        X = counts.values
        if f_data is None:
            f_data = pd.DataFrame(index=counts.index.astype(str))
        if c_data is None:
            c_data = pd.DataFrame(index=counts.columns.astype(str))
    else:
        X = np.asarray(counts)

    n_genes, n_cells = X.shape
    if f_data is None:
        f_data = pd.DataFrame(index=[f"gene_{i}" for i in range(n_genes)])
    if c_data is None:
        c_data = pd.DataFrame(index=[f"cell_{i}" for i in range(n_cells)])
    if len(f_data) != n_genes or len(c_data) != n_cells:
        raise InputValidationError("metadata does not match the count matrix shape")

    adata = anndata.AnnData(X=X.T.astype(np.float32), obs=c_data.copy(), var=f_data.copy())
    if layer is not None:
        adata.layers[layer] = adata.X.copy()
    return adata


def count_matrix_from_anndata(adata: anndata.AnnData, layer: Optional[str] = "counts") -> CountMatrix:
    """
    Extract a CountMatrix from AnnData.

    Parameters
    ----------
    adata : anndata.AnnData
        Cells x genes object
    layer : str, optional
        Layer holding raw counts; ``X`` is used when absent

    Returns
    -------
    CountMatrix
        Genes x cells counts with ``obs`` as cell metadata
    """
    if layer is not None and layer in adata.layers:
        X = adata.layers[layer]
    else:
        X = adata.X
    if hasattr(X, "toarray"):
        X = X.toarray()
    X = np.asarray(X)
    return CountMatrix(X.T, adata.obs.copy(), adata.var_names.tolist())


def store_results(adata: anndata.AnnData, fit, key: str = "zinb_de") -> anndata.AnnData:
    """
    Write a ZinbDEFit back into AnnData.

    Results go to ``var`` (prefixed with ``key``; genes removed by the
    prefilter get NaN), observation weights to ``layers['zinb_weights']``
    (1 for filtered genes) and the selected size factors to
    ``obs['size_factor']``.

    Parameters
    ----------
    adata : anndata.AnnData
        Object the fit was computed from
    fit : ZinbDEFit
        Pipeline result
    key : str
        Prefix of the ``var`` columns

    Returns
    -------
    anndata.AnnData
        The same object, modified in place
    """
    res = fit.results.reindex(adata.var_names)
    for col in res.columns:
        adata.var[f"{key}_{col}"] = res[col].values

    weights = np.ones(adata.shape, dtype=np.float64)
    pos = adata.var_names.get_indexer(fit.counts.gene_names)
    if np.any(pos < 0):
        raise InputValidationError("fit contains genes that are not in adata")
    weights[:, pos] = fit.weights.T
    adata.layers["zinb_weights"] = weights

    adata.obs["size_factor"] = fit.selected_size_factors.reindex(adata.obs_names).values
    return adata
