"""Differential expression between groups of cells with AnnData support"""

import logging

import numpy as np
import pandas as pd

from ..io import count_matrix_from_anndata
from ..pipeline import zinb_de

logger = logging.getLogger(__name__)


def find_deg(
    adata,
    groupby,
    ident_1,
    ident_2=None,
    layer='counts',
    logfc_threshold=0.0,
    min_pct=0.0,
    test_method='lrt',  # 'lrt' or 'wald'
    control=None,
    n_jobs=1,
    only_pos=False,
    verbose=False
):
    """
    Find differentially expressed genes between two groups of cells

    Parameters
    ----------
    adata : AnnData
        AnnData object containing raw counts
    groupby : str
        Column name in adata.obs used for grouping cells
    ident_1 : str or list
        Identity class(es) to define markers for
    ident_2 : str or list, optional
        A second identity class for comparison. If None, use all other cells
    layer : str, optional
        Layer in adata holding raw counts
    logfc_threshold : float, optional
        Only report genes with at least this absolute log2 fold change
    min_pct : float, optional
        Only report genes detected in at least this fraction of cells in
        either group
    test_method : str, optional
        'lrt' for the likelihood ratio test or 'wald'
    control : dict, optional
        Overrides of the pipeline control parameters
    n_jobs : int, optional
        Number of parallel jobs for the per-gene fits
    only_pos : bool, optional
        Only return genes higher in ident_1
    verbose : bool, optional
        Show progress bars

    Returns
    -------
    pandas.DataFrame
        Genes sorted by adjusted p-value with avg_log2FC, pct.1, pct.2,
        p_val and p_val_adj
    """
    if test_method not in ('lrt', 'wald'):
        raise ValueError(f"Invalid test_method: {test_method}. Must be 'lrt' or 'wald'.")
    if isinstance(ident_1, str):
        ident_1 = [ident_1]

    cells_1 = adata.obs[groupby].isin(ident_1).values
    if ident_2 is None:
        cells_2 = ~cells_1
    else:
        if isinstance(ident_2, str):
            ident_2 = [ident_2]
        cells_2 = adata.obs[groupby].isin(ident_2).values
    if not cells_1.any() or not cells_2.any():
        raise ValueError("Both groups must contain at least one cell")

    sub = adata[cells_1 | cells_2]
    counts = count_matrix_from_anndata(sub, layer=layer)
    # ident_2 is the reference level
    condition = pd.Categorical(
        np.where(cells_1[cells_1 | cells_2], 'ident_1', 'ident_2'),
        categories=['ident_2', 'ident_1'],
    )

    ctrl = dict(control or {})
    ctrl['test'] = test_method
    logger.info("Testing %s vs %s on %d cells", ident_1, ident_2 or 'rest', sub.n_obs)
    fit = zinb_de(counts, condition=condition, control=ctrl, n_jobs=n_jobs, silent=not verbose)

    res = fit.results
    Y = fit.counts.assay()
    in_1 = (condition == 'ident_1')
    pct_1 = np.sum(Y[:, in_1] > 0, axis=1) / np.sum(in_1)
    pct_2 = np.sum(Y[:, ~in_1] > 0, axis=1) / np.sum(~in_1)

    results = pd.DataFrame({
        'avg_log2FC': res['log2FoldChange'].values,
        'pct.1': pct_1,
        'pct.2': pct_2,
        'baseMean': res['baseMean'].values,
        'p_val': res['pvalue'].values,
        'p_val_adj': res['padj'].values,
    }, index=res.index)
    results.index.name = 'gene'

    results = results[results['avg_log2FC'].abs() >= logfc_threshold]
    results = results[(results['pct.1'] >= min_pct) | (results['pct.2'] >= min_pct)]
    if only_pos:
        results = results[results['avg_log2FC'] > 0]

    results = results.sort_values('p_val_adj', na_position='last')
    logger.info("Found %d genes passing the filters", len(results))
    return results


def find_all_degs(
    adata,
    groupby,
    layer='counts',
    logfc_threshold=0.0,
    min_pct=0.0,
    test_method='lrt',
    control=None,
    n_jobs=1,
    only_pos=False,
    verbose=False
):
    """
    Find markers for every identity class against all other cells

    Parameters are those of :func:`find_deg`.

    Returns
    -------
    pandas.DataFrame
        Concatenated results with a 'cluster' column
    """
    all_markers = []
    for identity in adata.obs[groupby].unique():
        markers = find_deg(
            adata, groupby, identity, ident_2=None, layer=layer,
            logfc_threshold=logfc_threshold, min_pct=min_pct, test_method=test_method,
            control=control, n_jobs=n_jobs, only_pos=only_pos, verbose=verbose,
        )
        markers['cluster'] = identity
        all_markers.append(markers.reset_index())

    return pd.concat(all_markers, ignore_index=True)
