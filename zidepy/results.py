"""
Assembly of the per-gene differential expression table.
"""

import numpy as np
import pandas as pd

from .core.design import DesignMatrix
from .core.glm import GLMFit

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "df", "pvalue", "padj", "converged"]


def assemble_results(
    base_mean,
    full: GLMFit,
    test: pd.DataFrame,
    padj,
    design: DesignMatrix,
    coefficient: str = None,
    reduced: GLMFit = None,
) -> pd.DataFrame:
    """
    Merge estimates and test results into one table

    Parameters
    ----------
    base_mean : array-like
        Mean normalised count per gene
    full : GLMFit
        Fit of the full design
    test : pandas.DataFrame
        Output of :func:`zidepy.stats.lrt` or :func:`zidepy.stats.wald_test`
    padj : array-like
        Adjusted p-values
    design : DesignMatrix
        Design pair
    coefficient : str, optional
        Coefficient reported as log2 fold change; defaults to the last
        tested column
    reduced : GLMFit, optional
        Fit of the reduced design; when given, a gene counts as converged
        only if both fits converged

    Returns
    -------
    pandas.DataFrame
        Indexed by gene; genes that did not converge carry NaN statistics
    """
    if coefficient is None:
        coefficient = design.tested[-1]
    if coefficient not in full.coef.columns:
        raise ValueError(f"Unknown coefficient: {coefficient}")

    res = pd.DataFrame(index=full.coef.index)
    res["baseMean"] = np.asarray(base_mean, dtype=np.float64)
    res["log2FoldChange"] = full.coef[coefficient].values / np.log(2)
    if "lfcSE" in test.columns:
        res["lfcSE"] = test["lfcSE"].values
    res["stat"] = test["stat"].values
    res["df"] = test["df"].values
    res["pvalue"] = test["pvalue"].values
    res["padj"] = np.asarray(padj, dtype=np.float64)
    converged = full.converged.values.astype(bool)
    if reduced is not None:
        converged = converged & reduced.converged.values.astype(bool)
    res["converged"] = converged

    bad = ~res["converged"].values
    res.loc[bad, ["stat", "pvalue", "padj"]] = np.nan
    res = res[[c for c in RESULT_COLUMNS if c in res.columns]]
    res.attrs["coefficient"] = coefficient
    return res
