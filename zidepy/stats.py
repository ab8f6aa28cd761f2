"""
Hypothesis tests for fitted GLMs.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .core.design import DesignMatrix
from .core.glm import GLMFit, RIDGE

logger = logging.getLogger(__name__)


def lrt(full: GLMFit, reduced: GLMFit, design: DesignMatrix) -> pd.DataFrame:
    """
    Likelihood ratio test of the full against the reduced model

    Parameters
    ----------
    full : GLMFit
        Fit of the full design
    reduced : GLMFit
        Fit of the reduced design on the same genes
    design : DesignMatrix
        The validated design pair

    Returns
    -------
    pandas.DataFrame
        Columns stat, df, pvalue indexed by gene; NaN for genes where either
        fit did not converge
    """
    if not full.loglik.index.equals(reduced.loglik.index):
        raise ValueError("full and reduced fits must cover the same genes")
    df = design.df
    stat = np.maximum(2 * (full.loglik.values - reduced.loglik.values), 0)
    ok = full.converged.values & reduced.converged.values
    stat = np.where(ok, stat, np.nan)
    pvalue = stats.chi2.sf(stat, df)
    return pd.DataFrame({"stat": stat, "df": float(df), "pvalue": pvalue}, index=full.loglik.index)


def wald_test(
    full: GLMFit,
    design: DesignMatrix,
    weights,
    dispersions,
    coefficients: Optional[Union[str, Sequence[str]]] = None,
) -> pd.DataFrame:
    """
    Wald test of the tested coefficients with a residual-df reference

    The covariance is (X'WX)^-1 with the NB working weights multiplied by the
    observation weights. Down-weighted zeros shrink the effective sample
    size, so the reference distribution is t (one coefficient) or F (several)
    with sum(w) - p residual degrees of freedom instead of the normal.

    Parameters
    ----------
    full : GLMFit
        Fit of the full design
    design : DesignMatrix
        Design pair; its tested coefficients are used by default
    weights : numpy.ndarray or None
        Observation weights used in the fit
    dispersions : array-like
        Dispersion per gene used in the fit
    coefficients : str or list of str, optional
        Coefficients to test jointly

    Returns
    -------
    pandas.DataFrame
        Columns stat, df, dfResid, pvalue and, for a single coefficient,
        lfcSE on the log2 scale
    """
    if coefficients is None:
        coefficients = design.tested
    elif isinstance(coefficients, str):
        coefficients = [coefficients]
    names = full.coef_names
    missing = [c for c in coefficients if c not in names]
    if missing:
        raise ValueError(f"Coefficients not in the design: {missing}")
    idx = [names.index(c) for c in coefficients]
    q = len(idx)

    X = design.full.values.astype(np.float64)
    n, p = X.shape
    mu = full.mu
    w = np.ones_like(mu) if weights is None else np.asarray(weights, dtype=np.float64)
    disp = np.asarray(dispersions, dtype=np.float64)

    W = w * mu / (1 + disp[:, None] * mu)
    info = np.einsum("gn,np,nq->gpq", np.nan_to_num(W), X, X) + RIDGE * np.eye(p)[None]
    cov = np.linalg.inv(info)[:, idx][:, :, idx]
    beta = full.coef.values[:, idx]
    df_resid = np.maximum(w.sum(axis=1) - p, 1.0)

    if q == 1:
        se = np.sqrt(cov[:, 0, 0])
        stat = beta[:, 0] / se
        pvalue = 2 * stats.t.sf(np.abs(stat), df_resid)
    else:
        se = None
        stat = np.einsum("gi,gij,gj->g", beta, np.linalg.inv(cov), beta) / q
        pvalue = stats.f.sf(stat, q, df_resid)

    ok = full.converged.values
    out = pd.DataFrame(
        {
            "stat": np.where(ok, stat, np.nan),
            "df": float(q),
            "dfResid": df_resid,
            "pvalue": np.where(ok, pvalue, np.nan),
        },
        index=full.coef.index,
    )
    if se is not None:
        out["lfcSE"] = np.where(ok, se / np.log(2), np.nan)
    return out


def p_adjust_bh(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjustment over the non-missing p-values

    Parameters
    ----------
    pvalues : array-like
        Raw p-values, NaN allowed

    Returns
    -------
    numpy.ndarray
        Adjusted p-values; NaN where the input is NaN
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    padj = np.full_like(pvalues, np.nan)
    ok = ~np.isnan(pvalues)
    if ok.any():
        padj[ok] = multipletests(pvalues[ok], method="fdr_bh")[1]
    return padj


def independent_filtering(base_mean, pvalues, alpha=0.1, n_theta=50):
    """
    Filter genes on mean expression to maximise the number of rejections

    Quantiles of baseMean from 0 to 0.95 are tried as thresholds; the one
    that yields the most adjusted p-values below ``alpha`` is kept and genes
    under it receive NaN.

    Parameters
    ----------
    base_mean : array-like
        Mean normalised count per gene
    pvalues : array-like
        Raw p-values
    alpha : float
        Target false discovery rate
    n_theta : int
        Number of quantiles tried

    Returns
    -------
    tuple
        (adjusted p-values, chosen baseMean threshold)
    """
    base_mean = np.asarray(base_mean, dtype=np.float64)
    pvalues = np.asarray(pvalues, dtype=np.float64)
    thetas = np.linspace(0, 0.95, n_theta)
    cutoffs = np.quantile(base_mean, thetas)

    best_padj, best_cutoff, best_rejections = None, None, -1
    for cutoff in cutoffs:
        padj = p_adjust_bh(np.where(base_mean >= cutoff, pvalues, np.nan))
        rejections = int(np.sum(padj < alpha))
        if rejections > best_rejections:
            best_padj, best_cutoff, best_rejections = padj, cutoff, rejections

    logger.info(
        "Independent filtering threshold baseMean >= %.3g gives %d rejections",
        best_cutoff, best_rejections,
    )
    return best_padj, best_cutoff
