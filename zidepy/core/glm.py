"""
Weighted negative binomial GLM fitted gene by gene with IRLS
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from ..exceptions import InputValidationError
from ..utils import map_genes, nb_logpmf
from .count_matrix import as_count_array

logger = logging.getLogger(__name__)

MAX_COEF = 30.0
MAX_HALVING = 10
RIDGE = 1e-8


class GeneRecord(NamedTuple):
    """Slices of the shared inputs needed to fit one gene."""

    index: int
    y: np.ndarray
    w: np.ndarray
    dispersion: float
    start: Optional[np.ndarray]


@dataclass(frozen=True)
class GLMFit:
    """
    Per-gene fits of one design

    Attributes
    ----------
    coef : pandas.DataFrame
        Coefficients on the natural-log scale (genes x coefficients)
    se : pandas.DataFrame
        Standard errors from the inverse weighted information
    mu : numpy.ndarray
        Fitted means (genes x cells)
    loglik : pandas.Series
        Weighted log-likelihood
    deviance : pandas.Series
        Weighted deviance
    converged : pandas.Series
        False for genes that hit ``maxit``, the coefficient cap or a
        numerical failure
    n_iter : pandas.Series
        IRLS iterations used
    """

    coef: pd.DataFrame
    se: pd.DataFrame
    mu: np.ndarray
    loglik: pd.Series
    deviance: pd.Series
    converged: pd.Series
    n_iter: pd.Series

    @property
    def coef_names(self):
        return list(self.coef.columns)

    def __repr__(self):
        return (
            f"GLMFit: {self.coef.shape[0]} genes, {self.coef.shape[1]} coefficients, "
            f"{int((~self.converged).sum())} not converged"
        )


def _weighted_loglik(y, mu, w, disp):
    return np.sum(w * nb_logpmf(y, mu, disp))


def _initial_coef(y, w, X, offset):
    z = np.log(y + 0.1) - offset
    sw = np.sqrt(w)
    beta, *_ = np.linalg.lstsq(X * sw[:, None], z * sw, rcond=None)
    return beta


def _fit_gene(record, X, offset, min_mu, min_iter, maxit, tol):
    """
    IRLS for a single gene

    Returns
    -------
    dict
        coef, se, mu, loglik, deviance, converged, n_iter
    """
    y, w, disp = record.y, record.w, record.dispersion
    p = X.shape[1]
    nan_result = {
        "coef": np.full(p, np.nan), "se": np.full(p, np.nan), "mu": np.full(len(y), np.nan),
        "loglik": np.nan, "deviance": np.nan, "converged": False, "n_iter": 0,
    }
    ll_sat = _weighted_loglik(y, y, w, disp)

    try:
        beta = _initial_coef(y, w, X, offset) if record.start is None else np.asarray(record.start, dtype=np.float64)
        mu = np.maximum(np.exp(np.clip(X @ beta + offset, -MAX_COEF - 10, MAX_COEF + 10)), min_mu)
        ll = _weighted_loglik(y, mu, w, disp)
        dev = 2 * (ll_sat - ll)
        converged = False
        n_iter = 0

        for n_iter in range(1, maxit + 1):
            eta = np.log(mu)
            W = w * mu / (1 + disp * mu)
            z = eta - offset + (y - mu) / mu
            XtWX = X.T @ (X * W[:, None]) + RIDGE * np.eye(p)
            beta_new = np.linalg.solve(XtWX, X.T @ (W * z))

            for _ in range(MAX_HALVING):
                mu_new = np.maximum(np.exp(np.clip(X @ beta_new + offset, -MAX_COEF - 10, MAX_COEF + 10)), min_mu)
                ll_new = _weighted_loglik(y, mu_new, w, disp)
                if ll_new >= ll - 1e-10 * abs(ll):
                    break
                beta_new = (beta + beta_new) / 2
            else:
                beta_new, mu_new, ll_new = beta, mu, ll

            if np.any(np.abs(beta_new) > MAX_COEF):
                beta, mu, ll = beta_new, mu_new, ll_new
                dev = 2 * (ll_sat - ll)
                break

            dev_new = 2 * (ll_sat - ll_new)
            change = np.abs(dev_new - dev) / (np.abs(dev_new) + 0.1)
            beta, mu, ll, dev = beta_new, mu_new, ll_new, dev_new
            if n_iter >= min_iter and change < tol:
                converged = True
                break

        W = w * mu / (1 + disp * mu)
        cov = np.linalg.inv(X.T @ (X * W[:, None]) + RIDGE * np.eye(p))
        se = np.sqrt(np.maximum(np.diag(cov), 0))
    except (np.linalg.LinAlgError, FloatingPointError):
        return nan_result

    if np.any(np.abs(beta) > MAX_COEF):
        converged = False
    return {
        "coef": beta, "se": se, "mu": mu, "loglik": ll, "deviance": dev,
        "converged": converged, "n_iter": n_iter,
    }


def fit_nb_glm(
    counts,
    weights,
    size_factors,
    dispersions,
    design_matrix,
    min_mu=1e-6,
    min_iter=0,
    maxit=100,
    tol=1e-8,
    start=None,
    n_jobs=1,
    silent=True,
):
    """
    Fit a weighted negative binomial GLM to every gene

    Parameters
    ----------
    counts : CountMatrix or numpy.ndarray
        Counts (n_genes, n_cells)
    weights : numpy.ndarray or None
        Observation weights; None fits an unweighted model
    size_factors : array-like
        Per-cell size factors, entering as offset log(s)
    dispersions : array-like
        Fixed dispersion per gene
    design_matrix : pandas.DataFrame or numpy.ndarray
        Model matrix (n_cells, p)
    min_mu : float
        Floor on fitted means
    min_iter : int
        Iterations run before a convergence exit is allowed
    maxit : int
        Iteration cap; genes reaching it are flagged as not converged
    tol : float
        Relative deviance tolerance
    start : array-like, optional
        Starting coefficients (n_genes, p)
    n_jobs : int
        Number of parallel workers
    silent : bool
        Disable the progress bar

    Returns
    -------
    GLMFit
        Per-gene fits
    """
    Y, genes, _ = as_count_array(counts)
    G, n = Y.shape
    if isinstance(design_matrix, pd.DataFrame):
        names = list(design_matrix.columns)
        X = design_matrix.values.astype(np.float64)
    else:
        X = np.asarray(design_matrix, dtype=np.float64)
        names = [f"x{k}" for k in range(X.shape[1])]
    if X.shape[0] != n:
        raise InputValidationError("design rows must match the number of cells")
    w = np.ones_like(Y) if weights is None else np.asarray(weights, dtype=np.float64)
    if w.shape != Y.shape:
        raise InputValidationError("weights must have the shape of counts")
    disp = np.asarray(dispersions, dtype=np.float64)
    if disp.shape != (G,) or np.any(~np.isfinite(disp)) or np.any(disp < 0):
        raise InputValidationError("dispersions must be finite, non-negative and one per gene")
    offset = np.log(np.asarray(size_factors, dtype=np.float64))
    if start is not None:
        start = np.asarray(start, dtype=np.float64)
        if start.shape != (G, X.shape[1]):
            raise InputValidationError("start must have shape (n_genes, n_coefficients)")

    records = [
        GeneRecord(i, Y[i], w[i], float(disp[i]), None if start is None else start[i])
        for i in range(G)
    ]
    func = partial(_fit_gene, X=X, offset=offset, min_mu=min_mu, min_iter=min_iter, maxit=maxit, tol=tol)
    fits = map_genes(func, records, n_jobs=n_jobs, desc="Fitting NB GLM", silent=silent)

    converged = pd.Series([f["converged"] for f in fits], index=genes, name="converged")
    if not converged.all():
        logger.warning("%d of %d genes did not converge", int((~converged).sum()), G)

    return GLMFit(
        coef=pd.DataFrame(np.vstack([f["coef"] for f in fits]), index=genes, columns=names),
        se=pd.DataFrame(np.vstack([f["se"] for f in fits]), index=genes, columns=names),
        mu=np.vstack([f["mu"] for f in fits]),
        loglik=pd.Series([f["loglik"] for f in fits], index=genes, name="loglik"),
        deviance=pd.Series([f["deviance"] for f in fits], index=genes, name="deviance"),
        converged=converged,
        n_iter=pd.Series([f["n_iter"] for f in fits], index=genes, name="n_iter"),
    )
