"""
Per-cell size factors.

Two interchangeable estimators are provided: a positive-counts ratio
against a pseudo-reference, and pooling-based deconvolution which sums
cells into pools before taking median ratios, so that dropout zeros in
single cells do not dominate the estimate. Both return factors whose
geometric mean is 1.
"""

import logging
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.optimize import lsq_linear

from ..exceptions import InputValidationError
from ..utils.utils import geometric_mean
from .count_matrix import as_count_array

logger = logging.getLogger(__name__)

# weight of the single-cell equations in the deconvolution system
LOWWEIGHT = 1e-6


def _unpack(counts, subset=None):
    Y, _, cells = as_count_array(counts)
    if subset is not None:
        Y = Y[np.asarray(subset, dtype=bool)]
    if Y.shape[0] == 0:
        raise InputValidationError("size factors need a non-empty genes x cells matrix")
    return Y, cells


def _normalize_geometric(sf):
    return sf / geometric_mean(sf)


def size_factors_positive_counts(
    counts,
    subset: Optional[np.ndarray] = None,
    min_reference_genes: int = 1,
) -> pd.Series:
    """
    Positive-counts ratio size factors

    The pseudo-reference of a gene is its geometric mean across cells,
    computed from genes that are nonzero in every cell. Each cell's factor
    is the geometric mean of count / reference over the genes nonzero in
    that cell.

    Parameters
    ----------
    counts : CountMatrix, pandas.DataFrame or numpy.ndarray
        Counts (n_genes, n_cells)
    subset : array-like of bool, optional
        Genes to use
    min_reference_genes : int
        Minimum number of genes without zeros; below it the reference is
        built from the positive counts of every gene

    Returns
    -------
    pandas.Series
        Size factors indexed by cell
    """
    Y, cells = _unpack(counts, subset)
    n = Y.shape[1]
    positive = Y > 0
    logY = np.log(np.where(positive, Y, 1.0))

    complete = np.all(positive, axis=1)
    if complete.sum() >= min_reference_genes:
        log_ref = np.where(complete, logY.mean(axis=1), np.nan)
    else:
        logger.warning(
            "Only %d genes are nonzero in every cell; using the positive-counts "
            "reference of all genes", int(complete.sum())
        )
        log_ref = logY.sum(axis=1) / n

    usable = positive & np.isfinite(log_ref)[:, None]
    n_usable = usable.sum(axis=0)
    if np.any(n_usable == 0):
        raise InputValidationError(
            f"{int(np.sum(n_usable == 0))} cells share no expressed gene with the reference"
        )
    log_ratio = np.where(usable, logY - np.nan_to_num(log_ref)[:, None], 0.0)
    sf = np.exp(log_ratio.sum(axis=0) / n_usable)
    return pd.Series(_normalize_geometric(sf), index=cells, name="poscounts")


def _default_sizes(n):
    sizes = [s for s in range(21, 102, 5) if s <= n]
    if not sizes:
        sizes = sorted({max(1, n // k) for k in (2, 3, 4, 5)})
    return sizes


def _ring_order(lib):
    """Cells sorted by library size, odd ranks ascending then even ranks descending."""
    order = np.argsort(lib, kind="stable")
    return np.concatenate([order[0::2], order[1::2][::-1]])


def _pool_deconvolve(Y, sizes, min_mean):
    """
    Deconvolve pool-level ratios into per-cell factors for one cluster

    Returns
    -------
    tuple
        (size factors scaled by library size, mean normalised profile)
    """
    n = Y.shape[1]
    lib = Y.sum(axis=0)
    if np.any(lib == 0):
        raise InputValidationError("cells with zero total counts cannot be normalised")
    if n == 1:
        return lib.copy(), Y[:, 0] / lib[0]

    norm = Y / lib[None, :]
    ref = norm.mean(axis=1)
    if min_mean is not None:
        ave = (Y / (lib / lib.mean())[None, :]).mean(axis=1)
        keep = ave >= min_mean
    else:
        keep = ref > 0
    if not np.any(keep):
        raise InputValidationError("no genes pass the mean filter for pooling")
    norm_k = norm[keep]
    ref_k = ref[keep]

    sizes = [int(s) for s in sizes if 1 <= s <= n] or [n]
    ring = _ring_order(lib)

    rows, cols, rhs = [], [], []
    eq = 0
    for s in sizes:
        for start in range(n):
            idx = ring[(start + np.arange(s)) % n]
            pooled = norm_k[:, idx].sum(axis=1)
            rhs.append(np.median(pooled / ref_k))
            rows.extend([eq] * s)
            cols.extend(idx.tolist())
            eq += 1

    single = np.median(norm_k / ref_k[:, None], axis=0)
    lw = np.sqrt(LOWWEIGHT)
    rows.extend(range(eq, eq + n))
    cols.extend(range(n))
    A = sp.csr_matrix(
        (np.concatenate([np.ones(len(rows) - n), np.full(n, lw)]), (rows, cols)),
        shape=(eq + n, n),
    )
    b = np.concatenate([np.asarray(rhs), single * lw])

    lower = 1e-8 * max(np.median(rhs), 1e-12)
    sol = lsq_linear(A, b, bounds=(lower, np.inf), lsq_solver="lsmr")
    theta = sol.x
    if not sol.success:
        logger.warning("Deconvolution system did not converge: %s", sol.message)
    if np.any(theta <= lower * (1 + 1e-6)):
        logger.warning(
            "%d cells hit the positivity bound during deconvolution", int(np.sum(theta <= lower * (1 + 1e-6)))
        )
    sf = theta * lib
    return sf, (Y / sf[None, :]).mean(axis=1)


def size_factors_pooled(
    counts,
    sizes: Optional[Sequence[int]] = None,
    clusters: Optional[Sequence] = None,
    subset: Optional[np.ndarray] = None,
    min_mean: Optional[float] = None,
) -> pd.Series:
    """
    Pooling-based deconvolution size factors

    Cells are arranged in a ring ordered by library size. Sliding windows of
    each pool size form pools whose summed, library-size normalised profile
    is compared with the average profile by a median ratio. The resulting
    linear system is solved with positivity bounds to recover one factor per
    cell.

    Parameters
    ----------
    counts : CountMatrix, pandas.DataFrame or numpy.ndarray
        Counts (n_genes, n_cells)
    sizes : sequence of int, optional
        Pool sizes; defaults to 21..101 by 5, capped at the number of cells
    clusters : sequence, optional
        Cluster label per cell; pooling runs within clusters which are then
        rescaled against the cluster with the median library size
    subset : array-like of bool, optional
        Genes to use
    min_mean : float, optional
        Minimum library-size adjusted average count for a gene to enter the
        ratios

    Returns
    -------
    pandas.Series
        Size factors indexed by cell
    """
    Y, cells = _unpack(counts, subset)
    n = Y.shape[1]
    if clusters is None:
        clusters = np.zeros(n, dtype=int)
    clusters = np.asarray(clusters)
    if clusters.shape != (n,):
        raise InputValidationError("clusters must have one label per cell")

    levels = pd.unique(clusters)
    sf = np.empty(n)
    profiles = {}
    mean_lib = {}
    for level in levels:
        idx = np.where(clusters == level)[0]
        cur_sizes = sizes if sizes is not None else _default_sizes(len(idx))
        sf[idx], profiles[level] = _pool_deconvolve(Y[:, idx], cur_sizes, min_mean)
        mean_lib[level] = Y[:, idx].sum(axis=0).mean()

    if len(levels) > 1:
        ordered = sorted(levels, key=lambda lv: mean_lib[lv])
        ref_level = ordered[(len(ordered) - 1) // 2]
        ref_profile = profiles[ref_level]
        for level in levels:
            if level == ref_level:
                continue
            both = (profiles[level] > 0) & (ref_profile > 0)
            if not np.any(both):
                raise InputValidationError(f"cluster {level} shares no expressed gene with the reference cluster")
            scale = np.median(profiles[level][both] / ref_profile[both])
            sf[clusters == level] *= scale

    return pd.Series(_normalize_geometric(sf), index=cells, name="pooled")


def compare_size_factors(candidates: Dict[str, pd.Series], truth) -> pd.Series:
    """
    Correlation of each candidate with known size factors on the log scale

    Parameters
    ----------
    candidates : dict or pandas.DataFrame
        Method name to size factors
    truth : array-like
        Ground-truth size factors, one per cell

    Returns
    -------
    pandas.Series
        Pearson correlation per method
    """
    if isinstance(candidates, pd.DataFrame):
        candidates = {c: candidates[c] for c in candidates.columns}
    log_truth = np.log(np.asarray(truth, dtype=np.float64))
    return pd.Series(
        {name: np.corrcoef(np.log(np.asarray(sf, dtype=np.float64)), log_truth)[0, 1]
         for name, sf in candidates.items()},
        name="correlation",
    )


def select_size_factors(candidates: Dict[str, pd.Series], truth=None, default: str = "pooled"):
    """
    Pick the size factors used downstream

    Parameters
    ----------
    candidates : dict
        Method name to size factors
    truth : array-like, optional
        Known size factors; when given the best correlating method wins
    default : str
        Method used without ground truth

    Returns
    -------
    tuple
        (method name, size factors)
    """
    if truth is not None:
        scores = compare_size_factors(candidates, truth)
        name = scores.idxmax()
        logger.info("Selected %s size factors (correlation %.3f)", name, scores[name])
        return name, candidates[name]
    if default not in candidates:
        raise ValueError(f"Unknown size factor method: {default}")
    return default, candidates[default]
