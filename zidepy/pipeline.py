"""
End-to-end zero-inflation aware differential expression.

``zinb_de`` chains the components: prefilter, design validation, ZINB
observation weights, size factors, dispersions, full and reduced GLM fits,
the likelihood ratio (or Wald) test, multiple-testing correction and the
results table.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .core.count_matrix import CountMatrix
from .core.design import DesignMatrix, build_design
from .core.dispersion import DispersionTrend, estimate_dispersions
from .core.glm import GLMFit, fit_nb_glm
from .core.size_factors import select_size_factors, size_factors_pooled, size_factors_positive_counts
from .core.weights import ZinbFit, zinb_weights
from .exceptions import DispersionTrendError, InputValidationError
from .results import assemble_results
from .stats import independent_filtering, lrt, p_adjust_bh, wald_test
from .utils import merge_control

logger = logging.getLogger(__name__)

DEFAULT_CONTROL = {
    # weights
    "K": 0,
    "epsilon": 1e12,
    "epsilon_min_logit": 1e-3,
    "zinb_max_iter": 50,
    "zinb_tol": 1e-4,
    "random_state": 0,
    # filters
    "min_count": 5,
    "min_cells": 5,
    "trend_min_count": 10,
    "trend_min_cells": 10,
    "trend_retries": 2,
    # size factors: 'pooled' or 'poscounts'
    "size_factor_method": "pooled",
    # GLM
    "min_mu": 1e-6,
    "min_iter": 10,
    "maxit": 100,
    # dispersion
    "min_disp": 1e-8,
    "outlier_sd": 2.0,
    # testing: 'lrt' or 'wald'
    "test": "lrt",
    "independent_filtering": False,
    "alpha": 0.1,
    "contrast": None,
}


class ZinbDEFit:
    """
    Result of :func:`zinb_de` holding every intermediate artifact
    """

    def __init__(
        self,
        results: pd.DataFrame,
        zinb: ZinbFit,
        size_factors: pd.DataFrame,
        size_factor_method: str,
        dispersions: pd.DataFrame,
        dispersion_trend: DispersionTrend,
        full_fit: GLMFit,
        reduced_fit: GLMFit,
        design: DesignMatrix,
        counts: CountMatrix,
        control: Dict[str, Any],
    ):
        self._results = results
        self._zinb = zinb
        self._size_factors = size_factors
        self._size_factor_method = size_factor_method
        self._dispersions = dispersions
        self._dispersion_trend = dispersion_trend
        self._full_fit = full_fit
        self._reduced_fit = reduced_fit
        self._design = design
        self._counts = counts
        self._control = control

    @property
    def results(self) -> pd.DataFrame:
        """Per-gene table: baseMean, log2FoldChange, stat, df, pvalue, padj, converged."""
        return self._results

    @property
    def zinb(self) -> ZinbFit:
        return self._zinb

    @property
    def weights(self) -> np.ndarray:
        return self._zinb.weights

    @property
    def size_factors(self) -> pd.DataFrame:
        """Size factors of both estimators, one column per method."""
        return self._size_factors

    @property
    def size_factor_method(self) -> str:
        return self._size_factor_method

    @property
    def selected_size_factors(self) -> pd.Series:
        return self._size_factors[self._size_factor_method]

    @property
    def dispersions(self) -> pd.DataFrame:
        return self._dispersions

    @property
    def dispersion_trend(self) -> DispersionTrend:
        return self._dispersion_trend

    @property
    def full_fit(self) -> GLMFit:
        return self._full_fit

    @property
    def reduced_fit(self) -> GLMFit:
        return self._reduced_fit

    @property
    def design(self) -> DesignMatrix:
        return self._design

    @property
    def counts(self) -> CountMatrix:
        """Prefiltered counts the models were fitted on."""
        return self._counts

    @property
    def control(self) -> Dict[str, Any]:
        return self._control

    def __repr__(self) -> str:
        n_sig = int((self._results["padj"] < self._control["alpha"]).sum())
        return (
            f"ZinbDEFit: {self._counts.nrow()} genes, {self._counts.ncol()} cells, "
            f"{n_sig} with padj < {self._control['alpha']}"
        )


def _prepare_counts(counts, condition):
    if not isinstance(counts, CountMatrix):
        counts = CountMatrix(counts)
    if condition is None:
        return counts
    if len(condition) != counts.ncol():
        raise InputValidationError("condition must have one label per cell")
    condition = pd.Categorical(condition).remove_unused_categories()
    if pd.isna(condition).any():
        raise InputValidationError("condition labels must not be missing")
    if len(condition.categories) < 2:
        raise InputValidationError("condition needs at least two levels")
    cdata = counts.colData().copy()
    cdata["condition"] = condition
    return CountMatrix(counts.assay(), cdata, counts.gene_names.tolist())


def _dispersions_with_retry(counts, weights, sf, design, ctrl):
    Y = counts.assay()
    t_count, t_cells = ctrl["trend_min_count"], ctrl["trend_min_cells"]
    for attempt in range(ctrl["trend_retries"] + 1):
        use = np.sum(Y >= t_count, axis=1) >= t_cells
        try:
            return estimate_dispersions(
                counts, weights, sf, design,
                use=use, min_disp=ctrl["min_disp"], outlier_sd=ctrl["outlier_sd"],
            )
        except DispersionTrendError as e:
            if attempt == ctrl["trend_retries"]:
                raise
            logger.warning(
                "Dispersion trend failed with %d genes (%s); retrying with count >= %d in >= %d cells",
                int(use.sum()), e, t_count * 2, t_cells * 2,
            )
            t_count, t_cells = t_count * 2, t_cells * 2


def zinb_de(
    counts,
    condition=None,
    formula: str = "~ condition",
    reduced: str = "~ 1",
    control: Optional[Dict[str, Any]] = None,
    size_factor_truth=None,
    n_jobs: int = 1,
    silent: bool = True,
) -> ZinbDEFit:
    """
    Zero-inflation aware differential expression

    Parameters
    ----------
    counts : CountMatrix, pandas.DataFrame or numpy.ndarray
        Non-negative integer counts (n_genes, n_cells)
    condition : array-like, optional
        Categorical label per cell with at least two levels; stored as the
        ``condition`` column of the cell metadata
    formula : str
        Full model formula over the cell metadata
    reduced : str
        Reduced model formula, nested in ``formula``
    control : dict, optional
        Overrides of ``DEFAULT_CONTROL``
    size_factor_truth : array-like, optional
        Known size factors; when given, the estimator correlating best with
        them is used instead of ``control['size_factor_method']``
    n_jobs : int
        Parallel workers for the per-gene GLM fits
    silent : bool
        Disable progress bars

    Returns
    -------
    ZinbDEFit
        Results table and intermediate artifacts
    """
    ctrl = merge_control(DEFAULT_CONTROL, control)
    if ctrl["test"] not in ("lrt", "wald"):
        raise ValueError(f"Unknown test: {ctrl['test']}")

    counts = _prepare_counts(counts, condition)
    design = build_design(counts.colData(), formula, reduced)
    filtered = counts.filter_genes(ctrl["min_count"], ctrl["min_cells"])
    logger.info("Testing %d genes across %d cells: %r", filtered.nrow(), filtered.ncol(), design)

    zinb = zinb_weights(
        filtered,
        X=design.full.values,
        K=ctrl["K"],
        epsilon=ctrl["epsilon"],
        epsilon_min_logit=ctrl["epsilon_min_logit"],
        max_iter=ctrl["zinb_max_iter"],
        tol=ctrl["zinb_tol"],
        random_state=ctrl["random_state"],
    )
    weights = zinb.weights

    candidates = {
        "pooled": size_factors_pooled(filtered),
        "poscounts": size_factors_positive_counts(filtered),
    }
    method, sf = select_size_factors(candidates, truth=size_factor_truth, default=ctrl["size_factor_method"])
    sf_frame = pd.DataFrame(candidates)

    disp = _dispersions_with_retry(filtered, weights, sf.values, design, ctrl)
    dispersions = disp.frame["dispersion"].values

    glm_args = dict(
        min_mu=ctrl["min_mu"], min_iter=ctrl["min_iter"], maxit=ctrl["maxit"],
        n_jobs=n_jobs, silent=silent,
    )
    full_fit = fit_nb_glm(filtered, weights, sf.values, dispersions, design.full, **glm_args)
    reduced_fit = fit_nb_glm(filtered, weights, sf.values, dispersions, design.reduced, **glm_args)

    if ctrl["test"] == "lrt":
        test = lrt(full_fit, reduced_fit, design)
    else:
        test = wald_test(full_fit, design, weights, dispersions, coefficients=ctrl["contrast"])

    base_mean = disp.frame["baseMean"].values
    if ctrl["independent_filtering"]:
        padj, _ = independent_filtering(base_mean, test["pvalue"].values, alpha=ctrl["alpha"])
    else:
        padj = p_adjust_bh(test["pvalue"].values)

    results = assemble_results(
        base_mean, full_fit, test, padj, design, coefficient=ctrl["contrast"],
        reduced=reduced_fit if ctrl["test"] == "lrt" else None,
    )
    logger.info(
        "%d genes with padj < %g", int((results["padj"] < ctrl["alpha"]).sum()), ctrl["alpha"]
    )

    return ZinbDEFit(
        results=results,
        zinb=zinb,
        size_factors=sf_frame,
        size_factor_method=method,
        dispersions=disp.frame,
        dispersion_trend=disp.trend,
        full_fit=full_fit,
        reduced_fit=reduced_fit,
        design=design,
        counts=filtered,
        control=ctrl,
    )
