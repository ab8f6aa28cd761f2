"""
Gene-wise dispersion estimation

Three stages: weighted method-of-moments raw estimates, a mean-dispersion
trend shared across genes, and maximum a posteriori shrinkage of the raw
estimates towards the trend under a log-normal prior.
"""

import logging
import warnings
from dataclasses import dataclass, field, replace

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import polygamma
from scipy.stats import median_abs_deviation, trim_mean
from statsmodels.tools.sm_exceptions import DomainWarning

from ..exceptions import DispersionTrendError, InputValidationError
from ..utils import batched_wls
from .count_matrix import as_count_array
from .design import DesignMatrix

logger = logging.getLogger(__name__)

MIN_PRIOR_VAR = 0.25


def _model_matrix(design):
    if isinstance(design, DesignMatrix):
        return design.full.values.astype(np.float64)
    X = np.asarray(design, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, None]
    return X


def _weights_or_ones(weights, shape):
    if weights is None:
        return np.ones(shape)
    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != shape:
        raise InputValidationError(f"weights must have shape {shape}, got {weights.shape}")
    return weights


@dataclass(frozen=True)
class DispersionTrend:
    """
    Fitted mean-dispersion relationship

    Calling the object on a vector of means returns the trended dispersion
    ``asymptDisp + extraPois / mean``.
    """

    coefficients: pd.Series
    fit_type: str = "parametric"
    var_log_disp_ests: float = np.nan
    prior_var: float = np.nan

    def __call__(self, means):
        means = np.asarray(means, dtype=np.float64)
        return self.coefficients["asymptDisp"] + self.coefficients["extraPois"] / means


@dataclass(frozen=True)
class DispersionResult:
    """Per-gene dispersion estimates plus the trend they were shrunk to."""

    frame: pd.DataFrame
    trend: DispersionTrend = field(repr=False)

    @property
    def dispersion(self) -> pd.Series:
        return self.frame["dispersion"]


def estimate_raw_dispersions(counts, weights, size_factors, design, min_disp=1e-8, max_disp=None):
    """
    Weighted method-of-moments dispersion estimates

    Preliminary means come from a weighted linear model of the normalised
    counts on the design, then
    ``disp = (sum w (y - mu)^2 * n_eff / (n_eff - p) - sum w mu) / sum w mu^2``
    with ``n_eff = sum w``.

    Parameters
    ----------
    counts : CountMatrix or numpy.ndarray
        Counts (n_genes, n_cells)
    weights : numpy.ndarray or None
        Observation weights with the shape of ``counts``
    size_factors : array-like
        Per-cell size factors
    design : DesignMatrix or numpy.ndarray
        Full model matrix (n_cells, p)
    min_disp : float
        Lower bound of the estimates
    max_disp : float, optional
        Upper bound; defaults to max(10, n_cells)

    Returns
    -------
    pandas.DataFrame
        Columns baseMean, baseVar, nEff, dispRaw indexed by gene
    """
    Y, genes, _ = as_count_array(counts)
    G, n = Y.shape
    X = _model_matrix(design)
    if X.shape[0] != n:
        raise InputValidationError("design rows must match the number of cells")
    p = X.shape[1]
    w = _weights_or_ones(weights, Y.shape)
    sf = np.asarray(size_factors, dtype=np.float64)
    if max_disp is None:
        max_disp = max(10.0, n)

    norm = Y / sf[None, :]
    base_mean = norm.mean(axis=1)
    base_var = norm.var(axis=1, ddof=1)

    coef = batched_wls(X, w, norm)
    mu = np.maximum(coef @ X.T, 1e-8) * sf[None, :]

    n_eff = w.sum(axis=1)
    correction = n_eff / np.maximum(n_eff - p, 1.0)
    ss = np.sum(w * (Y - mu) ** 2, axis=1) * correction
    denom = np.sum(w * mu ** 2, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        raw = (ss - np.sum(w * mu, axis=1)) / denom
    raw = np.clip(np.nan_to_num(raw, nan=min_disp), min_disp, max_disp)

    return pd.DataFrame(
        {"baseMean": base_mean, "baseVar": base_var, "nEff": n_eff, "dispRaw": raw},
        index=genes,
    )


def _parametric_fit(means, disps, max_iter=10):
    warnings.simplefilter("ignore", DomainWarning)
    coefs = pd.Series([0.1, 1.0])
    iter_ = 0
    while True:
        residuals = disps / (coefs.iloc[0] + coefs.iloc[1] / means)
        good = (residuals > 1e-4) & (residuals < 15)
        if good.sum() < 3:
            raise DispersionTrendError("too few genes left for the dispersion trend")
        glm_gamma = sm.GLM(
            disps[good],
            sm.add_constant(1 / means[good], has_constant="add"),
            family=sm.families.Gamma(link=sm.families.links.Identity()),
        )
        try:
            fit = glm_gamma.fit(start_params=coefs.values)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise DispersionTrendError(f"dispersion trend fit failed: {e}") from e
        oldcoefs = coefs.copy()
        coefs = pd.Series(np.asarray(fit.params))

        if not np.all(coefs > 0):
            raise DispersionTrendError("parametric dispersion fit gave non-positive coefficients")
        if np.sum(np.log(coefs.values / oldcoefs.values) ** 2) < 1e-6 and fit.converged:
            break
        iter_ += 1
        if iter_ > max_iter:
            raise DispersionTrendError("parametric dispersion fit did not converge")

    coefs.index = ["asymptDisp", "extraPois"]
    return coefs


def fit_dispersion_trend(base_mean, disp_raw, use=None, fit_type="parametric", min_disp=1e-8):
    """
    Fit the mean-dispersion trend

    Parameters
    ----------
    base_mean : array-like
        Mean normalised count per gene
    disp_raw : array-like
        Raw dispersion per gene
    use : array-like of bool, optional
        Genes allowed in the fit, typically a stricter count filter than the
        one used for testing
    fit_type : str
        'parametric' for asymptDisp + extraPois / mean fitted by an iterated
        gamma GLM, 'mean' for a trimmed-mean constant
    min_disp : float
        Genes with raw dispersion below 100 * min_disp are left out

    Returns
    -------
    DispersionTrend
        Callable trend
    """
    base_mean = np.asarray(base_mean, dtype=np.float64)
    disp_raw = np.asarray(disp_raw, dtype=np.float64)
    keep = (disp_raw >= 100 * min_disp) & (base_mean > 0) & np.isfinite(disp_raw)
    if use is not None:
        keep &= np.asarray(use, dtype=bool)
    if keep.sum() < 3:
        raise DispersionTrendError(
            f"only {int(keep.sum())} genes are usable for the dispersion trend"
        )

    if fit_type == "parametric":
        coefs = _parametric_fit(base_mean[keep], disp_raw[keep])
    elif fit_type == "mean":
        coefs = pd.Series(
            [trim_mean(disp_raw[keep], 0.001), 0.0], index=["asymptDisp", "extraPois"]
        )
    else:
        raise ValueError(f"Unknown fit_type: {fit_type}")

    logger.info(
        "Dispersion trend (%s): asymptDisp=%.4g extraPois=%.4g from %d genes",
        fit_type, coefs["asymptDisp"], coefs["extraPois"], int(keep.sum()),
    )
    return DispersionTrend(coefficients=coefs, fit_type=fit_type)


def estimate_map_dispersions(
    disp_raw,
    disp_trend,
    n_eff,
    n_params,
    min_disp=1e-8,
    max_disp=None,
    outlier_sd=2.0,
):
    """
    Shrink raw dispersions towards the trend

    The prior on log dispersion is normal, centred at the log trend, with
    variance ``max(mad^2 - mean sampling variance, 0.25)`` where mad is
    taken over the log residuals. The sampling variance of each log estimate
    is ``trigamma((n_eff - p) / 2)``. The posterior mode is the
    precision-weighted mean in log space and therefore lies between the raw
    value and the trend.

    Parameters
    ----------
    disp_raw : array-like
        Raw dispersions
    disp_trend : array-like
        Trended dispersions
    n_eff : array-like
        Sum of weights per gene
    n_params : int
        Number of model coefficients
    min_disp : float
        Lower bound
    max_disp : float, optional
        Upper bound; defaults to the largest raw or trend value
    outlier_sd : float
        Genes whose log raw dispersion exceeds the log trend by this many
        prior standard deviations keep their raw value

    Returns
    -------
    tuple
        (DataFrame with dispMAP, dispOutlier and dispersion columns,
        prior variance, variance of the log residuals)
    """
    disp_raw = np.asarray(disp_raw, dtype=np.float64)
    disp_trend = np.asarray(disp_trend, dtype=np.float64)
    n_eff = np.asarray(n_eff, dtype=np.float64)
    if max_disp is None:
        max_disp = max(np.max(disp_raw), np.max(disp_trend))
    disp_trend = np.clip(disp_trend, min_disp, max_disp)

    log_raw = np.log(disp_raw)
    log_trend = np.log(disp_trend)
    above = disp_raw >= 100 * min_disp
    if not np.any(above):
        raise InputValidationError("no raw dispersion is above the minimum")

    var_log_disp = median_abs_deviation(log_raw[above] - log_trend[above], scale="normal") ** 2

    df = n_eff - n_params
    sampling_var = np.full_like(df, np.inf)
    ok = df > 0
    sampling_var[ok] = polygamma(1, df[ok] / 2)
    finite_var = sampling_var[np.isfinite(sampling_var)]
    mean_sampling = finite_var.mean() if finite_var.size else 0.0
    prior_var = max(var_log_disp - mean_sampling, MIN_PRIOR_VAR)

    precision_raw = np.where(np.isfinite(sampling_var), 1.0 / sampling_var, 0.0)
    precision_prior = 1.0 / prior_var
    log_map = (precision_raw * log_raw + precision_prior * log_trend) / (precision_raw + precision_prior)
    disp_map = np.clip(np.exp(log_map), min_disp, max_disp)

    outlier = log_raw > log_trend + outlier_sd * np.sqrt(var_log_disp)
    final = np.where(outlier, disp_raw, disp_map)

    frame = pd.DataFrame({"dispMAP": disp_map, "dispOutlier": outlier, "dispersion": final})
    return frame, prior_var, var_log_disp


def estimate_dispersions(
    counts,
    weights,
    size_factors,
    design,
    use=None,
    fit_type="parametric",
    min_disp=1e-8,
    outlier_sd=2.0,
):
    """
    Raw, trended and MAP dispersions in one call

    Parameters
    ----------
    counts : CountMatrix or numpy.ndarray
        Counts (n_genes, n_cells)
    weights : numpy.ndarray or None
        Observation weights
    size_factors : array-like
        Per-cell size factors
    design : DesignMatrix or numpy.ndarray
        Full model matrix
    use : array-like of bool, optional
        Genes used for the trend fit
    fit_type : str
        Trend type, see :func:`fit_dispersion_trend`
    min_disp : float
        Lower bound of all estimates
    outlier_sd : float
        Outlier threshold in prior standard deviations

    Returns
    -------
    DispersionResult
        Frame indexed by gene with baseMean, baseVar, nEff, dispRaw,
        dispTrend, dispMAP, dispOutlier and dispersion, plus the trend
    """
    X = _model_matrix(design)
    max_disp = max(10.0, X.shape[0])
    raw = estimate_raw_dispersions(counts, weights, size_factors, X, min_disp=min_disp, max_disp=max_disp)
    trend = fit_dispersion_trend(raw["baseMean"].values, raw["dispRaw"].values, use=use,
                                 fit_type=fit_type, min_disp=min_disp)
    disp_trend = trend(raw["baseMean"].values)
    shrunk, prior_var, var_log = estimate_map_dispersions(
        raw["dispRaw"].values, disp_trend, raw["nEff"].values, X.shape[1],
        min_disp=min_disp, max_disp=max_disp, outlier_sd=outlier_sd,
    )

    frame = raw.copy()
    frame["dispTrend"] = np.clip(disp_trend, min_disp, max_disp)
    for col in shrunk.columns:
        frame[col] = shrunk[col].values
    logger.info(
        "Dispersions: prior variance %.3f, %d outliers kept at raw value",
        prior_var, int(frame["dispOutlier"].sum()),
    )
    trend = replace(trend, var_log_disp_ests=var_log, prior_var=prior_var)
    return DispersionResult(frame=frame, trend=trend)
