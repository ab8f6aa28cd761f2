"""Core functionality for zidepy"""

from .count_matrix import CountMatrix
from .design import DesignMatrix, build_design, from_arrays
from .weights import ZinbFit, ZinbParams, zinb_weights
from .size_factors import size_factors_positive_counts, size_factors_pooled
from .dispersion import (
    DispersionResult,
    DispersionTrend,
    estimate_raw_dispersions,
    fit_dispersion_trend,
    estimate_map_dispersions,
    estimate_dispersions,
)
from .glm import GLMFit, fit_nb_glm

__all__ = [
    "CountMatrix",
    "DesignMatrix",
    "build_design",
    "from_arrays",
    "ZinbFit",
    "ZinbParams",
    "zinb_weights",
    "size_factors_positive_counts",
    "size_factors_pooled",
    "DispersionResult",
    "DispersionTrend",
    "estimate_raw_dispersions",
    "fit_dispersion_trend",
    "estimate_map_dispersions",
    "estimate_dispersions",
    "GLMFit",
    "fit_nb_glm"
]
