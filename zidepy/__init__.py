"""zidepy: zero-inflation aware differential expression for single-cell counts

Observation weights from a zero-inflated negative binomial model down-weight
dropout zeros; a weighted negative binomial GLM pipeline (size factors,
dispersion shrinkage, IRLS, likelihood ratio test) then tests for
differential expression between groups of cells.
Uses AnnData for interchange with scanpy workflows.
"""

__version__ = "0.1.0"

from .core.count_matrix import CountMatrix
from .core.design import DesignMatrix, build_design
from .core.weights import ZinbFit, zinb_weights
from .core.size_factors import (
    size_factors_positive_counts,
    size_factors_pooled,
    compare_size_factors,
    select_size_factors,
)
from .core.dispersion import DispersionResult, DispersionTrend, estimate_dispersions
from .core.glm import GLMFit, fit_nb_glm
from .stats import lrt, wald_test, p_adjust_bh, independent_filtering
from .results import assemble_results
from .pipeline import DEFAULT_CONTROL, ZinbDEFit, zinb_de
from .io import from_matrix, count_matrix_from_anndata, store_results
from .tools.find_deg import find_deg, find_all_degs
from .exceptions import ZidepyError, InputValidationError, DesignError, DispersionTrendError

__all__ = [
    "CountMatrix",
    "DesignMatrix",
    "build_design",
    "ZinbFit",
    "zinb_weights",
    "size_factors_positive_counts",
    "size_factors_pooled",
    "compare_size_factors",
    "select_size_factors",
    "DispersionResult",
    "DispersionTrend",
    "estimate_dispersions",
    "GLMFit",
    "fit_nb_glm",
    "lrt",
    "wald_test",
    "p_adjust_bh",
    "independent_filtering",
    "assemble_results",
    "DEFAULT_CONTROL",
    "ZinbDEFit",
    "zinb_de",
    "from_matrix",
    "count_matrix_from_anndata",
    "store_results",
    "find_deg",
    "find_all_degs",
    "ZidepyError",
    "InputValidationError",
    "DesignError",
    "DispersionTrendError",
]
