"""Utility functions for zidepy"""

from .utils import nb_logpmf, nb_log_p0, geometric_mean, batched_wls, map_genes, merge_control

__all__ = [
    "nb_logpmf",
    "nb_log_p0",
    "geometric_mean",
    "batched_wls",
    "map_genes",
    "merge_control"
]
