import logging

import numpy as np
import pandas as pd

from ..exceptions import InputValidationError

logger = logging.getLogger(__name__)


class CountMatrix:
    def __init__(self, counts, cdata=None, gene_names=None):
        """
        Initialize a CountMatrix object

        Parameters
        ----------
        counts : numpy.ndarray or pandas.DataFrame
            Non-negative integer counts with shape (n_genes, n_cells)
        cdata : pandas.DataFrame, optional
            Cell metadata with shape (n_cells, n_cell_metadata)
        gene_names : list, optional
            Gene identifiers; taken from the DataFrame index when available
        """
        if isinstance(counts, pd.DataFrame):
            if gene_names is None:
                gene_names = counts.index.astype(str).tolist()
            if cdata is None:
                cdata = pd.DataFrame(index=counts.columns.astype(str))
            counts = counts.values

        if hasattr(counts, "toarray"):
            counts = counts.toarray()
        counts = np.asarray(counts)

        if counts.ndim != 2:
            raise InputValidationError(f"counts must be 2-dimensional, got shape {counts.shape}")
        if counts.size == 0:
            raise InputValidationError("counts is empty")
        if not np.all(np.isfinite(counts)):
            raise InputValidationError("counts contain NaN or infinite values")
        if np.any(counts < 0):
            raise InputValidationError("counts must be non-negative")
        if np.any(counts != np.round(counts)):
            raise InputValidationError("counts must be integers")

        n_genes, n_cells = counts.shape
        if gene_names is None:
            gene_names = [f"gene_{i}" for i in range(n_genes)]
        if len(gene_names) != n_genes:
            raise InputValidationError("gene_names length must equal number of genes")
        if cdata is None:
            cdata = pd.DataFrame(index=[f"cell_{j}" for j in range(n_cells)])
        if len(cdata) != n_cells:
            raise InputValidationError("cdata length must equal number of cells")

        self._counts = counts.astype(np.int64)
        self._counts.setflags(write=False)
        self._cdata = cdata.copy()
        self._gene_names = pd.Index([str(g) for g in gene_names])

    def assay(self):
        """
        Get the count matrix

        Returns
        -------
        numpy.ndarray
            Read-only counts with shape (n_genes, n_cells)
        """
        return self._counts

    def colData(self):
        """
        Get the cell metadata

        Returns
        -------
        pandas.DataFrame
            Cell metadata
        """
        return self._cdata

    @property
    def gene_names(self):
        return self._gene_names

    @property
    def cell_names(self):
        return self._cdata.index

    def nrow(self):
        """Number of genes."""
        return self._counts.shape[0]

    def ncol(self):
        """Number of cells."""
        return self._counts.shape[1]

    def library_sizes(self):
        """Total counts per cell."""
        return self._counts.sum(axis=0).astype(np.float64)

    def all_zero_genes(self):
        """Boolean mask of genes without a single nonzero count."""
        return ~np.any(self._counts > 0, axis=1)

    def subset_genes(self, mask):
        """
        Keep a subset of genes

        Parameters
        ----------
        mask : array-like of bool
            Genes to keep

        Returns
        -------
        CountMatrix
            New object sharing the cell metadata
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.nrow(),):
            raise InputValidationError("mask length must equal number of genes")
        return CountMatrix(self._counts[mask], self._cdata, self._gene_names[mask].tolist())

    def filter_genes(self, min_count=5, min_cells=5):
        """
        Low-count prefilter: keep genes with at least ``min_count`` counts
        in at least ``min_cells`` cells

        Genes without any expression never pass, so the result is always
        safe to hand to the weight estimator.

        Parameters
        ----------
        min_count : int
            Count threshold T
        min_cells : int
            Number of cells N that must reach T

        Returns
        -------
        CountMatrix
            Filtered counts
        """
        keep = np.sum(self._counts >= max(min_count, 1), axis=1) >= min_cells
        logger.info("Prefilter kept %d of %d genes", int(keep.sum()), self.nrow())
        if not np.any(keep):
            raise InputValidationError(
                f"No gene has {min_count} or more counts in at least {min_cells} cells"
            )
        return self.subset_genes(keep)

    def __repr__(self):
        return f"CountMatrix: {self.nrow()} genes, {self.ncol()} cells"


def as_count_array(counts):
    """
    Unpack counts into a float matrix with gene and cell labels

    Parameters
    ----------
    counts : CountMatrix, pandas.DataFrame or numpy.ndarray
        Counts with shape (n_genes, n_cells)

    Returns
    -------
    tuple
        (float64 array, gene index, cell index)
    """
    if isinstance(counts, CountMatrix):
        return counts.assay().astype(np.float64), counts.gene_names, counts.cell_names
    if isinstance(counts, pd.DataFrame):
        return counts.values.astype(np.float64), pd.Index(counts.index), pd.Index(counts.columns)
    Y = np.asarray(counts, dtype=np.float64)
    if Y.ndim != 2:
        raise InputValidationError("counts must be a genes x cells matrix")
    return (
        Y,
        pd.Index([f"gene_{i}" for i in range(Y.shape[0])]),
        pd.Index([f"cell_{j}" for j in range(Y.shape[1])]),
    )
