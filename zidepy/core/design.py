"""Design matrices for the full and reduced models

A ``DesignMatrix`` bundles the full and reduced model matrices built from
patsy formulas over the cell metadata, and validates them before any model
is fitted: both must have full column rank and the reduced model must be
nested in the full one.
"""

import numpy as np
import pandas as pd
import patsy

from ..exceptions import DesignError


def _make_design_matrix(formula, data):
    """Create design matrix from formula and data."""
    try:
        return patsy.dmatrix(formula.replace("~", ""), data, return_type="dataframe")
    except patsy.PatsyError as e:
        raise DesignError(f"Could not build design from '{formula}': {e}") from e


class DesignMatrix:
    """
    Full and reduced covariate matrices for a nested model comparison
    """

    def __init__(self, full, reduced, formula, reduced_formula):
        self._full = full
        self._reduced = reduced
        self._formula = formula
        self._reduced_formula = reduced_formula
        self._validate()

    def _validate(self):
        full = self._full.values
        reduced = self._reduced.values
        n, p_full = full.shape
        p_reduced = reduced.shape[1]

        if np.linalg.matrix_rank(full) < p_full:
            raise DesignError(
                f"Full design '{self._formula}' is rank deficient; "
                "check for empty or confounded levels"
            )
        if p_reduced > 0 and np.linalg.matrix_rank(reduced) < p_reduced:
            raise DesignError(f"Reduced design '{self._reduced_formula}' is rank deficient")
        if p_reduced >= p_full:
            raise DesignError(
                f"Reduced design '{self._reduced_formula}' has as many parameters as the full design"
            )
        if np.linalg.matrix_rank(np.column_stack([full, reduced])) > p_full:
            raise DesignError(
                f"Reduced design '{self._reduced_formula}' is not nested in '{self._formula}'"
            )
        if n <= p_full:
            raise DesignError("The design has at least as many coefficients as cells")

    @property
    def full(self) -> pd.DataFrame:
        """Full model matrix (cells x coefficients)."""
        return self._full

    @property
    def reduced(self) -> pd.DataFrame:
        """Reduced model matrix."""
        return self._reduced

    @property
    def formula(self) -> str:
        return self._formula

    @property
    def reduced_formula(self) -> str:
        return self._reduced_formula

    @property
    def coef_names(self) -> list:
        return list(self._full.columns)

    @property
    def tested(self) -> list:
        """Coefficients of the full model that the reduced model drops."""
        return [c for c in self._full.columns if c not in set(self._reduced.columns)]

    @property
    def df(self) -> int:
        """Difference in number of free parameters."""
        return self._full.shape[1] - self._reduced.shape[1]

    def __repr__(self) -> str:
        return f"DesignMatrix: {self._formula} vs {self._reduced_formula} ({self.df} df)"


def build_design(cell_data, formula="~ condition", reduced="~ 1"):
    """
    Build and validate full and reduced designs

    Parameters
    ----------
    cell_data : pandas.DataFrame
        Cell metadata holding the covariates named in the formulas
    formula : str
        Full model formula
    reduced : str
        Reduced model formula

    Returns
    -------
    DesignMatrix
        Validated design pair
    """
    full = _make_design_matrix(formula, cell_data)
    red = _make_design_matrix(reduced, cell_data)
    full.index = cell_data.index
    red.index = cell_data.index
    return DesignMatrix(full, red, formula, reduced)


def from_arrays(full, reduced, coef_names=None, reduced_names=None):
    """
    Wrap plain arrays as a validated DesignMatrix

    Parameters
    ----------
    full : numpy.ndarray
        Full model matrix (cells x p)
    reduced : numpy.ndarray
        Reduced model matrix (cells x q)
    coef_names : list, optional
        Column names of the full matrix
    reduced_names : list, optional
        Column names of the reduced matrix

    Returns
    -------
    DesignMatrix
    """
    full = np.asarray(full, dtype=np.float64)
    reduced = np.asarray(reduced, dtype=np.float64)
    if reduced.ndim == 1:
        reduced = reduced[:, None]
    if coef_names is None:
        coef_names = [f"x{k}" for k in range(full.shape[1])]
    if reduced_names is None:
        # reuse the full model's name for identical columns
        reduced_names = []
        for k in range(reduced.shape[1]):
            same = [j for j in range(full.shape[1]) if np.array_equal(full[:, j], reduced[:, k])]
            reduced_names.append(coef_names[same[0]] if same else f"z{k}")
    return DesignMatrix(
        pd.DataFrame(full, columns=coef_names),
        pd.DataFrame(reduced, columns=reduced_names),
        "<matrix>",
        "<matrix>",
    )
