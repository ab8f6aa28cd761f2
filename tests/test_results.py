from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from zidepy import GLMFit, assemble_results
from zidepy.core.design import from_arrays


@pytest.fixture
def design():
    X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
    return from_arrays(X, np.ones(6), coef_names=["Intercept", "condition[T.B]"])


@pytest.fixture
def full_fit():
    genes = ["a", "b", "c"]
    coef = np.array([[1.0, np.log(4)], [2.0, 0.0], [0.5, -np.log(2)]])
    return GLMFit(
        coef=pd.DataFrame(coef, index=genes, columns=["Intercept", "condition[T.B]"]),
        se=pd.DataFrame(np.full((3, 2), 0.1), index=genes, columns=["Intercept", "condition[T.B]"]),
        mu=np.ones((3, 6)),
        loglik=pd.Series([-1.0, -2.0, -3.0], index=genes),
        deviance=pd.Series([0.0, 0.0, 0.0], index=genes),
        converged=pd.Series([True, True, False], index=genes),
        n_iter=pd.Series([3, 4, 100], index=genes),
    )


def test_columns_and_fold_change(design, full_fit):
    test = pd.DataFrame({"stat": [9.0, 0.1, 2.0], "df": 1.0, "pvalue": [0.001, 0.7, 0.2]}, index=full_fit.coef.index)
    res = assemble_results([10.0, 20.0, 5.0], full_fit, test, [0.003, 0.7, 0.3], design)
    assert list(res.columns) == ["baseMean", "log2FoldChange", "stat", "df", "pvalue", "padj", "converged"]
    np.testing.assert_allclose(res["log2FoldChange"].values, [2.0, 0.0, -1.0])
    assert res.attrs["coefficient"] == "condition[T.B]"


def test_non_converged_genes_have_nan_statistics(design, full_fit):
    test = pd.DataFrame({"stat": [9.0, 0.1, 2.0], "df": 1.0, "pvalue": [0.001, 0.7, 0.2]}, index=full_fit.coef.index)
    res = assemble_results([10.0, 20.0, 5.0], full_fit, test, [0.003, 0.7, 0.3], design)
    assert res.loc["c", ["stat", "pvalue", "padj"]].isna().all()
    assert not res.loc["c", "converged"]
    assert res.loc["a", "padj"] == pytest.approx(0.003)


def test_wald_columns_and_coefficient_choice(design, full_fit):
    test = pd.DataFrame(
        {"stat": [3.0, 0.3, 1.4], "df": 1.0, "pvalue": [0.01, 0.7, 0.2], "lfcSE": [0.2, 0.2, 0.2]},
        index=full_fit.coef.index,
    )
    res = assemble_results([1, 2, 3], full_fit, test, [0.03, 0.7, 0.3], design, coefficient="Intercept")
    assert "lfcSE" in res.columns
    np.testing.assert_allclose(res["log2FoldChange"].values, np.array([1.0, 2.0, 0.5]) / np.log(2))
    with pytest.raises(ValueError):
        assemble_results([1, 2, 3], full_fit, test, [0.03, 0.7, 0.3], design, coefficient="batch")


def test_reduced_fit_failure_marks_gene_not_converged(design, full_fit):
    reduced_fit = replace(
        full_fit,
        coef=full_fit.coef[["Intercept"]],
        se=full_fit.se[["Intercept"]],
        converged=pd.Series([False, True, True], index=full_fit.coef.index),
    )
    test = pd.DataFrame({"stat": [np.nan, 0.1, 2.0], "df": 1.0, "pvalue": [np.nan, 0.7, 0.2]}, index=full_fit.coef.index)
    res = assemble_results([10.0, 20.0, 5.0], full_fit, test, [np.nan, 0.7, 0.3], design, reduced=reduced_fit)
    assert res["converged"].tolist() == [False, True, False]
    assert res.loc["a", ["stat", "pvalue", "padj"]].isna().all()
    assert res.loc["b", "padj"] == pytest.approx(0.7)
