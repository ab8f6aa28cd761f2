import numpy as np
import pandas as pd
import pytest

from zidepy import DesignError, build_design
from zidepy.core.design import from_arrays


@pytest.fixture
def cell_data():
    return pd.DataFrame(
        {
            "condition": pd.Categorical(["A"] * 5 + ["B"] * 5),
            "batch": ["x", "y"] * 5,
        },
        index=[f"cell_{i}" for i in range(10)],
    )


def test_two_group_design(cell_data):
    design = build_design(cell_data)
    assert design.coef_names == ["Intercept", "condition[T.B]"]
    assert design.tested == ["condition[T.B]"]
    assert design.df == 1
    assert design.full.shape == (10, 2)
    assert list(design.full.index) == list(cell_data.index)


def test_additive_design_df(cell_data):
    design = build_design(cell_data, "~ condition + batch", "~ batch")
    assert design.tested == ["condition[T.B]"]
    assert design.df == 1


def test_rank_deficient_design(cell_data):
    cell_data["copy"] = cell_data["condition"].astype(str)
    with pytest.raises(DesignError):
        build_design(cell_data, "~ condition + copy")


def test_not_nested(cell_data):
    with pytest.raises(DesignError):
        build_design(cell_data, "~ condition", "~ batch")


def test_reduced_not_smaller(cell_data):
    with pytest.raises(DesignError):
        build_design(cell_data, "~ condition", "~ condition")


def test_unknown_variable(cell_data):
    with pytest.raises(DesignError):
        build_design(cell_data, "~ missing")


def test_from_arrays_reuses_names():
    full = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1], [0, 1, 0, 1, 0, 1]])
    design = from_arrays(full, np.ones(6), coef_names=["a", "b", "c"])
    assert list(design.reduced.columns) == ["a"]
    assert design.tested == ["b", "c"]
    assert design.df == 2
