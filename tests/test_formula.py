# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import numpy as np
import pandas as pd
import pytest

from stanfamilies.exceptions import FormulaError
from stanfamilies.formula import bf, BayesFormula, GroupTerm, ModelFrame


def test_parse_formula():
    formula = bf("incidence | trials(size) ~ period + (1 | herd)")
    assert formula.response == "incidence"
    assert formula.additions == {"trials": ["size"]}
    assert formula.stan_additions == {"trials": "size"}
    assert formula.common == {"mu": "period"}
    assert formula.dpars == ("mu",)
    [term] = formula.group_terms["mu"]
    assert (term.expr, term.group, term.correlated) == ("1", "herd", True)


def test_vint_and_vreal_additions_are_numbered():
    formula = bf("y | vint(a, b) + vreal(w) ~ 1")
    assert formula.stan_additions == {"vint1": "a", "vint2": "b", "vreal1": "w"}
    assert formula.common == {"mu": "1"}


def test_dpar_formulas():
    formula = bf("y ~ x + (1 || g)", phi="~ z")
    assert formula.dpars == ("mu", "phi")
    assert formula.rhs == {"mu": "x + (1 || g)", "phi": "z"}
    assert formula.group_terms["mu"][0].correlated is False
    assert str(formula) == "y ~ x + (1 || g)\nphi ~ z"

    # Dpar formulas are kept when re-wrapping
    extended = bf(formula, sigma="~ 1")
    assert isinstance(extended, BayesFormula)
    assert extended.dpars == ("mu", "phi", "sigma")


def test_group_term_parsing():
    assert GroupTerm.parse("x") is None
    assert GroupTerm.parse("(x + 1)") is None
    term = GroupTerm.parse("(1 + x | herd:period)")
    assert term.group_columns == ["herd", "period"]
    assert str(term) == "(1 + x | herd:period)"


@pytest.mark.parametrize(
    "formula, message",
    [
        ("y x", "exactly one '~'"),
        ("y ~", "no predictors"),
        ("log(y) ~ x", "must be a column name"),
        ("y | a | b ~ x", "more than one"),
        ("y | weights(w) ~ x", "Unknown addition term 'weights'"),
        ("y | trials(a, b) ~ x", "exactly one column"),
        ("y | trials(n) + trials(m) ~ x", "more than once"),
        ("y ~ x + (x | )", "Incomplete"),
        ("y ~ (1 | g", "Unbalanced"),
    ],
)
def test_formula_errors(formula, message):
    with pytest.raises(FormulaError, match=message):
        bf(formula)


def test_dpar_formula_errors():
    with pytest.raises(FormulaError, match="right-hand side"):
        bf("y ~ x", phi="y ~ x")
    with pytest.raises(FormulaError, match="set by the main formula"):
        bf("y ~ x", mu="~ x")


def test_model_frame(herd_data):
    frame = ModelFrame.from_formula(
        "incidence | trials(size) ~ x + (1 | herd)", herd_data
    )
    assert frame.nobs == 8
    np.testing.assert_array_equal(frame.additions["trials"], herd_data["size"])
    assert frame.additions["trials"].dtype == np.int64

    lp = frame.predictors["mu"]
    assert lp.has_intercept
    assert lp.labels == ["x"]
    assert lp.K == 1
    np.testing.assert_allclose(lp.X[:, 0], herd_data["x"])
    assert lp.coefficient_names() == ["b_Intercept", "b_x"]

    [group] = frame.groups
    assert group.index == 1
    assert group.levels == ["a", "b", "c"]
    np.testing.assert_array_equal(group.J, [1, 1, 2, 2, 3, 3, 3, 1])
    np.testing.assert_allclose(group.Z, np.ones((8, 1)))
    assert group.coefs == ["Intercept"]
    assert not group.correlated
    assert frame.random_effect_name(group) == "r_herd"
    assert frame.group_parameter_names() == ["sd_herd__Intercept"]

    assert ModelFrame.used_columns(frame.formula, herd_data) == [
        "herd",
        "x",
        "size",
        "incidence",
    ]


def test_correlated_group_terms(herd_data):
    frame = ModelFrame.from_formula("incidence ~ x + (1 + x | herd)", herd_data)
    [group] = frame.groups
    assert group.coefs == ["Intercept", "x"]
    assert group.correlated
    assert group.Z.shape == (8, 2)
    np.testing.assert_allclose(group.Z[:, 0], 1.0)
    np.testing.assert_allclose(group.Z[:, 1], herd_data["x"])


def test_group_terms_on_other_dpars(herd_data):
    frame = ModelFrame.from_formula(
        bf("incidence ~ x + (1 | herd)", phi="~ 1 + (1 | herd)"), herd_data
    )
    mu_group, phi_group = frame.groups
    assert (mu_group.index, phi_group.index) == (1, 2)
    assert phi_group.coef_labels == ["phi_Intercept"]
    assert frame.random_effect_name(phi_group) == "r_herd__phi"
    assert frame.predictors["phi"].coefficient_names() == ["b_phi_Intercept"]
    assert frame.predictors["phi"].suffix == "_phi"


def test_new_data(herd_data):
    frame = ModelFrame.from_formula("incidence ~ x + (1 | herd)", herd_data)
    newdata = pd.DataFrame({"x": [0.0, 3.0], "herd": ["c", "a"]})
    np.testing.assert_allclose(frame.population_matrix("mu", newdata), [[0.0], [3.0]])

    J, Z = frame.groups[0].evaluate(newdata)
    np.testing.assert_array_equal(J, [3, 1])
    np.testing.assert_allclose(Z, np.ones((2, 1)))

    with pytest.raises(FormulaError, match="New levels"):
        frame.groups[0].evaluate(pd.DataFrame({"x": [0.0], "herd": ["z"]}))


def test_model_frame_errors(herd_data):
    with pytest.raises(FormulaError, match="not a column"):
        ModelFrame.from_formula("cases ~ x", herd_data)
    with pytest.raises(FormulaError, match="not in the data"):
        ModelFrame.from_formula("incidence | trials(n) ~ x", herd_data)
    with pytest.raises(FormulaError, match="Grouping columns"):
        ModelFrame.from_formula("incidence ~ x + (1 | farm)", herd_data)

    missing = herd_data.assign(x=herd_data["x"].where(herd_data.index != 2))
    with pytest.raises(FormulaError, match="missing values"):
        ModelFrame.from_formula("incidence ~ x", missing)

    fractional = herd_data.assign(size=herd_data["size"] + 0.5)
    with pytest.raises(FormulaError, match="must contain integers"):
        ModelFrame.from_formula("incidence | trials(size) ~ x", fractional)


def test_response_conversion(herd_data):
    frame = ModelFrame.from_formula("x ~ 1", herd_data)
    assert frame.response_as("real").dtype == float
    with pytest.raises(FormulaError, match="must contain integers"):
        frame.response_as("int")
