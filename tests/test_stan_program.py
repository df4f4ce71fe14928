# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import numpy as np
import pytest

import stanfamilies as sf

from stanfamilies.examples import beta_binomial
from stanfamilies.exceptions import FormulaError, PriorError, StanVarError
from stanfamilies.model.model import RegressionModel

CUSTOM_FORMULA = "incidence | vint(size) ~ x + (1 | herd)"


@pytest.fixture
def custom_model(herd_data):
    return RegressionModel(
        CUSTOM_FORMULA,
        data=herd_data,
        family=beta_binomial.beta_binomial2,
        stanvars=beta_binomial.stanvars,
    )


def test_binomial_program(binomial_model):
    code = binomial_model.stan_code()
    program = binomial_model.program

    # Blocks appear in program order and the functions block is empty
    assert program.functions_block == ""
    order = [
        code.index("data {"),
        code.index("transformed data {"),
        code.index("parameters {"),
        code.index("transformed parameters {"),
        code.index("model {"),
        code.index("generated quantities {"),
    ]
    assert order == sorted(order)

    for declaration in (
        "int<lower=1> N;",
        "array[N] int Y;",
        "array[N] int<lower=0> trials;",
        "matrix[N, K] X;",
        "array[N] int<lower=1> J_1;",
        "matrix[N, M_1] Z_1;",
        "int prior_only;",
    ):
        assert declaration in program.data_block

    assert "Xc[:, i] = X[:, i] - means_X[i];" in program.transformed_data_block

    for declaration in (
        "real Intercept;",
        "vector[K] b;",
        "vector<lower=0>[M_1] sd_1;",
        "matrix[M_1, N_1] z_1;",
    ):
        assert declaration in program.parameters_block
    assert "L_1" not in code

    assert (
        "r_1 = transpose(diag_pre_multiply(sd_1, z_1));"
        in program.transformed_parameters_block
    )

    model_block = program.model_block
    for statement in (
        "if (!prior_only) {",
        "mu += Intercept + Xc * b;",
        "mu += rows_dot_product(r_1[J_1], Z_1);",
        "mu = inv_logit(mu);",
        "target += binomial_lpmf(Y | trials, mu);",
        "target += student_t_lpdf(Intercept | 3, 0, 2.5);",
        "target += student_t_lpdf(sd_1 | 3, 0, 2.5);",
        "target += std_normal_lpdf(to_vector(z_1));",
    ):
        assert statement in model_block

    # Population-level coefficients are flat by default
    assert "lpdf(b |" not in model_block

    assert (
        "real b_Intercept = Intercept - dot_product(means_X, b);"
        in program.generated_quantities_block
    )


def test_user_priors_replace_defaults(herd_data):
    model = RegressionModel(
        "incidence | trials(size) ~ x + (1 | herd)",
        data=herd_data,
        family="binomial",
        prior=sf.prior("normal(0, 1)", class_="b", coef="x")
        + sf.prior("exponential(1)", class_="sd", group="herd")
        + sf.prior("normal(0, 1.5)", class_="Intercept"),
    )
    model_block = model.program.model_block
    assert "target += normal_lpdf(b | 0, 1);" in model_block
    assert "target += exponential_lpdf(sd_1 | 1);" in model_block
    assert "target += normal_lpdf(Intercept | 0, 1.5);" in model_block
    assert "student_t" not in model_block


def test_bounded_coefficients(herd_data):
    model = RegressionModel(
        "incidence | trials(size) ~ x",
        data=herd_data,
        family="binomial",
        prior=sf.prior("normal(0, 1)", class_="b", lb=0),
    )
    assert "vector<lower=0>[K] b;" in model.program.parameters_block
    assert model.program.groups == []
    assert "transformed parameters" not in model.stan_code()


def test_correlated_group_terms(herd_data):
    model = RegressionModel(
        "incidence | trials(size) ~ x + (1 + x | herd)",
        data=herd_data,
        family="binomial",
    )
    code = model.stan_code()
    assert "cholesky_factor_corr[M_1] L_1;" in code
    assert "r_1 = transpose(diag_pre_multiply(sd_1, L_1) * z_1);" in code
    assert "target += lkj_corr_cholesky_lpdf(L_1 | 1);" in code
    assert "corr_matrix[M_1] Cor_1 = multiply_lower_tri_self_transpose(L_1);" in code

    [group] = model.frame.groups
    assert model.sd_names(group) == ["sd_herd__Intercept", "sd_herd__x"]
    assert model.cor_names(group) == [(0, 1, "cor_herd__Intercept__x")]
    assert model.group_names == [
        "sd_herd__Intercept",
        "sd_herd__x",
        "cor_herd__Intercept__x",
    ]


def test_constant_dpars_of_builtin_families(herd_data):
    model = RegressionModel("x ~ size", data=herd_data, family=sf.gaussian())
    assert model.constant_dpars == ("sigma",)
    assert "real<lower=0> sigma;" in model.program.parameters_block
    assert "target += student_t_lpdf(sigma | 3, 0, 2.5);" in model.program.model_block
    assert "target += normal_lpdf(Y | mu, sigma);" in model.program.model_block


def test_custom_family_program(custom_model):
    program = custom_model.program
    assert "real beta_binomial2_lpmf(int y, real mu, real phi, int T) {" in (
        program.functions_block
    )
    assert "array[N] int vint1;" in program.data_block
    assert "real<lower=0> phi;" in program.parameters_block

    model_block = program.model_block
    assert "for (n in 1:N) {" in model_block
    assert "target += beta_binomial2_lpmf(Y[n] | mu[n], phi, vint1[n]);" in model_block

    # Constant dpars of custom families are flat unless given a prior
    assert "lpdf(phi" not in model_block

    assert custom_model.predicted_dpars == ("mu",)
    assert custom_model.constant_dpars == ("phi",)
    assert custom_model.prior_classes == ["Intercept", "b", "sd", "cor", "phi"]
    assert custom_model.population_names == ["b_Intercept", "b_x"]


def test_prior_on_custom_dpar(herd_data):
    model = RegressionModel(
        CUSTOM_FORMULA,
        data=herd_data,
        family=beta_binomial.beta_binomial2,
        stanvars=beta_binomial.stanvars,
        prior=sf.prior("gamma(0.01, 0.01)", class_="phi"),
    )
    assert "target += gamma_lpdf(phi | 0.01, 0.01);" in model.program.model_block


def test_predicted_custom_dpar(herd_data):
    model = RegressionModel(
        sf.bf(CUSTOM_FORMULA, phi="~ x"),
        data=herd_data,
        family=beta_binomial.beta_binomial2,
        stanvars=beta_binomial.stanvars,
    )
    assert model.constant_dpars == ()
    program = model.program
    assert "real Intercept_phi;" in program.parameters_block
    assert "vector[K_phi] b_phi;" in program.parameters_block
    assert "phi = exp(phi);" in program.model_block
    assert "target += beta_binomial2_lpmf(Y[n] | mu[n], phi[n], vint1[n]);" in (
        program.model_block
    )
    assert model.population_names == [
        "b_Intercept",
        "b_x",
        "b_phi_Intercept",
        "b_phi_x",
    ]


def test_stan_data(binomial_model, herd_data):
    data = binomial_model.stan_data()
    assert set(data) == {
        "N",
        "Y",
        "trials",
        "K",
        "X",
        "N_1",
        "M_1",
        "J_1",
        "Z_1",
        "prior_only",
    }
    assert data["N"] == 8
    assert (data["K"], data["N_1"], data["M_1"]) == (1, 3, 1)
    np.testing.assert_array_equal(data["Y"], herd_data["incidence"])
    np.testing.assert_array_equal(data["trials"], herd_data["size"])
    assert data["prior_only"] == 0
    assert binomial_model.stan_data(prior_only=True)["prior_only"] == 1


def test_stanvar_data_are_passed(herd_data):
    model = RegressionModel(
        CUSTOM_FORMULA,
        data=herd_data,
        family=beta_binomial.beta_binomial2,
        stanvars=beta_binomial.stanvars
        + sf.stanvar(x=np.linspace(0, 1, 8), name="weights"),
    )
    data_block = model.program.data_block
    assert data_block.index("int prior_only;") < data_block.index("vector[8] weights;")
    np.testing.assert_allclose(model.stan_data()["weights"], np.linspace(0, 1, 8))


def test_model_description(binomial_model):
    text = str(binomial_model)
    assert "Formula: incidence | trials(size) ~ x + (1 | herd)" in text
    assert "8 observations" in text


def test_family_checks(herd_data):
    with pytest.raises(FormulaError, match=r"trials\(\.\.\.\)"):
        RegressionModel("incidence ~ x", data=herd_data, family="binomial")

    too_many = herd_data.assign(incidence=herd_data["size"] + 1)
    with pytest.raises(FormulaError, match="number of trials"):
        RegressionModel(
            "incidence | trials(size) ~ x", data=too_many, family="binomial"
        )

    with pytest.raises(FormulaError, match="has no dpars"):
        RegressionModel(
            sf.bf("incidence | trials(size) ~ x", phi="~ 1"),
            data=herd_data,
            family="binomial",
        )


def test_custom_family_needs_its_density(herd_data):
    with pytest.raises(StanVarError, match="beta_binomial2_lpmf"):
        RegressionModel(CUSTOM_FORMULA, data=herd_data, family=beta_binomial.beta_binomial2)


@pytest.mark.parametrize(
    "user_prior, message",
    [
        (sf.prior("normal(0, 1)", class_="b", coef="z"), "Unknown coefficient 'z'"),
        (sf.prior("exponential(1)", class_="sd", group="farm"), "No group-level terms"),
        (sf.prior("lkj_corr_cholesky(2)", class_="cor"), "No group-level terms"),
        (sf.prior("exponential(1)", class_="sd", coef="x"), "Unknown group-level"),
        (sf.prior("gamma(1, 1)", class_="shape"), "Unknown prior class 'shape'"),
        (sf.prior("normal(0, 1)", class_="Intercept", dpar="phi"), "no linear predictor"),
    ],
)
def test_prior_checks(herd_data, user_prior, message):
    with pytest.raises(PriorError, match=message):
        RegressionModel(
            "incidence | trials(size) ~ x + (1 | herd)",
            data=herd_data,
            family="binomial",
            prior=user_prior,
        )


def test_custom_family_variables_must_be_provided(herd_data):
    with pytest.raises(FormulaError, match=r"vint\(\.\.\.\)"):
        RegressionModel(
            "incidence ~ x + (1 | herd)",
            data=herd_data,
            family=beta_binomial.beta_binomial2,
            stanvars=beta_binomial.stanvars,
        )


@pytest.mark.parametrize("name", ["phi", "mu"])
def test_stanvar_data_cannot_shadow_dpars(herd_data, name):
    with pytest.raises(StanVarError, match="dpars of family 'beta_binomial2'"):
        RegressionModel(
            CUSTOM_FORMULA,
            data=herd_data,
            family=beta_binomial.beta_binomial2,
            stanvars=beta_binomial.stanvars + sf.stanvar(x=1.5, name=name),
        )


def test_custom_density_name_must_match_exactly(herd_data):
    renamed = beta_binomial.STAN_FUNCTIONS.replace(
        "beta_binomial2_lpmf", "beta_binomial2_lpmf_old"
    )
    with pytest.raises(StanVarError, match="beta_binomial2_lpmf"):
        RegressionModel(
            CUSTOM_FORMULA,
            data=herd_data,
            family=beta_binomial.beta_binomial2,
            stanvars=sf.stanvar(scode=renamed, block="functions"),
        )
