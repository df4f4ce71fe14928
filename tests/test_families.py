# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import numpy as np
import pytest

from scipy import stats

import stanfamilies as sf

from stanfamilies.exceptions import CallbackError, FamilyError
from stanfamilies.families import get_family, stan_bounds
from stanfamilies.model.results.prep import PreparedDraws

S, N = 6, 4


def make_prep(family, dpars, **data):
    return PreparedDraws(
        family=family,
        dpars=dpars,
        data=data,
        nobs=N,
        rng=np.random.default_rng(0),
    )


def test_stan_bounds():
    assert stan_bounds(None, None) == ""
    assert stan_bounds(0, None) == "<lower=0>"
    assert stan_bounds(0, 1) == "<lower=0, upper=1>"


def test_builtin_family_attributes():
    family = sf.gamma()
    assert family.name == "gamma"
    assert family.dpars == ("mu", "shape")
    assert family.links["mu"].name == "log"
    assert family.bounds["shape"] == (0, None)
    assert family.stan_suffix == "_lpdf"
    assert family.stan_dpar_declaration("shape") == "real<lower=0> shape"

    assert sf.binomial().required_variables == {"trials"}
    assert sf.binomial().stan_suffix == "_lpmf"


def test_builtin_links_can_be_changed():
    family = sf.gaussian(link="log", link_sigma="softplus")
    assert family.links["mu"].name == "log"
    assert family.links["sigma"].name == "softplus"


def test_unknown_link_argument():
    with pytest.raises(FamilyError, match="link_phi"):
        sf.families.Gamma(link_phi="log")


def test_get_family():
    assert isinstance(get_family("poisson"), sf.families.Poisson)
    family = sf.binomial()
    assert get_family(family) is family
    with pytest.raises(FamilyError, match="Unknown family 'negbinomial'"):
        get_family("negbinomial")


def test_builtin_likelihood_statements():
    assert sf.binomial().stan_likelihood(predicted=["mu"]) == [
        "target += binomial_lpmf(Y | trials, mu)"
    ]
    assert sf.gamma().stan_likelihood(predicted=["mu"]) == [
        "target += gamma_lpdf(Y | shape, shape ./ mu)"
    ]


def test_custom_family_likelihood_loops():
    family = sf.custom_family(
        "beta_binomial2",
        dpars=["mu", "phi"],
        links=["logit", "log"],
        lb=[0, 0],
        ub=[1, None],
        type="int",
        vars=["vint1[n]"],
    )
    assert family.stan_suffix == "_lpmf"
    assert family.required_variables == {"vint1"}
    assert family.stan_likelihood(predicted=["mu"]) == [
        "for (n in 1:N) {",
        ["target += beta_binomial2_lpmf(Y[n] | mu[n], phi, vint1[n])"],
        "}",
    ]
    assert family.stan_dpar_declaration("phi") == "real<lower=0> phi"


def test_custom_family_vectorized_likelihood():
    family = sf.custom_family("gamma2", dpars=["mu", "v"], links="log", lb=0, loop=False)
    assert family.stan_likelihood(predicted=["mu", "v"]) == [
        "target += gamma2_lpdf(Y | mu, v)"
    ]
    assert family.links["v"].name == "log"
    assert family.bounds == {"mu": (0, None), "v": (0, None)}


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"name": "bad name"}, "not a valid name"),
        ({"name": "fam", "dpars": ["phi", "mu"]}, "first dpar"),
        ({"name": "fam", "dpars": ["mu", "mu"]}, "Duplicate"),
        ({"name": "fam", "dpars": ["mu", "phi_1"]}, "Invalid dpar name"),
        ({"name": "fam", "dpars": ["mu", "lprior"]}, "reserved"),
        ({"name": "fam", "dpars": ["mu", "phi"], "links": ["log"]}, "'links' has 1"),
        ({"name": "fam", "links": "tanh"}, "Unknown link"),
        ({"name": "fam", "lb": 1, "ub": 0}, "not below"),
        ({"name": "fam", "type": "complex"}, "Family type"),
    ],
)
def test_custom_family_validation(kwargs, message):
    with pytest.raises(FamilyError, match=message):
        sf.custom_family(**kwargs)


def test_binomial_callbacks_match_scipy():
    rng = np.random.default_rng(0)
    mu = rng.uniform(0.1, 0.9, size=(S, N))
    trials = np.array([5, 10, 0, 7])
    y = np.array([2, 10, 0, 3])
    prep = make_prep(sf.binomial(), {"mu": mu}, Y=y, trials=trials)

    expected = stats.binom.logpmf(y[None], trials[None], mu)
    np.testing.assert_allclose(prep.log_lik(), expected)
    np.testing.assert_allclose(prep.posterior_epred(), mu * trials[None])

    yrep = prep.posterior_predict()
    assert yrep.shape == (S, N)
    assert np.all((yrep >= 0) & (yrep <= trials[None]))
    assert np.all(yrep[:, 2] == 0)


def test_gaussian_callbacks_with_constant_sigma():
    rng = np.random.default_rng(1)
    mu = rng.normal(size=(S, N))
    sigma = rng.uniform(0.5, 2.0, size=S)
    y = rng.normal(size=N)
    prep = make_prep(sf.gaussian(), {"mu": mu, "sigma": sigma}, Y=y)

    expected = stats.norm.logpdf(y[None], mu, sigma[:, None])
    np.testing.assert_allclose(prep.log_lik(), expected)
    np.testing.assert_allclose(prep.posterior_epred(), mu)


def test_gamma_callbacks_match_mean_shape_parametrization():
    rng = np.random.default_rng(2)
    mu = rng.uniform(1.0, 3.0, size=(S, N))
    shape = rng.uniform(2.0, 5.0, size=S)
    y = rng.uniform(0.5, 4.0, size=N)
    prep = make_prep(sf.gamma(), {"mu": mu, "shape": shape}, Y=y)

    expected = stats.gamma.logpdf(
        y[None], shape[:, None], scale=mu / shape[:, None]
    )
    np.testing.assert_allclose(prep.log_lik(), expected)
    assert np.all(prep.posterior_predict() > 0)


def test_poisson_predictions_are_counts():
    mu = np.full((S, N), 3.0)
    prep = make_prep(sf.poisson(), {"mu": mu}, Y=np.array([0, 1, 2, 3]))
    yrep = prep.posterior_predict()
    assert yrep.shape == (S, N)
    assert np.issubdtype(yrep.dtype, np.integer)


def test_custom_family_callbacks_by_decorator():
    family = sf.custom_family("shifted", dpars=["mu"])

    @family.posterior_epred
    def epred(prep):
        return prep.get_dpar("mu") + 1

    assert family.has_callback("posterior_epred")
    assert not family.has_callback("log_lik")

    prep = make_prep(family, {"mu": np.zeros((S, N))})
    np.testing.assert_allclose(prep.posterior_epred(), np.ones((S, N)))

    with pytest.raises(CallbackError, match="no 'log_lik' callback"):
        family.log_lik(0, prep)
