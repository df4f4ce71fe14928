# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import warnings

import numpy as np
import pandas as pd
import pytest

from scipy import special, stats

import stanfamilies as sf

from stanfamilies.examples import beta_binomial, EXAMPLES, gamma_mean_variance
from stanfamilies.exceptions import CallbackError
from stanfamilies.model.results.prep import PreparedDraws
from stanfamilies.utils import flatten_draws

from conftest import make_fit, N_CHAINS, N_DRAWS

S, N = 8, 5


@pytest.fixture
def beta_binomial_fit(herd_data, binomial_draws):
    model = sf.RegressionModel(
        "incidence | vint(size) ~ x + (1 | herd)",
        data=herd_data,
        family=beta_binomial.beta_binomial2,
        stanvars=beta_binomial.stanvars,
    )
    draws = dict(
        binomial_draws,
        phi=np.random.default_rng(2).uniform(5.0, 20.0, size=(N_CHAINS, N_DRAWS)),
    )
    return make_fit(model, draws)


def test_example_modules():
    assert EXAMPLES == ("beta_binomial", "gamma_mean_variance")
    assert beta_binomial.beta_binomial2.has_callback("log_lik")
    assert gamma_mean_variance.gamma2.has_callback("posterior_epred")


def test_beta_binomial_callbacks():
    rng = np.random.default_rng(0)
    mu = rng.uniform(0.1, 0.9, size=(S, N))
    phi = rng.uniform(1.0, 30.0, size=S)
    trials = np.array([10, 4, 0, 25, 7])
    y = np.array([3, 4, 0, 11, 0])
    prep = PreparedDraws(
        family=beta_binomial.beta_binomial2,
        dpars={"mu": mu, "phi": phi},
        data={"Y": y, "vint1": trials},
        nobs=N,
        rng=rng,
    )

    expected = stats.betabinom.logpmf(
        y[None], trials[None], mu * phi[:, None], (1 - mu) * phi[:, None]
    )
    np.testing.assert_allclose(prep.log_lik(), expected)
    np.testing.assert_allclose(prep.posterior_epred(), mu * trials[None])

    yrep = prep.posterior_predict()
    assert yrep.shape == (S, N)
    assert np.all((yrep >= 0) & (yrep <= trials[None]))


def test_gamma2_callbacks():
    rng = np.random.default_rng(1)
    mu = rng.uniform(1.0, 5.0, size=(S, N))
    v = rng.uniform(0.5, 3.0, size=S)
    y = rng.uniform(0.5, 6.0, size=N)
    prep = PreparedDraws(
        family=gamma_mean_variance.gamma2,
        dpars={"mu": mu, "v": v},
        data={"Y": y},
        nobs=N,
        rng=rng,
    )

    expected = stats.gamma.logpdf(
        y[None], mu**2 / v[:, None], scale=v[:, None] / mu
    )
    np.testing.assert_allclose(prep.log_lik(), expected)
    np.testing.assert_allclose(prep.posterior_epred(), mu)
    assert np.all(prep.posterior_predict() > 0)


def test_gamma2_program(gamma_data):
    model = sf.RegressionModel(
        gamma_mean_variance.FORMULA,
        data=gamma_data,
        family=gamma_mean_variance.gamma2,
        stanvars=gamma_mean_variance.stanvars,
    )
    code = model.stan_code()
    assert "real gamma2_lpdf(real y, real mu, real v) {" in code
    assert "vector[N] Y;" in code
    assert "real<lower=0> v;" in code
    assert "mu = exp(mu);" in code
    assert "target += gamma2_lpdf(Y[n] | mu[n], v);" in code


def test_custom_family_fit(beta_binomial_fit, herd_data):
    posterior = beta_binomial_fit.inference_obj.posterior
    assert "phi" in posterior
    assert beta_binomial_fit.summary().index[-1] == ("Family Specific Parameters", "phi")

    mu = special.expit(
        flatten_draws(posterior["b_Intercept"])[:, None]
        + flatten_draws(posterior["b_x"])[:, None] * herd_data["x"].to_numpy()[None]
        + flatten_draws(posterior["r_herd"])[:, [0, 0, 1, 1, 2, 2, 2, 0], 0]
    )
    phi = flatten_draws(posterior["phi"])[:, None]
    size = herd_data["size"].to_numpy()[None]

    expected = stats.betabinom.logpmf(
        herd_data["incidence"].to_numpy()[None], size, mu * phi, (1 - mu) * phi
    )
    np.testing.assert_allclose(beta_binomial_fit.log_lik(), expected)
    np.testing.assert_allclose(beta_binomial_fit.posterior_epred(), mu * size)

    yrep = beta_binomial_fit.posterior_predict()
    assert np.all((yrep >= 0) & (yrep <= size))


def test_custom_family_conditional_effects(beta_binomial_fit):
    effects = beta_binomial_fit.conditional_effects("x", resolution=4)
    assert len(effects) == 4
    assert (effects["size"] == 12).all()


def test_model_comparison(binomial_fit, beta_binomial_fit):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        table = sf.loo_compare(
            binomial_fit, beta_binomial_fit, names=["binomial", "beta_binomial"]
        )
    assert set(table.index) == {"binomial", "beta_binomial"}
    assert table["elpd_diff"].min() == 0


def test_callback_shapes_are_checked():
    family = sf.custom_family(
        "broken", dpars=["mu"], log_lik=lambda i, prep: np.zeros(3)
    )
    prep = PreparedDraws(
        family=family,
        dpars={"mu": np.zeros((S, N))},
        data={"Y": np.zeros(N)},
        nobs=N,
        rng=np.random.default_rng(0),
    )
    with pytest.raises(CallbackError, match="returned shape"):
        prep.log_lik()


def test_prepared_draws_checks():
    with pytest.raises(CallbackError, match="same number of draws"):
        PreparedDraws(
            family=sf.gaussian(),
            dpars={"mu": np.zeros((S, N)), "sigma": np.ones(S + 1)},
            data={},
            nobs=N,
            rng=np.random.default_rng(0),
        )
    with pytest.raises(CallbackError, match="have shape"):
        PreparedDraws(
            family=sf.gaussian(),
            dpars={"mu": np.zeros((S, N + 1)), "sigma": np.ones(S)},
            data={},
            nobs=N,
            rng=np.random.default_rng(0),
        )


def test_simulate_herd_incidence():
    data = sf.datasets.simulate_herd_incidence(n_herds=5, n_periods=3, seed=7)
    assert list(data.columns) == ["herd", "period", "size", "incidence"]
    assert len(data) == 15
    assert list(data["period"].cat.categories) == ["1", "2", "3"]
    assert data["incidence"].dtype == np.int64
    assert data["size"].between(5, 35).all()
    assert (data["incidence"] <= data["size"]).all()
    pd.testing.assert_frame_equal(
        data, sf.datasets.simulate_herd_incidence(n_herds=5, n_periods=3, seed=7)
    )

    with pytest.raises(ValueError, match="period effects"):
        sf.datasets.simulate_herd_incidence(n_periods=3, period_effects=[0.1])


def test_simulate_gamma_regression():
    data = sf.datasets.simulate_gamma_regression(n=50, n_groups=4, seed=1)
    assert list(data.columns) == ["x", "group", "y"]
    assert list(data["group"].cat.categories) == ["g1", "g2", "g3", "g4"]
    assert (data["y"] > 0).all()

    # The global generator is used without a seed
    sf.manual_seed(3)
    first = sf.datasets.simulate_gamma_regression(n=10)
    sf.manual_seed(3)
    pd.testing.assert_frame_equal(first, sf.datasets.simulate_gamma_regression(n=10))


@pytest.mark.stan
def test_beta_binomial_example_samples():
    data = sf.datasets.simulate_herd_incidence(n_herds=6, n_periods=2, seed=11)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = beta_binomial.run(
            data=data,
            chains=2,
            iter_warmup=200,
            iter_sampling=200,
            seed=1,
            show_progress=False,
        )
    assert set(res["loo"].index) == {"binomial", "beta_binomial"}
    summary = res["beta_binomial"].summary()
    assert ("Family Specific Parameters", "phi") in summary.index
    population = summary.loc["Population-Level Effects"].index
    assert population[0] == "b_Intercept"
    assert any(name.startswith("b_period") for name in population[1:])


def test_beta_binomial_is_overdispersed():
    n_draws, trials = 4000, np.full(N, 20)
    mu = np.full((n_draws, N), 0.3)
    rng = np.random.default_rng(5)
    beta_binomial_draws = PreparedDraws(
        family=beta_binomial.beta_binomial2,
        dpars={"mu": mu, "phi": np.full(n_draws, 3.0)},
        data={"vint1": trials},
        nobs=N,
        rng=rng,
    ).posterior_predict()
    binomial_draws = PreparedDraws(
        family=sf.binomial(),
        dpars={"mu": mu},
        data={"trials": trials},
        nobs=N,
        rng=rng,
    ).posterior_predict()

    # Binomial variance is n * mu * (1 - mu); beta-binomial inflates it by
    # 1 + (n - 1) / (phi + 1)
    np.testing.assert_allclose(binomial_draws.var(axis=0), 4.2, rtol=0.15)
    np.testing.assert_allclose(beta_binomial_draws.var(axis=0), 24.15, rtol=0.15)
    assert np.all(beta_binomial_draws.var(axis=0) > binomial_draws.var(axis=0))


def test_beta_binomial_fit_predicts_more_variance(binomial_fit, beta_binomial_fit):
    binomial_var = binomial_fit.posterior_predict().var(axis=0)
    beta_binomial_var = beta_binomial_fit.posterior_predict().var(axis=0)
    assert beta_binomial_var.sum() > binomial_var.sum()


def test_gamma2_mean_and_variance():
    n_draws, mu, v = 20000, 3.0, 2.0
    yrep = PreparedDraws(
        family=gamma_mean_variance.gamma2,
        dpars={"mu": np.full((n_draws, N), mu), "v": np.full(n_draws, v)},
        data={},
        nobs=N,
        rng=np.random.default_rng(6),
    ).posterior_predict()
    np.testing.assert_allclose(yrep.mean(axis=0), mu, rtol=0.05)
    np.testing.assert_allclose(yrep.var(axis=0), v, rtol=0.1)
