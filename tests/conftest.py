# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import arviz as az
import numpy as np
import pandas as pd
import pytest
import xarray as xr

from cmdstanpy import cmdstan_path

import stanfamilies as sf

from stanfamilies.model.results.fit import FittedModel, rename_posterior

N_CHAINS = 2
N_DRAWS = 40


def _cmdstan_available():
    try:
        cmdstan_path()
    except ValueError:
        return False
    return True


def pytest_configure(config):
    config.addinivalue_line("markers", "stan: test compiles and samples with CmdStan")


def pytest_collection_modifyitems(config, items):
    if _cmdstan_available():
        return
    skip_stan = pytest.mark.skip(reason="CmdStan is not installed")
    for item in items:
        if "stan" in item.keywords:
            item.add_marker(skip_stan)


@pytest.fixture(autouse=True)
def seeded_rng():
    sf.manual_seed(1025)


@pytest.fixture
def herd_data():
    return pd.DataFrame(
        {
            "herd": pd.Categorical(["a", "a", "b", "b", "c", "c", "c", "a"]),
            "x": [-1.0, 0.5, 0.0, 1.5, -0.5, 2.0, 1.0, 0.25],
            "size": [10, 12, 8, 15, 20, 9, 11, 14],
            "incidence": [2, 5, 1, 9, 4, 6, 3, 7],
        }
    )


@pytest.fixture
def gamma_data():
    return sf.datasets.simulate_gamma_regression(n=30, n_groups=3, seed=3)


def _stan_dataset(variables):
    """Dataset of fake Stan draws with ArviZ-style dimension names."""
    coords = {"chain": np.arange(N_CHAINS), "draw": np.arange(N_DRAWS)}
    data_vars = {}
    for name, values in variables.items():
        dims = ["chain", "draw"] + [
            f"{name}_dim_{i}" for i in range(values.ndim - 2)
        ]
        data_vars[name] = (dims, values)
    return xr.Dataset(data_vars, coords=coords)


def _sample_stats():
    rng = np.random.default_rng(0)
    shape = (N_CHAINS, N_DRAWS)
    return xr.Dataset(
        {
            "diverging": (("chain", "draw"), np.zeros(shape, dtype=bool)),
            "tree_depth": (("chain", "draw"), np.full(shape, 3)),
            "energy": (("chain", "draw"), rng.normal(size=shape).cumsum(axis=1)),
            "lp": (("chain", "draw"), rng.normal(size=shape)),
        },
        coords={"chain": np.arange(N_CHAINS), "draw": np.arange(N_DRAWS)},
        attrs={"max_treedepth": 10},
    )


def make_fit(model, stan_draws):
    """A FittedModel from fake draws named as in the generated Stan program."""
    inference_obj = az.InferenceData(
        posterior=rename_posterior(model, _stan_dataset(stan_draws)),
        sample_stats=_sample_stats(),
        observed_data=xr.Dataset({"Y": (("obs",), model.Y)}),
    )
    return FittedModel(model=model, inference_obj=inference_obj)


@pytest.fixture
def binomial_model(herd_data):
    return sf.RegressionModel(
        "incidence | trials(size) ~ x + (1 | herd)",
        data=herd_data,
        family=sf.binomial(),
    )


@pytest.fixture
def binomial_draws():
    rng = np.random.default_rng(1)
    shape = (N_CHAINS, N_DRAWS)
    return {
        "Intercept": rng.normal(-0.5, 0.1, size=shape),
        "b_Intercept": rng.normal(-0.5, 0.1, size=shape),
        "b": rng.normal(0.3, 0.1, size=shape + (1,)),
        "sd_1": np.abs(rng.normal(0.5, 0.1, size=shape + (1,))),
        "z_1": rng.normal(size=shape + (1, 3)),
        "r_1": rng.normal(0, 0.5, size=shape + (3, 1)),
    }


@pytest.fixture
def binomial_fit(binomial_model, binomial_draws):
    return make_fit(binomial_model, binomial_draws)
