# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

r"""Gamma regression parametrized by mean and variance.

The built-in :py:func:`~stanfamilies.families.gamma` family has a constant
shape, so its variance :math:`\mu^2 / \text{shape}` grows with the mean. When
the variance should stay constant instead, the gamma distribution can be
parametrized by its mean ``mu`` and variance ``v``:

.. math::
    y \sim \text{Gamma}(\mu^2 / v, \mu / v)

:py:data:`gamma2` declares this family. Its callbacks are passed directly to
:py:func:`~stanfamilies.families.custom_family`.
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

import numpy.typing as npt
import pandas as pd

from scipy import stats

from stanfamilies import datasets
from stanfamilies.families import custom_family, gamma
from stanfamilies.loo import loo_compare
from stanfamilies.model.model import fit
from stanfamilies.stanvars import stanvar

if TYPE_CHECKING:
    from stanfamilies.model.results.prep import PreparedDraws

FORMULA = "y ~ x + (1 | group)"
"""Formula of both models."""

STAN_FUNCTIONS = """
  real gamma2_lpdf(real y, real mu, real v) {
    return gamma_lpdf(y | mu * mu / v, mu / v);
  }
  real gamma2_rng(real mu, real v) {
    return gamma_rng(mu * mu / v, mu / v);
  }
"""
"""Stan implementation of the family."""

stanvars = stanvar(scode=STAN_FUNCTIONS, block="functions")
"""Stanvars adding :py:data:`STAN_FUNCTIONS` to the program."""


def _scipy_gamma(prep: "PreparedDraws", i: int):
    mu = prep.get_dpar("mu", i)
    v = prep.get_dpar("v", i)
    return stats.gamma(a=mu**2 / v, scale=v / mu)


def log_lik_gamma2(i: int, prep: "PreparedDraws") -> npt.NDArray:
    """Log-density of observation ``i`` under each draw."""
    return _scipy_gamma(prep, i).logpdf(prep.data["Y"][i])


def posterior_predict_gamma2(i: int, prep: "PreparedDraws") -> npt.NDArray:
    """One response per draw for observation ``i``."""
    return _scipy_gamma(prep, i).rvs(size=prep.ndraws, random_state=prep.rng)


def posterior_epred_gamma2(prep: "PreparedDraws") -> npt.NDArray:
    return prep.get_dpar("mu")


gamma2 = custom_family(
    "gamma2",
    dpars=["mu", "v"],
    links=["log", "log"],
    lb=[0, 0],
    type="real",
    log_lik=log_lik_gamma2,
    posterior_predict=posterior_predict_gamma2,
    posterior_epred=posterior_epred_gamma2,
)
"""Gamma family with mean ``mu`` and variance ``v``."""


def run(
    data: Optional[pd.DataFrame] = None,
    effect: str = "x",
    **fit_kwargs,
) -> dict[str, Any]:
    """Fit the mean/variance gamma and the built-in gamma and compare them.

    :param data: Data with columns "x", "group", and "y". Defaults to
        :py:func:`stanfamilies.datasets.simulate_gamma_regression`.
    :type data: Optional[pd.DataFrame]
    :param effect: Predictor whose conditional effect is computed. Defaults to
        "x".
    :type effect: str
    :param fit_kwargs: Passed to :py:func:`stanfamilies.fit`

    :returns: Dictionary with the two fits ("gamma2", "gamma"), the LOO
        comparison ("loo"), the conditional effects of both models
        ("conditional_effects"), and posterior predictive plots ("plots")
    :rtype: dict[str, Any]
    """
    if data is None:
        data = datasets.simulate_gamma_regression()

    fits = {
        "gamma2": fit(FORMULA, data=data, family=gamma2, stanvars=stanvars, **fit_kwargs),
        "gamma": fit(FORMULA, data=data, family=gamma(), **fit_kwargs),
    }
    return {
        **fits,
        "loo": loo_compare(*fits.values(), names=list(fits)),
        "conditional_effects": {
            name: res.conditional_effects(effect) for name, res in fits.items()
        },
        "plots": {name: res.pp_check("dens_overlay") for name, res in fits.items()},
    }
