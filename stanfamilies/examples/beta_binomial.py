# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

r"""Beta-binomial regression for overdispersed counts.

A binomial model assumes that all animals in a herd have the same probability of
infection. When that probability itself varies, the counts are more variable
than a binomial allows. The beta-binomial draws the probability from a beta
distribution with mean ``mu`` and precision ``phi``:

.. math::
    y \sim \text{BetaBinomial}(T, \mu\phi, (1 - \mu)\phi)

so that :math:`E[y] = T\mu` and the variance grows as :math:`\phi` shrinks.
Stan has no beta-binomial with this parametrization, which makes it a good
example of a custom family: :py:data:`beta_binomial2` declares the dpars, the
Stan snippet :py:data:`STAN_FUNCTIONS` implements the density, and the three
callbacks below implement the Python side.

Example:
    >>> from stanfamilies.examples import beta_binomial
    >>> res = beta_binomial.run(chains=2)
    >>> res["loo"]
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

import numpy.typing as npt
import pandas as pd

from scipy import stats

from stanfamilies import datasets
from stanfamilies.families import binomial, custom_family
from stanfamilies.loo import loo_compare
from stanfamilies.model.model import fit
from stanfamilies.stanvars import stanvar

if TYPE_CHECKING:
    from stanfamilies.model.results.prep import PreparedDraws

BINOMIAL_FORMULA = "incidence | trials(size) ~ period + (1 | herd)"
"""Formula of the binomial model."""

BETA_BINOMIAL_FORMULA = "incidence | vint(size) ~ period + (1 | herd)"
"""Formula of the beta-binomial model. ``vint(size)`` passes the herd sizes to
Stan as ``vint1``."""

STAN_FUNCTIONS = """
  real beta_binomial2_lpmf(int y, real mu, real phi, int T) {
    return beta_binomial_lpmf(y | T, mu * phi, (1 - mu) * phi);
  }
  int beta_binomial2_rng(real mu, real phi, int T) {
    return beta_binomial_rng(T, mu * phi, (1 - mu) * phi);
  }
"""
"""Stan implementation of the family."""

stanvars = stanvar(scode=STAN_FUNCTIONS, block="functions")
"""Stanvars adding :py:data:`STAN_FUNCTIONS` to the program."""

beta_binomial2 = custom_family(
    "beta_binomial2",
    dpars=["mu", "phi"],
    links=["logit", "log"],
    lb=[0, 0],
    ub=[1, None],
    type="int",
    vars=["vint1[n]"],
)
"""Beta-binomial family with mean probability ``mu`` and precision ``phi``."""


def _beta_params(
    prep: "PreparedDraws", i: int
) -> tuple[npt.NDArray, npt.NDArray, Any]:
    mu = prep.get_dpar("mu", i)
    phi = prep.get_dpar("phi", i)
    return mu * phi, (1 - mu) * phi, prep.data["vint1"][i]


@beta_binomial2.log_lik
def log_lik_beta_binomial2(i: int, prep: "PreparedDraws") -> npt.NDArray:
    """Log-probability of observation ``i`` under each draw."""
    a, b, trials = _beta_params(prep, i)
    return stats.betabinom.logpmf(prep.data["Y"][i], trials, a, b)


@beta_binomial2.posterior_predict
def posterior_predict_beta_binomial2(i: int, prep: "PreparedDraws") -> npt.NDArray:
    """One count per draw for observation ``i``."""
    a, b, trials = _beta_params(prep, i)
    return stats.betabinom.rvs(trials, a, b, size=prep.ndraws, random_state=prep.rng)


@beta_binomial2.posterior_epred
def posterior_epred_beta_binomial2(prep: "PreparedDraws") -> npt.NDArray:
    """Expected counts, ``mu * trials``."""
    return prep.get_dpar("mu") * prep.data["vint1"][None]


def run(
    data: Optional[pd.DataFrame] = None,
    ppc_type: str = "ecdf_overlay",
    **fit_kwargs,
) -> dict[str, Any]:
    """Fit binomial and beta-binomial models to herd incidence data and compare
    them.

    :param data: Data with columns "herd", "period", "size", and "incidence".
        Defaults to :py:func:`stanfamilies.datasets.simulate_herd_incidence`.
    :type data: Optional[pd.DataFrame]
    :param ppc_type: Type of posterior predictive check plotted for both
        models. Defaults to "ecdf_overlay".
    :type ppc_type: str
    :param fit_kwargs: Passed to :py:func:`stanfamilies.fit`

    :returns: Dictionary with the two fits ("binomial", "beta_binomial"), the
        LOO comparison ("loo"), and the posterior predictive plots ("plots")
    :rtype: dict[str, Any]
    """
    if data is None:
        data = datasets.simulate_herd_incidence()

    fits = {
        "binomial": fit(BINOMIAL_FORMULA, data=data, family=binomial(), **fit_kwargs),
        "beta_binomial": fit(
            BETA_BINOMIAL_FORMULA,
            data=data,
            family=beta_binomial2,
            stanvars=stanvars,
            **fit_kwargs,
        ),
    }
    return {
        **fits,
        "loo": loo_compare(*fits.values(), names=list(fits)),
        "plots": {name: res.pp_check(ppc_type) for name, res in fits.items()},
    }
