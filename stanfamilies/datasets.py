# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Simulated data sets for the worked examples.

Both simulators draw from :py:data:`stanfamilies.RNG` unless a seed is given,
so ``sf.manual_seed(...)`` makes them reproducible.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import numpy as np
import pandas as pd

from scipy import stats
from scipy.special import expit

import stanfamilies

if TYPE_CHECKING:
    from stanfamilies import custom_types


def _get_rng(seed: Optional["custom_types.Integer"]) -> np.random.Generator:
    return stanfamilies.RNG if seed is None else np.random.default_rng(seed)


def simulate_herd_incidence(
    n_herds: "custom_types.Integer" = 15,
    n_periods: "custom_types.Integer" = 4,
    phi: "custom_types.Float" = 10.0,
    intercept: "custom_types.Float" = -1.4,
    period_effects: Optional[list["custom_types.Float"]] = None,
    sd_herd: "custom_types.Float" = 0.6,
    size_range: tuple["custom_types.Integer", "custom_types.Integer"] = (5, 35),
    seed: Optional["custom_types.Integer"] = None,
) -> pd.DataFrame:
    """Overdispersed disease incidence in herds followed over several periods.

    For herd ``h`` in period ``p`` the number of new cases among ``size``
    animals is beta-binomial with mean ``size * mu`` and precision ``phi``::

        mu = inv_logit(intercept + period_effects[p] + r[h]),  r[h] ~ N(0, sd_herd)
        incidence ~ beta_binomial(size, mu * phi, (1 - mu) * phi)

    Smaller ``phi`` means more overdispersion relative to a binomial.

    :param n_herds: Number of herds. Defaults to 15.
    :type n_herds: custom_types.Integer
    :param n_periods: Number of periods per herd. Defaults to 4.
    :type n_periods: custom_types.Integer
    :param phi: Precision of the beta-binomial. Defaults to 10.
    :type phi: custom_types.Float
    :param intercept: Log-odds of incidence in the first period. Defaults to
        -1.4.
    :type intercept: custom_types.Float
    :param period_effects: Log-odds differences of periods 2, 3, ... to period
        1. Defaults to a decline of 0.5 per period.
    :type period_effects: Optional[list[custom_types.Float]]
    :param sd_herd: Standard deviation of the herd effects. Defaults to 0.6.
    :type sd_herd: custom_types.Float
    :param size_range: Inclusive range of herd sizes. Defaults to (5, 35).
    :type size_range: tuple[custom_types.Integer, custom_types.Integer]
    :param seed: Seed for a dedicated generator. Defaults to None (use
        ``stanfamilies.RNG``).
    :type seed: Optional[custom_types.Integer]

    :returns: One row per herd and period with columns "herd", "period" (a
        categorical with levels "1", "2", ...), "size", and "incidence"
    :rtype: pd.DataFrame

    :raises ValueError: If the arguments are out of range
    """
    if n_herds < 1 or n_periods < 1:
        raise ValueError("There must be at least one herd and one period.")
    if phi <= 0 or sd_herd < 0:
        raise ValueError("phi must be positive and sd_herd non-negative.")
    if period_effects is None:
        period_effects = [-0.5 * p for p in range(1, n_periods)]
    if len(period_effects) != n_periods - 1:
        raise ValueError(
            f"Expected {n_periods - 1} period effects, got {len(period_effects)}."
        )
    if not 0 < size_range[0] <= size_range[1]:
        raise ValueError("size_range must be a positive (low, high) pair.")

    rng = _get_rng(seed)

    # Herd-level quantities
    herd_effects = rng.normal(0.0, sd_herd, size=n_herds)
    herds = np.repeat(np.arange(1, n_herds + 1), n_periods)
    periods = np.tile(np.arange(n_periods), n_herds)

    # Observation-level quantities
    eta = intercept + np.array([0.0, *period_effects])[periods] + herd_effects[herds - 1]
    mu = expit(eta)
    size = rng.integers(size_range[0], size_range[1] + 1, size=herds.size)
    incidence = stats.betabinom.rvs(
        size, mu * phi, (1 - mu) * phi, random_state=rng
    )

    return pd.DataFrame(
        {
            "herd": pd.Categorical(
                herds.astype(str), categories=[str(h) for h in range(1, n_herds + 1)]
            ),
            "period": pd.Categorical(
                (periods + 1).astype(str),
                categories=[str(p) for p in range(1, n_periods + 1)],
            ),
            "size": size.astype(np.int64),
            "incidence": np.asarray(incidence, dtype=np.int64),
        }
    )


def simulate_gamma_regression(
    n: "custom_types.Integer" = 200,
    n_groups: "custom_types.Integer" = 10,
    intercept: "custom_types.Float" = 1.0,
    slope: "custom_types.Float" = 0.5,
    sd_group: "custom_types.Float" = 0.3,
    variance: "custom_types.Float" = 2.0,
    seed: Optional["custom_types.Integer"] = None,
) -> pd.DataFrame:
    """Positive responses with a log-linear mean and a constant variance.

    ::

        log(mu) = intercept + slope * x + r[group],  r[group] ~ N(0, sd_group)
        y ~ gamma(shape = mu^2 / variance, rate = mu / variance)

    Unlike the usual mean/shape parametrization, the variance does not grow
    with the mean.

    :param n: Number of observations. Defaults to 200.
    :type n: custom_types.Integer
    :param n_groups: Number of groups. Defaults to 10.
    :type n_groups: custom_types.Integer
    :param intercept: Log-mean at x = 0. Defaults to 1.
    :type intercept: custom_types.Float
    :param slope: Change in log-mean per unit of x. Defaults to 0.5.
    :type slope: custom_types.Float
    :param sd_group: Standard deviation of the group effects. Defaults to 0.3.
    :type sd_group: custom_types.Float
    :param variance: Variance of the response. Defaults to 2.
    :type variance: custom_types.Float
    :param seed: Seed for a dedicated generator. Defaults to None (use
        ``stanfamilies.RNG``).
    :type seed: Optional[custom_types.Integer]

    :returns: Columns "x" (standard normal), "group" (a categorical), and "y"
    :rtype: pd.DataFrame

    :raises ValueError: If the arguments are out of range
    """
    if n < 1 or n_groups < 1:
        raise ValueError("There must be at least one observation and one group.")
    if variance <= 0 or sd_group < 0:
        raise ValueError("variance must be positive and sd_group non-negative.")

    rng = _get_rng(seed)
    x = rng.normal(size=n)
    groups = rng.integers(0, n_groups, size=n)
    group_effects = rng.normal(0.0, sd_group, size=n_groups)
    mu = np.exp(intercept + slope * x + group_effects[groups])
    y = rng.gamma(shape=mu**2 / variance, scale=variance / mu)

    return pd.DataFrame(
        {
            "x": x,
            "group": pd.Categorical(
                [f"g{g + 1}" for g in groups],
                categories=[f"g{g + 1}" for g in range(n_groups)],
            ),
            "y": y,
        }
    )
