# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Model comparison by approximate leave-one-out cross-validation."""

from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

import arviz as az
import pandas as pd

if TYPE_CHECKING:
    from stanfamilies.model.results.fit import FittedModel


def loo_compare(
    *fits: "FittedModel", names: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """Compare fitted models by their expected log predictive density.

    Pointwise log-likelihoods are computed for every fit that lacks them, so
    models with custom families are compared through their ``log_lik``
    callbacks. All models must be fit to the same observations.

    :param fits: Two or more fitted models
    :type fits: FittedModel
    :param names: Names of the models in the table. Defaults to "fit0",
        "fit1", ...
    :type names: Optional[Sequence[str]]

    :returns: ArviZ comparison table ranked by ELPD, with the difference to the
        best model and its standard error
    :rtype: pd.DataFrame

    :raises ValueError: If fewer than two fits are given, the number of names
        does not match, or the fits have different numbers of observations

    Example:
        >>> loo_compare(fit_binomial, fit_beta_binomial,
        ...             names=["binomial", "beta_binomial"])
    """
    if len(fits) < 2:
        raise ValueError("At least two fitted models are needed for a comparison.")
    names = [f"fit{i}" for i in range(len(fits))] if names is None else list(names)
    if len(names) != len(fits):
        raise ValueError(f"Got {len(names)} names for {len(fits)} fits.")
    if len(set(names)) != len(names):
        raise ValueError("Model names must be unique.")
    if len({fit.model.nobs for fit in fits}) != 1:
        raise ValueError("All models must be fit to the same observations.")

    # Make sure every fit has a pointwise log-likelihood
    for fit in fits:
        if "log_likelihood" not in fit.inference_obj.groups():
            fit.log_lik()

    return az.compare(
        {name: fit.inference_obj for name, fit in zip(names, fits)}, ic="loo"
    )
