# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Worked examples of custom families.

    - :py:mod:`stanfamilies.examples.beta_binomial`: a beta-binomial family for
      overdispersed counts, compared against the binomial
    - :py:mod:`stanfamilies.examples.gamma_mean_variance`: a gamma family
      parametrized by mean and variance, compared against the built-in gamma

Each module defines its family, the Stan functions it needs, and a ``run``
function that fits the models and returns the fits with their comparison.
"""

EXAMPLES = ("beta_binomial", "gamma_mean_variance")
"""Names of the example modules."""
