# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
stanfamilies: custom response distributions for Bayesian multilevel regression
with Stan.

stanfamilies builds multilevel regression models from formulas, compiles them
with CmdStan, and post-processes the fits with ArviZ. Its main purpose is
letting users declare their own response distributions ("custom families"):
a name, distributional parameters with link functions and bounds, a Stan
snippet implementing the density, and three Python callbacks for
log-likelihood, posterior prediction, and expected values. Fits of custom
families then work with the same summaries, posterior predictive checks,
LOO comparisons, and conditional-effect plots as the built-in families.

Global Variables:
    RNG: Global random number generator for reproducible computations
    __version__: Package version string

Example:
    >>> import stanfamilies as sf
    >>> sf.manual_seed(42)
    >>> data = sf.datasets.simulate_herd_incidence()
    >>> fit = sf.fit(
    ...     "incidence | trials(size) ~ period + (1 | herd)",
    ...     data=data,
    ...     family=sf.binomial(),
    ... )
    >>> print(fit)
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("stanfamilies")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for stanfamilies.

Used for Stan seeds, draw subsetting, posterior predictive sampling, and the
dataset simulators. Seed it with :py:func:`manual_seed`.

:type: np.random.Generator
"""

# Get custom types if TYPE_CHECKING is True
if TYPE_CHECKING:
    from stanfamilies import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import stanfamilies as sf
        >>> sf.manual_seed(42)
        >>> data = sf.datasets.simulate_gamma_regression()
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from stanfamilies import utils
from stanfamilies.families import (
    binomial,
    custom_family,
    gamma,
    gaussian,
    poisson,
)
from stanfamilies.formula import bf
from stanfamilies.loo import loo_compare
from stanfamilies.model.model import fit, RegressionModel
from stanfamilies.priors import prior
from stanfamilies.stanvars import stanvar

# Lazy imports for performance
datasets = utils.lazy_import("stanfamilies.datasets")
plotting = utils.lazy_import("stanfamilies.plotting")
results = utils.lazy_import("stanfamilies.model.results")
