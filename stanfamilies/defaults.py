# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for stanfamilies components.

This module centralizes default values used across the package, including
sampler settings, Stan compilation options, default priors, and diagnostic
thresholds. Users override these through keyword arguments of the functions
that consume them; the module itself is a reference.
"""

from typing import Any

# Sampler defaults
DEFAULT_CHAINS: int = 4
"""Default number of MCMC chains.

:type: int
"""

DEFAULT_ITER_WARMUP: int = 1000
"""Default number of warmup iterations per chain.

:type: int
"""

DEFAULT_ITER_SAMPLING: int = 1000
"""Default number of post-warmup draws per chain.

:type: int
"""

DEFAULT_MAX_TREEDEPTH: int = 10
"""Maximum tree depth used by CmdStan's NUTS sampler when none is given.

Used when checking for saturated trajectories if the fit does not record its
own value.

:type: int
"""

# Defaults for the Stan model
DEFAULT_FORCE_COMPILE: bool = False
"""Default setting for forcing Stan model recompilation.

When False, an executable already compiled for an identical program is reused.

:type: bool
"""

DEFAULT_STANC_OPTIONS: dict[str, Any] = {"warn-pedantic": True, "O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, bool]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {"STAN_THREADS": True}
"""Default C++ compilation options for Stan models.

:type: dict[str, bool]
"""

DEFAULT_USER_HEADER: str | None = None
"""Default user header content for Stan models.

:type: str | None
"""

DEFAULT_MODEL_NAME: str = "model"
"""Prefix for generated Stan program and executable names.

:type: str
"""

# Default priors
DEFAULT_INTERCEPT_PRIOR: str = "student_t(3, 0, 2.5)"
"""Default prior on the (centered) intercept of every linear predictor.

:type: str
"""

DEFAULT_SD_PRIOR: str = "student_t(3, 0, 2.5)"
"""Default prior on group-level standard deviations. Positivity comes from the
parameter bound, so this is effectively a half-Student-t.

:type: str
"""

DEFAULT_COR_PRIOR: str = "lkj_corr_cholesky(1)"
"""Default prior on the Cholesky factor of group-level correlation matrices.

:type: str
"""

DEFAULT_B_PRIOR: str = ""
"""Default prior on population-level coefficients. An empty string is an
improper flat prior.

:type: str
"""

DEFAULT_DPAR_PRIORS: dict[str, str] = {
    "sigma": "student_t(3, 0, 2.5)",
    "shape": "gamma(0.01, 0.01)",
}
"""Default priors on constant auxiliary parameters of the built-in families.
Custom family dpars not listed here are flat unless a prior is given.

:type: dict[str, str]
"""

# Defaults for Stan diagnostics
DEFAULT_EBFMI_THRESH: float = 0.2
"""Default threshold for Energy Bayesian Fraction of Missing Information (E-BFMI).

Values below this threshold may indicate inefficient sampling.

:type: float
"""

DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

:type: int
"""

DEFAULT_RHAT_THRESH: float = 1.01
"""Default threshold for the R-hat convergence diagnostic.

:type: float
"""

DEFAULT_PARETO_K_THRESH: float = 0.7
"""Pareto-k value above which PSIS-LOO estimates for an observation are
considered unreliable.

:type: float
"""

# Defaults for post-processing
DEFAULT_PPC_NDRAWS: int = 50
"""Default number of predictive draws overlaid in posterior predictive checks.

:type: int
"""

DEFAULT_CE_RESOLUTION: int = 100
"""Default number of grid points for numeric conditional effects.

:type: int
"""

DEFAULT_CI_PROB: float = 0.95
"""Default probability mass of credible intervals in summaries and plots.

:type: float
"""
