# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Post-processing of fitted models.

This submodule turns the output of CmdStan into objects for analysis:

   1. :py:class:`stanfamilies.model.results.inference.InferenceResults` wraps an
      ArviZ InferenceData object and provides summaries and graphical
      posterior predictive checks that work from the stored groups alone.
   2. :py:class:`stanfamilies.model.results.fit.FittedModel` adds the model to
      the draws. It renames Stan parameters to readable names, runs MCMC
      diagnostics, and computes log-likelihoods, posterior predictions,
      expected values, PSIS-LOO, and conditional effects through the family.
   3. :py:class:`stanfamilies.model.results.prep.PreparedDraws` is the object
      family callbacks receive: dpar draws on the response scale plus the
      per-observation data.

Users will not typically instantiate these classes directly. A
:py:class:`FittedModel` is returned by :py:func:`stanfamilies.fit`:

    >>> import stanfamilies as sf
    >>>
    >>> fit = sf.fit("y ~ x + (1 | g)", data=data, family="gamma")
    >>> sample_failures, var_failures = fit.diagnose()
    >>> fit.loo()
    >>> fit.conditional_effects("x", display=True)
"""

from stanfamilies.model.results.fit import FittedModel
from stanfamilies.model.results.inference import InferenceResults
from stanfamilies.model.results.prep import PreparedDraws
