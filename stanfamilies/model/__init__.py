# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction, compilation, and fitting.

The primary interface is :py:class:`~stanfamilies.model.model.RegressionModel`
(usually created through :py:func:`stanfamilies.fit`), which combines a formula,
data, a family, user Stan code, and priors into a Stan program. The
:py:mod:`~stanfamilies.model.stan` submodule generates and compiles that
program, and :py:mod:`~stanfamilies.model.results` post-processes the draws.
"""
