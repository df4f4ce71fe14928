# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Plotting utilities for stanfamilies.

Users should not typically call these functions directly. They back the
plotting methods of the results objects: posterior predictive checks,
calibration plots, and conditional effects.

The plotting utilities are built on top of holoviews and hvplot, providing
interactive visualizations with sensible defaults.

Key Functionality:

    - Density and ECDF overlays of observed and predicted data
    - Predictive intervals around observations
    - Calibration plots of predictive quantiles
    - Conditional effects with credible bands
"""

from .plotting import (
    calculate_relative_quantiles,
    hexgrid_with_mean,
    plot_calibration,
    plot_conditional_effect,
    plot_dens_overlay,
    plot_ecdf_overlay,
    quantile_plot,
)
