# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import holoviews as hv
import numpy as np
import pandas as pd
import pytest

from stanfamilies import plotting


@pytest.fixture
def replicates():
    rng = np.random.default_rng(0)
    return rng.normal(size=20), rng.normal(size=(10, 20))


def test_calculate_relative_quantiles():
    reference = np.arange(10.0)[:, None] * np.ones((10, 3))
    observed = np.array([[-1.0, 4.5, 20.0]])
    np.testing.assert_allclose(
        plotting.calculate_relative_quantiles(reference, observed), [[0.0, 0.5, 1.0]]
    )
    with pytest.raises(ValueError, match="at least 2D"):
        plotting.calculate_relative_quantiles(np.arange(3.0), observed)
    with pytest.raises(ValueError, match="must match"):
        plotting.calculate_relative_quantiles(reference, np.zeros((1, 2)))


def test_plot_calibration(replicates):
    y, yrep = replicates
    plot, deviances = plotting.plot_calibration(yrep, y[None])
    assert isinstance(plot, hv.Overlay)
    assert deviances.shape == (1,)
    assert 0 <= deviances[0] <= 0.5


def test_overlays(replicates):
    y, yrep = replicates
    dens = plotting.plot_dens_overlay(y, yrep)
    ecdf = plotting.plot_ecdf_overlay(y, yrep)
    for plot in (dens, ecdf):
        assert isinstance(plot, hv.Overlay)
        assert len(plot) == 11


def test_overlay_shape_errors(replicates):
    y, yrep = replicates
    with pytest.raises(ValueError, match="must be 1D"):
        plotting.plot_dens_overlay(yrep, yrep)
    with pytest.raises(ValueError, match="Replicates must have shape"):
        plotting.plot_ecdf_overlay(y, yrep[:, :5])


def test_quantile_plot(replicates):
    y, yrep = replicates
    x = np.arange(20)
    plot, bounds = plotting.quantile_plot(
        x, yrep, quantiles=(0.1, 0.25), observed=y, return_quantiles=True
    )
    assert isinstance(plot, hv.Overlay)
    # 0.1, 0.25, 0.5, 0.75, 0.9
    assert bounds.shape == (5, 20)
    assert np.all(bounds[0] <= bounds[-1])

    with pytest.raises(ValueError, match="between 0 and 1"):
        plotting.quantile_plot(x, yrep, quantiles=(1.5,))
    with pytest.raises(ValueError, match="must be 2D"):
        plotting.quantile_plot(x, y, quantiles=(0.25,))


def test_hexgrid_with_mean():
    rng = np.random.default_rng(1)
    x, y = rng.normal(size=200), rng.normal(size=200)
    assert isinstance(plotting.hexgrid_with_mean(x, y), hv.Overlay)
    with pytest.raises(ValueError, match="same shape"):
        plotting.hexgrid_with_mean(x, y[:10])


def test_plot_conditional_effect():
    frame = pd.DataFrame(
        {
            "x": np.linspace(0, 1, 5),
            "estimate": np.linspace(1, 2, 5),
            "lower": np.linspace(0.5, 1.5, 5),
            "upper": np.linspace(1.5, 2.5, 5),
        }
    )
    assert isinstance(plotting.plot_conditional_effect(frame, "x", "y"), hv.Overlay)

    categorical = frame.iloc[:3].assign(x=pd.Categorical(["a", "b", "c"]))
    assert isinstance(
        plotting.plot_conditional_effect(categorical, "x", "y"), hv.Overlay
    )
