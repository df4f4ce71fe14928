# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Core plotting functions for stanfamilies.

All plots are built with HoloViews and hvplot. The functions here take plain
NumPy arrays or data frames; the results classes extract the draws and pass
them in.
"""

from __future__ import annotations

from typing import Any, Literal, overload, TYPE_CHECKING

import holoviews as hv
import hvplot.pandas  # pylint: disable=unused-import
import numpy as np
import numpy.typing as npt
import pandas as pd

from scipy import stats

if TYPE_CHECKING:
    from stanfamilies import custom_types

REPLICATE_KWARGS = (("color", "lightsteelblue"), ("alpha", 0.4), ("line_width", 1))
"""Default styling of the predictive replicates in overlay plots."""

OBSERVED_KWARGS = (("color", "black"), ("line_width", 2))
"""Default styling of the observed data in overlay plots."""


def calculate_relative_quantiles(
    reference: npt.NDArray, observed: npt.NDArray
) -> npt.NDArray:
    """Quantiles of observed values within their reference distributions.

    :param reference: Reference draws of shape (n_samples, feat1, ..., featN)
    :type reference: npt.NDArray
    :param observed: Observations of shape (n_obs, feat1, ..., featN)
    :type observed: npt.NDArray

    :returns: Fraction of reference draws at or below each observation, shape
        (n_obs, feat1, ..., featN)
    :rtype: npt.NDArray

    :raises ValueError: If the arrays are not at least 2D or their feature
        dimensions disagree

    Example:
        >>> yrep = fit.posterior_predict()   # (S, N)
        >>> q = calculate_relative_quantiles(yrep, fit.model.Y[None])
    """
    if reference.ndim < 2:
        raise ValueError("Reference must be at least 2D.")
    if observed.ndim < 2:
        raise ValueError("Observed must be at least 2D.")
    if reference.shape[1:] != observed.shape[1:]:
        raise ValueError(
            "The shape of the reference and observed must match except for the "
            "first dimension."
        )
    return (reference[None] <= observed[:, None]).mean(axis=1)


def _set_defaults(
    kwargs: dict[str, Any] | None, default_values: tuple[tuple[str, Any], ...]
) -> dict[str, Any]:
    """Fill in styling defaults without overwriting user-provided keys."""
    kwargs = dict(kwargs or {})
    for k, v in default_values:
        kwargs.setdefault(k, v)
    return kwargs


def plot_calibration(
    reference: npt.NDArray,
    observed: npt.NDArray,
    **kwargs,
) -> tuple[hv.Overlay, npt.NDArray[np.floating]]:
    """ECDF of the observations' predictive quantiles against the uniform ECDF.

    For a calibrated model the quantiles of the observations within their
    posterior predictive distributions are uniform, so the ECDF follows the
    diagonal.

    :param reference: Posterior predictive draws of shape (S, N)
    :type reference: npt.NDArray
    :param observed: Observed data of shape (n_sets, N)
    :type observed: npt.NDArray
    :param kwargs: Styling options passed to ``hv.Curve.opts``

    :returns: The plot and, for each set of observations, the absolute area
        between its ECDF and the diagonal
    :rtype: tuple[hv.Overlay, npt.NDArray[np.floating]]
    """

    def calculate_deviance(
        x: npt.NDArray[np.floating], y: npt.NDArray[np.floating]
    ) -> "custom_types.Float":
        # Trapezoidal area between the ECDF and the identity line
        dx = np.diff(x)
        return np.sum(dx * np.abs((y[1:] + y[:-1]) - (x[1:] + x[:-1])) / 2).item()

    quantiles = calculate_relative_quantiles(reference, observed)

    deviances = np.empty(quantiles.shape[0])
    plots = []
    for obs_ind, obs_quantiles in enumerate(quantiles):
        ecdf = stats.ecdf(obs_quantiles)
        x, y = ecdf.cdf.quantiles, ecdf.cdf.probabilities
        deviances[obs_ind] = calculate_deviance(x, y)
        plots.append(
            hv.Curve(
                (x, y), kdims=["Quantiles"], vdims=["Cumulative Probability"]
            ).opts(**kwargs)
        )

    # Ideal ECDF
    plots.append(
        hv.Curve(
            ((0, 1), (0, 1)),
            kdims=["Quantiles"],
            vdims=["Cumulative Probability"],
        ).opts(line_color="black", line_dash="dashed", show_legend=False)
    )

    return hv.Overlay(plots), deviances


@overload
def quantile_plot(
    x: npt.NDArray,
    reference: npt.NDArray,
    quantiles: npt.ArrayLike,
    *,
    observed: npt.ArrayLike | None,
    labels: dict[str, npt.ArrayLike] | None,
    include_median: bool,
    overwrite_input: bool,
    return_quantiles: Literal[False],
    observed_type: Literal["line", "scatter"],
    area_kwargs: dict[str, Any] | None,
    median_kwargs: dict[str, Any] | None,
    observed_kwargs: dict[str, Any] | None,
) -> hv.Overlay: ...


@overload
def quantile_plot(
    x: npt.NDArray,
    reference: npt.NDArray,
    quantiles: npt.ArrayLike,
    *,
    observed: npt.ArrayLike | None,
    labels: dict[str, npt.ArrayLike] | None,
    include_median: bool,
    overwrite_input: bool,
    return_quantiles: Literal[True],
    observed_type: Literal["line", "scatter"],
    area_kwargs: dict[str, Any] | None,
    median_kwargs: dict[str, Any] | None,
    observed_kwargs: dict[str, Any] | None,
) -> tuple[hv.Overlay, npt.NDArray[np.floating]]: ...


def quantile_plot(
    x,
    reference,
    quantiles,
    *,
    observed=None,
    labels=None,
    include_median=True,
    overwrite_input=False,
    return_quantiles=False,
    observed_type="line",
    area_kwargs=None,
    median_kwargs=None,
    observed_kwargs=None,
):
    """Nested predictive intervals along ``x`` with optional observations.

    Quantiles are symmetrized (``q`` adds ``1 - q``) and the median is always
    computed.

    :param x: Positions along the x-axis, shape (N,)
    :type x: npt.NDArray
    :param reference: Draws of shape (S, N)
    :type reference: npt.NDArray
    :param quantiles: Lower quantiles of the intervals, each in (0, 1)
    :type quantiles: npt.ArrayLike
    :param observed: Observations of shape (N,) or (n_sets, N). Defaults to
        None.
    :type observed: Optional[npt.ArrayLike]
    :param labels: Hover labels, each of shape (N,). Defaults to None.
    :type labels: Optional[dict[str, npt.ArrayLike]]
    :param include_median: Whether to draw the median line. Defaults to True.
    :type include_median: bool
    :param overwrite_input: Whether ``np.quantile`` may overwrite
        ``reference``. Defaults to False.
    :type overwrite_input: bool
    :param return_quantiles: Whether to also return the interval bounds.
        Defaults to False.
    :type return_quantiles: bool
    :param observed_type: "line" or "scatter". Defaults to "line".
    :type observed_type: Literal["line", "scatter"]
    :param area_kwargs: Styling of the intervals. See ``hv.opts.Area``.
    :type area_kwargs: Optional[dict[str, Any]]
    :param median_kwargs: Styling of the median. See ``hv.opts.Curve``.
    :type median_kwargs: Optional[dict[str, Any]]
    :param observed_kwargs: Styling of the observations.
    :type observed_kwargs: Optional[dict[str, Any]]

    :returns: The plot and optionally the bounds of shape (n_quantiles, N)
    :rtype: Union[hv.Overlay, tuple[hv.Overlay, npt.NDArray[np.floating]]]

    :raises ValueError: If a quantile is outside (0, 1) or the array shapes
        disagree
    """
    area_kwargs = _set_defaults(
        area_kwargs,
        (
            ("color", "black"),
            ("alpha", 0.2),
            ("line_width", 1),
            ("line_color", "black"),
            ("fill_alpha", 0.2),
            ("show_legend", False),
        ),
    )
    median_kwargs = _set_defaults(
        median_kwargs,
        (
            ("color", "black"),
            ("line_width", 1),
            ("line_color", "black"),
            ("show_legend", False),
        ),
    )
    observed_kwargs = _set_defaults(
        observed_kwargs,
        (
            ("color", "gold"),
            ("line_width", 1 if observed_type == "line" else 0),
            ("alpha", 0.5),
            ("show_legend", False),
        ),
    )
    labels = labels or {}

    if reference.ndim != 2:
        raise ValueError("The plot data must be 2D.")

    if observed is not None:
        observed = np.asarray(observed)
        if observed.ndim == 1:
            observed = observed[None]
        elif observed.ndim != 2:
            raise ValueError("The observed must be 1D or 2D.")
        if observed.shape[-1] != reference.shape[-1]:
            raise ValueError(
                "The last dimension of the observed must match the last "
                "dimension of the plot data."
            )
        observed_plot = hv.Scatter if observed_type == "scatter" else hv.Curve

    # Symmetrize the quantiles around the median
    if not all(0 < q < 1 for q in quantiles):
        raise ValueError("Quantiles must be between 0 and 1.")
    quantiles = sorted(
        {round(float(q), 10) for q in quantiles}
        | {round(1 - float(q), 10) for q in quantiles}
        | {0.5}
    )
    median_ind = len(quantiles) // 2

    area_bounds = np.quantile(
        reference, quantiles, axis=0, overwrite_input=overwrite_input
    )

    # Hover tools only make sense with labels
    if labels:
        for kwargset in (median_kwargs, observed_kwargs):
            kwargset.setdefault("hover_mode", "vline")
            kwargset["tools"] = list(set(kwargset.get("tools", []) + ["hover"]))

    plots = [
        hv.Area(
            (x, area_bounds[i], area_bounds[-i - 1]),
            vdims=["lower", "upper"],
        ).opts(**area_kwargs)
        for i in range(median_ind)
    ]
    if include_median:
        plots.append(
            hv.Curve(
                (x, area_bounds[median_ind], *labels.values()),
                kdims=["x"],
                vdims=["y", *labels.keys()],
            ).opts(**median_kwargs)
        )
    if observed is not None:
        plots.extend(
            observed_plot(
                (x, observed_data, *labels.values()),
                kdims=["x"],
                vdims=["y", *labels.keys()],
            ).opts(**observed_kwargs)
            for observed_data in observed
        )

    plots = hv.Overlay(plots)
    if return_quantiles:
        return plots, area_bounds
    return plots


def hexgrid_with_mean(
    x: npt.NDArray[np.floating],
    y: npt.NDArray[np.floating],
    *,
    mean_windowsize: "custom_types.Integer" | None = None,
    hex_kwargs: dict[str, Any] | None = None,
    mean_kwargs: dict[str, Any] | None = None,
) -> hv.Overlay:
    """Hexagonal density of (x, y) pairs with a rolling mean of y over x.

    :param x: X values, 1D
    :type x: npt.NDArray[np.floating]
    :param y: Y values, same shape as ``x``
    :type y: npt.NDArray[np.floating]
    :param mean_windowsize: Rolling window size. Defaults to ``x.size // 100``.
    :type mean_windowsize: Optional[custom_types.Integer]
    :param hex_kwargs: Styling of the tiles. See ``hv.opts.HexTiles``.
    :type hex_kwargs: Optional[dict[str, Any]]
    :param mean_kwargs: Styling of the mean. See ``hv.opts.Curve``.
    :type mean_kwargs: Optional[dict[str, Any]]

    :returns: The plot
    :rtype: hv.Overlay

    :raises ValueError: If x and y are not 1D arrays of the same shape
    """
    if x.ndim != 1 or y.ndim != 1:
        raise ValueError("x and y must be 1D arrays.")
    if x.shape != y.shape:
        raise ValueError("x and y must have the same shape.")

    hex_kwargs = _set_defaults(hex_kwargs, (("cmap", "viridis"), ("colorbar", True)))
    mean_kwargs = _set_defaults(
        mean_kwargs, (("color", "slategray"), ("line_width", 1))
    )
    windowsize = mean_windowsize or max(1, x.size // 100)

    rolling_mean = (
        pd.DataFrame({"x": x, "y": y})
        .sort_values("x")
        .rolling(window=windowsize)
        .mean()
        .dropna()
    )
    return hv.HexTiles((x, y)).opts(**hex_kwargs) * hv.Curve(
        rolling_mean, "x", "y", label="Rolling Mean"
    ).opts(**mean_kwargs)


def _check_overlay_inputs(
    y: npt.NDArray, yrep: npt.NDArray
) -> tuple[npt.NDArray, npt.NDArray]:
    y, yrep = np.asarray(y, dtype=float), np.asarray(yrep, dtype=float)
    if y.ndim != 1:
        raise ValueError("The observed data must be 1D.")
    if yrep.ndim != 2 or yrep.shape[1] != y.shape[0]:
        raise ValueError(
            f"Replicates must have shape (n_draws, {y.shape[0]}), not {yrep.shape}."
        )
    return y, yrep


def plot_dens_overlay(
    y: npt.NDArray,
    yrep: npt.NDArray,
    *,
    replicate_kwargs: dict[str, Any] | None = None,
    observed_kwargs: dict[str, Any] | None = None,
) -> hv.Overlay:
    """Kernel density of the observed data over those of predictive datasets.

    :param y: Observed data, shape (N,)
    :type y: npt.NDArray
    :param yrep: Predictive datasets, shape (n_draws, N)
    :type yrep: npt.NDArray
    :param replicate_kwargs: Styling of the replicate densities
    :type replicate_kwargs: Optional[dict[str, Any]]
    :param observed_kwargs: Styling of the observed density
    :type observed_kwargs: Optional[dict[str, Any]]

    :returns: The plot
    :rtype: hv.Overlay

    :raises ValueError: If the shapes of ``y`` and ``yrep`` disagree
    """
    y, yrep = _check_overlay_inputs(y, yrep)
    replicate_kwargs = _set_defaults(
        replicate_kwargs, REPLICATE_KWARGS + (("fill_alpha", 0),)
    )
    observed_kwargs = _set_defaults(observed_kwargs, OBSERVED_KWARGS + (("fill_alpha", 0),))

    plots = [
        hv.Distribution(replicate, kdims=["y"], label="y_rep").opts(**replicate_kwargs)
        for replicate in yrep
    ]
    plots.append(hv.Distribution(y, kdims=["y"], label="y").opts(**observed_kwargs))
    return hv.Overlay(plots).opts(title="Posterior Predictive Check: Density")


def plot_ecdf_overlay(
    y: npt.NDArray,
    yrep: npt.NDArray,
    *,
    replicate_kwargs: dict[str, Any] | None = None,
    observed_kwargs: dict[str, Any] | None = None,
) -> hv.Overlay:
    """Empirical CDF of the observed data over those of predictive datasets.

    Step functions make this the better choice for discrete responses.

    :param y: Observed data, shape (N,)
    :type y: npt.NDArray
    :param yrep: Predictive datasets, shape (n_draws, N)
    :type yrep: npt.NDArray
    :param replicate_kwargs: Styling of the replicate ECDFs
    :type replicate_kwargs: Optional[dict[str, Any]]
    :param observed_kwargs: Styling of the observed ECDF
    :type observed_kwargs: Optional[dict[str, Any]]

    :returns: The plot
    :rtype: hv.Overlay

    :raises ValueError: If the shapes of ``y`` and ``yrep`` disagree
    """

    def ecdf_curve(values: npt.NDArray, **opts) -> hv.Curve:
        cdf = stats.ecdf(values).cdf
        return hv.Curve(
            (cdf.quantiles, cdf.probabilities),
            kdims=["y"],
            vdims=["ECDF"],
        ).opts(interpolation="steps-post", **opts)

    y, yrep = _check_overlay_inputs(y, yrep)
    replicate_kwargs = _set_defaults(replicate_kwargs, REPLICATE_KWARGS)
    observed_kwargs = _set_defaults(observed_kwargs, OBSERVED_KWARGS)

    plots = [ecdf_curve(replicate, **replicate_kwargs) for replicate in yrep]
    plots.append(ecdf_curve(y, **observed_kwargs))
    return hv.Overlay(plots).opts(title="Posterior Predictive Check: ECDF")


def plot_conditional_effect(
    frame: pd.DataFrame,
    effect: str,
    response: str,
    *,
    width: "custom_types.Integer" = 600,
    height: "custom_types.Integer" = 400,
) -> hv.Overlay:
    """Plot a conditional effect with its credible band.

    :param frame: Grid with the ``effect`` column and "estimate", "lower", and
        "upper" columns
    :type frame: pd.DataFrame
    :param effect: The varied predictor
    :type effect: str
    :param response: Name of the response, used as the y label
    :type response: str
    :param width: Plot width in pixels. Defaults to 600.
    :type width: custom_types.Integer
    :param height: Plot height in pixels. Defaults to 400.
    :type height: custom_types.Integer

    :returns: A band with a line for numeric effects, points with error bars for
        categorical effects
    :rtype: hv.Overlay
    """
    if pd.api.types.is_numeric_dtype(frame[effect]) and not pd.api.types.is_bool_dtype(
        frame[effect]
    ):
        plot = frame.hvplot.area(
            x=effect, y="lower", y2="upper", color="lightsteelblue", alpha=0.5
        ) * frame.hvplot.line(x=effect, y="estimate", color="black")
    else:
        points = frame.assign(**{effect: frame[effect].astype(str)})
        plot = points.hvplot.scatter(
            x=effect, y="estimate", color="black", size=60
        ) * hv.ErrorBars(
            (
                points[effect],
                points["estimate"],
                points["estimate"] - points["lower"],
                points["upper"] - points["estimate"],
            ),
            kdims=[effect],
            vdims=["estimate", "yerrneg", "yerrpos"],
        )

    return plot.opts(ylabel=response, xlabel=effect, width=width, height=height)
