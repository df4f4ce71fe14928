# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""ArviZ-backed analysis of posterior draws.

:py:class:`InferenceResults` wraps an ArviZ ``InferenceData`` object and adds
summaries plus posterior predictive diagnostics built on
:py:mod:`stanfamilies.plotting`. It works on any ``InferenceData`` with a
``posterior`` group, including one loaded back from disk with
:py:meth:`InferenceResults.from_disk`. The predictive diagnostics also need
``posterior_predictive`` and ``observed_data`` groups.
:py:class:`~stanfamilies.model.results.fit.FittedModel` extends it with
everything that needs the model itself: predictions, LOO, and conditional
effects.
"""

from __future__ import annotations

from typing import (
    Generator,
    Literal,
    Optional,
    overload,
    Sequence,
    TYPE_CHECKING,
    Union,
)

import arviz as az
import holoviews as hv
import numpy as np
import numpy.typing as npt
import panel as pn
import xarray as xr

from scipy import stats

from stanfamilies import plotting

if TYPE_CHECKING:
    from stanfamilies import custom_types


def _log10_shift(*args: npt.NDArray) -> tuple[npt.NDArray, ...]:
    """Apply log10 after shifting all arrays so that their joint minimum is 1.

    :param args: Arrays to transform
    :type args: npt.NDArray

    :returns: The transformed arrays
    :rtype: tuple[npt.NDArray, ...]
    """
    # Get the minimum value across all arrays
    min_val = min(np.min(arg) for arg in args)

    # Shift the arrays and apply log10
    return tuple(np.log10(arg - min_val + 1) for arg in args)


class InferenceResults:
    """Analysis interface for posterior draws.

    :param inference_obj: ArviZ InferenceData object or path to a saved one
    :type inference_obj: Union[az.InferenceData, str]

    :ivar inference_obj: The wrapped InferenceData object

    :raises ValueError: If inference_obj is neither string nor InferenceData
    :raises ValueError: If the posterior group is missing

    Example:
        >>> results = InferenceResults.from_disk("fit.nc")
        >>> results.calculate_summaries()
        >>> dashboard = results.run_ppc()
    """

    def __init__(self, inference_obj: az.InferenceData | str):
        # If the ArviZ object is a string, we assume it is a path to a netcdf file
        # and load it from there
        if isinstance(inference_obj, str):
            self.inference_obj = az.from_netcdf(inference_obj)

        # If the ArviZ object is an inference data object, we assume it is already
        # built and just assign it to the class
        elif isinstance(inference_obj, az.InferenceData):
            self.inference_obj = inference_obj

        # Otherwise, we raise an error
        else:
            raise ValueError(
                "inference_obj must be either a string or an InferenceData object"
            )

        # The arviz object must have a posterior
        if "posterior" not in self.inference_obj.groups():
            raise ValueError("ArviZ object is missing the posterior group")

    @property
    def n_chains(self) -> int:
        return self.inference_obj.posterior.sizes["chain"]

    @property
    def n_draws(self) -> int:
        """Total number of posterior draws over all chains."""
        return self.n_chains * self.inference_obj.posterior.sizes["draw"]

    def save_netcdf(self, filename: str) -> None:
        """Save the InferenceData object to NetCDF.

        :param filename: Path of the NetCDF file
        :type filename: str

        Example:
            >>> fit.save_netcdf("beta_binomial.nc")
            >>> # Later: InferenceResults.from_disk("beta_binomial.nc")
        """
        self.inference_obj.to_netcdf(filename, engine="h5netcdf")

    def _update_group(
        self, attrname: str, new_group: xr.Dataset, force_del: bool = False
    ) -> None:
        """Update or add a group of the InferenceData object.

        :param attrname: Name of the group
        :type attrname: str
        :param new_group: Dataset to add or update the group with
        :type new_group: xr.Dataset
        :param force_del: Whether to replace an existing group instead of
            updating it. Defaults to False.
        :type force_del: bool
        """
        # If the group already exists and we are not forcing a delete, we just update
        # the group.
        if hasattr(self.inference_obj, attrname) and not force_del:
            getattr(self.inference_obj, attrname).update(new_group)
            return

        # Otherwise, if we are forcing a delete, we delete the group before adding
        # the new one
        if force_del and hasattr(self.inference_obj, attrname):
            delattr(self.inference_obj, attrname)
        self.inference_obj.add_groups({attrname: new_group})

    def calculate_summaries(
        self,
        var_names: list[str] | None = None,
        filter_vars: Literal[None, "like", "regex"] = None,
        kind: Literal["all", "stats", "diagnostics"] = "all",
        round_to: "custom_types.Integer" = 2,
        hdi_prob: "custom_types.Float" = 0.94,
        diagnostic_varnames: Sequence[str] = (
            "mcse_mean",
            "mcse_sd",
            "ess_bulk",
            "ess_tail",
            "r_hat",
        ),
    ) -> xr.Dataset:
        """Compute summary statistics and MCMC diagnostics with ArviZ.

        Statistics are stored in the ``variable_summary_stats`` group and
        diagnostics in the ``variable_diagnostic_stats`` group of the
        InferenceData object. See ``az.summary`` for the arguments.

        :param var_names: Variables to summarize. Defaults to None (all).
        :type var_names: Optional[list[str]]
        :param filter_vars: How to match ``var_names``. Defaults to None.
        :type filter_vars: Literal[None, "like", "regex"]
        :param kind: What to compute. Defaults to "all".
        :type kind: Literal["all", "stats", "diagnostics"]
        :param round_to: Decimal places. Defaults to 2.
        :type round_to: custom_types.Integer
        :param hdi_prob: Probability of the highest density interval. Defaults
            to 0.94.
        :type hdi_prob: custom_types.Float
        :param diagnostic_varnames: Metrics counted as diagnostics
        :type diagnostic_varnames: Sequence[str]

        :returns: All computed metrics
        :rtype: xr.Dataset

        :raises ValueError: If diagnostics are requested for a single chain
        """
        # If there is only one chain, we cannot run diagnostics
        if kind != "stats" and self.n_chains <= 1:
            raise ValueError(
                "Cannot run diagnostics on a dataset run using a single chain"
            )

        # Get the summary statistics
        summaries = az.summary(
            data=self.inference_obj,
            var_names=var_names,
            filter_vars=filter_vars,
            fmt="xarray",
            kind=kind,
            round_to=round_to,
            hdi_prob=hdi_prob,
        )

        # Identify the diagnostic and summary statistics
        noted_diagnostics = set(diagnostic_varnames)
        calculated_metrics = set(summaries.metric.values.tolist())
        diagnostic_metrics = [
            m for m in summaries.metric.values.tolist() if m in noted_diagnostics
        ]
        stat_metrics = [
            m
            for m in summaries.metric.values.tolist()
            if m in calculated_metrics - noted_diagnostics
        ]

        # Update the groups
        if kind in ("all", "diagnostics"):
            self._update_group(
                "variable_diagnostic_stats",
                summaries.sel(metric=diagnostic_metrics),
                force_del=True,
            )
        if kind in ("all", "stats"):
            self._update_group(
                "variable_summary_stats",
                summaries.sel(metric=stat_metrics),
                force_del=True,
            )
        return summaries

    def _iter_pp_obs(
        self,
    ) -> Generator[tuple[str, npt.NDArray, npt.NDArray], None, None]:
        """Iterate over posterior predictive draws and matching observations.

        :yields: Tuples of (variable name, draws of shape (S, N), observed values
            of shape (N,))

        :raises ValueError: If there are no posterior predictive draws
        """
        if "posterior_predictive" not in self.inference_obj.groups():
            raise ValueError(
                "No posterior predictive draws. Run posterior_predict() first."
            )

        # Loop over the posterior predictive samples
        for varname, reference in self.inference_obj.posterior_predictive.items():

            # Get the observed data and convert reference and observed to numpy
            # arrays.
            observed = self.inference_obj.observed_data[  # pylint: disable=no-member
                varname
            ].to_numpy()
            reference = np.moveaxis(
                reference.stack(
                    samples=["chain", "draw"], features=[], create_index=False
                ).to_numpy(),
                -1,
                0,
            )

            # Dims must align
            if observed.shape != reference.shape[1:]:
                raise ValueError(
                    f"Observed '{varname}' has shape {observed.shape} but its "
                    f"posterior predictive draws have shape {reference.shape[1:]}."
                )

            yield varname, reference.reshape(reference.shape[0], -1), observed.reshape(
                -1
            )

    @overload
    def check_calibration(
        self,
        *,
        return_deviance: Literal[False],
        display: Literal[True],
        width: "custom_types.Integer",
        height: "custom_types.Integer",
    ) -> hv.Layout: ...

    @overload
    def check_calibration(
        self,
        *,
        return_deviance: Literal[False],
        display: Literal[False],
        width: "custom_types.Integer",
        height: "custom_types.Integer",
    ) -> dict[str, hv.Overlay]: ...

    @overload
    def check_calibration(
        self,
        *,
        return_deviance: Literal[True],
        display: Literal[False],
        width: "custom_types.Integer",
        height: "custom_types.Integer",
    ) -> tuple[dict[str, hv.Overlay], dict[str, float]]: ...

    def check_calibration(
        self, *, return_deviance=False, display=True, width=600, height=600
    ):
        """Assess calibration through the quantiles of the observations within
        their posterior predictive distributions.

        A well-calibrated model places the observations uniformly across the
        quantiles of their predictive distributions, so the ECDF of those
        quantiles follows the diagonal. The absolute deviance is the area
        between the ECDF and the diagonal.

        :param return_deviance: Whether to also return the deviances. Defaults
            to False.
        :type return_deviance: bool
        :param display: Whether to return a layout for display. Defaults to
            True.
        :type display: bool
        :param width: Width of each plot in pixels. Defaults to 600.
        :type width: custom_types.Integer
        :param height: Height of each plot in pixels. Defaults to 600.
        :type height: custom_types.Integer

        :returns: Calibration plots and optionally deviances
        :rtype: Union[hv.Layout, dict[str, hv.Overlay], tuple[dict[str, hv.Overlay],
            dict[str, float]]]

        :raises ValueError: If both display and return_deviance are True
        """
        # We cannot have both `display` and `return_deviance` set to True
        if display and return_deviance:
            raise ValueError(
                "Cannot have both `display` and `return_deviance` set to True."
            )

        # Loop over the posterior predictive samples
        plots: dict[str, hv.Overlay] = {}
        deviances: dict[str, float] = {}
        for varname, reference, observed in self._iter_pp_obs():

            # Build calibration plots and record deviance
            plot, dev = plotting.plot_calibration(reference, observed[None])
            dev = dev.item()
            deviances[varname] = dev

            # Finalize the plot with a text annotation and updates to the axes
            plots[varname] = (
                plot
                * hv.Text(
                    0.95,
                    0.0,
                    f"Absolute Deviance: {dev:.2f}",
                    halign="right",
                    valign="bottom",
                )
            ).opts(
                title=f"ECDF of Quantiles: {varname}",
                xlabel="Quantiles",
                ylabel="Cumulative Probability",
                width=width,
                height=height,
            )

        # If requested, display the plots
        if display:
            return hv.Layout(list(plots.values())).cols(1)

        # If requested, return the plots and the deviance
        if return_deviance:
            return plots, deviances

        return plots

    def plot_posterior_predictive_samples(
        self,
        *,
        quantiles: Sequence["custom_types.Float"] = (0.025, 0.25, 0.5),
        use_ranks: bool = True,
        logy: bool = False,
        display: bool = True,
        width: "custom_types.Integer" = 600,
        height: "custom_types.Integer" = 400,
    ) -> Union[hv.Layout, dict[str, hv.Overlay]]:
        """Plot the observations over their posterior predictive intervals.

        :param quantiles: Quantiles bounding the intervals. They are
            symmetrized and the median is always included. Defaults to
            (0.025, 0.25, 0.5).
        :type quantiles: Sequence[custom_types.Float]
        :param use_ranks: Whether the x-axis shows the rank of each observation
            instead of its value. Defaults to True.
        :type use_ranks: bool
        :param logy: Whether to log-scale the y-axis. Defaults to False.
        :type logy: bool
        :param display: Whether to return a layout for display. Defaults to
            True.
        :type display: bool
        :param width: Width of each plot in pixels. Defaults to 600.
        :type width: custom_types.Integer
        :param height: Height of each plot in pixels. Defaults to 400.
        :type height: custom_types.Integer

        :returns: The plots
        :rtype: Union[hv.Layout, dict[str, hv.Overlay]]
        """
        # Process each observed variable
        plots: dict[str, hv.Overlay] = {}
        for varname, reference, observed in self._iter_pp_obs():

            # Get the x-axis data
            x = stats.rankdata(observed, method="ordinal") if use_ranks else observed

            # If using a log-y axis, shift the y-data
            if logy:
                reference, observed = _log10_shift(reference, observed)

            # Label each point by its observation index
            labels = np.array([str(i) for i in range(observed.size)])

            # Sort data for plotting the areas and lines
            sorted_inds = np.argsort(x)
            x, reference, observed, labels = (
                x[sorted_inds],
                reference[:, sorted_inds].astype(float),
                observed[sorted_inds],
                labels[sorted_inds],
            )

            # Build the plot
            plots[varname] = plotting.quantile_plot(
                x=x,
                reference=reference,
                quantiles=quantiles,
                observed=observed,
                labels={"observation": labels},
                include_median=False,
                overwrite_input=True,
                observed_type="scatter",
            ).opts(
                xlabel=f"Observed Value {'Rank' if use_ranks else ''}: {varname}",
                ylabel=f"Value{' log10' if logy else ''}: {varname}",
                title=f"Posterior Predictive Samples: {varname}",
                width=width,
                height=height,
            )

        # If requested, display the plots
        if display:
            return hv.Layout(list(plots.values())).cols(1).opts(shared_axes=False)

        return plots

    def plot_observed_quantiles(
        self,
        *,
        use_ranks: bool = True,
        display: bool = True,
        width: "custom_types.Integer" = 600,
        height: "custom_types.Integer" = 400,
        windowsize: Optional["custom_types.Integer"] = None,
    ) -> Union[hv.Layout, dict[str, hv.Overlay]]:
        """Plot the quantile of each observation within its posterior
        predictive distribution against the observed value.

        A flat rolling mean around 0.5 indicates no systematic bias.

        :param use_ranks: Whether the x-axis shows ranks. Defaults to True.
        :type use_ranks: bool
        :param display: Whether to return a layout for display. Defaults to
            True.
        :type display: bool
        :param width: Width of each plot in pixels. Defaults to 600.
        :type width: custom_types.Integer
        :param height: Height of each plot in pixels. Defaults to 400.
        :type height: custom_types.Integer
        :param windowsize: Window of the rolling mean. Defaults to None
            (automatic).
        :type windowsize: Optional[custom_types.Integer]

        :returns: The plots
        :rtype: Union[hv.Layout, dict[str, hv.Overlay]]
        """
        # Loop over quantiles for different observed variables
        plots: dict[str, hv.Overlay] = {}
        for varname, reference, observed in self._iter_pp_obs():

            # Get the quantiles of the observed data relative to the reference
            y = plotting.calculate_relative_quantiles(reference, observed[None])

            # Flatten the data and update x to use rankings if requested
            x, y = observed.ravel().astype(float), y.ravel()
            x = stats.rankdata(x, method="ordinal") if use_ranks else x

            # Build the plot
            plots[varname] = plotting.hexgrid_with_mean(
                x=x, y=y, mean_windowsize=windowsize
            ).opts(
                xlabel=f"Observed Value {'Rank' if use_ranks else ''}: {varname}",
                ylabel=f"Observed Quantile: {varname}",
                title=f"Observed Quantiles: {varname}",
                width=width,
                height=height,
            )

        # If requested, display the plots
        if display:
            return hv.Layout(list(plots.values())).cols(1).opts(shared_axes=False)

        return plots

    def run_ppc(
        self,
        *,
        use_ranks: bool = True,
        display: bool = True,
        square_ecdf: bool = True,
        windowsize: Optional["custom_types.Integer"] = None,
        quantiles: Sequence["custom_types.Float"] = (0.025, 0.25, 0.5),
        logy_ppc_samples: bool = False,
        subplot_width: "custom_types.Integer" = 600,
        subplot_height: "custom_types.Integer" = 400,
    ) -> Union[pn.Column, list[dict[str, hv.Overlay]]]:
        """Run the posterior predictive checks and combine them into a
        dashboard.

        The dashboard stacks the predictive intervals
        (:py:meth:`plot_posterior_predictive_samples`), the observed quantiles
        (:py:meth:`plot_observed_quantiles`), and the calibration ECDF
        (:py:meth:`check_calibration`).

        :param use_ranks: Whether x-axes show ranks. Defaults to True.
        :type use_ranks: bool
        :param display: Whether to return the panel dashboard. Defaults to True.
        :type display: bool
        :param square_ecdf: Whether the ECDF plot is square. Defaults to True.
        :type square_ecdf: bool
        :param windowsize: Window of the rolling mean. Defaults to None.
        :type windowsize: Optional[custom_types.Integer]
        :param quantiles: Quantiles of the predictive intervals. Defaults to
            (0.025, 0.25, 0.5).
        :type quantiles: Sequence[custom_types.Float]
        :param logy_ppc_samples: Whether to log-scale the interval plot.
            Defaults to False.
        :type logy_ppc_samples: bool
        :param subplot_width: Width of each plot in pixels. Defaults to 600.
        :type subplot_width: custom_types.Integer
        :param subplot_height: Height of each plot in pixels. Defaults to 400.
        :type subplot_height: custom_types.Integer

        :returns: The dashboard or the three plot dictionaries
        :rtype: Union[pn.Column, list[dict[str, hv.Overlay]]]
        """
        # Get ecdf widths and heights
        ecdf_width = subplot_width
        ecdf_height = subplot_width if square_ecdf else subplot_height

        # Get the different plots
        plots = [
            self.plot_posterior_predictive_samples(
                quantiles=quantiles,
                use_ranks=use_ranks,
                logy=logy_ppc_samples,
                display=False,
                width=subplot_width,
                height=subplot_height,
            ),
            self.plot_observed_quantiles(
                use_ranks=use_ranks,
                display=False,
                width=subplot_width,
                height=subplot_height,
                windowsize=windowsize,
            ),
            self.check_calibration(
                return_deviance=False,
                display=False,
                width=ecdf_width,
                height=ecdf_height,
            ),
        ]

        # If not displaying, return the plots
        if not display:
            return plots

        # Otherwise, display the plots
        plots, widget = pn.panel(
            hv.Layout(
                [
                    hv.HoloMap(plots[0], kdims="Variable").opts(
                        hv.opts.Scatter(framewise=True),
                        hv.opts.Area(framewise=True),
                    ),
                    hv.HoloMap(plots[1], kdims="Variable").opts(
                        hv.opts.HexTiles(framewise=True, axiswise=True, min_count=0),
                        hv.opts.Curve(framewise=True, color="darkgray"),
                    ),
                    hv.HoloMap(plots[2], kdims="Variable").opts(
                        hv.opts.Curve(framewise=True),
                    ),
                ]
            )
            .opts(shared_axes=False)
            .cols(1)
        )
        widget.align = ("start", "start")

        return pn.Column(widget, plots)

    @classmethod
    def from_disk(cls, path: str) -> "InferenceResults":
        """Load results saved with :py:meth:`save_netcdf`.

        :param path: Path to the NetCDF file
        :type path: str

        :returns: The loaded results
        :rtype: InferenceResults
        """
        return cls(az.from_netcdf(path, engine="h5netcdf"))
