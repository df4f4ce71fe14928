# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Fitted regression models.

A :py:class:`FittedModel` is returned by :py:func:`stanfamilies.fit`. It holds
the posterior draws as an ArviZ ``InferenceData`` object with readable
parameter names, together with the model that produced them. Everything that
turns draws into predictions goes through the family: built-in families use
``scipy.stats``; custom families use their registered callbacks. This makes
summaries, MCMC diagnostics, posterior predictive checks, PSIS-LOO, and
conditional effects work the same way for every family.

Parameter names in the posterior follow the conventions of multilevel
regression packages:

    - ``b_<coef>`` (``b_<dpar>_<coef>`` for dpars other than ``mu``) for
      population-level coefficients, including ``b_Intercept``
    - ``sd_<group>__<coef>`` for standard deviations of group-level effects
    - ``cor_<group>__<coef1>__<coef2>`` for their correlations
    - ``r_<group>`` for the group-level effects themselves, with dimensions
      ``(<group>, <group>_coef)``
    - the dpar name for dpars estimated as a single constant
"""

from __future__ import annotations

import warnings

from typing import Any, Literal, Optional, TYPE_CHECKING

import arviz as az
import holoviews as hv
import numpy as np
import numpy.typing as npt
import pandas as pd
import xarray as xr

from cmdstanpy import CmdStanMCMC

import stanfamilies

from stanfamilies import plotting
from stanfamilies.defaults import (
    DEFAULT_CE_RESOLUTION,
    DEFAULT_CI_PROB,
    DEFAULT_EBFMI_THRESH,
    DEFAULT_ESS_THRESH,
    DEFAULT_MAX_TREEDEPTH,
    DEFAULT_PARETO_K_THRESH,
    DEFAULT_PPC_NDRAWS,
    DEFAULT_RHAT_THRESH,
)
from stanfamilies.exceptions import FormulaError
from stanfamilies.formula import ModelFrame
from stanfamilies.model.results.inference import InferenceResults
from stanfamilies.model.results.prep import PreparedDraws
from stanfamilies.utils import flatten_draws, unflatten_draws

if TYPE_CHECKING:
    from stanfamilies import custom_types
    from stanfamilies.formula import LinearPredictor
    from stanfamilies.model.model import RegressionModel

SECTIONS = (
    "Population-Level Effects",
    "Group-Level Effects",
    "Family Specific Parameters",
)
"""Sections of the summary table."""


def _element(array: xr.DataArray, *index: int) -> xr.DataArray:
    """Select one element of a Stan container, keeping the chain and draw
    dimensions."""
    extra = [dim for dim in array.dims if dim not in ("chain", "draw")]
    return array.isel(dict(zip(extra, index)), drop=True)


def rename_posterior(model: "RegressionModel", stan_posterior: xr.Dataset) -> xr.Dataset:
    """Convert the posterior of a generated Stan program to readable names.

    Centered intercepts, standardized group-level effects, and Cholesky
    factors are dropped; what remains are the interpretable parameters of the
    model.

    :param model: The model whose program produced the draws
    :type model: RegressionModel
    :param stan_posterior: Posterior with the names of the Stan program
        (e.g., ``b``, ``sd_1``, ``r_1``, ``b_Intercept``)
    :type stan_posterior: xr.Dataset

    :returns: Posterior with readable names
    :rtype: xr.Dataset
    """
    readable = {}

    # Population-level coefficients
    for lp in model.frame.predictors.values():
        names = lp.coefficient_names()
        if lp.has_intercept:
            readable[names[0]] = stan_posterior[f"b{lp.suffix}_Intercept"]
        for j, name in enumerate(names[int(lp.has_intercept) :]):
            readable[name] = _element(stan_posterior[f"b{lp.suffix}"], j)

    # Group-level parameters
    for group in model.frame.groups:
        k = group.index
        for j, name in enumerate(model.sd_names(group)):
            readable[name] = _element(stan_posterior[f"sd_{k}"], j)
        for i, j, name in model.cor_names(group):
            readable[name] = _element(stan_posterior[f"Cor_{k}"], i, j)

    # Constant dpars
    for dpar in model.constant_dpars:
        readable[dpar] = stan_posterior[dpar]

    # Group-level effects. Levels and coefficients become coordinates.
    for group in model.frame.groups:
        rname = model.frame.random_effect_name(group)
        coef_dim = f"{rname.removeprefix('r_')}_coef"
        stan_r = stan_posterior[f"r_{group.index}"].transpose("chain", "draw", ...)
        readable[rname] = xr.DataArray(
            stan_r.values,
            dims=("chain", "draw", group.group, coef_dim),
            coords={
                "chain": stan_r.chain.values,
                "draw": stan_r.draw.values,
                group.group: group.levels,
                coef_dim: group.coefs,
            },
        )

    return xr.Dataset(readable, attrs=stan_posterior.attrs)


class FittedModel(InferenceResults):
    """A regression model with its posterior draws.

    Usually created by :py:func:`stanfamilies.fit`.

    :param model: The fitted model
    :type model: RegressionModel
    :param inference_obj: Posterior draws with readable names, sampler
        statistics, and the observed response
    :type inference_obj: az.InferenceData
    :param fit: The CmdStanMCMC object the draws come from. Defaults to None.
    :type fit: Optional[CmdStanMCMC]

    :ivar model: The fitted model
    :ivar fit: The CmdStanMCMC object, if available

    Example:
        >>> fit = sf.fit("y ~ x", data=data, family="gaussian")
        >>> print(fit)
        >>> fit.diagnose()
        >>> fit.loo()
        >>> fit.pp_check("dens_overlay")
    """

    def __init__(
        self,
        model: "RegressionModel",
        inference_obj: az.InferenceData,
        fit: Optional[CmdStanMCMC] = None,
    ):
        super().__init__(inference_obj)
        self.model = model
        self.fit = fit

    @classmethod
    def from_cmdstanpy(
        cls,
        model: "RegressionModel",
        fit: CmdStanMCMC,
        max_treedepth: "custom_types.Integer" = DEFAULT_MAX_TREEDEPTH,
    ) -> "FittedModel":
        """Build a fitted model from the output of CmdStan.

        :param model: The model that was sampled
        :type model: RegressionModel
        :param fit: The sampler output
        :type fit: CmdStanMCMC
        :param max_treedepth: Maximum tree depth used for sampling
        :type max_treedepth: custom_types.Integer

        :returns: The fitted model
        :rtype: FittedModel
        """
        raw = az.from_cmdstanpy(
            posterior=fit, observed_data={"Y": model.Y}, dims={"Y": ["obs"]}
        )
        sample_stats = raw.sample_stats
        sample_stats.attrs["max_treedepth"] = int(max_treedepth)
        inference_obj = az.InferenceData(
            posterior=rename_posterior(model, raw.posterior),
            sample_stats=sample_stats,
            observed_data=raw.observed_data,
        )
        return cls(model=model, inference_obj=inference_obj, fit=fit)

    @classmethod
    def from_disk(  # pylint: disable=arguments-differ
        cls, path: str, model: "RegressionModel"
    ) -> "FittedModel":
        """Load draws saved with :py:meth:`save_netcdf` for the same model.

        :param path: Path to the NetCDF file
        :type path: str
        :param model: The model the draws were sampled from
        :type model: RegressionModel

        :returns: The fitted model
        :rtype: FittedModel
        """
        return cls(model=model, inference_obj=az.from_netcdf(path, engine="h5netcdf"))

    # Summaries
    def _section_names(self) -> dict[str, list[str]]:
        return dict(
            zip(
                SECTIONS,
                (
                    self.model.population_names,
                    self.model.group_names,
                    list(self.model.constant_dpars),
                ),
            )
        )

    def summary(self, prob: "custom_types.Float" = DEFAULT_CI_PROB) -> pd.DataFrame:
        """Posterior summary of the population-level, group-level, and
        family-specific parameters.

        :param prob: Probability mass of the credible intervals. Defaults to
            0.95.
        :type prob: custom_types.Float

        :returns: One row per parameter, indexed by (section, parameter), with
            the posterior mean ("Estimate"), standard deviation ("Est.Error"),
            equal-tailed interval bounds, R-hat, and bulk and tail ESS
        :rtype: pd.DataFrame
        """
        posterior = self.inference_obj.posterior
        sections = {k: v for k, v in self._section_names().items() if v}
        names = [name for section in sections.values() for name in section]

        # Convergence diagnostics need more than one chain
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            rhat = az.rhat(posterior[names])
            bulk = az.ess(posterior[names], method="bulk")
            tail = az.ess(posterior[names], method="tail")

        alpha = (1 - prob) / 2
        lower, upper = f"l-{prob:.0%} CI", f"u-{prob:.0%} CI"
        rows, index = [], []
        for section, section_names in sections.items():
            for name in section_names:
                draws = flatten_draws(posterior[name])
                rows.append(
                    {
                        "Estimate": draws.mean(),
                        "Est.Error": draws.std(ddof=1),
                        lower: np.quantile(draws, alpha),
                        upper: np.quantile(draws, 1 - alpha),
                        "Rhat": float(rhat[name]),
                        "Bulk_ESS": float(bulk[name]),
                        "Tail_ESS": float(tail[name]),
                    }
                )
                index.append((section, name))

        return pd.DataFrame(
            rows, index=pd.MultiIndex.from_tuples(index, names=["section", "parameter"])
        )

    def __str__(self) -> str:
        posterior = self.inference_obj.posterior
        lines = [
            str(self.model),
            f"  Draws: {posterior.sizes['chain']} chains, each with "
            f"{posterior.sizes['draw']} post-warmup draws; total = {self.n_draws}",
        ]
        table = self.summary()
        for section in SECTIONS:
            if section not in table.index.get_level_values("section"):
                continue
            lines.extend(
                [
                    "",
                    f"{section}:",
                    table.loc[section].to_string(
                        float_format=lambda x: f"{x:.2f}", index_names=False
                    ),
                ]
            )
        return "\n".join(lines)

    # Diagnostics
    def calculate_diagnostics(self) -> xr.Dataset:
        """Compute R-hat, ESS, and MCSE for every posterior variable."""
        return self.calculate_summaries(kind="diagnostics")

    def evaluate_sample_stats(
        self,
        max_tree_depth: Optional["custom_types.Integer"] = None,
        ebfmi_thresh: "custom_types.Float" = DEFAULT_EBFMI_THRESH,
    ) -> xr.Dataset:
        """Flag divergent draws, draws that saturated the tree depth, and
        chains with a low E-BFMI.

        Results are stored in the ``sample_diagnostic_tests`` group.

        :param max_tree_depth: Maximum tree depth used for sampling. Taken from
            the fit when None.
        :type max_tree_depth: Optional[custom_types.Integer]
        :param ebfmi_thresh: E-BFMI threshold. Defaults to 0.2.
        :type ebfmi_thresh: custom_types.Float

        :returns: Boolean failure flags
        :rtype: xr.Dataset
        """
        sample_stats = self.inference_obj.sample_stats  # pylint: disable=no-member

        # If not provided, extract the maximum tree depth from the attributes
        if max_tree_depth is None:
            max_tree_depth = sample_stats.attrs.get(
                "max_treedepth", DEFAULT_MAX_TREEDEPTH
            )

        # Run all tests and build a dataset
        sample_tests = xr.Dataset(
            {
                "low_ebfmi": xr.DataArray(
                    az.bfmi(self.inference_obj) < ebfmi_thresh,
                    dims=["chain"],
                    coords={"chain": sample_stats.chain.values},
                ),
                "max_tree_depth_reached": sample_stats.tree_depth >= max_tree_depth,
                "diverged": sample_stats.diverging.astype(bool),
            }
        )

        # Add the new group to the ArviZ object
        self._update_group("sample_diagnostic_tests", sample_tests, force_del=True)

        return sample_tests

    def evaluate_variable_diagnostic_stats(
        self,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
    ) -> xr.Dataset:
        """Flag variables with a high R-hat or a low bulk or tail ESS.

        Results are stored in the ``variable_diagnostic_tests`` group.

        :param r_hat_thresh: R-hat threshold. Defaults to 1.01.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float

        :returns: Boolean failure flags along a "metric" dimension
        :rtype: xr.Dataset

        :raises ValueError: If the diagnostics have not been calculated
        """
        # We need to check if the `variable_diagnostic_stats` group exists
        if not hasattr(self.inference_obj, "variable_diagnostic_stats"):
            raise ValueError(
                "The `variable_diagnostic_stats` group does not exist. Please run "
                "`calculate_diagnostics` first."
            )

        # Update the ess threshold based on the number of chains
        ess_thresh = ess_thresh * self.n_chains

        # Run all tests and build a dataset
        # pylint: disable=no-member
        stats = self.inference_obj.variable_diagnostic_stats
        variable_tests = xr.concat(
            [
                stats.sel(metric="r_hat") >= r_hat_thresh,
                stats.sel(metric="ess_bulk") <= ess_thresh,
                stats.sel(metric="ess_tail") <= ess_thresh,
            ],
            dim="metric",
        )
        # pylint: enable=no-member

        # Add the new group to the ArviZ object
        self._update_group("variable_diagnostic_tests", variable_tests, force_del=True)

        return variable_tests

    def identify_failed_diagnostics(
        self, silent: bool = False
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        """Summarize the failed diagnostic tests.

        :param silent: Whether to skip printing the report. Defaults to False.
        :type silent: bool

        :returns: Indices of failed draws (or chains) per sample test, and
            indices of failed elements per variable for each metric
        :rtype: tuple[dict[str, Any], dict[str, dict[str, Any]]]
        """

        def process_test_results(test_results: xr.Dataset) -> dict[str, tuple]:
            """Failed indices and number of tests for each variable."""
            return {
                varname: (np.atleast_1d(tests.values).nonzero(), tests.values.size)
                for varname, tests in test_results.items()
            }

        def strip_totals(processed: dict[str, tuple]) -> dict[str, Any]:
            return {k: v[0] for k, v in processed.items()}

        def report_test_summary(
            processed: dict[str, tuple], type_: str, prepend_newline: bool = True
        ) -> None:
            if prepend_newline:
                print()
            header = f"{type_.capitalize()} diagnostic tests results' summaries:"
            print(header)
            print("-" * len(header))
            for varname, (failed_indices, total_tests) in processed.items():
                n_failures = len(failed_indices[0])
                unit = "chain" if varname == "low_ebfmi" else type_
                print(
                    f"{n_failures} of {total_tests} ({n_failures / total_tests:.2%}) "
                    f"{unit}s {message_map.get(varname, f'tests failed for {varname}')}."
                )

        # Different messages for different test types
        message_map = {
            "low_ebfmi": "had a low E-BFMI",
            "max_tree_depth_reached": "reached the maximum tree depth",
            "diverged": "diverged",
        }

        # pylint: disable=no-member
        sample_test_failures = process_test_results(
            self.inference_obj.sample_diagnostic_tests
        )
        variable_test_failures = {
            metric.item(): process_test_results(
                self.inference_obj.variable_diagnostic_tests.sel(metric=metric.item())
            )
            for metric in self.inference_obj.variable_diagnostic_tests.metric
        }
        # pylint: enable=no-member

        res = (
            strip_totals(sample_test_failures),
            {
                metric: strip_totals(failures)
                for metric, failures in variable_test_failures.items()
            },
        )
        if silent:
            return res

        # Report sample and variable test failures
        report_test_summary(sample_test_failures, "sample", prepend_newline=False)
        for metric, failures in variable_test_failures.items():
            report_test_summary(failures, metric)

        return res

    def diagnose(
        self,
        max_tree_depth: Optional["custom_types.Integer"] = None,
        ebfmi_thresh: "custom_types.Float" = DEFAULT_EBFMI_THRESH,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
        silent: bool = False,
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        """Run all MCMC diagnostics and report the failures.

        Runs :py:meth:`calculate_diagnostics`, :py:meth:`evaluate_sample_stats`,
        :py:meth:`evaluate_variable_diagnostic_stats`, and
        :py:meth:`identify_failed_diagnostics` in turn.

        :param max_tree_depth: Maximum tree depth. Taken from the fit when None.
        :type max_tree_depth: Optional[custom_types.Integer]
        :param ebfmi_thresh: E-BFMI threshold. Defaults to 0.2.
        :type ebfmi_thresh: custom_types.Float
        :param r_hat_thresh: R-hat threshold. Defaults to 1.01.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float
        :param silent: Whether to skip printing the report. Defaults to False.
        :type silent: bool

        :returns: See :py:meth:`identify_failed_diagnostics`
        :rtype: tuple[dict[str, Any], dict[str, dict[str, Any]]]
        """
        self.calculate_diagnostics()
        self.evaluate_sample_stats(
            max_tree_depth=max_tree_depth, ebfmi_thresh=ebfmi_thresh
        )
        self.evaluate_variable_diagnostic_stats(
            r_hat_thresh=r_hat_thresh, ess_thresh=ess_thresh
        )
        return self.identify_failed_diagnostics(silent=silent)

    # Predictions
    def _draw_indices(self, ndraws: Optional["custom_types.Integer"]) -> npt.NDArray:
        """Indices of the flattened draws to use."""
        if ndraws is None or ndraws >= self.n_draws:
            return np.arange(self.n_draws)
        return np.sort(stanfamilies.RNG.choice(self.n_draws, size=ndraws, replace=False))

    def _prediction_data(self, newdata: Optional[pd.DataFrame]) -> tuple[dict, int]:
        """Per-observation data of the family for the training or new data."""
        frame = self.model.frame
        if newdata is None:
            data = {"Y": self.model.Y, **frame.additions}
            nobs = frame.nobs
        else:
            data, nobs = {}, len(newdata)
            if (response := frame.formula.response) in newdata.columns:
                values = newdata[response].to_numpy()
                data["Y"] = (
                    ModelFrame._as_int(values, response)  # pylint: disable=protected-access
                    if self.model.family.type == "int"
                    else values.astype(float)
                )
            for stan_name, column in frame.formula.stan_additions.items():
                if column not in newdata.columns:
                    raise FormulaError(f"New data lack the column '{column}'.")
                values = newdata[column].to_numpy()
                data[stan_name] = (
                    values.astype(float)
                    if stan_name.startswith("vreal")
                    else ModelFrame._as_int(  # pylint: disable=protected-access
                        values, column
                    )
                )
        data.update(self.model.stanvars.data())
        return data, nobs

    def _linear_predictor(
        self,
        lp: "LinearPredictor",
        draw_idx: npt.NDArray,
        newdata: Optional[pd.DataFrame],
        include_groups: bool,
    ) -> npt.NDArray:
        """Draws of a linear predictor on the link scale, shape (S, N)."""
        posterior = self.inference_obj.posterior
        names = lp.coefficient_names()
        X = self.model.frame.population_matrix(lp.dpar, newdata)
        eta = np.zeros((len(draw_idx), X.shape[0]))

        # Population-level terms
        if lp.has_intercept:
            eta += flatten_draws(posterior[names[0]])[draw_idx, None]
        if lp.K > 0:
            b = np.stack(
                [
                    flatten_draws(posterior[name])[draw_idx]
                    for name in names[int(lp.has_intercept) :]
                ],
                axis=1,
            )
            eta += b @ X.T

        # Group-level terms
        if include_groups:
            for group in lp.groups:
                J, Z = (group.J, group.Z) if newdata is None else group.evaluate(newdata)
                r = flatten_draws(
                    posterior[self.model.frame.random_effect_name(group)]
                )[draw_idx]
                eta += np.einsum("snm,nm->sn", r[:, J - 1, :], Z)

        return eta

    def prepare_predictions(
        self,
        newdata: Optional[pd.DataFrame] = None,
        ndraws: Optional["custom_types.Integer"] = None,
        re_formula: Optional[str] = None,
    ) -> PreparedDraws:
        """Prepare posterior draws for the family.

        :param newdata: Data to predict for. Defaults to None (the training
            data).
        :type newdata: Optional[pd.DataFrame]
        :param ndraws: Number of randomly chosen draws. Defaults to None (all).
        :type ndraws: Optional[custom_types.Integer]
        :param re_formula: None to include all group-level effects or "NA" to
            drop them. Defaults to None.
        :type re_formula: Optional[str]

        :returns: The prepared draws
        :rtype: PreparedDraws

        :raises FormulaError: If new data lack needed columns or contain unseen
            group levels, or if re_formula is not None or "NA"
        """
        if re_formula not in (None, "NA"):
            raise FormulaError(
                f"re_formula must be None or 'NA', not '{re_formula}'."
            )
        if newdata is not None:
            newdata = newdata.reset_index(drop=True)

        # Dpars on the response scale
        draw_idx = self._draw_indices(ndraws)
        dpars = {}
        for dpar in self.model.family.dpars:
            if (lp := self.model.frame.predictors.get(dpar)) is not None:
                eta = self._linear_predictor(
                    lp, draw_idx, newdata, include_groups=re_formula is None
                )
                dpars[dpar] = self.model.family.links[dpar].inverse(eta)
            else:
                dpars[dpar] = flatten_draws(self.inference_obj.posterior[dpar])[
                    draw_idx
                ]

        data, nobs = self._prediction_data(newdata)
        return PreparedDraws(
            family=self.model.family,
            dpars=dpars,
            data=data,
            nobs=nobs,
            rng=stanfamilies.RNG,
        )

    def _store_pointwise(self, group: str, values: npt.NDArray) -> None:
        """Add (S, N) draws for the training data as group ``group``."""
        posterior = self.inference_obj.posterior
        dataset = xr.Dataset(
            {
                "Y": xr.DataArray(
                    unflatten_draws(values, self.n_chains),
                    dims=("chain", "draw", "obs"),
                    coords={
                        "chain": posterior.chain.values,
                        "draw": posterior.draw.values,
                    },
                )
            }
        )
        self._update_group(group, dataset, force_del=True)

    def log_lik(
        self,
        newdata: Optional[pd.DataFrame] = None,
        ndraws: Optional["custom_types.Integer"] = None,
        re_formula: Optional[str] = None,
        progress: bool = False,
    ) -> npt.NDArray:
        """Pointwise log-likelihood.

        Computed for the training data with all draws, the result is also
        stored as the ``log_likelihood`` group.

        :param newdata: Data to evaluate. Must contain the response. Defaults to
            None (the training data).
        :type newdata: Optional[pd.DataFrame]
        :param ndraws: Number of randomly chosen draws. Defaults to None (all).
        :type ndraws: Optional[custom_types.Integer]
        :param re_formula: None or "NA". Defaults to None.
        :type re_formula: Optional[str]
        :param progress: Whether to show a progress bar. Defaults to False.
        :type progress: bool

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray
        """
        values = self.prepare_predictions(newdata, ndraws, re_formula).log_lik(
            progress=progress
        )
        if newdata is None and ndraws is None and re_formula is None:
            self._store_pointwise("log_likelihood", values)
        return values

    def posterior_predict(
        self,
        newdata: Optional[pd.DataFrame] = None,
        ndraws: Optional["custom_types.Integer"] = None,
        re_formula: Optional[str] = None,
        progress: bool = False,
    ) -> npt.NDArray:
        """Draws from the posterior predictive distribution.

        Computed for the training data with all draws, the result is also
        stored as the ``posterior_predictive`` group.

        :param newdata: Data to predict for. Defaults to None (the training
            data).
        :type newdata: Optional[pd.DataFrame]
        :param ndraws: Number of randomly chosen draws. Defaults to None (all).
        :type ndraws: Optional[custom_types.Integer]
        :param re_formula: None or "NA". Defaults to None.
        :type re_formula: Optional[str]
        :param progress: Whether to show a progress bar. Defaults to False.
        :type progress: bool

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray
        """
        values = self.prepare_predictions(newdata, ndraws, re_formula).posterior_predict(
            progress=progress
        )
        if newdata is None and ndraws is None and re_formula is None:
            self._store_pointwise("posterior_predictive", values)
        return values

    def posterior_epred(
        self,
        newdata: Optional[pd.DataFrame] = None,
        ndraws: Optional["custom_types.Integer"] = None,
        re_formula: Optional[str] = None,
    ) -> npt.NDArray:
        """Draws of the expected value of the response.

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray
        """
        return self.prepare_predictions(newdata, ndraws, re_formula).posterior_epred()

    # Model checking
    def loo(
        self,
        pointwise: bool = False,
        pareto_k_thresh: "custom_types.Float" = DEFAULT_PARETO_K_THRESH,
    ) -> az.ELPDData:
        """PSIS-LOO cross-validation.

        The pointwise log-likelihood is computed first if needed. A warning is
        issued when Pareto k estimates exceed ``pareto_k_thresh``.

        :param pointwise: Whether to return pointwise values. Defaults to False.
        :type pointwise: bool
        :param pareto_k_thresh: Threshold of unreliable Pareto k estimates.
            Defaults to 0.7.
        :type pareto_k_thresh: custom_types.Float

        :returns: The LOO estimate
        :rtype: az.ELPDData
        """
        if "log_likelihood" not in self.inference_obj.groups():
            self.log_lik()

        result = az.loo(self.inference_obj, pointwise=True)
        if (n_bad := int((np.asarray(result.pareto_k) > pareto_k_thresh).sum())) > 0:
            warnings.warn(
                f"{n_bad} of {len(result.pareto_k)} observations have a Pareto k "
                f"above {pareto_k_thresh}. The LOO estimate may be unreliable."
            )
        if pointwise:
            return result
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return az.loo(self.inference_obj, pointwise=False)

    def _iter_pp_obs(self):
        if "posterior_predictive" not in self.inference_obj.groups():
            self.posterior_predict()
        return super()._iter_pp_obs()

    def pp_check(
        self,
        type: Literal[  # pylint: disable=redefined-builtin
            "dens_overlay", "ecdf_overlay", "intervals", "calibration"
        ] = "dens_overlay",
        ndraws: "custom_types.Integer" = DEFAULT_PPC_NDRAWS,
    ) -> hv.Overlay:
        """Graphical posterior predictive check.

        :param type: "dens_overlay" and "ecdf_overlay" overlay the density or
            ECDF of ``ndraws`` predictive datasets with that of the observed
            data. "intervals" shows each observation against its predictive
            intervals. "calibration" shows the ECDF of the observations'
            predictive quantiles. Defaults to "dens_overlay".
        :type type: Literal["dens_overlay", "ecdf_overlay", "intervals",
            "calibration"]
        :param ndraws: Number of predictive datasets for the overlays. Defaults
            to 50.
        :type ndraws: custom_types.Integer

        :returns: The plot
        :rtype: hv.Overlay
        """
        if type == "intervals":
            return self.plot_posterior_predictive_samples(display=False)["Y"]
        if type == "calibration":
            return self.check_calibration(display=False)["Y"]

        yrep = self.posterior_predict(ndraws=ndraws)
        if type == "dens_overlay":
            return plotting.plot_dens_overlay(self.model.Y, yrep)
        return plotting.plot_ecdf_overlay(self.model.Y, yrep)

    # Conditional effects
    def _conditional_grid(
        self,
        effect: str,
        conditions: Optional[dict[str, Any]],
        resolution: "custom_types.Integer",
    ) -> pd.DataFrame:
        """Data varying ``effect`` with all other predictors held fixed.

        Numeric predictors are held at their mean (rounded for integer
        columns and integer addition variables) and categorical ones at
        their reference level unless given in ``conditions``.
        """
        data = self.model.frame.data
        conditions = conditions or {}
        response = self.model.formula.response
        columns = [
            col
            for col in ModelFrame.used_columns(self.model.formula, data)
            if col != response
        ]
        integer_columns = {
            column
            for stan_name, column in self.model.formula.stan_additions.items()
            if not stan_name.startswith("vreal")
        }
        if effect not in columns:
            raise FormulaError(
                f"'{effect}' is not a predictor of the model. Predictors are: "
                + ", ".join(columns)
            )

        # Values of the effect
        series = data[effect]
        if effect in conditions:
            raise FormulaError(f"'{effect}' cannot be both the effect and a condition.")
        if _is_numeric(series):
            values = np.linspace(series.min(), series.max(), int(resolution))
            if effect in integer_columns:
                values = np.unique(np.round(values).astype(int))
            grid = pd.DataFrame({effect: values})
        else:
            grid = pd.DataFrame({effect: _levels(series)})
            if isinstance(series.dtype, pd.CategoricalDtype):
                grid[effect] = pd.Categorical(
                    grid[effect], categories=series.cat.categories
                )

        # Values of the other columns
        for column in columns:
            if column == effect:
                continue
            series = data[column]
            if column in conditions:
                value = conditions[column]
            elif _is_numeric(series):
                value = series.mean()
                if (
                    pd.api.types.is_integer_dtype(series)
                    or column in integer_columns
                ):
                    value = int(round(value))
            else:
                value = _levels(series)[0]
            grid[column] = value
            if isinstance(series.dtype, pd.CategoricalDtype):
                grid[column] = pd.Categorical(
                    grid[column], categories=series.cat.categories
                )

        return grid

    def conditional_effects(
        self,
        effect: str,
        conditions: Optional[dict[str, Any]] = None,
        resolution: "custom_types.Integer" = DEFAULT_CE_RESOLUTION,
        prob: "custom_types.Float" = DEFAULT_CI_PROB,
        method: Literal["posterior_epred", "posterior_predict"] = "posterior_epred",
        re_formula: Optional[str] = "NA",
        display: bool = False,
    ) -> pd.DataFrame | hv.Overlay:
        """Predictions along one predictor with the others held fixed.

        :param effect: Column whose effect is shown
        :type effect: str
        :param conditions: Values of other columns. Numeric columns default to
            their mean and categorical columns to their reference level.
        :type conditions: Optional[dict[str, Any]]
        :param resolution: Number of grid points for numeric effects. Defaults
            to 100.
        :type resolution: custom_types.Integer
        :param prob: Probability mass of the intervals. Defaults to 0.95.
        :type prob: custom_types.Float
        :param method: "posterior_epred" for expected values or
            "posterior_predict" for predictions. Defaults to "posterior_epred".
        :type method: Literal["posterior_epred", "posterior_predict"]
        :param re_formula: "NA" (default) ignores group-level effects; None
            includes them.
        :type re_formula: Optional[str]
        :param display: Whether to return a plot instead of the table. Defaults
            to False.
        :type display: bool

        :returns: The grid with "estimate" (posterior median), "lower", and
            "upper" columns, or its plot
        :rtype: Union[pd.DataFrame, hv.Overlay]

        :raises FormulaError: If ``effect`` is not a predictor of the model
        """
        grid = self._conditional_grid(effect, conditions, resolution)
        if method == "posterior_epred":
            draws = self.posterior_epred(newdata=grid, re_formula=re_formula)
        else:
            draws = self.posterior_predict(newdata=grid, re_formula=re_formula)

        alpha = (1 - prob) / 2
        frame = grid.assign(
            estimate=np.median(draws, axis=0),
            lower=np.quantile(draws, alpha, axis=0),
            upper=np.quantile(draws, 1 - alpha, axis=0),
        )
        if display:
            return plotting.plot_conditional_effect(
                frame, effect, self.model.formula.response
            )
        return frame


def _is_numeric(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(
        series
    )


def _levels(series: pd.Series) -> list:
    """Levels of a categorical column, reference level first."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.unique())
