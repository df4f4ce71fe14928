# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import warnings

import arviz as az
import holoviews as hv
import numpy as np
import pandas as pd
import pytest

from scipy import special, stats

from stanfamilies.exceptions import FormulaError
from stanfamilies.model.model import RegressionModel
from stanfamilies.model.results.fit import FittedModel, SECTIONS
from stanfamilies.model.results.inference import InferenceResults
from stanfamilies.utils import flatten_draws

from conftest import make_fit, N_CHAINS, N_DRAWS

J = np.array([1, 1, 2, 2, 3, 3, 3, 1])


def expected_mu(fit, x, J=None):
    """Success probabilities computed by hand from the posterior draws."""
    posterior = fit.inference_obj.posterior
    eta = flatten_draws(posterior["b_Intercept"])[:, None] + flatten_draws(
        posterior["b_x"]
    )[:, None] * np.asarray(x)[None]
    if J is not None:
        eta += flatten_draws(posterior["r_herd"])[:, J - 1, 0]
    return special.expit(eta)


def test_readable_posterior(binomial_fit):
    posterior = binomial_fit.inference_obj.posterior
    assert set(posterior.data_vars) == {"b_Intercept", "b_x", "sd_herd__Intercept", "r_herd"}
    assert posterior["b_x"].dims == ("chain", "draw")
    assert posterior["r_herd"].dims == ("chain", "draw", "herd", "herd_coef")
    assert list(posterior["r_herd"].herd.values) == ["a", "b", "c"]
    assert list(posterior["r_herd"].herd_coef.values) == ["Intercept"]
    assert binomial_fit.n_chains == N_CHAINS
    assert binomial_fit.n_draws == N_CHAINS * N_DRAWS


def test_readable_posterior_values(binomial_fit, binomial_draws):
    posterior = binomial_fit.inference_obj.posterior
    np.testing.assert_allclose(posterior["b_x"].values, binomial_draws["b"][..., 0])
    np.testing.assert_allclose(
        posterior["sd_herd__Intercept"].values, binomial_draws["sd_1"][..., 0]
    )
    np.testing.assert_allclose(posterior["r_herd"].values, binomial_draws["r_1"])


def test_summary(binomial_fit):
    table = binomial_fit.summary()
    assert list(table.index) == [
        (SECTIONS[0], "b_Intercept"),
        (SECTIONS[0], "b_x"),
        (SECTIONS[1], "sd_herd__Intercept"),
    ]
    assert list(table.columns) == [
        "Estimate",
        "Est.Error",
        "l-95% CI",
        "u-95% CI",
        "Rhat",
        "Bulk_ESS",
        "Tail_ESS",
    ]
    draws = flatten_draws(binomial_fit.inference_obj.posterior["b_x"])
    assert table.loc[(SECTIONS[0], "b_x"), "Estimate"] == pytest.approx(draws.mean())
    assert (table["l-95% CI"] < table["u-95% CI"]).all()

    assert list(binomial_fit.summary(prob=0.9).columns[2:4]) == ["l-90% CI", "u-90% CI"]

    text = str(binomial_fit)
    assert "Population-Level Effects:" in text
    assert "Group-Level Effects:" in text
    assert "Family Specific Parameters:" not in text
    assert "2 chains" in text


def test_diagnose(binomial_fit):
    sample_failures, variable_failures = binomial_fit.diagnose(silent=True)
    assert set(sample_failures) == {"low_ebfmi", "max_tree_depth_reached", "diverged"}
    assert len(sample_failures["diverged"][0]) == 0
    assert len(sample_failures["max_tree_depth_reached"][0]) == 0
    assert set(variable_failures) == {"r_hat", "ess_bulk", "ess_tail"}
    assert "b_x" in variable_failures["r_hat"]
    assert "sample_diagnostic_tests" in binomial_fit.inference_obj.groups()


def test_tree_depth_threshold(binomial_fit):
    binomial_fit.calculate_diagnostics()
    tests = binomial_fit.evaluate_sample_stats(max_tree_depth=3)
    assert bool(tests["max_tree_depth_reached"].all())


def test_posterior_epred(binomial_fit, herd_data):
    epred = binomial_fit.posterior_epred()
    assert epred.shape == (N_CHAINS * N_DRAWS, 8)
    expected = expected_mu(binomial_fit, herd_data["x"], J) * herd_data["size"].to_numpy()
    np.testing.assert_allclose(epred, expected)


def test_predictions_without_group_effects(binomial_fit, herd_data):
    epred = binomial_fit.posterior_epred(re_formula="NA")
    expected = expected_mu(binomial_fit, herd_data["x"]) * herd_data["size"].to_numpy()
    np.testing.assert_allclose(epred, expected)

    with pytest.raises(FormulaError, match="re_formula"):
        binomial_fit.posterior_epred(re_formula="~ (1 | herd)")


def test_predictions_for_new_data(binomial_fit):
    newdata = pd.DataFrame(
        {"x": [0.0, 1.0], "herd": ["b", "c"], "size": [10, 20]}, index=[5, 9]
    )
    epred = binomial_fit.posterior_epred(newdata=newdata)
    expected = expected_mu(binomial_fit, [0.0, 1.0], np.array([2, 3])) * np.array(
        [10, 20]
    )
    np.testing.assert_allclose(epred, expected)
    assert binomial_fit.posterior_epred(newdata=newdata, ndraws=10).shape == (10, 2)

    with pytest.raises(FormulaError, match="New levels"):
        binomial_fit.posterior_epred(newdata=newdata.assign(herd=["b", "z"]))
    with pytest.raises(FormulaError, match="lack the column 'size'"):
        binomial_fit.posterior_epred(newdata=newdata.drop(columns="size"))


def test_log_lik_is_stored(binomial_fit, herd_data):
    log_lik = binomial_fit.log_lik()
    mu = expected_mu(binomial_fit, herd_data["x"], J)
    expected = stats.binom.logpmf(
        herd_data["incidence"].to_numpy()[None], herd_data["size"].to_numpy()[None], mu
    )
    np.testing.assert_allclose(log_lik, expected)

    stored = binomial_fit.inference_obj.log_likelihood["Y"]
    assert stored.dims == ("chain", "draw", "obs")
    assert stored.shape == (N_CHAINS, N_DRAWS, 8)
    np.testing.assert_allclose(flatten_draws(stored), log_lik)


def test_subsets_are_not_stored(binomial_fit):
    assert binomial_fit.log_lik(ndraws=5).shape == (5, 8)
    assert "log_likelihood" not in binomial_fit.inference_obj.groups()


def test_posterior_predict(binomial_fit, herd_data):
    yrep = binomial_fit.posterior_predict()
    assert yrep.shape == (N_CHAINS * N_DRAWS, 8)
    assert np.all((yrep >= 0) & (yrep <= herd_data["size"].to_numpy()[None]))
    assert "posterior_predictive" in binomial_fit.inference_obj.groups()


def test_loo(binomial_fit):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = binomial_fit.loo()
        pointwise = binomial_fit.loo(pointwise=True)
    assert "log_likelihood" in binomial_fit.inference_obj.groups()
    assert np.isfinite(result["elpd_loo"])
    assert len(pointwise.loo_i) == 8
    assert len(pointwise.pareto_k) == 8


def test_pareto_k_warning(binomial_fit):
    with pytest.warns(UserWarning, match="Pareto k"):
        binomial_fit.loo(pareto_k_thresh=-np.inf)


@pytest.mark.parametrize("type_", ["dens_overlay", "ecdf_overlay", "intervals", "calibration"])
def test_pp_check(binomial_fit, type_):
    plot = binomial_fit.pp_check(type_, ndraws=5)
    assert isinstance(plot, hv.Overlay)


def test_pp_check_overlays_requested_draws(binomial_fit):
    plot = binomial_fit.pp_check("ecdf_overlay", ndraws=5)
    assert len(plot) == 6


def test_conditional_effects_numeric(binomial_fit):
    effects = binomial_fit.conditional_effects("x", resolution=5)
    assert list(effects.columns) == ["x", "herd", "size", "estimate", "lower", "upper"]
    np.testing.assert_allclose(effects["x"], np.linspace(-1.0, 2.0, 5))
    assert (effects["herd"] == "a").all()
    assert (effects["size"] == 12).all()
    assert (effects["lower"] <= effects["estimate"]).all()
    assert (effects["estimate"] <= effects["upper"]).all()

    expected = np.median(expected_mu(binomial_fit, effects["x"]) * 12, axis=0)
    np.testing.assert_allclose(effects["estimate"], expected)


def test_conditional_effects_categorical(binomial_fit):
    effects = binomial_fit.conditional_effects("herd", conditions={"size": 20})
    assert list(effects["herd"]) == ["a", "b", "c"]
    assert (effects["size"] == 20).all()
    assert effects["x"].iloc[0] == pytest.approx(0.46875)

    # Group-level effects are left out by default
    np.testing.assert_allclose(effects["estimate"], effects["estimate"].iloc[0])
    with_groups = binomial_fit.conditional_effects("herd", re_formula=None)
    assert not np.allclose(with_groups["estimate"], with_groups["estimate"].iloc[0])


def test_conditional_effects_plots(binomial_fit):
    assert isinstance(
        binomial_fit.conditional_effects("x", resolution=5, display=True), hv.Overlay
    )
    assert isinstance(
        binomial_fit.conditional_effects("herd", display=True), hv.Overlay
    )


def test_conditional_effects_errors(binomial_fit):
    with pytest.raises(FormulaError, match="not a predictor"):
        binomial_fit.conditional_effects("period")
    with pytest.raises(FormulaError, match="both the effect and a condition"):
        binomial_fit.conditional_effects("x", conditions={"x": 1.0})


def test_save_and_load(binomial_fit, binomial_model, tmp_path):
    path = str(tmp_path / "fit.nc")
    binomial_fit.save_netcdf(path)
    loaded = FittedModel.from_disk(path, binomial_model)
    assert set(loaded.inference_obj.posterior.data_vars) == set(
        binomial_fit.inference_obj.posterior.data_vars
    )
    np.testing.assert_allclose(loaded.posterior_epred(), binomial_fit.posterior_epred())


def test_run_ppc(binomial_fit):
    # Bare results need stored predictions
    with pytest.raises(ValueError, match="posterior_predict"):
        InferenceResults(binomial_fit.inference_obj).run_ppc(display=False)

    # Fitted models draw them on demand
    plots = binomial_fit.run_ppc(display=False)
    assert "posterior_predictive" in binomial_fit.inference_obj.groups()
    assert len(plots) == 3
    for plot_dict in plots:
        assert list(plot_dict) == ["Y"]

    with pytest.raises(ValueError, match="display"):
        binomial_fit.check_calibration(return_deviance=True, display=True)
    _, deviances = binomial_fit.check_calibration(return_deviance=True, display=False)
    assert 0 <= deviances["Y"] <= 0.5


def test_observed_shape_is_checked(binomial_fit):
    binomial_fit.posterior_predict()
    idata = binomial_fit.inference_obj
    results = InferenceResults(
        az.InferenceData(
            posterior=idata.posterior,
            posterior_predictive=idata.posterior_predictive,
            observed_data=idata.observed_data.isel(obs=slice(0, 5)),
        )
    )
    with pytest.raises(ValueError, match="has shape"):
        results.check_calibration(display=False)


def test_conditional_effects_round_float_trials(herd_data, binomial_draws):
    data = herd_data.assign(size=herd_data["size"].astype(float))
    data.loc[0, "size"] += 1
    fit = make_fit(
        RegressionModel(
            "incidence | trials(size) ~ x + (1 | herd)", data=data, family="binomial"
        ),
        binomial_draws,
    )
    effects = fit.conditional_effects("x", resolution=3)
    assert (effects["size"] == round(data["size"].mean())).all()

    by_size = fit.conditional_effects("size", resolution=6)
    assert np.all(by_size["size"] == np.round(by_size["size"]))
