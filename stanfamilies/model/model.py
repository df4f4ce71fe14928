# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Regression models combining a formula, data, a family, Stan code, and priors.

:py:class:`RegressionModel` validates that its pieces agree, generates the Stan
program, and assembles the data passed to Stan. :py:func:`fit` is the usual
entry point: it builds the model, compiles it, samples it, and returns a
:py:class:`~stanfamilies.model.results.fit.FittedModel`.

Example:
    >>> import stanfamilies as sf
    >>> data = sf.datasets.simulate_herd_incidence()
    >>> fit = sf.fit(
    ...     "incidence | trials(size) ~ period + (1 | herd)",
    ...     data=data,
    ...     family=sf.binomial(),
    ... )
"""

from __future__ import annotations

import re

from typing import Any, Literal, Optional, TYPE_CHECKING

import numpy as np
import pandas as pd

from stanfamilies import utils
from stanfamilies.defaults import (
    DEFAULT_CHAINS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_ITER_SAMPLING,
    DEFAULT_ITER_WARMUP,
    DEFAULT_MODEL_NAME,
    DEFAULT_USER_HEADER,
)
from stanfamilies.exceptions import FormulaError, PriorError, StanVarError
from stanfamilies.families import CustomFamily, get_family
from stanfamilies.formula import bf, ModelFrame
from stanfamilies.model.stan import stan_model
from stanfamilies.priors import BUILTIN_CLASSES, PriorSet
from stanfamilies.stanvars import StanVars

if TYPE_CHECKING:
    from stanfamilies import custom_types
    from stanfamilies.formula import GroupData

results = utils.lazy_import("stanfamilies.model.results")


class RegressionModel:
    """A Bayesian (multilevel) regression model.

    :param formula: Model formula, e.g. "y | trials(n) ~ x + (1 | g)", or a
        :py:class:`~stanfamilies.formula.BayesFormula` from :py:func:`bf`
    :type formula: custom_types.FormulaType
    :param data: The data
    :type data: pd.DataFrame
    :param family: Response family or the name of a built-in family
    :type family: custom_types.FamilyType
    :param stanvars: User Stan code and data. Required for custom families,
        which need their density function.
    :type stanvars: Optional[StanVars]
    :param prior: Priors overriding the defaults
    :type prior: Optional[PriorSet]

    :raises FormulaError: If the formula does not provide what the family needs
    :raises PriorError: If a prior refers to a parameter the model lacks
    :raises StanVarError: If a custom family's density function is not supplied

    :ivar family: The response family
    :ivar formula: The parsed formula
    :ivar frame: Design data built from the formula
    :ivar stanvars: User Stan code and data
    :ivar priors: User priors
    :ivar program: The generated Stan program
    """

    def __init__(
        self,
        formula: "custom_types.FormulaType",
        data: pd.DataFrame,
        family: "custom_types.FamilyType",
        stanvars: Optional[StanVars] = None,
        prior: Optional[PriorSet] = None,
    ):
        self.family = get_family(family)
        self.formula = bf(formula)
        self.stanvars = StanVars() if stanvars is None else stanvars
        self.priors = PriorSet() if prior is None else prior

        # Check the dpars of the formula before building the design
        if unknown := [d for d in self.formula.dpars if d not in self.family.dpars]:
            raise FormulaError(
                f"Family '{self.family.name}' has no dpars {unknown}. Its dpars are: "
                + ", ".join(self.family.dpars)
            )
        self.frame = ModelFrame.from_formula(self.formula, data)

        # Check that everything fits together
        self._check_family()
        self._check_stanvars()
        self._check_priors()

        # Build the program
        self.program = stan_model.StanProgram(self)

    def _check_family(self) -> None:
        """Check the formula against the needs of the family."""
        available = set(self.frame.additions)
        if missing := sorted(self.family.required_variables - available):
            hints = {"trials": "trials(...)"}
            raise FormulaError(
                f"Family '{self.family.name}' needs {missing} but the formula does "
                "not provide them. Add "
                + ", ".join(
                    hints.get(name, f"{name.rstrip('0123456789')}(...)")
                    for name in missing
                )
                + " to the left-hand side of the formula."
            )

        # The response must suit the family
        Y = self.frame.response_as(self.family.type)
        if "trials" in self.frame.additions and np.any(
            (Y < 0) | (Y > self.frame.additions["trials"])
        ):
            raise FormulaError(
                "Responses must lie between 0 and the number of trials."
            )

    def _check_stanvars(self) -> None:
        """Check stanvar data names against the dpars and that a custom family's
        density function is supplied."""
        if clashes := sorted(
            sv.name
            for sv in self.stanvars
            if sv.has_data and sv.name in self.family.dpars
        ):
            raise StanVarError(
                f"Stanvar names {clashes} are dpars of family "
                f"'{self.family.name}'. Choose other names."
            )

        if not isinstance(self.family, CustomFamily):
            return
        function = f"{self.family.name}{self.family.stan_suffix}"
        snippets = self.stanvars.code("functions", "start") + self.stanvars.code(
            "functions", "end"
        )
        pattern = re.compile(rf"\b{re.escape(function)}\s*\(")
        if not any(pattern.search(snippet) for snippet in snippets):
            raise StanVarError(
                f"Custom family '{self.family.name}' needs the Stan function "
                f"'{function}'. Supply it with "
                "stanvar(scode=..., block='functions')."
            )

    def _check_priors(self) -> None:
        """Check that every prior refers to a parameter of the model."""
        for user_prior in self.priors:
            class_, dpar = user_prior.class_, user_prior.dpar or "mu"

            # Priors on constant dpars
            if class_ not in BUILTIN_CLASSES:
                if class_ not in self.constant_dpars:
                    raise PriorError(
                        f"Unknown prior class '{class_}'. Valid classes are: "
                        + ", ".join(self.prior_classes)
                    )
                continue

            # Priors on linear predictor terms
            if (lp := self.frame.predictors.get(dpar)) is None:
                raise PriorError(f"Dpar '{dpar}' has no linear predictor.")
            if class_ == "Intercept" and not lp.has_intercept:
                raise PriorError(f"The linear predictor of '{dpar}' has no intercept.")
            if class_ == "b":
                if lp.K == 0:
                    raise PriorError(
                        f"The linear predictor of '{dpar}' has no population-level "
                        "coefficients besides the intercept."
                    )
                if user_prior.coef is not None and user_prior.coef not in lp.labels:
                    raise PriorError(
                        f"Unknown coefficient '{user_prior.coef}'. Coefficients of "
                        f"'{dpar}' are: " + ", ".join(lp.labels)
                    )
            if class_ in ("sd", "cor"):
                groups = [
                    group
                    for group in lp.groups
                    if user_prior.group in (None, group.group)
                    and (class_ == "sd" or group.correlated)
                ]
                if not groups:
                    raise PriorError(
                        f"No group-level terms of '{dpar}' match the prior on "
                        f"'{class_}'"
                        + (f" for group '{user_prior.group}'." if user_prior.group else ".")
                    )
                if user_prior.coef is not None and not any(
                    user_prior.coef in group.coefs for group in groups
                ):
                    raise PriorError(
                        f"Unknown group-level coefficient '{user_prior.coef}'."
                    )

    @property
    def predicted_dpars(self) -> tuple[str, ...]:
        """Dpars with their own linear predictor (``mu`` first)."""
        return self.formula.dpars

    @property
    def constant_dpars(self) -> tuple[str, ...]:
        """Dpars estimated as a single parameter."""
        return tuple(d for d in self.family.dpars if d not in self.predicted_dpars)

    @property
    def prior_classes(self) -> list[str]:
        """Parameter classes that priors can be placed on."""
        return list(BUILTIN_CLASSES) + list(self.constant_dpars)

    @property
    def Y(self) -> np.ndarray:
        """The response, typed for the family."""
        return self.frame.response_as(self.family.type)

    @property
    def nobs(self) -> int:
        return self.frame.nobs

    # Readable parameter names
    @property
    def population_names(self) -> list[str]:
        """Names of the population-level coefficients (``b_*``)."""
        return [
            name
            for lp in self.frame.predictors.values()
            for name in lp.coefficient_names()
        ]

    def sd_names(self, group: "GroupData") -> list[str]:
        """Names of the standard deviations of a group-level term."""
        return [f"sd_{group.group}__{coef}" for coef in group.coef_labels]

    def cor_names(self, group: "GroupData") -> list[tuple[int, int, str]]:
        """Names of the correlations of a group-level term with the (0-based)
        indices of the two coefficients they relate."""
        if not group.correlated:
            return []
        labels = group.coef_labels
        return [
            (i, j, f"cor_{group.group}__{labels[i]}__{labels[j]}")
            for i in range(len(labels))
            for j in range(i + 1, len(labels))
        ]

    @property
    def group_names(self) -> list[str]:
        """Names of all group-level standard deviations and correlations."""
        names = []
        for group in self.frame.groups:
            names.extend(self.sd_names(group))
            names.extend(name for _, _, name in self.cor_names(group))
        return names

    def stan_code(self) -> str:
        """The generated Stan program."""
        return self.program.code

    def stan_data(self, prior_only: bool = False) -> dict[str, Any]:
        """The data passed to Stan.

        :param prior_only: Whether to switch off the likelihood. Defaults to
            False.
        :type prior_only: bool

        :returns: Data keyed by Stan variable name
        :rtype: dict[str, Any]
        """
        data = {"N": self.nobs, "Y": self.Y}
        data.update(self.frame.additions)
        for lp in self.frame.predictors.values():
            data[f"K{lp.suffix}"] = lp.K
            data[f"X{lp.suffix}"] = lp.X
        for group in self.frame.groups:
            k = group.index
            data[f"N_{k}"] = group.n_levels
            data[f"M_{k}"] = group.M
            data[f"J_{k}"] = group.J
            data[f"Z_{k}"] = group.Z
        data["prior_only"] = int(prior_only)
        data.update(self.stanvars.data())
        return data

    def to_stan(self, **kwargs) -> "stan_model.StanModel":
        """Compile the model.

        :param kwargs: Compilation options passed to StanModel

        :returns: The compiled model
        :rtype: stan_model.StanModel
        """
        return stan_model.StanModel(self, **kwargs)

    def fit(
        self,
        *,
        chains: "custom_types.Integer" = DEFAULT_CHAINS,
        iter_warmup: "custom_types.Integer" = DEFAULT_ITER_WARMUP,
        iter_sampling: "custom_types.Integer" = DEFAULT_ITER_SAMPLING,
        seed: Optional["custom_types.Integer"] = None,
        sample_prior: Literal["no", "only"] = "no",
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = DEFAULT_USER_HEADER,
        model_name: str = DEFAULT_MODEL_NAME,
        **sample_kwargs,
    ) -> "results.FittedModel":
        """Compile and sample the model.

        :param chains: Number of chains. Defaults to 4.
        :type chains: custom_types.Integer
        :param iter_warmup: Warmup iterations per chain. Defaults to 1000.
        :type iter_warmup: custom_types.Integer
        :param iter_sampling: Draws per chain. Defaults to 1000.
        :type iter_sampling: custom_types.Integer
        :param seed: Seed for Stan. Drawn from the global RNG when None.
        :type seed: Optional[custom_types.Integer]
        :param sample_prior: "only" to sample from the prior. Defaults to "no".
        :type sample_prior: Literal["no", "only"]
        :param output_dir: Directory for Stan files and outputs. Defaults to a
            temporary directory.
        :type output_dir: Optional[str]
        :param force_compile: Whether to recompile an already compiled program
        :type force_compile: bool
        :param stanc_options: Options for the Stan compiler
        :type stanc_options: Optional[dict[str, Any]]
        :param cpp_options: Options for C++ compilation
        :type cpp_options: Optional[dict[str, Any]]
        :param user_header: Custom C++ header code
        :type user_header: Optional[str]
        :param model_name: Prefix of the program and executable names
        :type model_name: str
        :param sample_kwargs: Further arguments to ``CmdStanModel.sample`` (e.g.
            ``adapt_delta``, ``parallel_chains``, ``show_progress``)

        :returns: The fitted model
        :rtype: results.FittedModel
        """
        compiled = self.to_stan(
            output_dir=output_dir,
            force_compile=force_compile,
            stanc_options=stanc_options,
            cpp_options=cpp_options,
            user_header=user_header,
            model_name=model_name,
        )
        return compiled.sample(
            chains=chains,
            iter_warmup=iter_warmup,
            iter_sampling=iter_sampling,
            seed=seed,
            output_dir=output_dir,
            prior_only=sample_prior == "only",
            **sample_kwargs,
        )

    def __str__(self) -> str:
        formula = str(self.formula).replace("\n", "\n" + " " * 9)
        return (
            f" Family: {self.family}\n"
            f"Formula: {formula}\n"
            f"   Data: {self.nobs} observations"
        )


def fit(
    formula: "custom_types.FormulaType",
    data: pd.DataFrame,
    family: "custom_types.FamilyType",
    stanvars: Optional[StanVars] = None,
    prior: Optional[PriorSet] = None,
    **fit_kwargs,
) -> "results.FittedModel":
    """Build, compile, and sample a regression model.

    :param formula: Model formula or BayesFormula
    :type formula: custom_types.FormulaType
    :param data: The data
    :type data: pd.DataFrame
    :param family: Response family or the name of a built-in family
    :type family: custom_types.FamilyType
    :param stanvars: User Stan code and data
    :type stanvars: Optional[StanVars]
    :param prior: Priors overriding the defaults
    :type prior: Optional[PriorSet]
    :param fit_kwargs: Sampling and compilation options. See
        :py:meth:`RegressionModel.fit`.

    :returns: The fitted model
    :rtype: results.FittedModel
    """
    model = RegressionModel(
        formula, data=data, family=family, stanvars=stanvars, prior=prior
    )
    return model.fit(**fit_kwargs)
