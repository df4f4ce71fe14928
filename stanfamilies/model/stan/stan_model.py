# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code generation and compilation for regression models.

This module translates a :py:class:`~stanfamilies.model.model.RegressionModel`
into a Stan program and manages compiling and sampling it. The generated
programs follow the conventions of multilevel regression packages:

    - Population-level predictors are centered in transformed data and the
      intercept is recovered as ``b_Intercept`` in generated quantities.
    - Group-level effects are non-centered: ``r_k`` is built from standard
      deviations ``sd_k``, standard normal ``z_k``, and (for correlated terms)
      a Cholesky factor ``L_k``.
    - A ``prior_only`` data flag switches the likelihood off.
    - User code from stanvars is spliced into the start or end of each block.

Users will not normally interact with this module directly. Instead, they call
:py:func:`stanfamilies.fit` or :py:meth:`RegressionModel.to_stan()
<stanfamilies.model.model.RegressionModel.to_stan>`.
"""

from __future__ import annotations

import functools
import hashlib
import os.path
import weakref

from tempfile import TemporaryDirectory
from typing import Any, Callable, Optional, ParamSpec, TYPE_CHECKING, TypeVar

from cmdstanpy import CmdStanModel, format_stan_file

import stanfamilies

from stanfamilies import utils
from stanfamilies.defaults import (
    DEFAULT_B_PRIOR,
    DEFAULT_CHAINS,
    DEFAULT_COR_PRIOR,
    DEFAULT_CPP_OPTIONS,
    DEFAULT_DPAR_PRIORS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_INTERCEPT_PRIOR,
    DEFAULT_MAX_TREEDEPTH,
    DEFAULT_MODEL_NAME,
    DEFAULT_SD_PRIOR,
    DEFAULT_STANC_OPTIONS,
    DEFAULT_USER_HEADER,
)
from stanfamilies.families import stan_bounds, CustomFamily
from stanfamilies.priors import target_statement

if TYPE_CHECKING:
    from stanfamilies import custom_types
    from stanfamilies.formula import GroupData, LinearPredictor
    from stanfamilies.model.model import RegressionModel

results = utils.lazy_import("stanfamilies.model.results")

# Function for combining a list of Stan code lines
DEFAULT_INDENTATION = 4

# Parameter and return types for decorated functions
P = ParamSpec("P")
R = TypeVar("R")


class StanProgram:
    """Stan program generated from a regression model.

    Each block of the program is available as a property; :py:attr:`code`
    joins the non-empty blocks.

    :param model: The model to translate
    :type model: RegressionModel
    """

    def __init__(self, model: "RegressionModel"):
        self.model = model
        self.frame = model.frame
        self.family = model.family
        self.stanvars = model.stanvars
        self.priors = model.priors

    @staticmethod
    def finalize_line(text: str, indentation_level: "custom_types.Integer") -> str:
        """Indent a line of Stan code and close statements with a semicolon.

        Multi-line text (user snippets) is indented as a block and otherwise
        left untouched.

        :param text: Raw code text
        :type text: str
        :param indentation_level: Number of indentation levels
        :type indentation_level: custom_types.Integer

        :returns: Formatted line(s)
        :rtype: str
        """
        padding = " " * DEFAULT_INDENTATION * indentation_level

        # User snippets
        if "\n" in text:
            return "\n".join(
                f"{padding}{line}" if line.strip() else ""
                for line in _dedent(text).split("\n")
            )

        # Add a semicolon to the end if not a bracket, comment, or blank
        formatted = f"{padding}{text}"
        if text and text[-1] not in {"{", "}", ";"} and not text.startswith("//"):
            formatted += ";"
        return formatted

    def combine_lines(
        self, lines: list, indentation_level: "custom_types.Integer" = 1
    ) -> str:
        """Combine lines of Stan code, indenting nested lists one level deeper.

        :param lines: Lines of code. Empty strings are dropped.
        :type lines: list
        :param indentation_level: Indentation of the top-level lines
        :type indentation_level: custom_types.Integer

        :returns: The combined code
        :rtype: str
        """
        formatted = []
        for line in lines:
            if isinstance(line, list):
                if nested := self.combine_lines(line, indentation_level + 1):
                    formatted.append(nested)
            elif line:
                formatted.append(self.finalize_line(line, indentation_level))
        return "\n".join(formatted)

    def _write_block(self, header: str, stanvar_block: str, lines: list) -> str:
        """Wrap generated lines and stanvar snippets in a program block."""
        lines = (
            self.stanvars.code(stanvar_block, "start")
            + lines
            + self.stanvars.code(stanvar_block, "end")
        )
        if not lines:
            return ""
        return f"{header} {{\n" + self.combine_lines(lines) + "\n}"

    @property
    def predictors(self) -> list["LinearPredictor"]:
        return list(self.frame.predictors.values())

    @property
    def groups(self) -> list["GroupData"]:
        return self.frame.groups

    @staticmethod
    def _centered(lp: "LinearPredictor") -> bool:
        return lp.has_intercept and lp.K > 0

    @property
    def functions_block(self) -> str:
        """Functions block. Holds user-supplied functions only."""
        return self._write_block("functions", "functions", [])

    @property
    def data_block(self) -> str:
        """Data block: response, addition terms, designs, and stanvar data.

        Stanvar snippets always follow the generated declarations so that they
        can use ``N``.
        """
        # Response and addition variables
        lines = [
            "int<lower=1> N",
            "array[N] int Y" if self.family.is_discrete else "vector[N] Y",
        ]
        for name in self.frame.additions:
            if name.startswith("vreal"):
                lines.append(f"vector[N] {name}")
            elif name == "trials":
                lines.append("array[N] int<lower=0> trials")
            else:
                lines.append(f"array[N] int {name}")

        # Population-level designs
        for lp in self.predictors:
            lines.extend(
                [f"int<lower=0> K{lp.suffix}", f"matrix[N, K{lp.suffix}] X{lp.suffix}"]
            )

        # Group-level designs
        for group in self.groups:
            k = group.index
            lines.extend(
                [
                    f"// group-level terms of {group.term} for {group.dpar}",
                    f"int<lower=1> N_{k}",
                    f"int<lower=1> M_{k}",
                    f"array[N] int<lower=1> J_{k}",
                    f"matrix[N, M_{k}] Z_{k}",
                ]
            )

        lines.append("int prior_only")
        lines.extend(self.stanvars.code("data", "start"))
        lines.extend(self.stanvars.code("data", "end"))
        return "data {\n" + self.combine_lines(lines) + "\n}"

    @property
    def transformed_data_block(self) -> str:
        """Transformed data block: centering of the population-level designs."""
        lines = []
        for lp in self.predictors:
            if not self._centered(lp):
                continue
            s = lp.suffix
            lines.extend(
                [
                    f"vector[K{s}] means_X{s}",
                    f"matrix[N, K{s}] Xc{s}",
                    f"for (i in 1:K{s}) {{",
                    [
                        f"means_X{s}[i] = mean(X{s}[:, i])",
                        f"Xc{s}[:, i] = X{s}[:, i] - means_X{s}[i]",
                    ],
                    "}",
                ]
            )
        return self._write_block("transformed data", "tdata", lines)

    @property
    def parameters_block(self) -> str:
        """Parameters block: coefficients, group-level parameters, and
        constant dpars."""
        lines = []
        for lp in self.predictors:
            s = lp.suffix
            if lp.has_intercept:
                lines.append(f"real Intercept{s}")
            if lp.K > 0:
                bounds = ""
                if (b_prior := self.priors.find("b", dpar=lp.dpar)) is not None:
                    bounds = stan_bounds(b_prior.lb, b_prior.ub)
                lines.append(f"vector{bounds}[K{s}] b{s}")

        for group in self.groups:
            k = group.index
            lines.extend(
                [f"vector<lower=0>[M_{k}] sd_{k}", f"matrix[M_{k}, N_{k}] z_{k}"]
            )
            if group.correlated:
                lines.append(f"cholesky_factor_corr[M_{k}] L_{k}")

        lines.extend(
            self.family.stan_dpar_declaration(dpar)
            for dpar in self.model.constant_dpars
        )
        return self._write_block("parameters", "parameters", lines)

    @property
    def transformed_parameters_block(self) -> str:
        """Transformed parameters block: scaled group-level effects."""
        lines = []
        for group in self.groups:
            k = group.index
            lines.append(f"matrix[N_{k}, M_{k}] r_{k}")
            if group.correlated:
                lines.append(f"r_{k} = transpose(diag_pre_multiply(sd_{k}, L_{k}) * z_{k})")
            else:
                lines.append(f"r_{k} = transpose(diag_pre_multiply(sd_{k}, z_{k}))")
        return self._write_block("transformed parameters", "tparameters", lines)

    def linear_predictor_lines(self, lp: "LinearPredictor") -> list[str]:
        """Statements computing a predicted dpar on its response scale."""
        s, dpar = lp.suffix, lp.dpar
        lines = [f"vector[N] {dpar} = rep_vector(0.0, N)"]

        # Population-level terms
        if self._centered(lp):
            lines.append(f"{dpar} += Intercept{s} + Xc{s} * b{s}")
        elif lp.has_intercept:
            lines.append(f"{dpar} += Intercept{s}")
        elif lp.K > 0:
            lines.append(f"{dpar} += X{s} * b{s}")

        # Group-level terms
        for group in lp.groups:
            k = group.index
            lines.append(f"{dpar} += rows_dot_product(r_{k}[J_{k}], Z_{k})")

        # Response scale
        if (inverse := self.family.links[dpar].stan_inverse_expr(dpar)) != dpar:
            lines.append(f"{dpar} = {inverse}")

        return lines

    def prior_lines(self) -> list[str]:
        """``target +=`` statements for all priors."""
        lines = []
        for lp in self.predictors:
            s, dpar = lp.suffix, lp.dpar

            # Intercept
            if lp.has_intercept:
                found = self.priors.find("Intercept", dpar=dpar)
                lines.append(
                    target_statement(
                        DEFAULT_INTERCEPT_PRIOR if found is None else found.distribution,
                        f"Intercept{s}",
                    )
                )

            # Population-level effects
            if lp.K > 0:
                lines.extend(
                    self._vector_priors(
                        f"b{s}",
                        [
                            self._distribution("b", DEFAULT_B_PRIOR, coef=label, dpar=dpar)
                            for label in lp.labels
                        ],
                    )
                )

        # Group-level parameters
        for group in self.groups:
            k = group.index
            lines.extend(
                self._vector_priors(
                    f"sd_{k}",
                    [
                        self._distribution(
                            "sd",
                            DEFAULT_SD_PRIOR,
                            coef=coef,
                            group=group.group,
                            dpar=group.dpar,
                        )
                        for coef in group.coefs
                    ],
                )
            )
            lines.append(f"target += std_normal_lpdf(to_vector(z_{k}))")
            if group.correlated:
                lines.append(
                    target_statement(
                        self._distribution(
                            "cor", DEFAULT_COR_PRIOR, group=group.group, dpar=group.dpar
                        ),
                        f"L_{k}",
                    )
                )

        # Constant dpars
        default_dpar_priors = (
            {} if isinstance(self.family, CustomFamily) else DEFAULT_DPAR_PRIORS
        )
        for dpar in self.model.constant_dpars:
            lines.append(
                target_statement(
                    self._distribution(dpar, default_dpar_priors.get(dpar, "")), dpar
                )
            )

        return lines

    def _distribution(self, class_: str, default: str, **qualifiers) -> str:
        found = self.priors.find(class_, **qualifiers)
        return default if found is None else found.distribution

    @staticmethod
    def _vector_priors(name: str, distributions: list[str]) -> list[str]:
        """Priors on the elements of a vector, vectorized when they agree."""
        if len(set(distributions)) == 1:
            return [target_statement(distributions[0], name)]
        return [
            target_statement(distribution, f"{name}[{i}]")
            for i, distribution in enumerate(distributions, start=1)
        ]

    @property
    def model_block(self) -> str:
        """Model block: likelihood (unless ``prior_only``) and priors."""
        likelihood = []
        for lp in self.predictors:
            likelihood.extend(self.linear_predictor_lines(lp))
        likelihood.extend(self.family.stan_likelihood(predicted=self.model.predicted_dpars))

        lines = ["// likelihood", "if (!prior_only) {", likelihood, "}", "// priors"]
        lines.extend(self.prior_lines())
        return self._write_block("model", "model", lines)

    @property
    def generated_quantities_block(self) -> str:
        """Generated quantities block: uncentered intercepts and correlation
        matrices."""
        lines = []
        for lp in self.predictors:
            s = lp.suffix
            if self._centered(lp):
                lines.append(
                    f"real b{s}_Intercept = Intercept{s} - dot_product(means_X{s}, b{s})"
                )
            elif lp.has_intercept:
                lines.append(f"real b{s}_Intercept = Intercept{s}")
        for group in self.groups:
            if group.correlated:
                k = group.index
                lines.append(
                    f"corr_matrix[M_{k}] Cor_{k} = multiply_lower_tri_self_transpose(L_{k})"
                )
        return self._write_block("generated quantities", "genquant", lines)

    @property
    def code(self) -> str:
        """The complete Stan program."""
        # Join steps that have contents
        return (
            "\n".join(
                val
                for val in (
                    self.functions_block,
                    self.data_block,
                    self.transformed_data_block,
                    self.parameters_block,
                    self.transformed_parameters_block,
                    self.model_block,
                    self.generated_quantities_block,
                )
                if len(val.strip()) > 0
            )
            + "\n"
        )


def _dedent(text: str) -> str:
    """Remove the common leading whitespace of a user snippet."""
    lines = text.strip("\n").split("\n")
    indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
    shift = min(indents, default=0)
    return "\n".join(line[shift:] for line in lines)


def _update_cmdstanpy_func(func: Callable[P, R]) -> Callable[P, R]:
    """Decorator filling in the data and seed of CmdStanModel methods.

    The data come from the regression model; the seed is drawn from the global
    random number generator when the caller gives none.

    :param func: CmdStanModel method to enhance
    :type func: Callable[P, R]

    :returns: Enhanced method
    :rtype: Callable[P, R]
    """

    @functools.wraps(func)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        """Wrapper function for gathering inputs."""
        # Get the Stan model from the first argument
        stan_model = args[0]
        assert isinstance(stan_model, StanModel)

        # Combine args and kwargs into a single dictionary
        kwargs.update(dict(zip(func.__code__.co_varnames[1:], args[1:])))

        # If a seed is not provided, use the global random number generator to get
        # one
        if kwargs.get("seed") is None:
            kwargs["seed"] = int(stanfamilies.RNG.integers(0, 2**32 - 1))

        # Data come from the model
        if kwargs.get("data") is not None:
            raise ValueError(
                f"Data are gathered from the model and cannot be passed to {func.__name__}."
            )
        kwargs["data"] = stan_model.model.stan_data(
            prior_only=kwargs.pop("prior_only", False)
        )

        # Run the wrapped function
        return func(stan_model, **kwargs)

    return inner


class StanModel(CmdStanModel):
    """CmdStanModel compiled from a regression model.

    The program is written to ``output_dir`` (a temporary directory when None)
    under a name derived from a hash of its code. An executable compiled for an
    identical program is reused unless ``force_compile`` is set.

    :param model: The regression model
    :type model: RegressionModel
    :param output_dir: Directory for Stan files and compilation. Defaults to None
        (temporary).
    :type output_dir: Optional[str]
    :param force_compile: Whether to force recompilation. Defaults to False.
    :type force_compile: bool
    :param stanc_options: Options for the Stan compiler. Defaults to None (uses
        defaults).
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for C++ compilation. Defaults to None (uses
        defaults).
    :type cpp_options: Optional[dict[str, Any]]
    :param user_header: Custom C++ header code. Defaults to None.
    :type user_header: Optional[str]
    :param model_name: Prefix of the program and executable names. Defaults to
        'model'.
    :type model_name: str

    :ivar model: The regression model
    :ivar program: The generated StanProgram
    :ivar output_dir: Directory containing Stan files
    :ivar stan_executable_path: Path to the compiled executable
    """

    def __init__(
        self,
        model: "RegressionModel",
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = DEFAULT_USER_HEADER,
        model_name: str = DEFAULT_MODEL_NAME,
    ):
        # Set default options
        self._stanc_options = dict(stanc_options or DEFAULT_STANC_OPTIONS)
        cpp_options = dict(cpp_options or DEFAULT_CPP_OPTIONS)

        # Note the underlying model and its program
        self.model = model
        self.program = model.program

        # Set the output directory
        self._set_output_dir(output_dir)

        # Identical programs share one executable
        digest = hashlib.sha1(self.code().encode("utf-8")).hexdigest()[:12]
        self.stan_executable_path = os.path.join(
            self.output_dir, f"{model_name}_{digest}"
        )

        # Write the Stan program
        self.write_stan_program()

        # Initialize the CmdStanModel
        super().__init__(
            stan_file=self.stan_program_path,
            exe_file=(
                self.stan_executable_path
                if os.path.exists(self.stan_executable_path) and not force_compile
                else None
            ),
            force_compile=force_compile,
            stanc_options=self._stanc_options,
            cpp_options=cpp_options,
            user_header=user_header,
        )

    def _set_output_dir(self, output_dir: Optional[str]) -> None:
        """Configure the output directory, making a temporary one if needed.

        :raises FileNotFoundError: If the specified directory doesn't exist
        """
        # Make a temporary directory if none is specified. Set up a weak reference
        # to clean up the temporary directory when the model is deleted.
        if output_dir is None:
            tempdir = TemporaryDirectory()
            weakref.finalize(self, tempdir.cleanup)
            output_dir = tempdir.name

        # Make sure the output directory exists
        if not os.path.exists(output_dir):
            raise FileNotFoundError(f"Output directory {output_dir} does not exist.")

        self.output_dir = output_dir

    def write_stan_program(self) -> None:
        """Write and format the Stan program.

        Nothing is written if the program file already exists; its name is
        derived from its contents. A rewritten file would look newer than the
        executable compiled from it and trigger recompilation.
        """
        if os.path.exists(self.stan_program_path):
            return

        # Write the raw code
        with open(self.stan_program_path, "w", encoding="utf-8") as f:
            f.write(self.code())

        # Format the code
        format_stan_file(
            self.stan_program_path,
            overwrite_file=True,
            canonicalize=True,
            stanc_options=self._stanc_options,
        )

    def code(self) -> str:
        """The generated Stan program."""
        return self.program.code

    def sample(  # pylint: disable=arguments-differ
        self, *args, prior_only: bool = False, **kwargs
    ) -> "results.FittedModel":
        """Run NUTS and wrap the result in a FittedModel.

        :param args: Positional arguments passed to CmdStanModel.sample
        :param prior_only: If True, the likelihood is switched off and the
            draws come from the prior. Defaults to False.
        :type prior_only: bool
        :param kwargs: Keyword arguments passed to CmdStanModel.sample

        :returns: The fitted model
        :rtype: results.FittedModel
        """
        # Update the sample function from CmdStanModel to automatically pull the
        # data from the model
        updated_parent_sample = _update_cmdstanpy_func(CmdStanModel.sample)

        # Combine args and kwargs into a single dictionary
        kwargs.update(dict(zip(CmdStanModel.sample.__code__.co_varnames[1:], args)))

        # Set the number of chains if not provided
        if kwargs.get("chains") is None:
            kwargs["chains"] = DEFAULT_CHAINS

        # Run the sample function
        fit = updated_parent_sample(self, prior_only=prior_only, **kwargs)

        return results.FittedModel.from_cmdstanpy(
            model=self.model,
            fit=fit,
            max_treedepth=kwargs.get("max_treedepth") or DEFAULT_MAX_TREEDEPTH,
        )

    @property
    def stan_program_path(self) -> str:
        """Path to the generated .stan file."""
        return self.stan_executable_path + ".stan"
