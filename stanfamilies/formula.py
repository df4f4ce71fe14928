# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Model formulas and design data.

Formulas follow the multilevel regression conventions popularized by lme4:

.. code-block:: text

    incidence | vint(size) ~ period + (1 | herd)
    ^^^^^^^^^   ^^^^^^^^^^   ^^^^^^   ^^^^^^^^^^
    response    addition     common   group-level
                terms        effects  effects

Addition terms pass per-observation data to the likelihood without modeling
it: ``trials(col)`` provides the number of binomial trials and ``vint(...)`` /
``vreal(...)`` provide integer and real auxiliary variables for custom
families, exposed in Stan as ``vint1``, ``vint2``, ... and ``vreal1``, ... .

Population-level ("common") design matrices are built with ``formulae``, so
numeric terms, categorical terms (treatment coded), interactions, and
transformations such as ``np.log(x)`` all behave as they do in bambi.
Group-level terms are written ``(expr | group)`` for correlated effects and
``(expr || group)`` for uncorrelated ones.

Distributional parameters other than ``mu`` can get their own linear predictor
by passing a right-hand-side formula to :py:func:`bf`:

    >>> formula = bf("y ~ x + (1 | g)", phi="~ x")
"""

from __future__ import annotations

import re

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

from formulae import design_matrices

from stanfamilies.exceptions import FormulaError

if TYPE_CHECKING:
    from stanfamilies import custom_types

ADDITION_TERM = re.compile(r"^([A-Za-z_]\w*)\s*\((.*)\)$", re.DOTALL)
"""Matches an addition term such as ``trials(size)``."""

COLUMN_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
"""Column names accepted for responses, groups, and addition terms."""

ADDITION_TERMS = ("trials", "vint", "vreal")
"""Supported addition terms."""


def _split_top_level(text: str, sep: str) -> list[str]:
    """Split ``text`` on ``sep`` wherever it is not nested in brackets."""
    parts, depth, start, i = [], 0, 0, 0
    while i < len(text):
        char = text[i]
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth < 0:
                raise FormulaError(f"Unbalanced parentheses in '{text}'.")
        elif depth == 0 and text.startswith(sep, i):
            parts.append(text[start:i])
            i += len(sep)
            start = i
            continue
        i += 1
    if depth != 0:
        raise FormulaError(f"Unbalanced parentheses in '{text}'.")
    parts.append(text[start:])
    return [part.strip() for part in parts]


class GroupTerm:
    """A group-level term ``(expr | group)`` or ``(expr || group)``.

    :param expr: Right-hand side of the varying effects (e.g., "1 + x")
    :type expr: str
    :param group: Grouping column, or columns joined by ":"
    :type group: str
    :param correlated: Whether the effects of the term are correlated
    :type correlated: bool
    """

    def __init__(self, expr: str, group: str, correlated: bool):
        self.expr = expr
        self.group = group
        self.correlated = correlated

        # Check the group
        self.group_columns = [col.strip() for col in group.split(":")]
        if not all(COLUMN_NAME.match(col) for col in self.group_columns):
            raise FormulaError(
                f"Grouping factor '{group}' must be a column name or columns "
                "joined by ':'."
            )

    @classmethod
    def parse(cls, term: str) -> Optional["GroupTerm"]:
        """Parse a term of the right-hand side. Returns None if the term is
        not a group-level term."""
        if not (term.startswith("(") and term.endswith(")")):
            return None
        inner = term[1:-1]
        for sep, correlated in (("||", False), ("|", True)):
            if len(parts := _split_top_level(inner, sep)) == 2:
                if "|" in parts[1]:
                    continue
                expr, group = parts
                if expr == "" or group == "":
                    raise FormulaError(f"Incomplete group-level term '{term}'.")
                return cls(expr, group, correlated)
            if len(parts) > 2:
                raise FormulaError(f"Cannot parse group-level term '{term}'.")
        return None

    def __str__(self) -> str:
        return f"({self.expr} {'|' if self.correlated else '||'} {self.group})"


class BayesFormula:
    """A model formula with optional formulas for other dpars.

    :param formula: Main formula, "response | additions ~ predictors"
    :type formula: str
    :param dpar_formulas: Right-hand-side formulas for dpars other than ``mu``
    :type dpar_formulas: dict[str, str]

    :raises FormulaError: If a formula cannot be parsed
    """

    def __init__(self, formula: str, dpar_formulas: Optional[dict[str, str]] = None):

        self.formula = formula

        # Split into sides
        if formula.count("~") != 1:
            raise FormulaError(
                f"Formula '{formula}' must contain exactly one '~' separating the "
                "response from the predictors."
            )
        lhs, rhs = (side.strip() for side in formula.split("~"))
        if rhs == "":
            raise FormulaError(f"Formula '{formula}' has no predictors.")

        # Response and addition terms
        lhs_parts = _split_top_level(lhs, "|")
        if len(lhs_parts) > 2:
            raise FormulaError(f"Left-hand side '{lhs}' has more than one '|'.")
        self.response = lhs_parts[0]
        if not COLUMN_NAME.match(self.response):
            raise FormulaError(
                f"Response '{self.response}' must be a column name. Transform the "
                "response in the data instead."
            )
        self.additions: dict[str, list[str]] = {}
        if len(lhs_parts) == 2:
            self.additions = self._parse_additions(lhs_parts[1])

        # Predictors of each dpar
        self.rhs: dict[str, str] = {"mu": rhs}
        for dpar, dpar_formula in (dpar_formulas or {}).items():
            if dpar == "mu":
                raise FormulaError(
                    "The predictors of 'mu' are set by the main formula."
                )
            dpar_formula = dpar_formula.strip()
            if dpar_formula.count("~") > 1 or (
                "~" in dpar_formula and not dpar_formula.startswith("~")
            ):
                raise FormulaError(
                    f"Formula for dpar '{dpar}' must be a right-hand side such as "
                    f"'~ x', not '{dpar_formula}'."
                )
            if (dpar_rhs := dpar_formula.lstrip("~").strip()) == "":
                raise FormulaError(f"Formula for dpar '{dpar}' has no predictors.")
            self.rhs[dpar] = dpar_rhs

        # Split the predictors into common and group-level parts
        self.common: dict[str, str] = {}
        self.group_terms: dict[str, list[GroupTerm]] = {}
        for dpar, dpar_rhs in self.rhs.items():
            common_terms, group_terms = [], []
            for term in _split_top_level(dpar_rhs, "+"):
                if term == "":
                    raise FormulaError(f"Empty term in '{dpar_rhs}'.")
                if (group_term := GroupTerm.parse(term)) is None:
                    common_terms.append(term)
                else:
                    group_terms.append(group_term)
            self.common[dpar] = " + ".join(common_terms) if common_terms else "1"
            self.group_terms[dpar] = group_terms

    @staticmethod
    def _parse_additions(text: str) -> dict[str, list[str]]:
        """Parse ``trials(size) + vint(a, b)`` into ``{"trials": ["size"], ...}``."""
        additions = {}
        for term in _split_top_level(text, "+"):
            if (match := ADDITION_TERM.match(term)) is None:
                raise FormulaError(f"Cannot parse addition term '{term}'.")
            name, args = match.group(1), _split_top_level(match.group(2), ",")
            if name not in ADDITION_TERMS:
                raise FormulaError(
                    f"Unknown addition term '{name}'. Supported addition terms are: "
                    + ", ".join(ADDITION_TERMS)
                )
            if name in additions:
                raise FormulaError(f"Addition term '{name}' is given more than once.")
            if not all(COLUMN_NAME.match(arg) for arg in args):
                raise FormulaError(
                    f"Arguments of '{term}' must be column names of the data."
                )
            if name == "trials" and len(args) != 1:
                raise FormulaError("'trials' takes exactly one column.")
            additions[name] = args
        return additions

    @property
    def dpars(self) -> tuple[str, ...]:
        """Dpars with a linear predictor, starting with ``mu``."""
        return tuple(self.rhs)

    @property
    def stan_additions(self) -> dict[str, str]:
        """Maps the Stan names of addition variables (``trials``, ``vint1``,
        ...) to the data columns providing them."""
        names = {}
        for name, columns in self.additions.items():
            if name == "trials":
                names["trials"] = columns[0]
                continue
            for i, column in enumerate(columns, start=1):
                names[f"{name}{i}"] = column
        return names

    def __str__(self) -> str:
        lines = [self.formula]
        lines.extend(
            f"{dpar} ~ {rhs}" for dpar, rhs in self.rhs.items() if dpar != "mu"
        )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"BayesFormula({str(self)!r})"


def bf(formula: "custom_types.FormulaType", **dpar_formulas: str) -> BayesFormula:
    """Build a :py:class:`BayesFormula`.

    :param formula: Main formula, e.g. "y | trials(n) ~ x + (1 | g)"
    :type formula: custom_types.FormulaType
    :param dpar_formulas: Right-hand-side formulas of other dpars, e.g.
        ``phi="~ x"``. Dpars without a formula are estimated as a single
        constant.

    :returns: The parsed formula
    :rtype: BayesFormula
    """
    if isinstance(formula, BayesFormula):
        return BayesFormula(formula.formula, {**_dpar_formulas(formula), **dpar_formulas})
    return BayesFormula(formula, dpar_formulas)


def _dpar_formulas(formula: BayesFormula) -> dict[str, str]:
    return {dpar: f"~ {rhs}" for dpar, rhs in formula.rhs.items() if dpar != "mu"}


class _CommonDesign:
    """Population-level design of one linear predictor.

    Wraps the ``formulae`` common-effects matrix, splitting off the intercept
    and labeling the remaining columns.
    """

    def __init__(self, response: str, rhs: str, data: pd.DataFrame):
        self.rhs = rhs
        if rhs.replace(" ", "") in ("0", "-1"):
            self._matrix = None
        else:
            try:
                self._matrix = design_matrices(
                    f"{response} ~ {rhs}", data, na_action="error"
                ).common
            except Exception as error:  # formulae raises a variety of error types
                raise FormulaError(
                    f"Could not build the design matrix for '{rhs}': {error}"
                ) from error

        self.has_intercept, self.labels, self.X = self._split(self._matrix, len(data))

    @staticmethod
    def _split(matrix, nobs: int) -> tuple[bool, list[str], npt.NDArray]:
        if matrix is None:
            return False, [], np.empty((nobs, 0))
        has_intercept, labels, blocks = False, [], []
        for name, term in matrix.terms.items():
            if name == "Intercept":
                has_intercept = True
                continue
            block = np.asarray(matrix[name], dtype=float)
            if block.ndim == 1:
                block = block[:, None]
            blocks.append(block)

            # Label the columns
            levels = getattr(term, "levels", None)
            if levels is not None and len(levels) == block.shape[1]:
                labels.extend(
                    str(level) if str(level).startswith(name) else f"{name}{level}"
                    for level in levels
                )
            elif block.shape[1] == 1:
                labels.append(name)
            else:
                labels.extend(f"{name}[{j}]" for j in range(block.shape[1]))

        X = np.hstack(blocks) if blocks else np.empty((nobs, 0))
        return has_intercept, labels, X

    def evaluate(self, newdata: pd.DataFrame) -> npt.NDArray:
        """Design matrix (without intercept) for new data."""
        if self._matrix is None:
            return np.empty((len(newdata), 0))
        try:
            matrix = self._matrix.evaluate_new_data(newdata)
        except Exception as error:  # formulae raises a variety of error types
            raise FormulaError(
                f"Could not evaluate '{self.rhs}' on new data: {error}"
            ) from error
        return self._split(matrix, len(newdata))[2]


class GroupData:
    """Design data of one group-level term.

    :ivar index: 1-based number of the term in the Stan program
    :ivar dpar: The dpar whose linear predictor the term belongs to
    :ivar term: The parsed term
    :ivar J: 1-based level of each observation, shape (N,)
    :ivar Z: Varying-effect design, shape (N, M)
    :ivar levels: Names of the group levels
    :ivar coefs: Names of the varying coefficients
    """

    def __init__(
        self,
        index: "custom_types.Integer",
        dpar: str,
        term: GroupTerm,
        response: str,
        data: pd.DataFrame,
    ):
        self.index = index
        self.dpar = dpar
        self.term = term

        # Levels of the grouping factor
        codes, levels = pd.factorize(self.group_values(data), sort=True)
        self.J = codes + 1
        self.levels = [str(level) for level in levels]

        # Varying-effect design
        self._design = _CommonDesign(response, term.expr, data)
        self.coefs = (["Intercept"] if self._design.has_intercept else []) + list(
            self._design.labels
        )
        if len(self.coefs) == 0:
            raise FormulaError(f"Group-level term '{term}' has no coefficients.")
        self.Z = self._with_intercept(self._design.X)

    def _with_intercept(self, X: npt.NDArray) -> npt.NDArray:
        if self._design.has_intercept:
            return np.hstack([np.ones((X.shape[0], 1)), X])
        return X

    def group_values(self, data: pd.DataFrame) -> pd.Series:
        """Values of the grouping factor in ``data``."""
        columns = self.term.group_columns
        if len(columns) == 1:
            return data[columns[0]]
        return data[columns].astype(str).agg(":".join, axis=1)

    @property
    def group(self) -> str:
        return self.term.group

    @property
    def correlated(self) -> bool:
        """Whether correlations between the coefficients are estimated."""
        return self.term.correlated and len(self.coefs) > 1

    @property
    def coef_labels(self) -> list[str]:
        """Coefficient names as used in parameter names (prefixed by the dpar
        for dpars other than ``mu``)."""
        prefix = "" if self.dpar == "mu" else f"{self.dpar}_"
        return [f"{prefix}{coef}" for coef in self.coefs]

    @property
    def M(self) -> int:
        return len(self.coefs)

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    def evaluate(self, newdata: pd.DataFrame) -> tuple[npt.NDArray, npt.NDArray]:
        """``(J, Z)`` for new data. Levels must have been seen in training.

        :raises FormulaError: If new data contain unseen levels
        """
        values = self.group_values(newdata)
        lookup = {level: i + 1 for i, level in enumerate(self.levels)}
        if unseen := sorted(set(values.astype(str)) - set(lookup)):
            raise FormulaError(
                f"New levels {unseen} of grouping factor '{self.group}'. Drop "
                "group-level effects with re_formula='NA' to predict for them."
            )
        J = values.astype(str).map(lookup).to_numpy(dtype=int)
        return J, self._with_intercept(self._design.evaluate(newdata))


class LinearPredictor:
    """Design data of the linear predictor of one dpar.

    :ivar dpar: Name of the dpar
    :ivar has_intercept: Whether the predictor has a population-level intercept
    :ivar X: Population-level design without the intercept column, shape (N, K)
    :ivar labels: Labels of the columns of X
    :ivar groups: Group-level terms
    """

    def __init__(
        self,
        dpar: str,
        common: _CommonDesign,
        groups: list[GroupData],
    ):
        self.dpar = dpar
        self._common = common
        self.has_intercept = common.has_intercept
        self.X = common.X
        self.labels = common.labels
        self.groups = groups

        if not (self.has_intercept or self.labels or self.groups):
            raise FormulaError(f"The linear predictor of '{dpar}' has no terms.")

    @property
    def suffix(self) -> str:
        """Suffix of this predictor's Stan variable names (empty for mu)."""
        return "" if self.dpar == "mu" else f"_{self.dpar}"

    @property
    def K(self) -> int:
        return self.X.shape[1]

    def coefficient_names(self) -> list[str]:
        """Readable names of the population-level coefficients, intercept first."""
        prefix = "b_" if self.dpar == "mu" else f"b_{self.dpar}_"
        names = [f"{prefix}Intercept"] if self.has_intercept else []
        return names + [f"{prefix}{label}" for label in self.labels]

    def population_matrix(self, newdata: pd.DataFrame) -> npt.NDArray:
        """Population-level design (without intercept) for new data."""
        return self._common.evaluate(newdata)


class ModelFrame:
    """All data needed to build and post-process a model.

    Built with :py:meth:`from_formula`.

    :ivar formula: The parsed formula
    :ivar data: The data, restricted to the rows used
    :ivar Y: The response
    :ivar additions: Addition-term variables by Stan name (``trials``,
        ``vint1``, ...)
    :ivar predictors: Linear predictors by dpar
    """

    def __init__(
        self,
        formula: BayesFormula,
        data: pd.DataFrame,
        Y: npt.NDArray,
        additions: dict[str, npt.NDArray],
        predictors: dict[str, LinearPredictor],
    ):
        self.formula = formula
        self.data = data
        self.Y = Y
        self.additions = additions
        self.predictors = predictors

    @classmethod
    def from_formula(
        cls, formula: "custom_types.FormulaType", data: pd.DataFrame
    ) -> "ModelFrame":
        """Evaluate a formula on a data frame.

        :param formula: The formula
        :type formula: custom_types.FormulaType
        :param data: The data
        :type data: pd.DataFrame

        :returns: The model frame
        :rtype: ModelFrame

        :raises FormulaError: If columns are missing or contain missing values,
            or if a design matrix cannot be built
        """
        formula = bf(formula)
        data = data.reset_index(drop=True)
        if len(data) == 0:
            raise FormulaError("The data have no rows.")

        # Check the columns that the formula refers to
        used = cls.used_columns(formula, data)
        if formula.response not in data.columns:
            raise FormulaError(f"Response '{formula.response}' is not a column of the data.")
        for columns in formula.additions.values():
            if missing := [col for col in columns if col not in data.columns]:
                raise FormulaError(f"Columns {missing} are not in the data.")
        for terms in formula.group_terms.values():
            for term in terms:
                if missing := [c for c in term.group_columns if c not in data.columns]:
                    raise FormulaError(f"Grouping columns {missing} are not in the data.")
        if missing_values := [col for col in used if data[col].isna().any()]:
            raise FormulaError(
                f"Columns {missing_values} contain missing values. Remove or impute "
                "them before fitting."
            )

        # The response and addition variables
        Y = data[formula.response].to_numpy()
        additions = {}
        for stan_name, column in formula.stan_additions.items():
            values = data[column].to_numpy()
            if stan_name.startswith("vreal"):
                additions[stan_name] = values.astype(float)
            else:
                additions[stan_name] = cls._as_int(values, column)
        if "trials" in additions and np.any(additions["trials"] < 0):
            raise FormulaError("Number of trials must be non-negative.")

        # Build each linear predictor
        predictors, index = {}, 1
        for dpar in formula.dpars:
            groups = []
            for term in formula.group_terms[dpar]:
                groups.append(GroupData(index, dpar, term, formula.response, data))
                index += 1
            predictors[dpar] = LinearPredictor(
                dpar,
                _CommonDesign(formula.response, formula.common[dpar], data),
                groups,
            )

        frame = cls(formula, data, Y, additions, predictors)
        if len(names := frame.group_parameter_names()) != len(set(names)):
            raise FormulaError(
                "The same group-level coefficient is specified more than once."
            )
        return frame

    @staticmethod
    def used_columns(formula: BayesFormula, data: pd.DataFrame) -> list[str]:
        """Columns of ``data`` that the formula mentions, in data order."""
        text = " ".join(
            [formula.formula] + [rhs for dpar, rhs in formula.rhs.items() if dpar != "mu"]
        )
        return [
            col
            for col in data.columns
            if isinstance(col, str)
            and re.search(rf"(?<![\w.]){re.escape(col)}(?![\w.])", text)
        ]

    @staticmethod
    def _as_int(values: npt.NDArray, column: str) -> npt.NDArray:
        """Convert integer-valued data to an int array."""
        as_float = values.astype(float)
        if not np.all(np.isfinite(as_float)) or not np.all(as_float == np.round(as_float)):
            raise FormulaError(f"Column '{column}' must contain integers.")
        return as_float.astype(np.int64)

    def response_as(self, family_type: str) -> npt.NDArray:
        """The response converted to the type of a family.

        :raises FormulaError: If a discrete family gets a non-integer response
        """
        if family_type == "int":
            return self._as_int(self.Y, self.formula.response)
        return self.Y.astype(float)

    @property
    def nobs(self) -> int:
        return len(self.Y)

    @property
    def groups(self) -> list[GroupData]:
        """All group-level terms, in Stan order."""
        return [group for lp in self.predictors.values() for group in lp.groups]

    def group_parameter_names(self) -> list[str]:
        """Readable names of the group-level standard deviations."""
        return [
            f"sd_{group.group}__{coef}"
            for group in self.groups
            for coef in group.coef_labels
        ]

    def random_effect_name(self, group: GroupData) -> str:
        """Readable name of the varying effects of a group-level term."""
        same_group = [
            other
            for other in self.groups
            if other.group == group.group and other.dpar == group.dpar
        ]
        name = f"r_{group.group}"
        if group.dpar != "mu":
            name = f"{name}__{group.dpar}"
        if len(same_group) > 1:
            name = f"{name}_{same_group.index(group) + 1}"
        return name

    def population_matrix(self, dpar: str, newdata: Optional[pd.DataFrame] = None) -> npt.NDArray:
        """Population-level design (without intercept) of a dpar.

        :param dpar: The dpar
        :type dpar: str
        :param newdata: New data. Training data when None.
        :type newdata: Optional[pd.DataFrame]

        :returns: Array of shape (N, K)
        :rtype: npt.NDArray
        """
        if newdata is None:
            return self.predictors[dpar].X
        return self.predictors[dpar].population_matrix(newdata)
