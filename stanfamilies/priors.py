# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Prior specifications.

Priors are written as Stan distribution calls and attached to a parameter
class, optionally narrowed to a coefficient, a grouping factor, or the linear
predictor of a dpar:

    >>> priors = (
    ...     prior("normal(0, 5)", class_="b")
    ...     + prior("normal(0, 1)", class_="b", coef="x")
    ...     + prior("exponential(1)", class_="sd", group="herd")
    ...     + prior("gamma(2, 0.1)", class_="phi")
    ... )

Parameter classes are:

    - ``Intercept``: the intercept of a linear predictor (on the centered
      design)
    - ``b``: population-level coefficients
    - ``sd``: standard deviations of group-level effects
    - ``cor``: correlations of group-level effects (a prior on their Cholesky
      factor, e.g. ``lkj_corr_cholesky(2)``)
    - the name of any dpar estimated as a single constant (e.g., ``phi``)

The most specific matching prior wins. Defaults are listed in
:py:mod:`stanfamilies.defaults`.
"""

from __future__ import annotations

import re

from typing import Optional, TYPE_CHECKING

from stanfamilies.exceptions import PriorError

if TYPE_CHECKING:
    from stanfamilies import custom_types

DISTRIBUTION = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_]*)\s*\((.*)\)\s*$", re.DOTALL)
"""Matches a Stan distribution call such as ``normal(0, 5)``."""

BUILTIN_CLASSES = ("Intercept", "b", "sd", "cor")
"""Parameter classes every model can have."""


def parse_distribution(distribution: str) -> tuple[str, str]:
    """Split a distribution call into its name and argument list.

    :param distribution: E.g. "student_t(3, 0, 2.5)"
    :type distribution: str

    :returns: The name and the (possibly empty) argument text
    :rtype: tuple[str, str]

    :raises PriorError: If the text is not a distribution call
    """
    if (match := DISTRIBUTION.match(distribution)) is None:
        raise PriorError(
            f"Cannot parse prior '{distribution}'. Priors are Stan distribution "
            "calls such as 'normal(0, 5)'."
        )
    return match.group(1), match.group(2).strip()


def target_statement(distribution: str, parameter: str) -> str:
    """Stan statement adding a prior to ``target``.

    An empty distribution is a flat prior and gives an empty string.

    :param distribution: E.g. "normal(0, 5)"
    :type distribution: str
    :param parameter: Stan expression the prior applies to, e.g. "b[2]"
    :type parameter: str

    :returns: E.g. "target += normal_lpdf(b[2] | 0, 5)"
    :rtype: str
    """
    if distribution.strip() == "":
        return ""
    name, args = parse_distribution(distribution)
    if args == "":
        return f"target += {name}_lpdf({parameter})"
    return f"target += {name}_lpdf({parameter} | {args})"


class Prior:
    """A single prior statement. Created with :py:func:`prior`."""

    def __init__(
        self,
        distribution: str,
        class_: str,
        coef: Optional[str],
        group: Optional[str],
        dpar: Optional[str],
        lb: "custom_types.Bound",
        ub: "custom_types.Bound",
    ):
        self.distribution = distribution
        self.class_ = class_
        self.coef = coef
        self.group = group
        self.dpar = dpar
        self.lb = lb
        self.ub = ub

    @property
    def specificity(self) -> int:
        """Number of qualifiers (coef, group) narrowing the prior."""
        return (self.coef is not None) + (self.group is not None)

    def matches(
        self,
        class_: str,
        coef: Optional[str] = None,
        group: Optional[str] = None,
        dpar: Optional[str] = None,
    ) -> bool:
        """Whether this prior applies to a parameter."""
        return (
            self.class_ == class_
            and (self.dpar or "mu") == (dpar or "mu")
            and self.coef in (None, coef)
            and self.group in (None, group)
        )

    def __repr__(self) -> str:
        qualifiers = [
            f"{key}={val!r}"
            for key, val in (
                ("coef", self.coef),
                ("group", self.group),
                ("dpar", self.dpar),
                ("lb", self.lb),
                ("ub", self.ub),
            )
            if val is not None
        ]
        return f"Prior({self.distribution!r}, class_={self.class_!r}" + "".join(
            f", {qualifier}" for qualifier in qualifiers
        ) + ")"


class PriorSet:
    """An ordered collection of priors. Combine collections with ``+``."""

    def __init__(self, priors: Optional[list[Prior]] = None):
        self.priors: list[Prior] = list(priors or [])

    def __add__(self, other: "PriorSet") -> "PriorSet":
        if not isinstance(other, PriorSet):
            return NotImplemented
        return PriorSet(self.priors + other.priors)

    def __iter__(self):
        return iter(self.priors)

    def __len__(self) -> int:
        return len(self.priors)

    def find(
        self,
        class_: str,
        coef: Optional[str] = None,
        group: Optional[str] = None,
        dpar: Optional[str] = None,
    ) -> Optional[Prior]:
        """The most specific prior matching a parameter. Later priors win ties.

        :returns: The prior, or None if no prior matches
        :rtype: Optional[Prior]
        """
        best = None
        for candidate in self.priors:
            if candidate.matches(class_, coef=coef, group=group, dpar=dpar) and (
                best is None or candidate.specificity >= best.specificity
            ):
                best = candidate
        return best

    def __repr__(self) -> str:
        return "PriorSet(\n" + "".join(f"    {p!r},\n" for p in self.priors) + ")"


def prior(
    distribution: str,
    class_: str = "b",
    coef: Optional[str] = None,
    group: Optional[str] = None,
    dpar: Optional[str] = None,
    lb: "custom_types.Bound" = None,
    ub: "custom_types.Bound" = None,
) -> PriorSet:
    """Define a prior.

    :param distribution: Stan distribution call, e.g. "normal(0, 5)". An empty
        string gives a flat prior.
    :type distribution: str
    :param class_: Parameter class: "Intercept", "b", "sd", "cor", or the name
        of a constant dpar. Defaults to "b".
    :type class_: str
    :param coef: Restrict the prior to one coefficient ("b" and "sd")
    :type coef: Optional[str]
    :param group: Restrict the prior to one grouping factor ("sd" and "cor")
    :type group: Optional[str]
    :param dpar: Linear predictor the prior belongs to. Defaults to "mu".
    :type dpar: Optional[str]
    :param lb: Lower bound on the coefficients (class "b" only)
    :type lb: custom_types.Bound
    :param ub: Upper bound on the coefficients (class "b" only)
    :type ub: custom_types.Bound

    :returns: A collection holding the new prior
    :rtype: PriorSet

    :raises PriorError: If the prior is malformed
    """
    # Check the distribution
    if distribution.strip() != "":
        parse_distribution(distribution)

    # Check the qualifiers
    if coef is not None and class_ not in ("b", "sd"):
        raise PriorError(f"'coef' cannot be used with class '{class_}'.")
    if group is not None and class_ not in ("sd", "cor"):
        raise PriorError(f"'group' cannot be used with class '{class_}'.")
    if (lb is not None or ub is not None) and (class_ != "b" or coef is not None):
        raise PriorError("Bounds can only be set for the whole class 'b'.")
    if dpar is not None and class_ not in BUILTIN_CLASSES:
        raise PriorError(
            f"'dpar' cannot be used with class '{class_}'. Priors on constant "
            "dpars use the dpar name as the class."
        )

    return PriorSet(
        [
            Prior(
                distribution=distribution,
                class_=class_,
                coef=coef,
                group=group,
                dpar=dpar,
                lb=lb,
                ub=ub,
            )
        ]
    )
