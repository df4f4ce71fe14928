# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Link functions for distributional parameters.

A link maps a distributional parameter ("dpar") from its natural range onto the
unbounded scale of a linear predictor. Models are written on the linear
predictor scale, so both the generated Stan program and the Python
post-processing need the inverse map (the response function). Each
:py:class:`Link` therefore carries NumPy implementations of both directions
plus the name of the Stan function that applies the inverse.
"""

from __future__ import annotations

from typing import Callable

import numpy as np
import numpy.typing as npt

from scipy import special, stats

from stanfamilies import utils
from stanfamilies.exceptions import FamilyError


class Link:
    """An invertible link function.

    :param name: Name of the link (e.g., "logit")
    :type name: str
    :param link: NumPy function mapping the dpar scale to the linear predictor
        scale
    :type link: Callable[[npt.NDArray], npt.NDArray]
    :param inverse: NumPy function mapping the linear predictor scale back to
        the dpar scale
    :type inverse: Callable[[npt.NDArray], npt.NDArray]
    :param stan_inverse: Name of the Stan function applying the inverse. Empty
        for the identity link.
    :type stan_inverse: str
    """

    def __init__(
        self,
        name: str,
        link: Callable[[npt.NDArray], npt.NDArray],
        inverse: Callable[[npt.NDArray], npt.NDArray],
        stan_inverse: str,
    ):
        self.name = name
        self._link = link
        self._inverse = inverse
        self.stan_inverse = stan_inverse

    def link(self, x: npt.ArrayLike) -> npt.NDArray:
        """Apply the link function."""
        return np.asarray(self._link(np.asarray(x, dtype=float)))

    def inverse(self, eta: npt.ArrayLike) -> npt.NDArray:
        """Apply the inverse link (response) function."""
        return np.asarray(self._inverse(np.asarray(eta, dtype=float)))

    def stan_inverse_expr(self, expr: str) -> str:
        """Stan expression applying the inverse link to ``expr``.

        :param expr: A Stan expression on the linear predictor scale
        :type expr: str

        :returns: The expression wrapped in the inverse link function
        :rtype: str
        """
        if self.stan_inverse == "":
            return expr
        return f"{self.stan_inverse}({expr})"

    def __repr__(self) -> str:
        return f"Link({self.name!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Link) and other.name == self.name

    def __hash__(self) -> int:
        return hash(self.name)


LINKS: dict[str, Link] = {
    link.name: link
    for link in (
        Link("identity", lambda x: x, lambda x: x, ""),
        Link("log", np.log, np.exp, "exp"),
        Link("logit", special.logit, utils.stable_sigmoid, "inv_logit"),
        Link("probit", stats.norm.ppf, stats.norm.cdf, "Phi"),
        Link(
            "cloglog",
            lambda x: np.log(-np.log1p(-x)),
            lambda x: -np.expm1(-np.exp(x)),
            "inv_cloglog",
        ),
        Link("inverse", np.reciprocal, np.reciprocal, "inv"),
        Link("sqrt", np.sqrt, np.square, "square"),
        Link(
            "softplus",
            lambda x: x + np.log(-np.expm1(-x)),
            lambda x: np.logaddexp(0, x),
            "log1p_exp",
        ),
    )
}
"""All registered link functions by name."""


def get_link(name: str | Link) -> Link:
    """Look up a registered link function.

    :param name: Name of the link, or a Link which is returned unchanged
    :type name: Union[str, Link]

    :returns: The link function
    :rtype: Link

    :raises FamilyError: If the link is not registered
    """
    if isinstance(name, Link):
        return name
    if name not in LINKS:
        raise FamilyError(
            f"Unknown link function '{name}'. Valid links are: "
            + ", ".join(sorted(LINKS))
        )
    return LINKS[name]
