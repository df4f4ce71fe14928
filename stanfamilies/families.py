# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Response families for stanfamilies models.

A family describes the distribution of the response given its distributional
parameters ("dpars"). Every family knows:

    - The names of its dpars, the link function of each, and any bounds
    - Whether the response is discrete ("int") or continuous ("real")
    - How to write its likelihood as Stan code
    - How to evaluate log-densities, draw predictions, and compute expected
      values from posterior draws in Python

The built-in families (:py:class:`Binomial`, :py:class:`Poisson`,
:py:class:`Gaussian`, :py:class:`Gamma`) are declared through class attributes
and use ``scipy.stats`` for the Python side. User-defined distributions are
declared with :py:func:`custom_family`, which takes the Stan side from a
user-supplied snippet (see :py:func:`stanfamilies.stanvars.stanvar`) and the
Python side from three callbacks:

    - ``log_lik(i, prep)``: log-density of observation ``i``, shape (S,)
    - ``posterior_predict(i, prep)``: predictive draws of observation ``i``,
      shape (S,)
    - ``posterior_epred(prep)``: expected values, shape (S, N)

where ``prep`` is a :py:class:`~stanfamilies.model.results.prep.PreparedDraws`.

Example:
    >>> beta_binomial2 = custom_family(
    ...     "beta_binomial2",
    ...     dpars=["mu", "phi"],
    ...     links=["logit", "log"],
    ...     lb=[0, 0],
    ...     ub=[1, None],
    ...     type="int",
    ...     vars=["vint1[n]"],
    ... )
    >>> @beta_binomial2.posterior_epred
    ... def epred(prep):
    ...     return prep.get_dpar("mu") * prep.data["vint1"]
"""

from __future__ import annotations

import re

from typing import Any, Callable, Literal, Optional, Sequence, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scipy import stats

from stanfamilies import utils
from stanfamilies.exceptions import CallbackError, FamilyError
from stanfamilies.links import get_link, Link

if TYPE_CHECKING:
    from stanfamilies import custom_types
    from stanfamilies.model.results.prep import PreparedDraws

DPAR_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
"""Dpar names are letters and digits only. Underscores are used to build the
names of dpar-specific Stan variables (e.g., ``b_phi``)."""

AUX_VARIABLE = re.compile(r"\b(trials|vint[0-9]+|vreal[0-9]+)\b")
"""Matches the formula-provided data variables inside a Stan expression."""


def stan_bounds(lb: "custom_types.Bound", ub: "custom_types.Bound") -> str:
    """Build the ``<lower=..., upper=...>`` part of a Stan declaration."""
    bounds = []
    if lb is not None:
        bounds.append(f"lower={lb}")
    if ub is not None:
        bounds.append(f"upper={ub}")
    if not bounds:
        return ""
    return f"<{', '.join(bounds)}>"


class Family:
    """Base class for response families.

    Subclasses declare the distribution through class attributes and may pass
    per-dpar link functions on construction. The first positional argument
    sets the link of ``mu``; keyword arguments ``link_<dpar>`` set the link of
    the other dpars.

    :param link: Link function of ``mu``. Defaults to ``DEFAULT_LINKS["mu"]``.
    :type link: Optional[Union[str, Link]]
    :param dpar_links: Links of the remaining dpars as ``link_<dpar>=...``

    :raises FamilyError: If a link is unknown or names a dpar the family does
        not have
    """

    NAME: str
    """Name of the family as it appears in summaries."""

    DPARS: tuple[str, ...] = ("mu",)
    """Names of the distributional parameters. The first is always ``mu``."""

    DEFAULT_LINKS: dict[str, str] = {"mu": "identity"}
    """Default link function for each dpar."""

    TYPE: Literal["int", "real"] = "real"
    """Whether the response is discrete ("int") or continuous ("real")."""

    DPAR_BOUNDS: dict[str, tuple["custom_types.Bound", "custom_types.Bound"]] = {}
    """(lower, upper) bounds of dpars. Used when a dpar is a constant parameter."""

    REQUIRES_TRIALS: bool = False
    """Whether the formula must provide ``trials(...)``."""

    STAN_DIST: str = ""
    """Name of the Stan distribution used in the likelihood."""

    STAN_ARGS: str = "{mu}"
    """Template of the arguments following ``Y |`` in the Stan likelihood. Dpar
    names in braces are replaced with their Stan expressions."""

    SCIPY_DIST: type[stats.rv_continuous] | type[stats.rv_discrete] | None = None
    """Corresponding SciPy distribution (e.g., ``scipy.stats.norm``)."""

    STAN_TO_SCIPY_NAMES: dict[str, str] = {}
    """Maps dpar names to the keyword arguments of ``SCIPY_DIST``."""

    STAN_TO_SCIPY_TRANSFORMS: dict[str, Callable[[npt.NDArray], npt.NDArray]] = {}
    """Transformations converting dpars to the SciPy parametrization."""

    LOOP: bool = False
    """Whether the likelihood is written as a per-observation loop."""

    def __init__(self, link: Optional[Union[str, Link]] = None, **dpar_links):

        # Get the links for each dpar
        links = dict(self.DEFAULT_LINKS)
        if link is not None:
            links["mu"] = link
        for key, val in dpar_links.items():
            dpar = key.removeprefix("link_")
            if not key.startswith("link_") or dpar not in self.DPARS:
                raise FamilyError(
                    f"Unknown argument '{key}' for family '{self.NAME}'. Links "
                    "are set with 'link_<dpar>' for dpars "
                    f"{', '.join(self.DPARS)}."
                )
            links[dpar] = val

        self.name = self.NAME
        self.dpars: tuple[str, ...] = tuple(self.DPARS)
        self.links: dict[str, Link] = {
            dpar: get_link(links.get(dpar, "identity")) for dpar in self.dpars
        }
        self.bounds: dict[
            str, tuple["custom_types.Bound", "custom_types.Bound"]
        ] = {dpar: self.DPAR_BOUNDS.get(dpar, (None, None)) for dpar in self.dpars}
        self.type = self.TYPE
        self.vars: tuple[str, ...] = ()
        self.loop = self.LOOP

    @property
    def is_discrete(self) -> bool:
        """Whether the response is integer valued."""
        return self.type == "int"

    @property
    def stan_suffix(self) -> str:
        """``_lpmf`` for discrete families, ``_lpdf`` for continuous ones."""
        return "_lpmf" if self.is_discrete else "_lpdf"

    @property
    def required_variables(self) -> set[str]:
        """Formula-provided data variables (``trials``, ``vint1``, ...) that the
        likelihood uses."""
        needed = {"trials"} if self.REQUIRES_TRIALS else set()
        for expr in self.vars:
            needed.update(AUX_VARIABLE.findall(expr))
        return needed

    def stan_dpar_declaration(self, dpar: str) -> str:
        """Stan parameter declaration of a dpar modeled as a single constant.

        :param dpar: Name of the dpar
        :type dpar: str

        :returns: Declaration such as ``real<lower=0> phi``
        :rtype: str
        """
        return f"real{stan_bounds(*self.bounds[dpar])} {dpar}"

    def _stan_args(self, dpar_exprs: dict[str, str]) -> str:
        """Arguments of the Stan likelihood following ``Y |``."""
        return self.STAN_ARGS.format(**dpar_exprs)

    def stan_likelihood(self, predicted: Sequence[str]) -> list:
        """Stan statements adding the log-likelihood to ``target``.

        :param predicted: Names of the dpars that have their own linear
            predictor (and are therefore vectors in the model block)
        :type predicted: Sequence[str]

        :returns: Lines of Stan code. Nested lists are indented one level.
        :rtype: list
        """
        function = f"{self.STAN_DIST}{self.stan_suffix}"

        # Per-observation loop
        if self.loop:
            dpar_exprs = {
                dpar: f"{dpar}[n]" if dpar in predicted else dpar
                for dpar in self.dpars
            }
            return [
                "for (n in 1:N) {",
                [f"target += {function}(Y[n] | {self._stan_args(dpar_exprs)})"],
                "}",
            ]

        # Vectorized statement
        dpar_exprs = {dpar: dpar for dpar in self.dpars}
        return [f"target += {function}(Y | {self._stan_args(dpar_exprs)})"]

    def scipy_kwargs(self, prep: "PreparedDraws", i: "custom_types.Integer") -> dict:
        """Keyword arguments of ``SCIPY_DIST`` for observation ``i``.

        Each value has one entry per posterior draw.
        """
        return {
            self.STAN_TO_SCIPY_NAMES[dpar]: self.STAN_TO_SCIPY_TRANSFORMS.get(
                dpar, lambda x: x
            )(prep.get_dpar(dpar, i))
            for dpar in self.dpars
        }

    def log_lik(self, i: "custom_types.Integer", prep: "PreparedDraws") -> npt.NDArray:
        """Log-density of observation ``i`` under each posterior draw.

        :param i: Index of the observation
        :type i: custom_types.Integer
        :param prep: Prepared posterior draws
        :type prep: PreparedDraws

        :returns: Array of shape (S,)
        :rtype: npt.NDArray
        """
        y = prep.data["Y"][i]
        if self.is_discrete:
            return self.SCIPY_DIST.logpmf(y, **self.scipy_kwargs(prep, i))
        return self.SCIPY_DIST.logpdf(y, **self.scipy_kwargs(prep, i))

    def posterior_predict(
        self, i: "custom_types.Integer", prep: "PreparedDraws"
    ) -> npt.NDArray:
        """One predictive draw of observation ``i`` per posterior draw.

        :returns: Array of shape (S,)
        :rtype: npt.NDArray
        """
        kwargs = self.scipy_kwargs(prep, i)
        return np.asarray(
            self.SCIPY_DIST.rvs(**kwargs, size=prep.ndraws, random_state=prep.rng)
        )

    def posterior_epred(self, prep: "PreparedDraws") -> npt.NDArray:
        """Expected value of the response for every draw and observation.

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray
        """
        return prep.get_dpar("mu")

    def __repr__(self) -> str:
        links = ", ".join(f"{dpar}={link.name}" for dpar, link in self.links.items())
        return f"{self.__class__.__name__}({links})"

    def __str__(self) -> str:
        return (
            f"{self.name} ("
            + "; ".join(f"{dpar} = {link.name}" for dpar, link in self.links.items())
            + ")"
        )


class Binomial(Family):
    """Binomial response. ``mu`` is the success probability; the number of
    trials comes from ``trials(...)`` in the formula.
    """

    NAME = "binomial"
    DEFAULT_LINKS = {"mu": "logit"}
    TYPE = "int"
    REQUIRES_TRIALS = True
    STAN_DIST = "binomial"
    STAN_ARGS = "trials, {mu}"
    SCIPY_DIST = stats.binom
    STAN_TO_SCIPY_NAMES = {"mu": "p"}

    def scipy_kwargs(self, prep, i):
        return {"n": prep.data["trials"][i], "p": prep.get_dpar("mu", i)}

    def posterior_epred(self, prep):
        return prep.get_dpar("mu") * prep.data["trials"][None]


class Poisson(Family):
    """Poisson response with rate ``mu``."""

    NAME = "poisson"
    DEFAULT_LINKS = {"mu": "log"}
    TYPE = "int"
    STAN_DIST = "poisson"
    STAN_ARGS = "{mu}"
    SCIPY_DIST = stats.poisson
    STAN_TO_SCIPY_NAMES = {"mu": "mu"}


class Gaussian(Family):
    """Normal response with mean ``mu`` and standard deviation ``sigma``."""

    NAME = "gaussian"
    DPARS = ("mu", "sigma")
    DEFAULT_LINKS = {"mu": "identity", "sigma": "log"}
    TYPE = "real"
    DPAR_BOUNDS = {"sigma": (0, None)}
    STAN_DIST = "normal"
    STAN_ARGS = "{mu}, {sigma}"
    SCIPY_DIST = stats.norm
    STAN_TO_SCIPY_NAMES = {"mu": "loc", "sigma": "scale"}


class Gamma(Family):
    r"""Gamma response parametrized by its mean ``mu`` and ``shape``.

    In Stan this is ``gamma(shape, shape / mu)`` so that

    .. math::
        E[y] = \mu, \qquad Var[y] = \mu^2 / \text{shape}
    """

    NAME = "gamma"
    DPARS = ("mu", "shape")
    DEFAULT_LINKS = {"mu": "log", "shape": "log"}
    TYPE = "real"
    DPAR_BOUNDS = {"shape": (0, None)}
    STAN_DIST = "gamma"
    STAN_ARGS = "{shape}, {shape} ./ {mu}"
    SCIPY_DIST = stats.gamma
    STAN_TO_SCIPY_NAMES = {"shape": "a", "mu": "scale"}

    def scipy_kwargs(self, prep, i):
        shape = prep.get_dpar("shape", i)
        return {"a": shape, "scale": prep.get_dpar("mu", i) / shape}


class CustomFamily(Family):
    """A user-defined response family.

    Instances are created with :py:func:`custom_family`. The Stan side is the
    user-supplied ``<name>_lpmf`` or ``<name>_lpdf`` function; the Python side
    is provided by the registered callbacks. Callbacks can be passed on
    construction or registered afterwards with the decorator methods
    :py:meth:`log_lik`, :py:meth:`posterior_predict`, and
    :py:meth:`posterior_epred`.
    """

    def __init__(
        self,
        name: str,
        dpars: tuple[str, ...],
        links: dict[str, Link],
        bounds: dict[str, tuple["custom_types.Bound", "custom_types.Bound"]],
        type: Literal["int", "real"],  # pylint: disable=redefined-builtin
        vars: tuple[str, ...],  # pylint: disable=redefined-builtin
        loop: bool,
    ):
        # pylint: disable=super-init-not-called
        self.name = name
        self.dpars = dpars
        self.links = links
        self.bounds = bounds
        self.type = type
        self.vars = vars
        self.loop = loop
        self.STAN_DIST = name
        self._callbacks: dict[str, Optional[Callable]] = {
            "log_lik": None,
            "posterior_predict": None,
            "posterior_epred": None,
        }

    def _stan_args(self, dpar_exprs):
        return ", ".join([dpar_exprs[dpar] for dpar in self.dpars] + list(self.vars))

    def has_callback(self, kind: str) -> bool:
        """Whether a callback of the given kind has been registered."""
        return self._callbacks[kind] is not None

    def _register_or_call(self, kind: str, args: tuple) -> Any:
        # Used as a decorator
        if len(args) == 1 and callable(args[0]):
            self._callbacks[kind] = args[0]
            return args[0]

        # Used as a callback
        if (callback := self._callbacks[kind]) is None:
            raise CallbackError(
                f"Custom family '{self.name}' has no '{kind}' callback. Register "
                f"one with the @family.{kind} decorator or pass {kind}=... to "
                "custom_family()."
            )
        return callback(*args)

    def log_lik(self, *args):
        """Register (as a decorator) or call the ``log_lik(i, prep)`` callback."""
        return self._register_or_call("log_lik", args)

    def posterior_predict(self, *args):
        """Register (as a decorator) or call the ``posterior_predict(i, prep)``
        callback."""
        return self._register_or_call("posterior_predict", args)

    def posterior_epred(self, *args):
        """Register (as a decorator) or call the ``posterior_epred(prep)``
        callback."""
        return self._register_or_call("posterior_epred", args)

    def scipy_kwargs(self, prep, i):
        raise CallbackError(
            f"Custom family '{self.name}' has no SciPy counterpart. Use its "
            "callbacks instead."
        )

    def __repr__(self) -> str:
        return f"CustomFamily({self.name!r}, dpars={list(self.dpars)})"


def custom_family(
    name: str,
    dpars: Sequence[str] = ("mu",),
    links: Union[str, Sequence[str]] = "identity",
    lb: Union["custom_types.Bound", Sequence["custom_types.Bound"]] = None,
    ub: Union["custom_types.Bound", Sequence["custom_types.Bound"]] = None,
    type: str = "real",  # pylint: disable=redefined-builtin
    vars: Union[str, Sequence[str]] = (),  # pylint: disable=redefined-builtin
    loop: bool = True,
    log_lik: Optional["custom_types.LogLikCallback"] = None,
    posterior_predict: Optional["custom_types.PredictCallback"] = None,
    posterior_epred: Optional["custom_types.EpredCallback"] = None,
) -> CustomFamily:
    """Declare a custom response family.

    :param name: Name of the family. The Stan program must define
        ``<name>_lpmf`` (``type="int"``) or ``<name>_lpdf`` (``type="real"``).
    :type name: str
    :param dpars: Names of the distributional parameters. The first must be
        "mu". Defaults to ``("mu",)``.
    :type dpars: Sequence[str]
    :param links: Link function for all dpars or one per dpar.
    :type links: Union[str, Sequence[str]]
    :param lb: Lower bound of each dpar (None for unbounded)
    :type lb: Optional[Sequence[custom_types.Bound]]
    :param ub: Upper bound of each dpar (None for unbounded)
    :type ub: Optional[Sequence[custom_types.Bound]]
    :param type: "int" for discrete responses and "real" for continuous ones
    :type type: str
    :param vars: Stan expressions appended to the arguments of the density,
        such as ``"vint1[n]"``
    :type vars: Union[str, Sequence[str]]
    :param loop: If True (default), the likelihood is evaluated one observation
        at a time in a for loop over ``n``. If False, the density is called
        once with whole vectors.
    :type loop: bool
    :param log_lik: ``log_lik(i, prep)`` callback
    :param posterior_predict: ``posterior_predict(i, prep)`` callback
    :param posterior_epred: ``posterior_epred(prep)`` callback

    :returns: The family descriptor
    :rtype: CustomFamily

    :raises FamilyError: If the descriptor is malformed
    """
    # Check the name
    if not utils.is_stan_identifier(name):
        raise FamilyError(f"'{name}' is not a valid name for a Stan function.")

    # Check the dpars
    dpars = (dpars,) if isinstance(dpars, str) else tuple(dpars)
    if len(dpars) == 0 or dpars[0] != "mu":
        raise FamilyError("The first dpar of a custom family must be 'mu'.")
    if len(set(dpars)) != len(dpars):
        raise FamilyError(f"Duplicate dpar names in {list(dpars)}.")
    for dpar in dpars:
        if DPAR_NAME.match(dpar) is None:
            raise FamilyError(
                f"Invalid dpar name '{dpar}'. Dpar names may only contain letters "
                "and digits and must start with a letter."
            )
        if utils.is_generated_name(dpar) or not utils.is_stan_identifier(dpar):
            raise FamilyError(f"Dpar name '{dpar}' is reserved.")

    # Expand per-dpar arguments
    def expand(arg, argname):
        if arg is None:
            return (None,) * len(dpars)
        if isinstance(arg, (str, int, float)):
            return (arg,) * len(dpars)
        arg = tuple(arg)
        if len(arg) != len(dpars):
            raise FamilyError(
                f"'{argname}' has {len(arg)} entries but the family has "
                f"{len(dpars)} dpars."
            )
        return arg

    links = expand(links, "links")
    lb = expand(lb, "lb")
    ub = expand(ub, "ub")
    for dpar, lower, upper in zip(dpars, lb, ub):
        if lower is not None and upper is not None and lower >= upper:
            raise FamilyError(
                f"Lower bound {lower} of '{dpar}' is not below its upper bound {upper}."
            )

    # Check the type
    if type not in ("int", "real"):
        raise FamilyError(f"Family type must be 'int' or 'real', not '{type}'.")

    # Build the family
    family = CustomFamily(
        name=name,
        dpars=dpars,
        links={dpar: get_link(link) for dpar, link in zip(dpars, links)},
        bounds={dpar: (lower, upper) for dpar, lower, upper in zip(dpars, lb, ub)},
        type=type,
        vars=(vars,) if isinstance(vars, str) else tuple(vars),
        loop=loop,
    )

    # Register any callbacks
    for kind, callback in (
        ("log_lik", log_lik),
        ("posterior_predict", posterior_predict),
        ("posterior_epred", posterior_epred),
    ):
        if callback is not None:
            getattr(family, kind)(callback)

    return family


def binomial(link: str = "logit") -> Binomial:
    """Binomial family. The formula must provide ``trials(...)``."""
    return Binomial(link)


def poisson(link: str = "log") -> Poisson:
    """Poisson family."""
    return Poisson(link)


def gaussian(link: str = "identity", link_sigma: str = "log") -> Gaussian:
    """Gaussian family."""
    return Gaussian(link, link_sigma=link_sigma)


def gamma(link: str = "log", link_shape: str = "log") -> Gamma:
    """Gamma family parametrized by mean and shape."""
    return Gamma(link, link_shape=link_shape)


FAMILIES: dict[str, Callable[[], Family]] = {
    "binomial": binomial,
    "poisson": poisson,
    "gaussian": gaussian,
    "gamma": gamma,
}
"""Factories of the built-in families by name."""


def get_family(family: "custom_types.FamilyType") -> Family:
    """Resolve a family argument into a family instance.

    :param family: A family or the name of a built-in family
    :type family: custom_types.FamilyType

    :returns: The family
    :rtype: Family

    :raises FamilyError: If the name is unknown
    """
    if isinstance(family, Family):
        return family
    if family not in FAMILIES:
        raise FamilyError(
            f"Unknown family '{family}'. Built-in families are: "
            + ", ".join(sorted(FAMILIES))
            + ". Use custom_family() for anything else."
        )
    return FAMILIES[family]()
