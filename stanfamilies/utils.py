# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the stanfamilies package.

This module provides:

    - A lazy importing mechanism for the heavier subpackages
    - Numerically stable link helpers
    - Stan identifier validation
    - Helpers for moving between ArviZ (chain, draw) layouts and flat draws

Users will not typically need to interact with this module directly.
"""

from __future__ import annotations

import importlib.util
import re
import sys

from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import xarray as xr

if TYPE_CHECKING:
    from stanfamilies import custom_types

STAN_IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
"""Pattern for identifiers that Stan accepts and that do not end in ``__``."""

STAN_RESERVED_WORDS = frozenset(
    (
        "for", "in", "while", "repeat", "until", "if", "then", "else", "true",
        "false", "target", "functions", "model", "data", "parameters",
        "quantities", "transformed", "generated", "profile", "return", "break",
        "continue", "int", "real", "complex", "vector", "row_vector", "matrix",
        "array", "tuple", "void", "lower", "upper", "offset", "multiplier",
        "print", "reject", "fatal_error", "struct", "typedef", "export",
        "auto", "extern", "var", "static",
    )
)
"""Words that cannot be used as Stan variable names."""


def lazy_import(name: str):
    """Import a module only when it is first needed.

    :param name: The fully qualified module name to import
    :type name: str

    :returns: The imported module
    :rtype: module

    :raises ImportError: If the specified module cannot be found
    """
    # Modules that are already loaded are returned as-is
    if name in sys.modules:
        return sys.modules[name]

    # Modified from here:
    # https://docs.python.org/3/library/importlib.html#implementing-lazy-imports
    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")

    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def stable_sigmoid(exponent: npt.NDArray[np.floating]) -> npt.NDArray[np.floating]:
    r"""Compute the logistic function without overflow.

    .. math::

        \sigma(x) =
        \begin{cases}
            \frac{1}{1 + e^{-x}} & \text{if } x \geq 0 \\
            \frac{e^{x}}{1 + e^{x}} & \text{if } x < 0
        \end{cases}

    :param exponent: Input values
    :type exponent: npt.NDArray[np.floating]

    :returns: Sigmoid values with the same shape as the input
    :rtype: npt.NDArray[np.floating]
    """
    exponent = np.asarray(exponent, dtype=float)
    sigma_exponent = np.full_like(exponent, np.nan)

    # Different approach for positive and negative values
    mask = exponent >= 0
    sigma_exponent[mask] = 1 / (1 + np.exp(-exponent[mask]))
    neg_calc = np.exp(exponent[~mask])
    sigma_exponent[~mask] = neg_calc / (1 + neg_calc)

    return sigma_exponent


def is_stan_identifier(name: str) -> bool:
    """Whether ``name`` can be used as a Stan variable name.

    :param name: Candidate name
    :type name: str

    :returns: True if the name is a legal, non-reserved identifier
    :rtype: bool
    """
    return (
        STAN_IDENTIFIER.match(name) is not None
        and not name.endswith("__")
        and name not in STAN_RESERVED_WORDS
    )


def flatten_draws(array: xr.DataArray) -> npt.NDArray:
    """Collapse the (chain, draw) dimensions of a posterior variable into one.

    Chains are concatenated in order, so draw ``s`` of the result is draw
    ``s % n_draws`` of chain ``s // n_draws``.

    :param array: A posterior variable with leading "chain" and "draw" dims
    :type array: xr.DataArray

    :returns: Array of shape (S, ...) where S = chains * draws
    :rtype: npt.NDArray
    """
    values = array.transpose("chain", "draw", ...).values
    return values.reshape((-1,) + values.shape[2:])


def unflatten_draws(
    values: npt.NDArray, n_chains: "custom_types.Integer"
) -> npt.NDArray:
    """Inverse of :py:func:`flatten_draws`.

    :param values: Array of shape (S, ...)
    :type values: npt.NDArray
    :param n_chains: Number of chains to split the leading dimension into
    :type n_chains: custom_types.Integer

    :returns: Array of shape (chains, S / chains, ...)
    :rtype: npt.NDArray
    """
    return values.reshape((int(n_chains), -1) + values.shape[1:])


GENERATED_NAME = re.compile(
    r"^(?:"
    r"(?:N|Y|K|X|Xc|means_X|b|Intercept|prior_only|trials|lprior)(?:_[A-Za-z0-9]+)?"
    r"|(?:vint|vreal)[0-9]+"
    r"|(?:N|M|J|Z|sd|z|L|r|Cor)_[0-9]+(?:_[A-Za-z0-9]+)?"
    r")$"
)
"""Pattern matching every variable name the program generator may declare."""


def is_generated_name(name: str) -> bool:
    """Whether ``name`` collides with a name declared by the generated program.

    :param name: Candidate name
    :type name: str

    :returns: True if the program generator may use this name
    :rtype: bool
    """
    return GENERATED_NAME.match(name) is not None
