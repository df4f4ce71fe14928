# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""User-supplied Stan code and auxiliary data.

Custom families need code that the program generator cannot write on its own:
at the very least the density function of the family, usually also a random
number generator for it, and sometimes extra data. :py:func:`stanvar` wraps
both kinds of additions. Each call returns a :py:class:`StanVars` collection,
and collections are combined with ``+``:

    >>> scode = '''
    ...   real beta_binomial2_lpmf(int y, real mu, real phi, int T) {
    ...     return beta_binomial_lpmf(y | T, mu * phi, (1 - mu) * phi);
    ...   }
    ... '''
    >>> extra = stanvar(scode=scode, block="functions") + stanvar(
    ...     x=np.array([1.0, 2.0]), name="weights"
    ... )
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from stanfamilies import utils
from stanfamilies.exceptions import StanVarError

if TYPE_CHECKING:
    from stanfamilies import custom_types

BLOCKS = (
    "functions",
    "data",
    "tdata",
    "parameters",
    "tparameters",
    "model",
    "genquant",
)
"""Program blocks that stanvars can be placed in, in program order."""


class StanVar:
    """A single piece of user-supplied Stan code and/or data.

    :ivar name: Name of the data variable (None for pure code)
    :ivar x: Data passed to Stan under ``name`` (None for pure code)
    :ivar scode: Stan code inserted into ``block``
    :ivar block: Program block the code belongs to
    :ivar position: "start" or "end" of the block
    """

    def __init__(
        self,
        x: Optional[npt.ArrayLike],
        name: Optional[str],
        scode: str,
        block: str,
        position: str,
    ):
        self.x = x
        self.name = name
        self.scode = scode
        self.block = block
        self.position = position

    @property
    def has_data(self) -> bool:
        return self.x is not None

    def __repr__(self) -> str:
        return (
            f"StanVar(name={self.name!r}, block={self.block!r}, "
            f"position={self.position!r})"
        )


def infer_declaration(
    x: npt.ArrayLike, name: str
) -> tuple[str, "custom_types.Float | custom_types.Integer | npt.NDArray"]:
    """Infer the Stan declaration of a data variable from its value.

    :param x: The value
    :type x: npt.ArrayLike
    :param name: Name of the variable
    :type name: str

    :returns: The declaration and the value converted to the matching NumPy
        type
    :rtype: tuple[str, Union[custom_types.Float, custom_types.Integer, npt.NDArray]]

    :raises StanVarError: If no declaration can be inferred
    """
    array = np.asarray(x)
    if array.dtype == bool:
        array = array.astype(np.int64)
    if not (np.issubdtype(array.dtype, np.integer) or np.issubdtype(array.dtype, np.floating)):
        raise StanVarError(
            f"Cannot infer a Stan type for '{name}' with dtype {array.dtype}. "
            "Pass numeric data or give the declaration with 'scode'."
        )
    is_int = np.issubdtype(array.dtype, np.integer)

    # Scalars
    if array.ndim == 0:
        if is_int:
            return f"int {name}", int(array)
        return f"real {name}", float(array)

    # Vectors and arrays
    if array.ndim == 1:
        if is_int:
            return f"array[{array.shape[0]}] int {name}", array
        return f"vector[{array.shape[0]}] {name}", array.astype(float)

    # Matrices
    if array.ndim == 2:
        if is_int:
            return f"array[{array.shape[0]}, {array.shape[1]}] int {name}", array
        return f"matrix[{array.shape[0]}, {array.shape[1]}] {name}", array.astype(float)

    raise StanVarError(
        f"Cannot infer a Stan type for '{name}' with {array.ndim} dimensions. "
        "Give the declaration with 'scode'."
    )


class StanVars:
    """An ordered collection of :py:class:`StanVar` objects.

    Collections are combined with ``+``. Data names must be unique.
    """

    def __init__(self, stanvars: Optional[list[StanVar]] = None):
        self.stanvars: list[StanVar] = list(stanvars or [])

        # Check for duplicate data names
        names = [sv.name for sv in self.stanvars if sv.name is not None]
        if duplicates := sorted({name for name in names if names.count(name) > 1}):
            raise StanVarError(f"Duplicate stanvar names: {', '.join(duplicates)}.")

    def __add__(self, other: "StanVars") -> "StanVars":
        if not isinstance(other, StanVars):
            return NotImplemented
        return StanVars(self.stanvars + other.stanvars)

    def __iter__(self):
        return iter(self.stanvars)

    def __len__(self) -> int:
        return len(self.stanvars)

    def code(self, block: str, position: str) -> list[str]:
        """Code snippets of a block at a position.

        :param block: One of :py:data:`BLOCKS`
        :type block: str
        :param position: "start" or "end"
        :type position: str

        :returns: The snippets, in the order they were added
        :rtype: list[str]
        """
        return [
            sv.scode
            for sv in self.stanvars
            if sv.block == block and sv.position == position and sv.scode
        ]

    def data(self) -> dict:
        """Data of all data stanvars, keyed by name."""
        return {
            sv.name: infer_declaration(sv.x, sv.name)[1]
            for sv in self.stanvars
            if sv.has_data
        }

    def __repr__(self) -> str:
        return f"StanVars({self.stanvars!r})"


def stanvar(
    x: Optional[npt.ArrayLike] = None,
    name: Optional[str] = None,
    scode: Optional[str] = None,
    block: str = "data",
    position: str = "start",
) -> StanVars:
    """Add Stan code and/or data to a generated program.

    :param x: Data to pass to Stan. Requires ``name``.
    :type x: Optional[npt.ArrayLike]
    :param name: Name of the data variable in Stan
    :type name: Optional[str]
    :param scode: Stan code. For data stanvars it defaults to a declaration
        inferred from ``x``.
    :type scode: Optional[str]
    :param block: Program block of the code. Defaults to "data".
    :type block: str
    :param position: Whether the code goes at the "start" or "end" of the block
    :type position: str

    :returns: A collection holding the new stanvar
    :rtype: StanVars

    :raises StanVarError: If the name is missing, invalid, or reserved, or if
        neither data nor code is given
    """
    if x is None and scode is None:
        raise StanVarError("A stanvar needs data ('x'), code ('scode'), or both.")
    if block not in BLOCKS:
        raise StanVarError(
            f"Unknown block '{block}'. Valid blocks are: {', '.join(BLOCKS)}."
        )
    if position not in ("start", "end"):
        raise StanVarError(f"Position must be 'start' or 'end', not '{position}'.")

    # Data stanvars
    if x is not None:
        if name is None:
            raise StanVarError("Data stanvars need a 'name'.")
        if not utils.is_stan_identifier(name):
            raise StanVarError(f"'{name}' is not a valid Stan variable name.")
        if utils.is_generated_name(name):
            raise StanVarError(
                f"'{name}' is used by the generated program. Choose another name."
            )
        if block != "data":
            raise StanVarError("Data stanvars must be placed in the 'data' block.")
        if scode is None:
            scode = infer_declaration(x, name)[0]

    scode = scode.strip()
    if scode and not scode.endswith((";", "}")):
        scode = f"{scode};"

    return StanVars([StanVar(x=x, name=name, scode=scode, block=block, position=position)])
