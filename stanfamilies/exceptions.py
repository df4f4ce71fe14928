# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom exception classes for the stanfamilies package.

All package-specific exceptions inherit from :py:class:`StanFamiliesError` so
that they can be caught with a single except clause. Failures raised by Stan,
cmdstanpy, or ArviZ (compiler errors, sampler failures, etc.) are not wrapped
and reach the user unchanged.
"""


class StanFamiliesError(Exception):
    """Base class for all exceptions in the stanfamilies package.

    Example:
        >>> try:
        ...     family = custom_family("bad name", dpars=["mu"])
        ... except StanFamiliesError as e:
        ...     print(f"stanfamilies error occurred: {e}")
    """


class FamilyError(StanFamiliesError):
    """Raised when a response family is malformed.

    Typical causes are dpar, link, and bound lists of different lengths, an
    unknown link function, a duplicated or reserved dpar name, or a family
    type other than "int" or "real".
    """


class FormulaError(StanFamiliesError):
    """Raised when a model formula cannot be interpreted.

    This covers unparseable formulas, unknown addition terms, columns that are
    missing from the data, missing values in used columns, and formulas that
    do not provide the variables the family needs (e.g., ``trials``).
    """


class StanVarError(StanFamiliesError):
    """Raised when a Stan snippet or auxiliary data definition is invalid."""


class PriorError(StanFamiliesError):
    """Raised when a prior refers to a class, coefficient, or group that the
    model does not have, or when its distribution string cannot be parsed.
    """


class CallbackError(StanFamiliesError):
    """Raised when a custom family callback is missing or returns an array of
    the wrong shape.
    """
