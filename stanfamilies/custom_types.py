# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for stanfamilies.

Type aliases used for annotations and documentation throughout the package.
Imports are conditional on TYPE_CHECKING to avoid circular imports.
"""

from typing import Callable, TYPE_CHECKING, Union

if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt

    from stanfamilies import families, formula
    from stanfamilies.model.results import prep

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

:type: Union[float, np.floating]
"""

Bound = Union[int, float, None]
"""A bound on a distributional parameter. ``None`` means unbounded.

:type: Union[int, float, None]
"""

# Model inputs
FamilyType = Union["families.Family", str]
"""Either a family instance or the name of a built-in family.

:type: Union[families.Family, str]
"""

FormulaType = Union["formula.BayesFormula", str]
"""Either a ``BayesFormula`` or a plain formula string.

:type: Union[formula.BayesFormula, str]
"""

# Callback signatures
LogLikCallback = Callable[[int, "prep.PreparedDraws"], "npt.NDArray"]
"""``log_lik(i, prep)``: log-density of observation ``i`` for every draw.

:type: Callable[[int, PreparedDraws], npt.NDArray]
"""

PredictCallback = Callable[[int, "prep.PreparedDraws"], "npt.NDArray"]
"""``posterior_predict(i, prep)``: one predictive draw of observation ``i`` per
posterior draw.

:type: Callable[[int, PreparedDraws], npt.NDArray]
"""

EpredCallback = Callable[["prep.PreparedDraws"], "npt.NDArray"]
"""``posterior_epred(prep)``: expected value of every observation for every
draw, shape (S, N).

:type: Callable[[PreparedDraws], npt.NDArray]
"""
