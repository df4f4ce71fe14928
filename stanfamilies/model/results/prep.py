# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Posterior draws prepared for family callbacks.

A :py:class:`PreparedDraws` object ("prep") is what the Python side of every
family works with. It holds the distributional parameters implied by each
posterior draw, already transformed to their response scale, together with the
per-observation data the likelihood needs. Families evaluate it one
observation at a time for log-likelihoods and predictive draws and all at once
for expected values. The methods of this class run those evaluations and check
that every callback returns arrays of the agreed shapes.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from tqdm import tqdm

from stanfamilies.exceptions import CallbackError

if TYPE_CHECKING:
    from stanfamilies import custom_types
    from stanfamilies.families import Family


class PreparedDraws:
    """Distributional parameters and data for S posterior draws and N
    observations.

    :param family: The response family
    :type family: Family
    :param dpars: Draws of each dpar on the response scale. Predicted dpars have
        shape (S, N), constant dpars shape (S,).
    :type dpars: dict[str, npt.NDArray]
    :param data: Per-observation data: ``Y`` (when known), ``trials``,
        ``vint*``, ``vreal*``, and stanvar data
    :type data: dict[str, Any]
    :param nobs: Number of observations (N)
    :type nobs: custom_types.Integer
    :param rng: Random number generator for predictive draws
    :type rng: np.random.Generator

    :raises CallbackError: If the dpar arrays disagree in shape
    """

    def __init__(
        self,
        family: "Family",
        dpars: dict[str, npt.NDArray],
        data: dict[str, Any],
        nobs: "custom_types.Integer",
        rng: np.random.Generator,
    ):
        self.family = family
        self.dpars = dpars
        self.data = data
        self.nobs = int(nobs)
        self.rng = rng

        # All dpars must share the number of draws
        if len({draws.shape[0] for draws in dpars.values()}) != 1:
            raise CallbackError("All dpars must have the same number of draws.")
        self.ndraws = next(iter(dpars.values())).shape[0]

        # Predicted dpars must cover every observation
        for name, draws in dpars.items():
            if draws.shape not in ((self.ndraws,), (self.ndraws, self.nobs)):
                raise CallbackError(
                    f"Draws of '{name}' have shape {draws.shape}; expected "
                    f"({self.ndraws},) or ({self.ndraws}, {self.nobs})."
                )

    def is_predicted(self, name: str) -> bool:
        """Whether a dpar has its own linear predictor."""
        return self.dpars[name].ndim == 2

    def get_dpar(
        self, name: str, i: Optional["custom_types.Integer"] = None
    ) -> npt.NDArray:
        """Draws of a dpar.

        :param name: Name of the dpar
        :type name: str
        :param i: Observation index. Predicted dpars return only the draws of
            this observation. Ignored for constant dpars.
        :type i: Optional[custom_types.Integer]

        :returns: Shape (S, N) for predicted dpars without ``i``, otherwise (S,)
        :rtype: npt.NDArray

        :raises KeyError: If the family has no such dpar
        """
        if name not in self.dpars:
            raise KeyError(
                f"Unknown dpar '{name}'. Available dpars are: {', '.join(self.dpars)}"
            )
        draws = self.dpars[name]
        if i is None or draws.ndim == 1:
            return draws
        return draws[:, i]

    def _per_observation(
        self, callback: Callable, kind: str, progress: bool
    ) -> npt.NDArray:
        """Run a per-observation callback and stack the results to (S, N)."""
        out = None
        for i in tqdm(range(self.nobs), desc=kind, disable=not progress, leave=False):
            result = np.asarray(callback(i, self))
            if result.shape != (self.ndraws,):
                raise CallbackError(
                    f"'{kind}' returned shape {result.shape} for observation {i}; "
                    f"expected ({self.ndraws},)."
                )
            if out is None:
                out = np.empty((self.ndraws, self.nobs), dtype=result.dtype)
            out[:, i] = result
        return out

    def log_lik(self, progress: bool = False) -> npt.NDArray:
        """Pointwise log-likelihood.

        :param progress: Whether to show a progress bar. Defaults to False.
        :type progress: bool

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray

        :raises CallbackError: If the callback returns the wrong shape
        :raises KeyError: If the response is unknown
        """
        if "Y" not in self.data:
            raise KeyError("The response is needed to evaluate the log-likelihood.")
        return self._per_observation(self.family.log_lik, "log_lik", progress)

    def posterior_predict(self, progress: bool = False) -> npt.NDArray:
        """One predictive draw per posterior draw and observation.

        :param progress: Whether to show a progress bar. Defaults to False.
        :type progress: bool

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray

        :raises CallbackError: If the callback returns the wrong shape
        """
        return self._per_observation(
            self.family.posterior_predict, "posterior_predict", progress
        )

    def posterior_epred(self) -> npt.NDArray:
        """Expected value of the response for every draw and observation.

        :returns: Array of shape (S, N)
        :rtype: npt.NDArray

        :raises CallbackError: If the callback returns the wrong shape
        """
        result = np.asarray(self.family.posterior_epred(self))
        if result.shape != (self.ndraws, self.nobs):
            raise CallbackError(
                f"'posterior_epred' returned shape {result.shape}; expected "
                f"({self.ndraws}, {self.nobs})."
            )
        return result

    def __repr__(self) -> str:
        return (
            f"PreparedDraws(family={self.family.name!r}, ndraws={self.ndraws}, "
            f"nobs={self.nobs}, dpars={list(self.dpars)})"
        )
