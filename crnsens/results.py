"""
Views onto integrated joint solutions: states, outputs, sensitivities and curvatures at
arbitrary query times.

The number of active parameters ``nT`` is never stored alongside a solution; it is recovered from
the length of the joint vector (see [`num_active_parameters`][crnsens.results.num_active_parameters]),
which is only possible because the joint layout described in [`crnsens.ode`][crnsens.ode] is fixed.

Every accessor takes query times `t` (a scalar or a 1D array; None means the times of the
solver's steps) and optional indices `ind`, and returns an array with one column per query
time, in the order the times were given. None or empty `ind` means all rows; a boolean mask
selects rows in their natural order; indices return the rows in the order given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import xarray
from scipy.integrate._ivp.ivp import OdeResult  # noqa

from crnsens.derivatives import CompiledModel
from crnsens.errors import IntegrationFailure, ShapeMismatch
from crnsens.ode import InputFunction, ParameterProjection

Times = float | Sequence[float] | np.ndarray | None
Indices = Sequence[int] | Sequence[bool] | np.ndarray | None


def num_active_parameters(n_joint: int, nx: int, order: int) -> int:
    """
    Number of active parameters ``nT`` of a joint vector of length `n_joint` holding
    `nx` states and their derivatives up to `order`.

    For order 1 the length is ``nx + nx*nT``; for order 2 it is ``nx + nx*nT + nx*nT*nT``.
    For order 0 the length must be `nx`, and 0 is returned.

    Raises
    ------
    ShapeMismatch
        if `nx` is not positive or no non-negative integer ``nT`` gives length `n_joint`
    """
    if nx <= 0:
        raise ShapeMismatch(f"number of states must be positive, but is {nx}")
    if n_joint % nx != 0:
        raise ShapeMismatch(f"joint length {n_joint} is not a multiple of the number of states {nx}")
    blocks = n_joint // nx
    if order == 0:
        if blocks != 1:
            raise ShapeMismatch(f"joint length {n_joint} does not match {nx} states")
        return 0
    if order == 1:
        return blocks - 1
    if order == 2:
        # nT^2 + nT + 1 = blocks  =>  nT = (-1 + sqrt(4 * blocks - 3)) / 2
        discriminant = 4 * blocks - 3
        root = math.isqrt(discriminant)
        if root * root != discriminant or (root - 1) % 2 != 0:
            raise ShapeMismatch(f"joint length {n_joint} does not correspond to {nx} states with "
                                f"a whole number of active parameters and their curvatures")
        return (root - 1) // 2
    raise ShapeMismatch(f"order must be 0, 1 or 2, but is {order}")


def _indices(ind: Indices, n: int) -> np.ndarray:
    if ind is None or len(ind) == 0:
        return np.arange(n)
    ind = np.asarray(ind)
    if ind.dtype == bool:
        if len(ind) != n:
            raise IndexError(f"mask has length {len(ind)}, but there are {n} rows")
        return np.flatnonzero(ind)
    ind = ind.astype(int)
    if np.any(ind < 0) or np.any(ind >= n):
        raise IndexError(f"indices must be between 0 and {n - 1}, but got {ind.tolist()}")
    return ind


class Simulation:
    """
    Successful integration of one experiment.

    `order` is 0 for a state-only simulation, 1 if sensitivities were integrated and 2 if
    curvatures were as well. Accessors of derivatives beyond `order` raise `ValueError`.
    """

    success = True

    n_accumulators = 0
    """number of rows after the states and their derivatives that hold integrated quantities"""

    def __init__(self, name: str, model: CompiledModel, sol: OdeResult, order: int,
                 inputs: InputFunction, projection: ParameterProjection | None = None) -> None:
        self.name = name
        self.model = model
        self.sol = sol
        self.order = order
        self.inputs = inputs
        self.projection = projection
        self.nx = model.nx
        self.nT = num_active_parameters(sol.y.shape[0] - self.n_accumulators, self.nx, order)

    @property
    def t(self) -> np.ndarray:
        """times of the solver's steps"""
        return self.sol.t

    def _times(self, t: Times) -> np.ndarray:
        if t is None:
            return self.sol.t
        return np.atleast_1d(np.asarray(t, dtype=float))

    def _joint(self, t: np.ndarray) -> np.ndarray:
        return self.sol.sol(t).reshape(self.sol.y.shape[0], len(t))

    def _u(self, t: np.ndarray) -> np.ndarray:
        return np.column_stack([self.inputs.at(ti) for ti in t]) if self.model.nu > 0 \
            else np.zeros((0, len(t)))

    def _require(self, order: int, what: str) -> None:
        if self.order < order:
            raise ValueError(f"{what} were not integrated for experiment {self.name!r}; "
                             f"simulate with order >= {order}")

    def x(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """States, shape ``(len(ind), nt)``."""
        t = self._times(t)
        return self._joint(t)[:self.nx][_indices(ind, self.nx)]

    def y(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """Outputs ``C1 x + C2 u + c``, shape ``(len(ind), nt)``."""
        t = self._times(t)
        x = self._joint(t)[:self.nx]
        ind = _indices(ind, self.model.ny)
        y = self.model.C1 @ x + self.model.C2 @ self._u(t) + self.model.c[:, np.newaxis]
        return y[ind]

    def _dxdT(self, t: np.ndarray) -> np.ndarray:
        nx, nT = self.nx, self.nT
        return self._joint(t)[nx:nx + nx * nT].reshape(nx, nT, len(t))

    def _d2xdT2(self, t: np.ndarray) -> np.ndarray:
        nx, nT = self.nx, self.nT
        return self._joint(t)[nx + nx * nT:].reshape(nx, nT, nT, len(t))

    def dxdT(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """Sensitivities of the states, shape ``(len(ind) * nT, nt)``; the parameter index varies fastest."""
        self._require(1, "sensitivities")
        t = self._times(t)
        ind = _indices(ind, self.nx)
        return self._dxdT(t)[ind].reshape(len(ind) * self.nT, len(t))

    def dydT(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """Sensitivities of the outputs, shape ``(len(ind) * nT, nt)``."""
        self._require(1, "sensitivities")
        t = self._times(t)
        ind = _indices(ind, self.model.ny)
        dydT = np.einsum('yi,iat->yat', self.model.C1, self._dxdT(t))
        if self.projection is not None and self.projection.time_varying:
            nu = self.model.nu
            dudT = np.stack([self.projection.L(ti)[:nu] for ti in t], axis=-1)
            dydT += np.einsum('yu,uat->yat', self.model.C2, dudT)
        return dydT[ind].reshape(len(ind) * self.nT, len(t))

    def d2xdT2(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """Curvatures of the states, shape ``(len(ind) * nT * nT, nt)``."""
        self._require(2, "curvatures")
        t = self._times(t)
        ind = _indices(ind, self.nx)
        return self._d2xdT2(t)[ind].reshape(len(ind) * self.nT * self.nT, len(t))

    def d2ydT2(self, t: Times = None, ind: Indices = None) -> np.ndarray:
        """Curvatures of the outputs, shape ``(len(ind) * nT * nT, nt)``."""
        self._require(2, "curvatures")
        t = self._times(t)
        ind = _indices(ind, self.model.ny)
        d2ydT2 = np.einsum('yi,iabt->yabt', self.model.C1, self._d2xdT2(t))
        if self.projection is not None and self.projection.L2(0.0) is not None:
            nu = self.model.nu
            d2udT2 = np.stack([self.projection.L2(ti)[:nu] for ti in t], axis=-1)
            d2ydT2 += np.einsum('yu,uabt->yabt', self.model.C2, d2udT2)
        return d2ydT2[ind].reshape(len(ind) * self.nT * self.nT, len(t))

    def to_dataset(self, t: Times = None) -> xarray.Dataset:
        """
        States and outputs at times `t` as an
        [xarray.Dataset](https://docs.xarray.dev/en/stable/generated/xarray.Dataset.html)
        with data variables ``x`` (dimensions ``species``, ``time``) and ``y``
        (dimensions ``output``, ``time``), labelled with the natural names.
        """
        t = self._times(t)
        return xarray.Dataset(
            data_vars={
                'x': (('species', 'time'), self.x(t)),
                'y': (('output', 'time'), self.y(t)),
            },
            coords={
                'time': t,
                'species': list(self.model.x_names),
                'output': list(self.model.y_names),
            },
            attrs={'experiment': self.name},
        )

    def __repr__(self) -> str:
        return f"Simulation({self.name!r}, order={self.order}, nT={self.nT}, steps={len(self.sol.t)})"


class ObjectiveSimulation(Simulation):
    """
    Integration of the states together with an objective accumulator
    $G(t) = \\int_0^t \\sum_i w_i g_i(\\tau, x, u) d\\tau$.
    """

    n_accumulators = 1

    def __init__(self, name: str, model: CompiledModel, sol: OdeResult, inputs: InputFunction) -> None:
        super().__init__(name, model, sol, 0, inputs)

    def G(self, t: Times = None) -> np.ndarray:
        """Accumulated objective, shape ``(nt,)``."""
        t = self._times(t)
        return self._joint(t)[self.nx]

    @property
    def total(self) -> float:
        """accumulated objective at the final time"""
        return float(self.sol.y[self.nx, -1])

    def __repr__(self) -> str:
        return f"ObjectiveSimulation({self.name!r}, total={self.total:g})"


@dataclass(frozen=True)
class FailedSimulation:
    """Marks an experiment whose integration failed, holding the error that was raised."""

    name: str

    error: IntegrationFailure

    success = False
