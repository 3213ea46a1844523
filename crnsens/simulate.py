"""
Simulating experiments on a compiled model: states, sensitivities, curvatures and objective integrals.

An [`Experiment`][crnsens.simulate.Experiment] fixes what varies between runs of the same
[`CompiledModel`][crnsens.derivatives.CompiledModel] (final time, seed values, input functions,
discontinuities); [`SimulationOptions`][crnsens.simulate.SimulationOptions] fixes which
derivatives are computed, with respect to which parameters, and the solver tolerances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import numpy as np
from tqdm.auto import tqdm

from crnsens.derivatives import CompiledModel
from crnsens.errors import IntegrationFailure, UnsupportedFeature
from crnsens.ode import (
    ActiveParameters,
    DerivativeFunction,
    InputFunction,
    JacobianFunction,
    Objective,
    ParameterProjection,
    constant_inputs,
    curvature_system,
    integrate_system,
    objective_system,
    sensitivity_system,
    state_system,
)
from crnsens.results import FailedSimulation, ObjectiveSimulation, Simulation

logger = logging.getLogger(__name__)

SteadyStateProvider = Callable[[DerivativeFunction, JacobianFunction | None, np.ndarray], np.ndarray]
"""
``provider(derivative, jacobian, y0)`` returns the joint vector to start integrating from instead
of `y0`. `derivative` and `jacobian` are those of the joint system being integrated (states, plus
sensitivities and curvatures when they are requested) under the experiment's inputs, and `y0` is
its usual initial value, so a provider that drives the joint system to rest also yields the
steady-state sensitivities and curvatures.
"""

Selection = Sequence[int] | Sequence[bool] | np.ndarray | None


@dataclass(frozen=True)
class Experiment:
    """One run of a model."""

    name: str

    t_final: float

    seeds: Sequence[float] | np.ndarray | None = None
    """values of the seeds; None means the values in the model"""

    inputs: InputFunction | None = None
    """amounts of the input species over time; None means the model's constant input amounts"""

    discontinuities: Sequence[float] = ()
    """times at which the inputs change form; the solver is restarted exactly at each of them"""

    steady_state: SteadyStateProvider | None = None
    """if given, computes the initial joint state from the usual one"""

    def __post_init__(self) -> None:
        if not self.t_final > 0:
            raise ValueError(f"experiment {self.name}: t_final must be positive, but is {self.t_final}")
        object.__setattr__(self, 'discontinuities', tuple(float(d) for d in self.discontinuities))

    def seed_values(self, model: CompiledModel) -> np.ndarray:
        if self.seeds is None:
            return model.s
        s = np.asarray(self.seeds, dtype=float).reshape(-1)
        if len(s) != model.ns:
            raise ValueError(f"experiment {self.name}: got {len(s)} seed values, but the model has {model.ns} seeds")
        return s

    def input_function(self, model: CompiledModel) -> InputFunction:
        return constant_inputs(model.u) if self.inputs is None else self.inputs


@dataclass(frozen=True)
class SimulationOptions:
    """
    Which derivatives to integrate and how.

    The `use_*` fields select the active parameters, either as indices or as boolean masks.
    """

    use_params: Selection = None
    """kinetic parameters; None means all of them"""

    use_seeds: Selection = ()

    use_controls: Selection = ()
    """control parameters of the experiment's [`InputFunction`][crnsens.ode.InputFunction]"""

    rtol: float = 1e-6

    atol: float | Sequence[float] | np.ndarray = 1e-9
    """scalar, one value per state (applied to each state's derivatives as well), or one value
    per component of the joint vector"""

    order: int = 0
    """0 (states), 1 (sensitivities) or 2 (curvatures)"""

    method: str = 'BDF'
    """solver used by [`solve_ivp`](https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.solve_ivp.html)"""

    verbose: int = 0

    def __post_init__(self) -> None:
        if self.order not in (0, 1, 2):
            raise UnsupportedFeature(f"order must be 0, 1 or 2, but is {self.order}")
        if not self.rtol > 0:
            raise ValueError(f"rtol must be positive, but is {self.rtol}")


def _selection(selection: Selection, n: int, what: str) -> np.ndarray:
    if selection is None:
        return np.arange(n)
    selection = np.asarray(selection)
    if selection.size == 0:
        return np.zeros(0, dtype=int)
    if selection.dtype == bool:
        if len(selection) != n:
            raise ValueError(f"mask selecting {what} has length {len(selection)}, but there are {n} {what}")
        return np.flatnonzero(selection)
    selection = selection.astype(int).reshape(-1)
    if np.any(selection < 0) or np.any(selection >= n):
        raise ValueError(f"indices selecting {what} must be between 0 and {n - 1}, but got {selection.tolist()}")
    if len(np.unique(selection)) != len(selection):
        raise ValueError(f"indices selecting {what} contain duplicates: {selection.tolist()}")
    return selection


def active_parameters(model: CompiledModel, inputs: InputFunction, opts: SimulationOptions) -> ActiveParameters:
    return ActiveParameters(
        k=_selection(opts.use_params, model.nk, 'kinetic parameters'),
        s=_selection(opts.use_seeds, model.ns, 'seeds'),
        q=_selection(opts.use_controls, inputs.nq, 'control parameters'),
    )


def _atol(atol, nx: int, block_sizes: Sequence[int]) -> float | np.ndarray:
    # block_sizes: number of entries per state in each block of the joint vector
    atol = np.asarray(atol, dtype=float)
    if atol.ndim == 0:
        return float(atol)
    atol = atol.reshape(-1)
    n_joint = nx * sum(block_sizes)
    if len(atol) == n_joint:
        return atol
    if len(atol) == nx:
        return np.concatenate([np.repeat(atol, size) for size in block_sizes])
    raise ValueError(f"atol must be a scalar or have {nx} or {n_joint} entries, but has {len(atol)}")


def _initial_state(experiment: Experiment, y0: np.ndarray, derivative: DerivativeFunction,
                   jacobian: JacobianFunction | None) -> np.ndarray:
    if experiment.steady_state is None:
        return y0
    logger.debug("Computing the steady state of experiment %s", experiment.name)
    y_steady = np.asarray(experiment.steady_state(derivative, jacobian, y0), dtype=float).reshape(-1)
    if len(y_steady) != len(y0):
        raise ValueError(f"experiment {experiment.name}: steady state has {len(y_steady)} entries, "
                         f"but the joint system has {len(y0)}")
    return y_steady


def simulate_system(model: CompiledModel, experiment: Experiment,
                    opts: SimulationOptions = SimulationOptions()) -> Simulation:
    """
    Integrate the states of `model` for `experiment`.

    Raises
    ------
    IntegrationFailure
        if the solver fails
    """
    inputs = experiment.input_function(model)
    derivative, jacobian = state_system(model.derivatives, inputs)
    x0 = _initial_state(experiment, model.x0(experiment.seed_values(model)), derivative, jacobian)
    sol = integrate_system(derivative, jacobian, x0, experiment.t_final,
                           discontinuities=experiment.discontinuities,
                           rtol=opts.rtol, atol=_atol(opts.atol, model.nx, [1]), method=opts.method)
    return Simulation(experiment.name, model, sol, 0, inputs)


def simulate_sensitivity(model: CompiledModel, experiment: Experiment,
                         opts: SimulationOptions = SimulationOptions(order=1)) -> Simulation:
    """
    Integrate the states of `model` and their sensitivities to the active parameters selected by `opts`.

    Raises
    ------
    UnsupportedFeature
        if `model` was compiled with order 0
    IntegrationFailure
        if the solver fails
    """
    inputs = experiment.input_function(model)
    active = active_parameters(model, inputs, opts)
    projection = ParameterProjection(model.nu, model.nk, active, inputs)
    derivative, jacobian = sensitivity_system(model.derivatives, inputs, projection)
    nT = active.nT

    dxdT0 = np.zeros((model.nx, nT))
    seed_columns = slice(len(active.k), len(active.k) + len(active.s))
    dxdT0[:, seed_columns] = model.dx0ds[:, active.s]
    x0 = model.x0(experiment.seed_values(model))
    y0 = np.concatenate([x0, dxdT0.reshape(-1)])
    y0 = _initial_state(experiment, y0, derivative, jacobian)

    sol = integrate_system(derivative, jacobian, y0, experiment.t_final,
                           discontinuities=experiment.discontinuities,
                           rtol=opts.rtol, atol=_atol(opts.atol, model.nx, [1, nT]), method=opts.method)
    return Simulation(experiment.name, model, sol, 1, inputs, projection)


def simulate_curvature(model: CompiledModel, experiment: Experiment,
                       opts: SimulationOptions = SimulationOptions(order=2)) -> Simulation:
    """
    Integrate the states of `model`, their sensitivities and their curvatures with respect to
    the active parameters selected by `opts`.

    Raises
    ------
    UnsupportedFeature
        if `model` was compiled with order below 2
    IntegrationFailure
        if the solver fails
    """
    inputs = experiment.input_function(model)
    active = active_parameters(model, inputs, opts)
    projection = ParameterProjection(model.nu, model.nk, active, inputs)
    derivative, jacobian = curvature_system(model.derivatives, inputs, projection)
    nT = active.nT

    dxdT0 = np.zeros((model.nx, nT))
    seed_columns = slice(len(active.k), len(active.k) + len(active.s))
    dxdT0[:, seed_columns] = model.dx0ds[:, active.s]
    # initial amounts are affine in the seeds
    d2xdT20 = np.zeros((model.nx, nT, nT))
    x0 = model.x0(experiment.seed_values(model))
    y0 = np.concatenate([x0, dxdT0.reshape(-1), d2xdT20.reshape(-1)])
    y0 = _initial_state(experiment, y0, derivative, jacobian)

    sol = integrate_system(derivative, jacobian, y0, experiment.t_final,
                           discontinuities=experiment.discontinuities,
                           rtol=opts.rtol, atol=_atol(opts.atol, model.nx, [1, nT, nT * nT]),
                           method=opts.method)
    return Simulation(experiment.name, model, sol, 2, inputs, projection)


def integrate_objective(model: CompiledModel, experiment: Experiment,
                        objectives: Sequence[Objective], weights: Sequence[float],
                        opts: SimulationOptions = SimulationOptions()) -> ObjectiveSimulation:
    r"""
    Integrate the states of `model` together with the weighted continuous objective
    $G(t) = \int_0^t \sum_i w_i g_i(\tau, x(\tau), u(\tau)) d\tau$.

    Raises
    ------
    IntegrationFailure
        if the solver fails
    """
    inputs = experiment.input_function(model)
    # the accumulator has no steady state, so the provider only sees the states
    x0 = _initial_state(experiment, model.x0(experiment.seed_values(model)),
                        *state_system(model.derivatives, inputs))
    derivative, jacobian = objective_system(model.derivatives, inputs, objectives, weights)
    atol = _atol(opts.atol, model.nx, [1])
    if isinstance(atol, np.ndarray):
        atol = np.concatenate([atol, [np.min(atol)]])
    y0 = np.concatenate([x0, [0.0]])
    sol = integrate_system(derivative, jacobian, y0, experiment.t_final,
                           discontinuities=experiment.discontinuities,
                           rtol=opts.rtol, atol=atol, method=opts.method)
    return ObjectiveSimulation(experiment.name, model, sol, inputs)


_simulators = {
    0: simulate_system,
    1: simulate_sensitivity,
    2: simulate_curvature,
}


def simulate(model: CompiledModel, experiments: Experiment | Iterable[Experiment],
             opts: SimulationOptions = SimulationOptions()) -> list[Simulation | FailedSimulation]:
    """
    Simulate each of `experiments` on `model`, computing derivatives up to `opts.order`.

    Parameters
    ----------
    model:
        as returned by [`compile_model`][crnsens.derivatives.compile_model]; it must have been
        compiled with order at least `opts.order`

    experiments:
        a single experiment or several

    opts:
        see [`SimulationOptions`][crnsens.simulate.SimulationOptions]

    Returns
    -------
    :
        one result per experiment, in order. An experiment whose integration fails yields a
        [`FailedSimulation`][crnsens.results.FailedSimulation] holding the error;
        the other experiments are unaffected.

    Raises
    ------
    UnsupportedFeature
        if `model` was compiled with an order below `opts.order`
    """
    if isinstance(experiments, Experiment):
        experiments = [experiments]
    experiments = list(experiments)
    model.derivatives.require(opts.order, f"simulating with order {opts.order}")
    simulator = _simulators[opts.order]
    log = logger.info if opts.verbose else logger.debug

    results: list[Simulation | FailedSimulation] = []
    for experiment in tqdm(experiments, disable=not opts.verbose):
        try:
            result = simulator(model, experiment, opts)
        except IntegrationFailure as error:
            logger.warning("Experiment %s failed: %s", experiment.name, error)
            results.append(FailedSimulation(experiment.name, error))
            continue
        log("Simulated experiment %s in %d steps", experiment.name, len(result.t))
        results.append(result)
    return results
