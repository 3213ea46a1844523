import numpy as np
import pytest

from crnsens import (
    Compartment,
    Experiment,
    FailedSimulation,
    InputFunction,
    IntegrationFailure,
    Objective,
    ObjectiveSimulation,
    Parameter,
    Reaction,
    ReactionNetwork,
    Simulation,
    ShapeMismatch,
    SimulationOptions,
    Species,
    UnsupportedFeature,
    compile_model,
    integrate_objective,
    integrate_system,
    simulate,
    simulate_curvature,
    simulate_sensitivity,
    simulate_system,
)

from conftest import binding_network, decaying_input, driven_network

tight = dict(rtol=1e-10, atol=1e-12)


def decay_network(k: float = 1.0) -> ReactionNetwork:
    return ReactionNetwork(
        compartments=[Compartment('cell', 3, 1.0)],
        species=[Species('A', 'cell', 1.0)],
        parameters=[Parameter('k', k)],
        reactions=[Reaction('decay', [('A', 1)], [], 'k * A')],
    )


def autocatalysis_network() -> ReactionNetwork:
    # 2A --> 3A with rate A^2 and A(0) = 1, so A(t) = 1 / (1 - t) blows up at t = 1
    return ReactionNetwork(
        compartments=[Compartment('cell', 3, 1.0)],
        species=[Species('A', 'cell', 1.0)],
        parameters=[Parameter('k', 1.0)],
        reactions=[Reaction('grow', [('A', 2)], [('A', 3)], 'k * A * A')],
    )


def states_at(network: ReactionNetwork, t: float, experiment: Experiment | None = None) -> np.ndarray:
    model = compile_model(network, order=0)
    experiment = experiment or Experiment('run', t_final=t)
    return simulate_system(model, experiment, SimulationOptions(**tight)).x(t)[:, 0]


def sensitivities_at(network: ReactionNetwork, t: float, opts: SimulationOptions,
                     experiment: Experiment | None = None) -> np.ndarray:
    model = compile_model(network, order=1)
    experiment = experiment or Experiment('run', t_final=t)
    return simulate_sensitivity(model, experiment, opts).dxdT(t)[:, 0]


def test_binding_conserves_mass_and_reaches_equilibrium(binding) -> None:
    model = compile_model(binding, order=0)
    [sim] = simulate(model, [Experiment('binding', t_final=50.0)], SimulationOptions(**tight))
    assert isinstance(sim, Simulation)
    times = np.linspace(0.0, 50.0, 101)
    A, B, C = sim.x(times)
    np.testing.assert_allclose(A + C, 2.0, rtol=1e-8)
    np.testing.assert_allclose(B + C, 1.0, rtol=1e-8)
    # kon * A * B = koff * C with A = 2 - C and B = 1 - C
    C_equilibrium = (3.5 - np.sqrt(3.5 ** 2 - 8.0)) / 2
    np.testing.assert_allclose(C[-1], C_equilibrium, rtol=1e-7)


def test_identity_outputs_equal_states(binding) -> None:
    model = compile_model(binding, order=0)
    sim = simulate_system(model, Experiment('binding', t_final=5.0))
    times = np.linspace(0.0, 5.0, 11)
    np.testing.assert_allclose(sim.y(times), sim.x(times))


def test_outputs_include_inputs(driven) -> None:
    model = compile_model(driven, order=0)
    sim = simulate_system(model, Experiment('driven', t_final=3.0))
    times = np.array([0.0, 1.0, 3.0])
    np.testing.assert_allclose(sim.y(times)[0], sim.x(times)[0] + 0.5 * 1.0 + 0.1)


def test_indices_select_rows_in_query_order(binding) -> None:
    model = compile_model(binding, order=1)
    sim = simulate_sensitivity(model, Experiment('binding', t_final=2.0), SimulationOptions(order=1))
    times = np.array([0.5, 1.0, 2.0])
    assert sim.x(times).shape == (3, 3)
    np.testing.assert_array_equal(sim.x(times, [2, 0]), sim.x(times)[[2, 0]])
    np.testing.assert_array_equal(sim.x(times, []), sim.x(times))
    assert sim.dxdT(times).shape == (3 * 2, 3)
    assert sim.dxdT(times, [2]).shape == (2, 3)
    np.testing.assert_array_equal(sim.dxdT(times, [2]), sim.dxdT(times).reshape(3, 2, 3)[2])
    assert sim.dydT(times, [1, 0]).shape == (2 * 2, 3)
    assert sim.x(1.0).shape == (3, 1)
    assert sim.x().shape == (3, len(sim.t))


def test_sensitivities_match_finite_differences() -> None:
    t, h = 1.5, 1e-4
    opts = SimulationOptions(order=1, use_seeds=[0], **tight)
    dxdT = sensitivities_at(binding_network(), t, opts).reshape(3, 3)

    dxdkon = (states_at(binding_network(kon=1.0 + h), t) - states_at(binding_network(kon=1.0 - h), t)) / (2 * h)
    dxdkoff = (states_at(binding_network(koff=0.5 + h), t) - states_at(binding_network(koff=0.5 - h), t)) / (2 * h)
    dxda0 = (states_at(binding_network(a0=2.0 + h), t) - states_at(binding_network(a0=2.0 - h), t)) / (2 * h)
    np.testing.assert_allclose(dxdT[:, 0], dxdkon, rtol=1e-4, atol=1e-6)
    np.testing.assert_allclose(dxdT[:, 1], dxdkoff, rtol=1e-4, atol=1e-6)
    np.testing.assert_allclose(dxdT[:, 2], dxda0, rtol=1e-4, atol=1e-6)


def test_seed_sensitivities_start_at_seed_coefficients(binding) -> None:
    model = compile_model(binding, order=1)
    opts = SimulationOptions(order=1, use_params=[], use_seeds=[0])
    sim = simulate_sensitivity(model, Experiment('binding', t_final=1.0), opts)
    np.testing.assert_allclose(sim.dxdT(0.0)[:, 0], [1.0, 0.0, 0.0])


def test_curvatures_match_finite_differences_of_sensitivities() -> None:
    t, h = 1.5, 1e-4
    opts = SimulationOptions(order=1, use_seeds=[0], **tight)
    model = compile_model(binding_network(), order=2)
    sim = simulate_curvature(model, Experiment('binding', t_final=t),
                             SimulationOptions(order=2, use_seeds=[0], **tight))
    d2xdT2 = sim.d2xdT2(t)[:, 0].reshape(3, 3, 3)

    np.testing.assert_allclose(d2xdT2, d2xdT2.transpose(0, 2, 1), atol=1e-8)
    perturbed = [
        (binding_network(kon=1.0 + h), binding_network(kon=1.0 - h)),
        (binding_network(koff=0.5 + h), binding_network(koff=0.5 - h)),
        (binding_network(a0=2.0 + h), binding_network(a0=2.0 - h)),
    ]
    for column, (plus, minus) in enumerate(perturbed):
        fd = (sensitivities_at(plus, t, opts) - sensitivities_at(minus, t, opts)).reshape(3, 3) / (2 * h)
        np.testing.assert_allclose(d2xdT2[:, :, column], fd, rtol=1e-3, atol=1e-5)

    # lower-order quantities agree with a sensitivity-only run
    first = simulate_sensitivity(model, Experiment('binding', t_final=t), opts)
    np.testing.assert_allclose(sim.dxdT(t), first.dxdT(t), rtol=1e-7, atol=1e-9)


def test_control_sensitivities_and_curvatures() -> None:
    t, h = 2.0, 1e-4
    model = compile_model(driven_network(), order=2)
    opts = SimulationOptions(order=2, use_params=[], use_controls=[0, 1], **tight)
    sim = simulate_curvature(model, Experiment('driven', t_final=t, inputs=decaying_input()), opts)
    dydq = sim.dydT(t)[:, 0]
    d2ydq2 = sim.d2ydT2(t)[:, 0].reshape(2, 2)

    order0 = compile_model(driven_network(), order=0)
    order1 = compile_model(driven_network(), order=1)
    opts1 = SimulationOptions(order=1, use_params=[], use_controls=[0, 1], **tight)

    def y_at(q0: float, q1: float) -> float:
        experiment = Experiment('driven', t_final=t, inputs=decaying_input(q0, q1))
        return simulate_system(order0, experiment, SimulationOptions(**tight)).y(t)[0, 0]

    def dydq_at(q0: float, q1: float) -> np.ndarray:
        experiment = Experiment('driven', t_final=t, inputs=decaying_input(q0, q1))
        return simulate_sensitivity(order1, experiment, opts1).dydT(t)[:, 0]

    q0, q1 = 1.5, 0.8
    fd = np.array([
        (y_at(q0 + h, q1) - y_at(q0 - h, q1)) / (2 * h),
        (y_at(q0, q1 + h) - y_at(q0, q1 - h)) / (2 * h),
    ])
    np.testing.assert_allclose(dydq, fd, rtol=1e-4, atol=1e-6)

    fd2 = np.column_stack([
        (dydq_at(q0 + h, q1) - dydq_at(q0 - h, q1)) / (2 * h),
        (dydq_at(q0, q1 + h) - dydq_at(q0, q1 - h)) / (2 * h),
    ])
    np.testing.assert_allclose(d2ydq2, fd2, rtol=1e-3, atol=1e-5)


def test_no_active_parameters_reduces_to_state_integration(binding) -> None:
    model = compile_model(binding, order=2)
    experiment = Experiment('binding', t_final=3.0)
    states = simulate_system(model, experiment)
    for order, simulator in [(1, simulate_sensitivity), (2, simulate_curvature)]:
        sim = simulator(model, experiment, SimulationOptions(order=order, use_params=[]))
        assert sim.nT == 0
        times = np.linspace(0.0, 3.0, 7)
        np.testing.assert_allclose(sim.x(times), states.x(times), rtol=1e-12)
        assert sim.dxdT(times).shape == (0, 7)


def test_boolean_masks_select_parameters(binding) -> None:
    model = compile_model(binding, order=1)
    experiment = Experiment('binding', t_final=2.0)
    everything = simulate_sensitivity(model, experiment, SimulationOptions(order=1, **tight))
    koff_only = simulate_sensitivity(model, experiment, SimulationOptions(order=1, use_params=[False, True], **tight))
    assert everything.nT == 2
    assert koff_only.nT == 1
    np.testing.assert_allclose(koff_only.dxdT(2.0)[:, 0], everything.dxdT(2.0).reshape(3, 2)[:, 1],
                               rtol=1e-6, atol=1e-9)


def test_invalid_selections(binding) -> None:
    model = compile_model(binding, order=1)
    experiment = Experiment('binding', t_final=1.0)
    for opts in [SimulationOptions(order=1, use_params=[2]),
                 SimulationOptions(order=1, use_params=[True]),
                 SimulationOptions(order=1, use_params=[0, 0])]:
        with pytest.raises(ValueError):
            simulate_sensitivity(model, experiment, opts)


def test_per_state_absolute_tolerance(binding) -> None:
    model = compile_model(binding, order=2)
    opts = SimulationOptions(order=2, atol=[1e-10, 1e-10, 1e-11])
    sim = simulate_curvature(model, Experiment('binding', t_final=1.0), opts)
    assert sim.d2xdT2(1.0).shape == (3 * 2 * 2, 1)
    with pytest.raises(ValueError):
        simulate_curvature(model, Experiment('binding', t_final=1.0), SimulationOptions(order=2, atol=[1e-9, 1e-9]))


def test_step_input_with_discontinuity() -> None:
    k, kd, a0 = 2.0, 0.7, 0.5
    model = compile_model(driven_network(k, kd, linear=True), order=1)
    step = InputFunction(q=[], u=lambda t, q: np.array([1.0 if t < 1.0 else 0.0]))
    experiment = Experiment('step', t_final=3.0, inputs=step, discontinuities=[1.0])
    sim = simulate_system(model, experiment, SimulationOptions(**tight))
    assert sim.sol.discontinuity_times == [1.0]

    def expected(t: float) -> float:
        on = k / kd + (a0 - k / kd) * np.exp(-kd * min(t, 1.0))
        return on * np.exp(-kd * max(t - 1.0, 0.0))

    for t in [0.5, 1.0, 2.5]:
        np.testing.assert_allclose(sim.x(t)[0, 0], expected(t), rtol=1e-7)


def test_objective_integral() -> None:
    model = compile_model(decay_network(), order=1)
    experiment = Experiment('decay', t_final=2.0)
    objectives = [
        Objective(g=lambda t, x, u: x[0], dgdx=lambda t, x, u: np.array([1.0])),
        Objective(g=lambda t, x, u: 1.0, dgdx=lambda t, x, u: np.zeros(1)),
    ]
    sim = integrate_objective(model, experiment, objectives, [2.0, 0.5], SimulationOptions(**tight))
    assert isinstance(sim, ObjectiveSimulation)
    np.testing.assert_allclose(sim.total, 2.0 * (1 - np.exp(-2.0)) + 0.5 * 2.0, rtol=1e-7)
    times = np.array([0.0, 1.0])
    np.testing.assert_allclose(sim.G(times), [0.0, 2.0 * (1 - np.exp(-1.0)) + 0.5], rtol=1e-7, atol=1e-12)
    np.testing.assert_allclose(sim.x(times)[0], np.exp(-times), rtol=1e-7)
    assert sim.order == 0 and sim.nT == 0
    with pytest.raises(ShapeMismatch):
        ObjectiveSimulation('states only', model, simulate_system(model, experiment).sol, sim.inputs)


def test_failures_are_isolated_in_batches() -> None:
    model = compile_model(autocatalysis_network(), order=1)
    experiments = [
        Experiment('short', t_final=0.5),
        Experiment('past blow-up', t_final=2.0),
        Experiment('almost', t_final=0.9),
    ]
    results = simulate(model, experiments, SimulationOptions(order=1, **tight))
    assert [result.success for result in results] == [True, False, True]
    failed = results[1]
    assert isinstance(failed, FailedSimulation)
    assert failed.name == 'past blow-up'
    assert isinstance(failed.error, IntegrationFailure)
    assert failed.error.t_last <= 1.0
    np.testing.assert_allclose(results[0].x(0.5)[0, 0], 2.0, rtol=1e-7)
    np.testing.assert_allclose(results[2].x(0.9)[0, 0], 10.0, rtol=1e-6)


def test_simulate_accepts_a_single_experiment(binding) -> None:
    model = compile_model(binding, order=0)
    results = simulate(model, Experiment('binding', t_final=1.0))
    assert len(results) == 1
    assert results[0].name == 'binding'


def test_simulate_requires_compiled_order(binding) -> None:
    model = compile_model(binding, order=1)
    with pytest.raises(UnsupportedFeature):
        simulate(model, [Experiment('binding', t_final=1.0)], SimulationOptions(order=2))


def test_derivatives_beyond_simulated_order(binding) -> None:
    model = compile_model(binding, order=0)
    sim = simulate_system(model, Experiment('binding', t_final=1.0))
    with pytest.raises(ValueError):
        sim.dxdT(1.0)


def test_steady_state_provider(binding) -> None:
    start = np.array([1.5, 0.5, 0.5])
    seen = []

    def provider(derivative, jacobian, y0):
        seen.append(y0)
        return start

    model = compile_model(binding, order=1)
    experiment = Experiment('from steady state', t_final=1.0, steady_state=provider)
    sim = simulate_system(model, experiment)
    np.testing.assert_allclose(sim.x(0.0)[:, 0], start)
    np.testing.assert_allclose(seen[0], [2.0, 1.0, 0.0])
    with pytest.raises(ValueError):
        simulate_sensitivity(model, experiment, SimulationOptions(order=1))


def to_rest(derivative, jacobian, y0):
    return integrate_system(derivative, jacobian, y0, 50.0, **tight).y[:, -1]


def test_sensitivities_from_steady_state(binding) -> None:
    kon, koff, a0 = 1.0, 0.5, 2.0
    model = compile_model(binding, order=2)
    experiment = Experiment('at rest', t_final=1.0, steady_state=to_rest)
    sim = simulate_sensitivity(model, experiment, SimulationOptions(order=1, **tight))

    # kon (a0 - C) (1 - C) = koff C with the totals of A and B conserved
    C = (3.5 - np.sqrt(3.5 ** 2 - 8.0)) / 2
    relaxation = kon * (1 + a0 - 2 * C) + koff
    dCdkon = (a0 - C) * (1 - C) / relaxation
    dCdkoff = -C / relaxation
    for t in [0.0, 1.0]:
        np.testing.assert_allclose(sim.x(t)[:, 0], [a0 - C, 1 - C, C], rtol=1e-7)
        np.testing.assert_allclose(sim.dxdT(t)[:, 0], [-dCdkon, -dCdkoff, -dCdkon, -dCdkoff, dCdkon, dCdkoff],
                                   rtol=1e-6)

    [curvature] = simulate(model, experiment, SimulationOptions(order=2, **tight))
    assert curvature.success
    np.testing.assert_allclose(curvature.d2xdT2(1.0), curvature.d2xdT2(0.0), rtol=1e-5, atol=1e-9)


def square_root_decay_network() -> ReactionNetwork:
    # A' = -sqrt(A), so A(t) = (1 - t / 2)^2 from A(0) = 1
    return ReactionNetwork(
        compartments=[Compartment('cell', 3, 1.0)],
        species=[Species('A', 'cell', 1.0)],
        parameters=[Parameter('k', 1.0)],
        reactions=[Reaction('decay', [('A', 1)], [], 'k * A ^ 0.5')],
    )


def test_non_finite_rates_are_isolated_in_batches() -> None:
    model = compile_model(square_root_decay_network(), order=0)

    def negative(derivative, jacobian, y0):
        return -np.ones_like(y0)

    experiments = [
        Experiment('negative amount', t_final=1.0, steady_state=negative),
        Experiment('positive amount', t_final=1.0),
    ]
    with np.errstate(invalid='ignore'):
        bad, good = simulate(model, experiments, SimulationOptions(**tight))
    assert isinstance(bad, FailedSimulation)
    assert isinstance(bad.error, IntegrationFailure)
    assert bad.error.t_last == 0.0
    assert good.success
    np.testing.assert_allclose(good.x(1.0)[0, 0], 0.25, rtol=1e-6)


def test_boolean_masks_select_rows(binding) -> None:
    model = compile_model(binding, order=1)
    sim = simulate_sensitivity(model, Experiment('binding', t_final=2.0), SimulationOptions(order=1))
    times = np.array([0.5, 2.0])
    np.testing.assert_array_equal(sim.x(times, [True, False, True]), sim.x(times)[[0, 2]])
    np.testing.assert_array_equal(sim.y(times, np.array([False, True, False])), sim.y(times)[[1]])
    np.testing.assert_array_equal(sim.dxdT(times, [False, False, True]), sim.dxdT(times, [2]))
    with pytest.raises(IndexError):
        sim.x(times, [True, False])


def test_query_times_keep_their_order() -> None:
    model = compile_model(driven_network(linear=True), order=1)
    step = InputFunction(q=[], u=lambda t, q: np.array([1.0 if t < 1.0 else 0.0]))
    experiment = Experiment('step', t_final=3.0, inputs=step, discontinuities=[1.0])
    sim = simulate_sensitivity(model, experiment, SimulationOptions(order=1))
    ordered = np.array([0.0, 0.5, 1.0, 2.0])
    shuffled = ordered[[3, 0, 2, 1]]
    np.testing.assert_allclose(sim.x(shuffled), sim.x(ordered)[:, [3, 0, 2, 1]], rtol=1e-14)
    np.testing.assert_allclose(sim.y(shuffled), sim.y(ordered)[:, [3, 0, 2, 1]], rtol=1e-14)
    np.testing.assert_allclose(sim.dxdT(shuffled), sim.dxdT(ordered)[:, [3, 0, 2, 1]], rtol=1e-14)


def test_experiment_validation(binding) -> None:
    with pytest.raises(ValueError):
        Experiment('never', t_final=0.0)
    model = compile_model(binding, order=0)
    with pytest.raises(ValueError):
        simulate_system(model, Experiment('wrong seeds', t_final=1.0, seeds=[1.0, 2.0]))
    with pytest.raises(UnsupportedFeature):
        SimulationOptions(order=3)


def test_seed_values_per_experiment(binding) -> None:
    model = compile_model(binding, order=0)
    sim = simulate_system(model, Experiment('more A', t_final=1.0, seeds=[4.0]))
    np.testing.assert_allclose(sim.x(0.0)[:, 0], [4.0, 1.0, 0.0])


def test_to_dataset(binding) -> None:
    model = compile_model(binding, order=0)
    sim = simulate_system(model, Experiment('binding', t_final=2.0))
    times = np.linspace(0.0, 2.0, 5)
    ds = sim.to_dataset(times)
    assert ds.sizes['time'] == 5
    assert ds.attrs['experiment'] == 'binding'
    assert list(ds['x'].dims) == ['species', 'time']
    np.testing.assert_allclose(ds['x'].sel(species='C').values, sim.x(times)[2])
    np.testing.assert_allclose(ds['y'].sel(output='A').values, sim.x(times)[0])
