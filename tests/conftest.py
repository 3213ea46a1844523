import numpy as np
import pytest

from crnsens import (
    Compartment,
    InputFunction,
    Output,
    Parameter,
    Reaction,
    ReactionNetwork,
    Seed,
    Species,
)


def binding_network(kon: float = 1.0, koff: float = 0.5, a0: float = 2.0) -> ReactionNetwork:
    # A + B <--> C
    return ReactionNetwork(
        name='binding',
        compartments=[Compartment('cell', 3, 1.0)],
        species=[
            Species('A', 'cell', 0.0, seeds={'A0': 1.0}),
            Species('B', 'cell', 1.0),
            Species('C', 'cell', 0.0),
        ],
        seeds=[Seed('A0', a0)],
        parameters=[Parameter('kon', kon), Parameter('koff', koff)],
        reactions=[
            Reaction('bind', [('A', 1), ('B', 1)], [('C', 1)], 'kon * A * B'),
            Reaction('unbind', [('C', 1)], [('A', 1), ('B', 1)], 'koff * C'),
        ],
        outputs=[
            Output('A', {'A': 1.0}),
            Output('B', {'B': 1.0}),
            Output('C', {'C': 1.0}),
        ],
    )


def driven_network(k: float = 2.0, kd: float = 0.7, linear: bool = False) -> ReactionNetwork:
    # U --> A driven by the input U, and A (+ A) --> nothing
    degradation = 'kd * A' if linear else 'kd * A * A'
    return ReactionNetwork(
        name='driven',
        compartments=[Compartment('cell', 3, 1.0)],
        species=[
            Species('U', 'cell', 1.0, boundary_condition=True),
            Species('A', 'cell', 0.5),
        ],
        parameters=[Parameter('k', k), Parameter('kd', kd)],
        reactions=[
            Reaction('produce', [('U', 1)], [('A', 1), ('U', 1)], 'k * U'),
            Reaction('degrade', [('A', 1)], [], degradation),
        ],
        outputs=[Output('signal', {'A': 1.0, 'U': 0.5}, constant=0.1)],
    )


def decaying_input(q0: float = 1.5, q1: float = 0.8) -> InputFunction:
    # u(t) = q0 * exp(-q1 * t)
    def u(t, q):
        return np.array([q[0] * np.exp(-q[1] * t)])

    def dudq(t, q):
        e = np.exp(-q[1] * t)
        return np.array([[e, -t * q[0] * e]])

    def d2udq2(t, q):
        e = np.exp(-q[1] * t)
        return np.array([[[0.0, -t * e], [-t * e, t * t * q[0] * e]]])

    return InputFunction(q=np.array([q0, q1]), u=u, dudq=dudq, d2udq2=d2udq2)


@pytest.fixture
def binding() -> ReactionNetwork:
    return binding_network()


@pytest.fixture
def driven() -> ReactionNetwork:
    return driven_network()
