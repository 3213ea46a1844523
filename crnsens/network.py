r"""
Immutable description of a biochemical reaction network.

A [`ReactionNetwork`][crnsens.network.ReactionNetwork] holds compartments, species, seeds, parameters,
reactions, assignment rules and outputs. It is only a description: nothing is checked here
beyond simple per-entity sanity checks. Cross references (which compartment a species lives in,
which species a reaction consumes, which names a rate law mentions) are resolved and validated by
[`compile_symbolic`][crnsens.compiler.compile_symbolic].

For example, the reversible binding reaction $A + B \rightleftharpoons C$ in a single compartment
can be written as

```py
from crnsens import *

network = ReactionNetwork(
    name='binding',
    compartments=[Compartment('cell', 3, 1.0)],
    species=[
        Species('A', 'cell', 2.0),
        Species('B', 'cell', 1.0),
        Species('C', 'cell', 0.0),
    ],
    parameters=[Parameter('kon', 1.0), Parameter('koff', 0.5)],
    reactions=[
        Reaction('bind', [('A', 1), ('B', 1)], [('C', 1)], 'kon * A * B'),
        Reaction('unbind', [('C', 1)], [('A', 1), ('B', 1)], 'koff * C'),
    ],
)
```

Values that are numbers (compartment sizes, initial amounts, parameter values) may also be given
as strings holding constant arithmetic, e.g. ``'6.022e23 * 1e-15'``; see
[`evaluate_constant`][crnsens.expressions.evaluate_constant].
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence, TypeAlias

Number: TypeAlias = float | int | str
"""A numeric value, or a string holding a constant arithmetic expression."""

SpeciesUnits: TypeAlias = Literal['substance', 'concentration']

RuleKind: TypeAlias = str
"""Either ``'repeatedAssignment'`` or ``'initialAssignment'``; other kinds are rejected when compiling."""

repeated_assignment = 'repeatedAssignment'
initial_assignment = 'initialAssignment'


@dataclass(frozen=True)
class Compartment:
    """A region holding species. Its size scales stoichiometry when species are concentrations."""

    name: str

    dimension: int
    """0, 1, 2 or 3 (e.g., 3 for the cytoplasm, 2 for a membrane)."""

    size: Number
    """volume, area, length (or 1 for dimension 0) of the compartment"""

    def __post_init__(self) -> None:
        if self.dimension not in (0, 1, 2, 3):
            raise ValueError(f"compartment {self.name} has dimension {self.dimension}, "
                             f"but dimension must be 0, 1, 2, or 3")


@dataclass(frozen=True)
class Species:
    """
    A chemical species living in exactly one compartment.

    The initial amount is ``initial_amount + sum(coefficient * seed_value)`` over `seeds`.
    Species with `boundary_condition` or `constant_amount` set become *inputs*
    (their amounts are supplied from outside, possibly varying in time);
    all other species become *states* integrated by the ODE solver.
    """

    name: str

    compartment: str
    """name of the owning [`Compartment`][crnsens.network.Compartment]"""

    initial_amount: Number = 0.0

    seeds: Mapping[str, float] = field(default_factory=dict)
    """maps names of [`Seed`][crnsens.network.Seed]'s to the coefficient with which they add to the initial amount"""

    boundary_condition: bool = False

    constant_amount: bool = False

    @property
    def is_input(self) -> bool:
        return self.boundary_condition or self.constant_amount

    @property
    def qualified_name(self) -> str:
        return f'{self.compartment}.{self.name}'


@dataclass(frozen=True)
class Seed:
    """A parameter that sets (part of) the initial amount of one or more state species."""

    name: str

    value: Number


@dataclass(frozen=True)
class Parameter:
    """A kinetic parameter, either model-global or local to a single reaction."""

    name: str

    value: Number

    reaction: str | None = None
    """If not None, the name of the reaction to which this parameter is local.
    Local parameters shadow global parameters of the same name inside that reaction's rate law."""


SpeciesRef: TypeAlias = tuple[str, float]
"""A species name (optionally compartment-qualified, ``'cell.A'``) and its stoichiometric coefficient."""


@dataclass(frozen=True)
class Reaction:
    """A reaction with explicit stoichiometry and a rate-law expression."""

    name: str

    reactants: Sequence[SpeciesRef]

    products: Sequence[SpeciesRef]

    rate: str
    """rate law, e.g. ``'kf * A * B'``; may reference species, parameters, compartments and ``time``"""

    def __post_init__(self) -> None:
        # store as tuples so that the frozen dataclass is really immutable
        object.__setattr__(self, 'reactants', tuple((str(n), c) for n, c in self.reactants))
        object.__setattr__(self, 'products', tuple((str(n), c) for n, c in self.products))

    def __str__(self) -> str:
        def side(refs: Sequence[SpeciesRef]) -> str:
            if len(refs) == 0:
                return "∅"
            return "+".join(name if coeff == 1 else f"{coeff}{name}" for name, coeff in refs)

        return f"{self.name}: {side(self.reactants)} --> {side(self.products)} @ {self.rate}"


@dataclass(frozen=True)
class Rule:
    """An assignment rule of the form ``'target = value'``."""

    rule: str

    kind: RuleKind = repeated_assignment


@dataclass(frozen=True)
class Output:
    r"""
    An observable that is an affine function of species amounts:
    $y = \sum_i w_i \cdot species_i + constant$.
    """

    name: str

    expression: Mapping[str, float] = field(default_factory=dict)
    """maps species names (optionally compartment-qualified) to weights"""

    constant: float = 0.0


@dataclass(frozen=True)
class ReactionNetwork:
    """
    Complete description of a reaction network; the input to
    [`compile_symbolic`][crnsens.compiler.compile_symbolic] and [`compile_model`][crnsens.derivatives.compile_model].
    """

    name: str = ''

    compartments: Sequence[Compartment] = ()

    species: Sequence[Species] = ()

    seeds: Sequence[Seed] = ()

    parameters: Sequence[Parameter] = ()

    reactions: Sequence[Reaction] = ()

    rules: Sequence[Rule] = ()

    outputs: Sequence[Output] = ()

    species_units: SpeciesUnits = 'substance'
    """``'substance'`` leaves stoichiometric coefficients as written; ``'concentration'``
    divides each by the size of the species' compartment."""

    def __post_init__(self) -> None:
        for attr in ('compartments', 'species', 'seeds', 'parameters', 'reactions', 'rules', 'outputs'):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))
        if self.species_units not in ('substance', 'concentration'):
            raise ValueError(f"species_units must be 'substance' or 'concentration', "
                             f"but got {self.species_units!r}")

    @property
    def states(self) -> tuple[Species, ...]:
        return tuple(sp for sp in self.species if not sp.is_input)

    @property
    def inputs(self) -> tuple[Species, ...]:
        return tuple(sp for sp in self.species if sp.is_input)
