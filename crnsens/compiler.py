"""
Compiler from a [`ReactionNetwork`][crnsens.network.ReactionNetwork] to a canonical
[`SymbolicModel`][crnsens.compiler.SymbolicModel].

Compilation proceeds in four steps:

1. Every compartment, species, seed and parameter is given a systematic, collision-free symbol
   name (``co1x``, ``sp1x``, ``se1x``, ``pa1x``, ...), so that user-chosen names never clash with
   each other, with sympy function names, or with the time symbol.
2. Species are split into *states* and *inputs* (boundary-condition or constant-amount species),
   keeping their original relative order.
3. Rate laws are parsed into sympy trees and the stoichiometry matrices are assembled.
4. Assignment rules are substituted into the rate laws until a fixed point is reached,
   and the ruled parameters are removed from the parameter list.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

import numpy as np
import polars as pl
import scipy.sparse
import sympy

from crnsens.errors import ValidationError, UnsupportedFeature, CyclicRuleDependency
from crnsens.expressions import parse_expression, evaluate_constant, Resolver
from crnsens.network import (
    ReactionNetwork,
    SpeciesRef,
    repeated_assignment,
    initial_assignment,
)

logger = logging.getLogger(__name__)

time_symbol = sympy.Symbol('time')
"""symbol standing for time in rate laws; systematic names can never collide with it"""

_identifier = re.compile(r'^[A-Za-z_]\w*$')


@dataclass(frozen=True)
class NameIndex:
    """
    Names in use while renaming: the natural names of every entity (with multiplicity,
    since species in different compartments may share a name) and the systematic names
    handed out so far. Never mutated; [`systematic_names`][crnsens.compiler.systematic_names]
    returns an extended copy.
    """

    natural: Mapping[str, int]

    assigned: frozenset[str] = frozenset()

    @staticmethod
    def of(names: Iterable[str]) -> NameIndex:
        return NameIndex(MappingProxyType(Counter(names)))


def systematic_names(index: NameIndex, prefix: str,
                     natural_names: Sequence[str]) -> tuple[tuple[str, ...], NameIndex]:
    """
    Assign a systematic name ``f'{prefix}{i}x'`` to each of `natural_names`.

    Candidates are tried with increasing `i`. A candidate is accepted only if no entity other than
    the one being renamed has it as natural name and it was not assigned before, so every entity
    ends up with a name distinct from every other entity's natural and systematic name.
    The trailing ``x`` keeps ``sp1x`` from being a prefix of ``sp10x``.

    Returns
    -------
    :
        the assigned names, in the order of `natural_names`, and `index` extended with them
    """
    assigned = set(index.assigned)
    names = []
    attempt = 1
    for natural in natural_names:
        while True:
            candidate = f'{prefix}{attempt}x'
            attempt += 1
            used_by_others = index.natural.get(candidate, 0) - (candidate == natural)
            if used_by_others == 0 and candidate not in assigned:
                break
        names.append(candidate)
        assigned.add(candidate)
    return tuple(names), NameIndex(index.natural, frozenset(assigned))


@dataclass(frozen=True, eq=False)
class SymbolicModel:
    """
    Canonical symbolic form of a reaction network. Produced by
    [`compile_symbolic`][crnsens.compiler.compile_symbolic]; never modified afterwards.

    Per category (compartments `v`, kinetic parameters `k`, seeds `s`, inputs `u`, states `x`)
    there is a tuple of systematic sympy symbols (``*_syms``), a tuple of the natural names
    (``*_names``) and a numpy array of values.
    """

    name: str

    v_syms: tuple[sympy.Symbol, ...]
    v_names: tuple[str, ...]
    v: np.ndarray
    dv: np.ndarray
    """dimension of each compartment"""

    k_syms: tuple[sympy.Symbol, ...]
    k_names: tuple[str, ...]
    k: np.ndarray

    s_syms: tuple[sympy.Symbol, ...]
    s_names: tuple[str, ...]
    s: np.ndarray

    u_syms: tuple[sympy.Symbol, ...]
    u_names: tuple[str, ...]
    u: np.ndarray
    """default (constant) amounts of the inputs"""
    vu_index: np.ndarray
    """index of the compartment of each input"""

    x_syms: tuple[sympy.Symbol, ...]
    x_names: tuple[str, ...]
    vx_index: np.ndarray
    """index of the compartment of each state"""
    x0c: np.ndarray
    """constant part of the initial amount of each state"""
    dx0ds: np.ndarray
    """nx by ns; influence of each seed on each state's initial amount"""

    r_names: tuple[str, ...]
    r: tuple[sympy.Expr, ...]
    """rate of each reaction in terms of `x_syms`, `u_syms`, `k_syms`, `v_syms` and `time_symbol`"""
    S: scipy.sparse.csr_matrix
    """nx by nr stoichiometry of the states"""
    Su: scipy.sparse.csr_matrix
    """nu by nr stoichiometry of the inputs (how reactions try to alter them)"""

    y_names: tuple[str, ...]
    C1: np.ndarray
    """ny by nx; outputs are y = C1 x + C2 u + c"""
    C2: np.ndarray
    c: np.ndarray

    @property
    def nv(self) -> int:
        return len(self.v_syms)

    @property
    def nk(self) -> int:
        return len(self.k_syms)

    @property
    def ns(self) -> int:
        return len(self.s_syms)

    @property
    def nu(self) -> int:
        return len(self.u_syms)

    @property
    def nx(self) -> int:
        return len(self.x_syms)

    @property
    def nr(self) -> int:
        return len(self.r)

    @property
    def ny(self) -> int:
        return len(self.y_names)

    def x0(self, s: np.ndarray | None = None) -> np.ndarray:
        """Initial state for seed values `s` (the model's seeds if None)."""
        s = self.s if s is None else np.asarray(s, dtype=float)
        return self.dx0ds @ s + self.x0c

    def species_table(self) -> pl.DataFrame:
        """
        One row per species (states first, then inputs) with its natural name, systematic symbol,
        compartment, role and initial amount.
        """
        return pl.DataFrame({
            'name': list(self.x_names) + list(self.u_names),
            'symbol': [str(sym) for sym in self.x_syms + self.u_syms],
            'compartment': [self.v_names[i] for i in self.vx_index] + [self.v_names[i] for i in self.vu_index],
            'role': ['state'] * self.nx + ['input'] * self.nu,
            'initial_amount': np.concatenate([self.x0(), self.u]).tolist(),
        })


def _check_unique(kind: str, names: Iterable[str]) -> None:
    counts = Counter(names)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if len(duplicates) > 0:
        raise ValidationError(f"{kind} names must be unique, but found duplicates: {', '.join(duplicates)}")


def _value(what: str, value) -> float:
    try:
        return evaluate_constant(value)
    except ValidationError as error:
        raise ValidationError(f"{what} has an invalid value: {error}") from error


@dataclass(frozen=True)
class _RuleParts:
    number: int
    target: str
    value: str


def _split_rules(network: ReactionNetwork) -> list[_RuleParts]:
    parts = []
    for i, rule in enumerate(network.rules, start=1):
        if rule.kind not in (repeated_assignment, initial_assignment):
            raise UnsupportedFeature(f"only {repeated_assignment} and {initial_assignment} rules are "
                                     f"supported, but rule {i} ({rule.rule!r}) has kind {rule.kind!r}")
        splits = rule.rule.split('=')
        if len(splits) != 2:
            raise ValidationError(f"rule {i} ({rule.rule!r}) must contain exactly one '='")
        target, value = splits[0].strip(), splits[1].strip()
        if _identifier.match(target) is None:
            raise ValidationError(f"rule {i} ({rule.rule!r}) has an invalid target {target!r}")
        parts.append(_RuleParts(i, target, value))
    _check_unique('rule target', (part.target for part in parts))
    return parts


class _Symbols:
    """Lookup from natural names (bare or compartment-qualified) to systematic symbols."""

    def __init__(self, network: ReactionNetwork, v_syms, xu_syms, k_syms, rule_syms) -> None:
        self.network = network
        self.compartments = {c.name: sym for c, sym in zip(network.compartments, v_syms)}
        self.species_index_qualified = {sp.qualified_name: i for i, sp in enumerate(network.species)}
        self.species_index_bare: dict[str, list[int]] = {}
        for i, sp in enumerate(network.species):
            self.species_index_bare.setdefault(sp.name, []).append(i)
        self.xu_syms = xu_syms
        self.global_parameters = {}
        self.local_parameters: dict[str, dict[str, sympy.Symbol]] = {}
        for param, sym in zip(network.parameters, k_syms):
            if param.reaction is None:
                self.global_parameters[param.name] = sym
            else:
                self.local_parameters.setdefault(param.reaction, {})[param.name] = sym
        self.rule_syms = rule_syms

    def species_index(self, ref: str) -> int:
        if '.' in ref:
            if ref not in self.species_index_qualified:
                raise ValidationError(f"unknown species {ref!r}")
            return self.species_index_qualified[ref]
        candidates = self.species_index_bare.get(ref, [])
        if len(candidates) == 0:
            raise ValidationError(f"unknown species {ref!r}")
        if len(candidates) > 1:
            compartments = ', '.join(self.network.species[i].compartment for i in candidates)
            raise ValidationError(f"species {ref!r} is ambiguous since it exists in compartments "
                                  f"{compartments}; qualify it as 'compartment.{ref}'")
        return candidates[0]

    def resolver(self, reaction: str | None = None) -> Resolver:
        local = self.local_parameters.get(reaction, {}) if reaction is not None else {}

        def resolve(name: str) -> sympy.Expr:
            if '.' in name:
                return self.xu_syms[self.species_index(name)]
            if name in local:
                return local[name]
            candidates = []
            if name in self.species_index_bare:
                candidates.append(self.xu_syms[self.species_index(name)])
            if name in self.global_parameters:
                candidates.append(self.global_parameters[name])
            if name in self.compartments:
                candidates.append(self.compartments[name])
            if name in self.rule_syms:
                candidates.append(self.rule_syms[name])
            if len(candidates) > 1:
                raise ValidationError(f"name {name!r} is ambiguous; it refers to more than one of "
                                      f"species, parameters, compartments and rule targets")
            if len(candidates) == 1:
                return candidates[0]
            if name == time_symbol.name:
                return time_symbol
            raise ValidationError(f"unknown name {name!r}")

        return resolve


def _validate_network(network: ReactionNetwork) -> None:
    _check_unique('compartment', (c.name for c in network.compartments))
    _check_unique('species', (sp.qualified_name for sp in network.species))
    _check_unique('seed', (seed.name for seed in network.seeds))
    _check_unique('reaction', (rxn.name for rxn in network.reactions))
    _check_unique('output', (out.name for out in network.outputs))
    _check_unique('parameter', (f'{p.reaction}:{p.name}' if p.reaction is not None else p.name
                                for p in network.parameters))

    compartment_names = {c.name for c in network.compartments}
    for sp in network.species:
        if sp.compartment not in compartment_names:
            raise ValidationError(f"species {sp.name} is in compartment {sp.compartment!r}, "
                                  f"which does not exist")
    reaction_names = {rxn.name for rxn in network.reactions}
    for param in network.parameters:
        if param.reaction is not None and param.reaction not in reaction_names:
            raise ValidationError(f"parameter {param.name} is local to reaction {param.reaction!r}, "
                                  f"which does not exist")


def _stoichiometry(network: ReactionNetwork, symbols: _Symbols,
                   v: np.ndarray, vxu_index: np.ndarray) -> scipy.sparse.csr_matrix:
    rows: list[int] = []
    cols: list[int] = []
    vals: list[float] = []

    def add(ir: int, refs: Sequence[SpeciesRef], sign: int) -> None:
        for ref, coefficient in refs:
            ixu = symbols.species_index(ref)
            value = sign * float(coefficient)
            if network.species_units == 'concentration':
                value /= v[vxu_index[ixu]]
            rows.append(ixu)
            cols.append(ir)
            vals.append(value)

    for ir, rxn in enumerate(network.reactions):
        try:
            add(ir, rxn.reactants, -1)
            add(ir, rxn.products, +1)
        except ValidationError as error:
            raise ValidationError(f"reaction {rxn.name}: {error}") from error

    # duplicate (species, reaction) entries are summed when converting from COO
    shape = (len(network.species), len(network.reactions))
    return scipy.sparse.coo_matrix((vals, (rows, cols)), shape=shape).tocsr()


def substitute_rules(rates: Sequence[sympy.Expr],
                     rules: Mapping[sympy.Symbol, sympy.Expr]) -> tuple[sympy.Expr, ...]:
    """
    Replace every rule target in `rates` by its value, repeating so that rule values referring to
    other ruled symbols are also expanded. At most ``len(rules)`` passes are made.

    Raises
    ------
    CyclicRuleDependency
        if some target still appears in a rate after the last pass
    """
    targets = set(rules.keys())
    rates = tuple(rates)
    for _ in range(len(rules)):
        if not any(rate.free_symbols & targets for rate in rates):
            break
        rates = tuple(rate.xreplace(rules) for rate in rates)
    remaining = set()
    for rate in rates:
        remaining |= rate.free_symbols & targets
    if len(remaining) > 0:
        names = tuple(sorted(str(sym) for sym in remaining))
        raise CyclicRuleDependency(f"rule substitution did not converge after {len(rules)} passes; "
                                   f"rules for {', '.join(names)} depend on each other cyclically",
                                   remaining=names)
    return rates


def compile_symbolic(network: ReactionNetwork, verbose: int = 0) -> SymbolicModel:
    """
    Compile `network` into its canonical [`SymbolicModel`][crnsens.compiler.SymbolicModel].

    Parameters
    ----------
    network:
        the reaction network to compile

    verbose:
        if positive, progress is logged at INFO level (otherwise at DEBUG level)

    Returns
    -------
    :
        the canonical symbolic model

    Raises
    ------
    ValidationError
        if a name is duplicated or a reference cannot be resolved
    UnsupportedFeature
        if a rule has an unsupported kind or targets a species
    CyclicRuleDependency
        if the rules depend on each other cyclically
    """
    log = logger.info if verbose else logger.debug
    _validate_network(network)

    log("Extracting model components of %s", network.name)
    v = np.array([_value(f"compartment {c.name}", c.size) for c in network.compartments], dtype=float)
    for c, size in zip(network.compartments, v):
        if size <= 0:
            raise ValidationError(f"compartment {c.name} must have positive size, but has size {size}")
    dv = np.array([c.dimension for c in network.compartments], dtype=int)
    compartment_index = {c.name: i for i, c in enumerate(network.compartments)}
    vxu_index = np.array([compartment_index[sp.compartment] for sp in network.species], dtype=int)
    xu0 = np.array([_value(f"species {sp.qualified_name}", sp.initial_amount) for sp in network.species],
                   dtype=float)
    s = np.array([_value(f"seed {seed.name}", seed.value) for seed in network.seeds], dtype=float)
    k_all = np.array([_value(f"parameter {p.name}", p.value) for p in network.parameters], dtype=float)
    rule_parts = _split_rules(network)

    log("Renaming variables")
    species_names = {sp.name for sp in network.species}
    global_parameter_names = {p.name for p in network.parameters if p.reaction is None}
    free_targets = [part.target for part in rule_parts
                    if part.target not in global_parameter_names and part.target not in species_names]
    index = NameIndex.of(
        [c.name for c in network.compartments]
        + [sp.name for sp in network.species]
        + [seed.name for seed in network.seeds]
        + [p.name for p in network.parameters]
        + free_targets
    )
    v_nice, index = systematic_names(index, 'co', [c.name for c in network.compartments])
    xu_nice, index = systematic_names(index, 'sp', [sp.name for sp in network.species])
    s_nice, index = systematic_names(index, 'se', [seed.name for seed in network.seeds])
    k_nice, index = systematic_names(index, 'pa', [p.name for p in network.parameters])
    rule_nice, index = systematic_names(index, 'ru', free_targets)

    v_syms = tuple(sympy.Symbol(name) for name in v_nice)
    xu_syms = tuple(sympy.Symbol(name) for name in xu_nice)
    s_syms = tuple(sympy.Symbol(name) for name in s_nice)
    k_syms_all = tuple(sympy.Symbol(name) for name in k_nice)
    rule_syms = {target: sympy.Symbol(name) for target, name in zip(free_targets, rule_nice)}
    symbols = _Symbols(network, v_syms, xu_syms, k_syms_all, rule_syms)

    log("Building the differential equations")
    rates = []
    for rxn in network.reactions:
        try:
            rates.append(parse_expression(rxn.rate, symbols.resolver(rxn.name)))
        except ValidationError as error:
            raise ValidationError(f"reaction {rxn.name}: {error}") from error
    S_all = _stoichiometry(network, symbols, v, vxu_index)

    # rules
    global_resolve = symbols.resolver()
    rules: dict[sympy.Symbol, sympy.Expr] = {}
    for part in rule_parts:
        if part.target in species_names:
            raise UnsupportedFeature(f"rule {part.number} targets species {part.target}; "
                                     f"only parameters and free names may be targets of rules")
        target = global_resolve(part.target)
        try:
            rules[target] = parse_expression(part.value, global_resolve)
        except ValidationError as error:
            raise ValidationError(f"rule {part.number} ({part.target}): {error}") from error
    r = substitute_rules(rates, rules)

    # ruled parameters are no longer free
    keep_k = [i for i, sym in enumerate(k_syms_all) if sym not in rules]

    # states and inputs
    is_u = np.array([sp.is_input for sp in network.species], dtype=bool)
    x_index = np.flatnonzero(~is_u)
    u_index = np.flatnonzero(is_u)
    seed_index = {seed.name: i for i, seed in enumerate(network.seeds)}
    dx0ds = np.zeros((len(x_index), len(network.seeds)))
    for ix, ixu in enumerate(x_index):
        sp = network.species[ixu]
        for seed_name, coefficient in sp.seeds.items():
            if seed_name not in seed_index:
                raise ValidationError(f"species {sp.qualified_name} refers to unknown seed {seed_name!r}")
            dx0ds[ix, seed_index[seed_name]] += coefficient
    for ixu in u_index:
        sp = network.species[ixu]
        if len(sp.seeds) > 0:
            raise ValidationError(f"species {sp.qualified_name} is an input, so it cannot have seeds")

    C1, C2, c = _outputs(network, symbols, x_index, u_index)

    log("Done compiling %s: %d states, %d inputs, %d reactions", network.name, len(x_index),
        len(u_index), len(network.reactions))

    return SymbolicModel(
        name=network.name,
        v_syms=v_syms,
        v_names=tuple(c.name for c in network.compartments),
        v=v,
        dv=dv,
        k_syms=tuple(k_syms_all[i] for i in keep_k),
        k_names=tuple(network.parameters[i].name for i in keep_k),
        k=k_all[keep_k],
        s_syms=s_syms,
        s_names=tuple(seed.name for seed in network.seeds),
        s=s,
        u_syms=tuple(xu_syms[i] for i in u_index),
        u_names=tuple(network.species[i].name for i in u_index),
        u=xu0[u_index],
        vu_index=vxu_index[u_index],
        x_syms=tuple(xu_syms[i] for i in x_index),
        x_names=tuple(network.species[i].name for i in x_index),
        vx_index=vxu_index[x_index],
        x0c=xu0[x_index],
        dx0ds=dx0ds,
        r_names=tuple(rxn.name for rxn in network.reactions),
        r=r,
        S=S_all[x_index, :],
        Su=S_all[u_index, :],
        y_names=tuple(out.name for out in network.outputs),
        C1=C1,
        C2=C2,
        c=c,
    )


def _outputs(network: ReactionNetwork, symbols: _Symbols,
             x_index: np.ndarray, u_index: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    x_position = {ixu: ix for ix, ixu in enumerate(x_index)}
    u_position = {ixu: iu for iu, ixu in enumerate(u_index)}
    ny = len(network.outputs)
    C1 = np.zeros((ny, len(x_index)))
    C2 = np.zeros((ny, len(u_index)))
    c = np.zeros(ny)
    for iy, output in enumerate(network.outputs):
        for ref, weight in output.expression.items():
            try:
                ixu = symbols.species_index(ref)
            except ValidationError as error:
                raise ValidationError(f"output {output.name}: {error}") from error
            if ixu in x_position:
                C1[iy, x_position[ixu]] += weight
            else:
                C2[iy, u_position[ixu]] += weight
        c[iy] = output.constant
    return C1, C2, c

