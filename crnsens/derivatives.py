r"""
Symbolic differentiation of a compiled model, and numeric functions for the derivatives.

Given the rate laws $r(t, x, u, k)$ and the stoichiometry $S$ of a
[`SymbolicModel`][crnsens.compiler.SymbolicModel], the right-hand side of the state ODEs is
$f = S \cdot r$. [`ModelDerivatives`][crnsens.derivatives.ModelDerivatives] differentiates $f$
with respect to the states $x$ and to the raw parameters $p = [u; k]$
(the inputs followed by the kinetic parameters), up to the requested order:

| order | tensors (shape) |
|-------|-----------------|
| 0     | `f` (nx) |
| 1     | `dfdx` (nx, nx), `dfdp` (nx, np) |
| 2     | `d2fdx2` (nx, nx, nx), `d2fdpdx` (nx, np, nx), `d2fdp2` (nx, np, np) |
| 3     | `d3fdx3` (nx, nx, nx, nx), `d3fdpdx2` (nx, np, nx, nx), `d3fdp2dx` (nx, np, np, nx) |

Index convention: a tensor named ``dNf/dA..dB..`` has shape ``(nx, nA, ..., nB, ...)`` with the
differentiation variables in the order they appear in its name, so that e.g.
``d2fdpdx[i, a, j]`` $= \partial^2 f_i / \partial p_a \partial x_j$. Whenever a tensor is flattened
(into a joint ODE vector or a Jacobian block) this is done in C (row-major) order, i.e., the last
index varies fastest. [`crnsens.ode`][crnsens.ode] and [`crnsens.results`][crnsens.results]
rely on exactly this convention.

The cost of building the tensors grows combinatorially with the order, so only ask for the order
that is needed: 1 for sensitivities, 2 for curvatures, 3 for exact curvature Jacobians.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import sympy

from crnsens.compiler import SymbolicModel, compile_symbolic, time_symbol
from crnsens.errors import UnsupportedFeature
from crnsens.network import ReactionNetwork

logger = logging.getLogger(__name__)

max_order = 3
"""highest derivative order that can be compiled"""


class CompiledTensor:
    """
    A derivative tensor compiled into a numeric function of ``(t, x, u)``.

    Only the structurally nonzero entries are lambdified; calling the tensor fills them into an
    array of zeros of shape `shape`.
    """

    def __init__(self, name: str, exprs: Sequence[sympy.Expr], shape: tuple[int, ...],
                 args: Sequence[sympy.Symbol], k: np.ndarray) -> None:
        assert len(exprs) == math.prod(shape)
        self.name = name
        self.shape = shape
        self.k = k
        nonzero = [(i, expr) for i, expr in enumerate(exprs) if expr != 0]
        self.entries = np.array([i for i, _ in nonzero], dtype=int)
        self.exprs = tuple(expr for _, expr in nonzero)
        if len(nonzero) > 0:
            self._func = sympy.lambdify(tuple(args), list(self.exprs), modules='numpy', cse=True)
        else:
            self._func = None

    @property
    def nnz(self) -> int:
        return len(self.entries)

    def __call__(self, t: float, x: np.ndarray, u: np.ndarray) -> np.ndarray:
        out = np.zeros(math.prod(self.shape))
        if self._func is not None:
            out[self.entries] = self._func(t, *x, *u, *self.k)
        return out.reshape(self.shape)

    def __repr__(self) -> str:
        return f"CompiledTensor({self.name}, shape={self.shape}, nnz={self.nnz})"


def _differentiate(exprs: list[sympy.Expr], variables: Sequence[sympy.Symbol]) -> list[sympy.Expr]:
    # C order: the new (differentiation) index varies fastest
    return [expr.diff(var) if expr != 0 else sympy.Integer(0)
            for expr in exprs for var in variables]


def _coefficient(value: float) -> sympy.Expr:
    if float(value).is_integer():
        return sympy.Integer(int(value))
    return sympy.Float(value)


def state_equations(model: SymbolicModel) -> list[sympy.Expr]:
    """
    The symbolic right-hand side $f = S \\cdot r$ with compartment sizes substituted by their values.
    """
    sizes = {sym: _coefficient(size) for sym, size in zip(model.v_syms, model.v)}
    r = [rate.xreplace(sizes) for rate in model.r]
    f = [sympy.Integer(0)] * model.nx
    S = model.S.tocoo()
    for i, j, coeff in zip(S.row, S.col, S.data):
        if coeff != 0:
            f[i] = f[i] + _coefficient(coeff) * r[j]
    return f


class ModelDerivatives:
    """
    The numeric functions `f` and its derivatives (see the module documentation for names,
    shapes and the index convention). Tensors beyond `order` are None.
    """

    def __init__(self, model: SymbolicModel, order: int = 2, verbose: int = 0) -> None:
        if not isinstance(order, int) or order < 0 or order > max_order:
            raise UnsupportedFeature(f"order must be an integer between 0 and {max_order}, but is {order}")
        log = logger.info if verbose else logger.debug
        self.order = order
        self.nx = model.nx
        self.n_p = model.nu + model.nk

        x = list(model.x_syms)
        p = list(model.u_syms) + list(model.k_syms)
        args = [time_symbol] + x + list(model.u_syms) + list(model.k_syms)
        nx, n_p = self.nx, self.n_p

        def compile_tensor(name: str, exprs: list[sympy.Expr], shape: tuple[int, ...]) -> CompiledTensor:
            tensor = CompiledTensor(name, exprs, shape, args, model.k)
            log("Compiled %r", tensor)
            return tensor

        sizes = {sym: _coefficient(size) for sym, size in zip(model.v_syms, model.v)}
        self.r = compile_tensor('r', [rate.xreplace(sizes) for rate in model.r], (model.nr,))

        f = state_equations(model)
        self.f = compile_tensor('f', f, (nx,))

        self.dfdx = self.dfdp = None
        self.d2fdx2 = self.d2fdpdx = self.d2fdp2 = None
        self.d3fdx3 = self.d3fdpdx2 = self.d3fdp2dx = None

        if order >= 1:
            log("Computing first-order derivatives")
            dfdx = _differentiate(f, x)
            dfdp = _differentiate(f, p)
            self.dfdx = compile_tensor('dfdx', dfdx, (nx, nx))
            self.dfdp = compile_tensor('dfdp', dfdp, (nx, n_p))
        if order >= 2:
            log("Computing second-order derivatives")
            d2fdx2 = _differentiate(dfdx, x)
            d2fdpdx = _differentiate(dfdp, x)
            d2fdp2 = _differentiate(dfdp, p)
            self.d2fdx2 = compile_tensor('d2fdx2', d2fdx2, (nx, nx, nx))
            self.d2fdpdx = compile_tensor('d2fdpdx', d2fdpdx, (nx, n_p, nx))
            self.d2fdp2 = compile_tensor('d2fdp2', d2fdp2, (nx, n_p, n_p))
        if order >= 3:
            log("Computing third-order derivatives")
            self.d3fdx3 = compile_tensor('d3fdx3', _differentiate(d2fdx2, x), (nx, nx, nx, nx))
            self.d3fdpdx2 = compile_tensor('d3fdpdx2', _differentiate(d2fdpdx, x), (nx, n_p, nx, nx))
            self.d3fdp2dx = compile_tensor('d3fdp2dx', _differentiate(d2fdp2, x), (nx, n_p, n_p, nx))

    def require(self, order: int, purpose: str) -> None:
        """
        Raises
        ------
        UnsupportedFeature
            if these derivatives were compiled to an order lower than `order`
        """
        if self.order < order:
            raise UnsupportedFeature(f"{purpose} requires a model compiled with order >= {order}, "
                                     f"but this model was compiled with order {self.order}")


@dataclass(frozen=True, eq=False)
class CompiledModel:
    """
    A [`SymbolicModel`][crnsens.compiler.SymbolicModel] together with its
    [`ModelDerivatives`][crnsens.derivatives.ModelDerivatives]. Attributes of the symbolic model
    (``nx``, ``k_names``, ``C1``, ...) can be read directly from the compiled model.
    This is what the simulation functions in [`crnsens.simulate`][crnsens.simulate] take;
    it is never modified, so it can be shared by any number of simulations.
    """

    symbolic: SymbolicModel

    derivatives: ModelDerivatives

    @property
    def order(self) -> int:
        return self.derivatives.order

    def __getattr__(self, name: str):
        if name in ('symbolic', 'derivatives') or name.startswith('__'):
            raise AttributeError(name)
        return getattr(self.symbolic, name)


def compile_model(network: ReactionNetwork, order: int = 2, verbose: int = 0) -> CompiledModel:
    """
    Compile `network` symbolically and differentiate it to `order`.

    Parameters
    ----------
    network:
        the reaction network

    order:
        0 (states only), 1 (sensitivities), 2 (curvatures) or 3 (curvatures with exact Jacobians)

    verbose:
        if positive, progress is logged at INFO level

    Raises
    ------
    UnsupportedFeature
        if `order` is not between 0 and 3;
        see also [`compile_symbolic`][crnsens.compiler.compile_symbolic]
    """
    if not isinstance(order, int) or order < 0 or order > max_order:
        raise UnsupportedFeature(f"order must be an integer between 0 and {max_order}, but is {order}")
    symbolic = compile_symbolic(network, verbose=verbose)
    derivatives = ModelDerivatives(symbolic, order=order, verbose=verbose)
    return CompiledModel(symbolic, derivatives)
