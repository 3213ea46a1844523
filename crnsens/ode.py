r"""
This module builds the joint ODE systems (derivative and Jacobian functions) for states,
objective functions, sensitivities and curvatures, and integrates them with scipy's
[`solve_ivp`](https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.solve_ivp.html).

Joint vector layout. With `nx` states and `nT` active parameters, the joint vector is

```
[ x (nx) | dx/dT (nx*nT) | d2x/dT2 (nx*nT*nT) ]
```

where ``dx/dT`` is the C-order flattening of an array of shape ``(nx, nT)`` and ``d2x/dT2``
the C-order flattening of an array of shape ``(nx, nT, nT)`` (state index slowest, parameter
indices fastest). The objective system instead appends a single accumulator ``G`` after ``x``.
The derivative function, the Jacobian function and [`crnsens.results`][crnsens.results] all
use this layout; see [`crnsens.derivatives`][crnsens.derivatives] for the layout of the
derivative tensors themselves.

Active parameters ``T`` are the selected kinetic parameters, then the selected seeds,
then the selected input control parameters. The raw parameters ``p = [u; k]`` that the
derivative tensors are taken with respect to are mapped onto ``T`` by
$L = \partial p / \partial T$ (shape ``(np, nT)``) and $L_2 = \partial^2 p / \partial T^2$
(shape ``(np, nT, nT)``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

import numpy as np
import scipy.sparse
from scipy.integrate import solve_ivp, OdeSolution
from scipy.integrate._ivp.ivp import METHODS, OdeResult  # noqa

from crnsens.derivatives import ModelDerivatives
from crnsens.errors import CrnSensError, IntegrationFailure

logger = logging.getLogger(__name__)

DerivativeFunction = Callable[[float, np.ndarray], np.ndarray]
JacobianFunction = Callable[[float, np.ndarray], np.ndarray | scipy.sparse.spmatrix]

implicit_methods = ('BDF', 'Radau', 'LSODA')
"""solve_ivp methods that use the Jacobian"""


@dataclass(frozen=True)
class InputFunction:
    r"""
    Amounts of the input species as a function of time, shaped by control parameters `q`.
    Sensitivities with respect to `q` require `dudq`; curvatures with respect to `q` use
    `d2udq2` if given (otherwise $\partial^2 u / \partial q^2$ is taken to be 0).
    """

    q: np.ndarray
    """values of the input control parameters"""

    u: Callable[[float, np.ndarray], np.ndarray]
    """``u(t, q)`` returns the input amounts (shape ``(nu,)``) at time `t`"""

    dudq: Callable[[float, np.ndarray], np.ndarray] | None = None
    """``dudq(t, q)`` returns shape ``(nu, nq)``"""

    d2udq2: Callable[[float, np.ndarray], np.ndarray] | None = None
    """``d2udq2(t, q)`` returns shape ``(nu, nq, nq)``"""

    def __post_init__(self) -> None:
        object.__setattr__(self, 'q', np.asarray(self.q, dtype=float).reshape(-1))

    @property
    def nq(self) -> int:
        return len(self.q)

    def at(self, t: float) -> np.ndarray:
        return np.asarray(self.u(t, self.q), dtype=float).reshape(-1)


def constant_inputs(values: Iterable[float]) -> InputFunction:
    """[`InputFunction`][crnsens.ode.InputFunction] holding the inputs at `values` forever."""
    values = np.array(list(values), dtype=float)
    return InputFunction(q=np.zeros(0), u=lambda t, q: values)


@dataclass(frozen=True)
class ActiveParameters:
    """
    Indices of the kinetic parameters, seeds and input control parameters whose
    sensitivities are wanted, in that order.
    """

    k: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))

    s: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))

    q: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))

    def __post_init__(self) -> None:
        for attr in ('k', 's', 'q'):
            object.__setattr__(self, attr, np.asarray(getattr(self, attr), dtype=int).reshape(-1))

    @property
    def nT(self) -> int:
        return len(self.k) + len(self.s) + len(self.q)


class ParameterProjection:
    """
    Evaluates $L = \\partial p / \\partial T$ and $L_2 = \\partial^2 p / \\partial T^2$ at a time;
    both are constant unless input control parameters are active.
    """

    def __init__(self, nu: int, nk: int, active: ActiveParameters, inputs: InputFunction) -> None:
        self.nu = nu
        self.active = active
        self.inputs = inputs
        nT = active.nT
        self.L_static = np.zeros((nu + nk, nT))
        for column, ik in enumerate(active.k):
            self.L_static[nu + ik, column] = 1.0
        self.q_offset = len(active.k) + len(active.s)
        if len(active.q) > 0 and inputs.dudq is None:
            raise ValueError("sensitivities with respect to input control parameters "
                             "require the input function to provide dudq")

    @property
    def time_varying(self) -> bool:
        return len(self.active.q) > 0

    def L(self, t: float) -> np.ndarray:
        if not self.time_varying:
            return self.L_static
        L = self.L_static.copy()
        dudq = np.asarray(self.inputs.dudq(t, self.inputs.q), dtype=float).reshape(self.nu, self.inputs.nq)
        columns = slice(self.q_offset, self.q_offset + len(self.active.q))
        L[:self.nu, columns] = dudq[:, self.active.q]
        return L

    def L2(self, t: float) -> np.ndarray | None:
        """None if $L_2$ is identically zero."""
        if not self.time_varying or self.inputs.d2udq2 is None:
            return None
        nT = self.active.nT
        L2 = np.zeros((self.L_static.shape[0], nT, nT))
        d2udq2 = np.asarray(self.inputs.d2udq2(t, self.inputs.q), dtype=float)
        d2udq2 = d2udq2.reshape(self.nu, self.inputs.nq, self.inputs.nq)
        columns = slice(self.q_offset, self.q_offset + len(self.active.q))
        L2[:self.nu, columns, columns] = d2udq2[:, self.active.q][:, :, self.active.q]
        return L2


@dataclass(frozen=True)
class Objective:
    """A continuous objective contribution ``g(t, x, u)`` and its gradient ``dgdx(t, x, u)`` (shape ``(nx,)``)."""

    g: Callable[[float, np.ndarray, np.ndarray], float]

    dgdx: Callable[[float, np.ndarray, np.ndarray], np.ndarray]


def state_system(derivs: ModelDerivatives,
                 inputs: InputFunction) -> tuple[DerivativeFunction, JacobianFunction | None]:
    """Derivative and Jacobian of ``x``. The Jacobian is None if the model was compiled with order 0."""
    f = derivs.f
    dfdx = derivs.dfdx

    def derivative(t: float, x: np.ndarray) -> np.ndarray:
        return f(t, x, inputs.at(t))

    def jacobian(t: float, x: np.ndarray) -> np.ndarray:
        return dfdx(t, x, inputs.at(t))

    return derivative, (jacobian if dfdx is not None else None)


def objective_system(derivs: ModelDerivatives, inputs: InputFunction,
                     objectives: Sequence[Objective],
                     weights: Sequence[float]) -> tuple[DerivativeFunction, JacobianFunction | None]:
    r"""
    Derivative and Jacobian of ``[x; G]`` where $dG/dt = \sum_i w_i g_i(t, x, u)$.
    The last row of the Jacobian is $\sum_i w_i \partial g_i / \partial x$; its last column is zero.
    """
    if len(objectives) != len(weights):
        raise ValueError(f"got {len(objectives)} objectives but {len(weights)} weights")
    nx = derivs.nx
    f = derivs.f
    dfdx = derivs.dfdx

    def derivative(t: float, joint: np.ndarray) -> np.ndarray:
        u = inputs.at(t)
        x = joint[:nx]
        g = 0.0
        for objective, weight in zip(objectives, weights):
            g += weight * objective.g(t, x, u)
        return np.concatenate([f(t, x, u), [g]])

    def jacobian(t: float, joint: np.ndarray) -> np.ndarray:
        u = inputs.at(t)
        x = joint[:nx]
        val = np.zeros((nx + 1, nx + 1))
        val[:nx, :nx] = dfdx(t, x, u)
        for objective, weight in zip(objectives, weights):
            val[nx, :nx] += weight * np.asarray(objective.dgdx(t, x, u), dtype=float).reshape(nx)
        return val

    return derivative, (jacobian if dfdx is not None else None)


def sensitivity_system(derivs: ModelDerivatives, inputs: InputFunction,
                       projection: ParameterProjection) -> tuple[DerivativeFunction, JacobianFunction | None]:
    r"""
    Derivative and Jacobian of ``[x; dx/dT]`` with
    $\frac{d}{dt} \frac{dx}{dT} = \frac{\partial f}{\partial x} \frac{dx}{dT} + \frac{\partial f}{\partial T}$.

    The Jacobian block of the sensitivity rows with respect to ``x`` needs second derivatives;
    if the model was compiled with order 1 it is left at zero and the solver works with an
    approximate Jacobian.
    """
    derivs.require(1, "integrating sensitivities")
    nx = derivs.nx
    nT = projection.active.nT
    if nT == 0:
        return state_system(derivs, inputs)
    f, dfdx, dfdp = derivs.f, derivs.dfdx, derivs.dfdp
    d2fdx2, d2fdpdx = derivs.d2fdx2, derivs.d2fdpdx
    eye_T = scipy.sparse.identity(nT, format='csr')

    def derivative(t: float, joint: np.ndarray) -> np.ndarray:
        u = inputs.at(t)
        x = joint[:nx]
        dxdT = joint[nx:].reshape(nx, nT)
        dfdT = dfdp(t, x, u) @ projection.L(t)
        d_dxdT = dfdx(t, x, u) @ dxdT + dfdT
        return np.concatenate([f(t, x, u), d_dxdT.reshape(-1)])

    def jacobian(t: float, joint: np.ndarray) -> scipy.sparse.spmatrix:
        u = inputs.at(t)
        x = joint[:nx]
        dxdT = joint[nx:].reshape(nx, nT)
        A = dfdx(t, x, u)
        if d2fdx2 is not None:
            d2fdTdx = np.einsum('ipj,pa->iaj', d2fdpdx(t, x, u), projection.L(t))
            sens_x = np.einsum('ijl,ja->ial', d2fdx2(t, x, u), dxdT) + d2fdTdx
        else:
            sens_x = np.zeros((nx, nT, nx))
        return scipy.sparse.bmat([
            [scipy.sparse.csr_matrix(A), None],
            [scipy.sparse.csr_matrix(sens_x.reshape(nx * nT, nx)), scipy.sparse.kron(A, eye_T)],
        ], format='csc')

    return derivative, jacobian


def curvature_system(derivs: ModelDerivatives, inputs: InputFunction,
                     projection: ParameterProjection) -> tuple[DerivativeFunction, JacobianFunction]:
    r"""
    Derivative and Jacobian of ``[x; dx/dT; d2x/dT2]`` with

    $$
    \frac{d}{dt} \frac{d^2x}{dT^2} = \frac{\partial f}{\partial x} \frac{d^2x}{dT^2}
        + 2 \cdot \frac{\partial^2 f}{\partial T \partial x} \frac{dx}{dT}
        + \left(\frac{\partial^2 f}{\partial x^2} \frac{dx}{dT}\right) \frac{dx}{dT}
        + \frac{\partial^2 f}{\partial T^2}
    $$

    where the middle term is symmetrized over the two parameter indices.
    The block of the curvature rows with respect to ``x`` is exact only if the model was compiled
    with order 3; otherwise the third-derivative terms are left out of it.
    """
    derivs.require(2, "integrating curvatures")
    nx = derivs.nx
    nT = projection.active.nT
    if nT == 0:
        return state_system(derivs, inputs)
    nTT = nT * nT
    f, dfdx, dfdp = derivs.f, derivs.dfdx, derivs.dfdp
    d2fdx2, d2fdpdx, d2fdp2 = derivs.d2fdx2, derivs.d2fdpdx, derivs.d2fdp2
    d3fdx3, d3fdpdx2, d3fdp2dx = derivs.d3fdx3, derivs.d3fdpdx2, derivs.d3fdp2dx
    eye_T = np.eye(nT)

    def split(joint: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        x = joint[:nx]
        dxdT = joint[nx:nx + nx * nT].reshape(nx, nT)
        d2xdT2 = joint[nx + nx * nT:].reshape(nx, nT, nT)
        return x, dxdT, d2xdT2

    def parameter_terms(t: float, x: np.ndarray, u: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        # dfdT (nx, nT), d2fdTdx (nx, nT, nx), d2fdT2 (nx, nT, nT)
        L = projection.L(t)
        L2 = projection.L2(t)
        dfdp_val = dfdp(t, x, u)
        dfdT = dfdp_val @ L
        d2fdTdx = np.einsum('ipj,pa->iaj', d2fdpdx(t, x, u), L)
        d2fdT2 = np.einsum('ipq,pa,qb->iab', d2fdp2(t, x, u), L, L)
        if L2 is not None:
            d2fdT2 += np.einsum('ip,pab->iab', dfdp_val, L2)
        return dfdT, d2fdTdx, d2fdT2

    def derivative(t: float, joint: np.ndarray) -> np.ndarray:
        u = inputs.at(t)
        x, dxdT, d2xdT2 = split(joint)
        A = dfdx(t, x, u)
        H = d2fdx2(t, x, u)
        dfdT, d2fdTdx, d2fdT2 = parameter_terms(t, x, u)

        d_dxdT = A @ dxdT + dfdT
        mixed = np.einsum('iaj,jb->iab', d2fdTdx, dxdT)
        d_d2xdT2 = (np.einsum('ij,jab->iab', A, d2xdT2)
                    + mixed + mixed.transpose(0, 2, 1)
                    + np.einsum('ijl,ja,lb->iab', H, dxdT, dxdT)
                    + d2fdT2)
        return np.concatenate([f(t, x, u), d_dxdT.reshape(-1), d_d2xdT2.reshape(-1)])

    def jacobian(t: float, joint: np.ndarray) -> scipy.sparse.spmatrix:
        u = inputs.at(t)
        x, dxdT, d2xdT2 = split(joint)
        A = dfdx(t, x, u)
        H = d2fdx2(t, x, u)
        _, d2fdTdx, _ = parameter_terms(t, x, u)

        # sensitivity rows
        sens_x = np.einsum('ijl,ja->ial', H, dxdT) + d2fdTdx
        sens_sens = scipy.sparse.kron(A, scipy.sparse.identity(nT))

        # curvature rows with respect to x
        curv_x = np.einsum('ijl,jab->iabl', H, d2xdT2)
        if d3fdx3 is not None:
            L = projection.L(t)
            L2 = projection.L2(t)
            d3fdTdx2 = np.einsum('ipjl,pa->iajl', d3fdpdx2(t, x, u), L)
            d3fdT2dx = np.einsum('ipql,pa,qb->iabl', d3fdp2dx(t, x, u), L, L)
            if L2 is not None:
                d3fdT2dx += np.einsum('ipl,pab->iabl', d2fdpdx(t, x, u), L2)
            curv_x += (np.einsum('ijml,ja,mb->iabl', d3fdx3(t, x, u), dxdT, dxdT)
                       + np.einsum('iajl,jb->iabl', d3fdTdx2, dxdT)
                       + np.einsum('ibjl,ja->iabl', d3fdTdx2, dxdT)
                       + d3fdT2dx)

        # curvature rows with respect to dx/dT:
        # d(d2x/dT2)[i,a,b] / d(dx/dT)[m,c] = delta_ac G[i,m,b] + delta_bc G[i,m,a]
        G = np.einsum('iml,lb->imb', H, dxdT) + d2fdTdx.transpose(0, 2, 1)
        curv_sens = (np.einsum('ac,imb->iabmc', eye_T, G)
                     + np.einsum('bc,ima->iabmc', eye_T, G))

        curv_curv = scipy.sparse.kron(A, scipy.sparse.identity(nTT))

        return scipy.sparse.bmat([
            [scipy.sparse.csr_matrix(A), None, None],
            [scipy.sparse.csr_matrix(sens_x.reshape(nx * nT, nx)), sens_sens, None],
            [scipy.sparse.csr_matrix(curv_x.reshape(nx * nTT, nx)),
             scipy.sparse.csr_matrix(curv_sens.reshape(nx * nTT, nx * nT)), curv_curv],
        ], format='csc')

    return derivative, jacobian


def _segments(t_span: tuple[float, float], discontinuities: Iterable[float]) -> list[tuple[float, float]]:
    t0, t_final = t_span
    breaks = sorted({float(d) for d in discontinuities if t0 < d < t_final})
    bounds = [t0] + breaks + [t_final]
    return list(zip(bounds[:-1], bounds[1:]))


def _left_of(t_end: float, derivative: DerivativeFunction,
             jacobian: JacobianFunction | None) -> tuple[DerivativeFunction, JacobianFunction | None]:
    # inputs are right-continuous, so a segment ending at a discontinuity must not see the next piece
    t_inside = np.nextafter(t_end, -np.inf)

    def segment_derivative(t: float, y: np.ndarray) -> np.ndarray:
        return derivative(min(t, t_inside), y)

    if jacobian is None:
        return segment_derivative, None

    def segment_jacobian(t: float, y: np.ndarray):
        return jacobian(min(t, t_inside), y)

    return segment_derivative, segment_jacobian


def integrate_system(
        derivative: DerivativeFunction,
        jacobian: JacobianFunction | None,
        y0: np.ndarray,
        t_final: float,
        *,
        discontinuities: Iterable[float] = (),
        t0: float = 0.0,
        rtol: float = 1e-6,
        atol: float | np.ndarray = 1e-9,
        method: str = 'BDF',
        **options,
) -> OdeResult:
    """
    Integrate a joint system from `t0` to `t_final`, restarting the solver exactly at every
    time in `discontinuities` that lies strictly inside the interval, and return the same kind of
    object returned by
    [`solve_ivp`](https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.solve_ivp.html).

    The dense outputs of the segments are stitched into a single
    [`OdeSolution`](https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.OdeSolution.html)
    in the field `sol`, so the solution can be queried at any time in ``[t0, t_final]``.
    The result has the additional fields `discontinuity_times` and `discontinuity_indices`
    (indices into `t` of the restart points).

    Parameters
    ----------
    derivative, jacobian:
        as built by e.g. [`sensitivity_system`][crnsens.ode.sensitivity_system];
        `jacobian` may be None, and is only used by implicit methods

    y0:
        initial joint vector

    t_final:
        final time; must be greater than `t0`

    discontinuities:
        times at which the system or its inputs change form. Inputs are taken to be
        right-continuous: at a discontinuity the solver sees the value of the piece that starts there.

    rtol, atol:
        relative and (scalar or per-component) absolute tolerance

    method:
        See [`solve_ivp`](https://docs.scipy.org/doc/scipy/reference/generated/scipy.integrate.solve_ivp.html);
        the default is the stiff solver ``'BDF'``.

    options:
        passed along to `solve_ivp`

    Raises
    ------
    IntegrationFailure
        if the solver fails on any segment, or raises while stepping (e.g., on non-finite
        derivatives reaching its linear algebra)
    ValueError
        if the arguments are invalid
    """
    if not t_final > t0:
        raise ValueError(f"t_final must be greater than t0 = {t0}, but is {t_final}")
    y0 = np.asarray(y0, dtype=float)
    atol = np.asarray(atol, dtype=float)
    if atol.ndim > 0 and atol.shape != y0.shape:
        raise ValueError(f"atol has {atol.size} components, but the system has {y0.size}")
    if isinstance(method, str) and method not in METHODS:
        raise ValueError(f"method must be one of {', '.join(METHODS)}, but is {method!r}")
    use_jacobian = method in implicit_methods and jacobian is not None

    all_t = []
    all_y = []
    ts = [np.array([t0])]
    interpolants = []
    discontinuity_times = []
    discontinuity_indices = []
    total_nfev = 0
    total_njev = 0
    total_nlu = 0
    current_y = y0.copy()
    n_points = 0
    segments = _segments((t0, t_final), discontinuities)
    for i, (t_start, t_end) in enumerate(segments):
        if i > 0:
            discontinuity_times.append(t_start)
            discontinuity_indices.append(n_points - 1)
        segment_derivative, segment_jacobian = derivative, jacobian
        if i < len(segments) - 1:
            segment_derivative, segment_jacobian = _left_of(t_end, derivative, jacobian)
        if use_jacobian:
            options['jac'] = segment_jacobian
        try:
            segment_sol = solve_ivp(
                fun=segment_derivative,
                t_span=(t_start, t_end),
                y0=current_y,
                method=method,
                dense_output=True,
                rtol=rtol,
                atol=atol,
                **options,
            )
        except CrnSensError:
            raise
        except (ValueError, ArithmeticError, RuntimeError, np.linalg.LinAlgError) as error:
            # e.g. infs or NaNs reaching the LU factorization, or a singular Newton matrix
            raise IntegrationFailure(f"integration failed: {error}", t_start) from error
        if not segment_sol.success:
            t_last = float(segment_sol.t[-1]) if len(segment_sol.t) > 0 else t_start
            raise IntegrationFailure(f"integration failed: {segment_sol.message}", t_last)
        logger.debug("Integrated segment [%g, %g] in %d steps", t_start, t_end, len(segment_sol.t) - 1)

        # consecutive segments share their boundary point; keep it once
        segment_t = segment_sol.t if i == 0 else segment_sol.t[1:]
        segment_y = segment_sol.y if i == 0 else segment_sol.y[:, 1:]
        all_t.append(segment_t)
        all_y.append(segment_y)
        n_points += len(segment_t)
        ts.append(segment_sol.sol.ts[1:])
        interpolants.extend(segment_sol.sol.interpolants)

        total_nfev += segment_sol.nfev
        total_njev += segment_sol.njev
        total_nlu += segment_sol.nlu
        current_y = segment_sol.y[:, -1].copy()

    return OdeResult(
        t=np.concatenate(all_t),
        y=np.hstack(all_y),
        sol=OdeSolution(np.concatenate(ts), interpolants),
        t_events=None,
        y_events=None,
        nfev=total_nfev,
        njev=total_njev,
        nlu=total_nlu,
        status=0,
        message='The solver successfully reached the end of the integration interval.',
        success=True,
        discontinuity_times=discontinuity_times,
        discontinuity_indices=discontinuity_indices,
    )
