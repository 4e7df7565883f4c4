"""
Conic program descriptions for the relaxed empirical likelihood inner problem.

``MatrixConicProgram`` is the solver-neutral form: an objective vector, one
stacked row block with two-sided bounds, variable bounds and a list of
exponential-cone memberships given as variable index triples. Any backend that
accepts linear constraints plus 3-d exponential cones can consume it.
``DeclarativeConicProgram`` writes the same constraint set as a cvxpy
constraint list.

Both compile to a cvxpy problem stated as ``Minimize(-sum(t))`` so that the
dual values of the moment rows follow the minimization sign convention.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import cvxpy as cp
import numpy as np
import scipy.sparse as sp


@dataclass(frozen=True)
class VariableLayout:
    """
    Position of each variable block in the stacked vector x = [pi | u | t].

    ``u`` is the middle cone coordinate, fixed to one by its bounds.
    """

    n_obs: int

    @property
    def size(self) -> int:
        return 3 * self.n_obs

    @property
    def weights(self) -> slice:
        return slice(0, self.n_obs)

    @property
    def aux(self) -> slice:
        return slice(self.n_obs, 2 * self.n_obs)

    @property
    def log_weights(self) -> slice:
        return slice(2 * self.n_obs, 3 * self.n_obs)

    def cone_triples(self) -> np.ndarray:
        """(n_obs, 3) index triples (pi_i, u_i, t_i)."""
        idx = np.arange(self.n_obs)
        return np.column_stack([idx, idx + self.n_obs, idx + 2 * self.n_obs])

    def pack(self, weights: np.ndarray, log_weights: np.ndarray) -> np.ndarray:
        x = np.empty(self.size)
        x[self.weights] = weights
        x[self.aux] = 1.0
        x[self.log_weights] = log_weights
        return x


@dataclass
class CompiledProgram:
    """A cvxpy problem together with handles the solver adapter reads back."""

    problem: cp.Problem
    weights: cp.Expression
    log_weights: cp.Expression
    moment_upper: cp.Constraint
    moment_lower: cp.Constraint


class ConicProgram(ABC):
    """
    Inner problem for one parameter value: maximize sum(t) over (pi, t).

    Attributes:
        n_obs: Number of observations (weights).
        n_moments: Number of relaxed moment constraints.
        lam: Relaxation bound on every weighted moment.
    """

    sense = "maximize"

    def __init__(self, n_obs: int, n_moments: int, lam: float):
        self.n_obs = n_obs
        self.n_moments = n_moments
        self.lam = lam

    @abstractmethod
    def compile(self) -> CompiledProgram:
        """Translate the program into a cvxpy problem."""
        raise NotImplementedError


class MatrixConicProgram(ConicProgram):
    """
    Conic program in stacked row/bound form.

    Attributes:
        c: (3n,) objective coefficients, maximized.
        A: (n_rows, 3n) CSR constraint matrix.
        row_lower, row_upper: (n_rows,) row bounds; equal entries mark equalities.
        var_lower, var_upper: (3n,) variable bounds (+-inf when free).
        cones: (n_obs, 3) variable indices (x1, x2, x3) each constrained to
            x1 >= x2 * exp(x3 / x2).
        moment_rows: indices of the rows holding the relaxed moment constraints.
        layout: block layout of the variable vector.
    """

    def __init__(
        self,
        c: np.ndarray,
        A: sp.csr_matrix,
        row_lower: np.ndarray,
        row_upper: np.ndarray,
        var_lower: np.ndarray,
        var_upper: np.ndarray,
        cones: np.ndarray,
        moment_rows: np.ndarray,
        layout: VariableLayout,
        lam: float,
    ):
        super().__init__(layout.n_obs, len(moment_rows), lam)
        self.c = c
        self.A = A
        self.row_lower = row_lower
        self.row_upper = row_upper
        self.var_lower = var_lower
        self.var_upper = var_upper
        self.cones = cones
        self.moment_rows = moment_rows
        self.layout = layout

    @property
    def n_variables(self) -> int:
        return self.layout.size

    @property
    def other_rows(self) -> np.ndarray:
        return np.setdiff1d(np.arange(self.A.shape[0]), self.moment_rows)

    def pack(self, weights: np.ndarray, log_weights: np.ndarray) -> np.ndarray:
        return self.layout.pack(weights, log_weights)

    def violation(self, x: np.ndarray) -> float:
        """Largest violation of any row, bound or cone constraint at x."""
        x = np.asarray(x, dtype=float)
        Ax = self.A @ x
        worst = [
            np.max(self.row_lower - Ax),
            np.max(Ax - self.row_upper),
            np.max(self.var_lower - x),
            np.max(x - self.var_upper),
        ]

        x1, x2, x3 = (x[self.cones[:, k]] for k in range(3))
        cone_gap = np.zeros_like(x1)
        pos = x2 > 0
        with np.errstate(over="ignore"):
            cone_gap[pos] = x2[pos] * np.exp(x3[pos] / x2[pos]) - x1[pos]
        zero = x2 == 0
        cone_gap[zero] = np.maximum(-x1[zero], x3[zero])
        cone_gap[x2 < 0] = -x2[x2 < 0]
        if cone_gap.size:
            worst.append(np.max(cone_gap))

        return float(max(0.0, *worst))

    def is_feasible(self, x: np.ndarray, tol: float = 1e-9) -> bool:
        return self.violation(x) <= tol

    def compile(self) -> CompiledProgram:
        layout = self.layout
        x = cp.Variable(layout.size)
        constraints = []

        other = self.other_rows
        if len(other):
            A_o = self.A[other]
            lo, hi = self.row_lower[other], self.row_upper[other]
            eq = np.flatnonzero(lo == hi)
            ineq = np.flatnonzero(lo != hi)
            if len(eq):
                constraints.append(A_o[eq] @ x == lo[eq])
            if len(ineq):
                constraints += _two_sided(A_o[ineq] @ x, lo[ineq], hi[ineq])

        A_m = self.A[self.moment_rows]
        moment_upper = A_m @ x <= self.row_upper[self.moment_rows]
        moment_lower = A_m @ x >= self.row_lower[self.moment_rows]
        constraints += [moment_upper, moment_lower]

        fixed = self.var_lower == self.var_upper
        if fixed.any():
            idx = np.flatnonzero(fixed)
            constraints.append(x[idx] == self.var_lower[idx])
        lower = np.flatnonzero(np.isfinite(self.var_lower) & ~fixed)
        if len(lower):
            constraints.append(x[lower] >= self.var_lower[lower])
        upper = np.flatnonzero(np.isfinite(self.var_upper) & ~fixed)
        if len(upper):
            constraints.append(x[upper] <= self.var_upper[upper])

        # cvxpy orders the cone as (x3, x2, x1): x2 * exp(x3 / x2) <= x1
        constraints.append(
            cp.constraints.ExpCone(
                x[self.cones[:, 2]], x[self.cones[:, 1]], x[self.cones[:, 0]]
            )
        )

        problem = cp.Problem(cp.Minimize(-(self.c @ x)), constraints)
        return CompiledProgram(
            problem=problem,
            weights=x[layout.weights],
            log_weights=x[layout.log_weights],
            moment_upper=moment_upper,
            moment_lower=moment_lower,
        )


class DeclarativeConicProgram(ConicProgram):
    """
    The same inner problem written as a list of cvxpy constraints.

    Attributes:
        H: (n_obs, n_moments) moment matrix.
    """

    def __init__(self, H: np.ndarray, lam: float):
        super().__init__(H.shape[0], H.shape[1], lam)
        self.H = H

    def compile(self) -> CompiledProgram:
        n = self.n_obs
        pi = cp.Variable(n)
        t = cp.Variable(n)
        weighted = self.H.T @ pi
        moment_upper = weighted <= self.lam
        moment_lower = weighted >= -self.lam
        constraints = [
            cp.sum(pi) == 1,
            pi >= 0,
            pi <= 1,
            cp.constraints.ExpCone(t, np.ones(n), pi),
            moment_upper,
            moment_lower,
        ]
        problem = cp.Problem(cp.Minimize(-cp.sum(t)), constraints)
        return CompiledProgram(
            problem=problem,
            weights=pi,
            log_weights=t,
            moment_upper=moment_upper,
            moment_lower=moment_lower,
        )


def _two_sided(expr: cp.Expression, lo: np.ndarray, hi: np.ndarray) -> list:
    constraints = []
    has_lo, has_hi = np.isfinite(lo), np.isfinite(hi)
    if has_lo.all():
        constraints.append(expr >= lo)
    elif has_lo.any():
        constraints.append(expr[np.flatnonzero(has_lo)] >= lo[has_lo])
    if has_hi.all():
        constraints.append(expr <= hi)
    elif has_hi.any():
        constraints.append(expr[np.flatnonzero(has_hi)] <= hi[has_hi])
    return constraints
