"""
Adapters submitting conic programs to a solving backend.

The backend is cvxpy, tried over an ordered list of exponential-cone capable
solvers (CLARABEL first, SCS as fallback). Each solve runs inside a
``SolverSession`` that is opened for that solve and closed afterwards.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import cvxpy as cp
import numpy as np

from ..exceptions import ConfigurationError
from .program import CompiledProgram, ConicProgram

logger = logging.getLogger(__name__)


class SolverStatus(str, Enum):
    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    ERROR = "error"


_STATUS_MAP = {
    cp.OPTIMAL: SolverStatus.OPTIMAL,
    cp.INFEASIBLE: SolverStatus.INFEASIBLE,
    cp.INFEASIBLE_INACCURATE: SolverStatus.INFEASIBLE,
}


@dataclass
class SolverOutcome:
    """
    Result of one inner solve.

    Attributes:
        status: OPTIMAL, INFEASIBLE or ERROR.
        objective: Maximized sum of log weights (only when OPTIMAL).
        weights: (n_obs,) optimal probability weights pi.
        log_weights: (n_obs,) optimal t, equal to log(pi) up to solver accuracy.
        moment_duals: (n_moments,) upper minus lower multiplier of each
            relaxed moment row, in the minimization sign convention.
        solver: Name of the backend solver that produced the outcome.
        message: Human-readable detail for non-optimal outcomes.
    """

    status: SolverStatus
    objective: Optional[float] = None
    weights: Optional[np.ndarray] = None
    log_weights: Optional[np.ndarray] = None
    moment_duals: Optional[np.ndarray] = None
    solver: Optional[str] = None
    message: str = ""

    @property
    def optimal(self) -> bool:
        return self.status is SolverStatus.OPTIMAL

    @property
    def primal(self) -> Optional[np.ndarray]:
        """Primal solution in the [pi | u | t] layout."""
        if self.weights is None or self.log_weights is None:
            return None
        return np.concatenate(
            [self.weights, np.ones_like(self.weights), self.log_weights]
        )


class ConicSolverAdapter(ABC):
    """Abstract base class for conic solving backends."""

    @abstractmethod
    def solve(self, program: ConicProgram) -> SolverOutcome:
        """Solve a conic program; never raises on infeasibility or solver failure."""
        raise NotImplementedError


@dataclass
class SolverSession:
    """
    Scoped handle on the solver backends for one solve.

    Attributes:
        solvers: Solver names tried in order.
        accept_inaccurate: Treat ``optimal_inaccurate`` as optimal.
        options: Keyword arguments forwarded to ``Problem.solve``.
        attempts: (solver, status) pairs recorded during the session.
    """

    solvers: Sequence[str]
    accept_inaccurate: bool = True
    options: dict = field(default_factory=dict)
    attempts: List[Tuple[str, str]] = field(default_factory=list)
    closed: bool = False

    def solve(self, compiled: CompiledProgram) -> SolverOutcome:
        if self.closed:
            raise RuntimeError("Solver session is closed")

        problem = compiled.problem
        message = "no solver attempted"
        for solver in self.solvers:
            try:
                problem.solve(solver=solver, **self.options)
            except cp.error.SolverError as e:
                logger.info(f"Solver {solver} failed: {e}")
                self.attempts.append((solver, "solver_error"))
                message = f"{solver} raised: {e}"
                continue
            except (ValueError, ArithmeticError) as e:
                # backends reject badly scaled data with plain exceptions
                logger.info(f"Solver {solver} aborted: {type(e).__name__}: {e}")
                self.attempts.append((solver, "aborted"))
                message = f"{solver} aborted: {type(e).__name__}: {e}"
                continue

            self.attempts.append((solver, problem.status))
            status = self._map_status(problem.status)
            if status is SolverStatus.OPTIMAL:
                outcome = _read_solution(compiled, solver)
                if outcome is not None:
                    return outcome
                message = f"{solver} reported {problem.status} without a solution"
                continue
            if status is SolverStatus.INFEASIBLE:
                return SolverOutcome(
                    status=SolverStatus.INFEASIBLE,
                    solver=solver,
                    message=f"{solver} returned status {problem.status}",
                )
            message = f"{solver} returned status {problem.status}"

        return SolverOutcome(status=SolverStatus.ERROR, message=message)

    def _map_status(self, status: Optional[str]) -> SolverStatus:
        if status == cp.OPTIMAL_INACCURATE and self.accept_inaccurate:
            return SolverStatus.OPTIMAL
        return _STATUS_MAP.get(status, SolverStatus.ERROR)

    def close(self) -> None:
        self.closed = True


class CvxpySolverAdapter(ConicSolverAdapter):
    """
    Solve conic programs with cvxpy.

    Args:
        solvers: Solver name or ordered names to try. Names that are not
            installed are skipped.
        accept_inaccurate: Accept ``optimal_inaccurate`` solutions.
        reentrant: If False, sessions are serialized by a lock so concurrent
            callers never share a backend.
        **solver_options: Forwarded to ``cvxpy.Problem.solve``.

    Raises:
        ConfigurationError: If none of the requested solvers is installed.
    """

    def __init__(
        self,
        solvers: Union[str, Sequence[str]] = ("CLARABEL", "SCS"),
        accept_inaccurate: bool = True,
        reentrant: bool = True,
        **solver_options,
    ):
        if isinstance(solvers, str):
            solvers = (solvers,)
        installed = set(cp.installed_solvers())
        requested = [s.upper() for s in solvers]
        self.solvers = [s for s in requested if s in installed]
        missing = [s for s in requested if s not in installed]
        if missing:
            logger.info(f"Skipping solvers that are not installed: {missing}")
        if not self.solvers:
            raise ConfigurationError(
                f"None of the solvers {requested} is installed. "
                f"Installed solvers are: {sorted(installed)}"
            )
        self.accept_inaccurate = accept_inaccurate
        self.reentrant = reentrant
        self.solver_options = solver_options
        self._lock = threading.Lock()

    @contextmanager
    def session(self) -> Iterator[SolverSession]:
        guard = nullcontext() if self.reentrant else self._lock
        with guard:
            session = SolverSession(
                solvers=self.solvers,
                accept_inaccurate=self.accept_inaccurate,
                options=dict(self.solver_options),
            )
            try:
                yield session
            finally:
                session.close()

    def solve(self, program: ConicProgram) -> SolverOutcome:
        compiled = program.compile()
        with self.session() as session:
            return session.solve(compiled)


def _read_solution(compiled: CompiledProgram, solver: str) -> Optional[SolverOutcome]:
    weights = compiled.weights.value
    log_weights = compiled.log_weights.value
    if weights is None or log_weights is None or compiled.problem.value is None:
        return None

    upper = compiled.moment_upper.dual_value
    lower = compiled.moment_lower.dual_value
    duals = None
    if upper is not None and lower is not None:
        duals = np.asarray(upper, dtype=float).ravel() - np.asarray(lower, dtype=float).ravel()

    return SolverOutcome(
        status=SolverStatus.OPTIMAL,
        # the compiled problem minimizes -sum(t)
        objective=-float(compiled.problem.value),
        weights=np.asarray(weights, dtype=float).ravel(),
        log_weights=np.asarray(log_weights, dtype=float).ravel(),
        moment_duals=duals,
        solver=solver,
    )
