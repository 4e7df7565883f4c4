"""
Inner loop: the profiled relaxed empirical likelihood at a fixed parameter.

For a candidate beta the inner loop evaluates the moment matrix, builds the
conic program and solves it. The returned criterion is the negated optimum,
so the outer loop minimizes it; any infeasible or failed solve is reported as
``+inf`` and never raised.
"""

import logging
from dataclasses import dataclass
from numbers import Real
from typing import Optional, Tuple, Union

import numpy as np
import torch

from .conic import (
    ConicProblemBuilder,
    ConicSolverAdapter,
    CvxpySolverAdapter,
    SolverOutcome,
    SolverStatus,
    get_builder,
)
from .exceptions import ConfigurationError, NumericalFault
from .moments import MomentEvaluator

logger = logging.getLogger(__name__)


@dataclass
class InnerEvaluation:
    """
    Record of one inner-loop evaluation.

    Attributes:
        beta: Parameter value evaluated (None for a direct moment-matrix solve).
        value: Criterion to minimize: -max sum(log pi), or +inf.
        status: Solver status, ERROR for numerical faults.
        outcome: Full solver outcome when the solver ran.
        reason: Why the evaluation is infeasible, empty when it is not.
    """

    beta: Optional[np.ndarray]
    value: float
    status: SolverStatus
    outcome: Optional[SolverOutcome] = None
    reason: str = ""

    @property
    def feasible(self) -> bool:
        return bool(np.isfinite(self.value))

    @property
    def log_likelihood(self) -> float:
        return -self.value

    @property
    def weights(self) -> Optional[np.ndarray]:
        return None if self.outcome is None else self.outcome.weights


class InnerLoop:
    """
    Profiled likelihood evaluator for a fixed sample and relaxation bound.

    Holds no state between calls: each evaluation recomputes H(beta) and
    solves a fresh program.

    Args:
        evaluator: Moment evaluator bound to the sample.
        lam: Relaxation bound (>= 0).
        builder: Builder instance or registered name ("matrix", "declarative").
        adapter: Conic solver adapter; defaults to ``CvxpySolverAdapter()``.
    """

    def __init__(
        self,
        evaluator: MomentEvaluator,
        lam: float,
        builder: Union[str, ConicProblemBuilder] = "matrix",
        adapter: Optional[ConicSolverAdapter] = None,
    ):
        if isinstance(lam, bool) or not isinstance(lam, Real) or not lam >= 0:
            raise ConfigurationError(f"lam must be a non-negative real number, got {lam!r}")
        self.evaluator = evaluator
        self.lam = float(lam)
        self.builder = get_builder(builder)
        self.adapter = adapter if adapter is not None else CvxpySolverAdapter()

    def evaluate(self, beta) -> float:
        """Criterion value at beta (to be minimized)."""
        return self.evaluate_detailed(beta).value

    def evaluate_detailed(self, beta) -> InnerEvaluation:
        beta_np = _to_numpy(beta)
        try:
            H = self.evaluator.compute_moments(beta)
        except NumericalFault as e:
            return self._failed(beta_np, SolverStatus.ERROR, str(e))
        return self._solve(H, beta_np)

    def solve_moments(self, H: np.ndarray) -> InnerEvaluation:
        """Solve the inner program for a given moment matrix."""
        return self._solve(H, None)

    def value_and_grad(self, beta) -> Tuple[float, np.ndarray]:
        evaluation, grad = self.value_and_grad_detailed(beta)
        return evaluation.value, grad

    def value_and_grad_detailed(self, beta) -> Tuple[InnerEvaluation, np.ndarray]:
        """
        Criterion and its gradient with respect to beta.

        By the envelope theorem the derivative of the optimal value only runs
        through the moment rows: grad = d/dbeta [pi' H(beta) mu] with pi and
        mu (upper minus lower moment multipliers) held at their optimum.
        Infeasible points return a zero gradient with the +inf value.

        Raises:
            RuntimeError: If the solver returned no dual values.
        """
        beta_np = _to_numpy(beta)
        beta_t = torch.as_tensor(beta_np, dtype=torch.float64).requires_grad_(True)
        zeros = np.zeros_like(beta_np)

        try:
            with torch.enable_grad():
                H_t = self.evaluator.compute_moments_tensor(beta_t)
        except NumericalFault as e:
            return self._failed(beta_np, SolverStatus.ERROR, str(e)), zeros

        evaluation = self._solve(H_t.detach().cpu().numpy(), beta_np)
        if not evaluation.feasible:
            return evaluation, zeros

        duals = evaluation.outcome.moment_duals
        if duals is None:
            raise RuntimeError(
                f"Solver {evaluation.outcome.solver} returned no dual values; "
                "gradient unavailable"
            )
        weights = torch.as_tensor(evaluation.outcome.weights, dtype=H_t.dtype, device=H_t.device)
        multipliers = torch.as_tensor(duals, dtype=H_t.dtype, device=H_t.device)
        with torch.enable_grad():
            moment_term = weights @ H_t @ multipliers
        if not moment_term.requires_grad:
            return evaluation, zeros
        (grad,) = torch.autograd.grad(moment_term, beta_t, allow_unused=True)
        if grad is None:
            return evaluation, zeros
        return evaluation, grad.detach().cpu().numpy()

    def _solve(self, H: np.ndarray, beta: Optional[np.ndarray]) -> InnerEvaluation:
        try:
            program = self.builder.build(H, self.lam)
        except NumericalFault as e:
            return self._failed(beta, SolverStatus.ERROR, str(e))

        outcome = self.adapter.solve(program)
        if not outcome.optimal:
            return self._failed(beta, outcome.status, outcome.message, outcome)

        value = -outcome.objective
        logger.info(f"Inner solve: beta={_fmt(beta)}, criterion={value:.6f} ({outcome.solver})")
        return InnerEvaluation(beta=beta, value=value, status=outcome.status, outcome=outcome)

    def _failed(
        self,
        beta: Optional[np.ndarray],
        status: SolverStatus,
        reason: str,
        outcome: Optional[SolverOutcome] = None,
    ) -> InnerEvaluation:
        logger.warning(
            f"Inner problem {status.value} at beta={_fmt(beta)}: {reason}. "
            "Criterion set to +inf"
        )
        return InnerEvaluation(
            beta=beta, value=np.inf, status=status, outcome=outcome, reason=reason
        )


def _to_numpy(beta) -> np.ndarray:
    if isinstance(beta, torch.Tensor):
        beta = beta.detach().cpu().numpy()
    return np.array(beta, dtype=np.float64, copy=True)


def _fmt(beta: Optional[np.ndarray]) -> str:
    if beta is None:
        return "<given H>"
    return np.array2string(beta, precision=4)
