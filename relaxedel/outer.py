"""
Outer loop: minimize the negative profiled likelihood over beta.

The outer search treats the inner loop as a black-box criterion that may return
``+inf`` at infeasible parameters. Two backends are registered: ``scipy``
(``scipy.optimize.minimize``, Nelder-Mead by default) and ``torch``
(``torchmin.minimize`` with the envelope-theorem gradient supplied through a
custom autograd function).
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import torch
import torchmin
from scipy.optimize import minimize

from .exceptions import ConfigurationError
from .inner import InnerEvaluation, InnerLoop

logger = logging.getLogger(__name__)

_SCIPY_GRADIENT_METHODS = {"bfgs", "l-bfgs-b", "cg", "slsqp", "tnc", "newton-cg"}


@dataclass
class OuterResult:
    """
    Outcome of one outer search.

    Attributes:
        beta: Estimated parameter (best point found when not converged).
        objective: Criterion at beta, i.e. minus the profiled log likelihood.
        converged: False when a budget ran out or the minimizer failed.
        message: Minimizer or budget message.
        n_iterations: Iterations reported by the minimizer.
        n_evaluations: Inner-loop evaluations performed.
        infeasible: Evaluations that returned +inf.
        elapsed: Wall-clock seconds.
    """

    beta: np.ndarray
    objective: float
    converged: bool
    message: str
    n_iterations: int
    n_evaluations: int
    infeasible: List[InnerEvaluation] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def n_infeasible(self) -> int:
        return len(self.infeasible)


class _BudgetExhausted(Exception):
    pass


class _CriterionTracker:
    """Counts evaluations, keeps the best feasible point and enforces budgets."""

    def __init__(self, max_evaluations: Optional[int], max_time: Optional[float]):
        self.max_evaluations = max_evaluations
        self.max_time = max_time
        self.n_evaluations = 0
        self.infeasible: List[InnerEvaluation] = []
        self.best: Optional[InnerEvaluation] = None
        self.start = time.perf_counter()

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.start

    def check_budget(self) -> None:
        if self.max_evaluations is not None and self.n_evaluations >= self.max_evaluations:
            raise _BudgetExhausted(
                f"Evaluation budget of {self.max_evaluations} exhausted"
            )
        if self.max_time is not None and self.elapsed >= self.max_time:
            raise _BudgetExhausted(f"Time budget of {self.max_time}s exhausted")

    def record(self, evaluation: InnerEvaluation) -> None:
        self.n_evaluations += 1
        if not evaluation.feasible:
            self.infeasible.append(evaluation)
        elif self.best is None or evaluation.value < self.best.value:
            self.best = evaluation


class OuterLoop(ABC):
    """Abstract base class for outer-loop minimizers."""

    def __new__(cls, inner: InnerLoop, backend: str = "scipy", *args, **kwargs):
        backend = backend.lower()
        outer = _BACKENDS.get(backend)
        if outer is None:
            raise ConfigurationError(
                f"Backend {backend} is not supported. "
                f"Supported backends are: {list(_BACKENDS.keys())}"
            )
        return super(OuterLoop, cls).__new__(outer)

    def __init__(
        self,
        inner: InnerLoop,
        backend: str = "scipy",
        method: Optional[str] = None,
        maxiter: int = 1000,
        xtol: float = 1e-6,
        ftol: float = 1e-6,
        max_evaluations: Optional[int] = None,
        max_time: Optional[float] = None,
        verbose: bool = False,
    ):
        self.inner = inner
        self.backend = backend.lower()
        self.method = method
        self.maxiter = maxiter
        self.xtol = xtol
        self.ftol = ftol
        self.max_evaluations = max_evaluations
        self.max_time = max_time
        self.verbose = verbose

    def estimate(self, beta0) -> OuterResult:
        """
        Run the outer search from beta0.

        Infeasible inner evaluations are recorded and stepped around. When a
        budget runs out the best feasible point seen so far is returned with
        ``converged=False``.

        Raises:
            ConfigurationError: If beta0 is not a non-empty 1-d vector.
        """
        beta0 = np.asarray(beta0, dtype=np.float64)
        if beta0.ndim != 1 or beta0.size == 0:
            raise ConfigurationError(
                f"beta0 must be a non-empty 1-d vector, got shape {beta0.shape}"
            )

        tracker = _CriterionTracker(self.max_evaluations, self.max_time)
        try:
            beta, objective, converged, message, n_iterations = self._minimize(
                beta0, tracker
            )
        except _BudgetExhausted as e:
            if tracker.best is not None:
                beta, objective = tracker.best.beta, tracker.best.value
            else:
                beta, objective = beta0, np.inf
            converged, message, n_iterations = False, str(e), -1

        # a line search may stop on a worse trial point than one already seen
        if tracker.best is not None and tracker.best.value < objective:
            beta, objective = tracker.best.beta, tracker.best.value

        if not np.isfinite(objective):
            converged = False
            message = f"No feasible point found ({message})"
        if not converged:
            logger.warning(f"Outer loop did not converge: {message}")
        elif self.verbose:
            print(f"Outer loop converged after {tracker.n_evaluations} evaluations: {message}")

        return OuterResult(
            beta=np.asarray(beta, dtype=np.float64),
            objective=float(objective),
            converged=bool(converged),
            message=message,
            n_iterations=n_iterations,
            n_evaluations=tracker.n_evaluations,
            infeasible=tracker.infeasible,
            elapsed=tracker.elapsed,
        )

    @abstractmethod
    def _minimize(
        self, beta0: np.ndarray, tracker: _CriterionTracker
    ) -> Tuple[np.ndarray, float, bool, str, int]:
        pass


class OuterLoopScipy(OuterLoop):
    """Outer search with scipy.optimize.minimize."""

    def _minimize(self, beta0, tracker):
        method = self.method or "Nelder-Mead"
        use_gradient = method.lower() in _SCIPY_GRADIENT_METHODS

        def criterion(beta):
            tracker.check_budget()
            if use_gradient:
                evaluation, grad = self.inner.value_and_grad_detailed(beta)
                tracker.record(evaluation)
                return evaluation.value, grad
            evaluation = self.inner.evaluate_detailed(beta)
            tracker.record(evaluation)
            return evaluation.value

        options = {"maxiter": self.maxiter, "disp": self.verbose}
        if method.lower() == "nelder-mead":
            options.update(xatol=self.xtol, fatol=self.ftol)
        elif method.lower() == "powell":
            options.update(xtol=self.xtol, ftol=self.ftol)

        result = minimize(
            criterion, beta0, method=method, jac=True if use_gradient else None,
            options=options,
        )
        return (
            result.x,
            float(result.fun),
            bool(result.success),
            str(result.message),
            int(getattr(result, "nit", -1)),
        )


class _ProfiledCriterion(torch.autograd.Function):
    """Criterion as a torch function whose backward pass is the envelope gradient."""

    @staticmethod
    def forward(ctx, beta: torch.Tensor, criterion: Callable):
        value, grad = criterion(beta.detach())
        ctx.save_for_backward(torch.as_tensor(grad, dtype=beta.dtype, device=beta.device))
        return beta.new_tensor(value)

    @staticmethod
    def backward(ctx, grad_output):
        (grad,) = ctx.saved_tensors
        return grad_output * grad, None


class OuterLoopTorch(OuterLoop):
    """Outer search with torchmin (gradient-based, BFGS by default)."""

    def _minimize(self, beta0, tracker):
        method = self.method or "bfgs"

        def criterion(beta: torch.Tensor):
            tracker.check_budget()
            evaluation, grad = self.inner.value_and_grad_detailed(beta)
            tracker.record(evaluation)
            return evaluation.value, grad

        x0 = torch.tensor(beta0, dtype=torch.float64)
        result = torchmin.minimize(
            lambda beta: _ProfiledCriterion.apply(beta, criterion),
            x0,
            method=method,
            max_iter=self.maxiter,
            tol=self.xtol,
            disp=2 if self.verbose else 0,
        )
        return (
            result.x.detach().cpu().numpy(),
            float(result.fun),
            bool(getattr(result, "success", False)),
            str(getattr(result, "message", "")),
            int(getattr(result, "nit", -1)),
        )


_BACKENDS = {
    "scipy": OuterLoopScipy,
    "torch": OuterLoopTorch,
}
