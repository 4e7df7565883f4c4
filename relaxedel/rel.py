"""
Relaxed empirical likelihood estimator.

For a moment function h(Z_i, beta) with m possibly larger than n, the relaxed
empirical likelihood estimator solves

    beta_hat = argmax_beta  max_pi  sum_i log(pi_i)
               s.t.  sum_i pi_i = 1,  0 <= pi_i <= 1,
                     |sum_i pi_i h_j(Z_i, beta)| <= lam   for every j.

The inner maximization is an exponential-cone program solved with cvxpy; the
outer search over beta uses scipy or torchmin.

References:
    Shi (2016): "Econometric estimation with high-dimensional moment equalities"
    Owen (2001): "Empirical Likelihood"
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from numbers import Real
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch
from scipy.stats import chi2

from .base import BaseEstimator
from .conic import ConicProblemBuilder, CvxpySolverAdapter, get_builder
from .data import RELData
from .exceptions import ConfigurationError, NumericalFault
from .inner import InnerEvaluation, InnerLoop
from .moments import MomentEvaluator, MomentFunction
from .outer import _BACKENDS, OuterLoop, OuterResult

logger = logging.getLogger(__name__)


class RelaxedELEstimator(BaseEstimator):
    """
    Relaxed empirical likelihood (REL) estimation by nested optimization.

    Parameters
    ----------
    moment_fn : callable
        ``moment_fn(data, beta) -> H`` returning the (n_obs, n_moments) moment
        matrix as a torch tensor or numpy array.
    lam : float
        Relaxation bound on each weighted moment, ``lam >= 0``.
    builder : {"matrix", "declarative"} or ConicProblemBuilder, default="matrix"
        Formulation of the inner conic program.
    solvers : str or sequence of str, default=("CLARABEL", "SCS")
        cvxpy solvers tried in order for each inner problem.
    backend : {"scipy", "torch"}, default="scipy"
        Outer minimizer. "scipy" uses scipy.optimize.minimize (Nelder-Mead
        unless ``method`` says otherwise); "torch" uses torchmin with the
        envelope-theorem gradient.
    method : str, optional
        Method name passed to the outer minimizer.
    maxiter : int, default=1000
        Outer iteration budget.
    xtol, ftol : float
        Outer step-size and criterion tolerances.
    max_evaluations : int, optional
        Budget on inner-loop evaluations per start.
    max_time : float, optional
        Wall-clock budget in seconds per start.
    n_jobs : int, default=1
        Worker threads for multi-start searches (-1 for all cores).
    device : torch.device, str, or None
        Device on which the moment function is evaluated.
    verbose : bool, default=False
        Forward ``disp`` to the outer minimizer and print convergence messages.
    log : bool, default=False
        Log every inner evaluation at INFO level.
    **solver_options
        Extra keyword arguments for ``cvxpy.Problem.solve``.

    Examples
    --------
    >>> from relaxedel import RelaxedELEstimator, RELData, iv_moment
    >>> data = RELData.from_arrays(y=y, X=X, Z=Z)
    >>> model = RelaxedELEstimator(iv_moment, lam=0.05)
    >>> model.fit(data, beta0=np.zeros(X.shape[1]))
    >>> model.summary()
    """

    def __init__(
        self,
        moment_fn: MomentFunction,
        lam: float,
        builder: Union[str, ConicProblemBuilder] = "matrix",
        solvers: Union[str, Sequence[str]] = ("CLARABEL", "SCS"),
        backend: str = "scipy",
        method: Optional[str] = None,
        maxiter: int = 1000,
        xtol: float = 1e-6,
        ftol: float = 1e-6,
        max_evaluations: Optional[int] = None,
        max_time: Optional[float] = None,
        n_jobs: int = 1,
        device: Optional[Union[torch.device, str]] = None,
        verbose: bool = False,
        log: bool = False,
        **solver_options,
    ):
        super().__init__(device=device)
        if isinstance(lam, bool) or not isinstance(lam, Real) or not lam >= 0:
            raise ConfigurationError(f"lam must be a non-negative real number, got {lam!r}")
        if backend.lower() not in _BACKENDS:
            raise ConfigurationError(
                f"Backend {backend} is not supported. "
                f"Supported backends are: {list(_BACKENDS.keys())}"
            )
        if n_jobs == 0 or n_jobs < -1:
            raise ConfigurationError(f"n_jobs must be positive or -1, got {n_jobs}")

        self.moment_fn = moment_fn
        self.lam = float(lam)
        self.builder = get_builder(builder)
        self.adapter = CvxpySolverAdapter(solvers, **solver_options)
        self.backend = backend.lower()
        self.method = method
        self.maxiter = maxiter
        self.xtol = xtol
        self.ftol = ftol
        self.max_evaluations = max_evaluations
        self.max_time = max_time
        self.n_jobs = (os.cpu_count() or 1) if n_jobs == -1 else n_jobs
        self._verbose = verbose

        self.inner_: Optional[InnerLoop] = None
        self.result_: Optional[OuterResult] = None
        self.starts_: List[OuterResult] = []
        self.diagnostics_: Optional[dict] = None

        if log:
            logging.basicConfig(level=logging.INFO)
            logging.getLogger("relaxedel").setLevel(logging.INFO)

    def fit(self, data: RELData, beta0) -> "RelaxedELEstimator":
        """
        Estimate beta by maximizing the profiled relaxed empirical likelihood.

        Args:
            data: Estimation sample.
            beta0: Starting value of shape (n_params,), or (n_starts, n_params)
                for a multi-start search. Starts are independent; the best
                converged start is kept.

        Returns:
            Self with ``params`` ("coef", "weights", "log_weights"), ``result_``,
            ``starts_`` and ``diagnostics_`` populated.

        Raises:
            ConfigurationError: On invalid data, starting values or moment shapes.
        """
        if not isinstance(data, RELData):
            raise ConfigurationError(f"data must be RELData, got {type(data).__name__}")
        data.validate()

        starts = np.asarray(beta0, dtype=np.float64)
        if starts.ndim == 1:
            starts = starts[np.newaxis, :]
        if starts.ndim != 2 or starts.shape[0] == 0 or starts.shape[1] == 0:
            raise ConfigurationError(
                f"beta0 must have shape (n_params,) or (n_starts, n_params), got {np.shape(beta0)}"
            )

        evaluator = MomentEvaluator(
            self.moment_fn, data, n_params=starts.shape[1], device=self.device
        )
        # fix the moment count before starts share the evaluator
        try:
            evaluator.initialize(starts[0])
        except NumericalFault as e:
            logger.warning(f"Moment function failed at the first start: {e}")
        self.inner_ = InnerLoop(evaluator, self.lam, builder=self.builder, adapter=self.adapter)

        self.starts_ = self._run_starts(starts)
        self.result_ = self._select(self.starts_)
        self._store(self.inner_.evaluate_detailed(self.result_.beta))
        return self

    def _outer_loop(self) -> OuterLoop:
        return OuterLoop(
            self.inner_,
            backend=self.backend,
            method=self.method,
            maxiter=self.maxiter,
            xtol=self.xtol,
            ftol=self.ftol,
            max_evaluations=self.max_evaluations,
            max_time=self.max_time,
            verbose=self._verbose,
        )

    def _run_starts(self, starts: np.ndarray) -> List[OuterResult]:
        if self.n_jobs == 1 or len(starts) == 1:
            return [self._outer_loop().estimate(start) for start in starts]
        with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
            return list(pool.map(lambda start: self._outer_loop().estimate(start), starts))

    @staticmethod
    def _select(results: List[OuterResult]) -> OuterResult:
        converged = [r for r in results if r.converged]
        return min(converged or results, key=lambda r: r.objective)

    def _store(self, final: InnerEvaluation) -> None:
        evaluator = self.inner_.evaluator
        n, m, p = evaluator.n_obs, evaluator.n_moments, len(self.result_.beta)
        coef = torch.as_tensor(self.result_.beta, dtype=torch.float64, device=self.device)

        weights = log_weights = None
        violation = el_ratio = el_pvalue = None
        if final.feasible:
            weights = torch.as_tensor(final.weights, dtype=torch.float64, device=self.device)
            log_weights = torch.as_tensor(
                final.outcome.log_weights, dtype=torch.float64, device=self.device
            )
            H = evaluator.compute_moments(self.result_.beta)
            violation = float(np.max(np.abs(final.weights @ H)))
            # -2 log R(beta) = -2 sum_i log(n pi_i)
            el_ratio = max(0.0, -2.0 * (final.log_likelihood + n * np.log(n)))
            if m > p:
                el_pvalue = float(chi2.sf(el_ratio, m - p))

        self.params = {"coef": coef, "weights": weights, "log_weights": log_weights}
        self.diagnostics_ = {
            "objective": self.result_.objective,
            "log_likelihood": final.log_likelihood,
            "el_ratio": el_ratio,
            "el_ratio_pvalue": el_pvalue,
            "moment_violation": violation,
            "converged": self.result_.converged,
            "message": self.result_.message,
            "n_evaluations": self.result_.n_evaluations,
            "n_infeasible": self.result_.n_infeasible,
            "n_starts": len(self.starts_),
            "n_obs": n,
            "n_moments": m,
            "lam": self.lam,
        }

    def _check_fitted(self) -> None:
        if self.result_ is None or self.inner_ is None:
            raise ValueError("Model has not been fitted. Call fit() first.")

    def criterion(self, beta) -> float:
        """Negative profiled log likelihood at beta on the fitted sample."""
        self._check_fitted()
        return self.inner_.evaluate(beta)

    def profile(self, beta) -> InnerEvaluation:
        """Inner solution (weights, status) at beta on the fitted sample."""
        self._check_fitted()
        return self.inner_.evaluate_detailed(beta)

    def lambda_path(self, beta, lams: Sequence[float]) -> pd.DataFrame:
        """
        Profiled log likelihood at a fixed beta over several relaxation bounds.

        The log likelihood is non-decreasing in lam.
        """
        self._check_fitted()
        evaluator = self.inner_.evaluator
        H = evaluator.compute_moments(beta)
        rows = []
        for lam in lams:
            inner = InnerLoop(evaluator, lam, builder=self.builder, adapter=self.adapter)
            evaluation = inner.solve_moments(H)
            rows.append(
                {
                    "lam": float(lam),
                    "log_likelihood": evaluation.log_likelihood,
                    "status": evaluation.status.value,
                    "moment_violation": float(np.max(np.abs(evaluation.weights @ H)))
                    if evaluation.feasible
                    else np.nan,
                }
            )
        return pd.DataFrame(rows)

    def summary(self, prec: int = 4) -> pd.DataFrame:
        """
        Coefficient table; fit diagnostics are attached as ``DataFrame.attrs``.

        Raises:
            ValueError: If the model has not been fitted.
        """
        if self.result_ is None:
            raise ValueError(
                "Estimator not fitted yet. Make sure you call `fit()` before `summary()`."
            )
        coef = self.result_.beta
        table = pd.DataFrame(
            {"coef": np.round(coef, prec)},
            index=[f"beta{i}" for i in range(len(coef))],
        )
        table.attrs.update(self.diagnostics_)
        return table
