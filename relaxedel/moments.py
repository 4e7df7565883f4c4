"""
Moment functions and the evaluator that turns them into moment matrices.

A moment function maps the sample and a parameter vector to the (n_obs,
n_moments) matrix H(beta) whose row i is h(Z_i, beta). The evaluator runs it
in float64 on the configured device and guarantees that every matrix handed to
the conic builder is finite and has a stable shape.
"""

import threading
from typing import Callable, Optional, Union

import numpy as np
import torch

from .data import RELData
from .exceptions import ConfigurationError, NumericalFault

MomentFunction = Callable[[RELData, torch.Tensor], Union[torch.Tensor, np.ndarray]]


def iv_moment(data: RELData, beta: torch.Tensor) -> torch.Tensor:
    """Linear IV moments: h_i = Z_i * (y_i - X_i' beta)."""
    return data.Z * (data.y - data.X @ beta).unsqueeze(-1)


def poisson_moment(data: RELData, beta: torch.Tensor) -> torch.Tensor:
    """PPML moments: h_i = Z_i * (y_i - exp(X_i' beta)).

    The exponential link overflows for large X_i' beta; the evaluator turns
    the resulting infinities into a NumericalFault.
    """
    return data.Z * (data.y - torch.exp(data.X @ beta)).unsqueeze(-1)


def location_moment(G: Union[np.ndarray, torch.Tensor]) -> MomentFunction:
    """
    Moments linear in beta through a known design matrix.

    Args:
        G: (n_moments, n_params) design matrix.

    Returns:
        Moment function computing h_i = Z_i - G beta.
    """
    G = torch.as_tensor(G, dtype=torch.float64)

    def _moment(data: RELData, beta: torch.Tensor) -> torch.Tensor:
        return data.Z - G.to(beta.device) @ beta

    return _moment


class MomentEvaluator:
    """
    Evaluate a moment function on a fixed sample.

    The only state is the number of moments, fixed by ``initialize`` (or by the
    first evaluation when ``initialize`` was not called) and checked on every
    later call.

    Args:
        moment_fn: Callable ``(data, beta) -> H`` returning a tensor or array of
            shape (n_obs, n_moments).
        data: Estimation sample, moved to ``device``.
        n_params: Expected length of beta. Checked on every call when given.
        device: Device for the moment computation (defaults to the data's).
    """

    def __init__(
        self,
        moment_fn: MomentFunction,
        data: RELData,
        n_params: Optional[int] = None,
        device: Optional[Union[torch.device, str]] = None,
    ):
        data.validate()
        self.moment_fn = moment_fn
        self.device = torch.device(device) if device is not None else None
        self.data = data.to(self.device) if self.device is not None else data
        self.n_obs = data.n_obs
        self.n_params = n_params
        self.n_moments: Optional[int] = None
        self._shape_lock = threading.Lock()

    def _as_beta(self, beta) -> torch.Tensor:
        if isinstance(beta, torch.Tensor):
            beta_t = beta.to(dtype=torch.float64)
            if self.device is not None:
                beta_t = beta_t.to(self.device)
        else:
            beta_t = torch.as_tensor(np.asarray(beta, dtype=np.float64), device=self.device)
        if beta_t.dim() != 1:
            raise ConfigurationError(
                f"beta must be 1-dimensional, got shape {tuple(beta_t.shape)}"
            )
        if self.n_params is not None and beta_t.shape[0] != self.n_params:
            raise ConfigurationError(
                f"beta has length {beta_t.shape[0]}, expected {self.n_params}"
            )
        return beta_t

    def initialize(self, beta) -> int:
        """
        Record the number of moments from one evaluation at beta.

        Non-finite entries do not prevent recording the shape.

        Raises:
            ConfigurationError: If beta or the returned matrix has the wrong
                shape, or the moment count differs from one already recorded.
        """
        with torch.no_grad():
            H = self._evaluate(self._as_beta(beta))
        self._record_shape(H)
        return self.n_moments

    def _record_shape(self, H: torch.Tensor) -> None:
        with self._shape_lock:
            if self.n_moments is None:
                self.n_moments = int(H.shape[1])
        if H.shape[1] != self.n_moments:
            raise ConfigurationError(
                f"Number of moments changed from {self.n_moments} to {H.shape[1]}"
            )

    def _evaluate(self, beta_t: torch.Tensor) -> torch.Tensor:
        try:
            H = self.moment_fn(self.data, beta_t)
        except (FloatingPointError, OverflowError, ZeroDivisionError) as e:
            raise NumericalFault(f"Moment function failed at beta={_fmt(beta_t)}: {e}") from e

        if not isinstance(H, torch.Tensor):
            H = torch.as_tensor(np.asarray(H), device=beta_t.device)
        H = H.to(dtype=torch.float64)

        if H.dim() != 2 or H.shape[0] != self.n_obs:
            raise ConfigurationError(
                f"Moment function must return shape ({self.n_obs}, m), got {tuple(H.shape)}"
            )
        return H

    def compute_moments_tensor(self, beta) -> torch.Tensor:
        """
        Evaluate H(beta) as a float64 tensor, keeping any autograd graph.

        Raises:
            ConfigurationError: If beta or the returned matrix has the wrong shape.
            NumericalFault: If the moment function overflows or returns
                non-finite values.
        """
        beta_t = self._as_beta(beta)
        H = self._evaluate(beta_t)
        self._record_shape(H)

        finite = torch.isfinite(H.detach())
        if not bool(finite.all()):
            bad_rows = int((~finite).any(dim=1).sum())
            raise NumericalFault(
                f"Non-finite moments in {bad_rows} of {self.n_obs} rows at beta={_fmt(beta_t)}"
            )
        return H

    def compute_moments(self, beta) -> np.ndarray:
        """Evaluate H(beta) as an (n_obs, n_moments) numpy array."""
        with torch.no_grad():
            H = self.compute_moments_tensor(beta)
        return H.detach().cpu().numpy()


def _fmt(beta: torch.Tensor) -> str:
    return np.array2string(beta.detach().cpu().numpy(), precision=4)
