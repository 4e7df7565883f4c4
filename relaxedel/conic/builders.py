"""
Builders translating a moment matrix and relaxation bound into a conic program.
"""

from abc import ABC, abstractmethod
from numbers import Real
from typing import Union

import numpy as np
import scipy.sparse as sp

from ..exceptions import ConfigurationError, NumericalFault
from .program import (
    ConicProgram,
    DeclarativeConicProgram,
    MatrixConicProgram,
    VariableLayout,
)


class ConicProblemBuilder(ABC):
    """Abstract base class for inner-problem builders."""

    name: str = ""

    def build(self, H: np.ndarray, lam: float) -> ConicProgram:
        """
        Build the relaxed empirical likelihood program for one moment matrix.

        Args:
            H: (n_obs, n_moments) moment matrix at the current parameter.
            lam: Relaxation bound, |sum_i pi_i h_ij| <= lam for every j.

        Returns:
            Conic program maximizing sum(t) over weights pi and log weights t.

        Raises:
            ConfigurationError: If lam is negative or H is empty or not 2-d.
            NumericalFault: If H contains non-finite entries.
        """
        H, lam = self._validate(H, lam)
        return self._build(H, lam)

    @abstractmethod
    def _build(self, H: np.ndarray, lam: float) -> ConicProgram:
        raise NotImplementedError

    @staticmethod
    def _validate(H: np.ndarray, lam: float):
        if isinstance(lam, bool) or not isinstance(lam, Real):
            raise ConfigurationError(f"lam must be a real number, got {lam!r}")
        lam = float(lam)
        if np.isnan(lam) or lam < 0:
            raise ConfigurationError(f"lam must be non-negative, got {lam}")

        H = np.asarray(H, dtype=np.float64)
        if H.ndim != 2:
            raise ConfigurationError(f"H must be 2-dimensional, got shape {H.shape}")
        n_obs, n_moments = H.shape
        if n_obs == 0:
            raise ConfigurationError("H has zero observations")
        if n_moments == 0:
            raise ConfigurationError("H has zero moment columns")
        if not np.all(np.isfinite(H)):
            raise NumericalFault("H contains non-finite entries")
        return H, lam


class MatrixConicBuilder(ConicProblemBuilder):
    """
    Direct assembly of the stacked constraint matrix and cone list.

    Variables are x = [pi | u | t]. Row 0 of the row block is the simplex
    equality sum(pi) = 1; rows 1..m carry -lam <= H' pi <= lam. The u block is
    pinned to one through its bounds so each triple (pi_i, u_i, t_i) in the
    exponential cone reads pi_i >= exp(t_i). Nothing ties t_i to log(pi_i)
    except the maximization of sum(t).
    """

    name = "matrix"

    def _build(self, H: np.ndarray, lam: float) -> MatrixConicProgram:
        n_obs, n_moments = H.shape
        layout = VariableLayout(n_obs)

        c = np.zeros(layout.size)
        c[layout.log_weights] = 1.0

        # only the pi columns are populated
        pi_block = sp.vstack(
            [sp.csr_matrix(np.ones((1, n_obs))), sp.csr_matrix(H.T)], format="csr"
        )
        A = sp.hstack(
            [pi_block, sp.csr_matrix((1 + n_moments, 2 * n_obs))], format="csr"
        )

        row_lower = np.concatenate([[1.0], np.full(n_moments, -lam)])
        row_upper = np.concatenate([[1.0], np.full(n_moments, lam)])

        var_lower = np.full(layout.size, -np.inf)
        var_upper = np.full(layout.size, np.inf)
        var_lower[layout.weights] = 0.0
        var_upper[layout.weights] = 1.0
        var_lower[layout.aux] = 1.0
        var_upper[layout.aux] = 1.0

        return MatrixConicProgram(
            c=c,
            A=A,
            row_lower=row_lower,
            row_upper=row_upper,
            var_lower=var_lower,
            var_upper=var_upper,
            cones=layout.cone_triples(),
            moment_rows=np.arange(1, 1 + n_moments),
            layout=layout,
            lam=lam,
        )


class DeclarativeConicBuilder(ConicProblemBuilder):
    """Constraint-list formulation; equivalent to MatrixConicBuilder."""

    name = "declarative"

    def _build(self, H: np.ndarray, lam: float) -> DeclarativeConicProgram:
        return DeclarativeConicProgram(H, lam)


_BUILDERS = {
    "matrix": MatrixConicBuilder,
    "declarative": DeclarativeConicBuilder,
}


def get_builder(builder: Union[str, ConicProblemBuilder]) -> ConicProblemBuilder:
    """Return a builder instance from a registered name or pass one through."""
    if isinstance(builder, ConicProblemBuilder):
        return builder
    cls = _BUILDERS.get(str(builder).lower())
    if cls is None:
        raise ConfigurationError(
            f"Builder {builder} is not supported. "
            f"Supported builders are: {list(_BUILDERS.keys())}"
        )
    return cls()
