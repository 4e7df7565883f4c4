"""
relaxedel: relaxed empirical likelihood estimation by nested conic optimization.

An outer nonlinear search over the structural parameter wraps an inner
exponential-cone program over probability weights, allowing moment conditions
to hold up to a relaxation bound so that the number of moments may exceed the
sample size.
"""

__version__ = "0.1.0"

from .base import BaseEstimator
from .data import RELData
from .exceptions import ConfigurationError, NumericalFault
from .moments import MomentEvaluator, iv_moment, location_moment, poisson_moment
from .inner import InnerEvaluation, InnerLoop
from .outer import OuterLoop, OuterResult
from .rel import RelaxedELEstimator

__all__ = [
    "BaseEstimator",
    "RELData",
    "ConfigurationError",
    "NumericalFault",
    "MomentEvaluator",
    "iv_moment",
    "poisson_moment",
    "location_moment",
    "InnerEvaluation",
    "InnerLoop",
    "OuterLoop",
    "OuterResult",
    "RelaxedELEstimator",
]
