"""
Conic formulation of the relaxed empirical likelihood inner problem.

The subpackage exports the program descriptions, the two interchangeable
builders and the solver adapter used by the inner loop.
"""

from .builders import (
    ConicProblemBuilder,
    DeclarativeConicBuilder,
    MatrixConicBuilder,
    get_builder,
)
from .program import (
    CompiledProgram,
    ConicProgram,
    DeclarativeConicProgram,
    MatrixConicProgram,
    VariableLayout,
)
from .solver import (
    ConicSolverAdapter,
    CvxpySolverAdapter,
    SolverOutcome,
    SolverSession,
    SolverStatus,
)

__all__ = [
    "ConicProblemBuilder",
    "MatrixConicBuilder",
    "DeclarativeConicBuilder",
    "get_builder",
    "ConicProgram",
    "MatrixConicProgram",
    "DeclarativeConicProgram",
    "CompiledProgram",
    "VariableLayout",
    "ConicSolverAdapter",
    "CvxpySolverAdapter",
    "SolverOutcome",
    "SolverSession",
    "SolverStatus",
]
