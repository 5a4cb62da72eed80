"""
Per-tick controller pipeline: supports, PID / velocity reference, body motion,
QP formulation, solver driver and the orchestrating `QPController`.
"""

from .qp_controller import QPController, QPControllerConfig
from .qp_formulation import QPProblem, build_qp, decode
from .qp_solver import QPSolution, QPSolverDriver, SolverSettings

__all__ = [
    "QPController",
    "QPControllerConfig",
    "QPProblem",
    "build_qp",
    "decode",
    "QPSolution",
    "QPSolverDriver",
    "SolverSettings",
]
