"""
Error kinds of the whole-body QP controller.

Configuration-time errors (bad robot model, unknown / malformed parameter set)
raise and are expected to stop the program at startup.

Per-tick faults (infeasible QP, non-finite dynamics) are raised inside the tick
pipeline and converted by `QPController.tick()` into a `TickStatus` fault; they
never escape a tick.
"""

from __future__ import annotations


class QPControllerError(Exception):
    """Base class for all controller errors."""


class ModelError(QPControllerError):
    """Robot model / property cache is malformed (fatal at startup)."""


class InvalidParameterSet(QPControllerError, KeyError):
    """Requested parameter set is missing or malformed (fatal at configuration time)."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class InfeasibleQP(QPControllerError):
    """Solver found no feasible point (or returned a non-finite solution)."""

    def __init__(self, status: str, iterations: int = 0):
        super().__init__(f"QP solve failed: status={status!r} iter={iterations}")
        self.status = str(status)
        self.iterations = int(iterations)


class NonFiniteDynamics(QPControllerError):
    """Model evaluator returned NaN/Inf terms."""
