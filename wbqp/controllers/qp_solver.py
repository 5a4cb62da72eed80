"""
QP solver driver: fast equality-only KKT path and the exact OSQP path.

OSQP keeps no state across ticks here; a fresh problem is set up every solve
(the sparsity pattern of P / A changes with the contact set and task Jacobians),
and the previous tick's primal/dual iterates are handed back through
`OSQP.warm_start` when the contact topology and problem shape are unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import numpy as np
import osqp
import scipy.linalg

from ..errors import InfeasibleQP
from ..state import WarmStartBasis
from .qp_formulation import QPProblem

logger = logging.getLogger(__name__)

_SOLVED = ("solved", "solved inaccurate")


@dataclass
class SolverSettings:
    eps_abs: float = 1e-6
    eps_rel: float = 1e-6
    max_iter: int = 20000
    # Feasibility tolerance for accepting the fast (equality-only) solution
    fast_qp_tol: float = 1e-6


@dataclass
class QPSolution:
    x: np.ndarray
    y: np.ndarray
    status: str
    iterations: int
    cold_start: bool
    method: str
    basis: WarmStartBasis
    solve_time: float = 0.0


class QPSolverDriver:
    def __init__(self, settings: SolverSettings | None = None):
        self.settings = settings or SolverSettings()

    def solve(
        self,
        problem: QPProblem,
        warm_start: WarmStartBasis | None,
        topology: tuple,
        fast: bool = False,
    ) -> QPSolution:
        t0 = time.perf_counter()
        shape = problem.shape
        usable = warm_start is not None and warm_start.is_valid_for(topology, shape)
        if warm_start is not None and not usable:
            logger.debug("[wbqp] warm start discarded (topology %s -> %s)", warm_start.topology, topology)

        sol = None
        if fast:
            sol = self._solve_fast(problem)
        if sol is None:
            sol = self._solve_exact(problem, warm_start if usable else None)
        x, y, status, iters, method = sol

        return QPSolution(
            x=x,
            y=y,
            status=status,
            iterations=iters,
            cold_start=not usable,
            method=method,
            basis=WarmStartBasis(x=x.copy(), y=y.copy(), topology=topology, shape=shape),
            solve_time=time.perf_counter() - t0,
        )

    def _solve_fast(self, problem: QPProblem):
        """
        Minimize the cost subject to the equality constraints only:

            [P  Aeq^T] [x]   [-q ]
            [Aeq  0  ] [l] = [beq]

        Returns None when the KKT system is singular or the result violates an
        inequality / bound, in which case the caller falls back to the exact solve.
        """
        n = problem.num_vars
        neq = int(problem.Aeq.shape[0])
        K = np.zeros((n + neq, n + neq))
        K[:n, :n] = problem.P
        K[:n, n:] = problem.Aeq.T
        K[n:, :n] = problem.Aeq
        rhs = np.concatenate([-problem.q, problem.beq])
        try:
            z = scipy.linalg.solve(K, rhs, assume_a="sym")
        except scipy.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(z)):
            return None
        x = z[:n]
        if problem.violation(x) > float(self.settings.fast_qp_tol):
            return None
        # OSQP dual layout: [equalities, inequalities, variable bounds]
        y = np.zeros(problem.num_constraints)
        y[:neq] = z[n:]
        return x, y, "solved", 0, "fast"

    def _solve_exact(self, problem: QPProblem, warm_start: WarmStartBasis | None):
        P, q, A, l, u = problem.to_osqp()
        s = self.settings
        prob = osqp.OSQP()
        prob.setup(
            P=P,
            q=q,
            A=A,
            l=l,
            u=u,
            verbose=False,
            eps_abs=float(s.eps_abs),
            eps_rel=float(s.eps_rel),
            max_iter=int(s.max_iter),
        )
        if warm_start is not None:
            prob.warm_start(x=warm_start.x, y=warm_start.y)
        res = prob.solve()

        status = str(res.info.status).lower().replace("_", " ")
        iters = int(res.info.iter)
        x = res.x
        if status not in _SOLVED or x is None or not np.all(np.isfinite(x)):
            raise InfeasibleQP(status, iters)
        y = res.y if res.y is not None else np.zeros(problem.num_constraints)
        return np.asarray(x, dtype=float).copy(), np.asarray(y, dtype=float).copy(), status, iters, "exact"
