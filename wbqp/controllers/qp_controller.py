"""
Whole-body QP balance controller.

One `tick()` per control period:
  contact hints -> active supports -> whole-body PID -> body motion PD
  -> dynamics -> QP -> solve (fast / exact, warm-started) -> decode
  -> velocity reference -> commit state -> output

The tick works on a private copy of `ControllerState` and publishes it with a
single reference swap, so a reader on another thread only ever sees the state
of a completed tick. Per-tick faults (infeasible QP, non-finite dynamics) hold
the last valid output and are reported in `TickStatus`; they never raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

import numpy as np

from ..debug_channel import DebugSnapshotChannel
from ..errors import InfeasibleQP, ModelError, NonFiniteDynamics
from ..model import DynamicsTerms, ModelEvaluator, check_model
from ..params import ParamSets
from ..robot import RobotPropertyCache
from ..state import ControllerState
from ..types import (
    FaultKind,
    QPControllerDebugData,
    QPControllerInput,
    QPControllerOutput,
    SupportStateElement,
    TickResult,
    TickStatus,
)
from .body_motion import body_motion_pd
from .pid import apply_joint_pd_override, velocity_reference, whole_body_pid
from .qp_formulation import DecodedSolution, QPProblem, build_qp, decode
from .qp_solver import QPSolution, QPSolverDriver, SolverSettings
from .supports import foot_contact_flags, resolve_supports, support_topology

logger = logging.getLogger(__name__)

SOLVE_POLICIES = ("exact", "fast", "auto")


@dataclass
class QPControllerConfig:
    # "exact": always the full OSQP solve
    # "fast":  equality-only KKT solve first, OSQP only if a bound is violated
    # "auto":  "fast" while the solve-latency EMA exceeds latency_fraction * tick_period
    solve_policy: str = "exact"
    tick_period: float = 0.002
    latency_fraction: float = 0.5
    latency_ema_alpha: float = 0.1

    # OSQP
    eps_abs: float = 1e-6
    eps_rel: float = 1e-6
    max_iter: int = 20000
    fast_qp_tol: float = 1e-6

    # Knee bound engages when q_knee < min_knee_angle + knee_margin
    knee_margin: float = 0.1
    # Consecutive faulted ticks before the status is flagged as escalated
    max_consecutive_faults: int = 10
    friction_basis_size: int = 4
    default_terrain_normal: tuple[float, float, float] = (0.0, 0.0, 1.0)

    def solver_settings(self) -> SolverSettings:
        return SolverSettings(
            eps_abs=float(self.eps_abs),
            eps_rel=float(self.eps_rel),
            max_iter=int(self.max_iter),
            fast_qp_tol=float(self.fast_qp_tol),
        )


class QPController:
    def __init__(
        self,
        model: ModelEvaluator,
        rpc: RobotPropertyCache,
        param_sets: ParamSets,
        umin: np.ndarray,
        umax: np.ndarray,
        config: QPControllerConfig | None = None,
        debug_channel: DebugSnapshotChannel | None = None,
    ):
        self.cfg = config or QPControllerConfig()
        if self.cfg.solve_policy not in SOLVE_POLICIES:
            raise ValueError(f"solve_policy must be one of {SOLVE_POLICIES}, got {self.cfg.solve_policy!r}")
        check_model(model, rpc)
        if param_sets.num_velocities != rpc.num_velocities:
            raise ModelError(
                f"parameter sets are sized for nv={param_sets.num_velocities}, robot has nv={rpc.num_velocities}"
            )
        nu = rpc.num_actuators
        self.umin = np.asarray(umin, dtype=float).reshape(-1)
        self.umax = np.asarray(umax, dtype=float).reshape(-1)
        if self.umin.shape != (nu,) or self.umax.shape != (nu,):
            raise ModelError(f"umin/umax must have shape ({nu},), got {self.umin.shape}, {self.umax.shape}")
        if np.any(self.umin > self.umax):
            raise ModelError("umin > umax for some actuator")

        self.model = model
        self.rpc = rpc
        self.param_sets = param_sets
        self.debug_channel = debug_channel
        self._solver = QPSolverDriver(self.cfg.solver_settings())
        self._state = ControllerState.initial(rpc.num_velocities)

    @property
    def state(self) -> ControllerState:
        """Last published state. Treat as read-only."""
        return self._state

    def reset(self) -> None:
        self._state = ControllerState.initial(self.rpc.num_velocities)

    def _use_fast(self, st: ControllerState) -> bool:
        policy = self.cfg.solve_policy
        if policy == "fast":
            return True
        if policy == "auto":
            return st.solve_latency > float(self.cfg.latency_fraction) * float(self.cfg.tick_period)
        return False

    def tick(
        self,
        qp_input: QPControllerInput,
        q: np.ndarray,
        qd: np.ndarray,
        contact_force: Mapping[int, float] | None = None,
        debug: bool = False,
    ) -> TickResult:
        # Unknown names are configuration errors: raise, do not hold output.
        params = self.param_sets.get_set(qp_input.param_set_name)

        nv = self.rpc.num_velocities
        q = np.asarray(q, dtype=float).reshape(-1)
        qd = np.asarray(qd, dtype=float).reshape(-1)
        if q.shape != (nv,) or qd.shape != (nv,):
            raise ValueError(f"q/qd must have shape ({nv},), got {q.shape}, {qd.shape}")

        t = float(qp_input.timestamp)
        st = self._state.copy()

        supports = resolve_supports(
            qp_input.support_data,
            params.contact_threshold,
            contact_force,
            self.cfg.default_terrain_normal,
        )
        topology = support_topology(supports)
        foot_contact = foot_contact_flags(self.rpc, supports, contact_force, params.contact_threshold)

        whole_body, q_des = apply_joint_pd_override(params.whole_body, qp_input.q_des, qp_input.joint_pd_override)
        pid = whole_body_pid(
            st,
            t,
            q,
            qd,
            q_des,
            whole_body,
            self.model.joint_limit_min,
            self.model.joint_limit_max,
            self.model.angular_dofs,
        )

        body_ids = sorted(
            {int(o.body_id) for o in qp_input.body_motion_data}
            | {int(b.body_id) for b in qp_input.body_accelerations}
        )
        try:
            dynamics = self.model.evaluate(q, qd, {s.body_id: s.contact_pts for s in supports}, body_ids)
            if not dynamics.is_finite():
                raise NonFiniteDynamics(f"model evaluator returned non-finite terms at t={t:.4f}")

            body_accels = [
                body_motion_pd(obj, dynamics.bodies[int(obj.body_id)], params.body_motion)
                for obj in qp_input.body_motion_data
            ]
            body_accels.extend(qp_input.body_accelerations)

            problem = build_qp(
                dynamics=dynamics,
                rpc=self.rpc,
                params=params,
                whole_body=whole_body,
                q=q,
                qd=qd,
                qddot_des=pid.qddot_des,
                supports=supports,
                body_accelerations=body_accels,
                umin=self.umin,
                umax=self.umax,
                zmp_data=qp_input.zmp_data,
                k_des=qp_input.desired_angular_momentum,
                nd=int(self.cfg.friction_basis_size),
                knee_margin=float(self.cfg.knee_margin),
            )
            sol = self._solver.solve(problem, st.warm_start, topology, fast=self._use_fast(st))
        except NonFiniteDynamics as e:
            return self._fault(FaultKind.NON_FINITE_DYNAMICS, e, t, q, supports)
        except InfeasibleQP as e:
            return self._fault(FaultKind.INFEASIBLE_QP, e, t, q, supports, solver_status=e.status, iterations=e.iterations)

        dec = decode(problem, sol.x)
        # QP already bounds u; clamp against solver tolerance
        u = np.clip(dec.u, self.umin, self.umax)
        qd_ref = velocity_reference(st, t, q, qd, dec.qdd, foot_contact, params.vref_integrator, self.rpc)

        output = QPControllerOutput(q_ref=pid.q_ref, qd_ref=qd_ref, qdd=dec.qdd, u=u, forces=dec.forces)

        a = float(self.cfg.latency_ema_alpha)
        st.solve_latency = sol.solve_time if st.t_prev is None else (1.0 - a) * st.solve_latency + a * sol.solve_time
        st.t_prev = t
        st.warm_start = sol.basis
        st.last_output = output.copy()
        st.consecutive_faults = 0
        self._state = st

        status = TickStatus(
            fault=FaultKind.NONE,
            held_output=False,
            cold_start=sol.cold_start,
            solver_status=sol.status,
            iterations=sol.iterations,
            solve_method=sol.method,
            solve_time=sol.solve_time,
            consecutive_faults=0,
            escalated=False,
            active_supports=tuple(s.body_id for s in supports),
        )
        if sol.cold_start:
            logger.debug("[wbqp] t=%.4f cold start (supports=%s)", t, status.active_supports)

        dbg = None
        want_debug = debug or (self.debug_channel is not None and self.debug_channel.enabled)
        if want_debug:
            dbg = self._debug_data(problem, sol, dec, supports, dynamics)
        if self.debug_channel is not None:
            self.debug_channel.publish(t, status, dbg)
        return TickResult(output=output, status=status, debug=dbg if debug else None)

    def _safe_output(self, q: np.ndarray) -> QPControllerOutput:
        nv = self.rpc.num_velocities
        return QPControllerOutput(
            q_ref=q.copy(),
            qd_ref=np.zeros(nv),
            qdd=np.zeros(nv),
            u=np.clip(np.zeros(self.rpc.num_actuators), self.umin, self.umax),
        )

    def _fault(
        self,
        kind: FaultKind,
        err: Exception,
        t: float,
        q: np.ndarray,
        supports: list[SupportStateElement],
        solver_status: str = "",
        iterations: int = 0,
    ) -> TickResult:
        # Integrators, contact history, t_prev and the warm start stay at the last good tick.
        st = self._state.copy()
        st.consecutive_faults += 1
        escalated = st.consecutive_faults >= int(self.cfg.max_consecutive_faults)
        held = st.last_output is not None
        output = st.last_output.copy() if held else self._safe_output(q)
        self._state = st

        msg = "[wbqp] t=%.4f %s (%d consecutive): %s; %s"
        action = "holding last output" if held else "no prior output, emitting zero-acceleration command"
        if escalated:
            logger.error(msg, t, kind.value, st.consecutive_faults, err, action)
        else:
            logger.warning(msg, t, kind.value, st.consecutive_faults, err, action)

        status = TickStatus(
            fault=kind,
            held_output=held,
            cold_start=True,
            solver_status=solver_status,
            iterations=iterations,
            consecutive_faults=st.consecutive_faults,
            escalated=escalated,
            active_supports=tuple(s.body_id for s in supports),
        )
        if self.debug_channel is not None:
            self.debug_channel.publish(t, status, None)
        return TickResult(output=output, status=status, debug=None)

    @staticmethod
    def _debug_data(
        problem: QPProblem,
        sol: QPSolution,
        dec: DecodedSolution,
        supports: list[SupportStateElement],
        dynamics: DynamicsTerms,
    ) -> QPControllerDebugData:
        Ain_lb_ub, bin_lb_ub = problem.one_sided_inequalities()
        P = problem.P
        z = problem.zmp_terms
        return QPControllerDebugData(
            active_supports=list(supports),
            nc=problem.contact.npts,
            normals=problem.contact.normals.copy(),
            B=problem.contact.B.copy(),
            alpha=sol.x.copy(),
            f=dec.f.copy(),
            Aeq=problem.Aeq.copy(),
            beq=problem.beq.copy(),
            Ain_lb_ub=Ain_lb_ub,
            bin_lb_ub=bin_lb_ub,
            Qnfdiag=np.diag(P)[problem.idx_beta].copy(),
            Qneps=np.diag(P)[problem.idx_eps].copy(),
            Hqp=P.copy(),
            fqp=problem.q.copy(),
            qdd_lb=problem.lb[problem.idx_qdd].copy(),
            qdd_ub=problem.ub[problem.idx_qdd].copy(),
            x_bar=z.get("x_bar"),
            S=z.get("S"),
            s1=z.get("s1"),
            s1dot=z.get("s1dot"),
            s2dot=float(z.get("s2dot", 0.0)),
            A_ls=z.get("A_ls"),
            B_ls=z.get("B_ls"),
            Jcom=dynamics.Jcom.copy(),
            Jcomdot=dynamics.Jcomdot_v.copy(),
            beta=dec.beta.copy(),
        )
