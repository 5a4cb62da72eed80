"""
Per-tick whole-body QP assembly.

Decision vector:
  x = [qdd (nv), beta (nf), eps (neps)]
  nf = nd * npts (friction pyramid edge weights), neps = 3 * npts (contact acceleration slack)

Dynamics with contact forces f = B_f beta:
  H qdd + C = B u + Jp^T B_f beta = B u + D beta

Constraints:
  - unactuated rows of the dynamics (equality):   H_f qdd - D_f beta = -C_f
  - rigid contact with slack (equality):           Jp qdd + eps = -Jpdot_v - Kp_accel Jp qd
  - hard body acceleration tasks (weight < 0):     J qdd = vdot_des - Jdot_v
  - actuator torque (inequality):                  umin <= B_a^-1 (H_a qdd + C_a - D_a beta) <= umax
  - body acceleration bounds (inequality):         min <= J qdd + Jdot_v <= max
  - normal force caps (inequality):                0 <= n^T B_f beta <= fz_max
  - variable bounds:                               qdd_lb <= qdd <= qdd_ub, beta >= 0, |eps| <= slack_limit

OSQP form:  min 0.5 x^T P x + q^T x   s.t.  l <= A x <= u
Each weighted least-squares task w * ||M x - b||^2 contributes 2 w M^T M to P and -2 w M^T b to q.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import scipy.sparse as sp

from ..errors import ModelError
from ..model import DynamicsTerms
from ..params import ControllerParams, WholeBodyParams
from ..robot import RobotPropertyCache
from ..types import DesiredBodyAcceleration, SupportStateElement, ZMPData
from .supports import ContactBasis, contact_basis

REG = 1e-8


@dataclass
class QPProblem:
    P: np.ndarray
    q: np.ndarray
    Aeq: np.ndarray
    beq: np.ndarray
    Ain: np.ndarray
    lin: np.ndarray
    uin: np.ndarray
    lb: np.ndarray
    ub: np.ndarray
    idx_qdd: slice
    idx_beta: slice
    idx_eps: slice
    contact: ContactBasis
    # u = torque_map @ x + torque_offset
    torque_map: np.ndarray
    torque_offset: np.ndarray
    zmp_terms: dict = field(default_factory=dict)

    @property
    def num_vars(self) -> int:
        return int(self.P.shape[0])

    @property
    def num_constraints(self) -> int:
        """Rows of the stacked OSQP constraint matrix (equalities, inequalities, variable bounds)."""
        return int(self.Aeq.shape[0] + self.Ain.shape[0] + self.num_vars)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.num_vars, self.num_constraints)

    def to_osqp(self) -> tuple[sp.csc_matrix, np.ndarray, sp.csc_matrix, np.ndarray, np.ndarray]:
        n = self.num_vars
        P = sp.triu(sp.csc_matrix(self.P), format="csc")
        A = sp.vstack(
            [sp.csc_matrix(self.Aeq), sp.csc_matrix(self.Ain), sp.identity(n, format="csc")],
            format="csc",
        )
        l = np.concatenate([self.beq, self.lin, self.lb])
        u = np.concatenate([self.beq, self.uin, self.ub])
        return P, self.q.copy(), A, l, u

    def violation(self, x: np.ndarray) -> float:
        """Largest constraint / bound violation of `x` (0 when feasible)."""
        x = np.asarray(x, dtype=float)
        v = 0.0
        if self.Aeq.shape[0]:
            v = max(v, float(np.max(np.abs(self.Aeq @ x - self.beq))))
        if self.Ain.shape[0]:
            r = self.Ain @ x
            v = max(v, float(np.max(self.lin - r)), float(np.max(r - self.uin)))
        v = max(v, float(np.max(self.lb - x)), float(np.max(x - self.ub)))
        return max(v, 0.0)

    def one_sided_inequalities(self) -> tuple[np.ndarray, np.ndarray]:
        """All inequalities and variable bounds as G x <= h, infinite rows dropped."""
        n = self.num_vars
        I = np.eye(n)
        G = np.vstack([self.Ain, -self.Ain, I, -I])
        h = np.concatenate([self.uin, -self.lin, self.ub, -self.lb])
        keep = np.isfinite(h)
        return G[keep], h[keep]


@dataclass
class DecodedSolution:
    qdd: np.ndarray
    beta: np.ndarray
    f: np.ndarray  # stacked contact forces (3*npts,)
    u: np.ndarray
    forces: dict[int, np.ndarray]


def knee_bounds(
    q: np.ndarray,
    qdd_lb: np.ndarray,
    qdd_ub: np.ndarray,
    knees: np.ndarray,
    min_knee_angle: float,
    knee_margin: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Forbid further knee extension (qdd < 0) once the knee is within margin of its singular limit."""
    lb = np.array(qdd_lb, dtype=float)
    ub = np.array(qdd_ub, dtype=float)
    for k in np.asarray(knees, dtype=int):
        if float(q[k]) < float(min_knee_angle) + float(knee_margin):
            lb[k] = min(max(lb[k], 0.0), ub[k])
    return lb, ub


def _track(P: np.ndarray, qv: np.ndarray, sl: slice, M: np.ndarray, b: np.ndarray, W: np.ndarray) -> None:
    # (M x_sl - b)^T W (M x_sl - b)
    W = 0.5 * (W + W.T)
    P[sl, sl] += 2.0 * (M.T @ W @ M)
    qv[sl] += -2.0 * (M.T @ W @ b)


def _zmp_cost(
    P: np.ndarray,
    qv: np.ndarray,
    sl: slice,
    zmp: ZMPData,
    dynamics: DynamicsTerms,
    qd: np.ndarray,
) -> dict:
    Jcom_xy = dynamics.Jcom[0:2]
    Jcomdot_xy = dynamics.Jcomdot_v[0:2]
    x = np.concatenate([dynamics.com[0:2], Jcom_xy @ qd])
    x_bar = x - np.asarray(zmp.x0, dtype=float)
    A_ls = np.asarray(zmp.A, dtype=float)
    B_ls = np.asarray(zmp.B, dtype=float)
    C_ls = np.asarray(zmp.C, dtype=float)
    D_ls = np.asarray(zmp.D, dtype=float)
    R = np.asarray(zmp.R, dtype=float)
    Qy = np.asarray(zmp.Qy, dtype=float)
    S = np.asarray(zmp.S, dtype=float)
    s1 = np.asarray(zmp.s1, dtype=float)

    # cost in u = Jcom_xy qdd + Jcomdot_xy:  u^T Rb u + 2 g^T u
    Rb = R + D_ls.T @ Qy @ D_ls
    Rb = 0.5 * (Rb + Rb.T)
    g = (
        D_ls.T @ Qy @ (C_ls @ x - np.asarray(zmp.y0, dtype=float))
        - R @ np.asarray(zmp.u0, dtype=float)
        + B_ls.T @ S @ x_bar
        + 0.5 * B_ls.T @ s1
    )
    P[sl, sl] += 2.0 * (Jcom_xy.T @ Rb @ Jcom_xy)
    qv[sl] += 2.0 * (Jcom_xy.T @ (Rb @ Jcomdot_xy + g))
    return {
        "x_bar": x_bar,
        "S": S,
        "s1": s1,
        "s1dot": np.asarray(zmp.s1dot, dtype=float),
        "s2dot": float(zmp.s2dot),
        "A_ls": A_ls,
        "B_ls": B_ls,
        "Jcom": dynamics.Jcom,
        "Jcomdot": dynamics.Jcomdot_v,
    }


def build_qp(
    *,
    dynamics: DynamicsTerms,
    rpc: RobotPropertyCache,
    params: ControllerParams,
    whole_body: WholeBodyParams,
    q: np.ndarray,
    qd: np.ndarray,
    qddot_des: np.ndarray,
    supports: Sequence[SupportStateElement],
    body_accelerations: Sequence[DesiredBodyAcceleration],
    umin: np.ndarray,
    umax: np.ndarray,
    zmp_data: ZMPData | None = None,
    k_des: np.ndarray | None = None,
    nd: int = 4,
    knee_margin: float = 0.0,
) -> QPProblem:
    nv = rpc.num_velocities
    act = rpc.actuated_indices
    unact = rpc.unactuated_indices
    q = np.asarray(q, dtype=float)
    qd = np.asarray(qd, dtype=float)

    cb = contact_basis(supports, dynamics, nd)
    npts = cb.npts
    nf = cb.nf
    neps = 3 * npts
    idx_qdd = slice(0, nv)
    idx_beta = slice(nv, nv + nf)
    idx_eps = slice(nv + nf, nv + nf + neps)
    n = nv + nf + neps

    H = dynamics.H
    C = dynamics.C
    D = cb.Jp.T @ cb.B  # (nv, nf)

    # ---- Equality constraints ----
    eq_rows: list[np.ndarray] = []
    eq_rhs: list[np.ndarray] = []

    if unact.size:
        Af = np.zeros((unact.size, n))
        Af[:, idx_qdd] = H[unact]
        Af[:, idx_beta] = -D[unact]
        eq_rows.append(Af)
        eq_rhs.append(-C[unact])

    if npts:
        Ac = np.zeros((3 * npts, n))
        Ac[:, idx_qdd] = cb.Jp
        Ac[:, idx_eps] = np.eye(neps)
        eq_rows.append(Ac)
        eq_rhs.append(-cb.Jpdot_v - float(params.Kp_accel) * (cb.Jp @ qd))

    # ---- Inequality constraints ----
    in_rows: list[np.ndarray] = []
    in_lo: list[np.ndarray] = []
    in_hi: list[np.ndarray] = []

    nu = int(act.size)
    torque_map = np.zeros((nu, n))
    torque_offset = np.zeros(nu)
    if nu:
        B_act = dynamics.B[act]
        try:
            B_inv = np.linalg.inv(B_act)
        except np.linalg.LinAlgError:
            raise ModelError("actuated rows of the actuation matrix are singular") from None
        torque_map[:, idx_qdd] = B_inv @ H[act]
        torque_map[:, idx_beta] = -B_inv @ D[act]
        torque_offset = B_inv @ C[act]
        in_rows.append(torque_map)
        in_lo.append(np.asarray(umin, dtype=float) - torque_offset)
        in_hi.append(np.asarray(umax, dtype=float) - torque_offset)

    # ---- Cost ----
    P = np.zeros((n, n))
    qv = np.zeros(n)

    w_qdd = np.asarray(whole_body.w_qdd, dtype=float)
    P[idx_qdd, idx_qdd] += np.diag(2.0 * w_qdd)
    qv[idx_qdd] += -2.0 * w_qdd * np.asarray(qddot_des, dtype=float)

    for bd in body_accelerations:
        kin = dynamics.bodies[bd.body_id]
        vdot = np.asarray(bd.body_vdot, dtype=float).reshape(6)
        lo = np.asarray(bd.accel_bounds.min, dtype=float) - kin.Jdot_v
        hi = np.asarray(bd.accel_bounds.max, dtype=float) - kin.Jdot_v
        bounded = np.isfinite(lo) | np.isfinite(hi)
        if np.any(bounded):
            Ab = np.zeros((int(bounded.sum()), n))
            Ab[:, idx_qdd] = kin.J[bounded]
            in_rows.append(Ab)
            in_lo.append(lo[bounded])
            in_hi.append(hi[bounded])
        if bd.weight < 0.0:
            Ae = np.zeros((6, n))
            Ae[:, idx_qdd] = kin.J
            eq_rows.append(Ae)
            eq_rhs.append(vdot - kin.Jdot_v)
        elif bd.weight > 0.0:
            _track(P, qv, idx_qdd, kin.J, vdot - kin.Jdot_v, float(bd.weight) * np.eye(6))

    W_kdot = np.asarray(params.W_kdot, dtype=float)
    if np.any(W_kdot != 0.0):
        Ak = dynamics.Ak
        k_des = np.zeros(3) if k_des is None else np.asarray(k_des, dtype=float).reshape(3)
        kdot_des = float(params.Kp_ang) * (k_des - Ak @ qd)
        _track(P, qv, idx_qdd, Ak, kdot_des - dynamics.Akdot_v, W_kdot)

    zmp_terms: dict = {}
    if zmp_data is not None:
        zmp_terms = _zmp_cost(P, qv, idx_qdd, zmp_data, dynamics, qd)

    if nf:
        P[idx_beta, idx_beta] += 2.0 * float(params.w_grf) * np.eye(nf)
        fz_rows = np.isfinite(cb.fz_max)
        if np.any(fz_rows):
            An = np.zeros((int(fz_rows.sum()), n))
            r = 0
            for j in np.flatnonzero(fz_rows):
                An[r, idx_beta] = cb.normals[j] @ cb.B[3 * j:3 * j + 3]
                r += 1
            in_rows.append(An)
            in_lo.append(np.zeros(An.shape[0]))
            in_hi.append(cb.fz_max[fz_rows])
    if neps:
        P[idx_eps, idx_eps] += 2.0 * float(params.w_slack) * np.eye(neps)
    P += REG * np.eye(n)
    P = 0.5 * (P + P.T)

    # ---- Variable bounds ----
    lb = np.full(n, -np.inf)
    ub = np.full(n, np.inf)
    lb[idx_qdd], ub[idx_qdd] = knee_bounds(
        q,
        whole_body.qdd_bounds.min,
        whole_body.qdd_bounds.max,
        rpc.knee_indices,
        params.min_knee_angle,
        knee_margin,
    )
    lb[idx_beta] = 0.0
    lb[idx_eps] = -float(params.slack_limit)
    ub[idx_eps] = float(params.slack_limit)

    def _stack(rows: list[np.ndarray]) -> np.ndarray:
        return np.vstack(rows) if rows else np.zeros((0, n))

    def _cat(vals: list[np.ndarray]) -> np.ndarray:
        return np.concatenate(vals) if vals else np.zeros(0)

    return QPProblem(
        P=P,
        q=qv,
        Aeq=_stack(eq_rows),
        beq=_cat(eq_rhs),
        Ain=_stack(in_rows),
        lin=_cat(in_lo),
        uin=_cat(in_hi),
        lb=lb,
        ub=ub,
        idx_qdd=idx_qdd,
        idx_beta=idx_beta,
        idx_eps=idx_eps,
        contact=cb,
        torque_map=torque_map,
        torque_offset=torque_offset,
        zmp_terms=zmp_terms,
    )


def decode(problem: QPProblem, x: np.ndarray) -> DecodedSolution:
    x = np.asarray(x, dtype=float)
    qdd = x[problem.idx_qdd].copy()
    beta = x[problem.idx_beta].copy()
    f = problem.contact.B @ beta
    u = problem.torque_map @ x + problem.torque_offset
    forces = {body_id: f[rows].reshape(-1, 3).copy() for body_id, rows in problem.contact.point_slices}
    return DecodedSolution(qdd=qdd, beta=beta, f=f, u=u, forces=forces)
