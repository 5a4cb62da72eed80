"""
Whole-body PID and velocity-reference integrator.

Both read `t_prev` from the controller state but never write it; the controller
advances `t_prev` once per committed tick.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np

from ..params import IntegratorParams, VRefIntegratorParams, WholeBodyParams
from ..robot import RobotPropertyCache
from ..state import ControllerState
from ..types import JointPDOverride


@dataclass
class PIDOutput:
    q_ref: np.ndarray
    qddot_des: np.ndarray


def _angle_diff(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """b - a wrapped to [-pi, pi)."""
    d = np.asarray(b, dtype=float) - np.asarray(a, dtype=float)
    return (d + np.pi) % (2.0 * np.pi) - np.pi


def position_error(q: np.ndarray, q_ref: np.ndarray, angular: np.ndarray | None = None) -> np.ndarray:
    """q_ref - q, wrapped to [-pi, pi) on the entries flagged in `angular`."""
    q = np.asarray(q, dtype=float)
    q_ref = np.asarray(q_ref, dtype=float)
    err = q_ref - q
    if angular is not None:
        mask = np.asarray(angular, dtype=bool)
        err[mask] = _angle_diff(q[mask], q_ref[mask])
    return err


def _integrate_position(state: ControllerState, dt: float, q: np.ndarray, q_des: np.ndarray, ip: IntegratorParams) -> None:
    if dt <= 0.0:
        # first tick or clock reset: hold
        return
    gains = np.asarray(ip.gains, dtype=float)
    clamps = np.asarray(ip.clamps, dtype=float)
    z = float(ip.eta) * state.q_integrator_state + gains * (q_des - q) * dt
    state.q_integrator_state = np.clip(z, -clamps, clamps)


def whole_body_pid(
    state: ControllerState,
    t: float,
    q: np.ndarray,
    qd: np.ndarray,
    q_des: np.ndarray,
    params: WholeBodyParams,
    joint_limit_min: np.ndarray,
    joint_limit_max: np.ndarray,
    angular: np.ndarray | None = None,
) -> PIDOutput:
    """
    Desired joint acceleration from posture error plus a clamped integral term.

      q_int  <- clamp(eta*q_int + Ki*(q_des - q)*dt, -clamps, clamps)
      q_ref   = clamp(q_des + q_int, q_min - clamps, q_max + clamps)
      qdd_des = clamp(Kp*(q_ref - q) - Kd*qd, qdd_min, qdd_max)

    Entries flagged in `angular` (revolute DOFs) take the wrapped position error.
    """
    q = np.asarray(q, dtype=float).reshape(-1)
    qd = np.asarray(qd, dtype=float).reshape(-1)
    q_des = np.asarray(q_des, dtype=float).reshape(-1)
    if not (q.shape == qd.shape == q_des.shape):
        raise ValueError(f"q/qd/q_des shape mismatch: {q.shape}, {qd.shape}, {q_des.shape}")

    dt = state.elapsed(t)
    ip = params.integrator
    _integrate_position(state, dt, q, q_des, ip)

    clamps = np.asarray(ip.clamps, dtype=float)
    q_ref = q_des + state.q_integrator_state
    q_ref = np.clip(q_ref, np.asarray(joint_limit_min, dtype=float) - clamps, np.asarray(joint_limit_max, dtype=float) + clamps)

    err = position_error(q, q_ref, angular)
    qddot_des = np.asarray(params.Kp, dtype=float) * err - np.asarray(params.Kd, dtype=float) * qd
    qddot_des = np.clip(qddot_des, params.qdd_bounds.min, params.qdd_bounds.max)
    return PIDOutput(q_ref=q_ref, qddot_des=qddot_des)


def apply_joint_pd_override(
    params: WholeBodyParams,
    q_des: np.ndarray,
    overrides: Sequence[JointPDOverride],
) -> tuple[WholeBodyParams, np.ndarray]:
    """
    Per-joint gain / target overrides for this tick only.

    The desired velocity is folded into the target so that the PID law
    Kp*(q_ref - q) - Kd*qd reproduces Kp*(qi_des - q) + Kd*(qdi_des - qd).
    """
    if not overrides:
        return params, q_des
    Kp = np.array(params.Kp, dtype=float)
    Kd = np.array(params.Kd, dtype=float)
    w_qdd = np.array(params.w_qdd, dtype=float)
    q_des = np.array(q_des, dtype=float)
    for ov in overrides:
        i = int(ov.position_index)
        Kp[i] = float(ov.kp)
        Kd[i] = float(ov.kd)
        w_qdd[i] = float(ov.weight)
        q_des[i] = float(ov.qi_des)
        if ov.kp > 0.0:
            q_des[i] += float(ov.kd) * float(ov.qdi_des) / float(ov.kp)
    return replace(params, Kp=Kp, Kd=Kd, w_qdd=w_qdd), q_des


def velocity_reference(
    state: ControllerState,
    t: float,
    q: np.ndarray,
    qd: np.ndarray,
    qdd: np.ndarray,
    foot_contact: tuple[bool, bool],
    params: VRefIntegratorParams,
    rpc: RobotPropertyCache,
) -> np.ndarray:
    """
    Integrate the expected accelerations into a feed-forward velocity reference.

    foot_contact is (left, right). A leg's integrator restarts from the measured
    velocity whenever that foot's contact flag changes; with
    `zero_ankles_on_contact` the ankle entries of a foot in contact are zeroed,
    including the tick on which it touches down.
    """
    qd = np.asarray(qd, dtype=float).reshape(-1)
    qdd = np.asarray(qdd, dtype=float).reshape(-1)
    if qdd.shape != qd.shape:
        raise ValueError(f"qdd has shape {qdd.shape}, expected {qd.shape}")

    pi = rpc.position_indices
    legs = (pi.l_leg, pi.r_leg)
    ankles = (pi.l_leg_ak, pi.r_leg_ak)
    contact = (bool(foot_contact[0]), bool(foot_contact[1]))

    v = state.vref_integrator_state.copy()
    for side in (0, 1):
        if contact[side] != bool(state.foot_contact_prev[side]):
            v[legs[side]] = qd[legs[side]]

    dt = state.elapsed(t)
    eta = float(params.eta)
    v = (1.0 - eta) * v + eta * qd + qdd * dt

    dmax = float(params.delta_max)
    qd_ref = np.clip(v, qd - dmax, qd + dmax) if np.isfinite(dmax) else v.copy()

    if params.zero_ankles_on_contact:
        for side in (0, 1):
            if contact[side]:
                v[ankles[side]] = 0.0
                qd_ref[ankles[side]] = 0.0

    state.vref_integrator_state = v
    state.foot_contact_prev = contact
    return qd_ref
