"""
MuJoCo implementation of the model evaluator.

Generalized coordinates follow the controller's nq == nv convention:
  - free joint:    q = [x, y, z, roll, pitch, yaw]  (MuJoCo qpos holds xyz + quat wxyz)
  - hinge / slide: q = qpos
Velocities are MuJoCo's qvel unchanged (free joint: world linear, local angular).

Spatial Jacobians are returned as [angular; linear].
"""

from __future__ import annotations

from typing import Mapping, Sequence

import mujoco
import numpy as np
from scipy.spatial.transform import Rotation

from .errors import ModelError
from .model import BodyKinematics, DynamicsTerms, PointJacobians
from .robot import RobotPropertyCache


def _skew(v: np.ndarray) -> np.ndarray:
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ],
        dtype=float,
    )


class MujocoModelEvaluator:
    # finite-difference step (s) for Agdot * qd and Jcomdot * qd
    fd_step: float = 1e-6

    def __init__(self, model: mujoco.MjModel):
        self.model = model
        self.data = mujoco.MjData(model)
        # scratch copy for finite differences; never touches `data`
        self._fd_data = mujoco.MjData(model)

        nv = int(model.nv)
        self.num_velocities = nv
        self.num_positions = nv
        self.num_actuators = int(model.nu)

        self._free: list[tuple[int, int]] = []  # (qposadr, dofadr)
        self._scalar: list[tuple[int, int]] = []
        angular = np.zeros(nv, dtype=bool)
        lo = np.full(nv, -np.inf)
        hi = np.full(nv, np.inf)
        for j in range(int(model.njnt)):
            jtype = int(model.jnt_type[j])
            qadr = int(model.jnt_qposadr[j])
            dadr = int(model.jnt_dofadr[j])
            if jtype == int(mujoco.mjtJoint.mjJNT_FREE):
                self._free.append((qadr, dadr))
                angular[dadr + 3:dadr + 6] = True
            elif jtype in (int(mujoco.mjtJoint.mjJNT_HINGE), int(mujoco.mjtJoint.mjJNT_SLIDE)):
                self._scalar.append((qadr, dadr))
                angular[dadr] = jtype == int(mujoco.mjtJoint.mjJNT_HINGE)
                if bool(model.jnt_limited[j]):
                    lo[dadr], hi[dadr] = (float(v) for v in model.jnt_range[j])
            else:
                name = mujoco.mj_id2name(model, mujoco.mjtObj.mjOBJ_JOINT, j)
                raise ModelError(f"joint {name!r}: ball joints are not supported (nq == nv convention)")
        self.joint_limit_min = lo
        self.joint_limit_max = hi
        self.angular_dofs = angular

        # Actuation matrix from joint transmissions: B[dof, i] = gear
        self.actuation_matrix = np.zeros((nv, self.num_actuators))
        self.actuated_dofs = np.zeros(self.num_actuators, dtype=int)
        for i in range(self.num_actuators):
            if int(model.actuator_trntype[i]) != int(mujoco.mjtTrn.mjTRN_JOINT):
                name = mujoco.mj_id2name(model, mujoco.mjtObj.mjOBJ_ACTUATOR, i)
                raise ModelError(f"actuator {name!r}: only joint transmissions are supported")
            dof = int(model.jnt_dofadr[int(model.actuator_trnid[i, 0])])
            self.actuation_matrix[dof, i] = float(model.actuator_gear[i, 0])
            self.actuated_dofs[i] = dof

    # ---- coordinates ----
    def q_to_qpos(self, q: np.ndarray) -> np.ndarray:
        q = np.asarray(q, dtype=float).reshape(-1)
        qpos = np.zeros(int(self.model.nq))
        for qadr, dadr in self._free:
            qpos[qadr:qadr + 3] = q[dadr:dadr + 3]
            xyzw = Rotation.from_euler("xyz", q[dadr + 3:dadr + 6]).as_quat()
            qpos[qadr + 3:qadr + 7] = np.roll(xyzw, 1)
        for qadr, dadr in self._scalar:
            qpos[qadr] = q[dadr]
        return qpos

    def qpos_to_q(self, qpos: np.ndarray) -> np.ndarray:
        qpos = np.asarray(qpos, dtype=float).reshape(-1)
        q = np.zeros(self.num_velocities)
        for qadr, dadr in self._free:
            q[dadr:dadr + 3] = qpos[qadr:qadr + 3]
            wxyz = qpos[qadr + 3:qadr + 7]
            q[dadr + 3:dadr + 6] = Rotation.from_quat(np.roll(wxyz, -1)).as_euler("xyz")
        for qadr, dadr in self._scalar:
            q[dadr] = qpos[qadr]
        return q

    # ---- kinematics helpers (operate on a forward-evaluated MjData) ----
    def _centroidal(self, data: mujoco.MjData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Ag (6, nv) about the COM, COM position and Jcom (3, nv)."""
        m, d = self.model, data
        nv = self.num_velocities
        com = d.subtree_com[0].copy()
        Jcom = np.zeros((3, nv))
        mujoco.mj_jacSubtreeCom(m, d, Jcom, 0)

        Ag = np.zeros((6, nv))
        jacp = np.zeros((3, nv))
        jacr = np.zeros((3, nv))
        for b in range(1, int(m.nbody)):
            mb = float(m.body_mass[b])
            if mb <= 0.0:
                continue
            mujoco.mj_jacBodyCom(m, d, jacp, jacr, b)
            Rb = d.ximat[b].reshape(3, 3)
            Ib = Rb @ np.diag(m.body_inertia[b]) @ Rb.T
            Ag[0:3] += Ib @ jacr + mb * _skew(d.xipos[b] - com) @ jacp
            Ag[3:6] += mb * jacp
        return Ag, com, Jcom

    def _fd_rates(self, qpos: np.ndarray, qd: np.ndarray, Ag: np.ndarray, Jcom: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        h = float(self.fd_step)
        d = self._fd_data
        qpos2 = qpos.copy()
        mujoco.mj_integratePos(self.model, qpos2, qd, h)
        d.qpos[:] = qpos2
        d.qvel[:] = qd
        mujoco.mj_kinematics(self.model, d)
        mujoco.mj_comPos(self.model, d)
        Ag2, _, Jcom2 = self._centroidal(d)
        return (Ag2 - Ag) @ qd / h, (Jcom2 - Jcom) @ qd / h

    def evaluate(
        self,
        q: np.ndarray,
        qd: np.ndarray,
        contact_points: Mapping[int, np.ndarray],
        body_ids: Sequence[int],
    ) -> DynamicsTerms:
        m, d = self.model, self.data
        nv = self.num_velocities
        qd = np.asarray(qd, dtype=float).reshape(nv)
        qpos = self.q_to_qpos(q)
        d.qpos[:] = qpos
        d.qvel[:] = qd
        mujoco.mj_forward(m, d)

        H = np.zeros((nv, nv))
        e = np.zeros(nv)
        col = np.zeros(nv)
        for i in range(nv):
            e[i] = 1.0
            mujoco.mj_mulM(m, d, col, e)
            H[:, i] = col
            e[i] = 0.0
        H = 0.5 * (H + H.T)
        C = d.qfrc_bias.copy()

        Ag, com, Jcom = self._centroidal(d)
        Agdot_v, Jcomdot_v = self._fd_rates(qpos, qd, Ag, Jcom)

        contacts: dict[int, PointJacobians] = {}
        for body, pts in contact_points.items():
            body = int(body)
            pts = np.asarray(pts, dtype=float).reshape(-1, 3)
            R = d.xmat[body].reshape(3, 3)
            pw = d.xpos[body] + pts @ R.T
            J = np.zeros((3 * len(pw), nv))
            Jdot_v = np.zeros(3 * len(pw))
            jacp = np.zeros((3, nv))
            jdot = np.zeros((3, nv))
            for k, p in enumerate(pw):
                mujoco.mj_jac(m, d, jacp, None, p, body)
                mujoco.mj_jacDot(m, d, jdot, None, p, body)
                J[3 * k:3 * k + 3] = jacp
                Jdot_v[3 * k:3 * k + 3] = jdot @ qd
            contacts[body] = PointJacobians(J=J, Jdot_v=Jdot_v, positions=pw)

        bodies: dict[int, BodyKinematics] = {}
        for body in body_ids:
            body = int(body)
            jacp = np.zeros((3, nv))
            jacr = np.zeros((3, nv))
            mujoco.mj_jacBody(m, d, jacp, jacr, body)
            jdp = np.zeros((3, nv))
            jdr = np.zeros((3, nv))
            mujoco.mj_jacDot(m, d, jdp, jdr, d.xpos[body], body)
            J = np.vstack([jacr, jacp])
            bodies[body] = BodyKinematics(
                J=J,
                Jdot_v=np.concatenate([jdr @ qd, jdp @ qd]),
                pos=d.xpos[body].copy(),
                R=d.xmat[body].reshape(3, 3).copy(),
                twist=J @ qd,
            )

        return DynamicsTerms(
            H=H,
            C=C,
            B=self.actuation_matrix.copy(),
            Ag=Ag,
            Agdot_v=Agdot_v,
            com=com,
            Jcom=Jcom,
            Jcomdot_v=Jcomdot_v,
            contacts=contacts,
            bodies=bodies,
        )

    # ---- name lookups ----
    def body_id(self, name: str) -> int:
        bid = mujoco.mj_name2id(self.model, mujoco.mjtObj.mjOBJ_BODY, name)
        if bid < 0:
            raise ModelError(f"no body named {name!r}")
        return int(bid)

    def dof_index(self, joint_name: str) -> int:
        jid = mujoco.mj_name2id(self.model, mujoco.mjtObj.mjOBJ_JOINT, joint_name)
        if jid < 0:
            raise ModelError(f"no joint named {joint_name!r}")
        return int(self.model.jnt_dofadr[jid])


def property_cache(
    evaluator: MujocoModelEvaluator,
    *,
    l_foot: str,
    r_foot: str,
    pelvis: str,
    l_leg: Sequence[str] = (),
    r_leg: Sequence[str] = (),
    l_knee: Sequence[str] = (),
    r_knee: Sequence[str] = (),
    l_ankle: Sequence[str] = (),
    r_ankle: Sequence[str] = (),
) -> RobotPropertyCache:
    """Build a `RobotPropertyCache` from MJCF body / joint names."""

    def dofs(names: Sequence[str]) -> list[int]:
        return [evaluator.dof_index(n) for n in names]

    return RobotPropertyCache.build(
        num_velocities=evaluator.num_velocities,
        actuated_indices=evaluator.actuated_dofs,
        l_foot=evaluator.body_id(l_foot),
        r_foot=evaluator.body_id(r_foot),
        pelvis=evaluator.body_id(pelvis),
        l_leg=dofs(l_leg),
        r_leg=dofs(r_leg),
        l_leg_kny=dofs(l_knee),
        r_leg_kny=dofs(r_knee),
        l_leg_ak=dofs(l_ankle),
        r_leg_ak=dofs(r_ankle),
    )
