"""
Analytic test model: a floating point mass (x, y, z translation, unactuated)
plus decoupled actuated joints with unit inertia.

  body 0: the point mass ("pelvis"), bodies 1 / 2: massless left / right feet
  rigidly attached to it, so every contact Jacobian is [I3 0].

DOF layout with the default 4 joints:
  0..2  base translation
  3, 4  left leg  (3 = knee, 4 = ankle)
  5, 6  right leg (5 = knee, 6 = ankle)
"""

import numpy as np
import pytest

from wbqp.controllers import QPController, QPControllerConfig
from wbqp.model import BodyKinematics, DynamicsTerms, PointJacobians
from wbqp.params import default_param_sets, params_from_dict, ParamSets
from wbqp.robot import RobotPropertyCache
from wbqp.types import QPControllerInput, SupportHint

GRAVITY = 9.81
MASS = 10.0
PELVIS = 0
L_FOOT = 1
R_FOOT = 2


class PointMassModel:
    def __init__(self, mass: float = MASS, n_joints: int = 4, joint_limit: float = 3.0):
        self.mass = float(mass)
        self.num_velocities = 3 + int(n_joints)
        self.num_positions = self.num_velocities
        self.num_actuators = int(n_joints)
        self.joint_limit_min = np.concatenate([np.full(3, -np.inf), np.full(n_joints, -joint_limit)])
        self.joint_limit_max = np.concatenate([np.full(3, np.inf), np.full(n_joints, joint_limit)])
        self.angular_dofs = np.concatenate([np.zeros(3, dtype=bool), np.ones(n_joints, dtype=bool)])
        self.gear = np.ones(n_joints)
        # set to True to make evaluate() return NaN terms
        self.poison = False

    def _base_jacobian(self) -> np.ndarray:
        J = np.zeros((3, self.num_velocities))
        J[:, 0:3] = np.eye(3)
        return J

    def evaluate(self, q, qd, contact_points, body_ids) -> DynamicsTerms:
        nv = self.num_velocities
        q = np.asarray(q, dtype=float)
        qd = np.asarray(qd, dtype=float)

        H = np.eye(nv)
        H[0:3, 0:3] = self.mass * np.eye(3)
        C = np.zeros(nv)
        C[2] = self.mass * GRAVITY
        B = np.zeros((nv, self.num_actuators))
        B[3:, :] = np.diag(self.gear)

        Jb = self._base_jacobian()
        Ag = np.zeros((6, nv))
        Ag[3:6] = self.mass * Jb

        contacts = {}
        for body, pts in contact_points.items():
            pts = np.asarray(pts, dtype=float).reshape(-1, 3)
            k = pts.shape[0]
            contacts[int(body)] = PointJacobians(
                J=np.vstack([Jb] * k),
                Jdot_v=np.zeros(3 * k),
                positions=q[0:3] + pts,
            )

        bodies = {}
        for body in body_ids:
            J = np.vstack([np.zeros((3, nv)), Jb])
            bodies[int(body)] = BodyKinematics(
                J=J,
                Jdot_v=np.zeros(6),
                pos=q[0:3].copy(),
                R=np.eye(3),
                twist=J @ qd,
            )

        if self.poison:
            H = H.copy()
            H[0, 0] = np.nan

        return DynamicsTerms(
            H=H,
            C=C,
            B=B,
            Ag=Ag,
            Agdot_v=np.zeros(6),
            com=q[0:3].copy(),
            Jcom=Jb,
            Jcomdot_v=np.zeros(3),
            contacts=contacts,
            bodies=bodies,
        )


def make_rpc(n_joints: int = 4) -> RobotPropertyCache:
    nv = 3 + n_joints
    return RobotPropertyCache.build(
        num_velocities=nv,
        actuated_indices=list(range(3, nv)),
        l_foot=L_FOOT,
        r_foot=R_FOOT,
        pelvis=PELVIS,
        l_leg=[3, 4],
        r_leg=[5, 6],
        l_leg_kny=[3],
        r_leg_kny=[5],
        l_leg_ak=[4],
        r_leg_ak=[6],
    )


def foot_hint(body_id: int, mu: float = 1.0, **kw) -> SupportHint:
    kw.setdefault("force_active", True)
    return SupportHint(body_id=body_id, contact_pts=np.zeros((1, 3)), mu=mu, **kw)


def make_input(t: float, nv: int = 7, supports=(L_FOOT, R_FOOT), param_set: str = "standing", **kw) -> QPControllerInput:
    return QPControllerInput(
        timestamp=float(t),
        param_set_name=param_set,
        q_des=np.zeros(nv),
        support_data=[foot_hint(b) for b in supports],
        **kw,
    )


@pytest.fixture
def model():
    return PointMassModel()


@pytest.fixture
def rpc():
    return make_rpc()


@pytest.fixture
def param_sets(rpc):
    base = default_param_sets(rpc)
    # tiny force regularization fixes the split between identical contacts
    sets = {name: params_from_dict({"w_grf": 1e-6}, base.get_set(name)) for name in base}
    return ParamSets(sets, rpc.num_velocities)


@pytest.fixture
def make_controller(model, rpc, param_sets):
    def _make(**cfg_kw):
        cfg_kw.setdefault("eps_abs", 1e-7)
        cfg_kw.setdefault("eps_rel", 1e-7)
        cfg = QPControllerConfig(**cfg_kw)
        nu = rpc.num_actuators
        return QPController(model, rpc, param_sets, -50.0 * np.ones(nu), 50.0 * np.ones(nu), config=cfg)

    return _make
