"""
Interface to the external rigid-body model evaluator.

The controller only needs, per tick and at the measured (q, qd):
  - mass matrix H, bias term C (Coriolis + gravity), actuation matrix B
      H(q) qdd + C(q, qd) = B u + sum_i J_i^T f_i
  - contact point Jacobians (and Jdot * qd) for every active support
  - spatial Jacobians (and Jdot * qd), pose and twist of the bodies with motion objectives
  - centroidal momentum matrix Ag (and Agdot * qd), COM position / Jacobian

Spatial quantities are ordered [angular; linear]. `MujocoModelEvaluator`
(`wbqp.mujoco_model`) is the reference implementation; tests use analytic models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence, runtime_checkable

import numpy as np

from .errors import ModelError
from .robot import RobotPropertyCache


@dataclass
class PointJacobians:
    J: np.ndarray  # (3k, nv)
    Jdot_v: np.ndarray  # (3k,)
    positions: np.ndarray  # (k, 3) world frame


@dataclass
class BodyKinematics:
    J: np.ndarray  # (6, nv)
    Jdot_v: np.ndarray  # (6,)
    pos: np.ndarray  # (3,)
    R: np.ndarray  # (3, 3) body -> world
    twist: np.ndarray  # (6,) [angular; linear], world frame


@dataclass
class DynamicsTerms:
    H: np.ndarray
    C: np.ndarray
    B: np.ndarray
    Ag: np.ndarray  # (6, nv)
    Agdot_v: np.ndarray  # (6,)
    com: np.ndarray  # (3,)
    Jcom: np.ndarray  # (3, nv)
    Jcomdot_v: np.ndarray  # (3,)
    contacts: dict[int, PointJacobians] = field(default_factory=dict)
    bodies: dict[int, BodyKinematics] = field(default_factory=dict)

    @property
    def Ak(self) -> np.ndarray:
        return self.Ag[0:3]

    @property
    def Akdot_v(self) -> np.ndarray:
        return self.Agdot_v[0:3]

    def is_finite(self) -> bool:
        arrays = [self.H, self.C, self.B, self.Ag, self.Agdot_v, self.com, self.Jcom, self.Jcomdot_v]
        for pj in self.contacts.values():
            arrays.extend((pj.J, pj.Jdot_v, pj.positions))
        for bk in self.bodies.values():
            arrays.extend((bk.J, bk.Jdot_v, bk.pos, bk.R, bk.twist))
        return all(bool(np.all(np.isfinite(a))) for a in arrays)


@runtime_checkable
class ModelEvaluator(Protocol):
    num_positions: int
    num_velocities: int
    num_actuators: int
    joint_limit_min: np.ndarray
    joint_limit_max: np.ndarray
    # True for revolute DOFs (hinges, floating-base rpy); their position error wraps
    angular_dofs: np.ndarray

    def evaluate(
        self,
        q: np.ndarray,
        qd: np.ndarray,
        contact_points: Mapping[int, np.ndarray],
        body_ids: Sequence[int],
    ) -> DynamicsTerms:
        ...


def check_model(model: ModelEvaluator, rpc: RobotPropertyCache) -> None:
    """
    Startup check that the evaluator and the property cache agree.

    Also evaluates the model once at q = qd = 0 to check that the actuated rows
    of the actuation matrix are square and invertible.
    """
    nv = int(model.num_velocities)
    if int(model.num_positions) != nv:
        raise ModelError(
            f"controller expects nq == nv (floating base as xyz+rpy); got nq={model.num_positions}, nv={nv}"
        )
    if rpc.num_velocities != nv:
        raise ModelError(f"property cache has nv={rpc.num_velocities}, model has nv={nv}")
    if rpc.num_actuators != int(model.num_actuators):
        raise ModelError(
            f"property cache lists {rpc.num_actuators} actuated DOFs, model has {model.num_actuators} actuators"
        )
    for label in ("joint_limit_min", "joint_limit_max"):
        lim = np.asarray(getattr(model, label), dtype=float)
        if lim.shape != (nv,):
            raise ModelError(f"{label} must have shape ({nv},), got {lim.shape}")
    angular = np.asarray(model.angular_dofs)
    if angular.shape != (nv,) or angular.dtype != bool:
        raise ModelError(f"angular_dofs must be a boolean mask of shape ({nv},), got {angular.dtype} {angular.shape}")

    act = rpc.actuated_indices
    B = np.asarray(model.evaluate(np.zeros(nv), np.zeros(nv), {}, []).B, dtype=float)
    if B.shape != (nv, rpc.num_actuators):
        raise ModelError(f"actuation matrix must have shape ({nv}, {rpc.num_actuators}), got {B.shape}")
    B_act = B[act]
    if not np.all(np.isfinite(B_act)) or np.linalg.matrix_rank(B_act) < act.size:
        raise ModelError(f"actuated rows {act.tolist()} of the actuation matrix are singular")
