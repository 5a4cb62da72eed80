"""
Per-tick data exchanged with the controller: command input, active supports,
desired body accelerations, output, status and the optional debug snapshot.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np

from .params import Bounds


@dataclass
class SupportHint:
    """Candidate support from the planner / contact estimator."""

    body_id: int
    contact_pts: np.ndarray  # (k, 3) in body frame
    # world frame; None uses the controller's default terrain normal
    normal: np.ndarray | None = None
    mu: float = 1.0
    # Planned stance: active even before force sensing confirms contact.
    force_active: bool = False
    force_estimate: float | None = None
    fz_max: float | None = None


@dataclass
class SupportStateElement:
    body_id: int
    contact_pts: np.ndarray
    normal: np.ndarray
    mu: float
    fz_max: float | None
    loaded: bool

    @property
    def num_points(self) -> int:
        return int(self.contact_pts.shape[0])


@dataclass
class DesiredBodyAcceleration:
    body_id: int
    body_vdot: np.ndarray  # (6,) [angular; linear]
    # weight < 0: enforced as an equality constraint instead of a cost
    weight: float
    accel_bounds: Bounds


@dataclass
class BodyMotionObjective:
    body_id: int
    params_index: int
    x_des: np.ndarray  # (6,) xyz + rpy
    xd_des: np.ndarray = field(default_factory=lambda: np.zeros(6))  # [angular; linear]
    xdd_des: np.ndarray = field(default_factory=lambda: np.zeros(6))


@dataclass
class JointPDOverride:
    position_index: int
    qi_des: float
    qdi_des: float
    kp: float
    kd: float
    weight: float


@dataclass
class ZMPData:
    """Time-varying LQR value function of the COM/ZMP model (x = [com_xy, comdot_xy], u = comddot_xy)."""

    A: np.ndarray  # (4,4)
    B: np.ndarray  # (4,2)
    C: np.ndarray  # (2,4)
    D: np.ndarray  # (2,2)
    x0: np.ndarray  # (4,)
    y0: np.ndarray  # (2,)
    u0: np.ndarray  # (2,)
    R: np.ndarray  # (2,2)
    Qy: np.ndarray  # (2,2)
    S: np.ndarray  # (4,4)
    s1: np.ndarray  # (4,)
    s1dot: np.ndarray = field(default_factory=lambda: np.zeros(4))
    s2dot: float = 0.0


@dataclass
class QPControllerInput:
    timestamp: float
    param_set_name: str
    q_des: np.ndarray
    support_data: list[SupportHint] = field(default_factory=list)
    body_motion_data: list[BodyMotionObjective] = field(default_factory=list)
    body_accelerations: list[DesiredBodyAcceleration] = field(default_factory=list)
    joint_pd_override: list[JointPDOverride] = field(default_factory=list)
    zmp_data: ZMPData | None = None
    desired_angular_momentum: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass
class QPControllerOutput:
    q_ref: np.ndarray
    qd_ref: np.ndarray
    qdd: np.ndarray
    u: np.ndarray
    # body_id -> (k, 3) contact forces, world frame
    forces: dict[int, np.ndarray] = field(default_factory=dict)

    def copy(self) -> "QPControllerOutput":
        return QPControllerOutput(
            q_ref=self.q_ref.copy(),
            qd_ref=self.qd_ref.copy(),
            qdd=self.qdd.copy(),
            u=self.u.copy(),
            forces={k: v.copy() for k, v in self.forces.items()},
        )


class FaultKind(enum.Enum):
    NONE = "none"
    INFEASIBLE_QP = "infeasible_qp"
    NON_FINITE_DYNAMICS = "non_finite_dynamics"


@dataclass
class TickStatus:
    fault: FaultKind = FaultKind.NONE
    held_output: bool = False
    cold_start: bool = True
    solver_status: str = ""
    iterations: int = 0
    solve_method: str = ""
    solve_time: float = 0.0
    consecutive_faults: int = 0
    escalated: bool = False
    active_supports: tuple[int, ...] = ()

    @property
    def ok(self) -> bool:
        return self.fault is FaultKind.NONE


@dataclass
class QPControllerDebugData:
    active_supports: list[SupportStateElement]
    nc: int
    normals: np.ndarray
    B: np.ndarray
    alpha: np.ndarray
    f: np.ndarray
    Aeq: np.ndarray
    beq: np.ndarray
    Ain_lb_ub: np.ndarray
    bin_lb_ub: np.ndarray
    Qnfdiag: np.ndarray
    Qneps: np.ndarray
    Hqp: np.ndarray
    fqp: np.ndarray
    qdd_lb: np.ndarray
    qdd_ub: np.ndarray
    x_bar: np.ndarray | None = None
    S: np.ndarray | None = None
    s1: np.ndarray | None = None
    s1dot: np.ndarray | None = None
    s2dot: float = 0.0
    A_ls: np.ndarray | None = None
    B_ls: np.ndarray | None = None
    Jcom: np.ndarray | None = None
    Jcomdot: np.ndarray | None = None
    beta: np.ndarray | None = None


@dataclass
class TickResult:
    output: QPControllerOutput
    status: TickStatus
    debug: QPControllerDebugData | None = None
