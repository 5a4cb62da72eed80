"""
Body pose objectives -> desired spatial body accelerations.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from ..errors import InvalidParameterSet
from ..model import BodyKinematics
from ..params import BodyMotionParams
from ..types import BodyMotionObjective, DesiredBodyAcceleration


def pose_error(x_des: np.ndarray, kin: BodyKinematics) -> np.ndarray:
    """[angular; linear] pose error in world frame. x_des is xyz + rpy (extrinsic xyz)."""
    x_des = np.asarray(x_des, dtype=float).reshape(6)
    R_des = Rotation.from_euler("xyz", x_des[3:6])
    R_cur = Rotation.from_matrix(np.asarray(kin.R, dtype=float))
    err = np.zeros(6, dtype=float)
    err[0:3] = (R_des * R_cur.inv()).as_rotvec()
    err[3:6] = x_des[0:3] - np.asarray(kin.pos, dtype=float).reshape(3)
    return err


def body_motion_pd(
    objective: BodyMotionObjective,
    kin: BodyKinematics,
    params: Sequence[BodyMotionParams],
) -> DesiredBodyAcceleration:
    try:
        bp = params[int(objective.params_index)]
    except IndexError:
        raise InvalidParameterSet(
            f"body motion objective for body {objective.body_id} references params_index "
            f"{objective.params_index}, but only {len(params)} body_motion blocks exist"
        ) from None

    err = pose_error(objective.x_des, kin)
    vel_err = np.asarray(objective.xd_des, dtype=float).reshape(6) - np.asarray(kin.twist, dtype=float).reshape(6)
    vdot = (
        np.asarray(bp.Kp, dtype=float) * err
        + np.asarray(bp.Kd, dtype=float) * vel_err
        + np.asarray(objective.xdd_des, dtype=float).reshape(6)
    )
    return DesiredBodyAcceleration(
        body_id=int(objective.body_id),
        body_vdot=vdot,
        weight=float(bp.weight),
        accel_bounds=bp.accel_bounds,
    )
