"""
Whole-body QP balance controller for legged robots.

The MuJoCo model evaluator lives in `wbqp.mujoco_model` and is imported on demand.
"""

from .controllers import QPController, QPControllerConfig
from .debug_channel import DebugSnapshotChannel
from .errors import InfeasibleQP, InvalidParameterSet, ModelError, NonFiniteDynamics, QPControllerError
from .model import BodyKinematics, DynamicsTerms, ModelEvaluator, PointJacobians
from .params import ParamSets, default_param_sets, load_param_sets
from .robot import RobotPropertyCache
from .state import ControllerState, WarmStartBasis
from .types import (
    BodyMotionObjective,
    DesiredBodyAcceleration,
    FaultKind,
    JointPDOverride,
    QPControllerInput,
    QPControllerOutput,
    SupportHint,
    TickResult,
    TickStatus,
    ZMPData,
)

__version__ = "0.1.0"

__all__ = [
    "QPController",
    "QPControllerConfig",
    "DebugSnapshotChannel",
    "QPControllerError",
    "ModelError",
    "InvalidParameterSet",
    "InfeasibleQP",
    "NonFiniteDynamics",
    "BodyKinematics",
    "DynamicsTerms",
    "ModelEvaluator",
    "PointJacobians",
    "ParamSets",
    "default_param_sets",
    "load_param_sets",
    "RobotPropertyCache",
    "ControllerState",
    "WarmStartBasis",
    "BodyMotionObjective",
    "DesiredBodyAcceleration",
    "FaultKind",
    "JointPDOverride",
    "QPControllerInput",
    "QPControllerOutput",
    "SupportHint",
    "TickResult",
    "TickStatus",
    "ZMPData",
]
