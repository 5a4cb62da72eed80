"""
Named parameter sets ("standing", "walking", ...) for the whole-body QP controller.

A parameter set bundles the whole-body PID gains, per-body-motion gains, the
momentum / slack / contact-force weights and the contact detection threshold.
Sets are selected by name once per tick and are never mutated during a run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass, replace
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import numpy as np

from .errors import InvalidParameterSet
from .robot import RobotPropertyCache


@dataclass
class Bounds:
    min: np.ndarray
    max: np.ndarray


@dataclass
class IntegratorParams:
    gains: np.ndarray
    clamps: np.ndarray
    eta: float = 0.0


@dataclass
class VRefIntegratorParams:
    zero_ankles_on_contact: bool = True
    eta: float = 0.001
    # Max |qd_ref - qd| per DOF; inf leaves the reference unclamped.
    delta_max: float = float("inf")


@dataclass
class WholeBodyParams:
    Kp: np.ndarray
    Kd: np.ndarray
    w_qdd: np.ndarray
    integrator: IntegratorParams
    qdd_bounds: Bounds
    damping_ratio: float = 0.5


@dataclass
class BodyMotionParams:
    # 6-vectors, spatial order [angular; linear]
    Kp: np.ndarray
    Kd: np.ndarray
    accel_bounds: Bounds
    weight: float = 1.0


@dataclass
class ControllerParams:
    whole_body: WholeBodyParams
    body_motion: list[BodyMotionParams] = field(default_factory=list)
    vref_integrator: VRefIntegratorParams = field(default_factory=VRefIntegratorParams)
    W_kdot: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    Kp_ang: float = 0.0
    w_slack: float = 0.05
    slack_limit: float = 30.0
    w_grf: float = 0.0
    Kp_accel: float = 0.0
    contact_threshold: float = 0.002
    min_knee_angle: float = 0.0

    def validate(self, num_velocities: int, name: str = "<unnamed>") -> "ControllerParams":
        nv = int(num_velocities)
        wb = self.whole_body

        def _vec(label: str, v: Any, n: int) -> None:
            arr = np.asarray(v, dtype=float)
            if arr.shape != (n,):
                raise InvalidParameterSet(f"param set {name!r}: {label} must have shape ({n},), got {arr.shape}")
            if np.any(np.isnan(arr)):
                raise InvalidParameterSet(f"param set {name!r}: {label} contains NaN")

        _vec("whole_body.Kp", wb.Kp, nv)
        _vec("whole_body.Kd", wb.Kd, nv)
        _vec("whole_body.w_qdd", wb.w_qdd, nv)
        _vec("whole_body.integrator.gains", wb.integrator.gains, nv)
        _vec("whole_body.integrator.clamps", wb.integrator.clamps, nv)
        _vec("whole_body.qdd_bounds.min", wb.qdd_bounds.min, nv)
        _vec("whole_body.qdd_bounds.max", wb.qdd_bounds.max, nv)
        if np.any(np.asarray(wb.w_qdd, dtype=float) < 0.0):
            raise InvalidParameterSet(f"param set {name!r}: whole_body.w_qdd must be >= 0")
        if np.any(np.asarray(wb.qdd_bounds.min, dtype=float) > np.asarray(wb.qdd_bounds.max, dtype=float)):
            raise InvalidParameterSet(f"param set {name!r}: whole_body.qdd_bounds.min > max")
        for i, bm in enumerate(self.body_motion):
            _vec(f"body_motion[{i}].Kp", bm.Kp, 6)
            _vec(f"body_motion[{i}].Kd", bm.Kd, 6)
            _vec(f"body_motion[{i}].accel_bounds.min", bm.accel_bounds.min, 6)
            _vec(f"body_motion[{i}].accel_bounds.max", bm.accel_bounds.max, 6)
        if np.asarray(self.W_kdot, dtype=float).shape != (3, 3):
            raise InvalidParameterSet(f"param set {name!r}: W_kdot must be 3x3")
        for label in ("w_slack", "slack_limit", "w_grf", "contact_threshold"):
            if float(getattr(self, label)) < 0.0:
                raise InvalidParameterSet(f"param set {name!r}: {label} must be >= 0")
        return self


class ParamSets(Mapping[str, ControllerParams]):
    """Immutable name -> ControllerParams lookup."""

    def __init__(self, sets: Mapping[str, ControllerParams], num_velocities: int):
        checked = {str(k): v.validate(num_velocities, str(k)) for k, v in sets.items()}
        if not checked:
            raise InvalidParameterSet("at least one parameter set is required")
        self._sets = MappingProxyType(checked)
        self.num_velocities = int(num_velocities)

    def __getitem__(self, name: str) -> ControllerParams:
        return self.get_set(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._sets)

    def __len__(self) -> int:
        return len(self._sets)

    def get_set(self, name: str) -> ControllerParams:
        try:
            return self._sets[name]
        except KeyError:
            raise InvalidParameterSet(
                f"unknown parameter set {name!r} (available: {sorted(self._sets)})"
            ) from None


def _full(nv: int, value: float) -> np.ndarray:
    return np.full(nv, float(value), dtype=float)


def _default_body_motion() -> BodyMotionParams:
    return BodyMotionParams(
        Kp=np.full(6, 150.0),
        Kd=np.full(6, 2.0 * np.sqrt(150.0) * 0.7),
        accel_bounds=Bounds(min=np.full(6, -100.0), max=np.full(6, 100.0)),
        weight=0.1,
    )


def default_param_sets(rpc: RobotPropertyCache) -> ParamSets:
    """Standing / walking / manip / recovery bundles sized for `rpc`."""
    nv = rpc.num_velocities
    act = rpc.actuated_indices
    pi = rpc.position_indices

    Kp = np.zeros(nv)
    Kp[act] = 20.0
    Kd = 2.0 * np.sqrt(Kp) * 0.5
    w_qdd = _full(nv, 1e-3)
    w_qdd[act] = 1e-1

    standing = ControllerParams(
        whole_body=WholeBodyParams(
            Kp=Kp,
            Kd=Kd,
            w_qdd=w_qdd,
            integrator=IntegratorParams(gains=np.zeros(nv), clamps=np.zeros(nv), eta=0.0),
            qdd_bounds=Bounds(min=_full(nv, -100.0), max=_full(nv, 100.0)),
            damping_ratio=0.5,
        ),
        body_motion=[_default_body_motion()],
        vref_integrator=VRefIntegratorParams(zero_ankles_on_contact=False, eta=0.001),
        W_kdot=np.zeros((3, 3)),
        Kp_ang=1.0,
        w_slack=0.05,
        slack_limit=30.0,
        w_grf=0.0,
        Kp_accel=1.0,
        contact_threshold=0.002,
        min_knee_angle=0.7,
    )

    # Walking: legs are driven by body motion tasks, not the posture PID.
    walk_Kp = standing.whole_body.Kp.copy()
    walk_w = standing.whole_body.w_qdd.copy()
    legs = np.concatenate([pi.l_leg, pi.r_leg]).astype(int)
    walk_Kp[legs] = 0.0
    walk_w[legs] = 1e-4
    walking = replace(
        standing,
        whole_body=replace(
            standing.whole_body,
            Kp=walk_Kp,
            Kd=2.0 * np.sqrt(walk_Kp) * 0.5,
            w_qdd=walk_w,
        ),
        vref_integrator=VRefIntegratorParams(zero_ankles_on_contact=True, eta=0.001),
        min_knee_angle=0.7,
    )

    manip = replace(
        standing,
        body_motion=[replace(_default_body_motion(), weight=0.5)],
        W_kdot=np.eye(3) * 1e-3,
    )

    recovery = replace(
        standing,
        body_motion=[replace(_default_body_motion(), weight=1.0)],
        w_slack=1.0,
        Kp_accel=0.0,
    )

    return ParamSets(
        {"standing": standing, "walking": walking, "manip": manip, "recovery": recovery},
        nv,
    )


def _override(obj: Any, overrides: Mapping[str, Any], path: str) -> Any:
    if not is_dataclass(obj):
        raise InvalidParameterSet(f"{path} is not a parameter block")
    known = {f.name: f for f in fields(obj)}
    changes: dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise InvalidParameterSet(f"unknown parameter {path}.{key}")
        cur = getattr(obj, key)
        if is_dataclass(cur) and isinstance(value, Mapping):
            changes[key] = _override(cur, value, f"{path}.{key}")
        elif key == "body_motion":
            blocks = []
            for i, item in enumerate(value):
                base = cur[i] if i < len(cur) else _default_body_motion()
                blocks.append(_override(base, item, f"{path}.body_motion[{i}]"))
            changes[key] = blocks
        elif isinstance(cur, np.ndarray):
            arr = np.asarray(value, dtype=float)
            changes[key] = np.full(cur.shape, float(arr)) if arr.ndim == 0 else arr
        elif isinstance(cur, bool):
            changes[key] = bool(value)
        else:
            changes[key] = float(value)
    return replace(obj, **changes)


def params_from_dict(overrides: Mapping[str, Any], base: ControllerParams) -> ControllerParams:
    """
    Return a copy of `base` with nested overrides applied.

    Keys mirror the dataclass fields. Scalars given for array fields are broadcast.
    """
    return _override(base, overrides, "params")


def load_param_sets(path: str, rpc: RobotPropertyCache) -> ParamSets:
    """
    Load parameter sets from a JSON file of the form
    ``{"standing": {...overrides...}, "my_set": {"base": "walking", ...}}``.

    Every entry starts from the default set of the same name (or from ``base``).
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise InvalidParameterSet(f"{path}: top level must be an object")
    defaults = default_param_sets(rpc)
    sets = dict(defaults.items())
    for name, overrides in raw.items():
        overrides = dict(overrides)
        base_name = str(overrides.pop("base", name if name in defaults else "standing"))
        sets[name] = params_from_dict(overrides, defaults.get_set(base_name))
    return ParamSets(sets, rpc.num_velocities)
