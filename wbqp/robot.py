"""
Static robot indices shared read-only by every control tick.

All indices live in velocity space (the controller uses the `nq == nv`
convention: a floating base is `[xyz, rpy]`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .errors import ModelError


def _index_array(values: Sequence[int] | np.ndarray, name: str, nv: int) -> np.ndarray:
    arr = np.asarray(values, dtype=int).reshape(-1).copy()
    if arr.size and (int(arr.min()) < 0 or int(arr.max()) >= nv):
        raise ModelError(f"{name} index out of range [0, {nv}): {arr.tolist()}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class PositionIndicesCache:
    l_leg: np.ndarray
    r_leg: np.ndarray
    l_leg_kny: np.ndarray
    r_leg_kny: np.ndarray
    l_leg_ak: np.ndarray
    r_leg_ak: np.ndarray


@dataclass(frozen=True)
class BodyIdsCache:
    l_foot: int
    r_foot: int
    pelvis: int


@dataclass(frozen=True)
class RobotPropertyCache:
    num_velocities: int
    position_indices: PositionIndicesCache
    body_ids: BodyIdsCache
    actuated_indices: np.ndarray
    unactuated_indices: np.ndarray = field(init=False)

    def __post_init__(self):
        mask = np.ones(self.num_velocities, dtype=bool)
        mask[self.actuated_indices] = False
        unact = np.flatnonzero(mask)
        unact.setflags(write=False)
        object.__setattr__(self, "unactuated_indices", unact)

    @classmethod
    def build(
        cls,
        *,
        num_velocities: int,
        actuated_indices: Sequence[int],
        l_foot: int,
        r_foot: int,
        pelvis: int,
        l_leg: Sequence[int] = (),
        r_leg: Sequence[int] = (),
        l_leg_kny: Sequence[int] = (),
        r_leg_kny: Sequence[int] = (),
        l_leg_ak: Sequence[int] = (),
        r_leg_ak: Sequence[int] = (),
    ) -> "RobotPropertyCache":
        nv = int(num_velocities)
        if nv <= 0:
            raise ModelError(f"num_velocities must be positive, got {nv}")
        act = _index_array(actuated_indices, "actuated_indices", nv)
        if len(set(act.tolist())) != act.size:
            raise ModelError(f"actuated_indices has duplicates: {act.tolist()}")
        pos = PositionIndicesCache(
            l_leg=_index_array(l_leg, "l_leg", nv),
            r_leg=_index_array(r_leg, "r_leg", nv),
            l_leg_kny=_index_array(l_leg_kny, "l_leg_kny", nv),
            r_leg_kny=_index_array(r_leg_kny, "r_leg_kny", nv),
            l_leg_ak=_index_array(l_leg_ak, "l_leg_ak", nv),
            r_leg_ak=_index_array(r_leg_ak, "r_leg_ak", nv),
        )
        bodies = BodyIdsCache(l_foot=int(l_foot), r_foot=int(r_foot), pelvis=int(pelvis))
        return cls(num_velocities=nv, position_indices=pos, body_ids=bodies, actuated_indices=act)

    @property
    def num_actuators(self) -> int:
        return int(self.actuated_indices.size)

    @property
    def foot_body_ids(self) -> tuple[int, int]:
        """(left, right), the order used by every contact-flag pair."""
        return (self.body_ids.l_foot, self.body_ids.r_foot)

    @property
    def knee_indices(self) -> np.ndarray:
        return np.concatenate([self.position_indices.l_leg_kny, self.position_indices.r_leg_kny])
