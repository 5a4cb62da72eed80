"""
Support (contact) resolution and the linearized friction cone.

Each contact point force is parameterized by non-negative weights beta on `nd`
unit edge vectors of a friction pyramid:

    f = B_i beta_i,  B_i[:, k] = normalize(n + mu * t_k),  beta_i >= 0

so any beta >= 0 gives a force inside the pyramid with a non-negative normal
component.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from ..model import DynamicsTerms
from ..robot import RobotPropertyCache
from ..types import SupportHint, SupportStateElement


def resolve_supports(
    hints: Sequence[SupportHint],
    contact_threshold: float,
    contact_force: Mapping[int, float] | None = None,
    default_normal: Sequence[float] = (0.0, 0.0, 1.0),
) -> list[SupportStateElement]:
    """
    Active supports: measured / estimated normal force above threshold, or forced
    active by the caller (planned stance). Order of `hints` is preserved.
    """
    thr = float(contact_threshold)
    n_default = np.asarray(default_normal, dtype=float).reshape(3)
    active: list[SupportStateElement] = []
    for h in hints:
        force = None
        if contact_force is not None and int(h.body_id) in contact_force:
            force = contact_force[int(h.body_id)]
        elif h.force_estimate is not None:
            force = h.force_estimate
        loaded = force is not None and float(force) > thr
        if not (loaded or bool(h.force_active)):
            continue
        pts = np.asarray(h.contact_pts, dtype=float).reshape(-1, 3)
        if pts.shape[0] == 0:
            continue
        n = n_default if h.normal is None else np.asarray(h.normal, dtype=float).reshape(3)
        nn = float(np.linalg.norm(n))
        if nn < 1e-12:
            raise ValueError(f"support on body {h.body_id} has a zero contact normal")
        n = n / nn
        active.append(
            SupportStateElement(
                body_id=int(h.body_id),
                contact_pts=pts,
                normal=n,
                mu=float(h.mu),
                fz_max=None if h.fz_max is None else float(h.fz_max),
                loaded=bool(loaded),
            )
        )
    return active


def foot_contact_flags(
    rpc: RobotPropertyCache,
    supports: Sequence[SupportStateElement] = (),
    contact_force: Mapping[int, float] | None = None,
    contact_threshold: float = 0.0,
) -> tuple[bool, bool]:
    """(left, right) foot contact. Sensed force wins over the support list when provided."""
    flags = []
    for body in rpc.foot_body_ids:
        if contact_force is not None and body in contact_force:
            flags.append(float(contact_force[body]) > float(contact_threshold))
        else:
            flags.append(any(s.body_id == body for s in supports))
    return (flags[0], flags[1])


def support_topology(supports: Sequence[SupportStateElement]) -> tuple:
    return tuple((s.body_id, s.num_points) for s in supports)


def _tangents(n: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # pick the world axis least aligned with n
    a = np.eye(3)[int(np.argmin(np.abs(n)))]
    t1 = np.cross(n, a)
    t1 /= np.linalg.norm(t1)
    t2 = np.cross(n, t1)
    return t1, t2


def friction_basis(normal: np.ndarray, mu: float, nd: int = 4) -> np.ndarray:
    """3 x nd matrix of unit edge vectors of the friction pyramid around `normal`."""
    n = np.asarray(normal, dtype=float).reshape(3)
    n = n / np.linalg.norm(n)
    t1, t2 = _tangents(n)
    B = np.zeros((3, int(nd)), dtype=float)
    for k in range(int(nd)):
        th = 2.0 * np.pi * k / float(nd)
        d = n + float(mu) * (np.cos(th) * t1 + np.sin(th) * t2)
        B[:, k] = d / np.linalg.norm(d)
    return B


@dataclass
class ContactBasis:
    B: np.ndarray  # (3*npts, nf) block diagonal
    normals: np.ndarray  # (npts, 3)
    Jp: np.ndarray  # (3*npts, nv)
    Jpdot_v: np.ndarray  # (3*npts,)
    fz_max: np.ndarray  # (npts,), inf where uncapped
    point_slices: list[tuple[int, slice]]  # (body_id, rows of that body's points in 3*npts)

    @property
    def npts(self) -> int:
        return int(self.normals.shape[0])

    @property
    def nf(self) -> int:
        return int(self.B.shape[1])


def contact_basis(
    supports: Sequence[SupportStateElement],
    dynamics: DynamicsTerms,
    nd: int = 4,
) -> ContactBasis:
    nv = int(dynamics.H.shape[0])
    npts = sum(s.num_points for s in supports)
    B = np.zeros((3 * npts, nd * npts), dtype=float)
    normals = np.zeros((npts, 3), dtype=float)
    Jp = np.zeros((3 * npts, nv), dtype=float)
    Jpdot_v = np.zeros(3 * npts, dtype=float)
    fz_max = np.full(npts, np.inf, dtype=float)
    slices: list[tuple[int, slice]] = []

    p = 0
    for s in supports:
        pj = dynamics.contacts[s.body_id]
        k = s.num_points
        r0 = 3 * p
        Jp[r0:r0 + 3 * k] = pj.J
        Jpdot_v[r0:r0 + 3 * k] = pj.Jdot_v
        Bi = friction_basis(s.normal, s.mu, nd)
        for j in range(k):
            B[r0 + 3 * j:r0 + 3 * j + 3, nd * (p + j):nd * (p + j + 1)] = Bi
            normals[p + j] = s.normal
            if s.fz_max is not None:
                fz_max[p + j] = float(s.fz_max)
        slices.append((s.body_id, slice(r0, r0 + 3 * k)))
        p += k
    return ContactBasis(B=B, normals=normals, Jp=Jp, Jpdot_v=Jpdot_v, fz_max=fz_max, point_slices=slices)
