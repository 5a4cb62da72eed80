import numpy as np
import pytest

from conftest import L_FOOT, R_FOOT, PointMassModel, make_rpc
from wbqp.controllers.supports import (
    contact_basis,
    foot_contact_flags,
    friction_basis,
    resolve_supports,
    support_topology,
)
from wbqp.types import SupportHint


def _hint(body_id, **kw):
    return SupportHint(body_id=body_id, contact_pts=np.zeros((2, 3)), **kw)


def test_active_when_force_exceeds_threshold():
    hints = [_hint(L_FOOT, force_estimate=0.5), _hint(R_FOOT, force_estimate=0.001)]
    active = resolve_supports(hints, contact_threshold=0.002)

    assert [s.body_id for s in active] == [L_FOOT]
    assert active[0].loaded
    assert active[0].num_points == 2


def test_forced_active_without_load():
    active = resolve_supports([_hint(R_FOOT, force_active=True)], contact_threshold=0.002)

    assert [s.body_id for s in active] == [R_FOOT]
    assert not active[0].loaded


def test_sensed_force_overrides_estimate():
    hints = [_hint(L_FOOT, force_estimate=100.0), _hint(R_FOOT)]
    active = resolve_supports(hints, 1.0, contact_force={L_FOOT: 0.0, R_FOOT: 50.0})

    assert [s.body_id for s in active] == [R_FOOT]


def test_order_preserved_and_deterministic():
    hints = [_hint(R_FOOT, force_active=True), _hint(L_FOOT, force_active=True)]
    a = resolve_supports(hints, 0.0)
    b = resolve_supports(hints, 0.0)

    assert [s.body_id for s in a] == [R_FOOT, L_FOOT]
    assert support_topology(a) == support_topology(b) == ((R_FOOT, 2), (L_FOOT, 2))


def test_default_and_explicit_normals():
    hints = [_hint(L_FOOT, force_active=True), _hint(R_FOOT, force_active=True, normal=np.array([0.0, 0.0, 2.0]))]
    active = resolve_supports(hints, 0.0, default_normal=(0.0, 1.0, 0.0))

    np.testing.assert_allclose(active[0].normal, [0.0, 1.0, 0.0])
    np.testing.assert_allclose(active[1].normal, [0.0, 0.0, 1.0])


def test_zero_normal_rejected():
    with pytest.raises(ValueError):
        resolve_supports([_hint(L_FOOT, force_active=True, normal=np.zeros(3))], 0.0)


def test_foot_contact_flags():
    rpc = make_rpc()
    active = resolve_supports([_hint(R_FOOT, force_active=True)], 0.0)

    assert foot_contact_flags(rpc, active) == (False, True)
    assert foot_contact_flags(rpc, active, contact_force={L_FOOT: 10.0, R_FOOT: 0.0}, contact_threshold=1.0) == (
        True,
        False,
    )


@pytest.mark.parametrize("normal", [[0.0, 0.0, 1.0], [0.3, -0.2, 0.9]])
def test_friction_basis_edges_lie_on_the_cone(normal):
    mu = 0.6
    n = np.asarray(normal) / np.linalg.norm(normal)
    B = friction_basis(n, mu, nd=4)

    assert B.shape == (3, 4)
    np.testing.assert_allclose(np.linalg.norm(B, axis=0), 1.0)
    # every edge makes the same angle atan(mu) with the normal
    np.testing.assert_allclose(n @ B, 1.0 / np.sqrt(1.0 + mu * mu))
    # non-negative combinations stay inside the cone
    f = B @ np.array([1.0, 0.0, 3.0, 0.5])
    fn = n @ f
    ft = np.linalg.norm(f - fn * n)
    assert fn > 0.0
    assert ft <= mu * fn + 1e-12


def test_contact_basis_blocks():
    model = PointMassModel()
    active = resolve_supports([_hint(L_FOOT, force_active=True), _hint(R_FOOT, force_active=True)], 0.0)
    dyn = model.evaluate(np.zeros(7), np.zeros(7), {s.body_id: s.contact_pts for s in active}, [])
    cb = contact_basis(active, dyn, nd=4)

    assert cb.npts == 4
    assert cb.nf == 16
    assert cb.B.shape == (12, 16)
    assert cb.Jp.shape == (12, 7)
    # block diagonal: point 0 forces only use the first 4 betas
    np.testing.assert_array_equal(cb.B[0:3, 4:], 0.0)
    assert [body for body, _ in cb.point_slices] == [L_FOOT, R_FOOT]
    assert cb.point_slices[1][1] == slice(6, 12)
    assert np.all(np.isinf(cb.fz_max))
