from dataclasses import replace

import numpy as np
import pytest

from conftest import GRAVITY, L_FOOT, MASS, PELVIS, R_FOOT, PointMassModel, foot_hint, make_input
from wbqp.controllers.qp_formulation import build_qp
from wbqp.controllers.qp_solver import QPSolverDriver, SolverSettings
from wbqp.controllers.supports import resolve_supports
from wbqp.params import Bounds, ParamSets, params_from_dict
from wbqp.types import DesiredBodyAcceleration, FaultKind, QPControllerInput, ZMPData

NV = 7
# two single-point feet: 8 pyramid weights, then 6 slack entries
IDX_EPS = slice(NV + 8, NV + 8 + 6)


def _with_sets(ctl, rpc, param_sets, **extra):
    ctl.param_sets = ParamSets({**dict(param_sets.items()), **extra}, rpc.num_velocities)


def _build(rpc, params, q, qd, supports=(), k_des=None, zmp=None, dyn_hook=None):
    model = PointMassModel()
    active = resolve_supports([foot_hint(b) for b in supports], 0.0)
    dyn = model.evaluate(q, qd, {s.body_id: s.contact_pts for s in active}, [])
    if dyn_hook is not None:
        dyn_hook(dyn)
    return build_qp(
        dynamics=dyn,
        rpc=rpc,
        params=params,
        whole_body=params.whole_body,
        q=q,
        qd=qd,
        qddot_des=np.zeros(NV),
        supports=active,
        body_accelerations=[],
        umin=-50.0 * np.ones(rpc.num_actuators),
        umax=50.0 * np.ones(rpc.num_actuators),
        zmp_data=zmp,
        k_des=k_des,
    )


def test_slack_absorbs_contact_drift(make_controller, rpc, param_sets):
    # Kp_accel * qd_x = 150 needs qdd_x = -150 at the feet, beyond the +/-100 bound
    ctl = make_controller()
    base = param_sets.get_set("standing")
    _with_sets(
        ctl,
        rpc,
        param_sets,
        big=params_from_dict({"Kp_accel": 1.0, "slack_limit": 1000.0}, base),
        small=params_from_dict({"Kp_accel": 1.0, "slack_limit": 1.0}, base),
    )
    q = np.zeros(NV)
    qd = np.zeros(NV)
    qd[0] = 150.0

    res = ctl.tick(make_input(0.0, param_set="big"), q, qd, debug=True)
    assert res.status.ok
    eps = res.debug.alpha[IDX_EPS].reshape(2, 3)
    assert np.all(eps[:, 0] <= -50.0 + 1e-2)
    assert np.all(np.abs(eps) <= 1000.0 + 1e-3)
    assert np.all(np.abs(res.output.qdd) <= 100.0 + 1e-3)

    res = ctl.tick(make_input(0.002, param_set="small"), q, qd)
    assert res.status.fault is FaultKind.INFEASIBLE_QP


def test_slack_bounds_follow_slack_limit(rpc, param_sets):
    params = params_from_dict({"slack_limit": 7.5}, param_sets.get_set("standing"))
    problem = _build(rpc, params, np.zeros(NV), np.zeros(NV), supports=(L_FOOT, R_FOOT))

    np.testing.assert_array_equal(problem.lb[problem.idx_eps], -7.5)
    np.testing.assert_array_equal(problem.ub[problem.idx_eps], 7.5)
    assert problem.idx_eps == IDX_EPS


def test_angular_momentum_rate_tracks_desired(rpc, param_sets):
    # joints 3..5 carry the angular momentum about x, y, z
    def spin(dyn):
        dyn.Ag[0:3, 3:6] = np.eye(3)

    base = param_sets.get_set("standing")
    params = replace(base, W_kdot=0.9 * np.eye(3), Kp_ang=2.0)
    qd = np.zeros(NV)
    qd[3] = 0.5
    problem = _build(rpc, params, np.zeros(NV), qd, k_des=np.array([1.0, 0.0, 0.0]), dyn_hook=spin)

    sol = QPSolverDriver(SolverSettings(eps_abs=1e-9, eps_rel=1e-9)).solve(problem, None, ())
    # 0.1 * qdd^2 + 0.9 * (qdd - Kp_ang * (k_des - k))^2
    kdot_des = 2.0 * (1.0 - 0.5)
    assert sol.x[3] == pytest.approx(0.9 * kdot_des / (0.1 + 0.9), abs=1e-4)
    assert sol.x[4] == pytest.approx(0.0, abs=1e-4)

    # no weight, no pull
    off = _build(rpc, base, np.zeros(NV), qd, k_des=np.array([1.0, 0.0, 0.0]), dyn_hook=spin)
    assert QPSolverDriver().solve(off, None, ()).x[3] == pytest.approx(0.0, abs=1e-4)


def _zmp(s1x=2.0, r=1.0):
    B = np.zeros((4, 2))
    B[2:4] = np.eye(2)
    return ZMPData(
        A=np.eye(4),
        B=B,
        C=np.zeros((2, 4)),
        D=np.zeros((2, 2)),
        x0=np.zeros(4),
        y0=np.zeros(2),
        u0=np.zeros(2),
        R=r * np.eye(2),
        Qy=np.zeros((2, 2)),
        S=np.zeros((4, 4)),
        s1=np.array([0.0, 0.0, s1x, 0.0]),
    )


def test_zmp_cost_terms(rpc, param_sets):
    params = param_sets.get_set("standing")
    q = np.zeros(NV)
    qd = np.zeros(NV)
    plain = _build(rpc, params, q, qd, supports=(L_FOOT,))
    with_zmp = _build(rpc, params, q, qd, supports=(L_FOOT,), zmp=_zmp(s1x=2.0, r=1.0))

    dP = with_zmp.P - plain.P
    dq = with_zmp.q - plain.q
    # u = comddot_xy = qdd[0:2]; cost u^T R u + 2 (0.5 B^T s1)^T u
    np.testing.assert_allclose(dP[0:2, 0:2], 2.0 * np.eye(2), atol=1e-12)
    np.testing.assert_allclose(dq[0:2], [2.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(dP[2:, :], 0.0, atol=1e-12)


def test_zmp_data_shifts_com_and_fills_debug(make_controller):
    ctl = make_controller()
    q = np.zeros(NV)
    q[0] = 0.3
    qd = np.zeros(NV)
    qd[1] = 0.2

    plain = ctl.tick(make_input(0.0, supports=(L_FOOT,)), q, qd)
    res = ctl.tick(make_input(0.002, supports=(L_FOOT,), zmp_data=_zmp()), q, qd, debug=True)

    assert res.status.ok
    # positive s1 on comdot_x pushes the COM acceleration backwards
    assert res.output.qdd[0] < plain.output.qdd[0] - 0.5
    dbg = res.debug
    np.testing.assert_allclose(dbg.x_bar, [0.3, 0.0, 0.0, 0.2])
    np.testing.assert_array_equal(dbg.S, np.zeros((4, 4)))
    np.testing.assert_array_equal(dbg.s1, [0.0, 0.0, 2.0, 0.0])
    assert dbg.B_ls.shape == (4, 2)


def test_negative_weight_body_acceleration_is_hard(make_controller):
    q = np.zeros(NV)
    qd = np.zeros(NV)

    def task(weight):
        return DesiredBodyAcceleration(
            body_id=PELVIS,
            body_vdot=np.array([0.0, 0.0, 0.0, 2.0, 0.0, 0.0]),
            weight=weight,
            accel_bounds=Bounds(min=np.full(6, -np.inf), max=np.full(6, np.inf)),
        )

    soft = make_controller().tick(make_input(0.0, body_accelerations=[task(1e-6)]), q, qd, debug=True)
    hard = make_controller().tick(make_input(0.0, body_accelerations=[task(-1.0)]), q, qd, debug=True)

    assert soft.status.ok and hard.status.ok
    assert abs(soft.output.qdd[0]) < 0.1
    assert hard.output.qdd[0] == pytest.approx(2.0, abs=1e-4)
    assert hard.debug.Aeq.shape[0] == soft.debug.Aeq.shape[0] + 6


def test_normal_force_cap_shifts_load(make_controller):
    ctl = make_controller()
    q = np.zeros(NV)
    qp_input = QPControllerInput(
        timestamp=0.0,
        param_set_name="standing",
        q_des=np.zeros(NV),
        support_data=[foot_hint(L_FOOT, fz_max=20.0), foot_hint(R_FOOT)],
    )
    res = ctl.tick(qp_input, q, q)

    assert res.status.ok
    fz_l = res.output.forces[L_FOOT][0, 2]
    fz_r = res.output.forces[R_FOOT][0, 2]
    assert fz_l <= 20.0 + 1e-3
    assert fz_l == pytest.approx(20.0, rel=1e-2)
    assert fz_r == pytest.approx(MASS * GRAVITY - 20.0, rel=1e-2)
