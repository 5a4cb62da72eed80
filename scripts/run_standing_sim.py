#!/usr/bin/env python3
"""
MuJoCo standing-balance simulation driven by the whole-body QP controller.

The controller holds the initial posture (and the pelvis pose) with both feet
as planned supports; contact force per foot comes from MuJoCo's contact solver.
"""

import argparse
import logging
import time

import mujoco
import numpy as np

from wbqp import (
    BodyMotionObjective,
    QPController,
    QPControllerConfig,
    QPControllerInput,
    SupportHint,
    default_param_sets,
    load_param_sets,
)
from wbqp.mujoco_model import MujocoModelEvaluator, property_cache


def _foot_contact_forces(model: mujoco.MjModel, data: mujoco.MjData, bodies: tuple[int, ...]) -> dict[int, float]:
    out = {b: 0.0 for b in bodies}
    f6 = np.zeros(6)
    for i in range(int(data.ncon)):
        c = data.contact[i]
        b1 = int(model.geom_bodyid[c.geom1])
        b2 = int(model.geom_bodyid[c.geom2])
        for b in (b1, b2):
            if b in out:
                mujoco.mj_contactForce(model, data, i, f6)
                # normal component in the contact frame
                out[b] += abs(float(f6[0]))
    return out


def main() -> None:
    ap = argparse.ArgumentParser(
        description="Whole-body QP standing balance in MuJoCo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 scripts/run_standing_sim.py robot.xml --l-foot l_foot --r-foot r_foot --pelvis pelvis

  # Fast (equality-only) solve when latency is tight
  python3 scripts/run_standing_sim.py robot.xml --l-foot l_foot --r-foot r_foot --pelvis pelvis --solve-policy auto
        """,
    )
    ap.add_argument("xml", type=str, help="MJCF model path (free-floating base, joint actuators)")
    ap.add_argument("--duration", type=float, default=5.0, help="Simulated time (s). Default: 5.0")
    ap.add_argument("--param-set", type=str, default="standing", help="Parameter set name. Default: standing")
    ap.add_argument("--params-json", type=str, default=None, help="Optional JSON file with parameter set overrides")
    ap.add_argument("--solve-policy", type=str, default="exact", choices=["exact", "fast", "auto"])
    ap.add_argument("--l-foot", type=str, required=True, help="Left foot body name")
    ap.add_argument("--r-foot", type=str, required=True, help="Right foot body name")
    ap.add_argument("--pelvis", type=str, required=True, help="Pelvis body name")
    ap.add_argument("--l-knee", type=str, nargs="*", default=[], help="Left knee joint name(s)")
    ap.add_argument("--r-knee", type=str, nargs="*", default=[], help="Right knee joint name(s)")
    ap.add_argument("--mu", type=float, default=0.8, help="Friction coefficient used by the controller. Default: 0.8")
    ap.add_argument("--tau-max", type=float, default=200.0, help="Symmetric actuator limit (Nm). Default: 200")
    ap.add_argument("--print-hz", type=float, default=2.0, help="Status print rate (Hz). 0 prints every tick.")
    ap.add_argument("--verbose", action="store_true", help="Enable DEBUG logging from wbqp")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format="%(message)s")

    model = mujoco.MjModel.from_xml_path(args.xml)
    data = mujoco.MjData(model)
    mujoco.mj_forward(model, data)

    ev = MujocoModelEvaluator(model)
    rpc = property_cache(
        ev,
        l_foot=args.l_foot,
        r_foot=args.r_foot,
        pelvis=args.pelvis,
        l_knee=args.l_knee,
        r_knee=args.r_knee,
    )
    if args.params_json:
        param_sets = load_param_sets(args.params_json, rpc)
    else:
        param_sets = default_param_sets(rpc)

    cfg = QPControllerConfig(solve_policy=args.solve_policy, tick_period=float(model.opt.timestep))
    nu = rpc.num_actuators
    ctl = QPController(
        ev,
        rpc,
        param_sets,
        umin=-args.tau_max * np.ones(nu),
        umax=args.tau_max * np.ones(nu),
        config=cfg,
    )

    q0 = ev.qpos_to_q(data.qpos)
    pelvis_id = rpc.body_ids.pelvis
    x_pelvis = np.concatenate([data.xpos[pelvis_id], q0[3:6]])
    feet = rpc.foot_body_ids

    print("=" * 70)
    print("WBQP STANDING SIM (MuJoCo)")
    print(f"[run_standing_sim] model: {args.xml} (nv={ev.num_velocities}, nu={nu})")
    print(f"[run_standing_sim] param set: {args.param_set}, solve policy: {args.solve_policy}")
    print(f"[run_standing_sim] dt: {model.opt.timestep}, duration: {args.duration}s")
    print("=" * 70)

    print_dt = 0.0 if args.print_hz <= 0 else 1.0 / float(args.print_hz)
    last_print = -np.inf
    n_faults = 0
    wall0 = time.perf_counter()
    while data.time < float(args.duration):
        q = ev.qpos_to_q(data.qpos)
        qd = data.qvel.copy()
        forces = _foot_contact_forces(model, data, feet)
        qp_input = QPControllerInput(
            timestamp=float(data.time),
            param_set_name=args.param_set,
            q_des=q0,
            support_data=[
                SupportHint(body_id=b, contact_pts=np.zeros((1, 3)), mu=args.mu, force_active=True) for b in feet
            ],
            body_motion_data=[BodyMotionObjective(body_id=pelvis_id, params_index=0, x_des=x_pelvis)],
        )
        res = ctl.tick(qp_input, q, qd, contact_force=forces)
        if not res.status.ok:
            n_faults += 1
        data.ctrl[:] = res.output.u
        mujoco.mj_step(model, data)

        if data.time - last_print >= print_dt:
            last_print = float(data.time)
            st = res.status
            print(
                f"[run_standing_sim] t={data.time:6.3f} z={data.qpos[2]:.3f} "
                f"status={st.solver_status or st.fault.value} method={st.solve_method or '-'} "
                f"iter={st.iterations} solve={1e3 * st.solve_time:.2f}ms "
                f"supports={list(st.active_supports)} faults={st.consecutive_faults}"
            )

    wall = time.perf_counter() - wall0
    print(f"[run_standing_sim] done: sim {data.time:.2f}s in {wall:.2f}s wall, faulted ticks={n_faults}")


if __name__ == "__main__":
    main()
