import json

import numpy as np
import pytest

from conftest import make_rpc
from wbqp.errors import InvalidParameterSet
from wbqp.params import ParamSets, default_param_sets, load_param_sets, params_from_dict


def test_default_sets_present_and_valid():
    rpc = make_rpc()
    sets = default_param_sets(rpc)

    assert set(sets) == {"standing", "walking", "manip", "recovery"}
    assert sets.num_velocities == rpc.num_velocities
    walking = sets["walking"]
    assert walking.vref_integrator.zero_ankles_on_contact
    # legs are left to the body motion tasks
    np.testing.assert_array_equal(walking.whole_body.Kp[[3, 4, 5, 6]], 0.0)
    assert sets["recovery"].w_slack > sets["standing"].w_slack


def test_unknown_set_raises_invalid_parameter_set():
    sets = default_param_sets(make_rpc())
    with pytest.raises(InvalidParameterSet) as exc:
        sets.get_set("running")
    assert "running" in str(exc.value)
    # also a KeyError, so Mapping semantics hold
    assert sets.get("running") is None
    assert "running" not in sets


def test_sets_are_read_only():
    sets = default_param_sets(make_rpc())
    with pytest.raises(TypeError):
        sets._sets["standing"] = sets["walking"]


def test_override_broadcasts_scalars():
    base = default_param_sets(make_rpc())["standing"]
    p = params_from_dict({"w_slack": 2.0, "whole_body": {"Kd": 3.0}}, base)

    assert p.w_slack == 2.0
    np.testing.assert_array_equal(p.whole_body.Kd, np.full(7, 3.0))
    # base untouched
    assert base.w_slack != 2.0


def test_unknown_key_rejected():
    base = default_param_sets(make_rpc())["standing"]
    with pytest.raises(InvalidParameterSet):
        params_from_dict({"whole_body": {"Kq": 1.0}}, base)


def test_malformed_set_rejected():
    rpc = make_rpc()
    base = default_param_sets(rpc)["standing"]
    bad = params_from_dict({"whole_body": {"Kp": [1.0, 2.0]}}, base)
    with pytest.raises(InvalidParameterSet):
        ParamSets({"bad": bad}, rpc.num_velocities)

    negative = params_from_dict({"w_slack": -1.0}, base)
    with pytest.raises(InvalidParameterSet):
        ParamSets({"neg": negative}, rpc.num_velocities)


def test_load_param_sets_from_json(tmp_path):
    rpc = make_rpc()
    path = tmp_path / "params.json"
    path.write_text(
        json.dumps(
            {
                "standing": {"Kp_ang": 2.5},
                "crouch": {"base": "walking", "min_knee_angle": 1.2, "body_motion": [{"weight": 0.7}]},
            }
        )
    )
    sets = load_param_sets(str(path), rpc)

    assert sets["standing"].Kp_ang == 2.5
    assert sets["crouch"].min_knee_angle == 1.2
    assert sets["crouch"].body_motion[0].weight == 0.7
    assert sets["crouch"].vref_integrator.zero_ankles_on_contact
    assert "recovery" in sets
