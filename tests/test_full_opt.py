from __future__ import annotations

import numpy as np
import pytest

from rgbdcalib.calib.full_opt import optimize_all
from rgbdcalib.core.depth_models import GlobalModel
from rgbdcalib.core.geometry import Pose

from rgbd_scene import TRUE_COLOR_POSE, make_scene, make_sensors, make_view


def _setup(n: int):
    color, depth = make_sensors()
    frames, poses = make_scene(n, color, depth)
    views = [make_view(f, p) for f, p in zip(frames, poses)]
    glob = GlobalModel.identity((depth.width_px, depth.height_px))
    return color, depth, views, glob


def test_exact_data_keeps_known_pose_and_identity_delta():
    color, depth, views, glob = _setup(6)
    color.set_pose(TRUE_COLOR_POSE, parent=depth)

    res = optimize_all(views=views, color_sensor=color, depth_sensor=depth, global_model=glob)

    ang, dist = res.color_pose.distance_to(TRUE_COLOR_POSE)
    assert ang < 1e-6
    assert dist < 1e-6
    np.testing.assert_allclose(res.delta, [1.0, 1.0, 0.0, 0.0], atol=1e-6)
    np.testing.assert_allclose(res.global_coeffs, GlobalModel.identity(glob.image_size).coeffs, atol=1e-6)
    np.testing.assert_allclose(
        res.global_coeffs[1, 1], res.global_coeffs[0, 1] + res.global_coeffs[1, 0] - res.global_coeffs[0, 0], atol=1e-12
    )


@pytest.mark.integration
def test_perturbed_start_reduces_cost_and_keeps_unit_quaternions():
    color, depth, views, glob = _setup(8)
    start = Pose.from_vector6(TRUE_COLOR_POSE.as_vector6() + np.r_[0.0, 0.0, 0.0, 0.004, -0.003, 0.002])
    color.set_pose(start, parent=depth)

    res = optimize_all(views=views, color_sensor=color, depth_sensor=depth, global_model=glob)

    assert res.diagnostics["opt_cost"] < 1e-2 * res.diagnostics["opt_initial_cost"]
    _ang0, dist0 = start.distance_to(TRUE_COLOR_POSE)
    _ang, dist = res.color_pose.distance_to(TRUE_COLOR_POSE)
    assert dist < dist0

    assert abs(np.linalg.norm(res.color_quaternion) - 1.0) < 1e-12
    for q in res.view_quaternions.values():
        assert abs(np.linalg.norm(q) - 1.0) < 1e-12
    assert set(res.view_poses) == {v.id for v in views}


def test_nothing_written_back():
    color, depth, views, glob = _setup(3)
    color.set_pose(TRUE_COLOR_POSE, parent=depth)
    coeffs = glob.coeffs.copy()
    intr = depth.intrinsics()
    optimize_all(views=views, color_sensor=color, depth_sensor=depth, global_model=glob)
    np.testing.assert_array_equal(glob.coeffs, coeffs)
    np.testing.assert_array_equal(depth.intrinsics(), intr)
    assert color.pose is TRUE_COLOR_POSE


def test_requires_views_with_planes():
    color, depth, views, glob = _setup(1)
    with pytest.raises(ValueError):
        optimize_all(views=[None], color_sensor=color, depth_sensor=depth, global_model=glob)
