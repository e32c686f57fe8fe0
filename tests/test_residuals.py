from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from rgbdcalib.calib.residuals import (
    COLOR_POSE,
    DEPTH_DELTA,
    GLOBAL_DISTORTION,
    VIEW_POSE,
    build_residual_blocks,
)
from rgbdcalib.core.depth_models import GlobalModel

from rgbd_scene import TRUE_COLOR_POSE, make_frame, make_sensors, make_view, target_poses


@pytest.fixture()
def scene():
    color, depth = make_sensors()
    color.set_pose(TRUE_COLOR_POSE, parent=depth)
    pose = target_poses(1)[0]
    frame = make_frame(1, pose, color, depth)
    view = make_view(frame, pose)
    return color, depth, view


def test_pose_plane_residual_vanishes_at_truth(scene):
    color, depth, view = scene
    (block,) = build_residual_blocks("pose_plane", view, color_sensor=color, depth_sensor=depth)
    assert block.parameter_blocks == (COLOR_POSE, VIEW_POSE)
    assert block.n_residuals == 3 * view.checkerboard.size

    r = block.error(TRUE_COLOR_POSE.as_vector6(), view.color_pose.as_vector6())
    assert r.shape == (block.n_residuals,)
    assert np.max(np.abs(r)) < 1e-6


def test_pose_plane_residual_is_signed_and_scaled(scene):
    color, depth, view = scene
    (block,) = build_residual_blocks("pose_plane", view, color_sensor=color, depth_sensor=depth, pixel_noise=0.5)
    color6 = TRUE_COLOR_POSE.as_vector6()
    view6 = view.color_pose.as_vector6()

    normal = block.error.plane_normal
    shifted = color6.copy()
    shifted[3:] += 0.01 * normal
    r = block.error(shifted, view6).reshape(-1, 3)
    z = TRUE_COLOR_POSE.apply(view.color_checkerboard.corners())[:, 2] + 0.01 * normal[2]
    np.testing.assert_allclose(r[:, 2], 0.01 / (0.0035 * z**2), rtol=1e-6)
    np.testing.assert_allclose(r[:, :2], 0.0, atol=1e-6)

    r_neg = block.error(color6 - np.r_[0, 0, 0, 0.01 * normal], view6).reshape(-1, 3)
    assert np.all(r_neg[:, 2] < 0)

    moved = view6.copy()
    moved[3] += 1e-3
    r2 = block.error(color6, moved).reshape(-1, 3)
    assert np.all(np.abs(r2[:, 0]) > 0.1)


def test_autodiff_jacobian_matches_finite_differences(scene):
    jax = pytest.importorskip("jax")
    jax.config.update("jax_enable_x64", True)
    import jax.numpy as jnp

    color, depth, view = scene
    (block,) = build_residual_blocks("pose_plane", view, color_sensor=color, depth_sensor=depth)
    err = block.error
    f = err.function(xp=jnp)
    color6 = TRUE_COLOR_POSE.as_vector6() + 0.01
    view6 = view.color_pose.as_vector6()
    J_c, _J_v = jax.jacfwd(f, argnums=(0, 1))(jnp.asarray(color6), jnp.asarray(view6), *map(jnp.asarray, err.data()))

    h = 1e-6
    J_fd = np.empty((err.n_residuals, 6))
    for k in range(6):
        e = np.zeros(6)
        e[k] = h
        J_fd[:, k] = (err(color6 + e, view6) - err(color6 - e, view6)) / (2 * h)
    np.testing.assert_allclose(np.asarray(J_c), J_fd, rtol=1e-4, atol=1e-3)


def test_reprojection_residual_normalized_by_corner_count(scene):
    color, depth, view = scene
    (block,) = build_residual_blocks("reprojection", view, color_sensor=color, depth_sensor=depth, pixel_noise=0.5)
    assert block.parameter_blocks == (VIEW_POSE,)
    p7 = view.color_pose.as_vector7()
    assert np.max(np.abs(block.error(p7))) < 1e-9

    n = view.checkerboard.size
    uv = view.color_corners + np.array([1.0, 0.0])
    (block2,) = build_residual_blocks(
        "reprojection", replace(view, color_corners=uv), color_sensor=color, depth_sensor=depth, pixel_noise=0.5
    )
    r = block2.error(p7).reshape(-1, 2)
    np.testing.assert_allclose(r[:, 0], -1.0 / (0.5 * np.sqrt(n)), rtol=1e-9)


def test_distortion_residual_vanishes_at_truth_and_reacts_to_delta(scene):
    color, depth, view = scene
    glob = GlobalModel.identity((depth.width_px, depth.height_px))
    blocks = build_residual_blocks(
        "pose_distortion_intrinsics",
        view,
        color_sensor=color,
        depth_sensor=depth,
        global_image_size=glob.image_size,
    )
    assert [b.kind for b in blocks] == ["pose_distortion_intrinsics", "reprojection"]
    dist = blocks[0]
    assert dist.parameter_blocks == (COLOR_POSE, GLOBAL_DISTORTION, VIEW_POSE, DEPTH_DELTA)
    assert dist.n_residuals == 3 * view.depth_plane.indices.size

    args = [TRUE_COLOR_POSE.as_vector7(), glob.free_parameters(), view.color_pose.as_vector7(), np.array([1.0, 1.0, 0.0, 0.0])]
    assert np.max(np.abs(dist.error(*args))) < 1e-6

    args[3] = np.array([1.0, 1.1, 0.0, 0.0])
    assert np.max(np.abs(dist.error(*args))) > 1e-3

    args[3] = np.array([1.0, 1.0, 0.0, 0.0])
    g = glob.free_parameters()
    g[0] += 0.02
    args[1] = g
    assert np.max(np.abs(dist.error(*args))) > 1e-3


def test_missing_plane_or_size_mismatch_rejected(scene):
    color, depth, view = scene
    no_plane = replace(view, depth_plane=None)
    with pytest.raises(ValueError):
        build_residual_blocks("pose_plane", no_plane, color_sensor=color, depth_sensor=depth)
    with pytest.raises(ValueError):
        build_residual_blocks("pose_distortion_intrinsics", view, color_sensor=color, depth_sensor=depth)
    with pytest.raises(ValueError):
        build_residual_blocks(
            "reprojection", replace(view, color_corners=view.color_corners[:-1]), color_sensor=color, depth_sensor=depth
        )
