from __future__ import annotations

import numpy as np
import pytest

from rgbdcalib.calib.undistortion import DepthUndistortionEstimation
from rgbdcalib.core.cloud import PointCloud
from rgbdcalib.core.depth_models import GlobalModel, LocalModel
from rgbdcalib.errors import CalibrationError, InsufficientSamplesError

from rgbd_scene import TRUE_COLOR_POSE, make_board, make_scene, make_sensors


def _distort(z: np.ndarray) -> np.ndarray:
    return 1.02 * z + 0.01


def _estimator(depth, **kw):
    size = (depth.width_px, depth.height_px)
    return DepthUndistortionEstimation(
        depth_sensor=depth,
        local_model=LocalModel.identity(size, (16, 16)),
        global_model=GlobalModel.identity(size),
        max_threads=2,
        min_bin_samples=1,
        **kw,
    )


def _feed(est, n: int, depth_distortion=_distort):
    color, depth = make_sensors()
    frames, poses = make_scene(n, color, depth, depth_distortion=depth_distortion)
    board = make_board()
    return [
        est.add_depth_data(f.cloud, board.with_pose(TRUE_COLOR_POSE @ p), ratio=f.ratio) for f, p in zip(frames, poses)
    ]


def test_local_model_inverts_depth_distortion():
    _color, depth = make_sensors()
    est = _estimator(depth)
    data = _feed(est, 4)
    assert all(d.plane_extracted for d in data)

    est.estimate_local_model()
    assert all(d.undistorted_cloud is not None for d in data)

    for d in data:
        idx = d.estimated_plane.indices
        u, v = d.cloud.pixel_coordinates(d.ratio)
        z_meas = d.cloud.flat()[idx, 2]
        z_true = (z_meas - 0.01) / 1.02
        np.testing.assert_allclose(est.local_model.corrected_depth(u[idx], v[idx], z_meas), z_true, atol=1e-3)
        np.testing.assert_allclose(d.undistorted_cloud.flat()[idx, 2], z_true, atol=1e-3)


def test_full_sequence_leaves_identity_global_residual():
    _color, depth = make_sensors()
    est = _estimator(depth)
    data = _feed(est, 4)

    est.estimate_local_model()
    est.estimate_local_model_reverse()
    est.estimate_global_model()

    g = est.global_model
    np.testing.assert_allclose(g.coeffs[1, 1], g.coeffs[0, 1] + g.coeffs[1, 0] - g.coeffs[0, 0], atol=1e-9)
    for d in data:
        idx = d.estimated_plane.indices
        u, v = d.cloud.pixel_coordinates(d.ratio)
        z = d.undistorted_cloud.flat()[idx, 2]
        np.testing.assert_allclose(g.corrected_depth(u[idx], v[idx], z), z, atol=2e-3)

        # refitted planes describe the corrected target
        assert d.estimated_plane.std_dev < 1e-3


def test_calls_out_of_order_are_rejected():
    _color, depth = make_sensors()
    est = _estimator(depth)
    _feed(est, 2)
    with pytest.raises(CalibrationError):
        est.estimate_local_model_reverse()
    with pytest.raises(CalibrationError):
        est.estimate_global_model()

    est.estimate_local_model()
    with pytest.raises(CalibrationError):
        est.estimate_local_model()

    # new data restarts the sequence
    _feed(est, 1)
    with pytest.raises(CalibrationError):
        est.estimate_local_model_reverse()
    est.estimate_local_model()


def test_missing_cloud_is_flagged_and_ignored():
    _color, depth = make_sensors()
    est = _estimator(depth)
    board = make_board().with_pose(TRUE_COLOR_POSE)
    empty = PointCloud(points=np.full((depth.height_px, depth.width_px, 3), np.nan), is_dense=False)

    bad = est.add_depth_data(empty, board)
    assert not bad.plane_extracted
    assert bad.estimated_plane is None
    with pytest.raises(InsufficientSamplesError):
        est.estimate_local_model()

    _feed(est, 2)
    est.estimate_local_model()
    assert bad.undistorted_cloud is None
    assert len(est.depth_data) == 3
