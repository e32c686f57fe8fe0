from __future__ import annotations

import json
from pathlib import Path

import numpy as np

from rgbdcalib.api.model_io import load_calibration_result, save_calibration_result
from rgbdcalib.calib.calibration import CalibrationResult
from rgbdcalib.core.depth_models import GlobalModel, LocalModel
from rgbdcalib.core.geometry import Pose


def test_result_roundtrip_with_models(tmp_path: Path) -> None:
    rng = np.random.default_rng(0)
    local = LocalModel.identity((64, 48), (8, 8))
    local.coeffs = local.coeffs + rng.normal(scale=1e-3, size=local.coeffs.shape)
    glob = GlobalModel.identity((64, 48))
    glob.set_free_parameters(glob.free_parameters() + rng.normal(scale=1e-3, size=glob.free_parameters().shape))
    pose = Pose.from_rotvec(np.array([0.01, -0.02, 0.03]), np.array([0.025, 0.0, -0.001]))
    res = CalibrationResult(
        color_pose=pose,
        depth_intrinsics=np.array([575.0, 576.0, 320.5, 240.5]),
        local_model=local,
        global_model=glob,
        summaries={"optimize_all": {"opt_cost": 1.5, "opt_nfev": 12.0}},
    )

    json_path = save_calibration_result(tmp_path, res)
    assert json_path.name == "calibration.json"
    assert (tmp_path / "depth_models.npz").exists()
    meta = json.loads(json_path.read_text(encoding="utf-8"))
    assert meta["color_pose"]["parent"] == "depth"
    np.testing.assert_allclose(meta["color_pose"]["quaternion_xyzw"], pose.quaternion())

    back = load_calibration_result(tmp_path)
    np.testing.assert_allclose(back.color_pose.R, pose.R)
    np.testing.assert_allclose(back.color_pose.t, pose.t)
    np.testing.assert_allclose(back.depth_intrinsics, res.depth_intrinsics)
    np.testing.assert_array_equal(back.local_model.coeffs, local.coeffs)
    assert back.local_model.bin_size == (8, 8)
    np.testing.assert_array_equal(back.global_model.coeffs, glob.coeffs)
    assert back.summaries == res.summaries


def test_result_without_models_writes_json_only(tmp_path: Path) -> None:
    res = CalibrationResult(color_pose=Pose.identity(), depth_intrinsics=np.array([500.0, 500.0, 320.0, 240.0]))
    save_calibration_result(tmp_path, res)
    assert not (tmp_path / "depth_models.npz").exists()

    back = load_calibration_result(tmp_path)
    assert back.local_model is None
    assert back.global_model is None
    assert back.summaries == {}
