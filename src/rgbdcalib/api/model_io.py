from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from rgbdcalib.calib.calibration import CalibrationResult
from rgbdcalib.core.depth_models import GlobalModel, LocalModel
from rgbdcalib.core.geometry import Pose

RESULT_SCHEMA_VERSION = "rgbdcalib.result.v0"


def _to_float_matrix(x: np.ndarray, shape: tuple[int, ...]) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    x = x.reshape(shape)
    if not np.all(np.isfinite(x)):
        raise ValueError("non-finite values")
    return x


def save_calibration_result(out_dir: Path, result: CalibrationResult) -> Path:
    """
    Save a calibration result into a directory:

      calibration.json + depth_models.npz

    The JSON holds the extrinsics, the depth intrinsics and the run summaries;
    the NPZ holds the depth-correction coefficient arrays (absent models are
    simply not written).
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    arrays: dict[str, np.ndarray] = {}
    models: dict[str, Any] = {}
    if result.local_model is not None:
        arrays["local_coeffs"] = np.asarray(result.local_model.coeffs, dtype=np.float64)
        models["local"] = {
            "image_size": [int(v) for v in result.local_model.image_size],
            "bin_size": [int(v) for v in result.local_model.bin_size],
            "key": "local_coeffs",
        }
    if result.global_model is not None:
        arrays["global_coeffs"] = np.asarray(result.global_model.coeffs, dtype=np.float64)
        models["global"] = {"image_size": [int(v) for v in result.global_model.image_size], "key": "global_coeffs"}

    models_path = out_dir / "depth_models.npz"
    if arrays:
        np.savez_compressed(models_path, **arrays)

    pose = result.color_pose
    fx, fy, cx, cy = (float(v) for v in np.asarray(result.depth_intrinsics, dtype=np.float64).reshape(4))
    meta: dict[str, Any] = {
        "schema_version": RESULT_SCHEMA_VERSION,
        "color_pose": {
            "parent": "depth",
            "R": np.asarray(pose.R, dtype=np.float64).tolist(),
            "t": np.asarray(pose.t, dtype=np.float64).reshape(3).tolist(),
            "quaternion_xyzw": pose.quaternion().tolist(),
        },
        "depth_intrinsics": {"fx": fx, "fy": fy, "cx": cx, "cy": cy},
        "depth_models": {"format": "npz", "path": models_path.name, **models} if arrays else None,
        "summaries": {k: {kk: float(vv) for kk, vv in v.items()} for k, v in result.summaries.items()},
    }

    json_path = out_dir / "calibration.json"
    json_path.write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
    return json_path


def load_calibration_result(out_dir: Path) -> CalibrationResult:
    out_dir = Path(out_dir)
    meta = json.loads((out_dir / "calibration.json").read_text(encoding="utf-8"))
    if str(meta.get("schema_version")) != RESULT_SCHEMA_VERSION:
        raise ValueError("unsupported result schema")

    pose_meta = meta["color_pose"]
    pose = Pose(R=_to_float_matrix(pose_meta["R"], (3, 3)), t=_to_float_matrix(pose_meta["t"], (3,)))
    intr = meta["depth_intrinsics"]
    depth_intrinsics = np.array([intr["fx"], intr["fy"], intr["cx"], intr["cy"]], dtype=np.float64)

    local_model = None
    global_model = None
    models = meta.get("depth_models")
    if models:
        w = np.load(str(out_dir / str(models["path"])))
        if "local" in models:
            m = models["local"]
            local_model = LocalModel(
                image_size=tuple(int(v) for v in m["image_size"]),
                bin_size=tuple(int(v) for v in m["bin_size"]),
                coeffs=np.asarray(w[str(m["key"])], dtype=np.float64),
            )
        if "global" in models:
            m = models["global"]
            global_model = GlobalModel(
                image_size=tuple(int(v) for v in m["image_size"]),
                coeffs=np.asarray(w[str(m["key"])], dtype=np.float64),
            )

    summaries = {str(k): {str(kk): float(vv) for kk, vv in v.items()} for k, v in meta.get("summaries", {}).items()}
    return CalibrationResult(
        color_pose=pose,
        depth_intrinsics=depth_intrinsics,
        local_model=local_model,
        global_model=global_model,
        summaries=summaries,
    )
