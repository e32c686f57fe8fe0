from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from rgbdcalib.core.checkerboard import Checkerboard
from rgbdcalib.core.distortion import BrownDistortion, Polynomial, brown_from_dict
from rgbdcalib.core.geometry import Pose
from rgbdcalib.core.sensors import DEFAULT_DEPTH_ERROR_COEFFS, DepthSensor, PinholeSensor


SCHEMA_VERSION = "rgbdcalib.config.v0"


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class IntrinsicsConfig:
    fx: float
    fy: float
    cx: float
    cy: float
    width_px: int
    height_px: int
    distortion: BrownDistortion


@dataclass(frozen=True)
class DepthSensorConfig:
    intrinsics: IntrinsicsConfig
    error_function: tuple[float, float, float]


@dataclass(frozen=True)
class CheckerboardConfig:
    rows: int
    cols: int
    cell_width: float
    cell_height: float


@dataclass(frozen=True)
class BootstrapConfig:
    min_views: int = 10
    max_distance: float = 2.0
    seed: int | None = None


@dataclass(frozen=True)
class UndistortionConfig:
    local_bin_size: tuple[int, int] = (8, 8)


@dataclass(frozen=True)
class SolverConfig:
    transform_max_iterations: int = 100
    all_max_iterations: int = 20
    pixel_noise: float = 0.5
    cauchy_scale: float = 1.0
    max_threads: int = 8


@dataclass(frozen=True)
class CalibrationConfig:
    schema_version: str
    color_sensor: IntrinsicsConfig
    depth_sensor: DepthSensorConfig
    checkerboards: tuple[CheckerboardConfig, ...]
    downsample_ratio: int = 1
    estimate_initial_transform: bool = False
    estimate_depth_undistortion_model: bool = False
    undistortion: UndistortionConfig = UndistortionConfig()
    bootstrap: BootstrapConfig = BootstrapConfig()
    solver: SolverConfig = SolverConfig()
    initial_color_pose: Pose | None = None

    def build_color_sensor(self, depth_sensor: DepthSensor | None = None) -> PinholeSensor:
        c = self.color_sensor
        sensor = PinholeSensor(
            fx=c.fx, fy=c.fy, cx=c.cx, cy=c.cy, width_px=c.width_px, height_px=c.height_px, distortion=c.distortion
        )
        if self.initial_color_pose is not None:
            sensor.set_pose(self.initial_color_pose, parent=depth_sensor)
        return sensor

    def build_depth_sensor(self) -> DepthSensor:
        c = self.depth_sensor.intrinsics
        return DepthSensor(
            fx=c.fx,
            fy=c.fy,
            cx=c.cx,
            cy=c.cy,
            width_px=c.width_px,
            height_px=c.height_px,
            distortion=c.distortion,
            error_function=Polynomial(coeffs=np.asarray(self.depth_sensor.error_function, dtype=np.float64)),
        )

    def build_checkerboards(self) -> list[Checkerboard]:
        return [
            Checkerboard(rows=b.rows, cols=b.cols, cell_width=b.cell_width, cell_height=b.cell_height, name=f"checkerboard_{i}")
            for i, b in enumerate(self.checkerboards)
        ]


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def load_calibration_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_calibration_config(data)


def _parse_intrinsics(data: Any, where: str) -> IntrinsicsConfig:
    _require(isinstance(data, dict), f"{where} must be an object")
    for k in ("fx", "fy", "cx", "cy", "width_px", "height_px"):
        _require(data.get(k) is not None, f"{where}.{k} is required")
    fx, fy = float(data["fx"]), float(data["fy"])
    _require(fx > 0 and fy > 0, f"{where} focal lengths must be > 0")
    w, h = int(data["width_px"]), int(data["height_px"])
    _require(w > 0 and h > 0, f"{where}.width_px and {where}.height_px must be > 0")
    dist = data.get("distortion", {})
    _require(isinstance(dist, dict), f"{where}.distortion must be an object of k1,k2,p1,p2,k3")
    return IntrinsicsConfig(
        fx=fx, fy=fy, cx=float(data["cx"]), cy=float(data["cy"]), width_px=w, height_px=h, distortion=brown_from_dict(dist)
    )


def _parse_pose(data: Any, where: str) -> Pose:
    _require(isinstance(data, dict), f"{where} must be an object")
    rvec = data.get("rotvec")
    tvec = data.get("tvec")
    _require(isinstance(rvec, (list, tuple)) and len(rvec) == 3, f"{where}.rotvec must be [rx,ry,rz]")
    _require(isinstance(tvec, (list, tuple)) and len(tvec) == 3, f"{where}.tvec must be [tx,ty,tz]")
    return Pose.from_rotvec(np.asarray(rvec, dtype=np.float64), np.asarray(tvec, dtype=np.float64))


def parse_calibration_config(data: dict[str, Any]) -> CalibrationConfig:
    schema_version = data.get("schema_version")
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    color = _parse_intrinsics(data.get("color_sensor"), "color_sensor")

    depth_raw = data.get("depth_sensor")
    depth = _parse_intrinsics(depth_raw, "depth_sensor")
    err = depth_raw.get("error_function", list(DEFAULT_DEPTH_ERROR_COEFFS))
    _require(isinstance(err, (list, tuple)) and len(err) == 3, "depth_sensor.error_function must be [c0,c1,c2]")
    err_t = (float(err[0]), float(err[1]), float(err[2]))
    _require(any(e != 0.0 for e in err_t), "depth_sensor.error_function must not be identically zero")

    boards_raw = data.get("checkerboards")
    _require(isinstance(boards_raw, list) and len(boards_raw) > 0, "checkerboards must be a non-empty list")
    boards: list[CheckerboardConfig] = []
    for i, b in enumerate(boards_raw):
        _require(isinstance(b, dict), f"checkerboards[{i}] must be an object")
        for k in ("rows", "cols", "cell_width", "cell_height"):
            _require(b.get(k) is not None, f"checkerboards[{i}].{k} is required")
        rows, cols = int(b["rows"]), int(b["cols"])
        _require(rows >= 2 and cols >= 2, f"checkerboards[{i}] needs at least 2x2 inner corners")
        cw, ch = float(b["cell_width"]), float(b["cell_height"])
        _require(cw > 0 and ch > 0, f"checkerboards[{i}] cell sizes must be > 0")
        boards.append(CheckerboardConfig(rows=rows, cols=cols, cell_width=cw, cell_height=ch))

    ratio = int(data.get("downsample_ratio", 1))
    _require(ratio >= 1, "downsample_ratio must be >= 1")

    und = data.get("undistortion", {})
    bins = und.get("local_bin_size", [8, 8])
    _require(isinstance(bins, (list, tuple)) and len(bins) == 2, "undistortion.local_bin_size must be [bx,by]")
    bx, by = int(bins[0]), int(bins[1])
    _require(bx >= 1 and by >= 1, "undistortion.local_bin_size values must be >= 1")

    boot = data.get("bootstrap", {})
    min_views = int(boot.get("min_views", 10))
    _require(min_views >= 3, "bootstrap.min_views must be >= 3")
    max_distance = float(boot.get("max_distance", 2.0))
    _require(max_distance > 0, "bootstrap.max_distance must be > 0")
    seed = boot.get("seed")

    solver = data.get("solver", {})
    solver_cfg = SolverConfig(
        transform_max_iterations=int(solver.get("transform_max_iterations", 100)),
        all_max_iterations=int(solver.get("all_max_iterations", 20)),
        pixel_noise=float(solver.get("pixel_noise", 0.5)),
        cauchy_scale=float(solver.get("cauchy_scale", 1.0)),
        max_threads=int(solver.get("max_threads", 8)),
    )
    _require(solver_cfg.transform_max_iterations >= 1, "solver.transform_max_iterations must be >= 1")
    _require(solver_cfg.all_max_iterations >= 1, "solver.all_max_iterations must be >= 1")
    _require(solver_cfg.pixel_noise > 0, "solver.pixel_noise must be > 0")
    _require(solver_cfg.cauchy_scale > 0, "solver.cauchy_scale must be > 0")
    _require(solver_cfg.max_threads >= 1, "solver.max_threads must be >= 1")

    pose_raw = data.get("initial_color_pose")
    initial_pose = _parse_pose(pose_raw, "initial_color_pose") if pose_raw is not None else None

    return CalibrationConfig(
        schema_version=schema_version,
        color_sensor=color,
        depth_sensor=DepthSensorConfig(intrinsics=depth, error_function=err_t),
        checkerboards=tuple(boards),
        downsample_ratio=ratio,
        estimate_initial_transform=bool(data.get("estimate_initial_transform", False)),
        estimate_depth_undistortion_model=bool(data.get("estimate_depth_undistortion_model", False)),
        undistortion=UndistortionConfig(local_bin_size=(bx, by)),
        bootstrap=BootstrapConfig(min_views=min_views, max_distance=max_distance, seed=None if seed is None else int(seed)),
        solver=solver_cfg,
        initial_color_pose=initial_pose,
    )
