from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from rgbdcalib.core.distortion import BrownDistortion, Polynomial
from rgbdcalib.core.geometry import Pose


DEFAULT_DEPTH_ERROR_COEFFS = (0.0, 0.0, 0.0035)


@dataclass(eq=False)
class PinholeSensor:
    """
    Color camera: pinhole projection with Brown distortion.

    `pose` maps camera coordinates into the `parent` sensor frame (the depth
    sensor in a calibrated pair). A sensor without a parent has no extrinsic
    estimate yet.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width_px: int
    height_px: int
    distortion: BrownDistortion = field(default_factory=BrownDistortion)
    name: str = "color"
    pose: Pose = field(default_factory=Pose.identity)
    parent: Optional[object] = None

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def set_pose(self, pose: Pose, parent: Optional[object] = None) -> None:
        self.pose = pose
        if parent is not None:
            self.parent = parent

    def project(self, XYZ_cam, xp=np):
        """(N,3) points in camera coordinates -> (N,2) pixels."""
        x = XYZ_cam[:, 0] / XYZ_cam[:, 2]
        y = XYZ_cam[:, 1] / XYZ_cam[:, 2]
        xd, yd = self.distortion.distort(x, y)
        return xp.stack([self.fx * xd + self.cx, self.fy * yd + self.cy], axis=-1)


@dataclass(eq=False)
class DepthSensor:
    """
    Depth sensor delivering organized clouds on its own pixel raster.

    `error_function` gives the expected depth noise (std-dev, metres) as a
    function of range: sigma(z) = c0 + c1 z + c2 z^2.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width_px: int
    height_px: int
    distortion: BrownDistortion = field(default_factory=BrownDistortion)
    error_function: Polynomial = field(
        default_factory=lambda: Polynomial(coeffs=np.asarray(DEFAULT_DEPTH_ERROR_COEFFS, dtype=np.float64))
    )
    name: str = "depth"
    pose: Pose = field(default_factory=Pose.identity)
    parent: Optional[object] = None

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def intrinsics(self) -> np.ndarray:
        return np.array([self.fx, self.fy, self.cx, self.cy], dtype=np.float64)

    def set_pose(self, pose: Pose, parent: Optional[object] = None) -> None:
        self.pose = pose
        if parent is not None:
            self.parent = parent

    def depth_error(self, z):
        return self.error_function(z)

    def project(self, XYZ: np.ndarray) -> np.ndarray:
        XYZ = np.asarray(XYZ, dtype=np.float64).reshape(-1, 3)
        x = XYZ[:, 0] / XYZ[:, 2]
        y = XYZ[:, 1] / XYZ[:, 2]
        xd, yd = self.distortion.distort(x, y)
        return np.stack([self.fx * xd + self.cx, self.fy * yd + self.cy], axis=-1)
