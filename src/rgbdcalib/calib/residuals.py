"""
Residual strategies for the joint optimizers.

Three formulations share one construction entry point, `build_residual_blocks`:

- "reprojection": target pose (quaternion + translation) -> corner reprojection error
- "pose_plane": color pose + target pose (axis-angle + translation) -> reprojection
  error and signed distance of the corners to the measured depth plane
- "pose_distortion_intrinsics": color pose, global depth-distortion parameters,
  target pose and depth-intrinsics delta -> line-of-sight distance of corrected
  depth points to the target plane

Each residual is a pure function of its parameter blocks. Blocks are referred
to by name so that the optimizers can map them onto shared or per-view slots
of their parameter vector.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal

import numpy as np

from rgbdcalib.core.depth_models import GlobalModel, global_corrected_depth
from rgbdcalib.core.distortion import BrownDistortion, poly_eval
from rgbdcalib.core.geometry import rotvec_to_matrix
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.core.views import CheckerboardView


ResidualKind = Literal["reprojection", "pose_plane", "pose_distortion_intrinsics"]

COLOR_POSE = "color_pose"
VIEW_POSE = "view_pose"
GLOBAL_DISTORTION = "global_distortion"
DEPTH_DELTA = "depth_delta"


def _quat_to_matrix(q: np.ndarray) -> np.ndarray:
    x, y, z, w = (float(v) for v in q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def pose_plane_residual(
    color_pose6,
    view_pose6,
    corners_board,
    observed_uv,
    plane_normal,
    plane_offset,
    *,
    sensor: PinholeSensor,
    error_coeffs: np.ndarray,
    pixel_noise: float,
    xp=np,
):
    """
    Per corner: ((u,v) reprojection error) / pixel_noise and signed distance of the
    corner (moved into the depth frame) to the measured depth plane, divided by the
    range-dependent depth error. Output (3N,), ordered corner by corner.
    """
    R_v = rotvec_to_matrix(view_pose6[:3], xp=xp)
    P_color = corners_board @ R_v.T + view_pose6[3:]
    uv = sensor.project(P_color, xp=xp)
    r_uv = (uv - observed_uv) / pixel_noise

    R_c = rotvec_to_matrix(color_pose6[:3], xp=xp)
    P_depth = P_color @ R_c.T + color_pose6[3:]
    dist = P_depth @ plane_normal + plane_offset
    r_d = dist / poly_eval(error_coeffs, P_depth[:, 2])
    return xp.concatenate([r_uv, r_d[:, None]], axis=1).reshape(-1)


@dataclass(frozen=True, eq=False)
class ReprojectionError:
    sensor: PinholeSensor
    corners_board: np.ndarray  # (N,3)
    observed_uv: np.ndarray  # (N,2)
    pixel_noise: float = 0.5

    kind = "reprojection"

    @property
    def n_residuals(self) -> int:
        return 2 * int(self.corners_board.shape[0])

    def __call__(self, view_pose7: np.ndarray) -> np.ndarray:
        R_v = _quat_to_matrix(view_pose7[:4])
        P = self.corners_board @ R_v.T + view_pose7[4:]
        uv = self.sensor.project(P)
        n = self.corners_board.shape[0]
        return ((uv - self.observed_uv) / (self.pixel_noise * np.sqrt(float(n)))).reshape(-1)


@dataclass(frozen=True, eq=False)
class TransformError:
    sensor: PinholeSensor
    corners_board: np.ndarray  # (N,3)
    observed_uv: np.ndarray  # (N,2)
    plane_normal: np.ndarray  # (3,)
    plane_offset: float
    error_coeffs: np.ndarray  # (3,)
    pixel_noise: float = 0.5

    kind = "pose_plane"

    @property
    def n_residuals(self) -> int:
        return 3 * int(self.corners_board.shape[0])

    def function(self, xp=np) -> Callable:
        """The residual as a function of (color_pose6, view_pose6, corners, uv, normal, offset)."""

        def f(color_pose6, view_pose6, corners_board, observed_uv, plane_normal, plane_offset):
            return pose_plane_residual(
                color_pose6,
                view_pose6,
                corners_board,
                observed_uv,
                plane_normal,
                plane_offset,
                sensor=self.sensor,
                error_coeffs=self.error_coeffs,
                pixel_noise=self.pixel_noise,
                xp=xp,
            )

        return f

    def data(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, float]:
        return self.corners_board, self.observed_uv, self.plane_normal, float(self.plane_offset)

    def __call__(self, color_pose6: np.ndarray, view_pose6: np.ndarray) -> np.ndarray:
        return self.function()(np.asarray(color_pose6, dtype=np.float64), np.asarray(view_pose6, dtype=np.float64), *self.data())


@dataclass(frozen=True, eq=False)
class TransformDistortionError:
    """
    Line-of-sight error of distortion-corrected depth points w.r.t. the target plane.

    The depth points are rebuilt from their measured range with the depth
    intrinsics corrected by `delta` = (sfx, sfy, dcx, dcy), corrected by the
    global model (whose (1,1) corner is reconciled on every call), and compared to
    the plane through the first three non-collinear target corners expressed in
    the depth frame. Output (3M,) for the M inlier pixels.
    """

    depth_intrinsics: np.ndarray  # (4,) fx, fy, cx, cy
    depth_distortion: BrownDistortion
    corners_board: np.ndarray  # (N,3)
    plane_corner_ids: tuple[int, int, int]
    u_px: np.ndarray  # (M,)
    v_px: np.ndarray  # (M,)
    z: np.ndarray  # (M,)
    error_coeffs: np.ndarray  # (3,)
    image_size: tuple[int, int]

    kind = "pose_distortion_intrinsics"

    @property
    def n_residuals(self) -> int:
        return 3 * int(self.z.size)

    def __call__(
        self,
        color_pose7: np.ndarray,
        global_params: np.ndarray,
        view_pose7: np.ndarray,
        delta: np.ndarray,
    ) -> np.ndarray:
        fx, fy, cx, cy = (float(v) for v in self.depth_intrinsics)
        xd = (self.u_px - (cx + delta[2])) / (fx * delta[0])
        yd = (self.v_px - (cy + delta[3])) / (fy * delta[1])
        x, y = self.depth_distortion.undistort(xd, yd)

        coeffs = GlobalModel.coeffs_from_free_parameters(global_params)
        z = global_corrected_depth(self.u_px, self.v_px, self.z, coeffs, self.image_size)
        pts = z[:, None] * np.stack([x, y, np.ones_like(x)], axis=-1)

        R_c = _quat_to_matrix(color_pose7[:4])
        R_v = _quat_to_matrix(view_pose7[:4])
        i0, i1, i2 = self.plane_corner_ids
        P = self.corners_board[[i0, i1, i2]] @ R_v.T + view_pose7[4:]
        P = P @ R_c.T + color_pose7[4:]
        n = np.cross(P[1] - P[0], P[2] - P[0])
        n = n / np.linalg.norm(n)
        offset = -float(n @ P[0])

        s = -offset / (pts @ n)
        hit = pts * s[:, None]
        m = float(self.z.size)
        sigma = poly_eval(self.error_coeffs, pts[:, 2])
        return ((hit - pts) / (np.sqrt(m) * sigma)[:, None]).reshape(-1)


@dataclass(frozen=True, eq=False)
class ResidualBlock:
    """A residual function plus the names of the parameter blocks it reads, in call order."""

    error: Callable[..., np.ndarray]
    parameter_blocks: tuple[str, ...]

    @property
    def kind(self) -> str:
        return str(getattr(self.error, "kind"))

    @property
    def n_residuals(self) -> int:
        return int(getattr(self.error, "n_residuals"))


def build_residual_blocks(
    kind: ResidualKind,
    view: CheckerboardView,
    *,
    color_sensor: PinholeSensor,
    depth_sensor: DepthSensor,
    pixel_noise: float = 0.5,
    global_image_size: tuple[int, int] | None = None,
) -> list[ResidualBlock]:
    """
    Residual blocks contributed by one view under the given formulation.

    "pose_distortion_intrinsics" also returns the view's quaternion reprojection
    block, since the two always appear together.
    """
    corners = view.checkerboard.local_corners()
    uv = np.asarray(view.color_corners, dtype=np.float64).reshape(-1, 2)
    if uv.shape[0] != corners.shape[0]:
        raise ValueError(f"view {view.id}: {uv.shape[0]} corners observed, target has {corners.shape[0]}")
    err_coeffs = np.asarray(depth_sensor.error_function.coeffs, dtype=np.float64)
    if depth_sensor.error_function.min_degree != 0:
        raise ValueError("depth error function must use a full polynomial basis")

    if kind == "reprojection":
        return [
            ResidualBlock(
                error=ReprojectionError(sensor=color_sensor, corners_board=corners, observed_uv=uv, pixel_noise=pixel_noise),
                parameter_blocks=(VIEW_POSE,),
            )
        ]

    if view.depth_plane is None:
        raise ValueError(f"view {view.id} has no depth plane")

    if kind == "pose_plane":
        plane = view.depth_plane.plane
        return [
            ResidualBlock(
                error=TransformError(
                    sensor=color_sensor,
                    corners_board=corners,
                    observed_uv=uv,
                    plane_normal=np.asarray(plane.normal, dtype=np.float64),
                    plane_offset=float(plane.offset),
                    error_coeffs=err_coeffs,
                    pixel_noise=pixel_noise,
                ),
                parameter_blocks=(COLOR_POSE, VIEW_POSE),
            )
        ]

    if kind == "pose_distortion_intrinsics":
        if global_image_size is None:
            raise ValueError("global_image_size is required for the distortion residual")
        idx = np.asarray(view.depth_plane.indices, dtype=np.int64).reshape(-1)
        frame = view.frame
        u_all, v_all = frame.cloud.pixel_coordinates(frame.ratio)
        z_all = frame.cloud.flat()[:, 2]
        z = z_all[idx]
        good = np.isfinite(z) & (z > 0)
        idx = idx[good]
        cols = view.checkerboard.cols
        distortion_error = TransformDistortionError(
            depth_intrinsics=depth_sensor.intrinsics(),
            depth_distortion=depth_sensor.distortion,
            corners_board=corners,
            plane_corner_ids=(0, 1, cols),
            u_px=u_all[idx],
            v_px=v_all[idx],
            z=z_all[idx],
            error_coeffs=err_coeffs,
            image_size=global_image_size,
        )
        return [
            ResidualBlock(error=distortion_error, parameter_blocks=(COLOR_POSE, GLOBAL_DISTORTION, VIEW_POSE, DEPTH_DELTA)),
            ResidualBlock(
                error=ReprojectionError(sensor=color_sensor, corners_board=corners, observed_uv=uv, pixel_noise=pixel_noise),
                parameter_blocks=(VIEW_POSE,),
            ),
        ]

    raise ValueError(f"unknown residual kind: {kind}")
