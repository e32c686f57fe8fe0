from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from rgbdcalib.core.checkerboard import Checkerboard, CheckerboardDistanceConstraint
from rgbdcalib.core.cloud import PointCloud
from rgbdcalib.core.geometry import Plane, PlaneFit, Pose, points_in_convex_polygon
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.core.views import CheckerboardView, Frame

logger = logging.getLogger(__name__)

CornerDetector = Callable[[np.ndarray, Checkerboard], Optional[np.ndarray]]
PoseSolver = Callable[[np.ndarray, Checkerboard, PinholeSensor], Optional[Pose]]

# metres; below this the inlier spread is numerical noise
_NOISE_FLOOR = 1e-9


def detect_chessboard_corners(image: np.ndarray, checkerboard: Checkerboard) -> np.ndarray | None:
    """
    OpenCV chessboard detection with sub-pixel refinement.

    Returns (rows*cols, 2) corners in `checkerboard.local_corners()` order, or
    None when the pattern is not found.
    """
    import cv2  # type: ignore

    img = np.asarray(image)
    if img.ndim == 3:
        gray = cv2.cvtColor(img, cv2.COLOR_RGB2GRAY if img.shape[2] == 3 else cv2.COLOR_RGBA2GRAY)
    else:
        gray = img
    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)

    ok, corners = cv2.findChessboardCorners(
        gray, checkerboard.pattern_size, flags=cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
    )
    if not ok or corners is None:
        return None
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 1e-3)
    corners = cv2.cornerSubPix(gray, corners, (5, 5), (-1, -1), criteria)
    return np.asarray(corners, dtype=np.float64).reshape(-1, 2)


def solve_target_pose(corners_px: np.ndarray, checkerboard: Checkerboard, sensor: PinholeSensor) -> Pose | None:
    """Target pose in the camera frame from detected corners (cv2.solvePnP)."""
    import cv2  # type: ignore

    obj = checkerboard.local_corners().astype(np.float64)
    img = np.asarray(corners_px, dtype=np.float64).reshape(-1, 2)
    ok, rvec, tvec = cv2.solvePnP(obj, img, sensor.K(), sensor.distortion.coefficients(), flags=cv2.SOLVEPNP_ITERATIVE)
    if not ok:
        return None
    return Pose.from_rotvec(np.asarray(rvec).reshape(3), np.asarray(tvec).reshape(3))


def fit_plane_in_outline(
    cloud: PointCloud,
    outline_px: np.ndarray,
    *,
    ratio: int = 1,
    min_points: int = 50,
    iterations: int = 5,
    k_sigma: float = 3.0,
) -> PlaneFit | None:
    """
    Fit a plane to the finite cloud cells whose sensor pixel falls inside the
    convex `outline_px` (K,2). Inliers are re-selected at `k_sigma` RMS distance
    after each fit. Returns None when fewer than `min_points` cells remain.
    """
    u, v = cloud.pixel_coordinates(ratio)
    pts = cloud.flat()
    inside = points_in_convex_polygon(np.stack([u, v], axis=-1), outline_px) & np.all(np.isfinite(pts), axis=1)
    idx = np.flatnonzero(inside)
    if idx.size < int(min_points):
        return None

    plane = Plane.fit(pts[idx])
    for _ in range(int(iterations)):
        d = plane.signed_distance(pts[idx])
        std = float(np.sqrt(np.mean(d**2)))
        if std < _NOISE_FLOOR:
            break
        keep = np.abs(d) <= float(k_sigma) * std
        if bool(np.all(keep)):
            break
        idx = idx[keep]
        if idx.size < int(min_points):
            return None
        plane = Plane.fit(pts[idx])

    d = plane.signed_distance(pts[idx])
    return PlaneFit(plane=plane.facing_origin(), indices=idx, std_dev=float(np.sqrt(np.mean(d**2))))


def target_outline_in_depth(checkerboard_in_depth: Checkerboard, depth_sensor: DepthSensor) -> np.ndarray | None:
    """Projected (4,2) outline of a target expressed in the depth frame; None if behind the sensor."""
    outline = checkerboard_in_depth.outline()
    if np.any(outline[:, 2] <= 0):
        return None
    return depth_sensor.project(outline)


@dataclass
class CheckerboardViewsExtractor:
    """
    Builds CheckerboardViews from frames.

    For every target: corners are detected in the color image and the target
    pose solved in the color frame; unless `only_images`, the target is moved
    into the depth frame with the current color sensor pose and its plane is
    fitted on the depth cells inside its projected outline. Views whose plane
    cannot be fitted are dropped.
    """

    checkerboards: Sequence[Checkerboard]
    only_images: bool = False
    min_plane_points: int = 50
    detector: CornerDetector = detect_chessboard_corners
    pose_solver: PoseSolver = solve_target_pose

    def extract(
        self,
        frame: Frame,
        *,
        constraint: CheckerboardDistanceConstraint | None = None,
        only_images: bool | None = None,
    ) -> list[CheckerboardView]:
        images_only = self.only_images if only_images is None else bool(only_images)
        color_pose = frame.color_sensor.pose
        out: list[CheckerboardView] = []
        for cb in self.checkerboards:
            corners = self.detector(frame.color_image, cb)
            if corners is None:
                logger.debug("frame %d: %s not detected", frame.id, cb.name)
                continue
            target_pose = self.pose_solver(corners, cb, frame.color_sensor)
            if target_pose is None:
                logger.debug("frame %d: %s pose not solved", frame.id, cb.name)
                continue

            in_depth = cb.with_pose(color_pose @ target_pose)
            if constraint is not None and not constraint.is_valid(in_depth):
                logger.debug("frame %d: %s rejected by distance constraint", frame.id, cb.name)
                continue

            view = CheckerboardView(
                id=f"{frame.id}_{cb.name}",
                frame=frame,
                checkerboard=cb,
                color_corners=np.asarray(corners, dtype=np.float64).reshape(-1, 2),
                color_pose=target_pose,
            )
            if not images_only:
                outline = target_outline_in_depth(in_depth, frame.depth_sensor)
                fit = None
                if outline is not None:
                    fit = fit_plane_in_outline(frame.cloud, outline, ratio=frame.ratio, min_points=self.min_plane_points)
                if fit is None:
                    logger.debug("frame %d: %s has no depth plane", frame.id, cb.name)
                    continue
                view = view.with_plane_inliers(fit)
            out.append(view)
        return out

    def extract_all(self, frames: Sequence[Frame], *, only_images: bool | None = None) -> list[CheckerboardView]:
        views: list[CheckerboardView] = []
        for frame in frames:
            views.extend(self.extract(frame, only_images=only_images))
        logger.info("extracted %d view(s) from %d frame(s)", len(views), len(frames))
        return views
