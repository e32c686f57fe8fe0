from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from rgbdcalib.core.checkerboard import Checkerboard
from rgbdcalib.core.cloud import PointCloud, block_average
from rgbdcalib.core.geometry import PlaneFit, Pose
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.errors import MalformedInputError


@dataclass(frozen=True, eq=False)
class Frame:
    """
    One synchronized color image + depth cloud.

    `ratio` is the block-averaging factor applied to the cloud at ingestion.
    """

    id: int
    color_image: np.ndarray
    cloud: PointCloud
    color_sensor: PinholeSensor
    depth_sensor: DepthSensor
    ratio: int = 1

    def with_cloud(self, cloud: PointCloud) -> "Frame":
        return replace(self, cloud=cloud)


def build_frame(
    *,
    frame_id: int,
    image: np.ndarray,
    cloud: PointCloud | np.ndarray,
    color_sensor: PinholeSensor,
    depth_sensor: DepthSensor,
    ratio: int = 1,
) -> Frame:
    """
    Validate a raw (image, cloud) pair and build a Frame, block-averaging the
    cloud when ratio > 1. Nothing is built if the input is rejected.
    """
    if int(ratio) < 1:
        raise MalformedInputError(f"downsample ratio must be >= 1 (got {ratio})")
    if not isinstance(cloud, PointCloud):
        try:
            cloud = PointCloud.from_array(cloud)
        except ValueError as e:
            raise MalformedInputError(str(e)) from e
    image = np.asarray(image)
    if image.ndim < 2:
        raise MalformedInputError("color image must be at least 2D")
    if tuple(image.shape[:2]) != (cloud.height, cloud.width):
        raise MalformedInputError(
            f"color image size {tuple(image.shape[:2])} does not match depth cloud size {(cloud.height, cloud.width)}"
        )
    if int(ratio) > 1:
        cloud = block_average(cloud, int(ratio))
    return Frame(
        id=int(frame_id),
        color_image=image,
        cloud=cloud,
        color_sensor=color_sensor,
        depth_sensor=depth_sensor,
        ratio=int(ratio),
    )


@dataclass(frozen=True, eq=False)
class CheckerboardView:
    """
    One target observed in one frame.

    - `checkerboard`: target geometry (board frame)
    - `color_corners`: detected corners (N,2), same order as `checkerboard.local_corners()`
    - `color_pose`: target pose in the color camera frame
    - `depth_plane`: target plane fitted in the depth cloud, None if not extracted
    """

    id: str
    frame: Frame
    checkerboard: Checkerboard
    color_corners: np.ndarray  # (N,2)
    color_pose: Pose
    depth_plane: Optional[PlaneFit] = None

    @property
    def has_plane(self) -> bool:
        return self.depth_plane is not None

    @property
    def color_checkerboard(self) -> Checkerboard:
        return self.checkerboard.with_pose(self.color_pose)

    def with_plane_inliers(self, plane_fit: PlaneFit) -> "CheckerboardView":
        return replace(self, depth_plane=plane_fit)

    def with_frame(self, frame: Frame, suffix: str = "") -> "CheckerboardView":
        return replace(self, frame=frame, id=f"{self.id}{suffix}")
