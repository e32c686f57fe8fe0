from __future__ import annotations

import logging
from typing import Protocol

import numpy as np

from rgbdcalib.core.geometry import Pose
from rgbdcalib.core.views import CheckerboardView, Frame

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """Best-effort sink for intermediate results; nothing is returned."""

    def publish_pose(self, name: str, pose: Pose) -> None: ...

    def publish_frame(self, frame: Frame) -> None: ...

    def publish_view(self, view: CheckerboardView) -> None: ...


class LoggingPublisher:
    def __init__(self, level: int = logging.INFO) -> None:
        self.level = int(level)

    def publish_pose(self, name: str, pose: Pose) -> None:
        logger.log(
            self.level,
            "pose %s: rotvec=%s t=%s",
            name,
            np.array2string(pose.rotvec(), precision=6),
            np.array2string(pose.t, precision=6),
        )

    def publish_frame(self, frame: Frame) -> None:
        logger.log(self.level, "frame %d: cloud %dx%d, dense=%s", frame.id, frame.cloud.width, frame.cloud.height, frame.cloud.is_dense)

    def publish_view(self, view: CheckerboardView) -> None:
        if view.depth_plane is None:
            logger.log(self.level, "view %s: %d corners, no depth plane", view.id, view.color_corners.shape[0])
            return
        logger.log(
            self.level,
            "view %s: %d corners, plane inliers %d, plane std %.4g",
            view.id,
            view.color_corners.shape[0],
            int(view.depth_plane.indices.size),
            view.depth_plane.std_dev,
        )
