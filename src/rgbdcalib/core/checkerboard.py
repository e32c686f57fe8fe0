from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np

from rgbdcalib.core.geometry import Plane, Pose


@dataclass(frozen=True, eq=False)
class Checkerboard:
    """
    Planar calibration target.

    `rows` x `cols` inner corners spaced by (`cell_width`, `cell_height`), laid
    out row-major in the board frame: corner k = r*cols + c sits at
    (c*cell_width, r*cell_height, 0). `pose` maps board coordinates into the
    frame the board is currently expressed in.
    """

    rows: int
    cols: int
    cell_width: float
    cell_height: float
    pose: Pose = field(default_factory=Pose.identity)
    name: str = "checkerboard"

    def __post_init__(self) -> None:
        if self.rows < 2 or self.cols < 2:
            raise ValueError("checkerboard needs at least 2x2 inner corners")
        if self.cell_width <= 0 or self.cell_height <= 0:
            raise ValueError("checkerboard cell sizes must be > 0")

    @property
    def size(self) -> int:
        return int(self.rows * self.cols)

    @property
    def pattern_size(self) -> tuple[int, int]:
        """OpenCV pattern size (corners per row, corners per column)."""
        return int(self.cols), int(self.rows)

    def local_corners(self) -> np.ndarray:
        rr, cc = np.meshgrid(np.arange(self.rows), np.arange(self.cols), indexing="ij")
        xyz = np.stack(
            [cc.reshape(-1) * self.cell_width, rr.reshape(-1) * self.cell_height, np.zeros(self.size)],
            axis=-1,
        )
        return xyz.astype(np.float64)

    def corners(self) -> np.ndarray:
        return self.pose.apply(self.local_corners())

    def outline(self) -> np.ndarray:
        """The four extreme corners (4,3), in order around the board."""
        c = self.corners()
        last = self.size - 1
        return c[[0, self.cols - 1, last, last - self.cols + 1]]

    def center(self) -> np.ndarray:
        return self.corners().mean(axis=0)

    def plane(self) -> Plane:
        c = self.corners()
        return Plane.through(c[0], c[1], c[self.cols])

    def with_pose(self, pose: Pose) -> "Checkerboard":
        return replace(self, pose=pose)

    def transformed(self, pose: Pose) -> "Checkerboard":
        return replace(self, pose=pose @ self.pose)


@dataclass(frozen=True, eq=False)
class CheckerboardDistanceConstraint:
    """Accept targets whose center lies within `distance` of `origin`."""

    distance: float
    origin: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))

    def is_valid(self, checkerboard: Checkerboard) -> bool:
        return float(np.linalg.norm(checkerboard.center() - self.origin)) <= float(self.distance)
