from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class PointCloud:
    """
    Organized depth cloud: `points` has shape (H,W,3), metres, depth sensor frame.
    Missing measurements are NaN; `is_dense` is False whenever a cell is missing.
    """

    points: np.ndarray  # (H,W,3)
    is_dense: bool = True

    @classmethod
    def from_array(cls, points: np.ndarray) -> "PointCloud":
        points = np.asarray(points)
        if points.ndim != 3 or points.shape[2] != 3:
            raise ValueError("cloud must be (H,W,3)")
        return cls(points=points, is_dense=bool(np.all(np.isfinite(points))))

    @property
    def width(self) -> int:
        return int(self.points.shape[1])

    @property
    def height(self) -> int:
        return int(self.points.shape[0])

    def flat(self) -> np.ndarray:
        return np.asarray(self.points, dtype=np.float64).reshape(-1, 3)

    def pixel_coordinates(self, ratio: int = 1) -> tuple[np.ndarray, np.ndarray]:
        """
        Flat (row-major) sensor pixel coordinates of every cell.

        A cell (i,j) of a cloud block-averaged by `ratio` covers sensor pixels
        [i*ratio, (i+1)*ratio); its coordinate is the block center.
        """
        r = int(ratio)
        off = (r - 1) / 2.0
        vv, uu = np.meshgrid(
            np.arange(self.height, dtype=np.float64), np.arange(self.width, dtype=np.float64), indexing="ij"
        )
        return (uu * r + off).reshape(-1), (vv * r + off).reshape(-1)


def block_average(cloud: PointCloud, ratio: int) -> PointCloud:
    """
    Downsample an organized cloud by averaging the finite points of each
    ratio x ratio block. Output size is (H//ratio, W//ratio); a block without
    finite points becomes NaN and clears `is_dense`.
    """
    r = int(ratio)
    if r < 1:
        raise ValueError("ratio must be >= 1")
    if r == 1:
        return cloud

    h2 = cloud.height // r
    w2 = cloud.width // r
    src = np.asarray(cloud.points)
    blocks = src[: h2 * r, : w2 * r].reshape(h2, r, w2, r, 3).astype(np.float64)
    finite = np.all(np.isfinite(blocks), axis=-1)
    summed = np.where(finite[..., None], blocks, 0.0).sum(axis=(1, 3))
    count = finite.sum(axis=(1, 3))

    good = count > 0
    out = np.full((h2, w2, 3), np.nan, dtype=np.float64)
    out[good] = summed[good] / count[good][:, None]
    dtype = src.dtype if np.issubdtype(src.dtype, np.floating) else np.float64
    return PointCloud(points=out.astype(dtype), is_dense=bool(cloud.is_dense and np.all(good)))
