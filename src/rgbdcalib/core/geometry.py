from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class Pose:
    """
    Rigid transform mapping child-frame points into the parent frame:

      X_parent = R X_child + t

    Quaternions follow SciPy's scalar-last order (x, y, z, w).
    """

    R: np.ndarray  # (3,3)
    t: np.ndarray  # (3,)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(R=np.eye(3, dtype=np.float64), t=np.zeros((3,), dtype=np.float64))

    @classmethod
    def from_rotvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Pose":
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
        return cls(R=Rot.from_rotvec(rvec).as_matrix(), t=np.asarray(tvec, dtype=np.float64).reshape(3).copy())

    @classmethod
    def from_quaternion(cls, quat: np.ndarray, tvec: np.ndarray) -> "Pose":
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        quat = np.asarray(quat, dtype=np.float64).reshape(4)
        return cls(R=Rot.from_quat(quat).as_matrix(), t=np.asarray(tvec, dtype=np.float64).reshape(3).copy())

    @classmethod
    def from_vector6(cls, p: np.ndarray) -> "Pose":
        p = np.asarray(p, dtype=np.float64).reshape(6)
        return cls.from_rotvec(p[:3], p[3:])

    @classmethod
    def from_vector7(cls, p: np.ndarray) -> "Pose":
        p = np.asarray(p, dtype=np.float64).reshape(7)
        return cls.from_quaternion(p[:4], p[4:])

    def rotvec(self) -> np.ndarray:
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        return Rot.from_matrix(self.R).as_rotvec()

    def quaternion(self) -> np.ndarray:
        from scipy.spatial.transform import Rotation as Rot  # type: ignore

        return Rot.from_matrix(self.R).as_quat()

    def as_vector6(self) -> np.ndarray:
        return np.concatenate([self.rotvec(), self.t], axis=0)

    def as_vector7(self) -> np.ndarray:
        return np.concatenate([self.quaternion(), self.t], axis=0)

    def inverse(self) -> "Pose":
        return Pose(R=self.R.T.copy(), t=-(self.R.T @ self.t))

    def __matmul__(self, other: "Pose") -> "Pose":
        return Pose(R=self.R @ other.R, t=self.R @ other.t + self.t)

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.R.T + self.t.reshape(1, 3)

    def distance_to(self, other: "Pose") -> tuple[float, float]:
        """Return (rotation angle in rad, translation distance) between two poses."""
        dR = self.R.T @ other.R
        cos_a = np.clip((np.trace(dR) - 1.0) / 2.0, -1.0, 1.0)
        return float(np.arccos(cos_a)), float(np.linalg.norm(self.t - other.t))


def quaternion_plus(quat: np.ndarray, delta: np.ndarray) -> np.ndarray:
    """
    Manifold update on unit quaternions: q ⊕ δ = exp(δ) ⊗ q.

    The result has unit norm for any tangent vector δ (3,).
    """
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    quat = np.asarray(quat, dtype=np.float64).reshape(4)
    delta = np.asarray(delta, dtype=np.float64).reshape(3)
    q = (Rot.from_rotvec(delta) * Rot.from_quat(quat)).as_quat()
    return q / np.linalg.norm(q)


def rotvec_to_matrix(rvec, xp=np):
    """
    Rodrigues formula written with elementary operations only, so that it can be
    traced by an automatic-differentiation array module (`xp=jax.numpy`).
    """
    theta2 = xp.sum(rvec * rvec)
    small = theta2 < 1e-16
    theta = xp.sqrt(xp.where(small, 1.0, theta2))
    zero = 0.0 * rvec[0]
    one = zero + 1.0

    def skew(w):
        return xp.stack(
            [
                xp.stack([zero, -w[2], w[1]]),
                xp.stack([w[2], zero, -w[0]]),
                xp.stack([-w[1], w[0], zero]),
            ]
        )

    eye = xp.stack([xp.stack([one, zero, zero]), xp.stack([zero, one, zero]), xp.stack([zero, zero, one])])
    K = skew(rvec / theta)
    R_full = eye + xp.sin(theta) * K + (1.0 - xp.cos(theta)) * (K @ K)
    R_small = eye + skew(rvec)
    return xp.where(small, R_small, R_full)


@dataclass(frozen=True, eq=False)
class Plane:
    """
    Hyperplane n·X + offset = 0 with unit normal n.
    """

    normal: np.ndarray  # (3,)
    offset: float

    @classmethod
    def through(cls, p0: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> "Plane":
        p0 = np.asarray(p0, dtype=np.float64).reshape(3)
        n = np.cross(np.asarray(p1, dtype=np.float64).reshape(3) - p0, np.asarray(p2, dtype=np.float64).reshape(3) - p0)
        norm = float(np.linalg.norm(n))
        if norm < 1e-15:
            raise ValueError("points are collinear")
        n = n / norm
        return cls(normal=n, offset=float(-n @ p0))

    @classmethod
    def fit(cls, points: np.ndarray) -> "Plane":
        """Total least-squares plane through (N,3) points (N>=3)."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if points.shape[0] < 3:
            raise ValueError("need >= 3 points to fit a plane")
        c = points.mean(axis=0)
        _u, _s, vt = np.linalg.svd(points - c, full_matrices=False)
        n = vt[-1]
        return cls(normal=n, offset=float(-n @ c))

    def facing_origin(self) -> "Plane":
        """Same plane, with the normal oriented so that the frame origin lies on its positive side."""
        if self.offset < 0:
            return Plane(normal=-self.normal, offset=-self.offset)
        return self

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.normal + self.offset

    def transformed(self, pose: Pose) -> "Plane":
        n = pose.R @ self.normal
        return Plane(normal=n, offset=float(self.offset - n @ pose.t))

    def intersect_lines_of_sight(self, points: np.ndarray) -> np.ndarray:
        """
        Intersect the rays origin->point with the plane. Returns (N,3); NaN for rays
        parallel to the plane.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        denom = points @ self.normal
        denom = np.where(np.abs(denom) < 1e-15, np.nan, denom)
        s = -self.offset / denom
        return points * s[:, None]


@dataclass(frozen=True, eq=False)
class PlaneFit:
    """
    Plane fitted to a region of an organized depth cloud.

    - `indices`: flat (row-major) indices of the inlier cells
    - `std_dev`: RMS point-to-plane distance of the inliers
    """

    plane: Plane
    indices: np.ndarray  # (M,)
    std_dev: float


def points_in_convex_polygon(uv: np.ndarray, polygon: np.ndarray) -> np.ndarray:
    """
    Boolean mask of (N,2) points inside a convex polygon given as (K,2) vertices
    in either winding order.
    """
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    polygon = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    edges = np.roll(polygon, -1, axis=0) - polygon
    rel = uv[:, None, :] - polygon[None, :, :]
    cross = edges[None, :, 0] * rel[:, :, 1] - edges[None, :, 1] * rel[:, :, 0]
    return np.all(cross >= 0.0, axis=1) | np.all(cross <= 0.0, axis=1)
