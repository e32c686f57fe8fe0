from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady lens distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow common OpenCV naming:
      radial: k1, k2, k3
      tangential: p1, p2

    `distort` only uses arithmetic operators, so it accepts NumPy arrays as well as
    arrays from an automatic-differentiation module.
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @property
    def is_identity(self) -> bool:
        return not any((self.k1, self.k2, self.p1, self.p2, self.k3))

    def coefficients(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)

    def distort(self, x, y):
        r2 = x * x + y * y
        r4 = r2 * r2
        r6 = r4 * r2
        radial = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6
        x2 = x * x
        y2 = y * y
        xy = x * y
        x_tan = 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x2)
        y_tan = self.p1 * (r2 + 2.0 * y2) + 2.0 * self.p2 * xy
        xd = x * radial + x_tan
        yd = y * radial + y_tan
        return xd, yd

    def undistort(self, xd: np.ndarray, yd: np.ndarray, iterations: int = 7) -> tuple[np.ndarray, np.ndarray]:
        """
        Iterative inverse of distort() for small/moderate distortion.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        if self.is_identity:
            return xd, yd
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            x_est, y_est = self.distort(x, y)
            x += xd - x_est
            y += yd - y_est
        return x, y


def brown_from_dict(d: dict) -> BrownDistortion:
    return BrownDistortion(
        k1=float(d.get("k1", 0.0)),
        k2=float(d.get("k2", 0.0)),
        p1=float(d.get("p1", 0.0)),
        p2=float(d.get("p2", 0.0)),
        k3=float(d.get("k3", 0.0)),
    )


def poly_eval(coeffs: np.ndarray, z, min_degree: int = 0):
    """
    p(z) = sum_k coeffs[k] z^(min_degree + k), evaluated with Horner's scheme.
    """
    acc = 0.0 * z
    for c in coeffs[::-1]:
        acc = acc * z + c
    for _ in range(int(min_degree)):
        acc = acc * z
    return acc


def poly_design_matrix(z: np.ndarray, degree: int, min_degree: int = 0) -> np.ndarray:
    """Columns z^min_degree .. z^degree, shape (N, degree-min_degree+1)."""
    z = np.asarray(z, dtype=np.float64).reshape(-1)
    return np.stack([z**k for k in range(int(min_degree), int(degree) + 1)], axis=1)


@dataclass(frozen=True, eq=False)
class Polynomial:
    coeffs: np.ndarray  # (degree-min_degree+1,)
    min_degree: int = 0

    @property
    def degree(self) -> int:
        return int(self.min_degree) + int(np.asarray(self.coeffs).size) - 1

    def __call__(self, z):
        return poly_eval(np.asarray(self.coeffs, dtype=np.float64), z, self.min_degree)
