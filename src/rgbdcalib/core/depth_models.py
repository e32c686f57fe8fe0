from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from rgbdcalib.core.distortion import poly_design_matrix, poly_eval


LOCAL_DEGREE = 2
LOCAL_MIN_DEGREE = 0
LOCAL_SIZE = LOCAL_DEGREE - LOCAL_MIN_DEGREE + 1

GLOBAL_DEGREE = 2
GLOBAL_MIN_DEGREE = 1
GLOBAL_SIZE = GLOBAL_DEGREE - GLOBAL_MIN_DEGREE + 1

# Sample abscissae and system matrix of the reconciliation solve (fixed size).
_RECONCILE_X = np.arange(1, GLOBAL_SIZE + 1, dtype=np.float64)
_RECONCILE_A = poly_design_matrix(_RECONCILE_X, GLOBAL_DEGREE, GLOBAL_MIN_DEGREE)


def identity_coeffs(degree: int, min_degree: int) -> np.ndarray:
    """Coefficients of p(z) = z in the basis z^min_degree..z^degree."""
    if not (min_degree <= 1 <= degree):
        raise ValueError("basis cannot represent the identity")
    c = np.zeros((degree - min_degree + 1,), dtype=np.float64)
    c[1 - min_degree] = 1.0
    return c


def reconcile_global_polynomial(c00: np.ndarray, c01: np.ndarray, c10: np.ndarray) -> np.ndarray:
    """
    Coefficients of the (1,1) corner polynomial, recovered from the other three:
    p11(x) = p01(x) + p10(x) - p00(x) on x = 1..S, solved for the S coefficients.
    """
    b = (
        poly_eval(c01, _RECONCILE_X, GLOBAL_MIN_DEGREE)
        + poly_eval(c10, _RECONCILE_X, GLOBAL_MIN_DEGREE)
        - poly_eval(c00, _RECONCILE_X, GLOBAL_MIN_DEGREE)
    )
    return np.linalg.solve(_RECONCILE_A, b)


def _bilinear_weights(u_px: np.ndarray, v_px: np.ndarray, image_size: tuple[int, int]) -> np.ndarray:
    """(N,2,2) weights indexed [n, ix, iy] for the four image corners."""
    w, h = image_size
    a = np.clip(np.asarray(u_px, dtype=np.float64) / max(float(w - 1), 1.0), 0.0, 1.0)
    b = np.clip(np.asarray(v_px, dtype=np.float64) / max(float(h - 1), 1.0), 0.0, 1.0)
    wx = np.stack([1.0 - a, a], axis=-1)
    wy = np.stack([1.0 - b, b], axis=-1)
    return wx[:, :, None] * wy[:, None, :]


def global_corrected_depth(
    u_px: np.ndarray,
    v_px: np.ndarray,
    z: np.ndarray,
    coeffs: np.ndarray,
    image_size: tuple[int, int],
) -> np.ndarray:
    """Bilinear blend of the four corner polynomials evaluated at z. `coeffs` is (2,2,S) [ix, iy]."""
    z = np.asarray(z, dtype=np.float64).reshape(-1)
    W = _bilinear_weights(u_px, v_px, image_size)
    out = np.zeros_like(z)
    for ix in range(2):
        for iy in range(2):
            out += W[:, ix, iy] * poly_eval(coeffs[ix, iy], z, GLOBAL_MIN_DEGREE)
    return out


def global_design_matrix(u_px: np.ndarray, v_px: np.ndarray, z: np.ndarray, image_size: tuple[int, int]) -> np.ndarray:
    """Linear map from flattened (2,2,S) coefficients to corrected depths, shape (N, 4S)."""
    W = _bilinear_weights(u_px, v_px, image_size)
    P = poly_design_matrix(z, GLOBAL_DEGREE, GLOBAL_MIN_DEGREE)
    return (W.reshape(-1, 4)[:, :, None] * P[:, None, :]).reshape(P.shape[0], 4 * GLOBAL_SIZE)


def _scale_along_line_of_sight(points: np.ndarray, z_new: np.ndarray) -> np.ndarray:
    z = points[:, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        s = z_new / z
    return points * s[:, None]


@dataclass(eq=False)
class LocalModel:
    """
    One depth-correction polynomial per `bin_size` pixel bin of the depth raster.
    `coeffs` has shape (n_bins_y, n_bins_x, LOCAL_SIZE).
    """

    image_size: tuple[int, int]  # (W,H) full-resolution depth pixels
    bin_size: tuple[int, int]  # (bx,by)
    coeffs: np.ndarray

    @classmethod
    def identity(cls, image_size: tuple[int, int], bin_size: tuple[int, int]) -> "LocalModel":
        w, h = int(image_size[0]), int(image_size[1])
        bx, by = int(bin_size[0]), int(bin_size[1])
        if bx < 1 or by < 1:
            raise ValueError("bin sizes must be >= 1")
        nx = -(-w // bx)
        ny = -(-h // by)
        c = np.tile(identity_coeffs(LOCAL_DEGREE, LOCAL_MIN_DEGREE), (ny, nx, 1))
        return cls(image_size=(w, h), bin_size=(bx, by), coeffs=c)

    @property
    def bins_shape(self) -> tuple[int, int]:
        return int(self.coeffs.shape[0]), int(self.coeffs.shape[1])

    def bin_index(self, u_px: np.ndarray, v_px: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        ny, nx = self.bins_shape
        ix = np.clip(np.floor(np.asarray(u_px, dtype=np.float64) / self.bin_size[0]).astype(np.int64), 0, nx - 1)
        iy = np.clip(np.floor(np.asarray(v_px, dtype=np.float64) / self.bin_size[1]).astype(np.int64), 0, ny - 1)
        return iy, ix

    def corrected_depth(self, u_px: np.ndarray, v_px: np.ndarray, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=np.float64).reshape(-1)
        iy, ix = self.bin_index(u_px, v_px)
        c = self.coeffs[iy, ix]  # (N,S)
        out = np.zeros_like(z)
        for k in range(c.shape[1] - 1, -1, -1):
            out = out * z + c[:, k]
        return out * z**LOCAL_MIN_DEGREE

    def undistort_points(self, points: np.ndarray, u_px: np.ndarray, v_px: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return _scale_along_line_of_sight(points, self.corrected_depth(u_px, v_px, points[:, 2]))


@dataclass(eq=False)
class GlobalModel:
    """
    Whole-image depth correction: one polynomial per image corner, blended
    bilinearly over the pixel position. `coeffs` has shape (2,2,GLOBAL_SIZE)
    indexed [ix, iy]; the (1,1) corner is tied to the other three by
    `reconcile_global_polynomial`.
    """

    image_size: tuple[int, int]  # (W,H)
    coeffs: np.ndarray

    @classmethod
    def identity(cls, image_size: tuple[int, int]) -> "GlobalModel":
        c = np.tile(identity_coeffs(GLOBAL_DEGREE, GLOBAL_MIN_DEGREE), (2, 2, 1))
        return cls(image_size=(int(image_size[0]), int(image_size[1])), coeffs=c)

    def free_parameters(self) -> np.ndarray:
        """The three independent corner polynomials, (0,0), (0,1), (1,0), concatenated."""
        return np.concatenate([self.coeffs[0, 0], self.coeffs[0, 1], self.coeffs[1, 0]], axis=0).copy()

    @staticmethod
    def coeffs_from_free_parameters(params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(3, GLOBAL_SIZE)
        c = np.empty((2, 2, GLOBAL_SIZE), dtype=np.float64)
        c[0, 0] = params[0]
        c[0, 1] = params[1]
        c[1, 0] = params[2]
        c[1, 1] = reconcile_global_polynomial(params[0], params[1], params[2])
        return c

    def set_free_parameters(self, params: np.ndarray) -> None:
        self.coeffs = self.coeffs_from_free_parameters(params)

    def corrected_depth(self, u_px: np.ndarray, v_px: np.ndarray, z: np.ndarray) -> np.ndarray:
        return global_corrected_depth(u_px, v_px, z, self.coeffs, self.image_size)

    def undistort_points(self, points: np.ndarray, u_px: np.ndarray, v_px: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return _scale_along_line_of_sight(points, self.corrected_depth(u_px, v_px, points[:, 2]))
