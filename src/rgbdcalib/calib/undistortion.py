"""
Depth-distortion estimation from target observations.

Every observation pairs a depth cloud with the target expressed in the depth
frame (moved there with the current extrinsics). The expected depth of a cloud
cell is the depth at which its line of sight meets the target plane; the models
map measured depth to expected depth.

Call order is fixed: add data, `estimate_local_model`,
`estimate_local_model_reverse`, `estimate_global_model`.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np

from rgbdcalib.calib.extraction import fit_plane_in_outline, target_outline_in_depth
from rgbdcalib.core.checkerboard import Checkerboard
from rgbdcalib.core.cloud import PointCloud
from rgbdcalib.core.depth_models import (
    GLOBAL_DEGREE,
    GLOBAL_MIN_DEGREE,
    GLOBAL_SIZE,
    LOCAL_DEGREE,
    LOCAL_MIN_DEGREE,
    GlobalModel,
    LocalModel,
    global_design_matrix,
    identity_coeffs,
)
from rgbdcalib.core.distortion import poly_design_matrix
from rgbdcalib.core.geometry import Plane, PlaneFit
from rgbdcalib.core.sensors import DepthSensor
from rgbdcalib.errors import CalibrationError, InsufficientSamplesError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class DepthData:
    """
    One observation accumulated by the estimator.

    - `checkerboard`: target in the depth frame
    - `estimated_plane`: plane fitted in the cloud (refitted on the locally
      corrected cloud once the reverse local fit ran)
    - `undistorted_cloud`: cloud corrected by the local model, once estimated
    """

    cloud: PointCloud
    checkerboard: Checkerboard
    ratio: int = 1
    plane_extracted: bool = False
    estimated_plane: Optional[PlaneFit] = None
    undistorted_cloud: Optional[PointCloud] = None


@dataclass(frozen=True)
class _Samples:
    u: np.ndarray
    v: np.ndarray
    z: np.ndarray  # model input depth
    z_ref: np.ndarray  # expected depth


def _line_of_sight_samples(data: DepthData, source: PointCloud, plane: Plane, z_in: np.ndarray) -> _Samples:
    idx = np.asarray(data.estimated_plane.indices, dtype=np.int64)
    u, v = data.cloud.pixel_coordinates(data.ratio)
    hit = plane.intersect_lines_of_sight(source.flat()[idx])
    z_in = z_in[idx]
    z_ref = hit[:, 2]
    ok = np.isfinite(z_in) & np.isfinite(z_ref) & (z_in > 0) & (z_ref > 0)
    return _Samples(u=u[idx][ok], v=v[idx][ok], z=z_in[ok], z_ref=z_ref[ok])


def _concat(samples: list[_Samples]) -> _Samples:
    return _Samples(
        u=np.concatenate([s.u for s in samples]),
        v=np.concatenate([s.v for s in samples]),
        z=np.concatenate([s.z for s in samples]),
        z_ref=np.concatenate([s.z_ref for s in samples]),
    )


def _ridge_solve(A: np.ndarray, b: np.ndarray, prior: np.ndarray, ridge: float) -> np.ndarray:
    """argmin ||A c - b||^2 + lam ||c - prior||^2, lam = ridge * rows."""
    lam = np.sqrt(float(ridge) * max(A.shape[0], 1))
    A_aug = np.concatenate([A, lam * np.eye(A.shape[1])], axis=0)
    b_aug = np.concatenate([b, lam * prior], axis=0)
    c, *_ = np.linalg.lstsq(A_aug, b_aug, rcond=None)
    return c


class DepthUndistortionEstimation:
    def __init__(
        self,
        *,
        depth_sensor: DepthSensor,
        local_model: LocalModel,
        global_model: GlobalModel,
        max_threads: int = 8,
        min_plane_points: int = 50,
        min_bin_samples: int = 10,
        ridge: float = 1e-6,
    ) -> None:
        self.depth_sensor = depth_sensor
        self.local_model = local_model
        self.global_model = global_model
        self.max_threads = int(max_threads)
        self.min_plane_points = int(min_plane_points)
        self.min_bin_samples = int(min_bin_samples)
        self.ridge = float(ridge)
        self._data: list[DepthData] = []
        self._stage = 0

    @property
    def depth_data(self) -> list[DepthData]:
        return list(self._data)

    def add_depth_data(self, cloud: PointCloud, checkerboard: Checkerboard, ratio: int = 1) -> DepthData:
        """Register one observation; its plane is fitted inside the target's projected outline."""
        outline = target_outline_in_depth(checkerboard, self.depth_sensor)
        fit = None
        if outline is not None:
            fit = fit_plane_in_outline(cloud, outline, ratio=ratio, min_points=self.min_plane_points)
        data = DepthData(
            cloud=cloud, checkerboard=checkerboard, ratio=int(ratio), plane_extracted=fit is not None, estimated_plane=fit
        )
        if fit is None:
            logger.warning("depth data %d: target plane not extracted", len(self._data))
        self._data.append(data)
        self._stage = 0
        return data

    def _extracted(self) -> list[DepthData]:
        data = [d for d in self._data if d.plane_extracted]
        if not data:
            raise InsufficientSamplesError("no depth data with an extracted plane")
        return data

    def _require_stage(self, stage: int, name: str) -> None:
        if self._stage != stage:
            raise CalibrationError(f"{name} called out of order")

    def _fit_local(self, samples: _Samples) -> int:
        model = self.local_model
        ny, nx = model.bins_shape
        iy, ix = model.bin_index(samples.u, samples.v)
        flat_bin = iy * nx + ix
        order = np.argsort(flat_bin, kind="stable")
        bins, starts, counts = np.unique(flat_bin[order], return_index=True, return_counts=True)
        prior = identity_coeffs(LOCAL_DEGREE, LOCAL_MIN_DEGREE)
        w_all = 1.0 / self.depth_sensor.depth_error(samples.z)

        def fit_bin(k: int) -> tuple[int, np.ndarray | None]:
            if counts[k] < self.min_bin_samples:
                return int(bins[k]), None
            sel = order[starts[k] : starts[k] + counts[k]]
            w = w_all[sel]
            A = poly_design_matrix(samples.z[sel], LOCAL_DEGREE, LOCAL_MIN_DEGREE) * w[:, None]
            return int(bins[k]), _ridge_solve(A, samples.z_ref[sel] * w, prior, self.ridge)

        coeffs = np.tile(prior, (ny, nx, 1))
        fitted = 0
        with ThreadPoolExecutor(max_workers=self.max_threads) as pool:
            for b, c in pool.map(fit_bin, range(bins.size)):
                if c is None:
                    continue
                coeffs[b // nx, b % nx] = c
                fitted += 1
        model.coeffs = coeffs
        return fitted

    def _undistort_locally(self, data: DepthData) -> PointCloud:
        u, v = data.cloud.pixel_coordinates(data.ratio)
        pts = self.local_model.undistort_points(data.cloud.flat(), u, v)
        return PointCloud(points=pts.reshape(data.cloud.points.shape), is_dense=data.cloud.is_dense)

    def estimate_local_model(self) -> None:
        """Per-bin fit of measured depth -> depth along the line of sight to the target plane."""
        self._require_stage(0, "estimate_local_model")
        data = self._extracted()
        samples = _concat(
            [_line_of_sight_samples(d, d.cloud, d.checkerboard.plane(), d.cloud.flat()[:, 2]) for d in data]
        )
        fitted = self._fit_local(samples)
        for d in data:
            d.undistorted_cloud = self._undistort_locally(d)
        logger.info("local model: %d sample(s), %d bin(s) fitted", samples.z.size, fitted)
        self._stage = 1

    def estimate_local_model_reverse(self) -> None:
        """
        Refit each plane on its locally corrected cloud, then refit the bins
        against those planes instead of the target planes.
        """
        self._require_stage(1, "estimate_local_model_reverse")
        data = self._extracted()
        parts: list[_Samples] = []
        for d in data:
            idx = np.asarray(d.estimated_plane.indices, dtype=np.int64)
            corrected = d.undistorted_cloud.flat()[idx]
            corrected = corrected[np.all(np.isfinite(corrected), axis=1)]
            if corrected.shape[0] < 3:
                continue
            plane = Plane.fit(corrected).facing_origin()
            parts.append(_line_of_sight_samples(d, d.cloud, plane, d.cloud.flat()[:, 2]))
        if not parts:
            raise InsufficientSamplesError("no corrected depth data to refit")
        samples = _concat(parts)
        fitted = self._fit_local(samples)
        for d in data:
            d.undistorted_cloud = self._undistort_locally(d)
            idx = np.asarray(d.estimated_plane.indices, dtype=np.int64)
            pts = d.undistorted_cloud.flat()[idx]
            good = np.all(np.isfinite(pts), axis=1)
            if int(good.sum()) < 3:
                continue
            plane = Plane.fit(pts[good]).facing_origin()
            dist = plane.signed_distance(pts[good])
            d.estimated_plane = PlaneFit(plane=plane, indices=idx[good], std_dev=float(np.sqrt(np.mean(dist**2))))
        logger.info("local model (reverse): %d sample(s), %d bin(s) fitted", samples.z.size, fitted)
        self._stage = 2

    def estimate_global_model(self) -> None:
        """
        Joint fit of the three free corner polynomials on the locally corrected
        depths; the (1,1) corner follows from the other three.
        """
        self._require_stage(2, "estimate_global_model")
        data = self._extracted()
        samples = _concat(
            [
                _line_of_sight_samples(d, d.undistorted_cloud, d.checkerboard.plane(), d.undistorted_cloud.flat()[:, 2])
                for d in data
            ]
        )
        if samples.z.size < 3 * GLOBAL_SIZE:
            raise InsufficientSamplesError(f"global model needs >= {3 * GLOBAL_SIZE} samples, got {samples.z.size}")

        S = GLOBAL_SIZE
        # flattened (2,2,S) coefficients from the free (c00, c01, c10)
        M = np.zeros((4 * S, 3 * S), dtype=np.float64)
        eye = np.eye(S)
        M[0:S, 0:S] = eye
        M[S : 2 * S, S : 2 * S] = eye
        M[2 * S : 3 * S, 2 * S : 3 * S] = eye
        M[3 * S :, 0:S] = -eye
        M[3 * S :, S : 2 * S] = eye
        M[3 * S :, 2 * S :] = eye

        w = 1.0 / self.depth_sensor.depth_error(samples.z)
        A = global_design_matrix(samples.u, samples.v, samples.z, self.global_model.image_size) @ M
        prior = np.tile(identity_coeffs(GLOBAL_DEGREE, GLOBAL_MIN_DEGREE), 3)
        params = _ridge_solve(A * w[:, None], samples.z_ref * w, prior, self.ridge)
        self.global_model.set_free_parameters(params)
        logger.info("global model: %d sample(s)", samples.z.size)
        self._stage = 3
