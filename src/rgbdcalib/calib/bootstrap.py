"""
Coarse color/depth extrinsics from paired plane observations.

Each event is a target seen by both sensors: the color sensor gives the target
pose (hence its plane), the depth sensor gives the plane fitted in the cloud.
The closed-form solver aligns the plane normals (Kabsch) and then solves the
plane offsets for the translation.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

import numpy as np

from rgbdcalib.core.checkerboard import CheckerboardDistanceConstraint
from rgbdcalib.core.geometry import Plane, Pose
from rgbdcalib.core.views import CheckerboardView, Frame
from rgbdcalib.errors import InsufficientSamplesError

logger = logging.getLogger(__name__)

MIN_PLANE_PAIRS = 3


class ViewExtractor(Protocol):
    def extract(
        self,
        frame: Frame,
        *,
        constraint: CheckerboardDistanceConstraint | None = None,
        only_images: bool = False,
    ) -> list[CheckerboardView]: ...


def estimate_plane_based_extrinsics(
    color_planes: Sequence[Plane],
    depth_planes: Sequence[Plane],
    *,
    min_singular_value: float = 1e-3,
) -> Pose:
    """
    Pose of the color sensor in the depth frame from k >= 3 plane pairs.

    Pair i is the same physical plane expressed in the color frame and in the
    depth frame. Planes are re-oriented to face their sensor origin before
    alignment, so both observations must see the same side of the target.

      rotation:     argmin sum ||n_d - R n_c||^2           (SVD)
      translation:  n_d · t = offset_c - offset_d           (least squares)
    """
    if len(color_planes) != len(depth_planes):
        raise ValueError("color_planes and depth_planes must have the same length")
    k = len(color_planes)
    if k < MIN_PLANE_PAIRS:
        raise InsufficientSamplesError(f"need >= {MIN_PLANE_PAIRS} plane pairs, got {k}")

    pc = [p.facing_origin() for p in color_planes]
    pd = [p.facing_origin() for p in depth_planes]
    Nc = np.stack([p.normal for p in pc], axis=0)
    Nd = np.stack([p.normal for p in pd], axis=0)
    oc = np.array([p.offset for p in pc], dtype=np.float64)
    od = np.array([p.offset for p in pd], dtype=np.float64)

    s_d = np.linalg.svd(Nd, compute_uv=False)
    if s_d.size < 3 or float(s_d[-1]) < float(min_singular_value):
        raise InsufficientSamplesError("plane normals do not span 3D; need targets in more varied orientations")

    H = Nc.T @ Nd
    U, _s, Vt = np.linalg.svd(H)
    D = np.diag([1.0, 1.0, float(np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0)])
    R = Vt.T @ D @ U.T

    t, *_ = np.linalg.lstsq(Nd, oc - od, rcond=None)
    pose = Pose(R=R, t=t)

    res_n = np.linalg.norm(Nd - Nc @ R.T, axis=1)
    res_o = Nd @ t - (oc - od)
    logger.debug(
        "plane-based extrinsics: %d pairs, normal rms %.3g, offset rms %.3g",
        k,
        float(np.sqrt(np.mean(res_n**2))),
        float(np.sqrt(np.mean(res_o**2))),
    )
    return pose


def estimate_transform(views: Sequence[CheckerboardView | None]) -> Pose:
    """Coarse color pose from every present view that carries a depth plane."""
    color_planes: list[Plane] = []
    depth_planes: list[Plane] = []
    for v in views:
        if v is None or v.depth_plane is None:
            continue
        color_planes.append(v.color_checkerboard.plane())
        depth_planes.append(v.depth_plane.plane)
    return estimate_plane_based_extrinsics(color_planes, depth_planes)


def collect_bootstrap_views(
    frames: Sequence[Frame],
    extractor: ViewExtractor,
    *,
    rng: np.random.Generator,
    min_views: int = 10,
    max_distance: float = 2.0,
) -> list[CheckerboardView]:
    """
    Draw frames uniformly at random (with replacement) and extract views close
    to the depth sensor, until `min_views` views are collected or as many draws
    as there are frames have been made.
    """
    n = len(frames)
    constraint = CheckerboardDistanceConstraint(distance=float(max_distance))
    views: list[CheckerboardView] = []
    draws = 0
    while draws < n and len(views) < int(min_views):
        idx = int(rng.integers(n))
        draws += 1
        found = extractor.extract(frames[idx], constraint=constraint)
        logger.debug("bootstrap draw %d: frame %d -> %d view(s)", draws, frames[idx].id, len(found))
        views.extend(found)
    logger.info("bootstrap: %d view(s) from %d draw(s) over %d frame(s)", len(views), draws, n)
    return views
