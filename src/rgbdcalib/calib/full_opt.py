from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from rgbdcalib.calib.residuals import (
    COLOR_POSE,
    DEPTH_DELTA,
    GLOBAL_DISTORTION,
    VIEW_POSE,
    ResidualBlock,
    build_residual_blocks,
)
from rgbdcalib.core.depth_models import GlobalModel
from rgbdcalib.core.geometry import Pose, quaternion_plus
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.core.views import CheckerboardView

logger = logging.getLogger(__name__)

IDENTITY_DELTA = np.array([1.0, 1.0, 0.0, 0.0], dtype=np.float64)


@dataclass(frozen=True)
class FullOptimizationResult:
    color_pose: Pose
    color_quaternion: np.ndarray  # (4,) x,y,z,w, unit norm
    global_parameters: np.ndarray  # (3S,) free corner polynomials
    global_coeffs: np.ndarray  # (2,2,S) reconciled
    delta: np.ndarray  # (4,) sfx, sfy, dcx, dcy
    view_poses: dict[str, Pose]
    view_quaternions: dict[str, np.ndarray]
    diagnostics: dict[str, float]
    message: str


class _ParameterLayout:
    """
    Tangent-space parameter vector of the distortion-aware problem.

    Shared blocks come first, then one pose block per view:

      [color dq(3), color t(3), global(3S), delta(4), view_0 dq(3), view_0 t(3), ...]

    Quaternion blocks are stored as tangent increments around fixed reference
    quaternions and mapped back through `quaternion_plus`, so every quaternion
    read from the vector has unit norm.
    """

    def __init__(self, *, color_q0: np.ndarray, n_global: int, view_q0: list[np.ndarray]):
        self.color_q0 = np.asarray(color_q0, dtype=np.float64).reshape(4)
        self.view_q0 = [np.asarray(q, dtype=np.float64).reshape(4) for q in view_q0]
        self.n_global = int(n_global)
        self.shared: dict[str, slice] = {}
        o = 0
        self.shared[COLOR_POSE] = slice(o, o + 6)
        o += 6
        self.shared[GLOBAL_DISTORTION] = slice(o, o + self.n_global)
        o += self.n_global
        self.shared[DEPTH_DELTA] = slice(o, o + 4)
        o += 4
        self.n_shared = o
        self.n_params = o + 6 * len(self.view_q0)

    def view_slice(self, k: int) -> slice:
        o = self.n_shared + 6 * k
        return slice(o, o + 6)

    def columns(self, name: str, k: int) -> np.ndarray:
        s = self.view_slice(k) if name == VIEW_POSE else self.shared[name]
        return np.arange(s.start, s.stop)

    @staticmethod
    def _pose7(q0: np.ndarray, block: np.ndarray) -> np.ndarray:
        return np.concatenate([quaternion_plus(q0, block[:3]), block[3:6]], axis=0)

    def color_pose7(self, p: np.ndarray) -> np.ndarray:
        return self._pose7(self.color_q0, p[self.shared[COLOR_POSE]])

    def view_pose7(self, p: np.ndarray, k: int) -> np.ndarray:
        return self._pose7(self.view_q0[k], p[self.view_slice(k)])

    def block_value(self, name: str, p: np.ndarray, k: int, color7: np.ndarray) -> np.ndarray:
        if name == COLOR_POSE:
            return color7
        if name == VIEW_POSE:
            return self.view_pose7(p, k)
        return p[self.shared[name]]


def optimize_all(
    *,
    views: list[CheckerboardView | None],
    color_sensor: PinholeSensor,
    depth_sensor: DepthSensor,
    global_model: GlobalModel,
    pixel_noise: float = 0.5,
    max_iterations: int = 20,
    tolerance: float = 1e-10,
) -> FullOptimizationResult:
    """
    Joint refinement of the color sensor pose, the global depth-distortion model,
    the depth intrinsics delta and every target pose.

    Each view contributes two residual blocks: the distortion-corrected
    line-of-sight error of its depth inliers, and the corner reprojection error.
    The distortion residual embeds a linear solve (reconciliation of the fourth
    global polynomial), so the Jacobian is obtained by central finite
    differences restricted to the block-sparsity pattern.

    Nothing is written back: the caller stores the returned values.
    """
    from scipy.optimize import least_squares  # type: ignore
    from scipy.sparse import lil_matrix  # type: ignore

    used = [v for v in views if v is not None and v.has_plane]
    if len(used) < len(views):
        logger.info("optimize_all: excluding %d view(s) without a depth plane", len(views) - len(used))
    if not used:
        raise ValueError("no checkerboard views with a depth plane")

    per_view: list[list[ResidualBlock]] = [
        build_residual_blocks(
            "pose_distortion_intrinsics",
            v,
            color_sensor=color_sensor,
            depth_sensor=depth_sensor,
            pixel_noise=pixel_noise,
            global_image_size=global_model.image_size,
        )
        for v in used
    ]

    g0 = global_model.free_parameters()
    layout = _ParameterLayout(
        color_q0=color_sensor.pose.quaternion(), n_global=g0.size, view_q0=[v.color_pose.quaternion() for v in used]
    )
    p0 = np.zeros((layout.n_params,), dtype=np.float64)
    p0[layout.shared[COLOR_POSE]][3:] = color_sensor.pose.t
    p0[layout.shared[GLOBAL_DISTORTION]] = g0
    p0[layout.shared[DEPTH_DELTA]] = IDENTITY_DELTA
    for k, v in enumerate(used):
        p0[layout.view_slice(k)][3:] = v.color_pose.t

    n_rows = sum(b.n_residuals for blocks in per_view for b in blocks)
    sparsity = lil_matrix((n_rows, layout.n_params), dtype=np.int8)
    r0 = 0
    for k, blocks in enumerate(per_view):
        for b in blocks:
            rows = slice(r0, r0 + b.n_residuals)
            for name in b.parameter_blocks:
                sparsity[rows, layout.columns(name, k)] = 1
            r0 += b.n_residuals

    def fun(p: np.ndarray) -> np.ndarray:
        p = np.asarray(p, dtype=np.float64).reshape(-1)
        color7 = layout.color_pose7(p)
        out: list[np.ndarray] = []
        for k, blocks in enumerate(per_view):
            for b in blocks:
                args = [layout.block_value(name, p, k, color7) for name in b.parameter_blocks]
                out.append(b.error(*args))
        return np.concatenate(out, axis=0)

    logger.info(
        "optimize_all: %d views, %d residuals, %d parameters (%d shared)",
        len(used),
        n_rows,
        layout.n_params,
        layout.n_shared,
    )
    sol = least_squares(
        fun,
        p0,
        jac="3-point",
        jac_sparsity=sparsity.tocsr(),
        method="trf",
        tr_solver="lsmr",
        loss="linear",
        max_nfev=int(max_iterations),
        x_scale="jac",
        ftol=float(tolerance),
        xtol=float(tolerance),
        gtol=float(tolerance),
    )

    p = sol.x
    color7 = layout.color_pose7(p)
    g = p[layout.shared[GLOBAL_DISTORTION]].copy()
    view_quats: dict[str, np.ndarray] = {}
    view_poses: dict[str, Pose] = {}
    for k, v in enumerate(used):
        q7 = layout.view_pose7(p, k)
        view_quats[v.id] = q7[:4]
        view_poses[v.id] = Pose.from_vector7(q7)

    diag = {
        "opt_cost": float(sol.cost),
        "opt_initial_cost": float(0.5 * np.sum(fun(p0) ** 2)),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_views": float(len(used)),
        "n_residuals": float(n_rows),
    }
    if sol.status == 0:
        logger.warning("optimize_all: iteration cap reached (%s); keeping last iterate", sol.message)
    logger.info("optimize_all: cost %.6g -> %.6g in %d evaluations", diag["opt_initial_cost"], diag["opt_cost"], sol.nfev)
    return FullOptimizationResult(
        color_pose=Pose.from_vector7(color7),
        color_quaternion=color7[:4],
        global_parameters=g,
        global_coeffs=GlobalModel.coeffs_from_free_parameters(g),
        delta=p[layout.shared[DEPTH_DELTA]].copy(),
        view_poses=view_poses,
        view_quaternions=view_quats,
        diagnostics=diag,
        message=str(sol.message),
    )
