from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np

from rgbdcalib.calib.residuals import COLOR_POSE, VIEW_POSE, TransformError, build_residual_blocks
from rgbdcalib.core.geometry import Pose
from rgbdcalib.core.sensors import DepthSensor, PinholeSensor
from rgbdcalib.core.views import CheckerboardView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformOptimizationResult:
    color_pose: Pose
    view_poses: dict[str, Pose]  # view id -> target pose in color frame
    diagnostics: dict[str, float]
    message: str


def _autodiff_jacobian(errors: list[TransformError]):
    """
    Per-view Jacobian blocks d r_i / d(color_pose6, view_pose6), computed by
    forward-mode automatic differentiation. Views observed by the same sensor
    share one compiled function.
    """
    import jax  # type: ignore

    jax.config.update("jax_enable_x64", True)
    import jax.numpy as jnp  # type: ignore

    compiled: dict[tuple, object] = {}

    def block_jacobian(i: int, color6: np.ndarray, view6: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        err = errors[i]
        key = (id(err.sensor), float(err.pixel_noise), tuple(err.error_coeffs.tolist()))
        fn = compiled.get(key)
        if fn is None:
            fn = jax.jit(jax.jacfwd(err.function(xp=jnp), argnums=(0, 1)))
            compiled[key] = fn
        corners, uv, normal, offset = err.data()
        J_c, J_v = fn(
            jnp.asarray(color6),
            jnp.asarray(view6),
            jnp.asarray(corners),
            jnp.asarray(uv),
            jnp.asarray(normal),
            jnp.asarray(offset),
        )
        return np.asarray(J_c, dtype=np.float64), np.asarray(J_v, dtype=np.float64)

    return block_jacobian


def optimize_transform(
    *,
    views: list[CheckerboardView | None],
    color_sensor: PinholeSensor,
    depth_sensor: DepthSensor,
    pixel_noise: float = 0.5,
    loss: Literal["linear", "cauchy"] = "cauchy",
    f_scale: float = 1.0,
    max_iterations: int = 100,
    tolerance: float = 1e-10,
) -> TransformOptimizationResult:
    """
    Joint refinement of the color sensor pose and every target pose, without
    depth-distortion correction.

    Variables:
      - color sensor pose in the depth frame (axis-angle + translation), shared
      - target pose in the color frame (axis-angle + translation), one per view

    Residuals (per view, per corner):
      r = [(project(R_i P + t_i) - uv) / pixel_noise,
           n·(R_c (R_i P + t_i) + t_c) + d) / sigma(z)]

    where (n, d) is the plane measured in the depth cloud and sigma the depth
    error function. The Jacobian is block sparse: every view touches the shared
    block and its own block only.
    """
    from scipy.optimize import least_squares  # type: ignore
    from scipy.sparse import csr_matrix  # type: ignore

    used = [v for v in views if v is not None and v.has_plane]
    n_missing = sum(1 for v in views if v is None or not v.has_plane)
    if n_missing:
        logger.info("optimize_transform: excluding %d view(s) without a depth plane", n_missing)
    if not used:
        raise ValueError("no checkerboard views with a depth plane")

    errors: list[TransformError] = []
    for view in used:
        (block,) = build_residual_blocks(
            "pose_plane", view, color_sensor=color_sensor, depth_sensor=depth_sensor, pixel_noise=pixel_noise
        )
        if block.parameter_blocks != (COLOR_POSE, VIEW_POSE):
            raise RuntimeError("unexpected parameter layout for pose_plane residual")
        errors.append(block.error)

    n_views = len(used)
    p0 = np.concatenate([color_sensor.pose.as_vector6()] + [v.color_pose.as_vector6() for v in used], axis=0)
    n_params = p0.size
    row_offsets = np.cumsum([0] + [e.n_residuals for e in errors])
    n_rows = int(row_offsets[-1])

    def fun(p: np.ndarray) -> np.ndarray:
        p = np.asarray(p, dtype=np.float64).reshape(-1)
        color6 = p[:6]
        res_parts = [err(color6, p[6 + 6 * k : 12 + 6 * k]) for k, err in enumerate(errors)]
        return np.concatenate(res_parts, axis=0)

    block_jacobian = _autodiff_jacobian(errors)

    def jac(p: np.ndarray) -> csr_matrix:
        p = np.asarray(p, dtype=np.float64).reshape(-1)
        data: list[np.ndarray] = []
        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        for k in range(n_views):
            J_c, J_v = block_jacobian(k, p[:6], p[6 + 6 * k : 12 + 6 * k])
            r = np.arange(row_offsets[k], row_offsets[k + 1])
            for J, c0 in ((J_c, 0), (J_v, 6 + 6 * k)):
                rr, cc = np.meshgrid(r, np.arange(c0, c0 + 6), indexing="ij")
                data.append(J.reshape(-1))
                rows.append(rr.reshape(-1))
                cols.append(cc.reshape(-1))
        return csr_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))), shape=(n_rows, n_params)
        )

    logger.info("optimize_transform: %d views, %d residuals, %d parameters", n_views, n_rows, n_params)
    sol = least_squares(
        fun,
        p0,
        jac=jac,
        method="trf",
        tr_solver="lsmr",
        loss=str(loss),
        f_scale=float(f_scale),
        max_nfev=int(max_iterations),
        ftol=float(tolerance),
        xtol=float(tolerance),
        gtol=float(tolerance),
    )

    color_pose = Pose.from_vector6(sol.x[:6])
    view_poses = {v.id: Pose.from_vector6(sol.x[6 + 6 * k : 12 + 6 * k]) for k, v in enumerate(used)}
    diag = {
        "opt_cost": float(sol.cost),
        "opt_initial_cost": float(0.5 * np.sum(fun(p0) ** 2)),
        "opt_nfev": float(sol.nfev),
        "opt_njev": float(sol.njev) if sol.njev is not None else float("nan"),
        "opt_success": float(bool(sol.success)),
        "n_views": float(n_views),
        "n_residuals": float(n_rows),
    }
    if sol.status == 0:
        logger.warning("optimize_transform: iteration cap reached (%s); keeping last iterate", sol.message)
    logger.info("optimize_transform: cost %.6g -> %.6g in %d evaluations", diag["opt_initial_cost"], diag["opt_cost"], sol.nfev)
    return TransformOptimizationResult(color_pose=color_pose, view_poses=view_poses, diagnostics=diag, message=str(sol.message))
