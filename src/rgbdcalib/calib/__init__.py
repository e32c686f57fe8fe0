"""
Color/depth extrinsic calibration with depth-distortion correction.

The pipeline bootstraps the extrinsics from plane pairs, optionally estimates
local and global depth-correction models, then refines everything jointly.
"""

from rgbdcalib.calib.bootstrap import collect_bootstrap_views, estimate_plane_based_extrinsics, estimate_transform
from rgbdcalib.calib.calibration import Calibration, CalibrationResult, Stage
from rgbdcalib.calib.extraction import CheckerboardViewsExtractor
from rgbdcalib.calib.full_opt import FullOptimizationResult, optimize_all
from rgbdcalib.calib.publisher import LoggingPublisher, Publisher
from rgbdcalib.calib.residuals import build_residual_blocks
from rgbdcalib.calib.transform_opt import TransformOptimizationResult, optimize_transform
from rgbdcalib.calib.undistortion import DepthData, DepthUndistortionEstimation

__all__ = [
    "Calibration",
    "CalibrationResult",
    "CheckerboardViewsExtractor",
    "DepthData",
    "DepthUndistortionEstimation",
    "FullOptimizationResult",
    "LoggingPublisher",
    "Publisher",
    "Stage",
    "TransformOptimizationResult",
    "build_residual_blocks",
    "collect_bootstrap_views",
    "estimate_plane_based_extrinsics",
    "estimate_transform",
    "optimize_all",
    "optimize_transform",
]
