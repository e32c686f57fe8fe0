from rgbdcalib import config
from rgbdcalib.api import load_calibration_result, save_calibration_result
from rgbdcalib.calib import Calibration, CalibrationResult, optimize_all, optimize_transform

__all__ = [
    "config",
    "Calibration",
    "CalibrationResult",
    "load_calibration_result",
    "save_calibration_result",
    "optimize_all",
    "optimize_transform",
]
