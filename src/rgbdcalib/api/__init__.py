from rgbdcalib.api.model_io import load_calibration_result, save_calibration_result

__all__ = [
    "load_calibration_result",
    "save_calibration_result",
]
