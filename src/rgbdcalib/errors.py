from __future__ import annotations


class CalibrationError(RuntimeError):
    """Run-level failure: the current stage (or the whole run) cannot continue."""


class InsufficientSamplesError(CalibrationError):
    pass


class SensorNotSetError(CalibrationError):
    pass


class MalformedInputError(ValueError):
    """Raw input rejected at ingestion (size mismatch, bad downsample ratio)."""
