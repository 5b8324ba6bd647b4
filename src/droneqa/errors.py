"""
Exception taxonomy for the quality engine.

Load-stage errors are fatal to one task only; kernel errors are always
recovered by the CPU path and never reach callers.
"""


class QualityEngineError(Exception):
    """Base class for every error raised by droneqa."""


class DecodeError(QualityEngineError):
    """Byte stream is empty, corrupt or not a supported raster format."""


class DimensionError(QualityEngineError):
    """Decoded or resized image has a non-positive width or height."""


class DecodeTimeoutError(QualityEngineError, TimeoutError):
    """Decoding or thumbnail generation exceeded its wall-clock budget."""


class KernelExecutionError(QualityEngineError):
    """GPU kernel failed or the device context is unavailable."""


class AnalyzerError(QualityEngineError):
    """Unexpected failure inside a metric stage."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class ConfigError(QualityEngineError, ValueError):
    """Configuration could not be loaded or merged."""
